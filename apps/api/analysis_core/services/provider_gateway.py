"""
Provider Gateway

Uniform access to external data providers (fantasy platforms, projections,
news feeds). Every call passes the provider's circuit breaker and rate limiter,
both of which keep their state in Redis so that all workers share them and one
provider's outage never throttles another.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx
import redis.asyncio as redis

from analysis_core.core.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from analysis_core.core.config import settings
from analysis_core.core.exceptions import (
    ProviderError,
    ProviderTimeoutError,
    RateLimitExceededError,
    UpstreamError,
)
from analysis_core.core.rate_limiter import RateLimiter
from analysis_core.schemas.analysis import ProviderRequest, utcnow

logger = logging.getLogger(__name__)


class Provider:
    """Base class for an external data source."""

    name: str = "provider"

    async def call(self, endpoint: str, params: Dict[str, Any]) -> Any:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class HttpProvider(Provider):
    """JSON-over-HTTP provider backed by an httpx AsyncClient."""

    def __init__(
        self,
        name: str,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = settings.PROVIDER_TIMEOUT
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={
                "User-Agent": settings.PROVIDER_USER_AGENT,
                "Accept": "application/json",
                **(headers or {})
            }
        )

    async def call(self, endpoint: str, params: Dict[str, Any]) -> Any:
        try:
            response = await self._client.get(f"/{endpoint.lstrip('/')}", params=params or None)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UpstreamError(self.name, e.response.status_code, e.response.reason_phrase)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(self.name, self.timeout) from e
        except httpx.HTTPError as e:
            raise UpstreamError(self.name, None, str(e)) from e
        return response.json()

    async def close(self) -> None:
        await self._client.aclose()


class ProviderGateway:
    """
    Routes ProviderRequests to registered providers

    Order of checks per call: circuit breaker admission, rate limit budget,
    then the network call under a bounded timeout.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        default_timeout: float = settings.PROVIDER_TIMEOUT,
        now: Callable[[], datetime] = utcnow
    ):
        self.redis_client = redis_client
        self.default_timeout = default_timeout
        self._now = now
        self.providers: Dict[str, Provider] = {}
        self.limiters: Dict[str, RateLimiter] = {}
        self.breakers = CircuitBreakerRegistry()

    def register(
        self,
        provider: Provider,
        rate_limit: Optional[int] = None,
        rate_window: int = settings.PROVIDER_RATE_LIMIT_WINDOW,
        rate_max_wait: float = settings.PROVIDER_RATE_LIMIT_MAX_WAIT,
        failure_threshold: int = settings.CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout: int = settings.CIRCUIT_RECOVERY_TIMEOUT,
        error_rate_threshold: float = settings.CIRCUIT_ERROR_RATE_THRESHOLD,
        min_calls: int = settings.CIRCUIT_MIN_CALLS,
        window_seconds: int = settings.CIRCUIT_WINDOW_SECONDS
    ) -> Provider:
        """Register a provider together with its own limiter and breaker."""
        if rate_limit is None:
            rate_limit = settings.PROVIDER_RATE_LIMITS.get(provider.name, settings.PROVIDER_RATE_LIMIT_CALLS)

        self.providers[provider.name] = provider
        self.limiters[provider.name] = RateLimiter(
            self.redis_client,
            provider.name,
            limit=rate_limit,
            window_seconds=rate_window,
            max_wait=rate_max_wait,
            now=self._now
        )
        self.breakers.register(CircuitBreaker(
            self.redis_client,
            provider.name,
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            error_rate_threshold=error_rate_threshold,
            min_calls=min_calls,
            window_seconds=window_seconds,
            now=self._now
        ))
        logger.info(f"Registered provider {provider.name} ({rate_limit} calls/{rate_window}s)")
        return provider

    async def fetch(self, request: ProviderRequest, timeout: Optional[float] = None) -> Any:
        """
        Fetch data from a provider.

        @param request - provider, endpoint and params
        @param timeout - per-call bound, defaults to PROVIDER_TIMEOUT

        @returns Decoded provider response

        @throws RateLimitExceededError - budget exhausted, no network call made
        @throws CircuitOpenError - circuit open, no network call made
        @throws ProviderTimeoutError - provider did not answer in time
        @throws UpstreamError - provider or transport error
        """
        provider = self.providers.get(request.provider)
        if provider is None:
            raise UpstreamError(request.provider, None, "provider not registered")

        breaker = self.breakers.get(request.provider)
        limiter = self.limiters[request.provider]
        if timeout is None:
            timeout = self.default_timeout

        probe = await breaker.before_call()

        try:
            await limiter.acquire()
        except RateLimitExceededError:
            if probe:
                await breaker.release_probe()
            raise

        try:
            result = await asyncio.wait_for(provider.call(request.endpoint, request.params), timeout=timeout)
        except asyncio.TimeoutError:
            error = ProviderTimeoutError(request.provider, timeout)
            await breaker.record_failure(error, probe=probe)
            raise error
        except ProviderError as e:
            if e.retryable:
                await breaker.record_failure(e, probe=probe)
            else:
                # the provider is up, it just rejected this request
                await breaker.record_success(probe=probe)
            raise
        except Exception as e:
            error = UpstreamError(request.provider, None, str(e))
            await breaker.record_failure(error, probe=probe)
            raise error from e

        await breaker.record_success(probe=probe)
        logger.debug(f"Fetched {request.provider}/{request.endpoint}")
        return result

    async def get_status(self) -> Dict[str, Any]:
        """Breaker and limiter snapshot for every provider."""
        return {
            name: {
                "circuit": await self.breakers.get(name).get_metrics(),
                "rate_limit": await self.limiters[name].get_usage()
            }
            for name in self.providers
        }

    async def close(self) -> None:
        for provider in self.providers.values():
            await provider.close()


def build_default_gateway(redis_client: redis.Redis) -> ProviderGateway:
    """Gateway wired to the configured fantasy platform, projections and news providers."""
    gateway = ProviderGateway(redis_client)
    gateway.register(HttpProvider("fantasy_platform", settings.FANTASY_PLATFORM_BASE_URL))
    gateway.register(HttpProvider("projections", settings.PROJECTIONS_BASE_URL))
    gateway.register(HttpProvider("news_feed", settings.NEWS_FEED_BASE_URL))
    return gateway
