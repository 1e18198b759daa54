"""Circuit breaker pattern with state shared through Redis.

Breaker state lives in a Redis hash per provider and every transition is a
WATCH/MULTI compare-and-swap, so all worker processes see the same circuit.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from analysis_core.core.config import settings
from analysis_core.core.exceptions import CircuitOpenError
from analysis_core.schemas.analysis import utcnow

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Circuit is open, requests fail fast
    HALF_OPEN = "half_open"  # Testing if service has recovered


class _Admission(Enum):
    ALLOW = "allow"
    PROBE = "probe"
    REJECT = "reject"


_FLOAT_FIELDS = (
    "opened_at", "probe_started_at", "window_start", "last_failure_time", "last_state_change"
)
_INT_FIELDS = (
    "failure_count", "window_calls", "window_failures", "total_requests", "total_failures"
)


class CircuitBreaker:
    """Circuit breaker for one provider, shared across processes."""

    def __init__(
        self,
        redis_client: redis.Redis,
        name: str,
        failure_threshold: int = settings.CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout: int = settings.CIRCUIT_RECOVERY_TIMEOUT,
        error_rate_threshold: float = settings.CIRCUIT_ERROR_RATE_THRESHOLD,
        min_calls: int = settings.CIRCUIT_MIN_CALLS,
        window_seconds: int = settings.CIRCUIT_WINDOW_SECONDS,
        operation_timeout: float = settings.CACHE_OPERATION_TIMEOUT,
        now: Callable[[], datetime] = utcnow
    ):
        """
        Initialize circuit breaker.

        Args:
            redis_client: Shared Redis holding breaker state
            name: Provider name, used in the state key and logs
            failure_threshold: Consecutive failures before opening circuit
            recovery_timeout: Seconds to wait before allowing a half-open probe
            error_rate_threshold: Failure ratio in the rolling window that opens the circuit
            min_calls: Calls required in the window before the error rate is considered
            window_seconds: Length of the rolling error-rate window
        """
        self.redis_client = redis_client
        self.name = name
        self.key = f"circuit:{name}"
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.error_rate_threshold = error_rate_threshold
        self.min_calls = min_calls
        self.window_seconds = window_seconds
        self.operation_timeout = operation_timeout
        self._now = now

    def _decode(self, raw: Dict[str, str]) -> Dict[str, Any]:
        state: Dict[str, Any] = {"state": raw.get("state", CircuitState.CLOSED.value)}
        for field in _FLOAT_FIELDS:
            state[field] = float(raw.get(field, 0) or 0)
        for field in _INT_FIELDS:
            state[field] = int(raw.get(field, 0) or 0)
        return state

    @staticmethod
    def _encode(state: Dict[str, Any]) -> Dict[str, str]:
        return {field: str(value) for field, value in state.items()}

    async def _transact(self, mutate: Callable[[Dict[str, Any], float], Tuple[Any, bool]]) -> Any:
        """Read-modify-write the breaker hash atomically."""
        async with self.redis_client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self.key)
                    state = self._decode(await pipe.hgetall(self.key))
                    result, changed = mutate(state, self._now().timestamp())
                    if not changed:
                        await pipe.unwatch()
                        return result
                    pipe.multi()
                    pipe.hset(self.key, mapping=self._encode(state))
                    await pipe.execute()
                    return result
                except WatchError:
                    continue

    async def _run(self, operation: str, mutate, default: Any) -> Any:
        try:
            return await asyncio.wait_for(self._transact(mutate), timeout=self.operation_timeout)
        except (RedisError, asyncio.TimeoutError) as e:
            logger.warning(f"Circuit breaker {self.name} state unavailable during {operation}: {e}")
            return default

    def _roll_window(self, state: Dict[str, Any], now: float) -> None:
        if now - state["window_start"] >= self.window_seconds:
            state["window_start"] = now
            state["window_calls"] = 0
            state["window_failures"] = 0

    def _transition(self, state: Dict[str, Any], to_state: CircuitState, now: float) -> None:
        previous = state["state"]
        state["state"] = to_state.value
        state["last_state_change"] = now
        if to_state == CircuitState.OPEN:
            state["opened_at"] = now
            state["probe_started_at"] = 0.0
            logger.error(f"Circuit breaker {self.name} transitioned {previous} -> OPEN after {state['failure_count']} failures")
        elif to_state == CircuitState.HALF_OPEN:
            state["probe_started_at"] = now
            logger.info(f"Circuit breaker {self.name} transitioned to HALF_OPEN, testing recovery")
        else:
            state["failure_count"] = 0
            state["probe_started_at"] = 0.0
            state["window_start"] = now
            state["window_calls"] = 0
            state["window_failures"] = 0
            logger.info(f"Circuit breaker {self.name} transitioned to CLOSED, service recovered")

    def _admit(self, state: Dict[str, Any], now: float) -> Tuple[_Admission, bool]:
        current = state["state"]
        if current == CircuitState.OPEN.value:
            if now - state["opened_at"] >= self.recovery_timeout:
                self._transition(state, CircuitState.HALF_OPEN, now)
                state["total_requests"] += 1
                return _Admission.PROBE, True
            return _Admission.REJECT, False

        if current == CircuitState.HALF_OPEN.value:
            probe_age = now - state["probe_started_at"]
            if state["probe_started_at"] and probe_age < self.recovery_timeout:
                return _Admission.REJECT, False
            # previous probe never reported back; take over
            state["probe_started_at"] = now
            state["total_requests"] += 1
            return _Admission.PROBE, True

        state["total_requests"] += 1
        return _Admission.ALLOW, True

    async def before_call(self) -> bool:
        """Admit a call or raise CircuitOpenError. Returns True when the call is the half-open probe."""
        admission = await self._run("admission", self._admit, default=_Admission.ALLOW)
        if admission == _Admission.REJECT:
            logger.warning(f"Circuit breaker {self.name} is OPEN, failing fast")
            raise CircuitOpenError(self.name)
        return admission == _Admission.PROBE

    async def record_success(self, probe: bool = False) -> None:
        """Handle successful call."""
        def mutate(state: Dict[str, Any], now: float):
            self._roll_window(state, now)
            state["window_calls"] += 1
            if state["state"] == CircuitState.HALF_OPEN.value and probe:
                self._transition(state, CircuitState.CLOSED, now)
            elif state["state"] == CircuitState.CLOSED.value:
                state["failure_count"] = 0
            return None, True

        await self._run("success", mutate, default=None)

    async def record_failure(self, exception: Exception, probe: bool = False) -> None:
        """Handle failed call."""
        def mutate(state: Dict[str, Any], now: float):
            self._roll_window(state, now)
            state["total_failures"] += 1
            state["failure_count"] += 1
            state["window_calls"] += 1
            state["window_failures"] += 1
            state["last_failure_time"] = now

            logger.warning(
                f"Circuit breaker {self.name} failure {state['failure_count']}/{self.failure_threshold}: {exception}"
            )

            if state["state"] == CircuitState.HALF_OPEN.value and probe:
                self._transition(state, CircuitState.OPEN, now)
            elif state["state"] == CircuitState.CLOSED.value and self._should_open(state):
                self._transition(state, CircuitState.OPEN, now)
            return None, True

        await self._run("failure", mutate, default=None)

    def _should_open(self, state: Dict[str, Any]) -> bool:
        if state["failure_count"] >= self.failure_threshold:
            return True
        calls = state["window_calls"]
        if calls >= self.min_calls:
            return state["window_failures"] / calls >= self.error_rate_threshold
        return False

    async def release_probe(self) -> None:
        """Give back a probe reservation when the call never reached the provider."""
        def mutate(state: Dict[str, Any], now: float):
            if state["state"] != CircuitState.HALF_OPEN.value:
                return None, False
            state["probe_started_at"] = 0.0
            return None, True

        await self._run("release probe", mutate, default=None)

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection."""
        probe = await self.before_call()
        try:
            if asyncio.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)
        except Exception as e:
            await self.record_failure(e, probe=probe)
            raise
        await self.record_success(probe=probe)
        return result

    async def get_state(self) -> CircuitState:
        """Current state as stored (an elapsed cool-down is applied on the next call)."""
        snapshot = await self.get_metrics()
        return CircuitState(snapshot["state"])

    async def get_metrics(self) -> Dict[str, Any]:
        """Get circuit breaker metrics."""
        try:
            raw = await asyncio.wait_for(self.redis_client.hgetall(self.key), timeout=self.operation_timeout)
        except (RedisError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not read circuit breaker {self.name}: {e}")
            raw = {}
        state = self._decode(raw)
        total = state["total_requests"]
        return {
            "name": self.name,
            "state": state["state"],
            "failure_count": state["failure_count"],
            "total_requests": total,
            "total_failures": state["total_failures"],
            "failure_rate": state["total_failures"] / total if total > 0 else 0,
            "last_failure_time": (
                datetime.fromtimestamp(state["last_failure_time"], timezone.utc).isoformat()
                if state["last_failure_time"] else None
            ),
            "config": {
                "failure_threshold": self.failure_threshold,
                "recovery_timeout": self.recovery_timeout,
                "error_rate_threshold": self.error_rate_threshold,
                "min_calls": self.min_calls,
                "window_seconds": self.window_seconds
            }
        }

    async def reset(self) -> None:
        """Manually reset circuit breaker to CLOSED state."""
        def mutate(state: Dict[str, Any], now: float):
            previous = state["state"]
            self._transition(state, CircuitState.CLOSED, now)
            logger.info(f"Circuit breaker {self.name} manually reset from {previous}")
            return None, True

        await self._run("reset", mutate, default=None)


class CircuitBreakerRegistry:
    """Registry for managing one circuit breaker per provider."""

    def __init__(self):
        self.breakers: Dict[str, CircuitBreaker] = {}

    def register(self, breaker: CircuitBreaker) -> CircuitBreaker:
        """Register a circuit breaker under its name."""
        self.breakers[breaker.name] = breaker
        logger.info(f"Registered circuit breaker: {breaker.name}")
        return breaker

    def get(self, name: str) -> Optional[CircuitBreaker]:
        """Get circuit breaker by name."""
        return self.breakers.get(name)

    async def get_all_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Get metrics for all registered circuit breakers."""
        return {name: await breaker.get_metrics() for name, breaker in self.breakers.items()}

    async def reset_all(self):
        """Reset all circuit breakers."""
        for breaker in self.breakers.values():
            await breaker.reset()
        logger.info("All circuit breakers reset")
