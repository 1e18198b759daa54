"""Error taxonomy for the analysis core.

Provider errors are raised by the gateway and are retryable unless the
upstream rejected the request itself. Orchestration errors drive the job
state machine. Queue and cache errors are infrastructure failures: queue
errors surface to operators, cache errors degrade to a miss.
"""

from typing import Optional


class AnalysisCoreError(Exception):
    """Base exception for the analysis core."""
    retryable: bool = True


class ProviderError(AnalysisCoreError):
    """Failure talking to an external data provider."""

    def __init__(self, provider: str, message: str = ""):
        self.provider = provider
        super().__init__(f"{provider}: {message}" if message else provider)


class RateLimitExceededError(ProviderError):
    """Call rejected locally because the provider budget is exhausted."""

    def __init__(self, provider: str, retry_after: float = 0.0):
        self.retry_after = retry_after
        super().__init__(provider, f"rate limit exceeded, retry after {retry_after:.1f}s")


class CircuitOpenError(ProviderError):
    """Call rejected locally because the provider circuit is open."""

    def __init__(self, provider: str):
        super().__init__(provider, "circuit open, failing fast")


class ProviderTimeoutError(ProviderError):
    """Provider did not answer within the call timeout."""

    def __init__(self, provider: str, timeout: float):
        self.timeout = timeout
        super().__init__(provider, f"timed out after {timeout}s")


class UpstreamError(ProviderError):
    """Provider answered with an error or the transport failed."""

    def __init__(self, provider: str, status_code: Optional[int] = None, message: str = ""):
        self.status_code = status_code
        detail = f"upstream error {status_code}" if status_code is not None else "upstream error"
        super().__init__(provider, f"{detail}: {message}" if message else detail)

    @property
    def retryable(self) -> bool:
        # Client errors other than throttling will fail the same way again
        if self.status_code is None:
            return True
        return not (400 <= self.status_code < 500 and self.status_code != 429)


class OrchestrationError(AnalysisCoreError):
    """Failure inside the job state machine."""


class LockContention(OrchestrationError):
    """Another worker holds the single-flight lock for this key. Not a failure."""

    def __init__(self, cache_key: str):
        self.cache_key = cache_key
        super().__init__(f"computation already in flight for {cache_key}")


class MissingMandatorySource(OrchestrationError):
    """A source the analysis cannot run without failed."""

    def __init__(self, source: str, cause: Exception):
        self.source = source
        self.cause = cause
        super().__init__(f"mandatory source '{source}' failed: {cause}")

    @property
    def retryable(self) -> bool:
        return getattr(self.cause, "retryable", True)


class UnknownAnalysisKind(OrchestrationError):
    """No analyzer is registered for the job kind."""
    retryable = False

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"no analyzer registered for kind '{kind}'")


class QueueError(AnalysisCoreError):
    """Job queue delivery or acknowledgement failure."""


class CacheError(AnalysisCoreError):
    """Cache tier unavailable or timed out."""
