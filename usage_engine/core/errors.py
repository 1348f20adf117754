"""
Error taxonomy for the usage engine.

Provider errors are raised by collectors and classified so the caller can
decide between retrying, backing off, or failing the run.
"""

from typing import List, Optional


class UsageEngineError(Exception):
    """Base class for all engine errors."""


class ProviderError(UsageEngineError):
    """Raised when a vendor API call fails."""

    retryable = False

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"[{provider}] {message}")
        self.provider = provider
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Network failure, timeout or 5xx. Retry with backoff."""

    retryable = True


class RateLimited(ProviderError):
    """Vendor answered 429. Caller must wait ``retry_after`` seconds."""

    retryable = True

    def __init__(self, provider: str, retry_after: float, message: str = "rate limited"):
        super().__init__(provider, f"{message} (retry after {retry_after:.1f}s)", status_code=429)
        self.retry_after = retry_after


class AuthenticationFailure(ProviderError):
    """401/403 from the vendor. Not retryable without new credentials."""


class PermanentProviderError(ProviderError):
    """Any other 4xx or an unparseable response."""


class ValidationFailure(UsageEngineError):
    """A single event failed canonical validation."""

    def __init__(self, event_id: str, errors: List[str]):
        super().__init__(f"Event {event_id} failed validation: {'; '.join(errors)}")
        self.event_id = event_id
        self.errors = errors


class UnknownProvider(UsageEngineError):
    """No collector is registered for the provider identifier."""

    def __init__(self, provider: str):
        super().__init__(f"Unknown provider: {provider}")
        self.provider = provider


class PersistenceFailure(UsageEngineError):
    """A batch write failed for a reason other than a duplicate key.

    Writes are idempotent, so the batch can be replayed safely using the
    preserved correlation id.
    """

    def __init__(self, correlation_id: str, message: str):
        super().__init__(f"Persistence failed for batch {correlation_id}: {message}")
        self.correlation_id = correlation_id


class InvalidRunTransition(UsageEngineError):
    """A collection run was moved out of a terminal state or skipped a step."""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move collection run from {current} to {requested}")
        self.current = current
        self.requested = requested
