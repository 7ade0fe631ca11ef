"""Error taxonomy for the recommendation service.

Only ValidationError and RateLimitExceeded ever reach the HTTP caller.
Everything else is absorbed inside the services (logged, skipped or
degraded).
"""

from typing import Any, Dict, List, Optional


class TasteGraphError(Exception):
    """Base class for all service errors."""


class ValidationError(TasteGraphError):
    """Malformed recommendation request. Raised before any upstream or cache call."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []


class UpstreamClientError(TasteGraphError):
    """Error returned by (or while talking to) the cultural graph service."""

    def __init__(
        self,
        message: str,
        status_code: int,
        operation: str,
        details: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.operation = operation
        self.details = details

    @property
    def is_retryable(self) -> bool:
        return self.status_code >= 500 or self.status_code == 429

    @property
    def is_rate_limit(self) -> bool:
        return self.status_code == 429

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500


class UpstreamTimeoutError(UpstreamClientError):
    """The upstream call exceeded its timeout. Never retried."""

    def __init__(self, operation: str, timeout: Optional[float] = None):
        super().__init__(
            f"Request timeout for {operation}. Try again with fewer entities or simpler queries.",
            408,
            operation,
            {"timeout": timeout},
        )

    @property
    def is_retryable(self) -> bool:
        return False


class AccessRestrictedError(UpstreamClientError):
    """403 from the upstream: the domain is not available with the current API key."""

    def __init__(self, operation: str, domain: Optional[str] = None, details: Any = None):
        super().__init__(
            f"Access forbidden for {operation}. This domain may not be available with current API permissions.",
            403,
            operation,
            details,
        )
        self.domain = domain


class RateLimitExceeded(TasteGraphError):
    """The caller exhausted one of its rate-limit windows."""

    def __init__(
        self,
        limit: int,
        remaining: int,
        reset_time: float,
        retry_after: int,
        tier: str = "free",
    ):
        super().__init__(f"Rate limit exceeded for tier '{tier}', retry after {retry_after}s")
        self.limit = limit
        self.remaining = remaining
        self.reset_time = reset_time
        self.retry_after = retry_after
        self.tier = tier


class CacheError(TasteGraphError):
    """Cache backend failure. Always logged and bypassed."""


class DegradationExhausted(TasteGraphError):
    """Every degradation strategy failed.

    The static catalog cannot fail, so this is kept for completeness of the
    taxonomy and is not raised on any normal path.
    """
