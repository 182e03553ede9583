"""Custom exception classes for the gateway API."""


class GatewayError(Exception):
    """Base exception for the gateway."""

    def __init__(self, code: str, message: str, details=None, status_code: int = 500):
        self.code = code
        self.message = message
        self.details = details
        self.status_code = status_code
        super().__init__(message)


class NotFoundError(GatewayError):
    """Resource not found."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            "NOT_FOUND",
            f"{resource} '{resource_id}' not found",
            status_code=404,
        )


class AuthenticationError(GatewayError):
    """Missing, unknown, inactive or expired credential.

    The message is identical for every cause so callers cannot probe which
    keys exist.
    """

    def __init__(self, message: str = "Invalid or missing API key"):
        super().__init__("AUTHENTICATION_ERROR", message, status_code=401)


class AuthorizationError(GatewayError):
    """Credential is valid but lacks the required scope."""

    def __init__(self, message: str = "Insufficient scope"):
        super().__init__("AUTHORIZATION_ERROR", message, status_code=403)


class RateLimitedError(GatewayError):
    """Client exceeded its request quota for the current window."""

    def __init__(self, retry_after: int, limit: int | None = None):
        self.retry_after = retry_after
        super().__init__(
            "RATE_LIMITED",
            "Rate limit exceeded",
            details={"retry_after": retry_after, "limit": limit},
            status_code=429,
        )


class DependencyUnavailableError(GatewayError):
    """A backing store needed to authorize the request is unreachable."""

    def __init__(self, dependency: str):
        super().__init__(
            "DEPENDENCY_UNAVAILABLE",
            "Service temporarily unavailable",
            details={"dependency": dependency},
            status_code=503,
        )


class CounterStoreError(Exception):
    """Raised by rate counter stores when the backend cannot be reached."""


class CredentialStoreError(Exception):
    """Raised by credential stores when the backend cannot be reached."""
