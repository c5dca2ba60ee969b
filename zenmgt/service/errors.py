from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that is rendered into the error envelope. Messages are meant for the
    browser and stay generic; specifics belong in the logs.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"
    default_message = "invalid request"


class InvalidCredentials(ServiceError):
    """Upstream rejected the username/password pair (401)."""
    status_code = 401
    error_code = "invalid_credentials"
    default_message = "Invalid username or password"


class MfaRequired(ServiceError):
    """A verification code is needed before the session is usable (401)."""
    status_code = 401
    error_code = "mfa_required"
    default_message = "Two-factor verification required"


class MfaSetupRequired(ServiceError):
    """The account must enroll an authenticator first (401)."""
    status_code = 401
    error_code = "mfa_setup_required"
    default_message = "Two-factor setup required"


class MfaCodeInvalid(ServiceError):
    """The submitted verification code was rejected (401)."""
    status_code = 401
    error_code = "mfa_code_invalid"
    default_message = "Invalid verification code"


class SessionExpired(ServiceError):
    """Session missing, expired or no longer valid (401)."""
    status_code = 401
    error_code = "session_expired"
    default_message = "Session expired"


class SessionNotFound(ServiceError):
    """No record exists for the given session id (401)."""
    status_code = 401
    error_code = "session_not_found"
    default_message = "Session not found"


class RegistrationFailed(ServiceError):
    """Upstream refused to create the account (400)."""
    status_code = 400
    error_code = "registration_failed"
    default_message = "Registration failed"


class UnsupportedEndpoint(ServiceError):
    """No proxy route matches the endpoint/method pair (400)."""
    status_code = 400
    error_code = "unsupported_endpoint"
    default_message = "Unsupported endpoint"

    def __init__(self, method: str, endpoint: str) -> None:
        super().__init__(
            f"Unsupported endpoint: {method} {endpoint}",
            detail={"method": method, "endpoint": endpoint},
        )


class UpstreamUnavailable(ServiceError):
    """Upstream could not be reached or timed out (503)."""
    status_code = 503
    error_code = "upstream_unavailable"
    default_message = "Service temporarily unavailable"


class RateLimited(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    default_message = "rate limit exceeded"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentials",
    "MfaRequired",
    "MfaSetupRequired",
    "MfaCodeInvalid",
    "SessionExpired",
    "SessionNotFound",
    "RegistrationFailed",
    "UnsupportedEndpoint",
    "UpstreamUnavailable",
    "RateLimited",
    "ServerError",
]
