from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """An auth-core failure that renders as an error envelope.

    ``status_code`` and ``error_code`` are class defaults that a single raise
    may override, e.g. the request gate raises an ``AuthenticationError`` with
    403/forbidden for a token that fails verification. Server-side failures
    (5xx) never expose their message or detail to clients.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def is_client_error(self) -> bool:
        return self.status_code < 500

    def public_message(self) -> str:
        return self.message if self.is_client_error else "service unavailable"

    def public_detail(self) -> Optional[Dict[str, Any]]:
        if not self.is_client_error:
            return None
        return self.detail or None


class ValidationError(ServiceError):
    """Missing field, weak password or malformed code; message is shown verbatim."""


class AuthenticationError(ServiceError):
    """Bad credentials, TOTP code or token.

    Messages stay generic so a caller cannot tell which factor failed.
    """

    status_code = 401
    error_code = "unauthorized"


class TwoFactorSetupRequiredError(AuthenticationError):
    """Password accepted, but the account has not finished TOTP enrollment."""

    error_code = "mfa_setup_required"


class AuthorizationError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class FatalConfigurationError(ServerError):
    """Secrets could not be loaded or persisted; the process must not serve."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TwoFactorSetupRequiredError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "FatalConfigurationError",
]
