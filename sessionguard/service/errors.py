from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each class carries a stable ``error_code`` so an outer authentication
    boundary can map it to its own response shape:
    - validation_error
    - unauthorized
    - server_error
    """

    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input to a pipeline operation is missing or malformed."""
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credential or token could not be verified."""
    error_code = "unauthorized"


class TokenError(AuthenticationError):
    """Token is malformed, forged, expired or for another audience."""
    pass


class ServerError(ServiceError):
    """Unexpected internal failure."""
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenError",
    "ServerError",
]
