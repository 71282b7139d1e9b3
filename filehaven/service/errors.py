from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for sign-in and registration failures rendered as the error envelope.

    Subclasses pin the HTTP ``status_code`` and the stable ``error_code`` the
    exception handlers put into the envelope.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Sign-in could not establish who the caller is (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Email/password sign-in failed.

    The message is fixed so unknown email, federated-only account and wrong
    password are indistinguishable to the caller.
    """

    def __init__(self) -> None:
        super().__init__("invalid credentials")


class OAuthStateError(AuthenticationError):
    """The provider callback does not match the sign-in this browser started."""


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class DuplicateIdentityError(ConflictError):
    """Registration hit an email or phone that already belongs to an identity."""

    def __init__(self, field: str) -> None:
        super().__init__(f"{field} already registered", detail={"field": field})
        self.field = field


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class SigningKeyMissingError(ServerError):
    """``AUTH_SECRET`` is unset, so no session token can be minted."""

    def __init__(self) -> None:
        super().__init__("session signing is not configured")


class ProviderNotConfiguredError(ServerError):
    def __init__(self, provider: str) -> None:
        super().__init__(f"{provider} sign-in is not configured", detail={"provider": provider})
        self.provider = provider
