"""
Error Taxonomy.

Every failure the core surfaces to a host is one of the exceptions
below.  Each carries an ``AuthErrorCode`` and a user-facing message the
host can display verbatim; internal detail stays in ``str(exc)`` and the
logs.
"""

from __future__ import annotations

from typing import ClassVar, Optional

from securegate.models.auth_models import USER_MESSAGES, AuthErrorCode

__all__ = [
    "IdentityMismatchError",
    "InvalidCredentialsError",
    "NetworkError",
    "NotAuthorizedError",
    "OperationInProgressError",
    "RequiresFullLoginError",
    "SecureGateError",
    "ServerError",
    "StorageFailureError",
    "ValidationError",
]


class SecureGateError(Exception):
    """Base class for all errors raised by the core."""

    code: ClassVar[AuthErrorCode] = AuthErrorCode.SERVER_ERROR

    def __init__(self, detail: str = "", *, user_message: Optional[str] = None) -> None:
        super().__init__(detail or USER_MESSAGES[self.code])
        self.user_message: str = user_message or USER_MESSAGES[self.code]


class InvalidCredentialsError(SecureGateError):
    code = AuthErrorCode.INVALID_CREDENTIALS


class IdentityMismatchError(SecureGateError):
    """Quick login would have switched to, or resolved as, a different user."""

    code = AuthErrorCode.IDENTITY_MISMATCH


class RequiresFullLoginError(SecureGateError):
    """The quick-login secret is missing, invalid, or locked out."""

    code = AuthErrorCode.REQUIRES_FULL_LOGIN


class NetworkError(SecureGateError):
    code = AuthErrorCode.NETWORK_ERROR


class ServerError(SecureGateError):
    code = AuthErrorCode.SERVER_ERROR

    def __init__(
        self,
        detail: str = "",
        *,
        status_code: Optional[int] = None,
        user_message: Optional[str] = None,
    ) -> None:
        super().__init__(detail, user_message=user_message)
        self.status_code: Optional[int] = status_code


class NotAuthorizedError(SecureGateError):
    code = AuthErrorCode.NOT_AUTHORIZED


class StorageFailureError(SecureGateError):
    """A vault or local-store write did not complete."""

    code = AuthErrorCode.STORAGE_FAILURE


class ValidationError(SecureGateError):
    code = AuthErrorCode.VALIDATION_ERROR


class OperationInProgressError(SecureGateError):
    code = AuthErrorCode.OPERATION_IN_PROGRESS


_ERRORS_BY_CODE: dict[AuthErrorCode, type[SecureGateError]] = {
    cls.code: cls
    for cls in (
        InvalidCredentialsError,
        IdentityMismatchError,
        RequiresFullLoginError,
        NetworkError,
        ServerError,
        NotAuthorizedError,
        StorageFailureError,
        ValidationError,
        OperationInProgressError,
    )
}


def error_for_code(code: AuthErrorCode, detail: str = "") -> SecureGateError:
    """Instantiate the exception class registered for *code*."""
    return _ERRORS_BY_CODE[code](detail)
