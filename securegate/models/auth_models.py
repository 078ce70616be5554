"""
Authentication Pipeline Models.

Error classification enum, the backend error-string map and the
client-side validation result shared by ``IdentitySession`` and the
remote identity adapters.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Optional

from pydantic import BaseModel


class AuthErrorCode(StrEnum):
    """Exhaustive enumeration of error categories surfaced by the core."""

    INVALID_CREDENTIALS = "invalid_credentials"
    IDENTITY_MISMATCH = "identity_mismatch"
    REQUIRES_FULL_LOGIN = "requires_full_login"
    NETWORK_ERROR = "network_error"
    SERVER_ERROR = "server_error"
    NOT_AUTHORIZED = "not_authorized"
    STORAGE_FAILURE = "storage_failure"
    VALIDATION_ERROR = "validation_error"
    OPERATION_IN_PROGRESS = "operation_in_progress"


# Both quick-login guards resolve to the same prompt so the caller cannot
# tell which one fired.
FULL_LOGIN_PROMPT: str = "Sign in with your password to continue."

USER_MESSAGES: dict[AuthErrorCode, str] = {
    AuthErrorCode.INVALID_CREDENTIALS: "Incorrect email or password.",
    AuthErrorCode.IDENTITY_MISMATCH: FULL_LOGIN_PROMPT,
    AuthErrorCode.REQUIRES_FULL_LOGIN: FULL_LOGIN_PROMPT,
    AuthErrorCode.NETWORK_ERROR: "Cannot reach the server. Check your internet connection.",
    AuthErrorCode.SERVER_ERROR: "The server could not complete the request. Please try again later.",
    AuthErrorCode.NOT_AUTHORIZED: "You are not allowed to perform this action.",
    AuthErrorCode.STORAGE_FAILURE: "Secure storage on this device could not be updated.",
    AuthErrorCode.VALIDATION_ERROR: "Please check the information you entered.",
    AuthErrorCode.OPERATION_IN_PROGRESS: "Another sign-in is already in progress.",
}


# ---------------------------------------------------------------------------
# Backend error-code mapping
# ---------------------------------------------------------------------------

BACKEND_ERROR_MAP: dict[str, AuthErrorCode] = {
    "invalid_credentials": AuthErrorCode.INVALID_CREDENTIALS,
    "invalid login credentials": AuthErrorCode.INVALID_CREDENTIALS,
    "invalid_grant": AuthErrorCode.INVALID_CREDENTIALS,
    "user_not_found": AuthErrorCode.INVALID_CREDENTIALS,
    "refresh_token_not_found": AuthErrorCode.REQUIRES_FULL_LOGIN,
    "refresh token not found": AuthErrorCode.REQUIRES_FULL_LOGIN,
    "invalid refresh token": AuthErrorCode.REQUIRES_FULL_LOGIN,
    "session_expired": AuthErrorCode.REQUIRES_FULL_LOGIN,
    "user_banned": AuthErrorCode.NOT_AUTHORIZED,
    "not_admin": AuthErrorCode.NOT_AUTHORIZED,
    "permission denied": AuthErrorCode.NOT_AUTHORIZED,
}


class ValidationResult(BaseModel):
    """Result of a single client-side field validation check."""

    is_valid: bool
    error_message: Optional[str] = None

    model_config = {"from_attributes": True}
