"""
Shared Enumerations for SecureGate Models.

All string enumerations for type-safe field constraints.  StrEnum values
compare equal to their string equivalents and serialise as plain strings.
"""

from __future__ import annotations

from enum import StrEnum


class LoginProvider(StrEnum):
    """How the current identity was established."""

    GUEST = "guest"
    PASSWORD = "password"
    FEDERATED = "federated"


class AuthState(StrEnum):
    """Top-level authentication state of the device session."""

    SIGNED_OUT = "signed_out"
    GUEST = "guest"
    AUTHENTICATED = "authenticated"


class SecretKind(StrEnum):
    """Category of secret held in the vault.

    The value doubles as the vault service namespace, so the storage key
    for a secret is always derived from ``(kind, user_id)``.
    """

    PIN = "pin"
    REFRESH_TOKEN = "refresh"


class AuditEventType(StrEnum):
    """Closed set of security-relevant events recorded by the audit trail."""

    CLIENT_VIEWED = "CLIENT_VIEWED"
    CLIENT_CREATED = "CLIENT_CREATED"
    CLIENT_UPDATED = "CLIENT_UPDATED"
    CLIENT_DELETED = "CLIENT_DELETED"
    ANALYSIS_VIEWED = "ANALYSIS_VIEWED"
    ANALYSIS_CREATED = "ANALYSIS_CREATED"
    ANALYSIS_DELETED = "ANALYSIS_DELETED"
    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"
    DATA_EXPORTED = "DATA_EXPORTED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS_ATTEMPT"
    SESSION_TIMEOUT = "SESSION_TIMEOUT"


class SessionTimerState(StrEnum):
    """States of the inactivity timer.

    ``EXPIRED`` is terminal for the session it was observed on; only a
    fresh full authentication re-arms the timer.
    """

    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"


class AppLifecycleEvent(StrEnum):
    """Host application transitions that the core reacts to."""

    FOREGROUND = "FOREGROUND"
    BACKGROUND = "BACKGROUND"


class ExportCategory(StrEnum):
    """Sections available in a human-readable data export."""

    PROFILE = "PROFILE"
    CLIENTS = "CLIENTS"
    ANALYSES = "ANALYSES"
    AUDIT_LOG = "AUDIT_LOG"
