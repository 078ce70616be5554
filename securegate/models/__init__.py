"""
Data Models Package.

Re-exports the Pydantic models and enumerations used across the core:
    from securegate.models import Identity, SessionSnapshot, AuditEvent
"""

from __future__ import annotations

from securegate.models.audit_models import AuditEvent, ExportOptions
from securegate.models.device_profile import DeviceProfile
from securegate.models.enums import (
    AppLifecycleEvent,
    AuditEventType,
    AuthState,
    ExportCategory,
    LoginProvider,
    SecretKind,
    SessionTimerState,
)
from securegate.models.identity import (
    AuthGrant,
    Credential,
    FederatedCredential,
    Identity,
    OnboardingStatus,
    PasswordCredential,
    SessionSnapshot,
    TokenBundle,
)

__all__ = [
    "AppLifecycleEvent",
    "AuditEvent",
    "AuditEventType",
    "AuthGrant",
    "AuthState",
    "Credential",
    "DeviceProfile",
    "ExportCategory",
    "ExportOptions",
    "FederatedCredential",
    "Identity",
    "LoginProvider",
    "OnboardingStatus",
    "PasswordCredential",
    "SecretKind",
    "SessionSnapshot",
    "SessionTimerState",
    "TokenBundle",
]
