"""
Identity & Session Models.

Pydantic models for the authenticated principal, the server-issued
token bundle, and the immutable session snapshot published by
``IdentitySession``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from securegate.models.enums import AuthState, LoginProvider

# Tokens within this window of expiry are treated as already expired.
_EXPIRY_LEEWAY: timedelta = timedelta(seconds=30)


class Identity(BaseModel):
    """The authenticated principal.

    Guest identities are generated locally and never confirmed by the
    Remote Identity Service; every other identity is.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    email: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    company_id: Optional[str] = None
    is_company_admin: bool = False
    provider: LoginProvider = LoginProvider.PASSWORD

    @property
    def is_guest(self) -> bool:
        return self.provider == LoginProvider.GUEST


class TokenBundle(BaseModel):
    """Server-issued access token plus the (optional) long-lived refresh secret."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    access_token: SecretStr
    refresh_token: Optional[SecretStr] = None
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """``True`` when the access token is expired or about to expire."""
        current = now or datetime.now(timezone.utc)
        return current >= self.expires_at - _EXPIRY_LEEWAY

    def without_refresh(self) -> "TokenBundle":
        """Copy that drops the refresh secret (it lives in the vault, not the cache)."""
        return self.model_copy(update={"refresh_token": None})


class AuthGrant(BaseModel):
    """Result of a successful remote login / registration / refresh."""

    model_config = ConfigDict(frozen=True)

    identity: Identity
    tokens: Optional[TokenBundle] = None


class OnboardingStatus(BaseModel):
    """Post-signup steps the host UI should walk the user through."""

    model_config = ConfigDict(frozen=True)

    needs_pin_setup: bool = False
    needs_profile_completion: bool = False
    needs_company: bool = False

    @property
    def required(self) -> bool:
        return self.needs_pin_setup or self.needs_profile_completion or self.needs_company


class SessionSnapshot(BaseModel):
    """Immutable view of the current session.

    A new snapshot replaces the old one in a single assignment at the end
    of each mutating operation, so observers never see a half-applied
    update.  ``generation`` increases whenever a new session begins.
    """

    model_config = ConfigDict(frozen=True)

    state: AuthState = AuthState.SIGNED_OUT
    identity: Optional[Identity] = None
    onboarding: OnboardingStatus = Field(default_factory=OnboardingStatus)
    generation: int = 0
    # Rebuilt from the local cache at startup rather than a fresh sign-in.
    restored: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.state != AuthState.SIGNED_OUT and self.identity is not None

    @property
    def is_guest(self) -> bool:
        return self.state == AuthState.GUEST


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

class PasswordCredential(BaseModel):
    """Email + password credential for ``login`` / ``create_account``."""

    email: str
    password: SecretStr


class FederatedCredential(BaseModel):
    """Credential resolved by an OS-level federated sign-in flow."""

    provider_user_id: str
    email: str
    display_name: Optional[str] = None
    identity_token: Optional[SecretStr] = None
    provider_name: str = "apple"


Credential = Union[PasswordCredential, FederatedCredential]
