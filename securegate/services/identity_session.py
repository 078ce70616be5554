"""
Identity Session Service.

Single source of truth for who is using the app right now.  Orchestrates
the four ways in: guest, password, federated and PIN quick-login, plus
logout, account deletion and session restore.

Every mutating operation runs under one ``asyncio.Lock`` (callers queue,
they are never raced) and follows the same shape: do every awaited
network call first, then commit all local writes (vault, device
profiles, local cache, snapshot) in one synchronous block.  A caller
that cancels mid-operation therefore leaves the session exactly as it
was, and observers only ever see complete snapshots.

Quick-login guard
-----------------
``login_with_pin`` refuses to switch identity silently:

1. No PIN stored for the user -> ``RequiresFullLoginError``.
2. A *different* user's unexpired access token is cached on the device
   -> ``IdentityMismatchError``; the other user's session is untouched.
3. No usable token for the user and no refresh secret in the vault
   -> ``RequiresFullLoginError``.
4. The refreshed token or the fetched profile resolves to another user
   id -> ``IdentityMismatchError``.

Both errors carry the same user-facing prompt so the UI cannot reveal
which guard fired.
"""

from __future__ import annotations

import asyncio
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from pydantic import ValidationError as PydanticValidationError

from securegate.auth import SessionManager
from securegate.errors import (
    IdentityMismatchError,
    InvalidCredentialsError,
    NotAuthorizedError,
    RequiresFullLoginError,
    SecureGateError,
    ValidationError,
)
from securegate.logger import StructuredLogger
from securegate.models.auth_models import ValidationResult
from securegate.models.enums import AuditEventType, AuthState, LoginProvider, SecretKind
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
from securegate.services.audit_trail import AuditTrail
from securegate.services.base_service import BaseService
from securegate.services.device_profiles import DeviceProfileStore
from securegate.services.local_store import LocalStore
from securegate.services.remote_identity import RemoteIdentityService
from securegate.services.vault import SecureVault


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_EMAIL_RE: re.Pattern[str] = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)

_CONTROL_CHAR_RE: re.Pattern[str] = re.compile(r"[\x00-\x1f\x7f-\x9f]")

_TOKENS_KEY: str = "session.tokens"
_IDENTITY_KEY: str = "session.identity"
_GUEST_MODE_KEY: str = "auth.guest_mode"
_GUEST_ID_KEY: str = "auth.guest_user_id"


@runtime_checkable
class FederatedCredentialProvider(Protocol):
    """Async boundary around an OS-level federated sign-in sheet.

    ``request_credential`` resolves once the user completes (or aborts)
    the flow; aborting raises, typically ``asyncio.CancelledError`` or a
    ``SecureGateError``.
    """

    async def request_credential(self) -> FederatedCredential: ...


class IdentitySession(BaseService):
    """Owns the current identity and serializes every change to it.

    Parameters
    ----------
    session:
        Holder of the published ``SessionSnapshot``.
    remote:
        Remote Identity Service.
    vault:
        Per-user PIN and refresh-secret storage.
    profiles:
        Device profile list updated on every successful login.
    store:
        Secure Local Store for the identity/token cache and guest state.
    audit:
        Audit trail receiving login, logout and timeout events.
    logger:
        Structured logger.
    pin_min_length, pin_max_length:
        Accepted PIN length range (digits only).
    clock:
        Source of "now"; injectable for tests.
    """

    def __init__(
        self,
        session: SessionManager,
        remote: RemoteIdentityService,
        vault: SecureVault,
        profiles: DeviceProfileStore,
        store: LocalStore,
        audit: AuditTrail,
        logger: StructuredLogger,
        pin_min_length: int = 4,
        pin_max_length: int = 6,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(logger)
        self._session: SessionManager = session
        self._remote: RemoteIdentityService = remote
        self._vault: SecureVault = vault
        self._profiles: DeviceProfileStore = profiles
        self._store: LocalStore = store
        self._audit: AuditTrail = audit
        self._pin_min_length: int = pin_min_length
        self._pin_max_length: int = pin_max_length
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(timezone.utc))
        self._op_lock: asyncio.Lock = asyncio.Lock()

    # ==================================================================
    # Read-only state
    # ==================================================================

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._session.snapshot

    @property
    def current_identity(self) -> Optional[Identity]:
        return self._session.current_identity

    @property
    def is_authenticated(self) -> bool:
        return self._session.is_authenticated

    @property
    def is_busy(self) -> bool:
        """``True`` while a mutating operation holds the session."""
        return self._op_lock.locked()

    # ==================================================================
    # Validation helpers
    # ==================================================================

    @staticmethod
    def validate_email(email: str) -> ValidationResult:
        """Validate an email address against a simplified RFC 5322 regex."""
        if not email or not email.strip():
            return ValidationResult(is_valid=False, error_message="Email address is required.")
        if not _EMAIL_RE.match(email.strip()):
            return ValidationResult(
                is_valid=False, error_message="Please enter a valid email address.",
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def validate_password(password: str) -> ValidationResult:
        """Enforce the registration password policy.

        Policy: minimum 8 characters, at least one letter and one digit.
        """
        if len(password) < 8:
            return ValidationResult(
                is_valid=False, error_message="Password must be at least 8 characters.",
            )
        if not re.search(r"[A-Za-z]", password) or not re.search(r"\d", password):
            return ValidationResult(
                is_valid=False,
                error_message="Password must contain at least one letter and one digit.",
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def validate_display_name(name: str) -> ValidationResult:
        """Reject empty names and control characters (log injection)."""
        stripped = name.strip()
        if not stripped:
            return ValidationResult(is_valid=False, error_message="Name is required.")
        if _CONTROL_CHAR_RE.search(stripped):
            return ValidationResult(
                is_valid=False,
                error_message="Name contains invalid characters. Only printable characters are allowed.",
            )
        return ValidationResult(is_valid=True)

    def validate_pin(self, pin: str) -> ValidationResult:
        if not pin.isdigit() or not (self._pin_min_length <= len(pin) <= self._pin_max_length):
            return ValidationResult(
                is_valid=False,
                error_message=(
                    f"PIN must be {self._pin_min_length}-{self._pin_max_length} digits."
                ),
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def normalize_email(email: str) -> str:
        """Normalise an email address: strip whitespace and lowercase."""
        return email.strip().lower()

    # ==================================================================
    # Guest
    # ==================================================================

    async def login_as_guest(self) -> SessionSnapshot:
        """Enter guest mode, reusing this device's guest id if one exists.

        Never fails: local cache write errors are logged and the guest
        session is still published.
        """
        async with self._op_lock:
            guest_id = self._store.get_text(_GUEST_ID_KEY) or f"guest-{uuid.uuid4()}"
            identity = Identity(id=guest_id, email="", provider=LoginProvider.GUEST)

            self._quietly(self._store.set_text, _GUEST_ID_KEY, guest_id)
            self._quietly(self._store.set_text, _GUEST_MODE_KEY, "1")
            self._quietly(self._store.delete, _TOKENS_KEY)
            self._quietly(self._store.delete, _IDENTITY_KEY)

            snapshot = self._session.publish(
                SessionSnapshot(state=AuthState.GUEST, identity=identity),
            )
            self._audit.record(
                AuditEventType.USER_LOGIN, guest_id, "", resource_type="guest",
            )
            self._logger.info(
                "Guest session started.",
                extra={"event": "GUEST_LOGIN", "user_id": guest_id},
            )
            return snapshot

    # ==================================================================
    # Full login
    # ==================================================================

    async def login(self, credential: Credential) -> SessionSnapshot:
        """Authenticate with a password or federated credential.

        Raises
        ------
        ValidationError
            Malformed email or empty password; nothing is sent.
        InvalidCredentialsError, NetworkError, ServerError
            From the Remote Identity Service.  The current session is
            left exactly as it was.
        """
        self._check_credential(credential)
        async with self._op_lock:
            grant = await self._authenticate(credential)
            identity = await self._complete_profile(grant)
            return self._commit_login(identity, grant.tokens, OnboardingStatus())

    async def login_with_provider(
        self, provider: FederatedCredentialProvider,
    ) -> SessionSnapshot:
        """Run the federated sign-in flow, then ``login`` with its result."""
        credential = await provider.request_credential()
        return await self.login(credential)

    async def create_account(self, credential: Credential) -> SessionSnapshot:
        """Register a new account and sign in.

        The published snapshot's ``onboarding`` flags tell the host which
        post-signup steps remain: PIN setup, profile completion, company.
        """
        self._check_credential(credential)
        if isinstance(credential, PasswordCredential):
            policy = self.validate_password(credential.password.get_secret_value())
            if not policy.is_valid:
                raise ValidationError(
                    "password policy", user_message=policy.error_message,
                )

        async with self._op_lock:
            if isinstance(credential, PasswordCredential):
                grant = await self._remote.create_user(
                    self.normalize_email(credential.email),
                    credential.password.get_secret_value(),
                )
            else:
                grant = await self._federated(credential)

            identity = grant.identity
            snapshot = self._commit_login(
                identity, grant.tokens, self._onboarding_for(identity),
            )
            self._logger.info(
                "Account created.",
                extra={
                    "event": "ACCOUNT_CREATED",
                    "user_id": identity.id,
                    "provider": str(identity.provider),
                },
            )
            return snapshot

    # ==================================================================
    # PIN quick-login
    # ==================================================================

    async def login_with_pin(self, user_id: str, email: str) -> SessionSnapshot:
        """Re-authenticate *user_id* after the caller verified their PIN.

        Raises
        ------
        RequiresFullLoginError
            No PIN, or no usable access token and no (valid) refresh secret.
        IdentityMismatchError
            Another account is signed in or cached on this device, or the
            server resolved the refreshed session to a different user.
        NetworkError, ServerError
            Refresh or profile fetch failed in transit.
        """
        async with self._op_lock:
            if not self._vault.has_secret(SecretKind.PIN, user_id):
                raise RequiresFullLoginError(f"no quick-login PIN for {user_id}")

            now = self._clock()
            cached = self._load_cached_tokens()
            if self._other_session_owner(user_id, cached) is not None:
                self._audit.record(
                    AuditEventType.UNAUTHORIZED_ACCESS, user_id, email,
                    resource_type="quick_login",
                )
                self._logger.warning(
                    "Quick login refused: another user's session is cached.",
                    extra={"event": "PIN_LOGIN_REFUSED", "user_id": user_id},
                )
                raise IdentityMismatchError("another user's session is active on this device")

            rotated: Optional[TokenBundle] = None
            if cached is not None and cached.user_id == user_id and not cached.is_expired(now):
                tokens = cached
            else:
                rotated = await self._refresh_for(user_id)
                tokens = rotated

            if tokens.user_id != user_id:
                raise IdentityMismatchError("refreshed session belongs to another user")

            identity = await self._remote.fetch_user(
                user_id, tokens.access_token.get_secret_value(),
            )
            if identity.id != user_id:
                raise IdentityMismatchError("server profile belongs to another user")

            return self._commit_login(identity, tokens, OnboardingStatus())

    # ==================================================================
    # Logout / expiry / deletion
    # ==================================================================

    async def logout(self) -> SessionSnapshot:
        """Clear the current identity and every cached token.

        Device profiles and vault secrets survive for the next quick login.
        """
        async with self._op_lock:
            return self._logout_locked()

    async def expire_session(self, generation: int) -> bool:
        """Log out for inactivity, but only the session that was observed.

        Returns ``False`` when the session already changed (for example a
        fresh login won the race against the timer).
        """
        async with self._op_lock:
            snapshot = self._session.snapshot
            identity = snapshot.identity
            if snapshot.generation != generation or identity is None:
                self._logger.debug(
                    "Ignoring stale session expiry (generation %d, current %d).",
                    generation, snapshot.generation,
                )
                return False
            self._audit.record(AuditEventType.SESSION_TIMEOUT, identity.id, identity.email)
            self._logout_locked()
            self._logger.info(
                "Session expired after inactivity.",
                extra={"event": "SESSION_TIMEOUT", "user_id": identity.id},
            )
            return True

    async def delete_account(self) -> SessionSnapshot:
        """Delete the server-side account of the current user, then log out.

        Raises
        ------
        NotAuthorizedError
            Nobody is signed in, the session is a guest, or the server
            refused the deletion.
        """
        async with self._op_lock:
            identity = self._session.current_identity
            if identity is None or identity.is_guest:
                raise NotAuthorizedError("account deletion requires a signed-in account")

            await self._remote.delete_user(identity.id, self._session.access_token)

            self._quietly(self._profiles.remove, identity.id)
            snapshot = self._logout_locked()
            self._logger.info(
                "Account deleted.",
                extra={"event": "ACCOUNT_DELETED", "user_id": identity.id},
            )
            return snapshot

    # ==================================================================
    # Restore / profile
    # ==================================================================

    async def restore(self) -> SessionSnapshot:
        """Rebuild the session from the local cache at startup."""
        async with self._op_lock:
            guest_id = self._store.get_text(_GUEST_ID_KEY)
            if self._store.get_text(_GUEST_MODE_KEY) == "1" and guest_id:
                return self._session.publish(SessionSnapshot(
                    state=AuthState.GUEST,
                    identity=Identity(id=guest_id, email="", provider=LoginProvider.GUEST),
                    restored=True,
                ))

            identity = self._load_cached_identity()
            if identity is None:
                return self._session.snapshot

            tokens = self._load_cached_tokens()
            if tokens is not None and tokens.user_id != identity.id:
                tokens = None
            self._logger.info(
                "Session restored from local cache.",
                extra={"event": "SESSION_RESTORED", "user_id": identity.id},
            )
            return self._session.publish(
                SessionSnapshot(
                    state=AuthState.AUTHENTICATED,
                    identity=identity,
                    onboarding=self._onboarding_for(identity),
                    restored=True,
                ),
                tokens,
            )

    async def refresh_user_profile(self) -> SessionSnapshot:
        """Re-fetch company association and admin flags for the current user."""
        async with self._op_lock:
            current = self._require_account()
            fetched = await self._remote.fetch_user(current.id, self._session.access_token)
            if fetched.id != current.id:
                raise IdentityMismatchError("profile fetch returned another user")
            identity = fetched.model_copy(update={"provider": current.provider})
            return self._commit_profile(identity)

    async def update_profile(
        self,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> SessionSnapshot:
        """Push new display fields to the server and the device profile."""
        if display_name is not None:
            result = self.validate_display_name(display_name)
            if not result.is_valid:
                raise ValidationError("display name", user_message=result.error_message)
            display_name = display_name.strip()

        async with self._op_lock:
            current = self._require_account()
            changes: dict[str, Any] = {}
            if display_name is not None:
                changes["display_name"] = display_name
            if avatar_url is not None:
                changes["avatar_url"] = avatar_url
            updated = await self._remote.update_user_profile(
                current.model_copy(update=changes), self._session.access_token,
            )
            if updated.id != current.id:
                raise IdentityMismatchError("profile update returned another user")
            return self._commit_profile(updated.model_copy(update={"provider": current.provider}))

    # ==================================================================
    # PIN management
    # ==================================================================

    async def set_pin(self, pin: str) -> SessionSnapshot:
        """Store (or replace) the quick-login PIN for the current account.

        Raises
        ------
        ValidationError
            *pin* is not 4-6 digits.
        StorageFailureError
            The vault write failed; any previous PIN is gone and quick
            login falls back to full login.
        """
        result = self.validate_pin(pin)
        if not result.is_valid:
            raise ValidationError("invalid PIN", user_message=result.error_message)

        async with self._op_lock:
            identity = self._require_account()
            replacing = self._vault.has_secret(SecretKind.PIN, identity.id)
            self._vault.set_secret(SecretKind.PIN, identity.id, pin)
            if replacing:
                self._audit.record(
                    AuditEventType.PASSWORD_CHANGED, identity.id, identity.email,
                    resource_type="pin",
                )
            snapshot = self._session.snapshot
            return self._session.publish(
                snapshot.model_copy(update={
                    "onboarding": snapshot.onboarding.model_copy(update={"needs_pin_setup": False}),
                }),
                self._session.tokens,
                same_session=True,
            )

    async def remove_pin(self) -> SessionSnapshot:
        async with self._op_lock:
            identity = self._require_account()
            self._vault.delete_secret(SecretKind.PIN, identity.id)
            snapshot = self._session.snapshot
            return self._session.publish(
                snapshot.model_copy(update={
                    "onboarding": snapshot.onboarding.model_copy(update={"needs_pin_setup": True}),
                }),
                self._session.tokens,
                same_session=True,
            )

    def has_pin(self, user_id: str) -> bool:
        return self._vault.has_secret(SecretKind.PIN, user_id)

    # ==================================================================
    # Private: remote steps (no local writes)
    # ==================================================================

    def _check_credential(self, credential: Credential) -> None:
        result = self.validate_email(credential.email)
        if not result.is_valid:
            raise ValidationError("invalid email", user_message=result.error_message)
        if isinstance(credential, PasswordCredential) and not credential.password.get_secret_value():
            raise ValidationError("empty password", user_message="Password is required.")

    async def _authenticate(self, credential: Credential) -> AuthGrant:
        if isinstance(credential, PasswordCredential):
            return await self._remote.login(
                self.normalize_email(credential.email),
                credential.password.get_secret_value(),
            )
        return await self._federated(credential)

    async def _federated(self, credential: FederatedCredential) -> AuthGrant:
        token = credential.identity_token.get_secret_value() if credential.identity_token else None
        return await self._remote.create_or_login_federated(
            credential.provider_user_id,
            self.normalize_email(credential.email),
            credential.display_name,
            token,
        )

    async def _complete_profile(self, grant: AuthGrant) -> Identity:
        """Merge server profile fields (company, admin) into the login identity.

        The login itself already succeeded; a failing profile fetch only
        costs the extra fields.
        """
        access = grant.tokens.access_token.get_secret_value() if grant.tokens else None
        try:
            profile = await self._remote.fetch_user(grant.identity.id, access)
        except SecureGateError as exc:
            self._logger.warning(
                "Profile fetch after login failed (%s); using login identity.", exc.code,
            )
            return grant.identity
        if profile.id != grant.identity.id:
            raise IdentityMismatchError("profile fetch returned another user")
        return grant.identity.model_copy(update={
            "display_name": profile.display_name or grant.identity.display_name,
            "avatar_url": profile.avatar_url or grant.identity.avatar_url,
            "company_id": profile.company_id,
            "is_company_admin": profile.is_company_admin,
        })

    async def _refresh_for(self, user_id: str) -> TokenBundle:
        """Exchange the vaulted refresh secret for a new token bundle."""
        with self._vault.reveal(SecretKind.REFRESH_TOKEN, user_id) as refresh_token:
            if refresh_token is None:
                raise RequiresFullLoginError(f"no refresh secret for {user_id}")
            try:
                return await self._remote.refresh_access_token(refresh_token)
            except (RequiresFullLoginError, InvalidCredentialsError, NotAuthorizedError) as exc:
                rejected = exc
        # The server rejected the secret; keeping it would only fail again.
        self._quietly(self._vault.delete_secret, SecretKind.REFRESH_TOKEN, user_id)
        raise RequiresFullLoginError(f"refresh secret rejected for {user_id}") from rejected

    # ==================================================================
    # Private: local commit (synchronous, no awaits)
    # ==================================================================

    def _commit_login(
        self,
        identity: Identity,
        tokens: Optional[TokenBundle],
        onboarding: OnboardingStatus,
    ) -> SessionSnapshot:
        if tokens is not None and tokens.refresh_token is not None:
            self._quietly(
                self._vault.set_secret,
                SecretKind.REFRESH_TOKEN,
                identity.id,
                tokens.refresh_token.get_secret_value(),
            )
        cached_tokens = tokens.without_refresh() if tokens is not None else None

        if cached_tokens is not None:
            self._quietly(self._store.set_json, _TOKENS_KEY, self._token_payload(cached_tokens))
        else:
            self._quietly(self._store.delete, _TOKENS_KEY)
        self._quietly(self._store.set_json, _IDENTITY_KEY, identity.model_dump(mode="json"))
        self._quietly(self._store.delete, _GUEST_MODE_KEY)
        self._quietly(
            self._profiles.upsert,
            identity.id,
            identity.email,
            identity.display_name,
            identity.avatar_url,
            self._clock(),
        )

        snapshot = self._session.publish(
            SessionSnapshot(
                state=AuthState.AUTHENTICATED, identity=identity, onboarding=onboarding,
            ),
            cached_tokens,
        )
        self._audit.record(
            AuditEventType.USER_LOGIN, identity.id, identity.email,
            resource_type=str(identity.provider),
        )
        self._logger.info(
            "User logged in.",
            extra={
                "event": "USER_LOGIN",
                "user_id": identity.id,
                "provider": str(identity.provider),
            },
        )
        return snapshot

    def _commit_profile(self, identity: Identity) -> SessionSnapshot:
        self._quietly(self._store.set_json, _IDENTITY_KEY, identity.model_dump(mode="json"))
        existing = self._profiles.get(identity.id)
        self._quietly(
            self._profiles.upsert,
            identity.id,
            identity.email,
            identity.display_name,
            identity.avatar_url,
            existing.last_login_at if existing is not None else self._clock(),
        )
        return self._session.publish(
            SessionSnapshot(
                state=AuthState.AUTHENTICATED,
                identity=identity,
                onboarding=self._onboarding_for(identity),
            ),
            self._session.tokens,
            same_session=True,
        )

    def _logout_locked(self) -> SessionSnapshot:
        identity = self._session.current_identity
        if identity is not None:
            self._audit.record(AuditEventType.USER_LOGOUT, identity.id, identity.email)
        self._quietly(self._store.delete, _TOKENS_KEY)
        self._quietly(self._store.delete, _IDENTITY_KEY)
        self._quietly(self._store.delete, _GUEST_MODE_KEY)
        snapshot = self._session.clear()
        self._logger.info(
            "User logged out.",
            extra={"event": "USER_LOGOUT", "user_id": identity.id if identity else None},
        )
        return snapshot

    # ==================================================================
    # Private: helpers
    # ==================================================================

    def _require_account(self) -> Identity:
        identity = self._session.current_identity
        if identity is None or identity.is_guest:
            raise NotAuthorizedError("this action requires a signed-in account")
        return identity

    def _onboarding_for(self, identity: Identity) -> OnboardingStatus:
        if identity.is_guest:
            return OnboardingStatus()
        return OnboardingStatus(
            needs_pin_setup=not self._vault.has_secret(SecretKind.PIN, identity.id),
            needs_profile_completion=not identity.display_name,
            needs_company=identity.company_id is None,
        )

    def _other_session_owner(
        self, user_id: str, cached: Optional[TokenBundle],
    ) -> Optional[str]:
        """Return the id of another account holding a session on this device.

        Token expiry does not matter here: an access token lapses long
        before the account's session does.
        """
        candidates = [
            self._session.current_identity,
            self._load_cached_identity(),
        ]
        for identity in candidates:
            if identity is not None and not identity.is_guest and identity.id != user_id:
                return identity.id
        if cached is not None and cached.user_id != user_id:
            return cached.user_id
        return None

    def _load_cached_tokens(self) -> Optional[TokenBundle]:
        raw = self._store.get_json(_TOKENS_KEY)
        if not isinstance(raw, dict):
            return None
        try:
            return TokenBundle.model_validate(raw)
        except PydanticValidationError:
            self._logger.warning("Discarding malformed cached token bundle.")
            return None

    def _load_cached_identity(self) -> Optional[Identity]:
        raw = self._store.get_json(_IDENTITY_KEY)
        if not isinstance(raw, dict):
            return None
        try:
            return Identity.model_validate(raw)
        except PydanticValidationError:
            self._logger.warning("Discarding malformed cached identity.")
            return None

    @staticmethod
    def _token_payload(tokens: TokenBundle) -> dict[str, Any]:
        return {
            "user_id": tokens.user_id,
            "access_token": tokens.access_token.get_secret_value(),
            "expires_at": tokens.expires_at.isoformat(),
        }

    def _quietly(self, fn: Callable[..., Any], *args: Any) -> None:
        """Run a local cache write; log a storage failure instead of raising."""
        try:
            fn(*args)
        except SecureGateError as exc:
            self._logger.error(
                "Local write %s failed: %s", getattr(fn, "__name__", fn), exc,
                extra={"event": "LOCAL_WRITE_FAILED"},
            )
