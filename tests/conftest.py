"""Shared fixtures and in-memory fakes for the SecureGate test suite."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

# Console-only logging and no backend; must be set before the config is cached.
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("SUPABASE_URL", "")

import pytest

from securegate.auth import SessionManager
from securegate.errors import InvalidCredentialsError, RequiresFullLoginError
from securegate.logger import StructuredLogger
from securegate.models.audit_models import AuditEvent
from securegate.models.enums import LoginProvider
from securegate.models.identity import AuthGrant, Identity, TokenBundle
from securegate.services.audit_trail import AuditTrail
from securegate.services.device_profiles import DeviceProfileStore
from securegate.services.identity_session import IdentitySession
from securegate.services.local_store import MemoryLocalStore
from securegate.services.vault import MemoryVaultBackend, SecureVault, VaultBackend


class ManualClock:
    """Clock that only moves when a test tells it to."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now: datetime = start or datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FailingVaultBackend(MemoryVaultBackend):
    """Memory backend whose writes can be made to fail on demand."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_writes: bool = False
        self.fail_reads: bool = False

    def read(self, service: str, account: str) -> Optional[bytes]:
        if self.fail_reads:
            raise OSError("simulated keychain read fault")
        return super().read(service, account)

    def write(self, service: str, account: str, value: bytes) -> None:
        if self.fail_writes:
            raise OSError("simulated keychain write fault")
        super().write(service, account, value)


class FakeRemoteIdentityService:
    """In-memory Remote Identity Service.

    Accounts are registered with :meth:`add_user`.  ``*_error`` attributes
    make the next matching call raise; ``*_gate`` events hold a call open
    until the test sets them.
    """

    def __init__(self) -> None:
        self.identities: dict[str, Identity] = {}
        self.passwords: dict[str, tuple[str, str]] = {}
        self.refresh_tokens: dict[str, str] = {}
        self.refresh_overrides: dict[str, TokenBundle] = {}
        self.fetch_overrides: dict[str, Identity] = {}
        self.uploads: list[list[AuditEvent]] = []
        self.deleted: list[str] = []
        self.clients: dict[str, list[dict[str, Any]]] = {}
        self.analyses: dict[str, list[dict[str, Any]]] = {}

        self.login_error: Optional[Exception] = None
        self.refresh_error: Optional[Exception] = None
        self.upload_error: Optional[Exception] = None
        self.clients_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None

        self.login_gate: Optional[asyncio.Event] = None
        self.create_gate: Optional[asyncio.Event] = None
        self.refresh_gate: Optional[asyncio.Event] = None
        self.fetch_gate: Optional[asyncio.Event] = None
        self.upload_gate: Optional[asyncio.Event] = None

        self.calls: list[str] = []
        self._issued: int = 0

    # -- setup helpers ---------------------------------------------------

    def add_user(
        self,
        user_id: str,
        email: str,
        password: str = "correct-horse-1",
        display_name: Optional[str] = None,
        company_id: Optional[str] = None,
    ) -> Identity:
        identity = Identity(
            id=user_id,
            email=email,
            display_name=display_name,
            company_id=company_id,
            provider=LoginProvider.PASSWORD,
        )
        self.identities[user_id] = identity
        self.passwords[email] = (user_id, password)
        return identity

    def issue_tokens(self, user_id: str, ttl: timedelta = timedelta(hours=1)) -> TokenBundle:
        self._issued += 1
        refresh = f"refresh-{user_id}-{self._issued}"
        self.refresh_tokens[refresh] = user_id
        return TokenBundle(
            user_id=user_id,
            access_token=f"access-{user_id}-{self._issued}",
            refresh_token=refresh,
            expires_at=datetime.now(timezone.utc) + ttl,
        )

    # -- RemoteIdentityService -------------------------------------------

    async def login(self, email: str, password: str) -> AuthGrant:
        self.calls.append("login")
        if self.login_gate is not None:
            await self.login_gate.wait()
        if self.login_error is not None:
            raise self.login_error
        entry = self.passwords.get(email)
        if entry is None or entry[1] != password:
            raise InvalidCredentialsError("invalid login credentials")
        user_id = entry[0]
        return AuthGrant(identity=self.identities[user_id], tokens=self.issue_tokens(user_id))

    async def create_user(self, email: str, password: str) -> AuthGrant:
        self.calls.append("create_user")
        if self.create_gate is not None:
            await self.create_gate.wait()
        user_id = f"user-{len(self.identities) + 1}"
        identity = self.add_user(user_id, email, password)
        return AuthGrant(identity=identity, tokens=self.issue_tokens(user_id))

    async def create_or_login_federated(
        self,
        provider_user_id: str,
        email: str,
        display_name: Optional[str] = None,
        identity_token: Optional[str] = None,
    ) -> AuthGrant:
        self.calls.append("create_or_login_federated")
        identity = self.identities.get(provider_user_id)
        if identity is None:
            identity = Identity(
                id=provider_user_id,
                email=email,
                display_name=display_name,
                provider=LoginProvider.FEDERATED,
            )
            self.identities[provider_user_id] = identity
        return AuthGrant(identity=identity, tokens=self.issue_tokens(provider_user_id))

    async def refresh_access_token(self, refresh_token: str) -> TokenBundle:
        self.calls.append("refresh_access_token")
        if self.refresh_gate is not None:
            await self.refresh_gate.wait()
        if self.refresh_error is not None:
            raise self.refresh_error
        if refresh_token in self.refresh_overrides:
            return self.refresh_overrides[refresh_token]
        user_id = self.refresh_tokens.pop(refresh_token, None)
        if user_id is None:
            raise RequiresFullLoginError("refresh token not found")
        return self.issue_tokens(user_id)

    async def fetch_user(self, user_id: str, access_token: Optional[str] = None) -> Identity:
        self.calls.append("fetch_user")
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if user_id in self.fetch_overrides:
            return self.fetch_overrides[user_id]
        return self.identities[user_id]

    async def update_user_profile(
        self, identity: Identity, access_token: Optional[str] = None,
    ) -> Identity:
        self.calls.append("update_user_profile")
        self.identities[identity.id] = identity
        return identity

    async def delete_user(self, user_id: str, access_token: Optional[str] = None) -> None:
        self.calls.append("delete_user")
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(user_id)
        self.identities.pop(user_id, None)

    async def upload_audit_batch(self, events: Sequence[AuditEvent]) -> None:
        self.calls.append("upload_audit_batch")
        if self.upload_gate is not None:
            await self.upload_gate.wait()
        if self.upload_error is not None:
            raise self.upload_error
        self.uploads.append(list(events))

    async def fetch_clients(
        self, user_id: str, access_token: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        if self.clients_error is not None:
            raise self.clients_error
        return self.clients.get(user_id, [])

    async def fetch_analyses(
        self, user_id: str, access_token: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        return self.analyses.get(user_id, [])


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def logger() -> StructuredLogger:
    return StructuredLogger(name="securegate.tests", log_file="")


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store() -> MemoryLocalStore:
    return MemoryLocalStore()


@pytest.fixture
def vault_backend() -> FailingVaultBackend:
    return FailingVaultBackend()


@pytest.fixture
def vault(vault_backend: VaultBackend, logger: StructuredLogger) -> SecureVault:
    # Low iteration count keeps PIN hashing fast in tests.
    return SecureVault(backend=vault_backend, logger=logger, pin_hash_iterations=1_000)


@pytest.fixture
def profiles(
    store: MemoryLocalStore, vault: SecureVault, logger: StructuredLogger,
) -> DeviceProfileStore:
    return DeviceProfileStore(store=store, vault=vault, logger=logger)


@pytest.fixture
def remote() -> FakeRemoteIdentityService:
    return FakeRemoteIdentityService()


@pytest.fixture
def audit(
    store: MemoryLocalStore, remote: FakeRemoteIdentityService, logger: StructuredLogger,
) -> AuditTrail:
    return AuditTrail(
        store=store, remote=remote, logger=logger, device_info="pytest", auto_sync=False,
    )


@pytest.fixture
def session(logger: StructuredLogger) -> SessionManager:
    return SessionManager(logger=logger)


@pytest.fixture
def identity_session(
    session: SessionManager,
    remote: FakeRemoteIdentityService,
    vault: SecureVault,
    profiles: DeviceProfileStore,
    store: MemoryLocalStore,
    audit: AuditTrail,
    logger: StructuredLogger,
) -> IdentitySession:
    return IdentitySession(
        session=session,
        remote=remote,
        vault=vault,
        profiles=profiles,
        store=store,
        audit=audit,
        logger=logger,
    )
