"""
Authentication & Compliance Services Package.

The ``create_services()`` factory wires the local store, vault, remote
identity adapter, audit trail, identity session and session timer
together, returning a typed dict that the host application consumes
without knowing the internal dependency graph.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, TypedDict

from securegate.auth import SessionManager
from securegate.config import AppConfig
from securegate.database import DatabaseManager
from securegate.logger import get_logger
from securegate.models.enums import AppLifecycleEvent
from securegate.services.audit_trail import AuditTrail
from securegate.services.consent import ConsentService
from securegate.services.device_profiles import DeviceProfileStore
from securegate.services.identity_session import IdentitySession
from securegate.services.local_store import LocalStore, SqliteLocalStore
from securegate.services.pin_entry import PinEntrySession
from securegate.services.remote_identity import RemoteIdentityService, SupabaseIdentityService
from securegate.services.session_timer import SessionTimer
from securegate.services.vault import EncryptedVaultBackend, SecureVault, VaultBackend


class ServiceContainer(TypedDict):
    """Typed container for all core services."""

    # --- Storage ---
    local_store: LocalStore
    vault: SecureVault
    device_profiles: DeviceProfileStore
    consent: ConsentService

    # --- Remote ---
    remote_identity: RemoteIdentityService

    # --- Session & compliance ---
    audit_trail: AuditTrail
    identity_session: IdentitySession
    session_timer: SessionTimer
    pin_entry: Callable[[str, str], PinEntrySession]


def create_services(
    db: DatabaseManager,
    config: AppConfig,
    session: SessionManager,
    remote: Optional[RemoteIdentityService] = None,
    vault_backend: Optional[VaultBackend] = None,
    local_store: Optional[LocalStore] = None,
) -> ServiceContainer:
    """
    Wire every service together.

    This is the single composition root for the service layer.  The
    host calls this once at startup.

    Args:
        db: Initialised DatabaseManager with SQLite ready (Supabase optional).
        config: Application configuration.
        session: Shared snapshot holder.
        remote: Override for the Supabase adapter (tests, other backends).
        vault_backend: Override for the encrypted SQLite vault backend.
        local_store: Override for the SQLite key-value store.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = get_logger("securegate.services")

    # ------------------------------------------------------------------
    # 1. Storage (leaf services)
    # ------------------------------------------------------------------
    store = local_store or SqliteLocalStore(db=db, logger=logger)
    backend = vault_backend or EncryptedVaultBackend(
        db=db,
        logger=logger,
        salt_path=Path(config.vault_salt_path),
        kdf_iterations=config.VAULT_KDF_ITERATIONS,
    )
    vault = SecureVault(
        backend=backend,
        logger=logger,
        pin_hash_iterations=config.VAULT_KDF_ITERATIONS,
    )
    device_profiles = DeviceProfileStore(
        store=store,
        vault=vault,
        logger=logger,
        max_profiles=config.MAX_DEVICE_PROFILES,
    )
    consent = ConsentService(store=store, logger=logger)

    # ------------------------------------------------------------------
    # 2. Remote Identity Service
    # ------------------------------------------------------------------
    remote_identity: RemoteIdentityService = remote or SupabaseIdentityService(
        db=db,
        logger=logger,
        timeout_s=config.REMOTE_TIMEOUT_S,
    )

    # ------------------------------------------------------------------
    # 3. Orchestration services (depend on other services)
    # ------------------------------------------------------------------
    audit_trail = AuditTrail(
        store=store,
        remote=remote_identity,
        logger=get_logger("securegate.audit"),
        max_events=config.AUDIT_MAX_LOCAL_EVENTS,
        sync_interval_s=config.AUDIT_SYNC_INTERVAL_S,
        max_sync_interval_s=config.AUDIT_MAX_SYNC_INTERVAL_S,
    )
    identity_session = IdentitySession(
        session=session,
        remote=remote_identity,
        vault=vault,
        profiles=device_profiles,
        store=store,
        audit=audit_trail,
        logger=logger,
        pin_min_length=config.PIN_MIN_LENGTH,
        pin_max_length=config.PIN_MAX_LENGTH,
    )
    session_timer = SessionTimer(
        identity_session=identity_session,
        session=session,
        store=store,
        logger=logger,
        timeout_s=config.SESSION_TIMEOUT_S,
        check_interval_s=config.SESSION_CHECK_INTERVAL_S,
    )

    def pin_entry(user_id: str, email: str) -> PinEntrySession:
        """Open a PIN prompt for one device profile."""
        return PinEntrySession(
            vault=vault,
            identity_session=identity_session,
            user_id=user_id,
            email=email,
            logger=logger,
            audit=audit_trail,
            max_attempts=config.PIN_MAX_ATTEMPTS,
        )

    return ServiceContainer(
        local_store=store,
        vault=vault,
        device_profiles=device_profiles,
        consent=consent,
        remote_identity=remote_identity,
        audit_trail=audit_trail,
        identity_session=identity_session,
        session_timer=session_timer,
        pin_entry=pin_entry,
    )


async def handle_app_state_change(
    services: ServiceContainer, event: AppLifecycleEvent,
) -> None:
    """Forward a host foreground/background transition to timer and trail."""
    await services["session_timer"].on_app_state_change(event)
    services["audit_trail"].on_app_state_change(event)
