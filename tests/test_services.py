from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from securegate.auth import SessionManager
from securegate.config import AppConfig
from securegate.database import DatabaseManager
from securegate.errors import NetworkError, RequiresFullLoginError
from securegate.models.enums import AppLifecycleEvent, SecretKind, SessionTimerState
from securegate.models.identity import PasswordCredential
from securegate.services import create_services, handle_app_state_change
from securegate.services.local_store import MemoryLocalStore
from securegate.services.vault import MemoryVaultBackend


@pytest.fixture
def services(tmp_path: Path, remote, logger):
    config = AppConfig(
        LOCAL_DB_PATH=str(tmp_path / "local.db"),
        PIN_MAX_ATTEMPTS=2,
        VAULT_KDF_ITERATIONS=1_000,
        LOG_FILE="",
    )
    db = DatabaseManager(
        supabase_url="", supabase_key="", sqlite_path=config.LOCAL_DB_PATH, logger=logger,
    )
    container = create_services(
        db=db,
        config=config,
        session=SessionManager(logger=logger),
        remote=remote,
        vault_backend=MemoryVaultBackend(),
        local_store=MemoryLocalStore(),
    )
    yield container
    container["session_timer"].close()
    db.close()


async def _drain_loop() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


def test_pin_entry_uses_configured_attempt_limit(services):
    services["vault"].set_secret(SecretKind.PIN, "user-a", "1234")
    entry = services["pin_entry"]("user-a", "a@example.com")

    assert entry.remaining_attempts == 2
    assert entry.verify("0000") is False
    with pytest.raises(RequiresFullLoginError):
        entry.verify("1111")
    assert entry.is_locked


@pytest.mark.asyncio
async def test_foreground_counts_as_activity_and_retries_audit_sync(services, remote):
    remote.add_user("user-a", "a@example.com")
    remote.upload_error = NetworkError("offline")
    await services["identity_session"].login(
        PasswordCredential(email="a@example.com", password="correct-horse-1"),
    )
    await _drain_loop()
    timer = services["session_timer"]
    signed_in_at = timer.last_activity_at
    assert remote.uploads == []

    remote.upload_error = None
    await handle_app_state_change(services, AppLifecycleEvent.FOREGROUND)
    await _drain_loop()

    assert timer.state == SessionTimerState.ACTIVE
    assert timer.last_activity_at >= signed_in_at
    assert len(remote.uploads) == 1
    assert services["audit_trail"].pending_events() == []


@pytest.mark.asyncio
async def test_background_persists_activity(services, remote):
    remote.add_user("user-a", "a@example.com")
    await services["identity_session"].login(
        PasswordCredential(email="a@example.com", password="correct-horse-1"),
    )

    await handle_app_state_change(services, AppLifecycleEvent.BACKGROUND)

    stored = services["local_store"].get_json("session.last_activity")
    assert stored["user_id"] == "user-a"
