from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from securegate.auth import SessionManager
from securegate.models.enums import AppLifecycleEvent, AuditEventType, SessionTimerState
from securegate.models.identity import PasswordCredential
from securegate.services.identity_session import IdentitySession
from securegate.services.session_timer import SessionTimer

TIMEOUT_S = 15 * 60


@pytest.fixture
def timer(identity_session, session, store, logger, clock) -> SessionTimer:
    return SessionTimer(
        identity_session=identity_session,
        session=session,
        store=store,
        logger=logger,
        timeout_s=TIMEOUT_S,
        check_interval_s=60,
        clock=clock,
    )


async def _sign_in(identity_session, remote) -> None:
    remote.add_user("user-a", "a@example.com")
    await identity_session.login(PasswordCredential(email="a@example.com", password="correct-horse-1"))


@pytest.mark.asyncio
async def test_timer_is_expired_until_someone_signs_in(timer, identity_session, remote):
    assert timer.state == SessionTimerState.EXPIRED
    assert timer.touch() is False

    await _sign_in(identity_session, remote)
    assert timer.state == SessionTimerState.ACTIVE


@pytest.mark.asyncio
async def test_stays_active_just_below_timeout(timer, identity_session, remote, clock):
    await _sign_in(identity_session, remote)

    clock.advance(seconds=TIMEOUT_S - 1)
    assert await timer.check() == SessionTimerState.ACTIVE
    assert identity_session.is_authenticated


@pytest.mark.asyncio
async def test_expires_exactly_at_timeout_and_logs_out(timer, identity_session, remote, clock, audit):
    await _sign_in(identity_session, remote)

    clock.advance(seconds=TIMEOUT_S)
    assert await timer.check() == SessionTimerState.EXPIRED

    assert not identity_session.is_authenticated
    types = [e.event_type for e in audit.events()]
    assert types.count(AuditEventType.SESSION_TIMEOUT) == 1
    assert types[-1] == AuditEventType.USER_LOGOUT


@pytest.mark.asyncio
async def test_activity_resets_the_clock(timer, identity_session, remote, clock):
    await _sign_in(identity_session, remote)

    clock.advance(minutes=14)
    assert timer.touch() is True
    clock.advance(minutes=14)
    assert await timer.check() == SessionTimerState.ACTIVE
    assert timer.expires_at == clock.now + timedelta(minutes=1)


@pytest.mark.asyncio
async def test_expired_is_terminal_until_fresh_login(timer, identity_session, remote, clock):
    await _sign_in(identity_session, remote)
    clock.advance(minutes=20)
    await timer.check()

    assert timer.touch() is False
    assert timer.state == SessionTimerState.EXPIRED

    await identity_session.login(PasswordCredential(email="a@example.com", password="correct-horse-1"))
    assert timer.state == SessionTimerState.ACTIVE
    assert timer.last_activity_at == clock.now


@pytest.mark.asyncio
async def test_foreground_after_long_absence_expires_instead_of_resetting(
    timer, identity_session, remote, clock,
):
    await _sign_in(identity_session, remote)
    await timer.on_app_state_change(AppLifecycleEvent.BACKGROUND)
    clock.advance(minutes=30)

    state = await timer.on_app_state_change(AppLifecycleEvent.FOREGROUND)

    assert state == SessionTimerState.EXPIRED
    assert not identity_session.is_authenticated


@pytest.mark.asyncio
async def test_foreground_within_window_counts_as_activity(timer, identity_session, remote, clock):
    await _sign_in(identity_session, remote)
    clock.advance(minutes=10)

    await timer.on_foreground()

    assert timer.last_activity_at == clock.now


@pytest.mark.asyncio
async def test_clock_moving_backwards_reanchors(timer, identity_session, remote, clock):
    await _sign_in(identity_session, remote)
    clock.advance(hours=-2)

    assert await timer.check() == SessionTimerState.ACTIVE
    assert timer.last_activity_at == clock.now


@pytest.mark.asyncio
async def test_stale_expiry_does_not_log_out_a_fresh_session(identity_session, remote):
    await _sign_in(identity_session, remote)
    old_generation = identity_session.snapshot.generation

    await identity_session.logout()
    await identity_session.login(PasswordCredential(email="a@example.com", password="correct-horse-1"))

    assert await identity_session.expire_session(old_generation) is False
    assert identity_session.is_authenticated


@pytest.mark.asyncio
async def test_expiry_racing_a_login_keeps_the_new_session(timer, identity_session, remote, clock):
    await _sign_in(identity_session, remote)
    remote.add_user("user-b", "b@example.com")
    remote.login_gate = asyncio.Event()
    clock.advance(minutes=16)

    login = asyncio.create_task(identity_session.login(
        PasswordCredential(email="b@example.com", password="correct-horse-1"),
    ))
    await asyncio.sleep(0)
    check = asyncio.create_task(timer.check())
    await asyncio.sleep(0)
    remote.login_gate.set()
    await asyncio.gather(login, check)

    assert identity_session.current_identity.id == "user-b"
    assert timer.state == SessionTimerState.ACTIVE


def _restart(remote, vault, profiles, store, audit, logger, clock):
    session = SessionManager(logger=logger)
    restarted_session = IdentitySession(
        session=session, remote=remote, vault=vault, profiles=profiles,
        store=store, audit=audit, logger=logger, clock=clock,
    )
    restarted = SessionTimer(
        identity_session=restarted_session, session=session, store=store,
        logger=logger, timeout_s=TIMEOUT_S, clock=clock,
    )
    return restarted_session, restarted


@pytest.mark.asyncio
async def test_restart_after_long_idle_expires_restored_session(
    timer, identity_session, remote, vault, profiles, store, audit, logger, clock,
):
    await _sign_in(identity_session, remote)
    clock.advance(minutes=5)
    timer.touch()
    touched_at = clock.now
    timer.close()

    clock.advance(seconds=TIMEOUT_S)
    restarted_session, restarted = _restart(remote, vault, profiles, store, audit, logger, clock)
    await restarted_session.restore()

    assert restarted.last_activity_at == touched_at
    assert await restarted.check() == SessionTimerState.EXPIRED
    assert not restarted_session.is_authenticated


@pytest.mark.asyncio
async def test_restart_within_window_keeps_restored_session_active(
    timer, identity_session, remote, vault, profiles, store, audit, logger, clock,
):
    await _sign_in(identity_session, remote)
    clock.advance(minutes=5)
    timer.touch()
    touched_at = clock.now
    timer.close()

    clock.advance(minutes=12)
    restarted_session, restarted = _restart(remote, vault, profiles, store, audit, logger, clock)
    await restarted_session.restore()

    assert restarted.last_activity_at == touched_at
    assert await restarted.check() == SessionTimerState.ACTIVE
    assert restarted_session.is_authenticated
    assert restarted.expires_at == touched_at + timedelta(seconds=TIMEOUT_S)


@pytest.mark.asyncio
async def test_single_background_task(timer):
    timer.start()
    first = timer._task
    timer.start()

    assert timer._task is first
    await timer.stop()
    assert not timer.is_running
