"""
Session Timer Service.

Inactivity expiry for the current session, modelled as a two-state
machine:

- ``ACTIVE`` -> ``ACTIVE`` on any activity signal (``touch``, app
  foregrounded): ``last_activity_at`` is reset to now.
- ``ACTIVE`` -> ``EXPIRED`` when a check finds
  ``now - last_activity_at >= timeout``.  The expiry is handed to
  ``IdentitySession.expire_session`` which records ``SESSION_TIMEOUT``
  and logs out under the session's single-writer lock.
- ``EXPIRED`` is terminal: activity signals are ignored and only a new
  authenticated session (observed through the ``SessionManager``
  subscription) re-arms the timer.  A session restored at startup
  resumes from the persisted ``last_activity_at``.

One asyncio task started by :meth:`start` is the only periodic source
of checks.  The timer remembers the session *generation* it armed for,
so an expiry that races a fresh login logs nobody out.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from securegate.auth import SessionManager
from securegate.errors import SecureGateError
from securegate.logger import StructuredLogger
from securegate.models.enums import AppLifecycleEvent, SessionTimerState
from securegate.models.identity import SessionSnapshot
from securegate.services.base_service import BaseService
from securegate.services.identity_session import IdentitySession
from securegate.services.local_store import LocalStore

_LAST_ACTIVITY_KEY: str = "session.last_activity"


class SessionTimer(BaseService):
    """Single-source inactivity timer bound to the current session.

    Parameters
    ----------
    identity_session:
        Receives the expiry hand-off.
    session:
        Snapshot holder; the timer re-arms on every new authenticated
        generation and disarms on sign-out.
    store:
        Secure Local Store for ``last_activity_at``.
    logger:
        Structured logger.
    timeout_s:
        Inactivity window.
    check_interval_s:
        Period of the background check.
    clock:
        Source of "now"; injectable for tests.
    """

    def __init__(
        self,
        identity_session: IdentitySession,
        session: SessionManager,
        store: LocalStore,
        logger: StructuredLogger,
        timeout_s: float = 15 * 60,
        check_interval_s: float = 60.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(logger)
        self._identity_session: IdentitySession = identity_session
        self._store: LocalStore = store
        self._timeout: timedelta = timedelta(seconds=timeout_s)
        self._check_interval_s: float = check_interval_s
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(timezone.utc))

        self._state: SessionTimerState = SessionTimerState.EXPIRED
        self._generation: Optional[int] = None
        self._user_id: Optional[str] = None
        self._last_activity_at: Optional[datetime] = None
        self._task: Optional[asyncio.Task[None]] = None

        self._unsubscribe: Callable[[], None] = session.subscribe(self._on_snapshot)
        self._on_snapshot(session.snapshot)

    # ------------------------------------------------------------------
    # Derived clock
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionTimerState:
        return self._state

    @property
    def last_activity_at(self) -> Optional[datetime]:
        return self._last_activity_at

    @property
    def expires_at(self) -> Optional[datetime]:
        if self._last_activity_at is None:
            return None
        return self._last_activity_at + self._timeout

    def is_expired_at(self, now: datetime) -> bool:
        """``now - last_activity_at >= timeout`` for the armed session."""
        if self._last_activity_at is None:
            return True
        return now - self._last_activity_at >= self._timeout

    # ------------------------------------------------------------------
    # Activity signals
    # ------------------------------------------------------------------

    def touch(self) -> bool:
        """Record user activity.  Ignored (``False``) once expired."""
        if self._state != SessionTimerState.ACTIVE:
            return False
        self._set_activity(self._clock())
        return True

    async def on_foreground(self) -> SessionTimerState:
        """Check first, so a long absence expires instead of being reset."""
        state = await self.check()
        if state == SessionTimerState.ACTIVE:
            self.touch()
        return self._state

    async def on_background(self) -> None:
        if self._last_activity_at is not None:
            self._persist_activity()

    async def on_app_state_change(self, event: AppLifecycleEvent) -> SessionTimerState:
        if event == AppLifecycleEvent.FOREGROUND:
            return await self.on_foreground()
        await self.on_background()
        return self._state

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def check(self) -> SessionTimerState:
        """Evaluate expiry now; on transition, hand off to the identity session."""
        if self._state != SessionTimerState.ACTIVE or self._last_activity_at is None:
            return self._state

        now = self._clock()
        if now < self._last_activity_at:
            # Wall clock moved backwards; re-anchor instead of extending forever.
            self._logger.warning("Clock moved backwards; re-anchoring session activity.")
            self._set_activity(now)
            return self._state

        if not self.is_expired_at(now):
            return self._state

        generation = self._generation
        self._state = SessionTimerState.EXPIRED
        self._logger.info(
            "Session inactive for %.0f s; expiring.",
            (now - self._last_activity_at).total_seconds(),
            extra={"event": "SESSION_EXPIRED", "user_id": self._user_id},
        )
        if generation is not None:
            try:
                await self._identity_session.expire_session(generation)
            except SecureGateError as exc:
                self._logger.error("Session expiry hand-off failed: %s", exc)
        return self._state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic check on the running loop.

        Idempotent: a second ``start()`` never creates a second timer.
        """
        if self.is_running:
            self._logger.debug("Session timer already running.")
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run_loop(), name="SessionTimer",
        )
        self._logger.info("Session timer started (timeout %s).", self._timeout)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        self._logger.info("Session timer stopped.")

    def close(self) -> None:
        """Detach from the session manager."""
        self._unsubscribe()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self._check_interval_s)
            try:
                await self.check()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.error("Session timer check failed", exc_info=True)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _on_snapshot(self, snapshot: SessionSnapshot) -> None:
        if not snapshot.is_authenticated or snapshot.identity is None:
            self._state = SessionTimerState.EXPIRED
            self._generation = None
            self._user_id = None
            self._last_activity_at = None
            return
        if snapshot.generation == self._generation:
            return
        self._generation = snapshot.generation
        self._user_id = snapshot.identity.id
        self._state = SessionTimerState.ACTIVE
        stored = self._stored_activity(snapshot.identity.id) if snapshot.restored else None
        if stored is not None:
            # An idle restart still expires on the next check.
            self._last_activity_at = stored
        else:
            self._set_activity(self._clock())

    def _stored_activity(self, user_id: str) -> Optional[datetime]:
        raw = self._store.get_json(_LAST_ACTIVITY_KEY)
        if not isinstance(raw, dict) or raw.get("user_id") != user_id:
            return None
        try:
            return datetime.fromisoformat(str(raw["at"]))
        except (KeyError, ValueError):
            return None

    def _set_activity(self, at: datetime) -> None:
        self._last_activity_at = at
        self._persist_activity()

    def _persist_activity(self) -> None:
        if self._user_id is None or self._last_activity_at is None:
            return
        try:
            self._store.set_json(
                _LAST_ACTIVITY_KEY,
                {"user_id": self._user_id, "at": self._last_activity_at.isoformat()},
            )
        except SecureGateError as exc:
            self._logger.warning("Could not persist last activity: %s", exc)
