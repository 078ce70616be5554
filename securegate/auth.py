"""
Authentication & Session State.

Provides an injectable ``SessionManager`` that holds the current
``SessionSnapshot`` and the in-memory access token for the lifetime of
the process.

Usage::

    from securegate.auth import SessionManager

    session = SessionManager()
    unsubscribe = session.subscribe(lambda snap: print(snap.state))
    session.publish(SessionSnapshot(state=AuthState.GUEST, identity=guest))
    unsubscribe()

Only ``IdentitySession`` publishes; everybody else reads the snapshot or
subscribes to it.
"""

from __future__ import annotations

import threading
from typing import Callable, Optional

from securegate.logger import StructuredLogger
from securegate.models.enums import AuthState
from securegate.models.identity import Identity, SessionSnapshot, TokenBundle

SnapshotListener = Callable[[SessionSnapshot], None]


class SessionManager:
    """Injectable holder for the current session snapshot.

    Each instance maintains its own session state, eliminating the need
    for module-level globals.  Pass a single ``SessionManager`` through
    the service container so every component shares the same session.

    Parameters
    ----------
    logger:
        Optional structured logger used to report listener failures.
    """

    def __init__(self, logger: Optional[StructuredLogger] = None) -> None:
        self._lock: threading.RLock = threading.RLock()
        self._snapshot: SessionSnapshot = SessionSnapshot()
        self._tokens: Optional[TokenBundle] = None
        self._listeners: list[SnapshotListener] = []
        self._logger: Optional[StructuredLogger] = logger

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def current_identity(self) -> Optional[Identity]:
        return self.snapshot.identity

    @property
    def is_authenticated(self) -> bool:
        """``True`` when a guest or a confirmed user is signed in."""
        return self.snapshot.is_authenticated

    def publish(
        self,
        snapshot: SessionSnapshot,
        tokens: Optional[TokenBundle] = None,
        *,
        same_session: bool = False,
    ) -> SessionSnapshot:
        """Replace the snapshot (and the in-memory tokens) in one step.

        ``generation`` is bumped for every new session (login, logout,
        restore), so a consumer holding an older generation can tell its
        view is stale.  Pass ``same_session=True`` for in-session updates
        such as profile edits.  Listeners run synchronously after the swap.
        """
        with self._lock:
            previous = self._snapshot
            generation = previous.generation if same_session else previous.generation + 1
            published = snapshot.model_copy(update={"generation": generation})
            self._snapshot = published
            self._tokens = tokens if snapshot.state == AuthState.AUTHENTICATED else None
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(published)
            except Exception as exc:
                if self._logger is not None:
                    self._logger.error("Session listener raised: %s", exc)
        return published

    def clear(self) -> SessionSnapshot:
        """Publish a signed-out snapshot."""
        return self.publish(SessionSnapshot(state=AuthState.SIGNED_OUT))

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    @property
    def tokens(self) -> Optional[TokenBundle]:
        with self._lock:
            return self._tokens

    @property
    def access_token(self) -> Optional[str]:
        """Return the current access token, or ``None`` if not set."""
        with self._lock:
            if self._tokens is None:
                return None
            return self._tokens.access_token.get_secret_value()

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe
