"""
Audit Trail Service.

Append-only, best-effort-synced security log.  Every call to
:meth:`AuditTrail.record` appends one immutable ``AuditEvent`` to a
bounded local sequence (oldest evicted beyond ``max_events``), persists
the sequence to the Secure Local Store and schedules an asynchronous
sync.  ``record`` never blocks on the network and never raises:
an audit failure must not crash the feature it instruments.

Sync protocol
-------------
The persisted *sync cursor* is the id of the last event the backend
acknowledged.  :meth:`sync` uploads every event strictly after the
cursor as one batch and advances the cursor only when the upload
succeeds, so delivery is at-least-once; the backend deduplicates on
event id.  Concurrent ``sync`` calls are coalesced: while one is in
flight, further calls return immediately without uploading.

If the cursor's event has been evicted from the local sequence the
whole sequence is treated as unsynced and re-sent.

Background drain
----------------
:meth:`start` / :meth:`stop` manage a single asyncio task that calls
``sync`` periodically with exponential backoff on consecutive failures,
mirroring the desktop sync worker's daemon loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import csv
import io
import os
import platform
import threading
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from securegate import __version__
from securegate.errors import SecureGateError
from securegate.logger import StructuredLogger
from securegate.models.audit_models import AuditEvent, ExportOptions
from securegate.models.enums import AppLifecycleEvent, AuditEventType, ExportCategory
from securegate.services.base_service import BaseService
from securegate.services.local_store import LocalStore
from securegate.services.remote_identity import RemoteIdentityService

_EVENTS_KEY: str = "audit.events"
_CURSOR_KEY: str = "audit.sync_cursor"

_CSV_HEADER: tuple[str, ...] = (
    "Timestamp",
    "User ID",
    "User Email",
    "Event Type",
    "Resource Type",
    "Resource ID",
    "Device Info",
)


def default_device_info() -> str:
    """Short description of this host for the ``deviceInfo`` field."""
    return f"SecureGate/{__version__} {platform.system()} {platform.release()} ({platform.machine()})"


class AuditTrail(BaseService):
    """Bounded local audit log with cursor-based incremental sync.

    Parameters
    ----------
    store:
        Secure Local Store holding the event sequence and the cursor.
    remote:
        Remote Identity Service used for uploads and export fetchers.
    logger:
        Structured logger; every record is echoed as an ``AUDIT:`` DEBUG line.
    max_events:
        Local capacity; oldest events are silently dropped beyond it.
    sync_interval_s, max_sync_interval_s:
        Background drain cadence and its backoff cap.
    device_info:
        Value for ``AuditEvent.device_info``; defaults to a host summary.
    clock:
        Source of "now"; injectable for tests.
    auto_sync:
        When ``False``, ``record`` never schedules a sync by itself.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteIdentityService,
        logger: StructuredLogger,
        max_events: int = 1000,
        sync_interval_s: float = 30.0,
        max_sync_interval_s: float = 300.0,
        device_info: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        auto_sync: bool = True,
    ) -> None:
        super().__init__(logger)
        self._store: LocalStore = store
        self._remote: RemoteIdentityService = remote
        self._max_events: int = max_events
        self._sync_interval_s: float = sync_interval_s
        self._max_sync_interval_s: float = max_sync_interval_s
        self._device_info: str = device_info or default_device_info()
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(timezone.utc))
        self._auto_sync: bool = auto_sync

        self._lock: threading.Lock = threading.Lock()
        self._last_id_micros: int = 0
        self._events: list[AuditEvent] = self._load_events()

        self._sync_in_flight: bool = False
        self._sync_done: Optional[asyncio.Event] = None
        self._consecutive_failures: int = 0
        self._pending_tasks: set[asyncio.Task[Any]] = set()
        self._drain_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(
        self,
        event_type: AuditEventType,
        user_id: str,
        user_email: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> Optional[AuditEvent]:
        """Append one event and schedule a sync.

        Safe to call from any thread.  Returns the event, or ``None`` if
        it could not even be constructed; never raises.
        """
        try:
            with self._lock:
                event = AuditEvent(
                    id=self._next_id(),
                    user_id=user_id,
                    user_email=user_email,
                    event_type=event_type,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    timestamp=self._clock(),
                    device_info=self._device_info,
                )
                self._events.append(event)
                if len(self._events) > self._max_events:
                    del self._events[: len(self._events) - self._max_events]
                persisted = self._persist_events(self._events)
        except Exception as exc:
            self._logger.error("Failed to create audit event %s: %s", event_type, exc)
            return None

        self._logger.debug("AUDIT: %s", event.model_dump_json(by_alias=True))
        if not persisted:
            # Kept in memory; the next successful record persists it.
            self._logger.error(
                "Failed to persist audit log.",
                extra={"event": "AUDIT_PERSIST_FAILED"},
            )

        if self._auto_sync:
            self.schedule_sync()
        return event

    def events(self) -> list[AuditEvent]:
        """Copy of the local sequence in insertion order."""
        with self._lock:
            return list(self._events)

    def events_for_user(self, user_id: str) -> list[AuditEvent]:
        return [e for e in self.events() if e.user_id == user_id]

    @property
    def cursor(self) -> Optional[str]:
        return self._store.get_text(_CURSOR_KEY)

    def pending_events(self) -> list[AuditEvent]:
        """Events strictly after the sync cursor."""
        events = self.events()
        cursor = self.cursor
        if cursor is None:
            return events
        for index, event in enumerate(events):
            if event.id == cursor:
                return events[index + 1:]
        # Cursor evicted: everything still held locally may be unsynced.
        return events

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self) -> int:
        """Upload every event after the cursor as one batch.

        Returns the number of events acknowledged by the backend, ``0``
        when there was nothing to send, the upload failed, or another
        sync was already in flight.
        """
        if self._sync_in_flight:
            return 0

        self._sync_in_flight = True
        self._sync_done = asyncio.Event()
        try:
            batch = self.pending_events()
            if not batch:
                return 0
            try:
                await self._remote.upload_audit_batch(batch)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._consecutive_failures += 1
                code = exc.code if isinstance(exc, SecureGateError) else type(exc).__name__
                self._logger.warning(
                    "Audit sync of %d events failed (%s); will retry.", len(batch), code,
                    extra={"event": "AUDIT_SYNC_FAILED", "attempt": self._consecutive_failures},
                )
                return 0

            self._consecutive_failures = 0
            try:
                self._store.set_text(_CURSOR_KEY, batch[-1].id)
            except Exception as exc:
                # Same batch is re-sent next time; the backend dedups on id.
                self._logger.error("Failed to persist audit sync cursor: %s", exc)
                return 0
            self._logger.info(
                "Audit sync complete: %d events uploaded.", len(batch),
                extra={"event": "AUDIT_SYNCED", "count": len(batch)},
            )
            return len(batch)
        finally:
            self._sync_in_flight = False
            self._sync_done.set()

    async def force_sync(self) -> int:
        """Clear the cursor and re-send everything held locally."""
        while self._sync_in_flight and self._sync_done is not None:
            await self._sync_done.wait()
        self._store.delete(_CURSOR_KEY)
        self._logger.info("Audit sync cursor cleared; re-sending local history.")
        return await self.sync()

    def schedule_sync(self) -> Optional[asyncio.Task[int]]:
        """Start a sync on the running loop, if this thread has one.

        Without a running loop the background drain picks the events up.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        if self._sync_in_flight or self._pending_tasks:
            return None
        task = loop.create_task(self.sync())
        self._pending_tasks.add(task)
        task.add_done_callback(self._pending_tasks.discard)
        return task

    def on_app_state_change(self, event: AppLifecycleEvent) -> Optional[asyncio.Task[int]]:
        """Foreground and background transitions are both sync opportunities."""
        self._logger.debug("App state changed to %s; scheduling audit sync.", event)
        return self.schedule_sync()

    # ------------------------------------------------------------------
    # Background drain
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic drain on the running loop.

        Idempotent: calling ``start()`` while running is a no-op.
        """
        if self.is_running:
            self._logger.debug("Audit drain already running.")
            return
        self._consecutive_failures = 0
        self._drain_task = asyncio.get_running_loop().create_task(
            self._run_loop(), name="AuditDrain",
        )
        self._logger.info("Audit drain started.")

    async def stop(self) -> None:
        """Cancel the drain and any scheduled syncs.  Safe when not running."""
        tasks = list(self._pending_tasks)
        if self._drain_task is not None:
            tasks.append(self._drain_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._drain_task is not None:
            self._logger.info("Audit drain stopped.")
        self._drain_task = None

    @property
    def is_running(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self._calculate_backoff_interval())
            try:
                await self.sync()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.warning("Audit drain cycle failed", exc_info=True)

    def _calculate_backoff_interval(self) -> float:
        if self._consecutive_failures == 0:
            return self._sync_interval_s
        return min(
            self._sync_interval_s * (2 ** self._consecutive_failures),
            self._max_sync_interval_s,
        )

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def export_as_text(
        self,
        user_id: str,
        options: Optional[ExportOptions] = None,
        *,
        user_email: str = "",
        access_token: Optional[str] = None,
    ) -> str:
        """Human-readable export of the selected categories.

        Each section is fetched independently; a failing section is
        replaced by an inline error marker and the rest still render.
        A ``DATA_EXPORTED`` event is recorded afterwards.
        """
        opts = options or ExportOptions()
        lines: list[str] = [
            "SecureGate Data Export",
            f"Generated: {self._clock().isoformat()}",
            f"User ID: {user_id}",
        ]

        sections: list[tuple[ExportCategory, str, Callable[[], Awaitable[list[str]]]]] = [
            (ExportCategory.PROFILE, "Profile",
             lambda: self._profile_lines(user_id, access_token)),
            (ExportCategory.CLIENTS, "Clients",
             lambda: self._record_lines(self._remote.fetch_clients(user_id, access_token))),
            (ExportCategory.ANALYSES, "Analyses",
             lambda: self._record_lines(self._remote.fetch_analyses(user_id, access_token))),
            (ExportCategory.AUDIT_LOG, "Audit Log",
             lambda: self._audit_lines(user_id)),
        ]

        for category, title, build in sections:
            if not opts.includes(category):
                continue
            lines.append("")
            lines.append(f"== {title} ==")
            try:
                lines.extend(await build())
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                message = exc.user_message if isinstance(exc, SecureGateError) else str(exc)
                self._logger.warning("Export section %s failed: %s", category, exc)
                lines.append(f"[Error loading {title.lower()}: {message}]")

        self.record(
            AuditEventType.DATA_EXPORTED,
            user_id,
            user_email,
            resource_type="export",
            resource_id=",".join(sorted(str(c) for c in opts.categories)),
        )
        return "\n".join(lines) + "\n"

    def export_csv(self, user_id: Optional[str] = None) -> str:
        """CSV rendering of the local audit log, optionally for one user."""
        events = self.events_for_user(user_id) if user_id else self.events()
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(_CSV_HEADER)
        for e in events:
            writer.writerow((
                e.timestamp.isoformat(),
                e.user_id,
                e.user_email,
                str(e.event_type),
                e.resource_type or "",
                e.resource_id or "",
                e.device_info,
            ))
        return buffer.getvalue()

    async def _profile_lines(self, user_id: str, access_token: Optional[str]) -> list[str]:
        identity = await self._remote.fetch_user(user_id, access_token)
        return [
            f"Email: {identity.email}",
            f"Display name: {identity.display_name or '-'}",
            f"Company: {identity.company_id or '-'}",
            f"Company admin: {'yes' if identity.is_company_admin else 'no'}",
        ]

    @staticmethod
    async def _record_lines(fetch: Awaitable[Sequence[dict[str, Any]]]) -> list[str]:
        records = await fetch
        if not records:
            return ["(none)"]
        return [
            "- " + ", ".join(f"{key}: {value}" for key, value in sorted(record.items()))
            for record in records
        ]

    async def _audit_lines(self, user_id: str) -> list[str]:
        events = self.events_for_user(user_id)
        if not events:
            return ["(none)"]
        lines: list[str] = []
        for e in events:
            resource = f" {e.resource_type}:{e.resource_id}" if e.resource_type else ""
            lines.append(f"{e.timestamp.isoformat()} {e.event_type}{resource}")
        return lines

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _next_id(self) -> str:
        """Time-ordered id: hex microseconds, bumped to stay strictly increasing."""
        micros = time.time_ns() // 1_000
        if micros <= self._last_id_micros:
            micros = self._last_id_micros + 1
        self._last_id_micros = micros
        return f"{micros:016x}-{os.urandom(4).hex()}"

    def _load_events(self) -> list[AuditEvent]:
        raw = self._store.get_json(_EVENTS_KEY)
        if not isinstance(raw, list):
            return []
        events: list[AuditEvent] = []
        for item in raw:
            try:
                events.append(AuditEvent.model_validate(item))
            except PydanticValidationError:
                self._logger.warning("Skipping malformed audit event in local store.")
        for e in events:
            prefix = e.id.split("-", 1)[0]
            try:
                self._last_id_micros = max(self._last_id_micros, int(prefix, 16))
            except ValueError:
                continue
        return events[-self._max_events:]

    def _persist_events(self, events: list[AuditEvent]) -> bool:
        """Write the whole sequence; called with ``_lock`` held."""
        try:
            self._store.set_json(
                _EVENTS_KEY, [e.model_dump(mode="json", by_alias=True) for e in events],
            )
        except SecureGateError:
            return False
        return True
