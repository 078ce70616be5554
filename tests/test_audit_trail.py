from __future__ import annotations

import asyncio

import pytest

from securegate.errors import NetworkError, ServerError
from securegate.models.audit_models import ExportOptions
from securegate.models.enums import AuditEventType, ExportCategory
from securegate.services.audit_trail import AuditTrail


def _record_many(audit: AuditTrail, count: int, user_id: str = "guest-1") -> None:
    for i in range(count):
        audit.record(AuditEventType.CLIENT_CREATED, user_id, "", "client", f"c-{i}")


def test_record_appends_in_order_with_unique_ids(audit):
    _record_many(audit, 50)

    events = audit.events()
    ids = [e.id for e in events]
    assert len(set(ids)) == 50
    assert ids == sorted(ids)
    assert [e.resource_id for e in events] == [f"c-{i}" for i in range(50)]
    assert events[0].device_info == "pytest"


def test_local_sequence_is_bounded_to_most_recent(store, remote, logger):
    audit = AuditTrail(store=store, remote=remote, logger=logger, max_events=100, auto_sync=False)
    _record_many(audit, 250)

    events = audit.events()
    assert len(events) == 100
    assert [e.resource_id for e in events] == [f"c-{i}" for i in range(150, 250)]


def test_events_persist_across_instances(store, remote, logger, audit):
    _record_many(audit, 3)

    reloaded = AuditTrail(store=store, remote=remote, logger=logger, auto_sync=False)
    assert [e.id for e in reloaded.events()] == [e.id for e in audit.events()]

    reloaded.record(AuditEventType.USER_LOGOUT, "guest-1", "")
    assert reloaded.events()[-1].id > audit.events()[-1].id


def test_persisted_events_use_wire_names(store, audit):
    audit.record(AuditEventType.USER_LOGIN, "u1", "u1@example.com")

    stored = store.get_json("audit.events")[0]
    assert stored["eventType"] == "USER_LOGIN"
    assert stored["userEmail"] == "u1@example.com"


def test_record_never_raises_when_persistence_fails(remote, logger):
    class BrokenStore:
        def get(self, key):
            return None

        def get_text(self, key):
            return None

        def get_json(self, key):
            return None

        def set_json(self, key, value):
            from securegate.errors import StorageFailureError
            raise StorageFailureError("disk full")

    audit = AuditTrail(store=BrokenStore(), remote=remote, logger=logger, auto_sync=False)

    event = audit.record(AuditEventType.CLIENT_VIEWED, "u1", "u1@example.com")
    assert event is not None
    assert audit.events() == [event]


@pytest.mark.asyncio
async def test_guest_session_with_1200_records_keeps_1000_and_syncs_after_cursor(
    identity_session, audit, remote,
):
    snapshot = await identity_session.login_as_guest()
    guest_id = snapshot.identity.id
    await audit.sync()
    remote.uploads.clear()

    _record_many(audit, 1200, guest_id)

    events = audit.events()
    assert len(events) == 1000
    assert events[0].resource_id == "c-200"
    assert events[-1].resource_id == "c-1199"

    # The cursor (login event) was evicted, so everything held locally is re-sent.
    assert await audit.sync() == 1000
    assert remote.uploads[-1] == events
    assert audit.cursor == events[-1].id

    audit.record(AuditEventType.CLIENT_VIEWED, guest_id, "", "client", "c-5")
    assert await audit.sync() == 1
    assert [e.resource_id for e in remote.uploads[-1]] == ["c-5"]


@pytest.mark.asyncio
async def test_first_sync_uploads_everything_and_sets_cursor(audit, remote):
    _record_many(audit, 5)

    assert audit.cursor is None
    assert await audit.sync() == 5
    assert len(remote.uploads) == 1
    assert audit.cursor == audit.events()[-1].id


@pytest.mark.asyncio
async def test_sync_twice_uploads_once(audit, remote):
    _record_many(audit, 5)

    await audit.sync()
    await audit.sync()

    assert len(remote.uploads) == 1


@pytest.mark.asyncio
async def test_concurrent_sync_is_coalesced(audit, remote):
    _record_many(audit, 5)
    remote.upload_gate = asyncio.Event()

    first = asyncio.create_task(audit.sync())
    await asyncio.sleep(0)
    second = await audit.sync()
    remote.upload_gate.set()

    assert second == 0
    assert await first == 5
    assert remote.calls.count("upload_audit_batch") == 1


@pytest.mark.asyncio
async def test_failed_upload_keeps_cursor_and_retries_same_batch(audit, remote):
    _record_many(audit, 3)
    await audit.sync()
    cursor = audit.cursor
    _record_many(audit, 2, "guest-2")

    remote.upload_error = NetworkError("offline")
    assert await audit.sync() == 0
    assert audit.cursor == cursor

    remote.upload_error = None
    assert await audit.sync() == 2
    assert [e.user_id for e in remote.uploads[-1]] == ["guest-2", "guest-2"]


@pytest.mark.asyncio
async def test_force_sync_resends_history(audit, remote):
    _record_many(audit, 4)
    await audit.sync()

    assert await audit.force_sync() == 4
    assert len(remote.uploads) == 2
    assert remote.uploads[0] == remote.uploads[1]


@pytest.mark.asyncio
async def test_record_schedules_background_sync(store, remote, logger):
    audit = AuditTrail(store=store, remote=remote, logger=logger)

    audit.record(AuditEventType.USER_LOGIN, "u1", "u1@example.com")
    for _ in range(5):
        await asyncio.sleep(0)

    assert len(remote.uploads) == 1
    await audit.stop()


@pytest.mark.asyncio
async def test_record_with_failing_network_does_not_raise(store, remote, logger):
    remote.upload_error = ServerError("503", status_code=503)
    audit = AuditTrail(store=store, remote=remote, logger=logger)

    audit.record(AuditEventType.USER_LOGIN, "u1", "u1@example.com")
    for _ in range(5):
        await asyncio.sleep(0)

    assert audit.cursor is None
    assert len(audit.pending_events()) == 1
    await audit.stop()


@pytest.mark.asyncio
async def test_background_drain_start_stop(store, remote, logger):
    audit = AuditTrail(
        store=store, remote=remote, logger=logger, sync_interval_s=0.01, auto_sync=False,
    )
    audit.record(AuditEventType.USER_LOGIN, "u1", "u1@example.com")

    audit.start()
    audit.start()
    await asyncio.sleep(0.05)
    await audit.stop()

    assert not audit.is_running
    assert len(remote.uploads) == 1


@pytest.mark.asyncio
async def test_export_isolates_failing_section(audit, remote):
    remote.add_user("u1", "u1@example.com", display_name="Ana")
    remote.analyses["u1"] = [{"id": "an-1", "score": 7}]
    remote.clients_error = NetworkError("offline")
    audit.record(AuditEventType.CLIENT_VIEWED, "u1", "u1@example.com", "client", "c-1")

    text = await audit.export_as_text("u1", user_email="u1@example.com")

    assert "== Profile ==" in text
    assert "Display name: Ana" in text
    assert "[Error loading clients:" in text
    assert "- id: an-1, score: 7" in text
    assert "CLIENT_VIEWED client:c-1" in text
    assert audit.events()[-1].event_type == AuditEventType.DATA_EXPORTED


@pytest.mark.asyncio
async def test_export_respects_selected_categories(audit, remote):
    remote.add_user("u1", "u1@example.com")

    text = await audit.export_as_text(
        "u1", ExportOptions(categories=frozenset({ExportCategory.PROFILE})),
    )

    assert "== Profile ==" in text
    assert "== Clients ==" not in text
    assert "== Audit Log ==" not in text


def test_export_csv(audit):
    audit.record(AuditEventType.CLIENT_VIEWED, "u1", "u1@example.com", "client", "c-1")
    audit.record(AuditEventType.USER_LOGOUT, "u2", "u2@example.com")

    lines = audit.export_csv("u1").strip().split("\n")

    assert lines[0] == "Timestamp,User ID,User Email,Event Type,Resource Type,Resource ID,Device Info"
    assert len(lines) == 2
    assert ",u1,u1@example.com,CLIENT_VIEWED,client,c-1,pytest" in lines[1]
