from __future__ import annotations

import io
import json

from securegate.logger import StructuredLogger


def _last_entry(stream: io.StringIO) -> dict:
    return json.loads(stream.getvalue().strip().splitlines()[-1])


def test_credentials_in_extra_fields_are_redacted():
    stream = io.StringIO()
    log = StructuredLogger(name="securegate.tests.redaction", stream=stream, log_file="")

    log.info(
        "Quick login PIN set.",
        extra={"pin": "1234", "refresh_token": "refresh-a-1", "user_id": "user-a"},
    )

    entry = _last_entry(stream)
    assert entry["message"] == "Quick login PIN set."
    assert entry["extra"]["pin"] == "***"
    assert entry["extra"]["refresh_token"] == "***"
    assert entry["extra"]["user_id"] == "user-a"
    assert "1234" not in stream.getvalue()
    assert "refresh-a-1" not in stream.getvalue()


def test_entries_are_json_with_level_and_logger_name():
    stream = io.StringIO()
    log = StructuredLogger(name="securegate.tests.format", stream=stream, log_file="")

    log.warning("Audit sync failed (%s).", "network_error", extra={"event": "AUDIT_SYNC_FAILED"})

    entry = _last_entry(stream)
    assert entry["level"] == "WARNING"
    assert entry["logger_name"] == "securegate.tests.format"
    assert entry["message"] == "Audit sync failed (network_error)."
    assert entry["extra"]["event"] == "AUDIT_SYNC_FAILED"
