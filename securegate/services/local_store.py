"""
Secure Local Store.

Generic key -> bytes persistence for non-secret state: the audit sync
cursor, the audit sequence, device profiles, the cached identity and
the last-activity timestamp.  Secrets never go here; they go through
``SecureVault``.

Every write is a single statement (atomic per key).  Write failures
raise ``StorageFailureError``; read failures are logged and read as
"missing".

``SqliteLocalStore`` uses the ``kv_store`` table::

    CREATE TABLE kv_store (
        key        TEXT PRIMARY KEY,
        value      BLOB NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
"""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from typing import Optional, Union

from securegate.database import DatabaseManager
from securegate.errors import StorageFailureError
from securegate.logger import StructuredLogger

JsonValue = Union[None, str, int, float, bool, list["JsonValue"], dict[str, "JsonValue"]]


class LocalStore(ABC):
    """Contract shared by every local store implementation."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the stored bytes for *key*, or ``None``."""

    @abstractmethod
    def set(self, key: str, value: bytes) -> None:
        """Replace the value for *key*.  Raises ``StorageFailureError``."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove *key*.  Deleting a missing key is a no-op."""

    # -- Typed convenience ---------------------------------------------------

    def get_text(self, key: str) -> Optional[str]:
        raw = self.get(key)
        return raw.decode("utf-8") if raw is not None else None

    def set_text(self, key: str, value: str) -> None:
        self.set(key, value.encode("utf-8"))

    def get_json(self, key: str) -> JsonValue:
        """Decode a JSON value; malformed payloads read as ``None``."""
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None

    def set_json(self, key: str, value: JsonValue) -> None:
        self.set(key, json.dumps(value, ensure_ascii=False).encode("utf-8"))


class SqliteLocalStore(LocalStore):
    """``kv_store``-backed implementation.

    Parameters
    ----------
    db:
        Initialised ``DatabaseManager`` with active SQLite connection.
    logger:
        Structured logger instance.
    """

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        self._db = db
        self._logger = logger

    def get(self, key: str) -> Optional[bytes]:
        try:
            row = self._db.sqlite.execute(
                "SELECT value FROM kv_store WHERE key = ?",
                (key,),
            ).fetchone()
        except Exception as exc:
            self._logger.warning("Failed to read kv_store[%s]: %s", key, exc)
            return None
        if row is None:
            return None
        value = row["value"]
        return value.encode("utf-8") if isinstance(value, str) else bytes(value)

    def set(self, key: str, value: bytes) -> None:
        try:
            with self._db.write_lock:
                self._db.sqlite.execute(
                    """
                    INSERT INTO kv_store (key, value)
                    VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value      = excluded.value,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (key, value),
                )
                self._db.sqlite.commit()
        except Exception as exc:
            self._logger.error("Failed to write kv_store[%s]: %s", key, exc)
            raise StorageFailureError(f"kv_store write failed for {key!r}") from exc

    def delete(self, key: str) -> None:
        try:
            with self._db.write_lock:
                self._db.sqlite.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                self._db.sqlite.commit()
        except Exception as exc:
            self._logger.error("Failed to delete kv_store[%s]: %s", key, exc)
            raise StorageFailureError(f"kv_store delete failed for {key!r}") from exc


class MemoryLocalStore(LocalStore):
    """Volatile in-process store for hosts without a writable disk."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._lock: threading.Lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)
