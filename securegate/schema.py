"""
Centralized SQLite Schema Initialization.

Defines the local schema for the SecureGate core and a single
entry-point -- :func:`initialize_schema` -- that creates all required
tables idempotently.  A ``schema_version`` row tracks the applied
version so later migrations can roll forward without data loss.

Tables
~~~~~~
- ``kv_store``: the Secure Local Store (sync cursor, device profiles,
  cached identity, last-activity timestamp, audit sequence, consent).
- ``vault_secrets``: AES-256-GCM ciphertexts written by
  ``EncryptedVaultBackend``, one row per ``(service, account)``.

Usage::

    from securegate.schema import initialize_schema

    initialize_schema(db.sqlite, StructuredLogger(name="securegate.schema"))
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable

from securegate.logger import StructuredLogger

__all__ = ["CURRENT_SCHEMA_VERSION", "initialize_schema"]

CURRENT_SCHEMA_VERSION: int = 1

_TABLE_DEFINITIONS: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        version INTEGER NOT NULL,
        applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS kv_store (
        key TEXT PRIMARY KEY,
        value BLOB NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vault_secrets (
        service TEXT NOT NULL,
        account TEXT NOT NULL,
        ciphertext BLOB NOT NULL,
        nonce BLOB NOT NULL,
        tag BLOB NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (service, account)
    )
    """,
]

# version N -> callable upgrading from N to N+1
_MIGRATIONS: dict[int, Callable[[sqlite3.Connection], None]] = {}


def _get_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT version FROM schema_version WHERE id = 1").fetchone()
    return int(row[0]) if row else 0


def initialize_schema(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Create every table and apply pending migrations in one transaction.

    Safe to call on every startup.

    Raises
    ------
    sqlite3.Error
        When DDL fails; the transaction is rolled back first.
    """
    try:
        conn.execute(_TABLE_DEFINITIONS[0])
        version = _get_version(conn)

        if version == 0:
            for ddl in _TABLE_DEFINITIONS[1:]:
                conn.execute(ddl)
        else:
            for step in range(version, CURRENT_SCHEMA_VERSION):
                _MIGRATIONS[step](conn)

        conn.execute(
            """
            INSERT INTO schema_version (id, version) VALUES (1, ?)
            ON CONFLICT(id) DO UPDATE SET
                version = excluded.version,
                applied_at = CURRENT_TIMESTAMP
            """,
            (CURRENT_SCHEMA_VERSION,),
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        logger.error("Schema initialization failed; rolled back.", exc_info=True)
        raise

    if version != CURRENT_SCHEMA_VERSION:
        logger.info(
            "Local schema at version %d (was %d).", CURRENT_SCHEMA_VERSION, version,
        )
