"""
SecureGate Host Entry Point.

Bootstraps the dependency graph via constructor injection, initialises
the local SQLite schema, restores the previous session and runs the
background session timer and audit drain until interrupted.  Every
subsystem is wired here; there are no module-level globals.

Usage::

    python main.py
"""

from __future__ import annotations

import asyncio
import atexit
import sys
from pathlib import Path

from securegate.auth import SessionManager
from securegate.config import get_config
from securegate.database import DatabaseManager
from securegate.logger import StructuredLogger, get_logger
from securegate.schema import initialize_schema
from securegate.services import ServiceContainer, create_services


async def run(services: ServiceContainer, logger: StructuredLogger) -> None:
    """Restore the session and keep the background tasks alive."""
    identity_session = services["identity_session"]
    session_timer = services["session_timer"]
    audit_trail = services["audit_trail"]

    snapshot = await identity_session.restore()
    logger.info(
        "Session state at startup: %s.", snapshot.state,
        extra={"event": "STARTUP_SESSION", "generation": snapshot.generation},
    )

    # An idle restart expires here instead of a minute later.
    await session_timer.check()
    session_timer.start()
    audit_trail.start()
    try:
        await asyncio.Event().wait()
    finally:
        await session_timer.stop()
        await audit_trail.stop()
        session_timer.close()


def main() -> None:
    """Application entry point: wire dependencies and run the core."""
    logger: StructuredLogger = get_logger("securegate.main")
    logger.info("Starting SecureGate...")

    # ------------------------------------------------------------------
    # 1. Configuration (from .env / environment variables)
    # ------------------------------------------------------------------
    config = get_config()

    # ------------------------------------------------------------------
    # 2. Database Manager (Supabase optional, SQLite always)
    # ------------------------------------------------------------------
    db = DatabaseManager(
        supabase_url=config.SUPABASE_URL,
        supabase_key=config.SUPABASE_ANON_KEY.get_secret_value(),
        sqlite_path=Path(config.LOCAL_DB_PATH),
        logger=StructuredLogger(name="securegate.database"),
    )

    # DatabaseManager.close() is idempotent, so the atexit hook is a
    # second net behind the finally block below.
    atexit.register(db.close)

    # ------------------------------------------------------------------
    # 3. SQLite Schema Initialization (idempotent)
    # ------------------------------------------------------------------
    initialize_schema(db.sqlite, StructuredLogger(name="securegate.schema"))

    # ------------------------------------------------------------------
    # 4. Session Manager + Service Container
    # ------------------------------------------------------------------
    session = SessionManager(logger=get_logger("securegate.session"))
    services = create_services(db=db, config=config, session=session)

    # ------------------------------------------------------------------
    # 5. Run until interrupted
    # ------------------------------------------------------------------
    try:
        asyncio.run(run(services, logger))
    finally:
        db.close()
        logger.info("SecureGate shut down.")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        sys.stderr.write(f"FATAL: {type(exc).__name__}: {exc}\n")
        sys.exit(1)
