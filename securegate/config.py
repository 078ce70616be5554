"""
Application Configuration.

Pydantic Settings model for the SecureGate core.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Supabase (Remote Identity Service) ---
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: SecretStr = SecretStr("")
    REMOTE_TIMEOUT_S: float = 30.0

    # --- Secure Local Store ---
    LOCAL_DB_PATH: str = "securegate_local.db"

    # --- Session Timer ---
    SESSION_TIMEOUT_S: float = 15 * 60
    SESSION_CHECK_INTERVAL_S: float = 60.0

    # --- Audit Trail ---
    AUDIT_MAX_LOCAL_EVENTS: int = 1000
    AUDIT_SYNC_INTERVAL_S: float = 30.0
    AUDIT_MAX_SYNC_INTERVAL_S: float = 300.0

    # --- Device profiles / quick login ---
    MAX_DEVICE_PROFILES: int = 5
    PIN_MAX_ATTEMPTS: int = 3
    PIN_MIN_LENGTH: int = 4
    PIN_MAX_LENGTH: int = 6

    # --- Secure Vault ---
    VAULT_KDF_ITERATIONS: int = 600_000
    VAULT_SALT_FILE: str = ""  # empty -> ~/.securegate_vault_salt

    # --- Logging ---
    LOG_FILE: str = "securegate.log"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @field_validator("SESSION_CHECK_INTERVAL_S")
    @classmethod
    def _check_cadence(cls, value: float) -> float:
        """The inactivity check must run at least once per minute."""
        if value <= 0 or value > 60:
            raise ValueError("SESSION_CHECK_INTERVAL_S must be in (0, 60]")
        return value

    @field_validator("AUDIT_MAX_LOCAL_EVENTS", "MAX_DEVICE_PROFILES", "PIN_MAX_ATTEMPTS")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when critical configuration is empty.

        Pydantic silently falls back to defaults when ``.env`` is missing,
        so operators get a log line telling them the core is running with
        placeholder values.
        """
        _log = logging.getLogger("securegate.config")

        if not Path(".env").exists():
            _log.warning(
                "No .env file found; all configuration loaded from "
                "environment variables or defaults."
            )

        if not self.SUPABASE_URL:
            _log.warning(
                "SUPABASE_URL is empty; the Remote Identity Service is "
                "disabled. Only guest mode and local state are available."
            )

        return self

    @property
    def vault_salt_path(self) -> Path:
        """Resolved location of the per-machine vault salt file."""
        if self.VAULT_SALT_FILE:
            return Path(self.VAULT_SALT_FILE)
        return Path.home() / ".securegate_vault_salt"


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    Uses a check-lock-check pattern to avoid the lock overhead on the
    fast path while remaining thread-safe during first initialisation.
    Prefer direct constructor injection of ``AppConfig`` in new code.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
