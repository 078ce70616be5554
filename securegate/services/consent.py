"""
Privacy Consent Service.

Records whether the user accepted the privacy notice and when.  Stored
as one JSON document in the Secure Local Store so it survives logout.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from securegate.logger import StructuredLogger
from securegate.services.base_service import BaseService
from securegate.services.local_store import LocalStore

_CONSENT_KEY: str = "privacy.consent"


class ConsentService(BaseService):
    """Device-level privacy consent flag with its timestamp."""

    def __init__(
        self,
        store: LocalStore,
        logger: StructuredLogger,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(logger)
        self._store: LocalStore = store
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(timezone.utc))

    @property
    def has_consented(self) -> bool:
        return self.consent_date is not None

    @property
    def consent_date(self) -> Optional[datetime]:
        raw = self._store.get_json(_CONSENT_KEY)
        if not isinstance(raw, dict) or not raw.get("accepted"):
            return None
        try:
            return datetime.fromisoformat(str(raw.get("at")))
        except ValueError:
            return None

    def record_consent(self) -> datetime:
        """Persist acceptance now.  Raises ``StorageFailureError`` on write failure."""
        now = self._clock()
        self._store.set_json(_CONSENT_KEY, {"accepted": True, "at": now.isoformat()})
        self._logger.info("Privacy consent recorded.", extra={"event": "CONSENT_RECORDED"})
        return now

    def revoke_consent(self) -> None:
        self._store.delete(_CONSENT_KEY)
        self._logger.info("Privacy consent revoked.", extra={"event": "CONSENT_REVOKED"})
