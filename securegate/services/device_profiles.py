"""
Device Profile Store.

Bounded most-recently-used list of users who have signed in on this
device, independent of which account is currently active.  Persisted
as one JSON document in the Secure Local Store.  Removing a profile
cascades to that user's vault secrets.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from securegate.logger import StructuredLogger
from securegate.models.device_profile import DeviceProfile
from securegate.models.enums import SecretKind
from securegate.services.base_service import BaseService
from securegate.services.local_store import LocalStore
from securegate.services.vault import SecureVault

_PROFILES_KEY: str = "device.profiles"


class DeviceProfileStore(BaseService):
    """MRU list of device profiles, at most ``max_profiles`` long.

    Parameters
    ----------
    store:
        Secure Local Store holding the serialized list.
    vault:
        Vault whose per-user secrets are deleted on ``remove``.
    logger:
        Structured logger.
    max_profiles:
        Capacity; the oldest ``last_login_at`` is evicted beyond it.
    clock:
        Source of "now"; injectable for tests.
    """

    def __init__(
        self,
        store: LocalStore,
        vault: SecureVault,
        logger: StructuredLogger,
        max_profiles: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(logger)
        self._store: LocalStore = store
        self._vault: SecureVault = vault
        self._max_profiles: int = max_profiles
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(timezone.utc))
        self._lock: threading.Lock = threading.Lock()

    def list(self) -> list[DeviceProfile]:
        """Profiles sorted by ``last_login_at``, most recent first."""
        with self._lock:
            return self._load()

    def get(self, user_id: str) -> Optional[DeviceProfile]:
        return next((p for p in self.list() if p.user_id == user_id), None)

    def upsert(
        self,
        user_id: str,
        email: str,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        last_login_at: Optional[datetime] = None,
    ) -> DeviceProfile:
        """Insert or refresh a profile, then trim to capacity.

        Display fields are only overwritten when a new value is given.
        Never duplicates a ``user_id``.
        """
        login_at = last_login_at or self._clock()
        with self._lock:
            profiles = self._load()
            existing = next((p for p in profiles if p.user_id == user_id), None)
            if existing is not None:
                profile = existing.model_copy(update={
                    "email": email,
                    "last_login_at": login_at,
                    "display_name": display_name or existing.display_name,
                    "avatar_url": avatar_url or existing.avatar_url,
                })
                profiles = [p for p in profiles if p.user_id != user_id]
            else:
                profile = DeviceProfile(
                    user_id=user_id,
                    email=email,
                    display_name=display_name,
                    avatar_url=avatar_url,
                    last_login_at=login_at,
                )
            profiles.append(profile)
            profiles.sort(key=lambda p: p.last_login_at, reverse=True)

            evicted = profiles[self._max_profiles:]
            profiles = profiles[: self._max_profiles]
            self._save(profiles)

        for old in evicted:
            self._logger.info(
                "Device profile evicted (capacity %d).", self._max_profiles,
                extra={"event": "DEVICE_PROFILE_EVICTED", "user_id": old.user_id},
            )
        return profile

    def remove(self, user_id: str) -> None:
        """Delete the profile and that user's PIN and refresh secret."""
        with self._lock:
            profiles = self._load()
            self._save([p for p in profiles if p.user_id != user_id])
        self._vault.delete_secret(SecretKind.PIN, user_id)
        self._vault.delete_secret(SecretKind.REFRESH_TOKEN, user_id)
        self._logger.info(
            "Device profile removed.",
            extra={"event": "DEVICE_PROFILE_REMOVED", "user_id": user_id},
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> list[DeviceProfile]:
        raw = self._store.get_json(_PROFILES_KEY)
        if not isinstance(raw, list):
            return []
        profiles: list[DeviceProfile] = []
        for item in raw:
            try:
                profiles.append(DeviceProfile.model_validate(item))
            except PydanticValidationError:
                self._logger.warning("Skipping malformed device profile entry.")
        profiles.sort(key=lambda p: p.last_login_at, reverse=True)
        return profiles

    def _save(self, profiles: list[DeviceProfile]) -> None:
        self._store.set_json(
            _PROFILES_KEY, [p.model_dump(mode="json") for p in profiles],
        )
