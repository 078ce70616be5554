"""
PIN Entry Session.

Caller-side lockout policy for quick login.  The vault is stateless
about attempts; one ``PinEntrySession`` counts consecutive failed
verifications for a single ``(pin, user_id)`` entry and, after
``max_attempts``, locks itself and forces fallback to full login.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from securegate.errors import OperationInProgressError, RequiresFullLoginError
from securegate.logger import StructuredLogger
from securegate.models.enums import AuditEventType, SecretKind
from securegate.models.identity import SessionSnapshot
from securegate.services.audit_trail import AuditTrail
from securegate.services.identity_session import IdentitySession
from securegate.services.vault import SecureVault


class PinEntrySession:
    """One PIN prompt for one user.

    Parameters
    ----------
    vault:
        Vault holding the user's hashed PIN.
    identity_session:
        Performs the quick login once the PIN checks out.
    user_id, email:
        The device profile being unlocked.
    logger:
        Structured logger.  Candidates are never logged.
    audit:
        Optional trail; a lockout is recorded as an unauthorized access attempt.
    max_attempts:
        Consecutive failures allowed before lockout.
    """

    def __init__(
        self,
        vault: SecureVault,
        identity_session: IdentitySession,
        user_id: str,
        email: str,
        logger: StructuredLogger,
        audit: Optional[AuditTrail] = None,
        max_attempts: int = 3,
    ) -> None:
        self._vault: SecureVault = vault
        self._identity_session: IdentitySession = identity_session
        self._user_id: str = user_id
        self._email: str = email
        self._logger: StructuredLogger = logger
        self._audit: Optional[AuditTrail] = audit
        self._max_attempts: int = max_attempts
        self._failures: int = 0
        self._submitting: bool = False

    @property
    def remaining_attempts(self) -> int:
        return max(self._max_attempts - self._failures, 0)

    @property
    def is_locked(self) -> bool:
        return self._failures >= self._max_attempts

    def verify(self, candidate: str) -> bool:
        """Check *candidate* against the stored PIN.

        Returns ``False`` for a wrong PIN while attempts remain.

        Raises
        ------
        RequiresFullLoginError
            No PIN is stored, or this failure exhausted the attempts, or
            the session was already locked.
        """
        if self.is_locked:
            raise RequiresFullLoginError("PIN entry locked")
        if not self._vault.has_secret(SecretKind.PIN, self._user_id):
            raise RequiresFullLoginError(f"no quick-login PIN for {self._user_id}")

        if self._vault.verify_secret(SecretKind.PIN, self._user_id, candidate):
            self._failures = 0
            return True

        self._failures += 1
        self._logger.warning(
            "Incorrect PIN (%d/%d).", self._failures, self._max_attempts,
            extra={"event": "PIN_FAILED", "user_id": self._user_id},
        )
        if self.is_locked:
            if self._audit is not None:
                self._audit.record(
                    AuditEventType.UNAUTHORIZED_ACCESS, self._user_id, self._email,
                    resource_type="pin_lockout",
                )
            raise RequiresFullLoginError("too many incorrect PIN attempts")
        return False

    async def submit(self, candidate: str) -> Optional[SessionSnapshot]:
        """Verify *candidate* and, if correct, perform the quick login.

        Returns ``None`` for a wrong PIN with attempts remaining.  A
        second submit while one is signing in is rejected rather than
        queued, so a repeated keypad confirm cannot sign in twice.

        Raises
        ------
        OperationInProgressError
            A previous submit from this prompt has not finished.
        """
        if self._submitting:
            raise OperationInProgressError("PIN submit already in progress")
        self._submitting = True
        try:
            # PBKDF2 verification blocks; run it off the event loop.
            if not await asyncio.to_thread(self.verify, candidate):
                return None
            return await self._identity_session.login_with_pin(self._user_id, self._email)
        finally:
            self._submitting = False
