"""
Secure Vault.

Stores small per-user secrets (quick-login PINs and refresh tokens)
under a key derived from ``(kind, user_id)``.  At most one secret exists
per key and ``set_secret`` is delete-then-write, so a stale value never
lingers: if the write half fails the user is left with *no* secret, which
callers treat as "not set" and fall back to full login.

Security model
--------------
- PINs are never stored in recoverable form.  The vault keeps a salted
  PBKDF2-HMAC-SHA256 hash and verifies with a constant-time comparison.
- Refresh tokens must be recoverable, so they are stored as-is by the
  backend (which encrypts at rest) and read through the scoped
  :meth:`SecureVault.reveal` context manager.
- ``EncryptedVaultBackend`` encrypts every row with AES-256-GCM using a
  key derived at runtime from machine identity (hostname + OS user) and
  a per-machine random salt file.  The key is never persisted.

Attempt counting is not the vault's concern; see ``PinEntrySession``.
"""

from __future__ import annotations

import getpass
import hashlib
import hmac
import os
import platform
import socket
import stat
import subprocess
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import PBKDF2

from securegate.database import DatabaseManager
from securegate.errors import StorageFailureError
from securegate.logger import StructuredLogger
from securegate.models.enums import SecretKind

_SERVICE_PREFIX: str = "securegate"
_HASH_SCHEME: str = "pbkdf2_sha256"


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class VaultBackend(ABC):
    """Raw secret storage addressed by ``(service, account)``."""

    @abstractmethod
    def read(self, service: str, account: str) -> Optional[bytes]:
        """Return the stored secret or ``None`` when absent."""

    @abstractmethod
    def write(self, service: str, account: str, value: bytes) -> None:
        """Add a secret.  Raises on failure."""

    @abstractmethod
    def delete(self, service: str, account: str) -> None:
        """Remove a secret.  Deleting a missing entry is a no-op."""


class MemoryVaultBackend(VaultBackend):
    """Process-lifetime backend; nothing touches the disk."""

    def __init__(self) -> None:
        self._items: dict[tuple[str, str], bytes] = {}
        self._lock: threading.Lock = threading.Lock()

    def read(self, service: str, account: str) -> Optional[bytes]:
        with self._lock:
            return self._items.get((service, account))

    def write(self, service: str, account: str, value: bytes) -> None:
        with self._lock:
            self._items[(service, account)] = bytes(value)

    def delete(self, service: str, account: str) -> None:
        with self._lock:
            self._items.pop((service, account), None)


class EncryptedVaultBackend(VaultBackend):
    """AES-256-GCM encrypted rows in the local ``vault_secrets`` table.

    Parameters
    ----------
    db:
        Initialised ``DatabaseManager``.
    logger:
        Structured logger.
    salt_path:
        Location of the per-machine random salt.  Created with owner-only
        permissions on first use.
    kdf_iterations:
        PBKDF2 iteration count for deriving the encryption key.
    """

    _KEY_LENGTH: int = 32  # 256 bits
    _SALT_LENGTH: int = 32

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        salt_path: Path,
        kdf_iterations: int = 600_000,
    ) -> None:
        self._db: DatabaseManager = db
        self._logger: StructuredLogger = logger
        self._salt_path: Path = salt_path
        self._kdf_iterations: int = kdf_iterations
        self._key: Optional[bytes] = None
        self._key_lock: threading.Lock = threading.Lock()

    def read(self, service: str, account: str) -> Optional[bytes]:
        row = self._db.sqlite.execute(
            """
            SELECT ciphertext, nonce, tag FROM vault_secrets
            WHERE service = ? AND account = ?
            """,
            (service, account),
        ).fetchone()
        if row is None:
            return None

        try:
            cipher = AES.new(self._derive_key(), AES.MODE_GCM, nonce=row["nonce"])  # type: ignore[attr-defined]
            return cipher.decrypt_and_verify(row["ciphertext"], row["tag"])
        except (ValueError, KeyError) as exc:
            # Corrupted row or machine identity changed: unusable, treat as absent.
            self._logger.warning(
                "Vault entry %s/%s failed authentication: %s", service, account, exc,
            )
            return None

    def write(self, service: str, account: str, value: bytes) -> None:
        cipher = AES.new(self._derive_key(), AES.MODE_GCM)  # type: ignore[attr-defined]
        ciphertext, tag = cipher.encrypt_and_digest(value)
        with self._db.write_lock:
            self._db.sqlite.execute(
                """
                INSERT INTO vault_secrets (service, account, ciphertext, nonce, tag)
                VALUES (?, ?, ?, ?, ?)
                """,
                (service, account, ciphertext, cipher.nonce, tag),
            )
            self._db.sqlite.commit()

    def delete(self, service: str, account: str) -> None:
        with self._db.write_lock:
            self._db.sqlite.execute(
                "DELETE FROM vault_secrets WHERE service = ? AND account = ?",
                (service, account),
            )
            self._db.sqlite.commit()

    # ------------------------------------------------------------------
    # Key material
    # ------------------------------------------------------------------

    def _derive_key(self) -> bytes:
        """Derive (once per instance) the AES key from machine identity.

        ``hostname:username`` binds ciphertexts to this machine and OS
        account; the entropy comes from the random salt file.  A copied
        database is useless elsewhere.

        Raises
        ------
        OSError
            If the salt file cannot be created or read.
        """
        with self._key_lock:
            if self._key is None:
                password = f"{socket.gethostname()}:{getpass.getuser()}"
                self._key = PBKDF2(
                    password=password,
                    salt=self._get_or_create_salt(),
                    dkLen=self._KEY_LENGTH,
                    count=self._kdf_iterations,
                    hmac_hash_module=SHA256,
                )
            return self._key

    def _get_or_create_salt(self) -> bytes:
        if self._salt_path.exists():
            data = self._salt_path.read_bytes()
            if len(data) == self._SALT_LENGTH:
                return data
            self._logger.error(
                "Vault salt file %s has unexpected length (%d); regenerating it. "
                "Secrets encrypted under the previous salt are now unreadable.",
                self._salt_path, len(data),
                extra={"event": "VAULT_SALT_RESET"},
            )
        salt = os.urandom(self._SALT_LENGTH)
        self._salt_path.parent.mkdir(parents=True, exist_ok=True)
        self._salt_path.write_bytes(salt)

        if platform.system() == "Windows":
            self._restrict_windows_acl(self._salt_path)
        else:
            self._salt_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0o600

        self._logger.info("Per-machine vault salt created at %s.", self._salt_path)
        return salt

    def _restrict_windows_acl(self, file_path: Path) -> None:
        """Limit *file_path* to the current user via ``icacls``; best effort."""
        try:
            result = subprocess.run(
                [
                    "icacls",
                    str(file_path),
                    "/inheritance:r",
                    "/grant:r",
                    f"{getpass.getuser()}:F",
                ],
                capture_output=True,
                check=False,
                timeout=10,
            )
            if result.returncode != 0:
                self._logger.warning(
                    "icacls returned %d for '%s': %s",
                    result.returncode,
                    file_path,
                    result.stderr.decode("utf-8", errors="replace").strip(),
                )
        except (OSError, subprocess.SubprocessError) as exc:
            self._logger.warning("Failed to set Windows ACLs on '%s': %s", file_path, exc)


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------

class SecureVault:
    """Per-user secret store with add / verify / delete / update semantics.

    Parameters
    ----------
    backend:
        Where the bytes live.
    logger:
        Structured logger.  Secret values are never logged.
    pin_hash_iterations:
        PBKDF2 iteration count for PIN hashes.
    """

    def __init__(
        self,
        backend: VaultBackend,
        logger: StructuredLogger,
        pin_hash_iterations: int = 600_000,
    ) -> None:
        self._backend: VaultBackend = backend
        self._logger: StructuredLogger = logger
        self._pin_hash_iterations: int = pin_hash_iterations

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def set_secret(self, kind: SecretKind, user_id: str, value: str) -> None:
        """Replace the secret for ``(kind, user_id)``.

        Raises
        ------
        StorageFailureError
            When the delete or the write fails.  If the write fails the
            old secret is already gone.
        """
        service, account = self._address(kind, user_id)
        payload = self._encode(kind, value)
        try:
            self._backend.delete(service, account)
            self._backend.write(service, account, payload)
        except Exception as exc:
            self._logger.error(
                "Vault write failed for %s/%s: %s", kind, user_id, exc,
                extra={"event": "VAULT_WRITE_FAILED", "user_id": user_id},
            )
            raise StorageFailureError(f"could not store {kind} secret") from exc
        self._logger.info(
            "Vault secret stored.",
            extra={"event": "VAULT_SET", "kind": str(kind), "user_id": user_id},
        )

    def verify_secret(self, kind: SecretKind, user_id: str, candidate: str) -> bool:
        """Constant-time check of *candidate*; ``False`` on any read failure."""
        with self._acquire(kind, user_id) as stored:
            if stored is None:
                return False
            if kind == SecretKind.PIN:
                return self._verify_pin_hash(stored, candidate)
            return hmac.compare_digest(stored, candidate.encode("utf-8"))

    def has_secret(self, kind: SecretKind, user_id: str) -> bool:
        with self._acquire(kind, user_id) as stored:
            return stored is not None

    def delete_secret(self, kind: SecretKind, user_id: str) -> None:
        service, account = self._address(kind, user_id)
        try:
            self._backend.delete(service, account)
        except Exception as exc:
            raise StorageFailureError(f"could not delete {kind} secret") from exc

    @contextmanager
    def reveal(self, kind: SecretKind, user_id: str) -> Iterator[Optional[str]]:
        """Yield a recoverable secret for the duration of the ``with`` block.

        PINs are hashed and therefore cannot be revealed.
        """
        if kind == SecretKind.PIN:
            raise ValueError("PIN secrets are stored hashed and cannot be revealed")
        with self._acquire(kind, user_id) as stored:
            value = stored.decode("utf-8") if stored is not None else None
            try:
                yield value
            finally:
                value = None

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _address(kind: SecretKind, user_id: str) -> tuple[str, str]:
        return f"{_SERVICE_PREFIX}.{kind}", f"{kind}_{user_id}"

    @contextmanager
    def _acquire(self, kind: SecretKind, user_id: str) -> Iterator[Optional[bytes]]:
        """Fetch the raw secret and drop the reference on every exit path."""
        service, account = self._address(kind, user_id)
        stored: Optional[bytes]
        try:
            stored = self._backend.read(service, account)
        except Exception as exc:
            self._logger.warning("Vault read failed for %s/%s: %s", kind, user_id, exc)
            stored = None
        try:
            yield stored
        finally:
            stored = None

    def _encode(self, kind: SecretKind, value: str) -> bytes:
        if kind != SecretKind.PIN:
            return value.encode("utf-8")
        salt = os.urandom(16)
        digest = hashlib.pbkdf2_hmac(
            "sha256", value.encode("utf-8"), salt, self._pin_hash_iterations,
        )
        return f"{_HASH_SCHEME}${self._pin_hash_iterations}${salt.hex()}${digest.hex()}".encode()

    @staticmethod
    def _verify_pin_hash(stored: bytes, candidate: str) -> bool:
        try:
            scheme, iterations, salt_hex, digest_hex = stored.decode("utf-8").split("$")
            if scheme != _HASH_SCHEME:
                return False
            computed = hashlib.pbkdf2_hmac(
                "sha256",
                candidate.encode("utf-8"),
                bytes.fromhex(salt_hex),
                int(iterations),
            )
        except ValueError:
            return False
        return hmac.compare_digest(computed.hex(), digest_hex)
