from __future__ import annotations

import logging
from pathlib import Path

import pytest

from securegate.database import DatabaseManager
from securegate.errors import StorageFailureError
from securegate.models.enums import SecretKind
from securegate.schema import initialize_schema
from securegate.services.vault import EncryptedVaultBackend, SecureVault


def test_set_and_verify_pin(vault):
    vault.set_secret(SecretKind.PIN, "user-a", "1234")

    assert vault.has_secret(SecretKind.PIN, "user-a")
    assert vault.verify_secret(SecretKind.PIN, "user-a", "1234")
    assert not vault.verify_secret(SecretKind.PIN, "user-a", "4321")
    assert not vault.verify_secret(SecretKind.PIN, "user-b", "1234")


def test_pin_is_not_stored_in_plain_text(vault, vault_backend):
    vault.set_secret(SecretKind.PIN, "user-a", "1234")

    raw = vault_backend.read("securegate.pin", "pin_user-a")
    assert raw is not None
    assert b"1234" not in raw
    assert raw.startswith(b"pbkdf2_sha256$")


def test_set_secret_replaces_previous_value(vault):
    vault.set_secret(SecretKind.PIN, "user-a", "1234")
    vault.set_secret(SecretKind.PIN, "user-a", "5678")

    assert vault.verify_secret(SecretKind.PIN, "user-a", "5678")
    assert not vault.verify_secret(SecretKind.PIN, "user-a", "1234")


def test_failed_write_after_delete_leaves_no_pin(vault, vault_backend):
    vault.set_secret(SecretKind.PIN, "user-a", "1234")
    vault_backend.fail_writes = True

    with pytest.raises(StorageFailureError):
        vault.set_secret(SecretKind.PIN, "user-a", "9999")

    assert vault.has_secret(SecretKind.PIN, "user-a") is False
    assert vault.verify_secret(SecretKind.PIN, "user-a", "1234") is False


def test_read_failure_reads_as_absent(vault, vault_backend):
    vault.set_secret(SecretKind.PIN, "user-a", "1234")
    vault_backend.fail_reads = True

    assert vault.has_secret(SecretKind.PIN, "user-a") is False
    assert vault.verify_secret(SecretKind.PIN, "user-a", "1234") is False


def test_reveal_refresh_token(vault):
    vault.set_secret(SecretKind.REFRESH_TOKEN, "user-a", "refresh-xyz")

    with vault.reveal(SecretKind.REFRESH_TOKEN, "user-a") as value:
        assert value == "refresh-xyz"
    with vault.reveal(SecretKind.REFRESH_TOKEN, "user-b") as value:
        assert value is None


def test_reveal_refuses_pins(vault):
    vault.set_secret(SecretKind.PIN, "user-a", "1234")

    with pytest.raises(ValueError):
        with vault.reveal(SecretKind.PIN, "user-a"):
            pass


def test_delete_missing_secret_is_noop(vault):
    vault.delete_secret(SecretKind.REFRESH_TOKEN, "nobody")
    assert not vault.has_secret(SecretKind.REFRESH_TOKEN, "nobody")


def test_encrypted_backend_round_trip(tmp_path: Path, logger):
    db = DatabaseManager(
        supabase_url="",
        supabase_key="",
        sqlite_path=tmp_path / "vault.db",
        logger=logger,
    )
    initialize_schema(db.sqlite, logger)
    backend = EncryptedVaultBackend(
        db=db, logger=logger, salt_path=tmp_path / "salt", kdf_iterations=1_000,
    )
    vault = SecureVault(backend=backend, logger=logger, pin_hash_iterations=1_000)

    vault.set_secret(SecretKind.REFRESH_TOKEN, "user-a", "refresh-xyz")
    vault.set_secret(SecretKind.REFRESH_TOKEN, "user-a", "refresh-abc")

    row = db.sqlite.execute(
        "SELECT ciphertext FROM vault_secrets WHERE account = ?", ("refresh_user-a",),
    ).fetchone()
    assert b"refresh-abc" not in row["ciphertext"]
    with vault.reveal(SecretKind.REFRESH_TOKEN, "user-a") as value:
        assert value == "refresh-abc"
    assert (tmp_path / "salt").stat().st_size == 32
    db.close()


def test_corrupt_salt_file_is_replaced_and_reported(tmp_path: Path, logger, caplog):
    db = DatabaseManager(
        supabase_url="", supabase_key="", sqlite_path=tmp_path / "vault.db", logger=logger,
    )
    initialize_schema(db.sqlite, logger)
    salt_path = tmp_path / "salt"
    salt_path.write_bytes(b"short")
    backend = EncryptedVaultBackend(
        db=db, logger=logger, salt_path=salt_path, kdf_iterations=1_000,
    )
    vault = SecureVault(backend=backend, logger=logger, pin_hash_iterations=1_000)

    with caplog.at_level(logging.ERROR, logger="securegate.tests"):
        vault.set_secret(SecretKind.REFRESH_TOKEN, "user-a", "refresh-xyz")

    assert salt_path.stat().st_size == 32
    assert any(
        record.levelno == logging.ERROR and "unexpected length" in record.getMessage()
        for record in caplog.records
    )
    db.close()
