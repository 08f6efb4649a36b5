"""Encrypted whole-store export/import.

Artifact format::

    myai1.<urlsafe-b64 salt>.<fernet token>

The Fernet key is derived from a passphrase with PBKDF2-HMAC-SHA256 and a
fresh random salt per export, so two exports of the same store differ. The
token authenticates the payload: tampering and a wrong passphrase both fail
decryption and surface as :class:`CorruptBackupError`.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from typing import Any, Dict, List, Mapping

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import ConfigError, CorruptBackupError, NotFoundError
from .records import COLLECTIONS, USERS, now_ms
from .store import RecordStore

logger = logging.getLogger(__name__)

ARTIFACT_PREFIX = "myai1"
ENVELOPE_VERSION = "1.0"
DEFAULT_KDF_ITERATIONS = 390_000
SALT_BYTES = 16


def derive_key(passphrase: str, salt: bytes, iterations: int = DEFAULT_KDF_ITERATIONS) -> bytes:
    """Derive a urlsafe-b64 Fernet key from a passphrase."""
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


class BackupCodec:
    """Serialize the full record store into one encrypted string and back."""

    def __init__(
        self,
        store: RecordStore,
        passphrase: str,
        *,
        kdf_iterations: int = DEFAULT_KDF_ITERATIONS,
    ) -> None:
        if not passphrase:
            raise ConfigError("backup passphrase must not be empty")
        if kdf_iterations < 1:
            raise ConfigError("kdf_iterations must be positive")
        self.store = store
        self._passphrase = passphrase
        self.kdf_iterations = kdf_iterations

    # --------- raw artifact ----------
    def export(self) -> str:
        snapshot = {name: self.store.all_records(name) for name in COLLECTIONS}
        plain = json.dumps(snapshot, ensure_ascii=False).encode("utf-8")
        salt = os.urandom(SALT_BYTES)
        token = Fernet(derive_key(self._passphrase, salt, self.kdf_iterations)).encrypt(plain)
        salt_b64 = base64.urlsafe_b64encode(salt).decode("ascii")
        logger.info("Exported backup (%s)", ", ".join(f"{k}={len(v)}" for k, v in snapshot.items() if v))
        return f"{ARTIFACT_PREFIX}.{salt_b64}.{token.decode('ascii')}"

    def import_(self, ciphertext: str) -> Dict[str, int]:
        """Replace the store's contents with the backup.

        The artifact is decrypted and validated in full before anything is
        cleared; on failure the store is untouched.
        """
        snapshot = self.decode(ciphertext)
        with self.store.transaction():
            self.store.clear_all()
            for name, rows in snapshot.items():
                self.store.bulk_insert(name, rows)
        counts = {name: len(rows) for name, rows in snapshot.items()}
        logger.info("Imported backup: %s", counts)
        return counts

    def decode(self, ciphertext: str) -> Dict[str, List[Dict[str, Any]]]:
        """Decrypt and validate an artifact without touching the store."""
        plain = self._decrypt(ciphertext)
        try:
            doc = json.loads(plain.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise CorruptBackupError(f"backup is not valid JSON: {e}") from e
        return _validate_snapshot(doc)

    # --------- envelope ----------
    def export_envelope(self, user_id: str) -> Dict[str, Any]:
        """Whole-account export: the artifact plus the owning user's profile."""
        user = self.store.get_by_id(USERS, user_id)
        if user is None:
            raise NotFoundError(USERS, user_id)
        return {
            "version": ENVELOPE_VERSION,
            "user": user,
            "database": self.export(),
            "exportedAt": now_ms(),
        }

    def import_envelope(self, envelope: Mapping[str, Any]) -> Dict[str, Any]:
        """Restore from an envelope; returns the envelope's user record."""
        if not isinstance(envelope, Mapping):
            raise CorruptBackupError("envelope must be a JSON object")
        user = envelope.get("user")
        database = envelope.get("database")
        if not isinstance(user, dict) or not isinstance(database, str) or not database:
            raise CorruptBackupError("invalid backup format: 'user' and 'database' are required")
        self.import_(database)
        return user

    # --------- internals ----------
    def _decrypt(self, ciphertext: str) -> bytes:
        if not isinstance(ciphertext, str):
            raise CorruptBackupError("backup must be a string")
        parts = ciphertext.strip().split(".")
        if len(parts) != 3 or parts[0] != ARTIFACT_PREFIX:
            raise CorruptBackupError("unrecognised backup format")
        try:
            salt = base64.urlsafe_b64decode(parts[1].encode("ascii"))
        except (binascii.Error, UnicodeEncodeError) as e:
            raise CorruptBackupError(f"bad salt: {e}") from e
        if len(salt) != SALT_BYTES:
            raise CorruptBackupError("bad salt length")
        fernet = Fernet(derive_key(self._passphrase, salt, self.kdf_iterations))
        try:
            return fernet.decrypt(parts[2].encode("ascii"))
        except (InvalidToken, UnicodeEncodeError) as e:
            raise CorruptBackupError("backup failed to decrypt (tampered or wrong passphrase)") from e


def _validate_snapshot(doc: Any) -> Dict[str, List[Dict[str, Any]]]:
    if not isinstance(doc, dict):
        raise CorruptBackupError("backup document must be a JSON object")
    known = [name for name in COLLECTIONS if name in doc]
    if not known:
        raise CorruptBackupError("backup document contains no known collections")
    unknown = sorted(set(doc) - set(COLLECTIONS))
    if unknown:
        logger.warning("Ignoring unknown collections in backup: %s", unknown)

    out: Dict[str, List[Dict[str, Any]]] = {}
    for name in known:
        rows = doc[name]
        if not isinstance(rows, list):
            raise CorruptBackupError(f"collection {name!r} must be a list")
        seen = set()
        for row in rows:
            if not isinstance(row, dict) or not isinstance(row.get("id"), str) or not row["id"]:
                raise CorruptBackupError(f"collection {name!r} holds a record without a string id")
            if row["id"] in seen:
                raise CorruptBackupError(f"collection {name!r} holds duplicate id {row['id']!r}")
            seen.add(row["id"])
        out[name] = rows
    return out
