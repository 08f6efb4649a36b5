"""Exceptions raised by the local vault (record store + backup codec)."""
from __future__ import annotations


class VaultError(Exception):
    """Base exception for vault errors."""

    pass


class UnknownCollectionError(VaultError, KeyError):
    """Collection name is not one of the known collections."""

    pass


class DuplicateKeyError(VaultError):
    """A record with the same id already exists in the collection."""

    def __init__(self, collection: str, record_id: str) -> None:
        super().__init__(f"{collection}: record {record_id!r} already exists")
        self.collection = collection
        self.record_id = record_id


class NotFoundError(VaultError):
    """Record is absent (or not owned by the requesting user)."""

    def __init__(self, collection: str, record_id: str) -> None:
        super().__init__(f"{collection}: record {record_id!r} not found")
        self.collection = collection
        self.record_id = record_id


class CorruptBackupError(VaultError):
    """Backup artifact failed to decrypt, parse or validate."""

    pass


class QuotaExceededError(VaultError):
    """Underlying storage is full or the configured quota would be exceeded."""

    pass


class StorageError(VaultError):
    """A collection file on disk is unreadable."""

    pass


class ConfigError(VaultError, ValueError):
    """Invalid configuration value."""

    pass
