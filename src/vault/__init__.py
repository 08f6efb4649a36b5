"""Local-first encrypted vault for MyAi records.

Typical usage
-------------
from vault import RecordStore, BackupCodec
store = RecordStore("data")
blob = BackupCodec(store, passphrase).export()
"""

from __future__ import annotations

from .backup import BackupCodec
from .errors import (
    ConfigError,
    CorruptBackupError,
    DuplicateKeyError,
    NotFoundError,
    QuotaExceededError,
    StorageError,
    UnknownCollectionError,
    VaultError,
)
from .store import RecordStore

__all__ = [
    "BackupCodec",
    "ConfigError",
    "CorruptBackupError",
    "DuplicateKeyError",
    "NotFoundError",
    "QuotaExceededError",
    "RecordStore",
    "StorageError",
    "UnknownCollectionError",
    "VaultError",
    "__version__",
]

__version__ = "0.1.0"
