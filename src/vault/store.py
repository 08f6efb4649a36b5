"""Disk-backed record store: one JSON file per collection (thread-safe, atomic)."""
from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from .errors import (
    DuplicateKeyError,
    NotFoundError,
    QuotaExceededError,
    StorageError,
    UnknownCollectionError,
)
from .io import atomic_write_text, dumps, ensure_dir, read_json
from .records import COLLECTIONS, DEFAULT_ORDER, IDENTITY_FIELDS

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
_Table = Dict[str, Record]  # id -> record, insertion ordered

JOURNAL_NAME = "_journal.json"
_QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


class RecordStore:
    """Keyed CRUD over the known collections, persisted on every write.

    Layout:
        data_dir/
          <collection>.json     # list[record] in insertion order
          _journal.json         # only present while a multi-collection commit is in flight

    Writes made inside :meth:`transaction` are staged and committed together.
    A commit touching more than one collection first writes the journal, so a
    crash mid-commit is completed by :meth:`_replay_journal` on the next open,
    while a commit that fails with an I/O error is rolled back in place.
    """

    def __init__(self, data_dir: str, *, max_bytes: Optional[int] = None) -> None:
        self.root = ensure_dir(data_dir)
        self.max_bytes = max_bytes
        self._lock = threading.RLock()
        self._cache: Dict[str, _Table] = {}
        self._tx: Optional[Dict[str, _Table]] = None
        self._stale_journal = False
        self._replay_journal()

    # --------- paths ----------
    def _path(self, collection: str) -> Path:
        return self.root / f"{collection}.json"

    @property
    def journal_path(self) -> Path:
        return self.root / JOURNAL_NAME

    # --------- core API ----------
    def create(self, collection: str, record: Mapping[str, Any]) -> Record:
        rid = _record_id(record)
        with self._lock:
            table = self._working(collection)
            if rid in table:
                raise DuplicateKeyError(collection, rid)
            table[rid] = copy.deepcopy(dict(record))
            self._stage(collection, table)
            return copy.deepcopy(table[rid])

    def bulk_insert(self, collection: str, records: Iterable[Mapping[str, Any]]) -> int:
        with self._lock:
            table = self._working(collection)
            n = 0
            for record in records:
                rid = _record_id(record)
                if rid in table:
                    raise DuplicateKeyError(collection, rid)
                table[rid] = copy.deepcopy(dict(record))
                n += 1
            self._stage(collection, table)
            return n

    def get_by_id(self, collection: str, record_id: str) -> Optional[Record]:
        with self._lock:
            rec = self._view(collection).get(record_id)
            return copy.deepcopy(rec) if rec is not None else None

    def list_by_user(
        self,
        collection: str,
        user_id: str,
        order_by: Optional[str] = None,
        *,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Record]:
        """Records owned by ``user_id``, most-recent-first unless told otherwise."""
        key = order_by or DEFAULT_ORDER.get(collection, "createdAt")
        with self._lock:
            owned = [r for r in self._view(collection).values() if r.get("userId") == user_id]
            owned.sort(key=lambda r: _sort_key(r.get(key)), reverse=descending)
            if limit is not None:
                owned = owned[: max(0, limit)]
            return copy.deepcopy(owned)

    def update(self, collection: str, record_id: str, fields: Mapping[str, Any]) -> Record:
        bad = IDENTITY_FIELDS.intersection(fields)
        if bad:
            raise ValueError(f"identity fields cannot be updated: {sorted(bad)}")
        with self._lock:
            table = self._working(collection)
            if record_id not in table:
                raise NotFoundError(collection, record_id)
            table[record_id] = {**table[record_id], **copy.deepcopy(dict(fields))}
            self._stage(collection, table)
            return copy.deepcopy(table[record_id])

    def delete(self, collection: str, record_id: str) -> bool:
        """Remove a record; a missing id is not an error."""
        with self._lock:
            if record_id not in self._view(collection):
                return False
            table = self._working(collection)
            del table[record_id]
            self._stage(collection, table)
            return True

    def clear_all(self) -> None:
        with self._lock:
            with self.transaction():
                for name in COLLECTIONS:
                    self._stage(name, {})

    # --------- convenience ----------
    def all_records(self, collection: str) -> List[Record]:
        with self._lock:
            return copy.deepcopy(list(self._view(collection).values()))

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._view(collection))

    def size_bytes(self) -> int:
        """Total size of the collection files on disk."""
        return sum(self._file_size(name) for name in COLLECTIONS)

    @contextmanager
    def transaction(self) -> Iterator["RecordStore"]:
        """Stage every write in the block and commit them together.

        An exception discards all staged writes. Nested blocks join the
        outermost one.
        """
        with self._lock:
            if self._tx is not None:
                yield self
                return
            self._tx = {}
            try:
                yield self
            except BaseException:
                self._tx = None
                raise
            staged, self._tx = self._tx, None
            if staged:
                self._flush(staged)

    # --------- internals ----------
    def _check(self, collection: str) -> None:
        if collection not in COLLECTIONS:
            raise UnknownCollectionError(collection)

    def _load(self, collection: str) -> _Table:
        if collection in self._cache:
            return self._cache[collection]
        path = self._path(collection)
        table: _Table = {}
        if path.exists():
            try:
                rows = read_json(path)
            except (OSError, ValueError) as e:
                raise StorageError(f"Failed to read {path}: {e}") from e
            if not isinstance(rows, list):
                raise StorageError(f"Invalid collection file {path}: expected a list")
            for row in rows:
                if not isinstance(row, dict) or not isinstance(row.get("id"), str):
                    raise StorageError(f"Invalid record in {path}: {row!r}")
                table[row["id"]] = row
        self._cache[collection] = table
        return table

    def _view(self, collection: str) -> _Table:
        """Read-only view honouring staged (uncommitted) writes of this transaction."""
        self._check(collection)
        if self._tx is not None and collection in self._tx:
            return self._tx[collection]
        return self._load(collection)

    def _working(self, collection: str) -> _Table:
        # records are replaced, never mutated in place, so a shallow copy is enough
        return dict(self._view(collection))

    def _stage(self, collection: str, table: _Table) -> None:
        if self._tx is not None:
            self._tx[collection] = table
        else:
            self._flush({collection: table})

    def _flush(self, changes: Dict[str, _Table]) -> None:
        if self._stale_journal:
            raise StorageError(
                f"an interrupted commit is pending in {self.journal_path}; reopen the store to complete it"
            )
        payloads: List[Tuple[str, str]] = [
            (name, dumps(list(table.values()))) for name, table in changes.items()
        ]
        self._check_quota(payloads)

        multi = len(payloads) > 1
        previous: Dict[str, Optional[str]] = {}
        written: List[str] = []
        try:
            if multi:
                previous = {name: self._read_text(name) for name, _ in payloads}
                atomic_write_text(
                    self.journal_path,
                    dumps({"collections": {name: list(changes[name].values()) for name, _ in payloads}}),
                )
            for name, text in payloads:
                atomic_write_text(self._path(name), text)
                written.append(name)
        except OSError as e:
            for name, _ in payloads:
                self._cache.pop(name, None)
            if multi:
                self._roll_back(previous, written)
            if e.errno in _QUOTA_ERRNOS:
                raise QuotaExceededError(f"storage full while writing {self.root}: {e}") from e
            raise StorageError(f"Failed to persist {sorted(changes)}: {e}") from e

        for name, table in changes.items():
            self._cache[name] = table
        if multi:
            self.journal_path.unlink(missing_ok=True)

    def _roll_back(self, previous: Dict[str, Optional[str]], written: List[str]) -> None:
        """Undo a partially written multi-collection commit.

        If the old files cannot be restored the journal is left in place and
        further writes are refused; the next open replays it.
        """
        try:
            for name in written:
                text = previous.get(name)
                if text is None:
                    self._path(name).unlink(missing_ok=True)
                else:
                    atomic_write_text(self._path(name), text)
            self.journal_path.unlink(missing_ok=True)
        except OSError as e:
            self._stale_journal = True
            logger.error("Could not roll back failed commit of %s, writes disabled: %s", written, e)
            return
        logger.warning("Rolled back failed commit (%d collection files restored)", len(written))

    def _read_text(self, collection: str) -> Optional[str]:
        path = self._path(collection)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def _check_quota(self, payloads: List[Tuple[str, str]]) -> None:
        if self.max_bytes is None:
            return
        changed = {name for name, _ in payloads}
        total = sum(self._file_size(n) for n in COLLECTIONS if n not in changed)
        total += sum(len(text.encode("utf-8")) for _, text in payloads)
        if total > self.max_bytes:
            logger.warning("Write rejected: %d bytes would exceed quota of %d", total, self.max_bytes)
            raise QuotaExceededError(f"write would grow store to {total} bytes (quota {self.max_bytes})")

    def _file_size(self, collection: str) -> int:
        try:
            return self._path(collection).stat().st_size
        except FileNotFoundError:
            return 0

    def _replay_journal(self) -> None:
        path = self.journal_path
        if not path.exists():
            return
        try:
            pending = read_json(path)["collections"]
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StorageError(f"Unreadable journal {path}: {e}") from e
        logger.info("Replaying interrupted commit for %s", sorted(pending))
        for name, rows in pending.items():
            self._check(name)
            atomic_write_text(self._path(name), dumps(rows))
        os.remove(path)


# -----------------------------
# Helpers
# -----------------------------
def _record_id(record: Mapping[str, Any]) -> str:
    rid = record.get("id") if isinstance(record, Mapping) else None
    if not isinstance(rid, str) or not rid:
        raise ValueError("record must be a mapping with a non-empty string 'id'")
    return rid


def _sort_key(value: Any) -> Tuple[bool, Any]:
    # missing values sort below every present value
    return (value is not None, value if value is not None else 0)
