"""
Storage Backend Module

Document-style persistence for plans, repayment entries, guarantors, master
data and audit events. Each table maps record ids to JSON-compatible dicts;
money travels as Decimal strings.

Transactions belong to one thread at a time: ``begin_transaction`` takes the
backend lock and holds it until the outermost ``commit``/``rollback``, so an
``atomic()`` block opened inside another one simply joins it.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterator, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import ConflictError, ValidationError

Document = Dict[str, Any]


@dataclass
class StorageRecord:
    """Common id and timestamps of every persisted record"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Document:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        data['updated_at'] = self.updated_at.isoformat()
        return {k: str(v) if isinstance(v, Decimal) else v for k, v in data.items()}

    @classmethod
    def from_dict(cls, data: Document) -> 'StorageRecord':
        for stamp in ('created_at', 'updated_at'):
            if isinstance(data.get(stamp), str):
                data[stamp] = datetime.fromisoformat(data[stamp])
        return cls(**data)


def _matches(document: Document, filters: Document) -> bool:
    return all(key in document and document[key] == value for key, value in filters.items())


class StorageInterface(ABC):
    """Table/record storage used by every engine component"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Document) -> None:
        """Insert or replace one record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Document]:
        """One record, or None when absent"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Document]:
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove a record, returning whether it existed"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Document) -> List[Document]:
        """Records whose top-level fields equal every filter value"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Run a block as one transaction; any exception undoes every write in it"""
        self.begin_transaction()
        try:
            yield
        except Exception:
            self.rollback()
            raise
        self.commit()

    def save_versioned(self, table: str, record_id: str, data: Document,
                       expected_version: Optional[int]) -> int:
        """
        Save a record only if its stored version is still the one the caller read.

        Args:
            table: Table name
            record_id: Record ID
            data: Record data (its ``version`` key is overwritten)
            expected_version: Version the caller read, or None for a new record

        Returns:
            The new version number

        Raises:
            ConflictError: Another writer saved the record first
        """
        with self.atomic():
            stored = self.load(table, record_id)
            found = stored.get('version', 0) if stored else None
            if found != expected_version:
                raise ConflictError(
                    f"{table} record {record_id} was modified concurrently "
                    f"(expected version {expected_version}, found {found})"
                )
            version = (expected_version or 0) + 1
            self.save(table, record_id, {**data, 'version': version})
            return version


class _LockedTransactionMixin:
    """Reentrant transaction bookkeeping; the backend lock spans the whole transaction"""

    def _init_transactions(self) -> None:
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._depth += 1
        if self._depth == 1:
            self._start_transaction()

    def commit(self) -> None:
        self._finish(self._commit_transaction)

    def rollback(self) -> None:
        self._finish(self._rollback_transaction)

    def _finish(self, outermost_action) -> None:
        try:
            if self._depth == 1:
                outermost_action()
        finally:
            self._depth -= 1
            self._lock.release()


class InMemoryStorage(_LockedTransactionMixin, StorageInterface):
    """Process-local storage for tests and ``memory://`` deployments"""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Document]] = {}
        self._snapshot: Optional[Dict[str, Dict[str, Document]]] = None
        self._init_transactions()

    @staticmethod
    def _copy(value: Any) -> Any:
        # JSON round trip: callers never share mutable state with the store
        return json.loads(json.dumps(value, default=str))

    def _table(self, table: str) -> Dict[str, Document]:
        return self._tables.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Document) -> None:
        with self._lock:
            self._table(table)[record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Document]:
        with self._lock:
            document = self._table(table).get(record_id)
            return self._copy(document) if document is not None else None

    def load_all(self, table: str) -> List[Document]:
        with self._lock:
            return [self._copy(d) for d in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Document) -> List[Document]:
        with self._lock:
            return [self._copy(d) for d in self._table(table).values() if _matches(d, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def close(self) -> None:
        pass

    def _start_transaction(self) -> None:
        self._snapshot = self._copy(self._tables)

    def _commit_transaction(self) -> None:
        self._snapshot = None

    def _rollback_transaction(self) -> None:
        if self._snapshot is not None:
            self._tables = self._snapshot
        self._snapshot = None

    def get_all_data(self) -> Dict[str, Dict[str, Document]]:
        """Copy of every table, for inspection in tests"""
        with self._lock:
            return self._copy(self._tables)


class SQLiteStorage(_LockedTransactionMixin, StorageInterface):
    """
    SQLite storage: one table per record type holding the JSON document plus
    first-write and last-write timestamps.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # DEFERRED isolation: the sqlite3 module opens a transaction on the
        # first write and this class decides when it commits
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False,
                                           isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._init_transactions()
        self._tables_ready = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _run(self, table: str, sql: str, params: tuple) -> sqlite3.Cursor:
        # Caller holds self._lock
        if table not in self._tables_ready:
            self._connection.execute(
                f"CREATE TABLE IF NOT EXISTS {table} ("
                "id TEXT PRIMARY KEY, data TEXT NOT NULL, "
                "created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
            )
            self._tables_ready.add(table)
        return self._connection.execute(sql.format(table=table), params)

    def _read(self, table: str, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._run(table, sql, params).fetchall()

    def _write(self, table: str, sql: str, params: tuple) -> int:
        """Run a modifying statement, committing it unless a transaction is open"""
        with self._lock:
            changed = self._run(table, sql, params).rowcount
            if not self.in_transaction:
                self._connection.commit()
            return changed

    def save(self, table: str, record_id: str, data: Document) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._write(
            table,
            "INSERT INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at",
            (record_id, json.dumps(data, default=str), now, now)
        )

    def load(self, table: str, record_id: str) -> Optional[Document]:
        rows = self._read(table, "SELECT data FROM {table} WHERE id = ?", (record_id,))
        return json.loads(rows[0]['data']) if rows else None

    def load_all(self, table: str) -> List[Document]:
        rows = self._read(table, "SELECT data FROM {table} ORDER BY created_at, id")
        return [json.loads(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        return self._write(table, "DELETE FROM {table} WHERE id = ?", (record_id,)) > 0

    def exists(self, table: str, record_id: str) -> bool:
        return bool(self._read(table, "SELECT 1 FROM {table} WHERE id = ?", (record_id,)))

    def find(self, table: str, filters: Document) -> List[Document]:
        return [d for d in self.load_all(table) if _matches(d, filters)]

    def count(self, table: str) -> int:
        return self._read(table, "SELECT COUNT(*) FROM {table}")[0][0]

    def _start_transaction(self) -> None:
        pass

    def _commit_transaction(self) -> None:
        self._connection.commit()

    def _rollback_transaction(self) -> None:
        self._connection.rollback()
        # A table created inside the transaction is gone again
        self._tables_ready.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    ``memory://`` gives InMemoryStorage; ``sqlite:///relative.db`` and
    ``sqlite:////absolute/path.db`` give SQLiteStorage (``sqlite://`` alone is
    an in-memory SQLite database).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValidationError(f"Unsupported database URL: {database_url}")
