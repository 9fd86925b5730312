"""
Persistence layer

Records are JSON documents keyed by ID inside named tables. Two backends
share one interface: an in-process dictionary store for tests and a SQLite
store for durable use. Money travels as Decimal strings.

Atomic scopes are exclusive per store: while one thread holds an open scope,
other threads block on every storage call, so readers only observe committed
state. Scopes are re-entrant; nested scopes join the outermost one.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


SEQUENCES_TABLE = "sequences"

Document = Dict[str, Any]


def _clone(document: Document) -> Document:
    """Detached copy with values reduced to JSON types"""
    return json.loads(json.dumps(document, default=str))


@dataclass
class StorageRecord:
    """Common identity and timestamps of persisted records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Document:
        """Flatten into a storable document; subclasses convert their own enums and dates"""
        document = asdict(self)
        document.update(
            created_at=self.created_at.isoformat(),
            updated_at=self.updated_at.isoformat()
        )
        return {
            key: str(value) if isinstance(value, Decimal) else value
            for key, value in document.items()
        }


class StorageInterface(ABC):
    """Table-of-documents store with atomic scopes and named counters"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Document) -> None:
        """Insert or replace a document"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Document]:
        """Fetch a document, or None"""

    @abstractmethod
    def load_all(self, table: str) -> List[Document]:
        """Every document in a table"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove a document; False if it was absent"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Document]:
        """Documents whose top-level fields equal every filter value"""

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Open a scope, or join the one this thread already holds"""

    @abstractmethod
    def commit(self) -> None:
        """Leave the current scope, persisting changes if it is the outermost"""

    @abstractmethod
    def rollback(self) -> None:
        """Leave the current scope, discarding changes if it is the outermost"""

    @contextmanager
    def atomic(self):
        """
        Run a block as one all-or-nothing unit

        Any exception escaping the block undoes every write the outermost
        scope made and is re-raised.
        """
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()

    def next_sequence(self, name: str, start: int = 1) -> int:
        """
        Allocate the next value of a named monotonic counter

        The counter lives in the store itself, so an allocation made inside
        an atomic scope that later rolls back is released with it.
        """
        with self.atomic():
            last = self.peek_sequence(name)
            value = start if last is None else last + 1
            self.save(SEQUENCES_TABLE, name, {'id': name, 'value': value})
            return value

    def peek_sequence(self, name: str) -> Optional[int]:
        """Last value allocated for a counter, or None if never used"""
        counter = self.load(SEQUENCES_TABLE, name)
        return None if counter is None else counter['value']


class InMemoryStorage(StorageInterface):
    """Dictionary-backed store used by the test suite"""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        # (table, record_id) -> document before the open scope first touched it
        self._undo: Dict[Tuple[str, str], Optional[Document]] = {}

    def _table(self, name: str) -> Dict[str, Document]:
        return self._tables.setdefault(name, {})

    def _touch(self, table: str, record_id: str) -> None:
        key = (table, record_id)
        if self._depth and key not in self._undo:
            self._undo[key] = self._table(table).get(record_id)

    def save(self, table: str, record_id: str, data: Document) -> None:
        with self._lock:
            self._touch(table, record_id)
            self._table(table)[record_id] = _clone(data)

    def load(self, table: str, record_id: str) -> Optional[Document]:
        with self._lock:
            document = self._table(table).get(record_id)
            return _clone(document) if document is not None else None

    def load_all(self, table: str) -> List[Document]:
        with self._lock:
            return [_clone(document) for document in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            if record_id not in self._table(table):
                return False
            self._touch(table, record_id)
            self._table(table).pop(record_id)
            return True

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Document]:
        with self._lock:
            return [
                _clone(document)
                for document in self._table(table).values()
                if all(key in document and document[key] == value
                       for key, value in filters.items())
            ]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            for record_id in list(self._table(table)):
                self._touch(table, record_id)
            self._tables[table] = {}

    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        try:
            self._depth -= 1
            if not self._depth:
                self._undo.clear()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        try:
            if self._depth == 1:
                for (table, record_id), before in self._undo.items():
                    if before is None:
                        self._table(table).pop(record_id, None)
                    else:
                        self._table(table)[record_id] = before
                self._undo.clear()
            self._depth -= 1
        finally:
            self._lock.release()


class SQLiteStorage(StorageInterface):
    """
    SQLite-backed store

    Each table holds (id, data, created_at, updated_at) rows with the
    document serialized as JSON. One connection is shared by all threads
    and guarded by the store lock.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        # DEFERRED opens a transaction before the first write; timeout makes
        # SQLite wait on a locked database instead of failing at once
        self._connection = sqlite3.connect(
            self.db_path, timeout=timeout,
            check_same_thread=False, isolation_level='DEFERRED'
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._known_tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _prepare(self, table: str) -> None:
        """Create the table and its index on first use"""
        if table in self._known_tables:
            return
        self._connection.execute(
            f"CREATE TABLE IF NOT EXISTS {table} ("
            "id TEXT PRIMARY KEY, data TEXT NOT NULL, "
            "created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
        )
        self._connection.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{table}_created_at ON {table}(created_at)"
        )
        self._known_tables.add(table)
        self._autocommit()

    def _autocommit(self) -> None:
        if not self._depth:
            self._connection.commit()

    def _documents(self, sql: str, params: Union[tuple, list] = ()) -> List[Document]:
        rows = self._connection.execute(sql, params).fetchall()
        return [json.loads(row['data']) for row in rows]

    def save(self, table: str, record_id: str, data: Document) -> None:
        with self._lock:
            self._prepare(table)
            stamp = datetime.now(timezone.utc).isoformat()
            # Replacing a row keeps its original created_at
            self._connection.execute(
                f"INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at) "
                f"VALUES (?, ?, COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?), ?)",
                (record_id, json.dumps(data, default=str), record_id, stamp, stamp)
            )
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Document]:
        with self._lock:
            self._prepare(table)
            found = self._documents(f"SELECT data FROM {table} WHERE id = ?", (record_id,))
            return found[0] if found else None

    def load_all(self, table: str) -> List[Document]:
        with self._lock:
            self._prepare(table)
            return self._documents(f"SELECT data FROM {table} ORDER BY created_at, rowid")

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._prepare(table)
            removed = self._connection.execute(
                f"DELETE FROM {table} WHERE id = ?", (record_id,)
            ).rowcount
            self._autocommit()
            return removed > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._prepare(table)
            row = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Document]:
        """Match on top-level JSON fields"""
        with self._lock:
            self._prepare(table)
            clauses = " AND ".join("json_extract(data, ?) = ?" for _ in filters)
            params: List[Any] = []
            for key, value in filters.items():
                params += [f"$.{key}", value]
            where = f"WHERE {clauses}" if filters else ""
            return self._documents(
                f"SELECT data FROM {table} {where} ORDER BY created_at, rowid", params
            )

    def count(self, table: str) -> int:
        with self._lock:
            self._prepare(table)
            return self._connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._prepare(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._autocommit()

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        try:
            if self._depth == 1:
                self._connection.commit()
        finally:
            self._depth -= 1
            self._lock.release()

    def rollback(self) -> None:
        try:
            if self._depth == 1:
                self._connection.rollback()
                # Tables created inside the scope may be gone again
                self._known_tables.clear()
        finally:
            self._depth -= 1
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, timeout: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a URL

    Supported forms: ``memory://`` and ``sqlite:///path/to/file.db``
    (``sqlite:///:memory:`` for a throwaway SQLite database).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()

    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):], timeout=timeout)

    raise ValueError(f"Unsupported database URL: {database_url}")
