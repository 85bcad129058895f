"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Besides key-based reads and inserts, every backend exposes one atomic-update
primitive, commit_batch: a set of conditional updates (compare expected field
values, then apply changes) plus record inserts that take effect together or
not at all. Balance mutations only ever go through it.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Sequence, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict, field
from pathlib import Path
from contextlib import contextmanager


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        # Convert Decimal objects to strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


@dataclass
class ConditionalUpdate:
    """Apply ``changes`` to a record only if every ``expected`` field still matches"""
    table: str
    record_id: str
    expected: Dict[str, Any]
    changes: Dict[str, Any]

    @property
    def sort_key(self):
        return (self.table, self.record_id)


@dataclass
class RecordInsert:
    """Insert a new record; the key must not exist yet"""
    table: str
    record_id: str
    data: Dict[str, Any] = field(default_factory=dict)


class RecordExistsError(Exception):
    """Raised when an insert targets a key that is already taken"""

    def __init__(self, table: str, record_id: str):
        super().__init__(f"Record {record_id} already exists in {table}")
        self.table = table
        self.record_id = record_id


class _ConditionFailed(Exception):
    """Internal signal used to abort a batch whose expectations no longer hold"""


def _normalize(data: Dict[str, Any]) -> Dict[str, Any]:
    """JSON round-trip so stored values compare the same in every backend"""
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], expected: Dict[str, Any]) -> bool:
    """Check that every expected field matches the stored value"""
    for key, value in _normalize(expected).items():
        if key not in record or record[key] != value:
            return False
    return True


def _matches_filters(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table, oldest insert first"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Insert a record if the key is free; False if it already exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def commit_batch(
        self,
        updates: Sequence[ConditionalUpdate] = (),
        inserts: Sequence[RecordInsert] = ()
    ) -> bool:
        """
        Atomically apply conditional updates and inserts.

        Updates are applied in canonical (table, record_id) order. Returns
        False, with nothing written, if any update's record is missing or no
        longer matches its expected values.

        Raises:
            RecordExistsError: If an insert key is already taken (nothing written)
        """
        pass

    @abstractmethod
    def increment(self, table: str, counter: str) -> int:
        """
        Atomically advance a named counter and return the new value.

        The counter starts at zero, so the first call returns 1.
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def compare_and_swap(
        self,
        table: str,
        record_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any]
    ) -> bool:
        """Single-record conditional update"""
        return self.commit_batch(updates=[ConditionalUpdate(table, record_id, expected, changes)])


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                # Deep copy to prevent external mutation
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Insert a record if absent"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                return False
            self._data[table][record_id] = _normalize(data)
            return True

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                json.loads(json.dumps(record))
                for record in self._data[table].values()
                if _matches_filters(record, filters)
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def commit_batch(
        self,
        updates: Sequence[ConditionalUpdate] = (),
        inserts: Sequence[RecordInsert] = ()
    ) -> bool:
        """Check everything first, then write, all under the store lock"""
        with self._lock:
            ordered = sorted(updates, key=lambda u: u.sort_key)

            for update in ordered:
                self._ensure_table(update.table)
                record = self._data[update.table].get(update.record_id)
                if record is None or not _matches(record, update.expected):
                    return False

            for record_insert in inserts:
                self._ensure_table(record_insert.table)
                if record_insert.record_id in self._data[record_insert.table]:
                    raise RecordExistsError(record_insert.table, record_insert.record_id)

            for update in ordered:
                record = self._data[update.table][update.record_id]
                record.update(_normalize(update.changes))

            for record_insert in inserts:
                self._data[record_insert.table][record_insert.record_id] = _normalize(record_insert.data)

            return True

    def increment(self, table: str, counter: str) -> int:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(counter)
            current = record["value"] if record else 0
            value = current + 1
            self._data[table][counter] = {"id": counter, "value": value}
            return value

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 30.0):
        self.db_path = str(db_path)
        # Autocommit mode; batches open explicit BEGIN IMMEDIATE transactions
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            # Create index on timestamps for better query performance
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)

    @contextmanager
    def _write_transaction(self):
        """
        Hold the database write lock for the duration of the block.

        BEGIN IMMEDIATE takes the RESERVED lock up front, so reads inside the
        block cannot be invalidated by another connection before the writes.
        """
        with self._lock:
            self._connection.execute("BEGIN IMMEDIATE")
            try:
                yield self._connection
            except BaseException:
                if self._connection.in_transaction:
                    self._connection.execute("ROLLBACK")
                raise
            else:
                self._connection.execute("COMMIT")

    def _select_data(self, connection, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        row = connection.execute(f"SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
        if row:
            return json.loads(row['data'])
        return None

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            return self._select_data(self._connection, table, record_id)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Insert a record if absent"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            cursor = self._connection.execute(f"""
                INSERT OR IGNORE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (record_id, json.dumps(data, default=str), now, now))
            return cursor.rowcount > 0

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches_filters(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def commit_batch(
        self,
        updates: Sequence[ConditionalUpdate] = (),
        inserts: Sequence[RecordInsert] = ()
    ) -> bool:
        ordered = sorted(updates, key=lambda u: u.sort_key)
        for table in {u.table for u in ordered} | {i.table for i in inserts}:
            self._ensure_table(table)

        now = datetime.now(timezone.utc).isoformat()
        try:
            with self._write_transaction() as connection:
                for update in ordered:
                    record = self._select_data(connection, update.table, update.record_id)
                    if record is None or not _matches(record, update.expected):
                        raise _ConditionFailed()
                    record.update(_normalize(update.changes))
                    connection.execute(f"""
                        UPDATE {update.table} SET data = ?, updated_at = ? WHERE id = ?
                    """, (json.dumps(record), now, update.record_id))

                for record_insert in inserts:
                    try:
                        connection.execute(f"""
                            INSERT INTO {record_insert.table} (id, data, created_at, updated_at)
                            VALUES (?, ?, ?, ?)
                        """, (record_insert.record_id, json.dumps(record_insert.data, default=str), now, now))
                    except sqlite3.IntegrityError:
                        raise RecordExistsError(record_insert.table, record_insert.record_id)
        except _ConditionFailed:
            return False
        return True

    def increment(self, table: str, counter: str) -> int:
        self._ensure_table(table)
        now = datetime.now(timezone.utc).isoformat()
        with self._write_transaction() as connection:
            record = self._select_data(connection, table, counter)
            current = record["value"] if record else 0
            value = current + 1
            data = json.dumps({"id": counter, "value": value})
            if record is None:
                connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?)
                """, (counter, data, now, now))
            else:
                connection.execute(f"""
                    UPDATE {table} SET data = ?, updated_at = ? WHERE id = ?
                """, (data, now, counter))
        return value

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    Supported forms: ``memory://`` and ``sqlite:///path/to/file.db``
    (``sqlite://`` or ``sqlite:///:memory:`` for an in-memory SQLite database).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
