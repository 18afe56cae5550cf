"""
Storage Backend Module

Record store for journal entries, inventory items and movements, invoices,
sequences and audit events. Two backends: in-memory (tests, single
process) and SQLite (persistence). Records are JSON documents keyed by id;
monetary values are stored as Decimal strings.

Both backends nest transactions through ``atomic()``. A business event
(post entry + update item + record movement) commits as a whole, and a
rollback at any nesting level leaves the store exactly as it was when that
level began.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import json
import re
import sqlite3
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Record = Dict[str, Any]


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Record:
        """Convert to a JSON-ready dictionary"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


def matches_filters(record: Record, filters: Dict[str, Any]) -> bool:
    """Every filter key is present in the record with an equal value"""
    return all(key in record and record[key] == value for key, value in filters.items())


def _clone(record: Record) -> Record:
    # JSON round trip: detaches the copy and normalises Decimals/dates to strings
    return json.loads(json.dumps(record, default=str))


class StorageInterface(ABC):
    """
    Abstract record store

    Implementations must make ``begin_transaction``/``commit``/``rollback``
    nest, and must hold their lock for the whole outermost transaction so
    other threads never observe half of a business event.
    """

    SEQUENCES_TABLE = "sequences"

    @abstractmethod
    def save(self, table: str, record_id: str, data: Record) -> None:
        """Insert or replace a record"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Record]:
        """Record by id, or None"""

    @abstractmethod
    def load_all(self, table: str) -> List[Record]:
        """Every record of a table in insertion order"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Record]:
        """Records whose top-level fields equal every filter value"""

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @property
    def in_transaction(self) -> bool:
        return False

    def begin_transaction(self) -> None:
        """Open a transaction, or a nested level inside the current one"""

    def commit(self) -> None:
        """Keep the work of the innermost open level"""

    def rollback(self) -> None:
        """Discard the work of the innermost open level"""

    @contextmanager
    def atomic(self):
        """Run the block as one unit of work; any exception undoes it"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()

    def next_value(self, sequence: str) -> int:
        """
        Advance a named counter and return the new value

        The counter is an ordinary record, so a rolled-back transaction
        also gives its numbers back.
        """
        with self.atomic():
            current = self.load(self.SEQUENCES_TABLE, sequence)
            value = (current['value'] if current else 0) + 1
            self.save(self.SEQUENCES_TABLE, sequence, {'id': sequence, 'value': value})
            return value


class InMemoryStorage(StorageInterface):
    """
    Dictionary-backed store

    A transaction holds the store lock from begin to the matching
    commit/rollback. Each nesting level keeps an undo log with the value
    every touched (table, id) had before that level first wrote it, so a
    rollback only restores what the level changed.
    """

    def __init__(self):
        self._tables: Dict[str, Dict[str, Record]] = {}
        self._lock = threading.RLock()
        self._undo: List[Dict[Tuple[str, str], Optional[Record]]] = []

    def _table(self, table: str) -> Dict[str, Record]:
        return self._tables.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Record) -> None:
        with self._lock:
            rows = self._table(table)
            if self._undo:
                # Stored records are never mutated in place, only replaced
                self._undo[-1].setdefault((table, record_id), rows.get(record_id))
            rows[record_id] = _clone(data)

    def load(self, table: str, record_id: str) -> Optional[Record]:
        with self._lock:
            record = self._table(table).get(record_id)
            return _clone(record) if record is not None else None

    def load_all(self, table: str) -> List[Record]:
        with self._lock:
            return [_clone(record) for record in self._table(table).values()]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Record]:
        with self._lock:
            return [_clone(record) for record in self._table(table).values()
                    if matches_filters(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def close(self) -> None:
        pass

    @property
    def in_transaction(self) -> bool:
        return bool(self._undo)

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._undo.append({})

    def commit(self) -> None:
        if not self._undo:
            return
        changes = self._undo.pop()
        if self._undo:
            # The enclosing level must still be able to undo this work;
            # keys it already holds carry the older prior value
            outer = self._undo[-1]
            for key, previous in changes.items():
                outer.setdefault(key, previous)
        self._lock.release()

    def rollback(self) -> None:
        if not self._undo:
            return
        for (table, record_id), previous in self._undo.pop().items():
            if previous is None:
                self._table(table).pop(record_id, None)
            else:
                self._table(table)[record_id] = previous
        self._lock.release()


class SQLiteStorage(StorageInterface):
    """
    SQLite document store, one table per record type

    Nested transactions map to SAVEPOINTs. Rows keep their rowid on update,
    so ``load_all`` returns records in the order they were first saved.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Transactions are opened explicitly in begin_transaction
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._known_tables: set = set()

        if self.db_path != ":memory:":
            self._connection.execute("PRAGMA journal_mode = WAL")
            self._connection.execute("PRAGMA synchronous = NORMAL")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def _table(self, table: str) -> str:
        """Create the table on first use and return its quoted name"""
        if not TABLE_NAME_PATTERN.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        if table not in self._known_tables:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS "{table}" (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._known_tables.add(table)
        return f'"{table}"'

    def save(self, table: str, record_id: str, data: Record) -> None:
        with self._lock:
            name = self._table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT INTO {name} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def load(self, table: str, record_id: str) -> Optional[Record]:
        with self._lock:
            row = self._connection.execute(
                f"SELECT data FROM {self._table(table)} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Record]:
        with self._lock:
            rows = self._connection.execute(
                f"SELECT data FROM {self._table(table)} ORDER BY rowid"
            ).fetchall()
            return [json.loads(row['data']) for row in rows]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            row = self._connection.execute(
                f"SELECT 1 FROM {self._table(table)} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Record]:
        with self._lock:
            return [record for record in self.load_all(table) if matches_filters(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            return self._connection.execute(f"SELECT COUNT(*) FROM {self._table(table)}").fetchone()[0]

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._depth += 1
        if self._depth == 1:
            self._connection.execute("BEGIN")
        else:
            self._connection.execute(f"SAVEPOINT level_{self._depth}")

    def commit(self) -> None:
        if self._depth == 0:
            return
        try:
            if self._depth == 1:
                self._connection.execute("COMMIT")
            else:
                self._connection.execute(f"RELEASE SAVEPOINT level_{self._depth}")
        finally:
            self._depth -= 1
            self._lock.release()

    def rollback(self) -> None:
        if self._depth == 0:
            return
        try:
            if self._depth == 1:
                self._connection.execute("ROLLBACK")
            else:
                self._connection.execute(f"ROLLBACK TO SAVEPOINT level_{self._depth}")
                self._connection.execute(f"RELEASE SAVEPOINT level_{self._depth}")
            # CREATE TABLE may have been undone with the rest
            self._known_tables.clear()
        finally:
            self._depth -= 1
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Storage backend for a database URL

    Args:
        database_url: ``memory`` for in-memory storage or ``sqlite:///path``
            (``sqlite:///`` alone opens a private in-memory SQLite database)

    Raises:
        ValueError: For any other scheme
    """
    if database_url in ("memory", "memory://", ""):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
