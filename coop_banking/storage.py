"""
Storage Backend Module

Provides the abstract ledger store interface and implementations for in-memory
(testing), SQLite (single node persistence) and PostgreSQL (shared by several
engine instances). All monetary values are stored as Decimal strings.

Every backend offers `atomic()`, a unit of work that stages writes, locks
records in ascending key order with a bounded wait, and commits everything or
nothing.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import ConcurrencyConflict, StorageFailure, UniqueConstraintViolation

SEQUENCES_TABLE = "sequences"
DEFAULT_TRANSACTION_TIMEOUT = 5.0


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    """Deep copy through JSON to prevent external mutation"""
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if record.get(key) != value:
            return False
    return True


def _index_key(record: Dict[str, Any], fields: Sequence[str]) -> Optional[Tuple[Any, ...]]:
    """Index key of a record; None when any field is missing (sparse index)"""
    values = []
    for name in fields:
        value = record.get(name)
        if value is None:
            return None
        values.append(value)
    return tuple(values)


def _index_name(table: str, fields: Sequence[str], unique: bool) -> str:
    prefix = "uq" if unique else "idx"
    return f"{prefix}_{table}_{'_'.join(fields)}"


class StorageTransaction(ABC):
    """
    One atomic unit of work. Reads see the transaction's own staged writes;
    nothing becomes visible to others until commit.
    """

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record, including staged writes"""
        pass

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Stage an insert-or-update"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Stage an insert; fails with UniqueConstraintViolation if the id exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters, including staged writes"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def lock(self, table: str, record_ids: Iterable[str]) -> None:
        """
        Lock records for the rest of the transaction. Keys are taken in
        ascending order; waiting past the deadline raises ConcurrencyConflict.
        """
        pass

    def next_sequence(self, name: str, key: str) -> int:
        """Increment and return a per-key counter, starting at 1"""
        record_id = f"{name}:{key}"
        self.lock(SEQUENCES_TABLE, [record_id])
        current = self.load(SEQUENCES_TABLE, record_id)
        value = (int(current['value']) if current else 0) + 1
        self.save(SEQUENCES_TABLE, record_id, {
            'id': record_id,
            'name': name,
            'key': key,
            'value': value
        })
        return value


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    default_timeout: float = DEFAULT_TRANSACTION_TIMEOUT

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
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
    def create_index(self, table: str, fields: Sequence[str], unique: bool = False) -> None:
        """
        Declare a secondary index. Unique indexes are sparse: records with a
        missing or null indexed field are not constrained.
        """
        pass

    @abstractmethod
    def atomic(self, timeout: Optional[float] = None):
        """Context manager yielding a StorageTransaction"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass


class _InMemoryTransaction(StorageTransaction):
    """Staged writes plus per-record locks over an InMemoryStorage"""

    def __init__(self, storage: 'InMemoryStorage', timeout: float):
        self._storage = storage
        self._deadline = time.monotonic() + timeout
        self._held: List[threading.Lock] = []
        self._held_keys = set()
        self._staged: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._inserts = set()

    def lock(self, table: str, record_ids: Iterable[str]) -> None:
        for record_id in sorted(set(record_ids)):
            key = (table, record_id)
            if key in self._held_keys:
                continue
            row_lock = self._storage._row_lock(table, record_id)
            remaining = self._deadline - time.monotonic()
            if remaining <= 0 or not row_lock.acquire(timeout=remaining):
                raise ConcurrencyConflict(
                    f"Timed out waiting for lock on {table}/{record_id}",
                    {"table": table, "record_id": record_id}
                )
            self._held.append(row_lock)
            self._held_keys.add(key)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        staged = self._staged.get((table, record_id))
        if staged is not None:
            return _copy(staged)
        return self._storage.load(table, record_id)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._staged[(table, record_id)] = _copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        if self.exists(table, record_id):
            raise UniqueConstraintViolation(table, ("id",))
        self._staged[(table, record_id)] = _copy(data)
        self._inserts.add((table, record_id))

    def exists(self, table: str, record_id: str) -> bool:
        return (table, record_id) in self._staged or self._storage.exists(table, record_id)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        staged = {record_id: record for (staged_table, record_id), record in self._staged.items()
                  if staged_table == table}
        return self._storage._find(table, filters, staged)

    def _commit(self) -> None:
        storage = self._storage
        with storage._lock:
            for table, record_id in self._inserts:
                if record_id in storage._data.get(table, {}):
                    raise UniqueConstraintViolation(table, ("id",))

            by_table: Dict[str, Dict[str, Dict[str, Any]]] = {}
            for (table, record_id), record in self._staged.items():
                by_table.setdefault(table, {})[record_id] = record

            for table, rows in by_table.items():
                merged = dict(storage._data.get(table, {}))
                merged.update(rows)
                for record_id, record in rows.items():
                    storage._check_unique(table, record_id, record, merged)

            for table, rows in by_table.items():
                storage._ensure_table(table)
                storage._data[table].update(rows)
        self._staged.clear()

    def _discard(self) -> None:
        self._staged.clear()
        self._inserts.clear()

    def _release(self) -> None:
        for row_lock in reversed(self._held):
            row_lock.release()
        self._held.clear()
        self._held_keys.clear()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self, default_timeout: float = DEFAULT_TRANSACTION_TIMEOUT):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._row_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._indexes: Dict[str, List[Tuple[Tuple[str, ...], bool]]] = {}
        self.default_timeout = default_timeout

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _row_lock(self, table: str, record_id: str) -> threading.Lock:
        with self._lock:
            return self._row_locks.setdefault((table, record_id), threading.Lock())

    def _check_unique(self, table: str, record_id: str, record: Dict[str, Any],
                      rows: Dict[str, Dict[str, Any]]) -> None:
        for fields, unique in self._indexes.get(table, []):
            if not unique:
                continue
            key = _index_key(record, fields)
            if key is None:
                continue
            for other_id, other in rows.items():
                if other_id != record_id and _index_key(other, fields) == key:
                    raise UniqueConstraintViolation(table, fields)

    def create_index(self, table: str, fields: Sequence[str], unique: bool = False) -> None:
        with self._lock:
            entry = (tuple(fields), unique)
            indexes = self._indexes.setdefault(table, [])
            if entry not in indexes:
                indexes.append(entry)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            record = _copy(data)
            self._check_unique(table, record_id, record, self._data[table])
            self._data[table][record_id] = record

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [_copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def _find(self, table: str, filters: Dict[str, Any],
              overlay: Optional[Dict[str, Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
        """Match against committed rows, with overlay records replacing or extending them; copies matches only"""
        overlay = overlay or {}
        with self._lock:
            self._ensure_table(table)
            rows = self._data[table]
            matches = []
            for record_id, record in rows.items():
                record = overlay.get(record_id, record)
                if _matches(record, filters):
                    matches.append(_copy(record))
            for record_id, record in overlay.items():
                if record_id not in rows and _matches(record, filters):
                    matches.append(_copy(record))
            return matches

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return self._find(table, filters)

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    @contextmanager
    def atomic(self, timeout: Optional[float] = None):
        """Unit of work: staged writes applied under the store lock at commit"""
        txn = _InMemoryTransaction(self, self.default_timeout if timeout is None else timeout)
        try:
            yield txn
            txn._commit()
        except BaseException:
            txn._discard()
            raise
        finally:
            txn._release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class _DirectTransaction(StorageTransaction):
    """
    Transaction view for SQL backends: statements run on the backend's
    connection inside the open database transaction.
    """

    def __init__(self, storage: 'StorageInterface'):
        self._storage = storage

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.load(table, record_id)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._storage.save(table, record_id, data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._storage._insert(table, record_id, data)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self._storage.find(table, filters)

    def exists(self, table: str, record_id: str) -> bool:
        return self._storage.exists(table, record_id)

    def lock(self, table: str, record_ids: Iterable[str]) -> None:
        self._storage._lock_rows(table, sorted(set(record_ids)))


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    SQLite has no row locks: a unit of work holds the database write lock
    (BEGIN IMMEDIATE) for its whole duration, which serializes all balance
    mutations on this database.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:",
                 default_timeout: float = DEFAULT_TRANSACTION_TIMEOUT):
        self.db_path = str(db_path)
        self.default_timeout = default_timeout
        # Autocommit mode; transactions are opened explicitly by atomic()
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=default_timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables = set()
        self._indexes: Dict[str, List[Tuple[Tuple[str, ...], bool]]] = {}

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _execute(self, sql: str, params: Sequence[Any] = (), table: Optional[str] = None):
        try:
            return self._connection.execute(sql, params)
        except sqlite3.IntegrityError as e:
            raise UniqueConstraintViolation(table or "", self._violated_fields(table, str(e)), str(e)) from e
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise ConcurrencyConflict(f"Database is busy: {e}") from e
            raise StorageFailure(f"SQLite error: {e}") from e
        except sqlite3.Error as e:
            raise StorageFailure(f"SQLite error: {e}") from e

    def _violated_fields(self, table: Optional[str], message: str) -> Tuple[str, ...]:
        for fields, unique in self._indexes.get(table or "", []):
            if unique and _index_name(table, fields, unique) in message:
                return fields
        return ("id",)

    def _create_index_sql(self, table: str, fields: Tuple[str, ...], unique: bool) -> str:
        columns = ", ".join(f"json_extract(data, '$.{name}')" for name in fields)
        kind = "UNIQUE INDEX" if unique else "INDEX"
        return f"CREATE {kind} IF NOT EXISTS {_index_name(table, fields, unique)} ON {table}({columns})"

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        with self._lock:
            if table in self._tables:
                return
            self._execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """, table=table)
            self._execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """, table=table)
            for fields, unique in self._indexes.get(table, []):
                self._execute(self._create_index_sql(table, fields, unique), table=table)
            self._tables.add(table)

    def create_index(self, table: str, fields: Sequence[str], unique: bool = False) -> None:
        with self._lock:
            entry = (tuple(fields), unique)
            indexes = self._indexes.setdefault(table, [])
            if entry in indexes:
                return
            indexes.append(entry)
            if table in self._tables:
                self._execute(self._create_index_sql(table, entry[0], unique), table=table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite (insert or update by id)"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), now, now), table=table)

    def _insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (record_id, json.dumps(data, default=str), now, now), table=table)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"SELECT data FROM {table} WHERE id = ?", (record_id,), table).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT data FROM {table} ORDER BY created_at", table=table)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"DELETE FROM {table} WHERE id = ?", (record_id,), table)
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,), table)
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using json_extract"""
        with self._lock:
            self._ensure_table(table)
            conditions = []
            params: List[Any] = []
            for key, value in filters.items():
                if value is None:
                    conditions.append(f"json_extract(data, '$.{key}') IS NULL")
                else:
                    conditions.append(f"json_extract(data, '$.{key}') = ?")
                    params.append(int(value) if isinstance(value, bool) else value)
            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = self._execute(
                f"SELECT data FROM {table} {where_clause} ORDER BY created_at", params, table
            )
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT COUNT(*) AS count FROM {table}", table=table)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}", table=table)

    def _lock_rows(self, table: str, record_ids: List[str]) -> None:
        """The database write lock is already held for the whole transaction"""
        pass

    @contextmanager
    def atomic(self, timeout: Optional[float] = None):
        """Unit of work under BEGIN IMMEDIATE, bounded by timeout"""
        timeout = self.default_timeout if timeout is None else timeout
        if not self._lock.acquire(timeout=timeout):
            raise ConcurrencyConflict(f"Timed out after {timeout}s waiting for the database")
        try:
            if self._in_transaction:
                # Re-entrant use from the same thread joins the open transaction
                yield _DirectTransaction(self)
                return

            self._execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield _DirectTransaction(self)
                self._execute("COMMIT")
            except BaseException:
                self._rollback()
                raise
            finally:
                self._in_transaction = False
        finally:
            self._lock.release()

    def _rollback(self) -> None:
        if self._connection.in_transaction:
            self._connection.rollback()
        # Tables created inside the rolled back transaction are gone again
        self._tables.clear()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


# PostgreSQL error codes treated as retryable conflicts
_PG_CONFLICT_CODES = {
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "55P03",  # lock_not_available
    "57014",  # query_canceled (statement_timeout)
}
_PG_UNIQUE_VIOLATION = "23505"


class _PostgreSQLTransaction(_DirectTransaction):

    def next_sequence(self, name: str, key: str) -> int:
        return self._storage._next_sequence(name, key)


class PostgreSQLStorage(StorageInterface):
    """
    PostgreSQL storage backend with ACID transaction support.

    Units of work lock account rows with SELECT ... FOR UPDATE in id order and
    a transaction-local lock_timeout, so several engine processes can share
    one database.
    """

    def __init__(self, connection_string: str,
                 default_timeout: float = DEFAULT_TRANSACTION_TIMEOUT):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self.default_timeout = default_timeout
        self._connection = None
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables = set()
        self._indexes: Dict[str, List[Tuple[Tuple[str, ...], bool]]] = {}
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually

    def _translate_error(self, error: Exception, table: Optional[str]) -> Exception:
        code = getattr(error, 'pgcode', None)
        if code == _PG_UNIQUE_VIOLATION:
            constraint = getattr(getattr(error, 'diag', None), 'constraint_name', None) or ""
            fields: Tuple[str, ...] = ("id",)
            for index_fields, unique in self._indexes.get(table or "", []):
                if unique and _index_name(table, index_fields, unique) == constraint:
                    fields = index_fields
            return UniqueConstraintViolation(table or "", fields, str(error))
        if code in _PG_CONFLICT_CODES:
            return ConcurrencyConflict(f"PostgreSQL conflict ({code}): {error}")
        return StorageFailure(f"PostgreSQL error: {error}")

    @contextmanager
    def _cursor(self, table: Optional[str] = None):
        cursor = self._connection.cursor()
        try:
            yield cursor
            if not self._in_transaction:
                self._connection.commit()
        except self.psycopg2.Error as e:
            if not self._in_transaction:
                self._connection.rollback()
            raise self._translate_error(e, table) from e
        finally:
            cursor.close()

    def _create_index_sql(self, table: str, fields: Tuple[str, ...], unique: bool) -> str:
        columns = ", ".join(f"(data ->> '{name}')" for name in fields)
        kind = "UNIQUE INDEX" if unique else "INDEX"
        return f"CREATE {kind} IF NOT EXISTS {_index_name(table, fields, unique)} ON {table} ({columns})"

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        with self._lock:
            if table in self._tables:
                return
            with self._cursor(table) as cursor:
                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        data JSONB NOT NULL,
                        created_at TIMESTAMP DEFAULT NOW(),
                        updated_at TIMESTAMP DEFAULT NOW()
                    )
                """)
                cursor.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                    ON {table}(created_at)
                """)
                for fields, unique in self._indexes.get(table, []):
                    cursor.execute(self._create_index_sql(table, fields, unique))
            self._tables.add(table)

    def create_index(self, table: str, fields: Sequence[str], unique: bool = False) -> None:
        with self._lock:
            entry = (tuple(fields), unique)
            indexes = self._indexes.setdefault(table, [])
            if entry in indexes:
                return
            indexes.append(entry)
            if table in self._tables:
                with self._cursor(table) as cursor:
                    cursor.execute(self._create_index_sql(table, entry[0], unique))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            with self._cursor(table) as cursor:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_at = EXCLUDED.updated_at
                """, (record_id, json.dumps(data, default=str), now, now))

    def _insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            with self._cursor(table) as cursor:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                """, (record_id, json.dumps(data, default=str), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table) as cursor:
                cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
                row = cursor.fetchone()
                return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table) as cursor:
                cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
                return [dict(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table) as cursor:
                cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
                return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table) as cursor:
                cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
                return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        with self._lock:
            self._ensure_table(table)
            conditions = []
            params: List[Any] = []
            for key, value in filters.items():
                if value is None:
                    conditions.append("data ->> %s IS NULL")
                    params.append(key)
                else:
                    conditions.append("data ->> %s = %s")
                    if isinstance(value, bool):
                        value = "true" if value else "false"
                    params.extend([key, str(value)])
            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            with self._cursor(table) as cursor:
                cursor.execute(f"SELECT data FROM {table} {where_clause} ORDER BY created_at", params)
                return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table) as cursor:
                cursor.execute(f"SELECT COUNT(*) AS count FROM {table}")
                return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table) as cursor:
                cursor.execute(f"DELETE FROM {table}")

    def _lock_rows(self, table: str, record_ids: List[str]) -> None:
        if not record_ids:
            return
        self._ensure_table(table)
        with self._cursor(table) as cursor:
            cursor.execute(
                f"SELECT id FROM {table} WHERE id = ANY(%s) ORDER BY id FOR UPDATE",
                (list(record_ids),)
            )

    def _next_sequence(self, name: str, key: str) -> int:
        self._ensure_table(SEQUENCES_TABLE)
        record_id = f"{name}:{key}"
        now = datetime.now(timezone.utc)
        initial = json.dumps({'id': record_id, 'name': name, 'key': key, 'value': 1})
        with self._cursor(SEQUENCES_TABLE) as cursor:
            cursor.execute(f"""
                INSERT INTO {SEQUENCES_TABLE} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = jsonb_set(
                        {SEQUENCES_TABLE}.data, '{{value}}',
                        to_jsonb((({SEQUENCES_TABLE}.data ->> 'value')::bigint) + 1)
                    ),
                    updated_at = EXCLUDED.updated_at
                RETURNING (data ->> 'value')::bigint AS value
            """, (record_id, initial, now, now))
            return int(cursor.fetchone()['value'])

    @contextmanager
    def atomic(self, timeout: Optional[float] = None):
        """Unit of work with a transaction-local lock timeout"""
        timeout = self.default_timeout if timeout is None else timeout
        if not self._lock.acquire(timeout=timeout):
            raise ConcurrencyConflict(f"Timed out after {timeout}s waiting for the connection")
        try:
            if self._in_transaction:
                yield _PostgreSQLTransaction(self)
                return

            self._in_transaction = True
            try:
                with self._cursor() as cursor:
                    millis = f"{int(timeout * 1000)}ms"
                    cursor.execute("SET LOCAL lock_timeout = %s", (millis,))
                    cursor.execute("SET LOCAL statement_timeout = %s", (millis,))
                yield _PostgreSQLTransaction(self)
                try:
                    self._connection.commit()
                except self.psycopg2.Error as e:
                    raise self._translate_error(e, None) from e
            except BaseException:
                self._connection.rollback()
                # DDL is transactional; tables created in this transaction are gone
                self._tables.clear()
                raise
            finally:
                self._in_transaction = False
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str,
                   default_timeout: float = DEFAULT_TRANSACTION_TIMEOUT) -> StorageInterface:
    """
    Build a storage backend from a URL:
    memory://, sqlite:///path/to.db, sqlite:///:memory:, postgresql://...
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage(default_timeout=default_timeout)
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:", default_timeout=default_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, default_timeout=default_timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
