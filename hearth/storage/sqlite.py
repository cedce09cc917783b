"""SQLite storage for hearth.

Each store is a table of JSON documents keyed by primary key; secondary
indexes are expression indexes over ``json_extract``. A ``Transaction`` is one
connection with an open ``BEGIN`` (read) or ``BEGIN IMMEDIATE`` (write).
Reads inside a transaction see its own writes.
"""

import contextlib
import logging
import sqlite3
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from hearth.protocols import ConstraintError, MigrationError, StorageError
from hearth.serializers import from_json, key_to_storage, to_json
from hearth.storage.schema import (
    MigrationOp,
    apply_ops,
    init_catalog,
    key_path_columns,
    read_catalog,
    table_name,
)
from hearth.types import KeyPath, SchemaSnapshot

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT_MS = 5000

ASC = "ASC"
DESC = "DESC"


class TransactionMode(str, Enum):
    READ = "read"
    WRITE = "write"


@contextlib.contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    """Translate sqlite3 errors into hearth storage errors."""
    try:
        yield
    except sqlite3.IntegrityError as e:
        raise ConstraintError(f"{action}: {e}") from e
    except sqlite3.Error as e:
        raise StorageError(f"{action}: {e}") from e


class Transaction:
    """A single storage transaction.

    Created by ``SQLiteDatabase.begin``. Whoever creates a transaction is the
    only one who may ``commit`` or ``abort`` it.
    """

    def __init__(self, conn: sqlite3.Connection, mode: TransactionMode):
        self._conn = conn
        self.mode = mode
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    @property
    def writable(self) -> bool:
        return self.mode is TransactionMode.WRITE

    def _check_active(self) -> None:
        if not self._active:
            raise StorageError("Transaction is already finished")

    def _check_writable(self) -> None:
        if not self.writable:
            raise StorageError("Transaction is read-only")

    def _finish(self, statement: str) -> None:
        self._check_active()
        try:
            with _storage_errors(statement.lower()):
                self._conn.execute(statement)
        finally:
            self._active = False
            self._conn.close()

    def commit(self) -> None:
        self._finish("COMMIT")

    def abort(self) -> None:
        self._finish("ROLLBACK")

    # === Records ===

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        self._check_active()
        with _storage_errors("Storage query failed"):
            return self._conn.execute(sql, params)

    def get(self, store: str, key: Any) -> Optional[Dict[str, Any]]:
        row = self.execute(
            f"SELECT data FROM {table_name(store)} WHERE pk = ?", (key_to_storage(key),)
        ).fetchone()
        return from_json(row["data"]) if row else None

    def insert(self, store: str, key: Any, data: Dict[str, Any]) -> None:
        """Insert a record; an existing key raises ``ConstraintError``."""
        self._check_writable()
        storage_key = key_to_storage(key)
        try:
            self.execute(
                f"INSERT INTO {table_name(store)} (pk, data) VALUES (?, ?)",
                (storage_key, to_json(data)),
            )
        except ConstraintError as e:
            raise ConstraintError(f"Key {key!r} already exists in store {store}") from e

    def upsert(self, store: str, key: Any, data: Dict[str, Any]) -> None:
        self._check_writable()
        self.execute(
            f"INSERT INTO {table_name(store)} (pk, data) VALUES (?, ?) "
            "ON CONFLICT(pk) DO UPDATE SET data = excluded.data",
            (key_to_storage(key), to_json(data)),
        )

    def delete(self, store: str, key: Any) -> int:
        self._check_writable()
        cursor = self.execute(
            f"DELETE FROM {table_name(store)} WHERE pk = ?", (key_to_storage(key),)
        )
        return cursor.rowcount

    def delete_many(self, store: str, keys: Sequence[Any]) -> int:
        self._check_writable()
        deleted = 0
        # stay under SQLite's bound-parameter limit
        for start in range(0, len(keys), 500):
            chunk = [key_to_storage(key) for key in keys[start : start + 500]]
            placeholders = ",".join("?" * len(chunk))
            cursor = self.execute(
                f"DELETE FROM {table_name(store)} WHERE pk IN ({placeholders})", chunk
            )
            deleted += cursor.rowcount
        return deleted

    def clear(self, store: str) -> int:
        self._check_writable()
        return self.execute(f"DELETE FROM {table_name(store)}").rowcount

    def count(self, store: str) -> int:
        return self.execute(f"SELECT COUNT(*) FROM {table_name(store)}").fetchone()[0]

    def scan(
        self,
        store: str,
        index_key_path: Optional[KeyPath] = None,
        direction: str = ASC,
        key_path: Optional[KeyPath] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Yield records in primary key order, or in the order of an index.

        Records whose index key is null or missing are skipped by index scans.
        Pass the store's composite ``key_path`` to order a primary key scan
        element by element; the ``pk`` column holds composite keys as text.
        """
        if direction not in (ASC, DESC):
            raise StorageError(f"Invalid scan direction: {direction}")

        if index_key_path is None and isinstance(key_path, tuple):
            order = ", ".join(f"{column} {direction}" for column in key_path_columns(key_path))
            sql = f"SELECT data FROM {table_name(store)} ORDER BY {order}, pk {direction}"
        elif index_key_path is None:
            sql = f"SELECT data FROM {table_name(store)} ORDER BY pk {direction}"
        else:
            columns = key_path_columns(index_key_path)
            where = " AND ".join(f"{column} IS NOT NULL" for column in columns)
            order = ", ".join(f"{column} {direction}" for column in columns)
            sql = (
                f"SELECT data FROM {table_name(store)} WHERE {where} "
                f"ORDER BY {order}, pk {direction}"
            )

        cursor = self.execute(sql)
        while True:
            with _storage_errors("Storage scan failed"):
                rows = cursor.fetchmany(100)
            if not rows:
                return
            for row in rows:
                yield from_json(row["data"])


class SQLiteDatabase:
    """SQLite-backed document storage.

    Args:
        db_path: Path to the database file (parent directories are created)
        busy_timeout_ms: How long a connection waits on a locked database
    """

    def __init__(self, db_path: Union[str, Path], busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS):
        self.db_path = Path(db_path).expanduser()
        self.busy_timeout_ms = busy_timeout_ms
        self._initialized = False

    def _get_conn(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode; transactions are explicit."""
        if not self._initialized:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with _storage_errors(f"Cannot open database {self.db_path}"):
            conn = sqlite3.connect(
                str(self.db_path), isolation_level=None, check_same_thread=False
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        if not self._initialized:
            with _storage_errors("Cannot create schema catalog"):
                init_catalog(conn)
            self._initialized = True
        return conn

    @contextlib.contextmanager
    def _connect(self, mode: TransactionMode = TransactionMode.READ):
        """Context manager that handles the transaction AND closes the connection."""
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE" if mode is TransactionMode.WRITE else "BEGIN")
            yield conn
            conn.execute("COMMIT")
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    # === Transactions ===

    def begin(self, mode: TransactionMode = TransactionMode.WRITE) -> Transaction:
        """Open a caller-owned transaction."""
        conn = self._get_conn()
        try:
            with _storage_errors("Cannot begin transaction"):
                if mode is TransactionMode.READ:
                    conn.execute("PRAGMA query_only = ON")
                    conn.execute("BEGIN")
                else:
                    conn.execute("BEGIN IMMEDIATE")
        except StorageError:
            conn.close()
            raise
        return Transaction(conn, mode)

    @contextlib.contextmanager
    def transaction(self, mode: TransactionMode = TransactionMode.WRITE) -> Iterator[Transaction]:
        """Scoped transaction: commit on success, abort on any exception."""
        tx = self.begin(mode)
        try:
            yield tx
        except BaseException:
            if tx.active:
                tx.abort()
            raise
        if tx.active:
            tx.commit()

    # === Schema ===

    def read_schema(self) -> SchemaSnapshot:
        with self._connect() as conn:
            with _storage_errors("Cannot read schema catalog"):
                return read_catalog(conn)

    def schema_version(self) -> int:
        with self._connect() as conn:
            return conn.execute("PRAGMA user_version").fetchone()[0]

    def upgrade(self, ops: Sequence[MigrationOp]) -> int:
        """Apply ``ops`` atomically and bump the schema version by one.

        An empty op list changes nothing and returns the current version.

        Raises:
            MigrationError: If any op fails; nothing is applied in that case
        """
        with self._connect(TransactionMode.WRITE) as conn:
            version = conn.execute("PRAGMA user_version").fetchone()[0]
            if not ops:
                return version
            apply_ops(conn, ops)
            try:
                conn.execute(f"PRAGMA user_version = {int(version) + 1}")
            except sqlite3.Error as e:
                raise MigrationError(f"Cannot bump schema version: {e}") from e
        return version + 1

    # === Lifecycle ===

    def destroy(self) -> List[Path]:
        """Delete the database file and its WAL/SHM companions."""
        removed = []
        for suffix in ("", "-wal", "-shm", "-journal"):
            path = Path(f"{self.db_path}{suffix}")
            if path.exists():
                path.unlink()
                removed.append(path)
        self._initialized = False
        logger.info(f"Destroyed database {self.db_path}")
        return removed
