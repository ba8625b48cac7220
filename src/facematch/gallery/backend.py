"""Gallery storage backends.

``GalleryBackend`` defines the CRUD surface the gallery store needs;
``SqliteGalleryBackend`` implements it on SQLite. Backend calls are blocking
and thread-safe; the async store runs them in worker threads.
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager, nullcontext
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Generator, Iterator, List, Optional, Sequence, Union

from ..errors import StorageError
from .records import GalleryRecord, GalleryStats

logger = logging.getLogger(__name__)

MEMORY_DATABASE = ":memory:"


class GalleryBackend(ABC):
    """Abstract persistent storage for gallery records."""

    @abstractmethod
    def atomic(self) -> Iterator[None]:
        """Context manager grouping several calls into one transaction."""

    @abstractmethod
    def insert(self, record: GalleryRecord) -> GalleryRecord:
        """Insert a new record and return it with its assigned id."""

    @abstractmethod
    def update(self, record: GalleryRecord) -> bool:
        """Overwrite the stored record with the same id."""

    @abstractmethod
    def upsert_many(self, records: Sequence[GalleryRecord]) -> List[GalleryRecord]:
        """Insert records without id and update the others, all or nothing."""

    @abstractmethod
    def get_by_identity(
        self,
        identity: str,
        include_disabled: bool = False,
    ) -> Optional[GalleryRecord]:
        pass

    @abstractmethod
    def get_by_id(self, record_id: int) -> Optional[GalleryRecord]:
        pass

    @abstractmethod
    def delete_by_identity(self, identity: str) -> int:
        pass

    @abstractmethod
    def delete_by_ids(self, record_ids: Sequence[int]) -> int:
        pass

    @abstractmethod
    def delete_all(self) -> int:
        pass

    @abstractmethod
    def delete_created_before(self, before: datetime) -> int:
        pass

    @abstractmethod
    def list_enabled(self) -> List[GalleryRecord]:
        """Enabled records, most recently created first."""

    @abstractmethod
    def list_all(self) -> List[GalleryRecord]:
        pass

    @abstractmethod
    def count_enabled(self) -> int:
        pass

    @abstractmethod
    def count_total(self) -> int:
        pass

    @abstractmethod
    def oldest_enabled(self, limit: int) -> List[GalleryRecord]:
        pass

    @abstractmethod
    def recent(self, limit: int) -> List[GalleryRecord]:
        pass

    @abstractmethod
    def search(self, keyword: str) -> List[GalleryRecord]:
        """Enabled records whose identity or remarks contain ``keyword``."""

    @abstractmethod
    def by_quality(self, min_quality: float, max_quality: float = 1.0) -> List[GalleryRecord]:
        pass

    @abstractmethod
    def in_time_range(self, start: datetime, end: datetime) -> List[GalleryRecord]:
        pass

    @abstractmethod
    def updated_since(self, version: int) -> List[GalleryRecord]:
        pass

    @abstractmethod
    def stats(self) -> GalleryStats:
        pass

    def close(self):
        """Release resources."""


class SqliteGalleryBackend(GalleryBackend):
    """SQLite-based gallery storage with thread-safe access.

    File databases use one connection per thread in WAL mode, so reads run
    concurrently and never wait on an open write transaction; writers are
    serialized by a re-entrant lock. A ``:memory:`` database only exists
    on the connection that created it, so there a single connection is
    shared between threads and every call takes the lock.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Union[str, Path] = MEMORY_DATABASE, timeout: float = 5.0):
        """Initialize gallery database.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
            timeout: Seconds a connection waits on a locked database
        """
        self.db_path = str(db_path)
        self.timeout = timeout
        self._shared = self.db_path == MEMORY_DATABASE
        if not self._shared:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._local = threading.local()
        self._registry_lock = threading.Lock()
        self._connections: List[sqlite3.Connection] = []
        self._closed = False
        self._connection = self._connect() if self._shared else None
        if not self._shared:
            self._enable_wal()

        self._init_schema()
        logger.info(f"Initialized gallery database at {self.db_path}")

    # -------------------------------------------------------------------------
    # Connection handling
    # -------------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        try:
            connection = sqlite3.connect(
                self.db_path,
                timeout=self.timeout,
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise StorageError(f"Could not open gallery database {self.db_path}", e) from e
        connection.row_factory = sqlite3.Row

        with self._registry_lock:
            self._connections.append(connection)
        return connection

    def _enable_wal(self):
        """Switch the database file to write-ahead logging; the mode persists."""
        try:
            self._get_connection().execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error as e:
            raise StorageError(f"Could not enable WAL on {self.db_path}", e) from e

    def _get_connection(self) -> sqlite3.Connection:
        """Get the shared connection, or this thread's own connection."""
        if self._closed:
            raise StorageError("Gallery database is closed")
        if self._shared:
            return self._connection
        if getattr(self._local, "connection", None) is None:
            self._local.connection = self._connect()
        return self._local.connection

    @contextmanager
    def _transaction(self, write: bool = False) -> Generator[sqlite3.Cursor, None, None]:
        """Context manager for database transactions.

        Nested use joins the outer transaction on the same thread; only the
        outermost level commits or rolls back.
        """
        guard = self._lock if (self._shared or write) else nullcontext()
        with guard:
            connection = self._get_connection()
            cursor = connection.cursor()
            depth = getattr(self._local, "depth", 0)
            outermost = depth == 0
            self._local.depth = depth + 1
            try:
                yield cursor
                if outermost:
                    connection.commit()
            except sqlite3.Error as e:
                if outermost:
                    connection.rollback()
                raise StorageError(f"Gallery database operation failed: {e}", e) from e
            except BaseException:
                if outermost:
                    connection.rollback()
                raise
            finally:
                self._local.depth = depth
                cursor.close()

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._transaction(write=True):
            yield

    def _init_schema(self):
        """Initialize database schema."""
        with self._transaction(write=True) as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS gallery (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    identity TEXT NOT NULL UNIQUE,
                    vector_data BLOB NOT NULL,
                    dimension INTEGER NOT NULL,
                    quality REAL,
                    remarks TEXT,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    version INTEGER NOT NULL DEFAULT 1,
                    attachment BLOB,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_gallery_created_at
                ON gallery(created_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_gallery_enabled
                ON gallery(enabled)
            """)

            # Schema version tracking
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """)
            cursor.execute("""
                INSERT OR IGNORE INTO schema_version (version) VALUES (?)
            """, (self.SCHEMA_VERSION,))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def insert(self, record: GalleryRecord) -> GalleryRecord:
        with self._transaction(write=True) as cursor:
            cursor.execute("""
                INSERT INTO gallery (
                    identity, vector_data, dimension, quality, remarks,
                    enabled, version, attachment, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.identity,
                record.vector_data,
                record.dimension,
                record.quality,
                record.remarks,
                int(record.enabled),
                record.version,
                record.attachment,
                _format_time(record.created_at),
                _format_time(record.updated_at),
            ))
            record_id = cursor.lastrowid

        logger.debug(f"Inserted gallery record {record_id} for {record.identity}")
        return _with_id(record, record_id)

    def update(self, record: GalleryRecord) -> bool:
        if record.id is None:
            raise ValueError("Cannot update a record without an id")

        with self._transaction(write=True) as cursor:
            cursor.execute("""
                UPDATE gallery
                SET identity = ?, vector_data = ?, dimension = ?, quality = ?,
                    remarks = ?, enabled = ?, version = ?, attachment = ?,
                    created_at = ?, updated_at = ?
                WHERE id = ?
            """, (
                record.identity,
                record.vector_data,
                record.dimension,
                record.quality,
                record.remarks,
                int(record.enabled),
                record.version,
                record.attachment,
                _format_time(record.created_at),
                _format_time(record.updated_at),
                record.id,
            ))
            return cursor.rowcount > 0

    def upsert_many(self, records: Sequence[GalleryRecord]) -> List[GalleryRecord]:
        saved = []
        with self._transaction(write=True):
            for record in records:
                if record.id is None:
                    saved.append(self.insert(record))
                else:
                    self.update(record)
                    saved.append(record)
        return saved

    def delete_by_identity(self, identity: str) -> int:
        with self._transaction(write=True) as cursor:
            cursor.execute("DELETE FROM gallery WHERE identity = ?", (identity,))
            return cursor.rowcount

    def delete_by_ids(self, record_ids: Sequence[int]) -> int:
        if not record_ids:
            return 0
        placeholders = ", ".join("?" for _ in record_ids)
        with self._transaction(write=True) as cursor:
            cursor.execute(f"DELETE FROM gallery WHERE id IN ({placeholders})", tuple(record_ids))
            return cursor.rowcount

    def delete_all(self) -> int:
        with self._transaction(write=True) as cursor:
            cursor.execute("DELETE FROM gallery")
            return cursor.rowcount

    def delete_created_before(self, before: datetime) -> int:
        with self._transaction(write=True) as cursor:
            cursor.execute(
                "DELETE FROM gallery WHERE created_at < ?",
                (_format_time(before),)
            )
            return cursor.rowcount

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _select(self, where: str = "", params: tuple = (), order: str = "", limit: Optional[int] = None):
        query = "SELECT * FROM gallery"
        if where:
            query += f" WHERE {where}"
        if order:
            query += f" ORDER BY {order}"
        if limit is not None:
            query += " LIMIT ?"
            params = params + (limit,)

        with self._transaction() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()

        return [_row_to_record(row) for row in rows]

    def get_by_identity(
        self,
        identity: str,
        include_disabled: bool = False,
    ) -> Optional[GalleryRecord]:
        where = "identity = ?" if include_disabled else "identity = ? AND enabled = 1"
        records = self._select(where, (identity,))
        return records[0] if records else None

    def get_by_id(self, record_id: int) -> Optional[GalleryRecord]:
        records = self._select("id = ?", (record_id,))
        return records[0] if records else None

    def list_enabled(self) -> List[GalleryRecord]:
        return self._select("enabled = 1", order="created_at DESC, id DESC")

    def list_all(self) -> List[GalleryRecord]:
        return self._select(order="created_at DESC, id DESC")

    def count_enabled(self) -> int:
        with self._transaction() as cursor:
            cursor.execute("SELECT COUNT(*) AS count FROM gallery WHERE enabled = 1")
            return cursor.fetchone()["count"]

    def count_total(self) -> int:
        with self._transaction() as cursor:
            cursor.execute("SELECT COUNT(*) AS count FROM gallery")
            return cursor.fetchone()["count"]

    def oldest_enabled(self, limit: int) -> List[GalleryRecord]:
        return self._select("enabled = 1", order="created_at ASC, id ASC", limit=limit)

    def recent(self, limit: int) -> List[GalleryRecord]:
        return self._select("enabled = 1", order="created_at DESC, id DESC", limit=limit)

    def search(self, keyword: str) -> List[GalleryRecord]:
        pattern = "%" + _escape_like(keyword) + "%"
        return self._select(
            "(identity LIKE ? ESCAPE '\\' OR remarks LIKE ? ESCAPE '\\') AND enabled = 1",
            (pattern, pattern),
            order="created_at DESC, id DESC",
        )

    def by_quality(self, min_quality: float, max_quality: float = 1.0) -> List[GalleryRecord]:
        return self._select(
            "quality BETWEEN ? AND ? AND enabled = 1",
            (min_quality, max_quality),
            order="quality DESC, id ASC",
        )

    def in_time_range(self, start: datetime, end: datetime) -> List[GalleryRecord]:
        return self._select(
            "created_at BETWEEN ? AND ? AND enabled = 1",
            (_format_time(start), _format_time(end)),
            order="created_at DESC, id DESC",
        )

    def updated_since(self, version: int) -> List[GalleryRecord]:
        return self._select("version > ?", (version,), order="version ASC, id ASC")

    def stats(self) -> GalleryStats:
        with self._transaction() as cursor:
            cursor.execute("""
                SELECT
                    COUNT(*) AS total_count,
                    COUNT(CASE WHEN enabled = 1 THEN 1 END) AS enabled_count,
                    AVG(quality) AS average_quality,
                    MIN(created_at) AS earliest,
                    MAX(created_at) AS latest
                FROM gallery
            """)
            row = cursor.fetchone()
            cursor.execute("SELECT DISTINCT dimension FROM gallery ORDER BY dimension")
            dimensions = tuple(r["dimension"] for r in cursor.fetchall())

        return GalleryStats(
            total_count=row["total_count"],
            enabled_count=row["enabled_count"],
            average_quality=row["average_quality"],
            earliest=_parse_time(row["earliest"]),
            latest=_parse_time(row["latest"]),
            dimensions=dimensions,
        )

    def close(self):
        """Close every database connection."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            with self._registry_lock:
                for connection in self._connections:
                    connection.close()
                self._connections.clear()
            self._connection = None
            logger.info(f"Closed gallery database at {self.db_path}")


# =============================================================================
# Helpers
# =============================================================================

def _format_time(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _escape_like(keyword: str) -> str:
    return keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _with_id(record: GalleryRecord, record_id: int) -> GalleryRecord:
    return replace(record, id=record_id)


def _row_to_record(row: sqlite3.Row) -> GalleryRecord:
    """Convert database row to GalleryRecord."""
    return GalleryRecord(
        id=row["id"],
        identity=row["identity"],
        vector_data=bytes(row["vector_data"]),
        dimension=row["dimension"],
        created_at=_parse_time(row["created_at"]),
        updated_at=_parse_time(row["updated_at"]),
        quality=row["quality"],
        remarks=row["remarks"],
        enabled=bool(row["enabled"]),
        version=row["version"],
        attachment=bytes(row["attachment"]) if row["attachment"] is not None else None,
    )
