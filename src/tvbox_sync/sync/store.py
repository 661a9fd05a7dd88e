"""Local Store - durable storage for content items and sync tasks.

Item metadata and queue records live in SQLite; payloads live as immutable
blob files next to the database. A new payload is written to a temp file,
fsynced and renamed into place before the metadata row pointing at it is
committed, so readers only ever see the old item or the complete new one.
"""

import hashlib
import json
import logging
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from ..config import Config
from .errors import NotFound, StorageFailure
from .models import ContentItem, SyncTask

logger = logging.getLogger(__name__)

BLOB_SUFFIX = ".bin"
TEMP_PREFIX = ".tmp-"
DEFAULT_PAGE_SIZE = 100


class LocalStore:
    """SQLite + blob directory store for ContentItem and SyncTask records."""

    def __init__(self, root: Optional[Path] = None):
        """Initialize the store.

        Args:
            root: Directory holding the database and blob files
        """
        if root is None:
            root = Config.get_data_dir() / "store"

        self.root = Path(root)
        self.db_path = self.root / "store.db"
        self.blob_dir = self.root / "blobs"
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._id_locks: dict[str, threading.RLock] = {}
        self._id_locks_guard = threading.Lock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection"):
            conn = sqlite3.connect(str(self.db_path), timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.connection

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Context manager for a database cursor, committing on success."""
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise StorageFailure(f"Cannot open store database: {e}") from e
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageFailure(f"Store database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    def _init_db(self) -> None:
        """Initialize directories and the database schema."""
        try:
            self.blob_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageFailure(f"Cannot create store directory {self.root}: {e}") from e

        with self._cursor() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS content_items (
                    id TEXT PRIMARY KEY,
                    version INTEGER NOT NULL,
                    checksum TEXT NOT NULL,
                    payload_ref TEXT,
                    size INTEGER NOT NULL DEFAULT 0,
                    priority INTEGER NOT NULL DEFAULT 1,
                    ttl REAL,
                    last_verified TEXT,
                    pending_edit_base INTEGER,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_tasks (
                    id TEXT PRIMARY KEY,
                    content_id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    record TEXT NOT NULL,
                    enqueued_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_sync_tasks_enqueued ON sync_tasks(enqueued_at)
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS store_meta (
                    key TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
                """
            )
            cursor.execute(
                """
                INSERT OR IGNORE INTO store_meta (key, value) VALUES ('change_counter', 0)
                """
            )

    @contextmanager
    def item_lock(self, content_id: str) -> Iterator[None]:
        """Serialize writers of a single content id.

        Reentrant, so a caller holding the lock may call ``put``/``delete``.
        """
        with self._id_locks_guard:
            lock = self._id_locks.get(content_id)
            if lock is None:
                lock = self._id_locks[content_id] = threading.RLock()
        with lock:
            yield

    # Content items

    def put(self, item: ContentItem, payload: Optional[bytes] = None) -> ContentItem:
        """Durably persist an item, replacing any prior version.

        Args:
            item: Item metadata to commit
            payload: New payload bytes; None keeps the item's payload_ref

        Returns:
            The committed item (with payload_ref and size set from payload)

        Raises:
            StorageFailure: On any disk or database error
        """
        with self.item_lock(item.id):
            previous_ref = self._current_ref(item.id)
            new_ref = None
            if payload is not None:
                new_ref = self._write_blob(item.id, item.version, payload)
                item = item.evolve(payload_ref=new_ref, size=len(payload))

            now = datetime.now(timezone.utc).isoformat()
            try:
                with self._cursor() as cursor:
                    cursor.execute(
                        """
                        INSERT INTO content_items (
                            id, version, checksum, payload_ref, size, priority,
                            ttl, last_verified, pending_edit_base, updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET
                            version = excluded.version,
                            checksum = excluded.checksum,
                            payload_ref = excluded.payload_ref,
                            size = excluded.size,
                            priority = excluded.priority,
                            ttl = excluded.ttl,
                            last_verified = excluded.last_verified,
                            pending_edit_base = excluded.pending_edit_base,
                            updated_at = excluded.updated_at
                        """,
                        (
                            item.id,
                            item.version,
                            item.checksum,
                            item.payload_ref,
                            item.size,
                            int(item.priority),
                            item.ttl,
                            item.last_verified.isoformat() if item.last_verified else None,
                            item.pending_edit_base,
                            now,
                        ),
                    )
                    self._bump_counter(cursor)
            except StorageFailure:
                if new_ref:
                    self._remove_blob(new_ref)
                raise

            # Old payload is only dropped once the new reference is committed
            if previous_ref and previous_ref != item.payload_ref:
                self._remove_blob(previous_ref)

        logger.debug(f"Stored {item.id} v{item.version} ({item.size} bytes)")
        return item

    def get(self, content_id: str) -> ContentItem:
        """Get the current item.

        Raises:
            NotFound: If no item exists for the id
            StorageFailure: On database error
        """
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM content_items WHERE id = ?", (content_id,))
            row = cursor.fetchone()
        if row is None:
            raise NotFound(content_id)
        return ContentItem.from_row(row)

    def find(self, content_id: str) -> Optional[ContentItem]:
        """Get the current item, or None if absent."""
        try:
            return self.get(content_id)
        except NotFound:
            return None

    def delete(self, content_id: str) -> bool:
        """Delete an item and its payload.

        Returns:
            True if an item was deleted
        """
        with self.item_lock(content_id):
            ref = self._current_ref(content_id)
            with self._cursor() as cursor:
                cursor.execute("DELETE FROM content_items WHERE id = ?", (content_id,))
                deleted = cursor.rowcount > 0
                if deleted:
                    self._bump_counter(cursor)
            if deleted and ref:
                self._remove_blob(ref)
        return deleted

    def enumerate(
        self, after: Optional[str] = None, page_size: int = DEFAULT_PAGE_SIZE
    ) -> Iterator[ContentItem]:
        """Lazily yield all items ordered by id.

        Reads one page at a time, so iteration can be abandoned and restarted
        from any id with ``after``.
        """
        cursor_id = after
        while True:
            with self._cursor() as cursor:
                if cursor_id is None:
                    cursor.execute(
                        "SELECT * FROM content_items ORDER BY id LIMIT ?", (page_size,)
                    )
                else:
                    cursor.execute(
                        "SELECT * FROM content_items WHERE id > ? ORDER BY id LIMIT ?",
                        (cursor_id, page_size),
                    )
                rows = cursor.fetchall()
            if not rows:
                return
            for row in rows:
                yield ContentItem.from_row(row)
            cursor_id = rows[-1]["id"]
            if len(rows) < page_size:
                return

    def known_versions(self) -> dict[str, int]:
        """Map of content id to locally committed version."""
        with self._cursor() as cursor:
            cursor.execute("SELECT id, version FROM content_items")
            return {row["id"]: row["version"] for row in cursor.fetchall()}

    def read_payload(self, item: ContentItem) -> bytes:
        """Read an item's payload bytes.

        Raises:
            StorageFailure: If the blob is missing or unreadable
        """
        if not item.payload_ref:
            raise StorageFailure(f"Item {item.id} has no payload")
        try:
            return (self.blob_dir / item.payload_ref).read_bytes()
        except OSError as e:
            raise StorageFailure(f"Cannot read payload for {item.id}: {e}") from e

    def payload_path(self, item: ContentItem) -> Path:
        """Filesystem path of an item's payload (for players that stream files)."""
        if not item.payload_ref:
            raise StorageFailure(f"Item {item.id} has no payload")
        return self.blob_dir / item.payload_ref

    def count(self) -> int:
        with self._cursor() as cursor:
            cursor.execute("SELECT COUNT(*) FROM content_items")
            return cursor.fetchone()[0]

    @property
    def change_counter(self) -> int:
        """Store-wide counter incremented by every put and delete."""
        with self._cursor() as cursor:
            cursor.execute("SELECT value FROM store_meta WHERE key = 'change_counter'")
            return cursor.fetchone()[0]

    # Queue records

    def put_queue_entry(self, task: SyncTask) -> None:
        """Insert or update a persisted SyncTask."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO sync_tasks (id, content_id, state, record, enqueued_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    content_id = excluded.content_id,
                    state = excluded.state,
                    record = excluded.record
                """,
                (
                    task.id,
                    task.content_id,
                    task.state.value,
                    json.dumps(task.to_record()),
                    task.enqueued_at.isoformat(),
                ),
            )

    def delete_queue_entry(self, task_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM sync_tasks WHERE id = ?", (task_id,))
            return cursor.rowcount > 0

    def list_queue(self) -> list[SyncTask]:
        """All persisted tasks, oldest first."""
        with self._cursor() as cursor:
            cursor.execute("SELECT record FROM sync_tasks ORDER BY enqueued_at ASC")
            rows = cursor.fetchall()

        tasks = []
        for row in rows:
            try:
                tasks.append(SyncTask.from_record(json.loads(row["record"])))
            except (ValueError, KeyError) as e:
                logger.warning(f"Dropping unreadable queue record: {e}")
        return tasks

    # Maintenance

    def collect_orphans(self) -> int:
        """Remove blob files no committed record points at.

        Only safe while no writer is active (run at startup).

        Returns:
            Number of files removed
        """
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT payload_ref FROM content_items WHERE payload_ref IS NOT NULL"
            )
            referenced = {row["payload_ref"] for row in cursor.fetchall()}

        removed = 0
        try:
            for path in self.blob_dir.iterdir():
                if path.name not in referenced:
                    path.unlink()
                    removed += 1
        except OSError as e:
            raise StorageFailure(f"Cannot scan blob directory: {e}") from e

        if removed:
            logger.info(f"Removed {removed} orphaned payload files")
        return removed

    def close(self) -> None:
        """Close all database connections."""
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
            self._connections.clear()
        if hasattr(self._local, "connection"):
            del self._local.connection

    # Internals

    def _current_ref(self, content_id: str) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT payload_ref FROM content_items WHERE id = ?", (content_id,)
            )
            row = cursor.fetchone()
        return row["payload_ref"] if row else None

    @staticmethod
    def _bump_counter(cursor: sqlite3.Cursor) -> None:
        cursor.execute(
            "UPDATE store_meta SET value = value + 1 WHERE key = 'change_counter'"
        )

    def _write_blob(self, content_id: str, version: int, payload: bytes) -> str:
        """Write payload to a new immutable blob file and return its ref."""
        id_digest = hashlib.sha1(content_id.encode("utf-8")).hexdigest()[:16]
        ref = f"{id_digest}-{version}-{uuid.uuid4().hex}{BLOB_SUFFIX}"
        tmp_path = self.blob_dir / f"{TEMP_PREFIX}{uuid.uuid4().hex}"
        try:
            with open(tmp_path, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.blob_dir / ref)
        except OSError as e:
            try:
                tmp_path.unlink()
            except OSError:
                pass
            raise StorageFailure(f"Cannot write payload for {content_id}: {e}") from e
        return ref

    def _remove_blob(self, ref: str) -> None:
        try:
            (self.blob_dir / ref).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            # Left for collect_orphans on next start
            logger.warning(f"Failed to remove payload {ref}: {e}")
