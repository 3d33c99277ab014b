#!/usr/bin/env python3
"""
Namespaced key/value storage for nanoreader.

All persistent state lives in one sqlite table keyed by ``(namespace, key)``.
Each user gets three namespaces (``{username}/feeds``, ``{username}/articles``
and ``{username}/index``); credentials live in the global ``users`` namespace.
Keys are compared as raw bytes, so a namespace scan returns pairs in key order.

The connection is driven by a single worker coroutine fed through a queue, so
every operation runs on its own and each write is atomic.
"""

from asyncio import Queue, create_task, CancelledError, Event
from pathlib import Path
from sqlite3 import connect, Error
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from config import get_logger
from errors import NanoreaderError, StorageError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("store")

USERS_NAMESPACE = "users"
FEEDS_COLLECTION = "feeds"
ARTICLES_COLLECTION = "articles"
INDEX_COLLECTION = "index"

FEED_ID_COUNTER = "feed_id"

SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    namespace TEXT NOT NULL,
    key BLOB NOT NULL,
    value BLOB NOT NULL,
    PRIMARY KEY (namespace, key)
) WITHOUT ROWID;

CREATE TABLE IF NOT EXISTS counters (
    name TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);
"""


class DatabaseQueue:
    """A queue for database operations to ensure they run one at a time."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue: Queue = Queue()
        self.results: Dict[str, Dict[str, Any]] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database and start the worker."""
        if self.running:
            return

        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                if not Path(self.db_path).is_file():
                    logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
            self.conn = connect(self.db_path)
            self.conn.executescript(SCHEMA)
            self.conn.commit()
        except (Error, OSError) as e:
            logger.error(f"Error opening database {self.db_path}: {e}")
            raise StorageError(str(e), operation="open") from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info(f"Database worker started ({self.db_path})")

    async def stop(self) -> None:
        """Stop the worker and close the database."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass
            self.worker_task = None

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release any caller still waiting on an operation
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while True:
            operation_id, operation_name, params = await self.queue.get()
            try:
                method = getattr(self, f"_op_{operation_name}", None)
                if method is None:
                    self.results[operation_id] = {"error": StorageError(f"unknown operation {operation_name}")}
                else:
                    self.results[operation_id] = {"result": method(**params)}
            except Error as e:
                logger.error(f"Database operation error in {operation_name}: {e}")
                self.conn.rollback()
                self.results[operation_id] = {"error": StorageError(str(e), operation=operation_name)}
            except Exception as e:
                logger.error(f"Unexpected error in database operation {operation_name}: {e}")
                self.results[operation_id] = {"error": e}
            finally:
                if operation_id in self.events:
                    self.events[operation_id].set()
                self.queue.task_done()

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.namespace": params.get("namespace", ""),
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Queue a database operation and wait for its result."""
        if not self.running:
            raise StorageError("database is not open", operation=operation_name)

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise StorageError("database closed during operation", operation=operation_name)
            if "error" in result:
                error = result["error"]
                if isinstance(error, NanoreaderError):
                    raise error
                raise StorageError(str(error), operation=operation_name) from error
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Key/value operations (run on the worker)
    def _op_get(self, namespace: str, key: bytes) -> Optional[bytes]:
        cursor = self.conn.execute(
            "SELECT value FROM kv WHERE namespace = ? AND key = ?", (namespace, key)
        )
        row = cursor.fetchone()
        return bytes(row[0]) if row else None

    def _op_contains(self, namespace: str, key: bytes) -> bool:
        cursor = self.conn.execute(
            "SELECT 1 FROM kv WHERE namespace = ? AND key = ?", (namespace, key)
        )
        return cursor.fetchone() is not None

    def _op_put(self, namespace: str, key: bytes, value: bytes) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO kv (namespace, key, value) VALUES (?, ?, ?)",
            (namespace, key, value),
        )
        self.conn.commit()

    def _op_put_if_absent(self, namespace: str, key: bytes, value: bytes) -> bool:
        cursor = self.conn.execute(
            "INSERT OR IGNORE INTO kv (namespace, key, value) VALUES (?, ?, ?)",
            (namespace, key, value),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def _op_delete(self, namespace: str, key: bytes) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM kv WHERE namespace = ? AND key = ?", (namespace, key)
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def _op_scan(self, namespace: str) -> List[Tuple[bytes, bytes]]:
        cursor = self.conn.execute(
            "SELECT key, value FROM kv WHERE namespace = ? ORDER BY key", (namespace,)
        )
        return [(bytes(k), bytes(v)) for k, v in cursor.fetchall()]

    def _op_count(self, namespace: str) -> int:
        cursor = self.conn.execute("SELECT COUNT(*) FROM kv WHERE namespace = ?", (namespace,))
        return int(cursor.fetchone()[0])

    def _op_next_id(self, counter: str) -> int:
        self.conn.execute(
            "INSERT INTO counters (name, value) VALUES (?, 0) "
            "ON CONFLICT(name) DO UPDATE SET value = value + 1",
            (counter,),
        )
        cursor = self.conn.execute("SELECT value FROM counters WHERE name = ?", (counter,))
        value = int(cursor.fetchone()[0])
        self.conn.commit()
        return value


class Namespace:
    """An isolated, ordered key range inside the store."""

    def __init__(self, db: DatabaseQueue, name: str):
        self.db = db
        self.name = name

    def __repr__(self) -> str:
        return f"Namespace({self.name!r})"

    async def get(self, key: bytes) -> Optional[bytes]:
        return await self.db.execute('get', namespace=self.name, key=key)

    async def contains(self, key: bytes) -> bool:
        return await self.db.execute('contains', namespace=self.name, key=key)

    async def put(self, key: bytes, value: bytes) -> None:
        await self.db.execute('put', namespace=self.name, key=key, value=value)

    async def put_if_absent(self, key: bytes, value: bytes) -> bool:
        """Write ``value`` only if ``key`` is unused; return whether it was written."""
        return await self.db.execute('put_if_absent', namespace=self.name, key=key, value=value)

    async def delete(self, key: bytes) -> bool:
        return await self.db.execute('delete', namespace=self.name, key=key)

    async def scan(self) -> List[Tuple[bytes, bytes]]:
        """Return every (key, value) pair, ordered by key."""
        return await self.db.execute('scan', namespace=self.name)

    async def count(self) -> int:
        return await self.db.execute('count', namespace=self.name)


class UserStore:
    """Handle on one user's namespaces."""

    def __init__(self, db: DatabaseQueue, username: str):
        self.db = db
        self.username = username
        self.feeds = Namespace(db, f"{username}/{FEEDS_COLLECTION}")
        self.articles = Namespace(db, f"{username}/{ARTICLES_COLLECTION}")
        self.index = Namespace(db, f"{username}/{INDEX_COLLECTION}")

    def __repr__(self) -> str:
        return f"UserStore({self.username!r})"

    async def generate_id(self) -> int:
        """Allocate a new id, unique across the whole store."""
        return await self.db.execute('next_id', counter=FEED_ID_COUNTER)


class TenantStore:
    """Entry point to persistent state: global credentials plus per-user handles."""

    def __init__(self, db_path: str):
        self.db = DatabaseQueue(db_path)
        self.users = Namespace(self.db, USERS_NAMESPACE)

    async def start(self) -> None:
        await self.db.start()

    async def stop(self) -> None:
        await self.db.stop()

    def open_user(self, username: str) -> UserStore:
        """Resolve the namespaces of ``username``.

        Namespaces are created lazily on first write, so opening is free of
        side effects and idempotent.
        """
        return UserStore(self.db, username)
