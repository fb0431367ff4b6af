#!/usr/bin/env python3
"""
Database models and operations for the ingestion service.

This module contains all database-related classes and functions,
providing a clean separation between data access and business logic.
All access goes through ``DatabaseQueue`` so a single connection is used
from a single worker coroutine.
"""

from os import path, access, R_OK
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from dataclasses import dataclass, field
from sqlite3 import connect, Row, Error, IntegrityError
from uuid import uuid4
from typing import Dict, List, Optional, Set, Any
import json

from config import config, get_logger
from errors import StorageError, StorageConflictError
from telemetry import trace_span
from utils import utc_now_iso

logger = get_logger("models")


@dataclass
class Feed:
    """A subscription source as stored in the feeds table."""

    id: int
    url: str
    name: str
    is_active: bool = True
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Feed":
        return cls(
            id=row['id'],
            url=row['url'],
            name=row['name'],
            is_active=bool(row['is_active']),
            created_at=row['created_at'],
        )


@dataclass
class Article:
    """One ingested, summarized news item."""

    title: str
    url: str
    published_at: str
    feed_id: Optional[int] = None
    summary: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    source: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Article":
        return cls(
            id=row['id'],
            feed_id=row['feed_id'],
            title=row['title'],
            url=row['url'],
            summary=row['summary'],
            tags=_decode_tags(row['tags']),
            source=row['source'],
            published_at=row['published_at'],
            created_at=row['created_at'],
        )


def _decode_tags(raw: Optional[str]) -> List[str]:
    """Decode the JSON-encoded tags column, tolerating legacy/bad values."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if not isinstance(value, list):
        return []
    return [str(tag) for tag in value if tag]


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='articles'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
        # Schema statements are idempotent (IF NOT EXISTS); always applied
        cursor.executescript(_read_schema_file())
        conn.commit()
    except Error as e:
        logger.error(f"Error initializing database: {e}")
        raise StorageError(f"Could not initialize schema: {e}") from e
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise StorageError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise StorageError(f"No read permission for schema file at {schema_path}")

    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise StorageError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r', encoding='utf-8') as f:
        return f.read()


class DatabaseQueue:
    """A queue for database operations to ensure a single writer.

    Operations are named methods on this class; callers submit them with
    ``await db.execute('operation_name', **params)``. Failures are re-raised
    to the caller as ``StorageError`` (or a subclass).
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue: Queue = Queue()
        self.results: Dict[str, Dict[str, Any]] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the connection, apply the schema and start the worker."""
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        try:
            self.conn = connect(self.db_path)
        except Error as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e
        self.conn.row_factory = Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        initialize_database(self.conn)

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting so they observe the shutdown
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": StorageError("Database worker stopped")})
            event.set()
        self.events.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
            except TimeoutError:
                continue
            except CancelledError:
                logger.info("Database worker cancelled")
                break

            try:
                method = getattr(self, operation_name, None)
                if method is None or operation_name.startswith('_'):
                    self.results[operation_id] = {"error": StorageError(f"Unknown operation: {operation_name}")}
                else:
                    self.results[operation_id] = {"result": method(**params)}
            except StorageError as e:
                self.results[operation_id] = {"error": e}
            except Error as e:
                logger.error(f"Database operation error in {operation_name}: {e}")
                self.results[operation_id] = {"error": StorageError(f"{operation_name} failed: {e}")}
            except Exception as e:
                logger.error(f"Unexpected error in database operation {operation_name}: {e}")
                self.results[operation_id] = {"error": StorageError(f"{operation_name} failed: {e}")}
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
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation on the worker and return its result."""
        if not self.running:
            raise StorageError("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id)
            if "error" in result:
                raise result["error"]
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Feed Operations
    def register_feed(self, name: str, url: str, is_active: bool = True) -> bool:
        """Insert a feed unless one with the same URL exists. Returns True if inserted."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "INSERT OR IGNORE INTO feeds (url, name, is_active, created_at) VALUES (?, ?, ?, ?)",
                (url, name, 1 if is_active else 0, utc_now_iso())
            )
            self.conn.commit()
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def list_active_feeds(self) -> List[Feed]:
        """Return all feeds with is_active set, oldest first."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT id, url, name, is_active, created_at FROM feeds WHERE is_active = 1 ORDER BY id"
            )
            return [Feed.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def list_feeds(self) -> List[Feed]:
        """Return every feed regardless of state."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT id, url, name, is_active, created_at FROM feeds ORDER BY id")
            return [Feed.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    # Article Operations
    def check_existing_urls(self, urls: List[str]) -> Set[str]:
        """Return the subset of ``urls`` already stored, in one query."""
        if not urls:
            return set()
        cursor = self.conn.cursor()
        try:
            placeholders = ','.join(['?' for _ in urls])
            cursor.execute(f"SELECT url FROM articles WHERE url IN ({placeholders})", list(urls))
            return {row[0] for row in cursor.fetchall()}
        finally:
            cursor.close()

    def insert_article(self, article: Article) -> int:
        """Insert an article and return its id.

        Raises:
            StorageConflictError: an article with the same URL already exists.
        """
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                '''
                INSERT INTO articles (feed_id, title, url, summary, tags, source, published_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ''',
                (
                    article.feed_id,
                    article.title,
                    article.url,
                    article.summary,
                    json.dumps(list(article.tags or []), ensure_ascii=False),
                    article.source,
                    article.published_at,
                    article.created_at or utc_now_iso(),
                )
            )
            self.conn.commit()
            return cursor.lastrowid
        except IntegrityError as e:
            self.conn.rollback()
            if "articles.url" in str(e):
                raise StorageConflictError(f"Article already stored: {article.url}") from e
            raise StorageError(f"Could not insert article {article.url}: {e}") from e
        finally:
            cursor.close()

    def count_articles(self) -> int:
        """Return total number of rows in the articles table."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT COUNT(*) FROM articles")
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        finally:
            cursor.close()

    def query_articles_page(self, offset: int, limit: int) -> List[Article]:
        """Return one page of articles, newest publication first."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                '''
                SELECT id, feed_id, title, url, summary, tags, source, published_at, created_at
                FROM articles
                ORDER BY published_at DESC, id DESC
                LIMIT ? OFFSET ?
                ''',
                (limit, offset)
            )
            return [Article.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def query_articles_before(self, cursor_iso: str, limit: int) -> List[Article]:
        """Return up to ``limit`` articles published strictly before ``cursor_iso``, newest first."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                '''
                SELECT id, feed_id, title, url, summary, tags, source, published_at, created_at
                FROM articles
                WHERE published_at < ?
                ORDER BY published_at DESC, id DESC
                LIMIT ?
                ''',
                (cursor_iso, limit)
            )
            return [Article.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def latest_article_time(self) -> Optional[str]:
        """Return the newest created_at value, used by the status command."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT MAX(created_at) FROM articles")
            result = cursor.fetchone()
            return result[0] if result else None
        finally:
            cursor.close()
