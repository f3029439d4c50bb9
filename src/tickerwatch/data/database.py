"""Async SQLite database manager for the price/candle cache.

Uses aiosqlite for non-blocking database operations with WAL mode so the
dashboard can read while the ingestion loop and retention job write.
Two connections are opened on the same file: a writer, used for every
mutation under a single lock, and a reader that never waits on a write
transaction.
"""

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Self

import aiosqlite

from tickerwatch.exceptions import StoreCorruptError, StoreIOError
from tickerwatch.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS prices (
    id INTEGER PRIMARY KEY,
    symbol TEXT NOT NULL,
    price TEXT NOT NULL,
    percent_change_24h TEXT NOT NULL,
    volume_24h TEXT NOT NULL,
    observed_at_ms INTEGER NOT NULL,
    fetched_at_ms INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS candles (
    symbol TEXT NOT NULL,
    interval TEXT NOT NULL,
    open_time_ms INTEGER NOT NULL,
    close_time_ms INTEGER NOT NULL,
    open TEXT NOT NULL,
    high TEXT NOT NULL,
    low TEXT NOT NULL,
    close TEXT NOT NULL,
    volume TEXT NOT NULL,
    PRIMARY KEY (symbol, interval, open_time_ms)
);

CREATE TABLE IF NOT EXISTS sync_metadata (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at_ms INTEGER NOT NULL
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_prices_symbol_observed
    ON prices(symbol, observed_at_ms);

CREATE INDEX IF NOT EXISTS idx_prices_observed
    ON prices(observed_at_ms);

CREATE INDEX IF NOT EXISTS idx_candles_symbol_open
    ON candles(symbol, open_time_ms);

CREATE INDEX IF NOT EXISTS idx_candles_close
    ON candles(close_time_ms);
"""


class CacheDatabase:
    """Async SQLite connection manager for the cache.

    Manages database lifecycle including the integrity check, schema
    creation, WAL configuration, and clean resource cleanup.

    Usage:
        async with CacheDatabase("/path/to/db") as db:
            async with db.transaction() as conn:
                await conn.execute("INSERT ...")
            cursor = await db.reader.execute("SELECT ...")
    """

    def __init__(self, db_path: str = "data/tickerwatch.db") -> None:
        self._db_path = db_path
        self._writer: aiosqlite.Connection | None = None
        self._reader: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> str:
        return self._db_path

    @property
    def writer(self) -> aiosqlite.Connection:
        """Connection for mutations. Use transaction() rather than raw writes.

        Raises RuntimeError if not connected.
        """
        if self._writer is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._writer

    @property
    def reader(self) -> aiosqlite.Connection:
        """Connection for queries.

        Raises RuntimeError if not connected.
        """
        if self._reader is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._reader

    @property
    def is_connected(self) -> bool:
        return self._writer is not None

    async def connect(self) -> None:
        """Open connections, verify integrity, configure pragmas, create schema.

        Creates the parent directory if it does not exist.

        Raises:
            StoreCorruptError: the file exists but is not a readable database.
            StoreIOError: the file could not be opened at all.
        """
        in_memory = self._db_path == ":memory:"
        if not in_memory:
            db_dir = os.path.dirname(self._db_path)
            if db_dir:
                try:
                    os.makedirs(db_dir, exist_ok=True)
                except OSError as e:
                    raise StoreIOError(
                        f"cannot create directory for cache database {self._db_path}: {e}"
                    ) from e

        try:
            self._writer = await aiosqlite.connect(self._db_path, isolation_level=None)
            await self._check_integrity(self._writer)
            await self._writer.execute("PRAGMA journal_mode=WAL")
            await self._writer.execute("PRAGMA synchronous=NORMAL")
            await self._writer.execute("PRAGMA busy_timeout=5000")
            await self._create_tables()
            await self._ensure_schema_version()

            # An in-memory database is private to its connection
            if in_memory:
                self._reader = self._writer
            else:
                self._reader = await aiosqlite.connect(
                    self._db_path, isolation_level=None
                )
                await self._reader.execute("PRAGMA busy_timeout=5000")
        except StoreCorruptError:
            await self.close()
            raise
        except aiosqlite.OperationalError as e:
            await self.close()
            raise StoreIOError(f"cannot open cache database {self._db_path}: {e}") from e
        except aiosqlite.DatabaseError as e:
            await self.close()
            logger.critical("cache_db_corrupt", db_path=self._db_path, error=str(e))
            raise StoreCorruptError(f"unreadable cache database {self._db_path}: {e}") from e

        logger.info("cache_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close both connections if open."""
        if self._reader is not None and self._reader is not self._writer:
            await self._reader.close()
        self._reader = None
        if self._writer is not None:
            await self._writer.close()
            self._writer = None
            logger.info("cache_db_closed", db_path=self._db_path)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block of writes as one IMMEDIATE transaction.

        Writers are serialised by a lock. Any exception, cancellation
        included, rolls the whole block back before propagating, and the
        lock is never released with a transaction left open.
        """
        async with self._write_lock:
            conn = self.writer
            try:
                await conn.execute("BEGIN IMMEDIATE")
                yield conn
                await conn.execute("COMMIT")
            except BaseException:
                await self._rollback(conn)
                raise

    async def _rollback(self, conn: aiosqlite.Connection) -> None:
        # aiosqlite runs statements in submission order, so this ROLLBACK
        # lands after a BEGIN or COMMIT whose await was cancelled.
        try:
            await conn.execute("ROLLBACK")
        except aiosqlite.OperationalError:
            if conn.in_transaction:
                raise
            logger.debug("rollback_without_transaction", db_path=self._db_path)

    async def _check_integrity(self, conn: aiosqlite.Connection) -> None:
        async with conn.execute("PRAGMA quick_check") as cursor:
            row = await cursor.fetchone()
        result = row[0] if row else None
        if result != "ok":
            logger.critical("cache_db_integrity_failed", db_path=self._db_path, result=result)
            raise StoreCorruptError(f"integrity check failed for {self._db_path}: {result}")

    async def _create_tables(self) -> None:
        """Create all tables and indexes if they do not exist."""
        assert self._writer is not None
        await self._writer.executescript(_CREATE_TABLES_SQL)
        await self._writer.executescript(_CREATE_INDEXES_SQL)

    async def _ensure_schema_version(self) -> None:
        """Insert schema version if not already set, refuse unknown versions."""
        assert self._writer is not None
        async with self._writer.execute(
            "SELECT version FROM schema_version LIMIT 1"
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            await self._writer.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            logger.info("schema_version_set", version=SCHEMA_VERSION)
        elif row[0] != SCHEMA_VERSION:
            raise StoreCorruptError(
                f"cache database {self._db_path} has schema version {row[0]}, "
                f"expected {SCHEMA_VERSION}"
            )

    async def __aenter__(self) -> Self:
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        """Async context manager exit."""
        await self.close()
