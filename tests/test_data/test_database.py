"""Tests for CacheDatabase: connection lifecycle, schema, pragmas and transactions."""

import asyncio
import contextlib

import pytest

from tickerwatch.data.database import SCHEMA_VERSION, CacheDatabase
from tickerwatch.exceptions import StoreCorruptError, StoreIOError


class TestConnect:
    """connect() / close() lifecycle."""

    @pytest.mark.asyncio
    async def test_creates_parent_directory(self, tmp_path) -> None:
        path = tmp_path / "nested" / "dir" / "cache.db"
        async with CacheDatabase(str(path)) as db:
            assert db.is_connected
        assert path.exists()

    @pytest.mark.asyncio
    async def test_unusable_parent_raises_io_error(self, tmp_path) -> None:
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("file")

        db = CacheDatabase(str(blocker / "cache.db"))
        with pytest.raises(StoreIOError):
            await db.connect()
        assert not db.is_connected

    @pytest.mark.asyncio
    async def test_wal_mode_enabled(self, database: CacheDatabase) -> None:
        async with database.reader.execute("PRAGMA journal_mode") as cursor:
            row = await cursor.fetchone()
        assert row[0] == "wal"

    @pytest.mark.asyncio
    async def test_tables_created(self, database: CacheDatabase) -> None:
        async with database.reader.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
        ) as cursor:
            names = [row[0] for row in await cursor.fetchall()]
        for table in ("candles", "prices", "schema_version", "sync_metadata"):
            assert table in names

    @pytest.mark.asyncio
    async def test_schema_version_recorded(self, database: CacheDatabase) -> None:
        async with database.reader.execute("SELECT version FROM schema_version") as cursor:
            rows = await cursor.fetchall()
        assert [row[0] for row in rows] == [SCHEMA_VERSION]

    @pytest.mark.asyncio
    async def test_reconnect_is_idempotent(self, tmp_path) -> None:
        path = str(tmp_path / "cache.db")
        async with CacheDatabase(path):
            pass
        async with CacheDatabase(path) as db:
            async with db.reader.execute("SELECT COUNT(*) FROM schema_version") as cursor:
                row = await cursor.fetchone()
        assert row[0] == 1

    def test_not_connected_raises(self) -> None:
        db = CacheDatabase(":memory:")
        assert not db.is_connected
        with pytest.raises(RuntimeError):
            db.writer  # noqa: B018
        with pytest.raises(RuntimeError):
            db.reader  # noqa: B018

    @pytest.mark.asyncio
    async def test_in_memory_shares_one_connection(self) -> None:
        async with CacheDatabase(":memory:") as db:
            assert db.reader is db.writer

    @pytest.mark.asyncio
    async def test_close_twice_is_safe(self, tmp_path) -> None:
        db = CacheDatabase(str(tmp_path / "cache.db"))
        await db.connect()
        await db.close()
        await db.close()
        assert not db.is_connected


class TestCorruption:
    """An unreadable cache file is refused at startup."""

    @pytest.mark.asyncio
    async def test_garbage_file_raises_corrupt(self, tmp_path) -> None:
        path = tmp_path / "cache.db"
        path.write_bytes(b"this is not a sqlite database" * 100)

        db = CacheDatabase(str(path))
        with pytest.raises(StoreCorruptError):
            await db.connect()
        assert not db.is_connected

    @pytest.mark.asyncio
    async def test_unknown_schema_version_raises_corrupt(self, tmp_path) -> None:
        path = str(tmp_path / "cache.db")
        async with CacheDatabase(path) as db:
            async with db.transaction() as conn:
                await conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION + 7,))

        db = CacheDatabase(path)
        with pytest.raises(StoreCorruptError):
            await db.connect()
        assert not db.is_connected


class TestTransaction:
    """transaction() commits on success and rolls back on any exception."""

    @pytest.mark.asyncio
    async def test_commit(self, database: CacheDatabase) -> None:
        async with database.transaction() as conn:
            await conn.execute(
                "INSERT INTO sync_metadata (key, value, updated_at_ms) VALUES ('k', 'v', 1)"
            )

        async with database.reader.execute("SELECT value FROM sync_metadata") as cursor:
            row = await cursor.fetchone()
        assert row[0] == "v"

    @pytest.mark.asyncio
    async def test_rollback_on_error(self, database: CacheDatabase) -> None:
        with pytest.raises(ValueError):
            async with database.transaction() as conn:
                await conn.execute(
                    "INSERT INTO sync_metadata (key, value, updated_at_ms) VALUES ('k', 'v', 1)"
                )
                raise ValueError("boom")

        async with database.reader.execute("SELECT COUNT(*) FROM sync_metadata") as cursor:
            row = await cursor.fetchone()
        assert row[0] == 0

    @pytest.mark.asyncio
    async def test_usable_after_rollback(self, database: CacheDatabase) -> None:
        with pytest.raises(ValueError):
            async with database.transaction():
                raise ValueError("boom")

        async with database.transaction() as conn:
            await conn.execute(
                "INSERT INTO sync_metadata (key, value, updated_at_ms) VALUES ('k', 'v', 1)"
            )
        async with database.reader.execute("SELECT COUNT(*) FROM sync_metadata") as cursor:
            row = await cursor.fetchone()
        assert row[0] == 1

    @pytest.mark.asyncio
    async def test_cancelled_body_rolls_back(self, database: CacheDatabase) -> None:
        inside = asyncio.Event()

        async def _write() -> None:
            async with database.transaction() as conn:
                await conn.execute(
                    "INSERT INTO sync_metadata (key, value, updated_at_ms) VALUES ('k', 'v', 1)"
                )
                inside.set()
                await asyncio.sleep(60)

        task = asyncio.create_task(_write())
        await inside.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not database.writer.in_transaction
        async with database.reader.execute("SELECT COUNT(*) FROM sync_metadata") as cursor:
            row = await cursor.fetchone()
        assert row[0] == 0

    @pytest.mark.parametrize("yields", [0, 1, 2, 3, 5, 8])
    @pytest.mark.asyncio
    async def test_cancel_at_any_point_leaves_writer_usable(
        self, database: CacheDatabase, yields: int
    ) -> None:
        async def _write() -> None:
            async with database.transaction() as conn:
                await conn.execute(
                    "INSERT INTO sync_metadata (key, value, updated_at_ms) VALUES ('k', 'v', 1)"
                )

        task = asyncio.create_task(_write())
        for _ in range(yields):
            await asyncio.sleep(0)
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

        assert not database.writer.in_transaction
        async with database.transaction() as conn:
            await conn.execute(
                "INSERT INTO sync_metadata (key, value, updated_at_ms) VALUES ('after', 'v', 2)"
            )
        async with database.reader.execute(
            "SELECT key FROM sync_metadata ORDER BY key"
        ) as cursor:
            keys = [row[0] for row in await cursor.fetchall()]
        assert keys in (["after"], ["after", "k"])
