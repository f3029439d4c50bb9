"""Typed SQLite read/write abstraction for cached prices and candles.

Provides CacheStore with typed methods for writing price snapshots and
candles, querying the current price, candle ranges and data age, and
purging old rows. All SQL is isolated behind this interface.

CRITICAL: All monetary values stored as TEXT in SQLite, restored as Decimal on read.
"""

import asyncio
import math
from collections.abc import Sequence
from decimal import Decimal

import aiosqlite

from tickerwatch.data.database import CacheDatabase
from tickerwatch.exceptions import StoreIOError
from tickerwatch.logging import get_logger
from tickerwatch.models import CandleRecord, PriceSnapshot, StoreStats, now_ms

logger = get_logger(__name__)

_PRICE_COLUMNS = (
    "symbol, price, percent_change_24h, volume_24h, observed_at_ms, fetched_at_ms"
)
_CANDLE_COLUMNS = (
    "symbol, interval, open_time_ms, close_time_ms, open, high, low, close, volume"
)


def _row_to_snapshot(row: Sequence) -> PriceSnapshot:
    return PriceSnapshot(
        symbol=row[0],
        price=Decimal(row[1]),
        percent_change_24h=Decimal(row[2]),
        volume_24h=Decimal(row[3]),
        observed_at_ms=row[4],
        fetched_at_ms=row[5],
    )


def _row_to_candle(row: Sequence) -> CandleRecord:
    return CandleRecord(
        symbol=row[0],
        interval=row[1],
        open_time_ms=row[2],
        close_time_ms=row[3],
        open=Decimal(row[4]),
        high=Decimal(row[5]),
        low=Decimal(row[6]),
        close=Decimal(row[7]),
        volume=Decimal(row[8]),
    )


class CacheStore:
    """Async SQLite store for price snapshots and OHLCV candles.

    Wraps CacheDatabase with typed read/write methods. Writes go through
    CacheDatabase.transaction() on the writer connection; reads use the
    reader connection so they never wait on a batch being written.

    Any sqlite error surfaces as StoreIOError.

    Usage:
        async with CacheDatabase("data/tickerwatch.db") as database:
            store = CacheStore(database)
            await store.put_price(snapshot)
    """

    def __init__(self, database: CacheDatabase) -> None:
        self._database = database

    # ──────────────────────────────────────────────
    # Write methods
    # ──────────────────────────────────────────────

    async def put_price(self, snapshot: PriceSnapshot) -> bool:
        """Insert a snapshot unless the symbol already has one at least as new.

        Duplicate and out-of-order deliveries are no-ops. Returns True if a
        row was written.
        """
        return await asyncio.shield(self._put_price(snapshot))

    async def _put_price(self, snapshot: PriceSnapshot) -> bool:
        try:
            async with self._database.transaction() as conn:
                cursor = await conn.execute(
                    f"INSERT INTO prices ({_PRICE_COLUMNS}) "
                    "SELECT ?, ?, ?, ?, ?, ? "
                    "WHERE NOT EXISTS ("
                    "  SELECT 1 FROM prices WHERE symbol = ? AND observed_at_ms >= ?"
                    ")",
                    (
                        snapshot.symbol,
                        str(snapshot.price),
                        str(snapshot.percent_change_24h),
                        str(snapshot.volume_24h),
                        snapshot.observed_at_ms,
                        snapshot.fetched_at_ms,
                        snapshot.symbol,
                        snapshot.observed_at_ms,
                    ),
                )
                inserted = cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise StoreIOError(f"put_price failed for {snapshot.symbol}: {e}") from e

        if inserted:
            logger.debug(
                "price_persisted",
                symbol=snapshot.symbol,
                price=str(snapshot.price),
                observed_at_ms=snapshot.observed_at_ms,
            )
        else:
            logger.debug(
                "price_not_newer",
                symbol=snapshot.symbol,
                observed_at_ms=snapshot.observed_at_ms,
            )
        return inserted

    async def put_candles(self, records: Sequence[CandleRecord]) -> int:
        """Upsert a batch of candles atomically.

        Rows are keyed by (symbol, interval, open_time_ms); a re-fetched
        candle overwrites the stored one. The whole batch commits or none
        of it does, and a started batch is not abandoned if the caller is
        cancelled. Returns the number of records written.
        """
        if not records:
            return 0
        return await asyncio.shield(self._put_candles(records))

    async def _put_candles(self, records: Sequence[CandleRecord]) -> int:
        data = [
            (
                r.symbol,
                r.interval,
                r.open_time_ms,
                r.close_time_ms,
                str(r.open),
                str(r.high),
                str(r.low),
                str(r.close),
                str(r.volume),
            )
            for r in records
        ]
        try:
            async with self._database.transaction() as conn:
                await conn.executemany(
                    f"INSERT INTO candles ({_CANDLE_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(symbol, interval, open_time_ms) DO UPDATE SET "
                    "close_time_ms = excluded.close_time_ms, "
                    "open = excluded.open, "
                    "high = excluded.high, "
                    "low = excluded.low, "
                    "close = excluded.close, "
                    "volume = excluded.volume",
                    data,
                )
        except aiosqlite.Error as e:
            raise StoreIOError(f"put_candles failed: {e}") from e

        logger.debug(
            "candles_persisted",
            symbols=sorted({r.symbol for r in records}),
            total=len(records),
        )
        return len(records)

    async def purge_older_than(
        self,
        price_horizon_ms: int,
        candle_horizon_ms: int,
        now: int | None = None,
    ) -> tuple[int, int]:
        """Delete price and candle rows older than their horizons.

        Prices are aged by observed_at_ms, candles by close_time_ms. The
        most recent price row of every symbol is kept regardless of age.
        Returns (prices_deleted, candles_deleted).
        """
        now = now_ms() if now is None else now
        return await asyncio.shield(
            self._purge(now - price_horizon_ms, now - candle_horizon_ms)
        )

    async def _purge(self, price_cutoff: int, candle_cutoff: int) -> tuple[int, int]:
        try:
            async with self._database.transaction() as conn:
                cursor = await conn.execute(
                    "DELETE FROM prices "
                    "WHERE observed_at_ms < ? "
                    "AND observed_at_ms < ("
                    "  SELECT MAX(latest.observed_at_ms) FROM prices AS latest "
                    "  WHERE latest.symbol = prices.symbol"
                    ")",
                    (price_cutoff,),
                )
                prices_deleted = cursor.rowcount
                cursor = await conn.execute(
                    "DELETE FROM candles WHERE close_time_ms < ?",
                    (candle_cutoff,),
                )
                candles_deleted = cursor.rowcount
        except aiosqlite.Error as e:
            raise StoreIOError(f"purge failed: {e}") from e
        return prices_deleted, candles_deleted

    async def set_sync_metadata(self, key: str, value: str) -> None:
        """Insert or replace a metadata entry."""
        await asyncio.shield(self._set_sync_metadata(key, value))

    async def _set_sync_metadata(self, key: str, value: str) -> None:
        try:
            async with self._database.transaction() as conn:
                await conn.execute(
                    "INSERT OR REPLACE INTO sync_metadata (key, value, updated_at_ms) "
                    "VALUES (?, ?, ?)",
                    (key, value, now_ms()),
                )
        except aiosqlite.Error as e:
            raise StoreIOError(f"set_sync_metadata failed for {key}: {e}") from e

    # ──────────────────────────────────────────────
    # Read methods
    # ──────────────────────────────────────────────

    async def latest_price(self, symbol: str) -> PriceSnapshot | None:
        """Return the current snapshot for a symbol, or None if never seen."""
        row = await self._fetchone(
            f"SELECT {_PRICE_COLUMNS} FROM prices WHERE symbol = ? "
            "ORDER BY observed_at_ms DESC LIMIT 1",
            (symbol,),
        )
        return _row_to_snapshot(row) if row is not None else None

    async def candles(
        self,
        symbol: str,
        interval: str,
        since_ms: int | None = None,
        until_ms: int | None = None,
        limit: int | None = None,
    ) -> list[CandleRecord]:
        """Query candles for a symbol and interval within an optional range.

        With ``limit``, only the most recent ``limit`` candles in range are
        returned. The result is always ordered by open_time_ms ASC.
        """
        conditions = ["symbol = ?", "interval = ?"]
        params: list = [symbol, interval]

        if since_ms is not None:
            conditions.append("open_time_ms >= ?")
            params.append(since_ms)
        if until_ms is not None:
            conditions.append("open_time_ms <= ?")
            params.append(until_ms)

        where = " AND ".join(conditions)
        query = f"SELECT {_CANDLE_COLUMNS} FROM candles WHERE {where} "
        if limit is not None:
            query += "ORDER BY open_time_ms DESC LIMIT ?"
            params.append(limit)
        else:
            query += "ORDER BY open_time_ms ASC"

        rows = await self._fetchall(query, params)
        records = [_row_to_candle(row) for row in rows]
        if limit is not None:
            records.reverse()
        return records

    async def age_of(self, symbol: str, now: int | None = None) -> float:
        """Seconds since the latest snapshot was observed; math.inf if never."""
        now = now_ms() if now is None else now
        row = await self._fetchone(
            "SELECT MAX(observed_at_ms) FROM prices WHERE symbol = ?",
            (symbol,),
        )
        if row is None or row[0] is None:
            return math.inf
        return max(0.0, (now - row[0]) / 1000.0)

    async def get_sync_metadata(self, key: str) -> str | None:
        """Return a metadata value, or None if unset."""
        row = await self._fetchone(
            "SELECT value FROM sync_metadata WHERE key = ?",
            (key,),
        )
        return row[0] if row is not None else None

    async def active_symbols(self, since_ms: int) -> list[str]:
        """Symbols with at least one price observed at or after since_ms."""
        rows = await self._fetchall(
            "SELECT DISTINCT symbol FROM prices WHERE observed_at_ms >= ? ORDER BY symbol",
            (since_ms,),
        )
        return [row[0] for row in rows]

    async def stats(self) -> StoreStats:
        """Row counts and database size for status display."""
        price_row = await self._fetchone("SELECT COUNT(*) FROM prices")
        candle_row = await self._fetchone("SELECT COUNT(*) FROM candles")
        size_row = await self._fetchone(
            "SELECT page_count * page_size FROM pragma_page_count(), pragma_page_size()"
        )
        return StoreStats(
            price_records=price_row[0] if price_row else 0,
            candle_records=candle_row[0] if candle_row else 0,
            database_size_bytes=size_row[0] if size_row else 0,
        )

    # ──────────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────────

    async def _fetchone(self, query: str, params: Sequence = ()) -> Sequence | None:
        # Closing the cursor ends the implicit read transaction, so the next
        # query sees the latest committed data.
        try:
            async with self._database.reader.execute(query, params) as cursor:
                return await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StoreIOError(f"query failed: {e}") from e

    async def _fetchall(self, query: str, params: Sequence = ()) -> list:
        try:
            async with self._database.reader.execute(query, params) as cursor:
                return list(await cursor.fetchall())
        except aiosqlite.Error as e:
            raise StoreIOError(f"query failed: {e}") from e
