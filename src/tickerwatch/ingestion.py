"""Ingestion coordinator -- the polling loop behind the dashboard.

Each tick runs a fixed pipeline:
  1. FETCH: poll the feed for every symbol concurrently
  2. PERSIST: read the previous price, then write through the cache store
  3. CLASSIFY: fold per-symbol results into one FetchOutcome
  4. UPDATE FRESHNESS: advance the connectivity state machine
  5. EVALUATE: run alert rules against every newly persisted snapshot
  6. PUBLISH: swap in an immutable PublishedView for the UI

Per-symbol fetch errors never leave this module; they only shape the
outcome. Any other exception raised by the feed counts as a hard failure
for that symbol alone. A store write error is retried once, then that symbol's update is
dropped for the tick and its age keeps growing.
"""

from __future__ import annotations

import asyncio
import dataclasses
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import TypeVar

import structlog

from tickerwatch.config import WatchSettings
from tickerwatch.data.store import CacheStore
from tickerwatch.exceptions import FetchError, HardFetchError, StoreIOError
from tickerwatch.feed.client import PriceFeed
from tickerwatch.logging import get_logger
from tickerwatch.market_data.alerts import AlertEvaluator
from tickerwatch.market_data.freshness import FreshnessStateMachine
from tickerwatch.models import (
    AlertEvent,
    AlertRule,
    CandleRecord,
    Comparator,
    ConnectivityState,
    FetchOutcome,
    PriceSnapshot,
    PublishedView,
    SymbolView,
    now_ms,
)

logger = get_logger(__name__)

T = TypeVar("T")

LAST_SYNC_KEY = "last_sync_ms"


@dataclass
class SymbolResult:
    """What one tick achieved for one symbol."""

    symbol: str
    snapshot: PriceSnapshot | None = None
    previous: PriceSnapshot | None = None
    persisted: bool = False
    error: FetchError | None = None


def classify_outcome(results: list[SymbolResult]) -> FetchOutcome:
    """Any hard failure wins, then any transient failure, else success."""
    errors = [r.error for r in results if r.error is not None]
    if any(isinstance(e, HardFetchError) for e in errors):
        return FetchOutcome.HARD_FAILURE
    if errors:
        return FetchOutcome.TRANSIENT_FAILURE
    return FetchOutcome.SUCCESS


class IngestionCoordinator:
    """Drives fetch ticks and exposes the freshness-annotated view.

    Args:
        settings: Symbols, refresh interval and candle parameters.
        feed: Price feed collaborator.
        store: Shared cache store.
        freshness: Connectivity state machine (owned here, mutated only by ticks
            and the user's offline toggle).
        evaluator: Alert evaluator.
        clock: Returns the current time in Unix ms. Injectable for tests.
    """

    def __init__(
        self,
        settings: WatchSettings,
        feed: PriceFeed,
        store: CacheStore,
        freshness: FreshnessStateMachine,
        evaluator: AlertEvaluator,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._settings = settings
        self._symbols = list(settings.symbols)
        self._feed = feed
        self._store = store
        self._freshness = freshness
        self._evaluator = evaluator
        self._clock = clock
        self._tick_lock = asyncio.Lock()
        self._tick_count = 0
        self._last_sync_ms: int | None = None
        self._view = PublishedView(
            tick=0,
            generated_at_ms=clock(),
            state=freshness.state,
            manual_offline=freshness.manual_offline,
            outcome=None,
            status_text=freshness.describe(None),
            symbols=tuple(
                SymbolView(symbol=s, snapshot=None, age_seconds=math.inf, last_success_ms=None)
                for s in self._symbols
            ),
        )
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def start(self) -> None:
        """Publish cached data, then poll in the background."""
        if self._running:
            logger.warning("ingestion_already_running")
            return
        await self.warm_start()
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "ingestion_started",
            symbols=len(self._symbols),
            refresh_interval=self._settings.refresh_interval,
        )

    async def stop(self) -> None:
        """Abandon the loop. Storage transactions already begun still complete."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("ingestion_stopped")

    async def warm_start(self) -> PublishedView:
        """Publish a view built from the cache alone, before any fetch."""
        async with self._tick_lock:
            try:
                raw = await self._store.get_sync_metadata(LAST_SYNC_KEY)
                self._last_sync_ms = int(raw) if raw else None
            except (StoreIOError, ValueError):
                logger.warning("last_sync_unreadable", exc_info=True)
            view = await self._publish(self._clock(), None)
        cached = sum(1 for entry in view.symbols if entry.has_data)
        logger.info("cache_warm_start", cached_symbols=cached, symbols=len(self._symbols))
        return view

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("ingestion_tick_error", exc_info=True)
            if self._running:
                await asyncio.sleep(self._settings.refresh_interval)

    # ──────────────────────────────────────────────
    # Tick pipeline
    # ──────────────────────────────────────────────

    async def tick(self) -> PublishedView:
        """Run one full pipeline pass and return the published view."""
        async with self._tick_lock:
            self._tick_count += 1
            with structlog.contextvars.bound_contextvars(tick=self._tick_count):
                return await self._tick()

    async def _tick(self) -> PublishedView:
        if self._freshness.manual_offline:
            logger.debug("fetch_skipped_manual_offline")
            self._evaluator.sync_state(self._freshness.state)
            return await self._publish(self._clock(), None)

        refresh_candles = (self._tick_count - 1) % max(1, self._settings.candle_refresh_ticks) == 0

        # FETCH + PERSIST
        results = await asyncio.gather(
            *(self._ingest_symbol(symbol, refresh_candles) for symbol in self._symbols)
        )

        # CLASSIFY
        outcome = classify_outcome(results)

        # UPDATE FRESHNESS
        now = self._clock()
        max_age = await self._max_age(now)
        state = self._freshness.observe(outcome, max_age)

        if any(r.snapshot is not None for r in results):
            self._last_sync_ms = now
            try:
                await self._store.set_sync_metadata(LAST_SYNC_KEY, str(now))
            except StoreIOError:
                logger.warning("last_sync_not_persisted", exc_info=True)

        # EVALUATE
        self._evaluator.sync_state(state)
        for result in results:
            if result.persisted and result.snapshot is not None:
                self._evaluator.evaluate(result.snapshot, result.previous, state)

        # PUBLISH
        view = await self._publish(now, outcome)
        view_age = view.max_age_seconds
        logger.info(
            "ingestion_tick_complete",
            outcome=outcome.value,
            state=state.value,
            persisted=sum(1 for r in results if r.persisted),
            failed=sum(1 for r in results if r.error is not None),
            stale=self.stale_symbols(view),
            max_age=None if math.isinf(view_age) else round(view_age, 1),
        )
        return view

    async def _ingest_symbol(self, symbol: str, refresh_candles: bool) -> SymbolResult:
        """Fetch and persist one symbol. Never raises FetchError or StoreIOError."""
        result = SymbolResult(symbol=symbol)
        try:
            observation = await self._feed.fetch(symbol)
        except FetchError as e:
            result.error = e
            logger.warning(
                "price_fetch_failed",
                symbol=symbol,
                kind=type(e).__name__,
                error=str(e),
            )
            return result
        except Exception as e:
            # A feed bug or unexpected payload fails this symbol only
            result.error = HardFetchError(symbol, f"{type(e).__name__}: {e}")
            logger.error("price_fetch_unexpected_error", symbol=symbol, exc_info=True)
            return result

        fetched_at = self._clock()
        self._freshness.record_success(symbol, fetched_at)
        result.snapshot = PriceSnapshot.from_observation(observation, fetched_at)

        try:
            result.previous = await self._retry_store(self._store.latest_price, symbol)
            result.persisted = await self._retry_store(self._store.put_price, result.snapshot)
        except StoreIOError as e:
            logger.error("price_update_dropped", symbol=symbol, error=str(e))
            result.persisted = False

        if refresh_candles:
            await self._refresh_candles(symbol, self._settings.candle_interval)
        return result

    async def _refresh_candles(
        self, symbol: str, interval: str, limit: int | None = None
    ) -> list[CandleRecord]:
        """Fetch and upsert candles. Failures are logged, they do not affect connectivity."""
        try:
            observations = await self._feed.fetch_candles(
                symbol, interval, limit or self._settings.candle_limit
            )
        except FetchError as e:
            logger.warning(
                "candle_fetch_failed",
                symbol=symbol,
                interval=interval,
                kind=type(e).__name__,
                error=str(e),
            )
            return []
        except Exception:
            logger.error(
                "candle_fetch_unexpected_error", symbol=symbol, interval=interval, exc_info=True
            )
            return []

        records = [CandleRecord.from_observation(symbol, interval, o) for o in observations]
        try:
            await self._retry_store(self._store.put_candles, records)
        except StoreIOError as e:
            logger.error("candle_update_dropped", symbol=symbol, interval=interval, error=str(e))
            return []
        return records

    async def _retry_store(self, operation: Callable[..., Awaitable[T]], *args: object) -> T:
        """Run a store operation, retrying once on StoreIOError."""
        try:
            return await operation(*args)
        except StoreIOError as e:
            logger.warning(
                "store_retry",
                operation=getattr(operation, "__name__", repr(operation)),
                error=str(e),
            )
            return await operation(*args)

    async def _max_age(self, now: int) -> float:
        ages = []
        for symbol in self._symbols:
            try:
                ages.append(await self._store.age_of(symbol, now))
            except StoreIOError:
                logger.warning("age_unreadable", symbol=symbol, exc_info=True)
                ages.append(math.inf)
        return max(ages, default=math.inf)

    async def _publish(self, now: int, outcome: FetchOutcome | None) -> PublishedView:
        """Build the view for this tick and swap it in."""
        previous_entries = {entry.symbol: entry for entry in self._view.symbols}
        entries: list[SymbolView] = []
        for symbol in self._symbols:
            try:
                snapshot = await self._store.latest_price(symbol)
            except StoreIOError:
                logger.warning("view_price_unreadable", symbol=symbol, exc_info=True)
                snapshot = previous_entries[symbol].snapshot
            age = (
                max(0.0, (now - snapshot.observed_at_ms) / 1000.0)
                if snapshot is not None
                else math.inf
            )
            entries.append(
                SymbolView(
                    symbol=symbol,
                    snapshot=snapshot,
                    age_seconds=age,
                    last_success_ms=self._freshness.last_success(symbol),
                )
            )

        self._view = PublishedView(
            tick=self._tick_count,
            generated_at_ms=now,
            state=self._freshness.state,
            manual_offline=self._freshness.manual_offline,
            outcome=outcome,
            status_text=self._freshness.describe(self._sync_age(now)),
            symbols=tuple(entries),
        )
        return self._view

    def _sync_age(self, now: int) -> float | None:
        if self._last_sync_ms is None:
            return None
        return max(0.0, (now - self._last_sync_ms) / 1000.0)

    # ──────────────────────────────────────────────
    # UI-facing API
    # ──────────────────────────────────────────────

    @property
    def view(self) -> PublishedView:
        """The latest published view. Never partially updated."""
        return self._view

    @property
    def connectivity_state(self) -> ConnectivityState:
        return self._freshness.state

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def stale_symbols(self, view: PublishedView | None = None) -> list[str]:
        """Symbols whose data is older than twice the refresh interval."""
        view = view or self._view
        bound = 2 * self._settings.refresh_interval
        return [entry.symbol for entry in view.symbols if entry.is_stale(bound)]

    async def latest_price(self, symbol: str) -> PriceSnapshot | None:
        return await self._store.latest_price(symbol)

    async def age_of(self, symbol: str) -> float:
        return await self._store.age_of(symbol, self._clock())

    async def candles(
        self,
        symbol: str,
        interval: str | None = None,
        since_ms: int | None = None,
        until_ms: int | None = None,
    ) -> list[CandleRecord]:
        return await self._store.candles(
            symbol, interval or self._settings.candle_interval, since_ms, until_ms
        )

    async def load_candles(
        self,
        symbol: str,
        interval: str | None = None,
        limit: int | None = None,
    ) -> list[CandleRecord]:
        """Cached candles for a chart; fetched from the feed if the cache is empty."""
        interval = interval or self._settings.candle_interval
        limit = limit or self._settings.candle_limit
        cached = await self._store.candles(symbol, interval, limit=limit)
        if cached or self._freshness.manual_offline:
            return cached
        records = await self._refresh_candles(symbol, interval, limit)
        return records[-limit:]

    def set_manual_offline(self, enabled: bool) -> ConnectivityState:
        """User offline toggle. Takes effect before the next fetch phase.

        A fetch already in flight finishes and is persisted, but cannot move
        the state out of manual Offline.
        """
        state = self._freshness.set_manual_offline(enabled)
        self._evaluator.sync_state(state)
        self._view = dataclasses.replace(
            self._view,
            state=state,
            manual_offline=self._freshness.manual_offline,
            status_text=self._freshness.describe(self._sync_age(self._clock())),
        )
        return state

    def toggle_manual_offline(self) -> ConnectivityState:
        return self.set_manual_offline(not self._freshness.manual_offline)

    def add_alert_rule(
        self, symbol: str, comparator: Comparator, threshold: Decimal
    ) -> AlertRule:
        return self._evaluator.add_rule(symbol, comparator, threshold)

    def remove_alert_rule(self, rule_id: str) -> bool:
        return self._evaluator.remove_rule(rule_id)

    def alert_rules(self) -> list[AlertRule]:
        return self._evaluator.rules()

    def drain_alerts(self) -> list[AlertEvent]:
        return self._evaluator.drain_events()
