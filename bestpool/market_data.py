import asyncio
import math
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Type, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from .cache import CacheBackend, InMemoryCacheBackend
from .config import settings, CacheKeys, RANGE_WIDTHS
from .error_handling import DataUnavailable, ErrorCollector, InvalidInput, UpstreamError
from .models import OptimalRange, PairConfig, PoolSnapshot, PriceSnapshot, YieldMetrics
from .pools import PoolRegistry, default_registry
from .upstream import UpstreamSource

logger = structlog.get_logger()

ModelT = TypeVar("ModelT", bound=BaseModel)


class MarketDataClient:
    """Pool and price data for the supported pairs behind a freshness-bounded cache"""

    def __init__(
        self,
        source: UpstreamSource,
        cache: Optional[CacheBackend] = None,
        registry: PoolRegistry = default_registry,
        pool_ttl: float = settings.POOL_CACHE_TTL_SECONDS,
        price_ttl: float = settings.PRICE_CACHE_TTL_SECONDS,
        cache_prefix: str = settings.CACHE_PREFIX,
        clock: Callable[[], float] = time.time,
        error_collector: Optional[ErrorCollector] = None
    ):
        self.source = source
        self.cache = cache or InMemoryCacheBackend()
        self.registry = registry
        self.pool_ttl = pool_ttl
        self.price_ttl = price_ttl
        self.cache_prefix = cache_prefix
        self.clock = clock
        self.error_collector = error_collector or ErrorCollector()

        # At most one upstream call in flight per cache key
        self._inflight: Dict[str, asyncio.Task] = {}

    def _resolve_pair(self, pair_id: str) -> PairConfig:
        pair = self.registry.get(pair_id)
        if pair is None:
            raise DataUnavailable(f"Unknown pair: {pair_id}", pair_id=pair_id)
        return pair

    async def get_pool_snapshot(self, pair_id: str) -> PoolSnapshot:
        """Pool metrics for a pair, served from cache while younger than the pool window"""
        pair = self._resolve_pair(pair_id)
        return await self._get_cached(
            f"{CacheKeys.POOL}{pair.address}",
            self.pool_ttl,
            PoolSnapshot,
            lambda: self._fetch_pool_snapshot(pair)
        )

    async def get_price_snapshot(self, pair_id: str) -> PriceSnapshot:
        """Latest price metrics for a pair, served from cache while younger than the price window"""
        pair = self._resolve_pair(pair_id)
        return await self._get_cached(
            f"{CacheKeys.PRICE}{pair.address}",
            self.price_ttl,
            PriceSnapshot,
            lambda: self._fetch_price_snapshot(pair)
        )

    async def get_optimal_range(self, pair_id: str, risk_tolerance: str) -> OptimalRange:
        """Symmetric price band around the current price; tighter bands earn a higher yield estimate"""
        width = RANGE_WIDTHS.get(risk_tolerance)
        if width is None:
            raise InvalidInput(f"Unknown risk tolerance: {risk_tolerance}")

        try:
            price = await self.get_price_snapshot(pair_id)
        except UpstreamError as e:
            raise DataUnavailable(f"Unable to fetch price data for {pair_id}", pair_id=pair_id) from e

        base_yield = 10.0
        range_bonus = (1 / width) * 0.5
        expected_yield = min(base_yield + range_bonus, settings.MAX_EXPECTED_YIELD)

        return OptimalRange(
            lower=price.current_price * (1 - width),
            upper=price.current_price * (1 + width),
            expected_yield=expected_yield
        )

    @staticmethod
    def estimate_realized_loss_vs_holding(initial_ratio: float, current_ratio: float) -> float:
        """Constant-product loss versus holding, as a percentage magnitude"""
        if initial_ratio <= 0 or current_ratio <= 0:
            raise InvalidInput("Price ratios must be positive")

        r = current_ratio / initial_ratio
        loss = 2 * math.sqrt(r) / (1 + r) - 1
        return abs(loss) * 100

    async def get_yield_metrics(self, pair_id: str) -> YieldMetrics:
        pool = await self.get_pool_snapshot(pair_id)

        apr = pool.fee * 365
        apy = (math.pow(1 + pool.fee / 365, 365) - 1) * 100
        daily_fees = pool.volume_24h * (pool.fee / 100)

        return YieldMetrics(
            pair_id=pair_id,
            apy=apy,
            apr=apr,
            daily_fees=daily_fees,
            weekly_fees=daily_fees * 7
        )

    async def clear_cache(self) -> int:
        """Drop every cached snapshot"""
        removed = await self.cache.delete_prefix(self.cache_prefix)
        logger.info("Market data cache cleared", entries_removed=removed)
        return removed

    async def _get_cached(
        self,
        key: str,
        ttl: float,
        model: Type[ModelT],
        fetcher: Callable[[], Awaitable[ModelT]]
    ) -> ModelT:
        full_key = self.cache_prefix + key

        cached = await self._read_cache(full_key, ttl, model)
        if cached is not None:
            return cached

        task = self._inflight.get(full_key)
        if task is None:
            task = asyncio.create_task(self._fetch_and_store(full_key, ttl, fetcher))
            self._inflight[full_key] = task
            task.add_done_callback(lambda done: self._fetch_done(full_key, done))

        # Shielded so one cancelled caller does not abort the shared fetch
        snapshot = await asyncio.shield(task)
        return snapshot.model_copy(deep=True)

    def _fetch_done(self, key: str, task: asyncio.Task):
        self._inflight.pop(key, None)
        # Every waiter may have been cancelled; mark the failure as observed
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Shared fetch failed", key=key, error=str(task.exception()))

    async def _read_cache(self, key: str, ttl: float, model: Type[ModelT]) -> Optional[ModelT]:
        try:
            entry = await self.cache.get(key)
        except Exception as e:
            logger.error("Cache read error", key=key, error=str(e))
            return None

        if not entry:
            return None

        if self.clock() - entry.get("timestamp", 0) >= ttl:
            return None

        try:
            return model.model_validate(entry["data"])
        except (KeyError, ValidationError) as e:
            logger.warning("Discarding malformed cache entry", key=key, error=str(e))
            return None

    async def _fetch_and_store(self, key: str, ttl: float, fetcher: Callable[[], Awaitable[ModelT]]) -> ModelT:
        snapshot = await fetcher()
        try:
            await self.cache.set(
                key,
                {"data": snapshot.model_dump(mode="json"), "timestamp": self.clock()},
                ttl
            )
        except Exception as e:
            logger.error("Cache write error", key=key, error=str(e))
        return snapshot

    async def _fetch_pool_snapshot(self, pair: PairConfig) -> PoolSnapshot:
        record = await self._call_upstream(pair, self.source.fetch_pool_metrics(pair.address))
        if not record:
            raise DataUnavailable(f"No pool record for {pair.id}", pair_id=pair.id)

        try:
            return PoolSnapshot(
                pair_id=pair.id,
                address=pair.address,
                current_price=record["price"],
                price_change_24h=record.get("price_change_24h", 0.0),
                liquidity=record["liquidity"],
                volume_24h=record["volume_24h"],
                apy=record["apy"],
                tvl=record["tvl"],
                fee=record["fee"]
            )
        except (KeyError, ValidationError) as e:
            raise UpstreamError(f"Could not decode pool record for {pair.id}: {e}") from e

    async def _fetch_price_snapshot(self, pair: PairConfig) -> PriceSnapshot:
        pool = await self.get_pool_snapshot(pair.id)
        record = await self._call_upstream(
            pair, self.source.fetch_price_metrics(pair.address, pool.current_price)
        )
        if not record:
            raise DataUnavailable(f"No price record for {pair.id}", pair_id=pair.id)

        try:
            return PriceSnapshot(
                pair_id=pair.id,
                address=pair.address,
                current_price=record["current_price"],
                price_change_24h=record["price_change_24h"],
                price_change_7d=record["price_change_7d"],
                high_24h=record["high_24h"],
                low_24h=record["low_24h"]
            )
        except (KeyError, ValidationError) as e:
            raise UpstreamError(f"Could not decode price record for {pair.id}: {e}") from e

    async def _call_upstream(self, pair: PairConfig, request: Awaitable[Optional[Dict[str, Any]]]):
        try:
            return await request
        except UpstreamError as e:
            self.error_collector.record_error(e, {"pair_id": pair.id})
            raise
        except Exception as e:
            # Any transport or decode failure surfaces uniformly
            self.error_collector.record_error(e, {"pair_id": pair.id})
            raise UpstreamError(f"Upstream failure for {pair.id}: {e}") from e
