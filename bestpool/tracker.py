import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import structlog

from .allocation import AllocationEngine, merge_price_tick
from .config import settings, RiskTolerance, StreamEvent
from .error_handling import BestPoolError
from .models import PortfolioResult, PriceTick, utcnow
from .price_stream import PriceStream, VolatilityMonitor

logger = structlog.get_logger()


class PortfolioTracker:
    """Keeps one caller's recommendation current from periodic recomputation and live ticks"""

    def __init__(
        self,
        engine: AllocationEngine,
        stream: PriceStream,
        total_investment: float,
        pair_ids: Sequence[str],
        risk_tolerance: str = RiskTolerance.MEDIUM,
        refresh_interval: float = settings.REFRESH_INTERVAL_SECONDS,
        volatility_threshold: float = settings.DEFAULT_VOLATILITY_THRESHOLD,
        auto_refresh: bool = True
    ):
        self.engine = engine
        self.stream = stream
        self.total_investment = total_investment
        self.pair_ids: List[str] = list(pair_ids)
        self.risk_tolerance = risk_tolerance
        self.refresh_interval = refresh_interval
        self.volatility_threshold = volatility_threshold
        self.auto_refresh = auto_refresh

        self.result: Optional[PortfolioResult] = None
        self.price_updates: Dict[str, PriceTick] = {}
        self.last_error: Optional[str] = None
        self.last_refreshed: Optional[datetime] = None

        self.is_running = False
        self._refresh_task: Optional[asyncio.Task] = None
        self._monitors: List[VolatilityMonitor] = []

    async def start(self):
        """Compute the first result, then follow the stream and refresh on a timer"""
        if self.is_running:
            logger.warning("Portfolio tracker already running")
            return

        self.is_running = True
        logger.info("Starting portfolio tracker", pairs=self.pair_ids, risk_tolerance=self.risk_tolerance)

        await self.refresh()

        self.stream.on(StreamEvent.PRICE_UPDATE, self._handle_price_update)
        await self.stream.subscribe(self.pair_ids)
        for pair_id in self.pair_ids:
            if pair_id in self.stream.registry:
                self._monitors.append(self.stream.monitor_volatility(pair_id, self.volatility_threshold))

        if self.auto_refresh:
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop(self):
        """Detach from the stream and cancel the refresh loop; the stream stays connected"""
        if not self.is_running:
            return

        logger.info("Stopping portfolio tracker")
        self.is_running = False
        self.stream.off(StreamEvent.PRICE_UPDATE, self._handle_price_update)
        # Only this tracker's monitors; others on the same stream keep theirs
        for monitor in self._monitors:
            self.stream.stop_monitoring(monitor)
        self._monitors = []

        task = self._refresh_task
        self._refresh_task = None
        if task:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def refresh(self) -> Optional[PortfolioResult]:
        try:
            self.result = await self.engine.compute_allocation(
                self.total_investment,
                self.pair_ids,
                self.risk_tolerance
            )
            self.last_error = None
            self.last_refreshed = utcnow()
        except BestPoolError as e:
            self.last_error = str(e)
            logger.error("Error refreshing recommendations", error=str(e))
        return self.result

    async def _refresh_loop(self):
        while self.is_running:
            await asyncio.sleep(self.refresh_interval)
            try:
                await self.refresh()
            except Exception as e:
                self.last_error = str(e)
                logger.error("Error in recommendation refresh loop", error=str(e))

    def _handle_price_update(self, tick: PriceTick):
        if tick.pair_id not in self.pair_ids:
            return

        self.price_updates[tick.pair_id] = tick
        if self.result is not None:
            self.result = merge_price_tick(self.result, tick)
