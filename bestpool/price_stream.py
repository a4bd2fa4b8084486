"""
Live price feed for the supported pairs

The stream owns the connection lifecycle (connect, reconnect with exponential
backoff, disconnect), generates simulated ticks for subscribed pairs, and
derives price and volatility alerts from the ticks it ingests. Listeners
register per event name with ``on``/``off``.
"""
import asyncio
import inspect
import random
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set, Union

import numpy as np
import structlog
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt

from .config import settings, AlertSeverity, StreamEvent
from .error_handling import ConnectionExhausted, ErrorCollector, InvalidInput
from .models import PriceAlert, PriceTick, VolatilityAlert, VolumeUpdate
from .pools import PoolRegistry, default_registry

logger = structlog.get_logger()

Handler = Callable[[Any], Any]


class StreamState:
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class FeedTransport(ABC):
    """Connection to the live feed; raises StreamConnectionError when it cannot open"""

    @abstractmethod
    async def open(self) -> None:
        ...

    @abstractmethod
    async def subscribe(self, pair_id: str, address: str) -> None:
        ...

    @abstractmethod
    async def unsubscribe(self, pair_id: str) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class SimulatedFeedTransport(FeedTransport):
    """Accepts every subscription; ticks come from the stream's own generator"""

    def __init__(self):
        self.subscriptions: Set[str] = set()
        self.is_open = False

    async def open(self) -> None:
        self.is_open = True

    async def subscribe(self, pair_id: str, address: str) -> None:
        self.subscriptions.add(pair_id)

    async def unsubscribe(self, pair_id: str) -> None:
        self.subscriptions.discard(pair_id)

    async def close(self) -> None:
        self.subscriptions.clear()
        self.is_open = False


def reconnect_delay(
    attempt: int,
    base: float = settings.RECONNECT_BASE_DELAY_SECONDS,
    cap: float = settings.RECONNECT_MAX_DELAY_SECONDS
) -> float:
    """Backoff before the next attempt, given how many attempts have failed"""
    return min(base * (2 ** attempt), cap)


def returns_volatility(prices: Iterable[float]) -> float:
    """Population standard deviation of consecutive percent returns"""
    series = np.asarray(list(prices), dtype=float)
    if series.size < 2:
        return 0.0
    returns = np.diff(series) / series[:-1]
    return float(np.std(returns) * 100)


@dataclass(eq=False)
class VolatilityMonitor:
    """Handle returned by monitor_volatility; release it with stop_monitoring"""
    pair_id: str
    threshold: float


class PriceStream:
    def __init__(
        self,
        registry: PoolRegistry = default_registry,
        transport: Optional[FeedTransport] = None,
        pair_ids: Optional[Iterable[str]] = None,
        reference_prices: Optional[Dict[str, float]] = None,
        tick_interval: float = settings.TICK_INTERVAL_SECONDS,
        tick_jitter: float = settings.TICK_JITTER,
        max_reconnect_attempts: int = settings.MAX_RECONNECT_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        error_collector: Optional[ErrorCollector] = None
    ):
        self.registry = registry
        self.transport = transport or SimulatedFeedTransport()
        self.tick_interval = tick_interval
        self.tick_jitter = tick_jitter
        self.max_reconnect_attempts = max_reconnect_attempts
        self.rng = rng or random.Random()
        self.error_collector = error_collector or ErrorCollector()
        self._sleep = sleep

        self.state = StreamState.DISCONNECTED
        self.reconnect_attempts = 0

        # Pairs the caller wants ticks for, and those actually live on the transport
        self._registered: Set[str] = set(pair_ids if pair_ids is not None else registry.ids())
        self._subscriptions: Set[str] = set()

        self._last_prices: Dict[str, float] = dict(reference_prices or {})
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._price_windows: Dict[str, Deque[float]] = {}
        self._monitors: Dict[str, List[VolatilityMonitor]] = {}

        self._tick_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._generation = 0

    # Listener registration

    def on(self, event: str, handler: Handler):
        if event not in StreamEvent.ALL:
            raise InvalidInput(f"Unknown stream event: {event}")
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Handler):
        if event not in StreamEvent.ALL:
            raise InvalidInput(f"Unknown stream event: {event}")
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    async def _emit(self, event: str, payload: Any = None):
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Stream listener failed", stream_event=event, error=str(e))
                self.error_collector.record_error(e, {"stream_event": event})

    # Connection lifecycle

    @property
    def is_connected(self) -> bool:
        return self.state == StreamState.CONNECTED

    @property
    def subscriptions(self) -> List[str]:
        return sorted(self._subscriptions)

    async def connect(self):
        """Open the feed and start ticking

        Only the first attempt runs inline. When it fails the remaining
        attempts continue as a background reconnect task, so callers are
        never held up by the backoff schedule.
        """
        if self.state == StreamState.CONNECTED:
            logger.debug("Price stream already connected")
            return

        await self._cancel_reconnect()
        generation = self._next_generation()
        self.reconnect_attempts = 0

        try:
            await self._attempt_open(generation)
        except Exception as e:
            if generation != self._generation:
                return
            logger.warning("Price stream connection failed, retrying in background", error=str(e))
            self._reconnect_task = asyncio.create_task(self._retry_connect(generation))

    def _next_generation(self) -> int:
        # Any attempt started under an older generation gives up instead of connecting
        self._generation += 1
        return self._generation

    async def _attempt_open(self, generation: int) -> bool:
        """Single connection attempt; False when a disconnect or newer connect superseded it"""
        async with self._connect_lock:
            if generation != self._generation:
                return False

            self.state = StreamState.CONNECTING
            try:
                await self._open()
            except Exception as e:
                self.reconnect_attempts += 1
                self.error_collector.record_error(e, {"stream": "connect"})
                await self._safe_close()
                raise

            if generation != self._generation:
                await self._safe_close()
                return False

            self.state = StreamState.CONNECTED
            self.reconnect_attempts = 0
            self._start_ticking()

        logger.info("Price stream connected", subscriptions=self.subscriptions)
        await self._emit(StreamEvent.CONNECTED)
        return True

    async def _retry_connect(self, generation: int):
        remaining = self.max_reconnect_attempts - self.reconnect_attempts
        if remaining <= 0:
            await self._report_exhausted()
            return

        await self._sleep(reconnect_delay(self.reconnect_attempts))
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(remaining),
                wait=self._backoff_wait,
                sleep=self._sleep,
                retry=retry_if_exception_type(Exception),
                before_sleep=self._log_retry,
            ):
                with attempt:
                    await self._attempt_open(generation)
        except RetryError:
            if generation == self._generation:
                await self._report_exhausted()

    def _backoff_wait(self, retry_state) -> float:
        return reconnect_delay(self.reconnect_attempts)

    def _log_retry(self, retry_state):
        logger.warning(
            "Price stream connection failed, retrying",
            attempt=self.reconnect_attempts,
            delay_seconds=reconnect_delay(self.reconnect_attempts),
            error=str(retry_state.outcome.exception())
        )

    async def _report_exhausted(self):
        self.state = StreamState.DISCONNECTED
        error = ConnectionExhausted(self.reconnect_attempts)
        logger.error("Max reconnection attempts reached", attempts=self.reconnect_attempts)
        await self._emit(StreamEvent.ERROR, error)

    async def _open(self):
        await self.transport.open()
        for pair_id in sorted(self._registered):
            await self._subscribe_pair(pair_id)

    async def _subscribe_pair(self, pair_id: str):
        pair = self.registry.get(pair_id)
        if pair is None:
            logger.warning("Skipping unknown pair", pair_id=pair_id)
            self._registered.discard(pair_id)
            return
        if pair_id in self._subscriptions:
            return

        await self.transport.subscribe(pair_id, pair.address)
        self._subscriptions.add(pair_id)
        self._last_prices.setdefault(pair_id, 100.0)
        logger.debug("Subscribed to pair", pair_id=pair_id)

    async def _safe_close(self):
        self._stop_ticking()
        self._subscriptions.clear()
        try:
            await self.transport.close()
        except Exception as e:
            logger.error("Error closing price feed", error=str(e))

    async def disconnect(self):
        """Tear down subscriptions, the tick generator and any pending or in-flight connect"""
        self._next_generation()
        await self._cancel_reconnect()
        was_connected = self.state == StreamState.CONNECTED

        await self._safe_close()
        self.state = StreamState.DISCONNECTED

        if was_connected:
            logger.info("Price stream disconnected")
            await self._emit(StreamEvent.DISCONNECTED)

    async def connection_lost(self, error: Optional[Exception] = None):
        """Called by the transport when a live feed drops"""
        if self.state != StreamState.CONNECTED:
            return

        logger.warning("Price stream connection lost", error=str(error) if error else None)
        if error is not None:
            self.error_collector.record_error(error, {"stream": "connection_lost"})

        generation = self._next_generation()
        await self._safe_close()
        self.state = StreamState.DISCONNECTED
        await self._emit(StreamEvent.DISCONNECTED)

        if generation != self._generation:
            return
        self.reconnect_attempts = 0
        self._reconnect_task = asyncio.create_task(self._retry_connect(generation))

    async def _cancel_reconnect(self):
        task = self._reconnect_task
        self._reconnect_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    # Subscriptions

    async def subscribe(self, pair_ids: Iterable[str]):
        """Register interest in more pairs, connecting first when needed"""
        new_ids = [pid for pid in pair_ids if pid not in self._registered]
        for pair_id in new_ids:
            if pair_id in self.registry:
                self._registered.add(pair_id)
            else:
                logger.warning("Ignoring subscription to unknown pair", pair_id=pair_id)

        if self.state == StreamState.CONNECTING:
            # The pending attempt subscribes every registered pair once it opens
            return
        if not self.is_connected:
            await self.connect()
            return

        for pair_id in new_ids:
            if pair_id not in self._registered:
                continue
            try:
                await self._subscribe_pair(pair_id)
            except Exception as e:
                logger.error("Error subscribing to pair", pair_id=pair_id, error=str(e))
                self.error_collector.record_error(e, {"pair_id": pair_id})

    async def unsubscribe(self, pair_ids: Iterable[str]):
        for pair_id in pair_ids:
            self._registered.discard(pair_id)
            if pair_id not in self._subscriptions:
                continue

            self._subscriptions.discard(pair_id)
            try:
                await self.transport.unsubscribe(pair_id)
                logger.debug("Unsubscribed from pair", pair_id=pair_id)
            except Exception as e:
                logger.error("Error unsubscribing from pair", pair_id=pair_id, error=str(e))

    # Tick generation and ingestion

    def _start_ticking(self):
        if self._tick_task is None or self._tick_task.done():
            self._tick_task = asyncio.create_task(self._tick_loop())

    def _stop_ticking(self):
        task = self._tick_task
        self._tick_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _tick_loop(self):
        while True:
            await asyncio.sleep(self.tick_interval)
            try:
                await self.generate_ticks()
            except Exception as e:
                logger.error("Error generating price ticks", error=str(e))
                await self._emit(StreamEvent.ERROR, e)

    async def generate_ticks(self):
        """One simulated tick per subscribed pair"""
        for pair_id in self.subscriptions:
            pair = self.registry.get(pair_id)
            last_price = self._last_prices.get(pair_id, 100.0)
            change = self.rng.uniform(-self.tick_jitter, self.tick_jitter)

            await self.process_tick(PriceTick(
                pair_id=pair_id,
                pair_address=pair.address,
                price=last_price * (1 + change),
                change=change * 100
            ))

            if self.rng.random() > 0.7:
                await self._emit(StreamEvent.VOLUME_UPDATE, VolumeUpdate(
                    pair_id=pair_id,
                    pair_address=pair.address,
                    volume_24h=self.rng.random() * 10_000_000 + 1_000_000
                ))

    async def process_tick(self, tick: PriceTick):
        """Record a tick, fan it out and evaluate alerts"""
        self._last_prices[tick.pair_id] = tick.price
        await self._emit(StreamEvent.PRICE_UPDATE, tick)
        await self._check_price_alert(tick)
        await self._check_volatility(tick)

    async def _check_price_alert(self, tick: PriceTick):
        magnitude = abs(tick.change)
        if magnitude <= settings.PRICE_ALERT_THRESHOLD:
            return

        severity = AlertSeverity.HIGH if magnitude > settings.PRICE_ALERT_HIGH_THRESHOLD else AlertSeverity.MEDIUM
        await self._emit(StreamEvent.PRICE_ALERT, PriceAlert(
            pair_id=tick.pair_id,
            message=f"Significant price movement detected: {tick.change:.2f}%",
            severity=severity,
            change=tick.change,
            timestamp=tick.timestamp
        ))

    # Volatility monitoring

    def monitor_volatility(
        self,
        pair_id: str,
        threshold: float = settings.DEFAULT_VOLATILITY_THRESHOLD
    ) -> VolatilityMonitor:
        """Alert when the return volatility over the last ticks of a pair exceeds threshold (percent)

        Every caller gets its own monitor; monitors on the same pair share
        one price window.
        """
        if pair_id not in self.registry:
            raise InvalidInput(f"Unknown pair: {pair_id}")
        monitor = VolatilityMonitor(pair_id=pair_id, threshold=threshold)
        self._monitors.setdefault(pair_id, []).append(monitor)
        self._price_windows.setdefault(pair_id, deque(maxlen=settings.VOLATILITY_WINDOW))
        return monitor

    def stop_monitoring(self, target: Union[VolatilityMonitor, str]):
        """Release one monitor, or every monitor on a pair when given a pair id"""
        if isinstance(target, VolatilityMonitor):
            pair_id = target.pair_id
            remaining = [m for m in self._monitors.get(pair_id, []) if m is not target]
        else:
            pair_id = target
            remaining = []

        if remaining:
            self._monitors[pair_id] = remaining
        else:
            self._monitors.pop(pair_id, None)
            self._price_windows.pop(pair_id, None)

    @property
    def monitored_pairs(self) -> List[str]:
        return sorted(self._monitors)

    async def _check_volatility(self, tick: PriceTick):
        monitors = self._monitors.get(tick.pair_id)
        if not monitors:
            return

        window = self._price_windows[tick.pair_id]
        window.append(tick.price)
        if len(window) < settings.VOLATILITY_MIN_SAMPLES:
            return

        volatility = returns_volatility(window)
        # One alert per distinct threshold crossed
        for threshold in sorted({m.threshold for m in monitors}):
            if volatility <= threshold:
                continue
            await self._emit(StreamEvent.VOLATILITY_ALERT, VolatilityAlert(
                pair_id=tick.pair_id,
                volatility=volatility,
                threshold=threshold,
                message=f"High volatility detected: {volatility:.2f}%"
            ))

    def last_price(self, pair_id: str) -> Optional[float]:
        return self._last_prices.get(pair_id)
