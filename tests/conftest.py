import pytest
import asyncio
import os
import random
from typing import Any, Dict, List, Optional

import pytest_asyncio
from fastapi.testclient import TestClient

# Set test environment
os.environ["ENV"] = "test"
os.environ["LOG_LEVEL"] = "ERROR"  # Reduce noise in tests
os.environ["ENABLE_REDIS"] = "false"  # Disable Redis for tests
os.environ["UPSTREAM_MODE"] = "simulated"

from bestpool.main import app
from bestpool.allocation import AllocationEngine
from bestpool.cache import InMemoryCacheBackend
from bestpool.error_handling import ErrorCollector
from bestpool.market_data import MarketDataClient
from bestpool.pools import default_registry
from bestpool.price_stream import PriceStream, SimulatedFeedTransport
from bestpool.upstream import UpstreamSource


SOL = default_registry.get("SOL_USDC")
CBBTC = default_registry.get("CBBTC_USDC")
EURC = default_registry.get("EURC_USDC")
USDT = default_registry.get("USDT_USDC")
WETH = default_registry.get("WETH_USDC")


class FakeClock:
    """Manually advanced wall clock"""

    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class StubUpstreamSource(UpstreamSource):
    """Deterministic source: fixed pool records, price change configurable per address"""

    def __init__(self):
        self.pools: Dict[str, Dict[str, Any]] = {
            SOL.address: {"price": 200.0, "liquidity": 45_200_000, "volume_24h": 12_800_000,
                          "fee": 0.25, "apy": 12.4, "tvl": 45_200_000},
            CBBTC.address: {"price": 100_000.0, "liquidity": 67_800_000, "volume_24h": 18_400_000,
                            "fee": 0.25, "apy": 8.7, "tvl": 67_800_000},
            EURC.address: {"price": 1.06, "liquidity": 28_500_000, "volume_24h": 3_200_000,
                           "fee": 0.05, "apy": 4.2, "tvl": 28_500_000},
            USDT.address: {"price": 1.0, "liquidity": 52_000_000, "volume_24h": 8_500_000,
                           "fee": 0.01, "apy": 3.1, "tvl": 52_000_000},
            WETH.address: {"price": 3850.0, "liquidity": 38_400_000, "volume_24h": 9_200_000,
                           "fee": 0.25, "apy": 9.8, "tvl": 38_400_000},
        }
        self.changes: Dict[str, float] = {}
        self.missing: set = set()
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.pool_calls = 0
        self.price_calls = 0

    def set_change(self, pair_id: str, change: float):
        self.changes[default_registry.get(pair_id).address] = change

    async def fetch_pool_metrics(self, address: str) -> Optional[Dict[str, Any]]:
        self.pool_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        if address in self.missing or address not in self.pools:
            return None
        return dict(self.pools[address], address=address)

    async def fetch_price_metrics(self, address: str, reference_price: float) -> Optional[Dict[str, Any]]:
        self.price_calls += 1
        if self.error:
            raise self.error
        if address in self.missing or address not in self.pools:
            return None

        change = self.changes.get(address, 0.0)
        current_price = reference_price * (1 + change / 100)
        return {
            "address": address,
            "current_price": current_price,
            "price_change_24h": change,
            "price_change_7d": change * 2,
            "high_24h": current_price * 1.05,
            "low_24h": current_price * 0.95,
        }


class RecordingSleep:
    """Stands in for asyncio.sleep in backoff paths and records requested delays"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def stub_source():
    return StubUpstreamSource()

@pytest.fixture
def error_collector():
    return ErrorCollector()

@pytest.fixture
def market_data(stub_source, clock, error_collector):
    """Market data client over the stub source with a controllable clock"""
    return MarketDataClient(
        stub_source,
        InMemoryCacheBackend(),
        default_registry,
        clock=clock,
        error_collector=error_collector
    )

@pytest.fixture
def engine(market_data):
    return AllocationEngine(market_data, default_registry)

@pytest.fixture
def recording_sleep():
    return RecordingSleep()

@pytest.fixture
def reference_prices():
    return {"SOL_USDC": 200.0, "CBBTC_USDC": 100_000.0, "EURC_USDC": 1.06, "USDT_USDC": 1.0, "WETH_USDC": 3850.0}

@pytest_asyncio.fixture
async def price_stream(recording_sleep, reference_prices):
    """Stream whose tick loop never fires during a test"""
    stream = PriceStream(
        default_registry,
        SimulatedFeedTransport(),
        reference_prices=reference_prices,
        tick_interval=3600,
        sleep=recording_sleep,
        rng=random.Random(42)
    )
    yield stream
    await stream.disconnect()

@pytest.fixture
def client():
    """Test client with the application lifespan running"""
    with TestClient(app) as test_client:
        yield test_client
