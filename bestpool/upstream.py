import random
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
import structlog

from .config import settings
from .error_handling import UpstreamError

logger = structlog.get_logger()


class UpstreamSource(ABC):
    """Request/response source of pool and price metrics keyed by pool address"""

    @abstractmethod
    async def fetch_pool_metrics(self, address: str) -> Optional[Dict[str, Any]]:
        """Return pool metrics or None when the source has no record"""

    @abstractmethod
    async def fetch_price_metrics(self, address: str, reference_price: float) -> Optional[Dict[str, Any]]:
        """Return price metrics; reference_price is the pool's last known base price"""

    async def close(self):
        pass


# Reference records for the supported ORCA whirlpools
SIMULATED_POOLS: Dict[str, Dict[str, Any]] = {
    "Czfq3xZZDmsdGdUyrNLtRhGc47cXcZtLG4crryfu44zE": {
        "price": 221.85,
        "price_change_24h": 3.2,
        "liquidity": 45_200_000,
        "volume_24h": 12_800_000,
        "fee": 0.25,
        "apy": 12.4,
        "tvl": 45_200_000,
    },
    "HxA6SKW5qA4o12fjVgTpXdq2YnZ5Zv1s7SB4FFomsyLM": {
        "price": 102_850,
        "price_change_24h": 1.8,
        "liquidity": 67_800_000,
        "volume_24h": 18_400_000,
        "fee": 0.25,
        "apy": 8.7,
        "tvl": 67_800_000,
    },
    "ArisQNcbjXPJD7RgPRvysatX3xcfHPTbcTkfD8kDoZ9i": {
        "price": 1.059,
        "price_change_24h": 0.12,
        "liquidity": 28_500_000,
        "volume_24h": 3_200_000,
        "fee": 0.05,
        "apy": 4.2,
        "tvl": 28_500_000,
    },
    "4fuUiYxTQ6QCrdSq9ouBYcTM7bqSwYTSyLueGZLTy4T4": {
        "price": 1.0001,
        "price_change_24h": 0.01,
        "liquidity": 52_000_000,
        "volume_24h": 8_500_000,
        "fee": 0.01,
        "apy": 3.1,
        "tvl": 52_000_000,
    },
    "AU971DrPyhhrpRnmEBp5pDTWL2ny7nofb5vYBjDJkR2E": {
        "price": 3850,
        "price_change_24h": 2.4,
        "liquidity": 38_400_000,
        "volume_24h": 9_200_000,
        "fee": 0.25,
        "apy": 9.8,
        "tvl": 38_400_000,
    },
}


class SimulatedUpstreamSource(UpstreamSource):
    """Stand-in source: fixed pool records and a +/-5% jitter on the price"""

    def __init__(
        self,
        pools: Optional[Dict[str, Dict[str, Any]]] = None,
        price_jitter: float = 0.05,
        rng: Optional[random.Random] = None
    ):
        self.pools = pools if pools is not None else SIMULATED_POOLS
        self.price_jitter = price_jitter
        self.rng = rng or random.Random()

    def reference_prices(self, address_to_pair: Dict[str, str]) -> Dict[str, float]:
        """Base price per pair id, used to seed the price stream"""
        return {
            pair_id: self.pools[address]["price"]
            for address, pair_id in address_to_pair.items()
            if address in self.pools
        }

    async def fetch_pool_metrics(self, address: str) -> Optional[Dict[str, Any]]:
        record = self.pools.get(address)
        if record is None:
            return None
        return dict(record, address=address)

    async def fetch_price_metrics(self, address: str, reference_price: float) -> Optional[Dict[str, Any]]:
        if address not in self.pools:
            return None

        random_change = self.rng.uniform(-self.price_jitter, self.price_jitter)
        current_price = reference_price * (1 + random_change)

        return {
            "address": address,
            "current_price": current_price,
            "price_change_24h": random_change * 100,
            "price_change_7d": random_change * 200,
            "high_24h": current_price * 1.05,
            "low_24h": current_price * 0.95,
        }


class HttpUpstreamSource(UpstreamSource):
    """Pool metrics served by an HTTP API"""

    def __init__(
        self,
        base_url: str = settings.UPSTREAM_BASE_URL,
        headers: Optional[Dict] = None,
        timeout: float = settings.UPSTREAM_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url
        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers or {"Content-Type": "application/json"},
            timeout=timeout,
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
            transport=transport
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.client.aclose()

    async def _make_request(self, method: str, endpoint: str, **kwargs) -> Optional[dict]:
        """Make HTTP request; a 404 is reported as a missing record"""
        try:
            response = await self.client.request(method, endpoint, **kwargs)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error {e.response.status_code} for {method} {endpoint}",
                         error=str(e), status_code=e.response.status_code)
            raise UpstreamError(f"Upstream request failed: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"Request error for {method} {endpoint}", error=str(e))
            raise UpstreamError(f"Network error: {str(e)}") from e
        except ValueError as e:
            logger.error(f"Invalid JSON from {method} {endpoint}", error=str(e))
            raise UpstreamError(f"Undecodable upstream response: {str(e)}") from e

    async def fetch_pool_metrics(self, address: str) -> Optional[Dict[str, Any]]:
        data = await self._make_request("GET", f"/pools/{address}")
        if not data:
            return None

        try:
            return {
                "address": address,
                "price": float(data["price"]),
                "price_change_24h": float(data.get("priceChange24h", 0.0)),
                "liquidity": float(data.get("liquidity", 0.0)),
                "volume_24h": float(data.get("volume24h", 0.0)),
                "fee": float(data.get("fee", 0.0)),
                "apy": float(data.get("apy", 0.0)),
                "tvl": float(data.get("tvl", 0.0)),
            }
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamError(f"Malformed pool record for {address}: {e}") from e

    async def fetch_price_metrics(self, address: str, reference_price: float) -> Optional[Dict[str, Any]]:
        data = await self._make_request("GET", f"/pools/{address}/price")
        if not data:
            return None

        try:
            current_price = float(data["price"])
            return {
                "address": address,
                "current_price": current_price,
                "price_change_24h": float(data.get("priceChange24h", 0.0)),
                "price_change_7d": float(data.get("priceChange7d", 0.0)),
                "high_24h": float(data.get("high24h", current_price)),
                "low_24h": float(data.get("low24h", current_price)),
            }
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamError(f"Malformed price record for {address}: {e}") from e


def create_upstream_source() -> UpstreamSource:
    if settings.UPSTREAM_MODE == "http":
        logger.info("Using HTTP upstream source", base_url=settings.UPSTREAM_BASE_URL)
        return HttpUpstreamSource(settings.UPSTREAM_BASE_URL)
    return SimulatedUpstreamSource()
