"""
Supported ORCA pool pairs, their risk classification and the pairwise correlation table
"""
from typing import Dict, List, Optional, Tuple

from .models import PairConfig


SUPPORTED_PAIRS: Dict[str, PairConfig] = {
    "SOL_USDC": PairConfig(
        id="SOL_USDC",
        name="SOL/USDC Pool",
        symbol="SOL-USDC",
        address="Czfq3xZZDmsdGdUyrNLtRhGc47cXcZtLG4crryfu44zE",
        token0="SOL",
        token1="USDC",
        description="Solana native token paired with USDC stablecoin",
        risk_tier="high",
        hedge_class="bluechip",
    ),
    "CBBTC_USDC": PairConfig(
        id="CBBTC_USDC",
        name="cbBTC/USDC Pool",
        symbol="cbBTC-USDC",
        address="HxA6SKW5qA4o12fjVgTpXdq2YnZ5Zv1s7SB4FFomsyLM",
        token0="cbBTC",
        token1="USDC",
        description="Coinbase wrapped Bitcoin paired with USDC",
        risk_tier="medium",
        hedge_class="bluechip",
    ),
    "EURC_USDC": PairConfig(
        id="EURC_USDC",
        name="EURC/USDC Pool",
        symbol="EURC-USDC",
        address="ArisQNcbjXPJD7RgPRvysatX3xcfHPTbcTkfD8kDoZ9i",
        token0="EURC",
        token1="USDC",
        description="Euro Coin paired with USDC - primary hedge asset",
        risk_tier="low",
        hedge_class="hedge",
    ),
    "USDT_USDC": PairConfig(
        id="USDT_USDC",
        name="USDT/USDC Pool",
        symbol="USDT-USDC",
        address="4fuUiYxTQ6QCrdSq9ouBYcTM7bqSwYTSyLueGZLTy4T4",
        token0="USDT",
        token1="USDC",
        description="Tether USD paired with USDC - low volatility stablecoin pair",
        risk_tier="low",
        hedge_class="stablecoin",
    ),
    "WETH_USDC": PairConfig(
        id="WETH_USDC",
        name="WETH/USDC Pool",
        symbol="WETH-USDC",
        address="AU971DrPyhhrpRnmEBp5pDTWL2ny7nofb5vYBjDJkR2E",
        token0="WETH",
        token1="USDC",
        description="Wrapped Ethereum paired with USDC",
        risk_tier="medium",
        hedge_class="bluechip",
    ),
}

# Each unordered pair is listed once
PAIR_CORRELATIONS: Dict[Tuple[str, str], float] = {
    ("SOL_USDC", "CBBTC_USDC"): 0.65,
    ("SOL_USDC", "WETH_USDC"): 0.70,
    ("SOL_USDC", "EURC_USDC"): -0.15,
    ("SOL_USDC", "USDT_USDC"): 0.05,
    ("CBBTC_USDC", "WETH_USDC"): 0.75,
    ("CBBTC_USDC", "EURC_USDC"): -0.10,
    ("CBBTC_USDC", "USDT_USDC"): 0.02,
    ("WETH_USDC", "EURC_USDC"): -0.12,
    ("WETH_USDC", "USDT_USDC"): 0.03,
    ("EURC_USDC", "USDT_USDC"): 0.85,
}

# Balanced strategy weights
DEFAULT_ALLOCATION_WEIGHTS: Dict[str, float] = {
    "SOL_USDC": 0.25,
    "CBBTC_USDC": 0.20,
    "WETH_USDC": 0.20,
    "EURC_USDC": 0.20,
    "USDT_USDC": 0.15,
}

HEDGE_PAIR_ID = "EURC_USDC"


class PoolRegistry:
    """Read-only lookup over the supported pairs"""

    def __init__(
        self,
        pairs: Dict[str, PairConfig],
        correlations: Dict[Tuple[str, str], float],
        default_weights: Dict[str, float],
        hedge_pair_id: Optional[str] = None
    ):
        for key, pair in pairs.items():
            if key != pair.id:
                raise ValueError(f"Registry key {key} does not match pair id {pair.id}")
        self._pairs = dict(pairs)
        self._correlations: Dict[frozenset, float] = {}
        for (a, b), value in correlations.items():
            if a == b:
                raise ValueError(f"Self correlation is not stored: {a}")
            if not -1.0 <= value <= 1.0:
                raise ValueError(f"Correlation for {a}/{b} out of range: {value}")
            self._correlations[frozenset((a, b))] = value
        self._default_weights = dict(default_weights)
        self.hedge_pair_id = hedge_pair_id

    def get(self, pair_id: str) -> Optional[PairConfig]:
        return self._pairs.get(pair_id)

    def __contains__(self, pair_id: str) -> bool:
        return pair_id in self._pairs

    def all(self) -> List[PairConfig]:
        return list(self._pairs.values())

    def ids(self) -> List[str]:
        return list(self._pairs.keys())

    def by_risk_tier(self, risk_tier: str) -> List[PairConfig]:
        return [pair for pair in self._pairs.values() if pair.risk_tier == risk_tier]

    def by_hedge_class(self, hedge_class: str) -> List[PairConfig]:
        return [pair for pair in self._pairs.values() if pair.hedge_class == hedge_class]

    def correlation(self, pair_a: str, pair_b: str) -> float:
        """Correlation coefficient for two distinct pairs, 0 when not listed"""
        if pair_a == pair_b:
            raise ValueError("Self correlation is not defined")
        return self._correlations.get(frozenset((pair_a, pair_b)), 0.0)

    def default_weight(self, pair_id: str, fallback: float = 0.20) -> float:
        return self._default_weights.get(pair_id, fallback)


default_registry = PoolRegistry(
    SUPPORTED_PAIRS,
    PAIR_CORRELATIONS,
    DEFAULT_ALLOCATION_WEIGHTS,
    hedge_pair_id=HEDGE_PAIR_ID,
)
