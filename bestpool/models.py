from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Literal
from datetime import datetime, timezone

from .config import RiskTolerance

RiskLevel = Literal["low", "medium", "high"]
HedgeType = Literal["bluechip", "stablecoin", "hedge"]
TrendType = Literal["bull", "bear", "stable"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)

# Registry Models
class PairConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    symbol: str
    address: str
    token0: str
    token1: str
    description: str = ""
    risk_tier: RiskLevel
    hedge_class: HedgeType

# Market Data Models
class PoolSnapshot(BaseModel):
    pair_id: str
    address: str
    current_price: float
    price_change_24h: float = 0.0
    liquidity: float
    volume_24h: float
    apy: float  # annualized yield, percent
    tvl: float
    fee: float  # fee rate, percent
    timestamp: datetime = Field(default_factory=utcnow)

class PriceSnapshot(BaseModel):
    pair_id: str
    address: str
    current_price: float
    price_change_24h: float
    price_change_7d: float
    high_24h: float
    low_24h: float
    timestamp: datetime = Field(default_factory=utcnow)

class OptimalRange(BaseModel):
    lower: float
    upper: float
    expected_yield: float

class YieldMetrics(BaseModel):
    pair_id: str
    apy: float
    apr: float
    daily_fees: float
    weekly_fees: float

# Stream Event Models
class PriceTick(BaseModel):
    pair_id: str
    pair_address: str
    price: float
    change: float  # percent since previous tick
    timestamp: datetime = Field(default_factory=utcnow)

class VolumeUpdate(BaseModel):
    pair_id: str
    pair_address: str
    volume_24h: float
    timestamp: datetime = Field(default_factory=utcnow)

class PriceAlert(BaseModel):
    pair_id: str
    message: str
    severity: Literal["medium", "high"]
    change: float
    timestamp: datetime = Field(default_factory=utcnow)

class VolatilityAlert(BaseModel):
    pair_id: str
    volatility: float
    threshold: float
    message: str
    timestamp: datetime = Field(default_factory=utcnow)

# Allocation Models
class AllocationSuggestion(BaseModel):
    amount: float
    percentage: float

class AllocatedPool(BaseModel):
    pair_id: str
    name: str
    address: str
    current_price: float
    price_change_24h: float
    liquidity: float
    volume_24h: float
    apy: float
    tvl: float
    fee: float
    risk_tier: RiskLevel
    hedge_class: HedgeType
    trend: TrendType
    trend_strength: float
    estimated_loss: float
    optimal_range: Optional[OptimalRange] = None
    allocation: Optional[AllocationSuggestion] = None

class PortfolioResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_investment: float
    expected_daily_yield: float
    expected_daily_yield_percentage: float
    portfolio_risk: RiskLevel
    hedge_ratio: float
    correlation_score: float
    pools: List[AllocatedPool] = []
    last_updated: datetime = Field(default_factory=utcnow)

    def weights(self) -> Dict[str, float]:
        """Allocation weight per pair as a fraction of the total investment"""
        return {
            pool.pair_id: (pool.allocation.percentage / 100 if pool.allocation else 0.0)
            for pool in self.pools
        }

# API Request/Response Models
class AllocationRequest(BaseModel):
    total_investment: float
    pair_ids: List[str]
    risk_tolerance: str = RiskTolerance.MEDIUM

    @field_validator("pair_ids")
    @classmethod
    def dedupe_pair_ids(cls, v):
        return list(dict.fromkeys(pid.upper() for pid in v))

    @field_validator("risk_tolerance")
    @classmethod
    def validate_risk_tolerance(cls, v):
        if v.lower() not in RiskTolerance.ALL:
            raise ValueError(f"risk_tolerance must be one of {', '.join(RiskTolerance.ALL)}")
        return v.lower()

class StreamStatus(BaseModel):
    state: str
    connected: bool
    subscriptions: List[str]
    reconnect_attempts: int
