import asyncio
from itertools import combinations
from typing import Dict, List, Optional, Sequence

import structlog

from .config import settings, HedgeClass, RiskTier, RiskTolerance, Trend, RISK_TIER_SCORES
from .error_handling import DataUnavailable, InvalidInput, NoDataAvailable, UpstreamError
from .market_data import MarketDataClient
from .models import AllocatedPool, AllocationSuggestion, PortfolioResult, PriceTick, utcnow
from .pools import PoolRegistry, default_registry

logger = structlog.get_logger()

HEDGING_CLASSES = (HedgeClass.STABLECOIN, HedgeClass.HEDGE)


def classify_trend(price_change_24h: float) -> str:
    if price_change_24h > settings.TREND_THRESHOLD_PCT:
        return Trend.BULL
    if price_change_24h < -settings.TREND_THRESHOLD_PCT:
        return Trend.BEAR
    return Trend.STABLE


def normalize_weights(weights: Dict[str, float]) -> Dict[str, float]:
    total = sum(weights.values())
    if total <= 0:
        raise InvalidInput("Cannot normalize weights that sum to zero")
    return {pair_id: weight / total for pair_id, weight in weights.items()}


class AllocationEngine:
    """Turns pool metrics into a recommended portfolio across the selected pairs"""

    def __init__(self, market_data: MarketDataClient, registry: Optional[PoolRegistry] = None):
        self.market_data = market_data
        self.registry = registry or market_data.registry or default_registry

    async def compute_allocation(
        self,
        total_investment: float,
        selected_pair_ids: Sequence[str],
        risk_tolerance: str = RiskTolerance.MEDIUM
    ) -> PortfolioResult:
        """Allocate total_investment across the selected pairs under a risk tolerance"""
        if total_investment is None or total_investment <= 0:
            raise InvalidInput("total_investment must be positive")
        if not selected_pair_ids:
            raise InvalidInput("At least one pair must be selected")
        if risk_tolerance not in RiskTolerance.ALL:
            raise InvalidInput(f"Unknown risk tolerance: {risk_tolerance}")

        pools = await self.get_pools_data(selected_pair_ids)
        if not pools:
            raise NoDataAvailable("None of the selected pairs could be resolved")

        weights = self.base_weights(pools, risk_tolerance)
        weights = self.apply_hedge_adjustment(pools, weights)
        weights = normalize_weights(weights)

        allocated = [
            pool.model_copy(update={
                "allocation": AllocationSuggestion(
                    amount=total_investment * weights[pool.pair_id],
                    percentage=weights[pool.pair_id] * 100
                )
            })
            for pool in pools
        ]

        expected_daily_yield = self.expected_daily_yield(allocated)
        result = PortfolioResult(
            total_investment=total_investment,
            expected_daily_yield=expected_daily_yield,
            expected_daily_yield_percentage=expected_daily_yield / total_investment * 100,
            portfolio_risk=self.assess_portfolio_risk(allocated),
            hedge_ratio=self.hedge_ratio(allocated),
            correlation_score=self.correlation_score(allocated),
            pools=allocated,
            last_updated=utcnow()
        )

        logger.info(
            "Allocation computed",
            total_investment=total_investment,
            risk_tolerance=risk_tolerance,
            requested=len(selected_pair_ids),
            resolved=len(allocated),
            portfolio_risk=result.portfolio_risk
        )
        return result

    async def get_pools_data(self, pair_ids: Sequence[str]) -> List[AllocatedPool]:
        """Aggregated, unallocated pool records for every pair that resolves"""
        unique_ids = list(dict.fromkeys(pair_ids))
        results = await asyncio.gather(
            *(self._aggregate_pool(pair_id) for pair_id in unique_ids),
            return_exceptions=True
        )

        pools = []
        for pair_id, result in zip(unique_ids, results):
            if isinstance(result, (DataUnavailable, UpstreamError, InvalidInput)):
                logger.warning("Skipping pair", pair_id=pair_id, error=str(result))
                continue
            if isinstance(result, BaseException):
                raise result
            pools.append(result)

        return pools

    async def _aggregate_pool(self, pair_id: str) -> AllocatedPool:
        pair = self.registry.get(pair_id)
        if pair is None:
            raise DataUnavailable(f"Unknown pair: {pair_id}", pair_id=pair_id)

        pool = await self.market_data.get_pool_snapshot(pair_id)
        price = await self.market_data.get_price_snapshot(pair_id)
        optimal_range = await self.market_data.get_optimal_range(pair_id, pair.risk_tier)
        estimated_loss = self.market_data.estimate_realized_loss_vs_holding(
            1.0, 1 + price.price_change_24h / 100
        )

        return AllocatedPool(
            pair_id=pair_id,
            name=pair.name,
            address=pair.address,
            current_price=price.current_price,
            price_change_24h=price.price_change_24h,
            liquidity=pool.liquidity,
            volume_24h=pool.volume_24h,
            apy=pool.apy,
            tvl=pool.tvl,
            fee=pool.fee,
            risk_tier=pair.risk_tier,
            hedge_class=pair.hedge_class,
            trend=classify_trend(price.price_change_24h),
            trend_strength=price.price_change_24h,
            estimated_loss=estimated_loss,
            optimal_range=optimal_range
        )

    def base_weights(self, pools: List[AllocatedPool], risk_tolerance: str) -> Dict[str, float]:
        """Pre-normalization weights for a risk tolerance"""
        weights: Dict[str, float] = {}

        if risk_tolerance == RiskTolerance.LOW:
            # Favor stable and hedge pools; shares split by actual group size
            hedging = [p for p in pools if p.hedge_class in HEDGING_CLASSES]
            others = [p for p in pools if p.hedge_class not in HEDGING_CLASSES]
            for pool in hedging:
                weights[pool.pair_id] = 0.35 / len(hedging)
            for pool in others:
                weights[pool.pair_id] = 0.30 / len(others)

        elif risk_tolerance == RiskTolerance.HIGH:
            # Favor high-yield pools while keeping a hedge floor
            high = [p for p in pools if p.risk_tier == RiskTier.HIGH]
            hedges = [p for p in pools if p.risk_tier != RiskTier.HIGH and p.hedge_class == HedgeClass.HEDGE]
            grouped = {p.pair_id for p in high + hedges}
            rest = [p for p in pools if p.pair_id not in grouped]
            for pool in high:
                weights[pool.pair_id] = 0.50 / len(high)
            for pool in hedges:
                weights[pool.pair_id] = 0.15
            for pool in rest:
                weights[pool.pair_id] = 0.35 / len(rest)

        else:
            for pool in pools:
                weights[pool.pair_id] = self.registry.default_weight(pool.pair_id)

        return weights

    def apply_hedge_adjustment(self, pools: List[AllocatedPool], weights: Dict[str, float]) -> Dict[str, float]:
        """Shift weight to the hedge pair when the average 24h move is large"""
        adjusted = dict(weights)
        hedge_id = self.registry.hedge_pair_id
        if not pools or hedge_id not in adjusted:
            return adjusted

        avg_volatility = sum(abs(p.price_change_24h) for p in pools) / len(pools)
        if avg_volatility <= settings.HEDGE_TRIGGER_CHANGE_PCT:
            return adjusted

        # Cap and floor bound the pre-normalization weights; after normalize_weights
        # the hedge share can exceed HEDGE_MAX_WEIGHT when the weights sum below 1
        current = adjusted[hedge_id]
        boosted = max(current, min(current + settings.HEDGE_BOOST, settings.HEDGE_MAX_WEIGHT))
        boost = boosted - current
        adjusted[hedge_id] = boosted

        others = [pair_id for pair_id in adjusted if pair_id != hedge_id]
        if others and boost > 0:
            reduction = boost / len(others)
            for pair_id in others:
                adjusted[pair_id] = max(adjusted[pair_id] - reduction, settings.MIN_POOL_WEIGHT)

        logger.info(
            "Hedge adjustment applied",
            avg_abs_change_24h=round(avg_volatility, 2),
            hedge_pair=hedge_id,
            hedge_weight=boosted
        )
        return adjusted

    @staticmethod
    def expected_daily_yield(pools: List[AllocatedPool]) -> float:
        return sum(
            (pool.allocation.amount if pool.allocation else 0.0) * pool.apy / 365 / 100
            for pool in pools
        )

    @staticmethod
    def assess_portfolio_risk(pools: List[AllocatedPool]) -> str:
        weighted_risk = sum(
            (pool.allocation.percentage / 100 if pool.allocation else 0.0) * RISK_TIER_SCORES[pool.risk_tier]
            for pool in pools
        )

        if weighted_risk < 1.5:
            return RiskTier.LOW
        if weighted_risk < 2.5:
            return RiskTier.MEDIUM
        return RiskTier.HIGH

    @staticmethod
    def hedge_ratio(pools: List[AllocatedPool]) -> float:
        return sum(
            pool.allocation.percentage
            for pool in pools
            if pool.allocation and pool.hedge_class in HEDGING_CLASSES
        )

    def correlation_score(self, pools: List[AllocatedPool]) -> float:
        """Mean absolute correlation over all unordered pairs; lower means better diversified"""
        pairs = list(combinations([pool.pair_id for pool in pools], 2))
        if not pairs:
            return 0.0
        return sum(abs(self.registry.correlation(a, b)) for a, b in pairs) / len(pairs)


def merge_price_tick(result: PortfolioResult, tick: PriceTick) -> PortfolioResult:
    """Fold a significant live tick into an existing result without recomputing"""
    if abs(tick.change) <= settings.TICK_MERGE_THRESHOLD_PCT:
        return result
    if not any(pool.pair_id == tick.pair_id for pool in result.pools):
        return result

    pools = [
        pool.model_copy(update={"current_price": tick.price, "trend_strength": tick.change})
        if pool.pair_id == tick.pair_id else pool
        for pool in result.pools
    ]
    return result.model_copy(update={"pools": pools})
