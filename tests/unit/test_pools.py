import pytest
from itertools import combinations

from bestpool.models import PairConfig
from bestpool.pools import DEFAULT_ALLOCATION_WEIGHTS, PoolRegistry, SUPPORTED_PAIRS, default_registry


class TestPoolRegistry:

    def test_supported_pairs(self):
        assert set(default_registry.ids()) == {"SOL_USDC", "CBBTC_USDC", "EURC_USDC", "USDT_USDC", "WETH_USDC"}
        assert default_registry.hedge_pair_id == "EURC_USDC"

    def test_lookup(self):
        sol = default_registry.get("SOL_USDC")

        assert sol.address == "Czfq3xZZDmsdGdUyrNLtRhGc47cXcZtLG4crryfu44zE"
        assert sol.risk_tier == "high"
        assert "SOL_USDC" in default_registry
        assert default_registry.get("DOGE_USDC") is None
        assert "DOGE_USDC" not in default_registry

    def test_pair_configs_are_immutable(self):
        with pytest.raises(Exception):
            default_registry.get("SOL_USDC").risk_tier = "low"

    def test_filters(self):
        assert [p.id for p in default_registry.by_risk_tier("low")] == ["EURC_USDC", "USDT_USDC"]
        assert [p.id for p in default_registry.by_hedge_class("hedge")] == ["EURC_USDC"]

    def test_correlation_is_symmetric(self):
        for a, b in combinations(default_registry.ids(), 2):
            assert default_registry.correlation(a, b) == default_registry.correlation(b, a)
            assert -1.0 <= default_registry.correlation(a, b) <= 1.0

        assert default_registry.correlation("EURC_USDC", "SOL_USDC") == -0.15

    def test_self_correlation_rejected(self):
        with pytest.raises(ValueError):
            default_registry.correlation("SOL_USDC", "SOL_USDC")

    def test_unlisted_correlation_defaults_to_zero(self):
        registry = PoolRegistry(SUPPORTED_PAIRS, {}, DEFAULT_ALLOCATION_WEIGHTS)
        assert registry.correlation("SOL_USDC", "WETH_USDC") == 0.0

    def test_default_weights_sum_to_one(self):
        assert sum(default_registry.default_weight(pid) for pid in default_registry.ids()) == pytest.approx(1.0)
        assert default_registry.default_weight("DOGE_USDC") == 0.20

    class TestValidation:

        def test_mismatched_key(self):
            with pytest.raises(ValueError):
                PoolRegistry({"WRONG": SUPPORTED_PAIRS["SOL_USDC"]}, {}, {})

        def test_correlation_out_of_range(self):
            with pytest.raises(ValueError):
                PoolRegistry(SUPPORTED_PAIRS, {("SOL_USDC", "WETH_USDC"): 1.5}, {})

        def test_self_correlation_entry(self):
            with pytest.raises(ValueError):
                PoolRegistry(SUPPORTED_PAIRS, {("SOL_USDC", "SOL_USDC"): 1.0}, {})

        def test_pair_config_rejects_unknown_tier(self):
            with pytest.raises(Exception):
                PairConfig(
                    id="X_USDC", name="X", symbol="X-USDC", address="addr",
                    token0="X", token1="USDC", risk_tier="extreme", hedge_class="bluechip"
                )
