"""
test_risk_engine.py - Unit tests for health factors, gating, snapshots and analytics

Tests:
- Valuation: HF, weighted threshold, LTV, borrowing headroom
- Gating helpers and oracle failures
- Snapshot cache, at-risk registry, push-model updates, system metrics
- Stress tests, correlated shocks, HHI, VaR / CVaR
"""

import pytest
from decimal import Decimal

from lendledger import (
    RiskEngine, INFINITY, SECONDS_PER_YEAR,
    InvalidAmount, PriceUnavailable,
    calculate_hhi, calculate_value_at_risk, calculate_conditional_var, correlate_shocks,
)


class TestValuation:

    def test_health_factor(self, borrower_env):
        risk = borrower_env.pool.risk
        assert risk.calculate_health_factor("alice") == Decimal("1700") / Decimal("1500")
        assert risk.calculate_health_factor("bob") == INFINITY

    def test_health_factor_after_repay(self, borrower_env):
        risk = borrower_env.pool.risk
        assert risk.health_factor_after("alice", "USDC", debt_delta=Decimal("-500")) == Decimal("1.7")

    def test_threshold_and_ltv(self, borrower_env):
        risk = borrower_env.pool.risk
        assert risk.get_user_liquidation_threshold("alice") == Decimal("0.85")
        assert risk.calculate_ltv("alice") == Decimal("0.75")
        assert risk.calculate_ltv("bob") == 0

    def test_max_borrow_amount(self, borrower_env):
        risk = borrower_env.pool.risk
        assert risk.calculate_max_borrow_amount("alice", "USDC") == 0
        # 10,000 x 0.75 / 2,000
        assert risk.calculate_max_borrow_amount("bob", "WETH") == Decimal("3.75")

    def test_risk_level(self, borrower_env, underwater_env):
        assert borrower_env.pool.risk.get_risk_level("alice") == 3
        assert underwater_env.pool.risk.get_risk_level("alice") == 5

    def test_missing_price_propagates(self, borrower_env):
        env = borrower_env
        env.prices.remove_price("WETH")
        with pytest.raises(PriceUnavailable):
            env.pool.risk.calculate_health_factor("alice")
        with pytest.raises(PriceUnavailable):
            env.pool.borrow("alice", "USDC", Decimal("10"))
        assert env.pool.balance_of_debt("alice", "USDC") == Decimal("1500")

    def test_min_health_factor_must_exceed_one(self, env):
        with pytest.raises(ValueError, match="must exceed"):
            RiskEngine(env.pool, env.feed, Decimal("1"))


class TestGating:

    def test_is_borrow_allowed(self, borrower_env):
        risk = borrower_env.pool.risk
        assert not risk.is_borrow_allowed("alice", "USDC", Decimal("100"))
        assert not risk.is_borrow_allowed("bob", "WETH", Decimal("0"))

    def test_is_withdraw_allowed(self, borrower_env):
        risk = borrower_env.pool.risk
        assert risk.is_withdraw_allowed("bob", "USDC", Decimal("100"))
        assert not risk.is_withdraw_allowed("alice", "WETH", Decimal("0.1"))

    def test_validate_borrow_rejects_non_positive(self, borrower_env):
        with pytest.raises(InvalidAmount):
            borrower_env.pool.risk.validate_borrow("alice", "USDC", Decimal("0"))

    def test_liquidation_allowed_only_below_one(self, borrower_env, underwater_env):
        assert not borrower_env.pool.risk.is_liquidation_allowed("alice")
        assert underwater_env.pool.risk.is_liquidation_allowed("alice")


class TestSnapshots:

    def test_snapshot_cached_after_operations(self, borrower_env):
        snapshot = borrower_env.pool.risk.get_snapshot("alice")
        assert snapshot.total_collateral_usd == Decimal("2000")
        assert snapshot.total_debt_usd == Decimal("1500")
        assert snapshot.risk_level == 3
        assert not snapshot.is_liquidatable

    def test_at_risk_registry(self, borrower_env):
        assert borrower_env.pool.risk.get_at_risk_accounts() == (["alice"], 1)

    def test_recovery_leaves_registry(self, borrower_env):
        pool = borrower_env.pool
        pool.repay("alice", "USDC", Decimal("1500"))
        assert pool.risk.get_at_risk_accounts() == ([], 0)

    def test_underwater_snapshot(self, underwater_env):
        snapshot = underwater_env.pool.risk.get_snapshot("alice")
        assert snapshot.is_liquidatable
        assert snapshot.health_factor == Decimal("1445") / Decimal("1500")

    def test_push_model_update(self, env):
        risk = env.pool.risk
        snapshot = risk.update_user_risk_data("carol", Decimal("1000"), Decimal("900"))
        # default threshold 0.85 weights the collateral
        assert snapshot.weighted_collateral_usd == Decimal("850")
        assert snapshot.is_liquidatable
        assert "carol" in env.liquidations.liquidatable

        snapshot = risk.update_user_risk_data("carol", Decimal("1000"), Decimal("100"))
        assert not snapshot.is_liquidatable
        assert "carol" not in env.liquidations.liquidatable

    def test_system_metrics(self, borrower_env):
        metrics = borrower_env.pool.risk.get_system_metrics()
        assert metrics.accounts_at_risk == 1
        assert metrics.average_health_factor == Decimal("1700") / Decimal("1500")
        assert metrics.total_collateral_usd == Decimal("12000")
        assert metrics.total_debt_usd == Decimal("1500")
        assert metrics.liquidity_risk == Decimal("0.125")
        assert metrics.risk_score == Decimal("0.5625")

    def test_system_metrics_when_empty(self, env):
        metrics = env.pool.risk.get_system_metrics()
        assert metrics.accounts_at_risk == 0
        assert metrics.average_health_factor is None
        assert metrics.risk_score == 0


class TestStress:

    def test_price_drop(self, borrower_env):
        result = borrower_env.pool.risk.stress_test("alice", {"WETH": Decimal("-0.3")}, "crash")
        assert result.scenario == "crash"
        assert result.collateral_usd == Decimal("1400")
        assert result.collateral_loss_usd == Decimal("600")
        assert result.health_factor == Decimal("1190") / Decimal("1500")
        assert result.is_liquidatable
        assert result.risk_level == 5

    def test_stress_does_not_mutate(self, borrower_env):
        risk = borrower_env.pool.risk
        before = risk.get_snapshot("alice")
        risk.stress_test("alice", {"WETH": Decimal("-0.5")})
        assert risk.get_snapshot("alice") is before

    def test_shock_below_total_loss_rejected(self, borrower_env):
        with pytest.raises(ValueError):
            borrower_env.pool.risk.stress_test("alice", {"WETH": Decimal("-1.5")})

    def test_run_scenarios(self, borrower_env):
        results = borrower_env.pool.risk.run_stress_scenarios("alice", {
            "mild": {"WETH": Decimal("-0.1")},
            "severe": {"WETH": Decimal("-0.4")},
        })
        assert [r.scenario for r in results] == ["mild", "severe"]
        assert results[0].health_factor > results[1].health_factor

    def test_correlated_shock(self, borrower_env):
        result = borrower_env.pool.risk.correlated_stress_test(
            "alice", {"WBTC": Decimal("-0.2")}, {"WETH": {"WBTC": Decimal("0.5")}},
        )
        # WETH inherits half of the WBTC move: 1,800 x 0.85 / 1,500
        assert result.health_factor == Decimal("1.02")

    def test_correlate_shocks_clamped(self):
        shocks = correlate_shocks({"A": Decimal("-0.8")}, {"B": {"A": Decimal("1.5")}})
        assert shocks["A"] == Decimal("-0.8")
        assert shocks["B"] == Decimal("-1")


class TestAnalytics:

    def test_hhi(self):
        assert calculate_hhi([Decimal("50"), Decimal("50")]) == Decimal("0.5")
        assert calculate_hhi([Decimal("100"), Decimal("0")]) == 1
        assert calculate_hhi([]) == 0

    def test_account_concentration(self, borrower_env):
        hhi = borrower_env.pool.risk.calculate_concentration_risk("alice")
        assert abs(hhi - Decimal(25) / Decimal(49)) < Decimal("1e-40")

    def test_value_at_risk(self):
        var = calculate_value_at_risk(Decimal("1000000"), Decimal("0.95"), Decimal("0.5"), int(SECONDS_PER_YEAR))
        assert float(var) == pytest.approx(822426.81, rel=1e-6)

    def test_conditional_var_exceeds_var(self):
        args = (Decimal("1000"), Decimal("0.99"), Decimal("0.6"), 86400)
        assert calculate_conditional_var(*args) > calculate_value_at_risk(*args)

    def test_invalid_inputs(self):
        with pytest.raises(ValueError):
            calculate_value_at_risk(Decimal("1"), Decimal("1.5"), Decimal("0.5"), 86400)
        with pytest.raises(ValueError):
            calculate_value_at_risk(Decimal("1"), Decimal("0.95"), Decimal("0.5"), -1)

    def test_account_var_uses_given_volatilities(self, borrower_env):
        risk = borrower_env.pool.risk
        var = risk.calculate_account_var("alice", volatilities={"WETH": Decimal("0.8")})
        assert var == calculate_value_at_risk(Decimal("2000"), Decimal("0.95"), Decimal("0.8"), 86400)
        cvar = risk.calculate_account_cvar("alice", volatilities={"WETH": Decimal("0.8")})
        assert cvar > var
