"""
Tests for the Cost Guard Ledger
"""

import math
from concurrent.futures import ThreadPoolExecutor

import pytest

from ops_safety.cost_guard import DEFAULT_FEATURE_LIMITS, CostGuardLedger
from ops_safety.models import Feature

from conftest import make_settings


@pytest.fixture
def ledger(settings, clock):
    return CostGuardLedger(settings=settings, clock=clock)


# ============================================================================
# CHECKS
# ============================================================================

class TestCheckCost:

    def test_fresh_feature_within_budget(self, ledger):
        result = ledger.check_cost("search", 0.5)
        assert result.allowed is True
        assert result.degraded is False
        assert result.warning is False
        assert result.reason == "Within budget"
        assert result.remaining_daily_usd == DEFAULT_FEATURE_LIMITS[Feature.SEARCH][0]

    def test_daily_limit_reached_blocks(self, ledger):
        daily_limit = DEFAULT_FEATURE_LIMITS[Feature.CHAT][0]
        ledger.record_usage("chat", daily_limit)
        result = ledger.check_cost("chat", 1)
        assert result.allowed is False
        assert result.degraded is True
        assert result.usage_percent >= 100
        assert result.reason.startswith("Cost limit exceeded for chat")

    def test_monthly_limit_counts_too(self, ledger):
        ledger.set_feature_limits("images", daily_limit_usd=1000, monthly_limit_usd=10)
        ledger.record_usage("images", 10)
        assert ledger.check_cost("images").allowed is False

    def test_warning_threshold(self, ledger):
        ledger.set_feature_limits("search", daily_limit_usd=10, monthly_limit_usd=1000)
        ledger.record_usage("search", 8.5)
        result = ledger.check_cost("search", 0.1)
        assert result.allowed is True
        assert result.warning is True
        assert "Approaching cost limit" in result.reason

    def test_estimate_crossing_ceiling_blocks(self, ledger):
        ledger.set_feature_limits("aeo", daily_limit_usd=10, monthly_limit_usd=100)
        ledger.record_usage("aeo", 9.99)
        result = ledger.check_cost("aeo", 50.0)
        assert result.allowed is False
        assert result.reason.startswith("Cost limit exceeded for aeo")
        assert result.usage_percent == pytest.approx(599.9)
        assert result.remaining_daily_usd == pytest.approx(0.01)
        # nothing was spent, so the feature itself is not degraded
        assert ledger.is_feature_degraded("aeo") is False

    def test_estimate_crossing_warning_threshold_warns(self, ledger):
        ledger.set_feature_limits("search", daily_limit_usd=10, monthly_limit_usd=1000)
        ledger.record_usage("search", 7)
        assert ledger.check_cost("search", 0.5).warning is False
        result = ledger.check_cost("search", 1.5)
        assert result.allowed is True
        assert result.warning is True
        assert result.usage_percent == pytest.approx(85.0)

    def test_zero_budget_is_exhausted(self, ledger):
        ledger.set_feature_limits("octopus", 0, 0)
        result = ledger.check_cost("octopus")
        assert result.allowed is False
        assert math.isinf(result.usage_percent)
        assert "zero budget" in result.reason

    def test_disabled_ledger_allows_everything(self, clock):
        ledger = CostGuardLedger(settings=make_settings(ENABLE_COST_GUARDS=False), clock=clock)
        ledger.record_usage("aeo", 10_000)
        result = ledger.check_cost("aeo", 500)
        assert result.allowed is True
        assert result.reason == "Cost guards disabled"
        # spend is still recorded
        assert ledger.get_feature_usage("aeo")["daily_used_usd"] == 10_000

    def test_invalid_feature_raises(self, ledger):
        with pytest.raises(ValueError):
            ledger.check_cost("teleportation", 1)

    def test_negative_estimate_raises(self, ledger):
        with pytest.raises(ValueError):
            ledger.check_cost("chat", -1)


# ============================================================================
# USAGE & RESETS
# ============================================================================

class TestUsageAndResets:

    def test_aeo_scenario(self, ledger):
        ledger.set_feature_limits("aeo", daily_limit_usd=10, monthly_limit_usd=100)
        ledger.record_usage("aeo", 10, 100)
        assert ledger.get_feature_usage("aeo")["daily_used_usd"] == 10
        assert ledger.check_cost("aeo", 1).allowed is False
        ledger.reset_daily()
        assert ledger.check_cost("aeo", 1).allowed is True

    def test_record_usage_snapshot(self, ledger, clock):
        snapshot = ledger.record_usage("chat", 1.25, tokens=500, provider="anthropic", model="m1")
        assert snapshot["daily_used_usd"] == 1.25
        assert snapshot["monthly_used_usd"] == 1.25
        assert snapshot["request_count"] == 1
        assert snapshot["tokens_used"] == 500
        assert snapshot["last_used_at"] == clock().isoformat()

    def test_reset_daily_keeps_monthly(self, ledger):
        ledger.record_usage("chat", 3)
        ledger.record_usage("search", 2)
        ledger.reset_daily()
        for feature in ("chat", "search"):
            usage = ledger.get_feature_usage(feature)
            assert usage["daily_used_usd"] == 0
        assert ledger.get_feature_usage("chat")["monthly_used_usd"] == 3
        assert ledger.get_feature_usage("search")["monthly_used_usd"] == 2

    def test_reset_monthly_zeroes_both(self, ledger):
        ledger.record_usage("chat", 3)
        ledger.reset_monthly()
        usage = ledger.get_feature_usage("chat")
        assert usage["daily_used_usd"] == 0
        assert usage["monthly_used_usd"] == 0

    def test_negative_cost_raises(self, ledger):
        with pytest.raises(ValueError):
            ledger.record_usage("chat", -0.01)

    def test_total_spending(self, ledger):
        ledger.record_usage("chat", 1.5)
        ledger.record_usage("search", 0.5)
        totals = ledger.get_total_spending()
        assert totals["daily_usd"] == 2.0
        assert totals["monthly_usd"] == 2.0
        assert totals["by_feature"]["chat"]["daily_usd"] == 1.5

    def test_unknown_feature_usage_is_none(self, ledger):
        assert ledger.get_feature_usage("unknown") is None

    def test_all_usage_covers_every_feature(self, ledger):
        assert set(ledger.get_all_usage()) == {f.value for f in Feature}

    def test_usage_history(self, ledger):
        ledger.record_usage("chat", 1)
        ledger.record_usage("search", 2)
        ledger.record_usage("chat", 3)
        chat = ledger.get_usage_history("chat")
        assert [e["cost_usd"] for e in chat] == [1, 3]
        assert [e["cost_usd"] for e in ledger.get_usage_history(limit=1)] == [3]

    def test_usage_history_is_bounded(self, clock):
        ledger = CostGuardLedger(settings=make_settings(COST_HISTORY_CAPACITY=3), clock=clock)
        for i in range(6):
            ledger.record_usage("chat", i)
        assert [e["cost_usd"] for e in ledger.get_usage_history()] == [3, 4, 5]


# ============================================================================
# DEGRADATION
# ============================================================================

class TestDegradation:

    def test_raising_limit_clears_degraded(self, ledger):
        ledger.set_feature_limits("chat", 10, 100)
        ledger.record_usage("chat", 10)
        assert ledger.is_feature_degraded("chat") is True
        assert ledger.get_degraded_features() == ["chat"]
        ledger.set_feature_limits("chat", 50, 100)
        assert ledger.is_feature_degraded("chat") is False
        assert ledger.check_cost("chat", 1).allowed is True

    def test_lowering_limit_degrades(self, ledger):
        ledger.record_usage("search", 5)
        ledger.set_feature_limits("search", 4, 200)
        assert ledger.is_feature_degraded("search") is True

    def test_reset_clears_degraded(self, ledger):
        ledger.set_feature_limits("chat", 10, 100)
        ledger.record_usage("chat", 10)
        ledger.reset_daily()
        assert ledger.is_feature_degraded("chat") is False

    def test_negative_limits_raise(self, ledger):
        with pytest.raises(ValueError):
            ledger.set_feature_limits("chat", -1, 10)

    def test_custom_limits_at_construction(self, settings, clock):
        ledger = CostGuardLedger(settings=settings, clock=clock, limits={"chat": (1, 2)})
        usage = ledger.get_feature_usage("chat")
        assert usage["daily_limit_usd"] == 1
        assert usage["monthly_limit_usd"] == 2


# ============================================================================
# THREAD SAFETY
# ============================================================================

class TestThreadSafety:

    def test_concurrent_record_usage_adds_up(self, ledger):
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: ledger.record_usage("chat", 0.01, tokens=3), range(1000)))
        usage = ledger.get_feature_usage("chat")
        assert usage["request_count"] == 1000
        assert usage["tokens_used"] == 3000
        assert usage["daily_used_usd"] == pytest.approx(10.0)
        assert usage["monthly_used_usd"] == pytest.approx(10.0)

    def test_concurrent_checks_and_records(self, ledger):
        ledger.set_feature_limits("search", daily_limit_usd=4, monthly_limit_usd=100)

        def spend(_):
            ledger.check_cost("search", 0.01)
            ledger.record_usage("search", 0.01)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(spend, range(500)))
        assert ledger.get_feature_usage("search")["daily_used_usd"] == pytest.approx(5.0)
        assert ledger.is_feature_degraded("search") is True
