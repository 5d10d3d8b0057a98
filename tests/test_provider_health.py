"""
Tests for the Provider Health Monitor
"""

import logging
from concurrent.futures import ThreadPoolExecutor

import pytest
from prometheus_client import REGISTRY

from ops_safety.models import ConcurrencyTier, Provider
from ops_safety.provider_health import ProviderHealthMonitor

from conftest import make_settings


@pytest.fixture
def monitor(settings, clock):
    return ProviderHealthMonitor(settings=settings, clock=clock)


def no_provider_count():
    return REGISTRY.get_sample_value("ops_safety_no_provider_available_total") or 0.0


def feed(monitor, provider, failures, successes):
    for _ in range(failures):
        monitor.record_request(provider, 100, success=False)
    for _ in range(successes):
        monitor.record_request(provider, 100, success=True)


# ============================================================================
# STATE MACHINE
# ============================================================================

class TestStateMachine:

    def test_starts_healthy(self, monitor):
        for provider in Provider:
            assert monitor.get_provider_status(provider)["state"] == "healthy"

    def test_no_transition_below_min_samples(self, monitor):
        feed(monitor, "openai", failures=9, successes=0)
        status = monitor.get_provider_status("openai")
        assert status["state"] == "healthy"
        assert status["error_rate"] == 1.0

    def test_critical_rate_auto_disables(self, monitor):
        feed(monitor, "openai", failures=5, successes=5)
        status = monitor.get_provider_status("openai")
        assert status["state"] == "disabled"
        assert status["disabled_by"] == "auto"

    def test_degraded_rate(self, monitor):
        feed(monitor, "gemini", failures=2, successes=8)
        assert monitor.get_provider_status("gemini")["state"] == "degraded"

    def test_degraded_recovers(self, monitor):
        feed(monitor, "gemini", failures=2, successes=8)
        # window of 20: 2 failures in 20 = 10%
        feed(monitor, "gemini", failures=0, successes=10)
        assert monitor.get_provider_status("gemini")["state"] == "healthy"

    def test_disabled_never_auto_recovers(self, monitor):
        feed(monitor, "openai", failures=10, successes=0)
        feed(monitor, "openai", failures=0, successes=40)
        assert monitor.get_provider_status("openai")["state"] == "disabled"

    def test_timeout_counts_as_failure(self, monitor):
        for _ in range(10):
            monitor.record_request("deepseek", 30_000, success=True, is_timeout=True)
        status = monitor.get_provider_status("deepseek")
        assert status["state"] == "disabled"
        assert status["metrics"]["timeout_count"] == 10
        assert status["metrics"]["failure_count"] == 10

    def test_metrics_accumulate(self, monitor, clock):
        monitor.record_request("anthropic", 100, success=True)
        monitor.record_request("anthropic", 300, success=False)
        metrics = monitor.get_provider_status("anthropic")["metrics"]
        assert metrics["request_count"] == 2
        assert metrics["success_count"] == 1
        assert metrics["avg_latency_ms"] == 200
        assert metrics["last_request_at"] == clock().isoformat()

    def test_unknown_provider(self, monitor):
        with pytest.raises(ValueError):
            monitor.record_request("skynet", 1, True)
        assert monitor.get_provider_status("skynet") is None


# ============================================================================
# MANUAL CONTROL
# ============================================================================

class TestManualControl:

    def test_disable_then_enable(self, monitor):
        assert monitor.disable_provider("openai", "vendor incident") is True
        status = monitor.get_provider_status("openai")
        assert status["state"] == "disabled"
        assert status["disabled_by"] == "manual"
        assert monitor.enable_provider("openai") is True
        status = monitor.get_provider_status("openai")
        assert status["state"] == "healthy"
        assert status["disabled_by"] is None

    def test_disable_twice_returns_false(self, monitor):
        assert monitor.disable_provider("openai", "x") is True
        assert monitor.disable_provider("openai", "x") is False

    def test_manual_disable_over_auto_disable(self, monitor):
        feed(monitor, "openai", failures=10, successes=0)
        assert monitor.disable_provider("openai", "pin it") is True
        assert monitor.get_provider_status("openai")["disabled_by"] == "manual"

    def test_enable_healthy_returns_false(self, monitor):
        assert monitor.enable_provider("openai") is False

    def test_unknown_provider_returns_false(self, monitor):
        assert monitor.disable_provider("skynet", "x") is False
        assert monitor.enable_provider("skynet") is False

    def test_enable_clears_window(self, monitor):
        feed(monitor, "openai", failures=10, successes=0)
        monitor.enable_provider("openai")
        # a fresh window needs the minimum sample count again
        feed(monitor, "openai", failures=9, successes=0)
        assert monitor.get_provider_status("openai")["state"] == "healthy"

    def test_actions_recorded_newest_first(self, monitor):
        monitor.disable_provider("openai", "incident", actor="alice")
        monitor.enable_provider("openai", actor="bob")
        actions = monitor.get_recent_actions()
        assert [a["action"] for a in actions] == ["enabled", "manual_disabled"]
        assert actions[1]["actor"] == "alice"
        assert len(monitor.get_recent_actions(limit=1)) == 1


# ============================================================================
# FAILOVER & CONCURRENCY
# ============================================================================

class TestFailover:

    def test_primary_by_default(self, monitor):
        assert monitor.get_current_provider() == "anthropic"

    def test_degraded_primary_still_used(self, monitor):
        feed(monitor, "anthropic", failures=2, successes=8)
        assert monitor.get_current_provider() == "anthropic"

    def test_failover_follows_configured_order(self, monitor):
        monitor.disable_provider("anthropic", "down")
        assert monitor.get_current_provider() == "openai"
        monitor.disable_provider("openai", "down")
        assert monitor.get_current_provider() == "gemini"

    def test_prefers_healthy_over_degraded(self, monitor):
        monitor.disable_provider("anthropic", "down")
        feed(monitor, "openai", failures=2, successes=8)
        assert monitor.get_current_provider() == "gemini"

    def test_degraded_used_when_nothing_healthy(self, monitor):
        for p in ("anthropic", "openai", "gemini", "openrouter"):
            monitor.disable_provider(p, "down")
        feed(monitor, "deepseek", failures=2, successes=8)
        assert monitor.get_current_provider() == "deepseek"

    def test_never_returns_disabled_provider(self, monitor):
        for p in ("anthropic", "openai", "gemini", "deepseek"):
            monitor.disable_provider(p, "down")
        assert monitor.get_current_provider() == "openrouter"

    def test_all_disabled_returns_none_and_pauses(self, monitor):
        for p in Provider:
            monitor.disable_provider(p, "down")
        assert monitor.get_current_provider() is None
        level = monitor.get_concurrency_level()
        assert level.tier == ConcurrencyTier.PAUSED
        assert level.max_parallel == 0

    def test_custom_failover_order(self, clock):
        monitor = ProviderHealthMonitor(
            settings=make_settings(AI_PRIMARY_PROVIDER="openai", AI_FAILOVER_ORDER="deepseek"),
            clock=clock,
        )
        assert monitor.failover_order[0] == Provider.DEEPSEEK
        assert Provider.OPENAI not in monitor.failover_order
        monitor.disable_provider("openai", "down")
        assert monitor.get_current_provider() == "deepseek"

    def test_failed_selection_is_counted_and_logged(self, monitor, caplog):
        for p in Provider:
            monitor.disable_provider(p, "down")
        before = no_provider_count()
        with caplog.at_level(logging.ERROR, logger="ops_safety.provider_health"):
            assert monitor.get_current_provider() is None
        assert no_provider_count() == before + 1
        assert "no AI provider available" in caplog.text

    def test_snapshot_reads_do_not_count_as_selections(self, monitor, caplog):
        for p in Provider:
            monitor.disable_provider(p, "down")
        before = no_provider_count()
        with caplog.at_level(logging.ERROR, logger="ops_safety.provider_health"):
            for _ in range(5):
                assert monitor.get_state()["current_provider"] is None
                assert monitor.peek_current_provider() is None
        assert no_provider_count() == before
        assert "no AI provider available" not in caplog.text

    def test_unknown_primary_falls_back_to_default(self, clock, caplog):
        with caplog.at_level(logging.WARNING, logger="ops_safety.provider_health"):
            monitor = ProviderHealthMonitor(
                settings=make_settings(AI_PRIMARY_PROVIDER="skynet", AI_FAILOVER_ORDER="bogus,gemini"),
                clock=clock,
            )
        assert monitor.primary == Provider.ANTHROPIC
        assert monitor.failover_order[0] == Provider.GEMINI
        assert set(monitor.failover_order) == set(Provider) - {Provider.ANTHROPIC}
        assert monitor.get_current_provider() == "anthropic"
        assert "'skynet'" in caplog.text
        assert "'bogus'" in caplog.text


class TestConcurrency:

    def test_tiers(self, monitor, settings):
        level = monitor.get_concurrency_level()
        assert level.tier == ConcurrencyTier.FULL
        assert level.max_parallel == settings.CONCURRENCY_FULL
        assert monitor.should_run_non_critical() is True

        monitor.disable_provider("gemini", "down")
        level = monitor.get_concurrency_level()
        assert level.tier == ConcurrencyTier.REDUCED
        assert level.max_parallel == settings.CONCURRENCY_REDUCED
        assert monitor.should_run_non_critical() is False

        feed(monitor, "openai", failures=2, successes=8)
        level = monitor.get_concurrency_level()
        assert level.tier == ConcurrencyTier.MINIMAL
        assert level.max_parallel == settings.CONCURRENCY_MINIMAL

    def test_state_snapshot(self, monitor):
        monitor.disable_provider("gemini", "down")
        state = monitor.get_state()
        assert state["primary"] == "anthropic"
        assert state["current_provider"] == "anthropic"
        assert state["disabled"] == ["gemini"]
        assert state["concurrency"]["tier"] == "reduced"
        assert set(state["providers"]) == {p.value for p in Provider}


# ============================================================================
# THREAD SAFETY
# ============================================================================

class TestThreadSafety:

    def test_concurrent_record_request_counts_every_call(self, monitor):
        def call(i):
            monitor.record_request("openai", 50, success=True)
            monitor.record_request("gemini", 50, success=i % 2 == 0)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(call, range(400)))
        openai = monitor.get_provider_status("openai")["metrics"]
        assert openai["request_count"] == 400
        assert openai["success_count"] == 400
        gemini = monitor.get_provider_status("gemini")["metrics"]
        assert gemini["request_count"] == 400
        assert gemini["success_count"] + gemini["failure_count"] == 400
