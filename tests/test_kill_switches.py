"""
Tests for the Kill Switch Registry

Verifies env-over-api precedence, lazy TTL expiry, the global bypass flag
and the bounded event history.
"""

import time

import pytest

from ops_safety.kill_switches import KillSwitchRegistry
from ops_safety.models import Subsystem, SwitchSource

from conftest import make_settings


@pytest.fixture
def registry(settings, clock):
    return KillSwitchRegistry(settings=settings, environ={}, clock=clock)


# ============================================================================
# STARTUP
# ============================================================================

class TestStartup:

    def test_nothing_killed_without_env(self, registry):
        for subsystem in Subsystem:
            assert registry.is_killed(subsystem) is False

    def test_env_flag_engages_switch(self, settings, clock):
        registry = KillSwitchRegistry(settings=settings, environ={"KILL_SEARCH": "true"}, clock=clock)
        assert registry.is_killed("search") is True
        state = registry.get_state("search")
        assert state["source"] == "env"
        assert state["enabled_by"] == "environment"
        assert registry.is_killed("chat") is False

    def test_env_false_does_not_engage(self, settings, clock):
        registry = KillSwitchRegistry(settings=settings, environ={"KILL_SEARCH": "0"}, clock=clock)
        assert registry.is_killed("search") is False

    def test_malformed_env_flag_engages_switch(self, settings, clock):
        registry = KillSwitchRegistry(settings=settings, environ={"KILL_PUBLISHING": "perhaps"}, clock=clock)
        assert registry.is_killed(Subsystem.PUBLISHING) is True


# ============================================================================
# PRECEDENCE
# ============================================================================

class TestEnvPrecedence:

    @pytest.fixture
    def env_registry(self, settings, clock):
        return KillSwitchRegistry(settings=settings, environ={"KILL_AEO": "1"}, clock=clock)

    def test_api_cannot_disable_env_switch(self, env_registry):
        assert env_registry.disable("aeo", "api", "trying anyway") is False
        assert env_registry.is_killed("aeo") is True

    def test_api_cannot_resource_env_switch(self, env_registry):
        assert env_registry.enable("aeo", "api", "re-enable", ttl_ms=10) is False
        assert env_registry.get_state("aeo")["source"] == "env"

    def test_toggle_respects_precedence(self, env_registry):
        assert env_registry.toggle("aeo", "api", "flip") is False
        assert env_registry.is_killed("aeo") is True

    def test_rejection_is_recorded(self, env_registry):
        env_registry.disable("aeo", "api", "nope", actor="ops")
        last = env_registry.get_event_history()[-1]
        assert last["action"] == "rejected"
        assert last["actor"] == "ops"

    def test_env_source_can_release(self, env_registry):
        assert env_registry.disable("aeo", "env", "config change") is True
        assert env_registry.is_killed("aeo") is False


# ============================================================================
# MUTATIONS
# ============================================================================

class TestMutations:

    def test_enable_then_disable(self, registry):
        assert registry.enable("chat", "api", "incident", actor="alice") is True
        assert registry.is_killed("chat") is True
        state = registry.get_state("chat")
        assert state["enabled_by"] == "alice"
        assert state["reason"] == "incident"
        assert registry.disable("chat", "api", "resolved") is True
        assert registry.is_killed("chat") is False

    def test_disable_not_engaged_returns_false(self, registry):
        assert registry.disable("chat", "api", "noop") is False
        assert registry.get_event_history() == []

    def test_toggle(self, registry):
        assert registry.toggle("jobs", "api", "pause") is True
        assert registry.is_killed("jobs") is True
        assert registry.toggle("jobs", "api", "resume") is True
        assert registry.is_killed("jobs") is False

    def test_invalid_subsystem_raises(self, registry):
        with pytest.raises(ValueError):
            registry.enable("coffee_machine", "api", "x")
        with pytest.raises(ValueError):
            registry.is_killed("coffee_machine")

    def test_invalid_source_raises(self, registry):
        with pytest.raises(ValueError):
            registry.enable("chat", "slack", "x")

    def test_non_positive_ttl_raises(self, registry):
        with pytest.raises(ValueError):
            registry.enable("chat", "api", "x", ttl_ms=0)

    def test_unknown_state_is_none(self, registry):
        assert registry.get_state("unknown") is None


# ============================================================================
# TIMED OVERRIDES
# ============================================================================

class TestTimedOverrides:

    def test_expires_without_timer(self, registry, clock):
        registry.enable("search", "api", "maintenance", ttl_ms=100)
        assert registry.is_killed("search") is True
        clock.advance(milliseconds=99)
        assert registry.is_killed("search") is True
        clock.advance(milliseconds=1)
        assert registry.is_killed("search") is False

    def test_expiry_recorded_in_history(self, registry, clock):
        registry.enable("search", "api", "maintenance", ttl_ms=100)
        clock.advance(seconds=1)
        history = registry.get_event_history()
        assert [e["action"] for e in history] == ["enabled", "expired"]
        assert history[-1]["actor"] == "system"

    def test_real_time_expiry(self):
        registry = KillSwitchRegistry(settings=make_settings(ENABLE_KILL_SWITCHES=True), environ={})
        registry.enable("search", "api", "maintenance", None, 100)
        assert registry.is_killed("search") is True
        time.sleep(0.15)
        assert registry.is_killed("search") is False


# ============================================================================
# BYPASS / STATS / HISTORY
# ============================================================================

class TestBypassAndStats:

    def test_disabled_registry_reports_nothing_killed(self, clock):
        registry = KillSwitchRegistry(
            settings=make_settings(ENABLE_KILL_SWITCHES=False), environ={"KILL_CHAT": "1"}, clock=clock
        )
        assert registry.is_killed("chat") is False
        # state is kept for when the flag comes back
        assert registry.get_state("chat")["enabled"] is True
        assert registry.get_killed_subsystems() == ["chat"]

    def test_stats(self, settings, clock):
        registry = KillSwitchRegistry(settings=settings, environ={"KILL_JOBS": "yes"}, clock=clock)
        registry.enable("chat", "api", "incident", ttl_ms=60_000)
        stats = registry.get_stats()
        assert stats["total_switches"] == len(Subsystem)
        assert stats["killed_count"] == 2
        assert set(stats["killed"]) == {"jobs", "chat"}
        assert stats["by_source"] == {"env": 1, "api": 1}
        assert stats["timed_overrides"] == 1

    def test_all_states_cover_every_subsystem(self, registry):
        assert set(registry.get_all_states()) == {s.value for s in Subsystem}

    def test_history_is_bounded(self, clock):
        registry = KillSwitchRegistry(
            settings=make_settings(ENABLE_KILL_SWITCHES=True, KILL_SWITCH_HISTORY_CAPACITY=5),
            environ={},
            clock=clock,
        )
        for i in range(10):
            registry.toggle("chat", SwitchSource.API, f"flip {i}")
        history = registry.get_event_history()
        assert len(history) == 5
        assert history[-1]["reason"] == "flip 9"

    def test_history_limit(self, registry):
        for i in range(4):
            registry.toggle("chat", "api", f"flip {i}")
        assert [e["reason"] for e in registry.get_event_history(limit=2)] == ["flip 2", "flip 3"]
        assert registry.get_event_history(limit=0) == []
