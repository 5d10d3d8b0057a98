"""
Ops Safety: Control Plane Composition Root

Builds the kill switch registry, cost guard ledger, provider health monitor,
readiness evaluator and enforcement hooks once, with one shared settings
object and clock. Production code uses the get_control_plane() singleton;
tests build fresh instances with SafetyControlPlane.build(...).
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Mapping, Optional

from .audit_logger import EnforcementAuditLogger
from .config import Settings, get_settings
from .cost_guard import CostGuardLedger
from .enforcement import EnforcementHooks
from .kill_switches import KillSwitchRegistry
from .models import CheckResult, CheckStatus, Clock, ConcurrencyTier, Subsystem, utc_now
from .provider_health import ProviderHealthMonitor
from .readiness import CheckFn, ReadinessEvaluator

logger = logging.getLogger(__name__)

# a killed switch for one of these blocks go-live outright
GO_LIVE_SUBSYSTEMS = (Subsystem.PUBLISHING, Subsystem.ROLLOUT)


@dataclass
class SafetyControlPlane:
    settings: Settings
    kill_switches: KillSwitchRegistry
    cost_guard: CostGuardLedger
    providers: ProviderHealthMonitor
    readiness: ReadinessEvaluator
    audit_logger: EnforcementAuditLogger
    hooks: EnforcementHooks

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        environ: Optional[Mapping[str, str]] = None,
        clock: Optional[Clock] = None,
        register_builtin_checks: bool = True,
    ) -> "SafetyControlPlane":
        settings = settings or get_settings()
        clock = clock or utc_now
        kill_switches = KillSwitchRegistry(settings=settings, environ=environ, clock=clock)
        cost_guard = CostGuardLedger(settings=settings, clock=clock)
        providers = ProviderHealthMonitor(settings=settings, clock=clock)
        readiness = ReadinessEvaluator(settings=settings, clock=clock)
        audit_logger = EnforcementAuditLogger(
            capacity=settings.ENFORCEMENT_LOG_CAPACITY,
            log_file=settings.ENFORCEMENT_AUDIT_FILE,
        )
        hooks = EnforcementHooks(
            kill_switches=kill_switches,
            cost_guard=cost_guard,
            readiness=readiness,
            audit_logger=audit_logger,
            settings=settings,
            clock=clock,
        )
        plane = cls(settings, kill_switches, cost_guard, providers, readiness, audit_logger, hooks)
        if register_builtin_checks:
            plane._register_builtin_checks()
        logger.info(
            "safety control plane built (enforcement=%s kill_switches=%s cost_guards=%s cutover=%s)",
            settings.ENABLE_SAFETY_ENFORCEMENT,
            settings.ENABLE_KILL_SWITCHES,
            settings.ENABLE_COST_GUARDS,
            settings.ENABLE_PRODUCTION_CUTOVER,
        )
        return plane

    def _register_builtin_checks(self) -> None:
        self.readiness.register_check(
            "kill_switches", "Kill switches", kill_switch_check(self.kill_switches), hard=True
        )
        self.readiness.register_check(
            "ai_providers", "AI providers", provider_check(self.providers), hard=True
        )
        self.readiness.register_check(
            "cost_guards", "Cost guards", cost_guard_check(self.cost_guard), hard=False
        )

    def register_check(
        self,
        check_id: str,
        name: str,
        fn: CheckFn,
        hard: bool = False,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        """Register an external check (database, queue depth, search index...)."""
        self.readiness.register_check(check_id, name, fn, hard=hard, timeout_seconds=timeout_seconds)

    def status(self) -> Dict[str, Any]:
        """Combined dashboard snapshot of every component."""
        spending = self.cost_guard.get_total_spending()
        return {
            "enforcement_enabled": self.hooks.enabled,
            "emergency_stop": self.hooks.get_emergency_stop(),
            "kill_switches": self.kill_switches.get_stats(),
            "cost": {
                "enabled": self.cost_guard.enabled,
                "daily_usd": spending["daily_usd"],
                "monthly_usd": spending["monthly_usd"],
                "degraded_features": self.cost_guard.get_degraded_features(),
            },
            "providers": self.providers.get_state(),
            "readiness": self.readiness.get_state(),
            "enforcement": self.hooks.get_enforcement_stats(),
        }


def kill_switch_check(registry: KillSwitchRegistry) -> CheckFn:
    def check() -> CheckResult:
        killed = [s for s in Subsystem if registry.is_killed(s)]
        blocking = [s.value for s in killed if s in GO_LIVE_SUBSYSTEMS]
        if blocking:
            return CheckResult("kill_switches", "Kill switches", CheckStatus.FAIL,
                               "Killed: " + ", ".join(blocking))
        if killed:
            return CheckResult("kill_switches", "Kill switches", CheckStatus.WARN,
                               "Killed: " + ", ".join(s.value for s in killed))
        return CheckResult("kill_switches", "Kill switches", CheckStatus.PASS, "No kill switches engaged")
    return check


def provider_check(monitor: ProviderHealthMonitor) -> CheckFn:
    def check():
        if monitor.peek_current_provider() is None:
            return CheckStatus.FAIL, "No AI provider available"
        level = monitor.get_concurrency_level()
        if level.tier != ConcurrencyTier.FULL:
            return CheckStatus.WARN, f"Concurrency {level.tier.value}: {level.unhealthy_providers} provider(s) unhealthy"
        return CheckStatus.PASS, "All providers healthy"
    return check


def cost_guard_check(ledger: CostGuardLedger) -> CheckFn:
    def check():
        degraded = ledger.get_degraded_features()
        if degraded:
            return {"status": "warn", "message": "Over budget: " + ", ".join(degraded)}
        return {"status": "pass", "message": "All features within budget"}
    return check


@lru_cache(maxsize=1)
def get_control_plane() -> SafetyControlPlane:
    return SafetyControlPlane.build()
