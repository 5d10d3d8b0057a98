"""
Ops Safety: Enforcement Hooks

The single call site for publishing, jobs, AI calls, regeneration, bulk
changes and rollouts. Every hook composes the same steps, strictly in order,
and stops at the first one that decides:

    1. ENABLE_SAFETY_ENFORCEMENT off   -> allow ("Safety enforcement disabled")
    2. emergency stop                  -> block
    3. kill switch(es) for the hook    -> block
    4. cost guard (AI calls only)      -> block / allow with the ledger's reason
    5. bulk size limit (bulk changes)  -> block
    6. readiness (publish, rollout, bulk changes; only with
       ENABLE_PRODUCTION_CUTOVER on)   -> BLOCK blocks, WARN needs an approval

Hooks never raise. An invalid argument blocks with "Invalid request"; any
other error blocks with "Internal enforcement error". Every call, whatever
the outcome, is appended to the enforcement audit log.

Components are called one after another and never while this layer holds a
lock, so the lock order is fixed.
"""

import logging
import threading
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional

from . import metrics
from .audit_logger import EnforcementAuditLogger
from .config import Settings, get_settings
from .cost_guard import CostGuardLedger
from .kill_switches import KillSwitchRegistry
from .models import (
    Clock,
    CutoverDecision,
    EnforcementLogEntry,
    EnforcementResult,
    Feature,
    Subsystem,
    coerce_enum,
    utc_now,
)
from .readiness import ReadinessEvaluator

logger = logging.getLogger(__name__)

HOOK_PUBLISH = "publish"
HOOK_JOB = "job_execution"
HOOK_AI_CALL = "ai_call"
HOOK_REGENERATION = "regeneration"
HOOK_BULK_CHANGE = "bulk_change"
HOOK_ROLLOUT = "rollout"

Step = Callable[[], Optional[EnforcementResult]]


class EnforcementHooks:
    """Fail-closed gate in front of every risky operation."""

    def __init__(
        self,
        kill_switches: KillSwitchRegistry,
        cost_guard: CostGuardLedger,
        readiness: ReadinessEvaluator,
        audit_logger: Optional[EnforcementAuditLogger] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or get_settings()
        self.kill_switches = kill_switches
        self.cost_guard = cost_guard
        self.readiness = readiness
        self.audit_logger = audit_logger or EnforcementAuditLogger(
            capacity=self.settings.ENFORCEMENT_LOG_CAPACITY,
            log_file=self.settings.ENFORCEMENT_AUDIT_FILE,
        )
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._runtime_stop: Optional[Dict[str, Any]] = None

    @property
    def enabled(self) -> bool:
        return bool(self.settings.ENABLE_SAFETY_ENFORCEMENT)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def before_publish(self, content_id=None, **context) -> EnforcementResult:
        return self._run(
            HOOK_PUBLISH,
            {"content_id": content_id, **context},
            [partial(self._check_kill_switches, [Subsystem.PUBLISHING]), self._check_readiness],
        )

    def before_job_execution(self, job_type, **context) -> EnforcementResult:
        return self._run(
            HOOK_JOB,
            {"job_type": job_type, **context},
            [partial(self._check_kill_switches, [Subsystem.JOBS])],
        )

    def before_ai_call(self, feature, estimated_cost_usd: float = 0.0, provider=None, **context) -> EnforcementResult:
        return self._run(
            HOOK_AI_CALL,
            {"feature": _plain(feature), "estimated_cost_usd": estimated_cost_usd, "provider": _plain(provider), **context},
            [
                partial(self._check_ai_kill_switches, feature),
                partial(self._check_cost, feature, estimated_cost_usd),
            ],
        )

    def before_regeneration(self, content_id=None, **context) -> EnforcementResult:
        return self._run(
            HOOK_REGENERATION,
            {"content_id": content_id, **context},
            [partial(self._check_kill_switches, [Subsystem.REGENERATION])],
        )

    def before_bulk_change(self, item_count: int, operation: Optional[str] = None, **context) -> EnforcementResult:
        return self._run(
            HOOK_BULK_CHANGE,
            {"item_count": item_count, "operation": operation, **context},
            [
                partial(self._check_kill_switches, [Subsystem.BULK_CHANGES]),
                partial(self._check_bulk_size, item_count),
                self._check_readiness,
            ],
        )

    def before_rollout(self, feature_flag: str, percentage: Optional[float] = None, **context) -> EnforcementResult:
        return self._run(
            HOOK_ROLLOUT,
            {"feature_flag": feature_flag, "percentage": percentage, **context},
            [partial(self._check_kill_switches, [Subsystem.ROLLOUT]), self._check_readiness],
        )

    def _run(self, hook: str, context: Dict[str, Any], steps: List[Step]) -> EnforcementResult:
        if not self.enabled:
            result = EnforcementResult(allowed=True, reason="Safety enforcement disabled")
        elif self.is_emergency_stopped():
            result = EnforcementResult(allowed=False, reason=self._emergency_reason())
        else:
            try:
                result = None
                for step in steps:
                    result = step()
                    if result is not None:
                        break
                if result is None:
                    result = EnforcementResult(allowed=True, reason="All safety checks passed")
            except ValueError as exc:
                result = EnforcementResult(allowed=False, reason=f"Invalid request: {exc}")
            except Exception:
                logger.exception("enforcement hook %s failed; blocking", hook)
                metrics.enforcement_errors_total.labels(hook=hook).inc()
                result = EnforcementResult(allowed=False, reason="Internal enforcement error")

        self._record(hook, result, context)
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _check_kill_switches(self, subsystems: Iterable[Subsystem]) -> Optional[EnforcementResult]:
        for subsystem in subsystems:
            if self.kill_switches.is_killed(subsystem):
                state = self.kill_switches.get_state(subsystem) or {}
                return EnforcementResult(
                    allowed=False,
                    reason=f"Kill switch active for {subsystem.value}: {state.get('reason') or 'no reason given'}",
                )
        return None

    def _check_ai_kill_switches(self, feature) -> Optional[EnforcementResult]:
        feature = coerce_enum(Feature, feature, "feature")
        subsystems = [Subsystem.AI_CALLS]
        # features that are also subsystems (search, aeo, chat, octopus) have their own switch
        if feature.value in {s.value for s in Subsystem}:
            subsystems.append(Subsystem(feature.value))
        return self._check_kill_switches(subsystems)

    def _check_cost(self, feature, estimated_cost_usd: float) -> EnforcementResult:
        check = self.cost_guard.check_cost(feature, estimated_cost_usd)
        return EnforcementResult(allowed=check.allowed, reason=check.reason)

    def _check_bulk_size(self, item_count: int) -> Optional[EnforcementResult]:
        if item_count < 0:
            raise ValueError(f"item_count must be non-negative, got {item_count}")
        limit = self.settings.MAX_BULK_CHANGE_ITEMS
        if item_count > limit:
            return EnforcementResult(
                allowed=False,
                reason=f"Bulk change of {item_count} items exceeds the limit of {limit}",
            )
        return None

    def _check_readiness(self) -> Optional[EnforcementResult]:
        if not self.settings.ENABLE_PRODUCTION_CUTOVER:
            return None
        decision = self.readiness.evaluate_cutover("live")
        verdict = decision.decision
        if verdict == CutoverDecision.BLOCK:
            return EnforcementResult(False, f"Readiness BLOCK: {decision.reason}", verdict)
        if verdict == CutoverDecision.WARN:
            if decision.approval is None:
                return EnforcementResult(False, f"Readiness WARN requires approval: {decision.reason}", verdict)
            return EnforcementResult(
                True,
                f"Readiness WARN approved by {decision.approval.approved_by}: {decision.reason}",
                verdict,
            )
        return EnforcementResult(True, f"Readiness CAN_GO_LIVE: {decision.reason}", verdict)

    # ------------------------------------------------------------------
    # Emergency stop
    # ------------------------------------------------------------------

    def is_emergency_stopped(self) -> bool:
        if self.settings.EMERGENCY_STOP_ENABLED:
            return True
        with self._lock:
            return self._runtime_stop is not None

    def activate_emergency_stop(self, actor: str, reason: str) -> bool:
        """
        Block every hook until deactivated.

        Returns:
            False if a runtime emergency stop is already active
        """
        if not actor or not reason:
            raise ValueError("actor and reason are required")
        with self._lock:
            if self._runtime_stop is not None:
                return False
            self._runtime_stop = {
                "actor": actor,
                "reason": reason,
                "activated_at": self._clock(),
            }
        logger.critical("EMERGENCY STOP activated by %s: %s", actor, reason)
        return True

    def deactivate_emergency_stop(self, actor: str, reason: str) -> bool:
        """
        Release a runtime emergency stop.

        Returns:
            False if none is active, or if EMERGENCY_STOP_ENABLED holds it
        """
        if self.settings.EMERGENCY_STOP_ENABLED:
            logger.warning(
                "emergency stop release by %s rejected: EMERGENCY_STOP_ENABLED is set (%s)", actor, reason
            )
            return False
        with self._lock:
            if self._runtime_stop is None:
                return False
            self._runtime_stop = None
        logger.warning("emergency stop deactivated by %s: %s", actor, reason)
        return True

    def get_emergency_stop(self) -> Dict[str, Any]:
        with self._lock:
            runtime = dict(self._runtime_stop) if self._runtime_stop else None
        if runtime:
            runtime["activated_at"] = runtime["activated_at"].isoformat()
        return {
            "active": bool(self.settings.EMERGENCY_STOP_ENABLED) or runtime is not None,
            "env": bool(self.settings.EMERGENCY_STOP_ENABLED),
            "runtime": runtime,
        }

    def _emergency_reason(self) -> str:
        if self.settings.EMERGENCY_STOP_ENABLED:
            return "Emergency stop active: EMERGENCY_STOP_ENABLED is set"
        with self._lock:
            stop = self._runtime_stop
        if stop is None:
            # released between the check and here
            return "Emergency stop active"
        return f"Emergency stop active: {stop['reason']} (by {stop['actor']})"

    # ------------------------------------------------------------------
    # Log / stats
    # ------------------------------------------------------------------

    def _record(self, hook: str, result: EnforcementResult, context: Dict[str, Any]) -> None:
        entry = EnforcementLogEntry(
            hook=hook,
            allowed=result.allowed,
            reason=result.reason,
            timestamp=self._clock(),
            decision=result.decision,
            context=context,
        )
        self.audit_logger.append(entry)
        metrics.enforcement_decisions_total.labels(
            hook=hook, result="allowed" if result.allowed else "blocked"
        ).inc()
        if not result.allowed:
            logger.warning("enforcement %s BLOCKED: %s", hook, result.reason)

    def get_enforcement_log(self, limit: Optional[int] = 100) -> List[Dict[str, Any]]:
        """Most recent hook decisions, newest first."""
        return self.audit_logger.get_entries(limit=limit)

    def get_enforcement_stats(self) -> Dict[str, Any]:
        stats = self.audit_logger.get_stats()
        stats["enabled"] = self.enabled
        stats["emergency_stop"] = self.is_emergency_stopped()
        return stats

    def clear_caches(self) -> None:
        self.readiness.clear_cache()


def _plain(value):
    return getattr(value, "value", value)
