"""
Ops Safety: Readiness Evaluator

Aggregates externally supplied checks into a go-live decision:

    any hard check failed             -> BLOCK
    soft blockers > max warnings      -> WARN
    otherwise                         -> CAN_GO_LIVE

Soft blockers are warnings plus failures of non-hard checks. Only the fully
successful path can produce CAN_GO_LIVE: a check that raises, hangs or
returns something unrecognisable becomes "fail", and an error while
aggregating resolves to BLOCK.

Decisions are cached twice:
- per mode for CUTOVER_CACHE_TTL_SECONDS
- by signature (sha256 over the sorted check outcomes, mode and config
  version), so identical inputs return the identical decision object

Approvals and overrides are layered on top of the cached decision and are
never cached themselves.
"""

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict, deque
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

from . import metrics
from .config import Settings, get_settings
from .models import (
    Approval,
    CheckResult,
    CheckStatus,
    Clock,
    CutoverDecision,
    CutoverMode,
    Override,
    ReadinessDecision,
    Signature,
    coerce_enum,
    utc_now,
)

logger = logging.getLogger(__name__)

SIGNATURE_CACHE_SIZE = 128
APPROVAL_HISTORY_CAPACITY = 100
OVERRIDE_HISTORY_CAPACITY = 100
CHECK_WORKERS = 8
NO_CHECKS_MESSAGE = "No readiness checks registered"
STILL_RUNNING_MESSAGE = "Check still running from a previous evaluation"

CheckFn = Callable[[], Any]


@dataclass
class RegisteredCheck:
    check_id: str
    name: str
    fn: CheckFn
    hard: bool = False
    timeout_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.check_id,
            "name": self.name,
            "hard": self.hard,
            "timeout_seconds": self.timeout_seconds,
        }


class ReadinessEvaluator:
    """Runs readiness checks and produces cached, signed cutover decisions."""

    def __init__(self, settings: Optional[Settings] = None, clock: Optional[Clock] = None):
        self.settings = settings or get_settings()
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._checks: "OrderedDict[str, RegisteredCheck]" = OrderedDict()
        self._ttl_cache: Dict[CutoverMode, Tuple[Any, ReadinessDecision]] = {}
        self._signature_cache: "OrderedDict[str, ReadinessDecision]" = OrderedDict()
        self._approvals: Deque[Approval] = deque(maxlen=APPROVAL_HISTORY_CAPACITY)
        self._override: Optional[Override] = None
        self._override_history: Deque[Dict[str, Any]] = deque(maxlen=OVERRIDE_HISTORY_CAPACITY)
        self._executor = ThreadPoolExecutor(max_workers=CHECK_WORKERS, thread_name_prefix="readiness-check")
        self._inflight: Dict[str, Future] = {}

    @property
    def enabled(self) -> bool:
        return bool(self.settings.ENABLE_PRODUCTION_CUTOVER)

    # ------------------------------------------------------------------
    # Check registry
    # ------------------------------------------------------------------

    def register_check(
        self,
        check_id: str,
        name: str,
        fn: CheckFn,
        hard: bool = False,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        """
        Register (or replace) a readiness check.

        Args:
            check_id: Stable identifier, part of the decision signature
            name: Human label used in blocker messages
            fn: Zero-argument callable returning a CheckResult, a mapping with
                "status" and "message", or a (status, message) tuple
            hard: A failure of a hard check blocks go-live outright
            timeout_seconds: Per-check time box (defaults to CUTOVER_CHECK_TIMEOUT_SECONDS)
        """
        if not check_id:
            raise ValueError("check_id must be non-empty")
        if not callable(fn):
            raise ValueError(f"check {check_id!r} is not callable")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {timeout_seconds}")
        with self._lock:
            self._checks[check_id] = RegisteredCheck(check_id, name or check_id, fn, bool(hard), timeout_seconds)
            self._ttl_cache.clear()
        logger.info("readiness check registered: %s (hard=%s)", check_id, hard)

    def unregister_check(self, check_id: str) -> bool:
        with self._lock:
            removed = self._checks.pop(check_id, None) is not None
            if removed:
                self._ttl_cache.clear()
        return removed

    def list_checks(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [c.to_dict() for c in self._checks.values()]

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_cutover(self, mode="live") -> ReadinessDecision:
        """
        Evaluate readiness for a cutover.

        With ENABLE_PRODUCTION_CUTOVER off a "live" request is evaluated as a
        dry run, and the returned decision says so in its mode.
        """
        mode = coerce_enum(CutoverMode, mode, "mode")
        if mode == CutoverMode.LIVE and not self.enabled:
            logger.warning("production cutover is disabled; evaluating live request as dry-run")
            mode = CutoverMode.DRY_RUN
        return self._evaluate(mode)

    def dry_run(self) -> ReadinessDecision:
        """Pre-flight evaluation. Works regardless of ENABLE_PRODUCTION_CUTOVER."""
        return self._evaluate(CutoverMode.DRY_RUN)

    def clear_cache(self) -> None:
        with self._lock:
            self._ttl_cache.clear()
            self._signature_cache.clear()
        logger.info("readiness caches cleared")

    def _evaluate(self, mode: CutoverMode) -> ReadinessDecision:
        now = self._clock()
        ttl = timedelta(seconds=self.settings.CUTOVER_CACHE_TTL_SECONDS)
        with self._lock:
            cached = self._ttl_cache.get(mode)
            checks = list(self._checks.values())

        if cached is not None and now - cached[0] < ttl:
            decision = cached[1]
        else:
            try:
                decision = self._compute(mode, checks)
            except Exception:
                logger.exception("readiness evaluation failed; blocking")
                decision = self._failed_decision(mode)
            else:
                with self._lock:
                    self._ttl_cache[mode] = (now, decision)
        return self._apply_overlays(decision)

    def _compute(self, mode: CutoverMode, checks: List[RegisteredCheck]) -> ReadinessDecision:
        # checks run without holding the lock; they may call back into other components
        results = self._run_checks(checks)

        hard_blockers = [_describe(r) for r in results if r.hard and r.status == CheckStatus.FAIL]
        soft_blockers = [
            _describe(r)
            for r in results
            if r.status == CheckStatus.WARN or (r.status == CheckStatus.FAIL and not r.hard)
        ]

        if hard_blockers:
            decision = CutoverDecision.BLOCK
            reason = f"Blocked by {len(hard_blockers)} hard check(s): " + "; ".join(hard_blockers)
        elif not results:
            soft_blockers = [NO_CHECKS_MESSAGE]
            decision = CutoverDecision.WARN
            reason = NO_CHECKS_MESSAGE
        elif len(soft_blockers) > self.settings.CUTOVER_MAX_WARNINGS:
            decision = CutoverDecision.WARN
            reason = f"{len(soft_blockers)} soft blocker(s): " + "; ".join(soft_blockers)
        else:
            decision = CutoverDecision.CAN_GO_LIVE
            reason = "All readiness checks passed"

        counted = [r for r in results if r.status != CheckStatus.SKIP]
        passed = sum(1 for r in counted if r.status == CheckStatus.PASS)
        warned = sum(1 for r in counted if r.status == CheckStatus.WARN)
        score = round(100 * (passed + 0.5 * warned) / len(counted)) if counted else 0

        signature = self._sign(mode, results)
        with self._lock:
            previous = self._signature_cache.get(signature.hash)
            if previous is not None:
                self._signature_cache.move_to_end(signature.hash)
                return previous

        result = ReadinessDecision(
            decision=decision,
            mode=mode,
            score=score,
            hard_blockers=hard_blockers,
            soft_blockers=soft_blockers,
            signature=signature,
            evaluated_at=self._clock(),
            checks=results,
            reason=reason,
        )
        with self._lock:
            self._signature_cache[signature.hash] = result
            while len(self._signature_cache) > SIGNATURE_CACHE_SIZE:
                self._signature_cache.popitem(last=False)

        metrics.readiness_evaluations_total.labels(mode=mode.value, decision=decision.value).inc()
        logger.info("readiness %s: %s (score=%d, signature=%s)", mode.value, decision.value, score, signature.hash)
        return result

    def _run_checks(self, checks: List[RegisteredCheck]) -> List[CheckResult]:
        if not checks:
            return []
        default_timeout = self.settings.CUTOVER_CHECK_TIMEOUT_SECONDS
        started = time.monotonic()
        futures: List[Tuple[RegisteredCheck, Future, bool]] = []
        with self._lock:
            for check in checks:
                previous = self._inflight.get(check.check_id)
                if previous is not None and not previous.done():
                    # share the running call; a hung check holds at most one worker
                    futures.append((check, previous, True))
                    continue
                future = self._executor.submit(_timed_call, check.fn)
                self._inflight[check.check_id] = future
                futures.append((check, future, False))

        results = []
        for check, future, shared in futures:
            timeout = check.timeout_seconds or default_timeout
            remaining = max(0.0, started + timeout - time.monotonic())
            try:
                raw, duration_ms = future.result(timeout=remaining)
                results.append(_normalize(check, raw, duration_ms))
            except FutureTimeout:
                message = STILL_RUNNING_MESSAGE if shared else f"Check timed out after {timeout:g}s"
                results.append(self._failed_check(check, message, timeout * 1000))
            except Exception as exc:
                results.append(self._failed_check(check, f"Check raised {type(exc).__name__}: {exc}", 0.0))
        return results

    def close(self) -> None:
        """Stop accepting check runs. Checks still executing are not interrupted."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _failed_check(check: RegisteredCheck, message: str, duration_ms: float) -> CheckResult:
        logger.warning("readiness check %s failed: %s", check.check_id, message)
        metrics.readiness_check_failures_total.labels(check_id=check.check_id).inc()
        return CheckResult(
            id=check.check_id,
            name=check.name,
            status=CheckStatus.FAIL,
            message=message,
            duration_ms=duration_ms,
            hard=check.hard,
        )

    def _sign(self, mode: CutoverMode, results: List[CheckResult]) -> Signature:
        version = self.settings.CUTOVER_CONFIG_VERSION
        payload = {
            "mode": mode.value,
            "version": version,
            "checks": sorted([r.id, r.name, r.status.value, r.message, r.hard] for r in results),
        }
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return Signature(hash=hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16], version=version)

    def _failed_decision(self, mode: CutoverMode) -> ReadinessDecision:
        version = self.settings.CUTOVER_CONFIG_VERSION
        digest = hashlib.sha256(f"error:{mode.value}:{version}".encode("utf-8")).hexdigest()[:16]
        metrics.readiness_evaluations_total.labels(mode=mode.value, decision=CutoverDecision.BLOCK.value).inc()
        return ReadinessDecision(
            decision=CutoverDecision.BLOCK,
            mode=mode,
            score=0,
            hard_blockers=["Readiness evaluation failed"],
            soft_blockers=[],
            signature=Signature(hash=digest, version=version),
            evaluated_at=self._clock(),
            reason="Readiness evaluation failed",
        )

    def _apply_overlays(self, decision: ReadinessDecision) -> ReadinessDecision:
        with self._lock:
            override = self._override
            approval = self._active_approval()
        if override is not None:
            decision = replace(
                decision,
                decision=override.new_decision,
                override=override,
                reason=(
                    f"Overridden to {override.new_decision.value} by {override.overridden_by}: "
                    f"{override.reason} (computed {decision.decision.value})"
                ),
            )
        if approval is not None:
            decision = replace(decision, approval=approval)
        return decision

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def create_approval(self, approved_by: str, note: str = "", ttl_seconds: Optional[float] = None) -> Approval:
        """
        Issue a time-boxed sign-off that lets WARN decisions through the hooks.

        Args:
            approved_by: Who approves (required)
            note: Free-form justification
            ttl_seconds: Lifetime (defaults to CUTOVER_APPROVAL_TTL_SECONDS)
        """
        if not approved_by or not approved_by.strip():
            raise ValueError("approved_by must be non-empty")
        ttl = self.settings.CUTOVER_APPROVAL_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl}")
        now = self._clock()
        approval = Approval(
            approved_by=approved_by,
            note=note or "",
            created_at=now,
            expires_at=now + timedelta(seconds=ttl),
        )
        with self._lock:
            self._approvals.append(approval)
        logger.warning(
            "cutover approval %s granted by %s until %s: %s",
            approval.id, approved_by, approval.expires_at.isoformat(), note,
        )
        return approval

    def get_active_approval(self) -> Optional[Approval]:
        with self._lock:
            return self._active_approval()

    def revoke_approvals(self, revoked_by: str = "admin") -> int:
        """Drop every approval. Returns how many were still active."""
        with self._lock:
            now = self._clock()
            active = sum(1 for a in self._approvals if not a.is_expired(now))
            self._approvals.clear()
        logger.warning("cutover approvals revoked by %s (%d active)", revoked_by, active)
        return active

    def _active_approval(self) -> Optional[Approval]:
        now = self._clock()
        for approval in reversed(self._approvals):
            if not approval.is_expired(now):
                return approval
        return None

    # ------------------------------------------------------------------
    # Overrides
    # ------------------------------------------------------------------

    def create_override(self, overridden_by: str, new_decision, reason: str) -> Override:
        """
        Pin the readiness decision until clear_override() is called.

        Every override is logged at WARNING and kept in the override history.
        """
        new_decision = coerce_enum(CutoverDecision, new_decision, "decision")
        if not overridden_by or not overridden_by.strip():
            raise ValueError("overridden_by must be non-empty")
        if not reason or not reason.strip():
            raise ValueError("override reason must be non-empty")

        override = Override(
            overridden_by=overridden_by,
            new_decision=new_decision,
            reason=reason,
            created_at=self._clock(),
        )
        with self._lock:
            self._override = override
            self._override_history.append({"action": "created", **override.to_dict()})
        metrics.readiness_overrides_total.labels(new_decision=new_decision.value).inc()
        logger.warning(
            "READINESS OVERRIDE %s: decision forced to %s by %s: %s",
            override.id, new_decision.value, overridden_by, reason,
        )
        return override

    def get_active_override(self) -> Optional[Override]:
        with self._lock:
            return self._override

    def clear_override(self, cleared_by: str = "admin") -> bool:
        with self._lock:
            override = self._override
            if override is None:
                return False
            self._override = None
            self._override_history.append({
                "action": "cleared",
                "id": override.id,
                "cleared_by": cleared_by,
                "created_at": self._clock().isoformat(),
            })
        logger.warning("readiness override %s cleared by %s", override.id, cleared_by)
        return True

    def get_override_history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Override create/clear events, newest first."""
        with self._lock:
            events = list(self._override_history)
        events.reverse()
        if limit is not None:
            events = events[:max(0, limit)]
        return events

    def get_state(self) -> Dict[str, Any]:
        approval = self.get_active_approval()
        override = self.get_active_override()
        with self._lock:
            cached = {m.value: d.to_dict() for m, (_, d) in self._ttl_cache.items()}
            checks = [c.to_dict() for c in self._checks.values()]
        return {
            "enabled": self.enabled,
            "config_version": self.settings.CUTOVER_CONFIG_VERSION,
            "checks": checks,
            "active_approval": approval.to_dict() if approval else None,
            "active_override": override.to_dict() if override else None,
            "cached_decisions": cached,
        }


def _timed_call(fn: CheckFn) -> Tuple[Any, float]:
    started = time.perf_counter()
    raw = fn()
    return raw, (time.perf_counter() - started) * 1000


def _normalize(check: RegisteredCheck, raw: Any, duration_ms: float) -> CheckResult:
    """Coerce whatever a check returned into a CheckResult owned by the registration."""
    if isinstance(raw, CheckResult):
        status, message = raw.status, raw.message
    elif isinstance(raw, Mapping):
        if "status" not in raw:
            raise ValueError("check result mapping has no 'status'")
        status, message = raw["status"], raw.get("message", "")
    elif isinstance(raw, (tuple, list)) and len(raw) == 2:
        status, message = raw
    else:
        raise ValueError(f"unrecognised check result: {raw!r}")
    return CheckResult(
        id=check.check_id,
        name=check.name,
        status=coerce_enum(CheckStatus, status, "check status"),
        message="" if message is None else str(message),
        duration_ms=duration_ms,
        hard=check.hard,
    )


def _describe(result: CheckResult) -> str:
    return f"{result.name}: {result.message}" if result.message else result.name
