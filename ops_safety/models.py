"""
Ops Safety: Data Models

Pure data contracts shared by the kill switch registry, cost guard ledger,
provider health monitor, readiness evaluator and enforcement hooks.

- Enums define the CLOSED SETS callers may pass in (subsystems, features,
  providers, decisions). Anything outside them is a programmer error.
- Records that form an audit trail are frozen dataclasses.
- Mutable records (switch state, usage, provider status) are only mutated by
  their owning component while it holds its lock.
- to_dict() projections are what dashboards and the admin API consume.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timezone
from uuid import uuid4


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ============================================================================
# ENUMS
# ============================================================================

class Subsystem(Enum):
    """Subsystems guarded by a kill switch. Env override is KILL_<NAME>."""
    SEARCH = "search"
    AEO = "aeo"
    CHAT = "chat"
    OCTOPUS = "octopus"
    PUBLISHING = "publishing"
    JOBS = "jobs"
    AI_CALLS = "ai_calls"
    REGENERATION = "regeneration"
    BULK_CHANGES = "bulk_changes"
    ROLLOUT = "rollout"

    @property
    def env_var(self) -> str:
        return f"KILL_{self.value.upper()}"


class SwitchSource(Enum):
    """Where a kill switch state came from. ENV always wins over API."""
    ENV = "env"
    API = "api"


class Feature(Enum):
    """AI-spending features tracked by the cost guard."""
    SEARCH = "search"
    AEO = "aeo"
    CHAT = "chat"
    OCTOPUS = "octopus"
    TRANSLATION = "translation"
    IMAGES = "images"
    CONTENT_GENERATION = "content_generation"


class Provider(Enum):
    """AI providers known to the health monitor."""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GEMINI = "gemini"
    DEEPSEEK = "deepseek"
    OPENROUTER = "openrouter"


class ProviderState(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DISABLED = "disabled"


class DisabledBy(Enum):
    AUTO = "auto"
    MANUAL = "manual"


class ConcurrencyTier(Enum):
    """Throttle tier derived from how many providers are unhealthy."""
    FULL = "full"
    REDUCED = "reduced"
    MINIMAL = "minimal"
    PAUSED = "paused"


class CheckStatus(Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"
    SKIP = "skip"


class CutoverDecision(Enum):
    CAN_GO_LIVE = "CAN_GO_LIVE"
    WARN = "WARN"
    BLOCK = "BLOCK"


class CutoverMode(Enum):
    LIVE = "live"
    DRY_RUN = "dry-run"


def coerce_enum(enum_cls, value, what: Optional[str] = None):
    """Resolve ``value`` to a member of ``enum_cls`` or raise ValueError."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValueError(
            f"Invalid {what or enum_cls.__name__}: {value!r} (expected one of: {allowed})"
        ) from None


# ============================================================================
# KILL SWITCHES
# ============================================================================

@dataclass
class KillSwitchState:
    """
    Current state of one subsystem's kill switch.

    An ENV-sourced switch can never be released by an API call. A timed
    override (expires_at set) is inactive once expires_at has passed, whether
    or not anyone has looked at it since.
    """
    subsystem: Subsystem
    enabled: bool = False
    source: SwitchSource = SwitchSource.API
    reason: str = ""
    enabled_by: Optional[str] = None
    enabled_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subsystem": self.subsystem.value,
            "enabled": self.enabled,
            "source": self.source.value,
            "reason": self.reason,
            "enabled_by": self.enabled_by,
            "enabled_at": _iso(self.enabled_at),
            "expires_at": _iso(self.expires_at),
        }


@dataclass(frozen=True)
class KillSwitchEvent:
    """Immutable audit record for one kill switch mutation."""
    subsystem: Subsystem
    action: str  # "enabled", "disabled", "expired", "rejected"
    source: SwitchSource
    actor: str
    reason: str
    timestamp: datetime
    expires_at: Optional[datetime] = None
    event_id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "subsystem": self.subsystem.value,
            "action": self.action,
            "source": self.source.value,
            "actor": self.actor,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
            "expires_at": _iso(self.expires_at),
        }


# ============================================================================
# COST GUARDS
# ============================================================================

@dataclass
class FeatureUsage:
    """Running spend for one feature against its daily/monthly budget."""
    feature: Feature
    daily_limit_usd: float
    monthly_limit_usd: float
    daily_used_usd: float = 0.0
    monthly_used_usd: float = 0.0
    degraded: bool = False
    request_count: int = 0
    tokens_used: int = 0
    last_used_at: Optional[datetime] = None

    @property
    def usage_percent(self) -> float:
        return max(
            _ratio(self.daily_used_usd, self.daily_limit_usd),
            _ratio(self.monthly_used_usd, self.monthly_limit_usd),
        ) * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature": self.feature.value,
            "daily_used_usd": round(self.daily_used_usd, 6),
            "daily_limit_usd": self.daily_limit_usd,
            "monthly_used_usd": round(self.monthly_used_usd, 6),
            "monthly_limit_usd": self.monthly_limit_usd,
            "usage_percent": round(self.usage_percent, 2),
            "degraded": self.degraded,
            "request_count": self.request_count,
            "tokens_used": self.tokens_used,
            "last_used_at": _iso(self.last_used_at),
        }


def _ratio(used: float, limit: float) -> float:
    # a zero budget is an exhausted budget
    if limit <= 0:
        return float("inf")
    return used / limit


@dataclass(frozen=True)
class UsageEvent:
    feature: Feature
    cost_usd: float
    tokens: int
    timestamp: datetime
    provider: Optional[str] = None
    model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature": self.feature.value,
            "cost_usd": self.cost_usd,
            "tokens": self.tokens,
            "provider": self.provider,
            "model": self.model,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class CostCheckResult:
    allowed: bool
    degraded: bool
    usage_percent: float
    remaining_daily_usd: float
    remaining_monthly_usd: float
    reason: str
    warning: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "degraded": self.degraded,
            "usage_percent": self.usage_percent,
            "remaining_daily_usd": self.remaining_daily_usd,
            "remaining_monthly_usd": self.remaining_monthly_usd,
            "reason": self.reason,
            "warning": self.warning,
        }


# ============================================================================
# PROVIDER HEALTH
# ============================================================================

@dataclass
class ProviderMetrics:
    request_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    timeout_count: int = 0
    total_latency_ms: float = 0.0
    last_request_at: Optional[datetime] = None

    @property
    def avg_latency_ms(self) -> float:
        if not self.request_count:
            return 0.0
        return self.total_latency_ms / self.request_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_count": self.request_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "timeout_count": self.timeout_count,
            "avg_latency_ms": round(self.avg_latency_ms, 2),
            "last_request_at": _iso(self.last_request_at),
        }


@dataclass
class ProviderStatus:
    """
    Health state of one AI provider.

    disabled_by=MANUAL pins the provider disabled: only enable_provider()
    brings it back.
    """
    provider: Provider
    state: ProviderState = ProviderState.HEALTHY
    metrics: ProviderMetrics = field(default_factory=ProviderMetrics)
    disabled_by: Optional[DisabledBy] = None
    disabled_reason: Optional[str] = None
    error_rate: float = 0.0
    state_changed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider.value,
            "state": self.state.value,
            "metrics": self.metrics.to_dict(),
            "disabled_by": self.disabled_by.value if self.disabled_by else None,
            "disabled_reason": self.disabled_reason,
            "error_rate": round(self.error_rate, 4),
            "state_changed_at": _iso(self.state_changed_at),
        }


@dataclass(frozen=True)
class ProviderAction:
    provider: Provider
    action: str  # "degraded", "recovered", "auto_disabled", "manual_disabled", "enabled"
    from_state: ProviderState
    to_state: ProviderState
    reason: str
    actor: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider.value,
            "action": self.action,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "reason": self.reason,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ConcurrencyLevel:
    tier: ConcurrencyTier
    max_parallel: int
    unhealthy_providers: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "max_parallel": self.max_parallel,
            "unhealthy_providers": self.unhealthy_providers,
        }


# ============================================================================
# READINESS / CUTOVER
# ============================================================================

@dataclass(frozen=True)
class CheckResult:
    """Outcome of one external readiness check."""
    id: str
    name: str
    status: CheckStatus
    message: str = ""
    duration_ms: float = 0.0
    hard: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "duration_ms": round(self.duration_ms, 3),
            "hard": self.hard,
        }


@dataclass(frozen=True)
class Approval:
    """Time-boxed human sign-off. Never changes the computed decision."""
    approved_by: str
    note: str
    created_at: datetime
    expires_at: datetime
    id: str = field(default_factory=lambda: f"apr_{uuid4().hex[:12]}")

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "approved_by": self.approved_by,
            "note": self.note,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class Override:
    """
    Administrator-forced readiness decision.

    logged is not an init argument: every override is logged, no exceptions.
    """
    overridden_by: str
    new_decision: CutoverDecision
    reason: str
    created_at: datetime
    id: str = field(default_factory=lambda: f"ovr_{uuid4().hex[:12]}")
    logged: bool = field(default=True, init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "overridden_by": self.overridden_by,
            "new_decision": self.new_decision.value,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
            "logged": self.logged,
        }


@dataclass(frozen=True)
class Signature:
    hash: str
    version: str

    def to_dict(self) -> Dict[str, Any]:
        return {"hash": self.hash, "version": self.version}


@dataclass(frozen=True)
class ReadinessDecision:
    decision: CutoverDecision
    mode: CutoverMode
    score: int
    hard_blockers: List[str]
    soft_blockers: List[str]
    signature: Signature
    evaluated_at: datetime
    checks: List[CheckResult] = field(default_factory=list)
    override: Optional[Override] = None
    approval: Optional[Approval] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "mode": self.mode.value,
            "score": self.score,
            "hard_blockers": list(self.hard_blockers),
            "soft_blockers": list(self.soft_blockers),
            "signature": self.signature.to_dict(),
            "evaluated_at": self.evaluated_at.isoformat(),
            "checks": [c.to_dict() for c in self.checks],
            "override": self.override.to_dict() if self.override else None,
            "approval": self.approval.to_dict() if self.approval else None,
            "reason": self.reason,
        }


# ============================================================================
# ENFORCEMENT
# ============================================================================

@dataclass(frozen=True)
class EnforcementResult:
    allowed: bool
    reason: str
    decision: Optional[CutoverDecision] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "decision": self.decision.value if self.decision else None,
        }


@dataclass(frozen=True)
class EnforcementLogEntry:
    """Append-only record of one enforcement hook call."""
    hook: str
    allowed: bool
    reason: str
    timestamp: datetime
    decision: Optional[CutoverDecision] = None
    context: Dict[str, Any] = field(default_factory=dict)
    entry_id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "hook": self.hook,
            "allowed": self.allowed,
            "reason": self.reason,
            "decision": self.decision.value if self.decision else None,
            "context": dict(self.context),
            "timestamp": self.timestamp.isoformat(),
        }
