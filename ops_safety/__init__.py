"""
Ops Safety Module

OPERATIONAL SAFETY CONTROL PLANE:
The shared gate that publishing, AI calls, bulk changes, job execution,
regeneration and feature rollout must pass through. Every decision is
allowed, allowed with an approval, or blocked. Fail safe, never fail open.

ARCHITECTURE:
- config.py: Settings (env / .env), flag parsing with safe defaults
- models.py: Data contracts (enums, switch state, usage, provider status, decisions)
- kill_switches.py: Per-subsystem kill switches, ENV beats API, timed overrides
- cost_guard.py: Per-feature daily/monthly AI budgets
- provider_health.py: AI provider health, failover and concurrency tiers
- readiness.py: Go-live readiness checks, signed decisions, approvals, overrides
- audit_logger.py: Append-only enforcement log
- enforcement.py: The before_* hooks callers invoke
- service.py: Composition root (SafetyControlPlane, get_control_plane)
- admin.py / app.py: FastAPI admin and dashboard API

DEFAULT BEHAVIOR: every ENABLE_* flag is off, so every hook allows until
enforcement is switched on.
"""

from ops_safety.models import (
    CheckResult,
    CheckStatus,
    ConcurrencyTier,
    CutoverDecision,
    CutoverMode,
    EnforcementResult,
    Feature,
    Provider,
    ProviderState,
    Subsystem,
    SwitchSource,
)
from ops_safety.config import Settings, get_settings, parse_flag
from ops_safety.kill_switches import KillSwitchRegistry
from ops_safety.cost_guard import CostGuardLedger
from ops_safety.provider_health import ProviderHealthMonitor
from ops_safety.readiness import ReadinessEvaluator
from ops_safety.audit_logger import EnforcementAuditLogger
from ops_safety.enforcement import EnforcementHooks
from ops_safety.service import SafetyControlPlane, get_control_plane

__all__ = [
    "CheckResult",
    "CheckStatus",
    "ConcurrencyTier",
    "CutoverDecision",
    "CutoverMode",
    "EnforcementResult",
    "Feature",
    "Provider",
    "ProviderState",
    "Subsystem",
    "SwitchSource",
    "Settings",
    "get_settings",
    "parse_flag",
    "KillSwitchRegistry",
    "CostGuardLedger",
    "ProviderHealthMonitor",
    "ReadinessEvaluator",
    "EnforcementAuditLogger",
    "EnforcementHooks",
    "SafetyControlPlane",
    "get_control_plane",
]
