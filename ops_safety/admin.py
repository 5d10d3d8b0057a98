import math
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from .models import Feature, Provider, Subsystem, SwitchSource, coerce_enum
from .schemas import (
    ApprovalRequest,
    EmergencyStopRequest,
    FeatureLimitsRequest,
    KillSwitchDisableRequest,
    KillSwitchEnableRequest,
    OverrideRequest,
    ProviderDisableRequest,
    ProviderEnableRequest,
)
from .service import SafetyControlPlane, get_control_plane

router = APIRouter()

# The application binds its control plane at startup; otherwise the process singleton is used.
_bound_plane: Optional[SafetyControlPlane] = None


def bind_control_plane(plane: Optional[SafetyControlPlane]):
    global _bound_plane
    _bound_plane = plane


def _plane() -> SafetyControlPlane:
    return _bound_plane if _bound_plane is not None else get_control_plane()


def require_admin(x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")):
    # simple token check
    token = _plane().settings.OPS_SAFETY_ADMIN_TOKEN
    if token:
        if not x_admin_token or x_admin_token != token:
            raise HTTPException(status_code=401, detail="unauthorized")


def _resolve(enum_cls, value: str, what: str):
    try:
        return coerce_enum(enum_cls, value, what)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


def _jsonable(value: Any) -> Any:
    # zero budgets produce inf, which JSON cannot carry
    if isinstance(value, float) and (math.isinf(value) or math.isnan(value)):
        return None
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _conflict(detail: str):
    raise HTTPException(status_code=409, detail=detail)


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------

@router.get("/status")
def safety_status() -> Dict[str, Any]:
    return _jsonable(_plane().status())


# ---------------------------------------------------------------------------
# Kill switches
# ---------------------------------------------------------------------------

@router.get("/kill-switches")
def kill_switch_list(history: int = Query(50, ge=0, le=1000)) -> Dict[str, Any]:
    registry = _plane().kill_switches
    return {
        "stats": registry.get_stats(),
        "switches": registry.get_all_states(),
        "history": registry.get_event_history(limit=history),
    }


@router.post("/kill-switches/{subsystem}/enable", dependencies=[Depends(require_admin)])
def kill_switch_enable(subsystem: str, body: KillSwitchEnableRequest) -> Dict[str, Any]:
    target = _resolve(Subsystem, subsystem, "subsystem")
    registry = _plane().kill_switches
    if not registry.enable(target, SwitchSource.API, body.reason, actor=body.actor, ttl_ms=body.ttl_ms):
        _conflict(f"kill switch {target.value} is held by environment variable {target.env_var}")
    return {"enabled": True, "state": registry.get_state(target)}


@router.post("/kill-switches/{subsystem}/disable", dependencies=[Depends(require_admin)])
def kill_switch_disable(subsystem: str, body: KillSwitchDisableRequest) -> Dict[str, Any]:
    target = _resolve(Subsystem, subsystem, "subsystem")
    registry = _plane().kill_switches
    if not registry.disable(target, SwitchSource.API, body.reason, actor=body.actor):
        state = registry.get_state(target)
        if state and state["enabled"]:
            _conflict(f"kill switch {target.value} is held by environment variable {target.env_var}")
        _conflict(f"kill switch {target.value} is not engaged")
    return {"disabled": True, "state": registry.get_state(target)}


# ---------------------------------------------------------------------------
# Cost guards
# ---------------------------------------------------------------------------

@router.get("/cost/usage")
def cost_usage() -> Dict[str, Any]:
    ledger = _plane().cost_guard
    return _jsonable({
        "enabled": ledger.enabled,
        "total": ledger.get_total_spending(),
        "features": ledger.get_all_usage(),
        "degraded": ledger.get_degraded_features(),
    })


@router.put("/cost/limits/{feature}", dependencies=[Depends(require_admin)])
def cost_set_limits(feature: str, body: FeatureLimitsRequest) -> Dict[str, Any]:
    target = _resolve(Feature, feature, "feature")
    usage = _plane().cost_guard.set_feature_limits(target, body.daily_limit_usd, body.monthly_limit_usd)
    return _jsonable(usage)


@router.post("/cost/reset-daily", dependencies=[Depends(require_admin)])
def cost_reset_daily() -> Dict[str, Any]:
    ledger = _plane().cost_guard
    ledger.reset_daily()
    return _jsonable({"reset": "daily", "total": ledger.get_total_spending()})


@router.post("/cost/reset-monthly", dependencies=[Depends(require_admin)])
def cost_reset_monthly() -> Dict[str, Any]:
    ledger = _plane().cost_guard
    ledger.reset_monthly()
    return _jsonable({"reset": "monthly", "total": ledger.get_total_spending()})


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

@router.get("/providers")
def provider_list(actions: int = Query(50, ge=0, le=1000)) -> Dict[str, Any]:
    monitor = _plane().providers
    state = monitor.get_state()
    state["recent_actions"] = monitor.get_recent_actions(limit=actions)
    return state


@router.post("/providers/{provider}/disable", dependencies=[Depends(require_admin)])
def provider_disable(provider: str, body: ProviderDisableRequest) -> Dict[str, Any]:
    target = _resolve(Provider, provider, "provider")
    monitor = _plane().providers
    if not monitor.disable_provider(target, body.reason, actor=body.actor):
        _conflict(f"provider {target.value} is already disabled")
    return {"disabled": True, "status": monitor.get_provider_status(target)}


@router.post("/providers/{provider}/enable", dependencies=[Depends(require_admin)])
def provider_enable(provider: str, body: Optional[ProviderEnableRequest] = None) -> Dict[str, Any]:
    target = _resolve(Provider, provider, "provider")
    monitor = _plane().providers
    actor = body.actor if body else "admin"
    if not monitor.enable_provider(target, actor=actor):
        _conflict(f"provider {target.value} is already healthy")
    return {"enabled": True, "status": monitor.get_provider_status(target)}


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------

@router.get("/readiness")
def readiness_evaluate(mode: str = "live") -> Dict[str, Any]:
    try:
        decision = _plane().readiness.evaluate_cutover(mode)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return decision.to_dict()


@router.post("/readiness/approvals", dependencies=[Depends(require_admin)])
def readiness_approve(body: ApprovalRequest) -> Dict[str, Any]:
    try:
        approval = _plane().readiness.create_approval(body.approved_by, body.note, ttl_seconds=body.ttl_seconds)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return approval.to_dict()


@router.post("/readiness/override", dependencies=[Depends(require_admin)])
def readiness_override(body: OverrideRequest) -> Dict[str, Any]:
    try:
        override = _plane().readiness.create_override(body.overridden_by, body.new_decision, body.reason)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return override.to_dict()


@router.delete("/readiness/override", dependencies=[Depends(require_admin)])
def readiness_clear_override(x_admin_actor: Optional[str] = Header(None, alias="X-Admin-Actor")) -> Dict[str, Any]:
    if not _plane().readiness.clear_override(cleared_by=x_admin_actor or "admin"):
        _conflict("no active override")
    return {"cleared": True}


@router.post("/readiness/cache/clear", dependencies=[Depends(require_admin)])
def readiness_clear_cache() -> Dict[str, Any]:
    _plane().hooks.clear_caches()
    return {"cleared": True}


# ---------------------------------------------------------------------------
# Enforcement
# ---------------------------------------------------------------------------

@router.get("/enforcement/log")
def enforcement_log(limit: int = Query(100, ge=1, le=1000)) -> Dict[str, Any]:
    entries = _plane().hooks.get_enforcement_log(limit=limit)
    return {"count": len(entries), "entries": _jsonable(entries)}


@router.get("/enforcement/stats")
def enforcement_stats() -> Dict[str, Any]:
    return _plane().hooks.get_enforcement_stats()


@router.post("/emergency-stop/activate", dependencies=[Depends(require_admin)])
def emergency_stop_activate(body: EmergencyStopRequest) -> Dict[str, Any]:
    hooks = _plane().hooks
    if not hooks.activate_emergency_stop(body.actor, body.reason):
        _conflict("emergency stop already active")
    return hooks.get_emergency_stop()


@router.post("/emergency-stop/deactivate", dependencies=[Depends(require_admin)])
def emergency_stop_deactivate(body: EmergencyStopRequest) -> Dict[str, Any]:
    hooks = _plane().hooks
    if not hooks.deactivate_emergency_stop(body.actor, body.reason):
        if hooks.settings.EMERGENCY_STOP_ENABLED:
            _conflict("emergency stop is held by EMERGENCY_STOP_ENABLED")
        _conflict("emergency stop is not active")
    return hooks.get_emergency_stop()
