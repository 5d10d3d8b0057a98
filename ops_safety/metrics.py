"""Prometheus metrics for the safety control plane.

Module-level collectors shared by every component instance in the process.
"""

from __future__ import annotations
import logging

from prometheus_client import Counter, Gauge, start_http_server

from .config import get_settings

logger = logging.getLogger(__name__)


# Kill switches
kill_switch_changes_total = Counter(
    "ops_safety_kill_switch_changes_total", "Kill switch state changes", ["subsystem", "action"]
)
kill_switch_rejections_total = Counter(
    "ops_safety_kill_switch_rejections_total", "API mutations rejected by env precedence", ["subsystem"]
)
kill_switches_active = Gauge("ops_safety_kill_switches_active", "Kill switches currently engaged")

# Cost guards
cost_usage_usd_total = Counter("ops_safety_cost_usage_usd_total", "Recorded AI spend in USD", ["feature"])
cost_checks_total = Counter("ops_safety_cost_checks_total", "Cost guard checks", ["feature", "result"])
cost_degraded_features = Gauge("ops_safety_cost_degraded_features", "Features over their hard ceiling")

# Provider health
provider_requests_total = Counter(
    "ops_safety_provider_requests_total", "AI provider requests observed", ["provider", "outcome"]
)
provider_transitions_total = Counter(
    "ops_safety_provider_transitions_total", "Provider state transitions", ["provider", "to_state"]
)
no_provider_available_total = Counter(
    "ops_safety_no_provider_available_total", "Provider selections with every provider disabled"
)

# Readiness
readiness_evaluations_total = Counter(
    "ops_safety_readiness_evaluations_total", "Readiness evaluations computed", ["mode", "decision"]
)
readiness_check_failures_total = Counter(
    "ops_safety_readiness_check_failures_total", "Readiness checks that raised or timed out", ["check_id"]
)
readiness_overrides_total = Counter(
    "ops_safety_readiness_overrides_total", "Readiness overrides created", ["new_decision"]
)

# Enforcement
enforcement_decisions_total = Counter(
    "ops_safety_enforcement_decisions_total", "Enforcement hook decisions", ["hook", "result"]
)
enforcement_errors_total = Counter(
    "ops_safety_enforcement_errors_total", "Internal errors converted to blocks", ["hook"]
)


def start_metrics_server_if_enabled():
    cfg = get_settings()
    try:
        if getattr(cfg, "METRICS_PORT", None):
            start_http_server(cfg.METRICS_PORT)
    except Exception:
        logger.exception("failed to start metrics server")
