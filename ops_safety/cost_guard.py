"""
Ops Safety: Cost Guard Ledger

Per-feature spend tracking against daily and monthly USD budgets.

usage_percent = max(daily_used / daily_limit, monthly_used / monthly_limit) * 100

- usage_percent >= hard ceiling (default 100): blocked, feature degraded
- usage_percent >= warning threshold (default 80): allowed, flagged
- degraded is recomputed whenever usage, limits or counters change, so
  raising a limit clears it immediately
- counters only reset through reset_daily() / reset_monthly()
- check_cost() judges the projected spend: recorded plus the estimate

Dollar amounts are computed by the AI client layer; the ledger only adds
them up. Budget exhaustion is a normal result, not an error.
"""

import logging
import threading
from collections import deque
from dataclasses import replace
from typing import Any, Deque, Dict, List, Optional, Tuple

from . import metrics
from .config import Settings, get_settings
from .models import (
    Clock,
    CostCheckResult,
    Feature,
    FeatureUsage,
    UsageEvent,
    coerce_enum,
    utc_now,
)

logger = logging.getLogger(__name__)

# (daily, monthly) USD
DEFAULT_FEATURE_LIMITS: Dict[Feature, Tuple[float, float]] = {
    Feature.SEARCH: (10.0, 200.0),
    Feature.AEO: (20.0, 400.0),
    Feature.CHAT: (25.0, 500.0),
    Feature.OCTOPUS: (50.0, 1000.0),
    Feature.TRANSLATION: (30.0, 600.0),
    Feature.IMAGES: (15.0, 300.0),
    Feature.CONTENT_GENERATION: (50.0, 1000.0),
}

INF = float("inf")


class CostGuardLedger:
    """Thread-safe ledger of AI spend per feature."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        limits: Optional[Dict[Any, Tuple[float, float]]] = None,
    ):
        self.settings = settings or get_settings()
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._usage: Dict[Feature, FeatureUsage] = {}
        self._warned: Dict[Feature, bool] = {}
        self._history: Deque[UsageEvent] = deque(maxlen=self.settings.COST_HISTORY_CAPACITY)

        configured = dict(DEFAULT_FEATURE_LIMITS)
        for key, value in (limits or {}).items():
            configured[coerce_enum(Feature, key, "feature")] = value
        for feature, (daily, monthly) in configured.items():
            self._usage[feature] = FeatureUsage(
                feature=feature, daily_limit_usd=float(daily), monthly_limit_usd=float(monthly)
            )
            self._warned[feature] = False

    @property
    def enabled(self) -> bool:
        return bool(self.settings.ENABLE_COST_GUARDS)

    @property
    def warning_threshold(self) -> float:
        return float(self.settings.COST_WARNING_THRESHOLD_PERCENT)

    @property
    def hard_ceiling(self) -> float:
        return float(self.settings.COST_HARD_CEILING_PERCENT)

    def check_cost(self, feature, estimated_cost_usd: float = 0.0) -> CostCheckResult:
        """
        Decide whether a feature may spend estimated_cost_usd more right now.

        The verdict and usage_percent use the projected spend (recorded plus
        the estimate). remaining_* and degraded reflect recorded spend only;
        callers record the actual cost with record_usage().
        """
        feature = coerce_enum(Feature, feature, "feature")
        if estimated_cost_usd < 0:
            raise ValueError(f"estimated_cost_usd must be non-negative, got {estimated_cost_usd}")

        if not self.enabled:
            metrics.cost_checks_total.labels(feature=feature.value, result="bypass").inc()
            return CostCheckResult(
                allowed=True,
                degraded=False,
                usage_percent=0.0,
                remaining_daily_usd=INF,
                remaining_monthly_usd=INF,
                reason="Cost guards disabled",
            )

        with self._lock:
            usage = self._usage[feature]
            self._recompute(usage)
            pct = _projected_percent(usage, estimated_cost_usd)
            remaining_daily = max(0.0, usage.daily_limit_usd - usage.daily_used_usd)
            remaining_monthly = max(0.0, usage.monthly_limit_usd - usage.monthly_used_usd)
            degraded = usage.degraded

        if pct >= self.hard_ceiling:
            result = CostCheckResult(
                allowed=False,
                degraded=True,
                usage_percent=pct,
                remaining_daily_usd=remaining_daily,
                remaining_monthly_usd=remaining_monthly,
                reason=f"Cost limit exceeded for {feature.value} ({_fmt_pct(pct)} of budget after this request)",
            )
            metrics.cost_checks_total.labels(feature=feature.value, result="blocked").inc()
        elif pct >= self.warning_threshold:
            result = CostCheckResult(
                allowed=True,
                degraded=degraded,
                usage_percent=pct,
                remaining_daily_usd=remaining_daily,
                remaining_monthly_usd=remaining_monthly,
                reason=f"Approaching cost limit for {feature.value} ({_fmt_pct(pct)} of budget after this request)",
                warning=True,
            )
            metrics.cost_checks_total.labels(feature=feature.value, result="warning").inc()
        else:
            result = CostCheckResult(
                allowed=True,
                degraded=degraded,
                usage_percent=pct,
                remaining_daily_usd=remaining_daily,
                remaining_monthly_usd=remaining_monthly,
                reason="Within budget",
            )
            metrics.cost_checks_total.labels(feature=feature.value, result="allowed").inc()
        return result

    def record_usage(
        self,
        feature,
        cost_usd: float,
        tokens: int = 0,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Add actual spend to a feature's daily and monthly counters.

        Recorded even when the ledger is disabled, so spend stays visible.

        Returns:
            The feature's usage snapshot after recording
        """
        feature = coerce_enum(Feature, feature, "feature")
        if cost_usd < 0:
            raise ValueError(f"cost_usd must be non-negative, got {cost_usd}")
        if tokens < 0:
            raise ValueError(f"tokens must be non-negative, got {tokens}")

        with self._lock:
            now = self._clock()
            usage = self._usage[feature]
            usage.daily_used_usd += cost_usd
            usage.monthly_used_usd += cost_usd
            usage.request_count += 1
            usage.tokens_used += tokens
            usage.last_used_at = now
            self._history.append(
                UsageEvent(
                    feature=feature,
                    cost_usd=cost_usd,
                    tokens=tokens,
                    timestamp=now,
                    provider=provider,
                    model=model,
                )
            )
            self._recompute(usage)
            snapshot = usage.to_dict()

        metrics.cost_usage_usd_total.labels(feature=feature.value).inc(cost_usd)
        return snapshot

    def set_feature_limits(self, feature, daily_limit_usd: float, monthly_limit_usd: float) -> Dict[str, Any]:
        feature = coerce_enum(Feature, feature, "feature")
        if daily_limit_usd < 0 or monthly_limit_usd < 0:
            raise ValueError("limits must be non-negative")
        with self._lock:
            usage = self._usage[feature]
            usage.daily_limit_usd = float(daily_limit_usd)
            usage.monthly_limit_usd = float(monthly_limit_usd)
            self._recompute(usage)
            snapshot = usage.to_dict()
        logger.info(
            "cost limits for %s set to daily=$%.2f monthly=$%.2f",
            feature.value, daily_limit_usd, monthly_limit_usd,
        )
        return snapshot

    def get_feature_usage(self, feature) -> Optional[Dict[str, Any]]:
        """Usage snapshot for a feature, or None if the feature is unknown."""
        try:
            feature = coerce_enum(Feature, feature, "feature")
        except ValueError:
            return None
        with self._lock:
            return self._usage[feature].to_dict()

    def get_all_usage(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {f.value: u.to_dict() for f, u in self._usage.items()}

    def get_total_spending(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "daily_usd": round(sum(u.daily_used_usd for u in self._usage.values()), 6),
                "monthly_usd": round(sum(u.monthly_used_usd for u in self._usage.values()), 6),
                "daily_limit_usd": sum(u.daily_limit_usd for u in self._usage.values()),
                "monthly_limit_usd": sum(u.monthly_limit_usd for u in self._usage.values()),
                "by_feature": {
                    f.value: {
                        "daily_usd": round(u.daily_used_usd, 6),
                        "monthly_usd": round(u.monthly_used_usd, 6),
                    }
                    for f, u in self._usage.items()
                },
            }

    def reset_daily(self) -> None:
        with self._lock:
            for usage in self._usage.values():
                usage.daily_used_usd = 0.0
                self._recompute(usage)
        logger.info("daily cost counters reset")

    def reset_monthly(self) -> None:
        """Zero daily AND monthly counters (a new month is also a new day)."""
        with self._lock:
            for usage in self._usage.values():
                usage.daily_used_usd = 0.0
                usage.monthly_used_usd = 0.0
                self._recompute(usage)
        logger.info("monthly cost counters reset")

    def is_feature_degraded(self, feature) -> bool:
        feature = coerce_enum(Feature, feature, "feature")
        with self._lock:
            return self._usage[feature].degraded

    def get_degraded_features(self) -> List[str]:
        with self._lock:
            return [f.value for f, u in self._usage.items() if u.degraded]

    def get_usage_history(self, feature=None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Recorded usage events, oldest first, optionally for one feature."""
        if feature is not None:
            feature = coerce_enum(Feature, feature, "feature")
        with self._lock:
            events = [e for e in self._history if feature is None or e.feature == feature]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return [e.to_dict() for e in events]

    def _recompute(self, usage: FeatureUsage) -> None:
        pct = usage.usage_percent
        was_degraded = usage.degraded
        usage.degraded = pct >= self.hard_ceiling

        if usage.degraded and not was_degraded:
            logger.warning("feature %s DEGRADED: %s of budget used", usage.feature.value, _fmt_pct(pct))
        elif was_degraded and not usage.degraded:
            logger.info("feature %s recovered: %s of budget used", usage.feature.value, _fmt_pct(pct))

        warn = self.warning_threshold <= pct < self.hard_ceiling
        if warn and not self._warned[usage.feature]:
            logger.warning("feature %s crossed cost warning threshold: %s", usage.feature.value, _fmt_pct(pct))
        self._warned[usage.feature] = warn
        metrics.cost_degraded_features.set(sum(1 for u in self._usage.values() if u.degraded))


def _fmt_pct(pct: float) -> str:
    return "zero budget" if pct == INF else f"{pct:.1f}%"


def _projected_percent(usage: FeatureUsage, estimated_cost_usd: float) -> float:
    return replace(
        usage,
        daily_used_usd=usage.daily_used_usd + estimated_cost_usd,
        monthly_used_usd=usage.monthly_used_usd + estimated_cost_usd,
    ).usage_percent
