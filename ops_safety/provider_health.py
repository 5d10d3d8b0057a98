"""
Ops Safety: Provider Health Monitor

Per-provider state machine driven by the rolling failure rate of recent AI
calls:

    healthy  --(rate >= degraded threshold)-->  degraded
    degraded --(rate <  degraded threshold)-->  healthy
    any      --(rate >= critical threshold)-->  disabled (disabled_by=auto)
    any      --(disable_provider)----------->  disabled (disabled_by=manual)
    disabled --(enable_provider)------------>  healthy

Automatic transitions only happen once the window holds the minimum sample
count. A disabled provider never leaves that state on its own.

AI client wrappers read this monitor directly to pick a provider
(get_current_provider) and a batch size (get_concurrency_level).
"""

import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from . import metrics
from .config import Settings, get_settings
from .models import (
    Clock,
    ConcurrencyLevel,
    ConcurrencyTier,
    DisabledBy,
    Provider,
    ProviderAction,
    ProviderState,
    ProviderStatus,
    coerce_enum,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_PRIMARY = Provider.ANTHROPIC


class ProviderHealthMonitor:
    """Tracks AI provider health and drives failover selection."""

    def __init__(self, settings: Optional[Settings] = None, clock: Optional[Clock] = None):
        self.settings = settings or get_settings()
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._statuses: Dict[Provider, ProviderStatus] = {p: ProviderStatus(provider=p) for p in Provider}
        # True = failure
        self._windows: Dict[Provider, Deque[bool]] = {
            p: deque(maxlen=self.settings.PROVIDER_WINDOW_SIZE) for p in Provider
        }
        self._actions: Deque[ProviderAction] = deque(maxlen=self.settings.PROVIDER_ACTION_LOG_CAPACITY)
        self.primary = self._resolve_primary(self.settings.AI_PRIMARY_PROVIDER)
        self.failover_order = self._build_failover_order(self.settings.failover_providers)

    @staticmethod
    def _resolve_primary(name: str) -> Provider:
        try:
            return coerce_enum(Provider, name, "provider")
        except ValueError:
            logger.warning("AI_PRIMARY_PROVIDER %r is not a known provider; using %s", name, DEFAULT_PRIMARY.value)
            return DEFAULT_PRIMARY

    def _build_failover_order(self, names: List[str]) -> List[Provider]:
        order: List[Provider] = []
        for name in names:
            try:
                provider = coerce_enum(Provider, name, "provider")
            except ValueError:
                logger.warning("AI_FAILOVER_ORDER entry %r is not a known provider; skipped", name)
                continue
            if provider != self.primary and provider not in order:
                order.append(provider)
        # providers missing from the configured order go last, in declaration order
        for provider in Provider:
            if provider != self.primary and provider not in order:
                order.append(provider)
        return order

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_request(
        self,
        provider,
        latency_ms: float,
        success: bool,
        is_timeout: bool = False,
    ) -> Dict[str, Any]:
        """
        Record the outcome of one AI call and apply any state transition.

        A timeout always counts as a failure.

        Returns:
            The provider's status after recording
        """
        provider = coerce_enum(Provider, provider, "provider")
        failed = (not success) or is_timeout

        with self._lock:
            status = self._statuses[provider]
            m = status.metrics
            m.request_count += 1
            m.total_latency_ms += max(0.0, float(latency_ms))
            m.last_request_at = self._clock()
            if failed:
                m.failure_count += 1
                if is_timeout:
                    m.timeout_count += 1
            else:
                m.success_count += 1

            window = self._windows[provider]
            window.append(failed)
            status.error_rate = sum(window) / len(window)
            self._evaluate(status, len(window))
            snapshot = status.to_dict()

        outcome = "timeout" if is_timeout else ("failure" if failed else "success")
        metrics.provider_requests_total.labels(provider=provider.value, outcome=outcome).inc()
        return snapshot

    def _evaluate(self, status: ProviderStatus, samples: int) -> None:
        if status.state == ProviderState.DISABLED:
            return
        if samples < self.settings.PROVIDER_MIN_SAMPLES:
            return

        rate = status.error_rate
        if rate >= self.settings.PROVIDER_CRITICAL_ERROR_RATE:
            status.disabled_by = DisabledBy.AUTO
            status.disabled_reason = f"Error rate {rate:.0%} over last {samples} requests"
            self._transition(status, ProviderState.DISABLED, "auto_disabled", status.disabled_reason, "system")
            logger.error("provider %s AUTO-DISABLED: %s", status.provider.value, status.disabled_reason)
        elif rate >= self.settings.PROVIDER_DEGRADED_ERROR_RATE:
            if status.state == ProviderState.HEALTHY:
                reason = f"Error rate {rate:.0%} over last {samples} requests"
                self._transition(status, ProviderState.DEGRADED, "degraded", reason, "system")
                logger.warning("provider %s DEGRADED: %s", status.provider.value, reason)
        elif status.state == ProviderState.DEGRADED:
            reason = f"Error rate recovered to {rate:.0%}"
            self._transition(status, ProviderState.HEALTHY, "recovered", reason, "system")
            logger.info("provider %s recovered: %s", status.provider.value, reason)

    def _transition(
        self,
        status: ProviderStatus,
        to_state: ProviderState,
        action: str,
        reason: str,
        actor: str,
    ) -> None:
        from_state = status.state
        status.state = to_state
        status.state_changed_at = self._clock()
        self._actions.append(
            ProviderAction(
                provider=status.provider,
                action=action,
                from_state=from_state,
                to_state=to_state,
                reason=reason,
                actor=actor,
                timestamp=status.state_changed_at,
            )
        )
        metrics.provider_transitions_total.labels(provider=status.provider.value, to_state=to_state.value).inc()

    # ------------------------------------------------------------------
    # Manual control
    # ------------------------------------------------------------------

    def disable_provider(self, provider, reason: str, actor: str = "admin") -> bool:
        """
        Manually disable a provider. It stays disabled until enable_provider().

        Returns:
            False for an unknown provider or one already disabled manually
        """
        try:
            provider = coerce_enum(Provider, provider, "provider")
        except ValueError:
            return False
        with self._lock:
            status = self._statuses[provider]
            if status.state == ProviderState.DISABLED and status.disabled_by == DisabledBy.MANUAL:
                return False
            status.disabled_by = DisabledBy.MANUAL
            status.disabled_reason = reason
            self._transition(status, ProviderState.DISABLED, "manual_disabled", reason, actor)
        logger.warning("provider %s manually disabled by %s: %s", provider.value, actor, reason)
        return True

    def enable_provider(self, provider, actor: str = "admin") -> bool:
        """
        Return a provider to healthy and start its error window afresh.

        Returns:
            False for an unknown provider or one already healthy
        """
        try:
            provider = coerce_enum(Provider, provider, "provider")
        except ValueError:
            return False
        with self._lock:
            status = self._statuses[provider]
            if status.state == ProviderState.HEALTHY:
                return False
            status.disabled_by = None
            status.disabled_reason = None
            status.error_rate = 0.0
            self._windows[provider].clear()
            self._transition(status, ProviderState.HEALTHY, "enabled", "Enabled manually", actor)
        logger.info("provider %s enabled by %s", provider.value, actor)
        return True

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def get_current_provider(self) -> Optional[str]:
        """
        Provider that new AI calls should use.

        The primary unless it is disabled; otherwise the first healthy
        provider in failover order, then the first degraded one. A None
        result is counted and logged as a failed selection.

        Returns:
            Provider name, or None when every provider is disabled
        """
        provider = self.peek_current_provider()
        if provider is None:
            metrics.no_provider_available_total.inc()
            logger.error("no AI provider available: all providers are disabled")
        return provider

    def peek_current_provider(self) -> Optional[str]:
        """Same selection as get_current_provider(), for dashboards and checks: no metric, no log."""
        with self._lock:
            if self._statuses[self.primary].state != ProviderState.DISABLED:
                return self.primary.value
            for wanted in (ProviderState.HEALTHY, ProviderState.DEGRADED):
                for candidate in self.failover_order:
                    if self._statuses[candidate].state == wanted:
                        return candidate.value
        return None

    def get_concurrency_level(self) -> ConcurrencyLevel:
        with self._lock:
            unhealthy = sum(1 for s in self._statuses.values() if s.state != ProviderState.HEALTHY)
            all_disabled = all(s.state == ProviderState.DISABLED for s in self._statuses.values())

        if all_disabled:
            return ConcurrencyLevel(ConcurrencyTier.PAUSED, 0, unhealthy)
        if unhealthy == 0:
            return ConcurrencyLevel(ConcurrencyTier.FULL, self.settings.CONCURRENCY_FULL, unhealthy)
        if unhealthy == 1:
            return ConcurrencyLevel(ConcurrencyTier.REDUCED, self.settings.CONCURRENCY_REDUCED, unhealthy)
        return ConcurrencyLevel(ConcurrencyTier.MINIMAL, self.settings.CONCURRENCY_MINIMAL, unhealthy)

    def should_run_non_critical(self) -> bool:
        """Non-critical AI work (backfills, enrichment) only runs when every provider is healthy."""
        return self.get_concurrency_level().tier == ConcurrencyTier.FULL

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    def get_provider_status(self, provider) -> Optional[Dict[str, Any]]:
        try:
            provider = coerce_enum(Provider, provider, "provider")
        except ValueError:
            return None
        with self._lock:
            return self._statuses[provider].to_dict()

    def get_provider_statuses(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {p.value: s.to_dict() for p, s in self._statuses.items()}

    def get_state(self) -> Dict[str, Any]:
        with self._lock:
            statuses = {p.value: s.to_dict() for p, s in self._statuses.items()}
            degraded = [p.value for p, s in self._statuses.items() if s.state == ProviderState.DEGRADED]
            disabled = [p.value for p, s in self._statuses.items() if s.state == ProviderState.DISABLED]
        return {
            "primary": self.primary.value,
            "failover_order": [p.value for p in self.failover_order],
            "current_provider": self.peek_current_provider(),
            "concurrency": self.get_concurrency_level().to_dict(),
            "should_run_non_critical": self.should_run_non_critical(),
            "degraded": degraded,
            "disabled": disabled,
            "providers": statuses,
        }

    def get_recent_actions(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """State transitions, newest first."""
        with self._lock:
            actions = list(self._actions)
        actions.reverse()
        if limit is not None:
            actions = actions[:max(0, limit)]
        return [a.to_dict() for a in actions]
