"""
Ops Safety: Kill Switch Registry

Per-subsystem circuit breakers with source precedence:

- ENV beats API. A switch engaged by KILL_<SUBSYSTEM> at startup cannot be
  released (or re-sourced) by an API call. Such calls return False and leave
  the switch untouched.
- Timed overrides carry expires_at and are re-checked on EVERY read. Nothing
  depends on a timer firing.
- With ENABLE_KILL_SWITCHES off, is_killed() is False for everything (global
  bypass). Stored state is kept so flipping the flag back restores it.
- Every mutation appends an immutable event to a bounded history.

Rejections are returned as False, never raised. Unknown subsystem names and
sources are programmer errors and raise ValueError.
"""

import logging
import os
import threading
from collections import deque
from datetime import timedelta
from typing import Any, Deque, Dict, List, Mapping, Optional

from . import metrics
from .config import Settings, get_settings, parse_flag
from .models import (
    Clock,
    KillSwitchEvent,
    KillSwitchState,
    Subsystem,
    SwitchSource,
    coerce_enum,
    utc_now,
)

logger = logging.getLogger(__name__)


class KillSwitchRegistry:
    """
    Registry of kill switches, one per Subsystem.

    This is a STATE MACHINE, not a decision engine: it answers "is this
    subsystem killed right now" and records who changed it and why.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        environ: Optional[Mapping[str, str]] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the registry and apply environment-mandated switches.

        Args:
            settings: Settings instance (defaults to the process settings)
            environ: Mapping to read KILL_<SUBSYSTEM> from (defaults to os.environ)
            clock: Callable returning an aware UTC datetime (injectable for tests)
        """
        self.settings = settings or get_settings()
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._states: Dict[Subsystem, KillSwitchState] = {
            s: KillSwitchState(subsystem=s) for s in Subsystem
        }
        self._history: Deque[KillSwitchEvent] = deque(
            maxlen=self.settings.KILL_SWITCH_HISTORY_CAPACITY
        )
        self._load_environment(os.environ if environ is None else environ)

    @property
    def enabled(self) -> bool:
        return bool(self.settings.ENABLE_KILL_SWITCHES)

    def _load_environment(self, environ: Mapping[str, str]) -> None:
        now = self._clock()
        for subsystem in Subsystem:
            raw = environ.get(subsystem.env_var)
            # a malformed KILL_* value engages the switch
            if not parse_flag(raw, safe_default=True, default=False, name=subsystem.env_var):
                continue
            state = self._states[subsystem]
            state.enabled = True
            state.source = SwitchSource.ENV
            state.reason = f"Environment variable {subsystem.env_var} is set"
            state.enabled_by = "environment"
            state.enabled_at = now
            state.expires_at = None
            self._record(subsystem, "enabled", SwitchSource.ENV, "environment", state.reason)
            logger.warning("kill switch %s engaged from environment", subsystem.value)
        self._update_gauge()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_killed(self, subsystem) -> bool:
        """
        Check whether a subsystem is currently killed.

        Expiry of timed overrides is evaluated here, on every call.

        Returns:
            False whenever the registry itself is disabled
        """
        subsystem = coerce_enum(Subsystem, subsystem, "subsystem")
        if not self.enabled:
            return False
        with self._lock:
            return self._refresh(subsystem).enabled

    def get_state(self, subsystem) -> Optional[Dict[str, Any]]:
        """Get one switch's state, or None for an unknown subsystem."""
        try:
            subsystem = coerce_enum(Subsystem, subsystem, "subsystem")
        except ValueError:
            return None
        with self._lock:
            return self._refresh(subsystem).to_dict()

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {s.value: self._refresh(s).to_dict() for s in Subsystem}

    def get_killed_subsystems(self) -> List[str]:
        """Subsystems whose switch is engaged (ignores the registry bypass flag)."""
        with self._lock:
            return [s.value for s in Subsystem if self._refresh(s).enabled]

    def get_event_history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Get the mutation history (oldest first).

        Args:
            limit: Return only the most recent N events
        """
        with self._lock:
            for s in Subsystem:
                self._refresh(s)
            events = list(self._history)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return [e.to_dict() for e in events]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            states = [self._refresh(s) for s in Subsystem]
            killed = [st for st in states if st.enabled]
            last = self._history[-1] if self._history else None
            return {
                "enabled": self.enabled,
                "total_switches": len(states),
                "killed_count": len(killed),
                "killed": [st.subsystem.value for st in killed],
                "by_source": {
                    src.value: sum(1 for st in killed if st.source == src) for src in SwitchSource
                },
                "timed_overrides": sum(1 for st in killed if st.expires_at is not None),
                "events_recorded": len(self._history),
                "last_event_at": last.timestamp.isoformat() if last else None,
            }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def enable(
        self,
        subsystem,
        source,
        reason: str,
        actor: Optional[str] = None,
        ttl_ms: Optional[int] = None,
    ) -> bool:
        """
        Engage a kill switch.

        Args:
            subsystem: Subsystem to kill
            source: "env" or "api"
            reason: Human explanation (recorded in the audit trail)
            actor: Who engaged it
            ttl_ms: Optional lifetime of the override in milliseconds

        Returns:
            True if the switch is now engaged by this call, False if rejected
        """
        subsystem = coerce_enum(Subsystem, subsystem, "subsystem")
        source = coerce_enum(SwitchSource, source, "source")
        if ttl_ms is not None and ttl_ms <= 0:
            raise ValueError(f"ttl_ms must be positive, got {ttl_ms}")
        actor = actor or source.value

        with self._lock:
            state = self._refresh(subsystem)
            if self._api_blocked_by_env(state, source):
                self._reject(subsystem, source, actor, "enable")
                return False

            now = self._clock()
            state.enabled = True
            state.source = source
            state.reason = reason
            state.enabled_by = actor
            state.enabled_at = now
            expires_at = now + timedelta(milliseconds=ttl_ms) if ttl_ms else None
            state.expires_at = expires_at
            self._record(subsystem, "enabled", source, actor, reason, expires_at)
            self._update_gauge()

        logger.warning(
            "kill switch %s ENGAGED by %s (%s): %s%s",
            subsystem.value, actor, source.value, reason,
            f" [expires {expires_at.isoformat()}]" if expires_at else "",
        )
        return True

    def disable(self, subsystem, source, reason: str, actor: Optional[str] = None) -> bool:
        """
        Release a kill switch.

        Returns:
            False if the switch is env-sourced and the caller is the API,
            or if the switch was not engaged
        """
        subsystem = coerce_enum(Subsystem, subsystem, "subsystem")
        source = coerce_enum(SwitchSource, source, "source")
        actor = actor or source.value

        with self._lock:
            state = self._refresh(subsystem)
            if self._api_blocked_by_env(state, source):
                self._reject(subsystem, source, actor, "disable")
                return False
            if not state.enabled:
                return False
            self._release(state)
            self._record(subsystem, "disabled", source, actor, reason)
            self._update_gauge()

        logger.warning("kill switch %s RELEASED by %s (%s): %s", subsystem.value, actor, source.value, reason)
        return True

    def toggle(self, subsystem, source, reason: str, actor: Optional[str] = None) -> bool:
        """Flip a switch. Returns the result of the underlying enable/disable."""
        subsystem = coerce_enum(Subsystem, subsystem, "subsystem")
        with self._lock:
            if self._refresh(subsystem).enabled:
                return self.disable(subsystem, source, reason, actor)
            return self.enable(subsystem, source, reason, actor)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _api_blocked_by_env(state: KillSwitchState, source: SwitchSource) -> bool:
        """The single precedence guard: API never touches an engaged ENV switch."""
        return state.enabled and state.source == SwitchSource.ENV and source == SwitchSource.API

    def _refresh(self, subsystem: Subsystem) -> KillSwitchState:
        state = self._states[subsystem]
        if state.enabled and state.is_expired(self._clock()):
            expired_at = state.expires_at
            self._release(state)
            self._record(
                subsystem, "expired", SwitchSource.API, "system",
                f"Timed override expired at {expired_at.isoformat()}",
            )
            self._update_gauge()
            logger.info("kill switch %s timed override expired", subsystem.value)
        return state

    @staticmethod
    def _release(state: KillSwitchState) -> None:
        state.enabled = False
        state.source = SwitchSource.API
        state.reason = ""
        state.enabled_by = None
        state.enabled_at = None
        state.expires_at = None

    def _reject(self, subsystem: Subsystem, source: SwitchSource, actor: str, op: str) -> None:
        reason = f"Rejected {op}: switch is set by environment variable {subsystem.env_var}"
        self._record(subsystem, "rejected", source, actor, reason)
        metrics.kill_switch_rejections_total.labels(subsystem=subsystem.value).inc()
        logger.warning("kill switch %s: %s (actor=%s)", subsystem.value, reason, actor)

    def _record(
        self,
        subsystem: Subsystem,
        action: str,
        source: SwitchSource,
        actor: str,
        reason: str,
        expires_at=None,
    ) -> None:
        self._history.append(
            KillSwitchEvent(
                subsystem=subsystem,
                action=action,
                source=source,
                actor=actor,
                reason=reason,
                timestamp=self._clock(),
                expires_at=expires_at,
            )
        )
        metrics.kill_switch_changes_total.labels(subsystem=subsystem.value, action=action).inc()

    def _update_gauge(self) -> None:
        metrics.kill_switches_active.set(sum(1 for st in self._states.values() if st.enabled))
