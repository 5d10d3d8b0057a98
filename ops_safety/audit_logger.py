"""
Ops Safety: Enforcement Audit Logger

Append-only record of every enforcement hook call:
- Entries are never modified once written
- The in-memory log is a ring buffer (ENFORCEMENT_LOG_CAPACITY); the oldest
  entries fall off first
- When a file path is configured, every entry is also appended to it as one
  JSON line, so the full trail survives the ring buffer

This is purely a STORAGE layer. It holds no decision logic.
"""

import json
import logging
import threading
from collections import Counter, deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from .models import EnforcementLogEntry

logger = logging.getLogger(__name__)


class EnforcementAuditLogger:
    """Bounded in-memory enforcement log with an optional JSONL mirror."""

    def __init__(self, capacity: int = 1000, log_file: Optional[str] = None):
        """
        Args:
            capacity: Maximum entries kept in memory
            log_file: Path to an append-only JSONL file. If None, memory only.
        """
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.log_file = log_file
        self._lock = threading.RLock()
        self._entries: Deque[EnforcementLogEntry] = deque(maxlen=capacity)
        # running totals cover every entry ever appended, not just the retained ones
        self._total = 0
        self._allowed = 0
        self._by_hook: Counter = Counter()
        self._blocked_by_hook: Counter = Counter()

        if self.log_file:
            try:
                Path(self.log_file).parent.mkdir(parents=True, exist_ok=True)
                Path(self.log_file).touch(exist_ok=True)
            except OSError:
                logger.exception("cannot open enforcement audit file %s; logging to memory only", self.log_file)
                self.log_file = None

    def append(self, entry: EnforcementLogEntry) -> str:
        """
        Append one entry.

        Returns:
            Entry ID
        """
        record = entry.to_dict()
        with self._lock:
            self._entries.append(entry)
            self._total += 1
            self._by_hook[entry.hook] += 1
            if entry.allowed:
                self._allowed += 1
            else:
                self._blocked_by_hook[entry.hook] += 1

            if self.log_file:
                try:
                    with open(self.log_file, "a") as f:
                        f.write(json.dumps(record, default=str) + "\n")
                except OSError:
                    # the in-memory entry is already recorded
                    logger.exception("failed to write enforcement audit entry to %s", self.log_file)
        return entry.entry_id

    def get_entries(self, limit: Optional[int] = 100, hook: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Retained entries, newest first.

        Args:
            limit: Maximum entries to return (None for all retained)
            hook: Only entries for this hook
        """
        with self._lock:
            entries = list(self._entries)
        entries.reverse()
        if hook:
            entries = [e for e in entries if e.hook == hook]
        if limit is not None:
            entries = entries[:max(0, limit)]
        return [e.to_dict() for e in entries]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total": self._total,
                "allowed": self._allowed,
                "blocked": self._total - self._allowed,
                "retained": len(self._entries),
                "capacity": self.capacity,
                "by_hook": {
                    hook: {
                        "total": count,
                        "blocked": self._blocked_by_hook.get(hook, 0),
                    }
                    for hook, count in sorted(self._by_hook.items())
                },
            }

    def export_logs_json(self) -> str:
        """Retained entries (oldest first) as a JSON string."""
        with self._lock:
            records = [e.to_dict() for e in self._entries]
        return json.dumps(records, indent=2, default=str)
