"""
Per-template failure cooldown for regex synthesis.

After `failure_threshold` consecutive synthesis failures for a template,
further attempts for that template are suppressed for `window_seconds`.
A success clears the record.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class FailureRecord:
    failures: int = 0
    blocked_until: float = 0.0


class FailureCooldown:
    """Thread-safe map of template -> failure record, shared process-wide."""

    def __init__(self, failure_threshold: int = 2, window_seconds: float = 1800):
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self._records: Dict[str, FailureRecord] = {}
        self._lock = threading.Lock()

    def is_blocked(self, key: str) -> bool:
        with self._lock:
            record = self._records.get(key)
            if record is None or record.blocked_until == 0.0:
                return False
            if time.time() >= record.blocked_until:
                # Window over: the family gets a fresh budget
                del self._records[key]
                return False
            return True

    def record_failure(self, key: str) -> None:
        with self._lock:
            record = self._records.setdefault(key, FailureRecord())
            record.failures += 1
            if record.failures >= self.failure_threshold and record.blocked_until == 0.0:
                record.blocked_until = time.time() + self.window_seconds
                logger.info(
                    f"Regex synthesis cooling down for {self.window_seconds:.0f}s "
                    f"after {record.failures} failures"
                )

    def record_success(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def failures(self, key: str) -> int:
        with self._lock:
            record = self._records.get(key)
            return record.failures if record else 0

    def get_status(self) -> Dict:
        now = time.time()
        with self._lock:
            return {
                "tracked": len(self._records),
                "blocked": sum(1 for r in self._records.values() if r.blocked_until > now),
            }

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


# Global cooldown instance
_cooldown: Optional[FailureCooldown] = None
_cooldown_lock = threading.Lock()


def get_cooldown(config: Optional[Dict] = None) -> FailureCooldown:
    """Get or create the process-wide cooldown map."""
    global _cooldown
    with _cooldown_lock:
        if _cooldown is None:
            config = config or {}
            _cooldown = FailureCooldown(
                failure_threshold=config.get("failure_threshold", 2),
                window_seconds=config.get("window_seconds", 1800),
            )
        return _cooldown


def reset_cooldown() -> None:
    """Reset the global cooldown map (mainly for testing)."""
    global _cooldown
    with _cooldown_lock:
        _cooldown = None
