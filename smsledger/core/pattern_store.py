"""
Learned-pattern store.

Local, single-writer cache of LearnedPattern records. The in-memory store
can optionally mirror itself to a JSON file so that learning survives a
restart of the host process.
"""

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .models import LearnedPattern

logger = logging.getLogger(__name__)

DAY_SECONDS = 86400


class PatternStore(ABC):
    """Persistence seam for learned patterns."""

    @abstractmethod
    def insert(self, pattern: LearnedPattern) -> str:
        """Store a pattern and return its id."""
        pass

    @abstractmethod
    def get_all_payment_patterns(self) -> List[LearnedPattern]:
        pass

    @abstractmethod
    def get_all_non_payment_patterns(self) -> List[LearnedPattern]:
        pass

    @abstractmethod
    def increment_match_count(self, pattern_id: str) -> None:
        pass

    @abstractmethod
    def delete_stale(self, older_than: float, max_match_count: int = 1) -> int:
        """
        Delete patterns last matched before `older_than` (epoch seconds)
        whose match count is at most `max_match_count`.

        Returns:
            Number of patterns deleted
        """
        pass

    def find_by_sender_and_template(self, sender_address: str, template: str) -> Optional[LearnedPattern]:
        for pattern in self.get_all_payment_patterns() + self.get_all_non_payment_patterns():
            if pattern.sender_address == sender_address and pattern.template == template:
                return pattern
        return None

    def count(self) -> int:
        return len(self.get_all_payment_patterns()) + len(self.get_all_non_payment_patterns())

    def stats(self) -> Dict:
        payment = self.get_all_payment_patterns()
        non_payment = self.get_all_non_payment_patterns()
        by_source: Dict[str, int] = {}
        for pattern in payment + non_payment:
            by_source[pattern.source.value] = by_source.get(pattern.source.value, 0) + 1
        return {
            "total": len(payment) + len(non_payment),
            "payment": len(payment),
            "non_payment": len(non_payment),
            "by_source": by_source,
            "total_matches": sum(p.match_count for p in payment + non_payment),
        }

    def clear(self) -> None:
        raise NotImplementedError


class InMemoryPatternStore(PatternStore):
    """
    Thread-safe dict-backed store.

    Args:
        path: Optional JSON file. Loaded on construction, rewritten after
              every mutation.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._patterns: Dict[str, LearnedPattern] = {}
        self._lock = threading.RLock()
        if path:
            self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not load pattern store {self.path}: {e}")
            return

        loaded = 0
        for raw in data.get("patterns", []):
            try:
                pattern = LearnedPattern.from_dict(raw)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed stored pattern: {e}")
                continue
            self._patterns[pattern.id] = pattern
            loaded += 1
        logger.info(f"Loaded {loaded} learned patterns from {self.path}")

    def _save(self) -> None:
        if not self.path:
            return
        payload = {"version": 1, "patterns": [p.to_dict() for p in self._patterns.values()]}
        directory = os.path.dirname(self.path)
        tmp_path = f"{self.path}.tmp"
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to save pattern store {self.path}: {e}")

    def insert(self, pattern: LearnedPattern) -> str:
        with self._lock:
            self._patterns[pattern.id] = pattern
            self._save()
        logger.debug(
            f"Pattern stored: {pattern.id} source={pattern.source.value} payment={pattern.is_payment}"
        )
        return pattern.id

    def get(self, pattern_id: str) -> Optional[LearnedPattern]:
        with self._lock:
            return self._patterns.get(pattern_id)

    def get_all_payment_patterns(self) -> List[LearnedPattern]:
        with self._lock:
            return [p for p in self._patterns.values() if p.is_payment]

    def get_all_non_payment_patterns(self) -> List[LearnedPattern]:
        with self._lock:
            return [p for p in self._patterns.values() if not p.is_payment]

    def increment_match_count(self, pattern_id: str) -> None:
        with self._lock:
            pattern = self._patterns.get(pattern_id)
            if pattern is None:
                logger.debug(f"increment_match_count: unknown pattern {pattern_id}")
                return
            pattern.match_count += 1
            pattern.last_matched_at = time.time()
            self._save()

    def delete_stale(self, older_than: float, max_match_count: int = 1) -> int:
        with self._lock:
            stale = [
                pid for pid, p in self._patterns.items()
                if p.last_matched_at < older_than and p.match_count <= max_match_count
            ]
            for pid in stale:
                del self._patterns[pid]
            if stale:
                self._save()
        if stale:
            logger.info(f"Deleted {len(stale)} stale patterns")
        return len(stale)

    def find_by_sender_and_template(self, sender_address: str, template: str) -> Optional[LearnedPattern]:
        with self._lock:
            for pattern in self._patterns.values():
                if pattern.sender_address == sender_address and pattern.template == template:
                    return pattern
        return None

    def count(self) -> int:
        with self._lock:
            return len(self._patterns)

    def clear(self) -> None:
        with self._lock:
            self._patterns.clear()
            self._save()
