"""
Safe compile / cache / apply of capture-group-1 extraction patterns.

Patterns come from machines (LLM synthesis, remote rules, template
heuristics), so every pattern is treated as untrusted: compile failures
yield "no match", and each captured field passes a validity filter before
it is accepted.
"""

import logging
import re
import threading
from datetime import datetime
from collections import OrderedDict
from typing import Dict, Optional, Pattern, Tuple

from .categories import infer_category
from .models import DEFAULT_CARD, DEFAULT_CATEGORY, ExtractionResult, RegexTriple

logger = logging.getLogger(__name__)

# Guards against regexes that capture a date/time or a card suffix as "amount"
DEFAULT_MIN_AMOUNT = 100

STORE_MAX_LEN = 20

_NON_DIGIT = re.compile(r"[^\d]")
_NUMBER_ONLY = re.compile(r"^[\d,.:/\-\s]+$")
_DATE_OR_TIME = re.compile(
    r"^(?:\d{1,2}[/.-]\d{1,2}(?:\s+\d{1,2}:\d{2})?|\d{1,2}:\d{2})$"
)
_CARD_MASK = re.compile(r"^\d+\*+\d+$")
_DATE = re.compile(r"(\d{1,2})[/.-](\d{1,2})")
_TIME = re.compile(r"(\d{1,2}):(\d{2})")
# Model output often uses the (?<name>...) group syntax of other regex dialects
_FOREIGN_NAMED_GROUP = re.compile(r"\(\?<(?=[A-Za-z_])")

STORE_INVALID_KEYWORDS = (
    "승인", "결제", "출금", "입금", "누적", "잔액", "일시불", "할부", "이용", "카드",
)
CARD_INVALID_KEYWORDS = (
    "web발신", "국외발신", "국제발신", "해외발신", "광고", "안내", "알림",
)


def is_valid_store(value: Optional[str]) -> bool:
    """Store capture filter: rejects placeholders, numbers, dates and structure words."""
    if value is None:
        return False
    value = value.strip()
    if len(value) < 2 or len(value) > 30:
        return False
    if "{" in value or "}" in value:
        return False
    if _NUMBER_ONLY.match(value):
        return False
    if _DATE_OR_TIME.match(value):
        return False
    if _CARD_MASK.match(value):
        return False
    return not any(keyword in value for keyword in STORE_INVALID_KEYWORDS)


def is_valid_card(value: Optional[str]) -> bool:
    """Card capture filter: rejects numbers and sender disclaimers."""
    if value is None:
        return False
    value = value.strip()
    if len(value) < 2 or len(value) > 20:
        return False
    if "{" in value or "}" in value:
        return False
    if _NUMBER_ONLY.match(value):
        return False
    lowered = value.lower()
    return not any(keyword in lowered for keyword in CARD_INVALID_KEYWORDS)


def sanitize_store(value: str) -> str:
    return value.strip()[:STORE_MAX_LEN]


def extract_date_time(body: str, timestamp_ms: int) -> str:
    """
    "YYYY-MM-DD HH:MM" from MM/DD and HH:MM in the body, defaulting each
    part to the receive timestamp. The year always comes from the timestamp.
    """
    received = datetime.fromtimestamp(timestamp_ms / 1000.0) if timestamp_ms else datetime.now()
    month, day = received.month, received.day
    hour, minute = received.hour, received.minute

    date_match = _DATE.search(body)
    if date_match:
        m, d = int(date_match.group(1)), int(date_match.group(2))
        if 1 <= m <= 12 and 1 <= d <= 31:
            month, day = m, d

    time_match = _TIME.search(body)
    if time_match:
        h, mi = int(time_match.group(1)), int(time_match.group(2))
        if 0 <= h <= 23 and 0 <= mi <= 59:
            hour, minute = h, mi

    return f"{received.year:04d}-{month:02d}-{day:02d} {hour:02d}:{minute:02d}"


# Least recently used sources are evicted past this size
DEFAULT_CACHE_SIZE = 512


class CompileCache:
    """Bounded LRU of compiled patterns (None for sources that failed to compile)."""

    def __init__(self, max_size: int = DEFAULT_CACHE_SIZE):
        self.max_size = max(1, max_size)
        self._entries: "OrderedDict[str, Optional[Pattern]]" = OrderedDict()
        self._lock = threading.Lock()
        self._stats = {"compiled": 0, "compile_failures": 0, "cache_hits": 0, "evictions": 0}

    def lookup(self, source: str) -> Tuple[bool, Optional[Pattern]]:
        with self._lock:
            if source not in self._entries:
                return False, None
            self._entries.move_to_end(source)
            self._stats["cache_hits"] += 1
            return True, self._entries[source]

    def store(self, source: str, compiled: Optional[Pattern]) -> None:
        with self._lock:
            self._entries[source] = compiled
            self._entries.move_to_end(source)
            self._stats["compiled" if compiled is not None else "compile_failures"] += 1
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
                self._stats["evictions"] += 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> Dict:
        with self._lock:
            return {**self._stats, "cache_size": len(self._entries), "max_size": self.max_size}

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


# Process-wide compile cache shared by every RegexEngine
_compile_cache = CompileCache()


def get_compile_cache() -> CompileCache:
    return _compile_cache


class RegexEngine:
    """
    Composite regex parser over a compile cache.

    Engines share the process-wide CompileCache unless given their own, so
    every pipeline run benefits from previously compiled patterns whatever
    its minimum amount.
    """

    def __init__(self, min_amount: int = DEFAULT_MIN_AMOUNT, cache: Optional[CompileCache] = None):
        self.min_amount = min_amount
        self.cache = cache if cache is not None else get_compile_cache()

    def compile(self, source: str) -> Optional[Pattern]:
        """Compile (or fetch) a pattern; invalid syntax returns None."""
        if not source or not source.strip():
            return None
        hit, cached = self.cache.lookup(source)
        if hit:
            return cached

        try:
            compiled: Optional[Pattern] = re.compile(_FOREIGN_NAMED_GROUP.sub("(?P<", source))
        except (re.error, RecursionError, OverflowError) as e:
            logger.debug(f"Regex compile failed ({e}): {source[:80]}")
            compiled = None

        self.cache.store(source, compiled)
        return compiled

    def is_compilable(self, source: str) -> bool:
        return self.compile(source) is not None

    @staticmethod
    def extract_group1(compiled: Optional[Pattern], text: str) -> Optional[str]:
        """Trimmed, non-blank capture group 1 of the first match."""
        if compiled is None or compiled.groups < 1:
            return None
        match = compiled.search(text)
        if not match:
            return None
        value = match.group(1)
        if value is None:
            return None
        value = value.strip()
        return value or None

    def parse_amount(self, raw: Optional[str]) -> Optional[int]:
        """Digits of a capture as int, only if >= min_amount."""
        if raw is None:
            return None
        digits = _NON_DIGIT.sub("", raw)
        if not digits:
            return None
        amount = int(digits)
        return amount if amount >= self.min_amount else None

    def extract_amount(self, source: str, text: str) -> Optional[int]:
        return self.parse_amount(self.extract_group1(self.compile(source), text))

    def extract_store(self, source: str, text: str) -> Optional[str]:
        store = self.extract_group1(self.compile(source), text)
        return store if is_valid_store(store) else None

    def parse_with_regex(
        self,
        body: str,
        timestamp_ms: int,
        triple: RegexTriple,
        fallback_card: str = "",
        fallback_category: str = "",
    ) -> Optional[ExtractionResult]:
        """
        Apply a regex triple to *this* message body.

        Amount and store must come from this body; there is no cached
        fallback for them. Card and category may fall back to the pattern's
        cached values.
        """
        if not triple.is_usable():
            return None

        amount = self.extract_amount(triple.amount_pattern, body)
        if amount is None or amount <= 0:
            return None

        store = self.extract_store(triple.store_pattern, body)
        if store is None:
            return None
        store = sanitize_store(store)

        card = None
        if triple.card_pattern:
            card = self.extract_group1(self.compile(triple.card_pattern), body)
            if not is_valid_card(card):
                card = None
        if card is None:
            card = fallback_card.strip() or DEFAULT_CARD

        category = fallback_category.strip() or infer_category(store, body)

        return ExtractionResult(
            amount=amount,
            store=store,
            card=card,
            category=category or DEFAULT_CATEGORY,
            date_time=extract_date_time(body, timestamp_ms),
        )

    def get_stats(self) -> Dict:
        return {**self.cache.get_stats(), "min_amount": self.min_amount}

    def clear(self) -> None:
        self.cache.clear()


# Global regex engine instance
_regex_engine: Optional[RegexEngine] = None
_engine_lock = threading.Lock()


def get_regex_engine(min_amount: int = DEFAULT_MIN_AMOUNT) -> RegexEngine:
    """Get or create the process-wide regex engine."""
    global _regex_engine
    with _engine_lock:
        if _regex_engine is None:
            _regex_engine = RegexEngine(min_amount=min_amount)
        return _regex_engine


def reset_regex_engine() -> None:
    """Reset the global regex engine (mainly for testing)."""
    global _regex_engine
    with _engine_lock:
        _regex_engine = None
