"""
Unit tests for the regex engine (compile cache + composite parser).
"""

from datetime import datetime

import pytest

from smsledger.core.models import RegexTriple
from smsledger.core.regex_engine import (
    CompileCache,
    RegexEngine,
    extract_date_time,
    get_regex_engine,
    is_valid_card,
    is_valid_store,
    reset_regex_engine,
)

KB_BODY = "[KB]02/05 14:30 스타벅스 11,940원 승인"
KB_TRIPLE = RegexTriple(
    amount_pattern=r"([\d,]+)원",
    store_pattern=r"\d{2}:\d{2}\s+(.+?)\s+[\d,]+원",
    card_pattern=r"\[(\w+)\]",
)


def _ts(year, month, day, hour=12, minute=0):
    return int(datetime(year, month, day, hour, minute).timestamp() * 1000)


class TestParseWithRegex:
    def setup_method(self):
        self.engine = RegexEngine()

    def test_full_parse(self):
        result = self.engine.parse_with_regex(KB_BODY, _ts(2024, 3, 1), KB_TRIPLE)
        assert result.amount == 11940
        assert result.store == "스타벅스"
        assert result.card == "KB"
        assert result.category == "카페"
        assert result.date_time == "2024-02-05 14:30"

    def test_other_body_same_family(self):
        body = "[KB]02/06 09:10 이디야 5,000원 승인"
        result = self.engine.parse_with_regex(body, _ts(2024, 3, 1), KB_TRIPLE)
        assert (result.amount, result.store) == (5000, "이디야")

    def test_amount_below_minimum(self):
        body = "[KB]02/05 14:30 스타벅스 50원 승인"
        assert self.engine.parse_with_regex(body, 0, KB_TRIPLE) is None

    def test_never_returns_non_positive_amount(self):
        for body in ("[KB]02/05 14:30 스타벅스 0원 승인", "[KB]02/05 14:30 스타벅스 ,원 승인"):
            assert self.engine.parse_with_regex(body, 0, KB_TRIPLE) is None

    def test_invalid_store_capture(self):
        triple = RegexTriple(r"([\d,]+)원", r"원\s+(\S+)")
        assert self.engine.parse_with_regex(KB_BODY, 0, triple) is None

    def test_blank_triple(self):
        assert self.engine.parse_with_regex(KB_BODY, 0, RegexTriple()) is None
        assert self.engine.parse_with_regex(KB_BODY, 0, RegexTriple(r"([\d,]+)원", "")) is None

    def test_uncompilable_pattern(self):
        triple = RegexTriple(r"([\d,]+원", KB_TRIPLE.store_pattern)
        assert self.engine.parse_with_regex(KB_BODY, 0, triple) is None

    def test_pattern_without_group(self):
        triple = RegexTriple(r"[\d,]+원", KB_TRIPLE.store_pattern)
        assert self.engine.parse_with_regex(KB_BODY, 0, triple) is None

    def test_card_and_category_fallbacks(self):
        triple = RegexTriple(KB_TRIPLE.amount_pattern, KB_TRIPLE.store_pattern)
        result = self.engine.parse_with_regex(
            KB_BODY, 0, triple, fallback_card="국민카드", fallback_category="식비"
        )
        assert result.card == "국민카드"
        assert result.category == "식비"

    def test_default_card(self):
        triple = RegexTriple(KB_TRIPLE.amount_pattern, KB_TRIPLE.store_pattern)
        assert self.engine.parse_with_regex(KB_BODY, 0, triple).card == "기타"


class TestCompile:
    def setup_method(self):
        self.engine = RegexEngine(cache=CompileCache())

    def test_cache_hits(self):
        first = self.engine.compile(r"(\d+)")
        second = self.engine.compile(r"(\d+)")
        assert first is second
        stats = self.engine.get_stats()
        assert stats["cache_hits"] == 1
        assert stats["compiled"] == 1

    def test_failures_are_cached(self):
        assert self.engine.compile("(unclosed") is None
        assert self.engine.compile("(unclosed") is None
        assert self.engine.get_stats()["compile_failures"] == 1

    def test_blank(self):
        assert self.engine.compile("") is None
        assert self.engine.compile("   ") is None

    def test_foreign_named_group(self):
        assert self.engine.extract_amount(r"(?<amount>[\d,]+)원", KB_BODY) == 11940

    def test_lookbehind_untouched(self):
        assert self.engine.extract_amount(r"(?<=\s)([\d,]+)원", KB_BODY) == 11940

    def test_clear(self):
        self.engine.compile(r"(\d+)")
        self.engine.clear()
        assert self.engine.get_stats()["cache_size"] == 0

    def test_cache_is_bounded(self):
        engine = RegexEngine(cache=CompileCache(max_size=2))
        for source in (r"(a)", r"(b)", r"(c)"):
            engine.compile(source)
        stats = engine.get_stats()
        assert stats["cache_size"] == 2
        assert stats["evictions"] == 1

        engine.compile(r"(a)")
        assert engine.get_stats()["cache_hits"] == 0

    def test_recently_used_survives_eviction(self):
        engine = RegexEngine(cache=CompileCache(max_size=2))
        engine.compile(r"(a)")
        engine.compile(r"(b)")
        engine.compile(r"(a)")
        engine.compile(r"(c)")
        engine.compile(r"(a)")
        assert engine.get_stats()["cache_hits"] == 2

    def test_engines_share_the_process_cache(self):
        low, high = RegexEngine(min_amount=100), RegexEngine(min_amount=20000)
        assert low.cache is high.cache
        assert low.compile(r"(\d+)원") is high.compile(r"(\d+)원")

    def test_min_amount_is_configurable(self):
        engine = RegexEngine(min_amount=20000)
        assert engine.extract_amount(r"([\d,]+)원", KB_BODY) is None


class TestValidators:
    @pytest.mark.parametrize("value", ["스타벅스", "GS25 역삼점", "(주)이마트"])
    def test_valid_store(self, value):
        assert is_valid_store(value)

    @pytest.mark.parametrize(
        "value", [None, "", "a", "11,940", "02/05", "14:30", "02/05 14:30", "12**34", "{STORE}", "승인", "x" * 31]
    )
    def test_invalid_store(self, value):
        assert not is_valid_store(value)

    def test_card(self):
        assert is_valid_card("신한카드")
        assert not is_valid_card("1234")
        assert not is_valid_card("Web발신")
        assert not is_valid_card(None)


class TestDateTime:
    def test_body_wins_over_timestamp(self):
        assert extract_date_time("02/05 14:30", _ts(2024, 3, 1, 8, 15)) == "2024-02-05 14:30"

    def test_timestamp_fills_missing_parts(self):
        assert extract_date_time("스타벅스 11,940원", _ts(2024, 3, 1, 8, 15)) == "2024-03-01 08:15"

    def test_out_of_range_date_ignored(self):
        assert extract_date_time("13/45 25:99", _ts(2024, 3, 1, 8, 15)) == "2024-03-01 08:15"


def test_global_engine_singleton():
    reset_regex_engine()
    try:
        assert get_regex_engine() is get_regex_engine()
    finally:
        reset_regex_engine()
