"""
Unit tests for message templating.
"""

import pytest

from smsledger.core.template_engine import (
    AMOUNT_TOKEN,
    DATE_TOKEN,
    STORE_TOKEN,
    TIME_TOKEN,
    compact_sample,
    has_placeholders,
    is_likely_store_name,
    templatize,
)

KB_MULTILINE = "[Web발신]\nKB국민체크\n홍*동님\n02/05 14:30\n스타벅스강남점\n체크카드출금\n11,940\n잔액1,234,567"

SAMPLES = [
    "[KB]02/05 14:30 스타벅스 11,940원 승인",
    "신한카드(1234)승인 홍*동 5,000원(일시불)02/06 09:10 이디야",
    KB_MULTILINE,
    "우리카드 12*34 승인 33,000원 03.11 18:22 교보문고",
]


class TestTemplatize:
    def test_masks_amount_date_time(self):
        template = templatize("[KB]02/05 14:30 스타벅스 11,940원 승인")
        assert template == f"[KB]{DATE_TOKEN} {TIME_TOKEN} 스타벅스 {AMOUNT_TOKEN}원 승인"

    def test_same_family_collapses(self):
        a = templatize("[KB]02/05 14:30 스타벅스 11,940원 승인")
        b = templatize("[KB]03/17 08:05 스타벅스 4,500원 승인")
        assert a == b

    @pytest.mark.parametrize("raw", SAMPLES)
    def test_idempotent(self, raw):
        once = templatize(raw)
        assert templatize(once) == once

    def test_multiline_store_and_bare_amount(self):
        template = templatize(KB_MULTILINE)
        lines = template.split("\n")
        assert STORE_TOKEN in lines
        assert AMOUNT_TOKEN in lines
        assert "잔액{BALANCE}" in template
        assert "체크카드출금" in lines

    def test_short_messages_keep_store_text(self):
        assert STORE_TOKEN not in templatize("[KB]02/05 14:30 스타벅스 11,940원 승인")

    def test_empty(self):
        assert templatize("") == ""


class TestStoreLineHeuristic:
    @pytest.mark.parametrize("line", ["스타벅스강남점", "(주)이마트", "GS25 역삼점"])
    def test_accepts_merchants(self, line):
        assert is_likely_store_name(line)

    @pytest.mark.parametrize("line", ["체크카드출금", "11,940", "{AMOUNT}", "a", "x" * 25, "잔액{BALANCE}"])
    def test_rejects_structure(self, line):
        assert not is_likely_store_name(line)


class TestCompactSample:
    def test_single_line_and_truncated(self):
        compacted = compact_sample(KB_MULTILINE, 40)
        assert "\n" not in compacted
        assert len(compacted) <= 40

    def test_collapses_digits(self):
        compacted = compact_sample("[KB]02/05 14:30 스타벅스 11,940원 승인", 200)
        assert "11,940" not in compacted
        assert "{AMOUNT}원" in compacted
        assert "{DATE}" in compacted and "{TIME}" in compacted


def test_has_placeholders():
    assert has_placeholders("{AMOUNT}원 {STORE}", AMOUNT_TOKEN, STORE_TOKEN)
    assert not has_placeholders("{AMOUNT}원", AMOUNT_TOKEN, STORE_TOKEN)
