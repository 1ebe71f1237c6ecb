"""
Message templating.

Masks the variable parts of a notification (amount, date, time, balance,
card mask, store line) so that one issuer format collapses to one string.
The template is the embedding key and the clustering key; it is never shown
to users.
"""

import re
from typing import List

AMOUNT_TOKEN = "{AMOUNT}"
DATE_TOKEN = "{DATE}"
TIME_TOKEN = "{TIME}"
BALANCE_TOKEN = "{BALANCE}"
CARD_NUM_TOKEN = "{CARD_NUM}"
STORE_TOKEN = "{STORE}"
NUM_TOKEN = "{NUM}"

# Applied in order; later patterns must not re-match earlier tokens
_REPLACEMENTS = [
    (re.compile(r"[\d,]+원"), AMOUNT_TOKEN + "원"),
    # Lookarounds so consecutive bare-number lines are all masked in one pass
    (re.compile(r"(?<=\n)[\d,]{3,}(?=\n)"), AMOUNT_TOKEN),
    (re.compile(r"\d{1,2}[/.-]\d{1,2}"), DATE_TOKEN),
    (re.compile(r"\d{1,2}:\d{2}"), TIME_TOKEN),
    (re.compile(r"잔액[\d,]+"), "잔액" + BALANCE_TOKEN),
    (re.compile(r"\d+\*+\d+"), CARD_NUM_TOKEN),
]

_STRUCTURAL_KEYWORDS = (
    "출금", "입금", "승인", "결제", "이체", "잔액", "[web발신]",
    "누적", "일시불", "할부", "체크카드", "해외승인",
)

_DIGITS_ONLY = re.compile(r"^[\d,]+$")

# Minimum line count for the structured multi-line (KB style) layout
STORE_LINE_MIN_LINES = 4


def is_likely_store_name(line: str) -> bool:
    """Heuristic for "this line of a multi-line message is the merchant"."""
    stripped = line.strip()
    if len(stripped) < 2 or len(stripped) > 20:
        return False
    if "{" in stripped:
        return False
    lowered = stripped.lower()
    if any(keyword in lowered for keyword in _STRUCTURAL_KEYWORDS):
        return False
    if _DIGITS_ONLY.match(stripped):
        return False
    first = stripped[0]
    return first.isalpha() or first in "(*"


def templatize(raw: str) -> str:
    """
    Canonicalize a message by masking variable substrings.

    Idempotent: templatize(templatize(x)) == templatize(x).
    """
    template = raw
    for pattern, token in _REPLACEMENTS:
        template = pattern.sub(token, template)

    if STORE_TOKEN in template:
        return template

    lines: List[str] = template.split("\n")
    if len(lines) >= STORE_LINE_MIN_LINES:
        for i, line in enumerate(lines):
            if is_likely_store_name(line):
                lines[i] = STORE_TOKEN
                break
        template = "\n".join(lines)

    return template


_COMPACT_REPLACEMENTS = [
    (re.compile(r"\d{1,2}[/.-]\d{1,2}"), DATE_TOKEN),
    (re.compile(r"\d{1,2}:\d{2}"), TIME_TOKEN),
    (re.compile(r"\d+\*+\d+"), CARD_NUM_TOKEN),
    (re.compile(r"[\d,]+원"), AMOUNT_TOKEN + "원"),
    (re.compile(r"\b[\d,]{3,}\b"), NUM_TOKEN),
]


def compact_sample(text: str, max_len: int) -> str:
    """
    One-line, tag-compressed rendition of a message for regex prompts.

    Keeps structure (separators, keywords, merchant text) while collapsing
    digits so the prompt stays small.
    """
    one_line = text.replace("\n", "\\n")
    for pattern, token in _COMPACT_REPLACEMENTS:
        one_line = pattern.sub(token, one_line)
    return one_line[:max_len]


def has_placeholders(template: str, *tokens: str) -> bool:
    return all(token in template for token in tokens)
