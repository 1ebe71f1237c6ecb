"""
Heuristic regexes derived from a template's placeholder layout.

Used when regex synthesis is unavailable (too few samples, cooldown, model
failure). Tagged template_regex and trusted less than synthesized regexes.
"""

from typing import Optional

from .models import RegexTriple
from .template_engine import AMOUNT_TOKEN, STORE_TOKEN, TIME_TOKEN

AMOUNT_WITH_WON = r"([\d,]{2,})원"
AMOUNT_NUMBER_LINE = r"\n([\d,]{2,})\n"
AMOUNT_ANY = r"([\d,]{2,})(?:원)?"

STORE_LINE_BEFORE_TYPE = r"\n([^\n]{2,30})\n(?:체크카드출금|출금|승인|결제|사용|일시불|할부)"
STORE_AFTER_TIME = r"\d{1,2}:\d{2}\s+(.+?)\s+[\d,]{2,}(?:원)?"
STORE_BEFORE_AMOUNT = r"([가-힣a-zA-Z0-9()'&._\-\s]{2,30})\s+[\d,]{2,}(?:원)?"

CARD_IN_BRACKETS = r"\[([^\]]+)\]"


def build_template_fallback_regex(template: str) -> Optional[RegexTriple]:
    """
    Regex triple for a template containing both {AMOUNT} and {STORE}, or
    None when the template lacks either placeholder.
    """
    if AMOUNT_TOKEN not in template or STORE_TOKEN not in template:
        return None

    if f"{AMOUNT_TOKEN}원" in template:
        amount = AMOUNT_WITH_WON
    elif f"\n{AMOUNT_TOKEN}\n" in template:
        amount = AMOUNT_NUMBER_LINE
    else:
        amount = AMOUNT_ANY

    if f"\n{STORE_TOKEN}\n" in template:
        store = STORE_LINE_BEFORE_TYPE
    elif TIME_TOKEN in template:
        store = STORE_AFTER_TIME
    else:
        store = STORE_BEFORE_AMOUNT

    card = CARD_IN_BRACKETS if "[" in template else ""

    return RegexTriple(amount_pattern=amount, store_pattern=store, card_pattern=card)
