"""
Tier 1: deterministic rule classifier.

Keyword and regex heuristics for Korean card/bank notifications. No network,
no learned state. A message is a payment when it names a financial
institution, uses a payment verb and carries a currency amount, and carries
no advertisement/notice keyword.
"""

import logging
import re
from typing import Iterable, Optional, Tuple

from .categories import infer_category
from .models import DEFAULT_CARD, PLACEHOLDER_STORE, ExtractionResult
from .regex_engine import DEFAULT_MIN_AMOUNT, extract_date_time

logger = logging.getLogger(__name__)

# Ordered: extract_card_name returns the first hit
CARD_KEYWORDS = (
    "kb", "국민", "노리",
    "신한", "sol", "쏠",
    "삼성", "현대", "롯데", "하나", "우리",
    "nh", "농협",
    "bc", "비씨",
    "씨티", "시티", "citi",
    "카카오", "카뱅", "토스",
    "케이뱅크", "k뱅크",
    "ibk", "기업",
    "sc제일", "제일은행", "수협",
    "광주은행", "kjb", "전북은행", "jb", "경남은행", "bnk", "부산은행", "대구은행", "dgb",
    "새마을", "mg", "신협", "kfcc", "우체국", "우정", "post", "저축은행", "ok저축",
    "체크카드", "신용카드", "선불", "후불",
)

PAYMENT_KEYWORDS = ("결제", "승인", "사용", "출금", "이용")

EXCLUDE_KEYWORDS = (
    "광고", "홍보", "이벤트", "혜택안내", "포인트 적립",
    "명세서", "청구서", "이용대금",
    "결제금액", "카드대금", "결제대금", "청구금액",
    "출금 예정", "출금예정", "퇴직",
)

# Ads and notices are longer; real payment notifications are 40-100 chars
MAX_PAYMENT_LENGTH = 100

_AMOUNT_WITH_WON = re.compile(r"[\d,]+원")
_AMOUNT_NUMBER_LINE = re.compile(r"\n[\d,]{3,}\n")
_AMOUNT_EXTRACT_WITH_WON = re.compile(r"([\d,]+)원(?![가-힣])")
_PURE_NUMBER = re.compile(r"^[\d,]+$")
_AMOUNT_WON_HANGUL = re.compile(r".*\d+원[가-힣]+.*")

_STORE_CARD_NUMBER = re.compile(r"^[\d*]+$")
_STORE_DATETIME = re.compile(r"^\d{1,2}[/.-]\d{1,2}\s+\d{1,2}:\d{2}$")
_STORE_BRACKET = re.compile(r"^\[.+\]$")
_STORE_AMOUNT_THEN_TIME = re.compile(
    r"[\d,]+원\s*\((?:일시불|\d+개월)\)\s*\d{1,2}[/.-]\d{1,2}\s+\d{1,2}:\d{2}\s+(.+)$",
    re.MULTILINE,
)
_STORE_TIME_BEFORE = re.compile(r"(\d{1,2}:\d{2})\s*(.+?)\s*[\d,]+원")
_STORE_BEFORE_AMOUNT = re.compile(r"(.+?)\s*([\d,]+)원")
_STORE_AFTER_AMOUNT = re.compile(r"[\d,]+원\s*(.+?)(?:승인|결제|사용|일시불|할부|\s*$)")
_STORE_SPLIT = re.compile(r"[\s\[\]()/,\n]+")
_STORE_WORD_SPLIT = re.compile(r"[\s\[\]()/\n]+")

_CLEAN_CORP = re.compile(r"\(주\)|\(유\)|\(사\)|\(재\)")
_CLEAN_EDGE_SYMBOLS = re.compile(r"^[^\w가-힣]+|[^\w가-힣]+$")
_CLEAN_LEADING_WON = re.compile(r"^\d+원")

_VALID_NUMBER_ONLY = re.compile(r"^[\d,.:]+$")
_VALID_DATE = re.compile(r"^\d{1,2}[/.-]\d{1,2}$")
_VALID_TIME = re.compile(r"^\d{1,2}:\d{2}$")
_VALID_MASKED_NAME = re.compile(r"^[가-힣]\*+[가-힣]?$")

# Substrings that can never be a merchant name
EXCLUDE_STORE_PATTERNS = (
    "web발신", "국외발신", "국제발신", "해외발신",
    "ltcard", "card.kr", ".kr", ".com", ".co.kr", "http", "www",
    "기준", "누적", "잔액", "한도", "가용",
    "일시불", "할부", "취소", "승인", "결제", "출금", "사용", "입금", "이체",
    "체크", "신용", "님", "고객", "회원",
    "원", "건", "월", "일", "시", "분",
    "sms", "mms", "안내", "알림", "통지",
    "민생회복", "입출통지",
)

# Random codes, insurer codes, "롯데카드2508", "07월입출통지"
INVALID_STORE_REGEXES = (
    re.compile(r"^KB\]\d{2}/\d{2}\s+\d{2}:\d{2}$"),
    re.compile(r"^[a-zA-Z0-9]{5,8}$"),
    re.compile(r"^.{2,4}(화|해|츠)\d{5,6}$"),
    re.compile(r"^.+카드\d{4}$"),
    re.compile(r"^\d{2}월.+$"),
)

STORE_CLEAN_MAX_LEN = 15


def has_amount(body: str) -> bool:
    return bool(_AMOUNT_WITH_WON.search(body) or _AMOUNT_NUMBER_LINE.search(body))


def contains_any(text: str, keywords: Iterable[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def _clean_store_name(name: str) -> str:
    cleaned = name.strip()
    cleaned = _CLEAN_CORP.sub("", cleaned)
    cleaned = _CLEAN_EDGE_SYMBOLS.sub("", cleaned)
    cleaned = _CLEAN_LEADING_WON.sub("", cleaned)
    return cleaned[:STORE_CLEAN_MAX_LEN]


def _is_valid_store_name(name: str) -> bool:
    if not name or len(name) < 2:
        return False
    if _VALID_NUMBER_ONLY.match(name) or _VALID_DATE.match(name) or _VALID_TIME.match(name):
        return False
    if _VALID_MASKED_NAME.match(name):
        return False
    lowered = name.lower()
    if any(pattern in lowered for pattern in EXCLUDE_STORE_PATTERNS):
        return False
    return not any(regex.match(name) for regex in INVALID_STORE_REGEXES)


def _names_card(word: str) -> bool:
    lowered = word.lower()
    return any(keyword in lowered for keyword in CARD_KEYWORDS)


class RuleClassifier:
    """
    Regex/keyword classifier and parser.

    Usage:
        tier1 = RuleClassifier()
        result = tier1.classify(body, timestamp_ms)   # ExtractionResult or None
    """

    def __init__(
        self,
        user_exclude_keywords: Iterable[str] = (),
        min_amount: int = DEFAULT_MIN_AMOUNT,
    ):
        self.min_amount = min_amount
        self._user_keywords: Tuple[str, ...] = ()
        self.set_user_exclude_keywords(user_exclude_keywords)

    def set_user_exclude_keywords(self, keywords: Iterable[str]) -> None:
        self._user_keywords = tuple(k.strip().lower() for k in keywords if k and k.strip())

    def is_excluded(self, lowered_body: str) -> bool:
        return contains_any(lowered_body, EXCLUDE_KEYWORDS) or contains_any(
            lowered_body, self._user_keywords
        )

    def is_payment(self, body: str) -> bool:
        """Institution keyword AND payment verb AND amount AND no exclusion keyword."""
        if not body or not body.strip():
            return False
        if len(body) > MAX_PAYMENT_LENGTH:
            return False

        lowered = body.lower()
        if self.is_excluded(lowered):
            return False

        return (
            contains_any(lowered, CARD_KEYWORDS)
            and contains_any(lowered, PAYMENT_KEYWORDS)
            and has_amount(body)
        )

    # ------------------------------------------------------------------
    # Field extraction
    # ------------------------------------------------------------------

    def extract_amount(self, body: str) -> Optional[int]:
        """
        Amount in one of three layouts:
        1. KB style: the line after "체크카드출금"/"출금" is a bare number
        2. "15,000원"
        3. A bare number line (balance lines skipped)
        """
        lines = [line.strip() for line in body.split("\n")]

        for i, line in enumerate(lines):
            if ("체크카드출금" in line or line == "출금") and i + 1 < len(lines):
                following = lines[i + 1]
                if _PURE_NUMBER.match(following):
                    amount = int(following.replace(",", "") or 0)
                    if amount >= self.min_amount:
                        return amount

        match = _AMOUNT_EXTRACT_WITH_WON.search(body)
        if match:
            digits = match.group(1).replace(",", "")
            if digits and int(digits) >= self.min_amount:
                return int(digits)

        for line in lines:
            if line.startswith("잔액") or _AMOUNT_WON_HANGUL.match(line):
                continue
            if _PURE_NUMBER.match(line):
                digits = line.replace(",", "")
                if len(digits) >= 3 and int(digits) >= self.min_amount:
                    return int(digits)

        return None

    def extract_store_name(self, body: str) -> str:
        """Merchant name, or PLACEHOLDER_STORE when nothing plausible is found."""
        lines = [line.strip() for line in body.split("\n")]

        # KB style: walk upward from the withdrawal line
        for i, line in enumerate(lines):
            if "체크카드출금" not in line and line != "출금":
                continue
            for j in range(i - 1, -1, -1):
                candidate = lines[j]
                if not candidate:
                    continue
                if "**" in candidate or _STORE_CARD_NUMBER.match(candidate):
                    continue
                if _STORE_DATETIME.match(candidate) or _STORE_BRACKET.match(candidate):
                    continue
                cleaned = _clean_store_name(candidate)
                if len(cleaned) >= 2:
                    return cleaned

        for pattern, group in ((_STORE_AMOUNT_THEN_TIME, 1), (_STORE_TIME_BEFORE, 2)):
            match = pattern.search(body)
            if match:
                cleaned = _clean_store_name(match.group(group).strip())
                if _is_valid_store_name(cleaned):
                    return cleaned

        match = _STORE_BEFORE_AMOUNT.search(body)
        if match:
            words = [w for w in _STORE_WORD_SPLIT.split(match.group(1)) if w.strip()]
            for word in reversed(words):
                cleaned = _clean_store_name(word)
                if _is_valid_store_name(cleaned) and not _names_card(cleaned):
                    return cleaned

        match = _STORE_AFTER_AMOUNT.search(body)
        if match:
            cleaned = _clean_store_name(match.group(1).strip())
            if _is_valid_store_name(cleaned):
                return cleaned

        for word in _STORE_SPLIT.split(body):
            cleaned = _clean_store_name(word)
            if _is_valid_store_name(cleaned) and not _names_card(cleaned):
                return cleaned

        return PLACEHOLDER_STORE

    @staticmethod
    def extract_card_name(body: str) -> str:
        lowered = body.lower()
        for keyword in CARD_KEYWORDS:
            if keyword in lowered:
                return keyword
        return DEFAULT_CARD

    def parse(self, body: str, timestamp_ms: int) -> Tuple[int, str, str, str, str]:
        """Local-only parse: (amount or 0, store, card, category, date_time)."""
        amount = self.extract_amount(body) or 0
        store = self.extract_store_name(body)
        return (
            amount,
            store,
            self.extract_card_name(body),
            infer_category(store, body),
            extract_date_time(body, timestamp_ms),
        )

    def classify(self, body: str, timestamp_ms: int) -> Optional[ExtractionResult]:
        """
        Classify and parse. Returns None when not a payment *or* when the
        parse quality is insufficient (no amount, placeholder store); those
        messages are deferred to Tier 2/3.
        """
        if not self.is_payment(body):
            return None

        amount, store, card, category, date_time = self.parse(body, timestamp_ms)
        if amount <= 0:
            logger.debug(f"Tier1 deferred (no amount): {body[:30]!r}")
            return None
        if store == PLACEHOLDER_STORE:
            logger.debug(f"Tier1 deferred (placeholder store): {body[:30]!r}")
            return None

        return ExtractionResult(
            amount=amount, store=store, card=card, category=category, date_time=date_time
        )
