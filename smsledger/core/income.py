"""
Income split: separates deposit notifications from card payments.

Runs after the pre-filter. Messages classified INCOME get their own decision
and never reach embedding; SKIP means "neither, as far as rules can tell"
and the message continues down the payment tiers.
"""

import logging
import re
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, Tuple

from .models import IncomeResult
from .regex_engine import DEFAULT_MIN_AMOUNT
from .rule_classifier import CARD_KEYWORDS, MAX_PAYMENT_LENGTH, contains_any, has_amount

logger = logging.getLogger(__name__)


class SmsType(Enum):
    PAYMENT = "payment"
    INCOME = "income"
    SKIP = "skip"


FINANCIAL_KEYWORDS = CARD_KEYWORDS

PAYMENT_KEYWORDS = ("결제", "승인", "사용", "출금", "이용", "cms출")

INCOME_KEYWORDS = (
    "입금", "이체입금", "급여", "월급", "보너스", "상여",
    "환급", "정산", "송금", "받으셨습니다", "입금되었습니다",
    "자동이체입금", "무통장입금", "계좌입금", "출금취소",
)

CANCELLATION_KEYWORDS = ("출금취소", "승인취소", "결제취소", "취소승인", "취소완료")

# Scheduled or bill-type messages that mention 입금 but are not income
INCOME_EXCLUDE_KEYWORDS = (
    "자동이체출금", "출금예정", "결제예정", "납부",
    "보험료", "카드대금", "통신료", "공과금",
)

EXCLUDE_KEYWORDS = (
    "광고", "홍보", "이벤트", "혜택안내", "포인트 적립",
    "명세서", "청구서", "이용대금", "결제내역",
    "결제금액", "카드대금", "결제대금", "청구금액",
    "출금 예정", "출금예정", "퇴직",
)

# Checked in order; first hit wins
INCOME_TYPES = (
    (("급여", "월급"), "급여"),
    (("보너스", "상여"), "보너스"),
    (("환급",), "환급"),
    (("정산",), "정산"),
    (("이체",), "이체"),
    (("송금",), "송금"),
)
DEFAULT_INCOME_TYPE = "입금"

_AMOUNT_WITH_WON = re.compile(r"([\d,]+)원")
_NUMBER_LINE = re.compile(r"\n([\d,]{3,})\n")
_FROM_PATTERN = re.compile(r"([가-힣a-zA-Z0-9]+?)(?:님)?으?로부터")
_DEPOSIT_PATTERN = re.compile(r"입금\s*([가-힣a-zA-Z]{2,10})|([가-힣a-zA-Z]{2,10})\s*입금")
_SLASH_DATE = re.compile(r"(\d{1,2})/(\d{1,2})")
_KOREAN_DATE = re.compile(r"(\d{1,2})월\s*(\d{1,2})일")
_TIME = re.compile(r"(\d{1,2}):(\d{2})")


class IncomeFilter:
    """Rule-based PAYMENT / INCOME / SKIP split."""

    def __init__(self, user_exclude_keywords: Iterable[str] = ()):
        self._user_keywords: Tuple[str, ...] = ()
        self.set_user_exclude_keywords(user_exclude_keywords)

    def set_user_exclude_keywords(self, keywords: Iterable[str]) -> None:
        self._user_keywords = tuple(k.strip().lower() for k in keywords if k and k.strip())

    def classify(self, body: str) -> SmsType:
        if not body or not body.strip() or len(body) > MAX_PAYMENT_LENGTH:
            return SmsType.SKIP

        lowered = body.lower()
        if contains_any(lowered, EXCLUDE_KEYWORDS) or contains_any(lowered, self._user_keywords):
            return SmsType.SKIP
        if not contains_any(lowered, FINANCIAL_KEYWORDS):
            return SmsType.SKIP
        if not has_amount(body):
            return SmsType.SKIP

        # A cancelled withdrawal returns money
        if contains_any(lowered, CANCELLATION_KEYWORDS):
            return SmsType.INCOME
        if contains_any(lowered, PAYMENT_KEYWORDS):
            return SmsType.PAYMENT
        if contains_any(lowered, INCOME_EXCLUDE_KEYWORDS):
            return SmsType.SKIP
        if contains_any(lowered, INCOME_KEYWORDS):
            return SmsType.INCOME
        return SmsType.PAYMENT

    def is_income(self, body: str) -> bool:
        return self.classify(body) is SmsType.INCOME


class IncomeParser:
    """Field extraction for messages the filter marked INCOME."""

    def __init__(self, min_amount: int = DEFAULT_MIN_AMOUNT):
        self.min_amount = min_amount

    def extract_amount(self, body: str) -> Optional[int]:
        for pattern in (_AMOUNT_WITH_WON, _NUMBER_LINE):
            match = pattern.search(body)
            if match:
                digits = match.group(1).replace(",", "")
                if digits and int(digits) >= self.min_amount:
                    return int(digits)
        return None

    @staticmethod
    def extract_income_type(body: str) -> str:
        for keywords, income_type in INCOME_TYPES:
            if contains_any(body, keywords):
                return income_type
        return DEFAULT_INCOME_TYPE

    @staticmethod
    def extract_source(body: str) -> str:
        match = _FROM_PATTERN.search(body)
        if match:
            return match.group(1)

        match = _DEPOSIT_PATTERN.search(body)
        if match:
            source = match.group(1) or match.group(2) or ""
            if source and source not in INCOME_KEYWORDS:
                return source
        return ""

    @staticmethod
    def extract_date_time(body: str, timestamp_ms: int) -> str:
        received = datetime.fromtimestamp(timestamp_ms / 1000.0) if timestamp_ms else datetime.now()
        month, day = received.month, received.day
        hour, minute = received.hour, received.minute

        date_match = _SLASH_DATE.search(body) or _KOREAN_DATE.search(body)
        if date_match:
            month, day = int(date_match.group(1)), int(date_match.group(2))
        time_match = _TIME.search(body)
        if time_match:
            hour, minute = int(time_match.group(1)), int(time_match.group(2))

        return f"{received.year:04d}-{month:02d}-{day:02d} {hour:02d}:{minute:02d}"

    def parse(self, body: str, timestamp_ms: int) -> Optional[IncomeResult]:
        amount = self.extract_amount(body)
        if amount is None:
            logger.debug(f"Income parse failed (no amount): {body[:30]!r}")
            return None
        return IncomeResult(
            amount=amount,
            income_type=self.extract_income_type(body),
            source=self.extract_source(body),
            date_time=self.extract_date_time(body, timestamp_ms),
        )
