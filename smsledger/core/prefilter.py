"""
Pre-filter: drop obvious non-payment text before any paid call.

Runs before embedding, so every message rejected here costs nothing.
Authentication codes, ads, statements/bills, delivery notices and the like
are recognized by keyword; the rest by structure (length, digits, links,
missing payment hints).
"""

import logging
import re
from typing import Iterable, List, Tuple

from .models import Message

logger = logging.getLogger(__name__)

NON_PAYMENT_KEYWORDS = (
    # Authentication
    "인증", "authentication", "verification", "code", "otp", "본인확인", "비밀번호",
    # Overseas sender banners
    "국외발신", "국제발신", "해외발신",
    # Advertising
    "광고", "무료수신거부", "수신거부", "080", "홍보", "이벤트", "혜택안내",
    "포인트 적립", "특가", "증정", "당첨", "축하", "최저가", "마감직전",
    "프로모션", "할인쿠폰", "무료체험",
    # Notices
    "안내문", "점검", "정기점검", "공지사항", "불편을 드려",
    # Statements and scheduled debits
    "결제내역", "명세서", "청구서", "이용대금", "결제예정", "결제일", "결제금액",
    "카드대금", "결제대금", "청구금액", "출금예정", "출금 예정", "자동이체",
    "납부안내", "납입일",
    # Delivery / commerce
    "배송", "택배", "운송장", "주문",
    # Misc
    "퇴직", "설문", "survey", "투표", "예약은", "방문때", "접수 완료", "보험금",
    "해외원화결제시", "수수료 발생", "차단신청",
    # Finance marketing
    "금리", "대출", "투자", "수익", "분양", "모델하우스",
)

PAYMENT_HINT_KEYWORDS = (
    "승인", "결제", "출금", "이체", "원", "USD", "JPY", "EUR", "카드", "체크",
    "CMS", "입금", "급여", "월급", "송금", "환급", "정산", "잔액", "취소",
)

MIN_LENGTH = 20
MAX_LENGTH = 130

_HAS_DIGIT = re.compile(r"\d")
_HAS_DIGIT_RUN = re.compile(r"\d{2,}")
_HAS_LINK = re.compile(r"https?://", re.IGNORECASE)
_AMOUNT_WITH_WON = re.compile(r"[\d,]+원")


class PreFilter:
    """
    Keyword + structural rejection of non-payment messages.

    Usage:
        kept, rejected = PreFilter().split(messages)
    """

    def __init__(self, user_exclude_keywords: Iterable[str] = ()):
        self._user_keywords: Tuple[str, ...] = ()
        self.set_user_exclude_keywords(user_exclude_keywords)

    def set_user_exclude_keywords(self, keywords: Iterable[str]) -> None:
        self._user_keywords = tuple(k.strip().lower() for k in keywords if k and k.strip())

    def reject_reason(self, body: str) -> str:
        """Why `body` is rejected, or "" if it may be a payment."""
        if not body or not body.strip():
            return "blank"

        lowered = body.lower()
        for keyword in NON_PAYMENT_KEYWORDS:
            if keyword in lowered:
                return f"keyword:{keyword}"
        for keyword in self._user_keywords:
            if keyword in lowered:
                return f"user_keyword:{keyword}"

        if len(body) < MIN_LENGTH:
            return "too_short"
        if len(body) > MAX_LENGTH:
            return "too_long"
        if not _HAS_DIGIT.search(body):
            return "no_digit"
        if not _HAS_DIGIT_RUN.search(body):
            return "no_digit_run"
        if _HAS_LINK.search(body) and "결제" not in body and "승인" not in body:
            return "link"
        if not any(k in body for k in PAYMENT_HINT_KEYWORDS) and not _AMOUNT_WITH_WON.search(body):
            return "no_payment_hint"
        return ""

    def is_candidate(self, body: str) -> bool:
        return self.reject_reason(body) == ""

    def split(self, messages: List[Message]) -> Tuple[List[Message], List[Message]]:
        """Partition into (candidates, rejected), preserving order."""
        kept: List[Message] = []
        rejected: List[Message] = []
        for message in messages:
            reason = self.reject_reason(message.raw_text)
            if reason:
                rejected.append(message)
                logger.debug(f"Pre-filter rejected {message.id} ({reason})")
            else:
                kept.append(message)
        logger.info(f"Pre-filter: {len(messages)} -> {len(kept)} ({len(rejected)} rejected)")
        return kept, rejected
