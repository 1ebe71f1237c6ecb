"""
Data model shared by every pipeline stage.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

Vector = List[float]

# Store name a parser emits when it could not find one
PLACEHOLDER_STORE = "결제"
DEFAULT_CARD = "기타"
DEFAULT_CATEGORY = "기타"


class PatternSource(Enum):
    """Where a learned pattern came from."""
    RULE = "rule"
    LLM = "llm"
    LLM_REGEX = "llm_regex"
    TEMPLATE_REGEX = "template_regex"
    REMOTE_RULE = "remote_rule"


# Confidence assigned to patterns by origin
SOURCE_CONFIDENCE = {
    PatternSource.RULE: 1.0,
    PatternSource.LLM_REGEX: 1.0,
    PatternSource.REMOTE_RULE: 0.9,
    PatternSource.TEMPLATE_REGEX: 0.85,
    PatternSource.LLM: 0.8,
}


@dataclass
class Message:
    """One inbound notification. Pipeline-local, never persisted."""
    id: str
    raw_text: str
    sender_address: str = ""
    timestamp_ms: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=str(data.get("id", "")),
            raw_text=str(data.get("body") or data.get("raw_text") or ""),
            sender_address=str(data.get("address") or data.get("sender_address") or ""),
            timestamp_ms=int(data.get("date") or data.get("timestamp_ms") or 0),
        )


@dataclass
class RegexTriple:
    """Capture-group-1 patterns. Empty string means "no regex available"."""
    amount_pattern: str = ""
    store_pattern: str = ""
    card_pattern: str = ""

    def is_usable(self) -> bool:
        return bool(self.amount_pattern.strip() and self.store_pattern.strip())

    def to_dict(self) -> Dict[str, str]:
        return {
            "amountRegex": self.amount_pattern,
            "storeRegex": self.store_pattern,
            "cardRegex": self.card_pattern,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RegexTriple":
        data = data or {}
        return cls(
            amount_pattern=str(data.get("amountRegex") or "").strip(),
            store_pattern=str(data.get("storeRegex") or "").strip(),
            card_pattern=str(data.get("cardRegex") or "").strip(),
        )


@dataclass
class ExtractionResult:
    """
    Structured fields of a payment message.

    amount is always > 0; extractors that cannot guarantee that return None.
    """
    amount: int
    store: str
    card: str = DEFAULT_CARD
    category: str = DEFAULT_CATEGORY
    date_time: str = ""

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError(f"ExtractionResult amount must be positive, got {self.amount}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "store": self.store,
            "card": self.card,
            "category": self.category,
            "dateTime": self.date_time,
        }


@dataclass
class IncomeResult:
    """Parsed deposit message (kept out of the payment tiers)."""
    amount: int
    income_type: str
    source: str
    date_time: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "type": self.income_type,
            "source": self.source,
            "dateTime": self.date_time,
        }


@dataclass
class ClassificationDecision:
    """Per-message pipeline output."""
    message_id: str
    is_payment: bool
    tier: int
    confidence: float
    result: Optional[ExtractionResult] = None
    kind: str = "payment"
    income: Optional[IncomeResult] = None

    @classmethod
    def not_payment(cls, message_id: str, tier: int = 1, confidence: float = 0.0,
                    kind: str = "none") -> "ClassificationDecision":
        return cls(message_id=message_id, is_payment=False, tier=tier,
                   confidence=confidence, kind=kind)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.message_id,
            "isPayment": self.is_payment,
            "tier": self.tier,
            "confidence": round(self.confidence, 4),
            "kind": self.kind,
            "result": self.result.to_dict() if self.result else None,
        }
        if self.income is not None:
            data["income"] = self.income.to_dict()
        return data


@dataclass
class LearnedPattern:
    """A template + vector + regex record reused by Tier 2."""
    template: str
    sender_address: str
    vector: Vector
    is_payment: bool
    source: PatternSource
    regex: RegexTriple = field(default_factory=RegexTriple)
    extracted: Optional[Dict[str, Any]] = None
    confidence: float = 0.0
    match_count: int = 1
    created_at: float = field(default_factory=time.time)
    last_matched_at: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def __post_init__(self):
        if not self.confidence:
            self.confidence = SOURCE_CONFIDENCE.get(self.source, 0.8)

    @property
    def cached_card(self) -> str:
        return (self.extracted or {}).get("card") or ""

    @property
    def cached_category(self) -> str:
        return (self.extracted or {}).get("category") or ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "template": self.template,
            "senderAddress": self.sender_address,
            "vector": list(self.vector),
            "isPayment": self.is_payment,
            "source": self.source.value,
            "regex": self.regex.to_dict(),
            "extracted": self.extracted,
            "confidence": self.confidence,
            "matchCount": self.match_count,
            "createdAt": self.created_at,
            "lastMatchedAt": self.last_matched_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearnedPattern":
        return cls(
            id=data["id"],
            template=data.get("template", ""),
            sender_address=data.get("senderAddress", ""),
            vector=[float(v) for v in data.get("vector", [])],
            is_payment=bool(data.get("isPayment")),
            source=PatternSource(data.get("source", "llm")),
            regex=RegexTriple.from_dict(data.get("regex")),
            extracted=data.get("extracted"),
            confidence=float(data.get("confidence", 0.0)),
            match_count=int(data.get("matchCount", 1)),
            created_at=float(data.get("createdAt", time.time())),
            last_matched_at=float(data.get("lastMatchedAt", time.time())),
        )


@dataclass
class RemoteRule:
    """Read-only, externally synced regex rule keyed by normalized sender."""
    rule_id: str
    sender_address: str
    vector: Vector
    regex: RegexTriple
    min_similarity: float = 0.94
    enabled: bool = True
    updated_at: int = 0


@dataclass
class EmbeddedMessage:
    """A message with its template and embedding attached."""
    message: Message
    template: str
    vector: Vector
    # Position in the caller's input list
    index: int = -1
