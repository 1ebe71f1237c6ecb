"""
Tier 3: generative extraction of payment fields.

Single and batch extraction against a TextGenerator. The batch call numbers
messages ("1번", "2번", ...) and expects a JSON array tagged with a 1-based
`no` field; a batch that parses fewer than half of its items falls back to
per-message calls. A batch of one is exactly the single call.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from .categories import normalize_category
from .errors import LowQualityParse, MalformedResponse, QuotaExhausted, SmsLedgerError, TransientProviderError
from .models import DEFAULT_CARD, DEFAULT_CATEGORY, PLACEHOLDER_STORE, ExtractionResult, Message
from .prompt_engine import PromptEngine, get_prompt_engine
from .rate_limited_caller import RateLimitedCaller
from .regex_engine import DEFAULT_MIN_AMOUNT
from ..utils.json_extract import parse_json_array, parse_json_object

logger = logging.getLogger(__name__)

SINGLE_MAX_TOKENS = 1024
BATCH_MAX_TOKENS = 4096
EXTRACTION_TEMPERATURE = 0.1
FALLBACK_SINGLE_DELAY = 0.05

_NON_DIGIT = re.compile(r"[^\d]")


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    digits = _NON_DIGIT.sub("", str(value or ""))
    return int(digits) if digits else 0


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


@dataclass
class LlmExtraction:
    """Raw model verdict for one message (category already normalized)."""
    is_payment: bool = False
    amount: int = 0
    store: str = PLACEHOLDER_STORE
    card: str = DEFAULT_CARD
    date_time: str = ""
    category: str = DEFAULT_CATEGORY

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "LlmExtraction":
        return cls(
            is_payment=_to_bool(data.get("isPayment", False)),
            amount=_to_int(data.get("amount")),
            store=str(data.get("storeName") or PLACEHOLDER_STORE).strip(),
            card=str(data.get("cardName") or DEFAULT_CARD).strip(),
            date_time=str(data.get("dateTime") or "").strip(),
            category=normalize_category(str(data.get("category") or DEFAULT_CATEGORY)),
        )

    def check_quality(self, min_amount: int = DEFAULT_MIN_AMOUNT) -> None:
        """Raise LowQualityParse for a sub-minimum amount or a placeholder store."""
        if self.amount < min_amount:
            raise LowQualityParse(f"amount {self.amount} below {min_amount}")
        if not self.store or self.store == PLACEHOLDER_STORE:
            raise LowQualityParse("placeholder store")

    def to_result(self, min_amount: int = DEFAULT_MIN_AMOUNT) -> Optional[ExtractionResult]:
        """ExtractionResult, or None unless this is a trustworthy payment."""
        if not self.is_payment:
            return None
        try:
            self.check_quality(min_amount)
        except LowQualityParse as e:
            logger.debug(f"Deferring low quality verdict: {e}")
            return None
        return ExtractionResult(
            amount=self.amount,
            store=self.store,
            card=self.card,
            category=self.category,
            date_time=self.date_time,
        )


def parse_extraction_response(response: str) -> Optional[LlmExtraction]:
    data = parse_json_object(response)
    if data is None:
        logger.warning(f"No JSON object in extraction response: {response[:100]!r}")
        return None
    return LlmExtraction.from_json(data)


def parse_batch_extraction_response(response: str, expected: int) -> Optional[List[Optional[LlmExtraction]]]:
    """
    Place array items by their `no` field. None if fewer than half of the
    expected items could be placed.
    """
    items = parse_json_array(response)
    if items is None:
        logger.warning(f"No JSON array in batch response: {response[:100]!r}")
        return None

    results: List[Optional[LlmExtraction]] = [None] * expected
    for item in items:
        if not isinstance(item, dict):
            continue
        number = _to_int(item.get("no"))
        if 1 <= number <= expected:
            results[number - 1] = LlmExtraction.from_json(item)

    parsed = sum(1 for r in results if r is not None)
    if parsed * 2 < expected:
        logger.warning(f"Batch response placed only {parsed}/{expected} items")
        return None
    return results


class GenerativeExtractor:
    """
    Usage:
        extractor = GenerativeExtractor(provider)
        verdict = extractor.extract(message)
        verdicts = extractor.extract_batch(messages)
    """

    def __init__(
        self,
        generator,
        caller: Optional[RateLimitedCaller] = None,
        prompt_engine: Optional[PromptEngine] = None,
        batch_max_retries: int = 2,
        batch_retry_base_delay: float = 1.0,
        fallback_delay: float = FALLBACK_SINGLE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.generator = generator
        self.caller = caller or RateLimitedCaller()
        self.prompts = prompt_engine or get_prompt_engine()
        self.batch_max_retries = max(1, batch_max_retries)
        self.batch_retry_base_delay = batch_retry_base_delay
        self.fallback_delay = fallback_delay
        self._sleep = sleep

    def extract(self, message: Message, context: str = "") -> Optional[LlmExtraction]:
        """One generative call. None on any failure."""
        prompt = self.prompts.render_single_extraction(message.raw_text, message.timestamp_ms, context)
        try:
            text = self.caller.call(
                self.generator.generate,
                prompt,
                temperature=EXTRACTION_TEMPERATURE,
                max_tokens=SINGLE_MAX_TOKENS,
            )
        except (SmsLedgerError, requests.exceptions.RequestException) as e:
            logger.warning(f"Single extraction failed for {message.id}: {type(e).__name__}: {e}")
            return None
        except Exception as e:
            logger.error(f"Single extraction raised for {message.id}: {e}", exc_info=True)
            return None
        return parse_extraction_response(text)

    def extract_batch(self, messages: Sequence[Message], context: str = "") -> List[Optional[LlmExtraction]]:
        """
        Same-length list of verdicts. Never raises.
        """
        if not messages:
            return []
        if len(messages) == 1:
            return [self.extract(messages[0], context)]

        prompt = self.prompts.render_batch_extraction(
            [m.raw_text for m in messages], [m.timestamp_ms for m in messages], context
        )

        for attempt in range(self.batch_max_retries):
            try:
                self.caller.bucket.acquire()
                text = self.generator.generate(
                    prompt, temperature=EXTRACTION_TEMPERATURE, max_tokens=BATCH_MAX_TOKENS
                )
            except QuotaExhausted:
                logger.error(f"Quota exhausted during batch extraction of {len(messages)} messages")
                return [None] * len(messages)
            except TransientProviderError as e:
                if attempt < self.batch_max_retries - 1:
                    delay = self.batch_retry_base_delay * (attempt + 1)
                    logger.warning(f"Batch extraction rate limited (status={e.status_code}), retry in {delay:.1f}s")
                    self._sleep(delay)
                    continue
                logger.error(f"Batch extraction failed (attempt {attempt + 1}): {e}")
                continue
            except (MalformedResponse, requests.exceptions.RequestException) as e:
                logger.error(f"Batch extraction failed (attempt {attempt + 1}): {type(e).__name__}: {e}")
                continue
            except Exception as e:
                logger.error(f"Batch extraction raised (attempt {attempt + 1}): {e}", exc_info=True)
                continue

            parsed = parse_batch_extraction_response(text, len(messages))
            if parsed is not None:
                logger.info(
                    f"Batch extraction parsed {sum(1 for p in parsed if p)}/{len(messages)}"
                )
                return parsed

        logger.warning(f"Batch extraction failed, falling back to {len(messages)} single calls")
        results: List[Optional[LlmExtraction]] = []
        for i, message in enumerate(messages):
            results.append(self.extract(message, context))
            if i < len(messages) - 1:
                self._sleep(self.fallback_delay)
        return results
