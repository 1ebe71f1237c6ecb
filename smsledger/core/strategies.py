"""
Ordered extraction strategies.

The fallback chain (regex -> pattern replay -> template heuristic -> seed
fields) is a list of strategies, each returning an optional result. The
first success wins; a chain that yields nothing means "drop the message".
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple

from .models import PLACEHOLDER_STORE, ExtractionResult, LearnedPattern, Message, RegexTriple
from .regex_engine import RegexEngine, extract_date_time
from .rule_classifier import RuleClassifier

logger = logging.getLogger(__name__)


class ExtractionStrategy(ABC):
    name = "strategy"

    @abstractmethod
    def extract(self, message: Message) -> Optional[ExtractionResult]:
        pass


class RegexStrategy(ExtractionStrategy):
    """Apply a regex triple to the message's own body."""

    def __init__(
        self,
        triple: RegexTriple,
        regex_engine: RegexEngine,
        fallback_card: str = "",
        fallback_category: str = "",
        name: str = "regex",
    ):
        self.triple = triple
        self.regex_engine = regex_engine
        self.fallback_card = fallback_card
        self.fallback_category = fallback_category
        self.name = name

    def extract(self, message: Message) -> Optional[ExtractionResult]:
        return self.regex_engine.parse_with_regex(
            message.raw_text,
            message.timestamp_ms,
            self.triple,
            fallback_card=self.fallback_card,
            fallback_category=self.fallback_category,
        )


class PatternReplayStrategy(ExtractionStrategy):
    """Replay a learned pattern (regex or local re-parse)."""

    name = "replay"

    def __init__(self, matcher, pattern: LearnedPattern):
        self.matcher = matcher
        self.pattern = pattern

    def extract(self, message: Message) -> Optional[ExtractionResult]:
        return self.matcher.replay(self.pattern, message.raw_text, message.timestamp_ms)


class FixedResultStrategy(ExtractionStrategy):
    """A result already obtained for exactly this message (e.g. its own LLM verdict)."""

    name = "llm"

    def __init__(self, result: Optional[ExtractionResult]):
        self.result = result

    def extract(self, message: Message) -> Optional[ExtractionResult]:
        return self.result


class SeedFieldsStrategy(ExtractionStrategy):
    """
    Cluster member without a regex: amount and date from the member's own
    body, store/card/category from the cluster seed.
    """

    name = "seed_fields"

    def __init__(self, seed: ExtractionResult, rule_classifier: RuleClassifier):
        self.seed = seed
        self.rule_classifier = rule_classifier

    def extract(self, message: Message) -> Optional[ExtractionResult]:
        if self.seed.store == PLACEHOLDER_STORE:
            return None
        amount = self.rule_classifier.extract_amount(message.raw_text)
        if not amount:
            return None
        return ExtractionResult(
            amount=amount,
            store=self.seed.store,
            card=self.seed.card,
            category=self.seed.category,
            date_time=extract_date_time(message.raw_text, message.timestamp_ms),
        )


class StrategyChain:
    """First successful strategy wins."""

    def __init__(self, strategies: Sequence[ExtractionStrategy]):
        self.strategies: List[ExtractionStrategy] = [s for s in strategies if s is not None]

    def run(self, message: Message) -> Tuple[Optional[ExtractionResult], str]:
        for strategy in self.strategies:
            try:
                result = strategy.extract(message)
            except Exception as e:
                logger.error(f"Strategy {strategy.name} failed for {message.id}: {e}", exc_info=True)
                continue
            if result is not None and result.amount > 0:
                return result, strategy.name
        return None, ""

    def extract(self, message: Message) -> Optional[ExtractionResult]:
        return self.run(message)[0]
