"""
Tier 2: vector lookup against learned patterns and remote rules.

Decision ladder for a message vector (all comparisons inclusive):

    >= non_payment vs a non-payment pattern  -> NON_PAYMENT (count the hit)
    >= auto_apply  vs a payment pattern      -> replay that pattern's regex
    >= confirm                               -> CONFIRMED, Tier 3 extracts,
                                                replay is the fallback
    >= llm_trigger                           -> AMBIGUOUS, Tier 3 decides,
                                                hit is *not* counted
    otherwise                                -> UNRESOLVED (clustering)

Remote rules for the sender are consulted whenever the local pool did not
settle the message; a remote rule that parses is promoted into the store.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .clusterer import normalize_address
from .models import (
    PLACEHOLDER_STORE,
    EmbeddedMessage,
    ExtractionResult,
    LearnedPattern,
    PatternSource,
    RemoteRule,
)
from .pattern_store import PatternStore
from .regex_engine import RegexEngine, get_regex_engine
from .remote_rules import EmptyRulePool, RemoteRulePool
from .rule_classifier import RuleClassifier
from .similarity import SimilarityThresholds, cosine_similarity, find_best_match

logger = logging.getLogger(__name__)


class MatchOutcome(Enum):
    NON_PAYMENT = "non_payment"
    APPLIED = "applied"
    CONFIRMED = "confirmed"
    AMBIGUOUS = "ambiguous"
    UNRESOLVED = "unresolved"


@dataclass
class MatchResult:
    outcome: MatchOutcome
    similarity: float = 0.0
    pattern: Optional[LearnedPattern] = None
    result: Optional[ExtractionResult] = None
    remote: bool = False

    @property
    def settled(self) -> bool:
        """True when Tier 3 is not needed."""
        return self.outcome in (MatchOutcome.NON_PAYMENT, MatchOutcome.APPLIED)


class PatternMatcher:
    """
    Usage:
        matcher = PatternMatcher(store, remote_pool=pool)
        results = matcher.match_all(embedded_messages)
    """

    def __init__(
        self,
        store: PatternStore,
        thresholds: Optional[SimilarityThresholds] = None,
        regex_engine: Optional[RegexEngine] = None,
        remote_pool: Optional[RemoteRulePool] = None,
        rule_classifier: Optional[RuleClassifier] = None,
    ):
        self.store = store
        self.thresholds = thresholds or SimilarityThresholds()
        self.regex_engine = regex_engine or get_regex_engine()
        self.remote_pool = remote_pool or EmptyRulePool()
        self.rule_classifier = rule_classifier or RuleClassifier()

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def replay(self, pattern: LearnedPattern, body: str, timestamp_ms: int) -> Optional[ExtractionResult]:
        """
        Re-extract *this* body with a stored pattern.

        Patterns with a regex replay it. Patterns without one (plain LLM
        results) re-parse the body locally and only borrow card/category.
        """
        if pattern.regex.is_usable():
            return self.regex_engine.parse_with_regex(
                body,
                timestamp_ms,
                pattern.regex,
                fallback_card=pattern.cached_card,
                fallback_category=pattern.cached_category,
            )

        amount, store, card, category, date_time = self.rule_classifier.parse(body, timestamp_ms)
        if amount <= 0 or store == PLACEHOLDER_STORE:
            return None
        return ExtractionResult(
            amount=amount,
            store=store,
            card=pattern.cached_card or card,
            category=pattern.cached_category or category,
            date_time=date_time,
        )

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def match_local(
        self,
        item: EmbeddedMessage,
        payment_patterns: Sequence[LearnedPattern],
        non_payment_patterns: Sequence[LearnedPattern],
    ) -> MatchResult:
        message = item.message
        non_payment = find_best_match(item.vector, non_payment_patterns, self.thresholds.non_payment)
        if non_payment is not None:
            self.store.increment_match_count(non_payment.item.id)
            return MatchResult(MatchOutcome.NON_PAYMENT, non_payment.similarity, non_payment.item)

        best = find_best_match(item.vector, payment_patterns, self.thresholds.llm_trigger)
        if best is None:
            return MatchResult(MatchOutcome.UNRESOLVED)

        pattern, similarity = best.item, best.similarity

        if self.thresholds.should_auto_apply(similarity):
            result = self.replay(pattern, message.raw_text, message.timestamp_ms)
            self.store.increment_match_count(pattern.id)
            if result is not None:
                return MatchResult(MatchOutcome.APPLIED, similarity, pattern, result)
            logger.debug(f"Tier2 replay failed at {similarity:.3f}, deferring {message.id}")
            return MatchResult(MatchOutcome.CONFIRMED, similarity, pattern)

        if self.thresholds.should_confirm(similarity):
            self.store.increment_match_count(pattern.id)
            return MatchResult(MatchOutcome.CONFIRMED, similarity, pattern)

        return MatchResult(MatchOutcome.AMBIGUOUS, similarity, pattern)

    def match_remote(
        self,
        item: EmbeddedMessage,
        remote_rules: Optional[Dict[str, List[RemoteRule]]] = None,
    ) -> Optional[MatchResult]:
        if remote_rules is None:
            rules = self.remote_pool.get_rules_for_sender(item.message.sender_address)
        else:
            rules = remote_rules.get(normalize_address(item.message.sender_address), [])
        if not rules:
            return None

        best_rule: Optional[RemoteRule] = None
        best_similarity = 0.0
        for rule in rules:
            similarity = cosine_similarity(item.vector, rule.vector)
            if similarity >= rule.min_similarity and (best_rule is None or similarity > best_similarity):
                best_rule, best_similarity = rule, similarity
        if best_rule is None:
            return None

        message = item.message
        result = self.regex_engine.parse_with_regex(message.raw_text, message.timestamp_ms, best_rule.regex)
        if result is None:
            logger.debug(f"Remote rule {best_rule.rule_id} matched but did not parse {message.id}")
            return None

        pattern = self.promote(item, best_rule, result)
        return MatchResult(MatchOutcome.APPLIED, best_similarity, pattern, result, remote=True)

    def promote(self, item: EmbeddedMessage, rule: RemoteRule, result: ExtractionResult) -> LearnedPattern:
        """Copy a remote rule into the local store so Tier 2 finds it next time."""
        sender = normalize_address(item.message.sender_address)
        existing = self.store.find_by_sender_and_template(sender, item.template)
        if existing is not None:
            self.store.increment_match_count(existing.id)
            return existing

        pattern = LearnedPattern(
            template=item.template,
            sender_address=sender,
            vector=list(item.vector),
            is_payment=True,
            source=PatternSource.REMOTE_RULE,
            regex=rule.regex,
            extracted={"card": result.card, "category": result.category},
        )
        self.store.insert(pattern)
        logger.info(f"Promoted remote rule {rule.rule_id} for sender {sender}")
        return pattern

    def match(
        self,
        item: EmbeddedMessage,
        payment_patterns: Optional[Sequence[LearnedPattern]] = None,
        non_payment_patterns: Optional[Sequence[LearnedPattern]] = None,
        remote_rules: Optional[Dict[str, List[RemoteRule]]] = None,
    ) -> MatchResult:
        if payment_patterns is None:
            payment_patterns = self.store.get_all_payment_patterns()
        if non_payment_patterns is None:
            non_payment_patterns = self.store.get_all_non_payment_patterns()

        local = self.match_local(item, payment_patterns, non_payment_patterns)
        if local.settled:
            return local

        remote = self.match_remote(item, remote_rules)
        return remote if remote is not None else local

    def match_all(self, items: List[EmbeddedMessage]) -> List[MatchResult]:
        """Match a batch against one snapshot of the pools. Order preserved."""
        if not items:
            return []
        payment = self.store.get_all_payment_patterns()
        non_payment = self.store.get_all_non_payment_patterns()
        remote_rules = self.remote_pool.load_rules()

        results = []
        for item in items:
            try:
                results.append(self.match(item, payment, non_payment, remote_rules))
            except Exception as e:
                logger.error(f"Tier2 match failed for {item.message.id}: {e}", exc_info=True)
                results.append(MatchResult(MatchOutcome.UNRESOLVED))

        counts = {}
        for r in results:
            counts[r.outcome.value] = counts.get(r.outcome.value, 0) + 1
        logger.info(f"Tier2: {counts}")
        return results
