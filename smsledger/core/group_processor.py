"""
Tier 3 over clusters.

Per sender: the main cluster's seed gets one generative call; exception
clusters get a batch call whose prompt carries the sender's distribution
summary. A payment verdict learns exactly one pattern per cluster (with a
synthesized or template regex when one is available) and every member is
re-extracted from its own body. Members that cannot be parsed are dropped.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .clusterer import MessageCluster, SourceGroup, normalize_address
from .cooldown import FailureCooldown
from .generative_extractor import GenerativeExtractor, LlmExtraction
from .models import (
    SOURCE_CONFIDENCE,
    ClassificationDecision,
    EmbeddedMessage,
    LearnedPattern,
    PatternSource,
    RegexTriple,
)
from .pattern_matcher import MatchResult, PatternMatcher
from .pattern_store import PatternStore
from .regex_engine import RegexEngine
from .regex_synthesizer import GROUP_MIN_RATIO, RegexSynthesizer
from .rule_classifier import RuleClassifier
from .strategies import (
    FixedResultStrategy,
    PatternReplayStrategy,
    RegexStrategy,
    SeedFieldsStrategy,
    StrategyChain,
)
from .template_fallback import build_template_fallback_regex

logger = logging.getLogger(__name__)

TIER = 3
LLM_CONFIDENCE = SOURCE_CONFIDENCE[PatternSource.LLM]

ProgressCallback = Callable[[str, int, int], None]


class GroupProcessor:
    """
    Usage:
        processor = GroupProcessor(store, extractor, synthesizer, regex_engine,
                                   rule_classifier, cooldown)
        decisions = processor.process_groups(groups)   # {input index: decision}
    """

    def __init__(
        self,
        store: PatternStore,
        extractor: GenerativeExtractor,
        synthesizer: RegexSynthesizer,
        regex_engine: RegexEngine,
        rule_classifier: RuleClassifier,
        cooldown: FailureCooldown,
        min_samples: int = 3,
        group_min_ratio: float = GROUP_MIN_RATIO,
        llm_batch_size: int = 20,
        llm_concurrency: int = 5,
    ):
        self.store = store
        self.extractor = extractor
        self.synthesizer = synthesizer
        self.regex_engine = regex_engine
        self.rule_classifier = rule_classifier
        self.cooldown = cooldown
        self.min_samples = min_samples
        self.group_min_ratio = group_min_ratio
        self.llm_batch_size = max(1, llm_batch_size)
        self.llm_concurrency = max(1, llm_concurrency)

    # ------------------------------------------------------------------
    # Pattern registration
    # ------------------------------------------------------------------

    def register_pattern(
        self,
        seed: EmbeddedMessage,
        is_payment: bool,
        source: PatternSource,
        regex: Optional[RegexTriple] = None,
        verdict: Optional[LlmExtraction] = None,
    ) -> Optional[LearnedPattern]:
        """Insert one pattern for the seed unless its sender+template is already stored."""
        sender = normalize_address(seed.message.sender_address)
        if self.store.find_by_sender_and_template(sender, seed.template) is not None:
            logger.debug(f"Pattern already stored for {sender}, skipping")
            return None

        extracted = None
        if is_payment and verdict is not None:
            extracted = {"store": verdict.store, "card": verdict.card, "category": verdict.category}

        pattern = LearnedPattern(
            template=seed.template,
            sender_address=sender,
            vector=seed.vector,
            is_payment=is_payment,
            source=source,
            regex=regex or RegexTriple(),
            extracted=extracted,
        )
        self.store.insert(pattern)
        logger.info(f"Learned {source.value} pattern {pattern.id} (payment={is_payment}) for {sender}")
        return pattern

    # ------------------------------------------------------------------
    # Regex for a cluster
    # ------------------------------------------------------------------

    def learn_regex(self, cluster: MessageCluster) -> Tuple[Optional[RegexTriple], PatternSource]:
        """
        Synthesized regex for clusters with enough samples (outside cooldown),
        else the template heuristic, else no regex.
        """
        key = cluster.seed.template
        if cluster.size >= self.min_samples and not self.cooldown.is_blocked(key):
            samples = cluster.members[: self.synthesizer.max_samples]
            triple = self.synthesizer.synthesize(
                [m.message.raw_text for m in samples],
                [m.message.timestamp_ms for m in samples],
                min_ratio=self.group_min_ratio,
            )
            if triple is not None:
                self.cooldown.record_success(key)
                return triple, PatternSource.LLM_REGEX
            self.cooldown.record_failure(key)

        triple = build_template_fallback_regex(key)
        if triple is not None:
            return triple, PatternSource.TEMPLATE_REGEX
        return None, PatternSource.LLM

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------

    def process_cluster(
        self, cluster: MessageCluster, verdict: Optional[LlmExtraction]
    ) -> Dict[int, ClassificationDecision]:
        decisions: Dict[int, ClassificationDecision] = {}
        seed = cluster.seed

        if verdict is None:
            logger.warning(f"No verdict for cluster of {cluster.size} ({cluster.sender}), dropping")
            for member in cluster.members:
                decisions[member.index] = ClassificationDecision.not_payment(
                    member.message.id, tier=TIER, kind="unresolved"
                )
            return decisions

        if not verdict.is_payment:
            self.register_pattern(seed, is_payment=False, source=PatternSource.LLM)
            for member in cluster.members:
                decisions[member.index] = ClassificationDecision.not_payment(
                    member.message.id, tier=TIER, confidence=LLM_CONFIDENCE
                )
            return decisions

        seed_result = verdict.to_result(self.regex_engine.min_amount)
        triple, source = self.learn_regex(cluster)
        self.register_pattern(seed, is_payment=True, source=source, regex=triple, verdict=verdict)

        regex_strategy = None
        if triple is not None:
            regex_strategy = RegexStrategy(
                triple,
                self.regex_engine,
                fallback_card=verdict.card,
                fallback_category=verdict.category,
                name=source.value,
            )

        for member in cluster.members:
            if member is seed:
                chain = StrategyChain([regex_strategy, FixedResultStrategy(seed_result)])
            elif regex_strategy is not None:
                chain = StrategyChain([regex_strategy])
            elif seed_result is not None:
                chain = StrategyChain([SeedFieldsStrategy(seed_result, self.rule_classifier)])
            else:
                chain = StrategyChain([])

            result, used = chain.run(member.message)
            if result is None:
                logger.debug(f"Dropping unparsed member {member.message.id}")
                decisions[member.index] = ClassificationDecision.not_payment(
                    member.message.id, tier=TIER, kind="unparsed"
                )
                continue

            confidence = SOURCE_CONFIDENCE[source] if used == source.value else LLM_CONFIDENCE
            decisions[member.index] = ClassificationDecision(
                message_id=member.message.id,
                is_payment=True,
                tier=TIER,
                confidence=confidence,
                result=result,
            )

        return decisions

    def process_source_group(self, group: SourceGroup) -> Dict[int, ClassificationDecision]:
        """Main cluster first, then its exception clusters with a context prompt."""
        decisions: Dict[int, ClassificationDecision] = {}

        main_verdict = self.extractor.extract(group.main.seed.message)
        decisions.update(self.process_cluster(group.main, main_verdict))

        if not group.exceptions:
            return decisions

        context = self.extractor.prompts.render_exception_context(
            group.sender,
            [(c.size, c.seed.message.raw_text) for c in group.clusters],
            main_card=main_verdict.card if main_verdict and main_verdict.is_payment else "",
        )
        verdicts = self.extractor.extract_batch(
            [c.seed.message for c in group.exceptions], context=context
        )
        for cluster, verdict in zip(group.exceptions, verdicts):
            decisions.update(self.process_cluster(cluster, verdict))

        return decisions

    def process_groups(
        self,
        groups: Sequence[SourceGroup],
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[int, ClassificationDecision]:
        """
        Process source groups with bounded concurrency. Groups not yet
        started when cancel_event is set are skipped.
        """
        decisions: Dict[int, ClassificationDecision] = {}
        if not groups:
            return decisions

        lock = threading.Lock()
        done = [0]
        total = len(groups)

        def run(group: SourceGroup) -> None:
            if cancel_event is not None and cancel_event.is_set():
                return
            try:
                group_decisions = self.process_source_group(group)
            except Exception as e:
                logger.error(f"Group processing failed for {group.sender}: {e}", exc_info=True)
                return
            with lock:
                decisions.update(group_decisions)
                done[0] += 1
                current = done[0]
            if progress_callback is not None:
                progress_callback("llm", current, total)

        with ThreadPoolExecutor(max_workers=self.llm_concurrency) as executor:
            list(executor.map(run, groups))

        logger.info(f"Tier3 groups: {done[0]}/{total} processed, {len(decisions)} decisions")
        return decisions

    # ------------------------------------------------------------------
    # Confirmed matches
    # ------------------------------------------------------------------

    def process_confirmed(
        self,
        items: Sequence[Tuple[EmbeddedMessage, MatchResult]],
        matcher: PatternMatcher,
    ) -> Dict[int, ClassificationDecision]:
        """
        Payment already confirmed by similarity: extract with a batch call,
        falling back to replaying the matched pattern on this body.
        """
        decisions: Dict[int, ClassificationDecision] = {}
        for start in range(0, len(items), self.llm_batch_size):
            chunk = items[start:start + self.llm_batch_size]
            try:
                verdicts = self.extractor.extract_batch([item.message for item, _ in chunk])
            except Exception as e:
                logger.error(f"Confirmed batch of {len(chunk)} failed: {e}", exc_info=True)
                verdicts = [None] * len(chunk)

            for (item, match), verdict in zip(chunk, verdicts):
                llm_result = verdict.to_result(self.regex_engine.min_amount) if verdict is not None else None
                chain = StrategyChain([
                    FixedResultStrategy(llm_result),
                    PatternReplayStrategy(matcher, match.pattern) if match.pattern else None,
                ])
                result, used = chain.run(item.message)
                if result is None:
                    decisions[item.index] = ClassificationDecision.not_payment(
                        item.message.id, tier=TIER, kind="unparsed"
                    )
                elif used == FixedResultStrategy.name:
                    decisions[item.index] = ClassificationDecision(
                        item.message.id, True, TIER, LLM_CONFIDENCE, result
                    )
                else:
                    decisions[item.index] = ClassificationDecision(
                        item.message.id, True, 2, match.similarity, result
                    )
        return decisions
