"""
Orchestrator module - the SMS payment classification pipeline.

Flow for a batch:
    pre-filter -> income split -> Tier 1 rules -> batch embedding
    -> Tier 2 pattern match -> Tier 3 (confirmed matches, then clusters)

Every input message gets exactly one decision, in input order. Any stage
failure degrades the affected messages to "not a payment"; cancellation
stops at the next stage boundary and defaults whatever is left.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .clusterer import Clusterer, normalize_address
from .cooldown import FailureCooldown, get_cooldown
from .errors import PipelineCancelled
from .generative_extractor import GenerativeExtractor
from .group_processor import GroupProcessor
from .income import IncomeFilter, IncomeParser, SmsType
from .models import (
    ClassificationDecision,
    EmbeddedMessage,
    ExtractionResult,
    LearnedPattern,
    Message,
    PatternSource,
)
from .pattern_matcher import MatchOutcome, PatternMatcher
from .pattern_store import DAY_SECONDS, InMemoryPatternStore, PatternStore
from .prefilter import PreFilter
from .prompt_engine import PromptEngine
from .rate_limited_caller import RateLimitedCaller, RateLimitedEmbedder
from .regex_engine import RegexEngine
from .regex_synthesizer import RegexSynthesizer
from .remote_rules import RemoteRulePool, create_rule_pool
from .rule_classifier import RuleClassifier
from .similarity import SimilarityThresholds
from .template_engine import templatize
from ..providers.factory import ProviderFactory
from ..utils.config import get_section, load_config

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]


class Orchestrator:
    """
    Usage:
        orchestrator = Orchestrator.from_config()
        decisions = orchestrator.process(messages)

    embedder and generator are provider objects exposing
    embed_batch(texts) and generate(prompt, ...) respectively.
    """

    def __init__(
        self,
        embedder,
        generator,
        store: Optional[PatternStore] = None,
        remote_pool: Optional[RemoteRulePool] = None,
        config: Optional[Dict[str, Any]] = None,
        caller: Optional[RateLimitedCaller] = None,
        prompt_engine: Optional[PromptEngine] = None,
        cooldown: Optional[FailureCooldown] = None,
        regex_engine: Optional[RegexEngine] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config if config is not None else load_config()
        regex_cfg = get_section(self.config, "regex")
        rate_cfg = get_section(self.config, "rate_limit")
        store_cfg = get_section(self.config, "pattern_store")
        cooldown_cfg = get_section(self.config, "cooldown")
        clustering_cfg = get_section(self.config, "clustering")

        self.thresholds = SimilarityThresholds.from_config(get_section(self.config, "thresholds"))
        self.stale_days = store_cfg.get("stale_days", 30)
        self.llm_batch_size = rate_cfg.get("llm_batch_size", 20)
        min_amount = regex_cfg.get("min_amount", 100)
        user_keywords = self.config.get("user_exclude_keywords") or []

        self.embedding_provider = embedder
        self.generator = generator
        self.caller = caller or RateLimitedCaller(
            max_retries=rate_cfg.get("max_retries", 3),
            base_delay=rate_cfg.get("base_delay", 2.0),
            requests_per_minute=rate_cfg.get("requests_per_minute", 0),
            sleep=sleep,
        )
        self.embedder = RateLimitedEmbedder(
            embedder,
            self.caller,
            chunk_size=rate_cfg.get("embedding_chunk_size", 100),
            concurrency=rate_cfg.get("embedding_concurrency", 10),
        )
        self.store = store if store is not None else InMemoryPatternStore(store_cfg.get("path"))
        self.remote_pool = remote_pool or create_rule_pool(
            get_section(self.config, "remote_rules"), self.thresholds.remote_default
        )

        self.prefilter = PreFilter(user_keywords)
        self.income_filter = IncomeFilter(user_keywords)
        self.income_parser = IncomeParser(min_amount)
        self.rule_classifier = RuleClassifier(user_keywords, min_amount=min_amount)
        self.regex_engine = regex_engine or RegexEngine(min_amount)
        self.matcher = PatternMatcher(
            self.store, self.thresholds, self.regex_engine, self.remote_pool, self.rule_classifier
        )
        self.clusterer = Clusterer(
            self.thresholds,
            small_group_max=clustering_cfg.get("small_group_max", 5),
            yield_every=clustering_cfg.get("yield_every", 50),
        )
        self.prompts = prompt_engine or PromptEngine(self.config.get("templates_dir"))
        self.extractor = GenerativeExtractor(
            generator,
            self.caller,
            self.prompts,
            batch_max_retries=rate_cfg.get("batch_max_retries", 2),
            batch_retry_base_delay=rate_cfg.get("batch_retry_base_delay", 1.0),
            sleep=sleep,
        )
        self.synthesizer = RegexSynthesizer(
            generator,
            self.caller,
            self.prompts,
            self.regex_engine,
            max_samples=regex_cfg.get("max_samples", 3),
            repair_rounds=regex_cfg.get("repair_rounds", 1),
        )
        self.cooldown = cooldown or get_cooldown(cooldown_cfg)
        self.group_processor = GroupProcessor(
            self.store,
            self.extractor,
            self.synthesizer,
            self.regex_engine,
            self.rule_classifier,
            self.cooldown,
            min_samples=regex_cfg.get("min_samples_for_synthesis", 3),
            group_min_ratio=regex_cfg.get("group_min_ratio", 0.8),
            llm_batch_size=self.llm_batch_size,
            llm_concurrency=rate_cfg.get("llm_concurrency", 5),
        )

        self._stats_lock = threading.Lock()
        self._stats: Dict[str, int] = {}

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "Orchestrator":
        """Build providers, store and rule pool from configuration."""
        config = config if config is not None else load_config()
        generator = ProviderFactory.from_config(config, role="provider")
        embedder = ProviderFactory.from_config(config, role="embedding_provider")
        logger.info(
            f"Orchestrator using generator={generator.get_name()} embedder={embedder.get_name()}"
        )
        return cls(embedder, generator, config=config)

    def set_user_exclude_keywords(self, keywords: Sequence[str]) -> None:
        """Apply user exclusion keywords to every rule-based filter."""
        keywords = list(keywords)
        self.prefilter.set_user_exclude_keywords(keywords)
        self.income_filter.set_user_exclude_keywords(keywords)
        self.rule_classifier.set_user_exclude_keywords(keywords)
        logger.info(f"User exclude keywords set ({len(keywords)})")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _count(self, key: str, n: int = 1) -> None:
        if not n:
            return
        with self._stats_lock:
            self._stats[key] = self._stats.get(key, 0) + n

    @staticmethod
    def _check_cancel(cancel_event: Optional[threading.Event], stage: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise PipelineCancelled(f"cancelled before {stage}")

    @staticmethod
    def _report(callback: Optional[ProgressCallback], step: str, current: int, total: int) -> None:
        if callback is None:
            return
        try:
            callback(step, current, total)
        except Exception as e:
            logger.warning(f"Progress callback failed at {step}: {e}")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _rule_stage(
        self,
        indexed: List[Tuple[int, Message]],
        decisions: Dict[int, ClassificationDecision],
    ) -> Tuple[List[Tuple[int, Message]], List[Tuple[int, Message, ExtractionResult]]]:
        """
        Income split and Tier 1. Returns the messages left for Tier 2 and
        the Tier-1 hits whose template is not yet learned.
        """
        remaining: List[Tuple[int, Message]] = []
        learnable: List[Tuple[int, Message, ExtractionResult]] = []
        seen_templates = set()

        for index, message in indexed:
            body = message.raw_text
            if self.income_filter.classify(body) == SmsType.INCOME:
                income = self.income_parser.parse(body, message.timestamp_ms)
                decision = ClassificationDecision.not_payment(message.id, tier=1, confidence=1.0, kind="income")
                decision.income = income
                decisions[index] = decision
                self._count("income")
                continue

            result = self.rule_classifier.classify(body, message.timestamp_ms)
            if result is None:
                remaining.append((index, message))
                continue

            decisions[index] = ClassificationDecision(message.id, True, 1, 1.0, result)
            self._count("tier1")

            key = (normalize_address(message.sender_address), templatize(body))
            if key in seen_templates:
                continue
            seen_templates.add(key)
            if self.store.find_by_sender_and_template(*key) is None:
                learnable.append((index, message, result))

        return remaining, learnable

    def _learn_rule_patterns(
        self,
        learnable: List[Tuple[int, Message, ExtractionResult]],
        vectors: List[Optional[List[float]]],
    ) -> None:
        """Register Tier-1 hits as rule patterns so Tier 2 can recognize their family."""
        learned = 0
        for (_, message, result), vector in zip(learnable, vectors):
            if vector is None:
                continue
            self.store.insert(LearnedPattern(
                template=templatize(message.raw_text),
                sender_address=normalize_address(message.sender_address),
                vector=vector,
                is_payment=True,
                source=PatternSource.RULE,
                extracted={"store": result.store, "card": result.card, "category": result.category},
            ))
            learned += 1
        if learned:
            logger.info(f"Learned {learned} rule patterns from Tier 1")
        self._count("rule_patterns_learned", learned)

    def _match_stage(
        self,
        embedded: List[EmbeddedMessage],
        decisions: Dict[int, ClassificationDecision],
    ) -> Tuple[List[Tuple[EmbeddedMessage, Any]], List[EmbeddedMessage]]:
        """Tier 2. Returns (confirmed matches, messages left for clustering)."""
        confirmed = []
        unresolved: List[EmbeddedMessage] = []

        for item, match in zip(embedded, self.matcher.match_all(embedded)):
            message_id = item.message.id
            if match.outcome == MatchOutcome.NON_PAYMENT:
                decisions[item.index] = ClassificationDecision.not_payment(
                    message_id, tier=2, confidence=match.similarity
                )
                self._count("tier2_non_payment")
            elif match.outcome == MatchOutcome.APPLIED:
                decisions[item.index] = ClassificationDecision(
                    message_id, True, 2, match.similarity, match.result
                )
                self._count("tier2_applied")
            elif match.outcome == MatchOutcome.CONFIRMED:
                confirmed.append((item, match))
            else:
                unresolved.append(item)

        return confirmed, unresolved

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def process(
        self,
        messages: Sequence[Message],
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[ClassificationDecision]:
        """
        Classify a batch of messages.

        Args:
            messages: Inbound messages
            progress_callback: Called as (step, current, total)
            cancel_event: When set, the pipeline stops at the next stage boundary

        Returns:
            One decision per input message, in input order
        """
        messages = list(messages)
        total = len(messages)
        if not total:
            return []

        decisions: Dict[int, ClassificationDecision] = {}
        default_kind = "unresolved"
        started = time.time()

        try:
            removed = self.store.delete_stale(time.time() - self.stale_days * DAY_SECONDS)
            if removed:
                logger.info(f"Removed {removed} stale patterns")

            # Pre-filter
            self._check_cancel(cancel_event, "prefilter")
            candidates: List[Tuple[int, Message]] = []
            for index, message in enumerate(messages):
                reason = self.prefilter.reject_reason(message.raw_text)
                if reason:
                    decisions[index] = ClassificationDecision.not_payment(
                        message.id, tier=1, confidence=1.0, kind="filtered"
                    )
                else:
                    candidates.append((index, message))
            self._count("filtered", total - len(candidates))
            self._report(progress_callback, "prefilter", total, total)

            # Income split and Tier 1
            self._check_cancel(cancel_event, "tier1")
            remaining, learnable = self._rule_stage(candidates, decisions)
            self._report(progress_callback, "tier1", len(candidates), len(candidates))

            # Embedding
            self._check_cancel(cancel_event, "embedding")
            templates = [templatize(m.raw_text) for _, m in remaining]
            learn_templates = [templatize(m.raw_text) for _, m, _ in learnable]
            self._report(progress_callback, "embedding", 0, len(templates) + len(learn_templates))
            vectors = self.embedder.embed_batch(templates + learn_templates) if templates or learn_templates else []
            self._report(progress_callback, "embedding", len(vectors), len(vectors))

            self._learn_rule_patterns(learnable, vectors[len(templates):])

            embedded: List[EmbeddedMessage] = []
            for (index, message), template, vector in zip(remaining, templates, vectors):
                if vector is None:
                    decisions[index] = ClassificationDecision.not_payment(
                        message.id, tier=2, kind="no_embedding"
                    )
                    self._count("embedding_failed")
                    continue
                embedded.append(EmbeddedMessage(message, template, vector, index))

            # Tier 2
            self._check_cancel(cancel_event, "tier2")
            confirmed, unresolved = self._match_stage(embedded, decisions)
            self._report(progress_callback, "tier2", len(embedded), len(embedded))

            # Tier 3: confirmed matches
            self._check_cancel(cancel_event, "tier3")
            if confirmed:
                decisions.update(self.group_processor.process_confirmed(confirmed, self.matcher))
                self._count("tier3_confirmed", len(confirmed))

            # Tier 3: clusters
            self._check_cancel(cancel_event, "clustering")
            if unresolved:
                groups = self.clusterer.build_source_groups(unresolved, cancel_event)
                self._report(progress_callback, "clustering", len(unresolved), len(unresolved))
                decisions.update(
                    self.group_processor.process_groups(groups, progress_callback, cancel_event)
                )
                self._count("tier3_clustered", len(unresolved))

        except PipelineCancelled as e:
            logger.warning(f"Pipeline cancelled: {e}")
            default_kind = "cancelled"
            self._count("cancelled")

        # Groups skipped after the event fired inside Tier 3
        if default_kind != "cancelled" and cancel_event is not None and cancel_event.is_set():
            logger.warning("Pipeline cancelled during tier3")
            default_kind = "cancelled"
            self._count("cancelled")

        missing =[i for i in range(total) if i not in decisions]
        for index in missing:
            decisions[index] = ClassificationDecision.not_payment(
                messages[index].id, tier=3, kind=default_kind
            )

        payments = sum(1 for d in decisions.values() if d.is_payment)
        logger.info(
            f"Processed {total} messages in {time.time() - started:.2f}s: "
            f"{payments} payments, {len(missing)} defaulted"
        )
        self._count("processed", total)
        return [decisions[i] for i in range(total)]

    def process_one(self, message: Message) -> ClassificationDecision:
        return self.process([message])[0]

    # ------------------------------------------------------------------
    # Message dispatch
    # ------------------------------------------------------------------

    def handle_message(self, message: dict) -> dict:
        """
        Handle one JSON request from the host application.
        """
        msg_type = message.get("type")
        payload = message.get("payload", {}) or {}

        if msg_type == "ping":
            return {"type": "pong", "status": "ok"}

        if msg_type == "process":
            return self._handle_process(payload)

        if msg_type == "health":
            return self._handle_health()

        if msg_type == "stats":
            return {"status": "ok", "stats": self.get_stats()}

        return {"status": "error", "error": "Unknown message type"}

    def _handle_process(self, payload: dict) -> dict:
        keywords = payload.get("userExcludeKeywords")
        if keywords is not None:
            self.set_user_exclude_keywords(keywords)
        messages = [Message.from_dict(m) for m in payload.get("messages", [])]
        decisions = self.process(messages)
        return {"status": "ok", "decisions": [d.to_dict() for d in decisions]}

    def _handle_health(self) -> dict:
        generator_healthy = self._provider_healthy(self.generator)
        embedder_healthy = self._provider_healthy(self.embedding_provider)
        healthy = generator_healthy and embedder_healthy
        return {
            "status": "ok" if healthy else "degraded",
            "generator_healthy": generator_healthy,
            "embedder_healthy": embedder_healthy,
            "patterns": self.store.count(),
        }

    @staticmethod
    def _provider_healthy(provider) -> bool:
        check = getattr(provider, "health_check", None)
        if check is None:
            return True
        try:
            return bool(check())
        except Exception as e:
            logger.warning(f"Health check failed: {e}")
            return False

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            counters = dict(self._stats)
        return {
            "pipeline": counters,
            "patterns": self.store.stats(),
            "caller": self.caller.get_stats(),
            "regex_engine": self.regex_engine.get_stats(),
            "cooldown": self.cooldown.get_status(),
        }
