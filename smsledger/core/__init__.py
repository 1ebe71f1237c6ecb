"""
Core modules for the smsledger pipeline.

This package contains the payment classification pipeline:
- orchestrator: Batch pipeline coordinator (import it directly)
- prefilter / income: Cheap rejection and deposit split
- rule_classifier: Tier 1 keyword rules
- pattern_matcher / pattern_store / remote_rules: Tier 2 similarity reuse
- generative_extractor / regex_synthesizer / template_fallback: Tier 3
- clusterer / group_processor: Grouped Tier 3 over unresolved messages
- rate_limited_caller / cooldown: Provider resilience
"""

from .errors import (
    InvalidRegex,
    LowQualityParse,
    MalformedResponse,
    OutputTruncated,
    PipelineCancelled,
    QuotaExhausted,
    SmsLedgerError,
    TransientProviderError,
)
from .models import (
    ClassificationDecision,
    EmbeddedMessage,
    ExtractionResult,
    IncomeResult,
    LearnedPattern,
    Message,
    PatternSource,
    RegexTriple,
    RemoteRule,
)
from .pattern_store import InMemoryPatternStore, PatternStore
from .prompt_engine import PromptEngine, get_prompt_engine
from .cooldown import FailureCooldown, get_cooldown
from .regex_engine import RegexEngine, get_regex_engine

__all__ = [
    "orchestrator",
    "SmsLedgerError",
    "TransientProviderError",
    "QuotaExhausted",
    "MalformedResponse",
    "OutputTruncated",
    "InvalidRegex",
    "LowQualityParse",
    "PipelineCancelled",
    "Message",
    "ExtractionResult",
    "IncomeResult",
    "ClassificationDecision",
    "LearnedPattern",
    "RemoteRule",
    "RegexTriple",
    "EmbeddedMessage",
    "PatternSource",
    "PatternStore",
    "InMemoryPatternStore",
    "PromptEngine",
    "get_prompt_engine",
    "FailureCooldown",
    "get_cooldown",
    "RegexEngine",
    "get_regex_engine",
]
