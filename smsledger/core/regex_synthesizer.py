"""
Regex synthesis: from up to three samples of one message family, obtain a
validated capture-group-1 RegexTriple from the generative model.

Protocol:
1. Ask with the full prompt. On OutputTruncated retry once with the compact
   prompt; a second truncation abandons the attempt.
2. Parse the first balanced JSON object of the response.
3. Validate: isPayment, both required regexes present and compilable, and
   the share of samples where amount (>= minimum) and store (valid) both
   extract is at least min_ratio.
4. On rejection, send up to `repair_rounds` repair prompts carrying the
   previous response and the failure reason; validate the same way.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import requests

from .errors import InvalidRegex, OutputTruncated, SmsLedgerError
from .models import RegexTriple
from .prompt_engine import PromptEngine, get_prompt_engine
from .rate_limited_caller import RateLimitedCaller
from .regex_engine import RegexEngine, get_regex_engine
from ..utils.json_extract import parse_json_object

logger = logging.getLogger(__name__)

REGEX_MAX_TOKENS = 8192
REGEX_TEMPERATURE = 0.0
MAX_SAMPLES = 3
GROUP_MIN_RATIO = 0.8


@dataclass
class RegexValidation:
    is_valid: bool
    reason: str = ""
    success_ratio: float = 0.0


@dataclass
class SynthesisResult:
    triple: RegexTriple
    success_ratio: float
    repaired: bool = False


class RegexSynthesizer:
    """
    Usage:
        synthesizer = RegexSynthesizer(provider)
        triple = synthesizer.synthesize(sample_bodies, min_ratio=0.8)
    """

    def __init__(
        self,
        generator,
        caller: Optional[RateLimitedCaller] = None,
        prompt_engine: Optional[PromptEngine] = None,
        regex_engine: Optional[RegexEngine] = None,
        max_samples: int = MAX_SAMPLES,
        repair_rounds: int = 1,
    ):
        self.generator = generator
        self.caller = caller or RateLimitedCaller()
        self.prompts = prompt_engine or get_prompt_engine()
        self.regex_engine = regex_engine or get_regex_engine()
        self.max_samples = max_samples
        self.repair_rounds = max(0, repair_rounds)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def success_ratio(self, triple: RegexTriple, samples: Sequence[str]) -> float:
        """Share of samples where both amount and store extract validly."""
        if not samples:
            return 0.0
        successes = 0
        for sample in samples:
            amount = self.regex_engine.extract_amount(triple.amount_pattern, sample)
            store = self.regex_engine.extract_store(triple.store_pattern, sample)
            if amount is not None and store is not None:
                successes += 1
        return successes / len(samples)

    def check(self, triple: RegexTriple, samples: Sequence[str], min_ratio: float) -> float:
        """
        Validate a candidate triple.

        Returns:
            The success ratio

        Raises:
            InvalidRegex: with the failure reason
        """
        if not triple.is_usable():
            raise InvalidRegex("required_regex_blank")
        if not self.regex_engine.is_compilable(triple.amount_pattern):
            raise InvalidRegex("amount_regex_compile_failed")
        if not self.regex_engine.is_compilable(triple.store_pattern):
            raise InvalidRegex("store_regex_compile_failed")
        if triple.card_pattern and not self.regex_engine.is_compilable(triple.card_pattern):
            raise InvalidRegex("card_regex_compile_failed")

        ratio = self.success_ratio(triple, samples)
        if ratio < min_ratio:
            raise InvalidRegex(f"sample_match_ratio_{ratio:.2f}", success_ratio=ratio)
        return ratio

    def validate(
        self, response: str, samples: Sequence[str], min_ratio: float
    ) -> Tuple[Optional[RegexTriple], RegexValidation]:
        data = parse_json_object(response)
        if data is None:
            return None, RegexValidation(False, "json_parse_failed")

        is_payment = data.get("isPayment", False)
        if isinstance(is_payment, str):
            is_payment = is_payment.strip().lower() == "true"
        if not is_payment:
            return None, RegexValidation(False, "isPayment_false")

        triple = RegexTriple.from_dict(data)
        try:
            ratio = self.check(triple, samples, min_ratio)
        except InvalidRegex as e:
            return None, RegexValidation(False, e.reason, e.success_ratio)
        return triple, RegexValidation(True, "", ratio)

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    def _generate(self, prompt: str) -> str:
        return self.caller.call(
            self.generator.generate,
            prompt,
            temperature=REGEX_TEMPERATURE,
            max_tokens=REGEX_MAX_TOKENS,
            json_mode=True,
        )

    def request_with_token_fallback(self, primary: str, compact: str) -> Optional[str]:
        """
        Exactly two attempts at most: primary, then compact on truncation.
        """
        try:
            return self._generate(primary)
        except OutputTruncated:
            logger.warning(f"Regex prompt truncated ({len(primary)} chars), retrying compact")
        except (SmsLedgerError, requests.exceptions.RequestException) as e:
            logger.warning(f"Regex request failed: {type(e).__name__}: {e}")
            return None

        try:
            return self._generate(compact)
        except OutputTruncated:
            logger.warning(f"Compact regex prompt truncated ({len(compact)} chars), giving up")
        except (SmsLedgerError, requests.exceptions.RequestException) as e:
            logger.warning(f"Compact regex request failed: {type(e).__name__}: {e}")
        return None

    # ------------------------------------------------------------------
    # Synthesis
    # ------------------------------------------------------------------

    def synthesize_detailed(
        self,
        samples: Sequence[str],
        timestamps: Sequence[int] = (),
        min_ratio: float = GROUP_MIN_RATIO,
        repair_context: Optional[Tuple[str, str]] = None,
    ) -> Optional[SynthesisResult]:
        """
        Args:
            samples: Message bodies of one family (blank ones are skipped)
            timestamps: Receive times matching `samples`
            min_ratio: Required success ratio over the samples
            repair_context: (previous_response, failure_reason) to start
                            directly with a repair round
        """
        pairs = [
            (body, timestamps[i] if i < len(timestamps) else 0)
            for i, body in enumerate(samples)
            if body and body.strip()
        ][: self.max_samples]
        if not pairs:
            return None
        bodies = [p[0] for p in pairs]
        stamps = [p[1] for p in pairs]

        if repair_context is None:
            response = self.request_with_token_fallback(
                self.prompts.render_regex(bodies, stamps),
                self.prompts.render_regex_compact(bodies),
            )
            if response is None:
                return None
            triple, validation = self.validate(response, bodies, min_ratio)
            if triple is not None:
                logger.info(f"Regex synthesized (ratio={validation.success_ratio:.2f})")
                return SynthesisResult(triple, validation.success_ratio)
            logger.info(f"Regex rejected: {validation.reason}")
            previous, reason = response, validation.reason
        else:
            previous, reason = repair_context

        for round_number in range(1, self.repair_rounds + 1):
            response = self.request_with_token_fallback(
                self.prompts.render_regex_repair(bodies, stamps, previous, reason),
                self.prompts.render_regex_ultra_compact(bodies),
            )
            if response is None:
                return None
            triple, validation = self.validate(response, bodies, min_ratio)
            if triple is not None:
                logger.info(
                    f"Regex repaired in round {round_number} (ratio={validation.success_ratio:.2f})"
                )
                return SynthesisResult(triple, validation.success_ratio, repaired=True)
            logger.info(f"Repaired regex rejected: {validation.reason}")
            previous, reason = response, validation.reason

        return None

    def synthesize(
        self,
        samples: Sequence[str],
        timestamps: Sequence[int] = (),
        min_ratio: float = GROUP_MIN_RATIO,
        repair_context: Optional[Tuple[str, str]] = None,
    ) -> Optional[RegexTriple]:
        result = self.synthesize_detailed(samples, timestamps, min_ratio, repair_context)
        return result.triple if result else None
