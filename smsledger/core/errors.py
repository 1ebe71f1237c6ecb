"""
Error taxonomy for the extraction pipeline.

Providers raise these; RateLimitedCaller decides whether to retry; pipeline
stages catch them at the per-message boundary and degrade to "no result".
"""

from typing import Optional


class SmsLedgerError(Exception):
    """Base class for all pipeline errors."""


class TransientProviderError(SmsLedgerError):
    """Rate limit or temporary outage (HTTP 429/5xx). Retried with backoff."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class QuotaExhausted(SmsLedgerError):
    """Provider quota is spent. Never retried; the current batch degrades."""


class MalformedResponse(SmsLedgerError):
    """Response had no usable JSON / expected fields."""


class OutputTruncated(MalformedResponse):
    """Prompt too large or generation stopped on the token limit."""


class InvalidRegex(SmsLedgerError):
    """Synthesized regex failed to compile or to validate against samples."""

    def __init__(self, reason: str, success_ratio: float = 0.0):
        super().__init__(reason)
        self.reason = reason
        self.success_ratio = success_ratio


class LowQualityParse(SmsLedgerError):
    """Parse succeeded but the result is not trustworthy (placeholder store, tiny amount)."""


# Substrings that identify a spent quota inside a 429/403 body
QUOTA_SIGNATURES = (
    "exceeded your current quota",
    "insufficient_quota",
    "quota exceeded",
)


def is_quota_message(text: str) -> bool:
    """True if a provider error body carries a quota-exhaustion signature."""
    lowered = (text or "").lower()
    if any(sig in lowered for sig in QUOTA_SIGNATURES):
        return True
    return "resource_exhausted" in lowered and "quota" in lowered


class PipelineCancelled(SmsLedgerError):
    """The caller's cancel event fired; remaining work is abandoned."""
