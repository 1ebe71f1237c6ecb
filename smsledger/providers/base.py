"""
Base provider interfaces.

A provider exposes two capabilities:
- EmbeddingProvider: texts -> vectors (one HTTP request per call)
- TextGenerator: prompt -> raw model text

Providers raise the pipeline error taxonomy (TransientProviderError,
QuotaExhausted, OutputTruncated, MalformedResponse); retry policy lives in
RateLimitedCaller, not here.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

import requests

from ..core.errors import QuotaExhausted, TransientProviderError, is_quota_message
from ..core.models import Vector


class EmbeddingProvider(ABC):
    """Text embedding capability."""

    @abstractmethod
    def embed_batch(self, texts: List[str]) -> List[Optional[Vector]]:
        """
        Embed texts in one request.

        Returns:
            Vectors in input order; None for an item the service skipped.
        """
        pass

    def embed(self, text: str) -> Optional[Vector]:
        return self.embed_batch([text])[0]


class TextGenerator(ABC):
    """Generative text capability."""

    @abstractmethod
    def generate(
        self,
        prompt: str,
        temperature: float = 0.1,
        max_tokens: int = 1024,
        json_mode: bool = False,
    ) -> str:
        """
        Run one completion and return the raw text.

        Raises:
            OutputTruncated: generation stopped on the token limit
            MalformedResponse: no text in the response
        """
        pass


class LLMProvider(EmbeddingProvider, TextGenerator):
    """A concrete backend implementing both capabilities."""

    @abstractmethod
    def health_check(self) -> bool:
        """Check if the provider service is available."""
        pass

    @abstractmethod
    def get_name(self) -> str:
        """Return provider identifier for logging."""
        pass

    @property
    @abstractmethod
    def is_local(self) -> bool:
        """Whether provider runs locally (no cloud costs)."""
        pass


def _retry_after(response: requests.Response) -> Optional[float]:
    value = response.headers.get("Retry-After") if response.headers else None
    try:
        return float(value) if value else None
    except ValueError:
        return None


def raise_for_provider_status(response: requests.Response, provider: str) -> None:
    """
    Map an HTTP error response onto the error taxonomy.

    429 -> QuotaExhausted if the body carries a quota signature, else
    TransientProviderError. 403 with a quota signature -> QuotaExhausted.
    5xx -> TransientProviderError. Anything else -> requests.HTTPError.
    """
    status = response.status_code
    if status < 400:
        return

    body = response.text or ""
    if status in (429, 403) and is_quota_message(body):
        raise QuotaExhausted(f"{provider} quota exhausted: {body[:200]}")
    if status == 429:
        raise TransientProviderError(f"{provider} rate limited", status, _retry_after(response))
    if status >= 500:
        raise TransientProviderError(f"{provider} server error {status}", status)
    response.raise_for_status()
