"""
OpenAI provider (also works with OpenAI-compatible proxies via base_url).
"""

from typing import Dict, List, Optional

import requests

from .base import LLMProvider, raise_for_provider_status
from ..core.errors import MalformedResponse, OutputTruncated
from ..core.models import Vector
from ..utils.logger import logger
from ..utils.secrets import get_api_key


class OpenAIProvider(LLMProvider):
    """
    OpenAI provider.

    Cost notes:
    - gpt-4o-mini for generation, text-embedding-3-small for vectors
    - JSON mode through response_format
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize OpenAI provider.

        Args:
            config: Provider configuration with:
                - model: Chat model (default: gpt-4o-mini)
                - embedding_model: Embedding model (default: text-embedding-3-small)
                - api_key: API key (or retrieved from keyring)
                - base_url: API base URL (for Azure/proxies)
                - timeout: Request timeout in seconds
        """
        config = config or {}
        self.model = config.get("model", "gpt-4o-mini")
        self.embedding_model = config.get("embedding_model", "text-embedding-3-small")
        self.api_key = config.get("api_key") or get_api_key("openai")
        self.base_url = config.get("base_url", "https://api.openai.com/v1")
        self.timeout = config.get("timeout", 30)

        if not self.api_key:
            raise ValueError(
                "OpenAI API key not configured. "
                "Set it via keyring: python -c \"from smsledger.utils.secrets import set_api_key; set_api_key('openai', 'sk-...')\""
            )

    def get_name(self) -> str:
        return "openai"

    @property
    def is_local(self) -> bool:
        return False

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def health_check(self) -> bool:
        try:
            response = requests.get(f"{self.base_url}/models", headers=self._headers, timeout=10)

            if response.status_code == 401:
                logger.error("OpenAI API key is invalid")
                return False

            if response.status_code == 429:
                logger.warning("OpenAI rate limit hit during health check")
                return True

            return response.status_code == 200
        except requests.exceptions.Timeout:
            logger.warning("OpenAI health check timed out")
            return False
        except requests.exceptions.RequestException as e:
            logger.warning(f"OpenAI health check failed: {e}")
            return False

    def embed_batch(self, texts: List[str]) -> List[Optional[Vector]]:
        if not texts:
            return []

        response = requests.post(
            f"{self.base_url}/embeddings",
            headers=self._headers,
            json={"model": self.embedding_model, "input": list(texts)},
            timeout=self.timeout,
        )
        raise_for_provider_status(response, "openai")

        try:
            data = response.json().get("data", [])
        except ValueError as e:
            raise MalformedResponse(f"OpenAI embedding response is not JSON: {e}")

        vectors: List[Optional[Vector]] = [None] * len(texts)
        for position, item in enumerate(data):
            index = item.get("index", position)
            if 0 <= index < len(texts) and item.get("embedding"):
                vectors[index] = [float(v) for v in item["embedding"]]
        return vectors

    def generate(
        self,
        prompt: str,
        temperature: float = 0.1,
        max_tokens: int = 1024,
        json_mode: bool = False,
    ) -> str:
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        response = requests.post(
            f"{self.base_url}/chat/completions",
            headers=self._headers,
            json=payload,
            timeout=self.timeout,
        )
        raise_for_provider_status(response, "openai")

        try:
            choice = response.json()["choices"][0]
            text = choice["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise MalformedResponse(f"Unexpected OpenAI response shape: {e}")

        if choice.get("finish_reason") == "length":
            raise OutputTruncated(f"OpenAI stopped on max_tokens ({len(text)} chars)")
        if not text.strip():
            raise MalformedResponse("Empty content in OpenAI response")
        return text
