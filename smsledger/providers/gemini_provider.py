"""
Google Gemini provider.

Embeddings via batchEmbedContents, generation via generateContent. A
MAX_TOKENS finish is reported as OutputTruncated so the regex synthesizer
can retry with a more compact prompt.
"""

from typing import Dict, List, Optional

import requests

from .base import LLMProvider, raise_for_provider_status
from ..core.errors import MalformedResponse, OutputTruncated
from ..core.models import Vector
from ..utils.logger import logger
from ..utils.secrets import get_api_key


class GeminiProvider(LLMProvider):
    """
    Google Gemini provider.

    Cost notes:
    - gemini-2.0-flash by default (cheapest generation model)
    - one batchEmbedContents request per chunk of up to 100 texts
    """

    BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize Gemini provider.

        Args:
            config: Provider configuration with:
                - model: Generation model (default: gemini-2.0-flash)
                - embedding_model: Embedding model (default: gemini-embedding-001)
                - api_key: API key (or retrieved from keyring)
                - timeout: Request timeout in seconds
        """
        config = config or {}
        self.model = config.get("model", "gemini-2.0-flash")
        self.embedding_model = config.get("embedding_model", "gemini-embedding-001")
        self.api_key = config.get("api_key") or get_api_key("gemini")
        self.timeout = config.get("timeout", 30)
        self.base_url = config.get("base_url", self.BASE_URL)

        if not self.api_key:
            raise ValueError(
                "Gemini API key not configured. "
                "Set it via keyring: python -c \"from smsledger.utils.secrets import set_api_key; set_api_key('gemini', 'AIza...')\""
            )

    def get_name(self) -> str:
        return "gemini"

    @property
    def is_local(self) -> bool:
        return False

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self.api_key}

    def health_check(self) -> bool:
        """Lightweight check against the models list endpoint."""
        try:
            response = requests.get(f"{self.base_url}/models", headers=self._headers, timeout=10)

            if response.status_code in (400, 403):
                logger.error("Gemini API key is invalid")
                return False

            if response.status_code == 429:
                logger.warning("Gemini rate limit hit during health check")
                return True

            return response.status_code == 200
        except requests.exceptions.Timeout:
            logger.warning("Gemini health check timed out")
            return False
        except requests.exceptions.RequestException as e:
            logger.warning(f"Gemini health check failed: {e}")
            return False

    def embed_batch(self, texts: List[str]) -> List[Optional[Vector]]:
        if not texts:
            return []

        model_path = f"models/{self.embedding_model}"
        response = requests.post(
            f"{self.base_url}/{model_path}:batchEmbedContents",
            headers=self._headers,
            json={
                "requests": [
                    {"model": model_path, "content": {"parts": [{"text": text}]}}
                    for text in texts
                ]
            },
            timeout=self.timeout,
        )
        raise_for_provider_status(response, "gemini")

        try:
            embeddings = response.json().get("embeddings", [])
        except ValueError as e:
            raise MalformedResponse(f"Gemini embedding response is not JSON: {e}")

        vectors: List[Optional[Vector]] = []
        for i in range(len(texts)):
            values = embeddings[i].get("values") if i < len(embeddings) else None
            vectors.append([float(v) for v in values] if values else None)
        return vectors

    def generate(
        self,
        prompt: str,
        temperature: float = 0.1,
        max_tokens: int = 1024,
        json_mode: bool = False,
    ) -> str:
        generation_config = {"maxOutputTokens": max_tokens, "temperature": temperature}
        if json_mode:
            generation_config["responseMimeType"] = "application/json"

        response = requests.post(
            f"{self.base_url}/models/{self.model}:generateContent",
            headers=self._headers,
            json={
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": generation_config,
            },
            timeout=self.timeout,
        )
        raise_for_provider_status(response, "gemini")

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponse(f"Gemini response is not JSON: {e}")

        candidates = data.get("candidates", [])
        if not candidates:
            block_reason = data.get("promptFeedback", {}).get("blockReason")
            raise MalformedResponse(f"No candidates in Gemini response (blockReason={block_reason})")

        candidate = candidates[0]
        parts = candidate.get("content", {}).get("parts", [])
        text = "".join(part.get("text", "") for part in parts)

        if candidate.get("finishReason") == "MAX_TOKENS":
            raise OutputTruncated(f"Gemini stopped on MAX_TOKENS ({len(text)} chars)")
        if not text.strip():
            raise MalformedResponse("Empty text in Gemini response")

        usage = data.get("usageMetadata", {})
        logger.debug(
            f"Gemini tokens: prompt={usage.get('promptTokenCount', 0)} "
            f"output={usage.get('candidatesTokenCount', 0)}"
        )
        return text
