"""
Ollama provider for local inference.

Zero cloud cost; useful for development and for users who keep message
text on-device. Uses /api/embed and /api/generate.
"""

from typing import Dict, List, Optional

import requests

from .base import LLMProvider, raise_for_provider_status
from ..core.errors import MalformedResponse, OutputTruncated
from ..core.models import Vector
from ..utils.logger import logger


class OllamaProvider(LLMProvider):
    """Ollama provider (local HTTP API)."""

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize Ollama provider.

        Args:
            config: Provider configuration dict with:
                - base_url: Ollama API URL (default: http://localhost:11434)
                - model: Generation model (default: llama3)
                - embedding_model: Embedding model (default: nomic-embed-text)
                - timeout: Request timeout in seconds (default: 60)
        """
        config = config or {}
        self.base_url = config.get("base_url", "http://localhost:11434")
        self.model = config.get("model", "llama3")
        self.embedding_model = config.get("embedding_model", "nomic-embed-text")
        self.timeout = config.get("timeout", 60)

    def get_name(self) -> str:
        return "ollama"

    @property
    def is_local(self) -> bool:
        return True

    def health_check(self) -> bool:
        """Check that Ollama is running; warn if the model is not pulled."""
        try:
            response = requests.get(f"{self.base_url}/api/tags", timeout=5)
            if response.status_code != 200:
                logger.warning(f"Ollama health check returned status {response.status_code}")
                return False

            names = [m.get("name", "") for m in response.json().get("models", [])]
            for wanted in (self.model, self.embedding_model):
                if wanted not in names and f"{wanted}:latest" not in names:
                    logger.warning(f"Model '{wanted}' not found in Ollama. Available: {names}")
            return True
        except requests.exceptions.Timeout:
            logger.warning("Ollama health check timed out")
            return False
        except requests.exceptions.ConnectionError:
            logger.warning("Could not connect to Ollama - is it running?")
            return False
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"Ollama health check failed: {e}")
            return False

    def embed_batch(self, texts: List[str]) -> List[Optional[Vector]]:
        if not texts:
            return []

        response = requests.post(
            f"{self.base_url}/api/embed",
            json={"model": self.embedding_model, "input": list(texts)},
            timeout=self.timeout,
        )
        raise_for_provider_status(response, "ollama")

        try:
            embeddings = response.json().get("embeddings", [])
        except ValueError as e:
            raise MalformedResponse(f"Ollama embedding response is not JSON: {e}")

        return [
            [float(v) for v in embeddings[i]] if i < len(embeddings) and embeddings[i] else None
            for i in range(len(texts))
        ]

    def generate(
        self,
        prompt: str,
        temperature: float = 0.1,
        max_tokens: int = 1024,
        json_mode: bool = False,
    ) -> str:
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }
        if json_mode:
            payload["format"] = "json"

        response = requests.post(f"{self.base_url}/api/generate", json=payload, timeout=self.timeout)
        raise_for_provider_status(response, "ollama")

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponse(f"Ollama response is not JSON: {e}")

        text = data.get("response", "")
        if data.get("done_reason") == "length":
            raise OutputTruncated(f"Ollama stopped on num_predict ({len(text)} chars)")
        if not text.strip():
            raise MalformedResponse("Empty response from Ollama")
        return text
