"""
Embedding and generative providers for smsledger.

- Gemini: default cloud provider (embeddings + generation)
- OpenAI: GPT-4o-mini and text-embedding-3-small (cloud)
- Ollama: local inference (free, on-device)

Use the ProviderFactory for creating provider instances:
    from smsledger.providers import ProviderFactory
    provider = ProviderFactory.create("gemini", config)
"""

from .base import EmbeddingProvider, LLMProvider, TextGenerator
from .factory import ProviderFactory
from .gemini_provider import GeminiProvider
from .ollama_provider import OllamaProvider
from .openai_provider import OpenAIProvider

__all__ = [
    "EmbeddingProvider",
    "TextGenerator",
    "LLMProvider",
    "ProviderFactory",
    "GeminiProvider",
    "OpenAIProvider",
    "OllamaProvider",
]
