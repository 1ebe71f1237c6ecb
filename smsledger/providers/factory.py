"""
Provider factory.

Single entry point to instantiate any provider by name, with a registry of
provider classes and a cache of instances.
"""

import logging
from typing import Dict, List, Optional, Type

from .base import LLMProvider

logger = logging.getLogger(__name__)


class ProviderFactory:
    """
    Registry of provider classes plus an instance cache.

    The same registry serves both capabilities: the embedding provider and
    the text generator can be the same backend or two different ones.
    """

    _providers: Dict[str, Type[LLMProvider]] = {}
    _instances: Dict[str, LLMProvider] = {}

    @classmethod
    def register(cls, name: str, provider_class: Type[LLMProvider]) -> None:
        cls._providers[name] = provider_class
        logger.debug(f"Registered provider: {name}")

    @classmethod
    def create(cls, name: str, config: Optional[Dict] = None, use_cache: bool = True) -> LLMProvider:
        """
        Create or retrieve a provider instance.

        Args:
            name: Provider name (gemini, openai, ollama)
            config: Provider-specific configuration
            use_cache: If True, return cached instance for same name+config

        Raises:
            ValueError: If provider name is unknown or the provider cannot
                        be configured (e.g. missing API key)
        """
        cache_key = f"{name}:{sorted((config or {}).items())}"
        if use_cache and cache_key in cls._instances:
            return cls._instances[cache_key]

        if name not in cls._providers:
            available = list(cls._providers.keys())
            raise ValueError(f"Unknown provider: '{name}'. Available: {available}")

        try:
            instance = cls._providers[name](config or {})
        except ValueError as e:
            logger.error(f"Failed to create provider '{name}': {e}")
            raise

        if use_cache:
            cls._instances[cache_key] = instance
        logger.info(f"Created provider instance: {name}")
        return instance

    @classmethod
    def from_config(cls, config: Dict, role: str = "provider") -> LLMProvider:
        """
        Provider for a role ("provider" for generation, "embedding_provider"
        for vectors) using its section under config["providers"].
        """
        name = config.get(role) or config.get("provider", "gemini")
        return cls.create(name, config.get("providers", {}).get(name, {}))

    @classmethod
    def list_providers(cls) -> List[str]:
        return list(cls._providers.keys())

    @classmethod
    def is_registered(cls, name: str) -> bool:
        return name in cls._providers

    @classmethod
    def clear_cache(cls) -> None:
        cls._instances.clear()
        logger.debug("Cleared provider instance cache")

    @classmethod
    def unregister(cls, name: str) -> bool:
        """Unregister a provider (mainly for testing)."""
        if name not in cls._providers:
            return False
        del cls._providers[name]
        for key in [k for k in cls._instances if k.startswith(f"{name}:")]:
            del cls._instances[key]
        return True


def _auto_register_providers():
    from .gemini_provider import GeminiProvider
    from .ollama_provider import OllamaProvider
    from .openai_provider import OpenAIProvider

    ProviderFactory.register("gemini", GeminiProvider)
    ProviderFactory.register("openai", OpenAIProvider)
    ProviderFactory.register("ollama", OllamaProvider)


# Auto-register on import
_auto_register_providers()
