"""
Provider Registry - Factory for Generation Providers

Maps backend names and model aliases to provider classes and caches
instances so concurrent tasks share one client.
"""

import logging
from typing import Dict, Optional, Tuple, Type

from .generation_provider import GenerationProvider
from .openai_provider import OpenAIProvider, GroqProvider
from .anthropic_provider import AnthropicProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    Factory for generation provider instances.

    Example:
        >>> provider = ProviderRegistry.get_provider("groq")
        >>> provider.describe()["version"]
        'llama-3.3-70b-versatile'

        >>> provider = ProviderRegistry.get_provider("openai", "gpt-4.1-mini")
    """

    # Registry: name -> (Provider class, default model)
    _REGISTRY: Dict[str, Tuple[Type[GenerationProvider], str]] = {
        "openai": (OpenAIProvider, "gpt-4o-mini"),
        "anthropic": (AnthropicProvider, "claude-haiku-4-5"),
        "groq": (GroqProvider, "llama-3.3-70b-versatile"),

        # Aliases
        "claude": (AnthropicProvider, "claude-haiku-4-5"),
        "llama": (GroqProvider, "llama-3.3-70b-versatile"),
    }

    # Cache for provider instances
    _CACHE: Dict[str, GenerationProvider] = {}

    @classmethod
    def get_provider(
        cls,
        name: str,
        model_name: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> GenerationProvider:
        """
        Get (or create) the provider for a backend.

        Args:
            name: Backend name or alias (e.g., "openai", "groq", "claude")
            model_name: Optional model; defaults to the backend's default model
            api_key: Optional API key (or use the backend's env var)

        Returns:
            Provider instance

        Raises:
            ValueError: If the backend is not registered or the model is unsupported
        """
        if not name:
            raise ValueError("Provider name cannot be empty")

        key = name.lower()
        if key not in cls._REGISTRY:
            raise ValueError(
                f"Unknown provider: '{name}'. "
                f"Available providers: {', '.join(cls.list_providers())}"
            )

        provider_class, default_model = cls._REGISTRY[key]
        model_name = model_name or default_model

        cache_key = f"{provider_class.__name__}:{model_name}:{api_key or 'default'}"
        if cache_key in cls._CACHE:
            logger.debug(f"Using cached provider for {key} ({model_name})")
            return cls._CACHE[cache_key]

        logger.info(f"Creating provider {provider_class.__name__} for model {model_name}")
        provider = provider_class(model_name, api_key=api_key)
        cls._CACHE[cache_key] = provider
        return provider

    @classmethod
    def register(cls, name: str, provider_class: Type[GenerationProvider], default_model: str):
        """Register an additional backend (or override an existing one)."""
        cls._REGISTRY[name.lower()] = (provider_class, default_model)

    @classmethod
    def list_providers(cls) -> list:
        return sorted(cls._REGISTRY.keys())

    @classmethod
    def is_registered(cls, name: str) -> bool:
        return bool(name) and name.lower() in cls._REGISTRY

    @classmethod
    def clear_cache(cls):
        """Clear provider instance cache (tests, key rotation)."""
        cls._CACHE.clear()
        logger.info("Provider cache cleared")
