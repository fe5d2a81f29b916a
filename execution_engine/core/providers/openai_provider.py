"""
OpenAI Generation Provider

Implements GenerationProvider for OpenAI chat models, and for Groq through
its OpenAI-compatible endpoint.
Supports: gpt-4o-mini, gpt-4.1-mini, gpt-4.1, llama-3.3-70b-versatile (Groq)
"""

import asyncio
import logging
import os
from typing import Any, Dict, Optional, Type

from .generation_provider import GenerationProvider, SchemaT
from ..exceptions import GenerationError, ProviderUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1024
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 1.0


class OpenAIProvider(GenerationProvider):
    """
    OpenAI provider implementation.

    The OpenAI SDK client is synchronous; calls run in the default executor so
    the event loop stays free while a request is in flight.
    """

    name = "openai"
    api_key_env = "OPENAI_API_KEY"
    base_url: Optional[str] = None

    # Model configurations
    MODELS = {
        "gpt-4o-mini": {
            "api_name": "gpt-4o-mini",
            "max_tokens": 16384,
            "context_window": 128000
        },
        "gpt-4.1": {
            "api_name": "gpt-4.1",
            "max_tokens": 32768,
            "context_window": 1000000
        },
        "gpt-4.1-mini": {
            "api_name": "gpt-4.1-mini",
            "max_tokens": 32768,
            "context_window": 1000000
        },
    }

    def __init__(self, model_name: str, api_key: Optional[str] = None, client: Optional[Any] = None):
        """
        Initialize provider.

        Args:
            model_name: Model to use (e.g., "gpt-4o-mini")
            api_key: Optional API key (defaults to the provider's env var)
            client: Optional pre-built SDK client

        Raises:
            ValueError: If model is not supported
        """
        if model_name not in self.MODELS:
            raise ValueError(
                f"Unsupported {self.name} model: '{model_name}'. "
                f"Supported models: {list(self.MODELS.keys())}"
            )

        self.model_name = model_name
        self.model_config = self.MODELS[model_name]
        self.client = client

        if self.client is None:
            api_key = api_key or os.getenv(self.api_key_env)
            if api_key:
                import openai
                self.client = openai.OpenAI(api_key=api_key, base_url=self.base_url)
            else:
                logger.warning(f"{self.api_key_env} not set, {self.name} provider will report unavailable")

        logger.info(f"{type(self).__name__} initialized with model: {model_name}")

    async def generate(self, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        """Generate text with a single chat completion."""
        if self.client is None:
            raise ProviderUnavailableError(f"{self.api_key_env} is not configured", provider=self.name)

        options = options or {}
        api_params = {
            "model": self.model_config["api_name"],
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": options.get("max_tokens", DEFAULT_MAX_TOKENS),
            "temperature": options.get("temperature", DEFAULT_TEMPERATURE),
            "top_p": options.get("top_p", DEFAULT_TOP_P),
        }

        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None,
                lambda: self.client.chat.completions.create(**api_params)
            )
        except Exception as e:
            raise self._translate_error(e)

        content = response.choices[0].message.content if response.choices else None
        if not content:
            finish_reason = response.choices[0].finish_reason if response.choices else "none"
            raise GenerationError(
                f"{self.name} returned empty response (finish reason: {finish_reason})",
                provider=self.name,
            )
        return content

    async def generate_structured(
        self,
        prompt: str,
        schema: Type[SchemaT],
        options: Optional[Dict[str, Any]] = None,
    ) -> SchemaT:
        """Generate JSON for `schema` and validate it."""
        text = await self.generate(self._build_structured_prompt(prompt, schema), options)
        return self._parse_structured(text, schema)

    async def is_available(self) -> bool:
        """Configured client means available; no network round-trip."""
        return self.client is not None

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.model_name,
            "limits": {
                "max_tokens": self.model_config["max_tokens"],
                "context_window": self.model_config["context_window"],
            },
        }

    def _translate_error(self, error: Exception) -> Exception:
        """Map SDK exceptions to engine error kinds."""
        import openai

        transient = (
            openai.APIConnectionError,
            openai.RateLimitError,
            openai.AuthenticationError,
            openai.InternalServerError,
        )
        if isinstance(error, transient):
            logger.warning(f"{self.name} unavailable: {error}")
            return ProviderUnavailableError(f"{self.name} unavailable: {type(error).__name__}", provider=self.name)

        logger.error(f"{self.name} generation failed: {error}")
        return GenerationError(f"{self.name} API error: {type(error).__name__}", provider=self.name)


class GroqProvider(OpenAIProvider):
    """
    Groq provider through its OpenAI-compatible API.
    """

    name = "groq"
    api_key_env = "GROQ_API_KEY"
    base_url = "https://api.groq.com/openai/v1"

    MODELS = {
        "llama-3.3-70b-versatile": {
            "api_name": "llama-3.3-70b-versatile",
            "max_tokens": 32768,
            "context_window": 131072
        },
        "llama-3.1-8b-instant": {
            "api_name": "llama-3.1-8b-instant",
            "max_tokens": 8192,
            "context_window": 131072
        },
    }
