"""
Anthropic Generation Provider

Implements GenerationProvider for Anthropic Claude models.
Supports: claude-sonnet-4-5, claude-haiku-4-5
"""

import asyncio
import logging
import os
from typing import Any, Dict, Optional, Type

from .generation_provider import GenerationProvider, SchemaT
from ..exceptions import GenerationError, ProviderUnavailableError

logger = logging.getLogger(__name__)


class AnthropicProvider(GenerationProvider):
    """
    Anthropic provider implementation.

    Uses the Messages API; structured output goes through the same JSON
    prompt + validation path as the other text backends.
    """

    name = "anthropic"

    # Model configurations
    MODELS = {
        "claude-sonnet-4-5": {
            "api_name": "claude-sonnet-4-5-20250929",
            "max_tokens": 8192,
            "context_window": 200000
        },
        "claude-haiku-4-5": {
            "api_name": "claude-haiku-4-5-20251001",
            "max_tokens": 8192,
            "context_window": 200000
        },
    }

    def __init__(self, model_name: str, api_key: Optional[str] = None, client: Optional[Any] = None):
        """
        Initialize Anthropic provider.

        Args:
            model_name: Model to use (e.g., "claude-haiku-4-5")
            api_key: Optional API key (or use ANTHROPIC_API_KEY env var)
            client: Optional pre-built SDK client

        Raises:
            ValueError: If model is not supported
        """
        if model_name not in self.MODELS:
            raise ValueError(
                f"Unsupported Anthropic model: '{model_name}'. "
                f"Supported models: {list(self.MODELS.keys())}"
            )

        self.model_name = model_name
        self.model_config = self.MODELS[model_name]
        self.client = client

        if self.client is None:
            api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
            if api_key:
                import anthropic
                self.client = anthropic.Anthropic(api_key=api_key)
            else:
                logger.warning("ANTHROPIC_API_KEY not set, anthropic provider will report unavailable")

        logger.info(f"AnthropicProvider initialized with model: {model_name}")

    async def generate(self, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        """Generate text with a single Messages API call."""
        if self.client is None:
            raise ProviderUnavailableError("ANTHROPIC_API_KEY is not configured", provider=self.name)

        options = options or {}
        api_params = {
            "model": self.model_config["api_name"],
            "max_tokens": options.get("max_tokens", 1024),
            "temperature": options.get("temperature", 0.7),
            "messages": [{"role": "user", "content": prompt}],
        }

        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None,
                lambda: self.client.messages.create(**api_params)
            )
        except Exception as e:
            raise self._translate_error(e)

        text = "".join(
            block.text for block in (response.content or []) if getattr(block, "type", None) == "text"
        )
        if not text:
            raise GenerationError(
                f"anthropic returned empty response (stop reason: {getattr(response, 'stop_reason', None)})",
                provider=self.name,
            )
        return text

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
        import anthropic

        transient = (
            anthropic.APIConnectionError,
            anthropic.RateLimitError,
            anthropic.AuthenticationError,
            anthropic.InternalServerError,
        )
        if isinstance(error, transient):
            logger.warning(f"anthropic unavailable: {error}")
            return ProviderUnavailableError(f"anthropic unavailable: {type(error).__name__}", provider=self.name)

        logger.error(f"anthropic generation failed: {error}")
        return GenerationError(f"anthropic API error: {type(error).__name__}", provider=self.name)
