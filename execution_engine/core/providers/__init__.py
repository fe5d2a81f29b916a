"""
Generation Providers

Abstractions over interchangeable generation backends (OpenAI, Anthropic, Groq).
Each backend implements the GenerationProvider contract.
"""

from .generation_provider import GenerationProvider
from .openai_provider import OpenAIProvider, GroqProvider
from .anthropic_provider import AnthropicProvider
from .registry import ProviderRegistry

__all__ = ["GenerationProvider", "OpenAIProvider", "GroqProvider", "AnthropicProvider", "ProviderRegistry"]
