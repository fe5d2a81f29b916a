"""
Generation Provider Interface

Defines the contract for all generation backends (OpenAI, Anthropic, Groq, ...).
This abstraction lets the engine swap backends without touching the driver.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..exceptions import CapabilityNotImplementedError, SchemaViolationError

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class GenerationProvider(ABC):
    """
    Base class for generation backends.

    Capabilities:
    1. generate() - free text
    2. generate_structured() - object validated against a pydantic schema
    3. is_available() - cheap health check, never raises
    4. describe() - static metadata {"name", "version", "limits"}

    The defaults for generate() and generate_structured() raise
    CapabilityNotImplementedError; is_available() defaults to False.
    Backends override only what they support. describe() is mandatory.

    Implementations must be safe for concurrent invocation: a single instance
    is shared by every task of a driver cycle.
    """

    name: str = "base"

    async def generate(self, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        """
        Generate text for a prompt.

        Args:
            prompt: Prompt text
            options: Backend options (max_tokens, temperature, top_p)

        Returns:
            Generated text

        Raises:
            CapabilityNotImplementedError: Backend lacks the capability
            ProviderUnavailableError: Backend cannot serve requests now
            GenerationError: Backend reported a failure
        """
        raise CapabilityNotImplementedError("generate", provider=self.name)

    async def generate_structured(
        self,
        prompt: str,
        schema: Type[SchemaT],
        options: Optional[Dict[str, Any]] = None,
    ) -> SchemaT:
        """
        Generate an object conforming to `schema`.

        Args:
            prompt: Prompt text
            schema: Pydantic model class the output must validate against
            options: Backend options

        Returns:
            Validated `schema` instance

        Raises:
            SchemaViolationError: Output could not be parsed/validated
            (plus the errors listed for generate())
        """
        raise CapabilityNotImplementedError("generate_structured", provider=self.name)

    async def is_available(self) -> bool:
        """
        Check whether the backend can serve requests right now.

        Must not raise - returns False on any doubt.
        """
        return False

    @abstractmethod
    def describe(self) -> Dict[str, Any]:
        """
        Static metadata about the backend.

        Returns:
            {
                "name": "openai",
                "version": "gpt-4o-mini",
                "limits": {"max_tokens": 16384, "context_window": 128000}
            }
        """
        pass

    # ------------------------------------------------------------------
    # Helpers for text-based structured generation
    # ------------------------------------------------------------------

    def _build_structured_prompt(self, prompt: str, schema: Type[BaseModel]) -> str:
        """Append JSON-only instructions and the schema to a prompt."""
        json_schema = json.dumps(schema.model_json_schema(), indent=2)
        return (
            f"{prompt}\n\n"
            "IMPORTANT: Reply ONLY with a valid JSON object matching this JSON schema:\n"
            f"{json_schema}\n\n"
            "Do not include explanations, comments or any text outside the JSON."
        )

    def _parse_structured(self, text: str, schema: Type[SchemaT]) -> SchemaT:
        """
        Extract the JSON object from model output and validate it.

        Raises:
            SchemaViolationError: No JSON object, invalid JSON, or validation failure
        """
        payload = _extract_json_object(text or "")
        if payload is None:
            raise SchemaViolationError(
                "Response does not contain a JSON object",
                provider=self.name,
                schema_name=schema.__name__,
            )

        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise SchemaViolationError(
                f"Response contains invalid JSON: {e.msg} at position {e.pos}",
                provider=self.name,
                schema_name=schema.__name__,
            )

        try:
            return schema.model_validate(data)
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) or "<root>" for err in e.errors())
            raise SchemaViolationError(
                f"Response does not match {schema.__name__} (invalid fields: {fields})",
                provider=self.name,
                schema_name=schema.__name__,
            )


def _extract_json_object(text: str) -> Optional[str]:
    """Return the outermost {...} block, stripping markdown fences first."""
    fenced = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL)
    if fenced:
        text = fenced.group(1)

    match = re.search(r"\{.*\}", text, re.DOTALL)
    return match.group(0) if match else None
