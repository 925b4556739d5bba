"""Completion provider boundary.

Agents never talk to an SDK directly. They go through
:class:`ModelGateway`, which picks the model for a tier, holds a
rate-limiter slot for the duration of the call, and records token usage
on the negotiation's :class:`~supplier_negotiation.llm.usage.UsageTracker`.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Generic, Protocol, TypeVar

import openai
import structlog
from openai import AsyncOpenAI
from pydantic import BaseModel

from supplier_negotiation.config import Settings
from supplier_negotiation.llm.rate_limiter import ModelRateLimiter
from supplier_negotiation.llm.usage import UsageTracker
from supplier_negotiation.models import ModelTier

logger = structlog.get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


class CompletionError(RuntimeError):
    """The provider could not produce a response (transport, timeout, empty body)."""


@dataclass(frozen=True)
class Completion:
    """Free-text completion plus token counts."""

    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class StructuredCompletion(Generic[T]):
    """Schema-validated completion plus token counts."""

    value: T
    model: str
    input_tokens: int = 0
    output_tokens: int = 0


class CompletionProvider(Protocol):
    """Anything that can answer a prompt, as text or as a schema object.

    ``generate_object`` either returns an instance of *schema* or raises
    (``CompletionError`` or ``pydantic.ValidationError``).
    """

    async def complete(
        self,
        *,
        purpose: str,
        model: str,
        system: str,
        messages: list[dict[str, str]],
        max_tokens: int,
        temperature: float,
    ) -> Completion: ...

    async def generate_object(
        self,
        *,
        purpose: str,
        model: str,
        prompt: str,
        schema: type[T],
    ) -> StructuredCompletion[T]: ...


# ---------------------------------------------------------------------------
# OpenAI-compatible provider
# ---------------------------------------------------------------------------


class OpenAIProvider:
    """Chat-completions provider using the official ``openai`` SDK."""

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        timeout: float = 60.0,
    ) -> None:
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    async def complete(
        self,
        *,
        purpose: str,
        model: str,
        system: str,
        messages: list[dict[str, str]],
        max_tokens: int,
        temperature: float,
    ) -> Completion:
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=[{"role": "system", "content": system}, *messages],  # type: ignore[list-item]
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except openai.APIError as exc:
            raise CompletionError(f"{purpose}: {exc}") from exc

        content = response.choices[0].message.content
        if not content or not content.strip():
            raise CompletionError(f"{purpose}: provider returned empty content")

        usage = response.usage
        return Completion(
            text=content.strip(),
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )

    async def generate_object(
        self,
        *,
        purpose: str,
        model: str,
        prompt: str,
        schema: type[T],
    ) -> StructuredCompletion[T]:
        schema_json = json.dumps(schema.model_json_schema())
        instructions = (
            "Respond with a single JSON object that validates against this "
            f"JSON schema:\n{schema_json}"
        )
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": instructions},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.0,
                response_format={"type": "json_object"},
            )
        except openai.APIError as exc:
            raise CompletionError(f"{purpose}: {exc}") from exc

        content = response.choices[0].message.content
        if content is None:
            raise CompletionError(f"{purpose}: provider returned empty content")

        # Raises pydantic.ValidationError on schema mismatch
        value = schema.model_validate_json(content)
        usage = response.usage
        return StructuredCompletion(
            value=value,
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


def build_provider(settings: Settings) -> CompletionProvider:
    """Instantiate the provider selected by ``settings.llm_provider``."""
    provider = settings.llm_provider.lower()
    if provider == "openai":
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY must be set when LLM_PROVIDER=openai")
        return OpenAIProvider(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.request_timeout_seconds,
        )
    if provider == "mock":
        from supplier_negotiation.llm.mock_provider import MockProvider

        return MockProvider()
    raise ValueError(f"Unknown LLM provider: {settings.llm_provider}")


# ---------------------------------------------------------------------------
# Gateway used by agents
# ---------------------------------------------------------------------------


class ModelGateway:
    """Rate-limited, usage-tracked access to a :class:`CompletionProvider`."""

    def __init__(
        self,
        provider: CompletionProvider,
        limiter: ModelRateLimiter,
        settings: Settings,
    ) -> None:
        self.provider = provider
        self.limiter = limiter
        self.settings = settings

    def model_for(self, tier: ModelTier) -> str:
        if tier == ModelTier.REASONING:
            return self.settings.reasoning_model
        return self.settings.fast_model

    async def complete(
        self,
        *,
        purpose: str,
        tier: ModelTier,
        system: str,
        messages: list[dict[str, str]],
        usage: UsageTracker,
        max_tokens: int | None = None,
        temperature: float = 0.7,
    ) -> str:
        """Run a free-text completion and return its text."""
        model = self.model_for(tier)
        async with self.limiter.slot(tier):
            result = await self.provider.complete(
                purpose=purpose,
                model=model,
                system=system,
                messages=messages,
                max_tokens=max_tokens or self.settings.agent_max_tokens,
                temperature=temperature,
            )
        usage.track(result.model, result.input_tokens, result.output_tokens)
        logger.debug("completion_done", purpose=purpose, model=model, chars=len(result.text))
        return result.text

    async def generate(
        self,
        *,
        purpose: str,
        tier: ModelTier,
        prompt: str,
        schema: type[T],
        usage: UsageTracker,
    ) -> T:
        """Run a structured completion and return the validated object."""
        model = self.model_for(tier)
        async with self.limiter.slot(tier):
            result = await self.provider.generate_object(
                purpose=purpose,
                model=model,
                prompt=prompt,
                schema=schema,
            )
        usage.track(result.model, result.input_tokens, result.output_tokens)
        logger.debug("structured_completion_done", purpose=purpose, model=model)
        return result.value
