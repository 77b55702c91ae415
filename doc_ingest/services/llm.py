# =============================================================================
# Multi-Provider Chat Model Abstraction — Used by the Enrichers
# =============================================================================
#
# Provides a common interface for the two chat-model calls the pipeline
# makes: text completion (chunk summaries) and image description (alt text).
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — Claude via native Anthropic SDK
#   │   ├── complete()           — system prompt as top-level kwarg
#   │   └── describe_image()     — base64 image content block
#   ├── OpenAICompatibleProvider — Any OpenAI-compatible API (OpenRouter,
#   │   │                          DeepSeek, Qwen, OpenAI)
#   │   ├── complete()           — system prompt as message role
#   │   └── describe_image()     — image_url part with a data URL
#   ├── create_llm_provider()    — Factory, reads from Settings
#   └── translate_vendor_error() — SDK exception → ingestion error taxonomy
#
# ERROR BOUNDARY:
# SDK exceptions never leave this module (or the embedder) untranslated.
# Connection failures, timeouts, rate limits and 5xx responses become
# TransientIntegrationError so the worker retries them; every other API
# error becomes IntegrationError.
# =============================================================================

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import anthropic
import openai

from doc_ingest.errors import (
    ConfigurationError,
    IntegrationError,
    TransientIntegrationError,
)

if TYPE_CHECKING:
    from doc_ingest.config import Settings

logger = logging.getLogger(__name__)

# Exceptions raised by either SDK for a failed request.
VENDOR_ERRORS: tuple[type[Exception], ...] = (openai.APIError, anthropic.APIError)

_TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    openai.APIConnectionError,  # includes APITimeoutError
    openai.RateLimitError,
    openai.InternalServerError,
    anthropic.APIConnectionError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
)

_TRANSIENT_STATUS_CODES = {408, 409, 429}


def translate_vendor_error(exc: Exception, operation: str) -> IntegrationError:
    """Map an SDK exception onto the ingestion error taxonomy."""
    status = getattr(exc, "status_code", None)
    if isinstance(exc, _TRANSIENT_ERRORS) or (
        isinstance(status, int) and (status >= 500 or status in _TRANSIENT_STATUS_CODES)
    ):
        return TransientIntegrationError(f"{operation} failed transiently: {exc}")
    return IntegrationError(f"{operation} failed: {exc}")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """Standardised response from any chat provider."""

    content: str           # The generated text
    model: str             # Model identifier reported by the provider
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    Chat provider interface used by the enrichers.

    Implementations raise IntegrationError / TransientIntegrationError,
    never raw SDK exceptions.
    """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion.

        Args:
            messages: Conversation messages as dicts with "role" and "content".
                Roles: "user", "assistant" (no "system" — use the system param).
            system: System prompt. Anthropic takes it as a top-level kwarg,
                OpenAI as a leading {"role": "system"} message.
            temperature: Override sampling temperature.
            max_tokens: Override max output tokens.
        """
        ...

    async def describe_image(
        self,
        image_data: bytes,
        media_type: str,
        prompt: str,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate text about an image (PNG/JPEG bytes) following `prompt`."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native SDK.

    KEY API DIFFERENCE: Anthropic takes system prompts as a top-level
    `system=` kwarg, NOT as a message with role "system".
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        temperature: float = 0.1,
        max_tokens: int = 1024,
    ) -> None:
        if not api_key:
            raise ConfigurationError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = anthropic.AsyncAnthropic(api_key=api_key)
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }
        if system:
            kwargs["system"] = system

        return await self._create(kwargs, "Anthropic completion")

    async def describe_image(
        self,
        image_data: bytes,
        media_type: str,
        prompt: str,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Describe an image using a base64 image content block."""
        content = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": media_type,
                    "data": base64.b64encode(image_data).decode("ascii"),
                },
            },
            {"type": "text", "text": prompt},
        ]
        kwargs: dict = {
            "model": self._model,
            "messages": [{"role": "user", "content": content}],
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature,
        }
        return await self._create(kwargs, "Anthropic image description")

    async def _create(self, kwargs: dict, operation: str) -> LLMResponse:
        try:
            response = await self._client.messages.create(**kwargs)
        except VENDOR_ERRORS as exc:
            raise translate_vendor_error(exc, operation) from exc

        # Extract text from the first content block
        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible (OpenRouter, DeepSeek, Qwen, etc.)
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Provider for any API that follows the OpenAI chat completions spec.

    Switching vendors is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://openrouter.ai/api/v1
        LLM_API_KEY=your-key
        CHAT_MODEL=minimax/minimax-m2.5
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 1024,
    ) -> None:
        if not api_key:
            raise ConfigurationError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": api_key}
        if base_url:
            client_kwargs["base_url"] = base_url

        self._client = openai.AsyncOpenAI(**client_kwargs)
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            base_url or "https://api.openai.com/v1",
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        # OpenAI: system prompt goes as the first message
        all_messages: list[dict] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        return await self._create(
            all_messages,
            max_tokens=max_tokens,
            temperature=temperature,
            operation="Chat completion",
        )

    async def describe_image(
        self,
        image_data: bytes,
        media_type: str,
        prompt: str,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Describe an image passed inline as a data URL."""
        encoded = base64.b64encode(image_data).decode("ascii")
        message = {
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{media_type};base64,{encoded}"},
                },
            ],
        }
        return await self._create(
            [message],
            max_tokens=max_tokens,
            temperature=None,
            operation="Image description",
        )

    async def _create(
        self,
        messages: list[dict],
        max_tokens: int | None,
        temperature: float | None,
        operation: str,
    ) -> LLMResponse:
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                max_tokens=max_tokens or self._max_tokens,
                temperature=self._temperature if temperature is None else temperature,
            )
        except VENDOR_ERRORS as exc:
            raise translate_vendor_error(exc, operation) from exc

        content = response.choices[0].message.content or ""

        # Token counts: OpenAI uses different field names than Anthropic
        usage = response.usage
        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

KNOWN_LLM_PROVIDERS = {"anthropic", "openai_compatible"}


def create_llm_provider(config: Settings) -> LLMProvider:
    """
    Build the chat provider selected by `config.llm_provider`.

    - "anthropic" → AnthropicProvider (Claude)
    - "openai_compatible" → OpenAICompatibleProvider

    Raises:
        ConfigurationError: For an unknown provider or a missing API key.
    """
    if config.llm_provider == "anthropic":
        return AnthropicProvider(
            api_key=config.llm_api_key or config.anthropic_api_key,
            model=config.chat_model,
            temperature=config.llm_temperature,
            max_tokens=config.llm_max_tokens,
        )
    if config.llm_provider == "openai_compatible":
        return OpenAICompatibleProvider(
            api_key=config.llm_api_key or config.openai_api_key,
            model=config.chat_model,
            base_url=config.llm_base_url,
            temperature=config.llm_temperature,
            max_tokens=config.llm_max_tokens,
        )
    raise ConfigurationError(
        f"Unknown LLM provider '{config.llm_provider}'. "
        f"Supported: {sorted(KNOWN_LLM_PROVIDERS)}"
    )
