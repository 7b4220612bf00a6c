"""
Language-Model Providers
=========================
Closed set of provider variants behind one ``generate`` contract:

  OpenAIProvider     — OpenAI chat completions (tokens = usage.total_tokens)
  AnthropicProvider  — Anthropic messages API (tokens = input + output)
  CustomProvider     — Any OpenAI-compatible endpoint at api_base_url

``build_provider(config)`` picks the variant once per ModelConfiguration.
Providers do not retry and do not apply timeouts; the generator owns both.

Messages use the OpenAI shape: [{"role": "system"|"user"|"assistant",
"content": str}, ...].
"""

from __future__ import annotations

from typing import Optional, Protocol, Sequence

from anthropic import AnthropicError, AsyncAnthropic
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel

from ..errors import ConfigurationError
from ..models import ModelConfiguration

ChatMessage = dict[str, str]


class ProviderResult(BaseModel):
    text: str
    tokens_used: int = 0


class LLMProvider(Protocol):
    name: str

    async def generate(
        self,
        messages: Sequence[ChatMessage],
        model_name: str,
        temperature: float,
        max_tokens: int,
    ) -> ProviderResult: ...


# ── OpenAI & compatible endpoints ────────────────────────────────────────


class OpenAIProvider:
    name = "openai"

    def __init__(self, client: Optional[AsyncOpenAI] = None, api_key: Optional[str] = None):
        self._client = client or AsyncOpenAI(api_key=api_key)

    async def generate(self, messages, model_name, temperature, max_tokens) -> ProviderResult:
        response = await self._client.chat.completions.create(
            model=model_name,
            messages=list(messages),
            temperature=temperature,
            max_tokens=max_tokens,
        )
        text = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        tokens = int(getattr(usage, "total_tokens", 0) or 0) if usage else 0
        return ProviderResult(text=text, tokens_used=tokens)


class CustomProvider(OpenAIProvider):
    """OpenAI-compatible endpoint (self-hosted gateway, OpenRouter, vLLM, ...)."""

    name = "custom"

    def __init__(
        self,
        base_url: str,
        client: Optional[AsyncOpenAI] = None,
        api_key: Optional[str] = None,
    ):
        if not base_url:
            raise ConfigurationError("Custom provider requires api_base_url")
        self.base_url = base_url
        super().__init__(
            client=client or AsyncOpenAI(api_key=api_key or "not-needed", base_url=base_url)
        )


# ── Anthropic ────────────────────────────────────────────────────────────


def to_anthropic_messages(
    messages: Sequence[ChatMessage],
) -> tuple[str, list[ChatMessage]]:
    """Split OpenAI-shaped messages into (system, turns) for the messages API.

    System messages are joined into the system prompt. Consecutive turns with
    the same role are merged and leading assistant turns are dropped, since
    the API requires alternating roles starting with the user.
    """
    system_parts: list[str] = []
    turns: list[ChatMessage] = []
    for message in messages:
        role, content = message["role"], message["content"]
        if role == "system":
            system_parts.append(content)
            continue
        if not turns and role == "assistant":
            continue
        if turns and turns[-1]["role"] == role:
            turns[-1] = {"role": role, "content": f"{turns[-1]['content']}\n\n{content}"}
        else:
            turns.append({"role": role, "content": content})
    return "\n\n".join(system_parts), turns


class AnthropicProvider:
    name = "anthropic"

    def __init__(self, client: Optional[AsyncAnthropic] = None, api_key: Optional[str] = None):
        self._client = client or AsyncAnthropic(api_key=api_key)

    async def generate(self, messages, model_name, temperature, max_tokens) -> ProviderResult:
        system, turns = to_anthropic_messages(messages)
        kwargs = {}
        if system:
            kwargs["system"] = system
        response = await self._client.messages.create(
            model=model_name,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=turns,
            **kwargs,
        )
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        usage = response.usage
        tokens = int(usage.input_tokens or 0) + int(usage.output_tokens or 0)
        return ProviderResult(text=text, tokens_used=tokens)


# ── Dispatch ─────────────────────────────────────────────────────────────


def build_provider(config: ModelConfiguration) -> LLMProvider:
    """Select the provider variant for an account configuration.

    Raises:
        ConfigurationError: unknown provider, custom without a base URL, or a
            client the SDK refuses to build (e.g. no API key available).
    """
    try:
        if config.provider == "openai":
            return OpenAIProvider(api_key=config.api_key)
        if config.provider == "anthropic":
            return AnthropicProvider(api_key=config.api_key)
        if config.provider == "custom":
            return CustomProvider(base_url=config.api_base_url or "", api_key=config.api_key)
    except (OpenAIError, AnthropicError) as exc:
        raise ConfigurationError(
            f"Could not build {config.provider} client for configuration {config.id}: {exc}"
        ) from exc
    raise ConfigurationError(f"Unsupported provider: {config.provider}")
