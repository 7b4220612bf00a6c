"""
Response Generator
===================
Turns an AssembledContext into a reply through the account's configured
language-model provider.

Message order sent to the provider:
  1. system  — the account's system prompt (or DEFAULT_SYSTEM_PROMPT)
  2. system  — "Knowledge Base Context:\\n..." (only when chunks survived)
  3. history — prior user/assistant turns, oldest first
  4. user    — the current message

Provider errors and timeouts are not retried; they surface as
GenerationFailure.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from ..config import GENERATION_TIMEOUT_SECONDS
from ..errors import GenerationFailure
from ..models import AssembledContext, GeneratedResponse, ModelConfiguration
from .prompts import DEFAULT_SYSTEM_PROMPT, KNOWLEDGE_CONTEXT_HEADER
from .providers import ChatMessage, LLMProvider, build_provider

logger = logging.getLogger("engine.generator")


def build_messages(
    context: AssembledContext, config: ModelConfiguration
) -> list[ChatMessage]:
    messages: list[ChatMessage] = [
        {"role": "system", "content": config.system_prompt or DEFAULT_SYSTEM_PROMPT}
    ]
    if context.knowledge_context:
        messages.append(
            {"role": "system", "content": KNOWLEDGE_CONTEXT_HEADER + context.knowledge_context}
        )
    for turn in context.history:
        if turn.role in ("user", "assistant"):
            messages.append({"role": turn.role, "content": turn.content})
    messages.append({"role": "user", "content": context.current_message})
    return messages


class ResponseGenerator:
    """Generates replies, building one provider per configuration.

    Args:
        provider_factory: Maps a ModelConfiguration to a provider variant.
        timeout: Seconds allowed for a single provider call.
    """

    def __init__(
        self,
        provider_factory: Callable[[ModelConfiguration], LLMProvider] = build_provider,
        timeout: float = GENERATION_TIMEOUT_SECONDS,
    ):
        self._provider_factory = provider_factory
        self._providers: dict[tuple, LLMProvider] = {}
        self.timeout = timeout

    def provider_for(self, config: ModelConfiguration) -> LLMProvider:
        key = (config.id, config.provider, config.api_key, config.api_base_url)
        provider = self._providers.get(key)
        if provider is None:
            provider = self._provider_factory(config)
            self._providers[key] = provider
        return provider

    async def generate(
        self,
        context: AssembledContext,
        config: ModelConfiguration,
        provider: Optional[LLMProvider] = None,
    ) -> GeneratedResponse:
        """Call the provider and normalize the result.

        Raises:
            ConfigurationError: the provider client could not be built.
            GenerationFailure: provider error or timeout.
        """
        provider = provider or self.provider_for(config)
        messages = build_messages(context, config)

        try:
            result = await asyncio.wait_for(
                provider.generate(
                    messages,
                    model_name=config.model_name,
                    temperature=config.temperature,
                    max_tokens=config.max_tokens,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error(
                f"Generation timed out after {self.timeout}s "
                f"(provider={config.provider}, model={config.model_name})"
            )
            raise GenerationFailure(
                f"Generation timed out after {self.timeout}s", provider=config.provider
            ) from exc
        except Exception as exc:
            logger.error(
                f"Generation failed (provider={config.provider}, model={config.model_name}): {exc}",
                exc_info=True,
            )
            raise GenerationFailure(
                f"Generation failed: {exc}", provider=config.provider
            ) from exc

        logger.info(
            f"Generated reply: provider={config.provider} model={config.model_name} "
            f"tokens={result.tokens_used}"
        )
        return GeneratedResponse(
            text=result.text,
            tokens_used=result.tokens_used,
            model_used=config.model_name,
        )
