"""
Support Pipeline — One Inbound Message, End to End
====================================================
Orchestrates the engine for a single customer message:

  1. Load config + history + knowledge version   (concurrently)
  2. Build ConversationContext                    (sentiment, topics, counts)
  3. Optimize query                               (pure)
  4. Retrieve chunks                              (cached; failure → no sources)
  5. Assemble context                             (token budget)
  6. Generate reply                               (failure → GenerationFailure)
  7. Score confidence                             (pure)
  8. Evaluate escalation                          (pure)
  9. Open handoff ticket if needed                (failure recorded, reply kept)

A set ``cancel_event`` is honoured between stages and raises TurnCancelled;
an in-flight provider call is never interrupted.

Usage:
    pipeline = SupportPipeline.from_pool(pool, notifier=notifier, cache=QueryCache())
    result = await pipeline.process_message(account_id, session_id, "How do I reset my password?")
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Optional, Protocol

from ..config import EngineSettings, load_settings
from ..errors import (
    ConfigurationError,
    PersistenceFailure,
    RetrievalFailure,
    TurnCancelled,
)
from ..models import (
    Message,
    ModelConfiguration,
    PipelineResult,
    RetrievedChunk,
)
from .cache import QueryCache
from .confidence import (
    estimate_query_complexity,
    estimate_response_coherence,
    score_confidence,
)
from .context import assemble_context, build_conversation_context
from .escalation import EscalationPolicy, evaluate
from .generator import ResponseGenerator
from .handoff import AgentNotifier, HandoffManager
from .prompts import DEFAULT_SYSTEM_PROMPT
from .query_optimizer import optimize_query
from .retriever import OpenAIEmbedder, SemanticRetriever

logger = logging.getLogger("engine.pipeline")


# ── Collaborator interfaces ──────────────────────────────────────────────


class SessionStore(Protocol):
    async def get_history(self, session_id: str, limit: int) -> list[Message]: ...


class ConfigurationStore(Protocol):
    async def get_active_configuration(
        self, account_id: str
    ) -> Optional[ModelConfiguration]: ...


def _check_cancelled(cancel_event: Optional[asyncio.Event], stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        logger.info(f"Turn cancelled before stage '{stage}'")
        raise TurnCancelled(stage)


class SupportPipeline:
    """Runs the retrieve → generate → score → escalate sequence for one turn."""

    def __init__(
        self,
        config_store: ConfigurationStore,
        session_store: SessionStore,
        retriever: SemanticRetriever,
        generator: ResponseGenerator,
        handoff: Optional[HandoffManager] = None,
        cache: Optional[QueryCache] = None,
        policy: Optional[EscalationPolicy] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.config_store = config_store
        self.session_store = session_store
        self.retriever = retriever
        self.generator = generator
        self.handoff = handoff
        self.cache = cache
        self.policy = policy or EscalationPolicy()
        self.settings = settings or load_settings()

    @classmethod
    def from_pool(
        cls,
        pool,
        notifier: Optional[AgentNotifier] = None,
        cache: Optional[QueryCache] = None,
        policy: Optional[EscalationPolicy] = None,
        settings: Optional[EngineSettings] = None,
    ) -> "SupportPipeline":
        """Wire the Postgres-backed stores around an asyncpg pool."""
        from ..database.stores import (
            PgAgentDirectory,
            PgConfigStore,
            PgSessionStore,
            PgTicketStore,
            PgVectorBackend,
        )

        settings = settings or load_settings()
        return cls(
            config_store=PgConfigStore(pool),
            session_store=PgSessionStore(pool),
            retriever=SemanticRetriever(
                OpenAIEmbedder(model=settings.embedding_model),
                PgVectorBackend(pool),
                timeout=settings.retrieval_timeout_seconds,
            ),
            generator=ResponseGenerator(timeout=settings.generation_timeout_seconds),
            handoff=HandoffManager(
                PgTicketStore(pool),
                PgAgentDirectory(pool),
                notifier,
                timeout=settings.store_timeout_seconds,
            ),
            cache=cache,
            policy=policy,
            settings=settings,
        )

    # ── Stage helpers ────────────────────────────────────────────────────

    async def _load_configuration(self, account_id: str) -> ModelConfiguration:
        try:
            config = await asyncio.wait_for(
                self.config_store.get_active_configuration(account_id),
                timeout=self.settings.store_timeout_seconds,
            )
        except Exception as exc:
            logger.error(f"Failed to load model configuration for account {account_id}: {exc}")
            raise ConfigurationError(
                f"Could not load model configuration for account {account_id}"
            ) from exc
        if config is None:
            raise ConfigurationError(f"No active model configuration for account {account_id}")
        return config

    async def _load_history(self, session_id: str) -> list[Message]:
        try:
            return await asyncio.wait_for(
                self.session_store.get_history(session_id, self.settings.history_limit),
                timeout=self.settings.store_timeout_seconds,
            )
        except Exception as exc:
            logger.warning(f"History unavailable for session {session_id}, continuing without: {exc}")
            return []

    async def _knowledge_version(self, account_id: str) -> tuple[Optional[str], bool]:
        if self.cache is None:
            return None, False
        try:
            return await self.retriever.knowledge_version(account_id), True
        except RetrievalFailure:
            return None, False

    async def _load_turn_inputs(self, account_id: str, session_id: str) -> tuple:
        """Fetch config, history and knowledge version concurrently.

        If one load raises, the others are cancelled and awaited before the
        error propagates.
        """
        tasks = [
            asyncio.ensure_future(self._load_configuration(account_id)),
            asyncio.ensure_future(self._load_history(session_id)),
            asyncio.ensure_future(self._knowledge_version(account_id)),
        ]
        try:
            return tuple(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _retrieve(
        self, account_id: str, query: str, version: Optional[str], cacheable: bool
    ) -> tuple[list[RetrievedChunk], bool, Optional[str]]:
        """Return (chunks, cache_hit, retrieval_error)."""
        use_cache = self.cache is not None and cacheable
        if use_cache:
            cached = self.cache.get(account_id, query, version)
            if cached is not None:
                logger.debug(f"Retrieval cache hit for account {account_id}")
                return list(cached), True, None

        try:
            chunks = await self.retriever.retrieve(
                query,
                scope=account_id,
                match_count=self.settings.match_count,
                match_threshold=self.settings.match_threshold,
            )
        except RetrievalFailure as exc:
            logger.warning(f"Retrieval degraded to no sources for account {account_id}: {exc}")
            return [], False, str(exc)

        if use_cache:
            self.cache.set(account_id, query, chunks, version)
        return chunks, False, None

    # ── Entry point ──────────────────────────────────────────────────────

    async def process_message(
        self,
        account_id: str,
        session_id: str,
        message: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PipelineResult:
        """Produce a reply and escalation decision for one inbound message.

        Raises:
            ConfigurationError: no usable model configuration.
            GenerationFailure: the provider failed or timed out.
            TurnCancelled: ``cancel_event`` was set between stages.
        """
        started = time.monotonic()

        _check_cancelled(cancel_event, "load")
        config, history, (version, cacheable) = await self._load_turn_inputs(
            account_id, session_id
        )

        # The session layer may already have stored the inbound message.
        if history and history[-1].role == "user" and history[-1].content.strip() == message.strip():
            history = history[:-1]

        current = Message(
            id="inbound",
            session_id=session_id,
            role="user",
            content=message,
            created_at=datetime.now(timezone.utc),
        )
        conversation = build_conversation_context(session_id, [*history, current])

        _check_cancelled(cancel_event, "optimize")
        optimized = optimize_query(message, conversation.topics)

        _check_cancelled(cancel_event, "retrieve")
        chunks, cache_hit, retrieval_error = await self._retrieve(
            account_id, optimized.optimized_query, version, cacheable
        )

        _check_cancelled(cancel_event, "assemble")
        assembled = assemble_context(
            message,
            history,
            chunks,
            max_context_tokens=config.max_context_tokens,
            history_limit=self.settings.history_limit,
            system_prompt=config.system_prompt or DEFAULT_SYSTEM_PROMPT,
        )

        _check_cancelled(cancel_event, "generate")
        reply = await self.generator.generate(assembled, config)

        _check_cancelled(cancel_event, "score")
        confidence = score_confidence(
            assembled.chunks,
            message,
            query_complexity=estimate_query_complexity(message),
            response_coherence=estimate_response_coherence(
                message, reply.text, assembled.chunks
            ),
        )
        evaluation = evaluate(message, confidence, conversation, self.policy)

        handoff = None
        handoff_error = None
        if evaluation.should_handoff and self.handoff is not None:
            _check_cancelled(cancel_event, "handoff")
            try:
                handoff = await self.handoff.ensure_ticket(
                    session_id,
                    evaluation,
                    metadata={
                        "account_id": account_id,
                        "confidence": confidence,
                        "intent": optimized.intent,
                        "sentiment": conversation.sentiment,
                    },
                )
            except PersistenceFailure as exc:
                logger.error(f"Handoff ticket failed for session {session_id}: {exc}")
                handoff_error = str(exc)
            else:
                handoff_error = handoff.error

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Processed message for session {session_id}: sources={len(assembled.chunks)} "
            f"confidence={confidence:.2f} handoff={evaluation.should_handoff} "
            f"urgency={evaluation.urgency} elapsed={elapsed_ms}ms"
        )

        return PipelineResult(
            session_id=session_id,
            reply=reply,
            confidence=confidence,
            sources=assembled.chunks,
            optimized_query=optimized,
            context_relevance_score=assembled.context_relevance_score,
            conversation_context=conversation,
            evaluation=evaluation,
            handoff=handoff,
            retrieval_error=retrieval_error,
            handoff_error=handoff_error,
            cache_hit=cache_hit,
            elapsed_ms=elapsed_ms,
        )
