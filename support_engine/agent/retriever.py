"""
Semantic Retriever
===================
Embeds an optimized query and asks the vector backend for the closest
knowledge chunks belonging to one account.

Flow:
  query → EmbeddingProvider.embed() → VectorBackend.match() → filter/sort/cap

Both external calls run under one timeout (RETRIEVAL_TIMEOUT_SECONDS). Any
provider/backend error or timeout is raised as RetrievalFailure; the pipeline
treats that as "no sources" rather than failing the turn.

Environment:
  OPENAI_API_KEY   — Used by OpenAIEmbedder (read by the openai client)
  EMBEDDING_MODEL  — Embedding model name (default text-embedding-3-small)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol, Sequence

from openai import AsyncOpenAI

from ..config import (
    EMBEDDING_MODEL,
    MATCH_COUNT,
    MATCH_THRESHOLD,
    RETRIEVAL_TIMEOUT_SECONDS,
)
from ..errors import RetrievalFailure
from ..models import RetrievedChunk

logger = logging.getLogger("engine.retriever")

MAX_EMBEDDING_INPUT_CHARS = 8000


# ── Collaborator interfaces ──────────────────────────────────────────────


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> list[float]: ...


class VectorBackend(Protocol):
    async def match(
        self,
        vector: Sequence[float],
        threshold: float,
        count: int,
        scope: str,
    ) -> list[RetrievedChunk]: ...

    async def knowledge_version(self, scope: str) -> Optional[str]: ...


# ── OpenAI embeddings ────────────────────────────────────────────────────


class OpenAIEmbedder:
    """Embedding provider backed by the OpenAI embeddings API.

    Usage:
        embedder = OpenAIEmbedder()
        vector = await embedder.embed("how do I reset my password")
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: str = EMBEDDING_MODEL,
    ):
        self._client = client or AsyncOpenAI()
        self._model = model

    async def embed(self, text: str) -> list[float]:
        response = await self._client.embeddings.create(
            model=self._model,
            input=text[:MAX_EMBEDDING_INPUT_CHARS],
        )
        return list(response.data[0].embedding)


# ── Retriever ────────────────────────────────────────────────────────────


def filter_chunks(
    chunks: Sequence[RetrievedChunk], threshold: float, count: int
) -> list[RetrievedChunk]:
    """Keep chunks strictly above ``threshold``, best first, at most ``count``."""
    kept = [c for c in chunks if c.similarity > threshold]
    kept.sort(key=lambda c: c.similarity, reverse=True)
    return kept[:count]


class SemanticRetriever:
    """Account-scoped semantic search over the knowledge base."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        backend: VectorBackend,
        timeout: float = RETRIEVAL_TIMEOUT_SECONDS,
    ):
        self.embedder = embedder
        self.backend = backend
        self.timeout = timeout

    async def retrieve(
        self,
        query: str,
        scope: str,
        match_count: int = MATCH_COUNT,
        match_threshold: float = MATCH_THRESHOLD,
    ) -> list[RetrievedChunk]:
        """Return up to ``match_count`` chunks for ``query`` within ``scope``.

        Args:
            query: Optimized query text.
            scope: Account id; the backend only searches that account's rows.
            match_count: Maximum number of chunks (default 10).
            match_threshold: Minimum similarity, 0.0 to 1.0 (default 0.7).

        Raises:
            ValueError: threshold outside [0, 1] or non-positive count.
            RetrievalFailure: embedding or vector search failed or timed out.
        """
        if not 0.0 <= match_threshold <= 1.0:
            raise ValueError(
                f"match_threshold must be between 0 and 1, got {match_threshold}"
            )
        if match_count < 1:
            raise ValueError(f"match_count must be at least 1, got {match_count}")

        try:
            chunks = await asyncio.wait_for(
                self._search(query, scope, match_count, match_threshold),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning(f"Retrieval timed out after {self.timeout}s for scope={scope}")
            raise RetrievalFailure(f"Retrieval timed out after {self.timeout}s") from exc
        except RetrievalFailure:
            raise
        except Exception as exc:
            logger.warning(f"Retrieval failed for scope={scope}: {exc}")
            raise RetrievalFailure(f"Retrieval failed: {exc}") from exc

        results = filter_chunks(chunks, match_threshold, match_count)
        logger.debug(
            f"Retrieved {len(results)} chunk(s) for scope={scope} "
            f"(threshold={match_threshold}, count={match_count})"
        )
        return results

    async def _search(
        self, query: str, scope: str, count: int, threshold: float
    ) -> list[RetrievedChunk]:
        vector = await self.embedder.embed(query)
        return await self.backend.match(vector, threshold, count, scope)

    async def knowledge_version(self, scope: str) -> Optional[str]:
        """Current knowledge-base version for ``scope``.

        Raises:
            RetrievalFailure: the backend errored or timed out.
        """
        try:
            return await asyncio.wait_for(
                self.backend.knowledge_version(scope), timeout=self.timeout
            )
        except Exception as exc:
            logger.warning(f"Knowledge version lookup failed for scope={scope}: {exc}")
            raise RetrievalFailure(f"Knowledge version lookup failed: {exc}") from exc
