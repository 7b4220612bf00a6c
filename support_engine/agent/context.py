"""
Context Assembler
==================
Builds the token-bounded prompt material for one turn and the derived
ConversationContext used by the escalation evaluator.

Token budget (≈4 characters per token):
  1. Drop the lowest-similarity chunks until the context fits
  2. Then drop the oldest history turns
  3. The current message is always kept whole, even if it alone is over budget

Knowledge context layout — one block per source, best source first, at most
three chunks per source:

    [Source: document doc-42]
    <chunk text>

    <chunk text>

    ---

    [Source: webpage page-7]
    ...
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Optional, Sequence

from ..config import HISTORY_LIMIT
from ..models import AssembledContext, ConversationContext, Message, RetrievedChunk
from .confidence import extract_keywords
from .escalation import count_words, is_complex_message
from .sentiment import conversation_sentiment

CHUNKS_PER_SOURCE = 3
SOURCE_SEPARATOR = "\n\n---\n\n"
ENHANCE_TOPIC_COUNT = 3
CONTEXT_TOPIC_COUNT = 5
TOPIC_WINDOW = 5
SENTIMENT_WINDOW = 3


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters."""
    if not text:
        return 0
    return max(1, len(text) // 4)


# ── Formatting ───────────────────────────────────────────────────────────


def build_knowledge_context(chunks: Sequence[RetrievedChunk]) -> str:
    if not chunks:
        return ""

    grouped: OrderedDict[tuple[str, str], list[RetrievedChunk]] = OrderedDict()
    for chunk in sorted(chunks, key=lambda c: c.similarity, reverse=True):
        grouped.setdefault((chunk.source_type, chunk.source_id), []).append(chunk)

    blocks = []
    for (source_type, source_id), source_chunks in grouped.items():
        texts = "\n\n".join(c.text.strip() for c in source_chunks[:CHUNKS_PER_SOURCE])
        blocks.append(f"[Source: {source_type} {source_id}]\n{texts}")
    return SOURCE_SEPARATOR.join(blocks)


def build_transcript(history: Sequence[Message]) -> str:
    return "\n".join(f"{m.role}: {m.content}" for m in history)


def extract_topics(history: Sequence[Message], limit: int = ENHANCE_TOPIC_COUNT) -> list[str]:
    """Leading keywords of the last few messages."""
    recent = " ".join(m.content for m in history[-TOPIC_WINDOW:])
    return extract_keywords(recent)[:limit]


def enhance_query(
    message: str,
    history: Sequence[Message],
    topics: Optional[Sequence[str]] = None,
) -> str:
    """Append recent topics and earlier user questions to the message."""
    topics = list(topics) if topics is not None else extract_topics(history)
    enhanced = message
    if topics:
        enhanced += f" Context: {', '.join(topics)}"

    previous = [m.content for m in history[-TOPIC_WINDOW:] if m.role == "user"]
    if previous:
        enhanced += f" Previous questions: {'; '.join(previous)}"
    return enhanced


def _relevance(chunks: Sequence[RetrievedChunk]) -> float:
    if not chunks:
        return 0.0
    return round(sum(c.similarity for c in chunks) / len(chunks), 4)


# ── Assembly ─────────────────────────────────────────────────────────────


def assemble_context(
    current_message: str,
    history: Sequence[Message],
    chunks: Sequence[RetrievedChunk],
    max_context_tokens: int,
    topics: Optional[Sequence[str]] = None,
    history_limit: int = HISTORY_LIMIT,
    system_prompt: str = "",
) -> AssembledContext:
    """Fit history and chunks into ``max_context_tokens``.

    Args:
        current_message: The inbound user message. Never truncated or dropped.
        history: Earlier turns, oldest first, excluding ``current_message``.
        chunks: Retrieved chunks in any order.
        max_context_tokens: Budget for system prompt + knowledge + history +
            current message.
        topics: Topic override for the enhanced query.
        history_limit: Most recent turns considered before budgeting.
        system_prompt: Counted against the budget when given.

    Returns:
        AssembledContext with whatever survived the budget.
    """
    if max_context_tokens < 1:
        raise ValueError("max_context_tokens must be at least 1")

    kept_history = list(history[-history_limit:]) if history_limit > 0 else []
    kept_chunks = sorted(chunks, key=lambda c: c.similarity, reverse=True)

    fixed_tokens = estimate_tokens(system_prompt) + estimate_tokens(current_message)

    def total() -> int:
        return (
            fixed_tokens
            + estimate_tokens(build_knowledge_context(kept_chunks))
            + estimate_tokens(build_transcript(kept_history))
        )

    while kept_chunks and total() > max_context_tokens:
        kept_chunks.pop()
    while kept_history and total() > max_context_tokens:
        kept_history.pop(0)

    return AssembledContext(
        conversation_context=build_transcript(kept_history),
        knowledge_context=build_knowledge_context(kept_chunks),
        enhanced_query=enhance_query(current_message, kept_history, topics),
        context_relevance_score=_relevance(kept_chunks),
        history=kept_history,
        chunks=kept_chunks,
        current_message=current_message,
        estimated_tokens=total(),
    )


# ── Conversation summary ─────────────────────────────────────────────────


def _complexity(user_messages: Sequence[Message]) -> str:
    if not user_messages:
        return "low"
    if any(is_complex_message(m.content) for m in user_messages):
        return "high"
    avg_words = sum(count_words(m.content) for m in user_messages) / len(user_messages)
    if avg_words > 30 or any(m.content.count("?") > 1 for m in user_messages):
        return "medium"
    return "low"


def build_conversation_context(
    session_id: str, history: Sequence[Message]
) -> ConversationContext:
    """Derive the per-turn ConversationContext from recent history."""
    user_messages = [m for m in history if m.role == "user"]

    confidences = [
        m.confidence_score
        for m in history
        if m.role == "assistant" and m.confidence_score is not None
    ]
    average_confidence = (
        round(sum(confidences) / len(confidences), 4) if confidences else 1.0
    )

    return ConversationContext(
        session_id=session_id,
        message_count=len(history),
        average_confidence=average_confidence,
        sentiment=conversation_sentiment(
            m.content for m in user_messages[-SENTIMENT_WINDOW:]
        ),
        complexity=_complexity(user_messages),
        topics=extract_topics(history, limit=CONTEXT_TOPIC_COUNT),
        last_activity=max((m.created_at for m in history), default=None),
    )
