"""
Confidence Scorer
==================
Scores how much a generated reply can be trusted, in [0.0, 1.0].

  - No retrieved sources → exactly 0.3 (the reply is ungrounded).
  - Otherwise the base is min(mean similarity × 1.2, 1.0), or the caller's
    ``source_quality`` when supplied.
  - Optional factors are blended in with fixed weights (base 0.6,
    1 − query_complexity 0.2, response_coherence 0.2), renormalized over the
    factors actually present.

The ``estimate_*`` helpers derive the optional factors from the query, the
reply and the sources. All functions here are pure and deterministic.
"""

from __future__ import annotations

import re
from typing import Optional, Sequence

from ..models import RetrievedChunk

NO_SOURCE_CONFIDENCE = 0.3
SIMILARITY_BOOST = 1.2

BASE_WEIGHT = 0.6
COMPLEXITY_WEIGHT = 0.2
COHERENCE_WEIGHT = 0.2

_STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "is", "are", "was", "were", "be", "been", "have", "has",
    "had", "do", "does", "did", "will", "would", "could", "should", "can",
    "this", "that", "these", "those", "what", "which", "who", "when", "where",
    "why", "how", "your", "yours", "there", "their", "about", "from",
})


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def extract_keywords(text: str) -> list[str]:
    """Unique lower-cased words longer than three letters, minus stopwords,
    in order of first appearance."""
    seen: dict[str, None] = {}
    for word in re.findall(r"[a-z0-9]+", (text or "").lower()):
        if len(word) > 3 and word not in _STOPWORDS:
            seen.setdefault(word, None)
    return list(seen)


def score_confidence(
    chunks: Sequence[RetrievedChunk],
    query: str = "",
    source_quality: Optional[float] = None,
    query_complexity: Optional[float] = None,
    response_coherence: Optional[float] = None,
) -> float:
    """Return the confidence score for a reply grounded on ``chunks``.

    Args:
        chunks: Chunks the reply was generated from.
        query: The customer message (unused by the formula, kept for logging
            and for callers that estimate factors lazily).
        source_quality: Replaces the similarity-derived base when given.
        query_complexity: 0 (simple) .. 1 (complex); enters as its complement.
        response_coherence: 0 .. 1 agreement between query, reply and sources.

    Returns:
        Score clamped to [0.0, 1.0].
    """
    if not chunks:
        return NO_SOURCE_CONFIDENCE

    if source_quality is not None:
        base = _clamp(source_quality)
    else:
        avg = sum(c.similarity for c in chunks) / len(chunks)
        base = min(avg * SIMILARITY_BOOST, 1.0)

    weighted = base * BASE_WEIGHT
    total_weight = BASE_WEIGHT

    if query_complexity is not None:
        weighted += (1.0 - _clamp(query_complexity)) * COMPLEXITY_WEIGHT
        total_weight += COMPLEXITY_WEIGHT
    if response_coherence is not None:
        weighted += _clamp(response_coherence) * COHERENCE_WEIGHT
        total_weight += COHERENCE_WEIGHT

    return round(_clamp(weighted / total_weight), 4)


def estimate_query_complexity(query: str) -> float:
    """Heuristic complexity: long, multi-question queries score higher."""
    words = len((query or "").split())
    questions = (query or "").count("?")
    clauses = len(re.findall(r"\b(and|also|but|however|plus)\b", (query or "").lower()))

    score = min(words / 60.0, 1.0) * 0.6
    score += min(max(questions - 1, 0) / 3.0, 1.0) * 0.2
    score += min(clauses / 4.0, 1.0) * 0.2
    return round(_clamp(score), 4)


def estimate_response_coherence(
    query: str,
    response: str,
    chunks: Sequence[RetrievedChunk] = (),
) -> float:
    """Heuristic coherence from reply length and keyword overlap.

    Half of the score is the reply length relative to twice the query length
    (capped at 1.0); the other half is the share of query keywords that appear
    in the reply or the sources.
    """
    query_len = len(query or "")
    if query_len == 0 or not response:
        return 0.0

    length_ratio = min(len(response) / (query_len * 2), 1.0)

    query_keywords = set(extract_keywords(query))
    if not query_keywords:
        overlap = 1.0
    else:
        covered = set(extract_keywords(response))
        for chunk in chunks:
            covered.update(extract_keywords(chunk.text))
        overlap = len(query_keywords & covered) / len(query_keywords)

    return round(_clamp(0.5 * length_ratio + 0.5 * overlap), 4)
