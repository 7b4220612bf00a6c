"""
Query Optimizer
================
Rewrites a raw customer message into a search-friendly query and tags it with
a coarse intent label. Pure and synchronous — no network calls.

Steps:
  1. Expand colloquial phrases ("money back" → "refund")
  2. Tokenize, drop stop words and very short tokens
  3. Map single-word synonyms onto knowledge-base vocabulary
  4. Append up to three recent conversation topics not already present
  5. Classify intent: complaint > transactional > technical > informational

Never fails: an empty rewrite falls back to the stripped raw text.
"""

from __future__ import annotations

import re
from typing import Optional, Sequence

from ..models import Intent, OptimizedQuery

MAX_TOPIC_TERMS = 3

STOP_WORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "is", "are", "was", "were", "be", "been", "have", "has",
    "had", "do", "does", "did", "will", "would", "could", "should", "can",
    "i", "me", "my", "you", "your", "we", "our", "it", "its", "this", "that",
    "please", "hi", "hello", "hey", "thanks", "just", "so", "some", "any",
    "what", "how", "why", "when", "where", "which", "who", "there", "here",
    "am", "im", "want", "need", "get", "know", "tell", "about", "from", "if",
    "up", "out", "all", "really", "very", "also", "still",
})

PHRASE_EXPANSIONS = {
    "money back": "refund",
    "log in": "login",
    "sign in": "login",
    "sign up": "registration",
    "get in touch": "contact",
    "opening hours": "business hours",
    "open hours": "business hours",
    "how much": "pricing",
    "doesn't work": "error",
    "does not work": "error",
    "not working": "error",
    "can't access": "access error",
    "cannot access": "access error",
    "charged twice": "duplicate charge",
}

SYNONYMS = {
    "cost": "pricing",
    "costs": "pricing",
    "price": "pricing",
    "prices": "pricing",
    "fee": "pricing",
    "fees": "pricing",
    "cancel": "cancellation",
    "canceling": "cancellation",
    "cancelling": "cancellation",
    "unsubscribe": "cancellation",
    "pw": "password",
    "pwd": "password",
    "passcode": "password",
    "bill": "billing",
    "invoice": "billing",
    "charge": "billing",
    "charged": "billing",
    "broken": "error",
    "crash": "error",
    "crashed": "error",
    "bug": "error",
    "ship": "shipping",
    "shipped": "shipping",
    "delivery": "shipping",
    "deliver": "shipping",
    "hrs": "hours",
    "acct": "account",
    "sub": "subscription",
    "plan": "subscription",
}

INTENT_KEYWORDS: dict[Intent, tuple[str, ...]] = {
    "complaint": (
        "complaint", "complain", "unacceptable", "terrible", "awful", "worst",
        "disappointed", "frustrated", "angry", "ridiculous", "useless",
    ),
    "transactional": (
        "buy", "purchase", "order", "pay", "payment", "refund", "cancel",
        "cancellation", "subscribe", "subscription", "upgrade", "downgrade",
        "billing", "invoice", "checkout", "renew",
    ),
    "technical": (
        "error", "bug", "crash", "broken", "not working", "install", "setup",
        "configure", "integration", "api", "login", "password", "sync",
    ),
}

_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9'\-]*")


def optimize_query(
    message: str,
    recent_topics: Optional[Sequence[str]] = None,
) -> OptimizedQuery:
    """Rewrite ``message`` for semantic search and classify its intent."""
    raw = (message or "").strip()
    lowered = raw.lower()

    expanded = lowered
    for phrase, replacement in PHRASE_EXPANSIONS.items():
        if phrase in expanded:
            expanded = expanded.replace(phrase, replacement)

    terms: list[str] = []
    seen: set[str] = set()
    for token in _TOKEN_RE.findall(expanded):
        token = token.strip("'-")
        if len(token) < 2 or token in STOP_WORDS:
            continue
        term = SYNONYMS.get(token, token)
        if term not in seen:
            seen.add(term)
            terms.append(term)

    topic_terms: list[str] = []
    for topic in recent_topics or []:
        topic = str(topic).strip().lower()
        if topic and topic not in seen:
            seen.add(topic)
            topic_terms.append(topic)
        if len(topic_terms) >= MAX_TOPIC_TERMS:
            break

    search_terms = terms + topic_terms
    optimized = " ".join(search_terms).strip() or raw

    return OptimizedQuery(
        original=raw,
        optimized_query=optimized,
        search_terms=search_terms,
        intent=classify_intent(expanded),
    )


def classify_intent(text: str) -> Intent:
    lowered = text.lower()
    for intent, keywords in INTENT_KEYWORDS.items():
        if any(_contains_term(lowered, keyword) for keyword in keywords):
            return intent
    return "informational"


def _contains_term(text: str, term: str) -> bool:
    return re.search(r"\b" + re.escape(term), text) is not None
