"""
Escalation Evaluator
=====================
Decides whether a conversation must be handed to a human agent.

Each trigger is a pure function of (message, confidence, ConversationContext,
policy) returning a HandoffTrigger. All triggers are evaluated in a fixed order
and every one of them may fire; ``aggregate`` then folds the fired triggers into
a single HandoffEvaluation:

  any high trigger        → handoff, urgency high
  two or more medium      → handoff, urgency high, reason "Multiple triggers: ..."
  exactly one medium      → handoff, urgency medium
  nothing fired           → no handoff, urgency low, empty reason

Trigger lexicons and thresholds live on EscalationPolicy so deployments can
tune them without code changes.
"""

from __future__ import annotations

import re
from typing import Callable, Optional, Sequence

from pydantic import BaseModel, Field

from ..models import ConversationContext, HandoffEvaluation, HandoffTrigger

MULTIPLE_TRIGGERS_PREFIX = "Multiple triggers"


class EscalationPolicy(BaseModel):
    """Lexicons and thresholds for the trigger functions."""

    confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    max_message_count: int = Field(default=15, ge=1)
    max_words: int = Field(default=100, ge=1)
    max_sentences: int = Field(default=5, ge=1)
    urgent_keywords: list[str] = Field(default_factory=lambda: [
        # Safety / legal
        "emergency", "emergencies", "urgent*", "legal", "lawsuit*", "lawyer*",
        "attorney*", "sue", "sued", "suing", "court", "police", "death",
        "injury", "injured", "accident", "accidents", "fraud*", "scam*",
        "security breach", "hack", "hacked",
        # Cancellation / money intent
        "cancel*", "refund*", "chargeback*", "dispute*", "immediately",
    ])
    escalation_phrases: list[str] = Field(default_factory=lambda: [
        "speak to human", "speak to a human", "human agent", "real person",
        "manager", "supervisor", "escalat*", "transfer me", "live agent",
        "representative", "human help", "talk to someone", "human support",
        "talk to a human", "speak to someone",
    ])
    complexity_indicators: list[str] = Field(default_factory=lambda: [
        "custom", "exception", "exceptions", "special case", "unique situation",
        "never seen", "not standard", "complicated", "complex",
        "multiple issues", "several problems", "various concerns",
    ])


DEFAULT_POLICY = EscalationPolicy()

TriggerFn = Callable[
    [str, float, ConversationContext, EscalationPolicy], HandoffTrigger
]


# ── Matching helpers ─────────────────────────────────────────────────────


def _term_pattern(term: str) -> str:
    stem = term.lower().rstrip("*")
    suffix = r"\w*" if term.endswith("*") else ""
    return r"\b" + re.escape(stem) + suffix + r"\b"


def find_terms(text: str, terms: Sequence[str]) -> list[str]:
    """Return the terms found in ``text`` as whole words.

    A trailing ``*`` marks a stem: "cancel*" matches "cancel", "cancelled" and
    "cancellation". Matches are reported without the ``*``.
    """
    lowered = text.lower()
    return [
        term.rstrip("*") for term in terms
        if re.search(_term_pattern(term), lowered)
    ]


def count_words(text: str) -> int:
    return len(text.split())


def count_sentences(text: str) -> int:
    return len([s for s in re.split(r"[.!?]+", text) if s.strip()])


def is_complex_message(text: str, policy: EscalationPolicy = DEFAULT_POLICY) -> bool:
    return (
        count_words(text) > policy.max_words
        or count_sentences(text) > policy.max_sentences
        or bool(find_terms(text, policy.complexity_indicators))
    )


# ── Triggers ─────────────────────────────────────────────────────────────


def confidence_trigger(message, confidence, context, policy) -> HandoffTrigger:
    fired = confidence < policy.confidence_threshold
    return HandoffTrigger(
        name="confidence",
        triggered=fired,
        urgency="medium" if fired else "low",
        reason=f"Low AI confidence ({confidence:.2f})" if fired else "",
    )


def keyword_trigger(message, confidence, context, policy) -> HandoffTrigger:
    found = find_terms(message, policy.urgent_keywords)
    return HandoffTrigger(
        name="keyword",
        triggered=bool(found),
        urgency="high" if found else "low",
        reason=f"Urgent keywords detected: {', '.join(found)}" if found else "",
    )


def explicit_request_trigger(message, confidence, context, policy) -> HandoffTrigger:
    found = find_terms(message, policy.escalation_phrases)
    return HandoffTrigger(
        name="explicit_request",
        triggered=bool(found),
        urgency="high" if found else "low",
        reason="Customer explicitly requested human agent" if found else "",
    )


def sentiment_trigger(message, confidence, context, policy) -> HandoffTrigger:
    fired = context.sentiment == "negative"
    return HandoffTrigger(
        name="sentiment",
        triggered=fired,
        urgency="medium" if fired else "low",
        reason="Negative sentiment detected" if fired else "",
    )


def repetition_trigger(message, confidence, context, policy) -> HandoffTrigger:
    fired = context.message_count >= policy.max_message_count
    return HandoffTrigger(
        name="repetition",
        triggered=fired,
        urgency="medium" if fired else "low",
        reason=(
            f"Long conversation ({context.message_count} messages)" if fired else ""
        ),
    )


def complexity_trigger(message, confidence, context, policy) -> HandoffTrigger:
    fired = is_complex_message(message, policy)
    return HandoffTrigger(
        name="complexity",
        triggered=fired,
        urgency="medium" if fired else "low",
        reason="Complex request detected" if fired else "",
    )


TRIGGERS: tuple[TriggerFn, ...] = (
    confidence_trigger,
    keyword_trigger,
    explicit_request_trigger,
    sentiment_trigger,
    repetition_trigger,
    complexity_trigger,
)


# ── Aggregation ──────────────────────────────────────────────────────────


def aggregate(triggers: Sequence[HandoffTrigger]) -> HandoffEvaluation:
    fired = [t for t in triggers if t.triggered]
    if not fired:
        return HandoffEvaluation(
            should_handoff=False, urgency="low", reason="", triggers=list(triggers)
        )

    high = [t for t in fired if t.urgency == "high"]
    medium = [t for t in fired if t.urgency == "medium"]
    reason = "; ".join(t.reason for t in fired)

    if len(medium) >= 2:
        urgency = "high"
        reason = f"{MULTIPLE_TRIGGERS_PREFIX}: {reason}"
    elif high:
        urgency = "high"
    else:
        urgency = "medium"

    return HandoffEvaluation(
        should_handoff=True, urgency=urgency, reason=reason, triggers=list(triggers)
    )


def evaluate(
    message: str,
    confidence: float,
    context: ConversationContext,
    policy: Optional[EscalationPolicy] = None,
) -> HandoffEvaluation:
    """Run every trigger and aggregate the result. Never raises on valid input."""
    policy = policy or DEFAULT_POLICY
    results = [trigger(message, confidence, context, policy) for trigger in TRIGGERS]
    return aggregate(results)
