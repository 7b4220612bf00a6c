"""
Keyword Sentiment Scoring
==========================
Lexicon-based sentiment used to label conversations for the escalation
evaluator.

Each message gets a signed net weight (positive terms add, negative terms
subtract). The net is scaled by SATURATION_WEIGHT into [-1.0, +1.0], so one
mild word ("issue", "bug") stays neutral while two of them, or one strong
word ("frustrated", "terrible"), crosses the negative threshold.

Modifiers:
  - intensifiers ("very", "extremely") multiply the following term
  - negation ("not", "never", "n't") flips and damps the following term
  - ALL CAPS text counts as an anger signal
  - 3+ exclamation marks amplify the net weight
"""

from __future__ import annotations

import re
from typing import Iterable

from ..models import Sentiment

NEGATIVE_THRESHOLD = -0.3
POSITIVE_THRESHOLD = 0.3

# Net weight that maps to a full -1.0 / +1.0 score.
SATURATION_WEIGHT = 4.0

TERM_WEIGHTS: dict[str, float] = {
    # positive
    "love": 2, "amazing": 2, "excellent": 2, "fantastic": 2, "perfect": 2,
    "wonderful": 2, "brilliant": 2, "outstanding": 2,
    "great": 1, "good": 1, "nice": 1, "helpful": 1, "thanks": 1, "thank": 1,
    "appreciate": 1, "happy": 1, "pleased": 1, "glad": 1, "satisfied": 1,
    "awesome": 1, "easy": 1, "reliable": 1, "useful": 1, "resolved": 1,
    # negative
    "terrible": -3, "worst": -3, "useless": -3, "unacceptable": -3, "awful": -3,
    "horrible": -3, "pathetic": -3, "hate": -3, "scam": -3, "garbage": -3,
    "broken": -2, "frustrated": -2, "frustrating": -2, "angry": -2, "annoying": -2,
    "furious": -2, "ridiculous": -2, "disappointed": -2, "upset": -2,
    "unusable": -2, "disaster": -2, "wasted": -2,
    "bad": -1, "issue": -1, "problem": -1, "bug": -1, "error": -1, "stuck": -1,
    "slow": -1, "confusing": -1, "wrong": -1, "failed": -1, "fail": -1,
    "missing": -1, "lost": -1, "worried": -1, "trouble": -1,
}

NEGATORS = frozenset({"not", "no", "never", "nothing", "hardly", "barely", "without"})

INTENSIFIERS: dict[str, float] = {
    "very": 1.5, "really": 1.5, "extremely": 2.0, "absolutely": 2.0,
    "completely": 1.5, "totally": 1.5, "so": 1.3, "super": 1.5,
}

CAPS_ANGER_WEIGHT = -3.0
CAPS_MIN_LETTERS = 16
EXCLAMATION_AMPLIFIER = 1.3

_WORD_RE = re.compile(r"[a-z']+")


def _is_negated(window: list[str]) -> bool:
    return any(w in NEGATORS or w.endswith("n't") for w in window)


def net_weight(text: str) -> float:
    """Signed lexicon weight of one message (unbounded)."""
    if not text or len(text.strip()) < 2:
        return 0.0

    words = _WORD_RE.findall(text.lower())
    net = 0.0
    for i, word in enumerate(words):
        weight = TERM_WEIGHTS.get(word)
        if weight is None:
            continue
        previous = words[max(0, i - 2):i]
        if previous:
            weight *= INTENSIFIERS.get(previous[-1], 1.0)
        if _is_negated(previous):
            # "not good" reads mildly negative; "not broken" only mildly positive
            weight = -weight * (0.5 if weight > 0 else 0.3)
        net += weight

    letters = re.sub(r"[^a-zA-Z]", "", text)
    if len(letters) >= CAPS_MIN_LETTERS and letters.isupper():
        net += CAPS_ANGER_WEIGHT

    if text.count("!") >= 3:
        net *= EXCLAMATION_AMPLIFIER
    return net


def _scale(net: float) -> float:
    return round(max(-1.0, min(1.0, net / SATURATION_WEIGHT)), 2)


def score_text(text: str) -> float:
    """Return a sentiment score in [-1.0, 1.0] for a single message."""
    return _scale(net_weight(text))


def label_for_score(score: float) -> Sentiment:
    if score <= NEGATIVE_THRESHOLD:
        return "negative"
    if score >= POSITIVE_THRESHOLD:
        return "positive"
    return "neutral"


def conversation_sentiment(texts: Iterable[str]) -> Sentiment:
    """Label a run of user messages by their combined net weight."""
    return label_for_score(_scale(sum(net_weight(t) for t in texts)))
