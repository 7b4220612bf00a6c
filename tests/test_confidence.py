"""
Confidence Scorer Tests
========================
Run:
  pytest tests/test_confidence.py -v
"""

from __future__ import annotations

import itertools

import pytest

from support_engine.agent.confidence import (
    NO_SOURCE_CONFIDENCE,
    estimate_query_complexity,
    estimate_response_coherence,
    extract_keywords,
    score_confidence,
)

from conftest import make_chunk


class TestScoreConfidence:
    def test_no_sources_is_exactly_floor(self):
        assert score_confidence([], "anything") == 0.3
        assert NO_SOURCE_CONFIDENCE == 0.3

    def test_no_sources_ignores_factors(self):
        assert score_confidence([], "q", source_quality=1.0, response_coherence=1.0) == 0.3

    def test_base_is_boosted_mean_similarity(self):
        assert score_confidence([make_chunk(0.5)]) == pytest.approx(0.6)

    def test_base_caps_at_one(self):
        assert score_confidence([make_chunk(0.9), make_chunk(0.9)]) == pytest.approx(1.0)

    def test_source_quality_replaces_base(self):
        assert score_confidence([make_chunk(0.9)], source_quality=0.4) == pytest.approx(0.4)

    def test_all_factors_weighted(self):
        score = score_confidence(
            [make_chunk(0.5)], query_complexity=0.0, response_coherence=1.0
        )
        assert score == pytest.approx(0.76)

    def test_weights_renormalize_over_present_factors(self):
        score = score_confidence([make_chunk(0.5)], query_complexity=0.5)
        assert score == pytest.approx((0.6 * 0.6 + 0.5 * 0.2) / 0.8, abs=1e-4)

    def test_always_within_bounds(self):
        """Any combination of factors, including out-of-range ones, stays in [0, 1]."""
        values = [-1.0, 0.0, 0.3, 1.0, 5.0, None]
        for quality, complexity, coherence in itertools.product(values, repeat=3):
            score = score_confidence(
                [make_chunk(0.8)],
                source_quality=quality,
                query_complexity=complexity,
                response_coherence=coherence,
            )
            assert 0.0 <= score <= 1.0

    def test_deterministic(self):
        chunks = [make_chunk(0.75), make_chunk(0.82)]
        assert score_confidence(chunks, "q", query_complexity=0.3) == score_confidence(
            chunks, "q", query_complexity=0.3
        )


class TestEstimators:
    def test_empty_query_complexity(self):
        assert estimate_query_complexity("") == 0.0

    def test_longer_queries_are_more_complex(self):
        short = estimate_query_complexity("Reset password?")
        long = estimate_query_complexity(
            "I need to migrate three workspaces and also merge their billing, "
            "but keep the old invoices. How do I do that? And what about the API keys?"
        )
        assert long > short
        assert 0.0 <= long <= 1.0

    def test_coherence_full_match(self):
        score = estimate_response_coherence(
            "reset password", "To reset your password open Settings > Security."
        )
        assert score == pytest.approx(1.0)

    def test_coherence_counts_source_keywords(self):
        without = estimate_response_coherence("export invoices", "Sure, here you go, see below.")
        with_sources = estimate_response_coherence(
            "export invoices",
            "Sure, here you go, see below.",
            [make_chunk(0.9, text="Invoices can be exported as CSV via export menu.")],
        )
        assert with_sources > without

    def test_coherence_empty_response(self):
        assert estimate_response_coherence("question", "") == 0.0

    def test_keywords_skip_short_and_stop_words(self):
        assert extract_keywords("How do I reset the password? Reset it now") == [
            "reset", "password",
        ]
