"""
Support Pipeline Tests — End to End
====================================
Full turns through SupportPipeline with in-memory collaborators: replies,
degradation on retrieval failure, escalation, caching and cancellation.

Run:
  pytest tests/test_pipeline.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from support_engine.agent.cache import QueryCache
from support_engine.errors import ConfigurationError, GenerationFailure, TurnCancelled

from conftest import FakeEmbedder, FakeProvider, FakeVectorBackend, make_chunk, make_message

HOURS_CHUNK_TEXT = "Our business hours are 9am to 5pm, Monday to Friday."


@pytest.fixture
def hours_chunk():
    return make_chunk(0.9, text=HOURS_CHUNK_TEXT, source_id="doc-hours")


@pytest.fixture
def hours_provider():
    return FakeProvider(text=HOURS_CHUNK_TEXT, tokens=64)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_grounded_answer_no_handoff(self, build_pipeline, hours_chunk, hours_provider):
        pipeline = build_pipeline(chunks=[hours_chunk], provider=hours_provider)
        result = await pipeline.process_message(
            "acct-1", "session-1", "What are your business hours?"
        )

        assert result.reply.text == HOURS_CHUNK_TEXT
        assert result.reply.tokens_used == 64
        assert result.reply.model_used == "gpt-4o"
        assert [c.source_id for c in result.sources] == ["doc-hours"]
        assert result.context_relevance_score == pytest.approx(0.9)
        assert result.confidence > 0.6
        assert result.evaluation.should_handoff is False
        assert result.handoff is None
        assert result.retrieval_error is None
        assert result.optimized_query.optimized_query == "business hours"

    @pytest.mark.asyncio
    async def test_retrieval_is_scoped_to_account(self, build_pipeline, hours_chunk):
        pipeline = build_pipeline(chunks=[hours_chunk])
        await pipeline.process_message("acct-42", "session-1", "What are your business hours?")
        assert pipeline.fake_backend.calls[0][3] == "acct-42"

    @pytest.mark.asyncio
    async def test_knowledge_reaches_provider(self, build_pipeline, hours_chunk):
        pipeline = build_pipeline(chunks=[hours_chunk])
        await pipeline.process_message("acct-1", "session-1", "What are your business hours?")
        messages = pipeline.fake_provider.calls[0]["messages"]
        assert messages[1]["role"] == "system"
        assert "[Source: document doc-hours]" in messages[1]["content"]
        assert messages[-1] == {"role": "user", "content": "What are your business hours?"}

    @pytest.mark.asyncio
    async def test_stored_inbound_message_not_duplicated(self, build_pipeline):
        message = "What are your business hours?"
        history = [
            make_message("user", "Hi", 0),
            make_message("assistant", "Hello!", 1),
            make_message("user", message, 2),
        ]
        pipeline = build_pipeline(history=history)
        await pipeline.process_message("acct-1", "session-1", message)
        contents = [m["content"] for m in pipeline.fake_provider.calls[0]["messages"]]
        assert contents.count(message) == 1
        assert "Hello!" in contents


class TestDegradation:
    @pytest.mark.asyncio
    async def test_zero_chunks(self, build_pipeline):
        """No sources → confidence 0.3, relevance 0, escalated for low confidence."""
        pipeline = build_pipeline(chunks=[])
        result = await pipeline.process_message(
            "acct-1", "session-1", "What are your business hours?"
        )
        assert result.confidence == 0.3
        assert result.context_relevance_score == 0
        assert result.evaluation.should_handoff is True
        assert "Low AI confidence" in result.evaluation.reason

    @pytest.mark.asyncio
    async def test_retrieval_failure_degrades(self, build_pipeline):
        pipeline = build_pipeline(embedder=FakeEmbedder(error=RuntimeError("embeddings down")))
        result = await pipeline.process_message("acct-1", "session-1", "How do I export data?")
        assert result.retrieval_error is not None
        assert result.sources == []
        assert result.confidence == 0.3
        assert result.reply.text

    @pytest.mark.asyncio
    async def test_generation_failure_propagates(self, build_pipeline):
        pipeline = build_pipeline(provider=FakeProvider(error=RuntimeError("upstream 500")))
        with pytest.raises(GenerationFailure):
            await pipeline.process_message("acct-1", "session-1", "Hello")

    @pytest.mark.asyncio
    async def test_missing_configuration(self, build_pipeline):
        pipeline = build_pipeline(config=None)
        with pytest.raises(ConfigurationError):
            await pipeline.process_message("acct-1", "session-1", "Hello")


class TestEscalation:
    @pytest.mark.asyncio
    async def test_cancellation_opens_high_ticket(self, build_pipeline, hours_chunk, notifier):
        pipeline = build_pipeline(chunks=[hours_chunk])
        result = await pipeline.process_message(
            "acct-1", "session-1", "I want to cancel my subscription immediately"
        )
        assert result.evaluation.urgency == "high"
        assert result.handoff.created is True
        assert result.handoff.ticket.status == "assigned"
        assert result.handoff.ticket.metadata["account_id"] == "acct-1"
        assert len(notifier.calls) == 3

    @pytest.mark.asyncio
    async def test_second_turn_reuses_ticket(self, build_pipeline, ticket_store):
        pipeline = build_pipeline()
        first = await pipeline.process_message("acct-1", "session-1", "I need a human agent")
        second = await pipeline.process_message("acct-1", "session-1", "Hello? Human agent please")
        assert second.handoff.created is False
        assert second.handoff.ticket.id == first.handoff.ticket.id
        assert len(ticket_store.open_tickets("session-1")) == 1

    @pytest.mark.asyncio
    async def test_ticket_failure_keeps_reply(self, build_pipeline, ticket_store):
        ticket_store.fail_with = RuntimeError("db down")
        pipeline = build_pipeline()
        result = await pipeline.process_message(
            "acct-1", "session-1", "I want to cancel my subscription immediately"
        )
        assert result.handoff is None
        assert "db down" in result.handoff_error
        assert result.reply.text
        assert result.evaluation.should_handoff is True

    @pytest.mark.asyncio
    async def test_dispatch_failure_reports_ticket_and_error(self, build_pipeline, directory):
        directory.fail_with = ConnectionError("directory unreachable")
        pipeline = build_pipeline()
        result = await pipeline.process_message("acct-1", "session-1", "Get me a supervisor")
        assert result.handoff.created is True
        assert result.handoff.ticket.status == "pending"
        assert "directory unreachable" in result.handoff_error

    @pytest.mark.asyncio
    async def test_without_handoff_manager(self, build_pipeline):
        pipeline = build_pipeline(handoff=None)
        result = await pipeline.process_message("acct-1", "session-1", "Get me a supervisor")
        assert result.evaluation.should_handoff is True
        assert result.handoff is None
        assert result.handoff_error is None


class TestCaching:
    @pytest.mark.asyncio
    async def test_second_identical_query_hits_cache(self, build_pipeline, hours_chunk):
        pipeline = build_pipeline(chunks=[hours_chunk], cache=QueryCache())
        first = await pipeline.process_message("acct-1", "session-1", "What are your business hours?")
        second = await pipeline.process_message("acct-1", "session-2", "What are your business hours?")

        assert first.cache_hit is False
        assert second.cache_hit is True
        assert len(pipeline.fake_backend.calls) == 1
        assert [c.source_id for c in second.sources] == ["doc-hours"]

    @pytest.mark.asyncio
    async def test_knowledge_update_invalidates(self, build_pipeline, hours_chunk):
        pipeline = build_pipeline(chunks=[hours_chunk], cache=QueryCache())
        await pipeline.process_message("acct-1", "session-1", "What are your business hours?")
        pipeline.fake_backend.version = "v2"
        result = await pipeline.process_message("acct-1", "session-2", "What are your business hours?")
        assert result.cache_hit is False
        assert len(pipeline.fake_backend.calls) == 2


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, build_pipeline):
        pipeline = build_pipeline()
        event = asyncio.Event()
        event.set()
        with pytest.raises(TurnCancelled) as exc_info:
            await pipeline.process_message("acct-1", "session-1", "Hello", cancel_event=event)
        assert exc_info.value.stage == "load"
        assert pipeline.fake_provider.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_between_stages(self, build_pipeline, hours_chunk):
        """Cancelling during retrieval stops the turn before generation."""
        event = asyncio.Event()

        class CancellingBackend(FakeVectorBackend):
            async def match(self, vector, threshold, count, scope):
                event.set()
                return await super().match(vector, threshold, count, scope)

        pipeline = build_pipeline(backend=CancellingBackend([hours_chunk]))
        with pytest.raises(TurnCancelled) as exc_info:
            await pipeline.process_message("acct-1", "session-1", "Hello", cancel_event=event)
        assert exc_info.value.stage == "assemble"
        assert pipeline.fake_provider.calls == []


class TestLoadStage:
    @pytest.mark.asyncio
    async def test_config_failure_cancels_other_loads(self, build_pipeline):
        """A failed configuration load does not leave the history load running."""
        started = asyncio.Event()
        history_cancelled = asyncio.Event()

        class SlowHistory:
            async def get_history(self, session_id, limit):
                started.set()
                try:
                    await asyncio.sleep(10)
                except asyncio.CancelledError:
                    history_cancelled.set()
                    raise
                return []

        class FailingConfigStore:
            async def get_active_configuration(self, account_id):
                await started.wait()
                raise RuntimeError("config db down")

        pipeline = build_pipeline()
        pipeline.session_store = SlowHistory()
        pipeline.config_store = FailingConfigStore()

        with pytest.raises(ConfigurationError):
            await pipeline.process_message("acct-1", "session-1", "Hello")
        assert history_cancelled.is_set()
