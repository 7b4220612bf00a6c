"""
Shared Test Fixtures — Support Engine
======================================
In-memory collaborators (ticket store, agent directory, notifier, vector
backend, provider) and sample records reused across test modules.

Usage:
  pytest tests/ -v
"""

from __future__ import annotations

import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from support_engine.agent.generator import ResponseGenerator
from support_engine.agent.handoff import HandoffManager
from support_engine.agent.pipeline import SupportPipeline
from support_engine.agent.providers import ProviderResult
from support_engine.agent.retriever import SemanticRetriever
from support_engine.config import EngineSettings
from support_engine.errors import OpenTicketExists
from support_engine.models import (
    AgentAvailability,
    HandoffTicket,
    Message,
    ModelConfiguration,
    RetrievedChunk,
)

BASE_TIME = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


# ── Record builders ──────────────────────────────────────────────────────


def make_message(
    role: str,
    content: str,
    minutes: int = 0,
    session_id: str = "session-1",
    confidence: Optional[float] = None,
) -> Message:
    return Message(
        id=f"msg-{role}-{minutes}",
        session_id=session_id,
        role=role,
        content=content,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        confidence_score=confidence,
    )


def make_chunk(
    similarity: float,
    text: str = "Reset your password from Settings > Security.",
    source_id: str = "doc-1",
    source_type: str = "document",
) -> RetrievedChunk:
    return RetrievedChunk(
        source_id=source_id,
        source_type=source_type,
        text=text,
        similarity=similarity,
    )


# ── Fakes ────────────────────────────────────────────────────────────────


class InMemoryTicketStore:
    """Ticket store enforcing one open ticket per session, like the unique index."""

    def __init__(self):
        self.tickets: dict[str, HandoffTicket] = {}
        self.now = BASE_TIME
        self.fail_with: Optional[Exception] = None
        self.create_calls = 0
        self._ids = itertools.count(1)

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def open_tickets(self, session_id: str) -> list[HandoffTicket]:
        return [t for t in self.tickets.values() if t.session_id == session_id and t.is_open]

    async def get_open_ticket(self, session_id):
        self._maybe_fail()
        await asyncio.sleep(0)
        found = self.open_tickets(session_id)
        return found[0] if found else None

    async def create_ticket(self, session_id, reason, urgency, metadata):
        self._maybe_fail()
        self.create_calls += 1
        await asyncio.sleep(0)
        if self.open_tickets(session_id):
            raise OpenTicketExists(session_id)
        ticket = HandoffTicket(
            id=f"ticket-{next(self._ids)}",
            session_id=session_id,
            reason=reason,
            urgency=urgency,
            created_at=self.now,
            metadata=dict(metadata),
        )
        self.tickets[ticket.id] = ticket
        return ticket

    async def assign_ticket(self, ticket_id, agent_id):
        self._maybe_fail()
        ticket = self.tickets.get(ticket_id)
        if ticket is None:
            return None
        ticket = ticket.model_copy(
            update={"status": "assigned", "assigned_agent_id": agent_id, "assigned_at": self.now}
        )
        self.tickets[ticket_id] = ticket
        return ticket

    async def claim_ticket(self, ticket_id, agent_id):
        self._maybe_fail()
        ticket = self.tickets.get(ticket_id)
        if ticket is None or ticket.status != "pending" or ticket.assigned_agent_id:
            return None
        return await self.assign_ticket(ticket_id, agent_id)

    async def update_status(self, ticket_id, status, resolution_notes=None):
        self._maybe_fail()
        ticket = self.tickets.get(ticket_id)
        if ticket is None:
            return None
        update = {"status": status}
        if resolution_notes is not None:
            update["resolution_notes"] = resolution_notes
        if status == "resolved":
            update["resolved_at"] = self.now
        ticket = ticket.model_copy(update=update)
        self.tickets[ticket_id] = ticket
        return ticket

    async def get_ticket(self, ticket_id):
        self._maybe_fail()
        return self.tickets.get(ticket_id)

    async def list_tickets(self, status=None, urgency=None):
        self._maybe_fail()
        return [
            t for t in self.tickets.values()
            if (status is None or t.status == status)
            and (urgency is None or t.urgency == urgency)
        ]


class InMemoryAgentDirectory:
    def __init__(self, agents: Optional[list[AgentAvailability]] = None):
        self.agents = agents or []
        self.fail_with: Optional[Exception] = None
        self.calls = 0

    async def list_agents(self):
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return list(self.agents)


class RecordingNotifier:
    def __init__(self, fail_for: Optional[set[str]] = None):
        self.calls: list[tuple[str, str]] = []
        self.fail_for = fail_for or set()

    async def notify(self, agent_id, ticket):
        if agent_id in self.fail_for:
            raise RuntimeError(f"notification channel down for {agent_id}")
        self.calls.append((agent_id, ticket.id))


class FakeEmbedder:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls: list[str] = []

    async def embed(self, text):
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return [0.1] * 8


class FakeVectorBackend:
    def __init__(
        self,
        chunks: Optional[list[RetrievedChunk]] = None,
        version: Optional[str] = "v1",
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.chunks = chunks or []
        self.version = version
        self.error = error
        self.delay = delay
        self.calls: list[tuple] = []

    async def match(self, vector, threshold, count, scope):
        self.calls.append((tuple(vector), threshold, count, scope))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.chunks)

    async def knowledge_version(self, scope):
        return self.version


class FakeProvider:
    name = "fake"

    def __init__(
        self,
        text: str = "You can reset your password from Settings > Security.",
        tokens: int = 120,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.text = text
        self.tokens = tokens
        self.error = error
        self.delay = delay
        self.calls: list[dict] = []

    async def generate(self, messages, model_name, temperature, max_tokens):
        self.calls.append({
            "messages": list(messages),
            "model_name": model_name,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return ProviderResult(text=self.text, tokens_used=self.tokens)


class FakeSessionStore:
    def __init__(self, history: Optional[list[Message]] = None):
        self.history = history or []

    async def get_history(self, session_id, limit):
        return self.history[-limit:]


class FakeConfigStore:
    def __init__(self, config: Optional[ModelConfiguration]):
        self.config = config

    async def get_active_configuration(self, account_id):
        return self.config


# ── Fixtures ─────────────────────────────────────────────────────────────


@pytest.fixture
def model_config():
    return ModelConfiguration(id="cfg-1", account_id="acct-1", model_name="gpt-4o")


@pytest.fixture
def agents():
    return [
        AgentAvailability(agent_id="agent-b", workload=1, status="available"),
        AgentAvailability(agent_id="agent-a", workload=1, status="available"),
        AgentAvailability(agent_id="agent-c", workload=0, status="busy"),
        AgentAvailability(agent_id="agent-d", workload=3, status="available"),
    ]


@pytest.fixture
def ticket_store():
    return InMemoryTicketStore()


@pytest.fixture
def directory(agents):
    return InMemoryAgentDirectory(agents)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def handoff_manager(ticket_store, directory, notifier):
    return HandoffManager(ticket_store, directory, notifier, timeout=1.0)


@pytest.fixture
def build_pipeline(model_config, handoff_manager):
    """Factory for a SupportPipeline wired to in-memory collaborators."""

    def _build(
        chunks=None,
        history=None,
        provider=None,
        backend=None,
        embedder=None,
        config="default",
        cache=None,
        handoff="default",
    ):
        provider = provider or FakeProvider()
        backend = backend or FakeVectorBackend(chunks or [])
        pipeline = SupportPipeline(
            config_store=FakeConfigStore(model_config if config == "default" else config),
            session_store=FakeSessionStore(history or []),
            retriever=SemanticRetriever(embedder or FakeEmbedder(), backend, timeout=1.0),
            generator=ResponseGenerator(provider_factory=lambda cfg: provider, timeout=1.0),
            handoff=handoff_manager if handoff == "default" else handoff,
            cache=cache,
            settings=EngineSettings(),
        )
        pipeline.fake_provider = provider
        pipeline.fake_backend = backend
        return pipeline

    return _build
