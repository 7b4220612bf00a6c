"""
Postgres Adapters
==================
asyncpg-backed implementations of the engine's collaborator interfaces:

  PgVectorBackend   — VectorBackend       (match_documents, knowledge version)
  PgSessionStore    — SessionStore        (chat_messages, read-only)
  PgConfigStore     — ConfigurationStore  (ai_configurations, read-only)
  PgTicketStore     — TicketStore         (handoff_requests)
  PgAgentDirectory  — AgentDirectory      (agent_availability, read-only)

Rows are converted to pydantic models (UUIDs → str, JSONB → dict). Driver
errors are translated: ticket/directory failures raise PersistenceFailure, a
unique-index hit on handoff_requests raises OpenTicketExists.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Sequence

import asyncpg

from ..errors import OpenTicketExists, PersistenceFailure
from ..models import (
    AgentAvailability,
    HandoffTicket,
    Message,
    ModelConfiguration,
    RetrievedChunk,
    TicketStatus,
    Urgency,
)
from . import queries

logger = logging.getLogger("database.stores")


# ── Row conversion ───────────────────────────────────────────────────────


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _json_dict(value: Any) -> dict:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value) if value else {}
    return dict(value)


def row_to_chunk(row: dict) -> RetrievedChunk:
    metadata = _json_dict(row.get("metadata"))
    if row.get("chunk_index") is not None:
        metadata.setdefault("chunk_index", row["chunk_index"])
    return RetrievedChunk(
        source_id=str(row["source_id"]),
        source_type=row.get("source_type") or "document",
        text=row["chunk_text"],
        similarity=max(0.0, min(1.0, float(row["similarity"]))),
        metadata=metadata,
    )


def row_to_message(row: dict) -> Message:
    return Message(
        id=str(row["id"]),
        session_id=str(row["session_id"]),
        role=row["role"],
        content=row["content"],
        created_at=row["created_at"],
        confidence_score=row.get("confidence_score"),
    )


def row_to_configuration(row: dict) -> ModelConfiguration:
    return ModelConfiguration(
        id=str(row["id"]),
        account_id=str(row["user_id"]),
        provider=row.get("provider") or "openai",
        model_name=row.get("model_name") or "gpt-4o",
        temperature=row.get("temperature", 0.7),
        max_tokens=row.get("max_tokens", 1000),
        system_prompt=row.get("system_prompt"),
        api_key=row.get("api_key"),
        api_base_url=row.get("api_base_url"),
        max_context_tokens=row.get("max_context_tokens") or 6000,
    )


def row_to_ticket(row: dict) -> HandoffTicket:
    return HandoffTicket(
        id=str(row["id"]),
        session_id=str(row["session_id"]),
        reason=row["reason"],
        urgency=row["urgency"],
        status=row["status"],
        assigned_agent_id=_str_or_none(row.get("assigned_agent_id")),
        created_at=row["created_at"],
        assigned_at=row.get("assigned_at"),
        resolved_at=row.get("resolved_at"),
        resolution_notes=row.get("resolution_notes"),
        metadata=_json_dict(row.get("metadata")),
    )


# ── Knowledge base ───────────────────────────────────────────────────────


class PgVectorBackend:
    """Vector search through the match_documents SQL function."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def match(
        self, vector: Sequence[float], threshold: float, count: int, scope: str
    ) -> list[RetrievedChunk]:
        rows = await queries.match_documents(self.pool, vector, threshold, count, scope)
        return [row_to_chunk(r) for r in rows]

    async def knowledge_version(self, scope: str) -> Optional[str]:
        return await queries.get_knowledge_version(self.pool, scope)


# ── Sessions & configuration ─────────────────────────────────────────────


class PgSessionStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get_history(self, session_id: str, limit: int) -> list[Message]:
        rows = await queries.get_session_history(self.pool, session_id, limit)
        return [row_to_message(r) for r in rows]


class PgConfigStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get_active_configuration(self, account_id: str) -> Optional[ModelConfiguration]:
        row = await queries.get_active_ai_configuration(self.pool, account_id)
        return row_to_configuration(row) if row else None


# ── Tickets & agents ─────────────────────────────────────────────────────


class PgTicketStore:
    """Ticket store over handoff_requests."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get_open_ticket(self, session_id: str) -> Optional[HandoffTicket]:
        try:
            row = await queries.get_open_handoff(self.pool, session_id)
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Open ticket lookup failed for session {session_id}: {e}")
            raise PersistenceFailure(f"Open ticket lookup failed: {e}") from e
        return row_to_ticket(row) if row else None

    async def create_ticket(
        self,
        session_id: str,
        reason: str,
        urgency: Urgency,
        metadata: dict[str, Any],
    ) -> HandoffTicket:
        try:
            row = await queries.create_handoff_request(
                self.pool, session_id, reason, urgency, metadata
            )
        except asyncpg.UniqueViolationError as e:
            raise OpenTicketExists(session_id) from e
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Ticket creation failed for session {session_id}: {e}")
            raise PersistenceFailure(f"Ticket creation failed: {e}") from e
        return row_to_ticket(row)

    async def assign_ticket(self, ticket_id: str, agent_id: str) -> Optional[HandoffTicket]:
        try:
            row = await queries.assign_handoff_request(self.pool, ticket_id, agent_id)
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Ticket assignment failed for {ticket_id}: {e}")
            raise PersistenceFailure(f"Ticket assignment failed: {e}") from e
        return row_to_ticket(row) if row else None

    async def claim_ticket(self, ticket_id: str, agent_id: str) -> Optional[HandoffTicket]:
        try:
            row = await queries.claim_handoff_request(self.pool, ticket_id, agent_id)
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Ticket claim failed for {ticket_id}: {e}")
            raise PersistenceFailure(f"Ticket claim failed: {e}") from e
        return row_to_ticket(row) if row else None

    async def update_status(
        self,
        ticket_id: str,
        status: TicketStatus,
        resolution_notes: Optional[str] = None,
    ) -> Optional[HandoffTicket]:
        try:
            row = await queries.update_handoff_status(
                self.pool, ticket_id, status, resolution_notes
            )
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Ticket status update failed for {ticket_id}: {e}")
            raise PersistenceFailure(f"Ticket status update failed: {e}") from e
        return row_to_ticket(row) if row else None

    async def get_ticket(self, ticket_id: str) -> Optional[HandoffTicket]:
        try:
            row = await queries.get_handoff_request(self.pool, ticket_id)
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceFailure(f"Ticket lookup failed: {e}") from e
        return row_to_ticket(row) if row else None

    async def list_tickets(
        self,
        status: Optional[TicketStatus] = None,
        urgency: Optional[Urgency] = None,
    ) -> list[HandoffTicket]:
        try:
            rows = await queries.list_handoff_requests(self.pool, status, urgency)
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceFailure(f"Ticket listing failed: {e}") from e
        return [row_to_ticket(r) for r in rows]


class PgAgentDirectory:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def list_agents(self) -> list[AgentAvailability]:
        try:
            rows = await queries.list_agent_availability(self.pool)
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Agent directory lookup failed: {e}")
            raise PersistenceFailure(f"Agent directory lookup failed: {e}") from e
        return [
            AgentAvailability(
                agent_id=str(r["agent_id"]),
                workload=r.get("workload") or 0,
                status=r.get("status") or "offline",
            )
            for r in rows
        ]
