"""
Support Engine — Database Query Functions
==========================================
Async database operations using asyncpg.

All functions accept a connection pool (asyncpg.Pool) and return plain dicts;
the adapters in database/stores.py turn rows into engine models and translate
driver errors.

    from support_engine.database.queries import get_open_handoff
    ticket_row = await get_open_handoff(pool, session_id)

Connection pool creation:
    import asyncpg
    pool = await asyncpg.create_pool(dsn=DATABASE_URL)

Tables referenced: chat_messages, ai_configurations, document_embeddings,
                   agent_availability, handoff_requests
Schema: database/schema.sql
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional, Sequence

import asyncpg

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


# ── Helpers ────────────────────────────────────────────────────────────────


async def _fetchrow(pool: asyncpg.Pool, query: str, *args) -> Optional[dict]:
    """Execute a query and return a single row as a dict (or None)."""
    async with pool.acquire() as conn:
        row = await conn.fetchrow(query, *args)
        return dict(row) if row else None


async def _fetch(pool: asyncpg.Pool, query: str, *args) -> list[dict]:
    """Execute a query and return all rows as a list of dicts."""
    async with pool.acquire() as conn:
        rows = await conn.fetch(query, *args)
        return [dict(r) for r in rows]


async def _fetchval(pool: asyncpg.Pool, query: str, *args) -> Any:
    async with pool.acquire() as conn:
        return await conn.fetchval(query, *args)


def vector_literal(embedding: Sequence[float]) -> str:
    """Format an embedding the way pgvector parses it: '[0.1,0.2,...]'."""
    return "[" + ",".join(str(x) for x in embedding) + "]"


async def apply_schema(pool: asyncpg.Pool) -> None:
    """Apply database/schema.sql. Safe to re-run."""
    sql = SCHEMA_PATH.read_text(encoding="utf-8")
    async with pool.acquire() as conn:
        await conn.execute(sql)


# ── 1. Knowledge Base ─────────────────────────────────────────────────────


async def match_documents(
    pool: asyncpg.Pool,
    query_embedding: Sequence[float],
    match_threshold: float,
    match_count: int,
    user_id: str,
) -> list[dict]:
    """Semantic search over one account's document embeddings.

    Uses the match_documents SQL function (pgvector <=> cosine distance).
    Similarity = 1 - cosine distance; only rows strictly above
    ``match_threshold`` come back, best first.
    """
    return await _fetch(
        pool,
        "SELECT * FROM match_documents($1::vector, $2, $3, $4::uuid)",
        vector_literal(query_embedding),
        float(match_threshold),
        int(match_count),
        user_id,
    )


async def get_knowledge_version(pool: asyncpg.Pool, user_id: str) -> str:
    """Version token for an account's knowledge base.

    Changes whenever chunks are added, removed or re-embedded.
    """
    return await _fetchval(
        pool,
        """
        SELECT COUNT(*)::text || ':' ||
               COALESCE(EXTRACT(EPOCH FROM MAX(updated_at))::text, '0')
        FROM document_embeddings
        WHERE user_id = $1::uuid
        """,
        user_id,
    )


# ── 2. Conversation History & Configuration ──────────────────────────────


async def get_session_history(
    pool: asyncpg.Pool, session_id: str, limit: int = 20
) -> list[dict]:
    """Most recent ``limit`` messages of a session, oldest first."""
    rows = await _fetch(
        pool,
        """
        SELECT id, session_id, role, content, confidence_score, created_at
        FROM chat_messages
        WHERE session_id = $1::uuid
        ORDER BY created_at DESC
        LIMIT $2
        """,
        session_id,
        limit,
    )
    rows.reverse()
    return rows


async def get_active_ai_configuration(pool: asyncpg.Pool, user_id: str) -> Optional[dict]:
    return await _fetchrow(
        pool,
        """
        SELECT * FROM ai_configurations
        WHERE user_id = $1::uuid AND is_active
        ORDER BY updated_at DESC
        LIMIT 1
        """,
        user_id,
    )


# ── 3. Human Agents ───────────────────────────────────────────────────────


async def list_agent_availability(pool: asyncpg.Pool) -> list[dict]:
    """All agents with their workload and an effective status.

    An agent is 'available' when flagged available, online or away, and below
    their concurrent-chat cap; otherwise the stored status is reported.
    """
    return await _fetch(
        pool,
        """
        SELECT
            agent_id,
            current_chat_count AS workload,
            CASE
                WHEN is_available
                     AND status IN ('online', 'away')
                     AND current_chat_count < max_concurrent_chats
                THEN 'available'
                ELSE status
            END AS status
        FROM agent_availability
        ORDER BY agent_id
        """,
    )


# ── 4. Handoff Requests ───────────────────────────────────────────────────


async def get_open_handoff(pool: asyncpg.Pool, session_id: str) -> Optional[dict]:
    return await _fetchrow(
        pool,
        """
        SELECT * FROM handoff_requests
        WHERE session_id = $1::uuid AND status IN ('pending', 'assigned')
        ORDER BY created_at DESC
        LIMIT 1
        """,
        session_id,
    )


async def create_handoff_request(
    pool: asyncpg.Pool,
    session_id: str,
    reason: str,
    urgency: str,
    metadata: Optional[dict] = None,
) -> dict:
    """Insert a pending ticket.

    Raises asyncpg.UniqueViolationError when the session already has an open
    ticket (partial unique index uq_handoff_requests_open_session).
    """
    return await _fetchrow(
        pool,
        """
        INSERT INTO handoff_requests (session_id, reason, urgency, status, metadata)
        VALUES ($1::uuid, $2, $3, 'pending', $4::jsonb)
        RETURNING *
        """,
        session_id,
        reason,
        urgency,
        json.dumps(metadata or {}, default=str),
    )


async def _adjust_chat_count(conn: asyncpg.Connection, agent_id: Any, delta: int) -> None:
    """Move an agent's open-chat count by ``delta``, never below zero."""
    await conn.execute(
        """
        UPDATE agent_availability
        SET current_chat_count = GREATEST(current_chat_count + $2, 0),
            last_activity = NOW()
        WHERE agent_id = $1::uuid
        """,
        str(agent_id),
        delta,
    )


async def _lock_handoff(conn: asyncpg.Connection, handoff_id: str) -> Optional[asyncpg.Record]:
    return await conn.fetchrow(
        "SELECT status, assigned_agent_id FROM handoff_requests WHERE id = $1::uuid FOR UPDATE",
        handoff_id,
    )


async def assign_handoff_request(
    pool: asyncpg.Pool, handoff_id: str, agent_id: str
) -> Optional[dict]:
    """Assign (or reassign) an open ticket in one transaction.

    The new agent's chat count goes up and a previous assignee is released.
    Returns None when the ticket is missing or already closed.
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            current = await _lock_handoff(conn, handoff_id)
            if current is None or current["status"] not in ("pending", "assigned"):
                return None
            row = await conn.fetchrow(
                """
                UPDATE handoff_requests
                SET status = 'assigned',
                    assigned_agent_id = $2::uuid,
                    assigned_at = NOW()
                WHERE id = $1::uuid
                RETURNING *
                """,
                handoff_id,
                agent_id,
            )
            previous = current["assigned_agent_id"]
            if previous is None or str(previous) != str(agent_id):
                if previous is not None:
                    await _adjust_chat_count(conn, previous, -1)
                await _adjust_chat_count(conn, agent_id, 1)
            return dict(row)


async def claim_handoff_request(
    pool: asyncpg.Pool, handoff_id: str, agent_id: str
) -> Optional[dict]:
    """Assign a ticket only if it is still pending with no assignee.

    Returns None when another worker got there first.
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await conn.fetchrow(
                """
                UPDATE handoff_requests
                SET status = 'assigned',
                    assigned_agent_id = $2::uuid,
                    assigned_at = NOW()
                WHERE id = $1::uuid
                  AND status = 'pending'
                  AND assigned_agent_id IS NULL
                RETURNING *
                """,
                handoff_id,
                agent_id,
            )
            if row is None:
                return None
            await _adjust_chat_count(conn, agent_id, 1)
            return dict(row)


async def update_handoff_status(
    pool: asyncpg.Pool,
    handoff_id: str,
    status: str,
    resolution_notes: Optional[str] = None,
) -> Optional[dict]:
    """Move a ticket to ``status``; resolving stamps resolved_at.

    Closing an assigned ticket releases the agent's chat slot.
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            current = await _lock_handoff(conn, handoff_id)
            if current is None:
                return None
            row = await conn.fetchrow(
                """
                UPDATE handoff_requests
                SET status = $2,
                    resolution_notes = COALESCE($3, resolution_notes),
                    resolved_at = CASE WHEN $2 = 'resolved' THEN NOW() ELSE resolved_at END
                WHERE id = $1::uuid
                RETURNING *
                """,
                handoff_id,
                status,
                resolution_notes,
            )
            if (
                current["status"] == "assigned"
                and current["assigned_agent_id"] is not None
                and status in ("resolved", "cancelled")
            ):
                await _adjust_chat_count(conn, current["assigned_agent_id"], -1)
            return dict(row)


async def get_handoff_request(pool: asyncpg.Pool, handoff_id: str) -> Optional[dict]:
    return await _fetchrow(
        pool,
        "SELECT * FROM handoff_requests WHERE id = $1::uuid",
        handoff_id,
    )


async def list_handoff_requests(
    pool: asyncpg.Pool,
    status: Optional[str] = None,
    urgency: Optional[str] = None,
) -> list[dict]:
    """Tickets filtered by status and/or urgency, oldest first."""
    return await _fetch(
        pool,
        """
        SELECT * FROM handoff_requests
        WHERE ($1::text IS NULL OR status = $1)
          AND ($2::text IS NULL OR urgency = $2)
        ORDER BY created_at ASC
        """,
        status,
        urgency,
    )
