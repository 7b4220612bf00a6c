"""
Handoff Ticket Manager
=======================
Creates, assigns and tracks human-handoff tickets.

Invariant: a session has at most one open (pending/assigned) ticket. The
manager checks before creating, and the store backs that with a partial
unique index. When two turns race, the loser gets OpenTicketExists from the
store and re-reads the winner's ticket.

A ticket left pending (no agent free, or a failed dispatch) is dispatched
again on the next turn that needs a handoff. Assignment goes through
``claim_ticket`` so only one caller assigns and notifies.

Assignment picks the available agent with the lowest workload (ties broken
by agent id). High-urgency tickets notify every available agent; other
tickets notify only the assignee. Notification failures are logged and never
fail the ticket.

Failures reading or creating the ticket raise PersistenceFailure; dispatch
failures after the ticket exists are reported on HandoffOutcome.error.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Optional, Protocol, Sequence, TypeVar

from ..config import STORE_TIMEOUT_SECONDS
from ..errors import OpenTicketExists, PersistenceFailure
from ..models import (
    AgentAvailability,
    HandoffEvaluation,
    HandoffOutcome,
    HandoffStatistics,
    HandoffTicket,
    TicketStatus,
    Urgency,
)

logger = logging.getLogger("engine.handoff")

T = TypeVar("T")


# ── Collaborator interfaces ──────────────────────────────────────────────


class TicketStore(Protocol):
    async def get_open_ticket(self, session_id: str) -> Optional[HandoffTicket]: ...

    async def create_ticket(
        self,
        session_id: str,
        reason: str,
        urgency: Urgency,
        metadata: dict[str, Any],
    ) -> HandoffTicket:
        """Insert a pending ticket. Raises OpenTicketExists on a unique hit."""
        ...

    async def assign_ticket(self, ticket_id: str, agent_id: str) -> Optional[HandoffTicket]: ...

    async def claim_ticket(self, ticket_id: str, agent_id: str) -> Optional[HandoffTicket]:
        """Assign only if still pending and unassigned; None if someone else won."""
        ...

    async def update_status(
        self,
        ticket_id: str,
        status: TicketStatus,
        resolution_notes: Optional[str] = None,
    ) -> Optional[HandoffTicket]: ...

    async def get_ticket(self, ticket_id: str) -> Optional[HandoffTicket]: ...

    async def list_tickets(
        self,
        status: Optional[TicketStatus] = None,
        urgency: Optional[Urgency] = None,
    ) -> list[HandoffTicket]: ...


class AgentDirectory(Protocol):
    async def list_agents(self) -> list[AgentAvailability]: ...


class AgentNotifier(Protocol):
    async def notify(self, agent_id: str, ticket: HandoffTicket) -> None: ...


# ── Selection ────────────────────────────────────────────────────────────


def available_agents(agents: Sequence[AgentAvailability]) -> list[AgentAvailability]:
    return [a for a in agents if a.status == "available"]


def select_agent(agents: Sequence[AgentAvailability]) -> Optional[AgentAvailability]:
    """Lowest workload among available agents; ties go to the smaller agent id."""
    candidates = available_agents(agents)
    if not candidates:
        return None
    return min(candidates, key=lambda a: (a.workload, a.agent_id))


# ── Manager ──────────────────────────────────────────────────────────────


class HandoffManager:
    """Ticket lifecycle on top of a TicketStore and AgentDirectory.

    Usage:
        manager = HandoffManager(PgTicketStore(pool), PgAgentDirectory(pool), notifier)
        outcome = await manager.ensure_ticket(session_id, evaluation)
    """

    def __init__(
        self,
        store: TicketStore,
        directory: AgentDirectory,
        notifier: Optional[AgentNotifier] = None,
        timeout: float = STORE_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.directory = directory
        self.notifier = notifier
        self.timeout = timeout

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except PersistenceFailure:
            raise
        except asyncio.TimeoutError as exc:
            raise PersistenceFailure(
                f"{operation} timed out after {self.timeout}s"
            ) from exc
        except Exception as exc:
            raise PersistenceFailure(f"{operation} failed: {exc}") from exc

    # ── Creation ─────────────────────────────────────────────────────────

    async def ensure_ticket(
        self,
        session_id: str,
        evaluation: HandoffEvaluation,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[HandoffOutcome]:
        """Open (or reuse) the session's handoff ticket.

        Returns None when the evaluation does not call for a handoff. A reused
        ticket that is still pending with no assignee is dispatched again. When
        the ticket exists but dispatch fails, the outcome carries the ticket
        and the failure in ``error``.

        Raises:
            PersistenceFailure: the ticket could not be read or created.
        """
        if not evaluation.should_handoff:
            return None

        existing = await self._call(
            "get_open_ticket", self.store.get_open_ticket(session_id)
        )
        if existing is not None:
            logger.info(
                f"Session {session_id} already has open ticket {existing.id} ({existing.status})"
            )
            return await self._dispatch(existing, created=False)

        try:
            ticket = await self._call(
                "create_ticket",
                self.store.create_ticket(
                    session_id,
                    evaluation.reason,
                    evaluation.urgency,
                    {
                        **(metadata or {}),
                        "triggers": [t.name for t in evaluation.triggers if t.triggered],
                    },
                ),
            )
        except OpenTicketExists:
            winner = await self._call(
                "get_open_ticket", self.store.get_open_ticket(session_id)
            )
            if winner is None:
                raise PersistenceFailure(
                    f"Open ticket for session {session_id} vanished after conflict"
                )
            logger.info(f"Lost ticket race for session {session_id}; reusing {winner.id}")
            return await self._dispatch(winner, created=False)

        logger.info(
            f"Created handoff ticket {ticket.id} for session {session_id} "
            f"(urgency={ticket.urgency}): {ticket.reason}"
        )
        return await self._dispatch(ticket, created=True)

    @staticmethod
    def _needs_agent(ticket: HandoffTicket) -> bool:
        return ticket.status == "pending" and ticket.assigned_agent_id is None

    async def _dispatch(self, ticket: HandoffTicket, created: bool) -> HandoffOutcome:
        """Assign an unassigned ticket and notify agents.

        The assignment is a claim: only the caller that moves the ticket out
        of pending sends notifications, so racing turns notify once.
        """
        if not self._needs_agent(ticket):
            return HandoffOutcome(
                ticket=ticket, created=created, assigned_agent_id=ticket.assigned_agent_id
            )

        try:
            agents = await self._call("list_agents", self.directory.list_agents())
            available = available_agents(agents)
            chosen = select_agent(available)
            if chosen is None:
                logger.warning(f"No available agents for ticket {ticket.id}; left pending")
                return HandoffOutcome(ticket=ticket, created=created)

            claimed = await self._call(
                "claim_ticket", self.store.claim_ticket(ticket.id, chosen.agent_id)
            )
            if claimed is None:
                current = await self._call("get_ticket", self.store.get_ticket(ticket.id))
                ticket = current or ticket
                logger.info(f"Ticket {ticket.id} was assigned concurrently; skipping dispatch")
                return HandoffOutcome(
                    ticket=ticket, created=created, assigned_agent_id=ticket.assigned_agent_id
                )
        except PersistenceFailure as exc:
            logger.error(f"Dispatch failed for ticket {ticket.id}; left pending: {exc}")
            return HandoffOutcome(ticket=ticket, created=created, error=str(exc))

        ticket = claimed
        logger.info(
            f"Assigned ticket {ticket.id} to agent {chosen.agent_id} "
            f"(workload={chosen.workload})"
        )
        if ticket.urgency == "high":
            recipients = [a.agent_id for a in available]
        else:
            recipients = [chosen.agent_id]
        notified = await self._notify(recipients, ticket)

        return HandoffOutcome(
            ticket=ticket,
            created=created,
            assigned_agent_id=chosen.agent_id,
            notified_agents=notified,
        )

    async def _notify(self, agent_ids: Sequence[str], ticket: HandoffTicket) -> list[str]:
        if not agent_ids:
            return []
        if self.notifier is None:
            logger.debug(f"No notifier configured; skipping {len(agent_ids)} notification(s)")
            return []

        results = await asyncio.gather(
            *(self.notifier.notify(agent_id, ticket) for agent_id in agent_ids),
            return_exceptions=True,
        )
        notified = []
        for agent_id, result in zip(agent_ids, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Failed to notify agent {agent_id} about ticket {ticket.id}: {result}"
                )
            else:
                notified.append(agent_id)
        return notified

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def _require_ticket(self, ticket_id: str) -> HandoffTicket:
        ticket = await self._call("get_ticket", self.store.get_ticket(ticket_id))
        if ticket is None:
            raise PersistenceFailure(f"Handoff ticket {ticket_id} not found")
        return ticket

    async def assign_ticket(self, ticket_id: str, agent_id: str) -> HandoffTicket:
        """Assign an open ticket to a specific agent."""
        ticket = await self._require_ticket(ticket_id)
        if not ticket.is_open:
            raise ValueError(f"Ticket {ticket_id} is {ticket.status}; cannot assign")
        assigned = await self._call(
            "assign_ticket", self.store.assign_ticket(ticket_id, agent_id)
        )
        if assigned is None:
            raise PersistenceFailure(f"Handoff ticket {ticket_id} not found")
        logger.info(f"Ticket {ticket_id} assigned to agent {agent_id}")
        return assigned

    async def resolve_ticket(
        self, ticket_id: str, resolution_notes: Optional[str] = None
    ) -> HandoffTicket:
        return await self._close(ticket_id, "resolved", resolution_notes)

    async def cancel_ticket(self, ticket_id: str) -> HandoffTicket:
        return await self._close(ticket_id, "cancelled", None)

    async def _close(
        self, ticket_id: str, status: TicketStatus, notes: Optional[str]
    ) -> HandoffTicket:
        ticket = await self._require_ticket(ticket_id)
        if not ticket.is_open:
            raise ValueError(f"Ticket {ticket_id} is already {ticket.status}")
        updated = await self._call(
            "update_status", self.store.update_status(ticket_id, status, notes)
        )
        if updated is None:
            raise PersistenceFailure(f"Handoff ticket {ticket_id} not found")
        logger.info(f"Ticket {ticket_id} {status}")
        return updated

    async def list_pending(self, urgency: Optional[Urgency] = None) -> list[HandoffTicket]:
        """Pending tickets, oldest first, optionally filtered by urgency."""
        tickets = await self._call(
            "list_tickets", self.store.list_tickets(status="pending", urgency=urgency)
        )
        return sorted(tickets, key=lambda t: t.created_at)

    async def statistics(self) -> HandoffStatistics:
        tickets = await self._call("list_tickets", self.store.list_tickets())

        by_status: dict[str, int] = {}
        by_urgency: dict[str, int] = {}
        durations: list[float] = []
        for ticket in tickets:
            by_status[ticket.status] = by_status.get(ticket.status, 0) + 1
            by_urgency[ticket.urgency] = by_urgency.get(ticket.urgency, 0) + 1
            if ticket.status == "resolved" and ticket.resolved_at is not None:
                durations.append(
                    (ticket.resolved_at - ticket.created_at).total_seconds() / 60.0
                )

        return HandoffStatistics(
            total=len(tickets),
            by_status=by_status,
            by_urgency=by_urgency,
            average_resolution_minutes=(
                round(sum(durations) / len(durations), 2) if durations else None
            ),
        )
