"""
Agent Notifications — Kafka Publisher
======================================
Publishes handoff notifications for human agents to a Kafka topic. A separate
notification service (dashboard push, email, Slack) consumes the topic.

Event shape:
  {
    "event_type": "handoff.assigned" | "handoff.broadcast",
    "agent_id": "...",
    "ticket_id": "...", "session_id": "...",
    "urgency": "high", "reason": "...", "status": "assigned",
    "timestamp": "...", "event_id": "..."
  }

Setup:
  Environment variables:
    KAFKA_BOOTSTRAP_SERVERS    — Comma-separated broker list (default: kafka:9092)
    HANDOFF_NOTIFICATION_TOPIC — Topic name (default: support.handoffs.notifications)

Dependencies:
  aiokafka
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from aiokafka import AIOKafkaProducer

from .config import HANDOFF_NOTIFICATION_TOPIC, KAFKA_BOOTSTRAP_SERVERS
from .models import HandoffTicket

logger = logging.getLogger("notifications")


def build_notification(agent_id: str, ticket: HandoffTicket) -> dict:
    """Serialize one agent notification for a ticket."""
    event_type = (
        "handoff.assigned" if ticket.assigned_agent_id == agent_id else "handoff.broadcast"
    )
    return {
        "event_type": event_type,
        "agent_id": agent_id,
        "ticket_id": ticket.id,
        "session_id": ticket.session_id,
        "urgency": ticket.urgency,
        "reason": ticket.reason,
        "status": ticket.status,
        "created_at": ticket.created_at.isoformat(),
    }


class KafkaAgentNotifier:
    """Agent notifier backed by an aiokafka producer.

    Usage:
        notifier = KafkaAgentNotifier()
        await notifier.start()
        await notifier.notify("agent-7", ticket)
        await notifier.stop()
    """

    def __init__(
        self,
        bootstrap_servers: str = KAFKA_BOOTSTRAP_SERVERS,
        topic: str = HANDOFF_NOTIFICATION_TOPIC,
    ):
        self._bootstrap_servers = bootstrap_servers
        self.topic = topic
        self._producer: Optional[AIOKafkaProducer] = None

    async def start(self) -> None:
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
            acks="all",
            retry_backoff_ms=100,
        )
        await self._producer.start()
        logger.info(f"Notification producer started: {self._bootstrap_servers}")

    async def stop(self) -> None:
        """Flush pending notifications and close the producer."""
        if self._producer:
            await self._producer.stop()
            self._producer = None
            logger.info("Notification producer stopped")

    async def notify(self, agent_id: str, ticket: HandoffTicket) -> None:
        """Publish one notification, keyed by agent id for per-agent ordering."""
        if not self._producer:
            raise RuntimeError("Notifier not started. Call start() first.")

        event = build_notification(agent_id, ticket)
        event["timestamp"] = datetime.now(timezone.utc).isoformat()
        event["event_id"] = str(uuid.uuid4())

        await self._producer.send_and_wait(self.topic, value=event, key=agent_id)
        logger.debug(
            f"Notified agent {agent_id} about ticket {ticket.id} "
            f"(event_id={event['event_id']})"
        )
