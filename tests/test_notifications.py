"""
Agent Notification Tests
=========================
Kafka producer is mocked; no broker is needed.

Run:
  pytest tests/test_notifications.py -v
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from support_engine.config import EngineSettings, configure_logging
from support_engine.models import HandoffTicket
from support_engine.notifications import KafkaAgentNotifier, build_notification

from conftest import BASE_TIME


@pytest.fixture
def ticket():
    return HandoffTicket(
        id="ticket-1",
        session_id="session-1",
        reason="Urgent keywords detected: refund",
        urgency="high",
        status="assigned",
        assigned_agent_id="agent-a",
        created_at=BASE_TIME,
    )


class TestBuildNotification:
    def test_assignee_gets_assigned_event(self, ticket):
        event = build_notification("agent-a", ticket)
        assert event["event_type"] == "handoff.assigned"
        assert event["ticket_id"] == "ticket-1"
        assert event["urgency"] == "high"
        assert event["created_at"] == BASE_TIME.isoformat()

    def test_others_get_broadcast(self, ticket):
        assert build_notification("agent-b", ticket)["event_type"] == "handoff.broadcast"


class TestKafkaAgentNotifier:
    @pytest.mark.asyncio
    async def test_notify_before_start(self, ticket):
        notifier = KafkaAgentNotifier("localhost:9092", "handoffs")
        with pytest.raises(RuntimeError):
            await notifier.notify("agent-a", ticket)

    @pytest.mark.asyncio
    async def test_publishes_keyed_by_agent(self, ticket):
        producer = MagicMock()
        producer.start = AsyncMock()
        producer.stop = AsyncMock()
        producer.send_and_wait = AsyncMock()

        with patch("support_engine.notifications.AIOKafkaProducer", return_value=producer) as mock_cls:
            notifier = KafkaAgentNotifier("localhost:9092", "handoffs")
            await notifier.start()
            await notifier.notify("agent-a", ticket)
            await notifier.stop()

        assert mock_cls.call_args.kwargs["acks"] == "all"
        args, kwargs = producer.send_and_wait.call_args
        assert args == ("handoffs",)
        assert kwargs["key"] == "agent-a"
        event = kwargs["value"]
        assert event["event_type"] == "handoff.assigned"
        assert event["event_id"]
        assert event["timestamp"]
        producer.stop.assert_awaited_once()


class TestConfig:
    def test_settings_defaults(self):
        settings = EngineSettings()
        assert settings.match_count >= 1
        assert 0.0 <= settings.match_threshold <= 1.0
        assert settings.cache_max_entries >= 1

    def test_invalid_settings_rejected(self):
        with pytest.raises(ValueError):
            EngineSettings(match_count=0)

    def test_configure_logging(self):
        with patch("support_engine.config.logging.basicConfig") as mock_basic:
            configure_logging("debug")
        assert mock_basic.call_args.kwargs["level"] == "DEBUG"
