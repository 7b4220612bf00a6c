"""
Engine Configuration
=====================
Environment-driven settings for the response engine.

All values are read once at import time so every module references the same
names. Per-account model settings (provider, model, temperature, token budget)
are NOT configured here — they live in the ai_configurations table and are
loaded per turn by the pipeline.

Environment:
  DATABASE_URL               — PostgreSQL connection string (or POSTGRES_* parts)
  KAFKA_BOOTSTRAP_SERVERS    — Broker list for agent notifications
  HANDOFF_NOTIFICATION_TOPIC — Topic receiving handoff notifications
  EMBEDDING_MODEL            — OpenAI embedding model name
  RETRIEVAL_TIMEOUT_SECONDS  — Embedding + vector search timeout (default 5)
  GENERATION_TIMEOUT_SECONDS — LLM call timeout (default 30)
  STORE_TIMEOUT_SECONDS      — Ticket / history store timeout (default 10)
  MATCH_COUNT, MATCH_THRESHOLD, HISTORY_LIMIT
  CACHE_TTL_SECONDS, CACHE_MAX_ENTRIES
  LOG_LEVEL
"""

from __future__ import annotations

import logging
import os

from pydantic import BaseModel, Field

# ── Database ─────────────────────────────────────────────────────────────

DATABASE_URL = os.environ.get(
    "DATABASE_URL",
    "postgresql://{user}:{password}@{host}:{port}/{db}".format(
        user=os.environ.get("POSTGRES_USER", "support"),
        password=os.environ.get("POSTGRES_PASSWORD", "support_secret"),
        host=os.environ.get("POSTGRES_HOST", "localhost"),
        port=os.environ.get("POSTGRES_PORT", "5432"),
        db=os.environ.get("POSTGRES_DB", "support_engine"),
    ),
)

# ── Notifications ────────────────────────────────────────────────────────

KAFKA_BOOTSTRAP_SERVERS = os.environ.get("KAFKA_BOOTSTRAP_SERVERS", "kafka:9092")
HANDOFF_NOTIFICATION_TOPIC = os.environ.get(
    "HANDOFF_NOTIFICATION_TOPIC", "support.handoffs.notifications"
)

# ── Retrieval & generation ───────────────────────────────────────────────

EMBEDDING_MODEL = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
RETRIEVAL_TIMEOUT_SECONDS = float(os.environ.get("RETRIEVAL_TIMEOUT_SECONDS", "5"))
GENERATION_TIMEOUT_SECONDS = float(os.environ.get("GENERATION_TIMEOUT_SECONDS", "30"))
STORE_TIMEOUT_SECONDS = float(os.environ.get("STORE_TIMEOUT_SECONDS", "10"))
MATCH_COUNT = int(os.environ.get("MATCH_COUNT", "10"))
MATCH_THRESHOLD = float(os.environ.get("MATCH_THRESHOLD", "0.7"))
HISTORY_LIMIT = int(os.environ.get("HISTORY_LIMIT", "20"))

# ── Cache ────────────────────────────────────────────────────────────────

CACHE_TTL_SECONDS = float(os.environ.get("CACHE_TTL_SECONDS", "300"))
CACHE_MAX_ENTRIES = int(os.environ.get("CACHE_MAX_ENTRIES", "1000"))

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class EngineSettings(BaseModel):
    """Bundle of engine-wide settings, injectable into the pipeline."""

    database_url: str = DATABASE_URL
    kafka_bootstrap_servers: str = KAFKA_BOOTSTRAP_SERVERS
    handoff_notification_topic: str = HANDOFF_NOTIFICATION_TOPIC
    embedding_model: str = EMBEDDING_MODEL
    retrieval_timeout_seconds: float = Field(default=RETRIEVAL_TIMEOUT_SECONDS, gt=0)
    generation_timeout_seconds: float = Field(default=GENERATION_TIMEOUT_SECONDS, gt=0)
    store_timeout_seconds: float = Field(default=STORE_TIMEOUT_SECONDS, gt=0)
    match_count: int = Field(default=MATCH_COUNT, ge=1)
    match_threshold: float = Field(default=MATCH_THRESHOLD, ge=0.0, le=1.0)
    history_limit: int = Field(default=HISTORY_LIMIT, ge=0)
    cache_ttl_seconds: float = Field(default=CACHE_TTL_SECONDS, gt=0)
    cache_max_entries: int = Field(default=CACHE_MAX_ENTRIES, ge=1)


def load_settings() -> EngineSettings:
    """Build settings from the module-level environment values."""
    return EngineSettings()


def configure_logging(level: str | None = None) -> None:
    """Apply the standard log format. Call once from the hosting process."""
    logging.basicConfig(
        level=(level or os.environ.get("LOG_LEVEL", "INFO")).upper(),
        format=LOG_FORMAT,
    )
