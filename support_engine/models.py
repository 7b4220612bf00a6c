"""
Data Model — Engine Records
============================
Pydantic models shared by every stage of the pipeline.

Records owned elsewhere (Message, AgentAvailability) are read-only here.
Records produced per turn (OptimizedQuery, AssembledContext, GeneratedResponse,
HandoffEvaluation) never outlive a single pipeline invocation. HandoffTicket is
the only record the engine writes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant", "system"]
Sentiment = Literal["positive", "neutral", "negative"]
Complexity = Literal["low", "medium", "high"]
Urgency = Literal["low", "medium", "high"]
TicketStatus = Literal["pending", "assigned", "resolved", "cancelled"]
SourceType = Literal["document", "webpage"]
ProviderName = Literal["openai", "anthropic", "custom"]
Intent = Literal["complaint", "transactional", "technical", "informational"]

OPEN_TICKET_STATUSES = ("pending", "assigned")


# ── Conversation ─────────────────────────────────────────────────────────


class Message(BaseModel):
    """A single conversation turn, immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    role: Role
    content: str
    created_at: datetime
    confidence_score: Optional[float] = None


class ConversationContext(BaseModel):
    """Per-turn summary of recent history. Derived, never persisted."""

    session_id: str
    message_count: int = 0
    average_confidence: float = 1.0
    sentiment: Sentiment = "neutral"
    complexity: Complexity = "low"
    topics: list[str] = Field(default_factory=list)
    last_activity: Optional[datetime] = None


# ── Retrieval & context ──────────────────────────────────────────────────


class RetrievedChunk(BaseModel):
    source_id: str
    source_type: SourceType = "document"
    text: str
    similarity: float = Field(ge=0.0, le=1.0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class OptimizedQuery(BaseModel):
    original: str
    optimized_query: str
    search_terms: list[str] = Field(default_factory=list)
    intent: Intent = "informational"


class AssembledContext(BaseModel):
    """Token-bounded prompt material handed to the generator."""

    conversation_context: str = ""
    knowledge_context: str = ""
    enhanced_query: str = ""
    context_relevance_score: float = 0.0
    history: list[Message] = Field(default_factory=list)
    chunks: list[RetrievedChunk] = Field(default_factory=list)
    current_message: str
    estimated_tokens: int = 0


# ── Generation ───────────────────────────────────────────────────────────


class ModelConfiguration(BaseModel):
    """Active language-model settings for one account (ai_configurations row)."""

    id: str
    account_id: str
    provider: ProviderName = "openai"
    model_name: str = "gpt-4o"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, ge=1)
    system_prompt: Optional[str] = None
    api_key: Optional[str] = None
    api_base_url: Optional[str] = None
    max_context_tokens: int = Field(default=6000, ge=1)


class GeneratedResponse(BaseModel):
    text: str
    tokens_used: int = 0
    model_used: str


# ── Escalation ───────────────────────────────────────────────────────────


class HandoffTrigger(BaseModel):
    name: str
    triggered: bool = False
    urgency: Urgency = "low"
    reason: str = ""


class HandoffEvaluation(BaseModel):
    should_handoff: bool = False
    urgency: Urgency = "low"
    reason: str = ""
    triggers: list[HandoffTrigger] = Field(default_factory=list)


class HandoffTicket(BaseModel):
    id: str
    session_id: str
    reason: str
    urgency: Urgency
    status: TicketStatus = "pending"
    assigned_agent_id: Optional[str] = None
    created_at: datetime
    assigned_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TICKET_STATUSES


class AgentAvailability(BaseModel):
    agent_id: str
    workload: int = 0
    status: str = "offline"


class HandoffOutcome(BaseModel):
    ticket: HandoffTicket
    created: bool
    assigned_agent_id: Optional[str] = None
    notified_agents: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class HandoffStatistics(BaseModel):
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_urgency: dict[str, int] = Field(default_factory=dict)
    average_resolution_minutes: Optional[float] = None


# ── Pipeline ─────────────────────────────────────────────────────────────


class PipelineResult(BaseModel):
    session_id: str
    reply: GeneratedResponse
    confidence: float
    sources: list[RetrievedChunk] = Field(default_factory=list)
    optimized_query: Optional[OptimizedQuery] = None
    context_relevance_score: float = 0.0
    conversation_context: Optional[ConversationContext] = None
    evaluation: HandoffEvaluation
    handoff: Optional[HandoffOutcome] = None
    retrieval_error: Optional[str] = None
    handoff_error: Optional[str] = None
    cache_hit: bool = False
    elapsed_ms: int = 0
