"""
Error Taxonomy
===============
One exception per pipeline failure class. Each is raised with the original
exception chained (``raise ... from exc``) so logs keep the root cause.

  RetrievalFailure   — embedding provider / vector backend errored or timed out.
                       Degrades to a zero-source context.
  GenerationFailure  — LLM provider errored or timed out. Fatal for the turn.
  PersistenceFailure — ticket store / agent directory errored. Fatal for the
                       ticket, never for the generated reply.
  ConfigurationError — no usable model configuration. Fatal for the turn.
  TurnCancelled      — caller abandoned the turn between stages.
"""

from __future__ import annotations


class SupportEngineError(Exception):
    """Base class for all engine errors."""


class RetrievalFailure(SupportEngineError):
    pass


class GenerationFailure(SupportEngineError):
    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class PersistenceFailure(SupportEngineError):
    pass


class ConfigurationError(SupportEngineError):
    pass


class TurnCancelled(SupportEngineError):
    def __init__(self, stage: str):
        super().__init__(f"Turn cancelled before stage '{stage}'")
        self.stage = stage


class OpenTicketExists(PersistenceFailure):
    """The session already has a pending/assigned ticket (unique index hit)."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} already has an open handoff ticket")
        self.session_id = session_id
