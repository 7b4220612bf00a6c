"""Retrieval, generation, scoring and escalation stages of the engine."""
