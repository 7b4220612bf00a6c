"""
Support Engine — Retrieval-Augmented Response & Escalation
===========================================================
Turns an inbound customer message into a grounded reply, a confidence score
and an escalation decision, opening a handoff ticket when a human is needed.

Usage:
    from support_engine.agent.pipeline import SupportPipeline

    result = await pipeline.process_message(account_id, session_id, message)
    if result.handoff:
        print(result.handoff.ticket.id)
"""

__version__ = "1.0.0"
