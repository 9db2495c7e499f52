"""Conversation Orchestrator.

Manages conversation state, drives the two-pass tool-calling protocol
against the active provider and exposes it over HTTP.
"""

from orchestrator.conversation import ConversationManager
from orchestrator.gateway import ConversationOrchestrator

__all__ = [
    "ConversationManager",
    "ConversationOrchestrator",
]
