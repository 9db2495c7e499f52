"""Shared models, configuration, errors and logging for the Assistant Gateway."""

from shared.models import (
    ChatResponse,
    Conversation,
    Message,
    MessageRole,
    ModelConfig,
    Plugin,
    StreamChunk,
    ToolCall,
    ToolDefinition,
    ToolFailure,
    ToolResult,
    ToolSuccess,
    TurnResult,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "ChatResponse",
    "Conversation",
    "Message",
    "MessageRole",
    "ModelConfig",
    "Plugin",
    "StreamChunk",
    "ToolCall",
    "ToolDefinition",
    "ToolFailure",
    "ToolResult",
    "ToolSuccess",
    "TurnResult",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
