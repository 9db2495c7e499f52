"""Conversation Manager for the Orchestrator.

Manages conversation state and message history for process lifetime.
Transcripts are append-only: messages are never edited or pruned.
"""

import asyncio
import uuid
from collections.abc import Iterable
from typing import Any, Optional

from shared.errors import ConversationNotFoundError
from shared.logging import get_logger
from shared.models import (
    Conversation,
    Message,
    MessageRole,
    ToolCall,
    ToolDefinition,
    utcnow,
)

logger = get_logger(__name__)


class ConversationManager:
    """
    Manages conversation state for the orchestrator.

    Responsibilities:
    - Create and retrieve conversations
    - Append messages to transcripts
    - Hand out the per-conversation lock that serializes turns
    """

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._turn_locks: dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    async def create(
        self,
        system_prompt: Optional[str] = None,
        tools: Optional[Iterable[ToolDefinition]] = None
    ) -> Conversation:
        """
        Create a new conversation.

        Args:
            system_prompt: Optional system prompt to start the conversation
            tools: Tool catalog snapshot offered to the model for this conversation

        Returns:
            New conversation instance
        """
        conversation_id = uuid.uuid4().hex

        messages = []
        if system_prompt:
            messages.append(Message(role=MessageRole.SYSTEM, content=system_prompt))

        conversation = Conversation(
            id=conversation_id,
            messages=messages,
            tools=list(tools or [])
        )

        async with self._lock:
            self._conversations[conversation_id] = conversation
            self._turn_locks[conversation_id] = asyncio.Lock()

        logger.info(
            "Conversation created",
            conversation_id=conversation_id,
            tools=len(conversation.tools)
        )

        return conversation

    def get(self, conversation_id: str) -> Conversation:
        """
        Get a conversation by ID.

        Raises:
            ConversationNotFoundError: If the conversation does not exist
        """
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def turn_lock(self, conversation_id: str) -> asyncio.Lock:
        """Lock held for the duration of one turn on this conversation."""
        self.get(conversation_id)
        return self._turn_locks.setdefault(conversation_id, asyncio.Lock())

    def append(self, conversation_id: str, message: Message) -> Message:
        conversation = self.get(conversation_id)
        conversation.messages.append(message)
        conversation.updated_at = utcnow()
        return message

    def add_user_message(self, conversation_id: str, content: str) -> Message:
        return self.append(conversation_id, Message(role=MessageRole.USER, content=content))

    def add_assistant_message(
        self,
        conversation_id: str,
        content: str,
        tool_calls: Optional[list[ToolCall]] = None
    ) -> Message:
        return self.append(conversation_id, Message(
            role=MessageRole.ASSISTANT,
            content=content,
            tool_calls=tool_calls or None
        ))

    def add_tool_result(self, conversation_id: str, tool_call_id: str, content: str) -> Message:
        return self.append(conversation_id, Message(
            role=MessageRole.TOOL,
            content=content,
            tool_call_id=tool_call_id
        ))

    def get_messages(self, conversation_id: str, include_system: bool = True) -> list[Message]:
        """
        Get a copy of a conversation's transcript.

        Args:
            conversation_id: Conversation identifier
            include_system: Whether to include system messages
        """
        messages = list(self.get(conversation_id).messages)
        if not include_system:
            messages = [m for m in messages if m.role != MessageRole.SYSTEM]
        return messages

    async def delete(self, conversation_id: str) -> bool:
        """
        Delete a conversation.

        Waits for a turn already running on the conversation to finish.
        Turns queued behind it then fail with ConversationNotFoundError
        before reaching the provider.

        Returns:
            True if deleted, False if not found
        """
        if conversation_id not in self._conversations:
            return False

        async with self.turn_lock(conversation_id):
            async with self._lock:
                if self._conversations.pop(conversation_id, None) is None:
                    return False
                self._turn_locks.pop(conversation_id, None)

        logger.info("Conversation deleted", conversation_id=conversation_id)
        return True

    async def clear(self) -> int:
        count = 0
        for conversation_id in list(self._conversations):
            if await self.delete(conversation_id):
                count += 1

        logger.info("Cleared all conversations", count=count)
        return count

    def list_conversations(self) -> list[dict[str, Any]]:
        return [c.summary() for c in self._conversations.values()]

    def get_stats(self) -> dict[str, Any]:
        """Get conversation manager statistics."""
        return {
            "active_conversations": len(self._conversations),
            "total_messages": sum(len(c.messages) for c in self._conversations.values()),
        }
