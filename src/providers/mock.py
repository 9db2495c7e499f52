"""Local mock provider for testing without API calls."""

import asyncio
from typing import Any, AsyncIterator, Optional

from providers.base import ProviderClient, ProviderDescriptor
from shared.models import ChatResponse, Message, MessageRole, ModelConfig, StreamChunk, TokenUsage


class MockClient(ProviderClient):
    """
    Echoes the latest user message.

    Responses queued with `queue()` are returned first, in order, which
    lets tests script tool-call rounds. Every call is recorded in
    `call_history`.
    """

    provider_name = "mock"
    supports_streaming = True

    def __init__(self, config: ModelConfig, chunk_delay: float = 0.0) -> None:
        super().__init__(config)
        self.chunk_delay = chunk_delay
        self.call_history: list[dict[str, Any]] = []
        self._queued: list[ChatResponse] = []

    def queue(self, *responses: ChatResponse) -> None:
        """Queue responses to return before falling back to echo."""
        self._queued.extend(responses)

    @staticmethod
    def _reply_to(messages: list[Message]) -> str:
        for msg in reversed(messages):
            if msg.role == MessageRole.USER:
                return f"Echo: {msg.content}"
        return "Echo: (no user message)"

    async def chat(
        self,
        messages: list[Message],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> ChatResponse:
        self.call_history.append({"messages": list(messages), "tools": tools})

        if self._queued:
            return self._queued.pop(0)

        content = self._reply_to(messages)
        prompt_tokens = sum(len(m.content) for m in messages)
        return ChatResponse(
            content=content,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=len(content),
                total_tokens=prompt_tokens + len(content),
            ),
        )

    async def _stream(self, messages: list[Message]) -> AsyncIterator[StreamChunk]:
        self.call_history.append({"messages": list(messages), "tools": None, "stream": True})

        words = self._reply_to(messages).split(" ")
        for index, word in enumerate(words):
            suffix = " " if index < len(words) - 1 else ""
            yield StreamChunk(content=word + suffix)
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
        yield StreamChunk(done=True)

    def stream_chat(
        self,
        messages: list[Message],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> AsyncIterator[StreamChunk]:
        return self._stream(messages)


mock_provider = ProviderDescriptor(
    name="mock",
    display_name="Mock AI (for testing)",
    models=["mock-model-1", "mock-model-2"],
    requires_credential=False,
    factory=MockClient,
)
