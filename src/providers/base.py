"""Provider abstraction.

A provider descriptor names a backend and knows how to build a client bound
to one model. Clients translate the gateway's message and tool shapes into
the backend's wire format and back.
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from shared.errors import CredentialError, UpstreamError
from shared.logging import get_logger
from shared.models import (
    ChatResponse,
    Message,
    ModelConfig,
    StreamChunk,
    ToolCall,
    ToolCallFunction,
)

logger = get_logger(__name__)


class ProviderClient(ABC):
    """
    A backend client bound to one model configuration.

    Provider Integration Rules:
    - Receives the full transcript and, optionally, the tool catalog
    - Returns content and/or structured tool calls, never executes tools
    - Raises UpstreamError for any backend failure
    """

    provider_name: str = "provider"
    supports_streaming: bool = False

    def __init__(self, config: ModelConfig) -> None:
        self.config = config

    @abstractmethod
    async def chat(
        self,
        messages: list[Message],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> ChatResponse:
        """
        Generate a reply.

        Args:
            messages: Conversation transcript, oldest first
            tools: Available tools in OpenAI function-calling format

        Returns:
            Reply content and/or requested tool calls
        """
        pass

    def stream_chat(
        self,
        messages: list[Message],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> AsyncIterator[StreamChunk]:
        """Stream a reply; only called when `supports_streaming` is set."""
        raise NotImplementedError(f"{self.provider_name} does not support streaming")

    async def close(self) -> None:
        """Release any network resources held by the client."""
        pass

    def _error(self, message: str, status_code: Optional[int] = None) -> UpstreamError:
        return UpstreamError(message, status_code=status_code, provider=self.provider_name)


ClientFactory = Callable[[ModelConfig], ProviderClient]


class ProviderDescriptor(BaseModel):
    """Catalog entry for one backend."""
    name: str = Field(..., min_length=1)
    display_name: str
    models: list[str] = Field(default_factory=list)
    credential_env: Optional[str] = Field(default=None, description="Environment variable holding the API key")
    requires_credential: bool = True
    factory: ClientFactory = Field(..., exclude=True, repr=False)

    @property
    def default_model(self) -> Optional[str]:
        return self.models[0] if self.models else None

    def resolve_credential(self, config: ModelConfig) -> Optional[str]:
        """Inline key first, then the provider's environment variable."""
        if config.api_key:
            return config.api_key
        if self.credential_env:
            return os.environ.get(self.credential_env) or None
        return None

    def create_client(self, config: ModelConfig) -> ProviderClient:
        """
        Build a client bound to `config`.

        Raises:
            CredentialError: If the backend needs a key and none resolves
        """
        api_key = self.resolve_credential(config)
        if self.requires_credential and not api_key:
            hint = f" Set {self.credential_env} or provide an API key." if self.credential_env else ""
            raise CredentialError(f"{self.display_name} API key is required.{hint}")

        return self.factory(config.model_copy(update={"api_key": api_key}))

    def info(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "models": self.models,
            "requires_credential": self.requires_credential,
        }


class ChatStream:
    """
    Async iterator over the chunks of one streamed reply.

    Guarantees exactly one terminal chunk with `done=True`, after which
    iteration stops. Any failure of the underlying source surfaces as
    UpstreamError. `aclose()` cancels the stream and releases the source,
    then runs `on_close` exactly once.
    """

    def __init__(
        self,
        source: AsyncIterator[StreamChunk],
        provider: Optional[str] = None,
        chunk_timeout: Optional[float] = None,
        on_close: Optional[Callable[[], Awaitable[None]]] = None
    ) -> None:
        self._source = source
        self.provider = provider
        self.chunk_timeout = chunk_timeout
        self._on_close = on_close
        self._finished = False

    def __aiter__(self) -> "ChatStream":
        return self

    async def __aenter__(self) -> "ChatStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    @property
    def finished(self) -> bool:
        return self._finished

    async def _next_from_source(self) -> StreamChunk:
        if self.chunk_timeout is None:
            return await self._source.__anext__()
        return await asyncio.wait_for(self._source.__anext__(), timeout=self.chunk_timeout)

    async def __anext__(self) -> StreamChunk:
        if self._finished:
            raise StopAsyncIteration

        try:
            chunk = await self._next_from_source()
        except StopAsyncIteration:
            # Source ended without a terminal chunk
            await self.aclose()
            return StreamChunk(done=True)
        except UpstreamError:
            await self.aclose()
            raise
        except asyncio.TimeoutError as e:
            await self.aclose()
            raise UpstreamError(
                f"Stream stalled for more than {self.chunk_timeout}s",
                provider=self.provider
            ) from e
        except Exception as e:
            await self.aclose()
            raise UpstreamError(
                str(e) or type(e).__name__,
                status_code=getattr(e, "status_code", None),
                provider=self.provider
            ) from e

        if chunk.done:
            await self.aclose()
        return chunk

    async def aclose(self) -> None:
        """Stop iteration and close the underlying source."""
        self._finished = True
        closer = getattr(self._source, "aclose", None)
        try:
            if closer is not None:
                await closer()
        finally:
            on_close, self._on_close = self._on_close, None
            if on_close is not None:
                await on_close()

    async def collect(self) -> str:
        """Consume the rest of the stream and return the joined content."""
        parts = [chunk.content async for chunk in self]
        return "".join(parts)


# Wire helpers shared by the OpenAI-shaped backends

def to_openai_message(message: Message) -> dict[str, Any]:
    payload: dict[str, Any] = {"role": message.role.value, "content": message.content}
    if message.tool_calls:
        payload["tool_calls"] = [call.model_dump() for call in message.tool_calls]
    if message.tool_call_id:
        payload["tool_call_id"] = message.tool_call_id
    return payload


def parse_tool_calls(raw_calls: Optional[list[Any]]) -> Optional[list[ToolCall]]:
    """
    Convert OpenAI-shaped tool calls (dicts or SDK objects) into ToolCalls.

    Returns None when there are no calls.
    """
    if not raw_calls:
        return None

    calls: list[ToolCall] = []
    for raw in raw_calls:
        if isinstance(raw, dict):
            function = raw.get("function") or {}
            call_id = raw.get("id")
            name = function.get("name")
            arguments = function.get("arguments")
        else:
            function = getattr(raw, "function", None)
            call_id = getattr(raw, "id", None)
            name = getattr(function, "name", None)
            arguments = getattr(function, "arguments", None)

        if isinstance(arguments, (dict, list)):
            arguments = json.dumps(arguments)

        calls.append(ToolCall(
            id=call_id or f"call_{len(calls)}",
            function=ToolCallFunction(name=name or "", arguments=arguments or "{}")
        ))

    return calls
