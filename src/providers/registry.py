"""Provider Registry.

Catalog of backend descriptors plus the single active client session of
this registry instance. All chat traffic goes through `chat` and
`stream_chat`, which enforce the per-call deadline and make UpstreamError
the only failure a backend can surface.
"""

import asyncio
from functools import partial
from typing import Any, AsyncIterator, Optional

from providers.base import ChatStream, ProviderClient, ProviderDescriptor
from shared.errors import NoActiveProviderError, UnknownProviderError, UpstreamError
from shared.logging import get_logger
from shared.models import ChatResponse, Message, ModelConfig, StreamChunk

logger = get_logger(__name__)


class ProviderRegistry:
    """
    Registry of AI providers.

    Responsibilities:
    - Hold provider descriptors by name
    - Build and hold the active client
    - Unify chat and streaming across backends
    """

    def __init__(self, call_timeout_seconds: Optional[float] = None) -> None:
        self.call_timeout_seconds = call_timeout_seconds
        self._descriptors: dict[str, ProviderDescriptor] = {}
        self._client: Optional[ProviderClient] = None
        self._active_config: Optional[ModelConfig] = None
        self._leases: dict[ProviderClient, int] = {}
        self._retiring: set[ProviderClient] = set()

    def register(self, descriptor: ProviderDescriptor) -> None:
        if descriptor.name in self._descriptors:
            logger.warning("Replacing provider descriptor", provider=descriptor.name)
        self._descriptors[descriptor.name] = descriptor
        logger.debug("Provider registered", provider=descriptor.name, models=len(descriptor.models))

    def unregister(self, name: str) -> ProviderDescriptor:
        descriptor = self._descriptors.pop(name, None)
        if descriptor is None:
            raise UnknownProviderError(name)
        return descriptor

    def get(self, name: str) -> ProviderDescriptor:
        """
        Look up a descriptor.

        Raises:
            UnknownProviderError: If no provider has this name
        """
        descriptor = self._descriptors.get(name)
        if descriptor is None:
            raise UnknownProviderError(name)
        return descriptor

    def list_providers(self) -> list[ProviderDescriptor]:
        return list(self._descriptors.values())

    @property
    def active_config(self) -> Optional[ModelConfig]:
        """Active model configuration, without the API key."""
        if self._active_config is None:
            return None
        return self._active_config.model_copy(update={"api_key": None})

    @property
    def active_provider_name(self) -> Optional[str]:
        return self._active_config.provider if self._active_config else None

    @property
    def has_active(self) -> bool:
        return self._client is not None

    async def set_active(self, config: ModelConfig) -> ProviderClient:
        """
        Build a client for `config` and make it the active session.

        The replaced client is closed once no chat call or open stream is
        still using it.

        Raises:
            UnknownProviderError: If the provider is not registered
            CredentialError: If no API key resolves for the provider
        """
        descriptor = self.get(config.provider)
        client = descriptor.create_client(config)

        previous = self._client
        self._client = client
        self._active_config = config

        if previous is not None and previous is not client:
            await self._retire(previous)

        logger.info("Set AI provider", provider=config.provider, model=config.model)
        return client

    def _require_client(self) -> ProviderClient:
        if self._client is None:
            raise NoActiveProviderError()
        return self._client

    def _acquire(self, client: ProviderClient) -> None:
        self._leases[client] = self._leases.get(client, 0) + 1

    async def _release(self, client: ProviderClient) -> None:
        remaining = self._leases[client] - 1
        if remaining:
            self._leases[client] = remaining
            return

        del self._leases[client]
        if client in self._retiring:
            self._retiring.discard(client)
            await client.close()
            logger.debug("Closed retired provider client", provider=client.provider_name)

    async def _retire(self, client: ProviderClient) -> None:
        if self._leases.get(client):
            self._retiring.add(client)
            logger.debug(
                "Deferring close of busy provider client",
                provider=client.provider_name,
                in_flight=self._leases[client]
            )
            return
        await client.close()

    async def chat(
        self,
        messages: list[Message],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> ChatResponse:
        """
        Send the transcript to the active provider.

        Raises:
            NoActiveProviderError: If no provider session is active
            UpstreamError: For any backend failure, including a missed deadline
        """
        client = self._require_client()
        self._acquire(client)
        try:
            return await self._call(client, messages, tools)
        finally:
            await self._release(client)

    async def _call(
        self,
        client: ProviderClient,
        messages: list[Message],
        tools: Optional[list[dict[str, Any]]]
    ) -> ChatResponse:
        provider = client.provider_name

        try:
            call = client.chat(messages, tools)
            if self.call_timeout_seconds is None:
                return await call
            return await asyncio.wait_for(call, timeout=self.call_timeout_seconds)
        except UpstreamError as e:
            logger.error("Provider call failed", provider=provider, error=str(e))
            raise
        except asyncio.TimeoutError as e:
            logger.error("Provider call timed out", provider=provider, timeout_seconds=self.call_timeout_seconds)
            raise UpstreamError(
                f"No response within {self.call_timeout_seconds}s",
                provider=provider
            ) from e
        except Exception as e:
            logger.error("Provider call failed", provider=provider, error=str(e))
            raise UpstreamError(
                str(e) or type(e).__name__,
                status_code=getattr(e, "status_code", None),
                provider=provider
            ) from e

    async def _single_chunk(
        self,
        client: ProviderClient,
        messages: list[Message],
        tools: Optional[list[dict[str, Any]]]
    ) -> AsyncIterator[StreamChunk]:
        response = await self._call(client, messages, tools)
        yield StreamChunk(content=response.content)
        yield StreamChunk(done=True)

    def stream_chat(
        self,
        messages: list[Message],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> ChatStream:
        """
        Stream a reply from the active provider.

        Backends without native streaming yield their whole reply as one
        chunk followed by the terminal chunk. The stream keeps its client
        open until it is closed.

        Raises:
            NoActiveProviderError: If no provider session is active
        """
        client = self._require_client()
        self._acquire(client)
        release = partial(self._release, client)

        if client.supports_streaming:
            return ChatStream(
                client.stream_chat(messages, tools),
                provider=client.provider_name,
                chunk_timeout=self.call_timeout_seconds,
                on_close=release
            )

        return ChatStream(
            self._single_chunk(client, messages, tools),
            provider=client.provider_name,
            on_close=release
        )

    async def close(self) -> None:
        """Close the active client and any replaced client still in use."""
        for client in list(self._retiring):
            await client.close()
        self._retiring.clear()
        self._leases.clear()

        if self._client is not None:
            await self._client.close()
            self._client = None
            self._active_config = None
