"""OpenAI-compatible REST providers (Groq, Mistral) over httpx."""

import json
from typing import Any, AsyncIterator, Optional

import httpx

from providers.base import (
    ProviderClient,
    ProviderDescriptor,
    parse_tool_calls,
    to_openai_message,
)
from shared.logging import get_logger
from shared.models import ChatResponse, Message, ModelConfig, StreamChunk, TokenUsage

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 120.0


class OpenAICompatibleClient(ProviderClient):
    """
    Client for backends exposing the OpenAI `/chat/completions` API.

    Streaming uses server-sent events: `data: <json>` lines terminated by
    `data: [DONE]`.
    """

    supports_streaming = True
    default_base_url: str = ""

    def __init__(
        self,
        config: ModelConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        super().__init__(config)
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=DEFAULT_TIMEOUT,
                headers={
                    "Authorization": f"Bearer {self.config.api_key}",
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _build_payload(
        self,
        messages: list[Message],
        tools: Optional[list[dict[str, Any]]],
        stream: bool = False
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.config.model,
            "messages": [to_openai_message(m) for m in messages],
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        if stream:
            payload["stream"] = True
        return payload

    def _raise_for_status(self, response: httpx.Response) -> None:
        if not response.is_error:
            return

        message = response.text
        try:
            message = response.json()["error"]["message"]
        except (ValueError, KeyError, TypeError):
            pass
        raise self._error(message or response.reason_phrase, status_code=response.status_code)

    async def chat(
        self,
        messages: list[Message],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> ChatResponse:
        client = await self._get_client()

        try:
            response = await client.post("/chat/completions", json=self._build_payload(messages, tools))
        except httpx.HTTPError as e:
            raise self._error(f"Request failed: {e}") from e

        self._raise_for_status(response)
        body = response.json()

        choice = (body.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        usage = body.get("usage")

        return ChatResponse(
            content=message.get("content") or "",
            tool_calls=parse_tool_calls(message.get("tool_calls")),
            finish_reason=choice.get("finish_reason") or "stop",
            usage=TokenUsage(
                prompt_tokens=usage.get("prompt_tokens", 0),
                completion_tokens=usage.get("completion_tokens", 0),
                total_tokens=usage.get("total_tokens", 0),
            ) if usage else None,
        )

    async def _stream(
        self,
        messages: list[Message],
        tools: Optional[list[dict[str, Any]]]
    ) -> AsyncIterator[StreamChunk]:
        client = await self._get_client()
        payload = self._build_payload(messages, tools, stream=True)

        try:
            async with client.stream("POST", "/chat/completions", json=payload) as response:
                if response.is_error:
                    await response.aread()
                    self._raise_for_status(response)

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue

                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break

                    try:
                        event = json.loads(data)
                    except ValueError:
                        logger.debug("Skipping malformed stream event", provider=self.provider_name)
                        continue

                    delta = ((event.get("choices") or [{}])[0].get("delta") or {}).get("content")
                    if delta:
                        yield StreamChunk(content=delta)
        except httpx.HTTPError as e:
            raise self._error(f"Streaming request failed: {e}") from e

        yield StreamChunk(done=True)

    def stream_chat(
        self,
        messages: list[Message],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> AsyncIterator[StreamChunk]:
        return self._stream(messages, tools)


class GroqClient(OpenAICompatibleClient):
    provider_name = "groq"
    default_base_url = "https://api.groq.com/openai/v1"


class MistralClient(OpenAICompatibleClient):
    provider_name = "mistral"
    default_base_url = "https://api.mistral.ai/v1"


groq_provider = ProviderDescriptor(
    name="groq",
    display_name="Groq",
    models=[
        "llama-3.3-70b-versatile",
        "llama-3.1-8b-instant",
        "openai/gpt-oss-120b",
        "openai/gpt-oss-20b",
        "qwen/qwen3-32b",
    ],
    credential_env="GROQ_API_KEY",
    factory=GroqClient,
)

mistral_provider = ProviderDescriptor(
    name="mistral",
    display_name="Mistral AI",
    models=[
        "mistral-small-latest",
        "mistral-medium-latest",
        "mistral-large-latest",
        "codestral-latest",
        "open-mistral-7b",
    ],
    credential_env="MISTRAL_API_KEY",
    factory=MistralClient,
)
