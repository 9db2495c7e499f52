"""Google Gemini provider over the Generative Language REST API."""

import json
from typing import Any, AsyncIterator, Optional

import httpx

from providers.base import ProviderClient, ProviderDescriptor
from shared.logging import get_logger
from shared.models import ChatResponse, Message, MessageRole, ModelConfig, StreamChunk, TokenUsage

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_TIMEOUT = 120.0


class GeminiClient(ProviderClient):
    """
    Gemini `generateContent` client.

    Text only: tool messages are not forwarded and the tool catalog is
    ignored, so a Gemini turn never requests tool calls.
    """

    provider_name = "gemini"
    supports_streaming = True

    def __init__(
        self,
        config: ModelConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        super().__init__(config)
        self.base_url = (config.base_url or DEFAULT_BASE_URL).rstrip("/")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=DEFAULT_TIMEOUT,
                headers={"x-goog-api-key": self.config.api_key or ""},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _build_payload(self, messages: list[Message]) -> dict[str, Any]:
        """Map roles: assistant -> model, system -> systemInstruction, tool dropped."""
        contents = []
        system_parts = []

        for msg in messages:
            if msg.role == MessageRole.TOOL:
                continue
            if msg.role == MessageRole.SYSTEM:
                system_parts.append({"text": msg.content})
                continue
            contents.append({
                "role": "model" if msg.role == MessageRole.ASSISTANT else "user",
                "parts": [{"text": msg.content}],
            })

        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "maxOutputTokens": self.config.max_tokens,
                "temperature": self.config.temperature,
            },
        }
        if system_parts:
            payload["systemInstruction"] = {"parts": system_parts}
        return payload

    @staticmethod
    def _candidate_text(body: dict[str, Any]) -> str:
        candidates = body.get("candidates") or [{}]
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)

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
            response = await client.post(
                f"/models/{self.config.model}:generateContent",
                json=self._build_payload(messages)
            )
        except httpx.HTTPError as e:
            raise self._error(f"Request failed: {e}") from e

        self._raise_for_status(response)
        body = response.json()
        usage = body.get("usageMetadata")

        return ChatResponse(
            content=self._candidate_text(body),
            usage=TokenUsage(
                prompt_tokens=usage.get("promptTokenCount", 0),
                completion_tokens=usage.get("candidatesTokenCount", 0),
                total_tokens=usage.get("totalTokenCount", 0),
            ) if usage else None,
        )

    async def _stream(self, messages: list[Message]) -> AsyncIterator[StreamChunk]:
        client = await self._get_client()

        try:
            async with client.stream(
                "POST",
                f"/models/{self.config.model}:streamGenerateContent",
                params={"alt": "sse"},
                json=self._build_payload(messages),
            ) as response:
                if response.is_error:
                    await response.aread()
                    self._raise_for_status(response)

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        event = json.loads(line[len("data:"):].strip())
                    except ValueError:
                        continue

                    text = self._candidate_text(event)
                    if text:
                        yield StreamChunk(content=text)
        except httpx.HTTPError as e:
            raise self._error(f"Streaming request failed: {e}") from e

        yield StreamChunk(done=True)

    def stream_chat(
        self,
        messages: list[Message],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> AsyncIterator[StreamChunk]:
        return self._stream(messages)


gemini_provider = ProviderDescriptor(
    name="gemini",
    display_name="Google Gemini",
    models=[
        "gemini-2.5-flash",
        "gemini-2.5-flash-lite",
        "gemma-3-27b-it",
        "gemma-3-12b-it",
    ],
    credential_env="GEMINI_API_KEY",
    factory=GeminiClient,
)
