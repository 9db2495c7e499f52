"""OpenAI and Azure OpenAI providers using LlamaIndex."""

import json
from typing import Any, AsyncIterator, Optional

from providers.base import ProviderClient, ProviderDescriptor, parse_tool_calls
from shared.logging import get_logger
from shared.models import (
    ChatResponse,
    Message,
    ModelConfig,
    StreamChunk,
    TokenUsage,
    ToolCall,
    ToolCallFunction,
)

logger = get_logger(__name__)

OPENAI_MODELS = [
    "gpt-4o-mini",
    "gpt-4o",
    "gpt-4.1-mini",
    "gpt-4.1",
    "gpt-3.5-turbo",
]


class LlamaIndexClient(ProviderClient):
    """
    Base client for backends driven through a LlamaIndex LLM.

    Subclasses only build the LLM; message conversion and tool-call
    extraction are shared.
    """

    supports_streaming = True

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config)
        self._llm = None

    def _build_llm(self):
        raise NotImplementedError

    def _get_llm(self):
        """Lazy initialization of LlamaIndex LLM."""
        if self._llm is None:
            self._llm = self._build_llm()
        return self._llm

    def _convert_messages(self, messages: list[Message]) -> list:
        """Convert gateway messages to LlamaIndex format."""
        from llama_index.core.llms import ChatMessage, MessageRole

        role_map = {
            "user": MessageRole.USER,
            "assistant": MessageRole.ASSISTANT,
            "system": MessageRole.SYSTEM,
            "tool": MessageRole.TOOL,
        }

        result = []
        for msg in messages:
            additional_kwargs: dict[str, Any] = {}
            if msg.tool_calls:
                additional_kwargs["tool_calls"] = [call.model_dump() for call in msg.tool_calls]
            if msg.tool_call_id:
                additional_kwargs["tool_call_id"] = msg.tool_call_id

            result.append(ChatMessage(
                role=role_map[msg.role.value],
                content=msg.content,
                additional_kwargs=additional_kwargs,
            ))

        return result

    def _extract_tool_calls(self, llm, response) -> Optional[list[ToolCall]]:
        message = response.message
        calls = parse_tool_calls(message.additional_kwargs.get("tool_calls"))
        if calls:
            return calls

        # Newer LlamaIndex releases expose calls only through the LLM helper
        get_calls = getattr(llm, "get_tool_calls_from_response", None)
        if get_calls is None:
            return None

        selections = get_calls(response, error_on_no_tool_call=False)
        if not selections:
            return None

        return [
            ToolCall(
                id=selection.tool_id,
                function=ToolCallFunction(
                    name=selection.tool_name,
                    arguments=json.dumps(selection.tool_kwargs),
                ),
            )
            for selection in selections
        ]

    @staticmethod
    def _extract_usage(response) -> Optional[TokenUsage]:
        counts = response.additional_kwargs or {}
        if "total_tokens" not in counts:
            return None
        return TokenUsage(
            prompt_tokens=counts.get("prompt_tokens", 0),
            completion_tokens=counts.get("completion_tokens", 0),
            total_tokens=counts.get("total_tokens", 0),
        )

    async def chat(
        self,
        messages: list[Message],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> ChatResponse:
        llm = self._get_llm()
        chat_messages = self._convert_messages(messages)

        if tools:
            response = await llm.achat(chat_messages, tools=tools)
        else:
            response = await llm.achat(chat_messages)

        tool_calls = self._extract_tool_calls(llm, response)

        return ChatResponse(
            content=response.message.content or "",
            tool_calls=tool_calls,
            finish_reason="tool_calls" if tool_calls else "stop",
            usage=self._extract_usage(response),
        )

    async def _stream(self, messages: list[Message]) -> AsyncIterator[StreamChunk]:
        llm = self._get_llm()
        generator = await llm.astream_chat(self._convert_messages(messages))
        async for partial in generator:
            if partial.delta:
                yield StreamChunk(content=partial.delta)
        yield StreamChunk(done=True)

    def stream_chat(
        self,
        messages: list[Message],
        tools: Optional[list[dict[str, Any]]] = None
    ) -> AsyncIterator[StreamChunk]:
        # Streamed replies carry text only
        return self._stream(messages)


class OpenAIClient(LlamaIndexClient):
    """OpenAI chat completions."""

    provider_name = "openai"

    def _build_llm(self):
        from llama_index.llms.openai import OpenAI

        return OpenAI(
            model=self.config.model,
            api_key=self.config.api_key,
            api_base=self.config.base_url,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
        )


class AzureOpenAIClient(LlamaIndexClient):
    """Azure OpenAI Service deployments."""

    provider_name = "azure_openai"

    def _build_llm(self):
        from llama_index.llms.azure_openai import AzureOpenAI

        return AzureOpenAI(
            model=self.config.model,
            deployment_name=self.config.deployment_name or self.config.model,
            api_key=self.config.api_key,
            azure_endpoint=self.config.base_url,
            api_version=self.config.api_version,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
        )


openai_provider = ProviderDescriptor(
    name="openai",
    display_name="OpenAI",
    models=OPENAI_MODELS,
    credential_env="OPENAI_API_KEY",
    factory=OpenAIClient,
)

azure_openai_provider = ProviderDescriptor(
    name="azure_openai",
    display_name="Azure OpenAI",
    models=OPENAI_MODELS,
    credential_env="AZURE_OPENAI_API_KEY",
    factory=AzureOpenAIClient,
)
