"""Conversation Orchestrator - core turn logic.

The orchestrator coordinates:
- Conversation management
- Provider calls through the ProviderRegistry
- Tool execution through the ToolRegistry
- Credential lookup through the SecretStore
"""

import json
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from keystore import SecretStore
from orchestrator.conversation import ConversationManager
from providers import ProviderRegistry
from shared.config import LLMSettings
from shared.errors import (
    ConversationNotFoundError,
    NoActiveProviderError,
    ToolNotFoundError,
    ValidationError,
)
from shared.logging import bind_context, get_logger, unbind_context
from shared.models import (
    Conversation,
    ModelConfig,
    StreamChunk,
    ToolCall,
    ToolCallTrace,
    ToolErrorCode,
    ToolFailure,
    ToolResult,
    TurnResult,
    TurnState,
)
from tools import ToolRegistry

logger = get_logger(__name__)


# Default system prompt; {now} is filled in when a conversation is created
DEFAULT_SYSTEM_PROMPT = """You are a helpful AI assistant that can connect to and interact with applications and services through tools.

Your capabilities include:
{capabilities}

When a user asks you to perform an action:
1. Understand the request thoroughly
2. Choose the appropriate tool(s) for the task
3. Execute the tool(s) with the correct parameters
4. Provide clear feedback on the results
5. If something goes wrong, explain what happened and suggest alternatives

If you're unsure about something, ask for clarification rather than making assumptions.

Current date and time: {now}"""


class ConversationOrchestrator:
    """
    Orchestrates provider and tool interactions for conversations.

    A turn is: append the user message, call the provider with the transcript
    and the conversation's tool catalog, execute any requested tool calls in
    order, then make one follow-up call without tools for the final reply.
    Turns on the same conversation are serialized; a failed turn leaves the
    messages appended so far in place.
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        tools: ToolRegistry,
        secrets: Optional[SecretStore] = None,
        conversations: Optional[ConversationManager] = None,
        system_prompt: Optional[str] = None,
        llm_settings: Optional[LLMSettings] = None
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            providers: Provider registry holding the active session
            tools: Tool registry used for catalogs and dispatch
            secrets: Optional secret store for credential fallback
            conversations: Optional conversation manager
            system_prompt: Custom system prompt (may use {now} and {capabilities})
            llm_settings: Default provider configuration
        """
        self.providers = providers
        self.tools = tools
        self.secrets = secrets
        self.conversations = conversations or ConversationManager()
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.llm_settings = llm_settings or LLMSettings()

    # Conversations

    def build_system_prompt(self) -> str:
        """Render the system prompt with the current UTC time and plugin list."""
        plugins = self.tools.list_plugins()
        capabilities = "\n".join(
            f"- {p.name}: {p.description or ', '.join(p.tool_names)}" for p in plugins
        ) or "- (no tools available)"

        now = datetime.now(timezone.utc).isoformat()
        return self.system_prompt.replace("{now}", now).replace("{capabilities}", capabilities)

    async def create(self) -> str:
        """
        Create a conversation with a system preamble and a tool catalog snapshot.

        Returns:
            New conversation ID
        """
        conversation = await self.conversations.create(
            system_prompt=self.build_system_prompt(),
            tools=self.tools.list_tools()
        )
        return conversation.id

    def get(self, conversation_id: str) -> Conversation:
        return self.conversations.get(conversation_id)

    async def delete(self, conversation_id: str) -> None:
        if not await self.conversations.delete(conversation_id):
            raise ConversationNotFoundError(conversation_id)

    def list_conversations(self) -> list[dict[str, Any]]:
        return self.conversations.list_conversations()

    async def clear(self) -> int:
        return await self.conversations.clear()

    def get_stats(self) -> dict[str, Any]:
        stats = self.conversations.get_stats()
        return {
            "active_conversations": stats["active_conversations"],
            "total_messages": stats["total_messages"],
            "available_tools": len(self.tools.list_tools()),
        }

    # Providers

    async def activate_provider(
        self,
        provider: str,
        model: Optional[str] = None,
        api_key: Optional[str] = None
    ) -> ModelConfig:
        """
        Make `provider` the active backend.

        The credential is taken from `api_key`, then the configured default
        key for the same provider, then the secret store; the provider's own
        environment variable is the last resort.

        Returns:
            Active model configuration without the API key

        Raises:
            UnknownProviderError: If the provider is not registered
            ValidationError: If no model is given and the provider lists none
            CredentialError: If no API key resolves
        """
        descriptor = self.providers.get(provider)
        defaults = self.llm_settings
        same_provider = defaults.provider == provider

        model = model or (defaults.model if same_provider else None) or descriptor.default_model
        if not model:
            raise ValidationError(f"No model specified for provider '{provider}'")

        if not api_key and same_provider:
            api_key = defaults.api_key
        if not api_key and self.secrets is not None:
            api_key = await self.secrets.get_for_provider(provider)

        config = ModelConfig(
            provider=provider,
            model=model,
            api_key=api_key,
            base_url=defaults.api_base if same_provider else None,
            temperature=defaults.temperature,
            max_tokens=defaults.max_tokens,
            api_version=defaults.api_version,
            deployment_name=defaults.deployment_name if same_provider else None,
        )

        await self.providers.set_active(config)
        return self.providers.active_config

    async def ensure_provider(self, provider: Optional[str] = None, model: Optional[str] = None) -> None:
        """Activate `provider`/`model` unless already active; falls back to the configured default."""
        active = self.providers.active_config

        if provider is None:
            if active is not None:
                if model and model != active.model:
                    await self.activate_provider(active.provider, model)
                return
            provider = self.llm_settings.provider

        if active is None or active.provider != provider or (model and model != active.model):
            await self.activate_provider(provider, model)

    # Turns

    def _transition(self, conversation_id: str, state: TurnState) -> TurnState:
        logger.debug("Turn state", conversation_id=conversation_id, state=state.value)
        return state

    @staticmethod
    def _require_text(text: str) -> str:
        if not text or not text.strip():
            raise ValidationError("Message is required")
        return text

    async def _run_tool_call(self, call: ToolCall) -> tuple[Any, ToolResult]:
        """Parse arguments and dispatch one call; every failure becomes a ToolFailure."""
        raw_arguments = call.function.arguments or "{}"

        try:
            arguments = json.loads(raw_arguments)
        except json.JSONDecodeError as e:
            return raw_arguments, ToolFailure(
                error=f"Invalid tool call arguments: {e}",
                error_code=ToolErrorCode.INVALID_ARGUMENTS
            )

        if not isinstance(arguments, dict):
            return arguments, ToolFailure(
                error="Tool call arguments must be a JSON object",
                error_code=ToolErrorCode.INVALID_ARGUMENTS
            )

        try:
            result = await self.tools.dispatch(call.function.name, arguments, call_id=call.id)
        except ToolNotFoundError as e:
            result = ToolFailure(error=str(e), error_code=ToolErrorCode.NOT_FOUND)

        return arguments, result

    async def _execute_tool_calls(
        self,
        conversation_id: str,
        tool_calls: list[ToolCall]
    ) -> list[ToolCallTrace]:
        traces: list[ToolCallTrace] = []

        for call in tool_calls:
            logger.info("Executing tool", tool=call.function.name, call_id=call.id)

            arguments, result = await self._run_tool_call(call)

            self.conversations.add_tool_result(
                conversation_id,
                call.id,
                json.dumps(result.to_payload(), default=str)
            )

            if not result.success:
                logger.warning(
                    "Tool call failed",
                    tool=call.function.name,
                    call_id=call.id,
                    error=result.error
                )

            traces.append(ToolCallTrace(
                id=call.id,
                name=call.function.name,
                arguments=arguments,
                success=result.success,
                error=getattr(result, "error", None),
                execution_time_ms=result.execution_time_ms,
            ))

        return traces

    async def send(self, conversation_id: str, text: str) -> TurnResult:
        """
        Run one turn on an existing conversation.

        Args:
            conversation_id: Conversation identifier
            text: User message

        Returns:
            Final reply with the trace of tool calls executed during the turn

        Raises:
            ValidationError: If the message is empty
            ConversationNotFoundError: If the conversation does not exist
            NoActiveProviderError: If no provider session is active
            UpstreamError: If a provider call fails; the partial transcript is kept
        """
        self._require_text(text)
        lock = self.conversations.turn_lock(conversation_id)

        async with lock:
            bind_context(conversation_id=conversation_id)
            state = self._transition(conversation_id, TurnState.RECEIVED)
            try:
                conversation = self.conversations.get(conversation_id)
                self.conversations.add_user_message(conversation_id, text)

                catalog = [tool.to_llm_format() for tool in conversation.tools] or None

                state = self._transition(conversation_id, TurnState.PROVIDER_CALL_PENDING)
                response = await self.providers.chat(
                    self.conversations.get_messages(conversation_id),
                    catalog
                )
                self.conversations.add_assistant_message(
                    conversation_id,
                    response.content,
                    tool_calls=response.tool_calls
                )

                traces: list[ToolCallTrace] = []
                final_response = response

                if response.tool_calls:
                    state = self._transition(conversation_id, TurnState.TOOL_CALLS_REQUESTED)
                    logger.debug("Provider requested tool calls", count=len(response.tool_calls))

                    state = self._transition(conversation_id, TurnState.EXECUTING_TOOLS)
                    traces = await self._execute_tool_calls(conversation_id, response.tool_calls)

                    state = self._transition(conversation_id, TurnState.FOLLOWUP_PENDING)
                    final_response = await self.providers.chat(
                        self.conversations.get_messages(conversation_id)
                    )
                    self.conversations.add_assistant_message(conversation_id, final_response.content)

                state = self._transition(conversation_id, TurnState.COMPLETE)
            except Exception as e:
                logger.error(
                    "Turn failed",
                    conversation_id=conversation_id,
                    state=state.value,
                    error=str(e)
                )
                self._transition(conversation_id, TurnState.FAILED)
                raise
            finally:
                unbind_context("conversation_id")

        logger.info(
            "Turn complete",
            conversation_id=conversation_id,
            tool_calls=len(traces)
        )

        return TurnResult(
            conversation_id=conversation_id,
            response=final_response.content,
            tool_calls=traces,
            usage=final_response.usage,
        )

    async def chat(
        self,
        message: str,
        conversation_id: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None
    ) -> TurnResult:
        """
        Transport-facing entry point.

        Activates the requested provider (or the configured default when
        none is active), creates a conversation when no ID is given and
        runs one turn.
        """
        self._require_text(message)

        if conversation_id is not None:
            self.conversations.get(conversation_id)

        await self.ensure_provider(provider, model)

        if conversation_id is None:
            conversation_id = await self.create()

        return await self.send(conversation_id, message)

    async def stream(self, conversation_id: str, text: str) -> AsyncIterator[StreamChunk]:
        """
        Stream the reply to one user message.

        Streaming turns offer no tools. The joined reply is appended to the
        transcript once the stream completes; an abandoned stream appends
        nothing beyond the user message.

        Raises:
            ValidationError: If the message is empty
            ConversationNotFoundError: If the conversation does not exist
            NoActiveProviderError: If no provider session is active
        """
        self._require_text(text)
        self.conversations.get(conversation_id)
        if not self.providers.has_active:
            raise NoActiveProviderError()

        return self._stream_turn(conversation_id, text)

    async def _stream_turn(self, conversation_id: str, text: str) -> AsyncIterator[StreamChunk]:
        async with self.conversations.turn_lock(conversation_id):
            self.conversations.add_user_message(conversation_id, text)
            stream = self.providers.stream_chat(self.conversations.get_messages(conversation_id))

            parts: list[str] = []
            try:
                async for chunk in stream:
                    parts.append(chunk.content)
                    yield chunk
            finally:
                await stream.aclose()

            self.conversations.add_assistant_message(conversation_id, "".join(parts))
            logger.info("Streamed turn complete", conversation_id=conversation_id)
