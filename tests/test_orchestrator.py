"""Tests for orchestrator components."""

import asyncio
import json

import pytest

from shared.models import (
    ChatResponse,
    MessageRole,
    ModelConfig,
    Plugin,
    ToolCall,
    ToolCallFunction,
    ToolDefinition,
    ToolParameters,
)


async def echo_tool(params):
    return {"success": True, "data": {"echo": params["x"]}}


def echo_plugin() -> Plugin:
    return Plugin(
        name="echo",
        tools=[ToolDefinition(
            name="echo_tool",
            description="Echo the argument back",
            parameters=ToolParameters(properties={"x": {"type": "integer"}}, required=["x"]),
            executor=echo_tool,
        )],
    )


def tool_call(call_id, name, arguments) -> ToolCall:
    return ToolCall(id=call_id, function=ToolCallFunction(name=name, arguments=arguments))


async def make_orchestrator(secrets=None, plugins=None):
    """Orchestrator wired to the mock provider; returns (orchestrator, mock client)."""
    from orchestrator.gateway import ConversationOrchestrator
    from providers import build_default_registry
    from shared.config import LLMSettings
    from tools.registry import ToolRegistry

    tools = ToolRegistry()
    for plugin in plugins if plugins is not None else [echo_plugin()]:
        tools.register(plugin)

    providers = build_default_registry()
    client = await providers.set_active(ModelConfig(provider="mock", model="mock-model-1"))

    orchestrator = ConversationOrchestrator(
        providers=providers,
        tools=tools,
        secrets=secrets,
        llm_settings=LLMSettings(provider="mock"),
    )
    return orchestrator, client


class TestConversationManager:
    """Tests for ConversationManager."""

    @pytest.mark.asyncio
    async def test_create_conversation(self):
        from orchestrator.conversation import ConversationManager

        manager = ConversationManager()

        conversation = await manager.create(system_prompt="You are helpful.", tools=echo_plugin().tools)

        assert len(conversation.id) == 32
        assert len(conversation.messages) == 1
        assert conversation.messages[0].role == MessageRole.SYSTEM
        assert [t.name for t in conversation.tools] == ["echo_tool"]

    @pytest.mark.asyncio
    async def test_add_messages(self):
        from orchestrator.conversation import ConversationManager

        manager = ConversationManager()
        conversation = await manager.create(system_prompt="System")

        manager.add_user_message(conversation.id, "Hello")
        manager.add_assistant_message(conversation.id, "Hi there!")

        messages = manager.get_messages(conversation.id, include_system=False)

        assert len(messages) == 2
        assert messages[0].role == MessageRole.USER
        assert messages[0].content == "Hello"
        assert messages[1].role == MessageRole.ASSISTANT

    @pytest.mark.asyncio
    async def test_transcript_is_never_pruned(self):
        from orchestrator.conversation import ConversationManager

        manager = ConversationManager()
        conversation = await manager.create(system_prompt="System")

        for i in range(200):
            manager.add_user_message(conversation.id, f"Message {i}")

        assert len(manager.get_messages(conversation.id)) == 201

    @pytest.mark.asyncio
    async def test_unknown_conversation(self):
        from orchestrator.conversation import ConversationManager
        from shared.errors import ConversationNotFoundError

        manager = ConversationManager()

        with pytest.raises(ConversationNotFoundError, match="nope"):
            manager.add_user_message("nope", "Hello")
        assert await manager.delete("nope") is False


class TestConversationOrchestrator:
    """Tests for ConversationOrchestrator turns."""

    @pytest.mark.asyncio
    async def test_create_starts_with_system_prompt(self):
        orchestrator, _ = await make_orchestrator()

        conversation_id = await orchestrator.create()
        conversation = orchestrator.get(conversation_id)

        assert len(conversation.messages) == 1
        assert conversation.messages[0].role == MessageRole.SYSTEM
        assert "Current date and time:" in conversation.messages[0].content
        assert "echo" in conversation.messages[0].content

    @pytest.mark.asyncio
    async def test_send_without_tool_calls(self):
        """A plain reply adds exactly the user and assistant messages."""
        orchestrator, _ = await make_orchestrator()
        conversation_id = await orchestrator.create()

        result = await orchestrator.send(conversation_id, "hello")
        messages = orchestrator.get(conversation_id).messages

        assert "hello" in result.response
        assert result.tool_calls == []
        assert len(messages) == 3
        assert [m.role for m in messages[1:]] == [MessageRole.USER, MessageRole.ASSISTANT]

    @pytest.mark.asyncio
    async def test_send_with_tool_call(self):
        """Tool results are appended, tagged with the call id, before the final reply."""
        orchestrator, client = await make_orchestrator()
        conversation_id = await orchestrator.create()

        client.queue(
            ChatResponse(tool_calls=[tool_call("c1", "echo_tool", "{\"x\":1}")], finish_reason="tool_calls"),
            ChatResponse(content="The tool said 1"),
        )

        result = await orchestrator.send(conversation_id, "use the tool")
        messages = orchestrator.get(conversation_id).messages
        roles = [m.role for m in messages]

        assert result.response == "The tool said 1"
        assert len(messages) == 5
        assert roles[1:] == [MessageRole.USER, MessageRole.ASSISTANT, MessageRole.TOOL, MessageRole.ASSISTANT]

        tool_message = messages[3]
        assert tool_message.tool_call_id == "c1"
        assert json.loads(tool_message.content)["data"] == {"echo": 1}
        assert messages[2].tool_calls[0].id == "c1"

        assert [(t.id, t.name, t.success) for t in result.tool_calls] == [("c1", "echo_tool", True)]
        assert result.tool_calls[0].arguments == {"x": 1}

    @pytest.mark.asyncio
    async def test_first_call_offers_catalog_followup_does_not(self):
        orchestrator, client = await make_orchestrator()
        conversation_id = await orchestrator.create()

        client.queue(
            ChatResponse(tool_calls=[tool_call("c1", "echo_tool", "{\"x\":2}")]),
            ChatResponse(content="done"),
        )

        await orchestrator.send(conversation_id, "go")

        first, followup = client.call_history
        assert [t["function"]["name"] for t in first["tools"]] == ["echo_tool"]
        assert followup["tools"] is None
        assert followup["messages"][-1].role == MessageRole.TOOL

    @pytest.mark.asyncio
    async def test_tool_calls_run_in_requested_order(self):
        orchestrator, client = await make_orchestrator()
        conversation_id = await orchestrator.create()

        client.queue(
            ChatResponse(tool_calls=[
                tool_call("c1", "echo_tool", "{\"x\":1}"),
                tool_call("c2", "echo_tool", "{\"x\":2}"),
                tool_call("c3", "echo_tool", "{\"x\":3}"),
            ]),
            ChatResponse(content="all done"),
        )

        await orchestrator.send(conversation_id, "three calls")

        tool_ids = [
            m.tool_call_id for m in orchestrator.get(conversation_id).messages
            if m.role == MessageRole.TOOL
        ]
        assert tool_ids == ["c1", "c2", "c3"]

    @pytest.mark.asyncio
    async def test_unknown_tool_and_bad_arguments_become_failures(self):
        """Tool problems are fed back to the model instead of aborting the turn."""
        orchestrator, client = await make_orchestrator()
        conversation_id = await orchestrator.create()

        client.queue(
            ChatResponse(tool_calls=[
                tool_call("c1", "missing_tool", "{}"),
                tool_call("c2", "echo_tool", "{not json"),
                tool_call("c3", "echo_tool", "{\"x\":\"one\"}"),
            ]),
            ChatResponse(content="sorry"),
        )

        result = await orchestrator.send(conversation_id, "break things")
        tool_messages = [
            json.loads(m.content) for m in orchestrator.get(conversation_id).messages
            if m.role == MessageRole.TOOL
        ]

        assert result.response == "sorry"
        assert [p["success"] for p in tool_messages] == [False, False, False]
        assert "missing_tool" in tool_messages[0]["error"]
        assert tool_messages[0]["errorCode"] == "not_found"
        assert tool_messages[1]["errorCode"] == "invalid_arguments"
        assert tool_messages[2]["errorCode"] == "validation_error"
        assert [t.success for t in result.tool_calls] == [False, False, False]

    @pytest.mark.asyncio
    async def test_custom_tool_result_does_not_abort_turn(self):
        from shared.models import ToolResult

        class Marker(ToolResult):
            data: str = ""

            def to_payload(self):
                raise RuntimeError("not meant for the wire")

        async def marker_tool(params):
            return Marker(success=True, data="marked")

        plugin = Plugin(
            name="marker",
            tools=[ToolDefinition(name="mark", description="Mark", executor=marker_tool)],
        )
        orchestrator, client = await make_orchestrator(plugins=[plugin])
        conversation_id = await orchestrator.create()

        client.queue(
            ChatResponse(tool_calls=[tool_call("c1", "mark", "{}")]),
            ChatResponse(content="marked it"),
        )

        result = await orchestrator.send(conversation_id, "hi")
        payload = json.loads(orchestrator.get(conversation_id).messages[3].content)

        assert result.response == "marked it"
        assert payload["success"] is True
        assert payload["data"] == "marked"
        assert [t.success for t in result.tool_calls] == [True]

    @pytest.mark.asyncio
    async def test_tool_requests_in_followup_are_not_executed(self):
        orchestrator, client = await make_orchestrator()
        conversation_id = await orchestrator.create()

        client.queue(
            ChatResponse(tool_calls=[tool_call("c1", "echo_tool", "{\"x\":1}")]),
            ChatResponse(content="again?", tool_calls=[tool_call("c2", "echo_tool", "{\"x\":2}")]),
        )

        result = await orchestrator.send(conversation_id, "chain")
        tool_messages = [
            m for m in orchestrator.get(conversation_id).messages if m.role == MessageRole.TOOL
        ]

        assert result.response == "again?"
        assert len(tool_messages) == 1
        assert len(client.call_history) == 2

    @pytest.mark.asyncio
    async def test_upstream_error_keeps_partial_transcript(self):
        from unittest.mock import AsyncMock

        from shared.errors import UpstreamError

        orchestrator, client = await make_orchestrator()
        conversation_id = await orchestrator.create()

        client.chat = AsyncMock(side_effect=UpstreamError("rate limited", status_code=429, provider="mock"))

        with pytest.raises(UpstreamError, match="rate limited"):
            await orchestrator.send(conversation_id, "hello")

        messages = orchestrator.get(conversation_id).messages
        assert len(messages) == 2
        assert messages[-1].role == MessageRole.USER

    @pytest.mark.asyncio
    async def test_send_validates_input(self):
        from shared.errors import ConversationNotFoundError, ValidationError

        orchestrator, _ = await make_orchestrator()
        conversation_id = await orchestrator.create()

        with pytest.raises(ValidationError):
            await orchestrator.send(conversation_id, "   ")
        with pytest.raises(ConversationNotFoundError):
            await orchestrator.send("missing", "hello")

    @pytest.mark.asyncio
    async def test_no_cross_conversation_leakage(self):
        orchestrator, _ = await make_orchestrator()
        first = await orchestrator.create()
        second = await orchestrator.create()

        await asyncio.gather(*[
            orchestrator.send(conversation_id, f"{conversation_id[:6]} message {i}")
            for i in range(5)
            for conversation_id in (first, second)
        ])

        for conversation_id, other in ((first, second), (second, first)):
            user_messages = [
                m.content for m in orchestrator.get(conversation_id).messages
                if m.role == MessageRole.USER
            ]
            assert len(user_messages) == 5
            assert all(m.startswith(conversation_id[:6]) for m in user_messages)
            assert not any(m.startswith(other[:6]) for m in user_messages)

    @pytest.mark.asyncio
    async def test_concurrent_turns_on_one_conversation_are_serialized(self):
        orchestrator, client = await make_orchestrator()
        conversation_id = await orchestrator.create()

        original_chat = client.chat

        async def slow_chat(messages, tools=None):
            await asyncio.sleep(0.01)
            return await original_chat(messages, tools)

        client.chat = slow_chat

        await asyncio.gather(*[orchestrator.send(conversation_id, f"turn {i}") for i in range(4)])

        roles = [m.role for m in orchestrator.get(conversation_id).messages[1:]]
        assert roles == [MessageRole.USER, MessageRole.ASSISTANT] * 4

    @pytest.mark.asyncio
    async def test_stats_delete_and_clear(self):
        from shared.errors import ConversationNotFoundError

        orchestrator, _ = await make_orchestrator()
        first = await orchestrator.create()
        await orchestrator.create()
        await orchestrator.send(first, "hello")

        stats = orchestrator.get_stats()
        assert stats == {"active_conversations": 2, "total_messages": 4, "available_tools": 1}

        await orchestrator.delete(first)
        with pytest.raises(ConversationNotFoundError):
            orchestrator.get(first)
        with pytest.raises(ConversationNotFoundError):
            await orchestrator.delete(first)

        assert len(orchestrator.list_conversations()) == 1
        assert await orchestrator.clear() == 1
        assert orchestrator.get_stats()["active_conversations"] == 0

    @pytest.mark.asyncio
    async def test_delete_waits_for_running_turn(self):
        """The running turn completes; a turn queued behind the delete never reaches the provider."""
        from shared.errors import ConversationNotFoundError

        orchestrator, client = await make_orchestrator()
        conversation_id = await orchestrator.create()
        original_chat = client.chat
        started = asyncio.Event()

        async def slow_chat(messages, tools=None):
            started.set()
            await asyncio.sleep(0.05)
            return await original_chat(messages, tools)

        client.chat = slow_chat

        running = asyncio.create_task(orchestrator.send(conversation_id, "first"))
        await started.wait()
        deleting = asyncio.create_task(orchestrator.delete(conversation_id))
        await asyncio.sleep(0)
        queued = asyncio.create_task(orchestrator.send(conversation_id, "second"))
        await asyncio.sleep(0)

        assert deleting.done() is False

        result = await running
        await deleting
        with pytest.raises(ConversationNotFoundError):
            await queued

        assert result.response == "Echo: first"
        assert len(client.call_history) == 1
        with pytest.raises(ConversationNotFoundError):
            orchestrator.get(conversation_id)


class TestProviderActivation:
    """Tests for provider activation and the chat entry point."""

    @pytest.mark.asyncio
    async def test_credential_falls_back_to_secret_store(self, tmp_path, monkeypatch):
        from keystore.store import SecretStore

        monkeypatch.delenv("GROQ_API_KEY", raising=False)
        secrets = SecretStore(path=tmp_path / "keys.json", passphrase="pass", kdf_iterations=1_000)
        await secrets.add("groq key", "groq", "gsk-stored-1234567890")

        orchestrator, _ = await make_orchestrator(secrets=secrets)
        config = await orchestrator.activate_provider("groq")

        assert config.provider == "groq"
        assert config.model == "llama-3.3-70b-versatile"
        assert config.api_key is None
        assert orchestrator.providers._client.config.api_key == "gsk-stored-1234567890"
        await orchestrator.providers.close()

    @pytest.mark.asyncio
    async def test_stale_secret_falls_through_to_environment(self, tmp_path, monkeypatch):
        """Keys sealed by an earlier process with an ephemeral passphrase do not shadow the env key."""
        from keystore.store import SecretStore

        path = tmp_path / "keys.json"
        earlier = SecretStore(path=path, kdf_iterations=1_000)
        await earlier.add("groq key", "groq", "gsk-from-earlier-run")

        monkeypatch.setenv("GROQ_API_KEY", "gsk-from-environment")
        restarted = SecretStore(path=path, kdf_iterations=1_000)
        await restarted.initialize()

        orchestrator, _ = await make_orchestrator(secrets=restarted)
        await orchestrator.activate_provider("groq")

        assert orchestrator.providers._client.config.api_key == "gsk-from-environment"
        await orchestrator.providers.close()

    @pytest.mark.asyncio
    async def test_missing_credential_raises(self, monkeypatch):
        from shared.errors import CredentialError

        monkeypatch.delenv("MISTRAL_API_KEY", raising=False)
        orchestrator, _ = await make_orchestrator()

        with pytest.raises(CredentialError):
            await orchestrator.activate_provider("mistral")

        assert orchestrator.providers.active_provider_name == "mock"

    @pytest.mark.asyncio
    async def test_chat_creates_conversation_on_demand(self):
        orchestrator, _ = await make_orchestrator()

        result = await orchestrator.chat("hello")
        again = await orchestrator.chat("hello again", conversation_id=result.conversation_id)

        assert again.conversation_id == result.conversation_id
        assert len(orchestrator.get(result.conversation_id).messages) == 5

    @pytest.mark.asyncio
    async def test_chat_rejects_bad_input(self):
        from shared.errors import ConversationNotFoundError, UnknownProviderError, ValidationError

        orchestrator, _ = await make_orchestrator()

        with pytest.raises(ValidationError):
            await orchestrator.chat("")
        with pytest.raises(ConversationNotFoundError):
            await orchestrator.chat("hello", conversation_id="missing")
        with pytest.raises(UnknownProviderError):
            await orchestrator.chat("hello", provider="nonexistent")

        assert orchestrator.list_conversations() == []


class TestStreamingTurns:
    """Tests for streamed turns."""

    @pytest.mark.asyncio
    async def test_stream_appends_joined_reply(self):
        orchestrator, _ = await make_orchestrator()
        conversation_id = await orchestrator.create()

        chunks = [chunk async for chunk in await orchestrator.stream(conversation_id, "stream this")]
        messages = orchestrator.get(conversation_id).messages

        assert chunks[-1].done is True
        assert messages[-1].role == MessageRole.ASSISTANT
        assert messages[-1].content == "Echo: stream this"
        assert messages[-1].content == "".join(c.content for c in chunks)

    @pytest.mark.asyncio
    async def test_stream_requires_active_provider(self):
        from orchestrator.gateway import ConversationOrchestrator
        from providers.registry import ProviderRegistry
        from shared.errors import NoActiveProviderError
        from tools.registry import ToolRegistry

        orchestrator = ConversationOrchestrator(providers=ProviderRegistry(), tools=ToolRegistry())
        conversation_id = await orchestrator.create()

        with pytest.raises(NoActiveProviderError):
            await orchestrator.stream(conversation_id, "hello")
