"""Tests for the HTTP surface."""

import json

import pytest


@pytest.fixture
def client(tmp_path):
    from fastapi.testclient import TestClient

    from orchestrator.main import create_app
    from shared.config import KeystoreSettings, LLMSettings, PluginSettings, Settings

    settings = Settings(
        llm=LLMSettings(provider="mock", model="mock-model-1"),
        keystore=KeystoreSettings(
            path=str(tmp_path / "api-keys.json"),
            passphrase="test passphrase",
            kdf_iterations=1_000,
        ),
        plugins=PluginSettings(enable_audit=False),
    )

    with TestClient(create_app(settings)) as test_client:
        yield test_client


def sse_events(body: str) -> list[dict]:
    return [
        json.loads(line[len("data: "):])
        for line in body.splitlines()
        if line.startswith("data: ")
    ]


class TestSystemRoutes:
    """Tests for health, stats and provider routes."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_stats(self, client):
        response = client.get("/api/stats")
        data = response.json()

        assert response.status_code == 200
        assert data["conversations"]["active_conversations"] == 0
        assert data["plugins"]["total_plugins"] == 3
        assert data["provider"] is None
        assert data["secrets"] == 0

    def test_log_file_setting_reaches_logging(self, tmp_path, monkeypatch):
        from fastapi.testclient import TestClient

        import orchestrator.main as main
        from shared.config import KeystoreSettings, LLMSettings, PluginSettings, Settings

        calls = []
        monkeypatch.setattr(main, "setup_logging", lambda *args, **kwargs: calls.append((args, kwargs)))

        log_path = str(tmp_path / "logs" / "gateway.log")
        settings = Settings(
            log_level="DEBUG",
            log_file=log_path,
            llm=LLMSettings(provider="mock", model="mock-model-1"),
            keystore=KeystoreSettings(
                path=str(tmp_path / "api-keys.json"),
                passphrase="test passphrase",
                kdf_iterations=1_000,
            ),
            plugins=PluginSettings(enable_audit=False),
        )

        with TestClient(main.create_app(settings)) as test_client:
            assert test_client.get("/health").status_code == 200

        assert calls == [(("DEBUG",), {"json_output": False, "log_file": log_path})]

    def test_providers(self, client):
        data = client.get("/api/providers").json()
        names = {p["name"] for p in data["providers"]}

        assert {"openai", "azure_openai", "groq", "mistral", "gemini", "mock"} <= names
        assert data["active"] is None


class TestChatRoutes:
    """Tests for chat routes."""

    def test_chat_creates_conversation(self, client):
        response = client.post("/api/chat", json={"message": "hello"})
        data = response.json()

        assert response.status_code == 200
        assert data["response"] == "Echo: hello"
        assert data["tool_calls"] == []

        conversation = client.get(f"/api/conversations/{data['conversation_id']}").json()
        assert conversation["message_count"] == 3
        assert [m["role"] for m in conversation["messages"]] == ["system", "user", "assistant"]

    def test_chat_with_tool_call(self, client):
        from shared.models import ChatResponse, ToolCall, ToolCallFunction

        first = client.post("/api/chat", json={"message": "hello"}).json()

        mock_client = client.app.state.providers._client
        mock_client.queue(
            ChatResponse(tool_calls=[ToolCall(id="t1", function=ToolCallFunction(name="get_time", arguments="{}"))]),
            ChatResponse(content="It is late"),
        )

        response = client.post(
            "/api/chat",
            json={"message": "what time is it?", "conversation_id": first["conversation_id"]}
        )
        data = response.json()

        assert data["response"] == "It is late"
        assert [(t["id"], t["name"], t["success"]) for t in data["tool_calls"]] == [("t1", "get_time", True)]

    def test_chat_errors(self, client):
        assert client.post("/api/chat", json={"message": "  "}).status_code == 400
        assert client.post("/api/chat", json={}).status_code == 422

        missing = client.post("/api/chat", json={"message": "hi", "conversation_id": "missing"})
        assert missing.status_code == 404
        assert "missing" in missing.json()["error"]

        unknown = client.post("/api/chat", json={"message": "hi", "provider": "nonexistent"})
        assert unknown.status_code == 404

    def test_missing_credential_is_bad_request(self, client, monkeypatch):
        monkeypatch.delenv("GROQ_API_KEY", raising=False)

        response = client.post("/api/chat", json={"message": "hi", "provider": "groq"})

        assert response.status_code == 400
        assert "GROQ_API_KEY" in response.json()["error"]

    def test_stream(self, client):
        response = client.post("/api/chat/stream", json={"message": "stream me please"})
        events = sse_events(response.text)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert events[-1]["done"] is True
        assert "".join(e["content"] for e in events) == "Echo: stream me please"

        conversation_id = events[0]["conversation_id"]
        conversation = client.get(f"/api/conversations/{conversation_id}").json()
        assert conversation["messages"][-1]["content"] == "Echo: stream me please"


class TestConversationRoutes:
    """Tests for conversation management routes."""

    def test_create_list_delete(self, client):
        created = client.post("/api/conversations")
        conversation_id = created.json()["conversation_id"]

        assert created.status_code == 201
        assert client.get("/api/conversations").json()["count"] == 1

        assert client.delete(f"/api/conversations/{conversation_id}").status_code == 200
        assert client.get(f"/api/conversations/{conversation_id}").status_code == 404
        assert client.delete(f"/api/conversations/{conversation_id}").status_code == 404


class TestPluginRoutes:
    """Tests for plugin and tool routes."""

    def test_list_plugins_and_tools(self, client):
        plugins = client.get("/api/plugins").json()
        tools = client.get("/api/tools").json()

        assert {p["name"] for p in plugins["plugins"]} == {"system", "filesystem", "web"}
        by_name = {t["name"]: t for t in tools["tools"]}
        assert by_name["read_file"]["plugin"] == "filesystem"
        assert "executor" not in by_name["read_file"]

    def test_get_plugin(self, client):
        response = client.get("/api/plugins/system")

        assert response.status_code == 200
        assert [t["name"] for t in response.json()["tools"]] == [
            "get_time",
            "get_system_info",
            "execute_command",
            "get_process_info",
            "kill_process",
            "list_environment_variables",
            "get_disk_usage",
            "schedule_task",
        ]
        assert client.get("/api/plugins/nope").status_code == 404

    def test_reload_plugin(self, client):
        response = client.post("/api/plugins/system/reload")

        assert response.status_code == 200
        assert response.json()["plugin"] == "system"
        assert client.post("/api/plugins/nope/reload").status_code == 404

    def test_execute_tool(self, client):
        ok = client.post("/api/tools/execute_command", json={"command": "echo hi"}).json()
        invalid = client.post("/api/tools/execute_command", json={}).json()

        assert ok["success"] is True
        assert ok["data"]["stdout"] == "hi"
        assert invalid["success"] is False
        assert invalid["errorCode"] == "validation_error"
        assert client.post("/api/tools/missing_tool", json={}).status_code == 404


class TestKeyRoutes:
    """Tests for secret management routes."""

    def test_key_lifecycle(self, client):
        created = client.post("/api/keys", json={"name": "work", "provider": "openai", "key": "sk-test-1234567890"})
        secret_id = created.json()["id"]

        assert created.status_code == 201
        assert "key" not in created.json()

        listing = client.get("/api/keys").json()
        assert listing["count"] == 1
        assert "sk-test-1234567890" not in json.dumps(listing)

        assert client.get(f"/api/keys/{secret_id}").json() == {"id": secret_id, "valid": True}

        updated = client.put(f"/api/keys/{secret_id}", json={"key": "sk-new-1234567890"})
        assert updated.status_code == 200

        assert client.delete(f"/api/keys/{secret_id}").status_code == 200
        assert client.get("/api/keys").json()["count"] == 0

    def test_unknown_key(self, client):
        assert client.get("/api/keys/unknown").json()["valid"] is False
        assert client.put("/api/keys/unknown", json={"key": "sk-new-1234567890"}).status_code == 404
        assert client.delete("/api/keys/unknown").status_code == 404

