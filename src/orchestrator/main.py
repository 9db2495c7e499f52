"""Assistant Gateway - FastAPI Application.

Thin HTTP surface over the orchestrator:
- Chat and streaming chat
- Conversation management
- Plugin and tool inspection and invocation
- Secret management
- Provider catalog and statistics
"""

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import Body, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from keystore import SecretStore
from orchestrator.gateway import ConversationOrchestrator
from providers import build_default_registry
from shared.config import Settings, get_settings
from shared.errors import (
    CredentialError,
    GatewayError,
    NoActiveProviderError,
    NotFoundError,
    PersistenceError,
    ToolConflictError,
    UpstreamError,
    ValidationError,
)
from shared.logging import get_logger, setup_logging
from shared.models import utcnow
from tools import PackagePluginSource, ToolRegistry

logger = get_logger(__name__)


# Request/Response Models
class ChatRequest(BaseModel):
    """Chat request from a client."""
    message: str = Field(..., description="User message")
    conversation_id: Optional[str] = Field(default=None, description="Existing conversation ID")
    provider: Optional[str] = Field(default=None, description="Provider to activate for this turn")
    model: Optional[str] = Field(default=None, description="Model to activate for this turn")


class ChatReply(BaseModel):
    """Chat response to a client."""
    conversation_id: str
    response: str
    tool_calls: list[dict[str, Any]] = Field(default_factory=list)


class SecretCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    provider: str = Field(..., min_length=1)
    key: str = Field(..., min_length=1)


class SecretUpdateRequest(BaseModel):
    key: str = Field(..., min_length=1)


# Error mapping, most specific first
ERROR_STATUS: list[tuple[type[GatewayError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ToolConflictError, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (CredentialError, status.HTTP_400_BAD_REQUEST),
    (NoActiveProviderError, status.HTTP_400_BAD_REQUEST),
    (UpstreamError, status.HTTP_502_BAD_GATEWAY),
    (PersistenceError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def status_for(error: GatewayError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _orchestrator(request: Request) -> ConversationOrchestrator:
    return request.app.state.orchestrator


def _tools(request: Request) -> ToolRegistry:
    return request.app.state.tools


def _secrets(request: Request) -> SecretStore:
    return request.app.state.secrets


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Components are created in the lifespan handler and kept on `app.state`.

    Args:
        settings: Settings to use; defaults to the cached application settings
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        app_settings = settings or get_settings()
        setup_logging(
            app_settings.log_level,
            json_output=app_settings.environment == "production",
            log_file=app_settings.log_file
        )

        logger.info("Starting Assistant Gateway", environment=app_settings.environment)

        secrets = SecretStore.from_settings(app_settings.keystore)
        await secrets.initialize()

        tools = ToolRegistry.from_settings(app_settings.plugins)
        await tools.load(PackagePluginSource(app_settings.plugins.package))

        providers = build_default_registry(app_settings.orchestrator.provider_timeout_seconds)

        app.state.settings = app_settings
        app.state.secrets = secrets
        app.state.tools = tools
        app.state.providers = providers
        app.state.orchestrator = ConversationOrchestrator(
            providers=providers,
            tools=tools,
            secrets=secrets,
            system_prompt=app_settings.orchestrator.system_prompt,
            llm_settings=app_settings.llm,
        )

        logger.info(
            "Assistant Gateway started",
            plugins=len(tools.list_plugins()),
            tools=len(tools.list_tools()),
            secrets=secrets.count
        )

        yield

        logger.info("Shutting down Assistant Gateway")

        for plugin in tools.list_plugins():
            await tools.unregister(plugin.name)
        if tools.audit_logger is not None:
            await tools.audit_logger.flush()
        await providers.close()

    app = FastAPI(
        title="Assistant Gateway",
        description="Conversational AI gateway with pluggable providers and tools",
        version="0.1.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error("Request failed", path=request.url.path, error=str(exc))
        else:
            logger.warning("Request rejected", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=status_code, content={"error": str(exc)})

    # System

    @app.get("/health", tags=["System"])
    async def health_check():
        return {"status": "ok", "timestamp": utcnow().isoformat()}

    @app.get("/api/stats", tags=["System"])
    async def stats(request: Request):
        providers = request.app.state.providers
        return {
            "conversations": _orchestrator(request).get_stats(),
            "plugins": _tools(request).get_stats(),
            "provider": providers.active_provider_name,
            "secrets": _secrets(request).count,
        }

    @app.get("/api/providers", tags=["System"])
    async def list_providers(request: Request):
        providers = request.app.state.providers
        active = providers.active_config
        return {
            "providers": [d.info() for d in providers.list_providers()],
            "active": {"provider": active.provider, "model": active.model} if active else None,
        }

    # Chat

    @app.post("/api/chat", response_model=ChatReply, tags=["Chat"])
    async def chat(body: ChatRequest, request: Request):
        result = await _orchestrator(request).chat(
            body.message,
            conversation_id=body.conversation_id,
            provider=body.provider,
            model=body.model
        )
        return ChatReply(
            conversation_id=result.conversation_id,
            response=result.response,
            tool_calls=[trace.model_dump(mode="json") for trace in result.tool_calls],
        )

    @app.post("/api/chat/stream", tags=["Chat"])
    async def chat_stream(body: ChatRequest, request: Request):
        orchestrator = _orchestrator(request)

        if not body.message.strip():
            raise ValidationError("Message is required")
        if body.conversation_id is not None:
            orchestrator.get(body.conversation_id)

        await orchestrator.ensure_provider(body.provider, body.model)
        conversation_id = body.conversation_id or await orchestrator.create()
        chunks = await orchestrator.stream(conversation_id, body.message)

        async def events() -> AsyncIterator[str]:
            try:
                async for chunk in chunks:
                    payload = {"conversation_id": conversation_id, **chunk.model_dump()}
                    yield f"data: {json.dumps(payload)}\n\n"
            except UpstreamError as e:
                yield f"event: error\ndata: {json.dumps({'error': str(e)})}\n\n"
            finally:
                await chunks.aclose()

        return StreamingResponse(events(), media_type="text/event-stream")

    # Conversations

    @app.post("/api/conversations", status_code=status.HTTP_201_CREATED, tags=["Conversations"])
    async def create_conversation(request: Request):
        conversation_id = await _orchestrator(request).create()
        return {"conversation_id": conversation_id}

    @app.get("/api/conversations", tags=["Conversations"])
    async def list_conversations(request: Request):
        conversations = _orchestrator(request).list_conversations()
        return {"conversations": conversations, "count": len(conversations)}

    @app.get("/api/conversations/{conversation_id}", tags=["Conversations"])
    async def get_conversation(conversation_id: str, request: Request):
        conversation = _orchestrator(request).get(conversation_id)
        return {
            **conversation.summary(),
            "messages": [m.model_dump(mode="json", exclude_none=True) for m in conversation.messages],
        }

    @app.delete("/api/conversations/{conversation_id}", tags=["Conversations"])
    async def delete_conversation(conversation_id: str, request: Request):
        await _orchestrator(request).delete(conversation_id)
        return {"status": "deleted"}

    # Plugins and tools

    @app.get("/api/plugins", tags=["Plugins"])
    async def list_plugins(request: Request):
        registry = _tools(request)
        return {
            "plugins": [p.model_dump(mode="json") for p in registry.list_plugins()],
            "stats": registry.get_stats(),
        }

    @app.get("/api/plugins/{name}", tags=["Plugins"])
    async def get_plugin(name: str, request: Request):
        registry = _tools(request)
        tools = registry.tools_by_plugin(name)
        plugin = registry.get_plugin(name)
        return {**plugin.model_dump(mode="json", exclude={"tools"}), "tools": [t.model_dump(mode="json") for t in tools]}

    @app.post("/api/plugins/{name}/reload", tags=["Plugins"])
    async def reload_plugin(name: str, request: Request):
        plugin = await _tools(request).reload(name)
        return {"status": "reloaded", "plugin": plugin.name, "version": plugin.version}

    @app.get("/api/tools", tags=["Tools"])
    async def list_tools(request: Request):
        registry = _tools(request)
        tools = [
            {**t.model_dump(mode="json"), "plugin": registry.owner_of(t.name)}
            for t in registry.list_tools()
        ]
        return {"tools": tools, "count": len(tools)}

    @app.post("/api/tools/{name}", tags=["Tools"])
    async def execute_tool(name: str, request: Request, params: Optional[dict[str, Any]] = Body(default=None)):
        result = await _tools(request).dispatch(name, params or {})
        return result.to_payload()

    # Secrets

    @app.get("/api/keys", tags=["Keys"])
    async def list_keys(request: Request):
        keys = await _secrets(request).list_secrets()
        return {"keys": [k.model_dump(mode="json") for k in keys], "count": len(keys)}

    @app.post("/api/keys", status_code=status.HTTP_201_CREATED, tags=["Keys"])
    async def add_key(body: SecretCreateRequest, request: Request):
        stored = await _secrets(request).add(body.name, body.provider, body.key)
        return stored.metadata().model_dump(mode="json")

    @app.get("/api/keys/{secret_id}", tags=["Keys"])
    async def validate_key(secret_id: str, request: Request):
        secrets = _secrets(request)
        valid = await secrets.validate(secret_id)
        return {"id": secret_id, "valid": valid}

    @app.put("/api/keys/{secret_id}", tags=["Keys"])
    async def update_key(secret_id: str, body: SecretUpdateRequest, request: Request):
        metadata = await _secrets(request).update(secret_id, body.key)
        return metadata.model_dump(mode="json")

    @app.delete("/api/keys/{secret_id}", tags=["Keys"])
    async def delete_key(secret_id: str, request: Request):
        await _secrets(request).delete(secret_id)
        return {"status": "deleted"}

    return app


app = create_app()


def main():
    """Run the Assistant Gateway server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.orchestrator.host,
        port=settings.orchestrator.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
