"""Core data models for the Assistant Gateway.

This module defines the shared data structures used across the gateway:
conversation messages, tool descriptors and results, provider request and
response shapes, and secret store records.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    """Roles a conversation message can carry."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCallFunction(BaseModel):
    """Function name and raw JSON arguments requested by the model."""
    model_config = ConfigDict(frozen=True)

    name: str
    arguments: str = "{}"


class ToolCall(BaseModel):
    """A single tool invocation requested by the model."""
    model_config = ConfigDict(frozen=True)

    id: str
    type: str = "function"
    function: ToolCallFunction


class Message(BaseModel):
    """
    A single message in a conversation.

    Messages are frozen: once appended to a transcript they never change.
    """
    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str = ""
    tool_call_id: Optional[str] = None
    tool_calls: Optional[list[ToolCall]] = None
    timestamp: datetime = Field(default_factory=utcnow)


class ToolParameters(BaseModel):
    """JSON Schema object describing a tool's parameters."""
    type: Literal["object"] = "object"
    properties: dict[str, dict[str, Any]] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)

    def to_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": self.type, "properties": self.properties}
        if self.required:
            schema["required"] = self.required
        return schema


ToolExecutor = Callable[[dict[str, Any]], Awaitable[Any]]
PluginHook = Callable[[], Awaitable[None]]


class ToolDefinition(BaseModel):
    """
    Complete definition of a callable tool.

    The executor receives the parsed parameters and returns either a
    ToolResult or a mapping following the `{success, data?, error?}` contract.
    """
    name: str = Field(..., min_length=1, description="Unique tool name")
    description: str = Field(default="", description="Clear description for LLM usage")
    parameters: ToolParameters = Field(default_factory=ToolParameters)
    executor: ToolExecutor = Field(..., exclude=True, repr=False)

    def to_llm_format(self) -> dict[str, Any]:
        """Render the tool in OpenAI function-calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters.to_schema(),
            },
        }


class Plugin(BaseModel):
    """
    A capability bundle owning a set of tools.

    A plugin must carry a non-empty name and at least one tool.
    """
    name: str = Field(..., min_length=1)
    version: str = "1.0.0"
    description: str = ""
    author: Optional[str] = None
    enabled: bool = True
    tools: list[ToolDefinition] = Field(..., min_length=1)
    initialize: Optional[PluginHook] = Field(default=None, exclude=True, repr=False)
    cleanup: Optional[PluginHook] = Field(default=None, exclude=True, repr=False)

    @property
    def tool_names(self) -> list[str]:
        return [tool.name for tool in self.tools]


class ToolErrorCode(str, Enum):
    """Reason a tool invocation produced a failed result."""
    EXECUTION_ERROR = "execution_error"
    VALIDATION_ERROR = "validation_error"
    INVALID_ARGUMENTS = "invalid_arguments"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    TOOL_ERROR = "tool_error"


class ToolResult(BaseModel, ABC):
    """
    Common shape of a tool invocation outcome.

    Abstract: every concrete result is a ToolSuccess or a ToolFailure.
    """
    success: bool
    execution_time_ms: float = 0
    metadata: dict[str, Any] = Field(default_factory=dict)

    @abstractmethod
    def to_payload(self) -> dict[str, Any]:
        """Wire form fed back to the model as the tool message content."""


class ToolSuccess(ToolResult):
    """Successful tool invocation."""
    success: Literal[True] = True
    data: Any = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": True,
            "data": self.data,
            "executionTime": self.execution_time_ms,
        }


class ToolFailure(ToolResult):
    """Failed tool invocation; the error is fed back to the model."""
    success: Literal[False] = False
    error: str
    error_code: ToolErrorCode = ToolErrorCode.TOOL_ERROR
    data: Any = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": False,
            "error": self.error,
            "errorCode": self.error_code.value,
            "executionTime": self.execution_time_ms,
        }
        if self.data is not None:
            payload["data"] = self.data
        return payload


class ModelConfig(BaseModel):
    """Configuration binding a provider client to one model."""
    provider: str
    model: str
    api_key: Optional[str] = Field(default=None, repr=False)
    base_url: Optional[str] = None
    max_tokens: int = Field(default=4096, gt=0)
    temperature: float = Field(default=0.7, ge=0, le=2)

    # Azure OpenAI only
    api_version: Optional[str] = None
    deployment_name: Optional[str] = None


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatResponse(BaseModel):
    """Response from a provider chat call."""
    content: str = ""
    tool_calls: Optional[list[ToolCall]] = None
    finish_reason: str = "stop"
    usage: Optional[TokenUsage] = None


class StreamChunk(BaseModel):
    """One content delta of a streamed reply; `done` marks the end."""
    content: str = ""
    done: bool = False


class Conversation(BaseModel):
    """Conversation state held by the orchestrator for process lifetime."""
    id: str
    messages: list[Message] = Field(default_factory=list)
    tools: list[ToolDefinition] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "message_count": len(self.messages),
            "tool_count": len(self.tools),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class SecretMetadata(BaseModel):
    """Listing view of a stored secret. Never carries key material."""
    id: str
    name: str
    provider: str
    created_at: datetime
    last_used: Optional[datetime] = None


class StoredSecret(BaseModel):
    """
    Persisted secret record.

    `encrypted_payload` has the form `<iv-hex>:<ciphertext-hex>`.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    provider: str
    encrypted_payload: str = Field(..., alias="encryptedPayload", repr=False)
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    last_used: Optional[datetime] = Field(default=None, alias="lastUsed")

    def metadata(self) -> SecretMetadata:
        return SecretMetadata(
            id=self.id,
            name=self.name,
            provider=self.provider,
            created_at=self.created_at,
            last_used=self.last_used,
        )


class TurnState(str, Enum):
    """Lifecycle of one orchestrated turn."""
    RECEIVED = "received"
    PROVIDER_CALL_PENDING = "provider_call_pending"
    TOOL_CALLS_REQUESTED = "tool_calls_requested"
    EXECUTING_TOOLS = "executing_tools"
    FOLLOWUP_PENDING = "followup_pending"
    COMPLETE = "complete"
    FAILED = "failed"


class ToolCallTrace(BaseModel):
    """Record of one tool call executed during a turn."""
    id: str
    name: str
    arguments: Any = None
    success: bool
    error: Optional[str] = None
    execution_time_ms: float = 0


class TurnResult(BaseModel):
    """Final outcome of a turn returned to the transport layer."""
    conversation_id: str
    response: str
    tool_calls: list[ToolCallTrace] = Field(default_factory=list)
    usage: Optional[TokenUsage] = None
