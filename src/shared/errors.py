"""Error taxonomy for the Assistant Gateway.

Validation, not-found and credential errors abort the current call and are
surfaced verbatim. Upstream errors abort the whole turn. Tool execution errors
never leave the tool boundary: the registry converts them into failed results.
"""

from typing import Optional


class GatewayError(Exception):
    """Base exception for all gateway errors."""
    pass


class ValidationError(GatewayError):
    """A required input field is missing or malformed."""
    pass


class NotFoundError(GatewayError):
    """A referenced entity does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ConversationNotFoundError(NotFoundError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__("Conversation", conversation_id)


class ToolNotFoundError(NotFoundError):
    def __init__(self, tool_name: str) -> None:
        super().__init__("Tool", tool_name)


class PluginNotFoundError(NotFoundError):
    def __init__(self, plugin_name: str) -> None:
        super().__init__("Plugin", plugin_name)


class SecretNotFoundError(NotFoundError):
    def __init__(self, secret_id: str) -> None:
        super().__init__("Secret", secret_id)


class UnknownProviderError(NotFoundError):
    def __init__(self, provider: str) -> None:
        super().__init__("AI provider", provider)


class CredentialError(GatewayError):
    """No API key could be resolved for a provider."""
    pass


class NoActiveProviderError(GatewayError):
    """Chat was requested before a provider session was activated."""

    def __init__(self) -> None:
        super().__init__("No AI provider configured. Call set_active() first.")


class UpstreamError(GatewayError):
    """
    A backend API call failed.

    This is the only error class a provider chat call lets escape.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        provider: Optional[str] = None
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.provider = provider
        prefix = f"{provider} API error" if provider else "Upstream error"
        status = f" ({status_code})" if status_code is not None else ""
        super().__init__(f"{prefix}{status}: {message}")


class ToolExecutionError(GatewayError):
    """Raised by tool executors; converted into a failed ToolResult."""
    pass


class ToolConflictError(GatewayError):
    """A tool name is already owned by another plugin."""

    def __init__(self, tool_name: str, owner: str) -> None:
        self.tool_name = tool_name
        self.owner = owner
        super().__init__(f"Tool '{tool_name}' is already registered by plugin '{owner}'")


class PluginValidationError(ValidationError):
    """A capability bundle failed structural validation."""
    pass


class PersistenceError(GatewayError):
    """Secret store I/O or decryption failure."""
    pass
