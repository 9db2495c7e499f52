"""Tool Registry.

Loads capability bundles (plugins), exposes a flat namespace of invocable
tools and executes them with a uniform result shape.
"""

import asyncio
import inspect
import time
from collections.abc import Mapping
from typing import Any, Iterable, Optional

from pydantic import ValidationError as ModelValidationError

from shared.config import PluginSettings
from shared.errors import (
    PluginNotFoundError,
    PluginValidationError,
    ToolConflictError,
    ToolNotFoundError,
)
from shared.logging import get_logger
from shared.models import (
    Plugin,
    ToolDefinition,
    ToolErrorCode,
    ToolFailure,
    ToolResult,
    ToolSuccess,
)
from shared.schema import check_parameter_schema, validate_schema
from tools.audit import AuditLogger
from tools.discovery import PluginSource

logger = get_logger(__name__)


def normalize_result(value: Any) -> ToolResult:
    """
    Coerce an executor's return value into a ToolResult.

    Executors may return a ToolResult, a mapping following the
    `{success, data?, error?}` contract, or any other value (wrapped as data).
    """
    if isinstance(value, (ToolSuccess, ToolFailure)):
        return value

    if isinstance(value, ToolResult):
        # Other ToolResult subclasses are rebuilt from their common fields
        if value.success:
            return ToolSuccess(data=getattr(value, "data", None), metadata=value.metadata)
        return ToolFailure(
            error=str(getattr(value, "error", None) or "Tool reported failure"),
            error_code=ToolErrorCode.TOOL_ERROR,
            data=getattr(value, "data", None),
            metadata=value.metadata,
        )

    if isinstance(value, Mapping) and "success" in value:
        metadata = dict(value.get("metadata") or {})
        if value["success"]:
            return ToolSuccess(data=value.get("data"), metadata=metadata)
        return ToolFailure(
            error=str(value.get("error") or "Tool reported failure"),
            error_code=ToolErrorCode.TOOL_ERROR,
            data=value.get("data"),
            metadata=metadata,
        )

    return ToolSuccess(data=value)


class ToolRegistry:
    """
    Central registry for plugins and their tools.

    Responsibilities:
    - Load plugins from discovery sources or explicit registration
    - Look up tools by name
    - Validate parameters and execute tools
    - Report plugin statistics
    """

    def __init__(
        self,
        tool_timeout_seconds: Optional[float] = None,
        enabled: Optional[Iterable[str]] = None,
        disabled: Optional[Iterable[str]] = None,
        audit_logger: Optional[AuditLogger] = None
    ) -> None:
        """
        Initialize the registry.

        Args:
            tool_timeout_seconds: Deadline for a single executor call (None = no deadline)
            enabled: If given, only plugins with these names are loaded
            disabled: Plugins never loaded by `load`
            audit_logger: Optional dispatch audit trail
        """
        self.tool_timeout_seconds = tool_timeout_seconds
        self.enabled = set(enabled) if enabled else None
        self.disabled = set(disabled or ())
        self.audit_logger = audit_logger

        self._plugins: dict[str, Plugin] = {}
        self._tools: dict[str, ToolDefinition] = {}
        self._owners: dict[str, str] = {}
        self._sources: dict[str, PluginSource] = {}

    @classmethod
    def from_settings(cls, settings: PluginSettings) -> "ToolRegistry":
        audit_logger = None
        if settings.enable_audit:
            audit_logger = AuditLogger(log_path=settings.audit_log_path)

        return cls(
            tool_timeout_seconds=settings.tool_timeout_seconds,
            enabled=settings.enabled,
            disabled=settings.disabled,
            audit_logger=audit_logger
        )

    # Registration

    def _coerce_plugin(self, candidate: Any) -> Plugin:
        if isinstance(candidate, Plugin):
            return candidate
        if isinstance(candidate, Mapping):
            try:
                return Plugin.model_validate(dict(candidate))
            except ModelValidationError as e:
                raise PluginValidationError(f"Invalid plugin format: {e}") from e
        raise PluginValidationError(f"Invalid plugin format: {type(candidate).__name__}")

    def _is_enabled(self, plugin: Plugin) -> bool:
        if not plugin.enabled or plugin.name in self.disabled:
            return False
        return self.enabled is None or plugin.name in self.enabled

    def register(self, plugin: Plugin) -> None:
        """
        Register a plugin and all of its tools.

        Args:
            plugin: Plugin to register

        Raises:
            PluginValidationError: If the plugin name is taken or a tool schema is malformed
            ToolConflictError: If a tool name is owned by another plugin
        """
        if plugin.name in self._plugins:
            raise PluginValidationError(f"Plugin '{plugin.name}' is already registered")

        seen: set[str] = set()
        for tool in plugin.tools:
            if tool.name in seen:
                raise PluginValidationError(
                    f"Plugin '{plugin.name}' declares tool '{tool.name}' twice"
                )
            seen.add(tool.name)

            owner = self._owners.get(tool.name)
            if owner is not None:
                raise ToolConflictError(tool.name, owner)

            problems = check_parameter_schema(tool.parameters.to_schema())
            if problems:
                raise PluginValidationError(
                    f"Tool '{tool.name}' has an invalid parameter schema: {'; '.join(problems)}"
                )

        self._plugins[plugin.name] = plugin
        for tool in plugin.tools:
            self._tools[tool.name] = tool
            self._owners[tool.name] = plugin.name

        logger.info(
            "Plugin registered",
            plugin=plugin.name,
            version=plugin.version,
            tools=plugin.tool_names
        )

    def _remove(self, name: str) -> Plugin:
        plugin = self._plugins.pop(name)
        for tool in plugin.tools:
            if self._owners.get(tool.name) == name:
                del self._tools[tool.name]
                del self._owners[tool.name]
        return plugin

    async def unregister(self, name: str) -> Plugin:
        """
        Unregister a plugin, running its cleanup hook and removing its tools.

        Raises:
            PluginNotFoundError: If no plugin has this name
        """
        plugin = self._plugins.get(name)
        if plugin is None:
            raise PluginNotFoundError(name)

        if plugin.cleanup is not None:
            try:
                await plugin.cleanup()
            except Exception as e:
                logger.error("Error cleaning up plugin", plugin=name, error=str(e))

        self._remove(name)
        self._sources.pop(name, None)

        logger.info("Plugin unregistered", plugin=name)
        return plugin

    async def _activate(self, plugin: Plugin, source: Optional[PluginSource]) -> bool:
        """Register and initialize one plugin; False if it was rejected."""
        try:
            self.register(plugin)
        except (PluginValidationError, ToolConflictError) as e:
            logger.error("Plugin rejected", plugin=plugin.name, error=str(e))
            return False

        if plugin.initialize is not None:
            try:
                await plugin.initialize()
            except Exception as e:
                logger.error("Plugin initialization failed", plugin=plugin.name, error=str(e))
                self._remove(plugin.name)
                return False

        if source is not None:
            self._sources[plugin.name] = source

        logger.info("Loaded plugin", plugin=plugin.name, version=plugin.version)
        return True

    async def load(self, source: PluginSource, refresh: bool = False) -> list[str]:
        """
        Discover plugins from a source and register the enabled ones.

        Invalid candidates are skipped with a warning; disabled plugins are
        skipped entirely.

        Returns:
            Names of the plugins loaded
        """
        loaded: list[str] = []

        for candidate in source.discover(refresh=refresh):
            try:
                plugin = self._coerce_plugin(candidate)
            except PluginValidationError as e:
                logger.warning("Skipping invalid plugin", source=source.name, error=str(e))
                continue

            if not self._is_enabled(plugin):
                logger.info("Plugin disabled", plugin=plugin.name)
                continue

            if await self._activate(plugin, source):
                loaded.append(plugin.name)

        logger.info(
            "Plugins loaded",
            source=source.name,
            plugins=len(self._plugins),
            tools=len(self._tools)
        )
        return loaded

    async def reload(self, name: str) -> Plugin:
        """
        Reload a single plugin.

        The plugin is unregistered, its source re-discovered, and only the
        plugin with the same name is registered again. Plugins registered
        imperatively are re-registered from the same object.

        Raises:
            PluginNotFoundError: If the plugin is unknown or no longer discoverable
        """
        plugin = self._plugins.get(name)
        if plugin is None:
            raise PluginNotFoundError(name)

        source = self._sources.get(name)
        await self.unregister(name)

        if source is None:
            await self._activate(plugin, None)
            return plugin

        for candidate in source.discover(refresh=True):
            try:
                fresh = self._coerce_plugin(candidate)
            except PluginValidationError:
                continue
            if fresh.name != name:
                continue
            if await self._activate(fresh, source):
                return fresh
            break

        logger.warning("Plugin could not be reloaded", plugin=name, source=source.name)
        raise PluginNotFoundError(name)

    async def reload_all(self) -> list[str]:
        """Unregister every plugin and re-run discovery on every known source."""
        sources: list[PluginSource] = []
        for source in self._sources.values():
            if source not in sources:
                sources.append(source)

        for name in list(self._plugins):
            await self.unregister(name)

        loaded: list[str] = []
        for source in sources:
            loaded.extend(await self.load(source, refresh=True))
        return loaded

    # Lookup

    def get_plugin(self, name: str) -> Optional[Plugin]:
        return self._plugins.get(name)

    def list_plugins(self) -> list[Plugin]:
        return list(self._plugins.values())

    def get_tool(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def list_tools(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def tools_by_plugin(self, name: str) -> list[ToolDefinition]:
        plugin = self._plugins.get(name)
        if plugin is None:
            raise PluginNotFoundError(name)
        return list(plugin.tools)

    def owner_of(self, tool_name: str) -> Optional[str]:
        return self._owners.get(tool_name)

    def get_tools_for_llm(self, names: Optional[Iterable[str]] = None) -> list[dict[str, Any]]:
        """Get tool definitions in OpenAI function-calling format."""
        tools = self.list_tools()
        if names is not None:
            wanted = set(names)
            tools = [t for t in tools if t.name in wanted]
        return [tool.to_llm_format() for tool in tools]

    def get_stats(self) -> dict[str, Any]:
        plugins = self.list_plugins()
        return {
            "total_plugins": len(plugins),
            "enabled_plugins": sum(1 for p in plugins if p.enabled),
            "total_tools": len(self._tools),
            "plugins": [
                {"name": p.name, "version": p.version, "tool_count": len(p.tools)}
                for p in plugins
            ],
        }

    # Execution

    async def _invoke(self, tool: ToolDefinition, params: dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(tool.executor):
            call = tool.executor(params)
        else:
            call = asyncio.to_thread(tool.executor, params)

        if self.tool_timeout_seconds is None:
            value = await call
        else:
            value = await asyncio.wait_for(call, timeout=self.tool_timeout_seconds)

        if inspect.isawaitable(value):
            value = await value
        return value

    async def dispatch(
        self,
        tool_name: str,
        params: Optional[dict[str, Any]] = None,
        call_id: Optional[str] = None
    ) -> ToolResult:
        """
        Execute a tool by name.

        Executor failures never propagate: they are returned as a ToolFailure.

        Args:
            tool_name: Registered tool name
            params: Tool parameters
            call_id: Optional originating tool-call id, recorded in the audit trail

        Returns:
            Tool result with execution time

        Raises:
            ToolNotFoundError: If no tool has this name
        """
        tool = self._tools.get(tool_name)
        if tool is None:
            raise ToolNotFoundError(tool_name)

        params = params or {}
        start_time = time.perf_counter()

        logger.debug("Executing tool", tool=tool_name, call_id=call_id)

        is_valid, errors = validate_schema(params, tool.parameters.to_schema())
        if not is_valid:
            result: ToolResult = ToolFailure(
                error=f"Validation failed: {'; '.join(errors)}",
                error_code=ToolErrorCode.VALIDATION_ERROR
            )
        else:
            try:
                result = normalize_result(await self._invoke(tool, params))
            except asyncio.TimeoutError:
                logger.warning(
                    "Tool execution timed out",
                    tool=tool_name,
                    timeout_seconds=self.tool_timeout_seconds
                )
                result = ToolFailure(
                    error=f"Tool '{tool_name}' timed out after {self.tool_timeout_seconds}s",
                    error_code=ToolErrorCode.TIMEOUT
                )
            except Exception as e:
                logger.error("Tool execution failed", tool=tool_name, error=str(e), exc_info=True)
                result = ToolFailure(
                    error=str(e) or type(e).__name__,
                    error_code=ToolErrorCode.EXECUTION_ERROR
                )

        result.execution_time_ms = (time.perf_counter() - start_time) * 1000

        logger.debug(
            "Tool executed",
            tool=tool_name,
            success=result.success,
            execution_time_ms=round(result.execution_time_ms, 2)
        )

        if self.audit_logger is not None:
            await self.audit_logger.log(tool_name, self._owners.get(tool_name), params, result, call_id)

        return result
