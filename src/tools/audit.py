"""Audit logging for tool dispatches.

Records every dispatch with the tool, its owning plugin, redacted
parameters, outcome and timing as JSON lines.
"""

import asyncio
import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiofiles
from pydantic import BaseModel, Field

from shared.logging import get_logger
from shared.models import ToolFailure, ToolResult, utcnow

logger = get_logger(__name__)


class AuditEntry(BaseModel):
    """One recorded tool dispatch."""
    id: str
    timestamp: datetime = Field(default_factory=utcnow)
    tool_name: str
    plugin: Optional[str] = None
    call_id: Optional[str] = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None
    execution_time_ms: float = 0


class AuditLogger:
    """
    Audit logger for tool dispatches.

    Entries are logged to the structured logger immediately and buffered for
    batch writes to the audit file.
    """

    # Parameters that should be redacted in audit logs
    SENSITIVE_PARAMS = {"password", "token", "secret", "api_key", "apikey", "credential", "authorization"}

    def __init__(
        self,
        log_path: str | Path = "logs/tool-audit.log",
        enabled: bool = True,
        buffer_size: int = 50
    ) -> None:
        self.log_path = Path(log_path)
        self.enabled = enabled
        self.buffer_size = buffer_size
        self._buffer: list[AuditEntry] = []
        self._lock = asyncio.Lock()

    def _redact_sensitive(self, params: dict[str, Any]) -> dict[str, Any]:
        """Redact sensitive parameters, including nested ones."""
        redacted: dict[str, Any] = {}
        for key, value in params.items():
            if key.lower() in self.SENSITIVE_PARAMS:
                redacted[key] = "[REDACTED]"
            elif isinstance(value, dict):
                redacted[key] = self._redact_sensitive(value)
            else:
                redacted[key] = value
        return redacted

    def create_entry(
        self,
        tool_name: str,
        plugin: Optional[str],
        parameters: dict[str, Any],
        result: ToolResult,
        call_id: Optional[str] = None
    ) -> AuditEntry:
        is_failure = isinstance(result, ToolFailure)
        return AuditEntry(
            id=uuid.uuid4().hex,
            tool_name=tool_name,
            plugin=plugin,
            call_id=call_id,
            parameters=self._redact_sensitive(parameters),
            success=result.success,
            error=result.error if is_failure else None,
            error_code=result.error_code.value if is_failure else None,
            execution_time_ms=result.execution_time_ms,
        )

    async def log(
        self,
        tool_name: str,
        plugin: Optional[str],
        parameters: dict[str, Any],
        result: ToolResult,
        call_id: Optional[str] = None
    ) -> None:
        if not self.enabled:
            return

        entry = self.create_entry(tool_name, plugin, parameters, result, call_id)

        logger.info(
            "Tool dispatch audited",
            audit_id=entry.id,
            tool=entry.tool_name,
            plugin=entry.plugin,
            success=entry.success,
            execution_time_ms=entry.execution_time_ms
        )

        async with self._lock:
            self._buffer.append(entry)

            if len(self._buffer) >= self.buffer_size:
                await self._flush()

    async def _flush(self) -> None:
        if not self._buffer:
            return

        entries_to_write = self._buffer.copy()
        self._buffer.clear()

        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self.log_path, "a") as f:
                for entry in entries_to_write:
                    await f.write(entry.model_dump_json() + "\n")
        except OSError as e:
            logger.error("Failed to write audit log", error=str(e))
            # Keep entries for the next flush
            self._buffer.extend(entries_to_write)

    async def flush(self) -> None:
        """Write any buffered entries to the audit file."""
        async with self._lock:
            await self._flush()

    async def query(
        self,
        tool_name: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 100
    ) -> list[AuditEntry]:
        """Read back flushed entries, newest last."""
        results: list[AuditEntry] = []

        if not self.log_path.exists():
            return results

        async with aiofiles.open(self.log_path, "r") as f:
            async for line in f:
                if len(results) >= limit:
                    break

                try:
                    entry = AuditEntry(**json.loads(line.strip()))
                except ValueError:
                    continue

                if tool_name and entry.tool_name != tool_name:
                    continue
                if success is not None and entry.success != success:
                    continue

                results.append(entry)

        return results
