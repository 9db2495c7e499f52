"""Tool registry, plugin discovery and dispatch auditing."""

from tools.audit import AuditLogger
from tools.discovery import PackagePluginSource, PluginSource, StaticPluginSource
from tools.registry import ToolRegistry, normalize_result

__all__ = [
    "AuditLogger",
    "PackagePluginSource",
    "PluginSource",
    "StaticPluginSource",
    "ToolRegistry",
    "normalize_result",
]
