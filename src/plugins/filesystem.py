"""Filesystem plugin: read, write, list, inspect and delete files."""

import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from shared.models import Plugin, ToolDefinition, ToolParameters


def _isoformat(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


async def read_file(params: dict[str, Any]) -> dict[str, Any]:
    path = params["path"]
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        content = await f.read()
    return {"success": True, "data": {"path": path, "content": content}}


async def write_file(params: dict[str, Any]) -> dict[str, Any]:
    path = Path(params["path"])
    content = params["content"]

    await aiofiles.os.makedirs(path.parent, exist_ok=True)
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(content)

    return {"success": True, "data": {"path": str(path), "bytes_written": len(content.encode("utf-8"))}}


async def list_directory(params: dict[str, Any]) -> dict[str, Any]:
    root = params["path"]
    recursive = params.get("recursive", False)
    items: list[str] = []

    async def walk(directory: str) -> None:
        for entry in sorted(await aiofiles.os.scandir(directory), key=lambda e: e.name):
            items.append(entry.path)
            if recursive and entry.is_dir(follow_symlinks=False):
                await walk(entry.path)

    await walk(root)
    return {"success": True, "data": {"path": root, "items": items, "count": len(items)}}


async def get_file_info(params: dict[str, Any]) -> dict[str, Any]:
    path = params["path"]
    stats = await aiofiles.os.stat(path)
    return {
        "success": True,
        "data": {
            "path": path,
            "size": stats.st_size,
            "is_file": await aiofiles.os.path.isfile(path),
            "is_directory": await aiofiles.os.path.isdir(path),
            "modified": _isoformat(stats.st_mtime),
            "accessed": _isoformat(stats.st_atime),
        },
    }


async def delete_file(params: dict[str, Any]) -> dict[str, Any]:
    path = params["path"]

    if await aiofiles.os.path.isdir(path):
        recursive = params.get("recursive", False)
        if not recursive:
            return {"success": False, "error": f"'{path}' is a directory; pass recursive=true to delete it"}
        await aiofiles.os.wrap(shutil.rmtree)(path)
    else:
        await aiofiles.os.remove(path)

    return {"success": True, "data": {"path": path}}


_PATH_PROPERTY = {"type": "string", "description": "Path to the file or directory"}


def plugin() -> Plugin:
    return Plugin(
        name="filesystem",
        version="1.0.0",
        description="File system operations for reading, writing and managing files",
        author="Assistant Gateway",
        tools=[
            ToolDefinition(
                name="read_file",
                description="Read the contents of a text file",
                parameters=ToolParameters(properties={"path": _PATH_PROPERTY}, required=["path"]),
                executor=read_file,
            ),
            ToolDefinition(
                name="write_file",
                description="Write content to a file, creating parent directories as needed",
                parameters=ToolParameters(
                    properties={
                        "path": _PATH_PROPERTY,
                        "content": {"type": "string", "description": "Content to write"},
                    },
                    required=["path", "content"],
                ),
                executor=write_file,
            ),
            ToolDefinition(
                name="list_directory",
                description="List files and directories in a path",
                parameters=ToolParameters(
                    properties={
                        "path": _PATH_PROPERTY,
                        "recursive": {"type": "boolean", "description": "List recursively", "default": False},
                    },
                    required=["path"],
                ),
                executor=list_directory,
            ),
            ToolDefinition(
                name="get_file_info",
                description="Get size, type and timestamps of a file or directory",
                parameters=ToolParameters(properties={"path": _PATH_PROPERTY}, required=["path"]),
                executor=get_file_info,
            ),
            ToolDefinition(
                name="delete_file",
                description="Delete a file, or a directory when recursive is set",
                parameters=ToolParameters(
                    properties={
                        "path": _PATH_PROPERTY,
                        "recursive": {"type": "boolean", "description": "Allow deleting directories", "default": False},
                    },
                    required=["path"],
                ),
                executor=delete_file,
            ),
        ],
    )
