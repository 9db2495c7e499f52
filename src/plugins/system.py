"""System plugin: clock, host information, processes and shell commands."""

import asyncio
import os
import platform
import shlex
import shutil
import signal
import socket
import sys
from datetime import datetime, timezone
from typing import Any, Optional

from shared.logging import get_logger
from shared.models import Plugin, ToolDefinition, ToolParameters

logger = get_logger(__name__)

DEFAULT_COMMAND_TIMEOUT = 30
IS_WINDOWS = sys.platform == "win32"


async def run_shell(
    command: str,
    cwd: Optional[str] = None,
    timeout: float = DEFAULT_COMMAND_TIMEOUT
) -> dict[str, Any]:
    """
    Run a shell command and collect its output.

    The child is killed and reaped whenever this coroutine stops before the
    command finishes, whether by its own timeout or by cancellation from
    the caller.

    Returns:
        Mapping with stdout, stderr and exit_code

    Raises:
        asyncio.TimeoutError: If the command runs longer than `timeout`
    """
    logger.debug("Running command", command=command, cwd=cwd)

    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd
    )

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    finally:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
            logger.warning("Killed unfinished command", command=command, pid=proc.pid)

    return {
        "stdout": stdout.decode("utf-8", errors="replace").strip(),
        "stderr": stderr.decode("utf-8", errors="replace").strip(),
        "exit_code": proc.returncode,
    }


async def get_time(params: dict[str, Any]) -> dict[str, Any]:
    now = datetime.now(timezone.utc)
    return {
        "success": True,
        "data": {
            "iso": now.isoformat(),
            "timestamp": now.timestamp(),
            "timezone": "UTC",
        },
    }


async def get_system_info(params: dict[str, Any]) -> dict[str, Any]:
    load_average: Optional[list[float]] = None
    if hasattr(os, "getloadavg"):
        load_average = list(os.getloadavg())

    return {
        "success": True,
        "data": {
            "platform": platform.system().lower(),
            "arch": platform.machine(),
            "hostname": socket.gethostname(),
            "release": platform.release(),
            "python_version": platform.python_version(),
            "cpu_count": os.cpu_count(),
            "load_average": load_average,
            "cwd": os.getcwd(),
        },
    }


async def execute_command(params: dict[str, Any]) -> dict[str, Any]:
    """
    Run a shell command.

    Args:
        params: `command`, optional `cwd` and `timeout` (seconds)

    Returns:
        Result mapping with stdout, stderr and exit code
    """
    command = params["command"]
    timeout = params.get("timeout") or DEFAULT_COMMAND_TIMEOUT

    try:
        output = await run_shell(command, cwd=params.get("cwd"), timeout=timeout)
    except asyncio.TimeoutError:
        return {
            "success": False,
            "error": f"Command timed out after {timeout}s",
            "data": {"command": command},
        }

    data = {**output, "command": command}

    if output["exit_code"] != 0:
        return {
            "success": False,
            "error": f"Command exited with status {output['exit_code']}",
            "data": data,
        }

    return {"success": True, "data": data}


async def get_process_info(params: dict[str, Any]) -> dict[str, Any]:
    """List running processes, or describe one when `pid` is given."""
    pid = params.get("pid")

    if IS_WINDOWS:
        command = f'tasklist /FI "PID eq {pid}" /FO CSV' if pid else "tasklist /FO CSV"
    else:
        command = f"ps -p {pid} -o pid,ppid,%mem,%cpu,etime,args" if pid else "ps aux"

    output = await run_shell(command)

    if output["exit_code"] != 0:
        error = f"No process with PID {pid}" if pid else output["stderr"] or "Process listing failed"
        return {"success": False, "error": error}

    return {"success": True, "data": {"processes": output["stdout"], "platform": sys.platform}}


async def kill_process(params: dict[str, Any]) -> dict[str, Any]:
    """Send a signal (SIGTERM by default) to a process."""
    pid = params["pid"]
    name = params.get("signal") or "SIGTERM"
    name = name.upper() if name.upper().startswith("SIG") else f"SIG{name.upper()}"

    try:
        signum = signal.Signals[name]
    except KeyError:
        return {"success": False, "error": f"Unknown signal: {params.get('signal')}"}

    try:
        os.kill(pid, signum)
    except ProcessLookupError:
        return {"success": False, "error": f"No process with PID {pid}"}
    except PermissionError:
        return {"success": False, "error": f"Not permitted to signal PID {pid}"}

    logger.info("Signalled process", pid=pid, signal=name)
    return {"success": True, "data": {"pid": pid, "signal": name}}


async def list_environment_variables(params: dict[str, Any]) -> dict[str, Any]:
    """Environment variables, optionally filtered by a case-insensitive substring."""
    needle = (params.get("filter") or "").upper()
    variables = {
        key: value for key, value in sorted(os.environ.items())
        if needle in key.upper()
    }
    return {"success": True, "data": {"variables": variables, "count": len(variables)}}


async def get_disk_usage(params: dict[str, Any]) -> dict[str, Any]:
    path = params.get("path") or os.getcwd()
    usage = await asyncio.to_thread(shutil.disk_usage, path)
    return {
        "success": True,
        "data": {
            "path": path,
            "total": usage.total,
            "used": usage.used,
            "free": usage.free,
            "percent_used": round(usage.used / usage.total * 100, 1) if usage.total else 0.0,
        },
    }


async def schedule_task(params: dict[str, Any]) -> dict[str, Any]:
    """
    Register a recurring command with the OS scheduler.

    Uses the user's crontab (cron expression in `schedule`) on POSIX and
    schtasks (schedule type such as DAILY) on Windows.
    """
    command = params["command"]
    schedule = params["schedule"]
    name = params.get("name") or f"task_{int(datetime.now(timezone.utc).timestamp())}"

    if IS_WINDOWS:
        scheduler_command = (
            f"schtasks /create /tn {shlex.quote(name)} /tr {shlex.quote(command)} /sc {schedule}"
        )
    else:
        entry = f"{schedule} {command} # {name}"
        scheduler_command = f"(crontab -l 2>/dev/null; echo {shlex.quote(entry)}) | crontab -"

    output = await run_shell(scheduler_command)
    data = {"name": name, "schedule": schedule, "command": command, **output}

    if output["exit_code"] != 0:
        return {"success": False, "error": f"Scheduling failed: {output['stderr']}", "data": data}

    logger.info("Scheduled task", name=name, schedule=schedule)
    return {"success": True, "data": data}


def plugin() -> Plugin:
    return Plugin(
        name="system",
        version="1.0.0",
        description="System operations: time, host information, processes, environment and shell commands",
        author="Assistant Gateway",
        tools=[
            ToolDefinition(
                name="get_time",
                description="Get the current date and time in UTC",
                executor=get_time,
            ),
            ToolDefinition(
                name="get_system_info",
                description="Get information about the host system",
                executor=get_system_info,
            ),
            ToolDefinition(
                name="execute_command",
                description="Execute a shell command and return its output",
                parameters=ToolParameters(
                    properties={
                        "command": {"type": "string", "description": "Command to execute"},
                        "cwd": {"type": "string", "description": "Working directory for the command"},
                        "timeout": {"type": "number", "description": "Timeout in seconds", "exclusiveMinimum": 0},
                    },
                    required=["command"],
                ),
                executor=execute_command,
            ),
            ToolDefinition(
                name="get_process_info",
                description="Get information about running processes, or one process by PID",
                parameters=ToolParameters(
                    properties={
                        "pid": {"type": "integer", "description": "Process ID (all processes if omitted)", "minimum": 1},
                    },
                ),
                executor=get_process_info,
            ),
            ToolDefinition(
                name="kill_process",
                description="Send a signal to a process by PID",
                parameters=ToolParameters(
                    properties={
                        "pid": {"type": "integer", "description": "Process ID to signal", "minimum": 1},
                        "signal": {"type": "string", "description": "Signal name (default: SIGTERM)", "default": "SIGTERM"},
                    },
                    required=["pid"],
                ),
                executor=kill_process,
            ),
            ToolDefinition(
                name="list_environment_variables",
                description="List environment variables, optionally filtered by name",
                parameters=ToolParameters(
                    properties={
                        "filter": {"type": "string", "description": "Only variables whose name contains this text"},
                    },
                ),
                executor=list_environment_variables,
            ),
            ToolDefinition(
                name="get_disk_usage",
                description="Get disk usage for the filesystem holding a path",
                parameters=ToolParameters(
                    properties={
                        "path": {"type": "string", "description": "Path to check (default: current directory)"},
                    },
                ),
                executor=get_disk_usage,
            ),
            ToolDefinition(
                name="schedule_task",
                description="Schedule a command to run on a recurring schedule",
                parameters=ToolParameters(
                    properties={
                        "command": {"type": "string", "description": "Command to execute"},
                        "schedule": {"type": "string", "description": "Cron expression (or schtasks schedule on Windows)"},
                        "name": {"type": "string", "description": "Name for the scheduled task"},
                    },
                    required=["command", "schedule"],
                ),
                executor=schedule_task,
            ),
        ],
    )
