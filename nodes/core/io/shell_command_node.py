import asyncio
import logging
import os
import signal as signals
import time
from typing import Any

from pydantic import Field

from config.settings import EngineSettings
from core.concurrency import run_cancellable
from core.types_registry import ExecutionContext, ExecutionResult, NodeCancelledError, error_message
from nodes.base.definition import create_node_definition
from nodes.base.executable import (
    NodeExecutable,
    create_node_executable,
    failure_result,
    get_input_value,
    result_metadata,
    success_result,
)
from nodes.base.metadata import create_node_metadata
from nodes.base.parameters import create_node_parameters
from nodes.base.ports import create_node_ports

logger = logging.getLogger(__name__)

# Grace period between the configured kill signal and SIGKILL
KILL_GRACE_SECONDS = 2.0

shell_command_parameters = create_node_parameters(
    {
        "command": (str, Field(default="", description="Command to run")),
        "args": (list[str], Field(default_factory=list, description="Arguments; when set the command runs without a shell")),
        "shell": (str, Field(default="", description="Shell used to run the command")),
        "stdin": (str | None, Field(default=None, description="Text written to the process stdin")),
        "capture_output": (bool, Field(default=True, description="Collect stdout and stderr")),
        "cwd": (str | None, Field(default=None, description="Working directory")),
        "env": (dict[str, str], Field(default_factory=dict, description="Extra environment variables")),
        "kill_signal": (str, Field(default="SIGTERM", description="Signal sent on timeout or cancel")),
    },
    {
        "command": "",
        "args": [],
        "shell": "",
        "capture_output": True,
        "env": {},
        "kill_signal": "SIGTERM",
    },
    {
        "command": {
            "control_type": "textarea",
            "label": "Command",
            "placeholder": "ls -la",
            "rows": 3,
            "required": True,
        },
        "args": {"control_type": "textarea", "label": "Arguments", "rows": 2},
        "shell": {"control_type": "text", "label": "Shell", "placeholder": "bash"},
        "stdin": {"control_type": "textarea", "label": "Standard input", "rows": 3},
        "capture_output": {"control_type": "boolean", "label": "Capture output"},
    },
    model_name="ShellCommandParams",
)

shell_command_definition = create_node_definition(
    id="shell-command",
    type="shell-command",
    metadata=create_node_metadata(
        {
            "id": "shell-command",
            "name": "Shell Command",
            "description": "Run a shell command and capture its output",
            "category": "system",
            "icon": "terminal",
            "keywords": ["shell", "command", "bash", "terminal", "exec", "process", "script"],
        }
    ),
    parameters=shell_command_parameters,
    ports=create_node_ports(
        {
            "input": [
                {"id": "command", "name": "Command", "data_type": "string"},
                {"id": "args", "name": "Arguments", "data_type": "array"},
                {"id": "stdin", "name": "Stdin", "data_type": "string"},
            ],
            "output": [
                {"id": "result", "name": "Result", "data_type": "object"},
                {"id": "stdout", "name": "Stdout", "data_type": "string"},
                {"id": "stderr", "name": "Stderr", "data_type": "string"},
                {"id": "exit_code", "name": "Exit code", "data_type": "number"},
            ],
            "error": [{"id": "error", "name": "Error", "data_type": "string"}],
        }
    ),
)


def _resolve_signal(name: str) -> int:
    try:
        return int(getattr(signals, name.upper()))
    except AttributeError:
        logger.warning(f"Unknown kill signal {name}, using SIGTERM")
        return int(signals.SIGTERM)


async def _terminate(process: asyncio.subprocess.Process, kill_signal: int) -> None:
    if process.returncode is not None:
        return
    try:
        process.send_signal(kill_signal)
        await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
    except ProcessLookupError:
        return
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()


def create_shell_command_executable(settings: EngineSettings | None = None) -> NodeExecutable:
    default_shell = settings.default_shell if settings else "bash"

    async def execute(context: ExecutionContext, params: dict[str, Any]) -> ExecutionResult:
        command = get_input_value(context, "command", params)
        if not command:
            return failure_result("No command provided")
        args = list(get_input_value(context, "args", params) or [])
        stdin_text = get_input_value(context, "stdin", params)
        capture = params["capture_output"]
        timeout_ms = params["timeout"]
        kill_signal = _resolve_signal(params["kill_signal"])
        env = {**os.environ, **(params.get("env") or {})}

        if args:
            argv = [command, *args]
        else:
            argv = [params["shell"] or default_shell, "-c", command]
        pipe = asyncio.subprocess.PIPE if capture else asyncio.subprocess.DEVNULL

        started = time.monotonic()
        timed_out = False
        cancelled = False
        stdout = stderr = ""
        exit_code: int | None = None
        spawn_error: str | None = None
        context.logger.info(f"Running command: {' '.join(argv)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if stdin_text is not None else asyncio.subprocess.DEVNULL,
                stdout=pipe,
                stderr=pipe,
                cwd=params.get("cwd") or None,
                env=env,
            )
        except OSError as e:
            spawn_error = error_message(e)
            context.logger.error(f"Failed to start command: {spawn_error}")
        else:
            stdin_bytes = stdin_text.encode() if stdin_text is not None else None
            try:
                out, err = await run_cancellable(
                    asyncio.wait_for(process.communicate(stdin_bytes), timeout=timeout_ms / 1000 if timeout_ms else None),
                    context.signal,
                )
                stdout = (out or b"").decode(errors="replace")
                stderr = (err or b"").decode(errors="replace")
            except asyncio.TimeoutError:
                timed_out = True
                context.logger.warning(f"Command timed out after {timeout_ms}ms, sending {params['kill_signal']}")
                await _terminate(process, kill_signal)
            except NodeCancelledError:
                cancelled = True
                context.logger.warning(f"Command cancelled, sending {params['kill_signal']}")
                await _terminate(process, kill_signal)
            except asyncio.CancelledError:
                await _terminate(process, kill_signal)
                raise
            exit_code = process.returncode

        duration = int((time.monotonic() - started) * 1000)
        succeeded = spawn_error is None and not timed_out and not cancelled and exit_code == 0
        if timed_out:
            stderr = stderr or f"Command timed out after {timeout_ms}ms"
        payload = {
            "command": command,
            "args": args,
            "stdout": stdout,
            "stderr": spawn_error or stderr,
            "exit_code": exit_code,
            "success": succeeded,
            "timed_out": timed_out,
            "cancelled": cancelled,
            "duration": duration,
        }
        # Outer success stays True once a command ran unless it was cancelled; process failure lives in the payload
        outputs = {
            "result": payload,
            "stdout": payload["stdout"],
            "stderr": payload["stderr"],
            "exit_code": exit_code,
            "success": True,
            "timed_out": timed_out,
            "duration": duration,
        }
        metadata = result_metadata(context, "shell-command")
        if cancelled:
            return failure_result(
                "Command cancelled", outputs={**outputs, "success": False, "cancelled": True}, **metadata
            )
        return success_result(outputs, **metadata)

    return create_node_executable(execute, validate_config=shell_command_parameters.parse)
