import asyncio
import time

import pytest


async def _run(registry, make_context, params, inputs=None, **kwargs):
    return await registry.execute("shell-command", make_context(inputs or {}, params, node_id="sh-1", **kwargs))


class TestShellCommandNode:
    @pytest.mark.asyncio
    async def test_echo(self, registry, make_context):
        result = await _run(registry, make_context, {"command": "echo hello"})

        assert result.success is True
        outputs = result.outputs
        assert outputs["stdout"] == "hello\n"
        assert outputs["exit_code"] == 0
        assert outputs["result"]["success"] is True
        assert outputs["timed_out"] is False

    @pytest.mark.asyncio
    async def test_nonzero_exit_keeps_outer_success(self, registry, make_context):
        result = await _run(registry, make_context, {"command": "echo oops >&2; exit 3"})

        assert result.success is True
        assert result.outputs["success"] is True
        assert result.outputs["exit_code"] == 3
        assert result.outputs["stderr"] == "oops\n"
        assert result.outputs["result"]["success"] is False

    @pytest.mark.asyncio
    async def test_args_run_without_a_shell(self, registry, make_context):
        result = await _run(registry, make_context, {"command": "printf", "args": ["%s-%s", "a", "b"]})
        assert result.outputs["stdout"] == "a-b"

    @pytest.mark.asyncio
    async def test_stdin(self, registry, make_context):
        result = await _run(registry, make_context, {"command": "cat"}, {"stdin": "piped data"})
        assert result.outputs["stdout"] == "piped data"

    @pytest.mark.asyncio
    async def test_env_and_cwd(self, registry, make_context, tmp_path):
        result = await _run(
            registry,
            make_context,
            {"command": 'echo "$GREETING"; pwd', "env": {"GREETING": "hi"}, "cwd": str(tmp_path)},
        )

        lines = result.outputs["stdout"].splitlines()
        assert lines[0] == "hi"
        assert lines[1].endswith(tmp_path.name)

    @pytest.mark.asyncio
    async def test_command_from_input(self, registry, make_context):
        result = await _run(registry, make_context, {"command": "echo config"}, {"command": "echo input"})
        assert result.outputs["stdout"] == "input\n"

    @pytest.mark.asyncio
    async def test_capture_disabled(self, registry, make_context):
        result = await _run(registry, make_context, {"command": "echo hidden", "capture_output": False})
        assert result.outputs["stdout"] == ""

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, registry, make_context):
        started = time.monotonic()
        result = await _run(registry, make_context, {"command": "sleep 5", "timeout": 200})

        assert time.monotonic() - started < 4
        assert result.success is True
        assert result.outputs["timed_out"] is True
        assert result.outputs["result"]["success"] is False
        assert "timed out" in result.outputs["stderr"]

    @pytest.mark.asyncio
    async def test_missing_command(self, registry, make_context):
        result = await _run(registry, make_context, {})

        assert result.success is False
        assert result.error == "No command provided"

    @pytest.mark.asyncio
    async def test_spawn_failure_is_reported_in_payload(self, registry, make_context):
        result = await _run(registry, make_context, {"command": "/nonexistent/binary", "args": ["x"]})

        assert result.success is True
        assert result.outputs["exit_code"] is None
        assert result.outputs["result"]["success"] is False
        assert result.outputs["stderr"]

    @pytest.mark.asyncio
    async def test_cancel_terminates_process(self, settings, make_context):
        from nodes.core.io.shell_command_node import create_shell_command_executable

        executable = create_shell_command_executable(settings)
        signal = asyncio.Event()
        asyncio.get_running_loop().call_later(0.1, signal.set)
        context = make_context({}, {"command": "sleep 5"}, signal=signal)

        started = time.monotonic()
        result = await executable.execute(context, executable.get_validated_params(context))

        assert time.monotonic() - started < 4
        assert result.success is False
        assert result.error == "Command cancelled"
        assert result.outputs["cancelled"] is True
        assert result.outputs["success"] is False
        assert result.outputs["result"]["cancelled"] is True
