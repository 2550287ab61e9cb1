import pytest

from core.types_registry import ExecutionContext, ExecutionResult, NodeCancelledError
from nodes.base.executable import (
    create_node_executable,
    failure_result,
    get_input_value,
    result_metadata,
    retry_async,
    success_result,
)


async def _noop(context, params):
    return ExecutionResult(success=True, outputs=params)


class TestCreateNodeExecutable:
    def test_requires_callable_execute(self):
        with pytest.raises(TypeError):
            create_node_executable(None)

    def test_raw_parameters_when_no_validation(self):
        executable = create_node_executable(_noop)
        context = ExecutionContext(node_id="n", parameters={"a": 1})

        params = executable.get_validated_params(context)

        assert params == {"a": 1}
        assert params is not context.parameters

    def test_missing_parameters_become_empty_dict(self):
        executable = create_node_executable(_noop)
        assert executable.get_validated_params(ExecutionContext(node_id="n", parameters=None)) == {}

    def test_validate_config_receives_parameters(self):
        executable = create_node_executable(_noop, validate_config=lambda p: {"seen": p})
        context = ExecutionContext(node_id="n", parameters={"a": 1})
        assert executable.get_validated_params(context) == {"seen": {"a": 1}}

    def test_explicit_derivation_wins(self):
        executable = create_node_executable(
            _noop,
            validate_config=lambda p: {"from": "config"},
            get_validated_params=lambda ctx: {"from": "explicit"},
        )
        assert executable.get_validated_params(ExecutionContext(node_id="n")) == {"from": "explicit"}

    @pytest.mark.asyncio
    async def test_execute_is_kept(self):
        executable = create_node_executable(_noop)
        result = await executable.execute(ExecutionContext(node_id="n"), {"x": 1})
        assert result.outputs == {"x": 1}


class TestLeafHelpers:
    def test_get_input_value_prefers_input(self):
        context = ExecutionContext(node_id="n", inputs={"url": "from-input"})
        assert get_input_value(context, "url", {"url": "from-config"}) == "from-input"

    def test_get_input_value_none_input_falls_back(self):
        context = ExecutionContext(node_id="n", inputs={"url": None})
        assert get_input_value(context, "url", {"url": "from-config"}) == "from-config"
        assert get_input_value(context, "missing", {}, "fallback") == "fallback"

    def test_results(self):
        ok = success_result({"a": 1})
        bad = failure_result(ValueError("nope"), outputs={"partial": True}, node_type="x")

        assert ok.success is True and ok.outputs == {"a": 1} and ok.metadata is None
        assert bad.success is False
        assert bad.error == "nope"
        assert bad.outputs == {"partial": True}
        assert bad.metadata == {"node_type": "x"}

    def test_result_metadata(self):
        meta = result_metadata(ExecutionContext(node_id="abc"), "transform", operation="map")
        assert meta["node_id"] == "abc"
        assert meta["node_type"] == "transform"
        assert meta["operation"] == "map"
        assert "executed_at" in meta


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        attempts = []

        async def flaky(attempt):
            attempts.append(attempt)
            if attempt < 2:
                raise ValueError("not yet")
            return "done"

        assert await retry_async(flaky, 2, 0) == "done"
        assert attempts == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_reraises_last_error(self):
        calls = 0

        async def always_fails(attempt):
            nonlocal calls
            calls += 1
            raise ValueError(f"failure {attempt}")

        with pytest.raises(ValueError, match="failure 1"):
            await retry_async(always_fails, 1, 0)
        assert calls == 2

    @pytest.mark.asyncio
    async def test_cancellation_is_not_retried(self):
        calls = 0

        async def cancelled(attempt):
            nonlocal calls
            calls += 1
            raise NodeCancelledError("stop")

        with pytest.raises(NodeCancelledError):
            await retry_async(cancelled, 3, 0)
        assert calls == 1
