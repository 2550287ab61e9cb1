import asyncio

import pytest

from nodes.core.flow import loop_node
from nodes.core.flow.loop_node import range_values


async def _run(registry, make_context, params, inputs=None, **kwargs):
    return await registry.execute("loop", make_context(inputs or {}, params, node_id="loop-1", **kwargs))


class TestBoundedLoops:
    @pytest.mark.asyncio
    async def test_for_range_is_inclusive(self, registry, make_context):
        result = await _run(
            registry, make_context, {"loop_type": "forRange", "start_value": 0, "end_value": 10, "step_size": 2}
        )

        assert result.success is True
        assert result.outputs["results"] == [0, 2, 4, 6, 8, 10]
        assert result.outputs["iteration_count"] == 6

    @pytest.mark.asyncio
    async def test_times_is_capped_by_max_iterations(self, registry, make_context):
        result = await _run(registry, make_context, {"loop_type": "times", "times": 5, "max_iterations": 3})

        assert result.outputs["iteration_count"] == 3
        assert result.outputs["results"] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_for_each_with_processor(self, registry, make_context):
        result = await _run(
            registry,
            make_context,
            {"loop_type": "forEach"},
            {"items": ["a", "b"], "processor": lambda value, index: f"{index}:{value}"},
        )

        assert result.outputs["results"] == ["0:a", "1:b"]
        assert result.outputs["completed"] is True

    @pytest.mark.asyncio
    async def test_for_each_items_from_config(self, registry, make_context):
        result = await _run(registry, make_context, {"loop_type": "forEach", "items": [3, 4]})
        assert result.outputs["results"] == [3, 4]

    @pytest.mark.asyncio
    async def test_for_each_requires_items(self, registry, make_context):
        result = await _run(registry, make_context, {"loop_type": "forEach"})

        assert result.success is False
        assert result.error == "forEach loop requires an array of items"

    @pytest.mark.asyncio
    async def test_zero_step_fails(self, registry, make_context):
        result = await _run(registry, make_context, {"loop_type": "forRange", "step_size": 0})

        assert result.success is False
        assert result.error == "step_size cannot be zero"

    def test_range_values_descending_and_fractional(self):
        assert range_values(5, 1, -2, 100) == [5, 3, 1]
        assert range_values(0, 1, 0.5, 100) == [0, 0.5, 1.0]
        assert range_values(0, 100, 1, 3) == [0, 1, 2]


class TestLoopErrors:
    @staticmethod
    def _fails_on_two(value, index):
        if value == 2:
            raise ValueError("two is not allowed")
        return value * 10

    @pytest.mark.asyncio
    async def test_stop_at_first_failure(self, registry, make_context):
        result = await _run(
            registry,
            make_context,
            {"loop_type": "forEach", "continue_on_error": False},
            {"items": [1, 2, 3], "processor": self._fails_on_two},
        )

        assert result.success is False
        assert result.error == "two is not allowed"
        assert len(result.outputs["errors"]) == 1
        assert result.outputs["errors"][0] == {"iteration": 1, "item": 2, "error": "two is not allowed"}
        assert result.outputs["results"] == [10]
        assert result.outputs["iteration_count"] == 2

    @pytest.mark.asyncio
    async def test_continue_on_error_collects(self, registry, make_context):
        result = await _run(
            registry,
            make_context,
            {"loop_type": "forEach"},
            {"items": [1, 2, 3], "processor": self._fails_on_two},
        )

        assert result.success is True
        assert result.outputs["success"] is False
        assert result.outputs["results"] == [10, 30]
        assert len(result.outputs["errors"]) == 1

    @pytest.mark.asyncio
    async def test_unsupported_processor(self, registry, make_context):
        result = await _run(registry, make_context, {"loop_type": "times", "times": 2}, {"processor": 42})

        assert result.success is False
        assert "Unsupported processor" in result.error


class TestConditionalLoops:
    @pytest.mark.asyncio
    async def test_while(self, registry, make_context):
        result = await _run(registry, make_context, {"loop_type": "while", "condition": "iteration < 3"})

        assert result.outputs["results"] == [0, 1, 2]
        assert result.outputs["iteration_count"] == 3

    @pytest.mark.asyncio
    async def test_do_while_runs_at_least_once(self, registry, make_context):
        result = await _run(registry, make_context, {"loop_type": "doWhile", "condition": "false"})
        assert result.outputs["iteration_count"] == 1

    @pytest.mark.asyncio
    async def test_until_sees_last_result(self, registry, make_context):
        result = await _run(
            registry,
            make_context,
            {"loop_type": "until", "condition": "last >= 4"},
            {"processor": lambda value, index: index * 2},
        )

        assert result.outputs["results"] == [0, 2, 4]

    @pytest.mark.asyncio
    async def test_condition_reads_inputs(self, registry, make_context):
        result = await _run(
            registry, make_context, {"loop_type": "while", "condition": "iteration < data"}, {"data": 2}
        )
        assert result.outputs["iteration_count"] == 2

    @pytest.mark.asyncio
    async def test_max_iterations_bounds_endless_conditions(self, registry, make_context):
        result = await _run(
            registry, make_context, {"loop_type": "while", "condition": "true", "max_iterations": 5}
        )
        assert result.outputs["iteration_count"] == 5

    @pytest.mark.asyncio
    async def test_missing_condition(self, registry, make_context):
        result = await _run(registry, make_context, {"loop_type": "until"})

        assert result.success is False
        assert result.error == "until loop requires a condition"

    @pytest.mark.asyncio
    async def test_condition_error_ends_loop(self, registry, make_context):
        result = await _run(registry, make_context, {"loop_type": "while", "condition": "missing_name"})

        assert result.outputs["iteration_count"] == 0
        assert len(result.outputs["errors"]) == 1
        assert "missing_name" in result.outputs["errors"][0]["error"]


class TestLoopExecution:
    @pytest.mark.asyncio
    async def test_parallel_keeps_item_order(self, registry, make_context):
        async def slow_first(value, index):
            await asyncio.sleep(0.05 if index == 0 else 0)
            return value

        result = await _run(
            registry,
            make_context,
            {"loop_type": "forEach", "parallel": True, "concurrency": 3},
            {"items": ["a", "b", "c"], "processor": slow_first},
        )

        assert result.outputs["results"] == ["a", "b", "c"]
        assert result.outputs["iteration_count"] == 3

    @pytest.mark.asyncio
    async def test_node_invocation_processor(self, registry, make_context):
        processor = {"type": "transform", "parameters": {"operation": "map", "transform_function": "item * index"}}

        result = await _run(
            registry,
            make_context,
            {"loop_type": "forEach"},
            {"items": [[1, 2], [3]], "processor": processor},
        )

        assert [r["result"] for r in result.outputs["results"]] == [[0, 2], [0]]

    @pytest.mark.asyncio
    async def test_delay_between_iterations(self, registry, make_context):
        loop = asyncio.get_running_loop()
        started = loop.time()

        await _run(registry, make_context, {"loop_type": "times", "times": 3, "delay": 50})

        assert loop.time() - started >= 0.09

    @pytest.mark.asyncio
    async def test_delay_only_between_batches(self, registry, make_context, monkeypatch):
        sleeps = []

        async def record_sleep(ms, signal=None):
            sleeps.append(ms)

        monkeypatch.setattr(loop_node, "sleep_ms", record_sleep)
        seen = []

        result = await _run(
            registry,
            make_context,
            {"loop_type": "forEach", "batch_size": 2, "delay": 25},
            {"items": ["a", "b", "c", "d", "e"], "processor": lambda value, index: seen.append(index) or value},
        )

        assert result.outputs["results"] == ["a", "b", "c", "d", "e"]
        assert seen == [0, 1, 2, 3, 4]
        assert sleeps == [25, 25]

    def test_batch_size_bounds(self):
        assert loop_node.loop_parameters.is_valid({"batch_size": 0}) is False
        assert loop_node.loop_parameters.is_valid({"batch_size": 1001}) is False
        assert loop_node.loop_parameters.parse({})["batch_size"] == 1

    @pytest.mark.asyncio
    async def test_times_defaults_to_ten(self, registry, make_context):
        result = await _run(registry, make_context, {"loop_type": "times"})

        assert result.outputs["results"] == list(range(10))

    @pytest.mark.asyncio
    async def test_cancel_signal_stops_loop(self, registry, make_context):
        signal = asyncio.Event()

        def stop_after_second(value, index):
            if index == 1:
                signal.set()
            return value

        result = await _run(
            registry,
            make_context,
            {"loop_type": "times", "times": 10},
            {"processor": stop_after_second},
            signal=signal,
        )

        assert result.success is False
        assert result.error == "Loop cancelled"
        assert result.outputs["iteration_count"] == 2
