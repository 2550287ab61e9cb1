import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Literal

from pydantic import Field

from core.concurrency import BoundedDispatcher, sleep_ms
from core.expressions import evaluate_condition
from core.operations import processor_factory
from core.types_registry import (
    ExecutionContext,
    ExecutionResult,
    NodeCancelledError,
    NodeConfigError,
    ProgressState,
    error_message,
)
from nodes.base.definition import create_node_definition
from nodes.base.executable import NodeExecutable, create_node_executable
from nodes.base.metadata import create_node_metadata
from nodes.base.parameters import create_node_parameters
from nodes.base.ports import create_node_ports

if TYPE_CHECKING:
    from core.node_registry import Registry

logger = logging.getLogger(__name__)

LoopType = Literal["forEach", "forRange", "times", "while", "doWhile", "until"]

BOUNDED_LOOP_TYPES = frozenset({"forEach", "forRange", "times"})

loop_parameters = create_node_parameters(
    {
        "loop_type": (LoopType, Field(default="forEach", description="Iteration strategy")),
        "items": (list | None, Field(default=None, description="Items for forEach when no input is wired")),
        "start_value": (int | float, Field(default=0, description="forRange start")),
        "end_value": (int | float, Field(default=10, description="forRange end (inclusive)")),
        "step_size": (int | float, Field(default=1, description="forRange step")),
        "times": (int, Field(default=10, ge=0, description="Iterations for the times loop")),
        "condition": (str, Field(default="", description="Expression for while/doWhile/until")),
        "max_iterations": (int, Field(default=1000, ge=1, description="Safety cap on iterations")),
        "batch_size": (int, Field(default=1, ge=1, le=1000, description="Sequential iterations per batch")),
        "delay": (int, Field(default=0, ge=0, description="Delay between batches (ms)")),
        "continue_on_error": (bool, Field(default=True, description="Record failures and keep going")),
        "parallel": (bool, Field(default=False, description="Fan out bounded loops")),
        "concurrency": (int, Field(default=5, ge=1, le=50, description="Parallel iterations in flight")),
    },
    {
        "loop_type": "forEach",
        "start_value": 0,
        "end_value": 10,
        "step_size": 1,
        "times": 10,
        "condition": "",
        "max_iterations": 1000,
        "batch_size": 1,
        "delay": 0,
        "continue_on_error": True,
        "parallel": False,
        "concurrency": 5,
    },
    {
        "loop_type": {
            "control_type": "select",
            "label": "Loop type",
            "options": [
                {"value": "forEach", "label": "For each item"},
                {"value": "forRange", "label": "For range"},
                {"value": "times", "label": "Repeat N times"},
                {"value": "while", "label": "While condition"},
                {"value": "doWhile", "label": "Do while condition"},
                {"value": "until", "label": "Until condition"},
            ],
        },
        "condition": {"control_type": "code", "label": "Condition", "placeholder": "iteration < 5"},
        "max_iterations": {"control_type": "number", "label": "Max iterations", "min": 1},
        "batch_size": {"control_type": "number", "label": "Batch size", "min": 1, "max": 1000},
        "delay": {"control_type": "number", "label": "Delay (ms)", "min": 0},
    },
    model_name="LoopParams",
)

loop_definition = create_node_definition(
    id="loop",
    type="loop",
    metadata=create_node_metadata(
        {
            "id": "loop",
            "name": "Loop",
            "description": "Iterate over items, ranges or conditions",
            "category": "logic",
            "icon": "repeat",
            "keywords": ["loop", "iterate", "for", "each", "while", "until", "repeat", "range"],
        }
    ),
    parameters=loop_parameters,
    ports=create_node_ports(
        {
            "input": [
                {"id": "items", "name": "Items", "data_type": "array"},
                {"id": "data", "name": "Data", "data_type": "any"},
                {"id": "processor", "name": "Processor", "data_type": "function"},
            ],
            "output": [
                {"id": "results", "name": "Results", "data_type": "array"},
                {"id": "iteration_count", "name": "Iteration count", "data_type": "number"},
                {"id": "errors", "name": "Errors", "data_type": "array"},
            ],
            "error": [{"id": "error", "name": "Error", "data_type": "string"}],
        }
    ),
)


def range_values(start: float, end: float, step: float, limit: int) -> list[float]:
    """Values from ``start`` to ``end`` inclusive, walking in the direction of ``step``."""
    if step == 0:
        raise NodeConfigError("step_size cannot be zero")
    values: list[float] = []
    i = 0
    while len(values) < limit:
        value = start + i * step
        if (step > 0 and value > end) or (step < 0 and value < end):
            break
        values.append(value)
        i += 1
    return values


class _LoopState:
    def __init__(self, params: dict[str, Any], context: ExecutionContext):
        self.params = params
        self.context = context
        self.results: list[Any] = []
        self.errors: list[dict[str, Any]] = []
        self.iteration_count = 0
        self.aborted = False

    def condition_names(self) -> dict[str, Any]:
        inputs = self.context.inputs or {}
        return {
            "iteration": self.iteration_count,
            "index": self.iteration_count,
            "results": list(self.results),
            "last": self.results[-1] if self.results else None,
            "inputs": dict(inputs),
            "data": inputs.get("data"),
        }

    def record_error(self, iteration: int, value: Any, exc: BaseException) -> None:
        self.errors.append({"iteration": iteration, "item": value, "error": error_message(exc)})
        if not self.params["continue_on_error"]:
            self.aborted = True

    def outputs(self, started: float) -> dict[str, Any]:
        completed = self.iteration_count > 0
        return {
            "results": self.results,
            "iteration_count": self.iteration_count,
            "errors": self.errors,
            "success": not self.errors,
            "duration": int((time.monotonic() - started) * 1000),
            "completed": completed,
            "stopped": not completed and self.iteration_count < self.params["max_iterations"],
        }


def _bounded_values(context: ExecutionContext, params: dict[str, Any]) -> list[Any]:
    loop_type = params["loop_type"]
    if loop_type == "forEach":
        inputs = context.inputs or {}
        items = next(
            (v for v in (inputs.get("items"), inputs.get("data"), params.get("items")) if v is not None),
            None,
        )
        if not isinstance(items, (list, tuple)):
            raise NodeConfigError("forEach loop requires an array of items")
        return list(items)
    if loop_type == "forRange":
        return range_values(
            params["start_value"], params["end_value"], params["step_size"], params["max_iterations"]
        )
    return list(range(min(params["times"], params["max_iterations"])))


async def _run_sequential(
    state: _LoopState, values: list[Any], body: Callable[[Any, int], Awaitable[Any]]
) -> None:
    batch_size = state.params["batch_size"]
    for index, value in enumerate(values):
        if state.context.cancelled:
            raise NodeCancelledError("Loop cancelled")
        if index > 0 and index % batch_size == 0 and state.params["delay"]:
            await sleep_ms(state.params["delay"], state.context.signal)
        state.iteration_count += 1
        try:
            state.results.append(await body(value, index))
        except NodeCancelledError:
            raise
        except Exception as e:
            state.record_error(index, value, e)
            if state.aborted:
                return
        state.context.emit_progress(
            ProgressState.UPDATE, state.iteration_count / len(values) * 100, f"iteration {state.iteration_count}"
        )


async def _run_parallel(
    state: _LoopState, values: list[Any], body: Callable[[Any, int], Awaitable[Any]]
) -> None:
    factories = [(lambda v=value, i=index: body(v, i)) for index, value in enumerate(values)]
    dispatcher = BoundedDispatcher(
        factories,
        state.params["concurrency"],
        stop_when=None if state.params["continue_on_error"] else (lambda s: not s.ok),
        cancel_running=not state.params["continue_on_error"],
    )
    await dispatcher.run()
    state.iteration_count = len(dispatcher.completion_order)
    for settled in dispatcher.settled:
        if settled.ok:
            state.results.append(settled.value)
        else:
            state.errors.append(
                {"iteration": settled.index, "item": values[settled.index], "error": error_message(settled.error)}
            )
    state.aborted = not state.params["continue_on_error"] and bool(state.errors)


async def _run_conditional(state: _LoopState, body: Callable[[Any, int], Awaitable[Any]]) -> None:
    loop_type = state.params["loop_type"]
    condition = state.params["condition"]
    if not condition:
        raise NodeConfigError(f"{loop_type} loop requires a condition")

    while state.iteration_count < state.params["max_iterations"]:
        if state.context.cancelled:
            raise NodeCancelledError("Loop cancelled")
        index = state.iteration_count
        try:
            if loop_type == "while" and not evaluate_condition(condition, state.condition_names()):
                return
            if index > 0 and state.params["delay"]:
                await sleep_ms(state.params["delay"], state.context.signal)
            state.iteration_count += 1
            state.results.append(await body(index, index))
            if loop_type == "doWhile" and not evaluate_condition(condition, state.condition_names()):
                return
            if loop_type == "until" and evaluate_condition(condition, state.condition_names()):
                return
        except NodeCancelledError:
            raise
        except Exception as e:
            # The next condition depends on this pass, so an error always ends the loop
            state.record_error(index, index, e)
            return


def create_loop_executable(registry: "Registry | None" = None) -> NodeExecutable:
    async def execute(context: ExecutionContext, params: dict[str, Any]) -> ExecutionResult:
        started = time.monotonic()
        state = _LoopState(params, context)
        loop_type = params["loop_type"]
        try:
            body = processor_factory((context.inputs or {}).get("processor"), context, registry)
            if loop_type in BOUNDED_LOOP_TYPES:
                values = _bounded_values(context, params)
                context.logger.info(f"Starting {loop_type} loop over {len(values)} values")
                if params["parallel"]:
                    await _run_parallel(state, values, body)
                else:
                    await _run_sequential(state, values, body)
            else:
                context.logger.info(f"Starting {loop_type} loop (max {params['max_iterations']} iterations)")
                await _run_conditional(state, body)
        except NodeConfigError as e:
            return ExecutionResult(success=False, error=error_message(e))
        except NodeCancelledError as e:
            return ExecutionResult(success=False, outputs=state.outputs(started), error=error_message(e))

        outputs = state.outputs(started)
        context.logger.info(
            f"Loop completed: {state.iteration_count} iterations, "
            f"{len(state.results)} results, {len(state.errors)} errors"
        )
        if state.aborted:
            return ExecutionResult(success=False, outputs=outputs, error=state.errors[0]["error"])
        return ExecutionResult(success=True, outputs=outputs)

    return create_node_executable(execute, validate_config=loop_parameters.parse)
