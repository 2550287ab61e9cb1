import logging
import time
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Literal

from pydantic import Field

from config.settings import EngineSettings
from core.concurrency import BoundedDispatcher, Settled, run_cancellable, with_timeout
from core.operations import operation_factory
from core.types_registry import (
    AggregateNodeError,
    ExecutionContext,
    ExecutionResult,
    NodeCancelledError,
    NodeTimeoutError,
    ProgressState,
    error_message,
)
from nodes.base.definition import create_node_definition
from nodes.base.executable import NodeExecutable, create_node_executable, retry_async
from nodes.base.metadata import create_node_metadata
from nodes.base.parameters import create_node_parameters
from nodes.base.ports import create_node_ports

if TYPE_CHECKING:
    from core.node_registry import Registry

logger = logging.getLogger(__name__)

Strategy = Literal["all", "race", "allSettled"]

parallel_parameters = create_node_parameters(
    {
        "concurrency": (int, Field(default=5, ge=1, le=50, description="Maximum operations in flight")),
        "strategy": (Strategy, Field(default="allSettled", description="How outcomes are combined")),
        "operation_timeout": (int, Field(default=30000, ge=0, description="Per-operation timeout (ms)")),
        "global_timeout": (int, Field(default=120000, ge=0, description="Timeout for the whole call (ms)")),
        "fail_fast": (bool, Field(default=False, description="Stop starting operations after a failure")),
        "maintain_order": (bool, Field(default=True, description="Keep results in input order")),
        "retry_count": (int, Field(default=0, ge=0, le=10, description="Retries per operation")),
        "retry_delay": (int, Field(default=1000, ge=0, description="Delay between retries (ms)")),
        "operations": (list | None, Field(default=None, description="Operations when no input is wired")),
    },
    {
        "concurrency": 5,
        "strategy": "allSettled",
        "operation_timeout": 30000,
        "global_timeout": 120000,
        "fail_fast": False,
        "maintain_order": True,
        "retry_count": 0,
        "retry_delay": 1000,
    },
    {
        "concurrency": {"control_type": "number", "label": "Concurrency", "min": 1, "max": 50},
        "strategy": {
            "control_type": "select",
            "label": "Strategy",
            "options": [
                {"value": "all", "label": "All (fail fast)"},
                {"value": "race", "label": "Race (first to settle)"},
                {"value": "allSettled", "label": "All settled"},
            ],
        },
        "operation_timeout": {"control_type": "number", "label": "Operation timeout (ms)"},
        "global_timeout": {"control_type": "number", "label": "Global timeout (ms)"},
        "fail_fast": {"control_type": "boolean", "label": "Fail fast"},
        "maintain_order": {"control_type": "boolean", "label": "Maintain order"},
    },
    model_name="ParallelParams",
)

parallel_definition = create_node_definition(
    id="parallel",
    type="parallel",
    metadata=create_node_metadata(
        {
            "id": "parallel",
            "name": "Parallel",
            "description": "Run multiple operations at once with bounded concurrency",
            "category": "logic",
            "icon": "git-fork",
            "keywords": ["parallel", "concurrent", "fan-out", "race", "batch", "async"],
        }
    ),
    parameters=parallel_parameters,
    ports=create_node_ports(
        {
            "input": [
                {"id": "operations", "name": "Operations", "data_type": "array", "required": True},
                {"id": "data", "name": "Data", "data_type": "array"},
            ],
            "output": [
                {"id": "results", "name": "Results", "data_type": "array"},
                {"id": "errors", "name": "Errors", "data_type": "array"},
                {"id": "completed", "name": "Completed", "data_type": "number"},
                {"id": "failed", "name": "Failed", "data_type": "number"},
            ],
            "error": [{"id": "error", "name": "Error", "data_type": "string"}],
        }
    ),
)


def _resolve_operations(context: ExecutionContext, params: dict[str, Any]) -> Any:
    inputs = context.inputs or {}
    for value in (inputs.get("operations"), inputs.get("data"), params.get("operations")):
        if value is not None:
            return value
    return None


def _error_entry(operations: Sequence[Any], settled: Settled[Any]) -> dict[str, Any]:
    operation = operations[settled.index]
    return {
        "index": settled.index,
        "item": None if callable(operation) else operation,
        "error": error_message(settled.error) if settled.error else "Unknown error",
        "timed_out": isinstance(settled.error, NodeTimeoutError),
    }


class _ParallelRun:
    def __init__(
        self,
        operations: Sequence[Any],
        params: dict[str, Any],
        context: ExecutionContext,
        registry: "Registry | None",
        max_concurrency: int,
    ):
        self.operations = list(operations)
        self.params = params
        self.context = context
        self.strategy: Strategy = params["strategy"]
        self.total = len(self.operations)

        factories = [self._factory(op, i, registry) for i, op in enumerate(self.operations)]
        concurrency = min(params["concurrency"], max_concurrency)
        if self.strategy == "race":
            stop_when, cancel_running = (lambda s: True), True
        elif self.strategy == "all":
            stop_when, cancel_running = (lambda s: not s.ok), True
        elif params["fail_fast"]:
            # allSettled + fail_fast: started operations still finish
            stop_when, cancel_running = (lambda s: not s.ok), False
        else:
            stop_when, cancel_running = None, False
        self.dispatcher = BoundedDispatcher(
            factories,
            concurrency,
            stop_when=stop_when,
            cancel_running=cancel_running,
            on_settled=self._on_settled,
        )

    def _factory(self, operation: Any, index: int, registry: "Registry | None"):
        make = operation_factory(operation, index, self.context, registry)
        timeout = self.params["operation_timeout"]

        async def attempt(_: int) -> Any:
            return await with_timeout(make(), timeout, f"Operation {index} timed out after {timeout}ms")

        return lambda: retry_async(
            attempt,
            self.params["retry_count"],
            self.params["retry_delay"],
            signal=self.context.signal,
            label=f"Operation {index}",
        )

    def _on_settled(self, settled: Settled[Any]) -> None:
        done = len(self.dispatcher.completion_order)
        self.context.emit_progress(
            ProgressState.UPDATE,
            done / self.total * 100 if self.total else 100.0,
            f"{done}/{self.total} operations settled",
        )

    async def run(self) -> None:
        await run_cancellable(
            with_timeout(
                self.dispatcher.run(),
                self.params["global_timeout"],
                f"Parallel execution timed out after {self.params['global_timeout']}ms",
            ),
            self.context.signal,
        )

    def outputs(self, started: float, abort: BaseException | None = None) -> dict[str, Any]:
        d = self.dispatcher
        if self.strategy == "race":
            winner = d.completion_order[0] if d.completion_order else None
            ok = [winner] if winner is not None and winner.ok else []
            bad = [winner] if winner is not None and not winner.ok else []
            results = [winner.value if winner is not None and winner.ok else None]
        else:
            ok = [s for s in d.completion_order if s.ok]
            bad = [s for s in d.completion_order if not s.ok]
            if self.params["maintain_order"]:
                results = [s.value if s is not None and s.ok else None for s in d.slots]
            else:
                results = [s.value for s in ok]

        errors = [_error_entry(self.operations, s) for s in sorted(bad, key=lambda s: s.index)]
        failed = len(bad)
        if abort is not None and self.strategy == "allSettled":
            # Anything that never settled counts as failed so the totals add up
            for index, slot in enumerate(d.slots):
                if slot is None:
                    errors.append(
                        {
                            "index": index,
                            "item": None if callable(self.operations[index]) else self.operations[index],
                            "error": error_message(abort),
                            "timed_out": isinstance(abort, NodeTimeoutError),
                        }
                    )
                    failed += 1

        return {
            "results": results,
            "errors": errors,
            "completed": len(ok),
            "failed": failed,
            "total": self.total,
            "duration": int((time.monotonic() - started) * 1000),
            "strategy": self.strategy,
            "success": failed == 0 and abort is None,
        }


def create_parallel_executable(
    registry: "Registry | None" = None, settings: EngineSettings | None = None
) -> NodeExecutable:
    max_concurrency = settings.max_parallel_concurrency if settings else 50

    async def execute(context: ExecutionContext, params: dict[str, Any]) -> ExecutionResult:
        started = time.monotonic()
        operations = _resolve_operations(context, params)
        if not isinstance(operations, (list, tuple)):
            return ExecutionResult(success=False, error="Parallel node requires a list of operations")
        if params["strategy"] == "race" and not operations:
            return ExecutionResult(success=False, error="Race strategy requires at least one operation")

        context.logger.info(
            f"Starting parallel execution: {len(operations)} operations, strategy={params['strategy']}, "
            f"concurrency={params['concurrency']}"
        )
        run = _ParallelRun(operations, params, context, registry, max_concurrency)
        try:
            await run.run()
        except (NodeTimeoutError, NodeCancelledError) as e:
            outputs = run.outputs(started, abort=e)
            context.logger.warning(f"Parallel execution aborted: {error_message(e)}")
            return ExecutionResult(success=False, outputs=outputs, error=error_message(e))

        outputs = run.outputs(started)
        context.logger.info(
            f"Parallel execution completed: {outputs['completed']} succeeded, "
            f"{outputs['failed']} failed, {outputs['duration']}ms total"
        )
        if outputs["success"] or (params["strategy"] == "allSettled" and not params["fail_fast"]):
            # allSettled collects failures in the payload instead of failing the node
            return ExecutionResult(success=True, outputs=outputs)

        if params["strategy"] == "race":
            return ExecutionResult(success=False, outputs=outputs, error=outputs["errors"][0]["error"])
        failures = [s.error for s in run.dispatcher.completion_order if not s.ok and s.error is not None]
        aggregate = AggregateNodeError(
            f"{outputs['failed']} of {outputs['total']} operations failed: {outputs['errors'][0]['error']}",
            failures,
        )
        return ExecutionResult(success=False, outputs=outputs, error=error_message(aggregate))

    return create_node_executable(execute, validate_config=parallel_parameters.parse)
