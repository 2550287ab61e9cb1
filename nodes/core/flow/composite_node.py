import logging
import time
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from pydantic import Field

from core.concurrency import with_timeout
from core.graph_executor import SubGraphExecutor
from core.operations import call_maybe_async
from core.types_registry import (
    ExecutionContext,
    ExecutionResult,
    NodeConfigError,
    NodeError,
    NodeInputs,
    NodeTimeoutError,
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

composite_parameters = create_node_parameters(
    {
        "parallel": (bool, Field(default=False, description="Run independent children concurrently")),
        "retry_delay": (int, Field(default=1000, ge=0, description="Base retry delay in milliseconds")),
    },
    {"parallel": False, "retry_delay": 1000},
    {
        "parallel": {"control_type": "boolean", "label": "Parallel"},
        "timeout": {"control_type": "number", "label": "Timeout (ms)", "min": 0},
        "retries": {"control_type": "number", "label": "Retries per child", "min": 0},
        "retry_delay": {"control_type": "number", "label": "Retry delay (ms)", "min": 0},
    },
    model_name="CompositeParams",
)

composite_definition = create_node_definition(
    id="composite",
    type="composite",
    metadata=create_node_metadata(
        {
            "id": "composite",
            "name": "Composite",
            "description": "Runs a nested graph of child nodes as a single node",
            "category": "composite",
            "icon": "layers",
            "keywords": ["composite", "group", "subgraph", "workflow", "nested"],
        }
    ),
    parameters=composite_parameters,
    ports=create_node_ports(
        {
            "input": [{"id": "input", "name": "Input", "data_type": "any"}],
            "output": [
                {"id": "result", "name": "Result", "data_type": "any"},
                {"id": "metadata", "name": "Metadata", "data_type": "object"},
            ],
            "error": [{"id": "error", "name": "Error", "data_type": "string"}],
        }
    ),
    nodes=(),
    edges=(),
)


def _coerce_result(value: Any) -> ExecutionResult:
    if isinstance(value, ExecutionResult):
        return value
    if isinstance(value, Mapping) and "success" in value:
        return ExecutionResult.from_mapping(value)
    return ExecutionResult(success=True, outputs=value)


def _child_context(parent: ExecutionContext, node: Mapping[str, Any], inputs: NodeInputs) -> ExecutionContext:
    metadata = dict(node.get("metadata") or {})
    if node.get("nodes") is not None:
        metadata["graph"] = {"nodes": node.get("nodes") or [], "edges": node.get("edges") or []}
    return parent.derive(
        node_id=str(node["id"]),
        inputs=inputs,
        parameters=dict(node.get("parameters") or {}),
        metadata=metadata,
    )


def create_composite_executable(registry: "Registry | None" = None) -> NodeExecutable:
    async def execute(context: ExecutionContext, params: dict[str, Any]) -> ExecutionResult:
        started = time.monotonic()
        graph = (context.metadata or {}).get("graph") or {}

        def envelope(result: Any, executed: int, failed_node: str | None = None) -> dict[str, Any]:
            metadata: dict[str, Any] = {
                "executed_at": datetime.now(timezone.utc).isoformat(),
                "node_id": context.node_id or "composite",
                "node_type": "composite",
                "child_nodes_executed": executed,
                "total_execution_time": int((time.monotonic() - started) * 1000),
            }
            if failed_node is not None:
                metadata["failed_node"] = failed_node
            return {"result": result, "metadata": metadata}

        if not graph.get("nodes"):
            return ExecutionResult(success=True, outputs=envelope(dict(context.inputs), 0))

        async def run_child(node: Mapping[str, Any], inputs: NodeInputs) -> ExecutionResult:
            child = _child_context(context, node, inputs)
            execute_fn = node.get("execute")
            if callable(execute_fn):
                return _coerce_result(await call_maybe_async(execute_fn, child))
            node_type = node.get("type")
            if node_type and registry is not None:
                return await registry.execute(node_type, child)
            raise NodeConfigError(f"Child node {child.node_id} has no execute function or known type")

        try:
            executor = SubGraphExecutor(
                graph,
                run_child,
                retries=params["retries"],
                retry_delay=params["retry_delay"],
                signal=context.signal,
            )
        except NodeError as e:
            return ExecutionResult(success=False, error=error_message(e), outputs=envelope(None, 0))

        run = executor.run_parallel if params["parallel"] else executor.run_sequential
        mode = "parallel" if params["parallel"] else "sequential"
        context.logger.debug(f"Running {len(executor.nodes)} child nodes ({mode})")

        try:
            await with_timeout(
                run(dict(context.inputs)),
                params["timeout"],
                f"Composite execution timed out after {params['timeout']}ms",
            )
        except NodeTimeoutError as e:
            failed = executor.current_node if not params["parallel"] else executor.failed_node
            return ExecutionResult(
                success=False,
                error=error_message(e),
                outputs=envelope(None, executor.completed_count, failed),
            )

        if executor.failed_node is not None:
            failed = executor.failed_node
            name = executor.nodes[failed].get("name") or failed
            return ExecutionResult(
                success=False,
                error=f"Child node {name} failed: {executor.errors[failed]}",
                outputs=envelope(
                    None if not params["parallel"] else dict(executor.results),
                    executor.completed_count,
                    failed,
                ),
            )

        if params["parallel"]:
            result: Any = dict(executor.results)
        else:
            result = executor.results.get(executor.last_executed, {}) if executor.last_executed else {}
        return ExecutionResult(success=True, outputs=envelope(result, executor.completed_count))

    return create_node_executable(execute, validate_config=composite_parameters.parse)
