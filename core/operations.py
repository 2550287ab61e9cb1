"""Turn the loosely-typed operations handed to control-flow nodes into awaitables.

An operation is one of:
- a callable (sync or async); its return value is the result
- a node invocation ``{"type": ..., "parameters": {...}, "inputs": {...}}``
  executed through the registry; an unsuccessful result counts as a failure
- any other value, which is its own result
"""

import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any

from core.types_registry import ExecutionContext, NodeConfigError, NodeExecutionError

if TYPE_CHECKING:
    from core.node_registry import Registry

logger = logging.getLogger(__name__)


def is_node_invocation(value: Any) -> bool:
    return isinstance(value, Mapping) and isinstance(value.get("type"), str)


async def call_maybe_async(fn: Callable[..., Any], *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def invoke_node(
    registry: "Registry | None",
    invocation: Mapping[str, Any],
    parent: ExecutionContext,
    node_id: str,
    extra_inputs: Mapping[str, Any] | None = None,
) -> Any:
    """Run a node invocation and return its outputs, raising on failure."""
    node_type = invocation["type"]
    if registry is None:
        raise NodeConfigError(f"Cannot run node type '{node_type}' without a registry")
    child = parent.derive(
        node_id=node_id,
        inputs={**(invocation.get("inputs") or {}), **(extra_inputs or {})},
        parameters=dict(invocation.get("parameters") or {}),
        metadata=dict(invocation.get("metadata") or {}),
    )
    result = await registry.execute(node_type, child)
    if not result.success:
        raise NodeExecutionError(result.error or f"Node '{node_type}' failed")
    return result.outputs


def operation_factory(
    operation: Any,
    index: int,
    context: ExecutionContext,
    registry: "Registry | None",
) -> Callable[[], Awaitable[Any]]:
    """Zero-argument coroutine factory for the ``index``-th operation."""
    if callable(operation):
        return lambda: call_maybe_async(operation)
    if is_node_invocation(operation):
        return lambda: invoke_node(registry, operation, context, f"{context.node_id}:{index}")

    async def identity() -> Any:
        return operation

    return identity


def processor_factory(
    processor: Any,
    context: ExecutionContext,
    registry: "Registry | None",
) -> Callable[[Any, int], Awaitable[Any]]:
    """Per-item body for iteration: ``body(value, index)``."""
    if processor is None:
        async def passthrough(value: Any, index: int) -> Any:
            return value

        return passthrough
    if callable(processor):
        return lambda value, index: call_maybe_async(processor, value, index)
    if is_node_invocation(processor):
        return lambda value, index: invoke_node(
            registry,
            processor,
            context,
            f"{context.node_id}:{index}",
            {"item": value, "index": index, "data": value},
        )
    raise NodeConfigError(f"Unsupported processor of type {type(processor).__name__}")
