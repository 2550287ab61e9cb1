import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar

from core.concurrency import sleep_ms
from core.types_registry import (
    ExecutionContext,
    ExecutionResult,
    NodeCancelledError,
    NodeParams,
    error_message,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ExecuteFn = Callable[[ExecutionContext, NodeParams], Awaitable[ExecutionResult]]
ParamsFn = Callable[[ExecutionContext], NodeParams]


@dataclass(frozen=True)
class NodeExecutable:
    """Runtime half of a node: an async ``execute`` plus its parameter derivation."""

    execute: ExecuteFn
    get_validated_params: ParamsFn


def create_node_executable(
    execute: ExecuteFn,
    *,
    validate_config: Callable[[Any], NodeParams] | None = None,
    get_validated_params: ParamsFn | None = None,
) -> NodeExecutable:
    """Pair ``execute`` with a parameter derivation.

    Resolution order: explicit ``get_validated_params``, then
    ``validate_config(context.parameters)``, then the raw parameters.
    """
    if not callable(execute):
        raise TypeError("create_node_executable requires a callable execute")

    if get_validated_params is not None:
        resolved = get_validated_params
    elif validate_config is not None:
        def resolved(context: ExecutionContext) -> NodeParams:
            return validate_config(context.parameters)
    else:
        def resolved(context: ExecutionContext) -> NodeParams:
            return dict(context.parameters or {})

    return NodeExecutable(execute=execute, get_validated_params=resolved)


_MISSING = object()


def get_input_value(
    context: ExecutionContext,
    key: str,
    config: Mapping[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """Input port value first, then config, then ``default``. ``None`` counts as absent."""
    value = context.inputs.get(key, _MISSING) if context.inputs else _MISSING
    if value is not _MISSING and value is not None:
        return value
    if config is not None:
        value = config.get(key)
        if value is not None:
            return value
    return default


def success_result(outputs: Any, **metadata: Any) -> ExecutionResult:
    return ExecutionResult(success=True, outputs=outputs, metadata=metadata or None)


def failure_result(
    error: BaseException | str, outputs: Any = None, **metadata: Any
) -> ExecutionResult:
    message = error if isinstance(error, str) else error_message(error)
    return ExecutionResult(success=False, outputs=outputs, error=message, metadata=metadata or None)


async def retry_async(
    fn: Callable[[int], Awaitable[T]],
    retries: int,
    delay_ms: float,
    *,
    backoff: bool = False,
    max_delay_ms: float | None = None,
    signal: asyncio.Event | None = None,
    label: str = "operation",
) -> T:
    """Call ``fn(attempt)`` up to ``retries + 1`` times, sleeping between attempts.

    The last exception is re-raised once attempts are exhausted. Cancellation
    is never retried.
    """
    attempts = max(retries, 0) + 1
    last_exc: Exception | None = None
    for attempt in range(attempts):
        try:
            return await fn(attempt)
        except NodeCancelledError:
            raise
        except Exception as e:
            last_exc = e
            if attempt + 1 >= attempts:
                break
            wait = delay_ms * (2**attempt) if backoff else delay_ms
            if max_delay_ms is not None:
                wait = min(wait, max_delay_ms)
            logger.debug(
                f"{label} failed on attempt {attempt + 1}/{attempts}: {error_message(e)}; retrying in {wait}ms"
            )
            await sleep_ms(wait, signal)
    raise last_exc  # type: ignore[misc]


def result_metadata(context: ExecutionContext, node_type: str, **extra: Any) -> dict[str, Any]:
    return {
        "executed_at": datetime.now(timezone.utc).isoformat(),
        "node_id": context.node_id or node_type,
        "node_type": node_type,
        **extra,
    }
