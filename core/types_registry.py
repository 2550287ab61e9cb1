import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, NotRequired, TypeAlias, TypedDict


# Progress/lifecycle enums for node execution
class ProgressState(str, Enum):
    START = "start"
    UPDATE = "update"
    DONE = "done"
    ERROR = "error"
    STOPPED = "stopped"


class NodeCategory(str, Enum):
    IO = "io"
    DATA = "data"
    LOGIC = "logic"
    MEDIA = "media"
    SYSTEM = "system"
    UTILITY = "utility"
    COMPOSITE = "composite"


class NodeKind(str, Enum):
    """Dispatch tag for executables: the three control-flow kinds and everything else."""

    COMPOSITE = "composite"
    PARALLEL = "parallel"
    LOOP = "loop"
    LEAF = "leaf"


PortType = Literal["input", "output", "trigger", "error"]

PortDataType = Literal[
    "any",
    "string",
    "number",
    "boolean",
    "object",
    "array",
    "function",
    "json",
    "stream",
    "buffer",
    "image",
    "file",
]


@dataclass(frozen=True)
class NodePort:
    id: str
    name: str
    type: PortType
    data_type: str = "any"
    required: bool = False
    multiple: bool = False
    description: str | None = None
    default_value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "data_type": self.data_type,
            "required": self.required,
            "multiple": self.multiple,
            "description": self.description,
            "default_value": self.default_value,
        }


class ProgressEvent(TypedDict, total=False):
    node_id: str
    state: ProgressState
    progress: float
    text: str
    meta: dict[str, Any]


ProgressCallback = Callable[[ProgressEvent], None]

NodeInputs: TypeAlias = dict[str, Any]
NodeOutputs: TypeAlias = dict[str, Any]
NodeParams: TypeAlias = dict[str, Any]


class ExecutionLimits(TypedDict, total=False):
    max_time: int  # milliseconds
    max_memory: int  # bytes


class SubGraphEdge(TypedDict, total=False):
    id: str
    source: str
    target: str
    source_handle: NotRequired[str]
    target_handle: NotRequired[str]


class SubGraph(TypedDict, total=False):
    nodes: list[dict[str, Any]]
    edges: list[SubGraphEdge]


@dataclass
class ExecutionContext:
    """Per-invocation envelope handed to an executable by the conductor.

    Owned by a single call; never shared between concurrent invocations.
    """

    node_id: str
    inputs: NodeInputs = field(default_factory=dict)
    parameters: NodeParams | None = field(default_factory=dict)
    signal: asyncio.Event | None = None
    log: logging.Logger | logging.LoggerAdapter | None = None
    limits: ExecutionLimits | None = None
    report_progress: ProgressCallback | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def logger(self) -> logging.Logger | logging.LoggerAdapter:
        if self.log is not None:
            return self.log
        # Lazy import: utils imports this module
        from utils.logging_config import get_node_logger

        return get_node_logger(self.node_id)

    @property
    def cancelled(self) -> bool:
        return self.signal is not None and self.signal.is_set()

    def derive(self, **changes: Any) -> "ExecutionContext":
        """Build a child context that shares signal/log/progress but owns its own inputs."""
        values: dict[str, Any] = {
            "node_id": self.node_id,
            "inputs": {},
            "parameters": {},
            "signal": self.signal,
            "log": self.log,
            "limits": self.limits,
            "report_progress": self.report_progress,
            "metadata": {},
        }
        values.update(changes)
        return ExecutionContext(**values)

    def emit_progress(
        self,
        state: ProgressState,
        progress: float | None = None,
        text: str = "",
        meta: dict[str, Any] | None = None,
    ) -> None:
        if not self.report_progress:
            return
        event: ProgressEvent = {"node_id": self.node_id, "state": state}
        if progress is not None:
            event["progress"] = min(max(progress, 0.0), 100.0)
        if text:
            event["text"] = text
        if meta:
            event["meta"] = meta
        self.report_progress(event)


@dataclass
class ExecutionResult:
    success: bool
    outputs: Any = None
    error: str | None = None
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.outputs is not None:
            data["outputs"] = self.outputs
        if self.error is not None:
            data["error"] = self.error
        if self.metadata is not None:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any]) -> "ExecutionResult":
        return cls(
            success=bool(value.get("success", False)),
            outputs=value.get("outputs"),
            error=value.get("error"),
            metadata=value.get("metadata"),
        )


# Node exceptions
class NodeError(Exception):
    """Base exception for all node-related errors."""

    pass


class NodeValidationError(NodeError):
    """Raised when node parameters or inputs fail validation."""

    def __init__(self, message: str, issues: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.issues = issues or []


class NodeConfigError(NodeError):
    """Raised when a required configuration value is missing or unusable."""

    pass


class NodeExecutionError(NodeError):
    """Raised when node execution fails."""

    def __init__(self, message: str, original_exc: BaseException | None = None):
        super().__init__(message)
        self.original_exc = original_exc


class NodeTimeoutError(NodeExecutionError):
    """Raised when an operation or a whole call exceeds its time budget."""

    timed_out = True

    def __init__(self, message: str, timeout_ms: float | None = None):
        super().__init__(message)
        self.timeout_ms = timeout_ms


class NodeCancelledError(NodeExecutionError):
    """Raised when the caller's cancellation signal fires during an effect."""

    pass


class AggregateNodeError(NodeError):
    """Raised when several sub-operations fail under a collecting strategy."""

    def __init__(self, message: str, errors: list[BaseException]):
        super().__init__(message)
        self.errors = list(errors)


def error_message(exc: BaseException) -> str:
    message = str(exc)
    return message if message else type(exc).__name__


__all__ = [
    "ProgressState",
    "ProgressEvent",
    "ProgressCallback",
    "NodeCategory",
    "NodeKind",
    "PortType",
    "PortDataType",
    "NodePort",
    "NodeInputs",
    "NodeOutputs",
    "NodeParams",
    "ExecutionLimits",
    "SubGraph",
    "SubGraphEdge",
    "ExecutionContext",
    "ExecutionResult",
    "NodeError",
    "NodeValidationError",
    "NodeConfigError",
    "NodeExecutionError",
    "NodeTimeoutError",
    "NodeCancelledError",
    "AggregateNodeError",
    "error_message",
]
