import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
from typing import Any

import rustworkx as rx

from core.types_registry import (
    ExecutionResult,
    NodeCancelledError,
    NodeConfigError,
    NodeExecutionError,
    NodeInputs,
    error_message,
)
from nodes.base.executable import retry_async

logger = logging.getLogger(__name__)

ChildRunner = Callable[[Mapping[str, Any], NodeInputs], Awaitable[ExecutionResult]]

MAX_RETRY_DELAY_MS = 5000


class _SubGraphState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"
    DONE = "done"


class SubGraphExecutor:
    """Schedules the children of a composite node.

    Sequential mode walks the children in topological order (ties keep the
    order in which nodes were declared) and stops at the first failure.
    Parallel mode starts each child as soon as every upstream child has
    succeeded; a failure only blocks that child's descendants.
    """

    def __init__(
        self,
        graph: Mapping[str, Any],
        run_child: ChildRunner,
        *,
        retries: int = 0,
        retry_delay: float = 1000,
        signal: asyncio.Event | None = None,
    ):
        self.graph = graph
        self.run_child = run_child
        self.retries = retries
        self.retry_delay = retry_delay
        self.signal = signal
        self.dag: rx.PyDiGraph = rx.PyDiGraph()
        self.nodes: dict[str, Mapping[str, Any]] = {}
        self._id_to_idx: dict[str, int] = {}
        self._idx_to_id: dict[int, str] = {}
        self._incoming: dict[str, list[Mapping[str, Any]]] = {}
        self.results: dict[str, Any] = {}
        self.errors: dict[str, str] = {}
        self.failed_node: str | None = None
        self.last_executed: str | None = None
        self.current_node: str | None = None
        self._state = _SubGraphState.IDLE
        self._build_graph()

    def _build_graph(self) -> None:
        for position, node in enumerate(self.graph.get("nodes") or []):
            node_id = str(node["id"])
            if node_id in self._id_to_idx:
                raise NodeConfigError(f"Duplicate child node id: {node_id}")
            idx = self.dag.add_node(position)
            self.nodes[node_id] = node
            self._id_to_idx[node_id] = idx
            self._idx_to_id[idx] = node_id
            self._incoming[node_id] = []

        for edge in self.graph.get("edges") or []:
            source = str(edge.get("source"))
            target = str(edge.get("target"))
            if source not in self._id_to_idx:
                logger.warning(
                    f"Edge {edge.get('id', 'unknown')} references non-existent source node {source}, skipping"
                )
                continue
            if target not in self._id_to_idx:
                logger.warning(
                    f"Edge {edge.get('id', 'unknown')} references non-existent target node {target}, skipping"
                )
                continue
            self.dag.add_edge(self._id_to_idx[source], self._id_to_idx[target], None)
            self._incoming[target].append(edge)

        if not rx.is_directed_acyclic_graph(self.dag):
            raise NodeConfigError("Graph contains cycles")

    @property
    def completed_count(self) -> int:
        return len(self.results)

    @property
    def is_empty(self) -> bool:
        return not self.nodes

    def execution_order(self) -> list[str]:
        order = rx.lexicographical_topological_sort(self.dag, key=lambda position: f"{position:010d}")
        positions = {self.dag[idx]: idx for idx in self.dag.node_indices()}
        return [self._idx_to_id[positions[position]] for position in order]

    def _child_inputs(self, node_id: str, root_inputs: NodeInputs) -> NodeInputs:
        incoming = self._incoming[node_id]
        if not incoming:
            return dict(root_inputs)
        inputs: NodeInputs = {}
        for edge in incoming:
            output = self.results.get(str(edge["source"]))
            source_handle = edge.get("source_handle")
            target_handle = edge.get("target_handle")
            if source_handle and isinstance(output, Mapping):
                inputs[target_handle or source_handle] = output.get(source_handle)
            elif target_handle:
                inputs[target_handle] = output
            elif isinstance(output, Mapping):
                inputs.update(output)
            else:
                inputs["data"] = output
        return inputs

    async def _run_with_retries(self, node_id: str, inputs: NodeInputs) -> Any:
        node = self.nodes[node_id]

        async def attempt(n: int) -> Any:
            if self.signal is not None and self.signal.is_set():
                raise NodeCancelledError("Composite execution cancelled")
            result = await self.run_child(node, inputs)
            if not result.success:
                raise NodeExecutionError(result.error or f"Child node {node_id} failed")
            return result.outputs

        return await retry_async(
            attempt,
            self.retries,
            self.retry_delay,
            backoff=True,
            max_delay_ms=MAX_RETRY_DELAY_MS,
            signal=self.signal,
            label=f"Child node {node_id}",
        )

    def _record_failure(self, node_id: str, exc: BaseException) -> None:
        self.errors[node_id] = error_message(exc)
        if self.failed_node is None:
            self.failed_node = node_id
        self._state = _SubGraphState.FAILED
        logger.error(f"Child node {node_id} failed: {error_message(exc)}")

    async def run_sequential(self, inputs: NodeInputs) -> None:
        self._state = _SubGraphState.RUNNING
        for node_id in self.execution_order():
            self.current_node = node_id
            child_inputs = self._child_inputs(node_id, inputs)
            try:
                self.results[node_id] = await self._run_with_retries(node_id, child_inputs)
                self.last_executed = node_id
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._record_failure(node_id, e)
                return
        self.current_node = None
        self._state = _SubGraphState.DONE

    async def run_parallel(self, inputs: NodeInputs) -> None:
        self._state = _SubGraphState.RUNNING
        remaining = {idx: self.dag.in_degree(idx) for idx in self.dag.node_indices()}
        ready = [idx for idx in self.dag.node_indices() if remaining[idx] == 0]
        active: dict[asyncio.Task[Any], str] = {}

        try:
            while ready or active:
                for idx in ready:
                    node_id = self._idx_to_id[idx]
                    task = asyncio.create_task(
                        self._run_with_retries(node_id, self._child_inputs(node_id, inputs))
                    )
                    active[task] = node_id
                ready = []

                done, _ = await asyncio.wait(active.keys(), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    node_id = active.pop(task)
                    exc = task.exception()
                    if exc is not None:
                        # Descendants never reach zero remaining dependencies
                        self._record_failure(node_id, exc)
                        continue
                    self.results[node_id] = task.result()
                    self.last_executed = node_id
                    for succ in self.dag.successor_indices(self._id_to_idx[node_id]):
                        remaining[succ] -= 1
                        if remaining[succ] == 0:
                            ready.append(succ)
        finally:
            for task in active:
                if not task.done():
                    task.cancel()
            if active:
                await asyncio.gather(*active.keys(), return_exceptions=True)

        if self._state != _SubGraphState.FAILED:
            self._state = _SubGraphState.DONE

    @property
    def skipped(self) -> list[str]:
        return [nid for nid in self.nodes if nid not in self.results and nid not in self.errors]
