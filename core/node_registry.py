# core/node_registry.py
# Lookup from node-type id to its static definition and its runtime executable.

import asyncio
import logging
from collections.abc import Iterable

from config.settings import EngineSettings, load_settings
from core.concurrency import run_cancellable, with_timeout
from core.types_registry import (
    ExecutionContext,
    ExecutionResult,
    NodeKind,
    NodeTimeoutError,
    NodeValidationError,
    ProgressState,
    error_message,
)
from nodes.base.definition import NodeDefinition
from nodes.base.executable import NodeExecutable

logger = logging.getLogger(__name__)


class Registry:
    """Two parallel maps keyed by node type: definitions and executables.

    Built once at startup and passed to whatever runs nodes. The execution path
    only reads from it.
    """

    def __init__(
        self,
        definitions: Iterable[NodeDefinition] = (),
        executables: dict[str, NodeExecutable] | None = None,
    ):
        self._definitions: dict[str, NodeDefinition] = {}
        self._executables: dict[str, NodeExecutable] = {}
        for definition in definitions:
            self._definitions[definition.type] = definition
        for node_type, executable in (executables or {}).items():
            self._executables[node_type] = executable

    def register(self, definition: NodeDefinition, executable: NodeExecutable) -> None:
        if definition.type in self._definitions:
            logger.warning(f"Node type '{definition.type}' registered twice; replacing")
        self._definitions[definition.type] = definition
        self._executables[definition.type] = executable

    # ---- definitions ----

    def get_definition(self, node_type: str) -> NodeDefinition | None:
        return self._definitions.get(node_type)

    def get_all_definitions(self) -> list[NodeDefinition]:
        return list(self._definitions.values())

    def has_definition(self, node_type: str) -> bool:
        return node_type in self._definitions

    def get_definitions_by_category(self, category: str) -> list[NodeDefinition]:
        return [d for d in self._definitions.values() if d.metadata.category == category]

    def group_by_category(self) -> dict[str, list[NodeDefinition]]:
        groups: dict[str, list[NodeDefinition]] = {}
        for definition in self._definitions.values():
            groups.setdefault(definition.metadata.category, []).append(definition)
        return groups

    def search(self, query: str) -> list[NodeDefinition]:
        """Case-insensitive substring match over name, description, keywords and tags."""
        needle = query.lower()
        matches: list[NodeDefinition] = []
        for definition in self._definitions.values():
            meta = definition.metadata
            haystack = [meta.name, meta.description, *meta.keywords, *meta.tags]
            if any(needle in (text or "").lower() for text in haystack):
                matches.append(definition)
        return matches

    def list_types(self) -> list[str]:
        return list(self._definitions.keys())

    # ---- executables ----

    def get_executable(self, node_type: str) -> NodeExecutable | None:
        return self._executables.get(node_type)

    def get_all_executables(self) -> dict[str, NodeExecutable]:
        return dict(self._executables)

    def has_executable(self, node_type: str) -> bool:
        return node_type in self._executables

    def kind_of(self, node_type: str) -> NodeKind | None:
        definition = self._definitions.get(node_type)
        return definition.kind if definition is not None else None

    async def execute(self, node_type: str, context: ExecutionContext) -> ExecutionResult:
        """Validate parameters and run ``node_type``. Always resolves to a result."""
        executable = self.get_executable(node_type)
        kind = self.kind_of(node_type)
        if executable is None or kind is None:
            return ExecutionResult(success=False, error=f"Unknown node type: {node_type}")

        try:
            params = executable.get_validated_params(context)
        except NodeValidationError as e:
            return ExecutionResult(success=False, error=error_message(e), metadata={"issues": e.issues})

        if params.get("enabled") is False:
            return ExecutionResult(
                success=True, outputs=dict(context.inputs), metadata={"skipped": True}
            )

        max_time = (context.limits or {}).get("max_time")
        context.emit_progress(ProgressState.START, 0.0, "start")
        try:
            match kind:
                case NodeKind.COMPOSITE | NodeKind.PARALLEL | NodeKind.LOOP:
                    # Control-flow executables honour the signal themselves
                    run = executable.execute(context, params)
                case NodeKind.LEAF:
                    run = run_cancellable(executable.execute(context, params), context.signal)
            result = await with_timeout(
                run, max_time, f"Node {context.node_id} exceeded max_time of {max_time}ms"
            )
        except asyncio.CancelledError:
            context.emit_progress(ProgressState.STOPPED, 100.0, "stopped")
            raise
        except NodeTimeoutError as e:
            logger.warning(f"Node {context.node_id} ({node_type}) timed out: {e}")
            context.emit_progress(ProgressState.ERROR, 100.0, str(e))
            return ExecutionResult(success=False, error=error_message(e), metadata={"timed_out": True})
        except Exception as e:
            logger.error(f"Unexpected error in node {context.node_id} ({node_type}): {e}", exc_info=True)
            context.emit_progress(ProgressState.ERROR, 100.0, f"error: {type(e).__name__}: {e}")
            return ExecutionResult(success=False, error=error_message(e))

        if result.success:
            context.emit_progress(ProgressState.DONE, 100.0, "")
        else:
            context.emit_progress(ProgressState.ERROR, 100.0, result.error or "")
        return result


def build_default_registry(settings: EngineSettings | None = None) -> Registry:
    """Registry holding the nine built-in node types."""
    from nodes.core.data import transform_node
    from nodes.core.flow import composite_node, loop_node, parallel_node
    from nodes.core.io import csv_reader_node, file_system_node, http_request_node, shell_command_node
    from nodes.core.media import image_composite_node

    settings = settings or load_settings()
    registry = Registry()
    registry.register(composite_node.composite_definition, composite_node.create_composite_executable(registry))
    registry.register(parallel_node.parallel_definition, parallel_node.create_parallel_executable(registry, settings))
    registry.register(loop_node.loop_definition, loop_node.create_loop_executable(registry))
    registry.register(
        http_request_node.http_request_definition,
        http_request_node.create_http_request_executable(settings),
    )
    registry.register(
        shell_command_node.shell_command_definition,
        shell_command_node.create_shell_command_executable(settings),
    )
    registry.register(file_system_node.file_system_definition, file_system_node.create_file_system_executable())
    registry.register(csv_reader_node.csv_reader_definition, csv_reader_node.create_csv_reader_executable())
    registry.register(
        image_composite_node.image_composite_definition,
        image_composite_node.create_image_composite_executable(settings),
    )
    registry.register(transform_node.transform_definition, transform_node.create_transform_executable())
    logger.debug(f"Built default registry with {len(registry.list_types())} node types")
    return registry
