"""
Command-line entrypoint for the node engine.

Usage examples:
    python main.py list
    python main.py list --category io
    python main.py search csv
    python main.py describe http-request
    python main.py run transform --params '{"operation": "map", "transform_function": "item * 2"}' \
        --inputs '{"data": [1, 2, 3]}'

`run` prints the ExecutionResult as JSON and exits non-zero when the node fails.
Composite nodes take their child graph from --graph '{"nodes": [...], "edges": [...]}'.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, List, Optional

from config.settings import load_settings
from core.node_registry import Registry, build_default_registry
from core.types_registry import ExecutionContext, ExecutionResult
from utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def _json_arg(value: str) -> Any:
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"invalid JSON: {e}") from e


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, default=str))


def cmd_list(registry: Registry, category: Optional[str]) -> int:
    definitions = (
        registry.get_definitions_by_category(category) if category else registry.get_all_definitions()
    )
    for definition in definitions:
        meta = definition.metadata
        print(f"{definition.type:<16} {meta.category:<10} {meta.description}")
    return 0


def cmd_search(registry: Registry, query: str) -> int:
    matches = registry.search(query)
    if not matches:
        print(f"No node types match '{query}'")
        return 1
    for definition in matches:
        print(f"{definition.type:<16} {definition.metadata.name}")
    return 0


def cmd_describe(registry: Registry, node_type: str) -> int:
    definition = registry.get_definition(node_type)
    if definition is None:
        print(f"Unknown node type: {node_type}", file=sys.stderr)
        return 1
    _print_json(definition.to_dict())
    return 0


async def run_node(
    registry: Registry,
    node_type: str,
    params: dict[str, Any],
    inputs: dict[str, Any],
    graph: Optional[dict[str, Any]] = None,
) -> ExecutionResult:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, stop.set)
    except (NotImplementedError, RuntimeError):
        # Windows event loops do not support signal handlers
        pass

    context = ExecutionContext(
        node_id=f"cli-{node_type}",
        inputs=inputs,
        parameters=params,
        signal=stop,
        metadata={"graph": graph} if graph else {},
    )
    try:
        return await registry.execute(node_type, context)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def cmd_run(registry: Registry, args: argparse.Namespace) -> int:
    result = asyncio.run(run_node(registry, args.node_type, args.params, args.inputs, args.graph))
    _print_json(result.to_dict())
    return 0 if result.success else 1


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect and run engine nodes")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL from the environment")
    sub = parser.add_subparsers(dest="command", required=True)

    list_parser = sub.add_parser("list", help="List registered node types")
    list_parser.add_argument("--category", default=None, help="Only show this category")

    search_parser = sub.add_parser("search", help="Search node types by name, description, keywords and tags")
    search_parser.add_argument("query")

    describe_parser = sub.add_parser("describe", help="Print a node definition as JSON")
    describe_parser.add_argument("node_type")

    run_parser = sub.add_parser("run", help="Execute a single node")
    run_parser.add_argument("node_type")
    run_parser.add_argument("--params", type=_json_arg, default={}, help="Node parameters as JSON")
    run_parser.add_argument("--inputs", type=_json_arg, default={}, help="Input port values as JSON")
    run_parser.add_argument("--graph", type=_json_arg, default=None, help="Child graph for composite nodes")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None, registry: Optional[Registry] = None) -> int:
    args = parse_args(argv)
    settings = load_settings()
    # stdout carries the JSON output
    setup_logging(args.log_level or settings.log_level, stream=sys.stderr)
    registry = registry or build_default_registry(settings)

    if args.command == "list":
        return cmd_list(registry, args.category)
    if args.command == "search":
        return cmd_search(registry, args.query)
    if args.command == "describe":
        return cmd_describe(registry, args.node_type)
    return cmd_run(registry, args)


if __name__ == "__main__":
    raise SystemExit(main())
