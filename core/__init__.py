"""Core package for node execution, shared types, and scheduling helpers.

Modules:
- types_registry: Context, result, port and progress types plus the node error hierarchy
- concurrency: Bounded dispatcher, timeouts and cancellation helpers
- expressions: Sandboxed expression evaluation for conditions and transforms
- operations: Turning loosely-typed operations into awaitables
- graph_executor: DAG scheduler for composite sub-graphs
- node_registry: Registry of node definitions and executables
"""

# No explicit imports to avoid circular dependencies
# Import these modules directly (e.g., from core.node_registry import Registry)
# instead of from core import node_registry

__all__ = []
