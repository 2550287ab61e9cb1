import logging
import sys
from typing import Any


def setup_logging(log_level="INFO", stream=None):
    """
    Configures logging for the application.
    """
    root = logging.getLogger()
    root.setLevel(log_level)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(log_level)

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    handler.setFormatter(formatter)

    root.addHandler(handler)


class NodeLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every record with the id of the node that emitted it."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        return f"[{self.extra['node_id']}] {msg}", kwargs


def get_node_logger(node_id: str, name: str = "nodes") -> NodeLoggerAdapter:
    return NodeLoggerAdapter(logging.getLogger(name), {"node_id": node_id})
