from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from core.types_registry import NodePort, PortType

_PORT_TYPES: tuple[PortType, ...] = ("input", "output", "trigger", "error")


@dataclass(frozen=True)
class NodePorts:
    input: tuple[NodePort, ...] = ()
    output: tuple[NodePort, ...] = ()
    trigger: tuple[NodePort, ...] = ()
    error: tuple[NodePort, ...] = ()


def create_port(port_type: PortType, entry: Mapping[str, Any]) -> NodePort:
    return NodePort(
        id=entry["id"],
        name=entry.get("name", entry["id"]),
        type=port_type,
        data_type=entry.get("data_type", "any"),
        required=bool(entry.get("required", False)),
        multiple=bool(entry.get("multiple", False)),
        description=entry.get("description"),
        default_value=entry.get("default_value"),
    )


def create_node_ports(ports: Mapping[str, Any]) -> NodePorts:
    """Assign a port type to each entry. Order is kept and duplicate ids are not removed."""
    built: dict[str, tuple[NodePort, ...]] = {}
    for port_type in _PORT_TYPES:
        entries = ports.get(port_type) or []
        built[port_type] = tuple(create_port(port_type, entry) for entry in entries)
    return NodePorts(**built)
