import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from core.types_registry import NodeConfigError, NodeKind, NodePort
from nodes.base.metadata import NodeMetadata, create_node_metadata
from nodes.base.parameters import NodeParameters, create_node_parameters
from nodes.base.ports import NodePorts

_CONTROL_FLOW_KINDS = {
    "composite": NodeKind.COMPOSITE,
    "parallel": NodeKind.PARALLEL,
    "loop": NodeKind.LOOP,
}


def kind_for_type(node_type: str) -> NodeKind:
    return _CONTROL_FLOW_KINDS.get(node_type, NodeKind.LEAF)


@dataclass(frozen=True)
class NodeEdge:
    id: str
    source: str
    target: str
    source_handle: str | None = None
    target_handle: str | None = None

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any]) -> "NodeEdge":
        source = value["source"]
        target = value["target"]
        return cls(
            id=value.get("id") or f"{source}->{target}",
            source=source,
            target=target,
            source_handle=value.get("source_handle"),
            target_handle=value.get("target_handle"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "source_handle": self.source_handle,
            "target_handle": self.target_handle,
        }


@dataclass(frozen=True)
class NodeDefinition:
    """Static, immutable description of a node type or a placed node."""

    id: str
    type: str
    version: str
    name: str
    metadata: NodeMetadata
    parameters: NodeParameters
    position: dict[str, float] = field(default_factory=lambda: {"x": 0.0, "y": 0.0})
    parent_id: str | None = None
    input_ports: tuple[NodePort, ...] = ()
    output_ports: tuple[NodePort, ...] = ()
    nodes: tuple["NodeDefinition", ...] | None = None
    edges: tuple[NodeEdge, ...] | None = None

    @property
    def is_container(self) -> bool:
        return self.nodes is not None

    @property
    def kind(self) -> NodeKind:
        return kind_for_type(self.type)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "version": self.version,
            "parent_id": self.parent_id,
            "name": self.name,
            "position": dict(self.position),
            "metadata": self.metadata.to_dict(),
            "parameters": dict(self.parameters.defaults),
            "input_ports": [p.to_dict() for p in self.input_ports],
            "output_ports": [p.to_dict() for p in self.output_ports],
        }
        if self.nodes is not None:
            data["nodes"] = [n.to_dict() for n in self.nodes]
        if self.edges is not None:
            data["edges"] = [e.to_dict() for e in self.edges]
        return data


def _validate_edges(nodes: Sequence[NodeDefinition], edges: Sequence[NodeEdge]) -> None:
    known = {n.id for n in nodes}
    for edge in edges:
        for end in (edge.source, edge.target):
            if end not in known:
                raise NodeConfigError(f"Edge {edge.id} references unknown node {end}")


def create_node_definition(
    *,
    type: str,
    metadata: NodeMetadata | Mapping[str, Any] | None = None,
    parameters: NodeParameters | None = None,
    ports: NodePorts | None = None,
    id: str | None = None,
    name: str | None = None,
    version: str | None = None,
    parent_id: str | None = None,
    position: Mapping[str, float] | None = None,
    nodes: Sequence[NodeDefinition] | None = None,
    edges: Sequence[NodeEdge | Mapping[str, Any]] | None = None,
) -> NodeDefinition:
    if not isinstance(metadata, NodeMetadata):
        metadata = create_node_metadata(metadata or {"id": type, "name": name or type})
    ports = ports or NodePorts()

    edge_list: tuple[NodeEdge, ...] | None = None
    if edges is not None:
        edge_list = tuple(
            e if isinstance(e, NodeEdge) else NodeEdge.from_mapping(e) for e in edges
        )
    node_list = tuple(nodes) if nodes is not None else None
    if edge_list:
        _validate_edges(node_list or (), edge_list)

    return NodeDefinition(
        id=id or str(uuid.uuid4()),
        type=type,
        version=version or metadata.version,
        parent_id=parent_id,
        name=name or metadata.name,
        position=dict(position or {"x": 0.0, "y": 0.0}),
        metadata=metadata,
        parameters=parameters or create_node_parameters({}, {}, {}),
        input_ports=ports.input,
        output_ports=ports.output,
        nodes=node_list,
        edges=edge_list,
    )
