"""
Workflow Graph Model.

Workflow definitions are produced by the editor as JSON: a list of typed
nodes and a list of edges connecting an output port of one node to an
input port of another. The engine reads a snapshot of the definition;
nothing here knows how to execute a node.
"""

from typing import Any, Dict, List, Optional, Set
from pydantic import BaseModel, Field
from collections import deque
import uuid

from portflow.engine.ports import types_compatible
from portflow.engine.registry import PluginRegistry


DEFAULT_SOURCE_HANDLE = "output"
DEFAULT_TARGET_HANDLE = "input"


class Position(BaseModel):
    """Canvas position; irrelevant to execution."""
    x: float = 0
    y: float = 0


class WorkflowNode(BaseModel):
    """A typed unit of work, backed by the plugin registered under ``type``."""
    id: str
    type: str
    position: Position = Field(default_factory=Position)
    data: Dict[str, Any] = Field(default_factory=dict)


class WorkflowEdge(BaseModel):
    """
    A data-flow connection from an output port to an input port.

    Handles are optional; a missing source handle means ``output`` and a
    missing target handle means ``input``.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source: str
    target: str
    source_handle: Optional[str] = Field(None, alias="sourceHandle")
    target_handle: Optional[str] = Field(None, alias="targetHandle")

    class Config:
        populate_by_name = True

    @property
    def source_port(self) -> str:
        return self.source_handle or DEFAULT_SOURCE_HANDLE

    @property
    def target_port(self) -> str:
        return self.target_handle or DEFAULT_TARGET_HANDLE


class WorkflowDefinition(BaseModel):
    """
    A workflow graph as produced by the editor.

    Self-loops and cycles are representable; the supervisor refuses to run
    a definition whose trigger reaches a cycle.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "Unnamed Workflow"
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        """Find a node by id."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def incoming_edges(self, node_id: str) -> List[WorkflowEdge]:
        """Edges whose target is the node, in definition order."""
        return [e for e in self.edges if e.target == node_id]

    def outgoing_edges(self, node_id: str) -> List[WorkflowEdge]:
        """Edges whose source is the node, in definition order."""
        return [e for e in self.edges if e.source == node_id]

    def snapshot(self) -> "WorkflowDefinition":
        """Deep copy, so edits to the live definition cannot reach a run."""
        return self.model_copy(deep=True)

    def validate_structure(self) -> List[str]:
        """
        Check the definition can be executed at all.

        Returns:
            List of structural errors (empty if valid)
        """
        errors = []

        seen: Set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                errors.append(f"Duplicate node id '{node.id}'")
            seen.add(node.id)

        for edge in self.edges:
            if edge.source not in seen:
                errors.append(f"Edge '{edge.id}' references unknown source node '{edge.source}'")
            if edge.target not in seen:
                errors.append(f"Edge '{edge.id}' references unknown target node '{edge.target}'")

        return errors

    def reachable_from(self, node_id: str) -> Set[str]:
        """All existing nodes reachable from ``node_id`` (itself included)."""
        known = {node.id for node in self.nodes}
        reachable: Set[str] = set()
        to_visit = [node_id]

        while to_visit:
            current = to_visit.pop()
            if current in reachable or current not in known:
                continue
            reachable.add(current)
            for edge in self.outgoing_edges(current):
                to_visit.append(edge.target)

        return reachable

    def find_cycle(self, node_ids: Set[str]) -> List[str]:
        """
        Nodes of ``node_ids`` that sit on (or behind) a cycle.

        Kahn's algorithm restricted to the given subgraph: whatever cannot
        be peeled off in topological order is part of, or downstream of,
        a cycle.

        Returns:
            Offending node ids in definition order (empty if acyclic)
        """
        in_degree = {node_id: 0 for node_id in node_ids}
        for edge in self.edges:
            if edge.source in node_ids and edge.target in node_ids:
                in_degree[edge.target] += 1

        queue = deque(n for n, degree in in_degree.items() if degree == 0)
        while queue:
            current = queue.popleft()
            for edge in self.outgoing_edges(current):
                if edge.target in in_degree:
                    in_degree[edge.target] -= 1
                    if in_degree[edge.target] == 0:
                        queue.append(edge.target)

        return [n.id for n in self.nodes if in_degree.get(n.id, 0) > 0]

    def check_connections(self, registry: PluginRegistry) -> List[str]:
        """
        Editor-side check of every edge against the registered port lists.

        The walker never calls this: port types are the editor's concern and
        a mismatched edge still executes.

        Returns:
            Human-readable problems (empty if every edge is well typed)
        """
        problems = []

        for edge in self.edges:
            source = self.get_node(edge.source)
            target = self.get_node(edge.target)
            if source is None or target is None:
                continue

            source_plugin = registry.get(source.type)
            target_plugin = registry.get(target.type)
            if source_plugin is None or target_plugin is None:
                missing = source.type if source_plugin is None else target.type
                problems.append(f"Edge '{edge.id}': no plugin registered for node type '{missing}'")
                continue

            out_port = source_plugin.output_port(edge.source_port)
            in_port = target_plugin.input_port(edge.target_port)
            if out_port is None:
                problems.append(
                    f"Edge '{edge.id}': '{edge.source_port}' is not an output of '{source_plugin.id}'"
                )
            if in_port is None:
                problems.append(
                    f"Edge '{edge.id}': '{edge.target_port}' is not an input of '{target_plugin.id}'"
                )
            if out_port and in_port and not types_compatible(out_port.data_type, in_port.data_type):
                problems.append(
                    f"Edge '{edge.id}': cannot connect {out_port.data_type.value} "
                    f"output to {in_port.data_type.value} input"
                )

        return problems

    def to_dict(self) -> Dict[str, Any]:
        """Serialize in the editor's (camelCase handle) format."""
        return self.model_dump(by_alias=True)
