# src/railflow/core/dag/graph.py
"""ExecutionGraph: validation and topology queries over a graph document.

Wraps a NetworkX DiGraph. Parallel edges between the same pair collapse
into one dependency; successor order follows edge declaration order, which
gates rely on (first child is the PASS branch, second the REJECT branch).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any

import networkx as nx
import yaml
from networkx import DiGraph
from pydantic import ValidationError

from railflow.contracts.enums import NodeType
from railflow.core.dag.models import (
    EdgeSpec,
    GateNodeSpec,
    GraphSpec,
    GraphValidationError,
    NodeSpec,
)


@dataclass(frozen=True, slots=True)
class ExecutionIndex:
    """Topology computed once per run.

    indegree is a fresh dict per index; the scheduler owns and decrements it.
    """

    node_map: Mapping[str, NodeSpec]
    indegree: dict[str, int]
    adjacency: Mapping[str, tuple[str, ...]]
    incoming: Mapping[str, tuple[str, ...]]


class ExecutionGraph:
    """Validated, immutable view over a GraphSpec."""

    def __init__(self, spec: GraphSpec) -> None:
        self._spec = spec
        self._graph: DiGraph[str] = nx.DiGraph()
        self._nodes: dict[str, NodeSpec] = {}
        for node in spec.nodes:
            self._nodes[node.id] = node
            self._graph.add_node(node.id)
        for edge in spec.edges:
            self._add_edge(edge)

    def _add_edge(self, edge: EdgeSpec) -> None:
        for endpoint in (edge.source, edge.target):
            if endpoint not in self._nodes:
                raise GraphValidationError(f"Edge {edge.source}->{edge.target} references unknown node '{endpoint}'")
        if edge.source == edge.target:
            raise GraphValidationError(f"Self-loop on node '{edge.source}'")
        self._graph.add_edge(edge.source, edge.target, port=edge.port)

    @classmethod
    def from_dict(cls, document: Mapping[str, Any]) -> ExecutionGraph:
        try:
            spec = GraphSpec.model_validate(document)
        except ValidationError as e:
            raise GraphValidationError(f"Invalid graph document: {e}") from e
        return cls(spec)

    @property
    def spec(self) -> GraphSpec:
        return self._spec

    @property
    def node_count(self) -> int:
        return self._graph.number_of_nodes()

    def nodes(self) -> list[NodeSpec]:
        return list(self._nodes.values())

    def edges(self) -> list[tuple[str, str]]:
        return list(self._graph.edges())

    def get_node(self, node_id: str) -> NodeSpec:
        if node_id not in self._nodes:
            raise KeyError(f"Node not found: {node_id}")
        return self._nodes[node_id]

    def children(self, node_id: str) -> tuple[str, ...]:
        return tuple(self._graph.successors(node_id))

    def parents(self, node_id: str) -> tuple[str, ...]:
        return tuple(self._graph.predecessors(node_id))

    def roots(self) -> list[str]:
        return [n for n in self._graph.nodes if self._graph.in_degree(n) == 0]

    def sinks(self) -> list[str]:
        return [n for n in self._graph.nodes if self._graph.out_degree(n) == 0]

    def entry_node_id(self) -> str:
        """The configured entry, else the single input node, else the single root."""
        if self._spec.entry is not None:
            return self._spec.entry
        inputs = [n.id for n in self._nodes.values() if n.node_type is NodeType.INPUT]
        if len(inputs) == 1:
            return inputs[0]
        roots = self.roots()
        if len(roots) == 1:
            return roots[0]
        raise GraphValidationError(f"Cannot determine entry node: roots={sorted(roots)}")

    def validate(self) -> None:
        """Validate graph structure.

        Raises:
            GraphValidationError: If the graph is cyclic, has a root other
                than the entry node, or has nodes unreachable from it.
        """
        if not nx.is_directed_acyclic_graph(self._graph):
            try:
                cycle = nx.find_cycle(self._graph)
                cycle_str = " -> ".join(f"{u}" for u, _v in cycle)
                raise GraphValidationError(f"Graph contains a cycle: {cycle_str}")
            except nx.NetworkXNoCycle:
                raise GraphValidationError("Graph contains a cycle") from None

        entry = self.entry_node_id()
        if entry not in self._nodes:
            raise GraphValidationError(f"Entry node '{entry}' is not in the graph")

        inputs = [n.id for n in self._nodes.values() if n.node_type is NodeType.INPUT]
        if len(inputs) > 1:
            raise GraphValidationError(f"Graph must have at most one input node, found {sorted(inputs)}")
        if inputs and inputs[0] != entry:
            raise GraphValidationError(f"Input node '{inputs[0]}' must be the entry node, entry is '{entry}'")

        roots = self.roots()
        if roots != [entry]:
            extra = sorted(r for r in roots if r != entry)
            if entry not in roots:
                raise GraphValidationError(f"Entry node '{entry}' has incoming edges")
            raise GraphValidationError(f"Graph must have exactly one root (the entry '{entry}'), also found {extra}")

        reachable = nx.descendants(self._graph, entry) | {entry}
        unreachable = set(self._graph.nodes) - reachable
        if unreachable:
            raise GraphValidationError(f"Nodes unreachable from entry '{entry}': {sorted(unreachable)}")

        for node in self._nodes.values():
            if isinstance(node, GateNodeSpec):
                self._validate_gate_targets(node)

    def _validate_gate_targets(self, gate: GateNodeSpec) -> None:
        children = set(self.children(gate.id))
        for label, target in (("pass_node_id", gate.pass_node_id), ("reject_node_id", gate.reject_node_id)):
            if target is not None and target not in children:
                raise GraphValidationError(f"Gate '{gate.id}' {label}='{target}' is not a child of the gate")

    def topological_order(self) -> list[str]:
        try:
            return list(nx.topological_sort(self._graph))
        except nx.NetworkXUnfeasible as e:
            raise GraphValidationError(f"Cannot sort graph: {e}") from e

    def build_index(self) -> ExecutionIndex:
        return ExecutionIndex(
            node_map=MappingProxyType(dict(self._nodes)),
            indegree={node_id: self._graph.in_degree(node_id) for node_id in self._nodes},
            adjacency=MappingProxyType({node_id: self.children(node_id) for node_id in self._nodes}),
            incoming=MappingProxyType({node_id: self.parents(node_id) for node_id in self._nodes}),
        )


def load_graph(path: Path) -> ExecutionGraph:
    """Load a graph document from a YAML or JSON file (JSON is valid YAML)."""
    if not path.exists():
        raise FileNotFoundError(f"Graph file not found: {path}")
    document = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(document, dict):
        raise GraphValidationError(f"Graph document must be a mapping, got {type(document).__name__}")
    return ExecutionGraph.from_dict(document)
