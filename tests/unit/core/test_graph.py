# tests/unit/core/test_graph.py
"""Tests for graph documents, validation and topology queries."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from railflow.contracts.enums import NodeType, Provider
from railflow.core.dag import ExecutionGraph, GraphValidationError, TurnNodeSpec, load_graph


def document(nodes: list[dict[str, Any]], edges: list[tuple[str, str]], **extra: Any) -> dict[str, Any]:
    return {"nodes": nodes, "edges": [{"source": s, "target": t} for s, t in edges], **extra}


LINEAR = document(
    [{"id": "input", "type": "input"}, {"id": "a", "type": "turn"}, {"id": "b", "type": "turn"}],
    [("input", "a"), ("a", "b")],
)


class TestDocumentParsing:
    def test_discriminated_node_types(self) -> None:
        graph = ExecutionGraph.from_dict(
            document(
                [
                    {"id": "input", "type": "input"},
                    {"id": "t", "type": "transform", "mode": "pick", "pick_path": "a.b"},
                    {"id": "g", "type": "gate", "predicate": "True"},
                ],
                [("input", "t"), ("t", "g")],
            )
        )

        assert [node.node_type for node in graph.nodes()] == [NodeType.INPUT, NodeType.TRANSFORM, NodeType.GATE]

    def test_web_executor(self) -> None:
        spec = TurnNodeSpec(id="w", executor="web/gemini")

        assert spec.web_provider is Provider.GEMINI
        assert TurnNodeSpec(id="l").web_provider is None

    @pytest.mark.parametrize("executor", ["web/bard", "remote", "web/"])
    def test_bad_executor(self, executor: str) -> None:
        with pytest.raises(GraphValidationError, match="Invalid graph document"):
            ExecutionGraph.from_dict(document([{"id": "a", "type": "turn", "executor": executor}], []))

    def test_unknown_node_type(self) -> None:
        with pytest.raises(GraphValidationError):
            ExecutionGraph.from_dict(document([{"id": "a", "type": "sink"}], []))

    def test_duplicate_ids(self) -> None:
        with pytest.raises(GraphValidationError, match="Duplicate node id"):
            ExecutionGraph.from_dict(document([{"id": "a", "type": "turn"}, {"id": "a", "type": "turn"}], []))

    def test_edge_to_unknown_node(self) -> None:
        with pytest.raises(GraphValidationError, match="unknown node 'ghost'"):
            ExecutionGraph.from_dict(document([{"id": "a", "type": "turn"}], [("a", "ghost")]))

    def test_self_loop(self) -> None:
        with pytest.raises(GraphValidationError, match="Self-loop"):
            ExecutionGraph.from_dict(document([{"id": "a", "type": "turn"}], [("a", "a")]))

    def test_empty_graph(self) -> None:
        with pytest.raises(GraphValidationError):
            ExecutionGraph.from_dict({"nodes": []})


class TestValidate:
    def test_linear_graph_is_valid(self) -> None:
        graph = ExecutionGraph.from_dict(LINEAR)

        graph.validate()

        assert graph.entry_node_id() == "input"
        assert graph.topological_order() == ["input", "a", "b"]

    def test_cycle(self) -> None:
        graph = ExecutionGraph.from_dict(
            document(
                [{"id": "input", "type": "input"}, {"id": "a", "type": "turn"}, {"id": "b", "type": "turn"}],
                [("input", "a"), ("a", "b"), ("b", "a")],
            )
        )

        with pytest.raises(GraphValidationError, match="cycle"):
            graph.validate()

    def test_two_input_nodes(self) -> None:
        graph = ExecutionGraph.from_dict(
            document(
                [{"id": "i1", "type": "input"}, {"id": "i2", "type": "input"}, {"id": "a", "type": "turn"}],
                [("i1", "a"), ("i2", "a")],
                entry="i1",
            )
        )

        with pytest.raises(GraphValidationError, match="at most one input node"):
            graph.validate()

    def test_input_must_be_entry(self) -> None:
        graph = ExecutionGraph.from_dict(
            document([{"id": "a", "type": "turn"}, {"id": "input", "type": "input"}], [("a", "input")], entry="a")
        )

        with pytest.raises(GraphValidationError, match="must be the entry node"):
            graph.validate()

    def test_second_root(self) -> None:
        graph = ExecutionGraph.from_dict(
            document(
                [{"id": "input", "type": "input"}, {"id": "a", "type": "turn"}, {"id": "orphan", "type": "turn"}],
                [("input", "a"), ("orphan", "a")],
            )
        )

        with pytest.raises(GraphValidationError, match=r"exactly one root.*orphan"):
            graph.validate()

    def test_entry_with_incoming_edge(self) -> None:
        graph = ExecutionGraph.from_dict(
            document([{"id": "a", "type": "turn"}, {"id": "b", "type": "turn"}], [("a", "b")], entry="b")
        )

        with pytest.raises(GraphValidationError, match="has incoming edges"):
            graph.validate()

    def test_unknown_entry(self) -> None:
        graph = ExecutionGraph.from_dict(document([{"id": "a", "type": "turn"}], [], entry="nope"))

        with pytest.raises(GraphValidationError, match="not in the graph"):
            graph.validate()

    def test_entry_defaults_to_single_root(self) -> None:
        graph = ExecutionGraph.from_dict(document([{"id": "a", "type": "turn"}, {"id": "b", "type": "turn"}], [("a", "b")]))

        graph.validate()

        assert graph.entry_node_id() == "a"

    def test_ambiguous_entry(self) -> None:
        graph = ExecutionGraph.from_dict(document([{"id": "a", "type": "turn"}, {"id": "b", "type": "turn"}], []))

        with pytest.raises(GraphValidationError, match="Cannot determine entry node"):
            graph.validate()

    def test_gate_target_must_be_child(self) -> None:
        graph = ExecutionGraph.from_dict(
            document(
                [
                    {"id": "input", "type": "input"},
                    {"id": "g", "type": "gate", "pass_node_id": "b"},
                    {"id": "a", "type": "turn"},
                    {"id": "b", "type": "turn"},
                ],
                [("input", "g"), ("g", "a"), ("input", "b")],
            )
        )

        with pytest.raises(GraphValidationError, match="pass_node_id='b' is not a child"):
            graph.validate()


class TestTopology:
    def test_children_follow_declaration_order(self) -> None:
        graph = ExecutionGraph.from_dict(
            document(
                [
                    {"id": "input", "type": "input"},
                    {"id": "z", "type": "turn"},
                    {"id": "a", "type": "turn"},
                ],
                [("input", "z"), ("input", "a")],
            )
        )

        assert graph.children("input") == ("z", "a")
        assert graph.sinks() == ["z", "a"]
        assert graph.parents("a") == ("input",)

    def test_parallel_edges_collapse(self) -> None:
        graph = ExecutionGraph.from_dict(
            document([{"id": "input", "type": "input"}, {"id": "a", "type": "turn"}], [("input", "a"), ("input", "a")])
        )

        assert graph.build_index().indegree == {"input": 0, "a": 1}

    def test_index_indegree_is_a_fresh_copy(self) -> None:
        graph = ExecutionGraph.from_dict(LINEAR)
        first = graph.build_index()
        first.indegree["b"] = 0

        assert graph.build_index().indegree["b"] == 1
        assert first.adjacency["input"] == ("a",)
        assert first.incoming["b"] == ("a",)

    def test_get_node(self) -> None:
        graph = ExecutionGraph.from_dict(LINEAR)

        assert graph.get_node("a").id == "a"
        with pytest.raises(KeyError):
            graph.get_node("missing")


class TestLoadGraph:
    def test_yaml_file(self, tmp_path: Path) -> None:
        path = tmp_path / "graph.yaml"
        path.write_text(
            "nodes:\n"
            "  - {id: input, type: input}\n"
            "  - id: research\n"
            "    type: turn\n"
            "    executor: web/gemini\n"
            "    timeout_ms: 120000\n"
            "edges:\n"
            "  - {source: input, target: research}\n",
            encoding="utf-8",
        )

        graph = load_graph(path)

        research = graph.get_node("research")
        assert isinstance(research, TurnNodeSpec)
        assert research.timeout_ms == 120000

    def test_json_file(self, tmp_path: Path) -> None:
        path = tmp_path / "graph.json"
        path.write_text('{"nodes": [{"id": "input", "type": "input"}]}', encoding="utf-8")

        assert load_graph(path).node_count == 1

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_graph(tmp_path / "missing.yaml")

    def test_non_mapping_document(self, tmp_path: Path) -> None:
        path = tmp_path / "graph.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")

        with pytest.raises(GraphValidationError, match="must be a mapping"):
            load_graph(path)
