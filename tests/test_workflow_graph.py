"""
Tests — WorkflowGraph structure queries and the branch arena.
"""

from types import SimpleNamespace

import pytest

from app.core.exceptions import IntegrityViolation
from app.services.workflow.branches import BranchArena, parse_legacy_label
from app.services.workflow.graph import (
    WorkflowGraph,
    decision_tag,
    is_form_predicate,
    is_plain,
)


def _node(node_id, node_type, label=None):
    return {"id": node_id, "node_type": node_type, "label": label or f"N{node_id}", "entity_id": None}


def _edge(edge_id, src, dst, condition=None):
    return {"id": edge_id, "from_node_id": src, "to_node_id": dst, "condition": condition}


def _fork_join_graph():
    # start(1) -> a(2), b(3) -> sync(4) -> end(5); sync any_rejected -> form(6)
    nodes = [
        _node(1, "start"), _node(2, "approval"), _node(3, "approval"),
        _node(4, "sync"), _node(5, "end"), _node(6, "form"),
    ]
    edges = [
        _edge(1, 1, 2), _edge(2, 1, 3),
        _edge(3, 2, 4, {"decision": "approved"}), _edge(4, 3, 4, {"decision": "approved"}),
        _edge(5, 4, 5, {"decision": "all_approved"}), _edge(6, 4, 6, {"decision": "any_rejected"}),
    ]
    return WorkflowGraph(nodes, edges)


def _instance(generation=0):
    return SimpleNamespace(id=None, branch_generation=generation)


class TestEdgeClassification:
    def test_decision_tag_reads_both_keys(self):
        assert decision_tag(_edge(1, 1, 2, {"decision": "approved"})) == "approved"
        assert decision_tag(_edge(1, 1, 2, {"conditionValue": "rejected"})) == "rejected"
        assert decision_tag(_edge(1, 1, 2)) is None

    def test_form_predicate_needs_field_and_type(self):
        assert is_form_predicate(_edge(1, 1, 2, {"sourceFormFieldId": "f1", "conditionType": "equals"}))
        assert not is_form_predicate(_edge(1, 1, 2, {"sourceFormFieldId": "f1"}))

    def test_plain_edge(self):
        assert is_plain(_edge(1, 1, 2))
        assert is_plain(_edge(1, 1, 2, {}))
        assert not is_plain(_edge(1, 1, 2, {"decision": "approved"}))


class TestGraphQueries:
    def test_fork_point_counts_untagged_edges(self):
        graph = _fork_join_graph()
        assert graph.is_fork_point(1)
        assert not graph.is_fork_point(4)

    def test_expected_arrivals_and_rejection_path(self):
        graph = _fork_join_graph()
        assert graph.expected_arrivals(4) == 2
        assert graph.sync_has_rejection_path(4)

    def test_find_downstream_sync(self):
        graph = _fork_join_graph()
        assert graph.find_downstream_sync(2)["id"] == 4
        assert graph.find_downstream_sync(5) is None

    def test_downstream_node_ids(self):
        graph = _fork_join_graph()
        assert graph.downstream_node_ids([2]) == {4, 5, 6}

    def test_require_node_raises_integrity_violation(self):
        with pytest.raises(IntegrityViolation):
            _fork_join_graph().require_node(99)


class TestSnapshotGraph:
    def test_from_snapshot_round_trips_parts(self):
        graph = _fork_join_graph()
        rebuilt = WorkflowGraph.from_snapshot(graph.to_snapshot_parts())
        assert rebuilt.source == "snapshot"
        assert [n["id"] for n in rebuilt.nodes] == [1, 2, 3, 4, 5, 6]

    @pytest.mark.parametrize("snapshot", [
        None,
        {"nodes": [_node(1, "start")]},
        {"nodes": [{"label": "no id"}], "connections": []},
        {"nodes": [_node(1, "start")], "connections": [_edge(1, 1, 2)]},
    ])
    def test_malformed_snapshot(self, snapshot):
        with pytest.raises(IntegrityViolation):
            WorkflowGraph.from_snapshot(snapshot)


class TestLegacyLabels:
    def test_underscore_format(self):
        assert parse_legacy_label("main-0_1") == ("main", 0, 1)
        assert parse_legacy_label("main-1_k3x9a1") == ("main", 1, int("k3x9a1", 36))

    def test_hyphen_format(self):
        assert parse_legacy_label("main-0-k3x9a1") == ("main", 0, int("k3x9a1", 36))

    def test_nested_label_keeps_parent(self):
        assert parse_legacy_label("main-0_1-1_2") == ("main-0_1", 1, 2)

    def test_bare_index_has_no_generation(self):
        assert parse_legacy_label("main-2") == ("main", 2, None)

    def test_root(self):
        assert parse_legacy_label("main") is None


class TestBranchArena:
    def test_root_always_exists(self):
        arena = BranchArena(_instance(), [])
        assert arena.root.label == "main"
        assert arena.root.is_root
        assert len(arena) == 1

    def test_fork_mints_a_new_generation(self):
        instance = _instance()
        arena = BranchArena(instance, [])
        children = arena.fork(arena.root, fork_node_id=1, count=2)
        assert [c.label for c in children] == ["main-0_1", "main-1_1"]
        assert instance.branch_generation == 1
        assert arena.siblings(children[0]) == [children[1]]

        again = arena.fork(arena.root, fork_node_id=1, count=2)
        assert [c.label for c in again] == ["main-0_2", "main-1_2"]
        assert arena.siblings(again[0]) == [again[1]]

    def test_nested_fork_and_family(self):
        arena = BranchArena(_instance(), [])
        outer = arena.fork(arena.root, 1, 2)
        inner = arena.fork(outer[0], 2, 2)
        assert inner[0].label == "main-0_1-0_2"
        assert list(arena.ancestors(inner[0])) == [outer[0], arena.root]
        # Descendants of a sibling belong to the outer fork family.
        assert arena.in_family(inner[1], outer[1])
        assert not arena.in_family(outer[1], inner[0])

    def test_generations_are_isolated(self):
        arena = BranchArena(_instance(), [])
        first = arena.fork(arena.root, 1, 2)
        second = arena.fork(arena.root, 1, 2)
        assert not arena.in_family(first[1], second[0])
        assert not arena.same_generation(first[0].label, second[0].label)

    def test_legacy_labels_are_adopted(self):
        arena = BranchArena(_instance(), [])
        branch = arena.by_label("main-1_5")
        assert branch.generation == 5
        assert arena.parent_of(branch) is arena.root
        assert arena.by_label("main-1_5") is branch

    def test_fork_skips_labels_already_taken(self):
        instance = _instance()
        arena = BranchArena(instance, [])
        arena.by_label("main-0_1")
        children = arena.fork(arena.root, 1, 2)
        assert children[0].label == "main-0_2"
        assert instance.branch_generation == 2
