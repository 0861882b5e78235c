"""
Tests — template validation report and activation gating.
"""

import pytest

from app.core.exceptions import ConflictError, ValidationError
from app.services import workflow_service
from app.services.workflow.graph import WorkflowGraph
from app.services.workflow.validation import validate_graph


def _graph(nodes, edges):
    node_dicts = [
        {"id": nid, "node_type": ntype, "label": f"N{nid}", "entity_id": None}
        for nid, ntype in nodes.items()
    ]
    edge_dicts = [
        {"id": i + 1, "from_node_id": e[0], "to_node_id": e[1], "condition": e[2] if len(e) > 2 else None}
        for i, e in enumerate(edges)
    ]
    return WorkflowGraph(node_dicts, edge_dicts)


def _codes(issues):
    return sorted({i["code"] for i in issues})


class TestValidateGraph:
    def test_minimal_graph_is_valid(self):
        report = validate_graph(_graph({1: "start", 2: "end"}, [(1, 2)]))
        assert report == {"valid": True, "errors": [], "warnings": []}

    def test_empty_graph(self):
        report = validate_graph(_graph({}, []))
        assert _codes(report["errors"]) == ["NO_NODES"]

    def test_start_nodes(self):
        assert "NO_START" in _codes(validate_graph(_graph({1: "end"}, []))["errors"])
        report = validate_graph(_graph({1: "start", 2: "start", 3: "end"}, [(1, 3), (2, 3)]))
        assert "MULTIPLE_STARTS" in _codes(report["errors"])

    def test_missing_end_and_orphans_are_warnings(self):
        report = validate_graph(_graph({1: "start", 2: "role", 3: "form"}, [(1, 2)]))
        assert _codes(report["warnings"]) == ["NO_END", "ORPHANED_NODE"]
        assert report["warnings"][-1]["node_id"] == 3

    def test_forward_cycle_is_an_error(self):
        report = validate_graph(_graph(
            {1: "start", 2: "role", 3: "form", 4: "end"},
            [(1, 2), (2, 3), (3, 2), (3, 4)],
        ))
        assert "CYCLE_DETECTED" in _codes(report["errors"])
        assert "N2 → N3 → N2" in report["errors"][0]["message"]

    def test_rejection_loop_is_not_a_cycle(self):
        report = validate_graph(_graph(
            {1: "start", 2: "form", 3: "approval", 4: "end"},
            [(1, 2), (2, 3), (3, 4, {"decision": "approved"}), (3, 2, {"decision": "rejected"})],
        ))
        assert report["valid"], report["errors"]

    def test_approval_edges(self):
        report = validate_graph(_graph({1: "start", 2: "approval", 3: "end"}, [(1, 2)]))
        assert "APPROVAL_NO_EDGES" in _codes(report["errors"])

        report = validate_graph(_graph(
            {1: "start", 2: "approval", 3: "end", 4: "form"},
            [(1, 2), (2, 3, {"decision": "rejected"}), (2, 4, {"decision": "rejected"}), (4, 3)],
        ))
        assert "APPROVAL_NO_APPROVED_PATH" in _codes(report["errors"])

    def test_sync_needs_two_inputs(self):
        report = validate_graph(_graph({1: "start", 2: "sync", 3: "end"}, [(1, 2), (2, 3)]))
        assert _codes(report["errors"]) == ["SYNC_SINGLE_INPUT"]

    def test_sync_needs_a_route_for_rejections(self):
        nodes = {1: "start", 2: "approval", 3: "approval", 4: "sync", 5: "end", 6: "form"}
        edges = [
            (1, 2), (1, 3),
            (2, 4, {"decision": "approved"}), (3, 4, {"decision": "approved"}),
            (2, 6, {"decision": "rejected"}), (3, 6, {"decision": "rejected"}), (6, 5),
            (4, 5, {"decision": "all_approved"}),
        ]
        report = validate_graph(_graph(nodes, edges))
        assert _codes(report["errors"]) == ["SYNC_NO_REJECTION_PATH"]
        assert report["errors"][0]["node_id"] == 4

        report = validate_graph(_graph(nodes, edges + [(4, 6, {"decision": "any_rejected"})]))
        assert report["valid"], report["errors"]

    def test_dead_end(self):
        report = validate_graph(_graph(
            {1: "start", 2: "role", 3: "role", 4: "end"},
            [(1, 2), (2, 4), (1, 3)],
        ))
        dead = [i for i in report["errors"] if i["code"] == "DEAD_END"]
        assert [i["node_id"] for i in dead] == [3]

    @pytest.mark.parametrize("edges,code", [
        ([(1, 2)], "CONDITIONAL_NO_OUTPUT"),
        ([(1, 2), (2, 3), (2, 4)], "CONDITIONAL_NO_CONDITIONS"),
        ([(1, 2), (2, 3, {"sourceFormFieldId": "f", "conditionType": "is_checked"})], "CONDITIONAL_MISSING_DEFAULT"),
    ])
    def test_conditional_warnings(self, edges, code):
        report = validate_graph(_graph({1: "start", 2: "conditional", 3: "end", 4: "end"}, edges))
        assert code in _codes(report["warnings"])

    def test_role_without_users(self, make_role):
        role = make_role("ghost")
        graph = WorkflowGraph(
            [
                {"id": 1, "node_type": "start", "label": "Start", "entity_id": None},
                {"id": 2, "node_type": "role", "label": "Haunt", "entity_id": role.id},
                {"id": 3, "node_type": "end", "label": "End", "entity_id": None},
            ],
            [
                {"id": 1, "from_node_id": 1, "to_node_id": 2, "condition": None},
                {"id": 2, "from_node_id": 2, "to_node_id": 3, "condition": None},
            ],
        )
        report = validate_graph(graph)
        assert _codes(report["errors"]) == ["ROLE_NO_USERS"]
        assert 'No users have the "ghost" role' in report["errors"][0]["message"]


class TestActivation:
    def test_new_templates_start_inactive(self):
        created = workflow_service.create_template({"name": "Onboarding"})
        assert created["is_active"] is False

    def test_activation_refuses_invalid_graph(self):
        created = workflow_service.create_template({"name": "Broken"})
        workflow_service.add_node(created["id"], {"node_type": "form", "label": "Only form"})
        with pytest.raises(ValidationError) as exc:
            workflow_service.activate_template(created["id"])
        assert "NO_START" in _codes(exc.value.details["errors"])
        assert workflow_service.get_template(created["id"]).is_active is False

    def test_activation_returns_report(self):
        created = workflow_service.create_template({"name": "Tiny"})
        start = workflow_service.add_node(created["id"], {"node_type": "start", "label": "Start"})
        end = workflow_service.add_node(created["id"], {"node_type": "end", "label": "End"})
        workflow_service.add_connection(created["id"], {"from_node_id": start["id"], "to_node_id": end["id"]})

        activated = workflow_service.activate_template(created["id"])
        assert activated["is_active"] is True
        assert activated["validation"]["valid"] is True

    def test_deleted_template_cannot_be_reactivated(self, build_template):
        template, _ = build_template({"start": ("start",), "end": ("end",)}, [("start", "end")])
        template.name = "[DELETED] Old"
        with pytest.raises(ConflictError):
            workflow_service.update_template(template.id, {"is_active": True})
