"""
Tests — workflow HTTP API.

Covers:
    - template editing endpoints and activation gating
    - instance start / advance / cancel through the blueprint
    - error mapping: 404, 409, 422 (validation and configuration), 403
    - health probes
"""

import pytest


def _post(client, url, payload=None):
    return client.post(url, json=payload or {})


@pytest.fixture()
def api_template(client):
    """Builds start -> review(form) -> end over HTTP and returns (template_id, node ids)."""
    res = _post(client, "/api/v1/workflow-templates", {"name": "API Flow"})
    assert res.status_code == 201
    tid = res.get_json()["id"]
    nodes = {}
    for key, ntype in (("start", "start"), ("review", "form"), ("end", "end")):
        res = _post(client, f"/api/v1/workflow-templates/{tid}/nodes", {"node_type": ntype, "label": key.title()})
        assert res.status_code == 201
        nodes[key] = res.get_json()["id"]
    for src, dst in (("start", "review"), ("review", "end")):
        res = _post(
            client, f"/api/v1/workflow-templates/{tid}/connections",
            {"from_node_id": nodes[src], "to_node_id": nodes[dst]},
        )
        assert res.status_code == 201
    return tid, nodes


class TestTemplateEndpoints:
    def test_create_requires_name(self, client):
        res = _post(client, "/api/v1/workflow-templates", {})
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_CONSTRAINT"

    def test_get_includes_graph(self, client, api_template):
        tid, nodes = api_template
        body = client.get(f"/api/v1/workflow-templates/{tid}").get_json()
        assert {n["id"] for n in body["nodes"]} == set(nodes.values())
        assert len(body["connections"]) == 2

    def test_unknown_template(self, client):
        res = client.get("/api/v1/workflow-templates/999")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_invalid_node_type(self, client, api_template):
        tid, _ = api_template
        res = _post(client, f"/api/v1/workflow-templates/{tid}/nodes", {"node_type": "timer", "label": "x"})
        assert res.status_code == 422

    def test_self_loop_connection(self, client, api_template):
        tid, nodes = api_template
        res = _post(
            client, f"/api/v1/workflow-templates/{tid}/connections",
            {"from_node_id": nodes["review"], "to_node_id": nodes["review"]},
        )
        assert res.status_code == 422

    def test_validation_and_activation(self, client, api_template):
        tid, _ = api_template
        report = client.get(f"/api/v1/workflow-templates/{tid}/validation").get_json()
        assert report["valid"] is True
        res = _post(client, f"/api/v1/workflow-templates/{tid}/activate")
        assert res.status_code == 200
        assert res.get_json()["is_active"] is True

    def test_activation_failure_carries_report(self, client):
        tid = _post(client, "/api/v1/workflow-templates", {"name": "Empty"}).get_json()["id"]
        res = _post(client, f"/api/v1/workflow-templates/{tid}/activate")
        assert res.status_code == 422
        assert res.get_json()["details"]["errors"][0]["code"] == "NO_NODES"

    def test_delete_node_removes_connections(self, client, api_template):
        tid, nodes = api_template
        res = client.delete(f"/api/v1/workflow-nodes/{nodes['review']}")
        assert res.get_json() == {"deleted": True}
        body = client.get(f"/api/v1/workflow-templates/{tid}").get_json()
        assert body["connections"] == []

    def test_delete_template(self, client, api_template):
        tid, _ = api_template
        res = client.delete(f"/api/v1/workflow-templates/{tid}")
        assert res.get_json()["soft_deleted"] is False
        assert client.get(f"/api/v1/workflow-templates/{tid}").status_code == 404


class TestInstanceEndpoints:
    def _start(self, client, tid, project, user):
        return _post(client, "/api/v1/workflow-instances", {
            "template_id": tid, "project_id": project.id, "acting_user_id": user.id,
        })

    def test_inactive_template_conflicts(self, client, api_template, make_user, make_project):
        tid, _ = api_template
        owner = make_user("owner")
        res = self._start(client, tid, make_project(owner), owner)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_start_advance_complete(self, client, api_template, make_user, make_project):
        tid, nodes = api_template
        _post(client, f"/api/v1/workflow-templates/{tid}/activate")
        owner = make_user("owner")
        res = self._start(client, tid, make_project(owner), owner)
        assert res.status_code == 201
        iid = res.get_json()["id"]

        steps = client.get(f"/api/v1/workflow-instances/{iid}/steps?status=active").get_json()
        assert [s["node_id"] for s in steps] == [nodes["review"]]

        res = _post(client, f"/api/v1/workflow-instances/{iid}/advance", {
            "acting_user_id": owner.id, "form_data": {"responses": {"summary": "ok"}},
        })
        assert res.status_code == 200
        assert res.get_json()["instance"]["status"] == "completed"

        history = client.get(f"/api/v1/workflow-instances/{iid}/history").get_json()
        assert len(history) == 2
        res = _post(client, f"/api/v1/workflow-instances/{iid}/cancel", {"acting_user_id": owner.id})
        assert res.status_code == 409

    def test_start_requires_acting_user(self, client, api_template, make_user, make_project):
        tid, _ = api_template
        project = make_project(make_user("owner"))
        res = _post(client, "/api/v1/workflow-instances", {"template_id": tid, "project_id": project.id})
        assert res.status_code == 422
        assert res.get_json()["details"] == {"acting_user_id": "required"}

    def test_form_data_must_be_an_object(self, client, api_template, make_user, make_project):
        tid, _ = api_template
        _post(client, f"/api/v1/workflow-templates/{tid}/activate")
        owner = make_user("owner")
        iid = self._start(client, tid, make_project(owner), owner).get_json()["id"]
        res = _post(client, f"/api/v1/workflow-instances/{iid}/advance", {
            "acting_user_id": owner.id, "form_data": ["not", "a", "dict"],
        })
        assert res.status_code == 422

    def test_outsider_is_forbidden(self, client, api_template, make_user, make_project):
        tid, _ = api_template
        _post(client, f"/api/v1/workflow-templates/{tid}/activate")
        owner = make_user("owner")
        outsider = make_user("outsider")
        iid = self._start(client, tid, make_project(owner), owner).get_json()["id"]
        res = _post(client, f"/api/v1/workflow-instances/{iid}/advance", {"acting_user_id": outsider.id})
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_zero_user_role_is_a_configuration_error(
        self, client, build_template, make_role, make_user, make_project,
    ):
        role = make_role("nobody")
        template, _ = build_template(
            {"start": ("start",), "gate": ("approval", role.id), "end": ("end",)},
            [("start", "gate"), ("gate", "end")],
        )
        owner = make_user("owner")
        res = self._start(client, template.id, make_project(owner), owner)
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_WORKFLOW_CONFIGURATION"
        assert body["details"]["role_id"] == role.id

    def test_node_assignment_and_pending(self, client, api_template, make_user, make_project):
        tid, nodes = api_template
        _post(client, f"/api/v1/workflow-templates/{tid}/activate")
        owner = make_user("owner")
        iid = self._start(client, tid, make_project(owner), owner).get_json()["id"]
        res = _post(client, f"/api/v1/workflow-instances/{iid}/node-assignments", {
            "node_id": nodes["review"], "user_id": owner.id, "acting_user_id": owner.id,
        })
        assert res.status_code == 201
        pending = client.get(f"/api/v1/users/{owner.id}/pending-steps").get_json()
        assert [p["node_id"] for p in pending] == [nodes["review"]]

    def test_unknown_instance(self, client):
        res = _post(client, "/api/v1/workflow-instances/404/advance", {"acting_user_id": 1})
        assert res.status_code == 404


class TestHealth:
    def test_ready(self, client):
        assert client.get("/api/v1/health/ready").get_json() == {"status": "ok"}

    def test_live_reports_engine_counters(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        checks = res.get_json()["checks"]
        assert checks["workflow"]["active_instances"] == 0
        assert "permission_cache" in checks
