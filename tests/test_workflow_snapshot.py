"""
Tests — snapshot store.

Running instances route against the graph captured at start, survive
template edits and deletion, and keep a completed snapshot once done.
"""

import pytest
from sqlalchemy import select

from app.core.exceptions import NotFoundError
from app.models import db
from app.models.workflow import ActiveStep, WorkflowConnection, WorkflowInstance
from app.services import workflow_execution_service as wes
from app.services import workflow_service


@pytest.fixture()
def two_forms(build_template, make_user, make_project):
    """start -> draft -> check -> end, all unassigned forms."""
    owner = make_user("owner")
    template, ids = build_template(
        {"start": ("start",), "draft": ("form",), "check": ("form",), "end": ("end",)},
        [("start", "draft"), ("draft", "check"), ("check", "end")],
        name="Two Forms",
    )
    return template, ids, owner, make_project(owner)


def _connection(from_id, to_id):
    return db.session.execute(
        select(WorkflowConnection).where(
            WorkflowConnection.from_node_id == from_id, WorkflowConnection.to_node_id == to_id,
        )
    ).scalar_one()


class TestStartedSnapshot:
    def test_snapshot_contents(self, two_forms):
        template, ids, owner, project = two_forms
        instance = wes.start_instance(template.id, project_id=project.id, started_by=owner.id)
        snapshot = db.session.get(WorkflowInstance, instance["id"]).started_snapshot
        assert snapshot["template_name"] == "Two Forms"
        assert {n["id"] for n in snapshot["nodes"]} == set(ids.values())
        assert len(snapshot["connections"]) == 3
        assert "captured_at" in snapshot

    def test_template_edits_do_not_reach_running_instances(self, two_forms):
        template, ids, owner, project = two_forms
        instance = wes.start_instance(template.id, project_id=project.id, started_by=owner.id)

        workflow_service.delete_connection(_connection(ids["draft"], ids["check"]).id)
        workflow_service.update_node(ids["check"], {"label": "Renamed"})

        result = wes.advance(instance["id"], acting_user_id=owner.id)
        assert [(n["id"], n["label"]) for n in result["next_nodes"]] == [(ids["check"], "Check")]


class TestTemplateDeletion:
    def test_referenced_template_is_soft_deleted(self, two_forms):
        template, ids, owner, project = two_forms
        instance = wes.start_instance(template.id, project_id=project.id, started_by=owner.id)

        outcome = workflow_service.delete_template(template.id)
        assert outcome == {"deleted": True, "soft_deleted": True, "snapshots_created": 0}
        kept = workflow_service.get_template(template.id)
        assert kept.name == "[DELETED] Two Forms"
        assert kept.is_active is False
        assert workflow_service.list_templates() == []
        assert [t["id"] for t in workflow_service.list_templates(include_deleted=True)] == [template.id]

        wes.advance(instance["id"], acting_user_id=owner.id)
        done = wes.advance(instance["id"], acting_user_id=owner.id)
        assert done["instance"]["status"] == "completed"
        assert done["instance"]["template_name"] == "Two Forms"

    def test_unreferenced_template_is_removed(self, build_template):
        template, _ = build_template({"start": ("start",), "end": ("end",)}, [("start", "end")])
        outcome = workflow_service.delete_template(template.id)
        assert outcome["soft_deleted"] is False
        with pytest.raises(NotFoundError):
            workflow_service.get_template(template.id)

    def test_legacy_instance_gets_a_synthesized_snapshot(self, two_forms):
        template, ids, owner, project = two_forms
        legacy = WorkflowInstance(
            template_id=template.id, project_id=project.id, status="active",
            current_node_id=ids["draft"], started_by=owner.id,
        )
        db.session.add(legacy)
        db.session.flush()
        db.session.add(ActiveStep(instance_id=legacy.id, node_id=ids["draft"], branch_id="main"))
        db.session.commit()

        outcome = workflow_service.delete_template(template.id)
        assert outcome == {"deleted": True, "soft_deleted": True, "snapshots_created": 1}
        snapshot = db.session.get(WorkflowInstance, legacy.id).started_snapshot
        assert snapshot["captured_reason"] == "template_deleted"

        result = wes.advance(legacy.id, acting_user_id=owner.id)
        assert [n["id"] for n in result["next_nodes"]] == [ids["check"]]


class TestCompletedSnapshot:
    def test_written_once_on_completion(self, two_forms):
        template, ids, owner, project = two_forms
        instance = wes.start_instance(template.id, project_id=project.id, started_by=owner.id)
        started = dict(db.session.get(WorkflowInstance, instance["id"]).started_snapshot)

        wes.advance(instance["id"], acting_user_id=owner.id)
        wes.advance(instance["id"], acting_user_id=owner.id)

        row = db.session.get(WorkflowInstance, instance["id"])
        assert row.started_snapshot == started
        completed = row.completed_snapshot
        assert [h["notes"] for h in completed["history"]][0] == "Workflow started"
        assert len(completed["history"]) == 3
        assert completed["node_assignments"][str(ids["check"])]["user_id"] == owner.id
        assert completed["node_assignments"][str(ids["check"])]["user_name"] == "Owner"
        assert len(completed["nodes"]) == 4
