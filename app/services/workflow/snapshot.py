"""
Snapshot store.

An instance routes against the graph as it was when the instance started,
never against later edits:

    started_snapshot    {nodes, connections, template_name, captured_at[, captured_reason]}
                        written once by start_instance
    completed_snapshot  {nodes, connections, history, node_assignments, captured_at}
                        written once when the instance completes

Deleting a template synthesizes a started snapshot for every instance that
predates snapshots, so those instances keep routing after the live rows go.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from app.models import db
from app.models.workflow import WorkflowHistory, WorkflowInstance
from app.services import permission_service
from app.services.workflow.graph import WorkflowGraph

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def capture_started_snapshot(template, reason: str | None = None) -> dict:
    graph = WorkflowGraph.from_template(template.id)
    snapshot = {
        **graph.to_snapshot_parts(),
        "template_name": template.name,
        "captured_at": _now_iso(),
    }
    if reason:
        snapshot["captured_reason"] = reason
    return snapshot


def capture_completed_snapshot(instance, graph: WorkflowGraph) -> dict:
    """Final graph plus the full history and who handled each node."""
    history = db.session.execute(
        select(WorkflowHistory)
        .where(WorkflowHistory.instance_id == instance.id)
        .order_by(WorkflowHistory.handed_off_at, WorkflowHistory.id)
    ).scalars().all()

    node_assignments = {}
    for entry in history:
        if entry.to_node_id is not None and entry.handed_off_by is not None:
            node_assignments[str(entry.to_node_id)] = {
                "user_id": entry.handed_off_by,
                "user_name": permission_service.user_display_name(entry.handed_off_by),
            }

    return {
        **graph.to_snapshot_parts(),
        "history": [h.to_dict() for h in history],
        "node_assignments": node_assignments,
        "captured_at": _now_iso(),
    }


def synthesize_missing_snapshots(template) -> int:
    """Give every instance of ``template`` without a started snapshot one. Returns the count."""
    instances = db.session.execute(
        select(WorkflowInstance).where(
            WorkflowInstance.template_id == template.id,
            WorkflowInstance.started_snapshot.is_(None),
        )
    ).scalars().all()
    if not instances:
        return 0
    snapshot = capture_started_snapshot(template, reason="template_deleted")
    for instance in instances:
        instance.started_snapshot = dict(snapshot)
    db.session.flush()
    logger.info(
        "Synthesized snapshots for %d instance(s) of template %s", len(instances), template.id,
        extra={"template_id": template.id},
    )
    return len(instances)
