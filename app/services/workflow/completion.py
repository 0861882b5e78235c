"""Completion gate: an instance finishes exactly once, and never on a rejection."""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from app.core.exceptions import WorkflowConfigurationError
from app.models import db
from app.models.workflow import OPEN_STEP_STATUSES, ActiveStep
from app.services.workflow import subject
from app.services.workflow.snapshot import capture_completed_snapshot

logger = logging.getLogger(__name__)


def open_step_count(instance_id: int) -> int:
    return db.session.execute(
        select(func.count(ActiveStep.id)).where(
            ActiveStep.instance_id == instance_id,
            ActiveStep.status.in_(OPEN_STEP_STATUSES),
        )
    ).scalar_one()


def is_complete(instance_id: int, new_steps: list) -> bool:
    """Complete iff this call created no steps and nothing is active or waiting."""
    if new_steps:
        return False
    return open_step_count(instance_id) == 0


def guard_rejection(node: dict, decision: str | None, completing: bool) -> None:
    if decision == "rejected" and completing:
        raise WorkflowConfigurationError(
            f'Rejection failed: Could not route "{node["label"]}" to next step. '
            "The workflow cannot be completed on rejection - please check the workflow configuration.",
            details={"node_id": node["id"]},
        )


def complete_instance(instance, graph, completed_by: int | None = None) -> None:
    if instance.status == "completed":
        return
    db.session.flush()
    instance.completed_snapshot = capture_completed_snapshot(instance, graph)
    instance.status = "completed"
    instance.completed_at = datetime.now(timezone.utc)
    instance.current_node_id = None
    subject.complete_subject(instance)
    logger.info(
        "Workflow completed", extra={
            "event_type": "workflow.completed",
            "instance_id": instance.id,
            "project_id": instance.project_id,
            "user_id": completed_by,
        },
    )
