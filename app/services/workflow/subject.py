"""
Subject linkage — side effects of a workflow on the project (or task) it runs for.

    subject_project_id(instance)          project the instance belongs to
    active_step_assignments(...)          who is responsible for what is open
    reassign_project(project_id, ...)     members follow the active steps
    post_update / open_issue              project feed entries
    complete_subject(instance)            project complete / task done

The project creator keeps access through every reassignment until the
project completes.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from app.models import db
from app.models.project import Project, ProjectIssue, ProjectMember, ProjectUpdate, Task
from app.models.workflow import ActiveStep
from app.services import permission_service

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


def subject_project_id(instance) -> int | None:
    if instance.project_id is not None:
        return instance.project_id
    if instance.task_id is not None:
        task = db.session.get(Task, instance.task_id)
        return task.project_id if task else None
    return None


def responsible_users(node: dict, assignee: int | None) -> list[int]:
    """Explicit assignee, else every holder of the node's role or department."""
    if assignee is not None:
        return [assignee]
    if node.get("entity_id") is None:
        return []
    if node["node_type"] == "department":
        return permission_service.users_in_department(node["entity_id"])
    return permission_service.users_with_role(node["entity_id"])


def active_step_assignments(instance_id: int, graph) -> list[tuple[dict, int | None]]:
    """(node, assignee) for every active step of the instance."""
    steps = db.session.execute(
        select(ActiveStep).where(ActiveStep.instance_id == instance_id, ActiveStep.status == "active")
    ).scalars().all()
    pairs = []
    for step in steps:
        node = graph.node_by_id(step.node_id)
        if node is not None:
            pairs.append((node, step.assigned_user_id))
    return pairs


def reassign_project(project_id: int, assignments: list[tuple[dict, int | None]], assigned_by: int) -> list[int]:
    """Replace project members with the users responsible for ``assignments``.

    Active members who are neither responsible nor the creator are
    removed; the responsible users and the creator are (re)added. When
    nobody is responsible (unassigned form steps) membership is left as it
    is. Returns the user ids that are active afterwards.
    """
    project = db.session.get(Project, project_id)
    if project is None:
        return []
    creator_id = project.owner_id
    now = _utcnow()

    user_ids: list[int] = []
    for node, assignee in assignments:
        for uid in responsible_users(node, assignee):
            if uid not in user_ids:
                user_ids.append(uid)
    if not user_ids:
        return []
    if creator_id is not None and creator_id not in user_ids:
        user_ids.append(creator_id)

    members = db.session.execute(
        select(ProjectMember).where(ProjectMember.project_id == project_id)
    ).scalars().all()
    by_user = {m.user_id: m for m in members}
    for member in members:
        if member.removed_at is None and member.user_id not in user_ids:
            member.removed_at = now

    for uid in user_ids:
        member = by_user.get(uid)
        if member is None:
            member = ProjectMember(
                project_id=project_id,
                user_id=uid,
                role_in_project="creator" if uid == creator_id else "workflow",
                assigned_by=assigned_by,
            )
            db.session.add(member)
            by_user[uid] = member
        elif member.removed_at is not None:
            member.removed_at = None
            member.joined_at = now
            member.assigned_by = assigned_by
    db.session.flush()
    return user_ids


def post_update(project_id: int, content: str, *, created_by: int | None, history_id: int | None = None) -> ProjectUpdate:
    update = ProjectUpdate(
        project_id=project_id,
        content=content,
        update_type="workflow",
        created_by=created_by,
        workflow_history_id=history_id,
    )
    db.session.add(update)
    return update


def open_issue(project_id: int, content: str, *, created_by: int | None, history_id: int | None = None) -> ProjectIssue:
    issue = ProjectIssue(
        project_id=project_id,
        content=content,
        status="open",
        created_by=created_by,
        workflow_history_id=history_id,
    )
    db.session.add(issue)
    return issue


def complete_subject(instance) -> None:
    """Mark the subject finished. Projects also drop all members and resolve open issues."""
    now = _utcnow()
    if instance.task_id is not None:
        task = db.session.get(Task, instance.task_id)
        if task is not None:
            task.status = "done"
        return

    project = db.session.get(Project, instance.project_id)
    if project is None:
        return
    project.status = "complete"
    project.completed_at = now

    members = db.session.execute(
        select(ProjectMember).where(
            ProjectMember.project_id == project.id, ProjectMember.removed_at.is_(None),
        )
    ).scalars().all()
    for member in members:
        member.removed_at = now

    issues = db.session.execute(
        select(ProjectIssue).where(ProjectIssue.project_id == project.id, ProjectIssue.status == "open")
    ).scalars().all()
    for issue in issues:
        issue.status = "resolved"
        issue.resolved_at = now

    logger.info(
        "Project %s completed; %d open issue(s) resolved", project.id, len(issues),
        extra={"project_id": project.id, "instance_id": instance.id},
    )
