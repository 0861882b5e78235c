"""
Workflow Execution Service — start, advance and cancel workflow instances.

Public operations:
    start_instance(template_id, *, project_id=None, task_id=None, started_by)
    advance(instance_id, *, step_id=None, acting_user_id, decision=None, feedback=None,
            form_data=None, assigned_user_id=None, assignees_per_node=None)
    cancel_instance(instance_id, *, cancelled_by=None)
    assign_node(instance_id, node_id, user_id, *, assigned_by=None)
    pending_steps_for(user_id)
    get_instance / list_steps / list_history

One advancing event runs in one transaction:

    load instance + graph (snapshot preferred)
      → resolve the step being advanced → authorize (before any write)
      → resolve next nodes (conditional chaining) → rejection checks
      → record approval → complete step → rejection resolution
      → materialize / join → project assignments → history
      → project issue / update → completion gate → instance pointer
      → commit

Any exception rolls the whole event back.
"""

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import select

from app.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
    WorkflowConfigurationError,
)
from app.models import db
from app.models.auth import User
from app.models.project import Project, Task
from app.models.workflow import (
    DECISIONS,
    MAIN_BRANCH,
    OPEN_STEP_STATUSES,
    ActiveStep,
    WorkflowApproval,
    WorkflowHistory,
    WorkflowInstance,
    WorkflowNodeAssignment,
    WorkflowTemplate,
)
from app.services import permission_service
from app.services.workflow import completion, subject
from app.services.workflow.branches import BranchArena
from app.services.workflow.coordinator import AdvanceContext, materialize_targets
from app.services.workflow.graph import WorkflowGraph, graph_for_instance
from app.services.workflow.policies import EngineSettings
from app.services.workflow.rejection import RejectionOutcome, resolve_rejection
from app.services.workflow.routing import (
    accumulated_form_data,
    chain_conditionals,
    check_rejection_route,
    resolve_next,
)
from app.services.workflow.snapshot import capture_started_snapshot

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


# ── Lookups ──────────────────────────────────────────────────────────────


def _get_instance(instance_id: int) -> WorkflowInstance:
    instance = db.session.get(WorkflowInstance, instance_id)
    if instance is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)
    return instance


def _require_active(instance: WorkflowInstance) -> None:
    if instance.status != "active":
        raise ConflictError(
            "WorkflowInstance", "status", instance.status,
            message=f"Workflow instance {instance.id} is {instance.status} and cannot be changed",
        )


def get_instance(instance_id: int) -> dict:
    instance = _get_instance(instance_id)
    d = instance.to_dict(include_steps=True)
    d["branches"] = [b.to_dict() for b in instance.branches.all()]
    return d


def list_steps(instance_id: int, statuses=None) -> list[dict]:
    _get_instance(instance_id)
    stmt = select(ActiveStep).where(ActiveStep.instance_id == instance_id)
    if statuses:
        stmt = stmt.where(ActiveStep.status.in_(list(statuses)))
    return [s.to_dict() for s in db.session.execute(stmt.order_by(ActiveStep.id)).scalars().all()]


def list_history(instance_id: int) -> list[dict]:
    _get_instance(instance_id)
    rows = db.session.execute(
        select(WorkflowHistory)
        .where(WorkflowHistory.instance_id == instance_id)
        .order_by(WorkflowHistory.handed_off_at, WorkflowHistory.id)
    ).scalars().all()
    return [h.to_dict() for h in rows]


# ── Authorization ────────────────────────────────────────────────────────


def _has_node_assignment(instance_id: int, node_id: int, user_id: int) -> bool:
    return db.session.execute(
        select(WorkflowNodeAssignment.id).where(
            WorkflowNodeAssignment.instance_id == instance_id,
            WorkflowNodeAssignment.node_id == node_id,
            WorkflowNodeAssignment.user_id == user_id,
        )
    ).first() is not None


def authorize_advance(instance: WorkflowInstance, node: dict, step: ActiveStep, user_id: int) -> None:
    """Raise AuthorizationError unless ``user_id`` may advance ``step``.

    Superadmins pass. Everyone else must be assigned to the project; an
    explicit step or node assignment then skips the role / department check.
    """
    if permission_service.is_superadmin(user_id):
        return

    project_id = subject.subject_project_id(instance)
    if project_id is not None and not permission_service.is_assigned_to_project(user_id, project_id):
        raise AuthorizationError("You must be assigned to this project to advance the workflow", user_id=user_id)

    if step.assigned_user_id == user_id or _has_node_assignment(instance.id, node["id"], user_id):
        return

    entity_id = node.get("entity_id")
    if entity_id is None:
        return
    if node["node_type"] in ("role", "approval"):
        if not permission_service.user_has_role(user_id, entity_id):
            role = permission_service.role_name(entity_id)
            raise AuthorizationError(
                f'Only users with the "{role}" role can advance this workflow step', user_id=user_id,
            )
    elif node["node_type"] == "department":
        if entity_id not in permission_service.user_department_ids(user_id):
            dept = permission_service.department_name(entity_id)
            raise AuthorizationError(
                f'Only users in the "{dept}" department can advance this workflow step', user_id=user_id,
            )


# ── Start ────────────────────────────────────────────────────────────────


def start_instance(
    template_id: int,
    *,
    project_id: int | None = None,
    task_id: int | None = None,
    started_by: int,
) -> dict:
    """Start ``template_id`` for exactly one subject and activate the steps after Start."""
    if (project_id is None) == (task_id is None):
        raise ValidationError(
            "Exactly one of project_id or task_id is required",
            details={"project_id": project_id, "task_id": task_id},
        )
    template = db.session.get(WorkflowTemplate, template_id)
    if template is None:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=template_id)
    if not template.is_active:
        raise ConflictError(
            "WorkflowTemplate", "is_active", False,
            message=f'Workflow "{template.name}" is not active. '
                    "Please activate it in the workflow editor before using.",
        )
    if project_id is not None and db.session.get(Project, project_id) is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    if task_id is not None and db.session.get(Task, task_id) is None:
        raise NotFoundError(resource="Task", resource_id=task_id)

    try:
        snapshot = capture_started_snapshot(template)
        if not snapshot["nodes"]:
            raise ValidationError(
                f'Workflow "{template.name}" has no nodes configured. '
                "Please add nodes in the workflow editor.",
            )
        graph = WorkflowGraph.from_snapshot(snapshot)
        start = graph.start_node()
        if start is None:
            raise WorkflowConfigurationError(
                f'Workflow "{template.name}" has no Start node. Please add one in the workflow editor.',
            )

        instance = WorkflowInstance(
            template_id=template.id,
            project_id=project_id,
            task_id=task_id,
            status="active",
            current_node_id=start["id"],
            started_snapshot=snapshot,
            started_by=started_by,
        )
        db.session.add(instance)
        db.session.flush()

        settings = EngineSettings.from_config()
        arena = BranchArena.from_instance(instance)
        ctx = AdvanceContext(
            instance=instance, graph=graph, arena=arena, settings=settings,
            acting_user_id=started_by, from_node=start,
        )
        targets = chain_conditionals(
            graph, resolve_next(graph, start), form_data={}, max_hops=settings.max_conditional_hops,
        )
        if not targets:
            raise WorkflowConfigurationError(
                f'Workflow "{template.name}" has no connection out of its Start node.',
                details={"node_id": start["id"]},
            )
        materialize_targets(ctx, targets, arena.root)
        arena.persist()

        db.session.add(WorkflowHistory(
            instance_id=instance.id,
            from_node_id=start["id"],
            to_node_id=targets[0]["id"],
            handed_off_by=started_by,
            handed_off_to=ctx.new_steps[0].assigned_user_id if ctx.new_steps else None,
            notes="Workflow started",
            branch_id=MAIN_BRANCH,
        ))

        if project_id is not None:
            db.session.get(Project, project_id).workflow_instance_id = instance.id
        sub_project = subject.subject_project_id(instance)
        if sub_project is not None and ctx.assignments:
            subject.reassign_project(
                sub_project, subject.active_step_assignments(instance.id, graph), started_by,
            )

        if instance.current_node_id == start["id"]:
            instance.current_node_id = targets[0]["id"]
        if completion.is_complete(instance.id, ctx.new_steps):
            completion.complete_instance(instance, graph, completed_by=started_by)

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Workflow started from template %s", template.id,
        extra={
            "event_type": "workflow.started",
            "instance_id": instance.id,
            "template_id": template.id,
            "project_id": project_id,
            "user_id": started_by,
        },
    )
    return instance.to_dict(include_steps=True)


# ── Advance ──────────────────────────────────────────────────────────────


def _current_step(instance: WorkflowInstance, step_id: int | None) -> ActiveStep:
    if step_id is not None:
        step = db.session.get(ActiveStep, step_id)
        if step is None or step.instance_id != instance.id:
            raise NotFoundError(resource="ActiveStep", resource_id=step_id)
        if step.status != "active":
            raise ConflictError(
                "ActiveStep", "status", step.status,
                message=f"Step {step.id} is {step.status} and cannot be advanced",
            )
        return step

    active = db.session.execute(
        select(ActiveStep)
        .where(ActiveStep.instance_id == instance.id, ActiveStep.status == "active")
        .order_by(ActiveStep.id)
    ).scalars().all()
    if not active:
        raise ConflictError(
            "WorkflowInstance", "status", instance.status,
            message=f"Workflow instance {instance.id} has no active step to advance",
        )
    if len(active) > 1:
        raise ValidationError(
            "step_id is required while the workflow has parallel active steps",
            details={"active_step_ids": [s.id for s in active]},
        )
    return active[0]


def _update_text(node: dict, decision: str | None, feedback: str | None, next_nodes: list[dict]) -> str:
    labels = " & ".join(n["label"] for n in next_nodes) or "Complete"
    if decision == "approved":
        text = f"**Approved**: {node['label']} → {labels}"
        if feedback:
            text += f"\nNotes: {feedback}"
        return text
    if decision == "rejected":
        return f"**Rejected**: {node['label']}\nReason: {feedback or 'No reason provided'}"
    return f"**Progressed**: {node['label']} → {labels}"


def advance(
    instance_id: int,
    *,
    step_id: int | None = None,
    acting_user_id: int,
    decision: str | None = None,
    feedback: str | None = None,
    form_data: dict | None = None,
    assigned_user_id: int | None = None,
    assignees_per_node: dict | None = None,
) -> dict:
    """Advance one active step of an instance.

    Returns ``{"next_nodes", "new_steps", "instance"}``. Raises
    AuthorizationError before any write when the user may not act on the
    step, and WorkflowConfigurationError when the template cannot route the
    transition; in both cases nothing is persisted.
    """
    if decision is not None and decision not in DECISIONS:
        raise ValidationError(
            f"Invalid decision: {decision!r}", details={"decision": sorted(DECISIONS)},
        )
    instance = _get_instance(instance_id)
    _require_active(instance)

    try:
        graph = graph_for_instance(instance)
        step = _current_step(instance, step_id)
        node = graph.require_node(step.node_id)
        authorize_advance(instance, node, step, acting_user_id)

        settings = EngineSettings.from_config()
        arena = BranchArena.from_instance(instance)
        ctx = AdvanceContext(
            instance=instance,
            graph=graph,
            arena=arena,
            settings=settings,
            acting_user_id=acting_user_id,
            from_node=node,
            assigned_user_id=assigned_user_id,
            assignees_per_node=assignees_per_node or {},
        )

        values = accumulated_form_data(instance.id, form_data)
        targets = resolve_next(
            graph, node, decision=decision, form_data=values, aggregate_decision=step.aggregate_decision,
        )
        targets = chain_conditionals(
            graph, targets, decision=decision, form_data=values, max_hops=settings.max_conditional_hops,
        )
        rejecting = decision == "rejected"
        # A sync released on any_rejected carries the rejection forward.
        sync_rejected = node["node_type"] == "sync" and step.aggregate_decision == "any_rejected"
        if rejecting or sync_rejected:
            check_rejection_route(graph, node, targets)

        if node["node_type"] == "approval" and decision:
            db.session.add(WorkflowApproval(
                instance_id=instance.id,
                node_id=node["id"],
                approver_user_id=acting_user_id,
                decision=decision,
                feedback=feedback,
                branch_id=step.branch_id,
            ))
        step.status = "completed"
        step.completed_at = _utcnow()
        db.session.flush()

        project_id = subject.subject_project_id(instance)
        if rejecting:
            outcome = resolve_rejection(ctx, node, step, targets, project_id=project_id)
        else:
            outcome = RejectionOutcome(next_nodes=targets, branch=arena.by_label(step.branch_id))

        materialize_targets(ctx, outcome.next_nodes, outcome.branch, rejection=rejecting)
        arena.persist()

        if project_id is not None and ctx.assignments:
            subject.reassign_project(
                project_id, subject.active_step_assignments(instance.id, graph), acting_user_id,
            )

        history = WorkflowHistory(
            instance_id=instance.id,
            from_node_id=node["id"],
            to_node_id=outcome.next_nodes[0]["id"] if outcome.next_nodes else None,
            handed_off_by=acting_user_id,
            handed_off_to=ctx.new_steps[0].assigned_user_id if ctx.new_steps else None,
            decision=decision,
            feedback=feedback,
            notes=json.dumps({"type": "inline_form", "data": form_data}) if form_data else None,
            form_data=form_data or None,
            branch_id=step.branch_id,
        )
        db.session.add(history)
        db.session.flush()

        if project_id is not None:
            if rejecting:
                subject.open_issue(
                    project_id,
                    f"**Workflow Rejected**: {node['label']}\n\n"
                    f"Workflow: {instance.template_name}\n"
                    f"Reason: {feedback or 'No reason provided'}",
                    created_by=acting_user_id,
                    history_id=history.id,
                )
            subject.post_update(
                project_id,
                _update_text(node, decision, feedback, outcome.next_nodes),
                created_by=acting_user_id,
                history_id=history.id,
            )

        completing = completion.is_complete(instance.id, ctx.new_steps)
        completion.guard_rejection(node, "rejected" if sync_rejected else decision, completing)
        if completing:
            completion.complete_instance(instance, graph, completed_by=acting_user_id)
        elif outcome.next_nodes:
            instance.current_node_id = outcome.next_nodes[0]["id"]

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Advanced %s (%s) on %s", node["label"], decision or "progressed", step.branch_id,
        extra={
            "event_type": "workflow.step_advanced",
            "instance_id": instance.id,
            "step_id": step.id,
            "node_id": node["id"],
            "branch_id": step.branch_id,
            "user_id": acting_user_id,
        },
    )
    return {
        "next_nodes": outcome.next_nodes,
        "new_steps": [s.to_dict() for s in ctx.new_steps],
        "instance": instance.to_dict(),
    }


# ── Cancel / assignments ─────────────────────────────────────────────────


def cancel_instance(instance_id: int, *, cancelled_by: int | None = None) -> dict:
    instance = _get_instance(instance_id)
    _require_active(instance)
    now = _utcnow()
    open_steps = db.session.execute(
        select(ActiveStep).where(
            ActiveStep.instance_id == instance.id, ActiveStep.status.in_(OPEN_STEP_STATUSES),
        )
    ).scalars().all()
    for step in open_steps:
        step.status = "cancelled"
        step.completed_at = now
    instance.status = "cancelled"
    instance.cancelled_at = now
    db.session.add(WorkflowHistory(
        instance_id=instance.id,
        from_node_id=instance.current_node_id,
        handed_off_by=cancelled_by,
        notes="Workflow cancelled",
        branch_id=MAIN_BRANCH,
    ))
    db.session.commit()
    logger.info(
        "Workflow cancelled (%d open step(s))", len(open_steps),
        extra={"event_type": "workflow.cancelled", "instance_id": instance.id, "user_id": cancelled_by},
    )
    return instance.to_dict(include_steps=True)


def assign_node(instance_id: int, node_id: int, user_id: int, *, assigned_by: int | None = None) -> dict:
    """Explicitly assign ``user_id`` to ``node_id`` for one instance (idempotent)."""
    instance = _get_instance(instance_id)
    _require_active(instance)
    graph = graph_for_instance(instance)
    if graph.node_by_id(node_id) is None:
        raise NotFoundError(resource="WorkflowNode", resource_id=node_id)
    if db.session.get(User, user_id) is None:
        raise NotFoundError(resource="User", resource_id=user_id)

    existing = db.session.execute(
        select(WorkflowNodeAssignment).where(
            WorkflowNodeAssignment.instance_id == instance_id,
            WorkflowNodeAssignment.node_id == node_id,
            WorkflowNodeAssignment.user_id == user_id,
        )
    ).scalar_one_or_none()
    if existing is not None:
        return existing.to_dict()

    assignment = WorkflowNodeAssignment(
        instance_id=instance_id, node_id=node_id, user_id=user_id, assigned_by=assigned_by,
    )
    db.session.add(assignment)
    db.session.commit()
    logger.info(
        "Node %s assigned to user %s", node_id, user_id,
        extra={"instance_id": instance_id, "node_id": node_id, "user_id": user_id},
    )
    return assignment.to_dict()


# ── Pending work ─────────────────────────────────────────────────────────


def pending_steps_for(user_id: int) -> list[dict]:
    """Active steps ``user_id`` is expected to act on.

    Approval and form steps match by explicit assignee, node assignment or
    (for unassigned steps) role; sync steps match their elected leader.
    """
    if db.session.get(User, user_id) is None:
        raise NotFoundError(resource="User", resource_id=user_id)

    rows = db.session.execute(
        select(ActiveStep, WorkflowInstance)
        .join(WorkflowInstance, WorkflowInstance.id == ActiveStep.instance_id)
        .where(ActiveStep.status == "active", WorkflowInstance.status == "active")
        .order_by(ActiveStep.activated_at, ActiveStep.id)
    ).all()

    assigned_nodes = set(db.session.execute(
        select(WorkflowNodeAssignment.instance_id, WorkflowNodeAssignment.node_id)
        .where(WorkflowNodeAssignment.user_id == user_id)
    ).tuples().all())

    graphs: dict[int, WorkflowGraph] = {}
    pending = []
    for step, instance in rows:
        if instance.id not in graphs:
            graphs[instance.id] = graph_for_instance(instance)
        node = graphs[instance.id].node_by_id(step.node_id)
        if node is None:
            continue

        if node["node_type"] == "sync":
            matched = step.assigned_user_id == user_id
        elif node["node_type"] in ("approval", "form"):
            matched = (
                step.assigned_user_id == user_id
                or (instance.id, node["id"]) in assigned_nodes
                or (
                    step.assigned_user_id is None
                    and node.get("entity_id") is not None
                    and permission_service.user_has_role(user_id, node["entity_id"])
                )
            )
        else:
            matched = False

        if matched:
            d = step.to_dict()
            d.update({
                "node": node,
                "template_name": instance.template_name,
                "project_id": instance.project_id,
                "task_id": instance.task_id,
            })
            pending.append(d)
    return pending
