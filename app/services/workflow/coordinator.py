"""
Fork/join coordinator — turns resolved next nodes into execution state.

    materialize_targets(ctx, targets, branch, rejection=False)
        one step per target; more than one target (outside a rejection
        re-route) forks: a new generation is minted in the branch arena and
        each target gets its own child branch
    materialize(ctx, node, branch)
        end: nothing; sync: join arrival; anything else: an active step,
        reactivating the existing (node, branch) row if there is one
    arrive_at_sync(ctx, sync_node, branch)
        count same-generation arrivals under the sync lock; the last arrival
        completes the waiting siblings, aggregates the branch decisions,
        elects the leader and activates the sync on the fork's parent branch

All writes go through the caller's transaction.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import WorkflowConfigurationError
from app.models import db
from app.models.workflow import ActiveStep, WorkflowApproval, WorkflowNodeAssignment
from app.services import permission_service
from app.services.workflow.branches import Branch, BranchArena
from app.services.workflow.graph import WorkflowGraph
from app.services.workflow.policies import EngineSettings, elect_sync_leader
from app.services.workflow.sync_lock import SyncLock

logger = logging.getLogger(__name__)

ROLE_NODE_TYPES = ("role", "approval")


def _utcnow():
    return datetime.now(timezone.utc)


@dataclass
class AdvanceContext:
    """Everything one advancing event carries through the coordinator."""

    instance: object
    graph: WorkflowGraph
    arena: BranchArena
    settings: EngineSettings
    acting_user_id: int | None
    from_node: dict | None = None
    assigned_user_id: int | None = None
    assignees_per_node: dict = field(default_factory=dict)
    new_steps: list = field(default_factory=list)
    assignments: list = field(default_factory=list)


# ── Steps ────────────────────────────────────────────────────────────────


def _find_step(instance_id: int, node_id: int, branch_label: str) -> ActiveStep | None:
    return db.session.execute(
        select(ActiveStep).where(
            ActiveStep.instance_id == instance_id,
            ActiveStep.node_id == node_id,
            ActiveStep.branch_id == branch_label,
        )
    ).scalar_one_or_none()


def upsert_step(
    instance_id: int,
    node_id: int,
    branch_label: str,
    *,
    status: str = "active",
    assigned_user_id: int | None = None,
    aggregate_decision: str | None = None,
) -> ActiveStep:
    """Create the (node, branch) step or reactivate the existing row.

    A concurrent event may insert the same (node, branch) between the
    lookup and the insert; the unique constraint hit is absorbed in a
    savepoint and the winner's row is reactivated instead.
    """
    step = _find_step(instance_id, node_id, branch_label)
    if step is None:
        step = ActiveStep(
            instance_id=instance_id,
            node_id=node_id,
            branch_id=branch_label,
            status=status,
            assigned_user_id=assigned_user_id,
            aggregate_decision=aggregate_decision,
        )
        try:
            with db.session.begin_nested():
                db.session.add(step)
            return step
        except IntegrityError:
            logger.info(
                "Step row inserted concurrently, reactivating it",
                extra={"instance_id": instance_id, "node_id": node_id, "branch_id": branch_label},
            )
            step = _find_step(instance_id, node_id, branch_label)
            if step is None:
                raise
    step.status = status
    step.activated_at = _utcnow()
    step.completed_at = None
    step.assigned_user_id = assigned_user_id
    step.aggregate_decision = aggregate_decision
    db.session.flush()
    return step


def explicit_assignee(ctx: AdvanceContext, node: dict, *, single_target: bool) -> int | None:
    """Per-node assignee from the request, else the request-wide one (single target only),
    else a stored node assignment."""
    per_node = ctx.assignees_per_node or {}
    for key in (node["id"], str(node["id"])):
        if per_node.get(key) is not None:
            return int(per_node[key])
    if single_target and ctx.assigned_user_id is not None:
        return ctx.assigned_user_id
    stored = db.session.execute(
        select(WorkflowNodeAssignment.user_id)
        .where(
            WorkflowNodeAssignment.instance_id == ctx.instance.id,
            WorkflowNodeAssignment.node_id == node["id"],
        )
        .order_by(WorkflowNodeAssignment.id)
        .limit(1)
    ).scalar_one_or_none()
    return stored


def _require_eligible_users(node: dict, assignee: int | None) -> None:
    if assignee is not None or node.get("entity_id") is None:
        return
    if node["node_type"] in ROLE_NODE_TYPES:
        if not permission_service.users_with_role(node["entity_id"]):
            role = permission_service.role_name(node["entity_id"])
            raise WorkflowConfigurationError(
                f'Cannot proceed to "{node["label"]}": No users have the "{role}" role. '
                "Please assign at least one user to this role.",
                details={"node_id": node["id"], "role_id": node["entity_id"]},
            )
    elif node["node_type"] == "department":
        if not permission_service.users_in_department(node["entity_id"]):
            dept = permission_service.department_name(node["entity_id"])
            raise WorkflowConfigurationError(
                f'Cannot proceed to "{node["label"]}": No users are assigned to the "{dept}" department. '
                "Please assign at least one user to a role in this department.",
                details={"node_id": node["id"], "department_id": node["entity_id"]},
            )


# ── Materialization ──────────────────────────────────────────────────────


def materialize_targets(
    ctx: AdvanceContext, targets: list[dict], branch: Branch, *, rejection: bool = False,
) -> list[ActiveStep]:
    if len(targets) > 1 and not rejection:
        fork_node_id = ctx.from_node["id"] if ctx.from_node else None
        children = ctx.arena.fork(branch, fork_node_id, len(targets))
        ctx.instance.has_parallel_paths = True
        pairs = list(zip(targets, children))
    else:
        pairs = [(target, branch) for target in targets]

    steps = []
    single = len(targets) == 1
    for target, target_branch in pairs:
        step = materialize(ctx, target, target_branch, single_target=single)
        if step is not None:
            steps.append(step)
    return steps


def materialize(ctx: AdvanceContext, node: dict, branch: Branch, *, single_target: bool = True) -> ActiveStep | None:
    if node["node_type"] == "end":
        return None
    if node["node_type"] == "sync":
        return arrive_at_sync(ctx, node, branch)

    assignee = explicit_assignee(ctx, node, single_target=single_target)
    _require_eligible_users(node, assignee)
    step = upsert_step(ctx.instance.id, node["id"], branch.label, assigned_user_id=assignee)
    ctx.new_steps.append(step)
    ctx.assignments.append((node, assignee))
    logger.info(
        "Step activated at %s", node["label"],
        extra={
            "event_type": "workflow.step_activated",
            "instance_id": ctx.instance.id,
            "step_id": step.id,
            "node_id": node["id"],
            "branch_id": branch.label,
        },
    )
    return step


# ── Join ─────────────────────────────────────────────────────────────────


def _record_waiting(ctx: AdvanceContext, sync_node: dict, branch: Branch) -> ActiveStep:
    step = upsert_step(
        ctx.instance.id, sync_node["id"], branch.label,
        status="waiting", assigned_user_id=ctx.acting_user_id,
    )
    ctx.new_steps.append(step)
    logger.info(
        "Branch waiting at sync %s", sync_node["label"],
        extra={
            "event_type": "workflow.sync_waiting",
            "instance_id": ctx.instance.id,
            "step_id": step.id,
            "node_id": sync_node["id"],
            "branch_id": branch.label,
        },
    )
    return step


def aggregate_decision(ctx: AdvanceContext, sync_node: dict, branch: Branch) -> str:
    """Latest approval per incoming node within the arriving fork family."""
    incoming = [c["from_node_id"] for c in ctx.graph.incoming_edges(sync_node["id"])]
    if not incoming:
        return "no_approvals"
    approvals = db.session.execute(
        select(WorkflowApproval)
        .where(WorkflowApproval.instance_id == ctx.instance.id, WorkflowApproval.node_id.in_(incoming))
        .order_by(WorkflowApproval.created_at.desc(), WorkflowApproval.id.desc())
    ).scalars().all()

    latest: dict[int, str] = {}
    for approval in approvals:
        if approval.node_id in latest:
            continue
        if not ctx.arena.in_family(ctx.arena.by_label(approval.branch_id), branch):
            continue
        latest[approval.node_id] = approval.decision

    decisions = list(latest.values())
    if any(d == "rejected" for d in decisions):
        return "any_rejected"
    if decisions and all(d == "approved" for d in decisions):
        return "all_approved"
    return "no_approvals"


def arrive_at_sync(ctx: AdvanceContext, sync_node: dict, branch: Branch) -> ActiveStep | None:
    instance = ctx.instance
    lock = SyncLock(
        instance.id, sync_node["id"],
        owner=f"branch-{branch.label}",
        ttl_seconds=ctx.settings.sync_lock_ttl_seconds,
    )
    if not lock.acquire():
        # Another arrival is counting; this branch simply waits.
        return _record_waiting(ctx, sync_node, branch)

    try:
        expected = ctx.graph.expected_arrivals(sync_node["id"])
        waiting = db.session.execute(
            select(ActiveStep).where(
                ActiveStep.instance_id == instance.id,
                ActiveStep.node_id == sync_node["id"],
                ActiveStep.status == "waiting",
                ActiveStep.branch_id != branch.label,
            )
        ).scalars().all()
        same_generation = [
            s for s in waiting
            if ctx.arena.by_label(s.branch_id).generation == branch.generation
        ]

        if len(same_generation) + 1 < expected:
            return _record_waiting(ctx, sync_node, branch)

        now = _utcnow()
        for step in same_generation:
            step.status = "completed"
            step.completed_at = now

        decision = aggregate_decision(ctx, sync_node, branch)
        assignee = explicit_assignee(ctx, sync_node, single_target=False)
        leader = elect_sync_leader(
            [assignee, ctx.acting_user_id, *(s.assigned_user_id for s in same_generation)],
            ctx.settings.tie_break,
        )
        release_branch = ctx.arena.parent_of(branch) or branch
        step = upsert_step(
            instance.id, sync_node["id"], release_branch.label,
            status="active", assigned_user_id=leader, aggregate_decision=decision,
        )
        ctx.new_steps.append(step)
        ctx.assignments.append((sync_node, leader))
        instance.current_node_id = sync_node["id"]
        logger.info(
            "Sync %s released (%d/%d arrived, %s, leader=%s)",
            sync_node["label"], len(same_generation) + 1, expected, decision, leader,
            extra={
                "event_type": "workflow.sync_released",
                "instance_id": instance.id,
                "step_id": step.id,
                "node_id": sync_node["id"],
                "branch_id": release_branch.label,
                "user_id": leader,
            },
        )
        return step
    finally:
        lock.release()
