"""
Rejection resolver — rework routing when a forked branch rejects.

A rejection on the main branch, or one whose target is a sync or end node,
needs nothing extra. A rejection on a forked branch that routes back to an
earlier step is handed to the configured strategy, which picks one of:

    route to sync   the rejecting branch joins the downstream sync like any
                    other arrival; sibling branches keep their work and the
                    sync routes on ``any_rejected``
    hard rollback   every open step of the fork family (siblings and their
                    descendants, waiting sync arrivals) and every open step
                    the fork already released downstream on the parent
                    branch is cancelled; the rework step goes on the parent
                    branch

Both outcomes post a project update.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select

from app.models import db
from app.models.workflow import OPEN_STEP_STATUSES, ActiveStep
from app.services.workflow import subject
from app.services.workflow.branches import Branch
from app.services.workflow.coordinator import AdvanceContext
from app.services.workflow.policies import RejectionContext

logger = logging.getLogger(__name__)


@dataclass
class RejectionOutcome:
    next_nodes: list
    branch: Branch
    routed_to_sync: bool = False
    rolled_back: bool = False
    cancelled_steps: int = 0


def _sibling_branches_with_progress(ctx: AdvanceContext, branch: Branch) -> int:
    completed = db.session.execute(
        select(ActiveStep.branch_id).where(
            ActiveStep.instance_id == ctx.instance.id, ActiveStep.status == "completed",
        )
    ).scalars().all()
    labels = set()
    for label in completed:
        other = ctx.arena.by_label(label)
        if (
            other.index != branch.index
            and other.parent_index == branch.parent_index
            and other.generation == branch.generation
        ):
            labels.add(other.label)
    return len(labels)


def hard_rollback(ctx: AdvanceContext, branch: Branch, current_step_id: int | None) -> int:
    """Cancel the fork family of ``branch`` and what the fork already released. Returns the count."""
    arena = ctx.arena
    parent = arena.parent_of(branch) or arena.root
    open_steps = db.session.execute(
        select(ActiveStep).where(
            ActiveStep.instance_id == ctx.instance.id,
            ActiveStep.status.in_(OPEN_STEP_STATUSES),
        )
    ).scalars().all()

    doomed = [
        s for s in open_steps
        if s.id != current_step_id and arena.in_family(arena.by_label(s.branch_id), branch)
    ]
    if branch.fork_node_id is not None:
        downstream = ctx.graph.downstream_node_ids([branch.fork_node_id])
    else:
        downstream = ctx.graph.downstream_node_ids({s.node_id for s in doomed})
    doomed_ids = {s.id for s in doomed}
    doomed += [
        s for s in open_steps
        if s.id != current_step_id
        and s.id not in doomed_ids
        and s.branch_id == parent.label
        and s.node_id in downstream
    ]

    now = datetime.now(timezone.utc)
    for step in doomed:
        step.status = "cancelled"
        step.completed_at = now
    db.session.flush()
    logger.info(
        "Rolled back %d step(s) of fork family %s", len(doomed), branch.label,
        extra={
            "event_type": "workflow.rejection_rollback",
            "instance_id": ctx.instance.id,
            "branch_id": branch.label,
        },
    )
    return len(doomed)


def resolve_rejection(
    ctx: AdvanceContext,
    current_node: dict,
    current_step,
    next_nodes: list[dict],
    *,
    project_id: int | None,
) -> RejectionOutcome:
    branch = ctx.arena.by_label(current_step.branch_id if current_step else None)
    outcome = RejectionOutcome(next_nodes=next_nodes, branch=branch)
    if branch.is_root or not next_nodes:
        return outcome
    target = next_nodes[0]
    if target["node_type"] in ("sync", "end"):
        return outcome

    sync_node = ctx.graph.find_downstream_sync(current_node["id"])
    siblings_with_progress = _sibling_branches_with_progress(ctx, branch)
    decision_ctx = RejectionContext(
        has_downstream_sync=sync_node is not None,
        sync_has_rejection_path=bool(sync_node) and ctx.graph.sync_has_rejection_path(sync_node["id"]),
        siblings_with_progress=siblings_with_progress,
    )

    if ctx.settings.rejection_strategy.route_to_sync(decision_ctx):
        progress = (
            f" ({siblings_with_progress} parallel branch(es) have work in progress)"
            if siblings_with_progress else ""
        )
        if project_id is not None:
            subject.post_update(
                project_id,
                f'**Workflow Decision**: "{current_node["label"]}" rejected - '
                f"routing to sync point for final decision.{progress}",
                created_by=ctx.acting_user_id,
            )
        logger.info(
            "Rejection on %s routed to sync %s", branch.label, sync_node["label"],
            extra={
                "event_type": "workflow.rejection_to_sync",
                "instance_id": ctx.instance.id,
                "node_id": sync_node["id"],
                "branch_id": branch.label,
            },
        )
        return RejectionOutcome(next_nodes=[sync_node], branch=branch, routed_to_sync=True)

    cancelled = hard_rollback(ctx, branch, current_step.id if current_step else None)
    if project_id is not None:
        subject.post_update(
            project_id,
            f'**Workflow Reset**: "{current_node["label"]}" rejected - returning to '
            f'"{target["label"]}" for revision. All parallel approval branches have been reset.',
            created_by=ctx.acting_user_id,
        )
    return RejectionOutcome(
        next_nodes=next_nodes,
        branch=ctx.arena.parent_of(branch) or ctx.arena.root,
        rolled_back=True,
        cancelled_steps=cancelled,
    )
