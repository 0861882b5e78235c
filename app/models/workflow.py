"""
Workflow Engine models — templates, graph, instances and execution state.

Template side (editable, versioned-by-edit):
    WorkflowTemplate ─┬─ WorkflowNode
                      └─ WorkflowConnection (directed edge, optional condition)

Execution side (one row set per running instance):
    WorkflowInstance ─┬─ WorkflowBranch      (branch arena: parent/fork/generation)
                      ├─ ActiveStep          (unit of concurrent execution)
                      ├─ WorkflowHistory     (append-only transition log)
                      ├─ WorkflowApproval    (approve / reject decisions)
                      ├─ WorkflowNodeAssignment (explicit per-node assignees)
                      └─ WorkflowSyncLock    (join serialization)

Execution rows reference node ids as plain integers, not foreign keys:
routing runs against the instance's started_snapshot, so the live template
rows may be edited or removed while the instance is in flight.
"""

from datetime import datetime, timezone

from app.models import db

# ── Constants ─────────────────────────────────────────────────────────────────

NODE_TYPES = frozenset({
    "start",
    "role",
    "department",
    "approval",
    "form",
    "conditional",
    "sync",
    "end",
})

INSTANCE_STATUSES = frozenset({"active", "completed", "cancelled"})
STEP_STATUSES = frozenset({"active", "waiting", "completed", "cancelled"})
OPEN_STEP_STATUSES = ("active", "waiting")

DECISIONS = frozenset({"approved", "rejected"})
AGGREGATE_DECISIONS = frozenset({"all_approved", "any_rejected", "no_approvals"})

MAIN_BRANCH = "main"
DELETED_PREFIX = "[DELETED] "


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# Template side
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowTemplate(db.Model):
    """Named graph definition; ``is_active`` gates new instances."""

    __tablename__ = "workflow_templates"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="Templates are created inactive and activated by an editor",
    )
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    nodes = db.relationship(
        "WorkflowNode", backref="template", lazy="dynamic",
        cascade="all, delete-orphan", order_by="WorkflowNode.id",
    )
    connections = db.relationship(
        "WorkflowConnection", backref="template", lazy="dynamic",
        cascade="all, delete-orphan", order_by="WorkflowConnection.id",
    )

    @property
    def is_deleted(self) -> bool:
        return (self.name or "").startswith(DELETED_PREFIX)

    def to_dict(self, include_graph=False) -> dict:
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "is_deleted": self.is_deleted,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_graph:
            d["nodes"] = [n.to_dict() for n in self.nodes.all()]
            d["connections"] = [c.to_dict() for c in self.connections.all()]
        return d

    def __repr__(self):
        return f"<WorkflowTemplate {self.id}: {self.name}>"


class WorkflowNode(db.Model):
    __tablename__ = "workflow_nodes"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    node_type = db.Column(
        db.String(20), nullable=False,
        comment="start | role | department | approval | form | conditional | sync | end",
    )
    label = db.Column(db.String(200), nullable=False)
    entity_id = db.Column(
        db.Integer, nullable=True,
        comment="roles.id for role/approval nodes, departments.id for department nodes",
    )
    form_template_id = db.Column(db.Integer, nullable=True)
    position_x = db.Column(db.Float, nullable=True)
    position_y = db.Column(db.Float, nullable=True)
    settings = db.Column(db.JSON(none_as_null=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "node_type": self.node_type,
            "label": self.label,
            "entity_id": self.entity_id,
            "form_template_id": self.form_template_id,
            "position_x": self.position_x,
            "position_y": self.position_y,
            "settings": self.settings or {},
        }

    def __repr__(self):
        return f"<WorkflowNode {self.id} {self.node_type}:{self.label}>"


class WorkflowConnection(db.Model):
    __tablename__ = "workflow_connections"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    from_node_id = db.Column(
        db.Integer, db.ForeignKey("workflow_nodes.id", ondelete="CASCADE"), nullable=False,
    )
    to_node_id = db.Column(
        db.Integer, db.ForeignKey("workflow_nodes.id", ondelete="CASCADE"), nullable=False,
    )
    condition = db.Column(
        db.JSON(none_as_null=True), nullable=True,
        comment='{"decision": "approved"} or {"sourceFormFieldId", "conditionType", "value", "value2"}',
    )
    label = db.Column(db.String(200), nullable=True)

    __table_args__ = (
        db.Index("ix_workflow_connections_from", "from_node_id"),
        db.Index("ix_workflow_connections_to", "to_node_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "from_node_id": self.from_node_id,
            "to_node_id": self.to_node_id,
            "condition": self.condition,
            "label": self.label,
        }

    def __repr__(self):
        return f"<WorkflowConnection {self.id} {self.from_node_id}->{self.to_node_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# Execution side
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowInstance(db.Model):
    """
    One execution of a template against exactly one subject.

    Business rules:
    - Exactly one of project_id / task_id is set.
    - started_snapshot is written once at start and never changed, except
      that a template deletion may synthesize it for legacy rows that had
      none.
    - completed_snapshot is written once when the instance completes.
    """

    __tablename__ = "workflow_instances"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    status = db.Column(
        db.String(20), nullable=False, default="active",
        comment="active | completed | cancelled",
    )
    current_node_id = db.Column(
        db.Integer, nullable=True,
        comment="Linear pointer: last node the instance moved to (legacy / display)",
    )
    has_parallel_paths = db.Column(db.Boolean, nullable=False, default=False)
    branch_generation = db.Column(
        db.Integer, nullable=False, default=0,
        comment="Fork counter; each fork mints generation + 1",
    )
    started_snapshot = db.Column(db.JSON(none_as_null=True), nullable=True)
    completed_snapshot = db.Column(db.JSON(none_as_null=True), nullable=True)
    started_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.CheckConstraint(
            "(project_id IS NULL) <> (task_id IS NULL)",
            name="ck_workflow_instance_single_subject",
        ),
    )

    template = db.relationship("WorkflowTemplate")
    steps = db.relationship(
        "ActiveStep", backref="instance", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ActiveStep.id",
    )
    branches = db.relationship(
        "WorkflowBranch", backref="instance", lazy="dynamic",
        cascade="all, delete-orphan", order_by="WorkflowBranch.arena_index",
    )

    @property
    def template_name(self):
        if self.started_snapshot and self.started_snapshot.get("template_name"):
            return self.started_snapshot["template_name"]
        return self.template.name if self.template else None

    def to_dict(self, include_steps=False) -> dict:
        d = {
            "id": self.id,
            "template_id": self.template_id,
            "template_name": self.template_name,
            "project_id": self.project_id,
            "task_id": self.task_id,
            "status": self.status,
            "current_node_id": self.current_node_id,
            "has_parallel_paths": self.has_parallel_paths,
            "branch_generation": self.branch_generation or 0,
            "has_snapshot": self.started_snapshot is not None,
            "started_by": self.started_by,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps.all()]
        return d

    def __repr__(self):
        return f"<WorkflowInstance {self.id} {self.status}>"


class WorkflowBranch(db.Model):
    """Persisted record of one node in an instance's branch arena."""

    __tablename__ = "workflow_branches"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instances.id", ondelete="CASCADE"), nullable=False,
    )
    arena_index = db.Column(db.Integer, nullable=False)
    parent_index = db.Column(db.Integer, nullable=True, comment="NULL for the main branch")
    fork_node_id = db.Column(db.Integer, nullable=True, comment="Node whose fork created this branch")
    fork_index = db.Column(db.Integer, nullable=True)
    generation = db.Column(db.Integer, nullable=True)
    label = db.Column(db.String(255), nullable=False, comment="Legacy parent-index_generation token")

    __table_args__ = (
        db.UniqueConstraint("instance_id", "arena_index", name="uq_workflow_branch_index"),
        db.UniqueConstraint("instance_id", "label", name="uq_workflow_branch_label"),
    )

    def to_dict(self) -> dict:
        return {
            "arena_index": self.arena_index,
            "parent_index": self.parent_index,
            "fork_node_id": self.fork_node_id,
            "fork_index": self.fork_index,
            "generation": self.generation,
            "label": self.label,
        }


class ActiveStep(db.Model):
    """
    Unit of concurrent execution: one node on one branch of one instance.

    Lifecycle: active → completed (advanced) | waiting (arrived at a sync
    before its siblings) | cancelled (rolled back past its fork point).
    Re-entering a (node, branch) pair reactivates the existing row.
    """

    __tablename__ = "workflow_active_steps"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instances.id", ondelete="CASCADE"), nullable=False,
    )
    node_id = db.Column(db.Integer, nullable=False)
    branch_id = db.Column(db.String(255), nullable=False, default=MAIN_BRANCH)
    status = db.Column(
        db.String(20), nullable=False, default="active",
        comment="active | waiting | completed | cancelled",
    )
    assigned_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    aggregate_decision = db.Column(
        db.String(20), nullable=True,
        comment="Sync steps only: all_approved | any_rejected | no_approvals",
    )
    activated_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.UniqueConstraint("instance_id", "node_id", "branch_id", name="uq_active_step_node_branch"),
        db.Index("ix_active_steps_instance_status", "instance_id", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "node_id": self.node_id,
            "branch_id": self.branch_id,
            "status": self.status,
            "assigned_user_id": self.assigned_user_id,
            "aggregate_decision": self.aggregate_decision,
            "activated_at": _iso(self.activated_at),
            "completed_at": _iso(self.completed_at),
        }

    def __repr__(self):
        return f"<ActiveStep {self.id} node={self.node_id} {self.branch_id} {self.status}>"


class WorkflowHistory(db.Model):
    """Append-only transition log. Rows are inserted, never updated."""

    __tablename__ = "workflow_history"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    from_node_id = db.Column(db.Integer, nullable=True)
    to_node_id = db.Column(db.Integer, nullable=True)
    handed_off_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    handed_off_to = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    decision = db.Column(db.String(20), nullable=True, comment="approved | rejected")
    feedback = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    form_data = db.Column(db.JSON(none_as_null=True), nullable=True)
    branch_id = db.Column(db.String(255), nullable=False, default=MAIN_BRANCH)
    handed_off_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "from_node_id": self.from_node_id,
            "to_node_id": self.to_node_id,
            "handed_off_by": self.handed_off_by,
            "handed_off_to": self.handed_off_to,
            "decision": self.decision,
            "feedback": self.feedback,
            "notes": self.notes,
            "form_data": self.form_data,
            "branch_id": self.branch_id,
            "handed_off_at": _iso(self.handed_off_at),
        }


class WorkflowApproval(db.Model):
    __tablename__ = "workflow_approvals"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    node_id = db.Column(db.Integer, nullable=False)
    approver_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    decision = db.Column(db.String(20), nullable=False, comment="approved | rejected")
    feedback = db.Column(db.Text, nullable=True)
    branch_id = db.Column(db.String(255), nullable=False, default=MAIN_BRANCH)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "node_id": self.node_id,
            "approver_user_id": self.approver_user_id,
            "decision": self.decision,
            "feedback": self.feedback,
            "branch_id": self.branch_id,
            "created_at": _iso(self.created_at),
        }


class WorkflowNodeAssignment(db.Model):
    """Explicit assignee for a node of one instance; bypasses entity checks."""

    __tablename__ = "workflow_node_assignments"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instances.id", ondelete="CASCADE"), nullable=False,
    )
    node_id = db.Column(db.Integer, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    assigned_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("instance_id", "node_id", "user_id", name="uq_workflow_node_assignment"),
        db.Index("ix_workflow_node_assignments_user", "user_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "node_id": self.node_id,
            "user_id": self.user_id,
            "assigned_by": self.assigned_by,
            "created_at": _iso(self.created_at),
        }


class WorkflowSyncLock(db.Model):
    """Single-writer guard for the count-and-release sequence of one join."""

    __tablename__ = "workflow_sync_locks"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instances.id", ondelete="CASCADE"), nullable=False,
    )
    node_id = db.Column(db.Integer, nullable=False)
    locked_by = db.Column(db.String(255), nullable=True)
    locked_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("instance_id", "node_id", name="uq_workflow_sync_lock"),
    )
