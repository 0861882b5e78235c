"""Project domain models: the subjects a workflow instance runs against.

A workflow instance is attached to exactly one Project or one Task.  The
engine only touches the subject through app.services.workflow.subject:
assignments, human-readable updates, issues and the completion status.
"""

from datetime import datetime, timezone

from app.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class Project(db.Model):
    """Unit of delivery that walks through an approval workflow."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    code = db.Column(db.String(50), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(
        db.String(30), nullable=False, default="active",
        comment="active | on_hold | complete | cancelled",
    )
    priority = db.Column(
        db.String(20), nullable=True, default="medium",
        comment="low | medium | high | critical",
    )
    owner_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        comment="Creator; keeps access across workflow reassignments",
    )
    workflow_instance_id = db.Column(
        db.Integer, nullable=True,
        comment="Most recent workflow instance started for this project",
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    members = db.relationship(
        "ProjectMember", backref="project", lazy="dynamic", cascade="all, delete-orphan",
    )
    updates = db.relationship(
        "ProjectUpdate", backref="project", lazy="dynamic", cascade="all, delete-orphan",
    )
    issues = db.relationship(
        "ProjectIssue", backref="project", lazy="dynamic", cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "code", name="uq_projects_tenant_code"),
    )

    def to_dict(self) -> dict:
        """Serialize core project fields for API responses."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "owner_id": self.owner_id,
            "workflow_instance_id": self.workflow_instance_id,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<Project {self.id}: {self.code}>"


class ProjectMember(db.Model):
    """Active user ↔ project assignment; removed_at set instead of deleting."""

    __tablename__ = "project_members"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    role_in_project = db.Column(
        db.String(50), nullable=True, default="member",
        comment="creator | workflow | member",
    )
    assigned_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    joined_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    removed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.UniqueConstraint("project_id", "user_id", name="uq_project_member"),
        db.Index("ix_project_members_user", "user_id"),
    )

    @property
    def is_active(self) -> bool:
        return self.removed_at is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "role_in_project": self.role_in_project,
            "assigned_by": self.assigned_by,
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
            "removed_at": self.removed_at.isoformat() if self.removed_at else None,
        }


class ProjectUpdate(db.Model):
    """Human-readable status note posted to the project feed."""

    __tablename__ = "project_updates"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    content = db.Column(db.Text, nullable=False)
    update_type = db.Column(
        db.String(30), nullable=False, default="workflow",
        comment="workflow | manual",
    )
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    workflow_history_id = db.Column(
        db.Integer, db.ForeignKey("workflow_history.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "content": self.content,
            "update_type": self.update_type,
            "created_by": self.created_by,
            "workflow_history_id": self.workflow_history_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ProjectIssue(db.Model):
    """Issue raised against a project, e.g. by a workflow rejection."""

    __tablename__ = "project_issues"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    content = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="open", comment="open | resolved")
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    workflow_history_id = db.Column(
        db.Integer, db.ForeignKey("workflow_history.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "content": self.content,
            "status": self.status,
            "created_by": self.created_by,
            "workflow_history_id": self.workflow_history_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


class Task(db.Model):
    """Work item inside a project; an alternative workflow subject."""

    __tablename__ = "tasks"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    status = db.Column(
        db.String(30), nullable=False, default="open",
        comment="open | in_progress | done | cancelled",
    )
    assigned_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "status": self.status,
            "assigned_user_id": self.assigned_user_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
