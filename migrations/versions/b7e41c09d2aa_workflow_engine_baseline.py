"""workflow_engine_baseline

Creates the identity, project and workflow engine tables:
  - tenants, users, departments, roles, user_roles
  - projects, tasks, project_members, project_updates, project_issues
  - workflow_templates, workflow_nodes, workflow_connections
  - workflow_instances, workflow_branches, workflow_active_steps
  - workflow_history, workflow_approvals, workflow_node_assignments
  - workflow_sync_locks

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: b7e41c09d2aa
Revises:
Create Date: 2026-10-17 09:12:40.118204
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'b7e41c09d2aa'
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Identity ──────────────────────────────────────────────────────────
    if "tenants" not in existing:
        op.create_table(
            "tenants",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug"),
        )

    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        )
        op.create_index("ix_users_tenant_id", "users", ["tenant_id"])

    if "departments" not in existing:
        op.create_table(
            "departments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=True),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )

    if "roles" not in existing:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=True),
            sa.Column("department_id", sa.Integer(), nullable=True),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("display_name", sa.String(length=200), nullable=True),
            sa.Column("level", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "name", name="uq_role_tenant_name"),
        )

    if "user_roles" not in existing:
        op.create_table(
            "user_roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.Column("assigned_by", sa.Integer(), nullable=True),
            sa.Column("assigned_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["assigned_by"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "role_id", name="uq_user_role"),
        )
        op.create_index("ix_user_roles_role", "user_roles", ["role_id"])

    # ── Projects ──────────────────────────────────────────────────────────
    if "projects" not in existing:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=50), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="active",
                      comment="active | on_hold | complete | cancelled"),
            sa.Column("priority", sa.String(length=20), nullable=True,
                      comment="low | medium | high | critical"),
            sa.Column("owner_id", sa.Integer(), nullable=True,
                      comment="Creator; keeps access across workflow reassignments"),
            sa.Column("workflow_instance_id", sa.Integer(), nullable=True,
                      comment="Most recent workflow instance started for this project"),
            _ts("completed_at"),
            _ts("created_at", nullable=False),
            _ts("updated_at", nullable=False),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "code", name="uq_projects_tenant_code"),
        )
        op.create_index("ix_projects_tenant_id", "projects", ["tenant_id"])

    if "tasks" not in existing:
        op.create_table(
            "tasks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="open",
                      comment="open | in_progress | done | cancelled"),
            sa.Column("assigned_user_id", sa.Integer(), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["assigned_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_tasks_project_id", "tasks", ["project_id"])

    if "project_members" not in existing:
        op.create_table(
            "project_members",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role_in_project", sa.String(length=50), nullable=True,
                      comment="creator | workflow | member"),
            sa.Column("assigned_by", sa.Integer(), nullable=True),
            _ts("joined_at"),
            _ts("removed_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["assigned_by"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "user_id", name="uq_project_member"),
        )
        op.create_index("ix_project_members_user", "project_members", ["user_id"])

    # ── Workflow templates ────────────────────────────────────────────────
    if "workflow_templates" not in existing:
        op.create_table(
            "workflow_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=True),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default="0",
                      comment="Templates are created inactive and activated by an editor"),
            sa.Column("created_by", sa.Integer(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_templates_tenant_id", "workflow_templates", ["tenant_id"])

    if "workflow_nodes" not in existing:
        op.create_table(
            "workflow_nodes",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("node_type", sa.String(length=20), nullable=False,
                      comment="start | role | department | approval | form | conditional | sync | end"),
            sa.Column("label", sa.String(length=200), nullable=False),
            sa.Column("entity_id", sa.Integer(), nullable=True,
                      comment="roles.id for role/approval nodes, departments.id for department nodes"),
            sa.Column("form_template_id", sa.Integer(), nullable=True),
            sa.Column("position_x", sa.Float(), nullable=True),
            sa.Column("position_y", sa.Float(), nullable=True),
            sa.Column("settings", sa.JSON(), nullable=True),
            sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_nodes_template_id", "workflow_nodes", ["template_id"])

    if "workflow_connections" not in existing:
        op.create_table(
            "workflow_connections",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("from_node_id", sa.Integer(), nullable=False),
            sa.Column("to_node_id", sa.Integer(), nullable=False),
            sa.Column("condition", sa.JSON(), nullable=True,
                      comment='{"decision": "approved"} or {"sourceFormFieldId", "conditionType", "value", "value2"}'),
            sa.Column("label", sa.String(length=200), nullable=True),
            sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["from_node_id"], ["workflow_nodes.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["to_node_id"], ["workflow_nodes.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_connections_template_id", "workflow_connections", ["template_id"])
        op.create_index("ix_workflow_connections_from", "workflow_connections", ["from_node_id"])
        op.create_index("ix_workflow_connections_to", "workflow_connections", ["to_node_id"])

    # ── Workflow instances ────────────────────────────────────────────────
    if "workflow_instances" not in existing:
        op.create_table(
            "workflow_instances",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=True),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("task_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active",
                      comment="active | completed | cancelled"),
            sa.Column("current_node_id", sa.Integer(), nullable=True,
                      comment="Linear pointer: last node the instance moved to (legacy / display)"),
            sa.Column("has_parallel_paths", sa.Boolean(), nullable=False, server_default="0"),
            sa.Column("branch_generation", sa.Integer(), nullable=False, server_default="0",
                      comment="Fork counter; each fork mints generation + 1"),
            sa.Column("started_snapshot", sa.JSON(), nullable=True),
            sa.Column("completed_snapshot", sa.JSON(), nullable=True),
            sa.Column("started_by", sa.Integer(), nullable=True),
            _ts("started_at"),
            _ts("completed_at"),
            _ts("cancelled_at"),
            sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["task_id"], ["tasks.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["started_by"], ["users.id"], ondelete="SET NULL"),
            sa.CheckConstraint("(project_id IS NULL) <> (task_id IS NULL)",
                               name="ck_workflow_instance_single_subject"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_instances_template_id", "workflow_instances", ["template_id"])
        op.create_index("ix_workflow_instances_project_id", "workflow_instances", ["project_id"])
        op.create_index("ix_workflow_instances_task_id", "workflow_instances", ["task_id"])

    if "workflow_branches" not in existing:
        op.create_table(
            "workflow_branches",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("arena_index", sa.Integer(), nullable=False),
            sa.Column("parent_index", sa.Integer(), nullable=True, comment="NULL for the main branch"),
            sa.Column("fork_node_id", sa.Integer(), nullable=True,
                      comment="Node whose fork created this branch"),
            sa.Column("fork_index", sa.Integer(), nullable=True),
            sa.Column("generation", sa.Integer(), nullable=True),
            sa.Column("label", sa.String(length=255), nullable=False,
                      comment="Legacy parent-index_generation token"),
            sa.ForeignKeyConstraint(["instance_id"], ["workflow_instances.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("instance_id", "arena_index", name="uq_workflow_branch_index"),
            sa.UniqueConstraint("instance_id", "label", name="uq_workflow_branch_label"),
        )

    if "workflow_active_steps" not in existing:
        op.create_table(
            "workflow_active_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("node_id", sa.Integer(), nullable=False),
            sa.Column("branch_id", sa.String(length=255), nullable=False, server_default="main"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active",
                      comment="active | waiting | completed | cancelled"),
            sa.Column("assigned_user_id", sa.Integer(), nullable=True),
            sa.Column("aggregate_decision", sa.String(length=20), nullable=True,
                      comment="Sync steps only: all_approved | any_rejected | no_approvals"),
            _ts("activated_at"),
            _ts("completed_at"),
            sa.ForeignKeyConstraint(["instance_id"], ["workflow_instances.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["assigned_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("instance_id", "node_id", "branch_id", name="uq_active_step_node_branch"),
        )
        op.create_index("ix_active_steps_instance_status", "workflow_active_steps", ["instance_id", "status"])

    if "workflow_history" not in existing:
        op.create_table(
            "workflow_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("from_node_id", sa.Integer(), nullable=True),
            sa.Column("to_node_id", sa.Integer(), nullable=True),
            sa.Column("handed_off_by", sa.Integer(), nullable=True),
            sa.Column("handed_off_to", sa.Integer(), nullable=True),
            sa.Column("decision", sa.String(length=20), nullable=True, comment="approved | rejected"),
            sa.Column("feedback", sa.Text(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("form_data", sa.JSON(), nullable=True),
            sa.Column("branch_id", sa.String(length=255), nullable=False, server_default="main"),
            _ts("handed_off_at"),
            sa.ForeignKeyConstraint(["instance_id"], ["workflow_instances.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["handed_off_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["handed_off_to"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_history_instance_id", "workflow_history", ["instance_id"])

    if "workflow_approvals" not in existing:
        op.create_table(
            "workflow_approvals",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("node_id", sa.Integer(), nullable=False),
            sa.Column("approver_user_id", sa.Integer(), nullable=True),
            sa.Column("decision", sa.String(length=20), nullable=False, comment="approved | rejected"),
            sa.Column("feedback", sa.Text(), nullable=True),
            sa.Column("branch_id", sa.String(length=255), nullable=False, server_default="main"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["instance_id"], ["workflow_instances.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["approver_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_approvals_instance_id", "workflow_approvals", ["instance_id"])

    if "workflow_node_assignments" not in existing:
        op.create_table(
            "workflow_node_assignments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("node_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("assigned_by", sa.Integer(), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["instance_id"], ["workflow_instances.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["assigned_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("instance_id", "node_id", "user_id", name="uq_workflow_node_assignment"),
        )
        op.create_index("ix_workflow_node_assignments_user", "workflow_node_assignments", ["user_id"])

    if "workflow_sync_locks" not in existing:
        op.create_table(
            "workflow_sync_locks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("node_id", sa.Integer(), nullable=False),
            sa.Column("locked_by", sa.String(length=255), nullable=True),
            _ts("locked_at", nullable=False),
            sa.ForeignKeyConstraint(["instance_id"], ["workflow_instances.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("instance_id", "node_id", name="uq_workflow_sync_lock"),
        )

    # ── Project feed (references workflow_history) ────────────────────────
    if "project_updates" not in existing:
        op.create_table(
            "project_updates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("update_type", sa.String(length=30), nullable=False, server_default="workflow",
                      comment="workflow | manual"),
            sa.Column("created_by", sa.Integer(), nullable=True),
            sa.Column("workflow_history_id", sa.Integer(), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["workflow_history_id"], ["workflow_history.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_project_updates_project_id", "project_updates", ["project_id"])

    if "project_issues" not in existing:
        op.create_table(
            "project_issues",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="open",
                      comment="open | resolved"),
            sa.Column("created_by", sa.Integer(), nullable=True),
            sa.Column("workflow_history_id", sa.Integer(), nullable=True),
            _ts("created_at"),
            _ts("resolved_at"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["workflow_history_id"], ["workflow_history.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_project_issues_project_id", "project_issues", ["project_id"])


def downgrade():
    op.drop_table("project_issues")
    op.drop_table("project_updates")
    op.drop_table("workflow_sync_locks")
    op.drop_table("workflow_node_assignments")
    op.drop_table("workflow_approvals")
    op.drop_table("workflow_history")
    op.drop_table("workflow_active_steps")
    op.drop_table("workflow_branches")
    op.drop_table("workflow_instances")
    op.drop_table("workflow_connections")
    op.drop_table("workflow_nodes")
    op.drop_table("workflow_templates")
    op.drop_table("project_members")
    op.drop_table("tasks")
    op.drop_table("projects")
    op.drop_table("user_roles")
    op.drop_table("roles")
    op.drop_table("departments")
    op.drop_table("users")
    op.drop_table("tenants")
