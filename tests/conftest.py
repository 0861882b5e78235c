"""
Shared pytest fixtures for the Parallel Workflow Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - default_tenant: Pre-created Tenant entity
    - make_department / make_role / make_user: identity builders
    - make_project / make_task: workflow subjects
    - build_template: graph builder keyed by node names
    - parallel_review: fork/join scenario builder
"""

import pytest

from app import create_app
from app.models import db as _db
from app.models.auth import Department, Role, Tenant, User, UserRole
from app.models.project import Project, ProjectMember, Task
from app.models.workflow import WorkflowConnection, WorkflowNode, WorkflowTemplate
from app.services.permission_service import invalidate_all_cache


def _ensure_default_tenant():
    """Create a default tenant for tests if it doesn't exist.

    Returns the tenant ID.
    """
    t = Tenant.query.filter_by(slug="test-default").first()
    if not t:
        t = Tenant(name="Test Default", slug="test-default")
        _db.session.add(t)
        _db.session.commit()
    return t.id


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # Tables are recreated per test and ids are reused; clear the role
        # cache so lookups keyed by user_id never leak between tests.
        invalidate_all_cache()
        _ensure_default_tenant()
        yield
        invalidate_all_cache()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def default_tenant():
    """Return the auto-created default test tenant."""
    return Tenant.query.filter_by(slug="test-default").first()


# ── Identity builders ────────────────────────────────────────────────────


@pytest.fixture()
def make_department(default_tenant):
    def _make(name):
        dept = Department(tenant_id=default_tenant.id, name=name)
        _db.session.add(dept)
        _db.session.commit()
        return dept

    return _make


@pytest.fixture()
def make_role(default_tenant):
    def _make(name, level=0, department=None):
        role = Role(
            tenant_id=default_tenant.id,
            name=name,
            display_name=name.title(),
            level=level,
            department_id=department.id if department is not None else None,
        )
        _db.session.add(role)
        _db.session.commit()
        return role

    return _make


@pytest.fixture()
def make_user(default_tenant):
    def _make(name, roles=()):
        user = User(tenant_id=default_tenant.id, email=f"{name}@example.com", full_name=name.title())
        _db.session.add(user)
        _db.session.flush()
        for role in roles:
            _db.session.add(UserRole(user_id=user.id, role_id=role.id))
        _db.session.commit()
        invalidate_all_cache()
        return user

    return _make


# ── Subjects ─────────────────────────────────────────────────────────────


@pytest.fixture()
def make_project(default_tenant):
    """Project owned by ``owner``; the owner starts as an active member."""
    counter = {"n": 0}

    def _make(owner, name="Test Project"):
        counter["n"] += 1
        project = Project(
            tenant_id=default_tenant.id,
            code=f"PRJ-{counter['n']:03d}",
            name=name,
            owner_id=owner.id,
        )
        _db.session.add(project)
        _db.session.flush()
        _db.session.add(ProjectMember(project_id=project.id, user_id=owner.id, role_in_project="creator"))
        _db.session.commit()
        return project

    return _make


@pytest.fixture()
def make_task():
    def _make(project, title="Test Task"):
        task = Task(project_id=project.id, title=title)
        _db.session.add(task)
        _db.session.commit()
        return task

    return _make


# ── Graph builder ────────────────────────────────────────────────────────


@pytest.fixture()
def build_template(default_tenant):
    """Build a template from node and edge specs keyed by name.

        template, ids = build_template(
            nodes={"start": ("start",), "review": ("approval", role.id), "end": ("end",)},
            edges=[("start", "review"), ("review", "end", {"decision": "approved"})],
        )

    A node spec is ``(node_type[, entity_id])``; an edge spec is
    ``(from, to[, condition])``. Returns the template and ``{name: node_id}``.
    """

    def _build(nodes, edges, name="Test Workflow", active=True):
        template = WorkflowTemplate(tenant_id=default_tenant.id, name=name, is_active=active)
        _db.session.add(template)
        _db.session.flush()
        ids = {}
        for key, spec in nodes.items():
            node = WorkflowNode(
                template_id=template.id,
                node_type=spec[0],
                label=key.replace("_", " ").title(),
                entity_id=spec[1] if len(spec) > 1 else None,
            )
            _db.session.add(node)
            _db.session.flush()
            ids[key] = node.id
        for edge in edges:
            _db.session.add(WorkflowConnection(
                template_id=template.id,
                from_node_id=ids[edge[0]],
                to_node_id=ids[edge[1]],
                condition=edge[2] if len(edge) > 2 else None,
            ))
        _db.session.commit()
        return template, ids

    return _build


@pytest.fixture()
def parallel_review(make_role, make_user, make_project, build_template):
    """Request form fanning out to legal and finance approvals joined at a sync.

        start -> request -> legal   -(approved)-> join -(all_approved)-> end
                         -> finance -(approved)-> join
        legal / finance -(rejected)-> request

    Pass ``join_rejects_to_request=True`` to add ``join -(any_rejected)-> request``.
    Returns a dict with the template, node ids, users and project.
    """

    def _build(join_rejects_to_request=False):
        legal_role = make_role("legal", level=2)
        finance_role = make_role("finance", level=1)
        owner = make_user("owner")
        lawyer = make_user("lawyer", roles=[legal_role])
        accountant = make_user("accountant", roles=[finance_role])
        edges = [
            ("start", "request"),
            ("request", "legal"),
            ("request", "finance"),
            ("legal", "join", {"decision": "approved"}),
            ("finance", "join", {"decision": "approved"}),
            ("legal", "request", {"decision": "rejected"}),
            ("finance", "request", {"decision": "rejected"}),
            ("join", "end", {"decision": "all_approved"}),
        ]
        if join_rejects_to_request:
            edges.append(("join", "request", {"decision": "any_rejected"}))
        template, ids = build_template(
            nodes={
                "start": ("start",),
                "request": ("form",),
                "legal": ("approval", legal_role.id),
                "finance": ("approval", finance_role.id),
                "join": ("sync",),
                "end": ("end",),
            },
            edges=edges,
        )
        return {
            "template": template,
            "ids": ids,
            "owner": owner,
            "lawyer": lawyer,
            "accountant": accountant,
            "project": make_project(owner),
        }

    return _build
