"""
Permission Service — identity lookups consumed by the workflow engine.

Answers the questions the engine asks about people:
  - is_superadmin(user)            → bypass every workflow authorization gate
  - user_has_role(user, role)      → role / approval node authorization
  - user_department_ids(user)      → department node authorization
  - role_hierarchy_level(user)     → sync leader election
  - users_with_role / users_in_department → "nobody can work this node" guard
  - is_assigned_to_project(user, project)

Role membership is memoized in the application's TTLCache
(``app.extensions["permission_cache"]``). Writes that change membership go
through assign_role / revoke_role so the affected keys are invalidated.
Project assignments are never cached: the engine rewrites them on every
advance.
"""

import logging

from flask import current_app
from sqlalchemy import select

from app.models import db
from app.models.auth import Department, Role, User, UserRole
from app.models.project import ProjectMember
from app.services.cache import TTLCache

logger = logging.getLogger(__name__)


def _cache() -> TTLCache:
    return current_app.extensions["permission_cache"]


# ── Cached role rows ─────────────────────────────────────────────────────


def _role_rows(user_id: int) -> tuple[tuple[int, str, int, int | None], ...]:
    """(role_id, role_name, level, department_id) for every role of the user."""

    def _load():
        rows = db.session.execute(
            select(Role.id, Role.name, Role.level, Role.department_id)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(UserRole.user_id == user_id)
        ).all()
        return tuple((r[0], r[1], r[2] or 0, r[3]) for r in rows)

    return _cache().get_or_set(("user_roles", user_id), _load)


def user_role_ids(user_id: int) -> set[int]:
    return {row[0] for row in _role_rows(user_id)}


def is_superadmin(user_id: int) -> bool:
    names = set(current_app.config.get("SUPERADMIN_ROLE_NAMES", ()))
    return any(row[1] in names for row in _role_rows(user_id))


def user_has_role(user_id: int, role_id: int) -> bool:
    return role_id in user_role_ids(user_id)


def user_department_ids(user_id: int) -> set[int]:
    return {row[3] for row in _role_rows(user_id) if row[3] is not None}


def role_hierarchy_level(user_id: int) -> int:
    """Highest hierarchy level across the user's roles (0 if none)."""
    return max((row[2] for row in _role_rows(user_id)), default=0)


def users_with_role(role_id: int) -> list[int]:
    def _load():
        return tuple(db.session.execute(
            select(UserRole.user_id).where(UserRole.role_id == role_id).order_by(UserRole.user_id)
        ).scalars().all())

    return list(_cache().get_or_set(("role_users", role_id), _load))


def users_in_department(department_id: int) -> list[int]:
    def _load():
        return tuple(db.session.execute(
            select(UserRole.user_id)
            .join(Role, Role.id == UserRole.role_id)
            .where(Role.department_id == department_id)
            .distinct()
            .order_by(UserRole.user_id)
        ).scalars().all())

    return list(_cache().get_or_set(("department_users", department_id), _load))


def role_name(role_id: int | None) -> str:
    role = db.session.get(Role, role_id) if role_id is not None else None
    return role.name if role else "the required role"


def department_name(department_id: int | None) -> str:
    dept = db.session.get(Department, department_id) if department_id is not None else None
    return dept.name if dept else "the required department"


def user_display_name(user_id: int | None) -> str:
    user = db.session.get(User, user_id) if user_id is not None else None
    return user.display_name if user else "Unknown User"


# ── Project assignment (not cached) ──────────────────────────────────────


def is_assigned_to_project(user_id: int, project_id: int) -> bool:
    member = db.session.execute(
        select(ProjectMember.id).where(
            ProjectMember.project_id == project_id,
            ProjectMember.user_id == user_id,
            ProjectMember.removed_at.is_(None),
        )
    ).first()
    return member is not None


# ── Membership writes + invalidation ─────────────────────────────────────


def assign_role(user_id: int, role_id: int, assigned_by: int | None = None) -> UserRole:
    """Grant a role (idempotent). Flushes; the caller owns the commit."""
    existing = db.session.execute(
        select(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
    ).scalar_one_or_none()
    if existing is not None:
        return existing
    ur = UserRole(user_id=user_id, role_id=role_id, assigned_by=assigned_by)
    db.session.add(ur)
    db.session.flush()
    invalidate_role_membership(user_id, role_id)
    logger.info("Role granted user=%s role=%s", user_id, role_id, extra={"user_id": user_id})
    return ur


def revoke_role(user_id: int, role_id: int) -> bool:
    ur = db.session.execute(
        select(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
    ).scalar_one_or_none()
    if ur is None:
        return False
    db.session.delete(ur)
    db.session.flush()
    invalidate_role_membership(user_id, role_id)
    return True


def invalidate_role_membership(user_id: int, role_id: int) -> None:
    role = db.session.get(Role, role_id)
    cache = _cache()
    cache.invalidate(lambda k: k == ("user_roles", user_id) or k == ("role_users", role_id))
    if role is not None and role.department_id is not None:
        cache.invalidate(lambda k: k == ("department_users", role.department_id))


def invalidate_user(user_id: int) -> None:
    _cache().invalidate(lambda k: k == ("user_roles", user_id))


def invalidate_all_cache() -> None:
    _cache().clear()
