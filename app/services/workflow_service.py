"""
Workflow Template Service — template, node and connection management.

Operations:
- Template CRUD; templates are created inactive
- activate_template: runs validation and refuses on errors
- delete_template: synthesizes snapshots for running instances, then
  hard-deletes, or soft-deletes (deactivate + "[DELETED] " prefix) when
  instances still reference the template or the delete hits an FK
- Node add/update/delete (deleting a node removes its connections)
- Connection add/delete (both endpoints in the template, no self-loops)
- validation_report

Edits never affect running instances: they route against their snapshot.
"""

import logging

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.workflow import (
    DELETED_PREFIX,
    NODE_TYPES,
    WorkflowConnection,
    WorkflowInstance,
    WorkflowNode,
    WorkflowTemplate,
)
from app.services.workflow.graph import WorkflowGraph
from app.services.workflow.snapshot import synthesize_missing_snapshots
from app.services.workflow.validation import validate_graph

logger = logging.getLogger(__name__)

TEMPLATE_FIELDS = ("name", "description")
NODE_FIELDS = ("label", "entity_id", "form_template_id", "position_x", "position_y", "settings")


# ── Templates ────────────────────────────────────────────────────────────


def get_template(template_id: int) -> WorkflowTemplate:
    template = db.session.get(WorkflowTemplate, template_id)
    if template is None:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=template_id)
    return template


def list_templates(tenant_id: int | None = None, include_deleted: bool = False) -> list[dict]:
    stmt = select(WorkflowTemplate).order_by(WorkflowTemplate.name)
    if tenant_id is not None:
        stmt = stmt.where(WorkflowTemplate.tenant_id == tenant_id)
    if not include_deleted:
        stmt = stmt.where(~WorkflowTemplate.name.startswith(DELETED_PREFIX))
    return [t.to_dict() for t in db.session.execute(stmt).scalars().all()]


def create_template(data: dict) -> dict:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    template = WorkflowTemplate(
        tenant_id=data.get("tenant_id"),
        name=name,
        description=data.get("description"),
        is_active=False,
        created_by=data.get("created_by"),
    )
    db.session.add(template)
    db.session.commit()
    logger.info("Workflow template created: %s", template.name, extra={"template_id": template.id})
    return template.to_dict()


def update_template(template_id: int, data: dict) -> dict:
    template = get_template(template_id)
    for field in TEMPLATE_FIELDS:
        if field in data:
            setattr(template, field, data[field])
    if not (template.name or "").strip():
        raise ValidationError("name is required", details={"name": "required"})
    if "is_active" in data:
        if data["is_active"]:
            _require_valid(template)
        template.is_active = bool(data["is_active"])
    db.session.commit()
    return template.to_dict(include_graph=True)


def validation_report(template_id: int) -> dict:
    template = get_template(template_id)
    return validate_graph(WorkflowGraph.from_template(template.id))


def _require_valid(template: WorkflowTemplate) -> dict:
    if template.is_deleted:
        raise ConflictError(
            "WorkflowTemplate", "name", template.name,
            message=f'Workflow "{template.name}" has been deleted and cannot be activated',
        )
    report = validate_graph(WorkflowGraph.from_template(template.id))
    if not report["valid"]:
        raise ValidationError(
            f'Workflow "{template.name}" has {len(report["errors"])} validation error(s)',
            details=report,
        )
    return report


def activate_template(template_id: int) -> dict:
    template = get_template(template_id)
    report = _require_valid(template)
    template.is_active = True
    db.session.commit()
    logger.info("Workflow template activated", extra={"template_id": template.id})
    d = template.to_dict()
    d["validation"] = report
    return d


def delete_template(template_id: int) -> dict:
    """Delete a template without breaking its instances.

    Returns ``{"deleted": True, "soft_deleted": bool, "snapshots_created": int}``.
    """
    template = get_template(template_id)
    snapshots = synthesize_missing_snapshots(template)
    referenced = db.session.execute(
        select(func.count(WorkflowInstance.id)).where(WorkflowInstance.template_id == template.id)
    ).scalar_one()

    if referenced:
        _soft_delete(template)
        db.session.commit()
        return {"deleted": True, "soft_deleted": True, "snapshots_created": snapshots}

    db.session.commit()
    try:
        db.session.execute(
            WorkflowConnection.__table__.delete().where(WorkflowConnection.template_id == template.id)
        )
        db.session.execute(WorkflowNode.__table__.delete().where(WorkflowNode.template_id == template.id))
        db.session.delete(template)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.warning(
            "Hard delete of template %s hit a reference; soft-deleting", template_id,
            extra={"template_id": template_id},
        )
        template = get_template(template_id)
        _soft_delete(template)
        db.session.commit()
        return {"deleted": True, "soft_deleted": True, "snapshots_created": snapshots}

    logger.info("Workflow template deleted", extra={"template_id": template_id})
    return {"deleted": True, "soft_deleted": False, "snapshots_created": snapshots}


def _soft_delete(template: WorkflowTemplate) -> None:
    template.is_active = False
    if not template.is_deleted:
        template.name = f"{DELETED_PREFIX}{template.name}"
    logger.info("Workflow template soft-deleted", extra={"template_id": template.id})


# ── Nodes ────────────────────────────────────────────────────────────────


def _get_node(node_id: int) -> WorkflowNode:
    node = db.session.get(WorkflowNode, node_id)
    if node is None:
        raise NotFoundError(resource="WorkflowNode", resource_id=node_id)
    return node


def add_node(template_id: int, data: dict) -> dict:
    template = get_template(template_id)
    node_type = data.get("node_type")
    if node_type not in NODE_TYPES:
        raise ValidationError(
            f"Invalid node_type: {node_type!r}", details={"node_type": sorted(NODE_TYPES)},
        )
    label = (data.get("label") or "").strip()
    if not label:
        raise ValidationError("label is required", details={"label": "required"})
    node = WorkflowNode(
        template_id=template.id,
        node_type=node_type,
        label=label,
        entity_id=data.get("entity_id"),
        form_template_id=data.get("form_template_id"),
        position_x=data.get("position_x"),
        position_y=data.get("position_y"),
        settings=data.get("settings"),
    )
    db.session.add(node)
    db.session.commit()
    return node.to_dict()


def update_node(node_id: int, data: dict) -> dict:
    node = _get_node(node_id)
    if "node_type" in data:
        if data["node_type"] not in NODE_TYPES:
            raise ValidationError(
                f"Invalid node_type: {data['node_type']!r}", details={"node_type": sorted(NODE_TYPES)},
            )
        node.node_type = data["node_type"]
    for field in NODE_FIELDS:
        if field in data:
            setattr(node, field, data[field])
    if not (node.label or "").strip():
        raise ValidationError("label is required", details={"label": "required"})
    db.session.commit()
    return node.to_dict()


def delete_node(node_id: int) -> None:
    node = _get_node(node_id)
    db.session.execute(
        WorkflowConnection.__table__.delete().where(
            or_(WorkflowConnection.from_node_id == node.id, WorkflowConnection.to_node_id == node.id)
        )
    )
    db.session.delete(node)
    db.session.commit()


# ── Connections ──────────────────────────────────────────────────────────


def add_connection(template_id: int, data: dict) -> dict:
    template = get_template(template_id)
    from_id = data.get("from_node_id")
    to_id = data.get("to_node_id")
    if from_id is None or to_id is None:
        raise ValidationError(
            "from_node_id and to_node_id are required",
            details={"from_node_id": from_id, "to_node_id": to_id},
        )
    if from_id == to_id:
        raise ValidationError("A connection cannot link a node to itself", details={"node_id": from_id})
    for node_id in (from_id, to_id):
        node = db.session.get(WorkflowNode, node_id)
        if node is None or node.template_id != template.id:
            raise ValidationError(
                f"Node {node_id} does not belong to this workflow", details={"node_id": node_id},
            )
    condition = data.get("condition")
    if condition is not None and not isinstance(condition, dict):
        raise ValidationError("condition must be an object", details={"condition": condition})
    conn = WorkflowConnection(
        template_id=template.id,
        from_node_id=from_id,
        to_node_id=to_id,
        condition=condition or None,
        label=data.get("label"),
    )
    db.session.add(conn)
    db.session.commit()
    return conn.to_dict()


def delete_connection(connection_id: int) -> None:
    conn = db.session.get(WorkflowConnection, connection_id)
    if conn is None:
        raise NotFoundError(resource="WorkflowConnection", resource_id=connection_id)
    db.session.delete(conn)
    db.session.commit()
