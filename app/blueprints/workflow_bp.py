"""Workflow blueprint — template editing and instance execution.

Endpoint groups:
  Templates        GET/POST        /api/v1/workflow-templates
                   GET/PUT/DELETE  /api/v1/workflow-templates/<id>
                   POST            /api/v1/workflow-templates/<id>/activate
                   GET             /api/v1/workflow-templates/<id>/validation
  Nodes            POST            /api/v1/workflow-templates/<id>/nodes
                   PUT/DELETE      /api/v1/workflow-nodes/<id>
  Connections      POST            /api/v1/workflow-templates/<id>/connections
                   DELETE          /api/v1/workflow-connections/<id>
  Instances        POST            /api/v1/workflow-instances
                   GET             /api/v1/workflow-instances/<id>
                   GET             /api/v1/workflow-instances/<id>/steps
                   GET             /api/v1/workflow-instances/<id>/history
                   POST            /api/v1/workflow-instances/<id>/advance
                   POST            /api/v1/workflow-instances/<id>/cancel
                   POST            /api/v1/workflow-instances/<id>/node-assignments
  Pending work     GET             /api/v1/users/<id>/pending-steps

The acting user comes from the JSON body (``acting_user_id``).
Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

import app.services.workflow_execution_service as wes
import app.services.workflow_service as wfs
from app.core.exceptions import (
    AuthorizationError,
    ConflictError,
    IntegrityViolation,
    NotFoundError,
    ValidationError,
    WorkflowConfigurationError,
)
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")


# ── Error handlers ────────────────────────────────────────────────────────────


@workflow_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@workflow_bp.errorhandler(WorkflowConfigurationError)
def _handle_configuration(error: WorkflowConfigurationError):
    logger.warning("Workflow configuration error: %s", error, extra={"path": request.path})
    return api_error(E.WORKFLOW_CONFIGURATION, str(error), details=error.details)


@workflow_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)


@workflow_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_STATE, str(error))


@workflow_bp.errorhandler(AuthorizationError)
def _handle_forbidden(error: AuthorizationError):
    return api_error(E.FORBIDDEN, str(error))


@workflow_bp.errorhandler(IntegrityViolation)
def _handle_integrity(error: IntegrityViolation):
    logger.exception("Workflow integrity violation endpoint=%s", request.endpoint)
    return api_error(E.INTEGRITY, str(error))


@workflow_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    logger.exception("Unexpected error in workflow_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ── Request helpers ───────────────────────────────────────────────────────────


def _json() -> dict:
    return request.get_json(silent=True) or {}


def _required_int(data: dict, key: str) -> int:
    value = data.get(key)
    if value is None:
        raise ValidationError(f"{key} is required", details={key: "required"})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer", details={key: value}) from None


def _optional_int(data: dict, key: str) -> int | None:
    if data.get(key) is None:
        return None
    return _required_int(data, key)


# ═════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/workflow-templates", methods=["GET"])
def list_templates():
    include_deleted = request.args.get("include_deleted", "false").lower() in ("1", "true", "yes")
    tenant_id = request.args.get("tenant_id", type=int)
    return jsonify(wfs.list_templates(tenant_id=tenant_id, include_deleted=include_deleted)), 200


@workflow_bp.route("/workflow-templates", methods=["POST"])
def create_template():
    return jsonify(wfs.create_template(_json())), 201


@workflow_bp.route("/workflow-templates/<int:template_id>", methods=["GET"])
def get_template(template_id):
    return jsonify(wfs.get_template(template_id).to_dict(include_graph=True)), 200


@workflow_bp.route("/workflow-templates/<int:template_id>", methods=["PUT"])
def update_template(template_id):
    return jsonify(wfs.update_template(template_id, _json())), 200


@workflow_bp.route("/workflow-templates/<int:template_id>", methods=["DELETE"])
def delete_template(template_id):
    return jsonify(wfs.delete_template(template_id)), 200


@workflow_bp.route("/workflow-templates/<int:template_id>/activate", methods=["POST"])
def activate_template(template_id):
    return jsonify(wfs.activate_template(template_id)), 200


@workflow_bp.route("/workflow-templates/<int:template_id>/validation", methods=["GET"])
def validate_template(template_id):
    return jsonify(wfs.validation_report(template_id)), 200


# ── Nodes / connections ───────────────────────────────────────────────────────


@workflow_bp.route("/workflow-templates/<int:template_id>/nodes", methods=["POST"])
def add_node(template_id):
    return jsonify(wfs.add_node(template_id, _json())), 201


@workflow_bp.route("/workflow-nodes/<int:node_id>", methods=["PUT"])
def update_node(node_id):
    return jsonify(wfs.update_node(node_id, _json())), 200


@workflow_bp.route("/workflow-nodes/<int:node_id>", methods=["DELETE"])
def delete_node(node_id):
    wfs.delete_node(node_id)
    return jsonify({"deleted": True}), 200


@workflow_bp.route("/workflow-templates/<int:template_id>/connections", methods=["POST"])
def add_connection(template_id):
    return jsonify(wfs.add_connection(template_id, _json())), 201


@workflow_bp.route("/workflow-connections/<int:connection_id>", methods=["DELETE"])
def delete_connection(connection_id):
    wfs.delete_connection(connection_id)
    return jsonify({"deleted": True}), 200


# ═════════════════════════════════════════════════════════════════════════
# Instances
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/workflow-instances", methods=["POST"])
def start_instance():
    data = _json()
    result = wes.start_instance(
        _required_int(data, "template_id"),
        project_id=_optional_int(data, "project_id"),
        task_id=_optional_int(data, "task_id"),
        started_by=_required_int(data, "acting_user_id"),
    )
    return jsonify(result), 201


@workflow_bp.route("/workflow-instances/<int:instance_id>", methods=["GET"])
def get_instance(instance_id):
    return jsonify(wes.get_instance(instance_id)), 200


@workflow_bp.route("/workflow-instances/<int:instance_id>/steps", methods=["GET"])
def list_steps(instance_id):
    statuses = [s for s in request.args.get("status", "").split(",") if s]
    return jsonify(wes.list_steps(instance_id, statuses=statuses or None)), 200


@workflow_bp.route("/workflow-instances/<int:instance_id>/history", methods=["GET"])
def list_history(instance_id):
    return jsonify(wes.list_history(instance_id)), 200


@workflow_bp.route("/workflow-instances/<int:instance_id>/advance", methods=["POST"])
def advance(instance_id):
    data = _json()
    form_data = data.get("form_data")
    if form_data is not None and not isinstance(form_data, dict):
        raise ValidationError("form_data must be an object", details={"form_data": form_data})
    assignees = data.get("assignees_per_node")
    if assignees is not None and not isinstance(assignees, dict):
        raise ValidationError("assignees_per_node must be an object", details={"assignees_per_node": assignees})
    result = wes.advance(
        instance_id,
        step_id=_optional_int(data, "step_id"),
        acting_user_id=_required_int(data, "acting_user_id"),
        decision=data.get("decision"),
        feedback=data.get("feedback"),
        form_data=form_data,
        assigned_user_id=_optional_int(data, "assigned_user_id"),
        assignees_per_node=assignees,
    )
    return jsonify(result), 200


@workflow_bp.route("/workflow-instances/<int:instance_id>/cancel", methods=["POST"])
def cancel_instance(instance_id):
    data = _json()
    return jsonify(wes.cancel_instance(instance_id, cancelled_by=_optional_int(data, "acting_user_id"))), 200


@workflow_bp.route("/workflow-instances/<int:instance_id>/node-assignments", methods=["POST"])
def assign_node(instance_id):
    data = _json()
    result = wes.assign_node(
        instance_id,
        _required_int(data, "node_id"),
        _required_int(data, "user_id"),
        assigned_by=_optional_int(data, "acting_user_id"),
    )
    return jsonify(result), 201


@workflow_bp.route("/users/<int:user_id>/pending-steps", methods=["GET"])
def pending_steps(user_id):
    return jsonify(wes.pending_steps_for(user_id)), 200
