"""JSON error bodies for the workflow API.

Every error response has the shape ``{"error", "code"[, "details"]}``.
Blueprint error handlers translate service exceptions, e.g.:

    @workflow_bp.errorhandler(WorkflowConfigurationError)
    def _handle_configuration(error):
        return api_error(E.WORKFLOW_CONFIGURATION, str(error), details=error.details)

Activation failures carry the validation report in ``details``; zero-user
role failures carry the offending ``role_id``.
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error codes, one per service exception type."""

    # 422: refused input or a template that cannot route the request
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"
    WORKFLOW_CONFIGURATION = "ERR_WORKFLOW_CONFIGURATION"

    # 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # 409: instance or template in the wrong state (inactive, completed, deleted)
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # 403: not a project member, or missing the node's role
    FORBIDDEN = "ERR_FORBIDDEN"

    # 500: engine state that should be impossible (e.g. a malformed snapshot)
    INTEGRITY = "ERR_INTEGRITY"
    INTERNAL = "ERR_INTERNAL"


_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_CONSTRAINT: 422,
    E.WORKFLOW_CONFIGURATION: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.FORBIDDEN: 403,
    E.INTEGRITY: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """``(jsonify(body), status)`` for a Flask view or error handler.

    The status defaults to the one registered for ``code`` (400 for
    unknown codes); ``details`` is omitted from the body when empty.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _DEFAULT_STATUS.get(code, 400)
