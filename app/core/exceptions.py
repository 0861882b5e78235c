"""
Platform-wide exception hierarchy.

Why this module exists:
  Services raise a small, shared set of exception types instead of
  returning ad-hoc error tuples. Blueprints register handlers against
  these types once and get consistent HTTP status codes everywhere, and
  the workflow engine can abort a transition (rolling back the whole
  transaction) simply by raising.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="WorkflowInstance", resource_id=42)
    raise ValidationError("name is required", details={"name": "..."})
    raise WorkflowConfigurationError('No users have the "Editor" role')
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "WorkflowTemplate").
        resource_id: The PK that was looked up. Included in logs and message.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint) — this
    exception signals that the data was well-formed but violated a business
    rule (e.g. invalid node type, connection across templates).

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation collides with the current state of a resource.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field whose value conflicts (e.g. "status").
        value: The conflicting value.
        message: Optional actionable message replacing the generic one.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = message or f"{resource} with {field}={value!r} does not allow this operation"
        super().__init__(msg)


class WorkflowConfigurationError(ValidationError):
    """Raised when the workflow graph cannot route the requested transition.

    Covers template mistakes surfaced at run time: a rejection with no
    rejection path, a rejection routed to itself or into a short cycle, and
    a role/department node that nobody is eligible to work on.

    Maps to HTTP 422 with code ERR_WORKFLOW_CONFIGURATION.
    """


class AuthorizationError(Exception):
    """Raised when the acting user may not advance the current workflow step.

    Checked before any state mutation. Maps to HTTP 403.

    Args:
        message: Actionable explanation naming the missing role/department.
        user_id: Acting user, for logs only.
    """

    def __init__(self, message: str, user_id: int | None = None) -> None:
        self.user_id = user_id
        super().__init__(message)


class IntegrityViolation(Exception):
    """Raised when persisted workflow state is internally inconsistent.

    Examples: a snapshot without nodes, a step pointing at a node that is
    not in the instance graph. Fatal for the single call; the transaction
    is rolled back. Maps to HTTP 500 with code ERR_INTEGRITY.
    """
