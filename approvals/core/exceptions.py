"""
Service-wide exception hierarchy.

Services raise these; ``create_app`` registers one error handler per type
so every blueprint gets the same HTTP status and JSON body shape.

Usage:
    from approvals.core.exceptions import NotFoundError, WorkflowStateError

    raise NotFoundError(resource="WorkflowSubject", resource_id="wf-123")
    raise WorkflowStateError(WorkflowStateError.ALREADY_DECIDED, "…")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable model name (e.g. "WorkflowTemplate").
        resource_id: The business key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown; keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique business key.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class ConfigurationError(ValidationError):
    """Submission cannot proceed because the template setup is unusable.

    No active template for the entity type, or a decision table that cannot
    be loaded.  Raised before anything is persisted.
    """


class WorkflowStateError(Exception):
    """A signal is not legal for the workflow or task in its current state.

    Maps to HTTP 409.  ``code`` is machine-readable and surfaces in the API
    body so callers can tell a lost race from a repeated decision.
    """

    ILLEGAL_STATE = "ILLEGAL_STATE"
    ALREADY_DECIDED = "ALREADY_DECIDED"
    TASK_ALREADY_RESOLVED = "TASK_ALREADY_RESOLVED"
    TASK_NOT_ACTIONABLE = "TASK_NOT_ACTIONABLE"
    NOT_AN_APPROVER = "NOT_AN_APPROVER"

    def __init__(self, code: str, message: str, *, workflow_id: str | None = None,
                 task_id: str | None = None) -> None:
        self.code = code
        self.workflow_id = workflow_id
        self.task_id = task_id
        super().__init__(message)


class WorkflowAlreadyStartedError(Exception):
    """The runtime refused to start a second process for an instance id."""

    def __init__(self, workflow_instance_id: str, workflow_id: str) -> None:
        self.workflow_instance_id = workflow_instance_id
        self.workflow_id = workflow_id
        super().__init__(f"workflow instance {workflow_instance_id} already started")


class RuntimeUnavailableError(Exception):
    """A live query against the workflow runtime could not be answered."""


# ── Outbound-call classification ─────────────────────────────────────────────

class RetryableError(Exception):
    """Transient failure (network error, timeout, HTTP 5xx); safe to retry."""


class FatalError(Exception):
    """Permanent failure (HTTP 4xx, invalid payload); retrying cannot help."""
