"""
Workflow engine exception hierarchy.

Every service in the engine raises one of these types. Blueprints register
handlers against them once and get consistent HTTP status codes:

    NotFoundError                → 404
    ConflictError                → 409  (duplicate active instance)
    ConcurrentModificationError  → 409  (lost a compare-and-swap race)
    InvalidStateError            → 400  (operation illegal for current status)
    InvalidTransitionError       → 422  (no edge for stage + action)
    InvalidTemplateError         → 400  (template graph is malformed)
    ValidationError              → 422  (business-rule input failure)
    StorageError                 → 503  (infrastructure; caller may retry)

Validation errors are always raised before any write. StorageError is
raised only after the transaction has been rolled back, so a retry never
sees partial state.

Usage:
    from app.core.exceptions import NotFoundError, InvalidTransitionError

    raise NotFoundError(resource="WorkflowInstance", resource_id=42)
    raise InvalidTransitionError(action="approve", stage_name="GC Review")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "WorkflowInstance").
        resource_id: The key that was looked up. Included in the message.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        if message is None:
            message = f"{resource}"
            if resource_id is not None:
                message += f" id={resource_id}"
            message += " not found"
        super().__init__(message)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint). This
    exception signals that the data was well-formed but violated a business
    rule (e.g. unknown assignment rule type, missing cancel reason).

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would violate a uniqueness rule.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field (or field group) that would be duplicated.
        value: The conflicting value.
        message: Optional override for the default message.
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
        super().__init__(message or f"{resource} with {field}={value!r} already exists")


class ConcurrentModificationError(ConflictError):
    """Raised when a row changed between read and compare-and-swap write.

    The whole unit of work has been rolled back. The caller should reload
    and re-validate; the operation will usually fail with
    InvalidTransitionError because the stage has moved.
    """

    def __init__(self, resource: str, resource_id: int | str) -> None:
        self.resource_id = resource_id
        super().__init__(
            resource,
            "version",
            str(resource_id),
            message=f"{resource} id={resource_id} was modified concurrently; reload and retry",
        )


class InvalidStateError(Exception):
    """Raised when an operation is not permitted in the resource's current status.

    Example: transitioning a completed instance, cancelling a rejected one,
    resolving an escalation twice.

    Maps to HTTP 400.
    """

    def __init__(self, resource: str, status: str | None, operation: str) -> None:
        self.resource = resource
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} {resource} with status: {status}")


class InvalidTransitionError(Exception):
    """Raised when no transition edge exists for (current stage, action).

    Maps to HTTP 422.
    """

    def __init__(self, action: str, stage_name: str | None = None) -> None:
        self.action = action
        self.stage_name = stage_name
        where = f"stage '{stage_name}'" if stage_name else "current stage"
        super().__init__(f"Invalid transition: {action!r} from {where}")


class InvalidTemplateError(Exception):
    """Raised when a workflow template graph is malformed or unusable.

    A data-integrity condition: always fatal to StartWorkflow, and raised by
    template authoring when a definition breaks a graph invariant.

    Maps to HTTP 400.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class StorageError(Exception):
    """Raised when the relational store fails (connection, timeout, lock wait).

    The engine never retries internally because its mutations are not
    idempotent. Callers may retry with exponential backoff.

    Maps to HTTP 503.
    """

    retryable = True

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"Storage failure during {operation}")
