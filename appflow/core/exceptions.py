"""
Workflow engine exception hierarchy.

Every service raises one of these types; blueprints register a single
handler against ``WorkflowError`` and get a consistent JSON body and HTTP
status everywhere.

Usage:
    from appflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Application", resource_id=app_id)
    raise ValidationError("Answers failed validation", details={"email": "..."})

Only ``VersionConflictError`` is retryable: it means another request won a
race and the caller may simply try again.
"""


class WorkflowError(Exception):
    """Base class for all domain errors.

    Attributes:
        code: Stable machine-readable error code for API clients.
        http_status: Status the blueprint error handler responds with.
        retryable: True only when repeating the same request can succeed.
    """

    code = "WORKFLOW_ERROR"
    http_status = 400
    retryable = False

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {"error": str(self), "code": self.code}
        if self.details:
            body["details"] = self.details
        if self.retryable:
            body["retryable"] = True
        return body


class NotFoundError(WorkflowError):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Application", "WorkflowStep").
        resource_id: The PK that was looked up.
        event_id: Optional; the event scope that was enforced.
    """

    code = "NOT_FOUND"
    http_status = 404

    def __init__(
        self,
        resource: str,
        resource_id: str | None = None,
        event_id: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.event_id = event_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if event_id is not None:
            msg += f" (event={event_id})"
        super().__init__(msg)


class ValidationError(WorkflowError):
    """Raised when input is well-formed but violates a business rule.

    Covers malformed answers, malformed patch operations, edits outside the
    editable field set of a targeted revision and unknown field ids.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field keys or
                 indices; values are error descriptions.
    """

    code = "VALIDATION_FAILED"
    http_status = 422


class ConflictError(WorkflowError):
    """Raised when an operation would duplicate a unique value.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    code = "CONFLICT"
    http_status = 409

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class InvalidTransitionError(WorkflowError):
    """Raised when an operation is not allowed from the current status.

    Args:
        entity: What is being transitioned (e.g. "step", "needs_info_request").
        current: Status the entity is in.
        target: Status or action that was attempted.
        reason: Optional extra context.
    """

    code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(self, entity: str, current: str, target: str, reason: str | None = None) -> None:
        self.entity = entity
        self.current_status = current
        self.target = target
        msg = f"Cannot move {entity} from '{current}' to '{target}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, details={"current": current, "target": target})


class StepLockedError(WorkflowError):
    """Raised when a step is LOCKED or blocked by strict gating."""

    code = "LOCKED"
    http_status = 423


class StaleVersionError(WorkflowError):
    """Raised when an operation targets a submission version that is no longer the latest."""

    code = "STALE_VERSION"
    http_status = 409

    def __init__(self, version_id: str, latest_version_id: str | None = None) -> None:
        self.version_id = version_id
        self.latest_version_id = latest_version_id
        super().__init__(
            f"Submission version {version_id} is not the latest",
            details={"version_id": version_id, "latest_version_id": latest_version_id},
        )


class DeadlinePassedError(WorkflowError):
    """Raised when a submission arrives after the applicable deadline."""

    code = "DEADLINE_PASSED"
    http_status = 403


class IncompleteVerificationError(WorkflowError):
    """Raised when APPROVE is attempted with unverified files or open requests.

    ``details`` lists the ``field_id:file_object_id`` pairs still missing
    verification and the ids of OPEN needs-info requests.
    """

    code = "INCOMPLETE_VERIFICATION"
    http_status = 409


class VersionConflictError(WorkflowError):
    """Raised when a concurrent writer won a race (unique constraint or stale row).

    The only retryable error.
    """

    code = "VERSION_CONFLICT"
    http_status = 409
    retryable = True
