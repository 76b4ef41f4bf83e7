"""Event workflow configuration: form versions and ordered steps.

Operations:
- Form version publishing (immutable, numbered per form key)
- Step create / update (steps freeze once any application references them)
- Workflow validation: blocking errors and advisory warnings
"""
import logging

from sqlalchemy import func, select

from appflow.core.exceptions import ConflictError, InvalidTransitionError, ValidationError
from appflow.models import db
from appflow.models.audit import write_audit
from appflow.models.workflow import (
    REJECT_BEHAVIORS,
    STEP_CATEGORIES,
    UNLOCK_POLICIES,
    ApplicationStepState,
    FormVersion,
    WorkflowStep,
)
from appflow.services.form_schema import normalize_form_definition
from appflow.services.helpers.scoped_queries import get_form_version, get_step
from appflow.services.helpers.transactions import atomic
from appflow.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

STEP_FIELDS = (
    "title", "category", "unlock_policy", "unlock_at", "review_required",
    "strict_gating", "reject_behavior", "form_version_id", "deadline_at",
)

_CHOICES = {
    "category": STEP_CATEGORIES,
    "unlock_policy": UNLOCK_POLICIES,
    "reject_behavior": REJECT_BEHAVIORS,
}


# ── Form versions ────────────────────────────────────────────────────────


def create_form_version(ctx, schema: dict, form_key: str = "default") -> FormVersion:
    """Publish the next version of *form_key*; the schema must parse."""
    if not isinstance(schema, dict):
        raise ValidationError("Form schema must be an object", details={"schema": "Must be an object"})
    sections = normalize_form_definition(schema)
    if not any(section.fields for section in sections):
        raise ValidationError("Form schema has no fields", details={"schema": "At least one field is required"})

    with atomic(ctx):
        current = db.session.execute(
            select(func.max(FormVersion.version_number)).where(
                FormVersion.event_id == ctx.event_id, FormVersion.form_key == form_key,
            )
        ).scalar() or 0
        version = FormVersion(
            event_id=ctx.event_id, form_key=form_key,
            version_number=current + 1, schema=schema,
        )
        db.session.add(version)
        db.session.flush()
        write_audit(
            entity_type="form_version", entity_id=version.id, action="create",
            actor=ctx.actor_id, event_id=ctx.event_id,
            diff={"form_key": form_key, "version_number": version.version_number},
        )
    logger.info("Published form %s v%d", form_key, version.version_number, extra=ctx.log_extra())
    return version


# ── Steps ────────────────────────────────────────────────────────────────


def _clean_step_data(ctx, data: dict) -> dict:
    errors = {}
    cleaned = {}
    for field in STEP_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field in _CHOICES and value not in _CHOICES[field]:
            errors[field] = f"must be one of {', '.join(_CHOICES[field])}"
            continue
        if field in ("unlock_at", "deadline_at") and value is not None:
            try:
                value = parse_datetime(value)
            except ValueError:
                errors[field] = "Invalid date"
                continue
        if field in ("review_required", "strict_gating"):
            value = bool(value)
        if field == "title":
            value = (value or "").strip()
            if not value:
                errors[field] = "Required"
                continue
        cleaned[field] = value
    if errors:
        raise ValidationError("Invalid step configuration", details=errors)
    if cleaned.get("form_version_id"):
        get_form_version(ctx, cleaned["form_version_id"])
    return cleaned


def list_steps(ctx) -> list[WorkflowStep]:
    return (
        WorkflowStep.query
        .filter_by(event_id=ctx.event_id)
        .order_by(WorkflowStep.step_index.asc())
        .all()
    )


def add_step(ctx, data: dict) -> WorkflowStep:
    """Append (or insert at a free ``step_index``) a step to the event's workflow."""
    if not (data.get("title") or "").strip():
        raise ValidationError("Step title is required", details={"title": "Required"})
    with atomic(ctx):
        cleaned = _clean_step_data(ctx, data)
        step_index = data.get("step_index")
        if step_index is None:
            step_index = WorkflowStep.query.filter_by(event_id=ctx.event_id).count()
        elif WorkflowStep.query.filter_by(event_id=ctx.event_id, step_index=step_index).first():
            raise ConflictError("WorkflowStep", "step_index", str(step_index))
        step = WorkflowStep(event_id=ctx.event_id, step_index=int(step_index), **cleaned)
        db.session.add(step)
        db.session.flush()
        write_audit(
            entity_type="workflow_step", entity_id=step.id, action="create",
            actor=ctx.actor_id, event_id=ctx.event_id, diff=step.to_dict(),
        )
    return step


def is_step_referenced(step_id: str) -> bool:
    return ApplicationStepState.query.filter_by(step_id=step_id).first() is not None


def update_step(ctx, step_id: str, data: dict) -> WorkflowStep:
    """Change a step's configuration.

    Raises:
        InvalidTransitionError: an application already has a state on this step.
    """
    with atomic(ctx):
        step = get_step(ctx, step_id)
        if is_step_referenced(step.id):
            raise InvalidTransitionError(
                "workflow_step", "IN_USE", "UPDATED",
                "step configuration is frozen once applications reference it",
            )
        cleaned = _clean_step_data(ctx, data)
        changes = {}
        for field, value in cleaned.items():
            old = getattr(step, field)
            if old != value:
                changes[field] = {"old": old, "new": value}
                setattr(step, field, value)
        if changes:
            write_audit(
                entity_type="workflow_step", entity_id=step.id, action="update",
                actor=ctx.actor_id, event_id=ctx.event_id, diff=changes,
            )
    return step


# ── Validation ───────────────────────────────────────────────────────────


def _issue(step: WorkflowStep, code: str, message: str) -> dict:
    return {"step_id": step.id, "step_title": step.title, "code": code, "message": message}


def validate_workflow(ctx) -> dict:
    """Check the event's step configuration.

    Returns:
        ``{"valid": bool, "errors": [...], "warnings": [...]}``; only
        errors make the workflow invalid.
    """
    errors = []
    warnings = []
    steps = list_steps(ctx)
    for position, step in enumerate(steps):
        prev = steps[position - 1] if position > 0 else None

        if step.unlock_policy == "DATE_BASED" and not step.unlock_at:
            errors.append(_issue(step, "MISSING_UNLOCK_DATE", "DATE_BASED unlock policy requires unlock_at"))

        if step.unlock_policy == "AFTER_PREV_APPROVED" and prev is not None and not prev.review_required:
            errors.append(_issue(
                step, "APPROVAL_GATE_NO_REVIEW",
                f'Step waits for approval but previous step "{prev.title}" is not reviewed',
            ))

        if step.unlock_policy == "AFTER_DECISION_ACCEPTED" and step.category != "CONFIRMATION":
            warnings.append(_issue(
                step, "DECISION_STEP_WRONG_CATEGORY",
                "Steps unlocked by an accepted decision should be CONFIRMATION steps",
            ))

        if step.category != "INFO_ONLY" and not step.form_version_id:
            warnings.append(_issue(step, "STEP_NO_FORM", "Step has no form attached; applicants cannot submit"))

        if step.step_index != position:
            warnings.append(_issue(
                step, "POSITION_GAP", f"Expected step_index {position}, found {step.step_index}",
            ))

    return {"valid": not errors, "errors": errors, "warnings": warnings}
