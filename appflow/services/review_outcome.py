"""
Review outcome processor.

Turns a reviewer decision on the latest SubmissionVersion of a SUBMITTED
step into a ReviewRecord plus a step transition:

    APPROVE               → APPROVED   (all required files verified, no OPEN request)
    REJECT_FINAL          → REJECTED_FINAL
    REJECT_RESUBMITTABLE  → REJECTED_RESUBMITTABLE
    REJECT                → one of the two above, by the step's reject_behavior
    REQUEST_INFO          → NEEDS_REVISION, with an OPEN NeedsInfoRequest

Every outcome recomputes unlocks for the application in the same
transaction.
"""

import logging

from appflow.core.exceptions import (
    IncompleteVerificationError,
    InvalidTransitionError,
    StaleVersionError,
    ValidationError,
)
from appflow.models import db
from appflow.models.audit import write_audit
from appflow.models.submission import REVIEW_OUTCOMES, ReviewRecord
from appflow.services import needs_info, step_state_machine, version_store
from appflow.services.answer_validation import extract_file_object_ids
from appflow.services.file_verification import is_verified
from appflow.services.form_schema import answer_key_aliases, get_field_schema_provider, is_field_required
from appflow.services.helpers.scoped_queries import get_step, get_version
from appflow.services.helpers.transactions import atomic
from appflow.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

OUTCOME_STATUS = {
    "APPROVE": "APPROVED",
    "REJECT_FINAL": "REJECTED_FINAL",
    "REJECT_RESUBMITTABLE": "REJECTED_RESUBMITTABLE",
    "REQUEST_INFO": "NEEDS_REVISION",
}


def resolve_outcome(outcome: str, reject_behavior: str) -> str:
    """Map the legacy REJECT outcome through the step's reject behavior."""
    if outcome == "REJECT":
        return "REJECT_FINAL" if reject_behavior == "FINAL" else "REJECT_RESUBMITTABLE"
    return outcome


def missing_verifications(version, step) -> list[str]:
    """``field_id`` or ``field_id:file_object_id`` entries still lacking VERIFIED.

    Only file fields that are visible and required under the submitted
    answers count.  A required file field with no upload needs a
    field-level verification.
    """
    if not step.form_version_id:
        return []
    answers = version_store.snapshot(version)
    fields = get_field_schema_provider().get_fields(step.form_version_id)
    aliases = answer_key_aliases(fields)
    missing = []
    for field_def in fields:
        if not field_def.is_file or not is_field_required(field_def, answers, aliases):
            continue
        file_ids = extract_file_object_ids(answers.get(field_def.answer_key))
        if not file_ids:
            if not is_verified(version.id, field_def.id, None):
                missing.append(field_def.id)
            continue
        for file_id in file_ids:
            if not is_verified(version.id, field_def.id, file_id):
                missing.append(f"{field_def.id}:{file_id}")
    return missing


def _check_approvable(version, step):
    missing = missing_verifications(version, step)
    open_ids = [r.id for r in needs_info.open_requests(version.application_id, version.step_id)]
    if missing or open_ids:
        raise IncompleteVerificationError(
            "Step cannot be approved yet",
            details={"unverified": missing, "open_request_ids": open_ids},
        )


def record_review(
    ctx,
    submission_version_id: str,
    outcome: str,
    target_field_ids=None,
    deadline_at=None,
    checklist_result=None,
    message_to_applicant=None,
    notes_internal=None,
    now=None,
) -> dict:
    """Apply a review outcome to the latest version of a submitted step.

    Raises:
        ValidationError: unknown outcome, or unknown REQUEST_INFO targets.
        StaleVersionError: the version is not the step's latest.
        InvalidTransitionError: the step is not SUBMITTED.
        IncompleteVerificationError: APPROVE preconditions not met.
    """
    if outcome not in REVIEW_OUTCOMES:
        raise ValidationError(
            f"Invalid review outcome: {outcome}",
            details={"outcome": f"must be one of {', '.join(REVIEW_OUTCOMES)}"},
        )
    now = as_utc(now) if now else utcnow()

    with atomic(ctx):
        version = get_version(ctx, submission_version_id)
        latest = version_store.latest(version.application_id, version.step_id)
        if latest is None or latest.id != version.id:
            raise StaleVersionError(version.id, latest.id if latest else None)

        step = get_step(ctx, version.step_id)
        state = step_state_machine.get_state(version.application_id, version.step_id)
        effective = resolve_outcome(outcome, step.reject_behavior)
        target_status = OUTCOME_STATUS[effective]
        if state.status != "SUBMITTED":
            raise InvalidTransitionError("step", state.status, target_status, "only submitted steps can be reviewed")

        if effective == "APPROVE":
            _check_approvable(version, step)
        elif effective == "REQUEST_INFO":
            needs_info.open_request(
                ctx, version.application_id, version.step_id, version.id, step.form_version_id,
                target_field_ids, message=message_to_applicant or "", deadline_at=deadline_at,
            )

        record = ReviewRecord(
            submission_version_id=version.id,
            reviewer_id=ctx.actor_id,
            outcome=effective,
            checklist_result=checklist_result or {},
            message_to_applicant=message_to_applicant,
            notes_internal=notes_internal,
        )
        db.session.add(record)
        db.session.flush()
        write_audit(
            entity_type="review", entity_id=record.id, action="review.record",
            actor=ctx.actor_id, event_id=ctx.event_id, application_id=version.application_id,
            diff={"outcome": effective, "requested_outcome": outcome, "version_id": version.id},
        )

        step_state_machine.apply_review_transition(ctx, state, target_status, now)
        result = record.to_dict()
        result["step_status"] = state.status

    logger.info(
        "Review %s recorded", effective,
        extra=ctx.log_extra(application_id=version.application_id, step_id=version.step_id,
                            version_id=version.id),
    )
    return result


def list_reviews(ctx, submission_version_id: str, *, include_internal: bool = True) -> list[dict]:
    version = get_version(ctx, submission_version_id)
    rows = (
        ReviewRecord.query
        .filter_by(submission_version_id=version.id)
        .order_by(ReviewRecord.created_at.asc())
        .all()
    )
    return [r.to_dict(include_internal=include_internal) for r in rows]
