"""
Staff review queue: steps waiting on a reviewer or on the applicant.

Queue filters:
    pending       SUBMITTED
    resubmitted   SUBMITTED after at least one revision cycle
    needs_info    NEEDS_REVISION (waiting on the applicant)
    (none)        SUBMITTED or NEEDS_REVISION

Items are ordered oldest activity first so the longest-waiting step is
reviewed next.
"""

import logging

from sqlalchemy import func, select

from appflow.core.exceptions import ValidationError
from appflow.models import db
from appflow.models.submission import NeedsInfoRequest, SubmissionVersion
from appflow.models.workflow import Application, ApplicationStepState, WorkflowStep, _iso
from appflow.services.helpers.scoped_queries import get_step

logger = logging.getLogger(__name__)

QUEUE_FILTERS = {
    "pending": ("SUBMITTED",),
    "resubmitted": ("SUBMITTED",),
    "needs_info": ("NEEDS_REVISION",),
    None: ("SUBMITTED", "NEEDS_REVISION"),
}


def _open_request_keys(application_ids) -> set[tuple[str, str]]:
    if not application_ids:
        return set()
    rows = db.session.execute(
        select(NeedsInfoRequest.application_id, NeedsInfoRequest.step_id).where(
            NeedsInfoRequest.application_id.in_(application_ids),
            NeedsInfoRequest.status == "OPEN",
        )
    ).all()
    return {(application_id, step_id) for application_id, step_id in rows}


def review_queue(ctx, status: str | None = None, step_id: str | None = None) -> list[dict]:
    """Queue items for the context's event.

    Raises:
        ValidationError: unknown *status* filter.
        NotFoundError: *step_id* is not a step of this event.
    """
    status = (status or "").strip().lower() or None
    if status not in QUEUE_FILTERS:
        raise ValidationError(
            f"Invalid queue filter: {status}",
            details={"status": "must be one of pending, resubmitted, needs_info"},
        )
    if step_id:
        get_step(ctx, step_id)

    stmt = (
        select(ApplicationStepState, WorkflowStep, Application, SubmissionVersion)
        .join(WorkflowStep, WorkflowStep.id == ApplicationStepState.step_id)
        .join(Application, Application.id == ApplicationStepState.application_id)
        .outerjoin(SubmissionVersion, SubmissionVersion.id == ApplicationStepState.latest_submission_version_id)
        .where(
            Application.event_id == ctx.event_id,
            ApplicationStepState.status.in_(QUEUE_FILTERS[status]),
        )
        .order_by(ApplicationStepState.last_activity_at.asc(), WorkflowStep.step_index.asc())
    )
    if status == "resubmitted":
        stmt = stmt.where(ApplicationStepState.revision_cycle_count > 0)
    if step_id:
        stmt = stmt.where(ApplicationStepState.step_id == step_id)

    rows = db.session.execute(stmt).all()
    open_keys = _open_request_keys(sorted({state.application_id for state, _s, _a, _v in rows}))

    items = []
    for state, step, application, version in rows:
        items.append({
            "application_id": application.id,
            "applicant_id": application.applicant_id,
            "step_id": step.id,
            "step_title": step.title,
            "step_index": step.step_index,
            "status": state.status,
            "submission_version_id": version.id if version else None,
            "version_number": version.version_number if version else None,
            "submitted_at": _iso(version.submitted_at if version else state.last_activity_at),
            "has_open_needs_info": (application.id, step.id) in open_keys,
            "is_resubmission": (state.revision_cycle_count or 0) > 0,
        })
    logger.debug("Review queue %s: %d item(s)", status or "all", len(items), extra=ctx.log_extra())
    return items


def queue_stats(ctx) -> dict:
    """Per-step counts for every review-required step of the event."""
    steps = (
        WorkflowStep.query
        .filter_by(event_id=ctx.event_id, review_required=True)
        .order_by(WorkflowStep.step_index.asc())
        .all()
    )
    by_step = []
    totals = {"pending_review": 0, "needs_info_waiting": 0, "resubmitted_waiting": 0}
    if not steps:
        return {"by_step": by_step, "totals": totals}

    step_ids = [s.id for s in steps]
    pending = dict(db.session.execute(
        select(ApplicationStepState.step_id, func.count(ApplicationStepState.id))
        .where(ApplicationStepState.step_id.in_(step_ids),
               ApplicationStepState.status == "SUBMITTED",
               ApplicationStepState.revision_cycle_count == 0)
        .group_by(ApplicationStepState.step_id)
    ).all())
    resubmitted = dict(db.session.execute(
        select(ApplicationStepState.step_id, func.count(ApplicationStepState.id))
        .where(ApplicationStepState.step_id.in_(step_ids),
               ApplicationStepState.status == "SUBMITTED",
               ApplicationStepState.revision_cycle_count > 0)
        .group_by(ApplicationStepState.step_id)
    ).all())
    needs_info = dict(db.session.execute(
        select(NeedsInfoRequest.step_id, func.count(NeedsInfoRequest.id))
        .where(NeedsInfoRequest.step_id.in_(step_ids), NeedsInfoRequest.status == "OPEN")
        .group_by(NeedsInfoRequest.step_id)
    ).all())

    for step in steps:
        row = {
            "step_id": step.id,
            "step_title": step.title,
            "pending_review": pending.get(step.id, 0),
            "needs_info_waiting": needs_info.get(step.id, 0),
            "resubmitted_waiting": resubmitted.get(step.id, 0),
        }
        for key in totals:
            totals[key] += row[key]
        by_step.append(row)
    return {"by_step": by_step, "totals": totals}
