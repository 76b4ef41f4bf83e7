"""
Application step state machine — the only writer of ApplicationStepState.status.

States:
    LOCKED → UNLOCKED_DRAFT → SUBMITTED → APPROVED | REJECTED_FINAL
                                          | REJECTED_RESUBMITTABLE | NEEDS_REVISION
    NEEDS_REVISION → SUBMITTED            (targeted resubmission)
    REJECTED_RESUBMITTABLE → UNLOCKED_DRAFT  (reopen)
    UNLOCKED_DRAFT → LOCKED               (unlock condition lost / strict gating)

Terminal: APPROVED, REJECTED_FINAL.

Gating walk (``recompute_unlocks``): steps are visited in index order.  A
strict-gating step whose prerequisite is neither SUBMITTED nor APPROVED,
or any step after a REJECTED_FINAL one, breaks the gate: that step and
every later one may not be open.  Open steps behind a broken gate are
relocked (drafts are kept); steps that already carry a submission keep
their status but cannot be submitted or edited until the gate is restored.
A staff manual unlock exempts that single step.

Usage:
    from appflow.services import step_state_machine as ssm

    ssm.submit(ctx, application_id, step_id, answers)
    ssm.recompute_unlocks(ctx, application_id)
"""

import copy
import logging

from sqlalchemy import select

from appflow.core.exceptions import (
    ConflictError,
    DeadlinePassedError,
    InvalidTransitionError,
    StepLockedError,
    ValidationError,
)
from appflow.models import db
from appflow.models.audit import write_audit
from appflow.models.workflow import (
    DECISION_STATUSES,
    Application,
    ApplicationStepState,
    StepDraft,
    WorkflowStep,
)
from appflow.services import needs_info, unlock_policy, version_store
from appflow.services.answer_validation import normalize_answers_shape, validate_answers
from appflow.services.form_schema import get_field_schema_provider
from appflow.services.helpers.scoped_queries import get_application, get_step
from appflow.services.helpers.transactions import atomic
from appflow.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


# ── Transition table ─────────────────────────────────────────────────────────

STEP_TRANSITIONS = {
    "LOCKED": {"UNLOCKED_DRAFT"},
    "UNLOCKED_DRAFT": {"SUBMITTED", "LOCKED"},
    "SUBMITTED": {"APPROVED", "REJECTED_FINAL", "REJECTED_RESUBMITTABLE", "NEEDS_REVISION"},
    "NEEDS_REVISION": {"SUBMITTED"},
    "REJECTED_RESUBMITTABLE": {"UNLOCKED_DRAFT"},
    "APPROVED": set(),
    "REJECTED_FINAL": set(),
}

EDITABLE_STATUSES = frozenset({"UNLOCKED_DRAFT", "NEEDS_REVISION"})

_AUDIT_ACTION = {
    "UNLOCKED_DRAFT": "step.unlock",
    "LOCKED": "step.lock",
    "SUBMITTED": "step.submit",
    "APPROVED": "step.approve",
    "REJECTED_FINAL": "step.reject_final",
    "REJECTED_RESUBMITTABLE": "step.reject_resubmittable",
    "NEEDS_REVISION": "step.needs_revision",
}


def can_transition(current: str, target: str) -> bool:
    return target in STEP_TRANSITIONS.get(current, set())


def _transition(ctx, state: ApplicationStepState, target: str, now, *, reason: str | None = None) -> dict:
    """Guarded status write; every status change in the engine goes through here."""
    current = state.status
    if not can_transition(current, target):
        raise InvalidTransitionError("step", current, target, reason)

    state.status = target
    state.last_activity_at = now
    if target == "UNLOCKED_DRAFT":
        state.unlocked_at = now
    if target == "NEEDS_REVISION":
        state.revision_cycle_count = (state.revision_cycle_count or 0) + 1

    action = "step.reopen" if current == "REJECTED_RESUBMITTABLE" else _AUDIT_ACTION[target]
    diff = {"status": {"old": current, "new": target}}
    if reason:
        diff["reason"] = reason
    write_audit(
        entity_type="step_state", entity_id=state.id, action=action,
        actor=ctx.actor_id, event_id=ctx.event_id,
        application_id=state.application_id, diff=diff,
    )
    logger.info(
        "Step %s: %s → %s", state.step_id, current, target,
        extra=ctx.log_extra(application_id=state.application_id, step_id=state.step_id),
    )
    return {"step_id": state.step_id, "from": current, "to": target}


# ── Loading ──────────────────────────────────────────────────────────────────


def ordered_states(application_id: str, *, lock: bool = True) -> list[tuple[ApplicationStepState, WorkflowStep]]:
    """All step states of an application with their steps, in index order.

    One statement, so the gating walk sees a consistent snapshot; with
    ``lock`` the state rows are held FOR UPDATE until commit.
    """
    stmt = (
        select(ApplicationStepState, WorkflowStep)
        .join(WorkflowStep, WorkflowStep.id == ApplicationStepState.step_id)
        .where(ApplicationStepState.application_id == application_id)
        .order_by(WorkflowStep.step_index.asc())
    )
    if lock:
        stmt = stmt.with_for_update(of=ApplicationStepState)
    return [(row[0], row[1]) for row in db.session.execute(stmt).all()]


def ensure_step_states(application: Application) -> int:
    """Create missing LOCKED state rows for every step of the application's event."""
    existing = {
        step_id for (step_id,) in db.session.execute(
            select(ApplicationStepState.step_id).where(ApplicationStepState.application_id == application.id)
        ).all()
    }
    steps = (
        WorkflowStep.query
        .filter_by(event_id=application.event_id)
        .order_by(WorkflowStep.step_index.asc())
        .all()
    )
    created = 0
    for step in steps:
        if step.id in existing:
            continue
        db.session.add(ApplicationStepState(application_id=application.id, step_id=step.id, status="LOCKED"))
        created += 1
    if created:
        db.session.flush()
    return created


def get_state(application_id: str, step_id: str) -> ApplicationStepState:
    state = (
        ApplicationStepState.query
        .filter_by(application_id=application_id, step_id=step_id)
        .first()
    )
    if state is None:
        raise InvalidTransitionError("step", "MISSING", "UNLOCKED_DRAFT", "step state not initialised")
    return state


# ── Gating walk ──────────────────────────────────────────────────────────────


def walk_gates(rows):
    """Yield ``(state, step, is_first, prior_status, blocked)`` in index order.

    ``prior_status`` is read lazily, so callers that transition a state while
    iterating feed the new status into the next step's evaluation.
    """
    prior = None
    broken = False
    for index, (state, step) in enumerate(rows):
        prior_status = prior.status if prior is not None else None
        if index > 0:
            if prior_status == "REJECTED_FINAL":
                broken = True
            elif step.strict_gating and not unlock_policy.gate_satisfied(prior_status):
                broken = True
        yield state, step, index == 0, prior_status, broken and not state.manual_unlock
        prior = state


def gate_blocked_step_ids(application_id: str) -> set[str]:
    """Step ids currently behind a broken strict gate."""
    return {
        state.step_id
        for state, _step, _first, _prior, blocked in walk_gates(ordered_states(application_id, lock=False))
        if blocked
    }


def _should_unlock(application, state, step, is_first, prior_status, now) -> bool:
    if state.manual_unlock:
        return True
    return unlock_policy.evaluate(
        step.unlock_policy,
        prior_status,
        application.decision_status,
        state.manual_unlock,
        now,
        unlock_at=step.unlock_at,
        decision_published=application.decision_published_at is not None,
        is_first=is_first,
    )


def _recompute(ctx, application: Application, now) -> list[dict]:
    ensure_step_states(application)
    transitions = []
    for state, step, is_first, prior_status, blocked in walk_gates(ordered_states(application.id)):
        if state.status not in ("LOCKED", "UNLOCKED_DRAFT"):
            continue
        should = False if blocked else _should_unlock(application, state, step, is_first, prior_status, now)
        if should and state.status == "LOCKED":
            transitions.append(_transition(ctx, state, "UNLOCKED_DRAFT", now))
        elif not should and state.status == "UNLOCKED_DRAFT":
            reason = "strict gating" if blocked else "unlock condition no longer met"
            transitions.append(_transition(ctx, state, "LOCKED", now, reason=reason))
    if transitions:
        db.session.flush()
    return transitions


# ── Public operations ────────────────────────────────────────────────────────


def recompute_unlocks(ctx, application_id: str, now=None) -> list[dict]:
    """Bring every step's LOCKED / UNLOCKED_DRAFT status in line with its policy.

    Idempotent: a second call with no intervening change returns ``[]``.

    Returns:
        List of ``{"step_id", "from", "to"}`` transitions performed.
    """
    now = as_utc(now) if now else utcnow()
    with atomic(ctx):
        application = get_application(ctx, application_id)
        return _recompute(ctx, application, now)


def start_application(ctx, applicant_id: str, now=None) -> Application:
    """Create an application for the context's event and unlock its first step."""
    now = as_utc(now) if now else utcnow()
    with atomic(ctx):
        existing = Application.query.filter_by(event_id=ctx.event_id, applicant_id=applicant_id).first()
        if existing is not None:
            raise ConflictError("Application", "applicant_id", applicant_id)
        application = Application(event_id=ctx.event_id, applicant_id=applicant_id)
        db.session.add(application)
        db.session.flush()
        write_audit(
            entity_type="application", entity_id=application.id, action="application.start",
            actor=ctx.actor_id, event_id=ctx.event_id, application_id=application.id,
        )
        _recompute(ctx, application, now)
    logger.info("Application started", extra=ctx.log_extra(application_id=application.id))
    return application


def _check_deadline(state: ApplicationStepState, step: WorkflowStep, application_id: str, now):
    if state.deadline_override:
        return
    if step.deadline_at is not None and as_utc(now) > as_utc(step.deadline_at):
        raise DeadlinePassedError("Step deadline has passed", details={"deadline_at": step.deadline_at.isoformat()})
    if state.status == "NEEDS_REVISION":
        overdue = needs_info.overdue_open_requests(application_id, step.id, now)
        if overdue:
            raise DeadlinePassedError(
                "Revision deadline has passed",
                details={"request_ids": [r.id for r in overdue]},
            )


def _ensure_open_for_edit(application_id: str, state: ApplicationStepState, operation: str):
    if state.status not in EDITABLE_STATUSES:
        raise StepLockedError(f"Step is not open for {operation} (status={state.status})")
    if state.step_id in gate_blocked_step_ids(application_id):
        raise StepLockedError(f"Step is blocked by strict gating; {operation} not allowed")


def submit(ctx, application_id: str, step_id: str, answers: dict, now=None, expected_version: int | None = None):
    """Create the next SubmissionVersion and move the step to SUBMITTED.

    Version append, status change, needs-info resolution, draft removal and
    the downstream unlock recomputation commit together or not at all.

    Raises:
        InvalidTransitionError: step is not UNLOCKED_DRAFT / NEEDS_REVISION.
        StepLockedError: step is behind a broken strict gate.
        DeadlinePassedError: step or revision deadline elapsed, no override.
        ValidationError: answers invalid, or edits outside the revision set.
        VersionConflictError: lost the version-number race.
    """
    now = as_utc(now) if now else utcnow()
    answers = normalize_answers_shape(answers)

    with atomic(ctx):
        application = get_application(ctx, application_id)
        step = get_step(ctx, step_id)
        ensure_step_states(application)
        state = get_state(application_id, step_id)

        if state.status not in EDITABLE_STATUSES:
            raise InvalidTransitionError("step", state.status, "SUBMITTED", "step is not open for submission")
        if step_id in gate_blocked_step_ids(application_id):
            raise StepLockedError("Step is blocked by strict gating; submission not allowed")
        _check_deadline(state, step, application_id, now)

        if not step.form_version_id:
            raise ValidationError("Step has no form attached")
        fields = get_field_schema_provider().get_fields(step.form_version_id)
        if not any(f.is_input for f in fields):
            raise ValidationError("This step form has no input fields configured")
        errors = validate_answers(fields, answers)
        if errors:
            raise ValidationError("Answers failed validation", details=errors)

        needs_info.ensure_edits_allowed(application_id, step_id, state.status, answers, step.form_version_id)

        version = version_store.append(
            application_id, step_id, answers, step.form_version_id, ctx.actor_id,
            expected_version=expected_version,
        )
        _transition(ctx, state, "SUBMITTED", now)
        state.latest_submission_version_id = version.id

        if state.current_draft_id:
            draft = db.session.get(StepDraft, state.current_draft_id)
            if draft is not None:
                db.session.delete(draft)
            state.current_draft_id = None

        needs_info.resolve_open_requests(ctx, application_id, step_id, version.id, now)
        db.session.flush()
        _recompute(ctx, application, now)

    logger.info(
        "Submitted version %d", version.version_number,
        extra=ctx.log_extra(application_id=application_id, step_id=step_id, version_id=version.id),
    )
    return version


def save_draft(ctx, application_id: str, step_id: str, answers: dict) -> StepDraft:
    """Overwrite the step's draft; never creates a version.

    Raises:
        StepLockedError: step is not UNLOCKED_DRAFT / NEEDS_REVISION or is gated.
    """
    answers = normalize_answers_shape(answers)
    with atomic(ctx):
        get_application(ctx, application_id)
        step = get_step(ctx, step_id)
        state = get_state(application_id, step_id)
        _ensure_open_for_edit(application_id, state, "editing")

        draft = StepDraft.query.filter_by(application_id=application_id, step_id=step_id).first()
        if draft is None:
            draft = StepDraft(application_id=application_id, step_id=step_id)
            db.session.add(draft)
        draft.answers = copy.deepcopy(answers)
        draft.form_version_id = step.form_version_id
        db.session.flush()
        state.current_draft_id = draft.id
        state.last_activity_at = utcnow()
    return draft


def get_draft(ctx, application_id: str, step_id: str) -> dict | None:
    get_application(ctx, application_id)
    draft = StepDraft.query.filter_by(application_id=application_id, step_id=step_id).first()
    return normalize_answers_shape(draft.answers) if draft else None


def reopen(ctx, application_id: str, step_id: str, now=None) -> dict:
    """REJECTED_RESUBMITTABLE → UNLOCKED_DRAFT."""
    now = as_utc(now) if now else utcnow()
    with atomic(ctx):
        application = get_application(ctx, application_id)
        get_step(ctx, step_id)
        state = get_state(application_id, step_id)
        if state.status != "REJECTED_RESUBMITTABLE":
            raise InvalidTransitionError("step", state.status, "UNLOCKED_DRAFT", "only resubmittable rejections can be reopened")
        result = _transition(ctx, state, "UNLOCKED_DRAFT", now)
        _recompute(ctx, application, now)
    return result


def apply_review_transition(ctx, state: ApplicationStepState, target: str, now) -> dict:
    """Move a SUBMITTED step to a review outcome status (caller owns the transaction)."""
    if state.status != "SUBMITTED":
        raise InvalidTransitionError("step", state.status, target, "only submitted steps can be reviewed")
    result = _transition(ctx, state, target, now)
    application = db.session.get(Application, state.application_id)
    _recompute(ctx, application, now)
    return result


def set_manual_unlock(ctx, application_id: str, step_id: str, enabled: bool, now=None) -> list[dict]:
    """Toggle the staff override for one step, then recompute."""
    now = as_utc(now) if now else utcnow()
    with atomic(ctx):
        application = get_application(ctx, application_id)
        get_step(ctx, step_id)
        ensure_step_states(application)
        state = get_state(application_id, step_id)
        if state.manual_unlock != bool(enabled):
            state.manual_unlock = bool(enabled)
            write_audit(
                entity_type="step_state", entity_id=state.id, action="step.manual_unlock",
                actor=ctx.actor_id, event_id=ctx.event_id, application_id=application_id,
                diff={"manual_unlock": bool(enabled)},
            )
            db.session.flush()
        return _recompute(ctx, application, now)


def grant_deadline_override(ctx, application_id: str, step_id: str, enabled: bool = True) -> dict:
    with atomic(ctx):
        get_application(ctx, application_id)
        get_step(ctx, step_id)
        state = get_state(application_id, step_id)
        state.deadline_override = bool(enabled)
        write_audit(
            entity_type="step_state", entity_id=state.id, action="step.deadline_override",
            actor=ctx.actor_id, event_id=ctx.event_id, application_id=application_id,
            diff={"deadline_override": bool(enabled)},
        )
        result = state.to_dict()
    return result


def publish_decision(ctx, application_id: str, decision_status: str, now=None) -> list[dict]:
    """Record the application's decision signal, then recompute unlocks."""
    if decision_status not in DECISION_STATUSES:
        raise ValidationError(f"Invalid decision status: {decision_status}",
                              details={"decision_status": f"must be one of {', '.join(DECISION_STATUSES)}"})
    now = as_utc(now) if now else utcnow()
    with atomic(ctx):
        application = get_application(ctx, application_id)
        old = application.decision_status
        application.decision_status = decision_status
        application.decision_published_at = now if decision_status != "NONE" else None
        write_audit(
            entity_type="application", entity_id=application.id, action="application.decision_published",
            actor=ctx.actor_id, event_id=ctx.event_id, application_id=application.id,
            diff={"decision_status": {"old": old, "new": decision_status}},
        )
        db.session.flush()
        return _recompute(ctx, application, now)


def recompute_due_unlocks(ctx, now=None) -> dict[str, list[dict]]:
    """Sweep the event for DATE_BASED steps whose unlock date has passed.

    Every application holding such a LOCKED step is recomputed in its own
    transaction, so strict gating still decides whether the step opens.

    Returns:
        ``{application_id: transitions}`` for applications that changed.
    """
    now = as_utc(now) if now else utcnow()
    stmt = (
        select(ApplicationStepState.application_id, WorkflowStep.unlock_at)
        .join(WorkflowStep, WorkflowStep.id == ApplicationStepState.step_id)
        .where(
            WorkflowStep.event_id == ctx.event_id,
            WorkflowStep.unlock_policy == "DATE_BASED",
            WorkflowStep.unlock_at.is_not(None),
            ApplicationStepState.status == "LOCKED",
        )
        .order_by(ApplicationStepState.application_id.asc())
    )
    due = []
    for application_id, unlock_at in db.session.execute(stmt).all():
        if as_utc(unlock_at) <= now and application_id not in due:
            due.append(application_id)

    changed = {}
    for application_id in due:
        transitions = recompute_unlocks(ctx, application_id, now=now)
        if transitions:
            changed[application_id] = transitions
    logger.info(
        "Unlock sweep: %d application(s) due, %d changed", len(due), len(changed),
        extra=ctx.log_extra(),
    )
    return changed
