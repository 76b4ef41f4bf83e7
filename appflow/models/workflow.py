"""
Workflow configuration and per-application progress models.

FormVersion, WorkflowStep, Application, ApplicationStepState, StepDraft.

A WorkflowStep is configuration owned by an event; an ApplicationStepState
is one applicant's position on that step.  Step states are mutated only by
``appflow.services.step_state_machine``.
"""

import uuid
from datetime import datetime, timezone

from appflow.models import db


__all__ = [
    "STEP_STATUSES",
    "UNLOCK_POLICIES",
    "STEP_CATEGORIES",
    "REJECT_BEHAVIORS",
    "DECISION_STATUSES",
    "FormVersion",
    "WorkflowStep",
    "Application",
    "ApplicationStepState",
    "StepDraft",
]


# ── Helpers ──────────────────────────────────────────────────────────────────

def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Constants ────────────────────────────────────────────────────────────────

STEP_STATUSES = (
    "LOCKED",
    "UNLOCKED_DRAFT",
    "SUBMITTED",
    "NEEDS_REVISION",
    "APPROVED",
    "REJECTED_FINAL",
    "REJECTED_RESUBMITTABLE",
)

UNLOCK_POLICIES = (
    "AUTO_AFTER_PREV_SUBMITTED",
    "AFTER_PREV_APPROVED",
    "DATE_BASED",
    "ADMIN_MANUAL",
    "AFTER_DECISION_ACCEPTED",
)

STEP_CATEGORIES = ("APPLICATION", "CONFIRMATION", "INFO_ONLY")

REJECT_BEHAVIORS = ("FINAL", "RESUBMIT_ALLOWED")

DECISION_STATUSES = ("NONE", "ACCEPTED", "REJECTED", "WAITLISTED")


# ═════════════════════════════════════════════════════════════════════════════
# FormVersion — immutable published form schema
# ═════════════════════════════════════════════════════════════════════════════

class FormVersion(db.Model):
    """
    Published, immutable form schema.

    ``schema`` holds ``{"sections": [{"id", "title", "fields": [...]}]}``;
    each field carries ``id``, ``key``, ``type``, ``label``, ``validation``,
    ``ui`` and ``logic`` (``showWhen`` / ``requireWhen`` condition groups).
    """

    __tablename__ = "form_versions"
    __table_args__ = (
        db.UniqueConstraint("event_id", "form_key", "version_number", name="uq_form_version_number"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    event_id = db.Column(db.String(64), nullable=False, index=True)
    form_key = db.Column(db.String(100), nullable=False, default="default")
    version_number = db.Column(db.Integer, nullable=False, default=1)
    schema = db.Column(db.JSON, nullable=False, default=dict, comment="{sections: [{id, title, fields}]}")
    published_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "event_id": self.event_id,
            "form_key": self.form_key,
            "version_number": self.version_number,
            "schema": self.schema,
            "published_at": _iso(self.published_at),
        }

    def __repr__(self):
        return f"<FormVersion {self.form_key} v{self.version_number}>"


# ═════════════════════════════════════════════════════════════════════════════
# WorkflowStep — one ordered step of an event's workflow
# ═════════════════════════════════════════════════════════════════════════════

class WorkflowStep(db.Model):
    """
    Ordered workflow step configuration.

    Immutable once any ApplicationStepState references it; configuration
    changes after that point raise InvalidTransitionError in
    ``workflow_config.update_step``.
    """

    __tablename__ = "workflow_steps"
    __table_args__ = (
        db.UniqueConstraint("event_id", "step_index", name="uq_workflow_step_index"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    event_id = db.Column(db.String(64), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    step_index = db.Column(db.Integer, nullable=False, comment="0-based position within the event")
    category = db.Column(
        db.String(20), nullable=False, default="APPLICATION",
        comment="APPLICATION | CONFIRMATION | INFO_ONLY",
    )
    unlock_policy = db.Column(
        db.String(40), nullable=False, default="AUTO_AFTER_PREV_SUBMITTED",
        comment="AUTO_AFTER_PREV_SUBMITTED | AFTER_PREV_APPROVED | DATE_BASED | ADMIN_MANUAL | AFTER_DECISION_ACCEPTED",
    )
    unlock_at = db.Column(db.DateTime(timezone=True), nullable=True, comment="DATE_BASED only")
    review_required = db.Column(db.Boolean, nullable=False, default=False)
    strict_gating = db.Column(db.Boolean, nullable=False, default=True)
    reject_behavior = db.Column(
        db.String(20), nullable=False, default="RESUBMIT_ALLOWED",
        comment="FINAL | RESUBMIT_ALLOWED",
    )
    form_version_id = db.Column(
        db.String(36), db.ForeignKey("form_versions.id", ondelete="RESTRICT"),
        nullable=True,
    )
    deadline_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "event_id": self.event_id,
            "title": self.title,
            "step_index": self.step_index,
            "category": self.category,
            "unlock_policy": self.unlock_policy,
            "unlock_at": _iso(self.unlock_at),
            "review_required": self.review_required,
            "strict_gating": self.strict_gating,
            "reject_behavior": self.reject_behavior,
            "form_version_id": self.form_version_id,
            "deadline_at": _iso(self.deadline_at),
        }

    def __repr__(self):
        return f"<WorkflowStep {self.step_index}: {self.title}>"


# ═════════════════════════════════════════════════════════════════════════════
# Application — one applicant's participation in an event
# ═════════════════════════════════════════════════════════════════════════════

class Application(db.Model):
    __tablename__ = "applications"
    __table_args__ = (
        db.UniqueConstraint("event_id", "applicant_id", name="uq_application_event_applicant"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    event_id = db.Column(db.String(64), nullable=False, index=True)
    applicant_id = db.Column(db.String(64), nullable=False, index=True)
    decision_status = db.Column(
        db.String(20), nullable=False, default="NONE",
        comment="NONE | ACCEPTED | REJECTED | WAITLISTED",
    )
    decision_published_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "event_id": self.event_id,
            "applicant_id": self.applicant_id,
            "decision_status": self.decision_status,
            "decision_published_at": _iso(self.decision_published_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Application {self.id} event={self.event_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# ApplicationStepState — per (application, step) progress
# ═════════════════════════════════════════════════════════════════════════════

class ApplicationStepState(db.Model):
    """
    Position of one application on one workflow step.

    ``lock_version`` is an optimistic-locking counter: a concurrent writer
    that updates the same row from a stale read gets StaleDataError at
    flush, mapped to VersionConflictError by the transaction helper.
    """

    __tablename__ = "application_step_states"
    __table_args__ = (
        db.UniqueConstraint("application_id", "step_id", name="uq_step_state_application_step"),
        db.Index("idx_step_state_status", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    application_id = db.Column(
        db.String(36), db.ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_id = db.Column(
        db.String(36), db.ForeignKey("workflow_steps.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    status = db.Column(db.String(30), nullable=False, default="LOCKED")
    manual_unlock = db.Column(db.Boolean, nullable=False, default=False, comment="ADMIN_MANUAL override")
    deadline_override = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="Staff exemption from the step deadline for this application",
    )
    current_draft_id = db.Column(db.String(36), nullable=True)
    latest_submission_version_id = db.Column(db.String(36), nullable=True)
    revision_cycle_count = db.Column(db.Integer, nullable=False, default=0)
    unlocked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_activity_at = db.Column(db.DateTime(timezone=True), nullable=True)
    lock_version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": lock_version}

    def to_dict(self):
        return {
            "id": self.id,
            "application_id": self.application_id,
            "step_id": self.step_id,
            "status": self.status,
            "manual_unlock": self.manual_unlock,
            "deadline_override": self.deadline_override,
            "current_draft_id": self.current_draft_id,
            "latest_submission_version_id": self.latest_submission_version_id,
            "revision_cycle_count": self.revision_cycle_count,
            "unlocked_at": _iso(self.unlocked_at),
            "last_activity_at": _iso(self.last_activity_at),
        }

    def __repr__(self):
        return f"<ApplicationStepState {self.application_id}/{self.step_id} {self.status}>"


class StepDraft(db.Model):
    """Mutable working copy of a step's answers; never versioned."""

    __tablename__ = "step_drafts"
    __table_args__ = (
        db.UniqueConstraint("application_id", "step_id", name="uq_step_draft_application_step"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    application_id = db.Column(
        db.String(36), db.ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_id = db.Column(
        db.String(36), db.ForeignKey("workflow_steps.id", ondelete="CASCADE"),
        nullable=False,
    )
    form_version_id = db.Column(db.String(36), nullable=True)
    answers = db.Column(db.JSON, nullable=False, default=dict)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "application_id": self.application_id,
            "step_id": self.step_id,
            "form_version_id": self.form_version_id,
            "answers": self.answers,
            "updated_at": _iso(self.updated_at),
        }
