"""
Submission history and review models.

SubmissionVersion, NeedsInfoRequest, AdminChangePatch, ReviewRecord,
FieldVerification.

SubmissionVersion and ReviewRecord are APPEND-ONLY: the ORM refuses any
UPDATE or DELETE of an existing row.  Staff corrections never touch a
snapshot; they live as AdminChangePatch rows replayed on read.
"""

from sqlalchemy import event

from appflow.models import db
from appflow.models.workflow import _iso, _utcnow, _uuid


__all__ = [
    "NEEDS_INFO_STATUSES",
    "PATCH_VISIBILITIES",
    "REVIEW_OUTCOMES",
    "VERIFICATION_STATUSES",
    "SubmissionVersion",
    "NeedsInfoRequest",
    "AdminChangePatch",
    "ReviewRecord",
    "FieldVerification",
    "ImmutableRecordError",
]


# ── Constants ────────────────────────────────────────────────────────────────

NEEDS_INFO_STATUSES = ("OPEN", "RESOLVED", "EXPIRED", "CANCELED")

PATCH_VISIBILITIES = ("INTERNAL_ONLY", "VISIBLE_TO_APPLICANT")

REVIEW_OUTCOMES = ("APPROVE", "REJECT", "REJECT_FINAL", "REJECT_RESUBMITTABLE", "REQUEST_INFO")

VERIFICATION_STATUSES = ("PENDING", "VERIFIED", "ISSUE", "REJECTED")


class ImmutableRecordError(RuntimeError):
    """Raised by the ORM guards when an append-only row is modified."""


# ═════════════════════════════════════════════════════════════════════════════
# SubmissionVersion — immutable answer snapshot
# ═════════════════════════════════════════════════════════════════════════════

class SubmissionVersion(db.Model):
    """
    Immutable snapshot of a step's answers at submission time.

    Business rules:
    - Never updated or deleted (enforced by mapper event guards below).
    - version_number is 1-based and dense per (application, step); the
      unique constraint turns a concurrent duplicate into IntegrityError.
    """

    __tablename__ = "submission_versions"
    __table_args__ = (
        db.UniqueConstraint(
            "application_id", "step_id", "version_number",
            name="uq_submission_version_number",
        ),
        db.Index("idx_submission_app_step", "application_id", "step_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    application_id = db.Column(
        db.String(36), db.ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_id = db.Column(
        db.String(36), db.ForeignKey("workflow_steps.id", ondelete="RESTRICT"),
        nullable=False,
    )
    version_number = db.Column(db.Integer, nullable=False)
    answers_snapshot = db.Column(db.JSON, nullable=False, default=dict)
    form_version_id = db.Column(db.String(36), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    submitted_by = db.Column(db.String(64), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "application_id": self.application_id,
            "step_id": self.step_id,
            "version_number": self.version_number,
            "answers_snapshot": self.answers_snapshot,
            "form_version_id": self.form_version_id,
            "submitted_at": _iso(self.submitted_at),
            "submitted_by": self.submitted_by,
        }

    def __repr__(self):
        return f"<SubmissionVersion {self.application_id}/{self.step_id} v{self.version_number}>"


# ═════════════════════════════════════════════════════════════════════════════
# NeedsInfoRequest — targeted revision request
# ═════════════════════════════════════════════════════════════════════════════

class NeedsInfoRequest(db.Model):
    __tablename__ = "needs_info_requests"
    __table_args__ = (
        db.Index("idx_needs_info_app_step_status", "application_id", "step_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    application_id = db.Column(
        db.String(36), db.ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_id = db.Column(
        db.String(36), db.ForeignKey("workflow_steps.id", ondelete="CASCADE"),
        nullable=False,
    )
    submission_version_id = db.Column(
        db.String(36), db.ForeignKey("submission_versions.id", ondelete="SET NULL"),
        nullable=True, comment="Version the request was raised against",
    )
    target_field_ids = db.Column(db.JSON, nullable=False, default=list)
    message = db.Column(db.Text, nullable=False, default="")
    deadline_at = db.Column(db.DateTime(timezone=True), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="OPEN", comment="OPEN | RESOLVED | EXPIRED | CANCELED")
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_by_version_id = db.Column(db.String(36), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "application_id": self.application_id,
            "step_id": self.step_id,
            "submission_version_id": self.submission_version_id,
            "target_field_ids": list(self.target_field_ids or []),
            "message": self.message,
            "deadline_at": _iso(self.deadline_at),
            "status": self.status,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "resolved_at": _iso(self.resolved_at),
            "resolved_by_version_id": self.resolved_by_version_id,
        }

    def __repr__(self):
        return f"<NeedsInfoRequest {self.id} {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# AdminChangePatch — staff correction layered over a snapshot
# ═════════════════════════════════════════════════════════════════════════════

class AdminChangePatch(db.Model):
    """
    Ordered list of JSON-Patch style operations anchored to one
    SubmissionVersion.  Only ``is_active`` ever changes after creation.
    """

    __tablename__ = "admin_change_patches"
    __table_args__ = (
        db.UniqueConstraint("submission_version_id", "sequence", name="uq_patch_version_sequence"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    application_id = db.Column(
        db.String(36), db.ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_id = db.Column(db.String(36), nullable=False)
    submission_version_id = db.Column(
        db.String(36), db.ForeignKey("submission_versions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    sequence = db.Column(db.Integer, nullable=False, comment="Creation order within the anchor version")
    ops = db.Column(db.JSON, nullable=False, default=list)
    reason = db.Column(db.Text, nullable=False)
    visibility = db.Column(
        db.String(30), nullable=False, default="INTERNAL_ONLY",
        comment="INTERNAL_ONLY | VISIBLE_TO_APPLICANT",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    reapplied_from_id = db.Column(db.String(36), nullable=True)
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "application_id": self.application_id,
            "step_id": self.step_id,
            "submission_version_id": self.submission_version_id,
            "sequence": self.sequence,
            "ops": self.ops,
            "reason": self.reason,
            "visibility": self.visibility,
            "is_active": self.is_active,
            "reapplied_from_id": self.reapplied_from_id,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<AdminChangePatch {self.id} seq={self.sequence} active={self.is_active}>"


# ═════════════════════════════════════════════════════════════════════════════
# ReviewRecord — append-only reviewer decision
# ═════════════════════════════════════════════════════════════════════════════

class ReviewRecord(db.Model):
    __tablename__ = "review_records"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    submission_version_id = db.Column(
        db.String(36), db.ForeignKey("submission_versions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    reviewer_id = db.Column(db.String(64), nullable=True)
    outcome = db.Column(db.String(30), nullable=False)
    checklist_result = db.Column(db.JSON, nullable=False, default=dict)
    message_to_applicant = db.Column(db.Text, nullable=True)
    notes_internal = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self, include_internal=True):
        data = {
            "id": self.id,
            "submission_version_id": self.submission_version_id,
            "reviewer_id": self.reviewer_id,
            "outcome": self.outcome,
            "checklist_result": self.checklist_result,
            "message_to_applicant": self.message_to_applicant,
            "created_at": _iso(self.created_at),
        }
        if include_internal:
            data["notes_internal"] = self.notes_internal
        return data


# ═════════════════════════════════════════════════════════════════════════════
# FieldVerification — per-file verification status
# ═════════════════════════════════════════════════════════════════════════════

class FieldVerification(db.Model):
    """
    Verification status of one uploaded file (or of a file field as a whole
    when ``file_object_id`` is empty) inside one submission version.
    """

    __tablename__ = "field_verifications"
    __table_args__ = (
        db.UniqueConstraint(
            "submission_version_id", "field_id", "file_object_id",
            name="uq_field_verification",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    submission_version_id = db.Column(
        db.String(36), db.ForeignKey("submission_versions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    field_id = db.Column(db.String(100), nullable=False)
    file_object_id = db.Column(db.String(100), nullable=False, default="")
    status = db.Column(db.String(20), nullable=False, default="PENDING", comment="PENDING | VERIFIED | ISSUE | REJECTED")
    reason_code = db.Column(db.String(50), nullable=True)
    notes_internal = db.Column(db.Text, nullable=True)
    notes_applicant = db.Column(db.Text, nullable=True)
    set_by = db.Column(db.String(64), nullable=True)
    set_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "submission_version_id": self.submission_version_id,
            "field_id": self.field_id,
            "file_object_id": self.file_object_id or None,
            "status": self.status,
            "reason_code": self.reason_code,
            "notes_internal": self.notes_internal,
            "notes_applicant": self.notes_applicant,
            "set_by": self.set_by,
            "set_at": _iso(self.set_at),
        }


# ── Append-only guards ───────────────────────────────────────────────────────

def _refuse_update(mapper, connection, target):
    raise ImmutableRecordError(f"{type(target).__name__} {target.id} is append-only and cannot be updated")


def _refuse_delete(mapper, connection, target):
    raise ImmutableRecordError(f"{type(target).__name__} {target.id} is append-only and cannot be deleted")


for _model in (SubmissionVersion, ReviewRecord):
    event.listen(_model, "before_update", _refuse_update)
    event.listen(_model, "before_delete", _refuse_delete)
