"""
File verification service.

Staff mark each uploaded file (or a file field as a whole, when the
applicant uploaded nothing) as PENDING / VERIFIED / ISSUE / REJECTED for
one submission version.  The approve precondition in ``review_outcome``
reads through ``is_verified``; the DB-backed default can be swapped
like the schema provider.
"""

import logging

from appflow.core.exceptions import ValidationError
from appflow.models import db
from appflow.models.audit import write_audit
from appflow.models.submission import VERIFICATION_STATUSES, FieldVerification
from appflow.services.helpers.scoped_queries import get_version
from appflow.services.helpers.transactions import atomic
from appflow.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class FileVerificationService:
    """Default implementation backed by ``field_verifications``."""

    def is_verified(self, submission_version_id: str, field_id: str, file_object_id: str | None) -> bool:
        row = FieldVerification.query.filter_by(
            submission_version_id=submission_version_id,
            field_id=field_id,
            file_object_id=file_object_id or "",
        ).first()
        return row is not None and row.status == "VERIFIED"


_service = FileVerificationService()


def set_verification_service(service):
    """Replace the service (anything with ``is_verified(version_id, field_id, file_object_id)``)."""
    global _service
    _service = service


def is_verified(submission_version_id: str, field_id: str, file_object_id: str | None = None) -> bool:
    return _service.is_verified(submission_version_id, field_id, file_object_id)


def set_field_verification(
    ctx,
    submission_version_id: str,
    field_id: str,
    file_object_id: str | None,
    status: str,
    reason_code: str | None = None,
    notes_internal: str | None = None,
    notes_applicant: str | None = None,
) -> dict:
    """Upsert the verification row for one file (or the whole field)."""
    if status not in VERIFICATION_STATUSES:
        raise ValidationError(
            f"Invalid verification status: {status}",
            details={"status": f"must be one of {', '.join(VERIFICATION_STATUSES)}"},
        )
    if not field_id:
        raise ValidationError("field_id is required", details={"field_id": "Required"})

    with atomic(ctx):
        version = get_version(ctx, submission_version_id)
        row = FieldVerification.query.filter_by(
            submission_version_id=version.id,
            field_id=field_id,
            file_object_id=file_object_id or "",
        ).first()
        old_status = row.status if row else None
        if row is None:
            row = FieldVerification(
                submission_version_id=version.id,
                field_id=field_id,
                file_object_id=file_object_id or "",
            )
            db.session.add(row)
        row.status = status
        row.reason_code = reason_code
        row.notes_internal = notes_internal
        row.notes_applicant = notes_applicant
        row.set_by = ctx.actor_id
        row.set_at = utcnow()
        db.session.flush()
        write_audit(
            entity_type="field_verification", entity_id=row.id, action="verification.set",
            actor=ctx.actor_id, event_id=ctx.event_id, application_id=version.application_id,
            diff={"field_id": field_id, "file_object_id": file_object_id,
                  "status": {"old": old_status, "new": status}},
        )
        result = row.to_dict()

    logger.info(
        "Verification %s: %s/%s", status, field_id, file_object_id or "-",
        extra=ctx.log_extra(version_id=submission_version_id),
    )
    return result


def list_verifications(ctx, submission_version_id: str) -> list[dict]:
    version = get_version(ctx, submission_version_id)
    rows = (
        FieldVerification.query
        .filter_by(submission_version_id=version.id)
        .order_by(FieldVerification.field_id.asc(), FieldVerification.file_object_id.asc())
        .all()
    )
    return [r.to_dict() for r in rows]
