"""
Admin patch layer — non-destructive staff corrections.

A patch is an ordered list of JSON-Patch style ops anchored to exactly one
SubmissionVersion.  Snapshots are never modified; ``effective_answers``
replays the active patches of a version over a deep copy of its snapshot,
in creation order.

A resubmission does not carry patches forward: they stay anchored to the
version they were written against until staff ``reapply`` them to the new
latest version.
"""

import logging

from sqlalchemy import func, select

from appflow.core.exceptions import (
    InvalidTransitionError,
    StaleVersionError,
    ValidationError,
)
from appflow.models import db
from appflow.models.audit import write_audit
from appflow.models.submission import PATCH_VISIBILITIES, AdminChangePatch, SubmissionVersion
from appflow.services import version_store
from appflow.services.helpers.scoped_queries import get_application, get_patch, get_version
from appflow.services.helpers.transactions import atomic
from appflow.services.patch_ops import PatchApplyError, apply_ops, op_to_dict, parse_ops

logger = logging.getLogger(__name__)

AUDIENCES = ("staff", "applicant")


def _active_patches(version_id: str, audience: str = "staff") -> list[AdminChangePatch]:
    query = AdminChangePatch.query.filter_by(submission_version_id=version_id, is_active=True)
    if audience == "applicant":
        query = query.filter_by(visibility="VISIBLE_TO_APPLICANT")
    return query.order_by(AdminChangePatch.sequence.asc()).all()


def _replay(snapshot: dict, patches: list[AdminChangePatch]) -> dict:
    document = snapshot
    for patch in patches:
        try:
            document = apply_ops(document, parse_ops(patch.ops))
        except PatchApplyError as exc:
            logger.warning(
                "Skipping patch %s: %s", patch.id, exc,
                extra={"application_id": patch.application_id, "version_id": patch.submission_version_id},
            )
    return document


def effective_answers(submission_version_id: str, audience: str = "staff") -> dict:
    """Snapshot with the active patches applied; never writes.

    A patch that no longer applies (failed ``test`` or unresolvable pointer)
    is skipped as a whole.
    """
    if audience not in AUDIENCES:
        raise ValidationError(f"Unknown audience: {audience}", details={"audience": "must be staff or applicant"})
    version = version_store.by_id(submission_version_id)
    return _replay(version_store.snapshot(version), _active_patches(version.id, audience))


def _ensure_latest(version: SubmissionVersion):
    latest = version_store.latest(version.application_id, version.step_id)
    if latest is None or latest.id != version.id:
        raise StaleVersionError(version.id, latest.id if latest else None)


def _next_sequence(version_id: str) -> int:
    stmt = select(func.max(AdminChangePatch.sequence)).where(
        AdminChangePatch.submission_version_id == version_id,
    )
    return (db.session.execute(stmt).scalar() or 0) + 1


def _validated_ops(raw_ops, version: SubmissionVersion) -> list[dict]:
    """Parse *raw_ops* and dry-run them over the version's current effective answers."""
    ops = parse_ops(raw_ops)
    current = _replay(version_store.snapshot(version), _active_patches(version.id))
    try:
        apply_ops(current, ops)
    except PatchApplyError as exc:
        raise ValidationError(
            "Patch cannot be applied to the current answers",
            details={str(exc.index): exc.reason, "path": exc.path},
        ) from exc
    return [op_to_dict(op) for op in ops]


def _insert_patch(ctx, version, ops, reason, visibility, reapplied_from_id=None) -> AdminChangePatch:
    patch = AdminChangePatch(
        application_id=version.application_id,
        step_id=version.step_id,
        submission_version_id=version.id,
        sequence=_next_sequence(version.id),
        ops=ops,
        reason=reason,
        visibility=visibility,
        is_active=True,
        reapplied_from_id=reapplied_from_id,
        created_by=ctx.actor_id,
    )
    db.session.add(patch)
    db.session.flush()
    return patch


def create_patch(ctx, submission_version_id: str, ops, reason: str, visibility: str = "INTERNAL_ONLY") -> dict:
    """Anchor a new patch to the step's latest version.

    Raises:
        StaleVersionError: the version is not the step's latest.
        ValidationError: malformed ops, missing reason, bad visibility, or
            ops that do not apply to the current effective answers.
    """
    if visibility not in PATCH_VISIBILITIES:
        raise ValidationError(
            f"Invalid visibility: {visibility}",
            details={"visibility": f"must be one of {', '.join(PATCH_VISIBILITIES)}"},
        )
    if not (reason or "").strip():
        raise ValidationError("A reason is required for admin changes", details={"reason": "Required"})

    with atomic(ctx):
        version = get_version(ctx, submission_version_id)
        _ensure_latest(version)
        normalized = _validated_ops(ops, version)
        patch = _insert_patch(ctx, version, normalized, reason.strip(), visibility)
        write_audit(
            entity_type="admin_patch", entity_id=patch.id, action="patch.create",
            actor=ctx.actor_id, event_id=ctx.event_id, application_id=version.application_id,
            diff={"version_id": version.id, "ops": normalized, "visibility": visibility},
        )
        result = patch.to_dict()

    logger.info(
        "Admin patch %s created (%d ops)", result["id"], len(result["ops"]),
        extra=ctx.log_extra(application_id=result["application_id"], version_id=submission_version_id),
    )
    return result


def reapply(ctx, old_patch_id: str, new_version_id: str) -> dict:
    """Deactivate *old_patch_id* and copy its ops onto *new_version_id*.

    Raises:
        ValidationError: new version belongs to another application/step,
            or the ops no longer apply.
        StaleVersionError: new version is not the latest.
        InvalidTransitionError: the old patch is already inactive.
    """
    with atomic(ctx):
        old = get_patch(ctx, old_patch_id)
        new_version = get_version(ctx, new_version_id)
        if (new_version.application_id, new_version.step_id) != (old.application_id, old.step_id):
            raise ValidationError(
                "Target version belongs to a different application step",
                details={"new_version_id": "must belong to the same application and step"},
            )
        if not old.is_active:
            raise InvalidTransitionError("admin_patch", "INACTIVE", "REAPPLIED", "patch is no longer active")
        _ensure_latest(new_version)

        old.is_active = False
        db.session.flush()
        normalized = _validated_ops(old.ops, new_version)
        patch = _insert_patch(ctx, new_version, normalized, old.reason, old.visibility, reapplied_from_id=old.id)
        write_audit(
            entity_type="admin_patch", entity_id=patch.id, action="patch.reapply",
            actor=ctx.actor_id, event_id=ctx.event_id, application_id=old.application_id,
            diff={"from_patch_id": old.id, "from_version_id": old.submission_version_id,
                  "to_version_id": new_version.id},
        )
        result = patch.to_dict()
    return result


def deactivate_patch(ctx, patch_id: str) -> dict:
    with atomic(ctx):
        patch = get_patch(ctx, patch_id)
        if not patch.is_active:
            raise InvalidTransitionError("admin_patch", "INACTIVE", "INACTIVE", "patch is already inactive")
        patch.is_active = False
        write_audit(
            entity_type="admin_patch", entity_id=patch.id, action="patch.deactivate",
            actor=ctx.actor_id, event_id=ctx.event_id, application_id=patch.application_id,
        )
        result = patch.to_dict()
    return result


def list_patches(ctx, application_id: str, step_id: str | None = None, *, active_only: bool = False) -> list[dict]:
    get_application(ctx, application_id)
    query = AdminChangePatch.query.filter_by(application_id=application_id)
    if step_id:
        query = query.filter_by(step_id=step_id)
    if active_only:
        query = query.filter_by(is_active=True)
    patches = query.order_by(AdminChangePatch.created_at.asc(), AdminChangePatch.sequence.asc()).all()
    return [p.to_dict() for p in patches]
