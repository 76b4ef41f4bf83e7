"""
Submission version store: the only write path for SubmissionVersion.

Version numbers are dense and 1-based per (application, step).  ``append``
reads the current maximum and inserts N+1 inside the caller's transaction.
Two concurrent submits can read the same maximum; the unique constraint on
(application_id, step_id, version_number) makes the second insert fail at
flush, which surfaces as VersionConflictError (retryable).  Callers that
want an explicit compare-and-swap pass ``expected_version``.
"""

import copy
import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from appflow.core.exceptions import NotFoundError, VersionConflictError
from appflow.models import db
from appflow.models.submission import SubmissionVersion

logger = logging.getLogger(__name__)


def _max_version_number(application_id: str, step_id: str, session) -> int:
    stmt = select(func.max(SubmissionVersion.version_number)).where(
        SubmissionVersion.application_id == application_id,
        SubmissionVersion.step_id == step_id,
    )
    return session.execute(stmt).scalar() or 0


def append(
    application_id: str,
    step_id: str,
    answers: dict,
    form_version_id: str | None,
    actor_id: str | None,
    expected_version: int | None = None,
    session=None,
) -> SubmissionVersion:
    """Insert the next immutable version; flushes but does not commit.

    Args:
        expected_version: when given, the latest version number the caller
            based its edit on; a mismatch raises VersionConflictError.
        session: defaults to the request-scoped ``db.session``.

    Raises:
        VersionConflictError: lost race or compare-and-swap mismatch.
    """
    if session is None:
        session = db.session
    current = _max_version_number(application_id, step_id, session)
    if expected_version is not None and expected_version != current:
        raise VersionConflictError(
            f"Expected latest version {expected_version}, found {current}",
            details={"expected_version": expected_version, "current_version": current},
        )

    version = SubmissionVersion(
        application_id=application_id,
        step_id=step_id,
        version_number=current + 1,
        answers_snapshot=copy.deepcopy(answers),
        form_version_id=form_version_id,
        submitted_by=actor_id,
    )
    session.add(version)
    try:
        session.flush()
    except IntegrityError as exc:
        logger.warning(
            "Version number %d already taken", current + 1,
            extra={"application_id": application_id, "step_id": step_id},
        )
        raise VersionConflictError(
            "Another submission for this step was saved concurrently; retry",
            details={"version_number": current + 1},
        ) from exc
    return version


# ── Reads ────────────────────────────────────────────────────────────────────


def latest(application_id: str, step_id: str) -> SubmissionVersion | None:
    return (
        SubmissionVersion.query
        .filter_by(application_id=application_id, step_id=step_id)
        .order_by(SubmissionVersion.version_number.desc())
        .first()
    )


def by_version(application_id: str, step_id: str, version_number: int) -> SubmissionVersion:
    version = SubmissionVersion.query.filter_by(
        application_id=application_id, step_id=step_id, version_number=version_number,
    ).first()
    if version is None:
        raise NotFoundError(resource="SubmissionVersion", resource_id=f"{step_id}#{version_number}")
    return version


def by_id(version_id: str) -> SubmissionVersion:
    version = db.session.get(SubmissionVersion, version_id)
    if version is None:
        raise NotFoundError(resource="SubmissionVersion", resource_id=version_id)
    return version


def history(application_id: str, step_id: str) -> list[SubmissionVersion]:
    """All versions of a step, oldest first."""
    return (
        SubmissionVersion.query
        .filter_by(application_id=application_id, step_id=step_id)
        .order_by(SubmissionVersion.version_number.asc())
        .all()
    )


def snapshot(version: SubmissionVersion) -> dict:
    """Deep copy of a version's answers; safe to mutate."""
    return copy.deepcopy(version.answers_snapshot or {})
