"""
Needs-info revision controller.

Staff flag specific fields of a submitted step; the applicant may then
change exactly those fields plus everything whose visibility or
requirement depends on them (see ``field_dependency``).  A request with no
targeted fields opens the whole step, as do steps with no OPEN request.

Request lifecycle:
    OPEN → RESOLVED   next SubmissionVersion for the step is created
    OPEN → CANCELED   staff withdraw the request
    OPEN → EXPIRED    deadline passed (``expire_overdue`` sweep)

``open_request`` and ``resolve_open_requests`` run inside the caller's
transaction (review processing / submission); the remaining public
operations open their own.
"""

import logging

from appflow.core.exceptions import InvalidTransitionError, ValidationError
from appflow.models import db
from appflow.models.audit import write_audit
from appflow.models.submission import NeedsInfoRequest
from appflow.services import version_store
from appflow.services.conditions import is_empty
from appflow.services.field_dependency import get_dependency_graph
from appflow.services.helpers.scoped_queries import get_application, get_needs_info_request
from appflow.services.helpers.transactions import atomic
from appflow.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

NEEDS_INFO_TRANSITIONS = {
    "resolve": {"from": ["OPEN"], "to": "RESOLVED"},
    "cancel": {"from": ["OPEN"], "to": "CANCELED"},
    "expire": {"from": ["OPEN"], "to": "EXPIRED"},
}


def _transition(request: NeedsInfoRequest, action: str, now):
    rule = NEEDS_INFO_TRANSITIONS[action]
    if request.status not in rule["from"]:
        raise InvalidTransitionError("needs_info_request", request.status, rule["to"])
    request.status = rule["to"]
    request.resolved_at = now


# ── Queries ──────────────────────────────────────────────────────────────────


def open_requests(application_id: str, step_id: str) -> list[NeedsInfoRequest]:
    return (
        NeedsInfoRequest.query
        .filter_by(application_id=application_id, step_id=step_id, status="OPEN")
        .order_by(NeedsInfoRequest.created_at.asc())
        .all()
    )


def overdue_open_requests(application_id: str, step_id: str, now) -> list[NeedsInfoRequest]:
    now = as_utc(now)
    return [
        r for r in open_requests(application_id, step_id)
        if r.deadline_at is not None and as_utc(r.deadline_at) < now
    ]


def list_requests(ctx, application_id: str, step_id: str | None = None) -> list[dict]:
    get_application(ctx, application_id)
    query = NeedsInfoRequest.query.filter_by(application_id=application_id)
    if step_id:
        query = query.filter_by(step_id=step_id)
    return [r.to_dict() for r in query.order_by(NeedsInfoRequest.created_at.asc()).all()]


# ── Lifecycle ────────────────────────────────────────────────────────────────


def _target_list(raw) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)) or not all(isinstance(t, str) for t in raw):
        raise ValidationError(
            "target_field_ids must be a list of field ids",
            details={"target_field_ids": "Must be a list of strings"},
        )
    return [t.strip() for t in raw if t.strip()]


def open_request(
    ctx,
    application_id: str,
    step_id: str,
    submission_version_id: str,
    form_version_id: str | None,
    target_field_ids,
    message: str = "",
    deadline_at=None,
) -> NeedsInfoRequest:
    """Create an OPEN request; targets are stored as canonical field ids.

    Raises:
        ValidationError: targets are not a list of strings, or a target id
            or key does not exist in the step's form.
    """
    targets = _target_list(target_field_ids)
    canonical = []
    if targets and form_version_id:
        graph = get_dependency_graph(form_version_id)
        unknown = [t for t in targets if t not in graph]
        if unknown:
            raise ValidationError(
                "Unknown target fields",
                details={t: "Field does not exist in this form" for t in unknown},
            )
        for t in targets:
            cid = graph.canonical(t)
            if cid not in canonical:
                canonical.append(cid)
    else:
        canonical = list(dict.fromkeys(targets))

    request = NeedsInfoRequest(
        application_id=application_id,
        step_id=step_id,
        submission_version_id=submission_version_id,
        target_field_ids=canonical,
        message=message or "",
        deadline_at=deadline_at,
        status="OPEN",
        created_by=ctx.actor_id,
    )
    db.session.add(request)
    db.session.flush()
    write_audit(
        entity_type="needs_info_request", entity_id=request.id, action="needs_info.open",
        actor=ctx.actor_id, event_id=ctx.event_id, application_id=application_id,
        diff={"target_field_ids": canonical, "deadline_at": deadline_at},
    )
    logger.info(
        "Needs-info request opened for %d field(s)", len(canonical),
        extra=ctx.log_extra(application_id=application_id, step_id=step_id),
    )
    return request


def resolve_open_requests(ctx, application_id: str, step_id: str, version_id: str, now=None) -> int:
    """Mark every OPEN request of the step RESOLVED by *version_id*."""
    now = now or utcnow()
    resolved = 0
    for request in open_requests(application_id, step_id):
        _transition(request, "resolve", now)
        request.resolved_by_version_id = version_id
        write_audit(
            entity_type="needs_info_request", entity_id=request.id, action="needs_info.resolve",
            actor=ctx.actor_id, event_id=ctx.event_id, application_id=application_id,
            diff={"resolved_by_version_id": version_id},
        )
        resolved += 1
    return resolved


def cancel_request(ctx, request_id: str, now=None) -> dict:
    with atomic(ctx):
        request = get_needs_info_request(ctx, request_id)
        _transition(request, "cancel", now or utcnow())
        write_audit(
            entity_type="needs_info_request", entity_id=request.id, action="needs_info.cancel",
            actor=ctx.actor_id, event_id=ctx.event_id, application_id=request.application_id,
        )
        result = request.to_dict()
    logger.info("Needs-info request %s canceled", request_id, extra=ctx.log_extra())
    return result


def expire_overdue(ctx, application_id: str, now=None) -> list[dict]:
    """Move OPEN requests whose deadline has passed to EXPIRED."""
    now = as_utc(now or utcnow())
    expired = []
    with atomic(ctx):
        get_application(ctx, application_id)
        candidates = NeedsInfoRequest.query.filter_by(application_id=application_id, status="OPEN").all()
        for request in candidates:
            if request.deadline_at is None or as_utc(request.deadline_at) >= now:
                continue
            _transition(request, "expire", now)
            write_audit(
                entity_type="needs_info_request", entity_id=request.id, action="needs_info.expire",
                actor=ctx.actor_id, event_id=ctx.event_id, application_id=application_id,
            )
            expired.append(request.to_dict())
    if expired:
        logger.info("Expired %d needs-info request(s)", len(expired),
                    extra=ctx.log_extra(application_id=application_id))
    return expired


# ── Editability ──────────────────────────────────────────────────────────────


def editable_field_ids(application_id: str, step_id: str, status: str, form_version_id: str | None):
    """Fields the applicant may change right now.

    Returns None when the whole step is editable, otherwise the set of
    canonical field ids.  Only meaningful while NEEDS_REVISION; callers
    decide separately whether the step is open at all.
    """
    if status != "NEEDS_REVISION":
        return None
    targets = set()
    for request in open_requests(application_id, step_id):
        targets.update(request.target_field_ids or [])
    if not targets:
        return None
    if not form_version_id:
        return targets
    return get_dependency_graph(form_version_id).expand(targets)


def _same_value(left, right) -> bool:
    if is_empty(left) and is_empty(right):
        return True
    return left == right


def ensure_edits_allowed(application_id: str, step_id: str, status: str, answers: dict, form_version_id):
    """Reject *answers* that change a field outside the editable set.

    Compares against the latest submitted snapshot; hidden fields that stay
    empty on both sides do not count as changes.

    Raises:
        ValidationError: listing every non-editable field that changed.
    """
    editable = editable_field_ids(application_id, step_id, status, form_version_id)
    if editable is None:
        return

    previous = version_store.latest(application_id, step_id)
    before = version_store.snapshot(previous) if previous else {}
    graph = get_dependency_graph(form_version_id) if form_version_id else None

    violations = {}
    for key in set(before) | set(answers):
        if _same_value(before.get(key), answers.get(key)):
            continue
        canonical = graph.canonical(key) if graph is not None else None
        if (canonical or key) not in editable:
            violations[key] = "Field is not open for revision"
    if violations:
        raise ValidationError("Only the fields requested for revision may change", details=violations)
