"""
Read views consumed by the applicant form renderer, the review UI and exports.

    step_state_view(ctx, application_id)          → per-step status + editable fields
    submission_history(ctx, application_id, step) → versions, oldest first
    effective_answers(ctx, version_id, audience)  → snapshot with active patches
    application_timeline(ctx, application_id)     → audit entries, newest first

All views are read-only and event-scoped.
"""

from appflow.models.audit import AuditLog
from appflow.models.submission import SubmissionVersion
from appflow.models.workflow import _iso
from appflow.services import admin_patch, needs_info, step_state_machine, version_store
from appflow.services.field_dependency import get_dependency_graph
from appflow.services.form_schema import get_field_schema_provider
from appflow.services.helpers.scoped_queries import get_application, get_step, get_version


def _editable(application_id, state, step, blocked) -> list[str]:
    if blocked or state.status not in step_state_machine.EDITABLE_STATUSES:
        return []
    targeted = needs_info.editable_field_ids(application_id, step.id, state.status, step.form_version_id)
    if targeted is not None:
        return sorted(targeted)
    if not step.form_version_id:
        return []
    return [f.id for f in get_field_schema_provider().get_fields(step.form_version_id) if f.is_input]


def _effective_deadline(application_id, state, step):
    if state.status == "NEEDS_REVISION":
        deadlines = [r.deadline_at for r in needs_info.open_requests(application_id, step.id) if r.deadline_at]
        if deadlines:
            return min(deadlines)
    return step.deadline_at


def step_state_view(ctx, application_id: str) -> list[dict]:
    """``[{step_id, status, editable_field_ids, deadline_at, latest_version_number, ...}]`` in step order."""
    get_application(ctx, application_id)
    rows = step_state_machine.ordered_states(application_id, lock=False)
    view = []
    for state, step, _first, _prior, blocked in step_state_machine.walk_gates(rows):
        editable = _editable(application_id, state, step, blocked)
        graph = get_dependency_graph(step.form_version_id) if step.form_version_id else None
        latest = version_store.latest(application_id, step.id)
        view.append({
            "step_id": step.id,
            "step_index": step.step_index,
            "title": step.title,
            "status": state.status,
            "blocked": blocked,
            "editable_field_ids": editable,
            "editable_field_keys": [graph.answer_key(fid) or fid for fid in editable] if graph else editable,
            "deadline_at": _iso(_effective_deadline(application_id, state, step)),
            "latest_version_number": latest.version_number if latest else None,
            "revision_cycle_count": state.revision_cycle_count,
        })
    return view


def submission_history(ctx, application_id: str, step_id: str) -> list[SubmissionVersion]:
    get_application(ctx, application_id)
    get_step(ctx, step_id)
    return version_store.history(application_id, step_id)


def effective_answers(ctx, submission_version_id: str, audience: str | None = None) -> dict:
    """Staff see every active patch; applicants only VISIBLE_TO_APPLICANT ones."""
    version = get_version(ctx, submission_version_id)
    if audience is None:
        audience = "staff" if ctx.is_staff else "applicant"
    return admin_patch.effective_answers(version.id, audience=audience)


def application_timeline(ctx, application_id: str, entity_type: str | None = None, limit: int = 100) -> list[dict]:
    """Audit entries for an application across its step states, versions,
    needs-info requests, patches, reviews and verifications; newest first."""
    get_application(ctx, application_id)
    query = AuditLog.query.filter_by(application_id=application_id, event_id=ctx.event_id)
    if entity_type:
        query = query.filter_by(entity_type=entity_type)
    rows = query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(max(1, min(limit, 500))).all()
    return [row.to_dict() for row in rows]
