"""
Workflow Blueprint — event configuration and applicant step progress.

All routes are scoped under /api/v1/events/<event_id>/... so every lookup is
event-scoped; an id from another event answers 404.

Endpoints:
    Configuration (staff)
        GET    /events/<eid>/workflow/steps
        POST   /events/<eid>/workflow/steps
        PUT    /events/<eid>/workflow/steps/<step_id>
        POST   /events/<eid>/workflow/forms
        GET    /events/<eid>/workflow/validate

    Application progress
        POST   /events/<eid>/applications
        GET    /events/<eid>/applications/<aid>/steps
        GET    /events/<eid>/applications/<aid>/steps/<sid>/draft
        PUT    /events/<eid>/applications/<aid>/steps/<sid>/draft
        POST   /events/<eid>/applications/<aid>/steps/<sid>/submit
        POST   /events/<eid>/applications/<aid>/steps/<sid>/reopen
        GET    /events/<eid>/applications/<aid>/steps/<sid>/history
        GET    /events/<eid>/versions/<vid>/effective-answers

    Staff overrides
        POST   /events/<eid>/applications/<aid>/steps/<sid>/manual-unlock
        POST   /events/<eid>/applications/<aid>/steps/<sid>/deadline-override
        POST   /events/<eid>/applications/<aid>/decision
        POST   /events/<eid>/applications/<aid>/recompute
        POST   /events/<eid>/workflow/unlock-sweep
        GET    /events/<eid>/applications/<aid>/timeline

Layer contract:
    - Blueprint: parse input, build the RequestContext, call the service,
      return JSON.
    - NO db.session calls here; services own their transactions.
"""

import logging

from flask import Blueprint, jsonify, request

from appflow.blueprints import register_error_handlers, request_context, staff_required
from appflow.services import step_state_machine as ssm
from appflow.services import step_views, workflow_config

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_bp)


# ═════════════════════════════════════════════════════════════════════════
# Configuration
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/events/<event_id>/workflow/steps", methods=["GET"])
def list_steps(event_id):
    ctx = request_context(event_id)
    return jsonify([s.to_dict() for s in workflow_config.list_steps(ctx)]), 200


@workflow_bp.route("/events/<event_id>/workflow/steps", methods=["POST"])
def create_step(event_id):
    """Body: {title, step_index?, category?, unlock_policy?, unlock_at?, review_required?,
    strict_gating?, reject_behavior?, form_version_id?, deadline_at?}"""
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    step = workflow_config.add_step(ctx, request.get_json(silent=True) or {})
    return jsonify(step.to_dict()), 201


@workflow_bp.route("/events/<event_id>/workflow/steps/<step_id>", methods=["PUT"])
def update_step(event_id, step_id):
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    step = workflow_config.update_step(ctx, step_id, request.get_json(silent=True) or {})
    return jsonify(step.to_dict()), 200


@workflow_bp.route("/events/<event_id>/workflow/forms", methods=["POST"])
def create_form(event_id):
    """Body: {schema: {sections: [...]}, form_key?}"""
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    version = workflow_config.create_form_version(
        ctx, data.get("schema"), form_key=data.get("form_key") or "default",
    )
    return jsonify(version.to_dict()), 201


@workflow_bp.route("/events/<event_id>/workflow/validate", methods=["GET"])
def validate_workflow(event_id):
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    return jsonify(workflow_config.validate_workflow(ctx)), 200


# ═════════════════════════════════════════════════════════════════════════
# Application progress
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/events/<event_id>/applications", methods=["POST"])
def start_application(event_id):
    """Body: {applicant_id?}, defaulting to the acting user."""
    ctx = request_context(event_id)
    data = request.get_json(silent=True) or {}
    applicant_id = data.get("applicant_id") or ctx.actor_id
    if not applicant_id:
        return jsonify({"error": "applicant_id or X-Actor-Id is required", "code": "VALIDATION_FAILED"}), 422
    application = ssm.start_application(ctx, applicant_id)
    return jsonify(application.to_dict()), 201


@workflow_bp.route("/events/<event_id>/applications/<application_id>/steps", methods=["GET"])
def get_step_states(event_id, application_id):
    ctx = request_context(event_id)
    return jsonify(step_views.step_state_view(ctx, application_id)), 200


@workflow_bp.route("/events/<event_id>/applications/<application_id>/steps/<step_id>/draft", methods=["GET"])
def get_draft(event_id, application_id, step_id):
    ctx = request_context(event_id)
    return jsonify({"answers": ssm.get_draft(ctx, application_id, step_id)}), 200


@workflow_bp.route("/events/<event_id>/applications/<application_id>/steps/<step_id>/draft", methods=["PUT"])
def save_draft(event_id, application_id, step_id):
    """Body: {answers: {...}}"""
    ctx = request_context(event_id)
    data = request.get_json(silent=True) or {}
    draft = ssm.save_draft(ctx, application_id, step_id, data.get("answers") or {})
    return jsonify(draft.to_dict()), 200


@workflow_bp.route("/events/<event_id>/applications/<application_id>/steps/<step_id>/submit", methods=["POST"])
def submit_step(event_id, application_id, step_id):
    """Body: {answers: {...}, expected_version?: int}

    Returns 201 with the new SubmissionVersion; 409 VERSION_CONFLICT on a
    lost race (retryable).
    """
    ctx = request_context(event_id)
    data = request.get_json(silent=True) or {}
    expected = data.get("expected_version")
    version = ssm.submit(
        ctx, application_id, step_id, data.get("answers") or {},
        expected_version=int(expected) if expected is not None else None,
    )
    return jsonify(version.to_dict()), 201


@workflow_bp.route("/events/<event_id>/applications/<application_id>/steps/<step_id>/reopen", methods=["POST"])
def reopen_step(event_id, application_id, step_id):
    ctx = request_context(event_id)
    return jsonify(ssm.reopen(ctx, application_id, step_id)), 200


@workflow_bp.route("/events/<event_id>/applications/<application_id>/steps/<step_id>/history", methods=["GET"])
def step_history(event_id, application_id, step_id):
    ctx = request_context(event_id)
    versions = step_views.submission_history(ctx, application_id, step_id)
    return jsonify([v.to_dict() for v in versions]), 200


@workflow_bp.route("/events/<event_id>/versions/<version_id>/effective-answers", methods=["GET"])
def effective_answers(event_id, version_id):
    ctx = request_context(event_id)
    return jsonify({"answers": step_views.effective_answers(ctx, version_id)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Staff overrides
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route(
    "/events/<event_id>/applications/<application_id>/steps/<step_id>/manual-unlock",
    methods=["POST"],
)
def manual_unlock(event_id, application_id, step_id):
    """Body: {enabled: bool} (default true)"""
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    transitions = ssm.set_manual_unlock(ctx, application_id, step_id, bool(data.get("enabled", True)))
    return jsonify({"transitions": transitions}), 200


@workflow_bp.route(
    "/events/<event_id>/applications/<application_id>/steps/<step_id>/deadline-override",
    methods=["POST"],
)
def deadline_override(event_id, application_id, step_id):
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    state = ssm.grant_deadline_override(ctx, application_id, step_id, bool(data.get("enabled", True)))
    return jsonify(state), 200


@workflow_bp.route("/events/<event_id>/applications/<application_id>/decision", methods=["POST"])
def publish_decision(event_id, application_id):
    """Body: {decision_status: NONE|ACCEPTED|REJECTED|WAITLISTED}"""
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    transitions = ssm.publish_decision(ctx, application_id, (data.get("decision_status") or "").upper())
    return jsonify({"transitions": transitions}), 200


@workflow_bp.route("/events/<event_id>/applications/<application_id>/recompute", methods=["POST"])
def recompute(event_id, application_id):
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    return jsonify({"transitions": ssm.recompute_unlocks(ctx, application_id)}), 200


@workflow_bp.route("/events/<event_id>/workflow/unlock-sweep", methods=["POST"])
def unlock_sweep(event_id):
    """Recompute every application holding a DATE_BASED step that is due."""
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    return jsonify({"applications": ssm.recompute_due_unlocks(ctx)}), 200


@workflow_bp.route("/events/<event_id>/applications/<application_id>/timeline", methods=["GET"])
def application_timeline(event_id, application_id):
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    entries = step_views.application_timeline(
        ctx, application_id,
        entity_type=request.args.get("entity_type"),
        limit=request.args.get("limit", 100, type=int),
    )
    return jsonify(entries), 200
