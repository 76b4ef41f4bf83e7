"""
Review Blueprint — staff review of submitted steps.

Endpoints (all under /api/v1/events/<event_id>):
    POST   /versions/<vid>/reviews              record APPROVE | REJECT* | REQUEST_INFO
    GET    /versions/<vid>/reviews
    GET    /versions/<vid>/verifications
    PUT    /versions/<vid>/verifications        {field_id, file_object_id?, status, ...}
    POST   /versions/<vid>/patches              {ops, reason, visibility?}
    GET    /applications/<aid>/patches          ?step_id=&active_only=1
    POST   /patches/<pid>/reapply               {new_version_id}
    POST   /patches/<pid>/deactivate
    GET    /applications/<aid>/needs-info       ?step_id=
    POST   /applications/<aid>/needs-info/expire
    POST   /needs-info/<rid>/cancel
    GET    /review-queue                        ?status=pending|resubmitted|needs_info&step_id=
    GET    /review-queue/stats

Every route except the needs-info listing requires ``X-Actor-Role: staff``.
"""

import logging

from flask import Blueprint, jsonify, request

from appflow.blueprints import body_datetime, register_error_handlers, request_context, staff_required
from appflow.services import admin_patch, file_verification, needs_info, review_outcome, review_queue

logger = logging.getLogger(__name__)

review_bp = Blueprint("review", __name__, url_prefix="/api/v1")
register_error_handlers(review_bp)


# ── Reviews ──────────────────────────────────────────────────────────────


@review_bp.route("/events/<event_id>/versions/<version_id>/reviews", methods=["POST"])
def record_review(event_id, version_id):
    """Body: {outcome, target_field_ids?, deadline_at?, checklist_result?,
    message_to_applicant?, notes_internal?}"""
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    result = review_outcome.record_review(
        ctx,
        version_id,
        (data.get("outcome") or "").upper(),
        target_field_ids=data.get("target_field_ids"),
        deadline_at=body_datetime(data, "deadline_at"),
        checklist_result=data.get("checklist_result"),
        message_to_applicant=data.get("message_to_applicant"),
        notes_internal=data.get("notes_internal"),
    )
    return jsonify(result), 201


@review_bp.route("/events/<event_id>/versions/<version_id>/reviews", methods=["GET"])
def list_reviews(event_id, version_id):
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    return jsonify(review_outcome.list_reviews(ctx, version_id)), 200


# ── Verifications ────────────────────────────────────────────────────────


@review_bp.route("/events/<event_id>/versions/<version_id>/verifications", methods=["GET"])
def list_verifications(event_id, version_id):
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    return jsonify(file_verification.list_verifications(ctx, version_id)), 200


@review_bp.route("/events/<event_id>/versions/<version_id>/verifications", methods=["PUT"])
def set_verification(event_id, version_id):
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    result = file_verification.set_field_verification(
        ctx,
        version_id,
        data.get("field_id"),
        data.get("file_object_id"),
        (data.get("status") or "").upper(),
        reason_code=data.get("reason_code"),
        notes_internal=data.get("notes_internal"),
        notes_applicant=data.get("notes_applicant"),
    )
    return jsonify(result), 200


# ── Admin patches ────────────────────────────────────────────────────────


@review_bp.route("/events/<event_id>/versions/<version_id>/patches", methods=["POST"])
def create_patch(event_id, version_id):
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    patch = admin_patch.create_patch(
        ctx, version_id, data.get("ops"), data.get("reason") or "",
        visibility=data.get("visibility") or "INTERNAL_ONLY",
    )
    return jsonify(patch), 201


@review_bp.route("/events/<event_id>/applications/<application_id>/patches", methods=["GET"])
def list_patches(event_id, application_id):
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    patches = admin_patch.list_patches(
        ctx, application_id,
        step_id=request.args.get("step_id"),
        active_only=request.args.get("active_only", "").lower() in ("1", "true", "yes"),
    )
    return jsonify(patches), 200


@review_bp.route("/events/<event_id>/patches/<patch_id>/reapply", methods=["POST"])
def reapply_patch(event_id, patch_id):
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    new_version_id = data.get("new_version_id")
    if not new_version_id:
        return jsonify({"error": "new_version_id is required", "code": "VALIDATION_FAILED"}), 422
    return jsonify(admin_patch.reapply(ctx, patch_id, new_version_id)), 201


@review_bp.route("/events/<event_id>/patches/<patch_id>/deactivate", methods=["POST"])
def deactivate_patch(event_id, patch_id):
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    return jsonify(admin_patch.deactivate_patch(ctx, patch_id)), 200


# ── Needs-info requests ──────────────────────────────────────────────────


@review_bp.route("/events/<event_id>/applications/<application_id>/needs-info", methods=["GET"])
def list_needs_info(event_id, application_id):
    ctx = request_context(event_id)
    return jsonify(needs_info.list_requests(ctx, application_id, request.args.get("step_id"))), 200


@review_bp.route("/events/<event_id>/applications/<application_id>/needs-info/expire", methods=["POST"])
def expire_needs_info(event_id, application_id):
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    return jsonify({"expired": needs_info.expire_overdue(ctx, application_id)}), 200


@review_bp.route("/events/<event_id>/needs-info/<request_id>/cancel", methods=["POST"])
def cancel_needs_info(event_id, request_id):
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    return jsonify(needs_info.cancel_request(ctx, request_id)), 200


# ── Review queue ─────────────────────────────────────────────────────────


@review_bp.route("/events/<event_id>/review-queue", methods=["GET"])
def get_review_queue(event_id):
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    items = review_queue.review_queue(ctx, request.args.get("status"), request.args.get("step_id"))
    return jsonify(items), 200


@review_bp.route("/events/<event_id>/review-queue/stats", methods=["GET"])
def get_review_queue_stats(event_id):
    ctx = request_context(event_id)
    err = staff_required(ctx)
    if err:
        return err
    return jsonify(review_queue.queue_stats(ctx)), 200
