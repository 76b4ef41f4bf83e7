"""
Application Workflow Engine
Blueprint helpers shared by the workflow and review blueprints.
"""

import logging

from flask import current_app, jsonify, request

from appflow.core.exceptions import WorkflowError
from appflow.services.context import RequestContext
from appflow.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)


def request_context(event_id: str) -> RequestContext:
    """Build the explicit service context from request headers.

    Headers:
        X-Actor-Id     acting user id (applicant or staff member)
        X-Actor-Role   "staff" grants staff operations
        X-Timeout-Ms   optional per-request statement timeout
    """
    timeout = request.headers.get("X-Timeout-Ms", type=int)
    return RequestContext(
        actor_id=request.headers.get("X-Actor-Id") or None,
        event_id=event_id,
        is_staff=(request.headers.get("X-Actor-Role", "").lower() == "staff"),
        timeout_ms=timeout or current_app.config.get("STATEMENT_TIMEOUT_MS"),
    )


def staff_required(ctx: RequestContext):
    """Return a 403 response tuple unless the caller is staff, else None."""
    if not ctx.is_staff:
        return jsonify({"error": "Staff role required", "code": "FORBIDDEN"}), 403
    return None


def body_datetime(data: dict, key: str):
    """Parse an optional ISO datetime from a JSON body (ValueError → 422 upstream)."""
    return parse_datetime(data.get(key))


def register_error_handlers(bp):
    """Map workflow errors to ``{"error", "code", "details"}`` JSON responses."""

    @bp.errorhandler(WorkflowError)
    def _handle_workflow_error(error: WorkflowError):
        if error.http_status >= 500:
            logger.error("Workflow error on %s: %s", request.endpoint, error)
        else:
            logger.info("Workflow error on %s: %s (%s)", request.endpoint, error.code, error)
        return jsonify(error.to_dict()), error.http_status

    @bp.errorhandler(ValueError)
    def _handle_bad_value(error: ValueError):
        return jsonify({"error": str(error), "code": "VALIDATION_FAILED", "details": {}}), 422
