"""
Event-scoped lookup helpers.

Every get-by-id in the services goes through these helpers instead of
``db.session.get``, so an id that exists but belongs to another event is
indistinguishable from a missing one: both raise NotFoundError (HTTP 404).

Usage:
    application = get_application(ctx, application_id)
    step = get_step(ctx, step_id)
    version = get_version(ctx, version_id)
"""

import logging

from sqlalchemy import select

from appflow.core.exceptions import NotFoundError
from appflow.models import db
from appflow.models.submission import AdminChangePatch, NeedsInfoRequest, SubmissionVersion
from appflow.models.workflow import Application, FormVersion, WorkflowStep

logger = logging.getLogger(__name__)


def get_scoped(model, pk: str, *, event_id: str):
    """Fetch a row of a model that carries ``event_id`` directly."""
    if not hasattr(model, "event_id"):
        raise ValueError(f"{model.__name__} has no event_id column")
    stmt = select(model).where(model.id == pk, model.event_id == event_id)
    obj = db.session.execute(stmt).scalar_one_or_none()
    if obj is None:
        logger.debug("Scoped lookup miss: %s id=%s event=%s", model.__name__, pk, event_id)
        raise NotFoundError(resource=model.__name__, resource_id=pk, event_id=event_id)
    return obj


def get_application(ctx, application_id: str) -> Application:
    return get_scoped(Application, application_id, event_id=ctx.event_id)


def get_step(ctx, step_id: str) -> WorkflowStep:
    return get_scoped(WorkflowStep, step_id, event_id=ctx.event_id)


def get_form_version(ctx, form_version_id: str) -> FormVersion:
    return get_scoped(FormVersion, form_version_id, event_id=ctx.event_id)


def _via_application(ctx, model, pk: str):
    stmt = (
        select(model)
        .join(Application, Application.id == model.application_id)
        .where(model.id == pk, Application.event_id == ctx.event_id)
    )
    obj = db.session.execute(stmt).scalar_one_or_none()
    if obj is None:
        raise NotFoundError(resource=model.__name__, resource_id=pk, event_id=ctx.event_id)
    return obj


def get_version(ctx, version_id: str) -> SubmissionVersion:
    return _via_application(ctx, SubmissionVersion, version_id)


def get_patch(ctx, patch_id: str) -> AdminChangePatch:
    return _via_application(ctx, AdminChangePatch, patch_id)


def get_needs_info_request(ctx, request_id: str) -> NeedsInfoRequest:
    return _via_application(ctx, NeedsInfoRequest, request_id)
