"""
Shared pytest fixtures for the application workflow engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - staff_ctx / applicant_ctx: explicit request contexts for EVENT_ID
    - make_form / make_step: workflow configuration factories
    - two_step_workflow: application step → essay step, both AUTO_AFTER_PREV_SUBMITTED
"""

import pytest

from appflow import create_app
from appflow.models import db as _db
from appflow.services import workflow_config
from appflow.services.context import RequestContext
from appflow.services.field_dependency import invalidate_graph_cache
from appflow.services.file_verification import FileVerificationService, set_verification_service
from appflow.services.form_schema import FieldSchemaProvider, set_field_schema_provider

EVENT_ID = "evt-spring"
OTHER_EVENT_ID = "evt-autumn"

PROFILE_FORM = {
    "sections": [{
        "id": "profile",
        "title": "About you",
        "fields": [
            {"id": "full_name", "key": "full_name", "type": "text", "label": "Full name",
             "validation": {"required": True}},
            {"id": "motivation", "key": "motivation", "type": "textarea", "label": "Motivation",
             "validation": {"required": True, "min": 10}},
            {"id": "city", "key": "city", "type": "text", "label": "City"},
        ],
    }],
}

ESSAY_FORM = {
    "sections": [{
        "id": "essay",
        "title": "Essay",
        "fields": [
            {"id": "essay", "key": "essay", "type": "textarea", "label": "Essay",
             "validation": {"required": True}},
        ],
    }],
}


def _reset_providers():
    set_field_schema_provider(FieldSchemaProvider())
    set_verification_service(FileVerificationService())
    invalidate_graph_cache()


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # Form version ids are random, but parsed schemas and graphs are
        # cached module-wide; start every test from empty caches.
        _reset_providers()
        yield
        _reset_providers()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Contexts ─────────────────────────────────────────────────────────────


@pytest.fixture()
def staff_ctx():
    return RequestContext(actor_id="staff-1", event_id=EVENT_ID, is_staff=True)


@pytest.fixture()
def applicant_ctx():
    return RequestContext(actor_id="applicant-1", event_id=EVENT_ID)


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def make_form(staff_ctx):
    """Factory: publish a form version for EVENT_ID and return its id."""
    def _make(schema, form_key="default"):
        return workflow_config.create_form_version(staff_ctx, schema, form_key=form_key).id
    return _make


@pytest.fixture()
def make_step(staff_ctx):
    """Factory: append a step to EVENT_ID's workflow and return its id."""
    def _make(title, **data):
        data["title"] = title
        return workflow_config.add_step(staff_ctx, data).id
    return _make


@pytest.fixture()
def two_step_workflow(make_form, make_step):
    """Profile step (index 0) and essay step (index 1), both auto-unlocking."""
    profile_form = make_form(PROFILE_FORM, form_key="profile")
    essay_form = make_form(ESSAY_FORM, form_key="essay")
    profile = make_step("Profile", form_version_id=profile_form, review_required=True)
    essay = make_step("Essay", form_version_id=essay_form, unlock_policy="AUTO_AFTER_PREV_SUBMITTED")
    return {"profile": profile, "essay": essay, "profile_form": profile_form, "essay_form": essay_form}


@pytest.fixture()
def valid_profile():
    return {"full_name": "Ada Lovelace", "motivation": "I want to build engines.", "city": "London"}
