"""
Tests: workflow configuration — form versions, steps, validation report.
"""

import pytest

from appflow.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from appflow.services import workflow_config
from appflow.services import step_state_machine as ssm
from appflow.services.context import RequestContext
from tests.conftest import ESSAY_FORM, OTHER_EVENT_ID, PROFILE_FORM


def _codes(issues):
    return [issue["code"] for issue in issues]


class TestFormVersions:
    def test_versions_are_numbered_per_form_key(self, staff_ctx):
        first = workflow_config.create_form_version(staff_ctx, PROFILE_FORM, form_key="profile")
        second = workflow_config.create_form_version(staff_ctx, PROFILE_FORM, form_key="profile")
        other = workflow_config.create_form_version(staff_ctx, ESSAY_FORM, form_key="essay")
        assert (first.version_number, second.version_number, other.version_number) == (1, 2, 1)

    @pytest.mark.parametrize("schema", [{}, {"sections": []}, "not a schema"])
    def test_schema_without_fields_is_rejected(self, staff_ctx, schema):
        with pytest.raises(ValidationError):
            workflow_config.create_form_version(staff_ctx, schema)

    def test_foreign_form_version_cannot_be_attached(self, staff_ctx, make_step):
        foreign_ctx = RequestContext(actor_id="staff-2", event_id=OTHER_EVENT_ID, is_staff=True)
        foreign_form = workflow_config.create_form_version(foreign_ctx, ESSAY_FORM).id
        with pytest.raises(NotFoundError):
            make_step("Essay", form_version_id=foreign_form)


class TestSteps:
    def test_steps_append_in_order(self, staff_ctx, make_step):
        first = make_step("Profile")
        second = make_step("Essay")
        assert [s.id for s in workflow_config.list_steps(staff_ctx)] == [first, second]
        assert [s.step_index for s in workflow_config.list_steps(staff_ctx)] == [0, 1]

    def test_duplicate_index_conflicts(self, make_step):
        make_step("Profile", step_index=0)
        with pytest.raises(ConflictError):
            make_step("Again", step_index=0)

    def test_invalid_choices_are_reported_together(self, make_step):
        with pytest.raises(ValidationError) as exc_info:
            make_step("Bad", unlock_policy="WHENEVER", category="OTHER", deadline_at="soon")
        assert set(exc_info.value.details) == {"unlock_policy", "category", "deadline_at"}

    def test_title_is_required(self, staff_ctx):
        with pytest.raises(ValidationError):
            workflow_config.add_step(staff_ctx, {"title": "  "})

    def test_update_before_use(self, staff_ctx, make_step):
        step_id = make_step("Profile")
        step = workflow_config.update_step(staff_ctx, step_id, {"review_required": True, "title": "About you"})
        assert step.review_required is True
        assert step.title == "About you"

    def test_step_is_frozen_once_referenced(self, staff_ctx, applicant_ctx, make_step):
        step_id = make_step("Profile")
        ssm.start_application(applicant_ctx, "applicant-1")
        with pytest.raises(InvalidTransitionError):
            workflow_config.update_step(staff_ctx, step_id, {"title": "Renamed"})

    def test_other_event_cannot_update_step(self, make_step):
        step_id = make_step("Profile")
        foreign_ctx = RequestContext(actor_id="staff-2", event_id=OTHER_EVENT_ID, is_staff=True)
        with pytest.raises(NotFoundError):
            workflow_config.update_step(foreign_ctx, step_id, {"title": "Mine now"})


class TestValidateWorkflow:
    def test_clean_workflow_is_valid(self, staff_ctx, two_step_workflow):
        report = workflow_config.validate_workflow(staff_ctx)
        assert report == {"valid": True, "errors": [], "warnings": []}

    def test_date_based_without_date(self, staff_ctx, make_form, make_step):
        make_step("Later", form_version_id=make_form(ESSAY_FORM), unlock_policy="DATE_BASED")
        report = workflow_config.validate_workflow(staff_ctx)
        assert report["valid"] is False
        assert _codes(report["errors"]) == ["MISSING_UNLOCK_DATE"]

    def test_approval_gate_needs_reviewed_predecessor(self, staff_ctx, make_form, make_step):
        form = make_form(ESSAY_FORM)
        make_step("Essay", form_version_id=form)
        make_step("Interview", form_version_id=form, unlock_policy="AFTER_PREV_APPROVED")
        assert _codes(workflow_config.validate_workflow(staff_ctx)["errors"]) == ["APPROVAL_GATE_NO_REVIEW"]

    def test_warnings_do_not_invalidate(self, staff_ctx, make_form, make_step):
        make_step("Welcome", category="INFO_ONLY")
        make_step("Profile")
        make_step("Confirm", form_version_id=make_form(ESSAY_FORM), unlock_policy="AFTER_DECISION_ACCEPTED",
                  step_index=5)
        report = workflow_config.validate_workflow(staff_ctx)
        assert report["valid"] is True
        assert _codes(report["warnings"]) == ["STEP_NO_FORM", "DECISION_STEP_WRONG_CATEGORY", "POSITION_GAP"]
