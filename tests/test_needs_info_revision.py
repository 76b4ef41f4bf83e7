"""
Tests: targeted revision requests (needs-info) and the edit restrictions
they place on resubmission.
"""

from datetime import datetime, timedelta, timezone

import pytest

from appflow.core.exceptions import InvalidTransitionError, ValidationError
from appflow.services import needs_info, review_outcome, step_views, version_store
from appflow.services import step_state_machine as ssm

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

BETTER_MOTIVATION = "Engines are the future of computation."


def _show_when(key, operator="exists", value=None):
    rule = {"fieldKey": key, "operator": operator}
    if value is not None:
        rule["value"] = value
    return {"logic": {"showWhen": {"rules": [rule]}}}


HISTORY_FORM = {"sections": [{"fields": [
    {"id": "f_participated", "key": "participated", "type": "text"},
    {"id": "f_year", "key": "participation_year", "type": "text",
     **_show_when("participated", "eq", "yes")},
    {"id": "f_details", "key": "details", "type": "textarea", **_show_when("participation_year")},
    {"id": "f_motivation", "key": "motivation", "type": "textarea", "validation": {"required": True}},
]}]}


@pytest.fixture()
def submitted_profile(applicant_ctx, two_step_workflow, valid_profile):
    """Application whose profile step has version 1 SUBMITTED."""
    app_id = ssm.start_application(applicant_ctx, "applicant-1").id
    version = ssm.submit(applicant_ctx, app_id, two_step_workflow["profile"], valid_profile, now=NOW)
    return {"application_id": app_id, "version_id": version.id, **two_step_workflow}


def _request_info(staff_ctx, version_id, targets, **kwargs):
    return review_outcome.record_review(staff_ctx, version_id, "REQUEST_INFO", target_field_ids=targets, **kwargs)


def _view_for(ctx, app_id, step_id):
    return next(row for row in step_views.step_state_view(ctx, app_id) if row["step_id"] == step_id)


class TestTargetedRevision:
    def test_only_targeted_field_is_editable(self, staff_ctx, applicant_ctx, submitted_profile):
        _request_info(staff_ctx, submitted_profile["version_id"], ["motivation"])
        row = _view_for(applicant_ctx, submitted_profile["application_id"], submitted_profile["profile"])
        assert row["status"] == "NEEDS_REVISION"
        assert row["editable_field_ids"] == ["motivation"]
        assert row["revision_cycle_count"] == 1

    def test_resubmission_creates_next_version_and_resolves_request(
        self, staff_ctx, applicant_ctx, submitted_profile, valid_profile,
    ):
        app_id, step_id = submitted_profile["application_id"], submitted_profile["profile"]
        _request_info(staff_ctx, submitted_profile["version_id"], ["motivation"])

        v2 = ssm.submit(applicant_ctx, app_id, step_id, {**valid_profile, "motivation": BETTER_MOTIVATION})

        assert v2.version_number == 2
        assert ssm.get_state(app_id, step_id).status == "SUBMITTED"
        (request,) = needs_info.list_requests(staff_ctx, app_id, step_id)
        assert request["status"] == "RESOLVED"
        assert request["resolved_by_version_id"] == v2.id
        # the first snapshot is untouched
        assert version_store.by_version(app_id, step_id, 1).answers_snapshot == valid_profile

    def test_changing_untargeted_field_is_rejected(
        self, staff_ctx, applicant_ctx, submitted_profile, valid_profile,
    ):
        app_id, step_id = submitted_profile["application_id"], submitted_profile["profile"]
        _request_info(staff_ctx, submitted_profile["version_id"], ["motivation"])

        with pytest.raises(ValidationError) as exc_info:
            ssm.submit(applicant_ctx, app_id, step_id,
                       {**valid_profile, "motivation": BETTER_MOTIVATION, "city": "Paris"})
        assert set(exc_info.value.details) == {"city"}
        assert len(version_store.history(app_id, step_id)) == 1
        assert ssm.get_state(app_id, step_id).status == "NEEDS_REVISION"

    def test_unknown_target_is_rejected_without_side_effects(self, staff_ctx, submitted_profile):
        with pytest.raises(ValidationError) as exc_info:
            _request_info(staff_ctx, submitted_profile["version_id"], ["motivation", "shoe_size"])
        assert "shoe_size" in exc_info.value.details
        state = ssm.get_state(submitted_profile["application_id"], submitted_profile["profile"])
        assert state.status == "SUBMITTED"
        assert needs_info.list_requests(staff_ctx, submitted_profile["application_id"]) == []

    def test_request_without_targets_opens_whole_step(
        self, staff_ctx, applicant_ctx, submitted_profile, valid_profile,
    ):
        app_id, step_id = submitted_profile["application_id"], submitted_profile["profile"]
        _request_info(staff_ctx, submitted_profile["version_id"], [])
        row = _view_for(applicant_ctx, app_id, step_id)
        assert row["editable_field_ids"] == ["full_name", "motivation", "city"]
        ssm.submit(applicant_ctx, app_id, step_id, {**valid_profile, "city": "Paris"})

    def test_revision_deadline_is_exposed_in_view(self, staff_ctx, applicant_ctx, submitted_profile):
        deadline = NOW + timedelta(days=3)
        _request_info(staff_ctx, submitted_profile["version_id"], ["motivation"], deadline_at=deadline, now=NOW)
        row = _view_for(applicant_ctx, submitted_profile["application_id"], submitted_profile["profile"])
        assert row["deadline_at"].startswith("2026-03-04T12:00:00")


class TestDependentFields:
    @pytest.fixture()
    def history_step(self, applicant_ctx, make_form, make_step):
        step_id = make_step("History", form_version_id=make_form(HISTORY_FORM, form_key="history"))
        app_id = ssm.start_application(applicant_ctx, "applicant-1").id
        version = ssm.submit(applicant_ctx, app_id, step_id, {"participated": "no", "motivation": "Curiosity"})
        return app_id, step_id, version.id

    def test_targeting_a_controller_opens_its_dependents(self, staff_ctx, applicant_ctx, history_step):
        app_id, step_id, version_id = history_step
        _request_info(staff_ctx, version_id, ["participated"])

        row = _view_for(applicant_ctx, app_id, step_id)
        assert row["editable_field_ids"] == ["f_details", "f_participated", "f_year"]
        assert sorted(row["editable_field_keys"]) == ["details", "participated", "participation_year"]

        v2 = ssm.submit(applicant_ctx, app_id, step_id, {
            "participated": "yes", "participation_year": "2024",
            "details": "Built a small engine", "motivation": "Curiosity",
        })
        assert v2.version_number == 2

    def test_unrelated_field_stays_closed(self, staff_ctx, applicant_ctx, history_step):
        app_id, step_id, version_id = history_step
        _request_info(staff_ctx, version_id, ["participated"])
        with pytest.raises(ValidationError) as exc_info:
            ssm.submit(applicant_ctx, app_id, step_id, {"participated": "yes", "motivation": "Fame"})
        assert set(exc_info.value.details) == {"motivation"}


class TestRequestLifecycle:
    def test_cancel_reopens_whole_step(self, staff_ctx, applicant_ctx, submitted_profile, valid_profile):
        app_id, step_id = submitted_profile["application_id"], submitted_profile["profile"]
        _request_info(staff_ctx, submitted_profile["version_id"], ["motivation"])
        (request,) = needs_info.list_requests(staff_ctx, app_id)

        canceled = needs_info.cancel_request(staff_ctx, request["id"])
        assert canceled["status"] == "CANCELED"
        with pytest.raises(InvalidTransitionError):
            needs_info.cancel_request(staff_ctx, request["id"])

        # no OPEN request left: any field may change
        ssm.submit(applicant_ctx, app_id, step_id, {**valid_profile, "city": "Paris"})

    def test_expire_only_touches_overdue_requests(self, staff_ctx, submitted_profile):
        app_id = submitted_profile["application_id"]
        _request_info(staff_ctx, submitted_profile["version_id"], ["motivation"],
                      deadline_at=NOW + timedelta(days=1), now=NOW)

        assert needs_info.expire_overdue(staff_ctx, app_id, now=NOW) == []
        expired = needs_info.expire_overdue(staff_ctx, app_id, now=NOW + timedelta(days=2))
        assert [r["status"] for r in expired] == ["EXPIRED"]
        assert needs_info.open_requests(app_id, submitted_profile["profile"]) == []

    def test_each_request_increments_revision_cycle(
        self, staff_ctx, applicant_ctx, submitted_profile, valid_profile,
    ):
        app_id, step_id = submitted_profile["application_id"], submitted_profile["profile"]
        _request_info(staff_ctx, submitted_profile["version_id"], ["motivation"])
        v2 = ssm.submit(applicant_ctx, app_id, step_id, {**valid_profile, "motivation": BETTER_MOTIVATION})
        _request_info(staff_ctx, v2.id, ["city"])
        assert ssm.get_state(app_id, step_id).revision_cycle_count == 2
