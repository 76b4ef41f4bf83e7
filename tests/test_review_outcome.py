"""
Tests: review outcome processing and file verification preconditions.
"""

import pytest

from appflow.core.exceptions import (
    IncompleteVerificationError,
    InvalidTransitionError,
    StaleVersionError,
    ValidationError,
)
from appflow.models import db
from appflow.models.workflow import WorkflowStep
from appflow.services import file_verification, review_outcome, version_store
from appflow.services import step_state_machine as ssm
from tests.conftest import ESSAY_FORM

DOCUMENTS_FORM = {"sections": [{"fields": [
    {"id": "name", "key": "name", "type": "text", "validation": {"required": True}},
    {"id": "passport", "key": "passport", "type": "file_upload", "validation": {"required": True}},
    {"id": "portfolio", "key": "portfolio", "type": "file_upload"},
]}]}

DOCUMENTS = {"name": "Ada", "passport": ["file-1", {"fileObjectId": "file-2"}], "portfolio": ["file-9"]}


@pytest.fixture()
def documents_version(applicant_ctx, make_form, make_step):
    step_id = make_step("Documents", form_version_id=make_form(DOCUMENTS_FORM, form_key="docs"),
                        review_required=True)
    app_id = ssm.start_application(applicant_ctx, "applicant-1").id
    version = ssm.submit(applicant_ctx, app_id, step_id, DOCUMENTS)
    return {"application_id": app_id, "step_id": step_id, "version_id": version.id}


def _verify(ctx, version_id, field_id, file_id, status="VERIFIED"):
    return file_verification.set_field_verification(ctx, version_id, field_id, file_id, status)


class TestApprove:
    def test_unverified_required_files_block_approval(self, staff_ctx, documents_version):
        with pytest.raises(IncompleteVerificationError) as exc_info:
            review_outcome.record_review(staff_ctx, documents_version["version_id"], "APPROVE")
        assert exc_info.value.details["unverified"] == ["passport:file-1", "passport:file-2"]
        state = ssm.get_state(documents_version["application_id"], documents_version["step_id"])
        assert state.status == "SUBMITTED"

    def test_approve_after_every_required_file_is_verified(self, staff_ctx, documents_version):
        version_id = documents_version["version_id"]
        _verify(staff_ctx, version_id, "passport", "file-1")
        _verify(staff_ctx, version_id, "passport", "file-2", status="ISSUE")
        with pytest.raises(IncompleteVerificationError):
            review_outcome.record_review(staff_ctx, version_id, "APPROVE")

        # upsert: same file, new status
        _verify(staff_ctx, version_id, "passport", "file-2")
        result = review_outcome.record_review(staff_ctx, version_id, "APPROVE", checklist_result={"id_ok": True})
        assert result["step_status"] == "APPROVED"
        assert result["checklist_result"] == {"id_ok": True}
        assert len(file_verification.list_verifications(staff_ctx, version_id)) == 2

    def test_optional_file_fields_are_not_required(self, staff_ctx, documents_version):
        missing = review_outcome.missing_verifications(
            *_version_and_step(documents_version),
        )
        assert all(not entry.startswith("portfolio") for entry in missing)

    def test_open_request_blocks_approval(self, staff_ctx, applicant_ctx, two_step_workflow, valid_profile):
        app_id = ssm.start_application(applicant_ctx, "applicant-1").id
        step_id = two_step_workflow["profile"]
        v1 = ssm.submit(applicant_ctx, app_id, step_id, valid_profile)
        review_outcome.record_review(staff_ctx, v1.id, "REQUEST_INFO", target_field_ids=["motivation"])

        # a request left OPEN while the step is back under review
        state = ssm.get_state(app_id, step_id)
        state.status = "SUBMITTED"
        db.session.commit()

        with pytest.raises(IncompleteVerificationError) as exc_info:
            review_outcome.record_review(staff_ctx, v1.id, "APPROVE")
        assert len(exc_info.value.details["open_request_ids"]) == 1

    def test_pluggable_verification_service(self, staff_ctx, documents_version):
        class TrustEverything:
            def is_verified(self, version_id, field_id, file_object_id):
                return True

        file_verification.set_verification_service(TrustEverything())
        result = review_outcome.record_review(staff_ctx, documents_version["version_id"], "APPROVE")
        assert result["step_status"] == "APPROVED"


def _version_and_step(documents_version):
    return (
        version_store.by_id(documents_version["version_id"]),
        db.session.get(WorkflowStep, documents_version["step_id"]),
    )


class TestOutcomes:
    def test_legacy_reject_follows_step_behavior(self, staff_ctx, applicant_ctx, make_form, make_step):
        step_id = make_step("Essay", form_version_id=make_form(ESSAY_FORM), reject_behavior="RESUBMIT_ALLOWED")
        app_id = ssm.start_application(applicant_ctx, "applicant-1").id
        version = ssm.submit(applicant_ctx, app_id, step_id, {"essay": "Draft"})

        result = review_outcome.record_review(staff_ctx, version.id, "REJECT")
        assert result["outcome"] == "REJECT_RESUBMITTABLE"
        assert result["step_status"] == "REJECTED_RESUBMITTABLE"

    @pytest.mark.parametrize("behavior,expected", [
        ("FINAL", "REJECT_FINAL"),
        ("RESUBMIT_ALLOWED", "REJECT_RESUBMITTABLE"),
    ])
    def test_resolve_outcome(self, behavior, expected):
        assert review_outcome.resolve_outcome("REJECT", behavior) == expected
        assert review_outcome.resolve_outcome("APPROVE", behavior) == "APPROVE"

    def test_unknown_outcome(self, staff_ctx, documents_version):
        with pytest.raises(ValidationError):
            review_outcome.record_review(staff_ctx, documents_version["version_id"], "MAYBE")

    def test_only_submitted_steps_are_reviewed(self, staff_ctx, documents_version):
        review_outcome.record_review(staff_ctx, documents_version["version_id"], "REJECT_FINAL")
        with pytest.raises(InvalidTransitionError):
            review_outcome.record_review(staff_ctx, documents_version["version_id"], "REJECT_FINAL")

    def test_reviewing_superseded_version_is_stale(
        self, staff_ctx, applicant_ctx, two_step_workflow, valid_profile,
    ):
        app_id = ssm.start_application(applicant_ctx, "applicant-1").id
        step_id = two_step_workflow["profile"]
        v1 = ssm.submit(applicant_ctx, app_id, step_id, valid_profile)
        review_outcome.record_review(staff_ctx, v1.id, "REQUEST_INFO", target_field_ids=["motivation"])
        ssm.submit(applicant_ctx, app_id, step_id, {**valid_profile, "motivation": "Something much longer"})

        with pytest.raises(StaleVersionError):
            review_outcome.record_review(staff_ctx, v1.id, "APPROVE")

    def test_internal_notes_hidden_from_applicant_listing(self, staff_ctx, documents_version):
        review_outcome.record_review(
            staff_ctx, documents_version["version_id"], "REJECT_RESUBMITTABLE",
            message_to_applicant="Please upload a clearer scan", notes_internal="blurry",
        )
        (staff_row,) = review_outcome.list_reviews(staff_ctx, documents_version["version_id"])
        (public_row,) = review_outcome.list_reviews(
            staff_ctx, documents_version["version_id"], include_internal=False,
        )
        assert staff_row["notes_internal"] == "blurry"
        assert "notes_internal" not in public_row
        assert public_row["message_to_applicant"] == "Please upload a clearer scan"


class TestVerificationInput:
    def test_bad_status(self, staff_ctx, documents_version):
        with pytest.raises(ValidationError):
            _verify(staff_ctx, documents_version["version_id"], "passport", "file-1", status="OK")

    def test_field_id_required(self, staff_ctx, documents_version):
        with pytest.raises(ValidationError):
            _verify(staff_ctx, documents_version["version_id"], "", "file-1")


CV_FORM = {"sections": [{"fields": [
    {"id": "f_has_cv", "key": "has_cv", "type": "select",
     "ui": {"options": [{"label": "Yes", "value": "yes"}, {"label": "No", "value": "no"}]}},
    {"id": "f_cv", "key": "cv", "type": "file_upload", "validation": {"required": True},
     "logic": {"showWhen": {"rules": [{"fieldKey": "f_has_cv", "operator": "eq", "value": "yes"}]}}},
]}]}


class TestRulesAuthoredOnFieldIds:
    @pytest.fixture()
    def cv_step(self, make_form, make_step):
        return make_step("CV", form_version_id=make_form(CV_FORM, form_key="cv"), review_required=True)

    def test_revealed_file_is_required_on_submit(self, applicant_ctx, cv_step):
        app_id = ssm.start_application(applicant_ctx, "applicant-1").id
        with pytest.raises(ValidationError) as exc_info:
            ssm.submit(applicant_ctx, app_id, cv_step, {"has_cv": "yes"})
        assert exc_info.value.details == {"cv": "Required"}

    def test_revealed_file_must_be_verified_before_approval(self, staff_ctx, applicant_ctx, cv_step):
        app_id = ssm.start_application(applicant_ctx, "applicant-1").id
        version = ssm.submit(applicant_ctx, app_id, cv_step, {"has_cv": "yes", "cv": ["file-7"]})

        with pytest.raises(IncompleteVerificationError) as exc_info:
            review_outcome.record_review(staff_ctx, version.id, "APPROVE")
        assert exc_info.value.details["unverified"] == ["f_cv:file-7"]

        _verify(staff_ctx, version.id, "f_cv", "file-7")
        assert review_outcome.record_review(staff_ctx, version.id, "APPROVE")["step_status"] == "APPROVED"

    def test_hidden_file_needs_no_verification(self, staff_ctx, applicant_ctx, cv_step):
        app_id = ssm.start_application(applicant_ctx, "applicant-1").id
        version = ssm.submit(applicant_ctx, app_id, cv_step, {"has_cv": "no"})
        assert review_outcome.record_review(staff_ctx, version.id, "APPROVE")["step_status"] == "APPROVED"


class TestRequestInfoTargets:
    @pytest.mark.parametrize("targets", [5, "motivation", ["motivation", 7], {"motivation": True}])
    def test_targets_must_be_a_list_of_strings(self, staff_ctx, documents_version, targets):
        with pytest.raises(ValidationError) as exc_info:
            review_outcome.record_review(
                staff_ctx, documents_version["version_id"], "REQUEST_INFO", target_field_ids=targets,
            )
        assert set(exc_info.value.details) == {"target_field_ids"}
        state = ssm.get_state(documents_version["application_id"], documents_version["step_id"])
        assert state.status == "SUBMITTED"

    def test_no_targets_opens_whole_step(self, staff_ctx, documents_version):
        result = review_outcome.record_review(
            staff_ctx, documents_version["version_id"], "REQUEST_INFO", target_field_ids=None,
        )
        assert result["step_status"] == "NEEDS_REVISION"
