"""
Tests: submission version store — numbering, immutability, race handling.

The store-level race runs two real sessions against a file-backed SQLite
database; the state-machine race forces a stale maximum to check the
error reaches the submit caller with history untouched.
"""

import pytest
from sqlalchemy import create_engine, event, select, text
from sqlalchemy.orm import Session

from appflow.core.exceptions import VersionConflictError
from appflow.models import db as _db
from appflow.models.submission import ImmutableRecordError, SubmissionVersion
from appflow.models.workflow import Application, ApplicationStepState, WorkflowStep
from appflow.services import step_state_machine as ssm
from appflow.services import version_store
from appflow.services.helpers.transactions import atomic
from tests.conftest import EVENT_ID


@pytest.fixture()
def started(applicant_ctx, two_step_workflow):
    application = ssm.start_application(applicant_ctx, "applicant-1")
    return {"application_id": application.id, **two_step_workflow}


class TestAppend:
    def test_numbers_are_dense_and_one_based(self, applicant_ctx, started):
        app_id, step_id = started["application_id"], started["profile"]
        with atomic(applicant_ctx):
            v1 = version_store.append(app_id, step_id, {"a": 1}, None, "applicant-1")
            v2 = version_store.append(app_id, step_id, {"a": 2}, None, "applicant-1")
        assert (v1.version_number, v2.version_number) == (1, 2)
        assert [v.version_number for v in version_store.history(app_id, step_id)] == [1, 2]
        assert version_store.latest(app_id, step_id).id == v2.id
        assert version_store.by_version(app_id, step_id, 1).id == v1.id

    def test_snapshot_is_deep_copied(self, applicant_ctx, started):
        answers = {"topics": ["a"]}
        with atomic(applicant_ctx):
            version = version_store.append(started["application_id"], started["profile"], answers, None, None)
        answers["topics"].append("b")
        snap = version_store.snapshot(version)
        assert snap == {"topics": ["a"]}
        snap["topics"].append("c")
        assert version_store.snapshot(version) == {"topics": ["a"]}

    def test_compare_and_swap_mismatch(self, applicant_ctx, started):
        app_id, step_id = started["application_id"], started["profile"]
        with atomic(applicant_ctx):
            version_store.append(app_id, step_id, {}, None, None)
        with pytest.raises(VersionConflictError) as exc_info:
            with atomic(applicant_ctx):
                version_store.append(app_id, step_id, {}, None, None, expected_version=0)
        assert exc_info.value.retryable is True
        assert len(version_store.history(app_id, step_id)) == 1

    def test_two_sessions_racing_for_the_same_number(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}")
        _db.metadata.create_all(engine)
        winner, loser = Session(engine), Session(engine)
        try:
            with Session(engine) as setup:
                step = WorkflowStep(event_id=EVENT_ID, title="Profile", step_index=0)
                application = Application(event_id=EVENT_ID, applicant_id="applicant-1")
                setup.add_all([step, application])
                setup.commit()
                app_id, step_id = application.id, step.id

            # Both read max=0; the winner inserts and commits between the
            # loser's read and its flush.
            def _winner_commits_first(session, flush_context, instances):
                version_store.append(app_id, step_id, {"who": "winner"}, None, "applicant-2", session=winner)
                winner.commit()

            event.listen(loser, "before_flush", _winner_commits_first, once=True)
            with pytest.raises(VersionConflictError) as exc_info:
                version_store.append(app_id, step_id, {"who": "loser"}, None, "applicant-1", session=loser)
            loser.rollback()
            assert exc_info.value.retryable is True

            with Session(engine) as check:
                rows = check.execute(
                    select(SubmissionVersion.version_number, SubmissionVersion.answers_snapshot)
                    .where(SubmissionVersion.application_id == app_id)
                ).all()
            assert [(number, snap["who"]) for number, snap in rows] == [(1, "winner")]
        finally:
            winner.close()
            loser.close()
            engine.dispose()


class TestImmutability:
    def test_update_is_refused(self, applicant_ctx, started):
        with atomic(applicant_ctx):
            version = version_store.append(started["application_id"], started["profile"], {"a": 1}, None, None)
        version.answers_snapshot = {"a": 2}
        with pytest.raises(ImmutableRecordError):
            _db.session.flush()
        _db.session.rollback()
        assert version_store.snapshot(version_store.by_id(version.id)) == {"a": 1}

    def test_delete_is_refused(self, applicant_ctx, started):
        with atomic(applicant_ctx):
            version = version_store.append(started["application_id"], started["profile"], {}, None, None)
        _db.session.delete(version)
        with pytest.raises(ImmutableRecordError):
            _db.session.flush()
        _db.session.rollback()
        assert SubmissionVersion.query.count() == 1


class TestConcurrentSubmit:
    def test_second_submit_with_stale_view_gets_version_conflict(
        self, applicant_ctx, started, valid_profile, monkeypatch,
    ):
        app_id, step_id = started["application_id"], started["profile"]
        ssm.submit(applicant_ctx, app_id, step_id, valid_profile)

        # The loser read the step before the winner committed: still a draft,
        # and version 0 as the current maximum.
        _db.session.execute(
            text("UPDATE application_step_states SET status = 'UNLOCKED_DRAFT' "
                 "WHERE application_id = :a AND step_id = :s"),
            {"a": app_id, "s": step_id},
        )
        _db.session.commit()
        _db.session.expire_all()
        monkeypatch.setattr(version_store, "_max_version_number", lambda *_: 0)

        with pytest.raises(VersionConflictError):
            ssm.submit(applicant_ctx, app_id, step_id, {**valid_profile, "city": "Paris"})

        history = version_store.history(app_id, step_id)
        assert len(history) == 1
        assert history[0].answers_snapshot["city"] == "London"

    def test_stale_step_state_row_raises_version_conflict(self, staff_ctx, started):
        state = ApplicationStepState.query.filter_by(
            application_id=started["application_id"], step_id=started["essay"],
        ).one()
        # Another writer bumps the optimistic lock counter behind our back
        _db.session.execute(
            text("UPDATE application_step_states SET lock_version = lock_version + 1 WHERE id = :id"),
            {"id": state.id},
        )
        with pytest.raises(VersionConflictError):
            with atomic(staff_ctx):
                state.manual_unlock = True
