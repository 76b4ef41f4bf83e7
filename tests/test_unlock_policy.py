"""
Tests: unlock policy evaluator (pure functions, no database).
"""

from datetime import datetime, timedelta, timezone

import pytest

from appflow.services.unlock_policy import evaluate, gate_satisfied

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestEvaluate:
    def test_first_step_always_unlocks(self):
        for policy in ("AUTO_AFTER_PREV_SUBMITTED", "AFTER_PREV_APPROVED", "ADMIN_MANUAL"):
            assert evaluate(policy, None, "NONE", False, NOW, is_first=True) is True

    @pytest.mark.parametrize("prior,expected", [
        ("LOCKED", False),
        ("UNLOCKED_DRAFT", False),
        ("SUBMITTED", True),
        ("APPROVED", True),
        ("NEEDS_REVISION", True),
        ("REJECTED_RESUBMITTABLE", True),
        ("REJECTED_FINAL", False),
    ])
    def test_auto_after_prev_submitted(self, prior, expected):
        assert evaluate("AUTO_AFTER_PREV_SUBMITTED", prior, "NONE", False, NOW) is expected

    def test_after_prev_approved_requires_approval(self):
        assert evaluate("AFTER_PREV_APPROVED", "SUBMITTED", "NONE", False, NOW) is False
        assert evaluate("AFTER_PREV_APPROVED", "APPROVED", "NONE", False, NOW) is True

    def test_date_based(self):
        unlock_at = NOW + timedelta(hours=1)
        assert evaluate("DATE_BASED", "SUBMITTED", "NONE", False, NOW, unlock_at=unlock_at) is False
        assert evaluate("DATE_BASED", "SUBMITTED", "NONE", False, unlock_at, unlock_at=unlock_at) is True

    def test_date_based_without_date_never_unlocks(self):
        assert evaluate("DATE_BASED", "APPROVED", "NONE", False, NOW) is False

    def test_date_based_accepts_naive_stored_dates(self):
        naive = datetime(2026, 3, 1, 11, 0)
        assert evaluate("DATE_BASED", None, "NONE", False, NOW, unlock_at=naive) is True

    def test_admin_manual_follows_flag(self):
        assert evaluate("ADMIN_MANUAL", "APPROVED", "NONE", False, NOW) is False
        assert evaluate("ADMIN_MANUAL", "LOCKED", "NONE", True, NOW) is True

    def test_after_decision_accepted_needs_publication(self):
        assert evaluate("AFTER_DECISION_ACCEPTED", "APPROVED", "ACCEPTED", False, NOW) is True
        assert evaluate("AFTER_DECISION_ACCEPTED", "APPROVED", "ACCEPTED", False, NOW,
                        decision_published=False) is False
        assert evaluate("AFTER_DECISION_ACCEPTED", "APPROVED", "WAITLISTED", False, NOW) is False

    def test_unknown_policy_raises(self):
        with pytest.raises(ValueError):
            evaluate("WHENEVER", "APPROVED", "NONE", False, NOW)


class TestGate:
    @pytest.mark.parametrize("prior,expected", [
        ("SUBMITTED", True),
        ("APPROVED", True),
        ("NEEDS_REVISION", False),
        ("REJECTED_RESUBMITTABLE", False),
        ("REJECTED_FINAL", False),
        ("UNLOCKED_DRAFT", False),
        (None, False),
    ])
    def test_gate_satisfied(self, prior, expected):
        assert gate_satisfied(prior) is expected
