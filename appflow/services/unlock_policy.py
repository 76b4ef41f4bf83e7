"""
Unlock policy evaluator (pure functions, no database access).

``evaluate`` answers "may this step be open right now?" from the prior
step's status, the application's decision signal, the staff override flag
and the clock.  ``gate_satisfied`` answers the separate strict-gating
question "is the prerequisite in a state that lets later steps proceed?".
"""

from datetime import datetime

from appflow.utils.helpers import as_utc

# Prior statuses that count as "submitted" for AUTO_AFTER_PREV_SUBMITTED
SUBMITTED_LIKE = frozenset({"SUBMITTED", "APPROVED", "NEEDS_REVISION", "REJECTED_RESUBMITTABLE"})

# Prior statuses that satisfy a strict-gating step
GATE_SATISFIED = frozenset({"SUBMITTED", "APPROVED"})


def evaluate(
    policy: str,
    prior_status: str | None,
    decision_status: str | None,
    manual_override: bool,
    now: datetime,
    unlock_at: datetime | None = None,
    decision_published: bool = True,
    is_first: bool = False,
) -> bool:
    """Return True when the step may be unlocked.

    The first step of a workflow is always unlockable.

    Raises:
        ValueError: for an unknown policy.
    """
    if is_first:
        return True
    if policy == "AUTO_AFTER_PREV_SUBMITTED":
        return prior_status in SUBMITTED_LIKE
    if policy == "AFTER_PREV_APPROVED":
        return prior_status == "APPROVED"
    if policy == "DATE_BASED":
        return unlock_at is not None and as_utc(now) >= as_utc(unlock_at)
    if policy == "ADMIN_MANUAL":
        return bool(manual_override)
    if policy == "AFTER_DECISION_ACCEPTED":
        return decision_status == "ACCEPTED" and decision_published
    raise ValueError(f"Unknown unlock policy: {policy}")


def gate_satisfied(prior_status: str | None) -> bool:
    return prior_status in GATE_SATISFIED
