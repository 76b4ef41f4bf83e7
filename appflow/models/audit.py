"""
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for workflow events.
"""

import json
from datetime import UTC, datetime

from appflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "application", "step_state", "submission_version",
    "needs_info_request", "admin_patch", "review",
    "field_verification", "workflow_step", "form_version",
}

AUDIT_ACTIONS = {
    # Step lifecycle
    "step.unlock",
    "step.lock",
    "step.submit",
    "step.approve",
    "step.reject_final",
    "step.reject_resubmittable",
    "step.needs_revision",
    "step.reopen",
    "step.manual_unlock",
    "step.deadline_override",
    # Application
    "application.start",
    "application.decision_published",
    # Revision cycle
    "needs_info.open",
    "needs_info.resolve",
    "needs_info.cancel",
    "needs_info.expire",
    # Admin patches
    "patch.create",
    "patch.reapply",
    "patch.deactivate",
    # Verification
    "verification.set",
    # Reviews
    "review.record",
    # Configuration
    "create",
    "update",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every workflow event.

    One row per action.  ``diff_json`` carries the old→new status or the
    payload summary of the action.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_event", "event_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(64), nullable=True)
    application_id = db.Column(db.String(36), nullable=True, index=True)

    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="step_state | submission_version | admin_patch | …",
    )
    entity_id = db.Column(db.String(36), nullable=False)
    action = db.Column(
        db.String(60), nullable=False,
        comment="step.submit | patch.create | needs_info.open | …",
    )
    actor = db.Column(db.String(64), nullable=False, default="system")
    diff_json = db.Column(db.Text, default="{}")
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "application_id": self.application_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str | None = None,
    event_id: str | None = None,
    application_id: str | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")

    log = AuditLog(
        event_id=event_id,
        application_id=application_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
