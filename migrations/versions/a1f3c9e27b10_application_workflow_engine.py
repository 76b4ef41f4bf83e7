"""application_workflow_engine

Creates the workflow engine tables:
  - form_versions            — immutable published form schemas
  - workflow_steps           — ordered step configuration per event
  - applications             — one applicant per event, decision signal
  - application_step_states  — per (application, step) status, optimistic lock
  - step_drafts              — mutable working answers
  - submission_versions      — append-only answer snapshots
  - needs_info_requests      — targeted revision requests
  - admin_change_patches     — non-destructive staff corrections
  - review_records           — append-only reviewer decisions
  - field_verifications      — per-file verification status
  - audit_logs               — lifecycle audit trail

Tables created conditionally (IF NOT EXISTS semantics) so the migration can
run against databases that already received them via db.create_all().

Revision ID: a1f3c9e27b10
Revises:
Create Date: 2026-10-19 09:12:44.310582
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1f3c9e27b10'
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return sa.Column("id", sa.String(length=36), nullable=False)


def _ts(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── FormVersion ───────────────────────────────────────────────────────
    if "form_versions" not in existing:
        op.create_table(
            "form_versions",
            _id(),
            sa.Column("event_id", sa.String(length=64), nullable=False),
            sa.Column("form_key", sa.String(length=100), nullable=False, server_default="default"),
            sa.Column("version_number", sa.Integer(), nullable=False),
            sa.Column("schema", sa.JSON(), nullable=False, comment="{sections: [{id, title, fields}]}"),
            _ts("published_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("event_id", "form_key", "version_number", name="uq_form_version_number"),
        )
        op.create_index("ix_form_versions_event_id", "form_versions", ["event_id"])

    # ── WorkflowStep ──────────────────────────────────────────────────────
    if "workflow_steps" not in existing:
        op.create_table(
            "workflow_steps",
            _id(),
            sa.Column("event_id", sa.String(length=64), nullable=False),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("step_index", sa.Integer(), nullable=False, comment="0-based position within the event"),
            sa.Column(
                "category", sa.String(length=20), nullable=False, server_default="APPLICATION",
                comment="APPLICATION | CONFIRMATION | INFO_ONLY",
            ),
            sa.Column(
                "unlock_policy", sa.String(length=40), nullable=False,
                server_default="AUTO_AFTER_PREV_SUBMITTED",
            ),
            _ts("unlock_at", nullable=True),
            sa.Column("review_required", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("strict_gating", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column(
                "reject_behavior", sa.String(length=20), nullable=False,
                server_default="RESUBMIT_ALLOWED", comment="FINAL | RESUBMIT_ALLOWED",
            ),
            sa.Column("form_version_id", sa.String(length=36), nullable=True),
            _ts("deadline_at", nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["form_version_id"], ["form_versions.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("event_id", "step_index", name="uq_workflow_step_index"),
        )
        op.create_index("ix_workflow_steps_event_id", "workflow_steps", ["event_id"])

    # ── Application ───────────────────────────────────────────────────────
    if "applications" not in existing:
        op.create_table(
            "applications",
            _id(),
            sa.Column("event_id", sa.String(length=64), nullable=False),
            sa.Column("applicant_id", sa.String(length=64), nullable=False),
            sa.Column(
                "decision_status", sa.String(length=20), nullable=False, server_default="NONE",
                comment="NONE | ACCEPTED | REJECTED | WAITLISTED",
            ),
            _ts("decision_published_at", nullable=True),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("event_id", "applicant_id", name="uq_application_event_applicant"),
        )
        op.create_index("ix_applications_event_id", "applications", ["event_id"])
        op.create_index("ix_applications_applicant_id", "applications", ["applicant_id"])

    # ── ApplicationStepState ──────────────────────────────────────────────
    if "application_step_states" not in existing:
        op.create_table(
            "application_step_states",
            _id(),
            sa.Column("application_id", sa.String(length=36), nullable=False),
            sa.Column("step_id", sa.String(length=36), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="LOCKED"),
            sa.Column("manual_unlock", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("deadline_override", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("current_draft_id", sa.String(length=36), nullable=True),
            sa.Column("latest_submission_version_id", sa.String(length=36), nullable=True),
            sa.Column("revision_cycle_count", sa.Integer(), nullable=False, server_default="0"),
            _ts("unlocked_at", nullable=True),
            _ts("last_activity_at", nullable=True),
            sa.Column("lock_version", sa.Integer(), nullable=False, comment="Optimistic locking counter"),
            sa.ForeignKeyConstraint(["application_id"], ["applications.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["step_id"], ["workflow_steps.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("application_id", "step_id", name="uq_step_state_application_step"),
        )
        op.create_index("ix_application_step_states_application_id", "application_step_states", ["application_id"])
        op.create_index("ix_application_step_states_step_id", "application_step_states", ["step_id"])
        op.create_index("idx_step_state_status", "application_step_states", ["status"])

    # ── StepDraft ─────────────────────────────────────────────────────────
    if "step_drafts" not in existing:
        op.create_table(
            "step_drafts",
            _id(),
            sa.Column("application_id", sa.String(length=36), nullable=False),
            sa.Column("step_id", sa.String(length=36), nullable=False),
            sa.Column("form_version_id", sa.String(length=36), nullable=True),
            sa.Column("answers", sa.JSON(), nullable=False),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["application_id"], ["applications.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["step_id"], ["workflow_steps.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("application_id", "step_id", name="uq_step_draft_application_step"),
        )
        op.create_index("ix_step_drafts_application_id", "step_drafts", ["application_id"])

    # ── SubmissionVersion ─────────────────────────────────────────────────
    if "submission_versions" not in existing:
        op.create_table(
            "submission_versions",
            _id(),
            sa.Column("application_id", sa.String(length=36), nullable=False),
            sa.Column("step_id", sa.String(length=36), nullable=False),
            sa.Column("version_number", sa.Integer(), nullable=False),
            sa.Column("answers_snapshot", sa.JSON(), nullable=False),
            sa.Column("form_version_id", sa.String(length=36), nullable=True),
            _ts("submitted_at"),
            sa.Column("submitted_by", sa.String(length=64), nullable=True),
            sa.ForeignKeyConstraint(["application_id"], ["applications.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["step_id"], ["workflow_steps.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "application_id", "step_id", "version_number", name="uq_submission_version_number",
            ),
        )
        op.create_index("idx_submission_app_step", "submission_versions", ["application_id", "step_id"])

    # ── NeedsInfoRequest ──────────────────────────────────────────────────
    if "needs_info_requests" not in existing:
        op.create_table(
            "needs_info_requests",
            _id(),
            sa.Column("application_id", sa.String(length=36), nullable=False),
            sa.Column("step_id", sa.String(length=36), nullable=False),
            sa.Column(
                "submission_version_id", sa.String(length=36), nullable=True,
                comment="Version the request was raised against",
            ),
            sa.Column("target_field_ids", sa.JSON(), nullable=False),
            sa.Column("message", sa.Text(), nullable=False, server_default=""),
            _ts("deadline_at", nullable=True),
            sa.Column(
                "status", sa.String(length=20), nullable=False, server_default="OPEN",
                comment="OPEN | RESOLVED | EXPIRED | CANCELED",
            ),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            _ts("created_at"),
            _ts("resolved_at", nullable=True),
            sa.Column("resolved_by_version_id", sa.String(length=36), nullable=True),
            sa.ForeignKeyConstraint(["application_id"], ["applications.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["step_id"], ["workflow_steps.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["submission_version_id"], ["submission_versions.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "idx_needs_info_app_step_status", "needs_info_requests",
            ["application_id", "step_id", "status"],
        )

    # ── AdminChangePatch ──────────────────────────────────────────────────
    if "admin_change_patches" not in existing:
        op.create_table(
            "admin_change_patches",
            _id(),
            sa.Column("application_id", sa.String(length=36), nullable=False),
            sa.Column("step_id", sa.String(length=36), nullable=False),
            sa.Column("submission_version_id", sa.String(length=36), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False, comment="Creation order within the anchor version"),
            sa.Column("ops", sa.JSON(), nullable=False),
            sa.Column("reason", sa.Text(), nullable=False),
            sa.Column(
                "visibility", sa.String(length=30), nullable=False, server_default="INTERNAL_ONLY",
                comment="INTERNAL_ONLY | VISIBLE_TO_APPLICANT",
            ),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("reapplied_from_id", sa.String(length=36), nullable=True),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["application_id"], ["applications.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["submission_version_id"], ["submission_versions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("submission_version_id", "sequence", name="uq_patch_version_sequence"),
        )
        op.create_index("ix_admin_change_patches_application_id", "admin_change_patches", ["application_id"])
        op.create_index(
            "ix_admin_change_patches_submission_version_id", "admin_change_patches", ["submission_version_id"],
        )

    # ── ReviewRecord ──────────────────────────────────────────────────────
    if "review_records" not in existing:
        op.create_table(
            "review_records",
            _id(),
            sa.Column("submission_version_id", sa.String(length=36), nullable=False),
            sa.Column("reviewer_id", sa.String(length=64), nullable=True),
            sa.Column("outcome", sa.String(length=30), nullable=False),
            sa.Column("checklist_result", sa.JSON(), nullable=False),
            sa.Column("message_to_applicant", sa.Text(), nullable=True),
            sa.Column("notes_internal", sa.Text(), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["submission_version_id"], ["submission_versions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_review_records_submission_version_id", "review_records", ["submission_version_id"])

    # ── FieldVerification ─────────────────────────────────────────────────
    if "field_verifications" not in existing:
        op.create_table(
            "field_verifications",
            _id(),
            sa.Column("submission_version_id", sa.String(length=36), nullable=False),
            sa.Column("field_id", sa.String(length=100), nullable=False),
            sa.Column("file_object_id", sa.String(length=100), nullable=False, server_default=""),
            sa.Column(
                "status", sa.String(length=20), nullable=False, server_default="PENDING",
                comment="PENDING | VERIFIED | ISSUE | REJECTED",
            ),
            sa.Column("reason_code", sa.String(length=50), nullable=True),
            sa.Column("notes_internal", sa.Text(), nullable=True),
            sa.Column("notes_applicant", sa.Text(), nullable=True),
            sa.Column("set_by", sa.String(length=64), nullable=True),
            _ts("set_at"),
            sa.ForeignKeyConstraint(["submission_version_id"], ["submission_versions.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "submission_version_id", "field_id", "file_object_id", name="uq_field_verification",
            ),
        )
        op.create_index(
            "ix_field_verifications_submission_version_id", "field_verifications", ["submission_version_id"],
        )

    # ── AuditLog ──────────────────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("event_id", sa.String(length=64), nullable=True),
            sa.Column("application_id", sa.String(length=36), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=64), nullable=False, server_default="system"),
            sa.Column("diff_json", sa.Text(), nullable=True),
            _ts("timestamp"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_event", "audit_logs", ["event_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])
        op.create_index("ix_audit_logs_application_id", "audit_logs", ["application_id"])


def downgrade():
    for table in (
        "audit_logs",
        "field_verifications",
        "review_records",
        "admin_change_patches",
        "needs_info_requests",
        "submission_versions",
        "step_drafts",
        "application_step_states",
        "applications",
        "workflow_steps",
        "form_versions",
    ):
        op.drop_table(table)
