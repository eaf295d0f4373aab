"""Approval engine – organization directory, documents, chains, templates, audit and ledger tables.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _existing_tables():
    return set(sa.inspect(op.get_bind()).get_table_names())


def upgrade():
    # db.create_all() may already have built the schema on first boot
    existing = _existing_tables()

    # ── Organization directory ──
    if "authorizations" not in existing:
        op.create_table(
            "authorizations",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("employee_code", sa.String(30), nullable=False),
            sa.Column("employee_name", sa.String(150), nullable=False),
            sa.Column("email", sa.String(200), nullable=True),
            sa.Column("gender", sa.String(10), nullable=True),
            sa.Column("role_name", sa.String(50), nullable=False, server_default="user"),
            sa.Column("department_id", sa.Integer, nullable=True),
            sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        op.create_index("ix_authorizations_employee_code", "authorizations", ["employee_code"], unique=True)

    if "sections" not in existing:
        op.create_table(
            "sections",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("code", sa.String(30), nullable=True),
            sa.Column("name", sa.String(150), nullable=False),
            sa.Column("department_id", sa.Integer, nullable=True, index=True),
            sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        )

    if "lines" not in existing:
        op.create_table(
            "lines",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("code", sa.String(30), nullable=False),
            sa.Column("name", sa.String(150), nullable=True),
            sa.Column("manufacturing_section_id", sa.Integer,
                      sa.ForeignKey("sections.id", ondelete="SET NULL"), nullable=True),
            sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        )
        op.create_index("ix_lines_code", "lines", ["code"], unique=True)

    for table in ("section_heads", "department_heads"):
        if table in existing:
            continue
        op.create_table(
            table,
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("section_id", sa.Integer, sa.ForeignKey("sections.id", ondelete="CASCADE"),
                      nullable=False, index=True),
            sa.Column("authorization_id", sa.Integer, sa.ForeignKey("authorizations.id"), nullable=True),
            sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )

    # ── Proposed changes ──
    if "proposed_changes" not in existing:
        op.create_table(
            "proposed_changes",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("project_name", sa.String(255), nullable=False),
            sa.Column("line_code", sa.String(30), nullable=False, index=True),
            sa.Column("section_code", sa.String(30), nullable=True),
            sa.Column("department_id", sa.Integer, nullable=True, index=True),
            sa.Column("section_department_id", sa.Integer, nullable=True, index=True),
            sa.Column("plant_id", sa.Integer, nullable=True, index=True),
            sa.Column("change_type", sa.String(100), nullable=True),
            sa.Column("description", sa.Text, server_default=""),
            sa.Column("reason", sa.Text, server_default=""),
            sa.Column("cost", sa.String(100), nullable=True),
            sa.Column("planning_start", sa.Date, nullable=True),
            sa.Column("planning_end", sa.Date, nullable=True),
            sa.Column("need_engineering_approval", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("need_production_approval", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("status", sa.String(20), nullable=False, server_default="submitted", index=True),
            sa.Column("progress", sa.Integer, nullable=False, server_default="0"),
            sa.Column("lock_version", sa.Integer, nullable=False, server_default="0"),
            sa.Column("created_by", sa.String(150), nullable=False),
            sa.Column("submitter_id", sa.Integer, sa.ForeignKey("authorizations.id"), nullable=False, index=True),
            sa.Column("is_bypassed", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("bypass_by", sa.Integer, sa.ForeignKey("authorizations.id"), nullable=True),
            sa.Column("bypass_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("bypass_reason", sa.Text, nullable=True),
            sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True, index=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )

    if "approval_steps" not in existing:
        op.create_table(
            "approval_steps",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("proposed_change_id", sa.Integer,
                      sa.ForeignKey("proposed_changes.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("step", sa.Integer, nullable=False),
            sa.Column("actor", sa.String(200), nullable=False),
            sa.Column("approver_id", sa.Integer, sa.ForeignKey("authorizations.id"), nullable=False, index=True),
            sa.Column("employee_code", sa.String(30), nullable=True),
            sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
            sa.Column("note", sa.Text, nullable=True),
            sa.Column("version", sa.Integer, nullable=False, server_default="1"),
            sa.Column("original_approver_id", sa.Integer, sa.ForeignKey("authorizations.id"), nullable=True),
            sa.Column("is_changed", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.UniqueConstraint("proposed_change_id", "step", name="uq_approval_step_order"),
            sa.UniqueConstraint("proposed_change_id", "approver_id", name="uq_approval_step_approver"),
        )

    if "approval_history" not in existing:
        op.create_table(
            "approval_history",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("proposed_change_id", sa.Integer,
                      sa.ForeignKey("proposed_changes.id", ondelete="CASCADE"), nullable=False),
            sa.Column("actor_id", sa.Integer, sa.ForeignKey("authorizations.id"), nullable=True),
            sa.Column("actor_name", sa.String(150), nullable=True),
            sa.Column("employee_code", sa.String(30), nullable=True),
            sa.Column("status", sa.String(20), nullable=False),
            sa.Column("action_type", sa.String(30), nullable=False, server_default="decision"),
            sa.Column("note", sa.Text, server_default=""),
            sa.Column("description", sa.Text, nullable=False),
            sa.Column("signature", sa.String(64), nullable=True, index=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_history_doc_created", "approval_history", ["proposed_change_id", "created_at"])

    # ── Templates ──
    if "approval_templates" not in existing:
        op.create_table(
            "approval_templates",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("template_name", sa.String(150), nullable=False),
            sa.Column("description", sa.Text, nullable=True),
            sa.Column("line_code", sa.String(30), nullable=True, index=True),
            sa.Column("need_engineering_approval", sa.Boolean, nullable=True),
            sa.Column("need_production_approval", sa.Boolean, nullable=True),
            sa.Column("step_order", sa.Integer, nullable=False),
            sa.Column("actor_name", sa.String(150), nullable=False),
            sa.Column("model_type", sa.String(20), nullable=False, server_default="section"),
            sa.Column("section_mode", sa.String(20), nullable=False, server_default="fixed"),
            sa.Column("section_id", sa.Integer, sa.ForeignKey("sections.id", ondelete="SET NULL"), nullable=True),
            sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
            sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column("created_by", sa.String(150), nullable=True),
            sa.Column("updated_by", sa.String(150), nullable=True),
            sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True, index=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        op.create_index("idx_template_match", "approval_templates", ["is_active", "step_order"])

    # ── Bypass audit ──
    if "bypass_logs" not in existing:
        op.create_table(
            "bypass_logs",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("proposed_change_id", sa.Integer,
                      sa.ForeignKey("proposed_changes.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("admin_id", sa.Integer, sa.ForeignKey("authorizations.id"), nullable=False),
            sa.Column("admin_name", sa.String(150), nullable=True),
            sa.Column("strategy", sa.String(20), nullable=False),
            sa.Column("target_status", sa.String(20), nullable=False),
            sa.Column("original_status", sa.String(20), nullable=False),
            sa.Column("original_progress", sa.Integer, nullable=False),
            sa.Column("new_status", sa.String(20), nullable=False),
            sa.Column("new_progress", sa.Integer, nullable=False),
            sa.Column("reason", sa.Text, nullable=False),
            sa.Column("affected_approvers", sa.JSON, nullable=False),
            sa.Column("next_approver", sa.JSON, nullable=True),
            sa.Column("ip_address", sa.String(64), nullable=True),
            sa.Column("user_agent", sa.String(500), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )

    # ── Notification ledger ──
    if "notification_ledger" not in existing:
        op.create_table(
            "notification_ledger",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("proposed_change_id", sa.Integer,
                      sa.ForeignKey("proposed_changes.id", ondelete="CASCADE"), nullable=False),
            sa.Column("recipient_email", sa.String(200), nullable=False),
            sa.Column("recipient_name", sa.String(150), nullable=True),
            sa.Column("recipient_role", sa.String(40), nullable=False),
            sa.Column("status", sa.String(20), nullable=False),
            sa.Column("note_hash", sa.String(64), nullable=False, server_default=""),
            sa.Column("subject", sa.String(300), nullable=False),
            sa.Column("body", sa.Text, nullable=False),
            sa.Column("is_success", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("message_id", sa.String(255), nullable=True),
            sa.Column("error_message", sa.Text, nullable=True),
            sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint(
                "proposed_change_id", "recipient_email", "recipient_role", "status", "note_hash",
                name="uq_notification_event",
            ),
        )
        op.create_index("idx_notification_success", "notification_ledger", ["is_success"])

    # ── Approver change requests ──
    if "approver_change_requests" not in existing:
        op.create_table(
            "approver_change_requests",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("proposed_change_id", sa.Integer,
                      sa.ForeignKey("proposed_changes.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("step_id", sa.Integer,
                      sa.ForeignKey("approval_steps.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("current_approver_id", sa.Integer, sa.ForeignKey("authorizations.id"), nullable=False),
            sa.Column("new_approver_id", sa.Integer, sa.ForeignKey("authorizations.id"), nullable=False),
            sa.Column("requested_by", sa.Integer, sa.ForeignKey("authorizations.id"), nullable=False),
            sa.Column("reason", sa.Text, nullable=False),
            sa.Column("urgent", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
            sa.Column("admin_id", sa.Integer, sa.ForeignKey("authorizations.id"), nullable=True),
            sa.Column("admin_decision", sa.Text, nullable=True),
            sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )


def downgrade():
    for table in (
        "approver_change_requests",
        "notification_ledger",
        "bypass_logs",
        "approval_templates",
        "approval_history",
        "approval_steps",
        "proposed_changes",
        "department_heads",
        "section_heads",
        "lines",
        "sections",
        "authorizations",
    ):
        op.drop_table(table)
