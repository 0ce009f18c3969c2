"""payroll sync schema

Revision ID: 3c9e1f0b7a21
Revises:
Create Date: 2026-10-18 09:12:44.310921
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "3c9e1f0b7a21"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_PAYLOAD = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "payroll_companies",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("qb_company_name", sa.String(), nullable=True),
        sa.Column("pay_period_reference", sa.Date(), nullable=False),
        sa.Column("pay_period_days", sa.Integer(), server_default=sa.text("14"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("code", name="uq_payroll_companies_code"),
    )
    op.create_index(op.f("ix_payroll_companies_id"), "payroll_companies", ["id"], unique=False)

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("department", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(op.f("ix_employees_id"), "employees", ["id"], unique=False)
    op.create_index(op.f("ix_employees_company_id"), "employees", ["company_id"], unique=False)

    op.create_table(
        "time_entries",
        sa.Column("time_entry_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        _ts("started_at", nullable=False),
        _ts("ended_at"),
        sa.Column("break_minutes", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index(op.f("ix_time_entries_time_entry_id"), "time_entries", ["time_entry_id"], unique=False)
    op.create_index(op.f("ix_time_entries_company_id"), "time_entries", ["company_id"], unique=False)
    op.create_index(op.f("ix_time_entries_employee_id"), "time_entries", ["employee_id"], unique=False)
    op.create_index(op.f("ix_time_entries_work_date"), "time_entries", ["work_date"], unique=False)
    op.create_index(op.f("ix_time_entries_status"), "time_entries", ["status"], unique=False)
    # One open shift per employee.
    op.create_index(
        "uq_time_entries_one_active_per_employee",
        "time_entries",
        ["company_id", "employee_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "time_corrections",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("time_entry_id", sa.String(), nullable=True),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("request_type", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        _ts("requested_at", nullable=False),
        sa.Column("reviewed_by", sa.String(), nullable=True),
        _ts("reviewed_at"),
    )
    op.create_index(op.f("ix_time_corrections_company_id"), "time_corrections", ["company_id"], unique=False)
    op.create_index(op.f("ix_time_corrections_employee_id"), "time_corrections", ["employee_id"], unique=False)
    op.create_index(op.f("ix_time_corrections_work_date"), "time_corrections", ["work_date"], unique=False)
    op.create_index(op.f("ix_time_corrections_status"), "time_corrections", ["status"], unique=False)

    op.create_table(
        "pay_period",
        sa.Column("pay_period_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("employee_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("regular_hours", sa.Numeric(10, 2), server_default=sa.text("0"), nullable=False),
        sa.Column("overtime_hours", sa.Numeric(10, 2), server_default=sa.text("0"), nullable=False),
        sa.Column("total_hours", sa.Numeric(10, 2), server_default=sa.text("0"), nullable=False),
        sa.Column("issue_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("approved_by", sa.String(), nullable=True),
        _ts("approved_at"),
        sa.Column("approval_notes", sa.Text(), nullable=True),
        sa.Column("locked_by", sa.String(), nullable=True),
        _ts("locked_at"),
        sa.Column("unlocked_by", sa.String(), nullable=True),
        _ts("unlocked_at"),
        sa.Column("exported", sa.Boolean(), server_default=sa.false(), nullable=False),
        _ts("exported_at"),
        sa.Column("export_batch", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("divergence_warning", sa.Text(), nullable=True),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        sa.UniqueConstraint("company_id", "start_date", "end_date", name="uq_pay_period_window"),
        sa.CheckConstraint("start_date <= end_date", name="ck_pay_period_start_before_end"),
        sa.CheckConstraint("status IN ('pending', 'approved', 'locked')", name="ck_pay_period_status"),
    )
    op.create_index(op.f("ix_pay_period_company_id"), "pay_period", ["company_id"], unique=False)

    op.create_table(
        "pay_period_lines",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "pay_period_id",
            sa.String(),
            sa.ForeignKey("pay_period.pay_period_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("regular_hours", sa.Numeric(10, 2), server_default=sa.text("0"), nullable=False),
        sa.Column("overtime_hours", sa.Numeric(10, 2), server_default=sa.text("0"), nullable=False),
        sa.Column("total_hours", sa.Numeric(10, 2), server_default=sa.text("0"), nullable=False),
        sa.Column("qb_txn_id", sa.String(), nullable=True),
        sa.Column("qb_edit_sequence", sa.String(), nullable=True),
        sa.Column("exported_batch", sa.Integer(), nullable=True),
        _ts("exported_at"),
        sa.UniqueConstraint("pay_period_id", "employee_id", name="uq_pay_period_line_employee"),
    )
    op.create_index(op.f("ix_pay_period_lines_pay_period_id"), "pay_period_lines", ["pay_period_id"], unique=False)
    op.create_index(op.f("ix_pay_period_lines_company_id"), "pay_period_lines", ["company_id"], unique=False)
    op.create_index(op.f("ix_pay_period_lines_employee_id"), "pay_period_lines", ["employee_id"], unique=False)

    op.create_table(
        "qb_connections",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("company_name", sa.String(), nullable=False),
        sa.Column("wc_username", sa.String(), nullable=False),
        sa.Column("wc_secret_salt", sa.String(), nullable=False),
        sa.Column("wc_secret_hash", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("sync_time_entries", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("sync_pay_stubs", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("sync_employees", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("auto_sync_enabled", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("sync_interval_minutes", sa.Integer(), server_default=sa.text("60"), nullable=False),
        sa.Column("connection_status", sa.String(), server_default="pending", nullable=False),
        sa.Column("qb_version", sa.String(), nullable=True),
        sa.Column("company_file", sa.String(), nullable=True),
        _ts("last_connected_at"),
        _ts("last_sync_at"),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("last_error_at"),
        sa.Column("created_by", sa.String(), nullable=True),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
    )
    op.create_index(op.f("ix_qb_connections_company_id"), "qb_connections", ["company_id"], unique=True)
    op.create_index(op.f("ix_qb_connections_wc_username"), "qb_connections", ["wc_username"], unique=False)

    op.create_table(
        "qb_employee_mappings",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("qb_list_id", sa.String(), nullable=True),
        sa.Column("qb_name", sa.String(), nullable=False),
        sa.Column("edit_sequence", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("is_synced", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("sync_error", sa.Text(), nullable=True),
        _ts("last_synced_at"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
    )
    op.create_index(op.f("ix_qb_employee_mappings_company_id"), "qb_employee_mappings", ["company_id"], unique=False)
    op.create_index(op.f("ix_qb_employee_mappings_employee_id"), "qb_employee_mappings", ["employee_id"], unique=False)
    op.create_index(op.f("ix_qb_employee_mappings_qb_list_id"), "qb_employee_mappings", ["qb_list_id"], unique=False)
    op.create_index(
        "uq_qb_employee_mapping_active",
        "qb_employee_mappings",
        ["company_id", "employee_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active = 1"),
    )

    op.create_table(
        "qb_sync_queue",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("reference_type", sa.String(), nullable=False),
        sa.Column("reference_id", sa.String(), nullable=False),
        sa.Column("pay_period_id", sa.String(), nullable=True),
        sa.Column("export_batch", sa.Integer(), nullable=True),
        sa.Column("payload", JSON_PAYLOAD, nullable=False),
        sa.Column("request_xml", sa.Text(), nullable=True),
        sa.Column("response_xml", sa.Text(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        sa.Column("priority", sa.Integer(), server_default=sa.text("10"), nullable=False),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default=sa.text("3"), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("error_kind", sa.String(), nullable=True),
        sa.Column("claimed_by_session", sa.String(), nullable=True),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        _ts("last_attempt_at"),
        _ts("completed_at"),
        sa.CheckConstraint("attempts >= 0", name="ck_qb_sync_queue_attempts_nonnegative"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_qb_sync_queue_status",
        ),
    )
    op.create_index(op.f("ix_qb_sync_queue_company_id"), "qb_sync_queue", ["company_id"], unique=False)
    op.create_index(op.f("ix_qb_sync_queue_pay_period_id"), "qb_sync_queue", ["pay_period_id"], unique=False)
    op.create_index(op.f("ix_qb_sync_queue_correlation_id"), "qb_sync_queue", ["correlation_id"], unique=False)
    op.create_index("ix_qb_sync_queue_claim", "qb_sync_queue", ["status", "priority", "created_at"], unique=False)
    op.create_index(
        "ix_qb_sync_queue_reference",
        "qb_sync_queue",
        ["company_id", "reference_type", "reference_id", "type"],
        unique=False,
    )
    op.create_index(
        "uq_qb_sync_queue_open_reference",
        "qb_sync_queue",
        ["company_id", "reference_type", "reference_id", "type"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'processing')"),
        sqlite_where=sa.text("status IN ('pending', 'processing')"),
    )

    op.create_table(
        "qb_sync_sessions",
        sa.Column("session_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("connection_id", sa.Integer(), nullable=False),
        sa.Column("agent_username", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default="open", nullable=False),
        sa.Column("company_file", sa.String(), nullable=True),
        sa.Column("qb_version", sa.String(), nullable=True),
        sa.Column("request_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("completed_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("failed_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("discarded_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        _ts("started_at", nullable=False),
        _ts("last_activity_at"),
        _ts("ended_at"),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
    )
    op.create_index(op.f("ix_qb_sync_sessions_company_id"), "qb_sync_sessions", ["company_id"], unique=False)

    op.create_table(
        "qb_sync_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("operation", sa.String(), nullable=False),
        sa.Column("direction", sa.String(), nullable=False),
        sa.Column("record_type", sa.String(), nullable=True),
        sa.Column("record_id", sa.String(), nullable=True),
        sa.Column("record_count", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("error_details", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        _ts("created_at", nullable=False),
    )
    op.create_index(op.f("ix_qb_sync_logs_company_id"), "qb_sync_logs", ["company_id"], unique=False)
    op.create_index(op.f("ix_qb_sync_logs_session_id"), "qb_sync_logs", ["session_id"], unique=False)
    op.create_index("ix_qb_sync_logs_company_created", "qb_sync_logs", ["company_id", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_table("qb_sync_logs")
    op.drop_table("qb_sync_sessions")
    op.drop_table("qb_sync_queue")
    op.drop_table("qb_employee_mappings")
    op.drop_table("qb_connections")
    op.drop_table("pay_period_lines")
    op.drop_table("pay_period")
    op.drop_table("time_corrections")
    op.drop_table("time_entries")
    op.drop_table("employees")
    op.drop_table("payroll_companies")
