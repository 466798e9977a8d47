"""Create installment lifecycle, notification and job ledger tables

Revision ID: 20251018_installment_engine
Revises:
Create Date: 2025-10-18 09:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20251018_installment_engine"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_NOW = sa.text("CURRENT_TIMESTAMP")


def upgrade() -> None:
    op.create_table(
        "agencies",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="Australia/Brisbane"),
        sa.Column("overdue_cutoff_time", sa.String(8), server_default="17:00"),
        sa.Column("due_soon_threshold_days", sa.Integer(), server_default=sa.text("4")),
        sa.Column("sms_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("contact_email", sa.Text()),
        sa.Column("contact_phone", sa.String(32)),
        sa.Column("payment_instructions", sa.Text()),
        sa.CheckConstraint(
            "due_soon_threshold_days BETWEEN 1 AND 30",
            name="ck_agencies_due_soon_threshold_days_range",
        ),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("agency_id", sa.String(36), sa.ForeignKey("agencies.id"), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text()),
        sa.Column("role", sa.String(32), nullable=False, server_default="agency_user"),
        sa.Column("email_notifications_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "students",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("agency_id", sa.String(36), sa.ForeignKey("agencies.id"), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text()),
        sa.Column("phone", sa.String(32)),
        sa.Column("assigned_user_id", sa.String(36), sa.ForeignKey("users.id")),
    )

    op.create_table(
        "colleges",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("agency_id", sa.String(36), sa.ForeignKey("agencies.id"), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("contact_email", sa.Text()),
    )

    op.create_table(
        "payment_plans",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("agency_id", sa.String(36), sa.ForeignKey("agencies.id"), nullable=False),
        sa.Column("student_id", sa.String(36), sa.ForeignKey("students.id"), nullable=False),
        sa.Column("college_id", sa.String(36), sa.ForeignKey("colleges.id")),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("commission_rate_percent", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("expected_commission", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.CheckConstraint(
            "status IN ('active', 'completed', 'cancelled')", name="ck_payment_plans_status"
        ),
    )

    op.create_table(
        "installments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("payment_plan_id", sa.String(36), sa.ForeignKey("payment_plans.id"), nullable=False),
        sa.Column("agency_id", sa.String(36), sa.ForeignKey("agencies.id"), nullable=False),
        sa.Column("installment_number", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("student_due_date", sa.Date(), nullable=False),
        sa.Column("college_due_date", sa.Date()),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("paid_date", sa.Date()),
        sa.Column("paid_amount", sa.Numeric(12, 2)),
        sa.Column("generates_commission", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True)),
        sa.CheckConstraint(
            "status IN ('draft', 'pending', 'partial', 'paid', 'overdue', 'cancelled')",
            name="ck_installments_status",
        ),
    )
    op.create_index(
        "ix_installments_agency_status_due",
        "installments",
        ["agency_id", "status", "student_due_date"],
    )

    op.create_table(
        "notification_records",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("agency_id", sa.String(36), nullable=False),
        sa.Column("student_id", sa.String(36)),
        sa.Column("installment_id", sa.String(36), sa.ForeignKey("installments.id"), nullable=False),
        sa.Column("notification_type", sa.String(16), nullable=False),
        sa.Column("channel", sa.String(16), nullable=False),
        sa.Column("delivery_status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("sent_at", sa.TIMESTAMP(timezone=True)),
        sa.Column("provider_name", sa.String(32)),
        sa.Column("provider_message_id", sa.String(128)),
        sa.Column("error_message", sa.Text()),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=_NOW),
        sa.UniqueConstraint(
            "installment_id", "notification_type", "channel", name="uq_notification_records_dedup_key"
        ),
        sa.CheckConstraint(
            "notification_type IN ('due_soon', 'overdue')", name="ck_notification_records_type"
        ),
        sa.CheckConstraint("channel IN ('email', 'sms')", name="ck_notification_records_channel"),
    )

    op.create_table(
        "college_digests",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("agency_id", sa.String(36), nullable=False),
        sa.Column("college_id", sa.String(36), sa.ForeignKey("colleges.id"), nullable=False),
        sa.Column("digest_date", sa.Date(), nullable=False),
        sa.Column("installment_count", sa.Integer(), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("delivery_status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("sent_at", sa.TIMESTAMP(timezone=True)),
        sa.Column("provider_message_id", sa.String(128)),
        sa.Column("error_message", sa.Text()),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=_NOW),
        sa.UniqueConstraint("agency_id", "college_id", "digest_date", name="uq_college_digests_per_day"),
    )

    op.create_table(
        "job_runs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("job_name", sa.String(64), nullable=False),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True)),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("records_updated", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_message", sa.Text()),
        sa.Column("metadata", sa.JSON()),
        sa.CheckConstraint("status IN ('running', 'success', 'failed')", name="ck_job_runs_status"),
    )
    op.create_index("ix_job_runs_job_name_started_at", "job_runs", ["job_name", "started_at"])

    op.create_table(
        "activity_log",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("agency_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(36)),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(36), nullable=False),
        sa.Column("action", sa.String(32), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("metadata", sa.JSON()),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=_NOW),
    )
    op.create_index("ix_activity_log_agency_created", "activity_log", ["agency_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_activity_log_agency_created", table_name="activity_log")
    op.drop_table("activity_log")
    op.drop_index("ix_job_runs_job_name_started_at", table_name="job_runs")
    op.drop_table("job_runs")
    op.drop_table("college_digests")
    op.drop_table("notification_records")
    op.drop_index("ix_installments_agency_status_due", table_name="installments")
    op.drop_table("installments")
    op.drop_table("payment_plans")
    op.drop_table("colleges")
    op.drop_table("students")
    op.drop_table("users")
    op.drop_table("agencies")
