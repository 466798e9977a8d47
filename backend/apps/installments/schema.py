"""Table definitions for the installment lifecycle engine.

Lightweight SQLAlchemy Core tables; the Alembic migration under
``ops/alembic/versions`` creates the same layout in PostgreSQL. The tables
work unchanged against SQLite for local runs and tests.
"""

from __future__ import annotations

from dataclasses import dataclass

import sqlalchemy as sa
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)

# Composite dedup key for notification reservations
NOTIFICATION_DEDUP_COLUMNS = ("installment_id", "notification_type", "channel")
DIGEST_DEDUP_COLUMNS = ("agency_id", "college_id", "digest_date")


@dataclass(frozen=True)
class InstallmentTables:
    agencies: Table
    users: Table
    students: Table
    colleges: Table
    payment_plans: Table
    installments: Table
    notification_records: Table
    college_digests: Table
    job_runs: Table
    activity_log: Table


def get_tables(metadata: MetaData) -> InstallmentTables:
    """Return Table objects for every table the engine reads or writes."""
    agencies = Table(
        "agencies",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("name", Text, nullable=False),
        Column("timezone", String(64), nullable=False, server_default="Australia/Brisbane"),
        # Stored as text (HH:MM[:SS]) so malformed tenant input stays visible to validation
        Column("overdue_cutoff_time", String(8), server_default="17:00"),
        Column("due_soon_threshold_days", Integer, server_default=sa.text("4")),
        Column("sms_enabled", Boolean, nullable=False, server_default=sa.false()),
        Column("contact_email", Text),
        Column("contact_phone", String(32)),
        Column("payment_instructions", Text),
        extend_existing=True,
    )

    users = Table(
        "users",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("agency_id", String(36), ForeignKey("agencies.id"), nullable=False),
        Column("name", Text, nullable=False),
        Column("email", Text),
        Column("role", String(32), nullable=False, server_default="agency_user"),
        Column("email_notifications_enabled", Boolean, nullable=False, server_default=sa.true()),
        extend_existing=True,
    )

    students = Table(
        "students",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("agency_id", String(36), ForeignKey("agencies.id"), nullable=False),
        Column("full_name", Text, nullable=False),
        Column("email", Text),
        Column("phone", String(32)),
        Column("assigned_user_id", String(36), ForeignKey("users.id")),
        extend_existing=True,
    )

    colleges = Table(
        "colleges",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("agency_id", String(36), ForeignKey("agencies.id"), nullable=False),
        Column("name", Text, nullable=False),
        Column("contact_email", Text),
        extend_existing=True,
    )

    payment_plans = Table(
        "payment_plans",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("agency_id", String(36), ForeignKey("agencies.id"), nullable=False),
        Column("student_id", String(36), ForeignKey("students.id"), nullable=False),
        Column("college_id", String(36), ForeignKey("colleges.id")),
        Column("total_amount", Numeric(12, 2), nullable=False),
        Column("commission_rate_percent", Numeric(5, 2), nullable=False, server_default="0"),
        Column("expected_commission", Numeric(12, 2), nullable=False, server_default="0"),
        Column("status", String(16), nullable=False, server_default="active"),
        extend_existing=True,
    )

    installments = Table(
        "installments",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("payment_plan_id", String(36), ForeignKey("payment_plans.id"), nullable=False),
        Column("agency_id", String(36), ForeignKey("agencies.id"), nullable=False),
        Column("installment_number", Integer, nullable=False),
        Column("amount", Numeric(12, 2), nullable=False),
        Column("student_due_date", Date, nullable=False),
        Column("college_due_date", Date),
        Column("status", String(16), nullable=False, server_default="pending"),
        Column("paid_date", Date),
        Column("paid_amount", Numeric(12, 2)),
        Column("generates_commission", Boolean, nullable=False, server_default=sa.true()),
        Column("updated_at", DateTime(timezone=True)),
        sa.Index("ix_installments_agency_status_due", "agency_id", "status", "student_due_date"),
        extend_existing=True,
    )

    notification_records = Table(
        "notification_records",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("agency_id", String(36), nullable=False),
        Column("student_id", String(36)),
        Column("installment_id", String(36), ForeignKey("installments.id"), nullable=False),
        Column("notification_type", String(16), nullable=False),
        Column("channel", String(16), nullable=False),
        Column("delivery_status", String(16), nullable=False, server_default="pending"),
        Column("sent_at", DateTime(timezone=True)),
        Column("provider_name", String(32)),
        Column("provider_message_id", String(128)),
        Column("error_message", Text),
        Column("created_at", DateTime(timezone=True), nullable=False),
        UniqueConstraint(*NOTIFICATION_DEDUP_COLUMNS, name="uq_notification_records_dedup_key"),
        extend_existing=True,
    )

    college_digests = Table(
        "college_digests",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("agency_id", String(36), nullable=False),
        Column("college_id", String(36), ForeignKey("colleges.id"), nullable=False),
        Column("digest_date", Date, nullable=False),
        Column("installment_count", Integer, nullable=False),
        Column("total_amount", Numeric(12, 2), nullable=False),
        Column("delivery_status", String(16), nullable=False, server_default="pending"),
        Column("sent_at", DateTime(timezone=True)),
        Column("provider_message_id", String(128)),
        Column("error_message", Text),
        Column("created_at", DateTime(timezone=True), nullable=False),
        UniqueConstraint(*DIGEST_DEDUP_COLUMNS, name="uq_college_digests_per_day"),
        extend_existing=True,
    )

    job_runs = Table(
        "job_runs",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("job_name", String(64), nullable=False),
        Column("started_at", DateTime(timezone=True), nullable=False),
        Column("completed_at", DateTime(timezone=True)),
        Column("status", String(16), nullable=False),
        Column("records_updated", Integer, nullable=False, server_default=sa.text("0")),
        Column("error_message", Text),
        Column("metadata", JSON),
        sa.Index("ix_job_runs_job_name_started_at", "job_name", "started_at"),
        extend_existing=True,
    )

    activity_log = Table(
        "activity_log",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("agency_id", String(36), nullable=False),
        Column("user_id", String(36)),
        Column("entity_type", String(32), nullable=False),
        Column("entity_id", String(36), nullable=False),
        Column("action", String(32), nullable=False),
        Column("description", Text, nullable=False),
        Column("metadata", JSON),
        Column("created_at", DateTime(timezone=True), nullable=False),
        sa.Index("ix_activity_log_agency_created", "agency_id", "created_at"),
        extend_existing=True,
    )

    return InstallmentTables(
        agencies=agencies,
        users=users,
        students=students,
        colleges=colleges,
        payment_plans=payment_plans,
        installments=installments,
        notification_records=notification_records,
        college_digests=college_digests,
        job_runs=job_runs,
        activity_log=activity_log,
    )


_METADATA = MetaData()
TABLES = get_tables(_METADATA)

__all__ = ["InstallmentTables", "get_tables", "TABLES", "NOTIFICATION_DEDUP_COLUMNS"]
