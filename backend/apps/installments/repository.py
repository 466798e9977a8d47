"""Query and write helpers for the installment engine.

Every function takes an open SQLAlchemy ``Connection`` and filters strictly by
``agency_id``; transaction boundaries belong to the caller
(``engine.begin()``). Reads return plain dicts so the agent layer can map them
to its own DTOs.
"""

from __future__ import annotations

from datetime import date, datetime
from functools import lru_cache
from typing import Any
from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy import and_, insert, select, update
from sqlalchemy.engine import Connection, Engine

from backend.core.config import settings

from .schema import TABLES, InstallmentTables


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Create (and cache) the SQLAlchemy engine from settings.database_url."""
    return sa.create_engine(settings.database_url, future=True)


def _rows(result) -> list[dict[str, Any]]:
    return [dict(row) for row in result.mappings().all()]


# ---------------------------------------------------------------------------
# Agencies / recipients
# ---------------------------------------------------------------------------


def list_agency_rows(conn: Connection, tables: InstallmentTables = TABLES) -> list[dict[str, Any]]:
    a = tables.agencies
    return _rows(
        conn.execute(
            select(
                a.c.id,
                a.c.name,
                a.c.timezone,
                a.c.overdue_cutoff_time,
                a.c.due_soon_threshold_days,
                a.c.sms_enabled,
                a.c.contact_email,
                a.c.contact_phone,
                a.c.payment_instructions,
            ).order_by(a.c.id)
        )
    )


def list_agency_admins(
    conn: Connection, agency_id: str, tables: InstallmentTables = TABLES
) -> list[dict[str, Any]]:
    u = tables.users
    return _rows(
        conn.execute(
            select(u.c.id, u.c.name, u.c.email)
            .where(u.c.agency_id == agency_id)
            .where(u.c.role == "agency_admin")
            .where(u.c.email_notifications_enabled.is_(True))
            .where(u.c.email.is_not(None))
            .order_by(u.c.name)
        )
    )


# ---------------------------------------------------------------------------
# Installments
# ---------------------------------------------------------------------------


def _installment_view(tables: InstallmentTables):
    """Installment joined with plan, student, assigned user and college."""
    i, pp, s, u, c = (
        tables.installments,
        tables.payment_plans,
        tables.students,
        tables.users,
        tables.colleges,
    )
    joined = (
        i.join(pp, pp.c.id == i.c.payment_plan_id)
        .join(s, s.c.id == pp.c.student_id)
        .outerjoin(u, and_(u.c.id == s.c.assigned_user_id, u.c.agency_id == i.c.agency_id))
        .outerjoin(c, c.c.id == pp.c.college_id)
    )
    columns = [
        i.c.id,
        i.c.agency_id,
        i.c.payment_plan_id,
        i.c.installment_number,
        i.c.amount,
        i.c.student_due_date,
        i.c.college_due_date,
        i.c.status,
        i.c.paid_date,
        i.c.paid_amount,
        i.c.generates_commission,
        s.c.id.label("student_id"),
        s.c.full_name.label("student_name"),
        s.c.email.label("student_email"),
        s.c.phone.label("student_phone"),
        u.c.id.label("sales_agent_id"),
        u.c.name.label("sales_agent_name"),
        u.c.email.label("sales_agent_email"),
        c.c.id.label("college_id"),
        c.c.name.label("college_name"),
        c.c.contact_email.label("college_email"),
    ]
    return joined, columns


def select_transition_candidates(
    conn: Connection,
    agency_id: str,
    today: date,
    include_today: bool,
    tables: InstallmentTables = TABLES,
) -> list[dict[str, Any]]:
    """Pending installments of active plans that are past due for the agency.

    ``include_today`` is True once the agency-local clock has passed the
    cutoff, so rows due today qualify as well.
    """
    i, pp = tables.installments, tables.payment_plans
    joined, columns = _installment_view(tables)
    due_clause = i.c.student_due_date <= today if include_today else i.c.student_due_date < today
    return _rows(
        conn.execute(
            select(*columns)
            .select_from(joined)
            .where(i.c.agency_id == agency_id)
            .where(pp.c.agency_id == agency_id)
            .where(pp.c.status == "active")
            .where(i.c.status == "pending")
            .where(due_clause)
            .order_by(i.c.student_due_date, i.c.id)
        )
    )


def mark_overdue(
    conn: Connection, installment_id: str, agency_id: str, now: datetime,
    tables: InstallmentTables = TABLES,
) -> bool:
    """Guarded pending->overdue write; False when the row already left 'pending'."""
    i = tables.installments
    result = conn.execute(
        update(i)
        .where(i.c.id == installment_id)
        .where(i.c.agency_id == agency_id)
        .where(i.c.status == "pending")
        .values(status="overdue", updated_at=now)
    )
    return result.rowcount == 1


def select_overdue(
    conn: Connection, agency_id: str, tables: InstallmentTables = TABLES
) -> list[dict[str, Any]]:
    i, pp = tables.installments, tables.payment_plans
    joined, columns = _installment_view(tables)
    return _rows(
        conn.execute(
            select(*columns)
            .select_from(joined)
            .where(i.c.agency_id == agency_id)
            .where(pp.c.agency_id == agency_id)
            .where(pp.c.status == "active")
            .where(i.c.status == "overdue")
            .order_by(i.c.student_due_date, i.c.id)
        )
    )


def select_pending_due_between(
    conn: Connection,
    agency_id: str,
    start: date,
    end: date,
    tables: InstallmentTables = TABLES,
) -> list[dict[str, Any]]:
    """Pending installments of active plans due within [start, end] inclusive."""
    i, pp = tables.installments, tables.payment_plans
    joined, columns = _installment_view(tables)
    return _rows(
        conn.execute(
            select(*columns)
            .select_from(joined)
            .where(i.c.agency_id == agency_id)
            .where(pp.c.agency_id == agency_id)
            .where(pp.c.status == "active")
            .where(i.c.status == "pending")
            .where(i.c.student_due_date >= start)
            .where(i.c.student_due_date <= end)
            .order_by(i.c.student_due_date, i.c.id)
        )
    )


# ---------------------------------------------------------------------------
# Notification reservations
# ---------------------------------------------------------------------------


def insert_notification_reservation(
    conn: Connection,
    *,
    agency_id: str,
    student_id: str | None,
    installment_id: str,
    notification_type: str,
    channel: str,
    now: datetime,
    tables: InstallmentTables = TABLES,
) -> str:
    """Insert the dedup row; raises IntegrityError when the key is already taken."""
    record_id = str(uuid4())
    conn.execute(
        insert(tables.notification_records).values(
            id=record_id,
            agency_id=agency_id,
            student_id=student_id,
            installment_id=installment_id,
            notification_type=notification_type,
            channel=channel,
            delivery_status="pending",
            created_at=now,
        )
    )
    return record_id


def finalize_notification(
    conn: Connection,
    record_id: str,
    *,
    delivery_status: str,
    sent_at: datetime | None = None,
    provider_name: str | None = None,
    provider_message_id: str | None = None,
    error_message: str | None = None,
    tables: InstallmentTables = TABLES,
) -> None:
    """Move a reservation out of 'pending'; a finalized row is never touched again."""
    n = tables.notification_records
    conn.execute(
        update(n)
        .where(n.c.id == record_id)
        .where(n.c.delivery_status == "pending")
        .values(
            delivery_status=delivery_status,
            sent_at=sent_at,
            provider_name=provider_name,
            provider_message_id=provider_message_id,
            error_message=error_message,
        )
    )


def list_notification_records(
    conn: Connection, agency_id: str, installment_id: str | None = None,
    tables: InstallmentTables = TABLES,
) -> list[dict[str, Any]]:
    n = tables.notification_records
    query = select(n).where(n.c.agency_id == agency_id)
    if installment_id is not None:
        query = query.where(n.c.installment_id == installment_id)
    return _rows(conn.execute(query.order_by(n.c.created_at, n.c.id)))


def insert_digest_reservation(
    conn: Connection,
    *,
    agency_id: str,
    college_id: str,
    digest_date: date,
    installment_count: int,
    total_amount,
    now: datetime,
    tables: InstallmentTables = TABLES,
) -> str:
    """Reserve today's digest for a college; raises IntegrityError if already taken."""
    digest_id = str(uuid4())
    conn.execute(
        insert(tables.college_digests).values(
            id=digest_id,
            agency_id=agency_id,
            college_id=college_id,
            digest_date=digest_date,
            installment_count=installment_count,
            total_amount=total_amount,
            delivery_status="pending",
            created_at=now,
        )
    )
    return digest_id


def finalize_digest(
    conn: Connection,
    digest_id: str,
    *,
    delivery_status: str,
    sent_at: datetime | None = None,
    provider_message_id: str | None = None,
    error_message: str | None = None,
    tables: InstallmentTables = TABLES,
) -> None:
    d = tables.college_digests
    conn.execute(
        update(d)
        .where(d.c.id == digest_id)
        .where(d.c.delivery_status == "pending")
        .values(
            delivery_status=delivery_status,
            sent_at=sent_at,
            provider_message_id=provider_message_id,
            error_message=error_message,
        )
    )


# ---------------------------------------------------------------------------
# Commission reads
# ---------------------------------------------------------------------------


def load_payment_plan(
    conn: Connection, agency_id: str, plan_id: str, tables: InstallmentTables = TABLES
) -> dict[str, Any] | None:
    pp = tables.payment_plans
    row = conn.execute(
        select(pp).where(pp.c.id == plan_id).where(pp.c.agency_id == agency_id)
    ).mappings().first()
    return dict(row) if row else None


def load_plan_installments(
    conn: Connection, agency_id: str, plan_id: str, tables: InstallmentTables = TABLES
) -> list[dict[str, Any]]:
    i = tables.installments
    return _rows(
        conn.execute(
            select(
                i.c.id,
                i.c.installment_number,
                i.c.amount,
                i.c.status,
                i.c.paid_date,
                i.c.paid_amount,
                i.c.generates_commission,
            )
            .where(i.c.payment_plan_id == plan_id)
            .where(i.c.agency_id == agency_id)
            .order_by(i.c.installment_number)
        )
    )
