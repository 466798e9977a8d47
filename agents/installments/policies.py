"""Time-dependent classification rules for installments.

Pure functions: the caller supplies the agency-local clock, nothing here reads
the system time or touches storage except ``DueSoonClassifier``'s read-only
query helpers.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta

from sqlalchemy.engine import Connection

from backend.apps.installments import repository

from .config import AgencyConfig
from .dto import Installment, InstallmentStatus, NotificationType


def is_overdue_at(due_date: date, local_now: datetime, cutoff: time) -> bool:
    """Transition predicate for a pending installment.

    Overdue when the due date is before the local date, or equal to it and the
    local wall-clock time is strictly past the cutoff.
    """
    today = local_now.date()
    if due_date < today:
        return True
    if due_date == today:
        return local_now.time().replace(tzinfo=None) > cutoff
    return False


def is_due_soon(
    status: InstallmentStatus | str,
    due_date: date,
    today: date,
    threshold_days: int,
) -> bool:
    """True for pending installments due within ``[today, today + threshold]``."""
    if isinstance(status, str):
        status = InstallmentStatus(status)
    if status is not InstallmentStatus.PENDING:
        return False
    return today <= due_date <= today + timedelta(days=threshold_days)


def classify(
    installment: Installment, agency: AgencyConfig, now: datetime | None = None
) -> NotificationType | None:
    """Return the notification type an installment currently qualifies for.

    Overdue rows (already transitioned) take precedence; a pending row past
    its cutoff is also reported as overdue even before the transition job
    has run.
    """
    local_now = agency.local_now(now)
    if installment.status is InstallmentStatus.OVERDUE:
        return NotificationType.OVERDUE
    if installment.status is not InstallmentStatus.PENDING:
        return None
    if is_overdue_at(installment.student_due_date, local_now, agency.overdue_cutoff):
        return NotificationType.OVERDUE
    if is_due_soon(
        installment.status,
        installment.student_due_date,
        local_now.date(),
        agency.due_soon_threshold_days,
    ):
        return NotificationType.DUE_SOON
    return None


class DueSoonClassifier:
    """Read-only due-soon lookups for reporting and dispatch."""

    def __init__(self, agency: AgencyConfig):
        self.agency = agency

    def window(self, now: datetime | None = None) -> tuple[date, date]:
        today = self.agency.local_today(now)
        return today, today + timedelta(days=self.agency.due_soon_threshold_days)

    def list_due_soon(self, conn: Connection, now: datetime | None = None) -> list[Installment]:
        """Pending installments due within the agency's window, as of ``now``.

        A row due today is left out once the local cutoff has passed; it is
        overdue even if the status job has not transitioned it yet.
        """
        local_now = self.agency.local_now(now)
        start, end = self.window(now)
        rows = repository.select_pending_due_between(conn, self.agency.agency_id, start, end)
        return [
            inst
            for inst in (Installment.from_row(r) for r in rows)
            if is_due_soon(inst.status, inst.student_due_date, start, self.agency.due_soon_threshold_days)
            and not is_overdue_at(inst.student_due_date, local_now, self.agency.overdue_cutoff)
        ]

    def count_due_soon(self, conn: Connection, now: datetime | None = None) -> int:
        return len(self.list_due_soon(conn, now))
