"""Data Transfer Objects for the installment engine.

Rows coming out of ``backend.apps.installments.repository`` are mapped into
these dataclasses; per-agency results are plain values so callers can
aggregate and serialise them without touching module state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any


class InstallmentStatus(Enum):
    """Installment lifecycle status."""
    DRAFT = "draft"
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class NotificationType(Enum):
    DUE_SOON = "due_soon"
    OVERDUE = "overdue"


class Channel(Enum):
    """Delivery channel."""
    EMAIL = "email"
    SMS = "sms"


class DeliveryStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class JobStatus(Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class NotificationOutcome(Enum):
    """Result of one (installment, type, channel) dispatch unit."""
    SENT = "sent"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    SKIPPED_NO_RECIPIENT = "skipped_no_recipient"
    FAILED = "failed"


def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass
class Installment:
    """One scheduled installment with the plan, student and college it belongs to."""

    installment_id: str
    agency_id: str
    payment_plan_id: str
    amount: Decimal
    student_due_date: date
    status: InstallmentStatus
    installment_number: int = 1
    college_due_date: date | None = None
    paid_date: date | None = None
    paid_amount: Decimal | None = None
    generates_commission: bool = True
    student_id: str | None = None
    student_name: str | None = None
    student_email: str | None = None
    student_phone: str | None = None
    sales_agent_id: str | None = None
    sales_agent_name: str | None = None
    sales_agent_email: str | None = None
    college_id: str | None = None
    college_name: str | None = None
    college_email: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Installment:
        """Create from a repository row (installment joined with its context)."""
        return cls(
            installment_id=row["id"],
            agency_id=row["agency_id"],
            payment_plan_id=row["payment_plan_id"],
            amount=_to_decimal(row["amount"]),
            student_due_date=row["student_due_date"],
            status=InstallmentStatus(row["status"]),
            installment_number=row.get("installment_number") or 1,
            college_due_date=row.get("college_due_date"),
            paid_date=row.get("paid_date"),
            paid_amount=_to_decimal(row.get("paid_amount")),
            generates_commission=bool(row.get("generates_commission", True)),
            student_id=row.get("student_id"),
            student_name=row.get("student_name"),
            student_email=row.get("student_email"),
            student_phone=row.get("student_phone"),
            sales_agent_id=row.get("sales_agent_id"),
            sales_agent_name=row.get("sales_agent_name"),
            sales_agent_email=row.get("sales_agent_email"),
            college_id=row.get("college_id"),
            college_name=row.get("college_name"),
            college_email=row.get("college_email"),
        )


@dataclass(frozen=True)
class Recipient:
    """Resolved delivery target for one channel."""

    address: str
    name: str | None = None
    role: str = "student"
    cc: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProviderReceipt:
    """Confirmation returned by a channel provider after a successful send."""

    provider: str
    message_id: str | None = None


@dataclass
class AgencyStatusResult:
    """Outcome of the status transition run for one agency."""

    agency_id: str
    updated_count: int = 0
    transitioned_ids: list[str] = field(default_factory=list)
    conflicts: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agency_id": self.agency_id,
            "updated_count": self.updated_count,
            "transitioned_ids": list(self.transitioned_ids),
            "conflicts": self.conflicts,
            "error": self.error,
        }


@dataclass
class AgencyDispatchResult:
    """Outcome of the notification dispatch run for one agency."""

    agency_id: str
    sent: int = 0
    skipped_duplicate: int = 0
    failed: int = 0
    skipped_no_recipient: int = 0
    digests_sent: int = 0
    digests_skipped: int = 0
    digests_failed: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def add(self, outcome: NotificationOutcome) -> None:
        """Count one dispatch unit outcome."""
        if outcome is NotificationOutcome.SENT:
            self.sent += 1
        elif outcome is NotificationOutcome.SKIPPED_DUPLICATE:
            self.skipped_duplicate += 1
        elif outcome is NotificationOutcome.SKIPPED_NO_RECIPIENT:
            self.skipped_no_recipient += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "agency_id": self.agency_id,
            "sent": self.sent,
            "skipped_duplicate": self.skipped_duplicate,
            "failed": self.failed,
            "skipped_no_recipient": self.skipped_no_recipient,
            "digests_sent": self.digests_sent,
            "digests_skipped": self.digests_skipped,
            "digests_failed": self.digests_failed,
            "error": self.error,
        }


@dataclass(frozen=True)
class PlanCommission:
    """Commission figures for one payment plan, rounded to cents."""

    payment_plan_id: str
    expected: Decimal
    earned: Decimal
    outstanding: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_plan_id": self.payment_plan_id,
            "expected": str(self.expected),
            "earned": str(self.earned),
            "outstanding": str(self.outstanding),
        }
