"""Seed helpers and fake providers shared by installment engine tests."""

from __future__ import annotations

import threading
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from agents.installments.dto import Channel, ProviderReceipt, Recipient
from agents.installments.errors import ProviderDeliveryError
from backend.apps.installments.schema import TABLES


class Seeder:
    """Inserts minimal, valid rows with overridable fields."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def _insert(self, table: sa.Table, values: dict[str, Any]) -> str:
        with self.engine.begin() as conn:
            conn.execute(sa.insert(table).values(**values))
        return values["id"]

    def agency(self, **overrides: Any) -> str:
        values = {
            "id": str(uuid4()),
            "name": "Brisbane Study Agency",
            "timezone": "Australia/Brisbane",
            "overdue_cutoff_time": "17:00",
            "due_soon_threshold_days": 4,
            "sms_enabled": False,
            "contact_email": "office@agency.example",
            "contact_phone": "+61 7 1234 5678",
            "payment_instructions": "BSB 000-000, Account 12345678",
        }
        values.update(overrides)
        return self._insert(TABLES.agencies, values)

    def user(self, agency_id: str, **overrides: Any) -> str:
        values = {
            "id": str(uuid4()),
            "agency_id": agency_id,
            "name": "Sam Agent",
            "email": "sam.agent@agency.example",
            "role": "agency_user",
            "email_notifications_enabled": True,
        }
        values.update(overrides)
        return self._insert(TABLES.users, values)

    def student(self, agency_id: str, **overrides: Any) -> str:
        values = {
            "id": str(uuid4()),
            "agency_id": agency_id,
            "full_name": "Alex Student",
            "email": "alex.student@mail.example",
            "phone": "0412 345 678",
            "assigned_user_id": None,
        }
        values.update(overrides)
        return self._insert(TABLES.students, values)

    def college(self, agency_id: str, **overrides: Any) -> str:
        values = {
            "id": str(uuid4()),
            "agency_id": agency_id,
            "name": "Harbour College",
            "contact_email": "accounts@college.example",
        }
        values.update(overrides)
        return self._insert(TABLES.colleges, values)

    def plan(self, agency_id: str, student_id: str, **overrides: Any) -> str:
        values = {
            "id": str(uuid4()),
            "agency_id": agency_id,
            "student_id": student_id,
            "college_id": None,
            "total_amount": Decimal("10000.00"),
            "commission_rate_percent": Decimal("15.00"),
            "expected_commission": Decimal("1500.00"),
            "status": "active",
        }
        values.update(overrides)
        return self._insert(TABLES.payment_plans, values)

    def installment(self, agency_id: str, plan_id: str, due: date, **overrides: Any) -> str:
        values = {
            "id": str(uuid4()),
            "agency_id": agency_id,
            "payment_plan_id": plan_id,
            "installment_number": 1,
            "amount": Decimal("2500.00"),
            "student_due_date": due,
            "status": "pending",
            "generates_commission": True,
        }
        values.update(overrides)
        return self._insert(TABLES.installments, values)

    def scenario(self, due: date, **agency_overrides: Any) -> dict[str, str]:
        """Agency + student + active plan + one pending installment."""
        agency_id = self.agency(**agency_overrides)
        student_id = self.student(agency_id)
        plan_id = self.plan(agency_id, student_id)
        installment_id = self.installment(agency_id, plan_id, due)
        return {
            "agency_id": agency_id,
            "student_id": student_id,
            "plan_id": plan_id,
            "installment_id": installment_id,
        }



def fetch_installment(engine: Engine, installment_id: str) -> dict[str, Any]:
    with engine.connect() as conn:
        row = conn.execute(
            sa.select(TABLES.installments).where(TABLES.installments.c.id == installment_id)
        ).mappings().one()
    return dict(row)


def fetch_all(engine: Engine, table: sa.Table) -> list[dict[str, Any]]:
    with engine.connect() as conn:
        return [dict(r) for r in conn.execute(sa.select(table)).mappings().all()]


def utc(year, month, day, hour=0, minute=0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=UTC)


class FakeProvider:
    """Records sends; channels listed in ``fail_channels`` raise."""

    name = "fake"

    def __init__(self, fail_channels: set[Channel] | None = None, error: Exception | None = None):
        self.fail_channels = fail_channels or set()
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def send_channel_message(
        self, channel: Channel, recipient: Recipient, template_data: dict[str, Any]
    ) -> ProviderReceipt:
        with self._lock:
            self.calls.append({"channel": channel, "recipient": recipient, **template_data})
            n = len(self.calls)
        if channel in self.fail_channels:
            raise self.error or ProviderDeliveryError(self.name, f"{channel.value} gateway down", 503)
        return ProviderReceipt(provider=self.name, message_id=f"msg-{n}")

    def calls_for(self, channel: Channel) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["channel"] is channel]
