"""Activity feed entries for agency-visible audit history.

Entries are written on the caller's connection so they commit or roll back
together with the mutation they describe.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Mapping
from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.engine import Connection

from backend.apps.installments.schema import TABLES, InstallmentTables


class EntityType(Enum):
    PAYMENT = "payment"
    PAYMENT_PLAN = "payment_plan"
    STUDENT = "student"
    ENROLLMENT = "enrollment"
    INSTALLMENT = "installment"
    NOTIFICATION = "notification"
    REPORT = "report"


class ActivityAction(Enum):
    CREATED = "created"
    RECORDED = "recorded"
    UPDATED = "updated"
    MARKED_OVERDUE = "marked_overdue"
    NOTIFICATION_SENT = "notification_sent"
    NOTIFICATION_FAILED = "notification_failed"
    DELETED = "deleted"
    EXPORTED = "exported"


def _json_safe(metadata: Mapping[str, Any] | None) -> dict[str, Any]:
    # Decimal and date values are stored as strings
    if not metadata:
        return {}
    return json.loads(json.dumps(dict(metadata), default=str))


class ActivityFeed:
    """Writes ``activity_log`` rows; ``user_id=None`` marks a system action."""

    def __init__(self, tables: InstallmentTables = TABLES):
        self.tables = tables

    def record(
        self,
        conn: Connection,
        agency_id: str,
        entity_type: EntityType | str,
        entity_id: str,
        action: ActivityAction | str,
        description: str,
        metadata: Mapping[str, Any] | None = None,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> str:
        """Insert one activity entry and return its id."""
        entry_id = str(uuid4())
        conn.execute(
            sa.insert(self.tables.activity_log).values(
                id=entry_id,
                agency_id=agency_id,
                user_id=user_id,
                entity_type=entity_type.value if isinstance(entity_type, EntityType) else entity_type,
                entity_id=entity_id,
                action=action.value if isinstance(action, ActivityAction) else action,
                description=description,
                metadata=_json_safe(metadata),
                created_at=now or datetime.now(UTC),
            )
        )
        return entry_id

    def list_recent(self, conn: Connection, agency_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Newest entries first for one agency."""
        log = self.tables.activity_log
        result = conn.execute(
            sa.select(log)
            .where(log.c.agency_id == agency_id)
            .order_by(log.c.created_at.desc(), log.c.id)
            .limit(limit)
        )
        return [dict(row) for row in result.mappings().all()]
