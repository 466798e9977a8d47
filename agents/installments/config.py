"""Per-agency configuration for the installment engine.

Each agency row carries its own timezone, overdue cutoff, due-soon window and
SMS opt-in. Values are validated here so a malformed tenant is skipped with a
``TenantConfigError`` instead of breaking the whole run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from backend.apps.installments import repository
from backend.core.config import settings

from .dto import Channel
from .errors import JobFatalError, TenantConfigError

logger = logging.getLogger(__name__)

MIN_THRESHOLD_DAYS = 1
MAX_THRESHOLD_DAYS = 30


def as_utc(now: datetime | None = None) -> datetime:
    """Aware UTC instant; ``None`` is the current time and naive input is taken as UTC."""
    if now is None:
        return datetime.now(UTC)
    if now.tzinfo is None:
        return now.replace(tzinfo=UTC)
    return now.astimezone(UTC)


def parse_cutoff(value: Any) -> time:
    """Parse ``HH:MM`` or ``HH:MM:SS`` into a ``time``.

    Raises:
        ValueError: If the value is not a valid wall-clock time
    """
    if isinstance(value, time):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"invalid cutoff time {value!r}")
    parts = value.strip().split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise ValueError(f"invalid cutoff time {value!r}")
    return time(*(int(p) for p in parts))


@dataclass(frozen=True)
class AgencyConfig:
    """Validated configuration for one agency (tenant)."""

    agency_id: str
    timezone: ZoneInfo
    overdue_cutoff: time
    due_soon_threshold_days: int
    sms_enabled: bool = False
    name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    payment_instructions: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> AgencyConfig:
        """Build a config from an ``agencies`` row.

        Args:
            row: Raw agency row

        Returns:
            Validated configuration

        Raises:
            TenantConfigError: If timezone, cutoff or threshold are malformed
        """
        agency_id = str(row.get("id") or "")
        if not agency_id:
            raise TenantConfigError("<missing>", "agency row has no id")

        tz_name = row.get("timezone")
        if not tz_name:
            raise TenantConfigError(agency_id, "timezone is not set")
        try:
            tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise TenantConfigError(agency_id, f"unknown timezone {tz_name!r}") from exc

        raw_cutoff = row.get("overdue_cutoff_time") or settings.DEFAULT_OVERDUE_CUTOFF
        try:
            cutoff = parse_cutoff(raw_cutoff)
        except ValueError as exc:
            raise TenantConfigError(agency_id, str(exc)) from exc

        threshold = row.get("due_soon_threshold_days")
        if threshold is None:
            threshold = settings.DEFAULT_DUE_SOON_THRESHOLD_DAYS
        if isinstance(threshold, bool) or not isinstance(threshold, int):
            raise TenantConfigError(agency_id, f"due_soon_threshold_days must be an integer, got {threshold!r}")
        if not MIN_THRESHOLD_DAYS <= threshold <= MAX_THRESHOLD_DAYS:
            raise TenantConfigError(
                agency_id,
                f"due_soon_threshold_days must be between {MIN_THRESHOLD_DAYS} and {MAX_THRESHOLD_DAYS}",
            )

        return cls(
            agency_id=agency_id,
            timezone=tz,
            overdue_cutoff=cutoff,
            due_soon_threshold_days=threshold,
            sms_enabled=bool(row.get("sms_enabled")),
            name=row.get("name"),
            contact_email=row.get("contact_email"),
            contact_phone=row.get("contact_phone"),
            payment_instructions=row.get("payment_instructions"),
        )

    def local_now(self, now: datetime | None = None) -> datetime:
        """Wall-clock time in the agency's timezone (naive ``now`` is treated as UTC)."""
        return as_utc(now).astimezone(self.timezone)

    def local_today(self, now: datetime | None = None) -> date:
        return self.local_now(now).date()

    def enabled_channels(self) -> list[Channel]:
        """Email is always on; SMS only when the agency opted in."""
        channels = [Channel.EMAIL]
        if self.sms_enabled:
            channels.append(Channel.SMS)
        return channels


class TenantConfigProvider:
    """Lists agencies and their raw configuration from storage."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def list_agencies(self) -> list[dict[str, Any]]:
        """Return every agency row.

        Raises:
            JobFatalError: If the database cannot be reached
        """
        try:
            with self.engine.connect() as conn:
                return repository.list_agency_rows(conn)
        except OperationalError as exc:
            logger.error("agency listing failed", extra={"error": str(exc)})
            raise JobFatalError(f"cannot list agencies: {exc}") from exc

    def load(self, row: dict[str, Any]) -> AgencyConfig:
        return AgencyConfig.from_row(row)
