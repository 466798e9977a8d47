"""Durable ledger of scheduled job executions.

A ``running`` row is inserted before any work starts and moved to ``success``
or ``failed`` when the run ends, so a crashed run stays visible as a stale
``running`` row. Stale rows are reported, never cleaned up automatically.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from backend.apps.installments.schema import TABLES, InstallmentTables
from backend.core.config import settings
from backend.core.observability import metrics

from .dto import JobStatus
from .errors import JobFatalError

logger = logging.getLogger(__name__)

STATUS_UPDATE_JOB = "update-installment-statuses"
NOTIFICATION_JOB = "send-notifications"


def _utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass
class JobRun:
    """Mutable handle for an in-flight run inside ``JobRunLedger.track``."""

    run_id: str
    job_name: str
    started_at: datetime
    status: JobStatus = JobStatus.SUCCESS
    records_updated: int = 0
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class JobHealth:
    job_name: str
    status: str
    last_started_at: datetime | None
    hours_since_last_run: float | None

    @property
    def ok(self) -> bool:
        return self.status != "critical"

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "status": self.status,
            "ok": self.ok,
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "hours_since_last_run": (
                round(self.hours_since_last_run, 1) if self.hours_since_last_run is not None else None
            ),
        }


def resolve_run_status(
    failed_agencies: Sequence[str], total_agencies: int
) -> tuple[JobStatus, str | None]:
    """Overall job status from per-agency outcomes.

    Partial failure still counts as ``success`` but names the failing
    agencies; only a run where every agency failed is ``failed``.
    """
    if not failed_agencies:
        return JobStatus.SUCCESS, None
    message = f"{len(failed_agencies)} of {total_agencies} agencies failed: " + ", ".join(failed_agencies)
    if len(failed_agencies) >= total_agencies:
        return JobStatus.FAILED, message
    return JobStatus.SUCCESS, message


class JobRunLedger:
    """Reads and writes ``job_runs`` rows."""

    def __init__(self, engine: Engine, tables: InstallmentTables = TABLES):
        self.engine = engine
        self.table = tables.job_runs

    def start(
        self, job_name: str, now: datetime | None = None, metadata: dict[str, Any] | None = None
    ) -> str:
        """Insert a ``running`` row and return its id."""
        run_id = str(uuid4())
        started_at = _utc(now) or datetime.now(UTC)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    sa.insert(self.table).values(
                        id=run_id,
                        job_name=job_name,
                        started_at=started_at,
                        status=JobStatus.RUNNING.value,
                        records_updated=0,
                        metadata=metadata or {},
                    )
                )
        except OperationalError as exc:
            raise JobFatalError(f"cannot record start of {job_name}: {exc}") from exc
        logger.info("job_run_started", extra={"run_id": run_id, "job_name": job_name})
        return run_id

    def complete(
        self,
        run_id: str,
        status: JobStatus,
        records_updated: int = 0,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None:
        """Finalize a run; only a ``running`` row is updated."""
        if status is JobStatus.RUNNING:
            raise ValueError("a run cannot be completed as 'running'")
        values: dict[str, Any] = {
            "status": status.value,
            "completed_at": datetime.now(UTC) if now is None else _utc(now),
            "records_updated": records_updated,
            "error_message": error_message,
        }
        if metadata is not None:
            values["metadata"] = metadata
        with self.engine.begin() as conn:
            result = conn.execute(
                sa.update(self.table)
                .where(self.table.c.id == run_id)
                .where(self.table.c.status == JobStatus.RUNNING.value)
                .values(**values)
            )
        if result.rowcount != 1:
            logger.warning("job_run_not_running", extra={"run_id": run_id})
        logger.info(
            "job_run_completed",
            extra={
                "run_id": run_id,
                "status": status.value,
                "records_updated": records_updated,
                "has_error": error_message is not None,
            },
        )

    @contextmanager
    def track(self, job_name: str, now: datetime | None = None) -> Iterator[JobRun]:
        """Run a block under a ledger entry.

        The block may set ``status``, ``records_updated``, ``error_message``
        and ``metadata`` on the yielded handle. An exception marks the run
        ``failed`` with the error text and is re-raised.
        """
        started = _utc(now) or datetime.now(UTC)
        run = JobRun(run_id=self.start(job_name, started), job_name=job_name, started_at=started)
        t0 = datetime.now(UTC)
        try:
            yield run
        except Exception as exc:
            try:
                self.complete(
                    run.run_id,
                    JobStatus.FAILED,
                    records_updated=run.records_updated,
                    error_message=str(exc) or exc.__class__.__name__,
                    metadata=run.metadata,
                )
            except SQLAlchemyError:
                # Row stays running and is reported as stale
                logger.exception("job_run_complete_failed", extra={"run_id": run.run_id, "job_name": job_name})
            metrics.increment_job_runs(job_name, JobStatus.FAILED.value)
            raise
        else:
            self.complete(
                run.run_id,
                run.status,
                records_updated=run.records_updated,
                error_message=run.error_message,
                metadata=run.metadata,
            )
            metrics.increment_job_runs(job_name, run.status.value)
        finally:
            metrics.record_job_duration(job_name, (datetime.now(UTC) - t0).total_seconds() * 1000)

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        with self.engine.connect() as conn:
            row = conn.execute(sa.select(self.table).where(self.table.c.id == run_id)).mappings().first()
        return dict(row) if row else None

    def latest_run(self, job_name: str) -> dict[str, Any] | None:
        with self.engine.connect() as conn:
            row = (
                conn.execute(
                    sa.select(self.table)
                    .where(self.table.c.job_name == job_name)
                    .order_by(self.table.c.started_at.desc())
                    .limit(1)
                )
                .mappings()
                .first()
            )
        return dict(row) if row else None

    def find_stale_runs(
        self, older_than: timedelta | None = None, now: datetime | None = None
    ) -> list[dict[str, Any]]:
        """Runs still ``running`` whose start is older than ``older_than``."""
        if older_than is None:
            older_than = timedelta(hours=settings.JOB_STALE_AFTER_HOURS)
        cutoff = (_utc(now) or datetime.now(UTC)) - older_than
        with self.engine.connect() as conn:
            result = conn.execute(
                sa.select(self.table)
                .where(self.table.c.status == JobStatus.RUNNING.value)
                .where(self.table.c.started_at < cutoff)
                .order_by(self.table.c.started_at)
            )
            return [dict(row) for row in result.mappings().all()]

    def job_health(self, job_name: str, now: datetime | None = None) -> JobHealth:
        """Classify freshness of the last start: healthy, warning or critical."""
        now = _utc(now) or datetime.now(UTC)
        last = self.latest_run(job_name)
        if last is None:
            return JobHealth(job_name, "critical", None, None)
        started_at = _utc(last["started_at"])
        hours = (now - started_at).total_seconds() / 3600
        if hours <= settings.JOB_HEALTH_WARN_HOURS:
            status = "healthy"
        elif hours <= settings.JOB_HEALTH_CRITICAL_HOURS:
            status = "warning"
        else:
            status = "critical"
        return JobHealth(job_name, status, started_at, hours)
