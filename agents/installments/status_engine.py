"""Scheduled pending -> overdue transition per agency.

Candidates are selected with the agency's local date and cutoff; each row is
then written with a guarded update that only matches while the installment is
still ``pending``. A concurrent payment that wins the race turns the update
into a no-op and is counted as a conflict, not an error.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from backend.apps.installments import repository
from backend.core.observability import metrics

from .activity import ActivityAction, ActivityFeed, EntityType
from .config import AgencyConfig, TenantConfigProvider, as_utc
from .dto import AgencyStatusResult, Installment, InstallmentStatus
from .errors import JobFatalError, TenantConfigError, TransitionConflict
from .job_ledger import STATUS_UPDATE_JOB, JobRunLedger, resolve_run_status
from .policies import is_overdue_at
from .runner import for_each_agency

logger = logging.getLogger(__name__)


class StatusTransitionEngine:
    """Moves past-due pending installments to ``overdue``."""

    def __init__(
        self,
        engine: Engine,
        config_provider: TenantConfigProvider | None = None,
        activity: ActivityFeed | None = None,
        ledger: JobRunLedger | None = None,
        max_workers: int | None = None,
    ):
        self.engine = engine
        self.config_provider = config_provider or TenantConfigProvider(engine)
        self.activity = activity or ActivityFeed()
        self.ledger = ledger or JobRunLedger(engine)
        self.max_workers = max_workers

    def run_status_update(self, now: datetime | None = None) -> list[AgencyStatusResult]:
        """Transition every agency and record the run in the job ledger.

        Args:
            now: Reference instant (defaults to the current UTC time)

        Returns:
            One result per agency, in agency order

        Raises:
            JobFatalError: If storage is unreachable
        """
        now = as_utc(now)
        with self.ledger.track(STATUS_UPDATE_JOB, now) as run:
            rows = self.config_provider.list_agencies()
            results = for_each_agency(rows, lambda row: self.update_agency(row, now), self.max_workers)

            failed = [r.agency_id for r in results if not r.ok]
            run.status, run.error_message = resolve_run_status(failed, len(results))
            run.records_updated = sum(r.updated_count for r in results)
            run.metadata = {
                "agencies_processed": len(results),
                "agencies_failed": len(failed),
                "results": [r.to_dict() for r in results],
            }
        logger.info(
            "status_update_finished",
            extra={
                "run_id": run.run_id,
                "agencies": len(results),
                "records_updated": run.records_updated,
            },
        )
        return results

    def update_agency(self, row: dict[str, Any], now: datetime) -> AgencyStatusResult:
        """Transition one agency; failures become ``AgencyStatusResult.error``."""
        agency_id = str(row.get("id"))
        try:
            agency = self.config_provider.load(row)
            return self.transition_agency(agency, now)
        except TenantConfigError as exc:
            logger.warning("agency_config_invalid", extra={"agency_id": agency_id, "error": str(exc)})
            metrics.increment_agency_failures(STATUS_UPDATE_JOB)
            return AgencyStatusResult(agency_id=agency_id, error=str(exc))
        except OperationalError as exc:
            raise JobFatalError(f"storage unavailable while updating agency {agency_id}: {exc}") from exc
        except SQLAlchemyError as exc:
            logger.error("agency_status_update_failed", extra={"agency_id": agency_id, "error": str(exc)})
            metrics.increment_agency_failures(STATUS_UPDATE_JOB)
            return AgencyStatusResult(agency_id=agency_id, error=str(exc))

    def transition_agency(self, agency: AgencyConfig, now: datetime) -> AgencyStatusResult:
        local_now = agency.local_now(now)
        today = local_now.date()
        include_today = local_now.time().replace(tzinfo=None) > agency.overdue_cutoff
        result = AgencyStatusResult(agency_id=agency.agency_id)

        with self.engine.connect() as conn:
            rows = repository.select_transition_candidates(conn, agency.agency_id, today, include_today)

        for row in rows:
            inst = Installment.from_row(row)
            # Query is a prefilter; the predicate decides
            if not is_overdue_at(inst.student_due_date, local_now, agency.overdue_cutoff):
                continue
            try:
                with self.engine.begin() as conn:
                    self._transition_one(conn, agency, inst, now)
            except TransitionConflict:
                result.conflicts += 1
                metrics.increment_transition_conflicts()
                logger.debug(
                    "transition_conflict",
                    extra={"agency_id": agency.agency_id, "installment_id": inst.installment_id},
                )
                continue
            result.updated_count += 1
            result.transitioned_ids.append(inst.installment_id)

        if result.updated_count:
            metrics.increment_transitions(result.updated_count)
        logger.info(
            "agency_status_updated",
            extra={
                "agency_id": agency.agency_id,
                "updated_count": result.updated_count,
                "conflicts": result.conflicts,
                "local_date": today.isoformat(),
            },
        )
        return result

    def _transition_one(
        self, conn: Connection, agency: AgencyConfig, inst: Installment, now: datetime
    ) -> None:
        if not repository.mark_overdue(conn, inst.installment_id, agency.agency_id, now):
            raise TransitionConflict(inst.installment_id)
        self.activity.record(
            conn,
            agency_id=agency.agency_id,
            entity_type=EntityType.INSTALLMENT,
            entity_id=inst.installment_id,
            action=ActivityAction.MARKED_OVERDUE,
            description=(
                f"Installment {inst.installment_number} for {inst.student_name or 'student'} "
                f"marked overdue (due {inst.student_due_date.isoformat()})"
            ),
            metadata={
                "installment_id": inst.installment_id,
                "payment_plan_id": inst.payment_plan_id,
                "student_name": inst.student_name,
                "amount": inst.amount,
                "student_due_date": inst.student_due_date,
                "status_before": InstallmentStatus.PENDING.value,
                "status_after": InstallmentStatus.OVERDUE.value,
            },
            user_id=None,
            now=now,
        )
