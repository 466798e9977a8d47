"""At-most-once notification dispatch per agency.

Every (installment, notification type, channel) unit follows the same order:
resolve a recipient, reserve the dedup slot by inserting a
``notification_records`` row, then call the provider and finalize the row as
``sent`` or ``failed``. The unique constraint on the dedup key is the only
guard against overlapping runs; a unit whose insert loses the race is
skipped. A reserved slot is never released, so a failed send is not retried
by later runs.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from backend.apps.installments import repository
from backend.core.config import settings
from backend.core.observability import metrics

from .activity import ActivityAction, ActivityFeed, EntityType
from .config import AgencyConfig, TenantConfigProvider, as_utc
from .dto import (
    AgencyDispatchResult,
    Channel,
    DeliveryStatus,
    Installment,
    NotificationOutcome,
    NotificationType,
    Recipient,
)
from .errors import DedupConflict, JobFatalError, TenantConfigError
from .job_ledger import NOTIFICATION_JOB, JobRunLedger, resolve_run_status
from .policies import DueSoonClassifier
from .providers import ChannelProvider, default_provider
from .recipients import resolve_recipient
from .runner import for_each_agency
from .playbooks import COLLEGE_DIGEST, TemplateEngine

logger = logging.getLogger(__name__)


def build_context(
    agency: AgencyConfig, inst: Installment, recipient: Recipient | None
) -> dict[str, Any]:
    """Template variables for one installment notification."""
    return {
        "agency_id": agency.agency_id,
        "agency_name": agency.name or "Your agency",
        "agency_contact_email": agency.contact_email,
        "agency_contact_phone": agency.contact_phone,
        "payment_instructions": agency.payment_instructions,
        "app_url": settings.APP_URL.rstrip("/"),
        "installment_id": inst.installment_id,
        "installment_number": inst.installment_number,
        "payment_plan_id": inst.payment_plan_id,
        "amount": inst.amount,
        "due_date": inst.student_due_date,
        "student_name": inst.student_name or "Student",
        "college_name": inst.college_name,
        "recipient_name": recipient.name if recipient else None,
    }


class NotificationDispatchEngine:
    """Sends due-soon and overdue notifications plus the daily college digest."""

    def __init__(
        self,
        engine: Engine,
        provider: ChannelProvider | None = None,
        templates: TemplateEngine | None = None,
        config_provider: TenantConfigProvider | None = None,
        activity: ActivityFeed | None = None,
        ledger: JobRunLedger | None = None,
        max_workers: int | None = None,
        send_digests: bool = True,
    ):
        self.engine = engine
        self.provider = provider or default_provider()
        self.templates = templates or TemplateEngine()
        self.config_provider = config_provider or TenantConfigProvider(engine)
        self.activity = activity or ActivityFeed()
        self.ledger = ledger or JobRunLedger(engine)
        self.max_workers = max_workers
        self.send_digests = send_digests

    @property
    def provider_name(self) -> str:
        return getattr(self.provider, "name", self.provider.__class__.__name__)

    def run_notification_dispatch(self, now: datetime | None = None) -> list[AgencyDispatchResult]:
        """Dispatch for every agency and record the run in the job ledger.

        Args:
            now: Reference instant (defaults to the current UTC time)

        Returns:
            One result per agency, in agency order

        Raises:
            JobFatalError: If storage is unreachable
        """
        now = as_utc(now)
        with self.ledger.track(NOTIFICATION_JOB, now) as run:
            rows = self.config_provider.list_agencies()
            results = for_each_agency(rows, lambda row: self.dispatch_agency(row, now), self.max_workers)

            failed = [r.agency_id for r in results if not r.ok]
            run.status, run.error_message = resolve_run_status(failed, len(results))
            run.records_updated = sum(r.sent + r.digests_sent for r in results)
            run.metadata = {
                "agencies_processed": len(results),
                "agencies_failed": len(failed),
                "sent": sum(r.sent for r in results),
                "skipped_duplicate": sum(r.skipped_duplicate for r in results),
                "skipped_no_recipient": sum(r.skipped_no_recipient for r in results),
                "failed": sum(r.failed for r in results),
                "digests_sent": sum(r.digests_sent for r in results),
                "results": [r.to_dict() for r in results],
            }
        logger.info(
            "notification_dispatch_finished",
            extra={"run_id": run.run_id, "agencies": len(results), "sent": run.metadata["sent"]},
        )
        return results

    def dispatch_agency(self, row: dict[str, Any], now: datetime) -> AgencyDispatchResult:
        """Dispatch one agency; failures become ``AgencyDispatchResult.error``."""
        agency_id = str(row.get("id"))
        try:
            agency = self.config_provider.load(row)
            return self.dispatch_for_agency(agency, now)
        except TenantConfigError as exc:
            logger.warning("agency_config_invalid", extra={"agency_id": agency_id, "error": str(exc)})
            metrics.increment_agency_failures(NOTIFICATION_JOB)
            return AgencyDispatchResult(agency_id=agency_id, error=str(exc))
        except OperationalError as exc:
            raise JobFatalError(f"storage unavailable while dispatching agency {agency_id}: {exc}") from exc
        except SQLAlchemyError as exc:
            logger.error("agency_dispatch_failed", extra={"agency_id": agency_id, "error": str(exc)})
            metrics.increment_agency_failures(NOTIFICATION_JOB)
            return AgencyDispatchResult(agency_id=agency_id, error=str(exc))

    def dispatch_for_agency(self, agency: AgencyConfig, now: datetime) -> AgencyDispatchResult:
        result = AgencyDispatchResult(agency_id=agency.agency_id)
        with self.engine.connect() as conn:
            overdue = [Installment.from_row(r) for r in repository.select_overdue(conn, agency.agency_id)]
            due_soon = DueSoonClassifier(agency).list_due_soon(conn, now)
            admins = repository.list_agency_admins(conn, agency.agency_id)

        units = [(NotificationType.OVERDUE, inst) for inst in overdue]
        units += [(NotificationType.DUE_SOON, inst) for inst in due_soon]
        channels = agency.enabled_channels()
        for notification_type, inst in units:
            for channel in channels:
                outcome = self.dispatch_unit(agency, inst, notification_type, channel, admins, now)
                result.add(outcome)
                metrics.increment_notifications(outcome.value, channel.value)

        if self.send_digests and overdue:
            self.dispatch_college_digests(agency, overdue, now, result)

        logger.info("agency_dispatch_done", extra=result.to_dict())
        return result

    def dispatch_unit(
        self,
        agency: AgencyConfig,
        inst: Installment,
        notification_type: NotificationType,
        channel: Channel,
        admins: list[dict[str, Any]],
        now: datetime,
    ) -> NotificationOutcome:
        """Run the reserve-then-send sequence for one dedup key."""
        recipient = resolve_recipient(notification_type, channel, inst, admins)
        if recipient is None:
            logger.info(
                "notification_no_recipient",
                extra={
                    "agency_id": agency.agency_id,
                    "installment_id": inst.installment_id,
                    "notification_type": notification_type.value,
                    "channel": channel.value,
                },
            )
            return NotificationOutcome.SKIPPED_NO_RECIPIENT

        try:
            record_id = self._reserve(agency, inst, notification_type, channel, now)
        except DedupConflict:
            return NotificationOutcome.SKIPPED_DUPLICATE

        context = build_context(agency, inst, recipient)
        t0 = time.time()
        try:
            message = self.templates.render(agency.agency_id, notification_type.value, channel.value, context)
            receipt = self.provider.send_channel_message(
                channel,
                recipient,
                {
                    "subject": message.subject,
                    "body": message.body,
                    "agency_id": agency.agency_id,
                    "reference": inst.installment_id,
                    "notification_type": notification_type.value,
                },
            )
        except Exception as exc:  # any provider/render failure is terminal for this slot
            self._finalize(
                agency, inst, record_id, notification_type, channel, now,
                delivery_status=DeliveryStatus.FAILED, error_message=str(exc) or exc.__class__.__name__,
            )
            logger.warning(
                "notification_failed",
                extra={
                    "agency_id": agency.agency_id,
                    "installment_id": inst.installment_id,
                    "notification_type": notification_type.value,
                    "channel": channel.value,
                    "error": str(exc),
                },
            )
            return NotificationOutcome.FAILED
        finally:
            metrics.record_provider_duration(channel.value, (time.time() - t0) * 1000)

        self._finalize(
            agency, inst, record_id, notification_type, channel, now,
            delivery_status=DeliveryStatus.SENT,
            provider_name=receipt.provider,
            provider_message_id=receipt.message_id,
        )
        return NotificationOutcome.SENT

    def _reserve(
        self,
        agency: AgencyConfig,
        inst: Installment,
        notification_type: NotificationType,
        channel: Channel,
        now: datetime,
    ) -> str:
        key = (inst.installment_id, notification_type.value, channel.value)
        try:
            with self.engine.begin() as conn:
                return repository.insert_notification_reservation(
                    conn,
                    agency_id=agency.agency_id,
                    student_id=inst.student_id,
                    installment_id=inst.installment_id,
                    notification_type=notification_type.value,
                    channel=channel.value,
                    now=now,
                )
        except IntegrityError as exc:
            raise DedupConflict(key) from exc

    def _finalize(
        self,
        agency: AgencyConfig,
        inst: Installment,
        record_id: str,
        notification_type: NotificationType,
        channel: Channel,
        now: datetime,
        *,
        delivery_status: DeliveryStatus,
        provider_name: str | None = None,
        provider_message_id: str | None = None,
        error_message: str | None = None,
    ) -> None:
        sent = delivery_status is DeliveryStatus.SENT
        with self.engine.begin() as conn:
            repository.finalize_notification(
                conn,
                record_id,
                delivery_status=delivery_status.value,
                sent_at=now if sent else None,
                provider_name=provider_name or self.provider_name,
                provider_message_id=provider_message_id,
                error_message=error_message,
            )
            self.activity.record(
                conn,
                agency_id=agency.agency_id,
                entity_type=EntityType.INSTALLMENT,
                entity_id=inst.installment_id,
                action=ActivityAction.NOTIFICATION_SENT if sent else ActivityAction.NOTIFICATION_FAILED,
                description=(
                    f"{notification_type.value.replace('_', ' ').capitalize()} {channel.value} notification "
                    f"{'sent' if sent else 'failed'} for installment {inst.installment_number}"
                ),
                metadata={
                    "notification_record_id": record_id,
                    "notification_type": notification_type.value,
                    "channel": channel.value,
                    "delivery_status": delivery_status.value,
                    "error_message": error_message,
                },
                now=now,
            )

    def dispatch_college_digests(
        self,
        agency: AgencyConfig,
        overdue: list[Installment],
        now: datetime,
        result: AgencyDispatchResult,
    ) -> None:
        """One overdue summary per college per agency-local day."""
        by_college: dict[str, list[Installment]] = defaultdict(list)
        for inst in overdue:
            if inst.college_id and inst.college_email:
                by_college[inst.college_id].append(inst)

        digest_date = agency.local_today(now)
        for college_id, items in sorted(by_college.items()):
            total = sum((i.amount for i in items), Decimal("0"))
            try:
                with self.engine.begin() as conn:
                    digest_id = repository.insert_digest_reservation(
                        conn,
                        agency_id=agency.agency_id,
                        college_id=college_id,
                        digest_date=digest_date,
                        installment_count=len(items),
                        total_amount=total,
                        now=now,
                    )
            except IntegrityError:
                result.digests_skipped += 1
                metrics.increment_digests("skipped_duplicate")
                continue

            first = items[0]
            recipient = Recipient(address=first.college_email, name=first.college_name, role="college")
            context = {
                "agency_id": agency.agency_id,
                "agency_name": agency.name or "Your agency",
                "agency_contact_email": agency.contact_email,
                "college_name": first.college_name or "College",
                "installment_count": len(items),
                "total_amount": total,
                "installments": [
                    {"student_name": i.student_name or "Student", "amount": i.amount, "due_date": i.student_due_date}
                    for i in items
                ],
            }
            try:
                message = self.templates.render(agency.agency_id, COLLEGE_DIGEST, Channel.EMAIL.value, context)
                receipt = self.provider.send_channel_message(
                    Channel.EMAIL,
                    recipient,
                    {"subject": message.subject, "body": message.body, "agency_id": agency.agency_id, "reference": digest_id},
                )
            except Exception as exc:  # terminal, same as per-installment sends
                with self.engine.begin() as conn:
                    repository.finalize_digest(
                        conn, digest_id, delivery_status=DeliveryStatus.FAILED.value,
                        error_message=str(exc) or exc.__class__.__name__,
                    )
                result.digests_failed += 1
                metrics.increment_digests("failed")
                logger.warning(
                    "college_digest_failed",
                    extra={"agency_id": agency.agency_id, "college_id": college_id, "error": str(exc)},
                )
                continue

            with self.engine.begin() as conn:
                repository.finalize_digest(
                    conn, digest_id, delivery_status=DeliveryStatus.SENT.value,
                    sent_at=now, provider_message_id=receipt.message_id,
                )
            result.digests_sent += 1
            metrics.increment_digests("sent")
