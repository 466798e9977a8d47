"""Tests for reserve-before-send notification dispatch."""

import threading
from datetime import date, timedelta

import pytest
import sqlalchemy as sa

from agents.installments.config import AgencyConfig
from agents.installments.dispatch import NotificationDispatchEngine
from agents.installments.dto import Channel, Installment, NotificationOutcome, NotificationType
from agents.installments.job_ledger import NOTIFICATION_JOB, JobRunLedger
from agents.installments.providers import DryRunProvider
from backend.apps.installments import repository
from backend.apps.installments.schema import TABLES
from tests.installments.helpers import FakeProvider, fetch_all, fetch_installment, utc

# 2025-03-10 09:00 in Brisbane
NOW = utc(2025, 3, 9, 23, 0)
TODAY = date(2025, 3, 10)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def dispatcher(engine, provider):
    return NotificationDispatchEngine(engine, provider=provider, max_workers=1)


def _records(engine):
    return fetch_all(engine, TABLES.notification_records)


class TestDueSoon:
    def test_due_soon_email_goes_to_student(self, engine, seed, dispatcher, provider):
        ids = seed.scenario(TODAY + timedelta(days=2))

        [result] = dispatcher.run_notification_dispatch(NOW)

        assert result.sent == 1
        [call] = provider.calls
        assert call["channel"] is Channel.EMAIL
        assert call["recipient"].address == "alex.student@mail.example"
        assert "$2,500.00" in call["body"]
        assert call["subject"].startswith("Payment reminder")
        [record] = _records(engine)
        assert record["installment_id"] == ids["installment_id"]
        assert record["notification_type"] == "due_soon"
        assert record["delivery_status"] == "sent"
        assert record["provider_name"] == "fake"
        assert record["provider_message_id"] == "msg-1"
        assert record["sent_at"] is not None

    def test_second_run_skips_duplicate(self, engine, seed, dispatcher, provider):
        seed.scenario(TODAY + timedelta(days=1))

        dispatcher.run_notification_dispatch(NOW)
        [second] = dispatcher.run_notification_dispatch(NOW + timedelta(minutes=5))

        assert second.sent == 0
        assert second.skipped_duplicate == 1
        assert len(provider.calls) == 1
        assert len(_records(engine)) == 1

    def test_outside_window_is_not_notified(self, engine, seed, dispatcher, provider):
        seed.scenario(TODAY + timedelta(days=5))

        [result] = dispatcher.run_notification_dispatch(NOW)

        assert result.sent == 0
        assert provider.calls == []

    def test_sms_only_when_agency_opted_in(self, engine, seed, dispatcher, provider):
        seed.scenario(TODAY + timedelta(days=1), sms_enabled=True)

        [result] = dispatcher.run_notification_dispatch(NOW)

        assert result.sent == 2
        [sms] = provider.calls_for(Channel.SMS)
        assert sms["recipient"].address == "+61412345678"
        assert {r["channel"] for r in _records(engine)} == {"email", "sms"}

    def test_missing_recipient_reserves_nothing(self, engine, seed, dispatcher, provider):
        agency_id = seed.agency(sms_enabled=True)
        student_id = seed.student(agency_id, email=None, phone="12")
        plan_id = seed.plan(agency_id, student_id)
        seed.installment(agency_id, plan_id, TODAY)

        [result] = dispatcher.run_notification_dispatch(NOW)

        assert result.skipped_no_recipient == 2
        assert result.sent == 0
        assert _records(engine) == []
        assert provider.calls == []

    def test_due_today_past_cutoff_gets_no_due_soon_notice(self, engine, seed, dispatcher, provider):
        # Status update has not run yet; 18:00 in Brisbane is past the 17:00 cutoff
        ids = seed.scenario(date(2025, 1, 15))

        [result] = dispatcher.run_notification_dispatch(utc(2025, 1, 15, 8, 0))

        assert result.sent == 0
        assert provider.calls == []
        assert _records(engine) == []
        assert fetch_installment(engine, ids["installment_id"])["status"] == "pending"


class TestOverdue:
    def _overdue(self, seed, **student):
        agency_id = seed.agency()
        agent = seed.user(agency_id, name="Sam Agent", email="sam.agent@agency.example")
        seed.user(agency_id, name="Ada Admin", email="ada@agency.example", role="agency_admin")
        seed.user(
            agency_id, name="Muted Admin", email="muted@agency.example", role="agency_admin",
            email_notifications_enabled=False,
        )
        student_id = seed.student(agency_id, assigned_user_id=student.get("assigned", agent))
        plan_id = seed.plan(agency_id, student_id)
        inst = seed.installment(agency_id, plan_id, TODAY - timedelta(days=3), status="overdue")
        return agency_id, inst

    def test_overdue_email_goes_to_sales_agent_with_admin_cc(self, engine, seed, dispatcher, provider):
        self._overdue(seed)

        [result] = dispatcher.run_notification_dispatch(NOW)

        assert result.sent == 1
        [call] = provider.calls
        assert call["recipient"].address == "sam.agent@agency.example"
        assert call["recipient"].cc == ("ada@agency.example",)
        assert "now overdue" in call["body"]
        assert _records(engine)[0]["notification_type"] == "overdue"

    def test_falls_back_to_admins_without_sales_agent(self, engine, seed, dispatcher, provider):
        self._overdue(seed, assigned=None)

        dispatcher.run_notification_dispatch(NOW)

        [call] = provider.calls
        assert call["recipient"].address == "ada@agency.example"
        assert call["recipient"].role == "agency_admin"

    def test_pending_rows_are_not_sent_overdue_notices(self, engine, seed, dispatcher, provider):
        # Past due but the transition job has not run: not eligible as overdue
        seed.scenario(TODAY - timedelta(days=2))

        [result] = dispatcher.run_notification_dispatch(NOW)

        assert result.sent == 0


class TestProviderFailures:
    def test_sms_failure_does_not_affect_email(self, engine, seed):
        provider = FakeProvider(fail_channels={Channel.SMS})
        dispatcher = NotificationDispatchEngine(engine, provider=provider, max_workers=1)
        ids = seed.scenario(TODAY + timedelta(days=1), sms_enabled=True)

        [result] = dispatcher.run_notification_dispatch(NOW)

        assert result.sent == 1
        assert result.failed == 1
        by_channel = {r["channel"]: r for r in _records(engine)}
        assert by_channel["email"]["delivery_status"] == "sent"
        assert by_channel["sms"]["delivery_status"] == "failed"
        assert "gateway down" in by_channel["sms"]["error_message"]
        assert by_channel["sms"]["installment_id"] == ids["installment_id"]

    def test_failed_slot_is_never_retried(self, engine, seed):
        provider = FakeProvider(fail_channels={Channel.EMAIL}, error=RuntimeError("boom"))
        dispatcher = NotificationDispatchEngine(engine, provider=provider, max_workers=1)
        seed.scenario(TODAY + timedelta(days=1))

        [first] = dispatcher.run_notification_dispatch(NOW)
        provider.fail_channels = set()
        [second] = dispatcher.run_notification_dispatch(NOW + timedelta(hours=1))

        assert first.failed == 1
        assert second.skipped_duplicate == 1
        assert len(provider.calls) == 1
        assert _records(engine)[0]["delivery_status"] == "failed"

    def test_activity_entries_for_sent_and_failed(self, engine, seed):
        provider = FakeProvider(fail_channels={Channel.SMS})
        dispatcher = NotificationDispatchEngine(engine, provider=provider, max_workers=1, send_digests=False)
        seed.scenario(TODAY + timedelta(days=1), sms_enabled=True)

        dispatcher.run_notification_dispatch(NOW)

        actions = sorted(e["action"] for e in fetch_all(engine, TABLES.activity_log))
        assert actions == ["notification_failed", "notification_sent"]


class TestCollegeDigest:
    def _overdue_for_college(self, seed, count=2):
        agency_id = seed.agency()
        college_id = seed.college(agency_id)
        for n in range(count):
            student_id = seed.student(agency_id, full_name=f"Student {n}", email=None)
            plan_id = seed.plan(agency_id, student_id, college_id=college_id)
            seed.installment(agency_id, plan_id, TODAY - timedelta(days=n + 1), status="overdue")
        return agency_id, college_id

    def test_one_digest_per_college_per_day(self, engine, seed, dispatcher, provider):
        self._overdue_for_college(seed)

        [first] = dispatcher.run_notification_dispatch(NOW)
        [second] = dispatcher.run_notification_dispatch(NOW + timedelta(hours=2))

        assert first.digests_sent == 1
        assert second.digests_sent == 0
        assert second.digests_skipped == 1
        [call] = provider.calls
        assert call["recipient"].address == "accounts@college.example"
        assert "Student 0" in call["body"] and "Student 1" in call["body"]
        assert "$5,000.00" in call["body"]
        [digest] = fetch_all(engine, TABLES.college_digests)
        assert digest["installment_count"] == 2
        assert digest["digest_date"] == TODAY
        assert digest["delivery_status"] == "sent"

    def test_next_local_day_sends_again(self, engine, seed, dispatcher):
        self._overdue_for_college(seed, count=1)

        dispatcher.run_notification_dispatch(NOW)
        [next_day] = dispatcher.run_notification_dispatch(NOW + timedelta(days=1))

        assert next_day.digests_sent == 1

    def test_digest_failure_is_recorded(self, engine, seed):
        provider = FakeProvider(fail_channels={Channel.EMAIL})
        dispatcher = NotificationDispatchEngine(engine, provider=provider, max_workers=1)
        self._overdue_for_college(seed, count=1)

        [result] = dispatcher.run_notification_dispatch(NOW)

        assert result.digests_failed == 1
        [digest] = fetch_all(engine, TABLES.college_digests)
        assert digest["delivery_status"] == "failed"


class TestConcurrency:
    def test_concurrent_reservations_send_once(self, engine, seed):
        ids = seed.scenario(TODAY + timedelta(days=1))
        provider = DryRunProvider()
        dispatchers = [NotificationDispatchEngine(engine, provider=provider) for _ in range(2)]
        with engine.connect() as conn:
            agency_row = repository.list_agency_rows(conn)[0]
            [row] = repository.select_pending_due_between(conn, ids["agency_id"], TODAY, TODAY + timedelta(days=4))
        agency = AgencyConfig.from_row(agency_row)
        inst = Installment.from_row(row)
        barrier = threading.Barrier(2)
        outcomes = []

        def worker(d):
            barrier.wait()
            outcomes.append(d.dispatch_unit(agency, inst, NotificationType.DUE_SOON, Channel.EMAIL, [], NOW))

        threads = [threading.Thread(target=worker, args=(d,)) for d in dispatchers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(o.value for o in outcomes) == [
            NotificationOutcome.SENT.value,
            NotificationOutcome.SKIPPED_DUPLICATE.value,
        ]
        assert len(provider.sent) == 1
        assert len(_records(engine)) == 1


class TestRunLedger:
    def test_dispatch_run_is_recorded(self, engine, seed, dispatcher):
        seed.scenario(TODAY + timedelta(days=1))

        dispatcher.run_notification_dispatch(NOW)

        run = JobRunLedger(engine).latest_run(NOTIFICATION_JOB)
        assert run["status"] == "success"
        assert run["records_updated"] == 1
        assert run["metadata"]["sent"] == 1

    def test_broken_agency_does_not_stop_others(self, engine, seed, dispatcher):
        seed.scenario(TODAY + timedelta(days=1))
        bad = seed.scenario(TODAY + timedelta(days=1), due_soon_threshold_days=99)

        results = {r.agency_id: r for r in dispatcher.run_notification_dispatch(NOW)}

        assert results[bad["agency_id"]].error is not None
        assert sum(r.sent for r in results.values()) == 1
        with engine.connect() as conn:
            count = conn.execute(sa.select(sa.func.count()).select_from(TABLES.notification_records)).scalar()
        assert count == 1
