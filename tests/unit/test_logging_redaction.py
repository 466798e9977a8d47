"""Tests for PII redaction and mandatory fields in JSON logs."""

import json
import logging
from decimal import Decimal

import pytest

from backend.core.observability.logging import JSONFormatter, hash_actor_token


def _record(msg, **extra):
    record = logging.LogRecord(
        name="agents.installments.dispatch",
        level=logging.INFO,
        pathname="",
        lineno=0,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    @pytest.fixture
    def formatter(self):
        return JSONFormatter()

    def test_mandatory_fields(self, formatter):
        data = json.loads(formatter.format(_record("notification_dispatch_finished")))

        assert data["run_id"] == "unknown"
        assert data["agency_id"] == "unknown"
        assert data["level"] == "info"
        assert data["logger"] == "agents.installments.dispatch"
        assert data["msg"] == "notification_dispatch_finished"
        assert "ts_utc" in data

    def test_agency_and_run_come_from_extra(self, formatter):
        data = json.loads(formatter.format(_record("agency_dispatch_done", agency_id="a-1", run_id="r-1", sent=3)))

        assert data["agency_id"] == "a-1"
        assert data["run_id"] == "r-1"
        assert data["sent"] == 3

    def test_email_redaction(self, formatter):
        data = json.loads(formatter.format(_record("Recipient alex.student@mail.example")))

        assert "alex.student@mail.example" not in data["msg"]
        assert "a***********@mail.example" in data["msg"]

    def test_phone_redaction(self, formatter):
        data = json.loads(formatter.format(_record("SMS to +61 412 345 678")))

        assert "+61 412 345 678" not in data["msg"]
        assert data["msg"].startswith("SMS to +6*")

    def test_extra_fields_are_redacted(self, formatter):
        data = json.loads(formatter.format(_record("notification_failed", error="bounce from bo@college.example")))

        assert "bo@college.example" not in data["error"]
        assert "b*@college.example" in data["error"]

    def test_non_pii_is_preserved(self, formatter):
        data = json.loads(formatter.format(_record("Installment 12345 marked overdue")))

        assert data["msg"] == "Installment 12345 marked overdue"

    def test_non_json_values_are_stringified(self, formatter):
        data = json.loads(formatter.format(_record("digest", total_amount=Decimal("10.50"))))

        assert data["total_amount"] == "10.50"


def test_hash_actor_token_is_stable_and_opaque():
    first = hash_actor_token("secret-token")

    assert first == hash_actor_token("secret-token")
    assert first != hash_actor_token("other-token")
    assert "secret-token" not in first
    assert len(first) == 64
