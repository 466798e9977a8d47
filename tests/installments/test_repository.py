"""Tests for tenant scoping of the joined installment queries."""

from datetime import date

import pytest

from backend.apps.installments import repository


@pytest.fixture
def crossed(seed):
    """An installment tagged with one agency but attached to another agency's plan."""
    mine = seed.agency()
    other = seed.agency()
    other_student = seed.student(other)
    other_plan = seed.plan(other, other_student)
    pending = seed.installment(mine, other_plan, date(2025, 5, 2))
    overdue = seed.installment(mine, other_plan, date(2025, 4, 2), installment_number=2, status="overdue")
    return mine, pending, overdue


class TestTenantScoping:
    def test_transition_candidates_require_plan_of_same_agency(self, engine, crossed):
        mine, _, _ = crossed

        with engine.connect() as conn:
            assert repository.select_transition_candidates(conn, mine, date(2025, 6, 1), True) == []

    def test_overdue_requires_plan_of_same_agency(self, engine, crossed):
        mine, _, _ = crossed

        with engine.connect() as conn:
            assert repository.select_overdue(conn, mine) == []

    def test_due_window_requires_plan_of_same_agency(self, engine, crossed):
        mine, _, _ = crossed

        with engine.connect() as conn:
            assert repository.select_pending_due_between(conn, mine, date(2025, 5, 1), date(2025, 5, 5)) == []

    def test_rows_of_own_plans_are_returned(self, engine, seed):
        ids = seed.scenario(date(2025, 5, 2))
        overdue = seed.installment(ids["agency_id"], ids["plan_id"], date(2025, 4, 2), installment_number=2, status="overdue")

        with engine.connect() as conn:
            pending_rows = repository.select_pending_due_between(conn, ids["agency_id"], date(2025, 5, 1), date(2025, 5, 5))
            overdue_rows = repository.select_overdue(conn, ids["agency_id"])

        assert [r["id"] for r in pending_rows] == [ids["installment_id"]]
        assert [r["id"] for r in overdue_rows] == [overdue]
