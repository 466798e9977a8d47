"""Commission figures for payment plans.

All arithmetic is ``Decimal``; rounding to cents (half-up) happens once, on
the final figure. Earned commission follows cash actually received, while
outstanding commission only looks at overdue, unpaid rows, so
``earned + outstanding`` is not expected to equal the plan's expected
commission.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy.engine import Connection

from backend.apps.installments import repository

from .dto import InstallmentStatus, PlanCommission

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")
GST_DIVISOR = Decimal("1.10")


def _dec(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: Decimal) -> Decimal:
    """Round half-up to two decimals."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_expected_commission(total_amount: Any, rate_percent: Any) -> Decimal:
    """``total x rate / 100``; missing or negative inputs give 0."""
    total, rate = _dec(total_amount), _dec(rate_percent)
    if total is None or rate is None or total < 0 or rate < 0:
        return round_money(ZERO)
    return round_money(total * rate / HUNDRED)


def calculate_commissionable_value(
    total_course_value: Any,
    materials_cost: Any = None,
    admin_fees: Any = None,
    other_fees: Any = None,
) -> Decimal:
    """Course value minus non-commissionable fees, never below zero."""
    total = _dec(total_course_value) or ZERO
    fees = sum((_dec(f) or ZERO for f in (materials_cost, admin_fees, other_fees)), ZERO)
    return max(total - fees, ZERO)


def calculate_expected_commission_gst(
    commissionable_value: Any, commission_rate: Any, gst_inclusive: bool = True
) -> Decimal:
    """Expected commission with a fractional rate (``0.15``) and GST handling.

    GST-exclusive values have the 10% GST removed before the rate is applied.
    """
    value, rate = _dec(commissionable_value), _dec(commission_rate)
    if value is None or rate is None or value < 0 or rate < 0:
        return round_money(ZERO)
    base = value if gst_inclusive else value / GST_DIVISOR
    return round_money(base * rate)


def _row(item: Any) -> Mapping[str, Any]:
    if isinstance(item, Mapping):
        return item
    return vars(item)


def _status(value: Any) -> str:
    return value.value if isinstance(value, InstallmentStatus) else str(value)


def earned_commission(
    total_amount: Any, expected_commission: Any, installments: Iterable[Any]
) -> Decimal:
    """Expected commission scaled by the share of the plan already paid.

    Only commission-generating rows with a ``paid_date`` count. The paid
    share is capped at 1 so earned never exceeds expected.
    """
    total = _dec(total_amount)
    expected = _dec(expected_commission) or ZERO
    if total is None or total <= 0 or expected <= 0:
        return round_money(ZERO)
    paid = ZERO
    for item in installments:
        row = _row(item)
        if not row.get("generates_commission", True) or row.get("paid_date") is None:
            continue
        paid += _dec(row.get("paid_amount")) or ZERO
    ratio = min(paid / total, Decimal("1"))
    return round_money(ratio * expected)


def outstanding_commission(installments: Iterable[Any], rate_percent: Any) -> Decimal:
    """Commission on overdue, unpaid, commission-generating installments."""
    rate = _dec(rate_percent)
    if rate is None or rate <= 0:
        return round_money(ZERO)
    total = ZERO
    for item in installments:
        row = _row(item)
        if _status(row.get("status")) != InstallmentStatus.OVERDUE.value:
            continue
        if row.get("paid_date") is not None or not row.get("generates_commission", True):
            continue
        total += (_dec(row.get("amount")) or ZERO) * rate / HUNDRED
    return round_money(total)


def summarize_plan(plan: Mapping[str, Any], installments: Iterable[Any]) -> PlanCommission:
    """Expected, earned and outstanding commission for one plan row."""
    rows = list(installments)
    expected = _dec(plan.get("expected_commission"))
    if expected is None:
        expected = calculate_expected_commission(plan.get("total_amount"), plan.get("commission_rate_percent"))
    return PlanCommission(
        payment_plan_id=str(plan["id"]),
        expected=round_money(expected),
        earned=earned_commission(plan.get("total_amount"), expected, rows),
        outstanding=outstanding_commission(rows, plan.get("commission_rate_percent")),
    )


class CommissionRepository:
    """Loads a plan and its installments and summarises commission."""

    def load_plan_commission(self, conn: Connection, agency_id: str, plan_id: str) -> PlanCommission | None:
        plan = repository.load_payment_plan(conn, agency_id, plan_id)
        if plan is None:
            return None
        rows = repository.load_plan_installments(conn, agency_id, plan_id)
        return summarize_plan(plan, rows)
