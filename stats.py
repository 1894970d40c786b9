import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Optional

from installments import resolve_installment
from models import ExpenseCategory
from periods import month_period


logger = logging.getLogger(__name__)


@dataclass
class ExpenseStats:
    total_spent_cents: int = 0
    monthly_spent_cents: int = 0
    fixed_expenses_cents: int = 0
    expense_count: int = 0
    category_breakdown: dict[str, int] = field(default_factory=dict)


def coerce_cents(value: object, *, expense_id: Optional[int] = None) -> int:
    if isinstance(value, bool):
        value = None
    if isinstance(value, int):
        return value
    try:
        if isinstance(value, float):
            amount = Decimal(str(value))
        else:
            amount = Decimal(str(value).strip())
        if not amount.is_finite():
            raise InvalidOperation
    except (InvalidOperation, ValueError):
        logger.warning(
            f"stats_unparseable_amount: expense_id={expense_id} value={value!r}"
        )
        return 0
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def effective_date(expense) -> date:
    if expense.is_fixed and expense.is_paid and expense.payment_date:
        return expense.payment_date
    return expense.date


def _ordered_breakdown(totals: dict[str, int]) -> dict[str, int]:
    catch_all = ExpenseCategory.other.value
    items = sorted(
        totals.items(), key=lambda item: (item[0] == catch_all, -item[1], item[0])
    )
    return dict(items)


def aggregate_expenses(expenses: Iterable, today: date) -> ExpenseStats:
    """Summarise an expense set the way the dashboard cards show it.

    Multi-installment purchases contribute only the installment payable in
    ``today``'s month, never the full ticket price. "This month" covers rows
    whose effective date lands in the current month plus installment plans
    with an installment due this month, whatever their purchase date.
    """
    stats = ExpenseStats()
    month = month_period(today)
    totals: dict[str, int] = {}

    for expense in expenses:
        total = coerce_cents(expense.total_value_cents, expense_id=expense.id)
        status = resolve_installment(expense.date, expense.installments, total, today)
        value = status.current_installment_value_cents

        stats.expense_count += 1
        stats.total_spent_cents += value
        if expense.is_fixed:
            stats.fixed_expenses_cents += value
        if month.contains(effective_date(expense)) or (
            status.is_multi and status.is_due_this_month
        ):
            stats.monthly_spent_cents += value
        totals[expense.category] = totals.get(expense.category, 0) + value

    stats.category_breakdown = _ordered_breakdown(totals)
    return stats
