from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional


@dataclass(frozen=True)
class InstallmentStatus:
    current_installment: int
    total_installments: int
    current_installment_value_cents: int
    is_completed: bool
    is_due_this_month: bool

    @property
    def is_multi(self) -> bool:
        return self.total_installments > 1


def months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


def split_cents(total_cents: int, parts: int) -> int:
    share = (Decimal(total_cents) / Decimal(parts)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(share)


def resolve_installment(
    purchase_date: date,
    installments: Optional[int],
    total_value_cents: int,
    today: date,
) -> InstallmentStatus:
    """Work out which installment of a purchase is payable in ``today``'s month.

    A missing or non-positive installment count is a single payment that is
    always current. For a plan of N installments the first is due in the
    purchase month; once more than N months have started the plan is
    completed and its per-installment value drops to zero. A purchase dated
    after ``today`` reports installment 1 at its full share.
    """
    if not installments or installments <= 1:
        return InstallmentStatus(
            current_installment=1,
            total_installments=1,
            current_installment_value_cents=total_value_cents,
            is_completed=False,
            is_due_this_month=True,
        )

    elapsed = months_between(purchase_date, today)
    number = min(max(elapsed + 1, 1), installments)
    completed = elapsed + 1 > installments
    value = 0 if completed else split_cents(total_value_cents, installments)
    return InstallmentStatus(
        current_installment=number,
        total_installments=installments,
        current_installment_value_cents=value,
        is_completed=completed,
        is_due_this_month=0 <= elapsed < installments,
    )


def resolve_for_expense(expense, today: date) -> InstallmentStatus:
    return resolve_installment(
        expense.date, expense.installments, expense.total_value_cents, today
    )


def display_description(description: str, status: InstallmentStatus) -> str:
    if not status.is_multi:
        return description
    return (
        f"{description} ({status.current_installment}/{status.total_installments})"
    )
