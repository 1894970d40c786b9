from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import and_, case, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import get_settings
from models import (
    Earning,
    Expense,
    FixedExpenseTemplate,
    Income,
    PasswordResetCode,
    RefreshToken,
    User,
)
from installments import resolve_for_expense
from periods import local_today, month_period
from recurrence import FixedExpenseMaterializer, MaterializeResult
from schemas import (
    EarningIn,
    EarningUpdate,
    ExpenseIn,
    ExpenseUpdate,
    IncomeIn,
    IncomeUpdate,
    PasswordChangeIn,
    ProfileUpdateIn,
    RegisterIn,
)
from stats import aggregate_expenses
from tokens import (
    generate_refresh_token,
    generate_reset_code,
    hash_password,
    hash_reset_code,
    verify_password,
)


logger = logging.getLogger(__name__)

EXPENSE_SORTS = ("date_desc", "date_asc", "amount_desc", "amount_asc")
EARNING_SORTS = EXPENSE_SORTS
NULLABLE_TEXT_FIELDS = ("account", "location", "notes")


class NotFoundError(ValueError):
    pass


class AuthenticationError(Exception):
    pass


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _plain(value: object) -> object:
    return value.value if isinstance(value, Enum) else value


@dataclass
class ExpenseFilters:
    search: Optional[str] = None
    category: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    fixed: Optional[bool] = None
    paid: Optional[bool] = None


def _effective_date_expr():
    return case(
        (
            and_(Expense.is_fixed.is_(True), Expense.is_paid.is_(False)),
            Expense.date,
        ),
        (Expense.payment_date.isnot(None), Expense.payment_date),
        else_=Expense.date,
    )


class ExpenseService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _filtered(self, filters: ExpenseFilters):
        stmt = select(Expense).where(Expense.user_id == self.user_id)
        if filters.search:
            like = f"%{filters.search.lower()}%"
            stmt = stmt.where(func.lower(Expense.description).like(like))
        if filters.category:
            stmt = stmt.where(Expense.category == filters.category)
        if filters.start_date:
            stmt = stmt.where(Expense.date >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(Expense.date <= filters.end_date)
        if filters.fixed is not None:
            stmt = stmt.where(Expense.is_fixed.is_(filters.fixed))
        if filters.paid is not None:
            stmt = stmt.where(Expense.is_paid.is_(filters.paid))
        return stmt

    def list(
        self,
        filters: ExpenseFilters,
        page: int = 1,
        limit: int = 10,
        sort: str = "date_desc",
        today: Optional[date] = None,
    ) -> tuple[list[Expense], int]:
        if sort not in EXPENSE_SORTS:
            raise ValueError(f"Unsupported sort: {sort}")
        page = max(page, 1)
        offset = (page - 1) * limit

        if sort in ("amount_desc", "amount_asc"):
            # Ordered by the installment payable this month, as listed.
            today = today or local_today()
            rows = self.all(filters)
            descending = sort == "amount_desc"
            rows.sort(
                key=lambda row: (
                    resolve_for_expense(row, today).current_installment_value_cents,
                    row.id,
                ),
                reverse=descending,
            )
            return rows[offset : offset + limit], len(rows)

        stmt = self._filtered(filters)
        if sort == "date_asc":
            order = (_effective_date_expr().asc(), Expense.id.asc())
        else:
            order = (_effective_date_expr().desc(), Expense.id.desc())

        items = self.session.scalars(
            stmt.order_by(*order).offset(offset).limit(limit)
        ).all()
        total = self.session.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()
        return list(items), int(total or 0)

    def all(self, filters: Optional[ExpenseFilters] = None) -> list[Expense]:
        stmt = self._filtered(filters or ExpenseFilters()).order_by(
            Expense.date, Expense.id
        )
        return list(self.session.scalars(stmt).all())

    def get(self, expense_id: int) -> Expense:
        expense = self.session.get(Expense, expense_id)
        if not expense or expense.user_id != self.user_id:
            raise NotFoundError("Expense not found")
        return expense

    def _new_template(self) -> FixedExpenseTemplate:
        template = FixedExpenseTemplate(user_id=self.user_id)
        self.session.add(template)
        self.session.flush()
        return template

    def _commit(self, expense: Expense) -> Expense:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ValueError(
                "This fixed expense already has an instance on that date"
            ) from exc
        self.session.refresh(expense)
        return expense

    def create(self, data: ExpenseIn, today: Optional[date] = None) -> Expense:
        today = today or local_today()
        expense = Expense(
            user_id=self.user_id,
            date=data.date,
            category=_plain(data.category),
            description=data.description.strip(),
            unit_value_cents=data.unit_value_cents,
            quantity=data.quantity,
            total_value_cents=data.unit_value_cents * data.quantity,
            payment_method=_plain(data.payment_method),
            account=_clean_text(data.account),
            location=_clean_text(data.location),
            is_fixed=data.is_fixed,
            payment_date=data.payment_date,
            is_paid=data.is_paid,
            installments=data.installments,
            notes=_clean_text(data.notes),
        )
        if expense.is_paid and expense.payment_date is None:
            expense.payment_date = today
        if expense.is_fixed:
            expense.template_id = self._new_template().id
        self.session.add(expense)
        return self._commit(expense)

    def update(
        self, expense_id: int, data: ExpenseUpdate, today: Optional[date] = None
    ) -> Expense:
        today = today or local_today()
        expense = self.get(expense_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("is_fixed", expense.is_fixed) and expense.template_id is None:
            expense.template_id = self._new_template().id
        for field, value in changes.items():
            value = _plain(value)
            if field in NULLABLE_TEXT_FIELDS:
                value = _clean_text(value)
            elif field == "description" and value is not None:
                value = value.strip()
            if value is None and field not in NULLABLE_TEXT_FIELDS + (
                "payment_date",
                "installments",
            ):
                continue
            setattr(expense, field, value)

        expense.total_value_cents = expense.unit_value_cents * expense.quantity
        if expense.is_paid and expense.payment_date is None:
            expense.payment_date = today
        return self._commit(expense)

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        self.session.delete(expense)
        self.session.commit()

    def autocomplete(self, query: str, limit: int = 10) -> list[str]:
        if not query or len(query) < 2:
            return []
        like = f"%{query.lower()}%"
        stmt = (
            select(Expense.description)
            .where(
                Expense.user_id == self.user_id,
                func.lower(Expense.description).like(like),
            )
            .distinct()
            .order_by(Expense.description)
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())


class RecurringExpenseService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def run(self, today: Optional[date] = None) -> MaterializeResult:
        return FixedExpenseMaterializer(self.session).materialize(
            today=today, user_id=self.user_id
        )


class StatsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def income_summary(self, today: date) -> dict[str, int]:
        month = month_period(today)
        monthly_incomes = self.session.execute(
            select(func.coalesce(func.sum(Income.amount_cents), 0)).where(
                Income.user_id == self.user_id, Income.is_monthly.is_(True)
            )
        ).scalar_one()
        month_earnings = self.session.execute(
            select(func.coalesce(func.sum(Earning.amount_cents), 0)).where(
                Earning.user_id == self.user_id,
                Earning.date.between(month.start, month.end),
            )
        ).scalar_one()
        income_count = self.session.execute(
            select(func.count(Income.id)).where(Income.user_id == self.user_id)
        ).scalar_one()
        return {
            "monthly_income_cents": int(monthly_incomes or 0)
            + int(month_earnings or 0),
            "income_count": int(income_count or 0),
        }

    def summary(
        self, filters: Optional[ExpenseFilters] = None, today: Optional[date] = None
    ) -> dict[str, object]:
        today = today or local_today()
        expenses = ExpenseService(self.session, self.user_id).all(filters)
        stats = aggregate_expenses(expenses, today)
        result: dict[str, object] = {
            "total_spent_cents": stats.total_spent_cents,
            "monthly_spent_cents": stats.monthly_spent_cents,
            "fixed_expenses_cents": stats.fixed_expenses_cents,
            "expense_count": stats.expense_count,
            "category_breakdown": stats.category_breakdown,
        }
        result.update(self.income_summary(today))
        return result


class IncomeService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(self) -> list[Income]:
        stmt = (
            select(Income)
            .where(Income.user_id == self.user_id)
            .order_by(Income.created_at.desc(), Income.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def get(self, income_id: int) -> Income:
        income = self.session.get(Income, income_id)
        if not income or income.user_id != self.user_id:
            raise NotFoundError("Income not found")
        return income

    def create(self, data: IncomeIn) -> Income:
        income = Income(
            user_id=self.user_id,
            description=data.description.strip(),
            amount_cents=data.amount_cents,
            is_monthly=data.is_monthly,
        )
        self.session.add(income)
        self.session.commit()
        self.session.refresh(income)
        return income

    def update(self, income_id: int, data: IncomeUpdate) -> Income:
        income = self.get(income_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(income, field, value)
        self.session.commit()
        self.session.refresh(income)
        return income

    def delete(self, income_id: int) -> None:
        income = self.get(income_id)
        self.session.delete(income)
        self.session.commit()


class EarningService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(self, sort: str = "date_desc") -> list[Earning]:
        if sort not in EARNING_SORTS:
            raise ValueError(f"Unsupported sort: {sort}")
        if sort == "date_asc":
            order = (Earning.date.asc(), Earning.id.asc())
        elif sort == "amount_desc":
            order = (Earning.amount_cents.desc(), Earning.id.desc())
        elif sort == "amount_asc":
            order = (Earning.amount_cents.asc(), Earning.id.asc())
        else:
            order = (Earning.date.desc(), Earning.id.desc())
        stmt = select(Earning).where(Earning.user_id == self.user_id).order_by(*order)
        return list(self.session.scalars(stmt).all())

    def get(self, earning_id: int) -> Earning:
        earning = self.session.get(Earning, earning_id)
        if not earning or earning.user_id != self.user_id:
            raise NotFoundError("Earning not found")
        return earning

    def create(self, data: EarningIn) -> Earning:
        earning = Earning(
            user_id=self.user_id,
            date=data.date,
            description=data.description.strip(),
            amount_cents=data.amount_cents,
            client=_clean_text(data.client),
        )
        self.session.add(earning)
        self.session.commit()
        self.session.refresh(earning)
        return earning

    def update(self, earning_id: int, data: EarningUpdate) -> Earning:
        earning = self.get(earning_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            if field == "client":
                earning.client = _clean_text(value)
            elif value is not None:
                setattr(earning, field, value)
        self.session.commit()
        self.session.refresh(earning)
        return earning

    def delete(self, earning_id: int) -> None:
        earning = self.get(earning_id)
        self.session.delete(earning)
        self.session.commit()


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def get_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(User.email == normalize_email(email))
        )

    def register(self, data: RegisterIn) -> User:
        if self.get_by_email(data.email):
            raise ValueError("Email already in use")
        user = User(
            email=normalize_email(data.email),
            password_hash=hash_password(data.password),
            name=data.name.strip(),
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def authenticate(self, email: str, password: str) -> User:
        user = self.get_by_email(email)
        if not user or not verify_password(password, user.password_hash):
            raise AuthenticationError("Incorrect email or password")
        return user

    def update_profile(self, user_id: int, data: ProfileUpdateIn) -> User:
        user = self.get(user_id)
        if data.email and normalize_email(data.email) != user.email:
            existing = self.get_by_email(data.email)
            if existing and existing.id != user.id:
                raise ValueError("Email already in use")
            user.email = normalize_email(data.email)
        user.name = data.name.strip()
        self.session.commit()
        self.session.refresh(user)
        return user

    def change_password(self, user_id: int, data: PasswordChangeIn) -> None:
        user = self.get(user_id)
        if not verify_password(data.current_password, user.password_hash):
            raise ValueError("Current password is incorrect")
        user.password_hash = hash_password(data.new_password)
        self.session.commit()


class RefreshTokenService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.settings = get_settings()

    def issue(self, user_id: int, now: Optional[datetime] = None) -> str:
        now = now or datetime.utcnow()
        self.revoke_all(user_id)
        token = generate_refresh_token()
        self.session.add(
            RefreshToken(
                user_id=user_id,
                token=token,
                expires_at=now + timedelta(days=self.settings.refresh_token_ttl_days),
            )
        )
        self.session.commit()
        return token

    def rotate(self, token: str, now: Optional[datetime] = None) -> tuple[User, str]:
        now = now or datetime.utcnow()
        stored = self.session.scalar(
            select(RefreshToken).where(RefreshToken.token == token)
        )
        if not stored:
            raise AuthenticationError("Invalid refresh token")
        user_id = stored.user_id
        expires_at = stored.expires_at
        self.session.delete(stored)
        self.session.commit()
        if now > expires_at:
            raise AuthenticationError("Refresh token expired")

        user = self.session.get(User, user_id)
        if not user:
            raise AuthenticationError("User not found")
        return user, self.issue(user.id, now)

    def owner_of(self, token: str) -> Optional[int]:
        return self.session.scalar(
            select(RefreshToken.user_id).where(RefreshToken.token == token)
        )

    def revoke_all(self, user_id: int) -> None:
        self.session.execute(
            delete(RefreshToken).where(RefreshToken.user_id == user_id)
        )
        self.session.commit()


class PasswordResetService:
    """Short-lived reset codes, one live code per email."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.settings = get_settings()

    def _stored(self, email: str) -> Optional[PasswordResetCode]:
        return self.session.scalar(
            select(PasswordResetCode).where(PasswordResetCode.email == email)
        )

    def issue(self, email: str, now: Optional[datetime] = None) -> Optional[str]:
        now = now or datetime.utcnow()
        email = normalize_email(email)
        if not UserService(self.session).get_by_email(email):
            return None

        code = generate_reset_code()
        expires_at = now + timedelta(minutes=self.settings.reset_code_ttl_mins)
        stored = self._stored(email)
        if stored is None:
            stored = PasswordResetCode(email=email)
            self.session.add(stored)
        stored.code_hash = hash_reset_code(email, code)
        stored.expires_at = expires_at
        self.session.commit()
        return code

    def verify(self, email: str, code: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        email = normalize_email(email)
        stored = self._stored(email)
        if stored is None:
            return False
        if now > stored.expires_at:
            self.session.delete(stored)
            self.session.commit()
            return False
        return hmac.compare_digest(stored.code_hash, hash_reset_code(email, code))

    def reset(
        self, email: str, code: str, new_password: str, now: Optional[datetime] = None
    ) -> bool:
        if not self.verify(email, code, now):
            return False
        email = normalize_email(email)
        user = UserService(self.session).get_by_email(email)
        if user is None:
            return False
        user.password_hash = hash_password(new_password)
        stored = self._stored(email)
        if stored is not None:
            self.session.delete(stored)
        self.session.execute(delete(RefreshToken).where(RefreshToken.user_id == user.id))
        self.session.commit()
        logger.info(f"password_reset: user={user.id}")
        return True
