import logging
import math
from datetime import date
from typing import Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from sqlalchemy.orm import Session

from database import get_db
from installments import display_description, resolve_for_expense
from mailer import Mailer
from models import Earning, Expense, Income, User
from periods import local_today, resolve_range
from scheduler import SchedulerManager
from schemas import (
    EarningIn,
    EarningUpdate,
    ExpenseIn,
    ExpenseUpdate,
    IncomeIn,
    IncomeUpdate,
    LoginIn,
    LogoutIn,
    PasswordChangeIn,
    ProfileUpdateIn,
    RefreshIn,
    RegisterIn,
    ResetPasswordIn,
    SupportContactIn,
    VerifyCodeIn,
    VerifyResetCodeIn,
)
from services import (
    AuthenticationError,
    EarningService,
    ExpenseFilters,
    ExpenseService,
    IncomeService,
    NotFoundError,
    PasswordResetService,
    RecurringExpenseService,
    RefreshTokenService,
    StatsService,
    UserService,
)
from tokens import generate_access_token, verify_access_token

logger = logging.getLogger(__name__)

app = FastAPI(title="FinControl")

RESET_REQUESTED_MESSAGE = "If the email exists, a code has been sent"


def get_mailer() -> Mailer:
    return Mailer()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip() or None
    return None


def _user_from_token(db: Session, token: Optional[str]) -> Optional[User]:
    if not token:
        return None
    user_id = verify_access_token(token)
    if user_id is None:
        return None
    return db.get(User, user_id)


def current_user(
    authorization: Optional[str] = Header(None), db: Session = Depends(get_db)
) -> User:
    token = _bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing access token")
    user = _user_from_token(db, token)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user


def optional_user(
    authorization: Optional[str] = Header(None), db: Session = Depends(get_db)
) -> Optional[User]:
    return _user_from_token(db, _bearer_token(authorization))


def _raise_for(exc: ValueError) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc


def _bool_param(value: Optional[str]) -> Optional[bool]:
    if value is None or value == "":
        return None
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise HTTPException(status_code=400, detail=f"Invalid boolean value: {value}")


def _int_param(request: Request, name: str, default: int) -> int:
    raw = request.query_params.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc


def filters_from_request(request: Request) -> ExpenseFilters:
    params = request.query_params
    try:
        start, end = resolve_range(params.get("start_date"), params.get("end_date"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ExpenseFilters(
        search=params.get("search") or None,
        category=params.get("category") or None,
        start_date=start,
        end_date=end,
        fixed=_bool_param(params.get("fixed")),
        paid=_bool_param(params.get("paid")),
    )


def user_out(user: User) -> dict[str, object]:
    return {"id": user.id, "email": user.email, "name": user.name}


def expense_out(expense: Expense, today: date) -> dict[str, object]:
    status = resolve_for_expense(expense, today)
    return {
        "id": expense.id,
        "date": expense.date.isoformat(),
        "category": expense.category,
        "description": expense.description,
        "unit_value_cents": expense.unit_value_cents,
        "quantity": expense.quantity,
        "total_value_cents": expense.total_value_cents,
        "payment_method": expense.payment_method,
        "account": expense.account,
        "location": expense.location,
        "is_fixed": expense.is_fixed,
        "payment_date": (
            expense.payment_date.isoformat() if expense.payment_date else None
        ),
        "is_paid": expense.is_paid,
        "installments": expense.installments,
        "notes": expense.notes,
        "template_id": expense.template_id,
        "current_installment": status.current_installment,
        "total_installments": status.total_installments,
        "current_installment_value_cents": status.current_installment_value_cents,
        "installments_completed": status.is_completed,
        "display_description": display_description(expense.description, status),
    }


def income_out(income: Income) -> dict[str, object]:
    return {
        "id": income.id,
        "description": income.description,
        "amount_cents": income.amount_cents,
        "is_monthly": income.is_monthly,
        "created_at": income.created_at.isoformat(),
    }


def earning_out(earning: Earning) -> dict[str, object]:
    return {
        "id": earning.id,
        "date": earning.date.isoformat(),
        "description": earning.description,
        "amount_cents": earning.amount_cents,
        "client": earning.client,
    }


def _session_payload(db: Session, user: User) -> dict[str, object]:
    return {
        "user": user_out(user),
        "access_token": generate_access_token(user.id, user.email),
        "refresh_token": RefreshTokenService(db).issue(user.id),
    }


# Auth


@app.post("/api/auth/register", status_code=201)
def register(
    payload: RegisterIn,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    try:
        user = UserService(db).register(payload)
    except ValueError as exc:
        _raise_for(exc)
    try:
        mailer.send_registration_notice(user.id, user.email, user.name)
    except Exception:
        logger.exception(f"registration_notice_failed: user={user.id}")
    return _session_payload(db, user)


@app.post("/api/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    try:
        user = UserService(db).authenticate(payload.email, payload.password)
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return _session_payload(db, user)


@app.post("/api/auth/refresh")
def refresh(payload: RefreshIn, db: Session = Depends(get_db)):
    try:
        user, refresh_token = RefreshTokenService(db).rotate(payload.refresh_token)
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return {
        "access_token": generate_access_token(user.id, user.email),
        "refresh_token": refresh_token,
    }


@app.post("/api/auth/logout")
def logout(
    payload: Optional[LogoutIn] = Body(None),
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    tokens = RefreshTokenService(db)
    user_id = None
    if payload and payload.refresh_token:
        user_id = tokens.owner_of(payload.refresh_token)
    bearer = _bearer_token(authorization)
    if user_id is None and bearer:
        user_id = verify_access_token(bearer)
    if user_id is not None:
        tokens.revoke_all(user_id)
    return {"message": "Logged out"}


@app.post("/api/auth/reset-password")
def request_password_reset(
    payload: ResetPasswordIn,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    code = PasswordResetService(db).issue(payload.email)
    if code is not None:
        try:
            mailer.send_reset_code(payload.email, code)
        except Exception:
            logger.exception("reset_code_mail_failed")
    return {"message": RESET_REQUESTED_MESSAGE}


@app.post("/api/auth/verify-code")
def verify_reset_code(payload: VerifyCodeIn, db: Session = Depends(get_db)):
    if not PasswordResetService(db).verify(payload.email, payload.code):
        raise HTTPException(status_code=400, detail="Invalid or expired code")
    return {"message": "Code verified"}


@app.post("/api/auth/verify-reset-code")
def reset_password(payload: VerifyResetCodeIn, db: Session = Depends(get_db)):
    ok = PasswordResetService(db).reset(
        payload.email, payload.code, payload.new_password
    )
    if not ok:
        raise HTTPException(status_code=400, detail="Invalid or expired code")
    return {"message": "Password changed"}


@app.get("/api/auth/me")
def me(user: User = Depends(current_user)):
    return user_out(user)


@app.patch("/api/user/profile")
def update_profile(
    payload: ProfileUpdateIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        updated = UserService(db).update_profile(user.id, payload)
    except ValueError as exc:
        _raise_for(exc)
    return user_out(updated)


@app.patch("/api/user/password")
def change_password(
    payload: PasswordChangeIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        UserService(db).change_password(user.id, payload)
    except ValueError as exc:
        _raise_for(exc)
    return {"message": "Password changed"}


# Expenses


@app.get("/api/expenses")
def list_expenses(
    request: Request,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    filters = filters_from_request(request)
    page = max(_int_param(request, "page", 1), 1)
    limit = min(max(_int_param(request, "limit", 10), 1), 100)
    sort = request.query_params.get("sort_by") or "date_desc"
    today = local_today()
    try:
        items, total = ExpenseService(db, user.id).list(
            filters, page=page, limit=limit, sort=sort, today=today
        )
    except ValueError as exc:
        _raise_for(exc)
    return {
        "expenses": [expense_out(expense, today) for expense in items],
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit),
    }


@app.get("/api/expenses/stats")
def expense_stats(
    request: Request,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    filters = filters_from_request(request)
    return StatsService(db, user.id).summary(filters, today=local_today())


@app.get("/api/expenses/autocomplete")
def expense_autocomplete(
    request: Request,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    query = request.query_params.get("q") or ""
    return ExpenseService(db, user.id).autocomplete(query)


@app.get("/api/expenses/{expense_id}")
def get_expense(
    expense_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        expense = ExpenseService(db, user.id).get(expense_id)
    except ValueError as exc:
        _raise_for(exc)
    return expense_out(expense, local_today())


@app.post("/api/expenses", status_code=201)
def create_expense(
    payload: ExpenseIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    today = local_today()
    try:
        expense = ExpenseService(db, user.id).create(payload, today=today)
    except ValueError as exc:
        _raise_for(exc)
    return expense_out(expense, today)


@app.patch("/api/expenses/{expense_id}")
def update_expense(
    expense_id: int,
    payload: ExpenseUpdate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    today = local_today()
    try:
        expense = ExpenseService(db, user.id).update(expense_id, payload, today=today)
    except ValueError as exc:
        _raise_for(exc)
    return expense_out(expense, today)


@app.delete("/api/expenses/{expense_id}")
def delete_expense(
    expense_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        ExpenseService(db, user.id).delete(expense_id)
    except ValueError as exc:
        _raise_for(exc)
    return {"message": "Expense deleted"}


@app.post("/api/recurring/run")
def run_recurring(user: User = Depends(current_user), db: Session = Depends(get_db)):
    result = RecurringExpenseService(db, user.id).run()
    return {
        "templates": result.templates,
        "created": result.created,
        "skipped": result.skipped,
        "failed": result.failed,
    }


# Incomes


@app.get("/api/incomes")
def list_incomes(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return [income_out(income) for income in IncomeService(db, user.id).list()]


@app.post("/api/incomes", status_code=201)
def create_income(
    payload: IncomeIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    return income_out(IncomeService(db, user.id).create(payload))


@app.patch("/api/incomes/{income_id}")
def update_income(
    income_id: int,
    payload: IncomeUpdate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        income = IncomeService(db, user.id).update(income_id, payload)
    except ValueError as exc:
        _raise_for(exc)
    return income_out(income)


@app.delete("/api/incomes/{income_id}")
def delete_income(
    income_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        IncomeService(db, user.id).delete(income_id)
    except ValueError as exc:
        _raise_for(exc)
    return {"message": "Income deleted"}


# Earnings


@app.get("/api/earnings")
def list_earnings(
    request: Request,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    sort = request.query_params.get("sort_by") or "date_desc"
    try:
        earnings = EarningService(db, user.id).list(sort)
    except ValueError as exc:
        _raise_for(exc)
    return [earning_out(earning) for earning in earnings]


@app.post("/api/earnings", status_code=201)
def create_earning(
    payload: EarningIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    return earning_out(EarningService(db, user.id).create(payload))


@app.patch("/api/earnings/{earning_id}")
def update_earning(
    earning_id: int,
    payload: EarningUpdate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        earning = EarningService(db, user.id).update(earning_id, payload)
    except ValueError as exc:
        _raise_for(exc)
    return earning_out(earning)


@app.delete("/api/earnings/{earning_id}")
def delete_earning(
    earning_id: int,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        EarningService(db, user.id).delete(earning_id)
    except ValueError as exc:
        _raise_for(exc)
    return {"message": "Earning deleted"}


# Support


@app.post("/api/support/contact")
def support_contact(
    payload: SupportContactIn,
    user: Optional[User] = Depends(optional_user),
    mailer: Mailer = Depends(get_mailer),
):
    if user is None and not payload.email:
        raise HTTPException(
            status_code=400, detail="Email is required for anonymous requests"
        )
    email = payload.email or user.email
    name = user.name if user else "Anonymous user"

    try:
        mailer.send_support_message(
            name, email, payload.category, payload.subject, payload.message
        )
    except Exception as exc:
        logger.exception("support_mail_failed")
        raise HTTPException(
            status_code=500, detail="Could not send message, try again"
        ) from exc

    try:
        mailer.send_support_confirmation(
            email, name, payload.category, payload.subject, payload.message
        )
    except Exception:
        logger.exception(f"support_confirmation_failed: to={email}")
    return {"message": "Message sent"}
