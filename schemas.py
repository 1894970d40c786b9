import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from models import ExpenseCategory, PaymentMethod


MAX_AMOUNT_CENTS = 100_000_000_000


class RegisterIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    name: str = Field(..., min_length=2, max_length=120)


class LoginIn(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class RefreshIn(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutIn(BaseModel):
    refresh_token: Optional[str] = None


class ResetPasswordIn(BaseModel):
    email: EmailStr


class VerifyCodeIn(BaseModel):
    email: EmailStr
    code: str = Field(..., min_length=6, max_length=6)


class VerifyResetCodeIn(VerifyCodeIn):
    new_password: str = Field(..., min_length=6, max_length=128)


class ProfileUpdateIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=120)
    email: Optional[EmailStr] = None


class PasswordChangeIn(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6, max_length=128)


class ExpenseIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: dt.date
    category: ExpenseCategory
    description: str = Field(..., min_length=1, max_length=200)
    unit_value_cents: int = Field(..., gt=0, le=MAX_AMOUNT_CENTS)
    quantity: int = Field(default=1, ge=1)
    payment_method: PaymentMethod
    account: Optional[str] = Field(default=None, max_length=100)
    location: Optional[str] = Field(default=None, max_length=100)
    is_fixed: bool = False
    payment_date: Optional[dt.date] = None
    is_paid: bool = False
    installments: Optional[int] = Field(default=None, ge=1, le=60)
    notes: Optional[str] = None


class ExpenseUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: Optional[dt.date] = None
    category: Optional[ExpenseCategory] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    unit_value_cents: Optional[int] = Field(default=None, gt=0, le=MAX_AMOUNT_CENTS)
    quantity: Optional[int] = Field(default=None, ge=1)
    payment_method: Optional[PaymentMethod] = None
    account: Optional[str] = Field(default=None, max_length=100)
    location: Optional[str] = Field(default=None, max_length=100)
    is_fixed: Optional[bool] = None
    payment_date: Optional[dt.date] = None
    is_paid: Optional[bool] = None
    installments: Optional[int] = Field(default=None, ge=1, le=60)
    notes: Optional[str] = None


class IncomeIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., gt=0, le=MAX_AMOUNT_CENTS)
    is_monthly: bool = True


class IncomeUpdate(BaseModel):
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    amount_cents: Optional[int] = Field(default=None, gt=0, le=MAX_AMOUNT_CENTS)
    is_monthly: Optional[bool] = None


class EarningIn(BaseModel):
    date: dt.date
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., gt=0, le=MAX_AMOUNT_CENTS)
    client: Optional[str] = Field(default=None, max_length=120)


class EarningUpdate(BaseModel):
    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    amount_cents: Optional[int] = Field(default=None, gt=0, le=MAX_AMOUNT_CENTS)
    client: Optional[str] = Field(default=None, max_length=120)


class SupportContactIn(BaseModel):
    subject: str = Field(..., min_length=1, max_length=200)
    category: str = Field(..., min_length=1, max_length=100)
    message: str = Field(..., min_length=1, max_length=5000)
    email: Optional[EmailStr] = None
