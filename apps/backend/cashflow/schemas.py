from __future__ import annotations

from datetime import date, datetime
import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import CashflowType, Recurrence


DESCRIPTION_MAX_LENGTH = 256


def _upper_currency(v: str | None) -> str | None:
    if v is None:
        return v
    v = v.strip()
    if len(v) != 3:
        raise ValueError("currency must be 3-letter code")
    return v.upper()


def _finite_amount(v: Decimal | None) -> Decimal | None:
    if v is None:
        return v
    if not v.is_finite():
        raise ValueError("amount must be finite")
    return v


class ErrorOut(BaseModel):
    detail: str
    code: str
    violations: list[dict[str, str]] | None = None


# ---- Accounts ---------------------------------------------------------------

class AccountCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    currency: str = Field(min_length=3, max_length=3)
    initial_balance: Decimal = Decimal(0)
    is_excluded: bool = False

    @field_validator("currency")
    def currency_len(cls, v: str):
        return _upper_currency(v)

    @field_validator("initial_balance")
    def balance_finite(cls, v: Decimal):
        return _finite_amount(v)


class AccountOut(BaseModel):
    id: int
    user_id: int
    name: str
    currency: str
    initial_balance: float
    current_balance: float
    is_excluded: bool
    balance_at: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)


# ---- Cashflow entries -------------------------------------------------------

class CashflowCreate(BaseModel):
    account_id: int
    amount: Decimal
    currency: str
    type: CashflowType
    occurred_at: date
    category: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    template_id: Optional[int] = None

    @field_validator("currency")
    def currency_len(cls, v: str):
        return _upper_currency(v)

    @field_validator("amount")
    def amount_finite(cls, v: Decimal):
        return _finite_amount(v)


class CashflowUpdate(BaseModel):
    account_id: Optional[int] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    type: Optional[CashflowType] = None
    occurred_at: Optional[date] = None
    category: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    # explicit null detaches the entry from its series
    template_id: Optional[int] = None

    @field_validator("currency")
    def currency_len(cls, v: str | None):
        return _upper_currency(v)

    @field_validator("amount")
    def amount_finite(cls, v: Decimal | None):
        return _finite_amount(v)

    @model_validator(mode="after")
    def reject_required_nulls(self):
        for name in ("account_id", "amount", "currency", "type", "occurred_at"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class CashflowOut(BaseModel):
    id: int
    user_id: int
    account_id: int
    amount: float
    currency: str
    type: CashflowType
    occurred_at: date
    category: Optional[str]
    description: Optional[str]
    template_id: Optional[int]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ---- Cashflow series (recurrence templates) ---------------------------------

class CashflowSeriesCreate(BaseModel):
    account_id: int
    amount: Decimal
    currency: str
    type: CashflowType
    recurrence: Recurrence
    start_date: date
    end_date: Optional[date] = None
    timezone: Optional[str] = Field(default=None, max_length=64)
    category: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)

    @field_validator("currency")
    def currency_len(cls, v: str):
        return _upper_currency(v)

    @field_validator("amount")
    def amount_finite(cls, v: Decimal):
        return _finite_amount(v)


class CashflowSeriesUpdate(BaseModel):
    account_id: Optional[int] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    type: Optional[CashflowType] = None
    recurrence: Optional[Recurrence] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    timezone: Optional[str] = Field(default=None, max_length=64)
    category: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)

    @field_validator("currency")
    def currency_len(cls, v: str | None):
        return _upper_currency(v)

    @field_validator("amount")
    def amount_finite(cls, v: Decimal | None):
        return _finite_amount(v)

    @model_validator(mode="after")
    def reject_required_nulls(self):
        for name in ("account_id", "amount", "currency", "type", "recurrence", "start_date"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class CashflowSeriesOut(BaseModel):
    id: int
    user_id: int
    account_id: int
    amount: float
    currency: str
    type: CashflowType
    recurrence: Recurrence
    start_date: date
    end_date: Optional[date]
    timezone: str
    category: Optional[str]
    description: Optional[str]
    last_materialized_at: Optional[date]

    model_config = ConfigDict(from_attributes=True)


class SeriesPreviewOut(BaseModel):
    series_id: int
    until: date
    occurrences: list[date]


# ---- Materialization --------------------------------------------------------

class MaterializationReportOut(BaseModel):
    reference: str
    templates_processed: int
    entries_created: int
    occurrences_skipped: int
    failed_template_ids: list[int] = Field(default_factory=list)
    cancelled: bool = False


# ---- Cash details -----------------------------------------------------------

class CashAccountLineOut(BaseModel):
    id: int
    name: str
    currency: str
    current_balance: float
    balance_in_base_currency: float
    is_excluded: bool


class CashEntryLineOut(CashflowOut):
    amount_in_base_currency: float
    signed_amount_in_base_currency: float


class CashDetailsOut(BaseModel):
    base_currency: str
    as_of: date
    total_balance: float
    accounts: list[CashAccountLineOut]
    cashflows: list[CashEntryLineOut]
    series: list[CashflowSeriesOut]


# ---- Exchange rates ---------------------------------------------------------

class ExchangeRateIn(BaseModel):
    base: str
    quote: str
    rate: Decimal = Field(gt=0)
    date: dt.date

    @field_validator("base", "quote")
    def currency_len(cls, v: str):
        return _upper_currency(v)

    @model_validator(mode="after")
    def distinct_pair(self):
        if self.base == self.quote:
            raise ValueError("base and quote must differ")
        return self


class ExchangeRateOut(BaseModel):
    id: int
    base: str
    quote: str
    rate: float
    date: dt.date

    model_config = ConfigDict(from_attributes=True)
