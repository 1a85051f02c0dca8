from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo
from enum import Enum

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Index,
    Boolean,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .core.config import settings
from .core.database import Base


try:
    LOCAL_ZONE = ZoneInfo(getattr(settings, "TIMEZONE", "UTC"))
except Exception:
    LOCAL_ZONE = ZoneInfo("UTC")


def now_local_naive() -> datetime:
    """Return naive datetime normalized to configured local timezone."""
    return datetime.now(LOCAL_ZONE).replace(tzinfo=None)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_local_naive, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now_local_naive, onupdate=now_local_naive, nullable=False)


class User(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)

    profile: Mapped["UserProfile"] = relationship(back_populates="user", uselist=False)


class UserProfile(Base, TimestampMixin):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(100))
    base_currency: Mapped[str | None] = mapped_column(String(3))
    timezone: Mapped[str | None] = mapped_column(String(64))

    user: Mapped[User] = relationship(back_populates="profile")


class CashflowType(str, Enum):
    INFLOW = "INFLOW"
    OUTFLOW = "OUTFLOW"


class Recurrence(str, Enum):
    """Fixed cadences a template can repeat on. ``NONE`` is a single scheduled occurrence."""

    NONE = "NONE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"


class Account(Base, TimestampMixin):
    """Cash account. ``current_balance`` is derived: only balance deltas move it."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    initial_balance: Mapped[Decimal] = mapped_column(Numeric(18, 4), default=0, nullable=False)
    current_balance: Mapped[Decimal] = mapped_column(Numeric(18, 4), default=0, nullable=False)
    is_excluded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user: Mapped["User"] = relationship("User", backref="accounts")
    balances: Mapped[list["AccountBalance"]] = relationship(
        "AccountBalance",
        back_populates="account",
        cascade="all, delete-orphan",
        order_by="AccountBalance.date",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_account_name"),
    )

    @property
    def balance(self) -> float:
        return float(self.current_balance)


class AccountBalance(Base, TimestampMixin):
    """Per-day balance history: the sum of converted deltas dated that day."""

    __tablename__ = "account_balance"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("account.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    delta: Mapped[Decimal] = mapped_column(Numeric(18, 4), default=0, nullable=False)

    account: Mapped["Account"] = relationship("Account", back_populates="balances")

    __table_args__ = (
        UniqueConstraint("account_id", "date", name="uq_account_balance_date"),
    )


class RecurrenceTemplate(Base, TimestampMixin):
    __tablename__ = "recurrence_template"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("account.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    type: Mapped[CashflowType] = mapped_column(SAEnum(CashflowType, name="cashflow_type"), nullable=False)
    recurrence: Mapped[Recurrence] = mapped_column(SAEnum(Recurrence, name="recurrence"), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date)  # inclusive
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    category: Mapped[str | None] = mapped_column(String(100))
    description: Mapped[str | None] = mapped_column(Text)
    # watermark: latest occurrence date already materialized
    last_materialized_at: Mapped[date | None] = mapped_column(Date)

    account: Mapped["Account"] = relationship("Account")

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_template_amount_non_negative"),
        Index("ix_template_window", "start_date", "end_date"),
    )

    def __repr__(self) -> str:  # pragma: no cover
        kind = getattr(self.recurrence, "value", self.recurrence)
        return (
            f"<RecurrenceTemplate id={self.id!r} recurrence={kind!r} start={self.start_date!r} "
            f"end={self.end_date!r} watermark={self.last_materialized_at!r}>"
        )


class CashflowEntry(Base, TimestampMixin):
    __tablename__ = "cashflow_entry"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("account.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    type: Mapped[CashflowType] = mapped_column(SAEnum(CashflowType, name="cashflow_type"), nullable=False)
    occurred_at: Mapped[date] = mapped_column(Date, nullable=False)
    category: Mapped[str | None] = mapped_column(String(100))
    description: Mapped[str | None] = mapped_column(Text)
    template_id: Mapped[int | None] = mapped_column(
        ForeignKey("recurrence_template.id", ondelete="SET NULL"),
        nullable=True,
    )

    account: Mapped["Account"] = relationship("Account")
    template: Mapped["RecurrenceTemplate | None"] = relationship(
        "RecurrenceTemplate",
        backref="entries",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_entry_amount_non_negative"),
        # at most one entry per template occurrence
        UniqueConstraint("template_id", "occurred_at", name="uq_entry_template_date"),
        Index("ix_entry_user_date", "user_id", "occurred_at"),
        Index("ix_entry_account_date", "account_id", "occurred_at"),
    )

    @property
    def signed_amount(self) -> Decimal:
        return signed_amount(self.type, self.amount)


def signed_amount(kind: CashflowType | str, amount: Decimal | float | int) -> Decimal:
    """``+amount`` for INFLOW, ``-amount`` for OUTFLOW."""
    magnitude = Decimal(str(amount or 0))
    if CashflowType(kind) is CashflowType.INFLOW:
        return magnitude
    return -magnitude


class ExchangeRate(Base):
    __tablename__ = "exchange_rate"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    base: Mapped[str] = mapped_column(String(3), nullable=False)
    quote: Mapped[str] = mapped_column(String(3), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)

    __table_args__ = (UniqueConstraint("base", "quote", "date", name="uq_fx_snapshot"),)
