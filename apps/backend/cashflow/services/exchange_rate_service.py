from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from typing import Any, Protocol

from sqlalchemy.orm import Session

from cashflow import models
from cashflow.exceptions import ConversionError
from cashflow.logging_config import get_logger


logger = get_logger("exchange_rate")

AMOUNT_QUANTUM = Decimal("0.0001")


class RateConverter(Protocol):
    def convert(self, amount: Decimal, from_currency: str, to_currency: str, on: date) -> Decimal:
        ...


def quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_EVEN)


def coerce_amount(value: Any) -> Any:
    """Decimal at the stored scale (4 places). Values that are not finite numbers come back as given."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        if not amount.is_finite():
            return amount
        return quantize_amount(amount)
    except (InvalidOperation, ValueError):
        return value


class ExchangeRateService:
    """Historical rate lookup backed by ``ExchangeRate`` snapshots.

    The rate effective on a date is the latest snapshot dated on or before it.
    A missing direct pair falls back to the inverse of the reverse pair.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def convert(self, amount: Decimal, from_currency: str, to_currency: str, on: date) -> Decimal:
        amount = Decimal(str(amount))
        if from_currency == to_currency:
            return quantize_amount(amount)
        rate = self.rate_on(from_currency, to_currency, on)
        return quantize_amount(amount * rate)

    def rate_on(self, from_currency: str, to_currency: str, on: date) -> Decimal:
        direct = self._latest_snapshot(from_currency, to_currency, on)
        if direct is not None:
            return Decimal(direct.rate)
        inverse = self._latest_snapshot(to_currency, from_currency, on)
        if inverse is not None and Decimal(inverse.rate) != 0:
            return Decimal(1) / Decimal(inverse.rate)
        logger.warning(
            "exchange_rate_missing",
            extra={"from_currency": from_currency, "to_currency": to_currency, "on": on.isoformat()},
        )
        raise ConversionError(from_currency, to_currency, on)

    def upsert_rate(self, base: str, quote: str, rate: Decimal, on: date) -> models.ExchangeRate:
        row = (
            self.db.query(models.ExchangeRate)
            .filter(
                models.ExchangeRate.base == base,
                models.ExchangeRate.quote == quote,
                models.ExchangeRate.date == on,
            )
            .first()
        )
        if row is None:
            row = models.ExchangeRate(base=base, quote=quote, rate=rate, date=on)
            self.db.add(row)
        else:
            row.rate = rate
        self.db.flush()
        return row

    def _latest_snapshot(self, base: str, quote: str, on: date) -> models.ExchangeRate | None:
        return (
            self.db.query(models.ExchangeRate)
            .filter(
                models.ExchangeRate.base == base,
                models.ExchangeRate.quote == quote,
                models.ExchangeRate.date <= on,
            )
            .order_by(models.ExchangeRate.date.desc())
            .first()
        )
