from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from cashflow import models
from cashflow.services.cashflow_service import CashflowService
from cashflow.services.exchange_rate_service import ExchangeRateService, RateConverter, quantize_amount
from cashflow.services.template_service import TemplateService


@dataclass
class AccountLine:
    account: models.Account
    balance_in_base_currency: Decimal


@dataclass
class EntryLine:
    entry: models.CashflowEntry
    amount_in_base_currency: Decimal
    signed_amount_in_base_currency: Decimal


@dataclass
class CashDetails:
    base_currency: str
    as_of: date
    total_balance: Decimal
    accounts: list[AccountLine] = field(default_factory=list)
    entries: list[EntryLine] = field(default_factory=list)
    templates: list[models.RecurrenceTemplate] = field(default_factory=list)


class CashDetailsService:
    """Read-only overview of a user's cash, expressed in one target currency.

    Account balances convert at ``as_of``; each entry converts at its own date.
    """

    def __init__(self, db: Session, converter: RateConverter | None = None) -> None:
        self.db = db
        self.converter = converter or ExchangeRateService(db)

    def details(
        self,
        user_id: int,
        base_currency: str,
        *,
        as_of: Optional[date] = None,
        account_ids: Optional[Iterable[int]] = None,
        categories: Optional[Iterable[str]] = None,
        types: Optional[Iterable[models.CashflowType]] = None,
        include_excluded: bool = False,
    ) -> CashDetails:
        as_of = as_of or date.today()
        base_currency = base_currency.strip().upper()
        account_ids = list(account_ids or [])

        q = self.db.query(models.Account).filter(models.Account.user_id == user_id)
        if account_ids:
            q = q.filter(models.Account.id.in_(account_ids))
        if not include_excluded:
            q = q.filter(models.Account.is_excluded.is_(False))
        accounts = q.order_by(models.Account.name).all()

        lines = [
            AccountLine(
                account=acc,
                balance_in_base_currency=self.converter.convert(
                    Decimal(acc.current_balance or 0), acc.currency, base_currency, as_of
                ),
            )
            for acc in accounts
        ]
        total = quantize_amount(sum((line.balance_in_base_currency for line in lines), Decimal(0)))

        visible_ids = [acc.id for acc in accounts]
        entries: list[EntryLine] = []
        if visible_ids:
            for entry in CashflowService(self.db, converter=self.converter).list(
                user_id, account_ids=visible_ids, categories=categories, types=types
            ):
                converted = self.converter.convert(
                    Decimal(entry.amount), entry.currency, base_currency, entry.occurred_at
                )
                signed = converted if entry.type == models.CashflowType.INFLOW else -converted
                entries.append(EntryLine(entry, converted, signed))

        templates = TemplateService(self.db).list(user_id, account_ids=visible_ids) if visible_ids else []

        return CashDetails(
            base_currency=base_currency,
            as_of=as_of,
            total_balance=total,
            accounts=lines,
            entries=entries,
            templates=templates,
        )
