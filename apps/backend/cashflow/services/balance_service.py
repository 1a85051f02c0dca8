from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from cashflow import models
from cashflow.exceptions import NotFoundError
from cashflow.logging_config import get_logger
from cashflow.services.exchange_rate_service import ExchangeRateService, RateConverter


logger = get_logger("balance")


class BalanceSynchronizer:
    """Apply signed, currency-converted deltas to an account's balance history.

    The account row is locked for the rest of the caller's transaction, so the
    reversal and re-apply of one update cannot interleave with another mutation
    on the same account. Nothing here commits; the caller owns the transaction.
    """

    def __init__(self, db: Session, converter: RateConverter | None = None) -> None:
        self.db = db
        self.converter = converter or ExchangeRateService(db)

    def apply_delta(
        self,
        account_id: int,
        amount: Decimal,
        currency: str,
        on: date,
        user_id: int,
    ) -> Decimal:
        """Convert ``amount`` into the account currency at ``on`` and merge it into the history.

        Returns the converted delta (zero when nothing was written).
        """
        if Decimal(str(amount or 0)) == 0:
            return Decimal(0)

        account = self._lock_account(account_id, user_id)
        # conversion happens before any write; a ConversionError leaves state untouched
        converted = self.converter.convert(Decimal(str(amount)), currency, account.currency, on)
        if converted == 0:
            return Decimal(0)

        record = (
            self.db.query(models.AccountBalance)
            .filter(models.AccountBalance.account_id == account_id, models.AccountBalance.date == on)
            .first()
        )
        if record is None:
            record = models.AccountBalance(account_id=account_id, user_id=user_id, date=on, delta=converted)
            self.db.add(record)
        else:
            record.delta = Decimal(record.delta or 0) + converted

        account.current_balance = Decimal(account.current_balance or 0) + converted
        self.db.flush()
        logger.debug(
            "balance_delta_applied",
            extra={"account_id": account_id, "on": on.isoformat(), "delta": str(converted)},
        )
        return converted

    def balance_at(self, account_id: int, on: date, user_id: int) -> Decimal:
        """Initial balance plus every history delta dated on or before ``on``."""
        account = self.get_account(account_id, user_id)
        total = (
            self.db.query(func.coalesce(func.sum(models.AccountBalance.delta), 0))
            .filter(models.AccountBalance.account_id == account_id, models.AccountBalance.date <= on)
            .scalar()
        )
        return Decimal(account.initial_balance or 0) + Decimal(str(total or 0))

    def recompute(self, account_id: int, user_id: int) -> Decimal:
        """Rebuild history and current balance by replaying every entry of the account."""
        account = self._lock_account(account_id, user_id)
        entries = (
            self.db.query(models.CashflowEntry)
            .filter(models.CashflowEntry.account_id == account_id)
            .order_by(models.CashflowEntry.occurred_at, models.CashflowEntry.id)
            .all()
        )
        per_day: dict[date, Decimal] = {}
        for entry in entries:
            converted = self.converter.convert(entry.signed_amount, entry.currency, account.currency, entry.occurred_at)
            per_day[entry.occurred_at] = per_day.get(entry.occurred_at, Decimal(0)) + converted

        self.db.query(models.AccountBalance).filter(models.AccountBalance.account_id == account_id).delete(
            synchronize_session=False
        )
        for day, delta in sorted(per_day.items()):
            if delta != 0:
                self.db.add(models.AccountBalance(account_id=account_id, user_id=account.user_id, date=day, delta=delta))
        account.current_balance = Decimal(account.initial_balance or 0) + sum(per_day.values(), Decimal(0))
        self.db.flush()
        logger.info("balance_recomputed", extra={"account_id": account_id, "entries": len(entries)})
        return Decimal(account.current_balance)

    def get_account(self, account_id: int, user_id: int) -> models.Account:
        account = (
            self.db.query(models.Account)
            .filter(models.Account.id == account_id, models.Account.user_id == user_id)
            .first()
        )
        if account is None:
            raise NotFoundError("Account", account_id)
        return account

    def _lock_account(self, account_id: int, user_id: int) -> models.Account:
        account = (
            self.db.query(models.Account)
            .filter(models.Account.id == account_id, models.Account.user_id == user_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if account is None:
            raise NotFoundError("Account", account_id)
        return account
