from __future__ import annotations

from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Iterator, Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Query, Session

from cashflow import models
from cashflow.exceptions import NotFoundError, TransientStoreError, ValidationError, Violation
from cashflow.logging_config import get_logger
from cashflow.services.balance_service import BalanceSynchronizer
from cashflow.services.exchange_rate_service import RateConverter, coerce_amount
from cashflow.services.notifier import ChangeNotifier, LoggingChangeNotifier, notify_safely
from cashflow.services.validation import ensure_valid, validate_entry_fields


logger = get_logger("cashflow")

ENTRY_FIELDS = (
    "account_id",
    "amount",
    "currency",
    "type",
    "occurred_at",
    "category",
    "description",
    "template_id",
)

DUPLICATE_OCCURRENCE = "DUPLICATE_OCCURRENCE"


def normalize_entry_data(data: dict[str, Any]) -> dict[str, Any]:
    """Trim free text, upper-case currency, coerce enum/amount types. Unknown keys are dropped."""
    out = {k: data[k] for k in ENTRY_FIELDS if k in data}
    if isinstance(out.get("currency"), str):
        out["currency"] = out["currency"].strip().upper()
    for key in ("category", "description"):
        if isinstance(out.get(key), str):
            out[key] = out[key].strip() or None
    if isinstance(out.get("type"), str):
        try:
            out["type"] = models.CashflowType(out["type"])
        except ValueError:
            pass
    if out.get("amount") is not None:
        # stored as Numeric(18, 4); balance deltas must use the stored value
        out["amount"] = coerce_amount(out["amount"])
    return out


class CashflowService:
    """Create/update/delete ledger entries, pairing every write with its balance delta.

    - create: +signed(entry) at the entry date
    - update: -signed(pre-image) then +signed(post-image), one transaction
    - delete: -signed(entry)

    A change notification goes out after each committed mutation.
    """

    def __init__(
        self,
        db: Session,
        *,
        converter: RateConverter | None = None,
        notifier: ChangeNotifier | None = None,
    ) -> None:
        self.db = db
        self.balances = BalanceSynchronizer(db, converter)
        self.notifier = notifier or LoggingChangeNotifier()

    # ---- Queries ---------------------------------------------------------
    def get(self, entry_id: int, user_id: int) -> models.CashflowEntry:
        entry = (
            self.db.query(models.CashflowEntry)
            .filter(models.CashflowEntry.id == entry_id, models.CashflowEntry.user_id == user_id)
            .first()
        )
        if entry is None:
            raise NotFoundError("Cashflow", entry_id)
        return entry

    def list(
        self,
        user_id: int,
        *,
        skip: Optional[int] = None,
        take: Optional[int] = None,
        **filters: Any,
    ) -> list[models.CashflowEntry]:
        q = self._filtered(user_id, **filters)
        q = q.order_by(models.CashflowEntry.occurred_at.desc(), models.CashflowEntry.id.desc())
        if skip:
            q = q.offset(skip)
        if take:
            q = q.limit(take)
        return q.all()

    def count(self, user_id: int, **filters: Any) -> int:
        """Number of entries matching the same filters as :meth:`list`."""
        return self._filtered(user_id, **filters).count()

    def _filtered(
        self,
        user_id: int,
        *,
        account_ids: Optional[Iterable[int]] = None,
        categories: Optional[Iterable[str]] = None,
        types: Optional[Iterable[models.CashflowType]] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        template_id: Optional[int] = None,
    ) -> Query:
        q = self.db.query(models.CashflowEntry).filter(models.CashflowEntry.user_id == user_id)
        account_ids = list(account_ids or [])
        if account_ids:
            q = q.filter(models.CashflowEntry.account_id.in_(account_ids))
        categories = list(categories or [])
        if categories:
            q = q.filter(models.CashflowEntry.category.in_(categories))
        types = list(types or [])
        if types:
            q = q.filter(models.CashflowEntry.type.in_(types))
        if date_from is not None:
            q = q.filter(models.CashflowEntry.occurred_at >= date_from)
        if date_to is not None:
            q = q.filter(models.CashflowEntry.occurred_at <= date_to)
        if template_id is not None:
            q = q.filter(models.CashflowEntry.template_id == template_id)
        return q

    # ---- Mutations -------------------------------------------------------
    def create(
        self,
        data: dict[str, Any],
        user_id: int,
        *,
        commit: bool = True,
        notify: bool = True,
    ) -> models.CashflowEntry:
        payload = normalize_entry_data(data)
        ensure_valid(validate_entry_fields(payload))

        with self._unit_of_work(commit):
            self._ensure_account(payload["account_id"], user_id)
            if payload.get("template_id") is not None:
                self._ensure_template(payload["template_id"], user_id)

            entry = models.CashflowEntry(user_id=user_id, **payload)
            self.db.add(entry)
            self.db.flush()
            self._apply(entry.account_id, entry.signed_amount, entry.currency, entry.occurred_at, user_id)

        logger.info(
            "cashflow_created",
            extra={"entry_id": entry.id, "user_id": user_id, "template_id": entry.template_id},
        )
        if commit and notify:
            notify_safely(self.notifier.cashflow_created, user_id)
        return entry

    def update(self, entry_id: int, patch: dict[str, Any], user_id: int) -> models.CashflowEntry:
        with self._unit_of_work(commit=True):
            entry = self.get(entry_id, user_id)
            changes = normalize_entry_data(patch)
            if not changes:
                return entry

            image = {field: getattr(entry, field) for field in ENTRY_FIELDS}
            image.update(changes)
            ensure_valid(validate_entry_fields(image))
            if changes.get("account_id") not in (None, entry.account_id):
                self._ensure_account(changes["account_id"], user_id)
            if changes.get("template_id") is not None:
                self._ensure_template(changes["template_id"], user_id)

            # reversal uses the pre-image account/currency/date
            self._apply(entry.account_id, -entry.signed_amount, entry.currency, entry.occurred_at, user_id)
            for key, value in changes.items():
                setattr(entry, key, value)
            self.db.flush()
            self._apply(entry.account_id, entry.signed_amount, entry.currency, entry.occurred_at, user_id)

        self.db.refresh(entry)
        logger.info("cashflow_updated", extra={"entry_id": entry.id, "user_id": user_id, "fields": sorted(changes)})
        notify_safely(self.notifier.cashflow_updated, user_id)
        return entry

    def delete(self, entry_id: int, user_id: int) -> None:
        with self._unit_of_work(commit=True):
            entry = self.get(entry_id, user_id)
            self._apply(entry.account_id, -entry.signed_amount, entry.currency, entry.occurred_at, user_id)
            self.db.delete(entry)
            self.db.flush()

        logger.info("cashflow_deleted", extra={"entry_id": entry_id, "user_id": user_id})
        notify_safely(self.notifier.cashflow_deleted, user_id)

    # ---- Helpers ---------------------------------------------------------
    def _apply(self, account_id: int, amount: Decimal, currency: str, on: date, user_id: int) -> None:
        if amount == 0:
            return
        self.balances.apply_delta(account_id, amount, currency, on, user_id)

    def _ensure_account(self, account_id: int, user_id: int) -> models.Account:
        account = (
            self.db.query(models.Account)
            .filter(models.Account.id == account_id, models.Account.user_id == user_id)
            .first()
        )
        if account is None:
            raise NotFoundError("Account", account_id)
        return account

    def _ensure_template(self, template_id: int, user_id: int) -> models.RecurrenceTemplate:
        template = (
            self.db.query(models.RecurrenceTemplate)
            .filter(models.RecurrenceTemplate.id == template_id, models.RecurrenceTemplate.user_id == user_id)
            .first()
        )
        if template is None:
            raise NotFoundError("Cashflow series", template_id)
        return template

    @contextmanager
    def _unit_of_work(self, commit: bool) -> Iterator[None]:
        """Own the transaction when ``commit`` is set; otherwise the caller does."""
        if not commit:
            yield
            return
        try:
            yield
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise ValidationError(
                [Violation(DUPLICATE_OCCURRENCE, "occurred_at", "an entry already exists for this series and date")]
            ) from exc
        except OperationalError as exc:
            self.db.rollback()
            raise TransientStoreError(str(exc.orig) if exc.orig is not None else str(exc)) from exc
        except BaseException:
            self.db.rollback()
            raise
