from __future__ import annotations

from datetime import date
from itertools import islice
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from cashflow import models
from cashflow.core.config import settings
from cashflow.exceptions import NotFoundError
from cashflow.logging_config import get_logger
from cashflow.services.exchange_rate_service import coerce_amount
from cashflow.services.recurrence import iter_occurrences, next_occurrence
from cashflow.services.validation import ensure_valid, validate_template_fields


logger = get_logger("template")

TEMPLATE_FIELDS = (
    "account_id",
    "amount",
    "currency",
    "type",
    "recurrence",
    "start_date",
    "end_date",
    "timezone",
    "category",
    "description",
)

PREVIEW_LIMIT = 366


def normalize_template_data(data: dict[str, Any]) -> dict[str, Any]:
    out = {k: data[k] for k in TEMPLATE_FIELDS if k in data}
    if isinstance(out.get("currency"), str):
        out["currency"] = out["currency"].strip().upper()
    for key in ("category", "description"):
        if isinstance(out.get(key), str):
            out[key] = out[key].strip() or None
    if isinstance(out.get("timezone"), str):
        out["timezone"] = out["timezone"].strip()
    for key, enum_cls in (("type", models.CashflowType), ("recurrence", models.Recurrence)):
        if isinstance(out.get(key), str):
            try:
                out[key] = enum_cls(out[key])
            except ValueError:
                pass
    if out.get("amount") is not None:
        # stored as Numeric(18, 4); balance deltas must use the stored value
        out["amount"] = coerce_amount(out["amount"])
    return out


def schedule_cursor(template: models.RecurrenceTemplate) -> tuple[date, bool]:
    """Where materialization resumes, and whether that date is already consumed.

    The watermark wins unless ``start_date`` was moved past it, in which case the
    schedule re-anchors at the new start. The watermark itself never moves back.
    """
    watermark = template.last_materialized_at
    if watermark is not None and watermark >= template.start_date:
        return watermark, True
    return template.start_date, False


class TemplateService:
    """CRUD for recurrence templates ("cashflow series")."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, template_id: int, user_id: int) -> models.RecurrenceTemplate:
        template = (
            self.db.query(models.RecurrenceTemplate)
            .filter(models.RecurrenceTemplate.id == template_id, models.RecurrenceTemplate.user_id == user_id)
            .first()
        )
        if template is None:
            raise NotFoundError("Cashflow series", template_id)
        return template

    def list(self, user_id: int, *, account_ids: Optional[Iterable[int]] = None) -> list[models.RecurrenceTemplate]:
        q = self.db.query(models.RecurrenceTemplate).filter(models.RecurrenceTemplate.user_id == user_id)
        account_ids = list(account_ids or [])
        if account_ids:
            q = q.filter(models.RecurrenceTemplate.account_id.in_(account_ids))
        return q.order_by(models.RecurrenceTemplate.start_date, models.RecurrenceTemplate.id).all()

    def create(self, data: dict[str, Any], user_id: int) -> models.RecurrenceTemplate:
        payload = normalize_template_data(data)
        payload.setdefault("timezone", None)
        if not payload["timezone"]:
            payload["timezone"] = settings.DEFAULT_TEMPLATE_TIMEZONE
        ensure_valid(validate_template_fields(payload))
        self._ensure_account(payload["account_id"], user_id)

        template = models.RecurrenceTemplate(user_id=user_id, **payload)
        self.db.add(template)
        self.db.commit()
        self.db.refresh(template)
        logger.info("template_created", extra={"template_id": template.id, "user_id": user_id})
        return template

    def update(self, template_id: int, patch: dict[str, Any], user_id: int) -> models.RecurrenceTemplate:
        template = self.get(template_id, user_id)
        changes = normalize_template_data(patch)
        if "timezone" in changes and not changes["timezone"]:
            changes["timezone"] = settings.DEFAULT_TEMPLATE_TIMEZONE
        if not changes:
            return template

        image = {field: getattr(template, field) for field in TEMPLATE_FIELDS}
        image.update(changes)
        ensure_valid(validate_template_fields(image))
        if changes.get("account_id") not in (None, template.account_id):
            self._ensure_account(changes["account_id"], user_id)

        # last_materialized_at is not in TEMPLATE_FIELDS; edits never move the watermark
        for key, value in changes.items():
            setattr(template, key, value)
        self.db.commit()
        self.db.refresh(template)
        logger.info("template_updated", extra={"template_id": template.id, "fields": sorted(changes)})
        return template

    def delete(self, template_id: int, user_id: int) -> None:
        template = self.get(template_id, user_id)
        # materialized entries stay in the ledger, detached from the series
        self.db.query(models.CashflowEntry).filter(models.CashflowEntry.template_id == template.id).update(
            {models.CashflowEntry.template_id: None}, synchronize_session=False
        )
        self.db.delete(template)
        self.db.commit()
        logger.info("template_deleted", extra={"template_id": template_id, "user_id": user_id})

    def preview(self, template_id: int, user_id: int, until: date, *, limit: int = PREVIEW_LIMIT) -> list[date]:
        """Occurrence dates the materializer would still create up to ``until``."""
        template = self.get(template_id, user_id)
        if template.end_date is not None and template.end_date < template.start_date:
            return []
        cursor, consumed = schedule_cursor(template)
        if template.recurrence == models.Recurrence.NONE:
            if template.last_materialized_at is None and template.start_date <= until:
                return [template.start_date]
            return []
        if consumed:
            nxt = next_occurrence(cursor, template.recurrence)
            if nxt is None:
                return []
            cursor = nxt
        dates = iter_occurrences(cursor, template.recurrence, until, end_date=template.end_date)
        return list(islice(dates, limit))

    def _ensure_account(self, account_id: int, user_id: int) -> None:
        exists = (
            self.db.query(models.Account.id)
            .filter(models.Account.id == account_id, models.Account.user_id == user_id)
            .first()
        )
        if exists is None:
            raise NotFoundError("Account", account_id)
