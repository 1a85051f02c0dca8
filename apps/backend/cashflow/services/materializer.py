"""Turn recurrence templates into dated ledger entries, exactly once per occurrence.

Per template, per occurrence, one transaction:

1. lock the template row and re-read its watermark (``last_materialized_at``)
2. derive the next candidate date from the watermark (or ``start_date``)
3. skip creation if an entry for (template, date) already exists
4. otherwise create the entry through :class:`CashflowService` inside a savepoint;
   a unique-constraint violation means a concurrent run won, and is treated as "exists"
5. move the watermark to the candidate and commit

The per-date existence check is the idempotency guarantee; the watermark only
saves work. A crash or cancellation loses at most the in-flight occurrence, and
the watermark is never committed without its entry.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cashflow import models
from cashflow.core.config import settings
from cashflow.logging_config import get_logger
from cashflow.services.cashflow_service import CashflowService
from cashflow.services.exchange_rate_service import ExchangeRateService, RateConverter
from cashflow.services.notifier import ChangeNotifier, LoggingChangeNotifier, notify_safely
from cashflow.services.recurrence import next_occurrence
from cashflow.services.template_service import schedule_cursor


logger = get_logger("materializer")

Reference = Union[datetime, date]


@dataclass
class TemplateOutcome:
    template_id: int
    user_id: Optional[int] = None
    created: list[date] = field(default_factory=list)
    skipped: list[date] = field(default_factory=list)
    failed: bool = False
    error: Optional[str] = None


@dataclass
class MaterializationReport:
    reference: Reference
    templates_processed: int = 0
    entries_created: int = 0
    occurrences_skipped: int = 0
    failed_template_ids: list[int] = field(default_factory=list)
    cancelled: bool = False

    def add(self, outcome: TemplateOutcome) -> None:
        self.templates_processed += 1
        self.entries_created += len(outcome.created)
        self.occurrences_skipped += len(outcome.skipped)
        if outcome.failed:
            self.failed_template_ids.append(outcome.template_id)


def normalize_reference(value: Optional[Reference]) -> Reference:
    """``None`` -> now (UTC); naive datetimes are UTC; plain dates pass through."""
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    return value


def reference_date(reference: Reference, tz_name: Optional[str]) -> date:
    """Calendar date of ``reference`` in the template's own time zone."""
    if not isinstance(reference, datetime):
        return reference
    reference = normalize_reference(reference)
    try:
        zone = ZoneInfo(tz_name or settings.DEFAULT_TEMPLATE_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        zone = ZoneInfo("UTC")
    return reference.astimezone(zone).date()


def next_due_date(template: models.RecurrenceTemplate, ref_date: date) -> Optional[date]:
    """The next occurrence still to materialize on or before ``ref_date``, if any."""
    start, end = template.start_date, template.end_date
    if end is not None and end < start:
        return None
    if start > ref_date or (end is not None and end < ref_date):
        return None

    if template.recurrence == models.Recurrence.NONE:
        if template.last_materialized_at is None:
            return start
        return None

    cursor, consumed = schedule_cursor(template)
    candidate = next_occurrence(cursor, template.recurrence) if consumed else cursor
    if candidate is None:
        return None
    if end is not None and candidate > end:
        return None
    if candidate > ref_date:
        return None
    return candidate


class OccurrenceMaterializer:
    """Materialize every due template occurrence up to a reference instant.

    Templates are independent units: each runs in its own session, optionally in
    parallel, and one template failing leaves the others untouched.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        converter_factory: Callable[[Session], RateConverter] = ExchangeRateService,
        notifier: ChangeNotifier | None = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.session_factory = session_factory
        self.converter_factory = converter_factory
        self.notifier = notifier or LoggingChangeNotifier()
        self.max_workers = max(1, max_workers or settings.MATERIALIZE_MAX_WORKERS)
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Stop after the in-flight occurrence of each running template.

        A cancelled materializer stays cancelled; build a new one for the next run.
        """
        self._cancelled.set()

    def materialize_due(self, reference_instant: Optional[Reference] = None) -> MaterializationReport:
        reference = normalize_reference(reference_instant)
        report = MaterializationReport(reference=reference)

        template_ids = self._eligible_template_ids(reference)
        logger.info(
            "materialization_started",
            extra={"reference": reference.isoformat(), "templates": len(template_ids), "workers": self.max_workers},
        )

        if self.max_workers == 1 or len(template_ids) <= 1:
            outcomes = [self.materialize_template(tid, reference) for tid in template_ids]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="materialize") as pool:
                outcomes = list(pool.map(lambda tid: self.materialize_template(tid, reference), template_ids))

        for outcome in outcomes:
            report.add(outcome)
        report.cancelled = self._cancelled.is_set()

        logger.info(
            "materialization_finished",
            extra={
                "reference": reference.isoformat(),
                "templates": report.templates_processed,
                "entries_created": report.entries_created,
                "occurrences_skipped": report.occurrences_skipped,
                "failed": report.failed_template_ids,
                "cancelled": report.cancelled,
            },
        )
        return report

    def materialize_template(self, template_id: int, reference_instant: Optional[Reference] = None) -> TemplateOutcome:
        reference = normalize_reference(reference_instant)
        outcome = TemplateOutcome(template_id=template_id)
        db = self.session_factory()
        try:
            service = CashflowService(db, converter=self.converter_factory(db), notifier=self.notifier)
            while not self._cancelled.is_set():
                template = self._lock_template(db, template_id)
                if template is None:
                    db.rollback()
                    break
                outcome.user_id = template.user_id
                candidate = next_due_date(template, reference_date(reference, template.timezone))
                if candidate is None:
                    db.rollback()
                    break

                if self._create_occurrence(db, service, template, candidate):
                    outcome.created.append(candidate)
                else:
                    outcome.skipped.append(candidate)
                template.last_materialized_at = candidate
                db.commit()
        except Exception as exc:
            db.rollback()
            outcome.failed = True
            outcome.error = str(exc)
            logger.warning(
                "template_materialization_failed",
                extra={"template_id": template_id, "error_code": getattr(exc, "code", type(exc).__name__)},
                exc_info=True,
            )
        finally:
            db.close()

        if outcome.created and outcome.user_id is not None:
            notify_safely(self.notifier.occurrences_materialized, outcome.user_id, len(outcome.created))
        return outcome

    def _create_occurrence(
        self,
        db: Session,
        service: CashflowService,
        template: models.RecurrenceTemplate,
        occurred_at: date,
    ) -> bool:
        if self._occurrence_exists(db, template.id, occurred_at):
            logger.debug(
                "occurrence_exists",
                extra={"template_id": template.id, "occurred_at": occurred_at.isoformat()},
            )
            return False

        savepoint = db.begin_nested()
        try:
            service.create(
                {
                    "account_id": template.account_id,
                    "amount": template.amount,
                    "currency": template.currency,
                    "type": template.type,
                    "occurred_at": occurred_at,
                    "category": template.category,
                    "description": template.description,
                    "template_id": template.id,
                },
                template.user_id,
                commit=False,
                notify=False,
            )
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            # only a row for (template, date) written by another run counts as consumed
            if not self._occurrence_exists(db, template.id, occurred_at):
                raise
            logger.warning(
                "concurrent_occurrence_conflict",
                extra={"template_id": template.id, "occurred_at": occurred_at.isoformat()},
            )
            return False

        logger.info(
            "occurrence_materialized",
            extra={"template_id": template.id, "occurred_at": occurred_at.isoformat()},
        )
        return True

    def _occurrence_exists(self, db: Session, template_id: int, occurred_at: date) -> bool:
        row = (
            db.query(models.CashflowEntry.id)
            .filter(
                models.CashflowEntry.template_id == template_id,
                models.CashflowEntry.occurred_at == occurred_at,
            )
            .first()
        )
        return row is not None

    def _lock_template(self, db: Session, template_id: int) -> Optional[models.RecurrenceTemplate]:
        return (
            db.query(models.RecurrenceTemplate)
            .filter(models.RecurrenceTemplate.id == template_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def _eligible_template_ids(self, reference: Reference) -> list[int]:
        # Coarse window in UTC, widened by a day each way; the exact check runs per template in its own zone.
        if isinstance(reference, datetime):
            utc_day = reference.astimezone(timezone.utc).date()
            latest, earliest = utc_day + timedelta(days=1), utc_day - timedelta(days=1)
        else:
            latest = earliest = reference

        db = self.session_factory()
        try:
            rows = (
                db.query(models.RecurrenceTemplate.id)
                .filter(
                    models.RecurrenceTemplate.start_date <= latest,
                    or_(
                        models.RecurrenceTemplate.end_date.is_(None),
                        models.RecurrenceTemplate.end_date >= earliest,
                    ),
                )
                .order_by(models.RecurrenceTemplate.id)
                .all()
            )
            return [row[0] for row in rows]
        finally:
            db.close()
