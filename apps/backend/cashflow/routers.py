from __future__ import annotations

from datetime import date
from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .core.database import get_db, get_session_factory
from .core.deps import get_current_user, get_notifier
from . import models
from .schemas import (
    AccountCreate,
    AccountOut,
    CashAccountLineOut,
    CashDetailsOut,
    CashEntryLineOut,
    CashflowCreate,
    CashflowOut,
    CashflowSeriesCreate,
    CashflowSeriesOut,
    CashflowSeriesUpdate,
    CashflowUpdate,
    ExchangeRateIn,
    ExchangeRateOut,
    MaterializationReportOut,
    SeriesPreviewOut,
)
from .scheduler import parse_reference
from .services.balance_service import BalanceSynchronizer
from .services.cash_details_service import CashDetailsService
from .services.cashflow_service import CashflowService
from .services.exchange_rate_service import ExchangeRateService
from .services.materializer import OccurrenceMaterializer
from .services.notifier import ChangeNotifier
from .services.template_service import PREVIEW_LIMIT, TemplateService


router = APIRouter()


# ---- Accounts ---------------------------------------------------------------

@router.get("/accounts", response_model=list[AccountOut])
def list_accounts(
    include_excluded: bool = Query(True),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    q = db.query(models.Account).filter(models.Account.user_id == current_user.id)
    if not include_excluded:
        q = q.filter(models.Account.is_excluded.is_(False))
    return q.order_by(models.Account.name).all()


@router.post("/accounts", response_model=AccountOut, status_code=201)
def create_account(
    payload: AccountCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    acc = models.Account(
        user_id=current_user.id,
        name=payload.name.strip(),
        currency=payload.currency,
        initial_balance=payload.initial_balance,
        current_balance=payload.initial_balance,
        is_excluded=payload.is_excluded,
    )
    db.add(acc)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Account name already exists")
    db.refresh(acc)
    return acc


@router.get("/accounts/{account_id}", response_model=AccountOut)
def get_account(
    account_id: int,
    balance_at: Optional[date] = Query(None, description="Also report the balance as of this date"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    sync = BalanceSynchronizer(db)
    acc = sync.get_account(account_id, current_user.id)
    out = AccountOut.model_validate(acc)
    if balance_at is not None:
        out.balance_at = float(sync.balance_at(account_id, balance_at, current_user.id))
    return out


@router.post("/accounts/{account_id}/recompute", response_model=AccountOut)
def recompute_account(
    account_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    sync = BalanceSynchronizer(db)
    try:
        sync.recompute(account_id, current_user.id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return sync.get_account(account_id, current_user.id)


# ---- Cashflow series --------------------------------------------------------
# static paths first so "/cashflows/{entry_id}" does not shadow them

@router.get("/cashflows/series", response_model=list[CashflowSeriesOut])
def list_series(
    account_id: list[int] | None = Query(None),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return TemplateService(db).list(current_user.id, account_ids=account_id)


@router.post("/cashflows/series", response_model=CashflowSeriesOut, status_code=201)
def create_series(
    payload: CashflowSeriesCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return TemplateService(db).create(payload.model_dump(), current_user.id)


@router.get("/cashflows/series/{series_id}", response_model=CashflowSeriesOut)
def get_series(
    series_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return TemplateService(db).get(series_id, current_user.id)


@router.put("/cashflows/series/{series_id}", response_model=CashflowSeriesOut)
def update_series(
    series_id: int,
    payload: CashflowSeriesUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return TemplateService(db).update(series_id, payload.model_dump(exclude_unset=True), current_user.id)


@router.delete("/cashflows/series/{series_id}", status_code=204)
def delete_series(
    series_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    TemplateService(db).delete(series_id, current_user.id)
    return Response(status_code=204)


@router.get("/cashflows/series/{series_id}/preview", response_model=SeriesPreviewOut)
def preview_series(
    series_id: int,
    until: date = Query(..., description="Last date (inclusive) to project"),
    limit: int = Query(PREVIEW_LIMIT, ge=1, le=PREVIEW_LIMIT),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    dates = TemplateService(db).preview(series_id, current_user.id, until, limit=limit)
    return SeriesPreviewOut(series_id=series_id, until=until, occurrences=dates)


# ---- Materialization --------------------------------------------------------

@router.post("/cashflows/process-recurring", response_model=MaterializationReportOut)
def process_recurring(
    as_of: Optional[str] = Query(None, description="YYYY-MM-DD or ISO timestamp; default now (UTC)"),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    reference = None
    if as_of:
        try:
            reference = parse_reference(as_of)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"invalid as_of: {as_of}")
    report = OccurrenceMaterializer(session_factory, notifier=notifier).materialize_due(reference)
    return MaterializationReportOut(
        reference=report.reference.isoformat(),
        templates_processed=report.templates_processed,
        entries_created=report.entries_created,
        occurrences_skipped=report.occurrences_skipped,
        failed_template_ids=report.failed_template_ids,
        cancelled=report.cancelled,
    )


# ---- Cash details -----------------------------------------------------------

@router.get("/cashflows/details", response_model=CashDetailsOut)
def cash_details(
    base_currency: Optional[str] = Query(None, min_length=3, max_length=3),
    as_of: Optional[date] = Query(None),
    account_id: list[int] | None = Query(None),
    category: list[str] | None = Query(None),
    type: list[models.CashflowType] | None = Query(None),
    include_excluded: bool = Query(False),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    profile = current_user.profile
    currency = base_currency or (profile.base_currency if profile and profile.base_currency else "USD")
    details = CashDetailsService(db).details(
        current_user.id,
        currency,
        as_of=as_of,
        account_ids=account_id,
        categories=category,
        types=type,
        include_excluded=include_excluded,
    )
    return CashDetailsOut(
        base_currency=details.base_currency,
        as_of=details.as_of,
        total_balance=float(details.total_balance),
        accounts=[
            CashAccountLineOut(
                id=line.account.id,
                name=line.account.name,
                currency=line.account.currency,
                current_balance=float(line.account.current_balance),
                balance_in_base_currency=float(line.balance_in_base_currency),
                is_excluded=line.account.is_excluded,
            )
            for line in details.accounts
        ],
        cashflows=[
            CashEntryLineOut(
                **CashflowOut.model_validate(line.entry).model_dump(),
                amount_in_base_currency=float(line.amount_in_base_currency),
                signed_amount_in_base_currency=float(line.signed_amount_in_base_currency),
            )
            for line in details.entries
        ],
        series=[CashflowSeriesOut.model_validate(t) for t in details.templates],
    )


# ---- Cashflow entries -------------------------------------------------------

@router.get("/cashflows", response_model=list[CashflowOut])
def list_cashflows(
    response: Response,
    account_id: list[int] | None = Query(None),
    category: list[str] | None = Query(None),
    type: list[models.CashflowType] | None = Query(None),
    start: date | None = Query(None),
    end: date | None = Query(None),
    series_id: int | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    svc = CashflowService(db)
    filters = dict(
        account_ids=account_id,
        categories=category,
        types=type,
        date_from=start,
        date_to=end,
        template_id=series_id,
    )
    total = svc.count(current_user.id, **filters)
    response.headers["X-Total-Count"] = str(total)
    return svc.list(current_user.id, skip=(page - 1) * page_size, take=page_size, **filters)


@router.post("/cashflows", response_model=CashflowOut, status_code=201)
def create_cashflow(
    payload: CashflowCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    return CashflowService(db, notifier=notifier).create(payload.model_dump(), current_user.id)


@router.get("/cashflows/{entry_id}", response_model=CashflowOut)
def get_cashflow(
    entry_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return CashflowService(db).get(entry_id, current_user.id)


@router.put("/cashflows/{entry_id}", response_model=CashflowOut)
def update_cashflow(
    entry_id: int,
    payload: CashflowUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    patch = payload.model_dump(exclude_unset=True)
    return CashflowService(db, notifier=notifier).update(entry_id, patch, current_user.id)


@router.delete("/cashflows/{entry_id}", status_code=204)
def delete_cashflow(
    entry_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    CashflowService(db, notifier=notifier).delete(entry_id, current_user.id)
    return Response(status_code=204)


# ---- Exchange rates ---------------------------------------------------------

@router.get("/exchange-rates", response_model=list[ExchangeRateOut])
def list_exchange_rates(
    base: str | None = Query(None, min_length=3, max_length=3),
    quote: str | None = Query(None, min_length=3, max_length=3),
    db: Session = Depends(get_db),
):
    q = db.query(models.ExchangeRate)
    if base:
        q = q.filter(models.ExchangeRate.base == base.upper())
    if quote:
        q = q.filter(models.ExchangeRate.quote == quote.upper())
    return q.order_by(models.ExchangeRate.date.desc(), models.ExchangeRate.id.desc()).all()


@router.post("/exchange-rates", response_model=ExchangeRateOut, status_code=201)
def upsert_exchange_rate(payload: ExchangeRateIn, db: Session = Depends(get_db)):
    row = ExchangeRateService(db).upsert_rate(payload.base, payload.quote, payload.rate, payload.date)
    db.commit()
    db.refresh(row)
    return row
