from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from cashflow import models
from cashflow.exceptions import ConversionError
from cashflow.services.cash_details_service import CashDetailsService
from cashflow.services.cashflow_service import CashflowService
from cashflow.services.template_service import TemplateService


@pytest.fixture()
def ledger(db_session, make_account, make_rate, user_id):
    usd = make_account("Checking", currency="USD", initial="1000")
    eur = make_account("Euro", currency="EUR", initial="200")
    hidden = make_account("Hidden", currency="USD", initial="5")
    hidden.is_excluded = True
    db_session.commit()
    make_rate("EUR", "USD", "1.10", date(2024, 1, 1))
    make_rate("EUR", "USD", "1.20", date(2024, 6, 1))

    svc = CashflowService(db_session)
    svc.create(
        {"account_id": eur.id, "amount": Decimal("50"), "currency": "EUR", "type": "OUTFLOW",
         "occurred_at": date(2024, 2, 1), "category": "Food"},
        user_id,
    )
    svc.create(
        {"account_id": usd.id, "amount": Decimal("10"), "currency": "USD", "type": "INFLOW",
         "occurred_at": date(2024, 7, 1), "category": "Misc"},
        user_id,
    )
    TemplateService(db_session).create(
        {"account_id": usd.id, "amount": Decimal("3000"), "currency": "USD", "type": "INFLOW",
         "recurrence": "MONTHLY", "start_date": date(2024, 1, 25)},
        user_id,
    )
    return {"usd": usd, "eur": eur, "hidden": hidden}


def test_totals_convert_at_as_of_and_entries_at_their_date(db_session, ledger, user_id):
    details = CashDetailsService(db_session).details(user_id, "usd", as_of=date(2024, 7, 1))

    assert details.base_currency == "USD"
    assert [line.account.name for line in details.accounts] == ["Checking", "Euro"]
    # 1010 USD + 150 EUR * 1.20
    assert details.total_balance == Decimal("1190")

    by_category = {line.entry.category: line for line in details.entries}
    assert by_category["Food"].amount_in_base_currency == Decimal("55")
    assert by_category["Food"].signed_amount_in_base_currency == Decimal("-55")
    assert by_category["Misc"].signed_amount_in_base_currency == Decimal("10")
    assert len(details.templates) == 1


def test_excluded_accounts_are_opt_in(db_session, ledger, user_id):
    details = CashDetailsService(db_session).details(
        user_id, "USD", as_of=date(2024, 7, 1), include_excluded=True
    )
    assert "Hidden" in [line.account.name for line in details.accounts]
    assert details.total_balance == Decimal("1195")


def test_filters_narrow_entries(db_session, ledger, user_id):
    svc = CashDetailsService(db_session)
    only_food = svc.details(user_id, "USD", as_of=date(2024, 7, 1), categories=["Food"])
    assert [line.entry.category for line in only_food.entries] == ["Food"]

    only_usd = svc.details(user_id, "USD", as_of=date(2024, 7, 1), account_ids=[ledger["usd"].id])
    assert [line.account.name for line in only_usd.accounts] == ["Checking"]
    assert [line.entry.category for line in only_usd.entries] == ["Misc"]

    inflows = svc.details(user_id, "USD", as_of=date(2024, 7, 1), types=[models.CashflowType.INFLOW])
    assert [line.entry.category for line in inflows.entries] == ["Misc"]


def test_missing_rate_surfaces_conversion_error(db_session, ledger, user_id):
    with pytest.raises(ConversionError):
        CashDetailsService(db_session).details(user_id, "KRW", as_of=date(2024, 7, 1))
