from __future__ import annotations

from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from cashflow import models
from cashflow.exceptions import ConversionError, NotFoundError, TransientStoreError, ValidationError
from cashflow.services.cashflow_service import CashflowService
from cashflow.services.validation import INVALID_CURRENCY, NEGATIVE_AMOUNT


def _entry(account_id: int, amount: str = "100", kind: str = "INFLOW", **extra):
    data = {
        "account_id": account_id,
        "amount": Decimal(amount),
        "currency": "USD",
        "type": kind,
        "occurred_at": date(2024, 3, 1),
    }
    data.update(extra)
    return data


def _balance(db_session, account_id: int) -> Decimal:
    db_session.expire_all()
    return Decimal(db_session.get(models.Account, account_id).current_balance)


def test_inflow_and_outflow_move_balance_exactly(db_session, make_account, user_id, notifier):
    acc = make_account(initial="1000")
    svc = CashflowService(db_session, notifier=notifier)

    inflow = svc.create(_entry(acc.id, "100", "INFLOW"), user_id)
    assert _balance(db_session, acc.id) == Decimal("1100")

    outflow = svc.create(_entry(acc.id, "100", "OUTFLOW"), user_id)
    assert _balance(db_session, acc.id) == Decimal("1000")

    svc.delete(outflow.id, user_id)
    assert _balance(db_session, acc.id) == Decimal("1100")
    svc.delete(inflow.id, user_id)
    assert _balance(db_session, acc.id) == Decimal("1000")

    assert notifier.kinds() == ["created", "created", "deleted", "deleted"]
    assert all(evt[1] == user_id for evt in notifier.events)


def test_update_amount_applies_net_difference(db_session, make_account, user_id, notifier):
    acc = make_account()
    svc = CashflowService(db_session, notifier=notifier)
    entry = svc.create(_entry(acc.id, "100"), user_id)
    assert _balance(db_session, acc.id) == Decimal("100")

    svc.update(entry.id, {"amount": Decimal("150")}, user_id)
    assert _balance(db_session, acc.id) == Decimal("150")

    history = db_session.query(models.AccountBalance).filter_by(account_id=acc.id).all()
    assert [(h.date, Decimal(h.delta)) for h in history] == [(date(2024, 3, 1), Decimal("150"))]
    assert notifier.kinds() == ["created", "updated"]


def test_update_direction_flips_sign(db_session, make_account, user_id):
    acc = make_account()
    svc = CashflowService(db_session)
    entry = svc.create(_entry(acc.id, "40", "INFLOW"), user_id)
    svc.update(entry.id, {"type": "OUTFLOW"}, user_id)
    assert _balance(db_session, acc.id) == Decimal("-40")


def test_update_moves_effect_between_accounts_and_dates(db_session, make_account, user_id):
    a = make_account("A")
    b = make_account("B")
    svc = CashflowService(db_session)
    entry = svc.create(_entry(a.id, "75"), user_id)

    svc.update(entry.id, {"account_id": b.id, "occurred_at": date(2024, 4, 2)}, user_id)
    assert _balance(db_session, a.id) == Decimal("0")
    assert _balance(db_session, b.id) == Decimal("75")

    old_day = db_session.query(models.AccountBalance).filter_by(account_id=a.id, date=date(2024, 3, 1)).one()
    assert Decimal(old_day.delta) == 0
    new_day = db_session.query(models.AccountBalance).filter_by(account_id=b.id, date=date(2024, 4, 2)).one()
    assert Decimal(new_day.delta) == Decimal("75")


def test_cross_currency_uses_rate_at_entry_date(db_session, make_account, make_rate, user_id):
    acc = make_account(currency="USD")
    make_rate("EUR", "USD", "1.10", date(2024, 1, 1))
    make_rate("EUR", "USD", "1.25", date(2024, 6, 1))
    svc = CashflowService(db_session)

    entry = svc.create(_entry(acc.id, "100", currency="EUR", occurred_at=date(2024, 3, 1)), user_id)
    assert _balance(db_session, acc.id) == Decimal("110")

    # editing later still reverses and re-applies at the entry's own date
    svc.update(entry.id, {"description": "groceries"}, user_id)
    assert _balance(db_session, acc.id) == Decimal("110")

    svc.update(entry.id, {"occurred_at": date(2024, 7, 1)}, user_id)
    assert _balance(db_session, acc.id) == Decimal("125")


def test_inverse_rate_is_used_when_direct_pair_missing(db_session, make_account, make_rate, user_id):
    acc = make_account(currency="EUR")
    make_rate("EUR", "USD", "1.25", date(2024, 1, 1))
    CashflowService(db_session).create(_entry(acc.id, "100", currency="USD"), user_id)
    assert _balance(db_session, acc.id) == Decimal("80")


def test_conversion_failure_leaves_state_unchanged(db_session, make_account, user_id, notifier):
    acc = make_account(currency="USD", initial="10")
    svc = CashflowService(db_session, notifier=notifier)

    with pytest.raises(ConversionError):
        svc.create(_entry(acc.id, "100", currency="JPY"), user_id)

    assert _balance(db_session, acc.id) == Decimal("10")
    assert db_session.query(models.CashflowEntry).count() == 0
    assert db_session.query(models.AccountBalance).count() == 0
    assert notifier.events == []


def test_failed_update_keeps_pre_image(db_session, make_account, user_id):
    acc = make_account(currency="USD")
    svc = CashflowService(db_session)
    entry = svc.create(_entry(acc.id, "100"), user_id)

    with pytest.raises(ConversionError):
        svc.update(entry.id, {"currency": "JPY"}, user_id)

    assert _balance(db_session, acc.id) == Decimal("100")
    assert db_session.get(models.CashflowEntry, entry.id).currency == "USD"


def test_not_found_for_other_users_account(db_session, make_account, user_id, other_user_id):
    foreign = make_account("Theirs", owner=other_user_id)
    with pytest.raises(NotFoundError):
        CashflowService(db_session).create(_entry(foreign.id), user_id)


def test_not_found_for_other_users_entry(db_session, make_account, user_id, other_user_id):
    acc = make_account()
    entry = CashflowService(db_session).create(_entry(acc.id), user_id)
    svc = CashflowService(db_session)
    with pytest.raises(NotFoundError):
        svc.update(entry.id, {"amount": Decimal("1")}, other_user_id)
    with pytest.raises(NotFoundError):
        svc.delete(entry.id, other_user_id)
    assert _balance(db_session, acc.id) == Decimal("100")


def test_not_found_for_unknown_template(db_session, make_account, user_id):
    acc = make_account()
    with pytest.raises(NotFoundError) as exc:
        CashflowService(db_session).create(_entry(acc.id, template_id=9999), user_id)
    assert exc.value.resource == "Cashflow series"


def test_validation_rejects_before_write(db_session, make_account, user_id):
    acc = make_account()
    svc = CashflowService(db_session)

    with pytest.raises(ValidationError) as exc:
        svc.create(_entry(acc.id, "-5", currency="usd1"), user_id)
    kinds = {v.kind for v in exc.value.violations}
    assert kinds == {NEGATIVE_AMOUNT, INVALID_CURRENCY}
    assert db_session.query(models.CashflowEntry).count() == 0


def test_currency_is_normalized(db_session, make_account, user_id):
    acc = make_account()
    entry = CashflowService(db_session).create(_entry(acc.id, currency=" usd "), user_id)
    assert entry.currency == "USD"


def test_zero_amount_entry_skips_balance(db_session, make_account, user_id):
    acc = make_account()
    CashflowService(db_session).create(_entry(acc.id, "0"), user_id)
    assert db_session.query(models.CashflowEntry).count() == 1
    assert db_session.query(models.AccountBalance).count() == 0
    assert _balance(db_session, acc.id) == Decimal("0")


def test_list_filters(db_session, make_account, user_id):
    a = make_account("A")
    b = make_account("B")
    svc = CashflowService(db_session)
    svc.create(_entry(a.id, "10", category="Food", occurred_at=date(2024, 1, 5)), user_id)
    svc.create(_entry(a.id, "20", "OUTFLOW", category="Rent", occurred_at=date(2024, 2, 5)), user_id)
    svc.create(_entry(b.id, "30", category="Food", occurred_at=date(2024, 3, 5)), user_id)

    assert [e.amount for e in svc.list(user_id)] == [Decimal("30"), Decimal("20"), Decimal("10")]
    assert len(svc.list(user_id, account_ids=[a.id])) == 2
    assert len(svc.list(user_id, categories=["Food"])) == 2
    assert len(svc.list(user_id, types=[models.CashflowType.OUTFLOW])) == 1
    assert len(svc.list(user_id, date_from=date(2024, 2, 1), date_to=date(2024, 2, 29))) == 1
    assert len(svc.list(user_id, skip=1, take=1)) == 1
    assert svc.count(user_id) == 3
    assert svc.count(user_id, categories=["Food"], account_ids=[a.id]) == 1



def test_locked_store_is_reported_as_transient(db_session, make_account, user_id, notifier, monkeypatch):
    acc = make_account(initial="10")
    locked = OperationalError("COMMIT", {}, Exception("database is locked"))
    monkeypatch.setattr(db_session, "commit", MagicMock(side_effect=locked))

    with pytest.raises(TransientStoreError) as exc:
        CashflowService(db_session, notifier=notifier).create(_entry(acc.id, "5"), user_id)

    assert exc.value.code == "TRANSIENT_STORE_ERROR"
    assert notifier.events == []
    monkeypatch.undo()
    assert _balance(db_session, acc.id) == Decimal("10")
    assert db_session.query(models.CashflowEntry).count() == 0


def test_sub_quantum_amount_is_stored_and_reversed_at_four_places(db_session, make_account, user_id):
    acc = make_account()
    svc = CashflowService(db_session)

    entry = svc.create(_entry(acc.id, "0.00015"), user_id)
    db_session.expire_all()
    stored = Decimal(db_session.get(models.CashflowEntry, entry.id).amount)
    assert stored == Decimal("0.0002")
    assert _balance(db_session, acc.id) == stored

    svc.update(entry.id, {"amount": Decimal("1.23456")}, user_id)
    assert _balance(db_session, acc.id) == Decimal("1.2346")

    svc.delete(entry.id, user_id)
    assert _balance(db_session, acc.id) == Decimal("0")
