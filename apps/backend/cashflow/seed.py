from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from .core.database import SessionLocal
from .models import Account, CashflowType, Recurrence, RecurrenceTemplate, User, UserProfile
from .services.exchange_rate_service import ExchangeRateService


def seed() -> None:
    db: Session = SessionLocal()
    try:
        # 기본 사용자(데모)
        user = db.query(User).filter_by(email="demo@example.com").first()
        if not user:
            user = User(email="demo@example.com", is_active=True)
            db.add(user)
            db.flush()
            db.add(UserProfile(user_id=user.id, display_name="Demo", base_currency="USD"))

        account = db.query(Account).filter_by(user_id=user.id, name="Checking").first()
        if not account:
            account = Account(user_id=user.id, name="Checking", currency="USD", initial_balance=0, current_balance=0)
            db.add(account)
            db.flush()

        # 월세 / 급여 예시 시리즈
        if not db.query(RecurrenceTemplate).filter_by(user_id=user.id).first():
            db.add_all(
                [
                    RecurrenceTemplate(
                        user_id=user.id,
                        account_id=account.id,
                        amount=Decimal("3000"),
                        currency="USD",
                        type=CashflowType.INFLOW,
                        recurrence=Recurrence.MONTHLY,
                        start_date=date.today().replace(day=1),
                        category="Salary",
                    ),
                    RecurrenceTemplate(
                        user_id=user.id,
                        account_id=account.id,
                        amount=Decimal("1200"),
                        currency="USD",
                        type=CashflowType.OUTFLOW,
                        recurrence=Recurrence.MONTHLY,
                        start_date=date.today().replace(day=1),
                        category="Rent",
                    ),
                ]
            )

        rates = ExchangeRateService(db)
        rates.upsert_rate("EUR", "USD", Decimal("1.08"), date(2024, 1, 1))
        rates.upsert_rate("USD", "KRW", Decimal("1330"), date(2024, 1, 1))

        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed()
