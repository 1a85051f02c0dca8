from __future__ import annotations

import os
import tempfile
from decimal import Decimal
from typing import Generator, Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from cashflow.core.database import Base, get_db, get_session_factory, install_sqlite_pragmas
from cashflow.core.deps import get_notifier
from cashflow.main import app
from cashflow import models


class RecordingNotifier:
    """Collects (event, user_id[, count]) tuples instead of publishing them."""

    def __init__(self) -> None:
        self.events: list[tuple] = []

    def cashflow_created(self, user_id: int) -> None:
        self.events.append(("created", user_id))

    def cashflow_updated(self, user_id: int) -> None:
        self.events.append(("updated", user_id))

    def cashflow_deleted(self, user_id: int) -> None:
        self.events.append(("deleted", user_id))

    def occurrences_materialized(self, user_id: int, count: int) -> None:
        self.events.append(("materialized", user_id, count))

    def kinds(self) -> list[str]:
        return [e[0] for e in self.events]


@pytest.fixture(scope="session")
def test_db_url() -> Generator[str, Any, Any]:
    # 사용자 환경을 건드리지 않도록 임시 파일 SQLite 사용
    fd, path = tempfile.mkstemp(prefix="cashflow_test_", suffix=".sqlite3")
    os.close(fd)
    url = f"sqlite:///{path}"
    yield url
    for suffix in ("", "-wal", "-shm"):
        try:
            os.remove(path + suffix)
        except OSError:
            pass


@pytest.fixture(scope="session")
def engine(test_db_url: str):
    eng = create_engine(test_db_url, connect_args={"check_same_thread": False, "timeout": 5})
    install_sqlite_pragmas(eng)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture(scope="session")
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture(scope="function")
def db_session(engine, session_factory) -> Generator[Any, Any, Any]:
    session = session_factory()
    # 간단 시드: demo user(1) + 다른 사용자(2)
    user = models.User(email="demo@example.com", is_active=True)
    other = models.User(email="other@example.com", is_active=True)
    session.add_all([user, other])
    session.flush()
    session.add(models.UserProfile(user_id=user.id, display_name="Demo", base_currency="USD"))
    session.add(models.UserProfile(user_id=other.id, display_name="Other", base_currency="EUR"))
    session.commit()

    try:
        yield session
    finally:
        session.close()
        # 테이블 데이터 정리: FK 순서 역순으로 삭제
        with engine.begin() as conn:
            for tbl in reversed(Base.metadata.sorted_tables):
                conn.execute(tbl.delete())


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(autouse=True)
def override_dependency(db_session, session_factory, notifier):
    # FastAPI DI override
    def _get_db_override():
        try:
            yield db_session
        finally:
            # 요청마다 트랜잭션을 닫아 다른 세션의 커밋이 보이도록 함
            db_session.rollback()

    app.dependency_overrides[get_db] = _get_db_override
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield
    app.dependency_overrides.clear()


@pytest.fixture()
def client(db_session):
    from fastapi.testclient import TestClient
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def user_id(db_session) -> int:
    return db_session.query(models.User).filter_by(email="demo@example.com").one().id


@pytest.fixture()
def other_user_id(db_session) -> int:
    return db_session.query(models.User).filter_by(email="other@example.com").one().id


@pytest.fixture()
def make_account(db_session, user_id):
    def _make(name: str = "Checking", currency: str = "USD", initial: str = "0", owner: int | None = None):
        acc = models.Account(
            user_id=owner or user_id,
            name=name,
            currency=currency,
            initial_balance=Decimal(initial),
            current_balance=Decimal(initial),
        )
        db_session.add(acc)
        db_session.commit()
        return acc

    return _make


@pytest.fixture()
def make_rate(db_session):
    def _make(base: str, quote: str, rate: str, on):
        row = models.ExchangeRate(base=base, quote=quote, rate=Decimal(rate), date=on)
        db_session.add(row)
        db_session.commit()
        return row

    return _make
