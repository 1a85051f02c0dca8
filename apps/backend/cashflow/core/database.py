from __future__ import annotations

from typing import Callable

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker, DeclarativeBase, declared_attr

from .config import settings


class Base(DeclarativeBase):
    @declared_attr.directive
    def __tablename__(cls) -> str:  # type: ignore[override]
        return cls.__name__.lower()


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {
            "connect_args": {
                "check_same_thread": False,
                "timeout": settings.DB_TIMEOUT_SECONDS,
            }
        }
    return {"pool_timeout": settings.DB_TIMEOUT_SECONDS, "pool_pre_ping": True}


def install_sqlite_pragmas(eng: Engine) -> None:
    """FK enforce + WAL 모드, and let SQLAlchemy own BEGIN so SAVEPOINTs behave."""

    @event.listens_for(eng, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):  # type: ignore[override]
        # pysqlite would otherwise defer BEGIN until the first DML statement
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(eng, "begin")
    def do_begin(conn):  # type: ignore[override]
        conn.exec_driver_sql("BEGIN")


engine = create_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

if settings.DATABASE_URL.startswith("sqlite"):
    install_sqlite_pragmas(engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> Callable[[], Session]:
    """Factory handed to work that needs its own sessions (one per materializer worker)."""
    return SessionLocal
