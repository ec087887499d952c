"""Engine, session factory and the request-scoped session dependency."""

from collections.abc import Generator
from typing import Annotated, Any, Dict

from fastapi import Depends
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from medstock.core.config import settings


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "pool_pre_ping": True}
    # Stock item row locks last one ledger transaction, so a modest pool is enough
    return {"pool_size": 10, "max_overflow": 20, "pool_pre_ping": True, "pool_recycle": 3600}


def _enforce_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, **overrides: Any) -> Engine:
    """Engine for ``url``. SQLite connections get foreign key enforcement."""
    options = _engine_options(url)
    options.update(overrides)
    new_engine = create_engine(url, echo=settings.debug and settings.log_level == "DEBUG", **options)
    if url.startswith("sqlite"):
        event.listen(new_engine, "connect", _enforce_sqlite_foreign_keys)
    return new_engine


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """One session per request, closed after the response."""
    with SessionLocal() as db:
        yield db


DbSession = Annotated[Session, Depends(get_db)]
