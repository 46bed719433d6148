"""
Database connection and session management.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import settings
from app.core.exceptions import PersistenceError


def build_engine(database_url: str) -> Engine:
    """
    Create an engine for the configured URL.

    SQLite gets a single shared connection so in-memory databases survive
    across sessions; PostgreSQL gets the pooled configuration from settings.
    """
    if database_url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=False, **kwargs)

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        echo=False,
    )


def build_session_factory(bind: Engine) -> sessionmaker:
    # Records are handed out of the session scope, so keep attributes loaded.
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine: Engine = build_engine(settings.database_url)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """
    Transactional scope: commit on success, roll back and raise
    PersistenceError when the store fails.
    """
    db = factory()
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"Database operation failed: {exc}") from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    """
    Initialize database by registering models and creating tables.
    """
    from app.models import Base

    Base.metadata.create_all(bind=bind or engine)


def database_health(bind: Engine | None = None) -> dict[str, Any]:
    """
    Return structured database health details.
    """
    target = bind or engine
    try:
        with target.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {
            "ok": True,
            "dialect": target.dialect.name,
            "database": target.url.database,
        }
    except SQLAlchemyError as exc:
        return {
            "ok": False,
            "error": str(exc),
        }
