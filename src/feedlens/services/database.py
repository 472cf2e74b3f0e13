"""Database helpers for PostgreSQL (and SQLite) access."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from feedlens.models import db

SessionFactory = sessionmaker[Session]
SessionT = TypeVar("SessionT", bound=Session)


def build_engine(database_url: str) -> Engine:
    """Create an SQLAlchemy engine with sensible defaults."""

    if database_url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across sessions and threads.
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True, pool_size=5, max_overflow=5)


def create_session_factory(engine: Engine) -> SessionFactory:
    """Create a configured session factory bound to the engine."""

    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@contextmanager
def session_scope(factory: Callable[[], SessionT]) -> Iterator[SessionT]:
    """Provide a transactional scope for a series of operations."""

    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_database(engine: Engine) -> None:
    """Create required tables if they do not already exist."""

    db.Base.metadata.create_all(engine)
