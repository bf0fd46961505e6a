from __future__ import annotations

from collections.abc import Callable

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

SessionFactory = Callable[[], Session]


def create_sqlalchemy_engine(database_url: str) -> Engine:
    """Create a SQLAlchemy engine suitable for use from the threadpool.

    SQLite connections are created with ``check_same_thread`` disabled because
    repository calls run on worker threads rather than the event loop thread.
    """

    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, future=True, connect_args=connect_args)


def create_sqlalchemy_session_factory(engine: Engine) -> SessionFactory:
    """Create a factory that produces SQLAlchemy Session instances bound to ``engine``."""

    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, class_=Session)

    def _factory() -> Session:
        return SessionLocal()

    return _factory
