from __future__ import annotations

from collections.abc import Callable
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

SessionFactory = Callable[[], Session]


def build_engine(database_url: str, **engine_kwargs: Any) -> Engine:
    if database_url.startswith("sqlite"):
        # Sessions may be opened from worker threads of the HTTP server.
        engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(database_url, future=True, **engine_kwargs)


def create_sqlalchemy_session_factory(engine: Engine) -> SessionFactory:
    """Create a SQLAlchemy-backed SessionFactory bound to ``engine``.

    ``expire_on_commit`` is disabled so ORM rows can still be converted to
    domain models after the write that produced them commits.
    """

    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, class_=Session)

    def _factory() -> Session:
        return SessionLocal()

    return _factory
