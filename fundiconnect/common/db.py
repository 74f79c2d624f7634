"""Database bootstrap helpers.

Engines and session factories are built explicitly by `build_context` so tests
and workers can point the pipeline at their own store.
"""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker


def make_engine(dsn: str, **kwargs) -> Engine:
    """Create one SQLAlchemy engine per process."""

    return create_engine(dsn, pool_pre_ping=True, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass
