"""Database bootstrap helpers shared by the API and reconciler."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from marketpay.common.config import settings


def make_engine(dsn: str) -> Engine:
    """Engine for `dsn`; SQLite gets cross-thread access (FastAPI runs sync handlers in a threadpool)."""

    if dsn.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if dsn in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees its own empty database.
            kwargs["poolclass"] = StaticPool
        return create_engine(dsn, **kwargs)
    return create_engine(dsn, pool_pre_ping=True)


def make_session_factory(bind: Engine) -> sessionmaker:
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


# Single SQLAlchemy engine per process.
engine = make_engine(settings.postgres_dsn)
SessionLocal = make_session_factory(engine)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass
