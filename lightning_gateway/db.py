from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool


# Base class for all ORM models
Base = declarative_base()


def make_engine(database_url: str) -> Engine:
    """
    Create the SQLAlchemy engine.

    SQLite connections are shared across the worker threads ledger calls run
    on; an in-memory database must live on a single pooled connection.
    """
    kwargs = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    from . import models  # noqa: F401  registers the tables on Base

    Base.metadata.create_all(bind=engine)
