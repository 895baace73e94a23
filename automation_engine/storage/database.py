"""SQLAlchemy engine and session handling.

The module holds one process-wide engine. ``configure_database`` rebinds
it (the application factory does this from configuration, tests point it
at a temporary file), so callers must go through ``database.engine`` and
``session_scope`` rather than importing the engine object.
"""

import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

DEFAULT_DATABASE_URL = "sqlite:///./automation_engine.db"

Base = declarative_base()

_engine: Optional[Engine] = None


def _engine_options(database_url: str, connect_args: Optional[dict]) -> Dict[str, Any]:
    if database_url.startswith("sqlite"):
        # Worker threads share one SQLite connection.
        return {
            "connect_args": {"check_same_thread": False} if connect_args is None else connect_args,
            "poolclass": StaticPool,
        }
    return {"connect_args": connect_args or {}, "pool_pre_ping": True}


def get_database_engine(
    database_url: Optional[str] = None, echo: bool = False, connect_args: Optional[dict] = None
) -> Engine:
    """Return the process engine, creating it from ``database_url`` or the environment on first use."""
    global _engine
    if _engine is None:
        url = database_url or os.getenv("AUTOMATION_ENGINE_DATABASE_URL", DEFAULT_DATABASE_URL)
        _engine = create_engine(url, echo=echo, **_engine_options(url, connect_args))
    return _engine


def reset_database_engine():
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


def _session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = get_database_engine()
SessionLocal = _session_factory(engine)


def configure_database(database_url: str, echo: bool = False) -> Engine:
    """Point the storage layer at ``database_url``."""
    global engine, SessionLocal
    reset_database_engine()
    engine = get_database_engine(database_url, echo=echo)
    SessionLocal = _session_factory(engine)
    return engine


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session that commits when the block exits and rolls back on error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_tables():
    from . import models  # noqa: F401  registers the tables on Base.metadata
    Base.metadata.create_all(bind=engine)


def drop_tables():
    Base.metadata.drop_all(bind=engine)
