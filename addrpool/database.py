"""
Database engine and session management.

The engine and session factory are built once at process start and handed
to whatever needs them; nothing here holds a connection at import time.
"""
import logging
from typing import Iterator

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine with pool settings suited to the backend."""
    pool_kwargs = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
        "pool_recycle": 3600,
    }
    connect_args = {}

    # SQLite uses a different pool class and is shared between threads in tests
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        pool_kwargs = {"pool_pre_ping": True}

    engine = create_engine(database_url, connect_args=connect_args, echo=echo, **pool_kwargs)
    logger.info(
        "Database engine created for %s",
        database_url.split("@")[-1] if "@" in database_url else database_url,
    )
    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def create_tables(engine: Engine) -> None:
    from . import models  # noqa: F401  registers the mappers

    Base.metadata.create_all(bind=engine)


def get_db(request: Request) -> Iterator[Session]:
    """Per-request session dependency."""
    db = request.app.state.session_factory()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
