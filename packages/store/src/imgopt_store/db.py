"""Database engine setup for the queue and activity log."""

from __future__ import annotations

import logging

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel, create_engine

from imgopt_shared.errors import StoreUnavailable

from . import tables  # noqa: F401  registers the table models

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///imgopt.db"
SQLITE_BUSY_TIMEOUT = 30.0


def create_db_engine(url: str = DEFAULT_DATABASE_URL, echo: bool = False) -> Engine:
    """Create an engine; SQLite connections wait on locks instead of failing fast."""
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}
    return create_engine(url, echo=echo, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    try:
        SQLModel.metadata.create_all(engine)
    except SQLAlchemyError as e:
        raise StoreUnavailable(f"Cannot initialize database: {e}") from e
    logger.debug("Database ready at %s", engine.url)
