from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .config import database_url
from .errors import StoreError
from .models import Base

logger = logging.getLogger(__name__)

# Writers give up quickly on a locked database instead of queueing.
BUSY_TIMEOUT_MS = 250


def make_engine(url: Optional[str] = None) -> Engine:
    """Create an engine; SQLite connections get foreign keys and a busy timeout."""
    url = url or database_url()
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    engine = create_engine(url, connect_args=connect_args)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
            cursor.close()

    return engine


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


engine = make_engine()
SessionLocal = make_session_factory(engine)


def init_db(bind: Optional[Engine] = None) -> None:
    """Create tables if they do not exist"""
    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Run a block as one all-or-nothing unit of work.

    The block's writes are committed together when it exits cleanly. Any
    exception rolls the whole session back, so allocation, truck and
    consignment rows never end up half-updated. Database failures surface as
    ``StoreError`` with the driver error chained.
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Store failure, transaction rolled back: %s", exc)
        raise StoreError(f"Database operation failed: {exc.__class__.__name__}") from exc
    except Exception:
        db.rollback()
        raise


__all__ = ["BUSY_TIMEOUT_MS", "SessionLocal", "atomic", "engine", "init_db", "make_engine", "make_session_factory"]
