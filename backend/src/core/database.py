# pyright: reportMissingTypeStubs=false
"""
Database engine, sessions and the declarative base.

Request handlers get a session from get_db; scheduled jobs open their own with
get_db_context. Services commit explicitly, so neither helper commits on
behalf of a request.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from core.config import DATABASE_URL
from core.constants import DB_POOL_RECYCLE_SECONDS
from core.exceptions import SettlementError

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        # Route handlers run in FastAPI's threadpool
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_recycle": DB_POOL_RECYCLE_SECONDS}


engine = create_engine(DATABASE_URL, echo=False, future=True, **_engine_options(DATABASE_URL))

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,  # Services hand committed objects back to the API layer
)


class Base(DeclarativeBase):
    """Base class for all settlement models."""
    pass


# Every created_at/updated_at is stamped in Moscow time unless the caller set it
@event.listens_for(Base, "before_insert", propagate=True)  # type: ignore
def receive_before_insert(mapper, connection, target):  # type: ignore
    # Import here to avoid circular import
    from utils.datetime_utils import moscow_now
    now = moscow_now()
    for column_name in ("created_at", "updated_at"):
        if column_name in mapper.columns and getattr(target, column_name, None) is None:  # type: ignore
            setattr(target, column_name, now)  # type: ignore


@event.listens_for(Base, "before_update", propagate=True)  # type: ignore
def receive_before_update(mapper, connection, target):  # type: ignore
    from utils.datetime_utils import moscow_now
    if "updated_at" in mapper.columns:  # type: ignore
        setattr(target, "updated_at", moscow_now())  # type: ignore


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency yielding one session per request.

    Business rejections (SettlementError) roll back quietly; the exception
    handlers in main.py turn them into 4xx responses. Anything else is
    logged before it propagates.

    Example:
        ```python
        @router.get("/payments")
        def list_payments(db: Session = Depends(get_db)):
            return PaymentService.list_payments(db)
        ```
    """
    db = SessionLocal()
    try:
        yield db
    except SettlementError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        logger.exception(f"Database error: {e}")
        db.rollback()
        raise
    except Exception as e:
        logger.exception(f"Unexpected error in database session: {e}")
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Session for work outside a request, committed when the block exits cleanly.

    Scheduled jobs open one per run so a failed run never leaves a broken
    session behind for the next one.
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        logger.exception(f"Database transaction failed: {e}")
        raise
    finally:
        db.close()


def create_tables() -> None:
    """
    Create every settlement table that does not exist yet.

    Local runs and tests only; deployed databases are migrated with Alembic.
    """
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")
    except SQLAlchemyError as e:
        logger.exception(f"Failed to create database tables: {e}")
        raise
