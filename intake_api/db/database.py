"""
Database connection and session management.

This module sets up SQLAlchemy to connect to our database and provides the
helpers every service uses to touch it:

- get_db: per-request session (FastAPI dependency)
- session_scope: session for work that runs outside a request (background jobs, sweeps)
- transaction: commit-or-rollback around one logical unit of work
- run_with_retry: bounded exponential backoff for transient connection failures
"""

import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy import create_engine
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from intake_api.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _engine_kwargs(database_url: str) -> dict:
    """
    Pick pool settings for the configured backend.

    SQLite (tests, local runs) shares one in-memory connection across threads;
    real databases get a bounded pool with an acquisition timeout.
    """
    if database_url.startswith("sqlite"):
        return {
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    return {
        "pool_size": settings.db_pool_size,
        "pool_timeout": settings.db_pool_timeout_seconds,
        # Test connections before using them, recovers from database restarts
        "pool_pre_ping": True,
    }


engine = create_engine(
    settings.database_url,
    echo=settings.debug,
    **_engine_kwargs(settings.database_url),
)

SessionLocal = sessionmaker(
    autocommit=False,  # We control when to commit
    autoflush=False,
    bind=engine,
)

Base = declarative_base()


def get_db() -> Iterator[Session]:
    """
    Dependency function that provides a database session.

    FastAPI opens the session, hands it to the endpoint, and closes it after
    the response, so a connection is never held past one request.

    Yields:
        Session: A database session for the request
    """
    db = SessionLocal()
    try:
        logger.debug("Database session created")
        yield db
    finally:
        db.close()
        logger.debug("Database session closed")


@contextmanager
def session_scope(session_factory: Callable[[], Session] = None) -> Iterator[Session]:
    """
    Open a session for work that is not tied to an HTTP request.

    Args:
        session_factory: Optional factory, defaults to SessionLocal
    """
    factory = session_factory or SessionLocal
    db = factory()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """
    Run a block as one atomic unit: commit on success, rollback on any error.

    The original exception is always re-raised after the rollback.
    """
    try:
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise


def is_transient_error(error: BaseException) -> bool:
    """
    True for failures worth retrying: refused/terminated connections and
    pool acquisition timeouts. Constraint violations and the like are not.
    """
    if isinstance(error, sa_exc.TimeoutError):
        # QueuePool could not hand out a connection in time
        return True
    if isinstance(error, sa_exc.DisconnectionError):
        return True
    if isinstance(error, sa_exc.DBAPIError):
        if error.connection_invalidated:
            return True
        return isinstance(error, (sa_exc.OperationalError, sa_exc.InterfaceError))
    return False


def run_with_retry(
    operation: Callable[[], T],
    *,
    max_retries: int = None,
    backoff_seconds: float = None,
    backoff_factor: float = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call operation(), retrying transient database failures.

    The operation is expected to be a whole unit of work (it opens and
    commits its own transaction), so a retry never replays half a write.

    Args:
        operation: Zero-argument callable doing the work
        max_retries: Retries after the first attempt (default from settings)
        backoff_seconds: Delay before the first retry (default from settings)
        backoff_factor: Multiplier applied to the delay after each retry
        sleep: Injected for tests

    Returns:
        Whatever operation() returns

    Raises:
        The last transient error once retries are exhausted, or any
        non-transient error immediately.
    """
    retries = settings.db_max_retries if max_retries is None else max_retries
    delay = settings.db_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
    factor = settings.db_retry_backoff_factor if backoff_factor is None else backoff_factor

    attempt = 0
    while True:
        try:
            return operation()
        except Exception as e:
            if not is_transient_error(e) or attempt >= retries:
                raise
            attempt += 1
            logger.warning(
                "Transient database error, retrying (attempt %d/%d in %.2fs): %s",
                attempt, retries, delay, e,
            )
            sleep(delay)
            delay *= factor
