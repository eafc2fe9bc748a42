"""
Session registry sweep - periodic deletion of expired entries.

Runs as an asyncio task started from the application lifespan:

    task = asyncio.create_task(start_session_sweeper())

The database work itself is synchronous and runs in a worker thread. A
failed sweep is logged and retried on the next tick; it never stops the loop.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from intake_api.core.config import settings
from intake_api.db.database import run_with_retry, session_scope, transaction
from intake_api.services.session_registry import SqlSessionRegistry

logger = logging.getLogger(__name__)


def sweep_session_registry(
    retention: Optional[timedelta] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> int:
    """
    Delete registry entries older than the retention window.

    Returns:
        Number of entries removed
    """
    retention = retention or timedelta(hours=settings.session_retention_hours)

    def attempt() -> int:
        with session_scope(session_factory) as db, transaction(db):
            return SqlSessionRegistry(db).sweep(retention)

    deleted = run_with_retry(attempt)
    logger.info(f"Session registry sweep removed {deleted} entries older than {retention}")
    return deleted


async def start_session_sweeper(
    interval_seconds: Optional[float] = None,
    retention: Optional[timedelta] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> None:
    """
    Sweep the session registry every interval until cancelled.
    """
    interval = interval_seconds or settings.session_sweep_interval_seconds

    logger.info(f"Session registry sweeper STARTED (every {interval}s)")

    while True:
        try:
            await asyncio.sleep(interval)
            await run_in_threadpool(sweep_session_registry, retention, session_factory)
        except asyncio.CancelledError:
            logger.info("Session registry sweeper cancelled")
            break
        except Exception as e:
            logger.error(f"Session registry sweep failed: {e}")
