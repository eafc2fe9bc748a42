"""
Dialect-aware INSERT ... ON CONFLICT.

PostgreSQL and SQLite both support ON CONFLICT; SQLAlchemy exposes it through
dialect-specific insert() constructs. Other backends get None and callers
fall back to check-then-write.
"""

from typing import Callable, Optional
from sqlalchemy.orm import Session


def conflict_insert(db: Session) -> Optional[Callable]:
    """
    Return the insert() that supports on_conflict_do_update / _do_nothing
    for the session's backend, or None.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        return insert
    return None
