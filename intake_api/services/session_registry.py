"""
Session registry - short-lived session id <-> phone number mapping.

Bridges "we saw a call from number X" (call start, personalization) and
"the voice provider tells us about session Y" (intake webhook).

The registry is a cache, not a source of truth. Entries expire after the
retention window, a sweep deletes them, and a missing entry only pushes the
identity resolver to its next fallback.

Two implementations share the SessionRegistry interface:
- SqlSessionRegistry: the temp_calls table, bound to the caller's Session so
  its writes join the caller's transaction
- InMemorySessionRegistry: a dict, for tests and single-process runs
"""

import abc
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from intake_api.core.clock import utcnow
from intake_api.db.models import SessionRegistryEntry
from intake_api.db.upsert import conflict_insert
from intake_api.services.phone import normalize_phone, phone_variants
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistryEntry:
    session_id: str
    phone_number: str
    created_at: datetime


class SessionRegistry(abc.ABC):
    """
    Interface for the session registry.

    Args for implementations:
        retention: entries older than this are invisible to lookups even
            before the sweep removes them (None disables the check)
        clock: returns the current naive-UTC time
    """

    def __init__(self, retention: Optional[timedelta] = None, clock: Callable[[], datetime] = utcnow):
        self.retention = retention
        self.clock = clock

    def _cutoff(self) -> Optional[datetime]:
        if self.retention is None:
            return None
        return self.clock() - self.retention

    @abc.abstractmethod
    def put(self, session_id: str, phone_number: str) -> None:
        """Upsert. Last write wins on the phone number and refreshes the timestamp."""

    @abc.abstractmethod
    def get(self, session_id: str) -> Optional[str]:
        """Phone number for a session id, or None."""

    @abc.abstractmethod
    def find_most_recent_by_phone(self, phone_number: str) -> Optional[str]:
        """Newest session id registered for a phone number, or None."""

    @abc.abstractmethod
    def find_most_recent(self) -> Optional[Tuple[str, str]]:
        """(session_id, phone_number) of the newest entry, or None."""

    @abc.abstractmethod
    def delete(self, session_id: str) -> bool:
        """Remove one entry. Returns False if it was already gone."""

    @abc.abstractmethod
    def sweep(self, retention: timedelta) -> int:
        """Delete entries older than the retention window. Returns the count."""

    @abc.abstractmethod
    def list_entries(self) -> List[RegistryEntry]:
        """All entries, newest first."""

    @abc.abstractmethod
    def delete_by_phone(self, phone_number: str) -> int:
        """Remove every entry for a phone number. Returns the count."""

    @abc.abstractmethod
    def clear(self) -> int:
        """Remove every entry. Returns the count."""


class InMemorySessionRegistry(SessionRegistry):
    """Dict-backed registry. Thread-safe; contents are lost on restart."""

    def __init__(self, retention: Optional[timedelta] = None, clock: Callable[[], datetime] = utcnow):
        super().__init__(retention=retention, clock=clock)
        self._entries: Dict[str, RegistryEntry] = {}
        self._lock = threading.Lock()

    def _live(self) -> List[RegistryEntry]:
        cutoff = self._cutoff()
        entries = list(self._entries.values())
        if cutoff is not None:
            entries = [e for e in entries if e.created_at >= cutoff]
        return sorted(entries, key=lambda e: e.created_at, reverse=True)

    def put(self, session_id: str, phone_number: str) -> None:
        phone = normalize_phone(phone_number) or phone_number
        with self._lock:
            self._entries[session_id] = RegistryEntry(session_id, phone, self.clock())

    def get(self, session_id: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(session_id)
            cutoff = self._cutoff()
            if entry is None or (cutoff is not None and entry.created_at < cutoff):
                return None
            return entry.phone_number

    def find_most_recent_by_phone(self, phone_number: str) -> Optional[str]:
        variants = set(phone_variants(phone_number))
        with self._lock:
            for entry in self._live():
                if entry.phone_number in variants:
                    return entry.session_id
        return None

    def find_most_recent(self) -> Optional[Tuple[str, str]]:
        with self._lock:
            live = self._live()
        if not live:
            return None
        return live[0].session_id, live[0].phone_number

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._entries.pop(session_id, None) is not None

    def sweep(self, retention: timedelta) -> int:
        cutoff = self.clock() - retention
        with self._lock:
            expired = [sid for sid, e in self._entries.items() if e.created_at < cutoff]
            for sid in expired:
                del self._entries[sid]
        return len(expired)

    def list_entries(self) -> List[RegistryEntry]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda e: e.created_at, reverse=True)

    def delete_by_phone(self, phone_number: str) -> int:
        variants = set(phone_variants(phone_number))
        with self._lock:
            doomed = [sid for sid, e in self._entries.items() if e.phone_number in variants]
            for sid in doomed:
                del self._entries[sid]
        return len(doomed)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count


class SqlSessionRegistry(SessionRegistry):
    """
    temp_calls-backed registry.

    Never commits: writes become visible when the caller's transaction does.
    """

    def __init__(
        self,
        db: Session,
        retention: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(retention=retention, clock=clock)
        self.db = db

    def _live_query(self):
        # Upserts go through Core, so refresh anything already in the identity map
        query = self.db.query(SessionRegistryEntry).populate_existing()
        cutoff = self._cutoff()
        if cutoff is not None:
            query = query.filter(SessionRegistryEntry.created_at >= cutoff)
        return query

    def put(self, session_id: str, phone_number: str) -> None:
        phone = normalize_phone(phone_number) or phone_number
        now = self.clock()

        insert = conflict_insert(self.db)
        if insert is not None:
            stmt = insert(SessionRegistryEntry).values(
                session_id=session_id, phone_number=phone, created_at=now
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[SessionRegistryEntry.session_id],
                set_={"phone_number": phone, "created_at": now},
            )
            self.db.execute(stmt)
            return

        existing = (
            self.db.query(SessionRegistryEntry)
            .filter(SessionRegistryEntry.session_id == session_id)
            .first()
        )
        if existing is None:
            self.db.add(SessionRegistryEntry(session_id=session_id, phone_number=phone, created_at=now))
        else:
            existing.phone_number = phone
            existing.created_at = now
        self.db.flush()

    def get(self, session_id: str) -> Optional[str]:
        entry = (
            self._live_query()
            .filter(SessionRegistryEntry.session_id == session_id)
            .first()
        )
        return entry.phone_number if entry else None

    def find_most_recent_by_phone(self, phone_number: str) -> Optional[str]:
        variants = phone_variants(phone_number)
        if not variants:
            return None
        entry = (
            self._live_query()
            .filter(SessionRegistryEntry.phone_number.in_(variants))
            .order_by(SessionRegistryEntry.created_at.desc(), SessionRegistryEntry.id.desc())
            .first()
        )
        return entry.session_id if entry else None

    def find_most_recent(self) -> Optional[Tuple[str, str]]:
        entry = (
            self._live_query()
            .order_by(SessionRegistryEntry.created_at.desc(), SessionRegistryEntry.id.desc())
            .first()
        )
        return (entry.session_id, entry.phone_number) if entry else None

    def delete(self, session_id: str) -> bool:
        deleted = (
            self.db.query(SessionRegistryEntry)
            .filter(SessionRegistryEntry.session_id == session_id)
            .delete(synchronize_session=False)
        )
        return deleted > 0

    def sweep(self, retention: timedelta) -> int:
        cutoff = self.clock() - retention
        return (
            self.db.query(SessionRegistryEntry)
            .filter(SessionRegistryEntry.created_at < cutoff)
            .delete(synchronize_session=False)
        )

    def list_entries(self) -> List[RegistryEntry]:
        rows = (
            self.db.query(SessionRegistryEntry)
            .populate_existing()
            .order_by(SessionRegistryEntry.created_at.desc(), SessionRegistryEntry.id.desc())
            .all()
        )
        return [RegistryEntry(r.session_id, r.phone_number, r.created_at) for r in rows]

    def delete_by_phone(self, phone_number: str) -> int:
        variants = phone_variants(phone_number) or [phone_number]
        return (
            self.db.query(SessionRegistryEntry)
            .filter(SessionRegistryEntry.phone_number.in_(variants))
            .delete(synchronize_session=False)
        )

    def clear(self) -> int:
        return self.db.query(SessionRegistryEntry).delete(synchronize_session=False)
