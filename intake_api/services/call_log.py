"""
Call log service - durable audit trail of every call session.

One row per session id, created the first time we see the id and advanced at
each pipeline stage. Rows are never deleted, which makes the log the fallback
correlation source once the session registry entry has expired.

Status only moves forward. Writing the current status again is a no-op, and
writing an earlier one is ignored rather than raised, because the log is a
debugging aid and the upstream webhooks arrive in no guaranteed order.
"""

from typing import Optional, Set
from sqlalchemy import update
from sqlalchemy.orm import Session
from intake_api.core.clock import utcnow
from intake_api.db.models import CallLogEntry, CallStatus
from intake_api.db.upsert import conflict_insert
from intake_api.services.phone import normalize_phone
import logging

logger = logging.getLogger(__name__)


MAIN_PATH = (
    CallStatus.INITIATED,
    CallStatus.PERSONALIZATION_SERVED,
    CallStatus.INTAKE_RECEIVED,
    CallStatus.PROCESSED,
)

TERMINAL_STATUSES = frozenset({CallStatus.UNAUTHORIZED, CallStatus.UNRECOGNIZED_CALLER})


def allowed_predecessors(status: CallStatus) -> Set[CallStatus]:
    """
    Statuses a row may be in for a move to `status` to be accepted.

    Examples:
        allowed_predecessors(CallStatus.INTAKE_RECEIVED)
        -> {INITIATED, PERSONALIZATION_SERVED}
        allowed_predecessors(CallStatus.UNRECOGNIZED_CALLER) -> {INITIATED}
    """
    if status in TERMINAL_STATUSES:
        return {CallStatus.INITIATED}
    index = MAIN_PATH.index(status)
    return set(MAIN_PATH[:index])


def can_transition(current: CallStatus, new: CallStatus) -> bool:
    """True if moving from current to new advances the row."""
    return current in allowed_predecessors(new)


class CallLogService:
    """
    Service class for call log operations.

    Like the SQL session registry it never commits; callers own the transaction.
    """

    def __init__(self, db: Session, suffix_length: int = 8):
        """
        Args:
            db: SQLAlchemy database session
            suffix_length: Trailing characters compared by find_by_session_id_suffix
        """
        self.db = db
        self.suffix_length = suffix_length

    def record_initiated(self, session_id: str, phone_number: Optional[str]) -> CallLogEntry:
        """
        Create the row for a new session. Duplicate call-start events are ignored.
        """
        self._insert_if_missing(session_id, phone_number, CallStatus.INITIATED)
        return self.find_by_session_id(session_id)

    def update_status(
        self,
        session_id: str,
        status: CallStatus,
        phone_number: Optional[str] = None,
    ) -> CallLogEntry:
        """
        Advance a session's status, creating the row if the id is unknown.

        Args:
            session_id: Telephony session id
            status: Target status
            phone_number: Optional corrected/confirmed phone number

        Returns:
            The row after the update (its status may be unchanged if the
            requested status would have been a regression)
        """
        inserted = self._insert_if_missing(session_id, phone_number, status)
        if inserted:
            logger.info(f"Call log created for {session_id} at {status.value}")
            return self.find_by_session_id(session_id)

        phone = normalize_phone(phone_number)
        if phone:
            self.db.execute(
                update(CallLogEntry)
                .where(CallLogEntry.session_id == session_id)
                .values(phone_number=phone)
            )

        values = {"status": status}
        if status == CallStatus.PROCESSED:
            values["processed_at"] = utcnow()

        # Single conditional UPDATE keeps concurrent writers from regressing the row
        result = self.db.execute(
            update(CallLogEntry)
            .where(
                CallLogEntry.session_id == session_id,
                CallLogEntry.status.in_(list(allowed_predecessors(status))),
            )
            .values(**values)
        )

        entry = self.find_by_session_id(session_id)
        if result.rowcount:
            logger.info(f"Call log {session_id} -> {status.value}")
        elif entry is not None and entry.status != status:
            logger.info(
                f"Call log {session_id} stays at {entry.status.value}; ignored move to {status.value}"
            )
        return entry

    def find_by_session_id(self, session_id: str) -> Optional[CallLogEntry]:
        """Exact lookup."""
        return (
            self.db.query(CallLogEntry)
            .populate_existing()
            .filter(CallLogEntry.session_id == session_id)
            .first()
        )

    def find_by_session_id_suffix(self, session_id: str) -> Optional[CallLogEntry]:
        """
        Match on the trailing characters of a session id.

        Covers ids that were truncated or re-prefixed between the call leg and
        the webhook. Ids shorter than the suffix length and suffixes shared by
        more than one row return None instead of guessing.
        """
        if not session_id or len(session_id) < self.suffix_length:
            return None
        suffix = session_id[-self.suffix_length:]

        matches = (
            self.db.query(CallLogEntry)
            .filter(CallLogEntry.session_id.endswith(suffix, autoescape=True))
            .order_by(CallLogEntry.created_at.desc())
            .limit(2)
            .all()
        )
        if len(matches) > 1:
            logger.warning(f"Call log suffix {suffix} is ambiguous; not using it")
            return None
        return matches[0] if matches else None

    def _insert_if_missing(self, session_id: str, phone_number: Optional[str], status: CallStatus) -> bool:
        """Insert-or-ignore. Returns True if a new row was written."""
        now = utcnow()
        values = {
            "session_id": session_id,
            "phone_number": normalize_phone(phone_number),
            "status": status,
            "created_at": now,
            "processed_at": now if status == CallStatus.PROCESSED else None,
        }

        insert = conflict_insert(self.db)
        if insert is not None:
            stmt = insert(CallLogEntry).values(**values).on_conflict_do_nothing(
                index_elements=[CallLogEntry.session_id]
            )
            return bool(self.db.execute(stmt).rowcount)

        if self.find_by_session_id(session_id) is not None:
            return False
        self.db.add(CallLogEntry(**values))
        self.db.flush()
        return True
