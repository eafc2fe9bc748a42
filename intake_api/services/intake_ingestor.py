"""
Intake ingestor - persists one resolved interview.

Webhooks are delivered at least once, so the same interview can arrive
several times. Every delivery is matched to its existing row, in this order:

1. Explicit idempotency token (Idempotency-Key header or body field)
2. Session id (stored as "session:<id>" in the same unique column)
3. Heuristic: same contact, recent, and either still unanswered or carrying
   the same content. Low-confidence rows only match an identical
   low-confidence repeat.

A match is updated in place; non-null values are never replaced by nulls.

run_intake() is the entry point the webhook endpoint uses: it resolves and
ingests inside a single transaction, retried on transient connection errors.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
from sqlalchemy import or_
from sqlalchemy.orm import Session
from intake_api.core.clock import utcnow
from intake_api.core.config import settings
from intake_api.core.logging import with_context
from intake_api.db.database import run_with_retry, transaction
from intake_api.db.models import CallStatus, IntakeResponse, ParseStatus
from intake_api.db.upsert import conflict_insert
from intake_api.schemas.intake import NormalizedIntakePayload
from intake_api.services.call_log import CallLogService
from intake_api.services.contact_directory import ContactDirectory
from intake_api.services.identity_resolver import IdentityResolver, Resolution
from intake_api.services.session_registry import SessionRegistry
import logging

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "token:"
SESSION_PREFIX = "session:"


@dataclass
class IngestResult:
    intake_id: int
    created: bool
    parse_needed: bool
    resolution: Resolution


def idempotency_key_for(payload: NormalizedIntakePayload, resolution: Resolution) -> Optional[str]:
    """
    Key stored in intake_responses.idempotency_key.

    An explicit token beats the session id; with neither there is no key and
    only the heuristic can catch duplicates.
    """
    if payload.idempotency_key:
        return f"{TOKEN_PREFIX}{payload.idempotency_key}"
    if resolution.session_id:
        return f"{SESSION_PREFIX}{resolution.session_id}"
    return None


class IntakeIngestor:
    """
    Creates or updates intake rows. Never commits; callers own the transaction.
    """

    def __init__(
        self,
        db: Session,
        registry: SessionRegistry,
        call_log: CallLogService,
        dedup_window: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.registry = registry
        self.call_log = call_log
        self.dedup_window = dedup_window
        self.clock = clock

    def ingest(self, resolution: Resolution, payload: NormalizedIntakePayload) -> IngestResult:
        """
        Persist the interview and close out the session.

        Returns:
            IngestResult; parse_needed is True when the row has a transcript
            but no structured answers and no parse is already under way
        """
        log = with_context(logger, call_sid=resolution.session_id, contact_id=resolution.contact_id)
        key = idempotency_key_for(payload, resolution)
        if resolution.borrowed_session_id:
            log.warning(f"Phone borrowed from session {resolution.borrowed_session_id}, leaving that session untouched")

        existing = self._find_existing(key, resolution, payload)
        if existing is not None:
            self._merge(existing, resolution, payload, key)
            intake, created = existing, False
            log.info(f"Updated intake {intake.id} (duplicate delivery)")
        else:
            intake, created = self._insert(key, resolution, payload)
            if created:
                log.info(f"Created intake {intake.id}")
            else:
                log.info(f"Intake {intake.id} inserted concurrently, merged")

        self.db.flush()

        if resolution.session_id:
            self.call_log.update_status(resolution.session_id, CallStatus.PROCESSED, resolution.phone_number)
            self.registry.delete(resolution.session_id)

        parse_needed = (
            not intake.has_structured_fields()
            and bool(intake.raw_transcript)
            and intake.parse_status not in (ParseStatus.REQUESTED, ParseStatus.PARSED)
        )
        return IngestResult(intake.id, created, parse_needed, resolution)

    def _find_existing(
        self,
        key: Optional[str],
        resolution: Resolution,
        payload: NormalizedIntakePayload,
    ) -> Optional[IntakeResponse]:
        if key is not None:
            row = self._by_key(key)
            if row is not None:
                return row

        # A new explicit token always means a new interview
        if payload.idempotency_key:
            return None

        if resolution.session_id:
            row = (
                self.db.query(IntakeResponse)
                .filter(
                    IntakeResponse.session_id == resolution.session_id,
                    IntakeResponse.contact_id == resolution.contact_id,
                )
                .order_by(IntakeResponse.created_at.desc())
                .first()
            )
            if row is not None:
                return row

        return self._heuristic_match(resolution, payload)

    def _heuristic_match(
        self,
        resolution: Resolution,
        payload: NormalizedIntakePayload,
    ) -> Optional[IntakeResponse]:
        """Recent row for the same contact that this delivery plausibly repeats."""
        since = self.clock() - self.dedup_window
        query = self.db.query(IntakeResponse).filter(
            IntakeResponse.contact_id == resolution.contact_id,
            IntakeResponse.created_at >= since,
            or_(
                IntakeResponse.idempotency_key.is_(None),
                IntakeResponse.idempotency_key.like(f"{SESSION_PREFIX}%"),
            ),
        )
        if resolution.session_id:
            # Rows from a different call are never the same interview
            query = query.filter(
                or_(IntakeResponse.session_id.is_(None), IntakeResponse.session_id == resolution.session_id)
            )

        for row in query.order_by(IntakeResponse.created_at.desc()).all():
            if row.low_confidence:
                # A guessed attribution only absorbs an exact repeat of itself
                if resolution.low_confidence and self._same_content(row, payload):
                    return row
                continue
            if not row.has_structured_fields() or self._same_content(row, payload):
                logger.info(f"Heuristic duplicate match: intake {row.id} for contact {resolution.contact_id}")
                return row
        return None

    @staticmethod
    def _same_content(row: IntakeResponse, payload: NormalizedIntakePayload) -> bool:
        if payload.raw_transcript and payload.raw_transcript == row.raw_transcript:
            return True
        incoming = payload.structured_fields()
        return payload.has_structured_fields() and all(
            getattr(row, name) == value for name, value in incoming.items()
        )

    def _by_key(self, key: str) -> Optional[IntakeResponse]:
        return (
            self.db.query(IntakeResponse)
            .populate_existing()
            .filter(IntakeResponse.idempotency_key == key)
            .first()
        )

    def _insert(self, key: Optional[str], resolution: Resolution, payload: NormalizedIntakePayload):
        """Insert a new row. Returns (row, created)."""
        values = dict(
            contact_id=resolution.contact_id,
            user_id=resolution.user_id,
            session_id=resolution.session_id,
            idempotency_key=key,
            resolution_source=resolution.source,
            low_confidence=resolution.low_confidence,
            raw_transcript=payload.raw_transcript,
            **payload.structured_fields(),
        )

        insert = conflict_insert(self.db) if key is not None else None
        if insert is None:
            intake = IntakeResponse(**values)
            self.db.add(intake)
            self.db.flush()
            return intake, True

        # Two deliveries racing on the same key: the loser merges into the winner
        stmt = insert(IntakeResponse).values(**values).on_conflict_do_nothing(
            index_elements=[IntakeResponse.idempotency_key]
        )
        inserted = bool(self.db.execute(stmt).rowcount)
        intake = self._by_key(key)
        if not inserted:
            self._merge(intake, resolution, payload, key)
        return intake, inserted

    def _merge(
        self,
        intake: IntakeResponse,
        resolution: Resolution,
        payload: NormalizedIntakePayload,
        key: Optional[str],
    ) -> None:
        """Apply a repeat delivery. Only non-null incoming values are written."""
        for name, value in payload.structured_fields().items():
            if value is not None:
                setattr(intake, name, value)
        if payload.raw_transcript:
            intake.raw_transcript = payload.raw_transcript

        if intake.session_id is None and resolution.session_id:
            intake.session_id = resolution.session_id
        if intake.idempotency_key is None and key is not None and self._by_key(key) is None:
            intake.idempotency_key = key
        if intake.contact_id is None:
            intake.contact_id = resolution.contact_id
            intake.user_id = resolution.user_id

        # A confident resolution replaces a low-confidence one
        if intake.low_confidence and not resolution.low_confidence:
            intake.contact_id = resolution.contact_id
            intake.user_id = resolution.user_id
            intake.resolution_source = resolution.source
            intake.low_confidence = False

        intake.updated_at = self.clock()


def run_intake(
    db: Session,
    registry: SessionRegistry,
    payload: NormalizedIntakePayload,
    allow_most_recent: Optional[bool] = None,
) -> IngestResult:
    """
    Resolve and ingest one webhook delivery atomically.

    Resolution errors propagate unchanged after the rollback, so an unknown
    caller leaves no row behind.
    """
    allow = settings.allow_most_recent_fallback if allow_most_recent is None else allow_most_recent

    def attempt() -> IngestResult:
        with transaction(db):
            call_log = CallLogService(db, suffix_length=settings.call_log_suffix_length)
            resolver = IdentityResolver(ContactDirectory(db), registry, call_log, allow_most_recent=allow)
            resolution = resolver.resolve(payload)
            ingestor = IntakeIngestor(
                db,
                registry,
                call_log,
                dedup_window=timedelta(minutes=settings.intake_dedup_window_minutes),
            )
            return ingestor.ingest(resolution, payload)

    return run_with_retry(attempt)
