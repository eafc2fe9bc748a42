"""
Background transcript parsing for one intake row.

run_transcript_parse() is what the webhook and the reparse endpoint hand to
FastAPI's BackgroundTasks. It runs after the response is sent, opens its own
database sessions, and never raises: failures end up in parse_status /
parse_error and the log.

The model call happens between two short transactions, never inside one:

    mark REQUESTED (commit) -> parser.parse() -> single UPDATE (commit)
"""

import logging
from typing import Callable, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from intake_api.core.clock import utcnow
from intake_api.core.logging import with_context
from intake_api.db.database import run_with_retry, session_scope, transaction
from intake_api.db.models import IntakeResponse, ParseStatus
from intake_api.services.transcript_parser import ParsedIntake, TranscriptParseError, TranscriptParser

logger = logging.getLogger(__name__)


def update_intake_with_parsed_data(db: Session, intake_id: int, parsed: ParsedIntake) -> bool:
    """
    Write parsed answers into an existing row in one UPDATE statement.

    All four fields are set together, and only fields that are still empty
    take the parsed value. Answers already on the row (sent directly by the
    provider, possibly by a delivery that landed while the model was running)
    are never overwritten. Never inserts.

    Returns:
        False if the row does not exist
    """
    values = {
        name: func.coalesce(getattr(IntakeResponse, name), value)
        for name, value in parsed.as_dict().items()
    }
    result = db.execute(
        update(IntakeResponse)
        .where(IntakeResponse.id == intake_id)
        .values(
            parse_status=ParseStatus.PARSED,
            parse_error=None,
            updated_at=utcnow(),
            **values,
        )
    )
    return bool(result.rowcount)


def _set_parse_state(
    session_factory: Optional[Callable[[], Session]],
    intake_id: int,
    status: ParseStatus,
    error: Optional[str] = None,
) -> None:
    def attempt():
        with session_scope(session_factory) as db, transaction(db):
            db.execute(
                update(IntakeResponse)
                .where(IntakeResponse.id == intake_id)
                .values(parse_status=status, parse_error=error, updated_at=utcnow())
            )

    run_with_retry(attempt)


def _load_transcript(session_factory: Optional[Callable[[], Session]], intake_id: int) -> Optional[str]:
    with session_scope(session_factory) as db:
        row = db.get(IntakeResponse, intake_id)
        return row.raw_transcript if row else None


def run_transcript_parse(
    intake_id: int,
    parser: TranscriptParser,
    session_factory: Optional[Callable[[], Session]] = None,
) -> ParseStatus:
    """
    Parse the stored transcript of one intake row and backfill its answers.

    Safe to call repeatedly for the same row; each run re-reads the current
    transcript.

    Returns:
        The terminal status of this attempt (PARSED or FAILED)
    """
    log = with_context(logger, intake_id=intake_id)

    try:
        transcript = run_with_retry(lambda: _load_transcript(session_factory, intake_id))
        _set_parse_state(session_factory, intake_id, ParseStatus.REQUESTED)
    except Exception as e:
        log.error(f"Could not start transcript parse: {e}")
        return ParseStatus.FAILED

    try:
        parsed = parser.parse(transcript)
    except TranscriptParseError as e:
        log.error(f"Transcript parse failed: {e}")
        _record_failure(session_factory, intake_id, str(e), log)
        return ParseStatus.FAILED

    def write():
        with session_scope(session_factory) as db, transaction(db):
            return update_intake_with_parsed_data(db, intake_id, parsed)

    try:
        found = run_with_retry(write)
    except Exception as e:
        log.error(f"Could not store parsed transcript: {e}")
        _record_failure(session_factory, intake_id, f"store failed: {e}", log)
        return ParseStatus.FAILED

    if not found:
        log.warning("Intake row disappeared before parsed data could be stored")
        return ParseStatus.FAILED

    log.info("Intake updated with parsed transcript data")
    return ParseStatus.PARSED


def _record_failure(session_factory, intake_id: int, error: str, log) -> None:
    try:
        _set_parse_state(session_factory, intake_id, ParseStatus.FAILED, error[:1000])
    except Exception as e:
        log.error(f"Could not record parse failure: {e}")
