"""
Intake endpoints.

- POST /intake/receive-data: post-call webhook from the voice provider
- POST /intake/parse-transcript/{intake_id}: operator-triggered reparse
- GET  /api/intake/{intake_id}: read one intake row (owning user only)

The webhook cannot carry our bearer tokens, so it is accepted when the body
looks like a provider payload (or the optional shared secret matches).
Anything else must authenticate like an operator.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from typing import Any, Dict, Optional
from intake_api.api.deps import (
    get_session_registry,
    get_transcript_parser,
    optional_user,
    require_user,
    webhook_secret_valid,
)
from intake_api.core.logging import with_context
from intake_api.db.database import get_db
from intake_api.db.models import IntakeResponse
from intake_api.schemas.intake import IntakeAck, IntakeResponseOut, ReparseAck
from intake_api.services.identity_resolver import ContactNotFound, NoIdentifierProvided
from intake_api.services.intake_ingestor import run_intake
from intake_api.services.payload import looks_like_provider_payload, normalize_intake_payload
from intake_api.services.session_registry import SessionRegistry
from intake_api.services.transcript_jobs import run_transcript_parse
from intake_api.services.transcript_parser import TranscriptParser
import logging

router = APIRouter(
    prefix="/intake",
    tags=["intake"]
)

read_router = APIRouter(
    prefix="/api/intake",
    tags=["intake"]
)

logger = logging.getLogger(__name__)


def error_response(status_code: int, message: str, details: Any = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "message": message, "details": details},
    )


def _user_id(claims: Dict[str, Any]) -> Any:
    return claims.get("userId")


def _owned_by(intake: IntakeResponse, claims: Dict[str, Any]) -> bool:
    return intake.user_id is None or str(intake.user_id) == str(_user_id(claims))


@router.post("/receive-data", response_model=IntakeAck)
async def receive_data(
    request: Request,
    background_tasks: BackgroundTasks,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_session_registry),
    parser: TranscriptParser = Depends(get_transcript_parser),
):
    """
    Receive interview data from the voice provider.

    Returns:
        200 IntakeAck on success
        400 no usable identifier, 401 unauthenticated,
        404 no matching contact, 500 anything else
    """
    if not webhook_secret_valid(request):
        return error_response(status.HTTP_401_UNAUTHORIZED, "Unauthorized webhook")

    try:
        payload = await request.json()
    except ValueError:
        return error_response(status.HTTP_400_BAD_REQUEST, "Request body must be JSON")
    if not isinstance(payload, dict):
        return error_response(status.HTTP_400_BAD_REQUEST, "Request body must be a JSON object")

    if not looks_like_provider_payload(payload) and optional_user(request) is None:
        logger.info("Not a provider payload and no valid bearer token")
        return error_response(status.HTTP_401_UNAUTHORIZED, "Authentication required")

    normalized = normalize_intake_payload(payload, idempotency_header=idempotency_key)
    log = with_context(logger, call_sid=normalized.session_id)
    log.info(
        f"Intake webhook received: phone={normalized.phone_number} "
        f"structured={normalized.has_structured_fields()} transcript={bool(normalized.raw_transcript)}"
    )

    try:
        result = await run_in_threadpool(run_intake, db, registry, normalized)
    except NoIdentifierProvided as e:
        log.warning(f"Intake rejected: {e}")
        return error_response(status.HTTP_400_BAD_REQUEST, str(e))
    except ContactNotFound as e:
        log.warning(f"Intake rejected: {e} (attempted {e.attempted})")
        return error_response(status.HTTP_404_NOT_FOUND, str(e), e.details())
    except Exception as e:
        log.error(f"Error processing intake data: {e}")
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to process intake data", str(e))

    if result.parse_needed:
        # Runs after the response is sent and after the ingest transaction committed
        background_tasks.add_task(run_transcript_parse, result.intake_id, parser)

    return IntakeAck(
        message="Data received and processed successfully",
        intake_id=result.intake_id,
        created=result.created,
        resolution_source=result.resolution.source,
        low_confidence=result.resolution.low_confidence,
        parse_scheduled=result.parse_needed,
    )


@router.post("/parse-transcript/{intake_id}", response_model=ReparseAck)
def parse_transcript(
    intake_id: int,
    background_tasks: BackgroundTasks,
    claims: Dict[str, Any] = Depends(require_user),
    db: Session = Depends(get_db),
    parser: TranscriptParser = Depends(get_transcript_parser),
):
    """
    Re-run transcript parsing for an existing intake row.

    Returns immediately; the parse result lands on the row (parse_status).
    """
    intake = db.get(IntakeResponse, intake_id)
    if intake is None or not _owned_by(intake, claims):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Intake response not found")
    if not intake.raw_transcript:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No raw transcript available to parse")

    background_tasks.add_task(run_transcript_parse, intake.id, parser)
    logger.info(f"Manual transcript parse requested for intake {intake.id} by user {_user_id(claims)}")
    return ReparseAck(message="Transcript parsing started", intake_id=intake.id)


@read_router.get("/{intake_id}", response_model=IntakeResponseOut)
def get_intake(
    intake_id: int,
    claims: Dict[str, Any] = Depends(require_user),
    db: Session = Depends(get_db),
):
    """Read one intake row belonging to the authenticated user."""
    intake = db.get(IntakeResponse, intake_id)
    if intake is None or not _owned_by(intake, claims):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Intake response not found")
    return intake
