"""
ElevenLabs personalization webhook.

The voice provider calls this when a conversation starts and uses the
response to configure the agent. It always gets a 200: an error status here
makes the provider drop the call, so failures become an apology script.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from typing import Any, Dict
from intake_api.api.deps import get_session_registry, webhook_secret_valid
from intake_api.core.config import settings
from intake_api.db.database import get_db, run_with_retry, transaction
from intake_api.schemas.personalization import PersonalizationRequest, PersonalizationResponse
from intake_api.services.call_log import CallLogService
from intake_api.services.personalization import PersonalizationService, error_script
from intake_api.services.session_registry import SessionRegistry
import logging


router = APIRouter(prefix="/elevenlabs", tags=["elevenlabs"])

logger = logging.getLogger(__name__)


async def read_payload(request: Request) -> Dict[str, Any]:
    """Accept JSON or form-encoded payloads."""
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        return payload
    try:
        form = await request.form()
    except Exception:
        return {}
    return {k: v for k, v in form.items()}


def personalize(
    db: Session,
    registry: SessionRegistry,
    body: PersonalizationRequest,
    authorized: bool,
) -> PersonalizationResponse:
    def attempt():
        with transaction(db):
            service = PersonalizationService(
                db, registry, CallLogService(db, suffix_length=settings.call_log_suffix_length)
            )
            if not authorized:
                return service.reject_unauthorized(body)
            return service.personalize(body)

    return run_with_retry(attempt)


@router.post("/personalization", response_model=PersonalizationResponse)
async def personalization(
    request: Request,
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_session_registry),
) -> PersonalizationResponse:
    """
    Personalization webhook.

    Body: caller_id, agent_id, called_number, call_sid.

    Returns:
        conversation_initiation_client_data with a greeting for known
        contacts, a rejection for unknown or unauthorized callers, or an
        apology if anything fails
    """
    try:
        payload = await read_payload(request)
        body = PersonalizationRequest.model_validate(payload)
        logger.info(
            "Personalization request: call_sid=%s caller_id=%s agent_id=%s",
            body.call_sid, body.caller_id, body.agent_id,
        )
        authorized = webhook_secret_valid(request)
        return await run_in_threadpool(personalize, db, registry, body, authorized)
    except Exception as e:
        logger.error(f"Error in personalization webhook: {e}")
        return error_script()
