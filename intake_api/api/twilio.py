"""
Twilio call-start webhook.

Twilio calls this when a call connects. We remember which number the call
came from (session registry + call log) and hand the call on to the voice
provider with a TwiML redirect.
"""

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from twilio.twiml.voice_response import VoiceResponse
from typing import Any, Dict
from intake_api.api.deps import get_session_registry, verify_twilio_signature
from intake_api.core.config import settings
from intake_api.core.logging import with_context
from intake_api.db.database import get_db, run_with_retry, transaction
from intake_api.services.call_log import CallLogService
from intake_api.services.phone import normalize_phone
from intake_api.services.session_registry import SessionRegistry
import logging

router = APIRouter(
    prefix="/twilio",
    tags=["twilio"]
)

logger = logging.getLogger(__name__)


async def read_body(request: Request) -> Dict[str, Any]:
    """Twilio posts form data; JSON is accepted for manual testing."""
    content_type = request.headers.get("content-type") or ""
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
    form = await request.form()
    return {k: v for k, v in form.items()}


def record_call_start(db: Session, registry: SessionRegistry, call_sid: str, phone: str) -> None:
    def attempt():
        with transaction(db):
            registry.put(call_sid, phone)
            CallLogService(db, suffix_length=settings.call_log_suffix_length).record_initiated(call_sid, phone)

    run_with_retry(attempt)


def twiml(response: VoiceResponse) -> Response:
    return Response(content=str(response), media_type="text/xml")


@router.post("/voice", dependencies=[Depends(verify_twilio_signature)])
async def voice(
    request: Request,
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """
    Call-start webhook.

    Body: From, CallSid (form-encoded from Twilio).

    Returns:
        TwiML redirecting the call to the voice provider's inbound endpoint
    """
    body = await read_body(request)
    call_sid = body.get("CallSid") or body.get("call_sid")
    phone = normalize_phone(body.get("From") or body.get("from"))

    log = with_context(logger, call_sid=call_sid)

    if call_sid and phone:
        try:
            await run_in_threadpool(record_call_start, db, registry, call_sid, phone)
            log.info(f"Call started from {phone}")
        except Exception as e:
            # Bookkeeping failure must not drop the call; the resolver has fallbacks
            log.error(f"Could not record call start: {e}")
    else:
        log.warning(f"Call start without usable CallSid/From: {sorted(body.keys())}")

    response = VoiceResponse()
    response.redirect(settings.elevenlabs_inbound_call_url, method="POST")
    return twiml(response)
