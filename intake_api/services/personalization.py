"""
Personalization service - builds the script the voice agent opens with.

Called when a call connects. It looks up the caller, keeps the session
registry warm for the later intake webhook, records the call-log transition,
and returns one of three scripts:

- known contact: greeting by first name, then the four interview topics
- unknown caller: polite rejection
- anything going wrong: apology (the endpoint still answers 200)
"""

from typing import Dict, Optional
from sqlalchemy.orm import Session
from intake_api.core.logging import with_context
from intake_api.db.models import CallStatus
from intake_api.schemas.personalization import (
    AgentOverride,
    AgentPrompt,
    ConversationConfigOverride,
    PersonalizationRequest,
    PersonalizationResponse,
)
from intake_api.services.call_log import CallLogService
from intake_api.services.contact_directory import ContactDirectory, ContactMatch
from intake_api.services.phone import normalize_phone
from intake_api.services.session_registry import SessionRegistry
import logging

logger = logging.getLogger(__name__)


INTERVIEW_TOPICS = (
    "Communication style",
    "Professional goals",
    "Values",
    "Partnership expectations",
)


def _topics() -> str:
    return ", ".join(f"{i}) {topic}" for i, topic in enumerate(INTERVIEW_TOPICS, 1))


def build_script(
    prompt: str,
    first_message: str,
    dynamic_variables: Optional[Dict[str, str]] = None,
) -> PersonalizationResponse:
    return PersonalizationResponse(
        dynamic_variables={k: v for k, v in (dynamic_variables or {}).items() if v is not None},
        conversation_config_override=ConversationConfigOverride(
            agent=AgentOverride(
                prompt=AgentPrompt(prompt=prompt),
                first_message=first_message,
                language="en",
            )
        ),
    )


def known_contact_script(contact: ContactMatch, request: PersonalizationRequest) -> PersonalizationResponse:
    name = contact.first_name or "there"
    return build_script(
        prompt=(
            f"This is an existing contact named {name}. "
            f"Focus on learning about their: {_topics()}. "
            "Ask one question at a time and acknowledge each answer before moving on."
        ),
        first_message=f"Hello {name}, I'd like to learn more about your professional goals. Shall we begin?",
        dynamic_variables={
            "caller_id": request.caller_id,
            "call_sid": request.call_sid,
            "called_number": request.called_number,
            "contact_name": name,
            "contact_status": "existing",
        },
    )


def rejection_script(request: PersonalizationRequest) -> PersonalizationResponse:
    return build_script(
        prompt=(
            "The caller is not a registered contact. Politely explain that this line is "
            "only for invited contacts, do not collect any information, and end the call."
        ),
        first_message=(
            "Hello! I'm sorry, but I don't have your number on file. "
            "Please reach out to the person who invited you. Goodbye."
        ),
        dynamic_variables={
            "caller_id": request.caller_id,
            "call_sid": request.call_sid,
            "called_number": request.called_number,
            "contact_name": "Unknown",
            "contact_status": "unrecognized",
        },
    )


def error_script() -> PersonalizationResponse:
    return build_script(
        prompt="System error encountered. Apologize and end the call.",
        first_message="Sorry, we have a system issue. Please try again later. Goodbye.",
        dynamic_variables={"contact_name": "Error"},
    )


class PersonalizationService:
    """
    Service class for the personalization webhook. Never commits.
    """

    def __init__(self, db: Session, registry: SessionRegistry, call_log: CallLogService):
        self.db = db
        self.registry = registry
        self.call_log = call_log
        self.directory = ContactDirectory(db)

    def _caller_phone(self, request: PersonalizationRequest) -> Optional[str]:
        """caller_id first; placeholder caller ids fall back to what we know about the session."""
        phone = normalize_phone(request.caller_id)
        if phone or not request.call_sid:
            return phone
        phone = self.registry.get(request.call_sid)
        if phone:
            return phone
        entry = self.call_log.find_by_session_id(request.call_sid)
        return entry.phone_number if entry else None

    def personalize(self, request: PersonalizationRequest) -> PersonalizationResponse:
        log = with_context(logger, call_sid=request.call_sid)

        phone = self._caller_phone(request)
        contact = self.directory.find_by_phone(phone) if phone else None

        if contact is None:
            log.info(f"Unrecognized caller {phone or request.caller_id}")
            if request.call_sid:
                self.call_log.update_status(request.call_sid, CallStatus.UNRECOGNIZED_CALLER, phone)
            return rejection_script(request)

        log.info(f"Personalizing call for contact {contact.contact_id}")
        if request.call_sid:
            self.registry.put(request.call_sid, phone)
            self.call_log.update_status(request.call_sid, CallStatus.PERSONALIZATION_SERVED, phone)
        return known_contact_script(contact, request)

    def reject_unauthorized(self, request: PersonalizationRequest) -> PersonalizationResponse:
        """Shared secret mismatch: record it and send the rejection script."""
        logger.warning(f"Unauthorized personalization request for call {request.call_sid}")
        if request.call_sid:
            self.call_log.update_status(
                request.call_sid, CallStatus.UNAUTHORIZED, normalize_phone(request.caller_id)
            )
        return rejection_script(request)
