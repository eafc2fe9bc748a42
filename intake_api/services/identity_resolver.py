"""
Identity resolver - maps an intake webhook to exactly one contact.

The provider's identifying fields are unreliable: sometimes the caller's
number is there, sometimes only the call sid, sometimes a reformatted sid,
sometimes nothing. The resolver tries an ordered list of strategies, each
producing a candidate phone number, and the first candidate that matches a
contact wins:

1. DirectPhoneStrategy      - phone number in the payload
2. SessionRegistryStrategy  - session id -> phone via the session registry
3. CallLogExactStrategy     - session id -> phone via the call log
4. CallLogSuffixStrategy    - trailing characters of the session id via the call log
5. MostRecentStrategy       - newest registry entry (opt-in, low confidence)

Each candidate is looked up with every phone normalization the contact
directory knows. Nothing here ever creates a contact.
"""

import abc
from dataclasses import dataclass, field
from typing import List, Optional, Sequence
from intake_api.core.logging import with_context
from intake_api.db.models import CallStatus, ResolutionSource
from intake_api.schemas.intake import NormalizedIntakePayload
from intake_api.services.call_log import CallLogService
from intake_api.services.contact_directory import ContactDirectory, ContactMatch
from intake_api.services.phone import normalize_phone
from intake_api.services.session_registry import SessionRegistry
import logging

logger = logging.getLogger(__name__)


class ResolutionError(Exception):
    """Base class for webhook payloads that cannot be tied to a contact."""


class NoIdentifierProvided(ResolutionError):
    """The payload carries neither a usable phone number nor a session id."""

    def __init__(self, message: str = "Payload has no usable phone number or session id"):
        super().__init__(message)


class ContactNotFound(ResolutionError):
    """
    Identifiers were present but no contact matches.

    Attributes:
        normalized_phone: First normalized number tried (None if no phone could be derived)
        attempted: Every normalized number tried, in order
        session_id: Session id from the payload, if any
    """

    def __init__(self, normalized_phone: Optional[str], attempted: Sequence[str] = (), session_id: Optional[str] = None):
        self.normalized_phone = normalized_phone
        self.attempted = list(attempted)
        self.session_id = session_id
        if normalized_phone:
            message = f"No contact found for phone {normalized_phone}"
        else:
            message = f"No phone number could be derived for session {session_id}"
        super().__init__(message)

    def details(self) -> dict:
        return {
            "normalized_phone": self.normalized_phone,
            "attempted": self.attempted,
            "session_id": self.session_id,
        }


@dataclass(frozen=True)
class PhoneCandidate:
    """A phone number a strategy believes belongs to this webhook."""
    phone_number: str
    source: ResolutionSource
    session_id: Optional[str] = None
    borrowed_session_id: Optional[str] = None


@dataclass(frozen=True)
class Resolution:
    """
    Outcome of a successful resolution.

    session_id is the session this webhook belongs to and drives the call log,
    registry cleanup and idempotency key. borrowed_session_id is set only for
    most-recent resolutions: the other call whose registry entry supplied the
    phone number. It is diagnostic only and never written to.
    """
    contact: ContactMatch
    phone_number: str
    source: ResolutionSource
    session_id: Optional[str] = None
    low_confidence: bool = False
    attempted: List[str] = field(default_factory=list)
    borrowed_session_id: Optional[str] = None

    @property
    def contact_id(self) -> int:
        return self.contact.contact_id

    @property
    def user_id(self) -> Optional[int]:
        return self.contact.user_id


class ResolverStrategy(abc.ABC):
    """One step of the fallback chain. find() returns a candidate or None."""

    source: ResolutionSource

    @abc.abstractmethod
    def find(self, payload: NormalizedIntakePayload) -> Optional[PhoneCandidate]:
        ...


class DirectPhoneStrategy(ResolverStrategy):
    source = ResolutionSource.PHONE

    def find(self, payload):
        phone = normalize_phone(payload.phone_number)
        if phone is None:
            return None
        return PhoneCandidate(phone, self.source, payload.session_id)


class SessionRegistryStrategy(ResolverStrategy):
    source = ResolutionSource.SESSION_REGISTRY

    def __init__(self, registry: SessionRegistry):
        self.registry = registry

    def find(self, payload):
        if not payload.session_id:
            return None
        phone = self.registry.get(payload.session_id)
        if phone is None:
            logger.info(f"Session {payload.session_id} not in session registry")
            return None
        return PhoneCandidate(phone, self.source, payload.session_id)


class CallLogExactStrategy(ResolverStrategy):
    source = ResolutionSource.CALL_LOG

    def __init__(self, call_log: CallLogService):
        self.call_log = call_log

    def find(self, payload):
        if not payload.session_id:
            return None
        entry = self.call_log.find_by_session_id(payload.session_id)
        if entry is None or not entry.phone_number:
            return None
        return PhoneCandidate(entry.phone_number, self.source, entry.session_id)


class CallLogSuffixStrategy(ResolverStrategy):
    source = ResolutionSource.CALL_LOG_SUFFIX

    def __init__(self, call_log: CallLogService):
        self.call_log = call_log

    def find(self, payload):
        if not payload.session_id:
            return None
        entry = self.call_log.find_by_session_id_suffix(payload.session_id)
        if entry is None or not entry.phone_number:
            return None
        logger.info(f"Session {payload.session_id} matched call log {entry.session_id} by suffix")
        return PhoneCandidate(entry.phone_number, self.source, entry.session_id)


class MostRecentStrategy(ResolverStrategy):
    """
    Newest session registry entry, whoever it belongs to.

    Only used when the payload has no phone number. Under concurrent calls
    this can attribute an interview to the wrong contact, so results are
    flagged low confidence. The newest entry's session belongs to another
    call: it is reported as borrowed, and the candidate keeps the payload's
    own session id (possibly None).
    """
    source = ResolutionSource.MOST_RECENT

    def __init__(self, registry: SessionRegistry):
        self.registry = registry

    def find(self, payload):
        if payload.phone_number:
            return None
        latest = self.registry.find_most_recent()
        if latest is None:
            return None
        borrowed, phone = latest
        logger.warning(
            f"LOW-CONFIDENCE RESOLUTION: using phone of most recent session {borrowed} "
            f"(payload session_id={payload.session_id})"
        )
        return PhoneCandidate(phone, self.source, payload.session_id, borrowed_session_id=borrowed)


class IdentityResolver:
    """
    Runs the strategy chain and applies resolution side effects.

    Side effects (all inside the caller's transaction):
    - registry/call-log paths refresh the session registry entry
    - any resolution with a known session id records INTAKE_RECEIVED in the call log
    """

    def __init__(
        self,
        directory: ContactDirectory,
        registry: SessionRegistry,
        call_log: CallLogService,
        allow_most_recent: bool = False,
    ):
        self.directory = directory
        self.registry = registry
        self.call_log = call_log
        self.allow_most_recent = allow_most_recent

        self.strategies: List[ResolverStrategy] = [
            DirectPhoneStrategy(),
            SessionRegistryStrategy(registry),
            CallLogExactStrategy(call_log),
            CallLogSuffixStrategy(call_log),
        ]
        if allow_most_recent:
            self.strategies.append(MostRecentStrategy(registry))

    def resolve(self, payload: NormalizedIntakePayload) -> Resolution:
        """
        Resolve a payload to one contact.

        Raises:
            NoIdentifierProvided: nothing to resolve with
            ContactNotFound: identifiers present, no contact matched
        """
        log = with_context(logger, call_sid=payload.session_id)

        if not payload.has_identifier() and not self.allow_most_recent:
            raise NoIdentifierProvided()

        attempted: List[str] = []
        for strategy in self.strategies:
            candidate = strategy.find(payload)
            if candidate is None:
                continue

            normalized = normalize_phone(candidate.phone_number) or candidate.phone_number
            if normalized not in attempted:
                attempted.append(normalized)

            match = self.directory.find_by_phone(candidate.phone_number)
            if match is None:
                log.info(f"{strategy.source.value}: no contact for {normalized}")
                continue

            resolution = Resolution(
                contact=match,
                phone_number=normalized,
                source=candidate.source,
                session_id=candidate.session_id,
                low_confidence=candidate.source == ResolutionSource.MOST_RECENT,
                attempted=attempted,
                borrowed_session_id=candidate.borrowed_session_id,
            )
            resolution = self._with_inferred_session(resolution)
            self._apply_side_effects(resolution)
            log.info(
                f"Resolved to contact {match.contact_id} via {resolution.source.value}"
                + (" (LOW CONFIDENCE)" if resolution.low_confidence else "")
            )
            return resolution

        if not attempted and not payload.has_identifier():
            raise NoIdentifierProvided()

        raise ContactNotFound(
            normalized_phone=attempted[0] if attempted else None,
            attempted=attempted,
            session_id=payload.session_id,
        )

    def _with_inferred_session(self, resolution: Resolution) -> Resolution:
        """Phone-only webhooks: borrow the session id the registry has for that phone."""
        if resolution.session_id or resolution.low_confidence:
            return resolution
        session_id = self.registry.find_most_recent_by_phone(resolution.phone_number)
        if session_id is None:
            return resolution
        logger.info(f"Inferred session {session_id} for phone {resolution.phone_number}")
        return Resolution(
            contact=resolution.contact,
            phone_number=resolution.phone_number,
            source=resolution.source,
            session_id=session_id,
            low_confidence=resolution.low_confidence,
            attempted=resolution.attempted,
        )

    def _apply_side_effects(self, resolution: Resolution) -> None:
        if not resolution.session_id:
            return
        if resolution.source in (
            ResolutionSource.SESSION_REGISTRY,
            ResolutionSource.CALL_LOG,
            ResolutionSource.CALL_LOG_SUFFIX,
        ):
            self.registry.put(resolution.session_id, resolution.phone_number)
        self.call_log.update_status(
            resolution.session_id, CallStatus.INTAKE_RECEIVED, resolution.phone_number
        )
