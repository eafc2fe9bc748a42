"""
Database models (tables).

These classes define the structure of our database tables.

- users / contacts: owned by the contact-management side, read-only here
- temp_calls: ephemeral session registry (swept by age)
- call_log: durable audit trail of every call session
- intake_responses: one row per interview
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime,
    ForeignKey, Text, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from intake_api.core.clock import utcnow
from intake_api.db.database import Base
import enum


class CallStatus(enum.Enum):
    """
    Lifecycle of one call session in the call log.

    The main path only moves forward:
    INITIATED -> PERSONALIZATION_SERVED -> INTAKE_RECEIVED -> PROCESSED.
    UNAUTHORIZED and UNRECOGNIZED_CALLER are terminal side exits.
    """
    INITIATED = "initiated"
    PERSONALIZATION_SERVED = "personalization_served"
    INTAKE_RECEIVED = "intake_received"
    PROCESSED = "processed"
    UNAUTHORIZED = "unauthorized"
    UNRECOGNIZED_CALLER = "unrecognized_caller"


class ParseStatus(enum.Enum):
    """State of the background transcript parse for one intake row."""
    IDLE = "idle"            # Nothing requested (structured fields came directly)
    REQUESTED = "requested"  # Model call in flight
    PARSED = "parsed"
    FAILED = "failed"


class ResolutionSource(enum.Enum):
    """How the intake webhook was matched to a contact."""
    PHONE = "phone"
    SESSION_REGISTRY = "session_registry"
    CALL_LOG = "call_log"
    CALL_LOG_SUFFIX = "call_log_suffix"
    MOST_RECENT = "most_recent"  # Low confidence, see ALLOW_MOST_RECENT_FALLBACK


class User(Base):
    """Account that owns contacts. Managed by the auth flow."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False)

    contacts = relationship("Contact", back_populates="user")

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"


class Contact(Base):
    """
    Contact model - a person being interviewed.

    The phone number is unique across the system. The intake pipeline only
    reads this table.
    """

    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, index=True)
    phone_number = Column(String(20), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    company_name = Column(String(100), nullable=True)

    created_at = Column(
        DateTime,
        server_default=func.now(),
        nullable=False
    )

    user = relationship("User", back_populates="contacts")
    intake_responses = relationship("IntakeResponse", back_populates="contact")

    def __repr__(self):
        return f"<Contact(id={self.id}, phone_number={self.phone_number}, user_id={self.user_id})>"


class SessionRegistryEntry(Base):
    """
    Short-lived mapping from a telephony session id to the caller's phone.

    This is a cache: rows are deleted after a successful ingestion or by the
    retention sweep. Losing one only means the resolver falls back further.
    """

    __tablename__ = "temp_calls"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(64), unique=True, nullable=False, index=True)
    phone_number = Column(String(20), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<SessionRegistryEntry(session_id={self.session_id}, phone_number={self.phone_number})>"


class CallLogEntry(Base):
    """
    Durable record of one call session from first sight to terminal state.

    Never swept and never deleted. Used for debugging and as a correlation
    fallback when the session registry entry is gone.
    """

    __tablename__ = "call_log"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(64), unique=True, nullable=False, index=True)
    phone_number = Column(String(20), nullable=True)
    status = Column(
        SQLEnum(CallStatus, name="call_status_enum"),
        default=CallStatus.INITIATED,
        nullable=False
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<CallLogEntry(session_id={self.session_id}, status={self.status})>"


class IntakeResponse(Base):
    """
    Outcome of one interview: structured answers and/or the raw transcript.

    Updated in place when answers are backfilled from the transcript; the
    pipeline never deletes rows.
    """

    __tablename__ = "intake_responses"

    id = Column(Integer, primary_key=True, index=True)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    # Correlation / idempotency
    session_id = Column(String(64), nullable=True, index=True)
    idempotency_key = Column(String(255), nullable=True, unique=True)
    resolution_source = Column(
        SQLEnum(ResolutionSource, name="resolution_source_enum"),
        nullable=True
    )
    low_confidence = Column(Boolean, default=False, nullable=False)

    # Interview answers
    communication_style = Column(Text, nullable=True)
    professional_goals = Column(Text, nullable=True)
    values = Column(Text, nullable=True)
    partnership_expectations = Column(Text, nullable=True)
    raw_transcript = Column(Text, nullable=True)

    # Background transcript parsing
    parse_status = Column(
        SQLEnum(ParseStatus, name="parse_status_enum"),
        default=ParseStatus.IDLE,
        nullable=False
    )
    parse_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    contact = relationship("Contact", back_populates="intake_responses")

    STRUCTURED_FIELDS = (
        "communication_style",
        "professional_goals",
        "values",
        "partnership_expectations",
    )

    def has_structured_fields(self) -> bool:
        """True once any of the four interview answers is filled in."""
        return any(getattr(self, field) for field in self.STRUCTURED_FIELDS)

    def __repr__(self):
        return f"<IntakeResponse(id={self.id}, contact_id={self.contact_id}, parse_status={self.parse_status})>"
