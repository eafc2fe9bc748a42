"""
Intake schemas.

NormalizedIntakePayload is the one internal shape every intake webhook is
reduced to, whatever field names the provider used. The response models
describe what the intake endpoints send back.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime
from intake_api.db.models import ParseStatus, ResolutionSource


class NormalizedIntakePayload(BaseModel):
    """
    Canonical view of an intake webhook body.

    Identifiers are used for resolution; the rest is carried through to the
    ingestor untouched.
    """
    session_id: Optional[str] = None
    phone_number: Optional[str] = None

    communication_style: Optional[str] = None
    professional_goals: Optional[str] = None
    values: Optional[str] = None
    partnership_expectations: Optional[str] = None
    raw_transcript: Optional[str] = None

    idempotency_key: Optional[str] = None

    def structured_fields(self) -> dict:
        """The four interview answers, including the None ones."""
        return {
            "communication_style": self.communication_style,
            "professional_goals": self.professional_goals,
            "values": self.values,
            "partnership_expectations": self.partnership_expectations,
        }

    def has_structured_fields(self) -> bool:
        return any(self.structured_fields().values())

    def has_identifier(self) -> bool:
        return bool(self.session_id or self.phone_number)


class IntakeAck(BaseModel):
    """Success body for the intake webhook."""
    status: str = "success"
    message: str
    intake_id: int
    created: bool = Field(..., description="False when an existing row was updated")
    resolution_source: ResolutionSource
    low_confidence: bool = False
    parse_scheduled: bool = False

    model_config = ConfigDict(use_enum_values=True)


class ReparseAck(BaseModel):
    """Acknowledgement for the manual reparse trigger. Parsing continues in the background."""
    message: str
    intake_id: int


class IntakeResponseOut(BaseModel):
    """Read-only view of an intake row for presentation layers."""
    id: int
    contact_id: Optional[int]
    user_id: Optional[int]
    session_id: Optional[str]
    communication_style: Optional[str]
    professional_goals: Optional[str]
    values: Optional[str]
    partnership_expectations: Optional[str]
    raw_transcript: Optional[str]
    resolution_source: Optional[ResolutionSource]
    low_confidence: bool
    parse_status: ParseStatus
    parse_error: Optional[str]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
