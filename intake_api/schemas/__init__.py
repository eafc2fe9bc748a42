"""
Pydantic schemas for request/response validation.

This module exports all schemas for easy importing.
"""

from intake_api.schemas.intake import (
    NormalizedIntakePayload,
    IntakeAck,
    ReparseAck,
    IntakeResponseOut,
)
from intake_api.schemas.personalization import (
    PersonalizationRequest,
    PersonalizationResponse,
)

# Export all schemas
__all__ = [
    "NormalizedIntakePayload",
    "IntakeAck",
    "ReparseAck",
    "IntakeResponseOut",
    "PersonalizationRequest",
    "PersonalizationResponse",
]
