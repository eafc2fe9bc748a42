"""
Personalization webhook schemas.

The voice provider asks for conversation configuration when a call connects
and expects a conversation_initiation_client_data body back.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Optional


class PersonalizationRequest(BaseModel):
    """Body the voice provider sends. Unknown extra keys are ignored."""
    caller_id: Optional[str] = None
    agent_id: Optional[str] = None
    called_number: Optional[str] = None
    call_sid: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class AgentPrompt(BaseModel):
    prompt: str


class AgentOverride(BaseModel):
    prompt: AgentPrompt
    first_message: str
    language: str = "en"


class ConversationConfigOverride(BaseModel):
    agent: AgentOverride


class PersonalizationResponse(BaseModel):
    """Schema for the personalization response."""
    type: str = "conversation_initiation_client_data"
    dynamic_variables: Dict[str, str] = Field(default_factory=dict)
    conversation_config_override: ConversationConfigOverride
