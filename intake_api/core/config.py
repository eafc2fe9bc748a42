"""
Configuration module for the Contact Intake API.

This module handles all environment variables and application settings.
It uses Pydantic to validate and parse environment variables automatically.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """
    Settings class that manages all environment variables.

    Missing required fields cause startup failure. Everything else has a
    default that works for local development.

    Example:
        If you set DATABASE_URL="postgresql://..." in your environment,
        settings.database_url will contain that value.
    """

    # Database configuration
    database_url: str  # Required - app won't start without this
    db_pool_size: int = 10
    db_pool_timeout_seconds: int = 10  # Max wait to borrow a pooled connection

    # Transient connection failures are retried with exponential backoff
    db_max_retries: int = 3
    db_retry_backoff_seconds: float = 0.5
    db_retry_backoff_factor: float = 2.0

    # Bearer tokens for operator endpoints ({"userId": ...} HS256)
    jwt_secret: str

    # Optional shared secret the voice provider sends as X-Webhook-Secret
    intake_webhook_secret: Optional[str] = None

    # Twilio request signature validation for the call-start endpoint
    twilio_auth_token: Optional[str] = None
    validate_twilio_signature: bool = False
    public_base_url: Optional[str] = None  # Public URL Twilio signs against

    # Where Twilio is redirected once the call-start bookkeeping is done
    elevenlabs_inbound_call_url: str = "https://api.us.elevenlabs.io/twilio/inbound_call"

    # Transcript parser - OpenAI backend
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"

    # Transcript parser - custom LLM endpoint backend (takes precedence when set)
    llm_api_endpoint: Optional[str] = None
    llm_api_key: Optional[str] = None

    parser_timeout_seconds: float = 30.0

    # Session registry retention and sweep schedule
    session_retention_hours: float = 4.0
    session_sweep_interval_seconds: int = 3600
    session_sweep_enabled: bool = True

    # Identity resolution
    allow_most_recent_fallback: bool = False  # Unsafe under concurrent calls
    call_log_suffix_length: int = 8

    # Heuristic duplicate detection when no idempotency token is available
    intake_dedup_window_minutes: int = 30

    # Application settings with defaults
    debug: bool = False
    port: int = 8000

    class Config:
        """
        Pydantic configuration.

        - env_file: Load from .env file if it exists (for local dev)
        - case_sensitive: False means DATABASE_URL or database_url both work
        """
        env_file = ".env"
        case_sensitive = False


# Create a single instance to use throughout the app
settings = Settings()
