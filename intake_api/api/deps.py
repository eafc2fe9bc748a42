"""
Shared FastAPI dependencies.

Contains the auth checks for webhooks and operator endpoints, and the
providers for the services endpoints share (session registry, transcript
parser). Tests swap the providers through app.dependency_overrides.
"""

import hmac
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from twilio.request_validator import RequestValidator

from intake_api.core.config import settings
from intake_api.db.database import get_db
from intake_api.services.session_registry import SessionRegistry, SqlSessionRegistry
from intake_api.services.transcript_parser import TranscriptParser, build_transcript_parser

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)


def webhook_secret_valid(request: Request) -> bool:
    """
    Check the optional X-Webhook-Secret header.

    With no INTAKE_WEBHOOK_SECRET configured every request passes.
    """
    expected = settings.intake_webhook_secret
    if not expected:
        return True
    provided = request.headers.get("x-webhook-secret")
    if not provided or not hmac.compare_digest(provided, expected):
        logger.warning("Webhook auth failed: missing/invalid secret")
        return False
    logger.debug("Webhook authenticated successfully")
    return True


def verify_jwt(token: str) -> Dict[str, Any]:
    """
    Decode an operator bearer token (HS256, signed with JWT_SECRET).

    Raises:
        HTTPException 401: bad signature, expired, or no userId claim
    """
    try:
        decoded = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except jwt.PyJWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    if decoded.get("userId") is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no userId claim",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return decoded


def require_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer)) -> Dict[str, Any]:
    """Operator endpoints: require a valid bearer token and return its claims."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return verify_jwt(credentials.credentials)


def optional_user(request: Request) -> Optional[Dict[str, Any]]:
    """Claims from the Authorization header if one is present and valid, else None."""
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    try:
        return verify_jwt(token.strip())
    except HTTPException:
        return None


async def verify_twilio_signature(request: Request) -> None:
    """
    Validate X-Twilio-Signature when VALIDATE_TWILIO_SIGNATURE is on.

    Twilio signs the public URL it called, so PUBLIC_BASE_URL is used when the
    app sits behind a proxy.
    """
    if not settings.validate_twilio_signature:
        return
    if not settings.twilio_auth_token:
        logger.error("Twilio signature validation enabled without TWILIO_AUTH_TOKEN")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Twilio auth not configured")

    url = str(request.url)
    if settings.public_base_url:
        url = settings.public_base_url.rstrip("/") + request.url.path
        if request.url.query:
            url += f"?{request.url.query}"

    params: Dict[str, Any] = {}
    if "application/x-www-form-urlencoded" in (request.headers.get("content-type") or ""):
        form = await request.form()
        params = {k: v for k, v in form.items()}

    signature = request.headers.get("x-twilio-signature", "")
    if not RequestValidator(settings.twilio_auth_token).validate(url, params, signature):
        logger.warning("Twilio signature validation failed")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid Twilio signature")


def get_session_registry(db: Session = Depends(get_db)) -> SessionRegistry:
    """Registry bound to the request's session so its writes share the request transaction."""
    return SqlSessionRegistry(db, retention=timedelta(hours=settings.session_retention_hours))


_parser: Optional[TranscriptParser] = None


def get_transcript_parser() -> TranscriptParser:
    global _parser
    if _parser is None:
        _parser = build_transcript_parser()
    return _parser
