"""
Operator endpoints for the session registry and call log.

All routes need a bearer token. They exist for debugging call correlation:
see what the registry holds, clear stale entries by hand, and read the
audit trail for one session.
"""

from datetime import datetime, timedelta
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session
from typing import List, Optional
from intake_api.api.deps import get_session_registry, require_user
from intake_api.core.config import settings
from intake_api.db.database import get_db, transaction
from intake_api.db.models import CallStatus
from intake_api.services.call_log import CallLogService
from intake_api.services.session_registry import SessionRegistry
import logging

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_user)],
)

logger = logging.getLogger(__name__)


class RegistryEntryOut(BaseModel):
    session_id: str
    phone_number: str
    created_at: datetime


class SweepRequest(BaseModel):
    retention_hours: Optional[float] = Field(None, gt=0, description="Defaults to SESSION_RETENTION_HOURS")


class DeletedCount(BaseModel):
    deleted: int


class CallLogOut(BaseModel):
    session_id: str
    phone_number: Optional[str]
    status: CallStatus
    created_at: datetime
    processed_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


@router.get("/session-registry", response_model=List[RegistryEntryOut])
def list_session_registry(registry: SessionRegistry = Depends(get_session_registry)):
    """All registry entries, newest first, including expired ones not yet swept."""
    return [
        RegistryEntryOut(session_id=e.session_id, phone_number=e.phone_number, created_at=e.created_at)
        for e in registry.list_entries()
    ]


@router.post("/session-registry/sweep", response_model=DeletedCount)
def sweep_session_registry(
    body: SweepRequest,
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Delete entries older than retention_hours."""
    hours = body.retention_hours or settings.session_retention_hours
    with transaction(db):
        deleted = registry.sweep(timedelta(hours=hours))
    logger.info(f"Manual sweep removed {deleted} registry entries older than {hours}h")
    return DeletedCount(deleted=deleted)


@router.delete("/session-registry", response_model=DeletedCount)
def clear_session_registry(
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Delete every registry entry."""
    with transaction(db):
        deleted = registry.clear()
    logger.warning(f"Session registry cleared ({deleted} entries)")
    return DeletedCount(deleted=deleted)


@router.delete("/session-registry/{phone_number}", response_model=DeletedCount)
def clear_session_registry_for_phone(
    phone_number: str,
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Delete the registry entries for one phone number (any format)."""
    with transaction(db):
        deleted = registry.delete_by_phone(phone_number)
    logger.info(f"Removed {deleted} registry entries for {phone_number}")
    return DeletedCount(deleted=deleted)


@router.get("/call-log/{session_id}", response_model=CallLogOut)
def get_call_log(session_id: str, db: Session = Depends(get_db)):
    """Audit trail entry for one session."""
    entry = CallLogService(db).find_by_session_id(session_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Call log entry not found")
    return entry
