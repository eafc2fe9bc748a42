"""
Health check endpoints.

These endpoints help monitor if our application is running correctly.
Load balancers and deploy platforms use them to decide whether to send
traffic to the app.
"""

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import text
from sqlalchemy.orm import Session
from typing import Dict, Any
from intake_api.core.config import settings
from intake_api.db.database import get_db
import logging

# prefix="/health" means all routes in this file start with /health
router = APIRouter(prefix="/health", tags=["health"])

logger = logging.getLogger(__name__)

SERVICE_NAME = "contact-intake-api"


@router.get("/healthz")
async def health_check() -> Dict[str, str]:
    """
    Liveness - "Is the app alive?"

    Always returns 200 OK if the process can respond. Doesn't check
    external dependencies.

    URL: GET /health/healthz

    Example response:
        {
            "status": "healthy",
            "service": "contact-intake-api"
        }
    """
    logger.debug("Health check called")
    return {
        "status": "healthy",
        "service": SERVICE_NAME
    }


@router.get("/readyz")
def readiness_check(response: Response, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """
    Readiness - "Can the app actually handle requests?"

    Checks that configuration loaded and the database answers a query.

    URL: GET /health/readyz

    Example response when NOT ready (HTTP 503):
        {
            "status": "not_ready",
            "checks": {
                "config": true,
                "database": false
            }
        }
    """
    logger.debug("Readiness check called")

    checks = {
        "config": bool(settings.database_url and settings.jwt_secret),
        "database": False,
    }

    try:
        db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error(f"Database check failed: {e}")

    is_ready = all(checks.values())
    if not is_ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        logger.warning("App not ready - some checks failed")

    return {
        "status": "ready" if is_ready else "not_ready",
        "checks": checks
    }
