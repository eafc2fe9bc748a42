"""
Entry point to run the FastAPI application.

    python run.py
"""

import uvicorn
from intake_api.core.config import settings

if __name__ == "__main__":
    # reload only in debug mode
    uvicorn.run(
        "intake_api.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info"
    )
