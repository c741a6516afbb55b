from typing import Annotated
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy import text
from sqlalchemy.orm import Session

from polly.config.settings import settings
from polly.db.session import get_sync_session
from polly.utils.logging import get_logger
from polly.utils.responses import ResponseBuilder

health_router = APIRouter()
logger = get_logger()


@health_router.get("/")
async def health_check(
    request: Request, db: Annotated[Session, Depends(get_sync_session)]
):
    """
    Basic health check endpoint

    Reports service metadata and whether the database answers a trivial query.
    """
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except Exception as e:
        logger.error("Health check database query failed", error=str(e))
        database = "unavailable"

    healthy = database == "ok"
    return ResponseBuilder.success(
        request=request,
        data={
            "status": "healthy" if healthy else "degraded",
            "service": settings.NAME,
            "version": settings.VERSION,
            "database": database,
        },
        message="Service is running" if healthy else "Service is degraded",
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
    )
