"""
Health check endpoint with database and queue status
"""

from datetime import datetime, timedelta, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, text
from api.dependencies import get_db
from schemas.api import HealthCheckResponse
from models.base import ImportStatus
from models.health_import import HealthImport
from core.config import settings
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


async def count_imports_by_status(db: AsyncSession) -> dict:
    result = await db.execute(
        select(HealthImport.status, func.count()).group_by(HealthImport.status)
    )
    return {
        (status.value if isinstance(status, ImportStatus) else str(status)): count
        for status, count in result.all()
    }


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Import counts by status
    - Imports stuck in processing past the stale-claim timeout (when configured)
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    imports_by_status = {}
    stale_processing = 0

    if db_connected:
        try:
            imports_by_status = await count_imports_by_status(db)

            if settings.STALE_CLAIM_TIMEOUT_MINUTES > 0:
                cutoff = datetime.now(timezone.utc) - timedelta(minutes=settings.STALE_CLAIM_TIMEOUT_MINUTES)
                stale_result = await db.execute(
                    select(func.count()).select_from(HealthImport).where(
                        HealthImport.status == ImportStatus.PROCESSING,
                        HealthImport.processing_started_at < cutoff
                    )
                )
                stale_processing = stale_result.scalar() or 0
        except Exception as e:
            logger.error(f"Failed to read import queue status: {str(e)}")

    # Overall status is derived by the HealthCheckResponse validator
    return HealthCheckResponse(
        database_connected=db_connected,
        imports_by_status=imports_by_status,
        stale_processing=stale_processing
    )
