"""
Import status endpoint
"""

from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from api.dependencies import get_db
from schemas.api import ImportStatusResponse, ErrorResponse
from models.health_import import HealthImport
from models.metric_value import MetricValue
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/imports", tags=["Imports"])


@router.get(
    "/{import_id}",
    response_model=ImportStatusResponse,
    responses={404: {"model": ErrorResponse}}
)
async def get_import(import_id: UUID, db: AsyncSession = Depends(get_db)):
    """
    Lifecycle of one import: status, error message, timestamps and the
    number of metric values it produced.
    """
    item = await db.get(HealthImport, import_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Import {import_id} not found")

    count_result = await db.execute(
        select(func.count()).select_from(MetricValue).where(MetricValue.import_id == import_id)
    )

    response = ImportStatusResponse.model_validate(item)
    response.metric_value_count = count_result.scalar() or 0
    return response
