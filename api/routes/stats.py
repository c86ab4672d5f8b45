"""
Import and metric statistics endpoint
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from api.dependencies import get_db
from api.routes.health import count_imports_by_status
from schemas.api import StatsResponse
from models.health_import import HealthImport
from models.metric_definition import MetricDefinition
from models.metric_value import MetricValue
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Statistics"])


@router.get("/stats", response_model=StatsResponse)
async def get_stats(db: AsyncSession = Depends(get_db)):
    """
    Get worker statistics.

    Returns:
    - Import counts overall and by status
    - Metric value counts overall and by metric code
    - Most recent completion and failure
    """
    request_id = f"req_{uuid.uuid4().hex[:12]}"

    logger.info(f"[{request_id}] GET /stats")

    # ========== Imports ==========

    imports_by_status = await count_imports_by_status(db)
    total_imports = sum(imports_by_status.values())

    last_completed_result = await db.execute(select(func.max(HealthImport.processed_at)))
    last_failed_result = await db.execute(select(func.max(HealthImport.failed_at)))

    # ========== Metric values ==========

    total_values_result = await db.execute(
        select(func.count()).select_from(MetricValue)
    )

    by_code_result = await db.execute(
        select(MetricDefinition.metric_code, func.count(MetricValue.id))
        .join(MetricValue, MetricValue.metric_id == MetricDefinition.id)
        .group_by(MetricDefinition.metric_code)
    )

    return StatsResponse(
        total_imports=total_imports,
        imports_by_status=imports_by_status,
        total_metric_values=total_values_result.scalar() or 0,
        metric_values_by_code={code: count for code, count in by_code_result.all()},
        last_completed_at=last_completed_result.scalar(),
        last_failed_at=last_failed_result.scalar()
    )
