"""
Lookup of metric codes to metric definition ids
"""

from typing import Dict, Optional
from uuid import UUID
import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models.metric_definition import MetricDefinition
from core.exceptions import MetricCatalogError

logger = logging.getLogger(__name__)


class MetricCatalog:
    """
    Process-wide map of metric_code -> metric definition id.

    - Loaded explicitly, once, under a lock so concurrent callers share one query
    - Read-only after load; handed to every MetricWriter in the process
    - Unknown codes resolve to None, the writer decides what to do with them
    """

    def __init__(self):
        self._ids: Dict[str, UUID] = {}
        self._codes: Dict[UUID, str] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self, db_session: AsyncSession, force: bool = False) -> "MetricCatalog":
        """
        Read eden_metric_definitions. No-op when already loaded unless forced.

        Raises:
            MetricCatalogError: if the definitions cannot be read
        """
        async with self._lock:
            if self._loaded and not force:
                return self

            try:
                result = await db_session.execute(
                    select(MetricDefinition.metric_code, MetricDefinition.id)
                )
                ids = {code: metric_id for code, metric_id in result.all()}
            except SQLAlchemyError as e:
                raise MetricCatalogError(
                    "Failed to load metric definitions",
                    context={"table_name": MetricDefinition.__tablename__},
                    original_exception=e
                )

            self._ids = ids
            self._codes = {metric_id: code for code, metric_id in ids.items()}
            self._loaded = True

        logger.info(f"Metric catalog loaded: {len(self._ids)} definitions")
        return self

    def resolve(self, metric_code: str) -> Optional[UUID]:
        if not self._loaded:
            raise MetricCatalogError("Metric catalog used before load()")
        return self._ids.get(metric_code)

    def code_for(self, metric_id: UUID) -> Optional[str]:
        return self._codes.get(metric_id)

    def __contains__(self, metric_code: str) -> bool:
        return metric_code in self._ids

    def __len__(self) -> int:
        return len(self._ids)
