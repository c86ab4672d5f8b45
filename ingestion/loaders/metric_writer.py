"""
Idempotent batched persistence of metric rows
"""

from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from uuid import UUID
import logging
import uuid

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.database import dialect_name
from core.exceptions import LoadError
from ingestion.loaders.metric_catalog import MetricCatalog
from models.metric_value import MetricValue
from schemas.metrics import MetricRow, WriteResult

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY = ["import_id", "metric_id", "measured_at"]

INSERT_BY_DIALECT = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class MetricWriter:
    """
    Persist metric rows for one import exactly once.

    Ensures:
    - Rows whose code has no definition are dropped and counted, never written
    - In-run duplicates on (metric_id, measured_at) collapse to the first row
    - INSERT ... ON CONFLICT (import_id, metric_id, measured_at) DO NOTHING,
      so re-running an import only reports skipped rows
    - Each batch commits on its own; a failed batch is rolled back, counted
      and the next batch still runs
    """

    def __init__(
        self,
        db_session: AsyncSession,
        catalog: MetricCatalog,
        batch_size: Optional[int] = None
    ):
        self.db = db_session
        self.catalog = catalog
        self.batch_size = batch_size or settings.ETL_BATCH_SIZE

    def _insert(self):
        dialect = dialect_name(self.db)
        insert = INSERT_BY_DIALECT.get(dialect)
        if insert is None:
            raise LoadError(
                f"Unsupported database dialect for idempotent insert: {dialect}",
                context={"dialect": dialect}
            )
        return insert

    def _prepare(
        self,
        rows: List[MetricRow],
        user_id: UUID,
        import_id: UUID,
        result: WriteResult
    ) -> List[Dict]:
        """Resolve codes and collapse duplicates into insertable dicts"""
        unknown = Counter()
        seen: set = set()
        values: List[Dict] = []
        now = datetime.now(timezone.utc)

        for row in rows:
            metric_id = self.catalog.resolve(row.metric_code)
            if metric_id is None:
                unknown[row.metric_code] += 1
                continue

            key: Tuple[UUID, datetime] = (metric_id, row.measured_at)
            if key in seen:
                result.skipped += 1
                continue
            seen.add(key)

            values.append({
                "id": uuid.uuid4(),
                "user_id": user_id,
                "metric_id": metric_id,
                "value": row.value,
                "measured_at": row.measured_at,
                "source": row.source,
                "import_id": import_id,
                "created_at": now,
            })

        if unknown:
            result.unknown = sum(unknown.values())
            logger.warning(f"Dropped {result.unknown} rows with unknown metric codes: {dict(unknown)}")

        if result.skipped:
            logger.info(f"Collapsed {result.skipped} duplicate rows within this import")

        return values

    async def write(self, rows: List[MetricRow], user_id: UUID, import_id: UUID) -> WriteResult:
        """
        Write rows for one import.

        Args:
            rows: Metric rows from the aggregation engine
            user_id: Owner of the import
            import_id: Import the rows belong to (part of the idempotency key)

        Returns:
            WriteResult(inserted, skipped, unknown, failed, errors)
        """
        result = WriteResult()
        if not rows:
            logger.info("No metric rows to write")
            return result

        values = self._prepare(rows, user_id, import_id, result)
        if not values:
            return result

        insert = self._insert()
        by_metric = Counter()
        total_batches = (len(values) + self.batch_size - 1) // self.batch_size

        for i in range(0, len(values), self.batch_size):
            batch = values[i:i + self.batch_size]
            batch_no = i // self.batch_size + 1

            stmt = (
                insert(MetricValue)
                .values(batch)
                .on_conflict_do_nothing(index_elements=IDEMPOTENCY_KEY)
                .returning(MetricValue.id, MetricValue.metric_id)
            )

            try:
                returned = (await self.db.execute(stmt)).all()
                await self.db.commit()
            except SQLAlchemyError as e:
                await self.db.rollback()
                result.failed += len(batch)
                result.errors.append(f"batch {batch_no}: {e}"[:500])
                logger.error(
                    f"Batch {batch_no}/{total_batches} failed ({len(batch)} rows): {e}",
                    extra={"error_context": {"import_id": str(import_id), "batch": batch_no}}
                )
                continue

            inserted = len(returned)
            result.inserted += inserted
            result.skipped += len(batch) - inserted
            for _, metric_id in returned:
                by_metric[self.catalog.code_for(metric_id) or str(metric_id)] += 1

            logger.info(
                f"Batch {batch_no}/{total_batches}: {inserted} inserted, "
                f"{len(batch) - inserted} already present"
            )

        result.by_metric = dict(by_metric)
        logger.info(
            f"Write complete for import {import_id}: inserted={result.inserted} "
            f"skipped={result.skipped} unknown={result.unknown} failed={result.failed}"
        )
        return result
