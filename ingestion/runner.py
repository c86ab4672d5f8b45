# ============================================================================
# File: ingestion/runner.py
# Description: Per-import pipeline, from claimed row to persisted metrics
# ============================================================================
"""
Import pipeline - runs one claimed import from archive to metric rows.

Stages run strictly in order, each consuming the previous stage's output:

    download -> locate export.xml -> stream parse + aggregate -> write -> complete

Any exception before completion is fatal for the import: it is marked
failed with a truncated message and never requeued. The scratch copy of
the archive is removed whatever happens. Scorecard notification runs only
after the completed status is written and only when rows were inserted.
"""

from pathlib import Path
from typing import Optional
import asyncio
import logging
import time

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import ETLException, ClaimError, DatabaseError
from ingestion.claims import mark_completed, mark_failed
from ingestion.extractors.archive_downloader import ArchiveDownloader, cleanup_scratch_file
from ingestion.extractors.archive_scanner import ExportArchive
from ingestion.extractors.export_parser import ExportParser, format_summary_for_log
from ingestion.loaders.metric_catalog import MetricCatalog
from ingestion.loaders.metric_writer import MetricWriter
from ingestion.notifier import ScorecardNotifier
from ingestion.transformers.sleep_aggregator import SleepWindowPolicy
from models.health_import import HealthImport
from schemas.metrics import ImportResult, ParseResult, WriteResult

logger = logging.getLogger(__name__)


def parse_archive(zip_path, sleep_policy: Optional[SleepWindowPolicy] = None) -> ParseResult:
    """
    Locate export.xml in a local archive and run the streaming extractor.

    Blocking and CPU-bound; the pipeline calls it through asyncio.to_thread.
    """
    with ExportArchive(zip_path) as export:
        return ExportParser(sleep_policy=sleep_policy).parse(export.stream)


class ImportPipeline:
    """
    Runs claimed imports.

    Responsibilities:
    - Drive each stage and translate failures into the failed status
    - Keep the event loop free while parsing (worker thread)
    - Guarantee scratch cleanup
    - Trigger the downstream scorecard after a successful write

    The metric catalog is shared by every import this pipeline runs and is
    loaded on first use.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        catalog: MetricCatalog,
        downloader: Optional[ArchiveDownloader] = None,
        notifier: Optional[ScorecardNotifier] = None,
        sleep_policy: Optional[SleepWindowPolicy] = None,
        batch_size: Optional[int] = None
    ):
        self.db = db_session
        self.catalog = catalog
        self.downloader = downloader or ArchiveDownloader()
        self.notifier = notifier or ScorecardNotifier()
        self.sleep_policy = sleep_policy or SleepWindowPolicy()
        self.batch_size = batch_size

    async def process(self, item: HealthImport) -> ImportResult:
        """
        Process one import that this worker has already claimed.

        Returns:
            ImportResult describing the outcome; failures are reported, not raised

        Raises:
            ClaimError: only if the failed status itself cannot be written
        """
        import_id = item.id
        user_id = item.user_id
        started = time.monotonic()

        result = ImportResult(import_id=import_id, user_id=user_id, success=False)
        zip_path: Optional[Path] = None

        logger.info(f"Processing import {import_id} ({item.file_path})")

        try:
            # --------------------------------------------------
            # PHASE 1: DOWNLOAD
            # --------------------------------------------------
            zip_path = await self.downloader.download(item.file_path, import_id)

            # --------------------------------------------------
            # PHASE 2: LOCATE + PARSE + AGGREGATE
            # --------------------------------------------------
            parsed = await asyncio.to_thread(parse_archive, zip_path, self.sleep_policy)
            result.rows_extracted = len(parsed.rows)

            logger.info(
                f"Parsed import {import_id}: {result.rows_extracted} metric rows",
                extra={"parse_summary": format_summary_for_log(parsed.summary)}
            )

            # --------------------------------------------------
            # PHASE 3: LOAD (IDEMPOTENT INSERT)
            # --------------------------------------------------
            await self.catalog.load(self.db)
            writer = MetricWriter(self.db, self.catalog, batch_size=self.batch_size)
            result.write = await writer.write(parsed.rows, user_id=user_id, import_id=import_id)
            self._check_write(result.write, import_id)

            # --------------------------------------------------
            # PHASE 4: COMPLETE
            # --------------------------------------------------
            result.success = await mark_completed(self.db, import_id)

        except ETLException as e:
            result.error_message = e.message
            logger.error(
                f"Import {import_id} failed: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            await self._fail(import_id, e.message)

        except Exception as e:
            result.error_message = f"Unexpected error: {e}"
            logger.exception(f"Unexpected error processing import {import_id}")
            await self._fail(import_id, result.error_message)

        finally:
            cleanup_scratch_file(zip_path or self.downloader.scratch_path(import_id))
            result.duration_seconds = time.monotonic() - started

        # --------------------------------------------------
        # PHASE 5: NOTIFY (best effort)
        # --------------------------------------------------
        if result.success and result.write and result.write.inserted > 0:
            result.notified = await self.notifier.notify(user_id)

        logger.info(
            f"Import {import_id} {'completed' if result.success else 'failed'} "
            f"in {result.duration_seconds:.1f}s",
            extra={"import_result": result.log_context()}
        )
        return result

    @staticmethod
    def _check_write(write: WriteResult, import_id) -> None:
        """A write where every attempted batch failed is a failed import"""
        if write.failed and not write.inserted and not write.skipped:
            raise DatabaseError(
                f"All {write.failed} metric rows failed to insert: {write.errors[0] if write.errors else ''}",
                context={
                    "import_id": str(import_id),
                    "operation": "INSERT",
                    "table_name": "eden_metric_values"
                }
            )
        if write.failed:
            logger.warning(f"Import {import_id}: {write.failed} rows failed to insert, keeping the rest")

    async def _fail(self, import_id, message: str) -> None:
        try:
            await self.db.rollback()
        except SQLAlchemyError as e:
            logger.error(f"Rollback before failing import {import_id} raised: {e}")
        try:
            await mark_failed(self.db, import_id, message)
        except ClaimError as e:
            logger.error(
                f"Could not record failure for import {import_id}: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            raise
