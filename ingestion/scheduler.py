import logging
import asyncio
import time
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.database import async_session_maker
from core.exceptions import ClaimError, DatabaseError
from ingestion.claims import claim_next_import, sweep_stale_claims
from ingestion.extractors.archive_downloader import ArchiveDownloader
from ingestion.loaders.metric_catalog import MetricCatalog
from ingestion.notifier import ScorecardNotifier
from ingestion.runner import ImportPipeline
from ingestion.transformers.sleep_aggregator import SleepWindowPolicy
from models.health_import import HealthImport

logger = logging.getLogger(__name__)

IDLE_LOG_INTERVAL_SECONDS = 60.0


class ClaimScheduler:
    """
    Polls the import queue and runs claimed imports one at a time.

    Each tick of the poll job drains the queue: claim, process, repeat until
    nothing can be claimed. The interval only elapses while idle. The job is
    limited to one running instance, so one process never works two imports
    at once; parallelism comes from running more processes.
    """

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker] = None,
        poll_interval: Optional[float] = None,
        max_claim_attempts: Optional[int] = None,
        stale_timeout_minutes: Optional[int] = None,
        downloader: Optional[ArchiveDownloader] = None,
        notifier: Optional[ScorecardNotifier] = None,
        sleep_policy: Optional[SleepWindowPolicy] = None
    ):
        self.scheduler = AsyncIOScheduler()
        self.SessionLocal = session_maker or async_session_maker
        self.poll_interval = poll_interval or settings.POLL_INTERVAL_SECONDS
        self.max_claim_attempts = max_claim_attempts or settings.MAX_CLAIM_ATTEMPTS
        self.stale_timeout_minutes = (
            stale_timeout_minutes if stale_timeout_minutes is not None
            else settings.STALE_CLAIM_TIMEOUT_MINUTES
        )

        self.catalog = MetricCatalog()
        self.downloader = downloader or ArchiveDownloader()
        self.notifier = notifier or ScorecardNotifier()
        self.sleep_policy = sleep_policy or SleepWindowPolicy.from_settings(settings)

        self._busy = asyncio.Lock()
        self._sweeping = asyncio.Lock()
        self._stopping = False
        self._last_idle_log = 0.0

    async def check_connectivity(self) -> None:
        """
        Trivial query against the queue table.

        Raises:
            DatabaseError: the database or the table is unreachable
        """
        try:
            async with self.SessionLocal() as session:
                await session.execute(select(HealthImport.id).limit(1))
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Cannot reach the import queue",
                context={"operation": "SELECT", "table_name": HealthImport.__tablename__},
                original_exception=e
            )
        logger.info("Database connection OK")

    async def poll_once(self) -> int:
        """
        Drain the queue. Returns how many imports were processed.
        """
        processed = 0
        async with self._busy:
            while not self._stopping:
                async with self.SessionLocal() as session:
                    try:
                        item = await claim_next_import(session, self.max_claim_attempts)
                    except ClaimError as e:
                        logger.error(
                            f"Claim attempt abandoned: {e.message}",
                            extra={"error_context": e.to_dict()}
                        )
                        break
                    except Exception as e:
                        logger.exception(f"Claim cycle failed unexpectedly: {e}")
                        break

                    if item is None:
                        self._log_idle(processed)
                        break

                    pipeline = ImportPipeline(
                        session,
                        self.catalog,
                        downloader=self.downloader,
                        notifier=self.notifier,
                        sleep_policy=self.sleep_policy,
                    )
                    try:
                        await pipeline.process(item)
                    except ClaimError as e:
                        logger.error(
                            f"Import {item.id} left in processing: {e.message}",
                            extra={"error_context": e.to_dict()}
                        )
                    except Exception as e:
                        logger.exception(f"Import {item.id} aborted unexpectedly: {e}")
                    processed += 1

        return processed

    async def sweep_stale(self) -> int:
        async with self._sweeping, self.SessionLocal() as session:
            try:
                return await sweep_stale_claims(session, self.stale_timeout_minutes)
            except ClaimError as e:
                logger.error(f"Stale claim sweep failed: {e.message}", extra={"error_context": e.to_dict()})
                return 0

    def _log_idle(self, processed: int) -> None:
        if processed:
            logger.info(f"Queue drained after {processed} imports")
            return
        now = time.monotonic()
        if now - self._last_idle_log >= IDLE_LOG_INTERVAL_SECONDS:
            logger.debug(f"No uploaded imports, polling every {self.poll_interval:g}s")
            self._last_idle_log = now

    def start(self):
        """Start the poll job (and the stale-claim sweep when enabled)"""
        self.scheduler.add_job(
            self.poll_once,
            trigger=IntervalTrigger(seconds=self.poll_interval),
            id="claim_poll",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True
        )

        if self.stale_timeout_minutes > 0:
            self.scheduler.add_job(
                self.sweep_stale,
                trigger=IntervalTrigger(minutes=max(1, self.stale_timeout_minutes // 2)),
                id="stale_claim_sweep",
                max_instances=1,
                coalesce=True,
                replace_existing=True
            )

        self.scheduler.start()
        logger.info(f"Claim scheduler started (poll every {self.poll_interval:g}s)")
        if self.stale_timeout_minutes > 0:
            logger.info(f"Stale claim sweep enabled ({self.stale_timeout_minutes} minute timeout)")

    async def stop(self):
        """Stop scheduling and wait for the in-flight import to finish"""
        self._stopping = True
        # Shutting down the executor cancels running jobs, so pause first and
        # only shut down once the running jobs have returned.
        if self.scheduler.running:
            self.scheduler.pause()
        async with self._busy, self._sweeping:
            pass
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            # AsyncIOScheduler.shutdown is dispatched through the event loop
            await asyncio.sleep(0)
        logger.info("Claim scheduler stopped")
