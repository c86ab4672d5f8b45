"""
Claim protocol and status transitions for the import queue.

Every worker polls the same table, so ownership is decided by the database
itself: a claim is a single conditional UPDATE whose WHERE clause includes
the expected previous status. Exactly one concurrent claimer can see one
affected row; everybody else sees zero and moves on.

Lifecycle (strict, never requeued):

    uploaded -> processing -> completed
                           -> failed
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import ClaimError
from models.base import ImportStatus
from models.health_import import HealthImport

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 500


def truncate_error(message: str, limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    message = message or "Unknown error"
    if len(message) <= limit:
        return message
    return message[:limit - 3] + "..."


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _conditional_update(
    db: AsyncSession,
    import_id: UUID,
    expected: ImportStatus,
    operation: str,
    **values
) -> bool:
    """UPDATE ... WHERE id = :id AND status = :expected; True when one row changed"""
    stmt = (
        update(HealthImport)
        .where(HealthImport.id == import_id, HealthImport.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = await db.execute(stmt)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise ClaimError(
            f"Conditional update failed ({operation})",
            context={"import_id": str(import_id), "operation": operation},
            original_exception=e
        )
    return result.rowcount == 1


async def find_next_candidate(db: AsyncSession) -> Optional[HealthImport]:
    """Oldest uploaded import by created_at, not yet owned by anyone"""
    result = await db.execute(
        select(HealthImport)
        .where(HealthImport.status == ImportStatus.UPLOADED)
        .order_by(HealthImport.created_at.asc(), HealthImport.id.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def try_claim(db: AsyncSession, import_id: UUID) -> bool:
    """
    Compare-and-swap uploaded -> processing.

    Returns:
        True if this caller now exclusively owns the import

    Raises:
        ClaimError: the update itself failed
    """
    return await _conditional_update(
        db,
        import_id,
        ImportStatus.UPLOADED,
        "claim",
        status=ImportStatus.PROCESSING,
        processing_started_at=utcnow(),
    )


async def claim_next_import(db: AsyncSession, max_attempts: int = 3) -> Optional[HealthImport]:
    """
    Select and claim the oldest uploaded import.

    A lost race (zero rows affected) retries the selection, at most
    max_attempts times per call.

    Returns:
        The claimed import, refreshed, or None when nothing could be claimed

    Raises:
        ClaimError: the conditional update failed, or the claimed row could
            not be reloaded (it is marked failed first); the caller abandons
            this cycle
    """
    for attempt in range(1, max_attempts + 1):
        try:
            candidate = await find_next_candidate(db)
        except SQLAlchemyError as e:
            await db.rollback()
            raise ClaimError(
                "Failed to query the import queue",
                context={"operation": "select"},
                original_exception=e
            )

        if candidate is None:
            return None

        if await try_claim(db, candidate.id):
            claimed_id = candidate.id
            try:
                await db.refresh(candidate)
            except SQLAlchemyError as e:
                await db.rollback()
                await mark_failed(db, claimed_id, f"Claimed import could not be reloaded: {e}")
                raise ClaimError(
                    "Failed to reload claimed import",
                    context={"import_id": str(claimed_id), "operation": "refresh"},
                    original_exception=e
                )
            logger.info(
                f"Claimed import {candidate.id} for user {candidate.user_id} "
                f"(attempt {attempt}/{max_attempts})"
            )
            return candidate

        logger.info(f"Lost claim race for import {candidate.id} (attempt {attempt}/{max_attempts})")
        db.expunge(candidate)

    logger.debug(f"No claim after {max_attempts} attempts")
    return None


async def mark_completed(db: AsyncSession, import_id: UUID) -> bool:
    """processing -> completed"""
    updated = await _conditional_update(
        db,
        import_id,
        ImportStatus.PROCESSING,
        "complete",
        status=ImportStatus.COMPLETED,
        processed_at=utcnow(),
        error_message=None,
    )
    if not updated:
        logger.warning(f"Import {import_id} was not in processing; completed status not written")
    return updated


async def mark_failed(db: AsyncSession, import_id: UUID, error_message: str) -> bool:
    """processing -> failed, keeping a truncated operator-visible message"""
    updated = await _conditional_update(
        db,
        import_id,
        ImportStatus.PROCESSING,
        "fail",
        status=ImportStatus.FAILED,
        failed_at=utcnow(),
        error_message=truncate_error(error_message),
    )
    if not updated:
        logger.warning(f"Import {import_id} was not in processing; failed status not written")
    return updated


async def sweep_stale_claims(db: AsyncSession, timeout_minutes: int) -> int:
    """
    Fail imports stuck in processing longer than timeout_minutes.

    A worker that died mid-item leaves its claim behind forever; this turns
    such items into failed ones so operators see them.

    Returns:
        Number of imports marked failed
    """
    if timeout_minutes <= 0:
        return 0

    cutoff = utcnow() - timedelta(minutes=timeout_minutes)
    stmt = (
        update(HealthImport)
        .where(
            HealthImport.status == ImportStatus.PROCESSING,
            HealthImport.processing_started_at < cutoff,
        )
        .values(
            status=ImportStatus.FAILED,
            failed_at=utcnow(),
            error_message=truncate_error(
                f"Processing did not finish within {timeout_minutes} minutes; "
                f"the worker holding the claim is presumed dead"
            ),
        )
        .execution_options(synchronize_session=False)
    )
    try:
        result = await db.execute(stmt)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise ClaimError(
            "Stale claim sweep failed",
            context={"operation": "sweep", "timeout_minutes": timeout_minutes},
            original_exception=e
        )

    if result.rowcount:
        logger.warning(f"Marked {result.rowcount} stale processing imports as failed")
    return result.rowcount
