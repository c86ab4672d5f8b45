"""
Tests for failure scenarios and error handling
"""

import httpx
import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy.exc import OperationalError

from ingestion.claims import claim_next_import
from ingestion.extractors.archive_downloader import ArchiveDownloader
from ingestion.loaders.metric_catalog import MetricCatalog
from ingestion.loaders.metric_writer import MetricWriter
from ingestion.notifier import ScorecardNotifier
from ingestion.runner import ImportPipeline
from models import ImportStatus
from schemas.metrics import WriteResult


def storage_serving(objects):
    def handler(request: httpx.Request) -> httpx.Response:
        key = request.url.path.rsplit("/apple_health_uploads/", 1)[-1]
        if key not in objects:
            return httpx.Response(404)
        return httpx.Response(200, content=objects[key])
    return handler


@pytest.fixture
def archive_bytes(build_zip):
    """Zip the given entries and return the archive content"""
    def _archive_bytes(entries):
        return build_zip(entries, name="upload.zip").read_bytes()
    return _archive_bytes


@pytest.fixture
def scorecard_calls():
    return []


@pytest.fixture
def run_import(db_session, make_import, tmp_path, scorecard_calls):
    """Claim a single import and run it against the given storage objects"""
    scratch_dir = tmp_path / "scratch"

    async def _run_import(objects, file_path="user-1/export.zip"):
        await make_import(file_path=file_path)
        item = await claim_next_import(db_session)

        def scorecard(request):
            scorecard_calls.append(request)
            return httpx.Response(200)

        pipeline = ImportPipeline(
            db_session,
            MetricCatalog(),
            downloader=ArchiveDownloader(
                storage_url="https://storage.test",
                bucket="apple_health_uploads",
                scratch_dir=str(scratch_dir),
                transport=httpx.MockTransport(storage_serving(objects)),
            ),
            notifier=ScorecardNotifier(
                base_url="https://app.test",
                secret="worker-secret",
                transport=httpx.MockTransport(scorecard),
            ),
        )
        result = await pipeline.process(item)
        await db_session.refresh(item)
        return result, item, scratch_dir

    return _run_import


@pytest.mark.asyncio
async def test_archive_missing_from_storage(run_import, scorecard_calls):
    result, item, scratch_dir = await run_import({})

    assert result.success is False
    assert item.status == ImportStatus.FAILED
    assert "not found" in item.error_message
    assert item.failed_at is not None
    assert scorecard_calls == []
    assert not scratch_dir.exists() or list(scratch_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_failure_recorded_when_rollback_raises(run_import, db_session):
    broken_rollback = AsyncMock(side_effect=OperationalError("ROLLBACK", {}, Exception("connection reset")))

    with patch.object(db_session, "rollback", broken_rollback):
        result, item, _ = await run_import({})

    assert broken_rollback.await_count == 1
    assert result.success is False
    assert item.status == ImportStatus.FAILED
    assert "not found" in item.error_message


@pytest.mark.asyncio
async def test_archive_without_export_xml(run_import, archive_bytes):
    archive = archive_bytes({
        "apple_health_export/export_cda.xml": b"<ClinicalDocument/>",
        "apple_health_export/workout-routes/route_1.gpx": b"<gpx/>",
    })

    result, item, scratch_dir = await run_import({"user-1/export.zip": archive})

    assert item.status == ImportStatus.FAILED
    assert "export_cda.xml" in item.error_message
    assert list(scratch_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_corrupt_archive(run_import):
    result, item, scratch_dir = await run_import({"user-1/export.zip": b"definitely not a zip"})

    assert item.status == ImportStatus.FAILED
    assert item.error_message
    assert list(scratch_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_empty_export_document(run_import, archive_bytes):
    archive = archive_bytes({"apple_health_export/export.xml": b""})

    result, item, _ = await run_import({"user-1/export.zip": archive})

    assert item.status == ImportStatus.FAILED
    assert "export.xml" in item.error_message


@pytest.mark.asyncio
async def test_export_with_no_matching_records_completes(
    run_import, archive_bytes, metric_definitions, scorecard_calls, build_export, build_record
):
    archive = archive_bytes({"apple_health_export/export.xml": build_export([
        build_record("HKQuantityTypeIdentifierStepCount", "1200", "2024-01-11 12:00:00 +0000"),
    ])})

    result, item, _ = await run_import({"user-1/export.zip": archive})

    assert result.success is True
    assert item.status == ImportStatus.COMPLETED
    assert result.rows_extracted == 0
    # No rows inserted, so no scorecard trigger
    assert scorecard_calls == []


@pytest.mark.asyncio
async def test_long_error_message_is_truncated(run_import, archive_bytes):
    archive = archive_bytes({
        f"apple_health_export/workout-routes/{'very_long_route_name_' * 10}{i}.gpx": b"<gpx/>"
        for i in range(10)
    })

    result, item, _ = await run_import({"user-1/export.zip": archive})

    assert item.status == ImportStatus.FAILED
    assert len(item.error_message) <= 500
    assert len(result.error_message) > 500


@pytest.mark.asyncio
async def test_all_batches_failing_fails_import(run_import, metric_definitions, sample_export_zip, scorecard_calls):
    failed_write = AsyncMock(return_value=WriteResult(failed=8, errors=["batch 1: disk full"]))

    with patch.object(MetricWriter, "write", failed_write):
        result, item, _ = await run_import({"user-1/export.zip": sample_export_zip.read_bytes()})

    assert result.success is False
    assert item.status == ImportStatus.FAILED
    assert "failed to insert" in item.error_message
    assert scorecard_calls == []


@pytest.mark.asyncio
async def test_partial_write_failure_still_completes(run_import, metric_definitions, sample_export_zip):
    partial_write = AsyncMock(return_value=WriteResult(inserted=5, failed=3, errors=["batch 2: timeout"]))

    with patch.object(MetricWriter, "write", partial_write):
        result, item, _ = await run_import({"user-1/export.zip": sample_export_zip.read_bytes()})

    assert result.success is True
    assert item.status == ImportStatus.COMPLETED
