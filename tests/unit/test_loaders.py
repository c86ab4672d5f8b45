"""
Unit tests for the metric catalog and idempotent metric writer
"""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError

from core.exceptions import MetricCatalogError
from ingestion.loaders.metric_catalog import MetricCatalog
from ingestion.loaders.metric_writer import MetricWriter
from models.metric_value import MetricValue
from schemas.metrics import MetricRow


def rows_for(code: str, count: int, start: datetime = None):
    start = start or datetime(2024, 1, 1, 7, 0, tzinfo=timezone.utc)
    return [
        MetricRow(metric_code=code, value=50 + i, unit="count/min", measured_at=start + timedelta(days=i))
        for i in range(count)
    ]


async def count_values(db_session, import_id=None) -> int:
    stmt = select(func.count()).select_from(MetricValue)
    if import_id is not None:
        stmt = stmt.where(MetricValue.import_id == import_id)
    return (await db_session.execute(stmt)).scalar()


class TestMetricCatalog:

    @pytest.mark.asyncio
    async def test_load_and_resolve(self, db_session, metric_definitions):
        catalog = MetricCatalog()
        await catalog.load(db_session)

        assert catalog.loaded
        assert len(catalog) == len(metric_definitions)
        assert catalog.resolve("resting_hr") == metric_definitions["resting_hr"]
        assert catalog.resolve("steps") is None
        assert catalog.code_for(metric_definitions["hrv"]) == "hrv"

    def test_resolve_before_load(self):
        with pytest.raises(MetricCatalogError):
            MetricCatalog().resolve("resting_hr")

    @pytest.mark.asyncio
    async def test_loads_once(self):
        session = AsyncMock()
        session.execute.return_value.all = lambda: [("vo2max", uuid.uuid4())]

        catalog = MetricCatalog()
        await catalog.load(session)
        await catalog.load(session)

        assert session.execute.await_count == 1
        assert "vo2max" in catalog

    @pytest.mark.asyncio
    async def test_load_failure(self):
        session = AsyncMock()
        session.execute.side_effect = OperationalError("SELECT", {}, Exception("no such table"))

        catalog = MetricCatalog()
        with pytest.raises(MetricCatalogError):
            await catalog.load(session)
        assert not catalog.loaded


class TestMetricWriter:
    """Test batched ON CONFLICT DO NOTHING writes"""

    @pytest.fixture
    def ids(self):
        return {"user_id": uuid.uuid4(), "import_id": uuid.uuid4()}

    @pytest.mark.asyncio
    async def test_insert_in_batches(self, db_session, metric_definitions, make_import, ids):
        await make_import(id=ids["import_id"], user_id=ids["user_id"])
        catalog = await MetricCatalog().load(db_session)
        writer = MetricWriter(db_session, catalog, batch_size=4)

        result = await writer.write(rows_for("resting_hr", 10), **ids)

        assert result.inserted == 10
        assert result.skipped == 0
        assert result.failed == 0
        assert result.by_metric == {"resting_hr": 10}
        assert await count_values(db_session, ids["import_id"]) == 10

    @pytest.mark.asyncio
    async def test_second_run_is_all_skipped(self, db_session, metric_definitions, make_import, ids):
        await make_import(id=ids["import_id"], user_id=ids["user_id"])
        catalog = await MetricCatalog().load(db_session)
        rows = rows_for("hrv", 6) + rows_for("vo2max", 2)

        first = await MetricWriter(db_session, catalog, batch_size=5).write(rows, **ids)
        second = await MetricWriter(db_session, catalog, batch_size=5).write(rows, **ids)

        assert first.inserted == 8
        assert second.inserted == 0
        assert second.skipped == 8
        assert second.failed == 0
        assert await count_values(db_session) == 8

    @pytest.mark.asyncio
    async def test_same_rows_other_import_are_new(self, db_session, metric_definitions, make_import):
        user_id = uuid.uuid4()
        first_import = await make_import(user_id=user_id)
        second_import = await make_import(user_id=user_id)
        catalog = await MetricCatalog().load(db_session)
        rows = rows_for("body_mass", 3)

        await MetricWriter(db_session, catalog).write(rows, user_id=user_id, import_id=first_import.id)
        result = await MetricWriter(db_session, catalog).write(rows, user_id=user_id, import_id=second_import.id)

        assert result.inserted == 3
        assert await count_values(db_session) == 6

    @pytest.mark.asyncio
    async def test_unknown_codes_dropped(self, db_session, metric_definitions, make_import, ids):
        await make_import(id=ids["import_id"], user_id=ids["user_id"])
        catalog = await MetricCatalog().load(db_session)
        rows = rows_for("resting_hr", 2) + rows_for("blood_glucose", 3)

        result = await MetricWriter(db_session, catalog).write(rows, **ids)

        assert result.inserted == 2
        assert result.unknown == 3
        assert result.skipped == 0

    @pytest.mark.asyncio
    async def test_in_run_duplicates_collapsed(self, db_session, metric_definitions, make_import, ids):
        await make_import(id=ids["import_id"], user_id=ids["user_id"])
        catalog = await MetricCatalog().load(db_session)
        rows = rows_for("resting_hr", 3) + rows_for("resting_hr", 1)

        result = await MetricWriter(db_session, catalog).write(rows, **ids)

        assert result.inserted == 3
        assert result.skipped == 1

    @pytest.mark.asyncio
    async def test_empty_rows(self, db_session, ids):
        catalog = MetricCatalog()
        result = await MetricWriter(db_session, catalog).write([], **ids)

        assert result.inserted == result.skipped == result.unknown == result.failed == 0

    @pytest.mark.asyncio
    async def test_failed_batch_is_counted_and_next_batch_runs(self, db_session, metric_definitions, make_import, ids):
        await make_import(id=ids["import_id"], user_id=ids["user_id"])
        catalog = await MetricCatalog().load(db_session)
        writer = MetricWriter(db_session, catalog, batch_size=3)

        real_execute = db_session.execute
        calls = {"n": 0}

        async def flaky_execute(stmt, *args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("INSERT", {}, Exception("connection reset"))
            return await real_execute(stmt, *args, **kwargs)

        db_session.execute = flaky_execute
        try:
            result = await writer.write(rows_for("resting_hr", 5), **ids)
        finally:
            db_session.execute = real_execute

        assert result.failed == 3
        assert result.inserted == 2
        assert len(result.errors) == 1
        assert "batch 1" in result.errors[0]
