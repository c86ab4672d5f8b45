"""
Pytest configuration and fixtures
"""

import io
import os
import uuid
import zipfile
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, Iterable, Optional
from xml.sax.saxutils import quoteattr

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from models import Base, HealthImport, ImportStatus, MetricDefinition
from ingestion.transformers.mapping import KIND_MAPPINGS

# Test database URL; defaults to a throwaway SQLite file per test
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL")


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create test database engine"""
    url = TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'worker_test.db'}"
    engine = create_async_engine(
        url,
        echo=False,
        poolclass=NullPool,  # Disable connection pooling for tests
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables after test
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine):
    """Session factory, for tests that need several independent sessions"""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def metric_definitions(db_session) -> Dict[str, uuid.UUID]:
    """Seed one definition per emitted metric code; returns code -> id"""
    definitions = {}
    for mapping in KIND_MAPPINGS.values():
        definition = MetricDefinition(id=uuid.uuid4(), metric_code=mapping.metric_code)
        db_session.add(definition)
        definitions[mapping.metric_code] = definition.id
    await db_session.commit()
    return definitions


@pytest.fixture
def make_import(db_session):
    """Insert an import row; returns the ORM object"""
    async def _make_import(
        status: ImportStatus = ImportStatus.UPLOADED,
        created_at: Optional[datetime] = None,
        file_path: Optional[str] = None,
        **values
    ) -> HealthImport:
        import_id = values.pop("id", uuid.uuid4())
        user_id = values.pop("user_id", uuid.uuid4())
        item = HealthImport(
            id=import_id,
            user_id=user_id,
            file_path=file_path or f"{user_id}/{import_id}.zip",
            status=status,
            created_at=created_at or datetime.now(timezone.utc),
            **values
        )
        db_session.add(item)
        await db_session.commit()
        return item

    return _make_import


# ============================================================================
# Export document builders
# ============================================================================

def record_xml(kind: str, value, start: str, end: Optional[str] = None, unit: Optional[str] = None) -> str:
    attrs = {"type": kind, "sourceName": "Test Watch", "startDate": start, "endDate": end or start}
    if unit is not None:
        attrs["unit"] = unit
    if value is not None:
        attrs["value"] = str(value)
    rendered = " ".join(f"{k}={quoteattr(v)}" for k, v in attrs.items())
    return f" <Record {rendered}/>"


def export_xml(records: Iterable[str]) -> bytes:
    body = "\n".join(records)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<!DOCTYPE HealthData [\n"
        "<!ELEMENT HealthData (ExportDate,Me,(Record|Workout)*)>\n"
        "]>\n"
        '<HealthData locale="en_US">\n'
        ' <ExportDate value="2024-01-16 09:00:00 +0000"/>\n'
        ' <Me HKCharacteristicTypeIdentifierDateOfBirth="1990-01-01"/>\n'
        f"{body}\n"
        "</HealthData>\n"
    ).encode("utf-8")


def zip_bytes(entries: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def build_record():
    return record_xml


@pytest.fixture
def build_export():
    return export_xml


@pytest.fixture
def build_zip(tmp_path):
    """Write a zip with the given entries to tmp_path; returns its path"""
    def _build_zip(entries: Dict[str, bytes], name: str = "export.zip"):
        path = tmp_path / name
        path.write_bytes(zip_bytes(entries))
        return path

    return _build_zip


@pytest.fixture
def sample_records():
    """
    3 direct records, 4 asleep intervals over two days, two complete
    blood pressure pairs, one lone systolic, plus an in-bed interval and two
    kinds outside the allow-list.

    Sleep: 2024-01-14 totals 7.5 h (last end 06:30Z), 2024-01-15 totals
    8.5 h (last end 07:00Z).
    """
    return [
        # Direct
        record_xml("HKQuantityTypeIdentifierVO2Max", "42.5", "2024-01-10 08:00:00 -0500", unit="mL/min·kg"),
        record_xml("HKQuantityTypeIdentifierRestingHeartRate", "55", "2024-01-11 07:00:00 +0000", unit="count/min"),
        record_xml("HKQuantityTypeIdentifierHeartRateVariabilitySDNN", "48.2", "2024-01-11 07:05:00 +0000", unit="ms"),

        # Interval (sleep)
        record_xml("HKCategoryTypeIdentifierSleepAnalysis", "HKCategoryValueSleepAnalysisAsleepCore",
                   "2024-01-13 23:00:00 +0000", "2024-01-14 03:00:00 +0000"),
        record_xml("HKCategoryTypeIdentifierSleepAnalysis", "HKCategoryValueSleepAnalysisAsleepDeep",
                   "2024-01-14 03:00:00 +0000", "2024-01-14 06:30:00 +0000"),
        record_xml("HKCategoryTypeIdentifierSleepAnalysis", "HKCategoryValueSleepAnalysisAsleepREM",
                   "2024-01-14 22:30:00 +0000", "2024-01-15 02:30:00 +0000"),
        record_xml("HKCategoryTypeIdentifierSleepAnalysis", "HKCategoryValueSleepAnalysisAsleepCore",
                   "2024-01-15 02:30:00 +0000", "2024-01-15 07:00:00 +0000"),

        # Paired (blood pressure)
        record_xml("HKQuantityTypeIdentifierBloodPressureSystolic", "120", "2024-01-12 09:00:15 +0000", unit="mmHg"),
        record_xml("HKQuantityTypeIdentifierBloodPressureDiastolic", "80", "2024-01-12 09:00:40 +0000", unit="mmHg"),
        record_xml("HKQuantityTypeIdentifierBloodPressureSystolic", "118", "2024-01-13 09:05:00 +0000", unit="mmHg"),
        record_xml("HKQuantityTypeIdentifierBloodPressureDiastolic", "78", "2024-01-13 09:05:00 +0000", unit="mmHg"),
        record_xml("HKQuantityTypeIdentifierBloodPressureSystolic", "130", "2024-01-14 10:00:00 +0000", unit="mmHg"),

        # Ignored sleep category and kinds outside the allow-list
        record_xml("HKQuantityTypeIdentifierStepCount", "1200", "2024-01-11 12:00:00 +0000", unit="count"),
        record_xml("HKQuantityTypeIdentifierHeartRate", "72", "2024-01-11 12:01:00 +0000", unit="count/min"),
        record_xml("HKCategoryTypeIdentifierSleepAnalysis", "HKCategoryValueSleepAnalysisInBed",
                   "2024-01-14 22:00:00 +0000", "2024-01-15 07:10:00 +0000"),
    ]


@pytest.fixture
def sample_export_zip(build_zip, sample_records):
    """Zip with junk entries around a nested export.xml"""
    return build_zip({
        "__MACOSX/apple_health_export/._export.xml": b"\x00\x05\x16\x07",
        "apple_health_export/export_cda.xml": b"<ClinicalDocument/>",
        "apple_health_export/export.xml": export_xml(sample_records),
    })
