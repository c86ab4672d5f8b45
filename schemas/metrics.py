"""
Pydantic schemas for records flowing through the import pipeline
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from uuid import UUID
from models.base import MetricSource


def as_utc(value: datetime) -> datetime:
    """Normalize to a timezone-aware UTC datetime (naive values are taken as UTC)"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RawRecord(BaseModel):
    """
    One matched <Record> element, as read from the export.

    Lives only between the extractor and the aggregation engine. The value
    stays a string because interval kinds carry a category
    ("HKCategoryValueSleepAnalysisAsleepCore") rather than a number.
    """
    kind: str
    value: str
    unit: Optional[str] = None
    start: datetime
    end: datetime

    @validator("start", "end")
    def normalize_timezone(cls, v):
        return as_utc(v)


class MetricRow(BaseModel):
    """
    Normalized output unit; the only artifact that reaches the database.
    """
    metric_code: str = Field(..., min_length=1, max_length=100)
    value: float
    unit: str = ""
    measured_at: datetime
    source: MetricSource = MetricSource.APPLE_HEALTH

    @validator("measured_at")
    def normalize_timezone(cls, v):
        return as_utc(v)

    class Config:
        use_enum_values = True


# ============================================================================
# Parse observability
# ============================================================================

class KindStats(BaseModel):
    """Per-kind counters collected while streaming"""
    metric_code: str
    count: int = 0
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None
    sample_values: List[str] = Field(default_factory=list)


class ParseSummary(BaseModel):
    """
    Running counters for one pass over export.xml.

    Purely informational: nothing downstream reads these for correctness.
    """
    total_scanned: int = 0
    total_matched: int = 0
    by_kind: Dict[str, KindStats] = Field(default_factory=dict)
    sleep_categories: Dict[str, int] = Field(default_factory=dict)
    paired_counts: Dict[str, int] = Field(default_factory=dict)
    direct_rows: int = 0
    interval_records: int = 0
    paired_records: int = 0
    errors: List[str] = Field(default_factory=list)
    errors_dropped: int = 0
    parse_seconds: float = 0.0


class ParseResult(BaseModel):
    """Summary plus the metric rows ready for persistence"""
    summary: ParseSummary
    rows: List[MetricRow] = Field(default_factory=list)


# ============================================================================
# Write / import outcomes
# ============================================================================

class WriteResult(BaseModel):
    """Aggregate outcome of persisting metric rows for one import"""
    inserted: int = 0
    skipped: int = 0   # Duplicate on (import_id, metric_id, measured_at)
    unknown: int = 0   # No metric definition for the code
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
    by_metric: Dict[str, int] = Field(default_factory=dict)


class ImportResult(BaseModel):
    """What the pipeline reports back to the claim scheduler"""
    import_id: UUID
    user_id: UUID
    success: bool
    rows_extracted: int = 0
    write: Optional[WriteResult] = None
    error_message: Optional[str] = None
    duration_seconds: float = 0.0
    notified: bool = False

    def log_context(self) -> Dict[str, Any]:
        context = {
            "import_id": str(self.import_id),
            "user_id": str(self.user_id),
            "success": self.success,
            "rows_extracted": self.rows_extracted,
            "duration_seconds": round(self.duration_seconds, 1),
        }
        if self.write:
            context.update(
                inserted=self.write.inserted,
                skipped=self.write.skipped,
                unknown=self.write.unknown,
                failed=self.write.failed,
            )
        if self.error_message:
            context["error_message"] = self.error_message
        return context
