"""
Pydantic schemas for data validation and serialization.

This package defines the models passed between pipeline stages and the
status API responses:

Schemas:
    metrics: Raw records, metric rows, parse summaries and write outcomes
    api: Status API request/response schemas

Usage:
    from schemas.metrics import MetricRow, ParseResult, WriteResult
    from schemas.api import HealthCheckResponse, StatsResponse

Example:
    row = MetricRow(
        metric_code="resting_hr",
        value=52,
        unit="count/min",
        measured_at=datetime(2024, 1, 15, 7, 0, tzinfo=timezone.utc)
    )

    # Naive and offset timestamps are normalized to UTC
    assert row.measured_at.tzinfo == timezone.utc
"""

from schemas.metrics import (
    RawRecord,
    MetricRow,
    KindStats,
    ParseSummary,
    ParseResult,
    WriteResult,
    ImportResult,
)

__all__ = [
    "RawRecord",
    "MetricRow",
    "KindStats",
    "ParseSummary",
    "ParseResult",
    "WriteResult",
    "ImportResult",
]
