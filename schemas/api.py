"""
Pydantic schemas for the read-only status API
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, Dict
from datetime import datetime, timezone
from uuid import UUID
from models.base import ImportStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=utcnow)
    database_connected: bool
    imports_by_status: Dict[str, int] = Field(default_factory=dict)
    stale_processing: int = 0
    status: str = Field(default="healthy", description="Overall worker status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"

        if values.get("stale_processing", 0) > 0:
            return "degraded"

        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "imports_by_status": {
                    "uploaded": 2,
                    "processing": 1,
                    "completed": 120,
                    "failed": 3
                },
                "stale_processing": 0,
                "status": "healthy"
            }
        }


# ============================================================================
# Import Status Schemas
# ============================================================================

class ImportStatusResponse(BaseModel):
    """Lifecycle view of a single import item"""
    id: UUID
    user_id: UUID
    status: ImportStatus
    file_path: str
    file_size: Optional[int] = None
    error_message: Optional[str] = None

    uploaded_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: datetime

    metric_value_count: int = 0

    class Config:
        from_attributes = True
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "id": "550e8400-e29b-41d4-a716-446655440000",
                "user_id": "0b7f6e0e-6a39-4a0f-9a4e-6bb1fdb1a0a2",
                "status": "completed",
                "file_path": "0b7f6e0e/export.zip",
                "file_size": 48213377,
                "uploaded_at": "2024-01-15T10:00:00Z",
                "processing_started_at": "2024-01-15T10:00:04Z",
                "processed_at": "2024-01-15T10:01:12Z",
                "created_at": "2024-01-15T10:00:00Z",
                "metric_value_count": 842
            }
        }


# ============================================================================
# Statistics Schemas
# ============================================================================

class StatsResponse(BaseModel):
    """Statistics response model"""
    timestamp: datetime = Field(default_factory=utcnow)

    total_imports: int
    imports_by_status: Dict[str, int]

    total_metric_values: int
    metric_values_by_code: Dict[str, int] = Field(default_factory=dict)

    last_completed_at: Optional[datetime] = None
    last_failed_at: Optional[datetime] = None

    class Config:
        json_schema_extra = {
            "example": {
                "timestamp": "2024-01-15T10:30:00Z",
                "total_imports": 126,
                "imports_by_status": {"completed": 120, "failed": 3, "uploaded": 2, "processing": 1},
                "total_metric_values": 50211,
                "metric_values_by_code": {"resting_hr": 21000, "hrv": 18000, "sleep": 120},
                "last_completed_at": "2024-01-15T10:01:12Z",
                "last_failed_at": "2024-01-14T22:13:40Z"
            }
        }


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "Resource not found",
                "detail": "The requested import does not exist",
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }
