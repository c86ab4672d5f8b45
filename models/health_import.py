from sqlalchemy import Column, String, BigInteger, Enum, Text, DateTime, Index, Uuid
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import uuid
from models.base import Base, ImportStatus, enum_values


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthImport(Base):
    """
    One uploaded Apple Health export archive awaiting processing.

    Purpose:
    - Work queue shared by every worker instance
    - Lifecycle tracking: uploaded -> processing -> completed | failed
    - Operator-visible error message for failed imports

    Design:
    - Rows are created by the upload flow, never by the worker
    - The worker only changes status through conditional updates guarded
      by the expected previous status (see ingestion.claims)
    - Deleting a row cascades to the metric values it produced
    """
    __tablename__ = "apple_health_imports"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)

    # Storage location of the uploaded zip
    file_path = Column(String(1024), nullable=False)
    file_size = Column(BigInteger, nullable=True)

    # Lifecycle
    status = Column(
        Enum(ImportStatus, name="import_status", native_enum=False, values_callable=enum_values),
        default=ImportStatus.UPLOADED,
        nullable=False,
        index=True
    )
    error_message = Column(Text, nullable=True)  # Truncated to 500 chars by the worker

    # Timestamps
    uploaded_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    metric_values = relationship(
        "MetricValue",
        back_populates="health_import",
        cascade="all, delete-orphan",
        passive_deletes=True
    )

    # Indexes
    __table_args__ = (
        Index("idx_imports_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<HealthImport id={self.id} status={self.status}>"
