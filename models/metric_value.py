from sqlalchemy import Column, String, Float, DateTime, ForeignKey, Index, Uuid
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import uuid
from models.base import Base, MetricSource


class MetricValue(Base):
    """
    Durable, normalized time-series value.

    Idempotency:
    - (import_id, metric_id, measured_at) is unique
    - The writer inserts with ON CONFLICT DO NOTHING on that key, so
      reprocessing the same archive never produces duplicates
    - Rows are never updated in place; they disappear only when the owning
      import is deleted (cascade)
    """
    __tablename__ = "eden_metric_values"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    metric_id = Column(Uuid, ForeignKey("eden_metric_definitions.id"), nullable=False)

    value = Column(Float, nullable=False)
    measured_at = Column(DateTime(timezone=True), nullable=False)
    source = Column(String(50), nullable=False, default=MetricSource.APPLE_HEALTH.value)

    import_id = Column(
        Uuid,
        ForeignKey("apple_health_imports.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )

    # Relationships
    health_import = relationship("HealthImport", back_populates="metric_values")

    __table_args__ = (
        Index("uniq_metric_import_code_time", "import_id", "metric_id", "measured_at", unique=True),
        Index("idx_metric_values_user_metric_time", "user_id", "metric_id", "measured_at"),
    )
