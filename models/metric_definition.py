from sqlalchemy import Column, String, Text, Uuid
import uuid
from models.base import Base


class MetricDefinition(Base):
    """
    Canonical metric catalog.

    The worker only reads this table: metric codes emitted by the parser
    ("vo2max", "bp_systolic", ...) are resolved to ids here, and codes with
    no definition are dropped at write time.
    """
    __tablename__ = "eden_metric_definitions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    metric_code = Column(String(100), nullable=False, unique=True, index=True)
    display_name = Column(String(200), nullable=True)
    canonical_unit = Column(String(50), nullable=True)
    description = Column(Text, nullable=True)
