"""
SQLAlchemy ORM models for database tables.

This package defines the tables the import worker touches:

Models:
    base: Base declarative class and shared enums (ImportStatus, MetricSource)
    health_import: Queue of uploaded export archives (apple_health_imports)
    metric_definition: Metric code catalog (eden_metric_definitions)
    metric_value: Persisted time-series values (eden_metric_values)

Usage:
    from models.health_import import HealthImport
    from models.metric_value import MetricValue
    from models.base import ImportStatus

Relationships:
    - HealthImport → MetricValue (one-to-many, cascade delete)
    - MetricDefinition → MetricValue (one-to-many)
"""

from models.base import Base, ImportStatus, MetricSource
from models.health_import import HealthImport
from models.metric_definition import MetricDefinition
from models.metric_value import MetricValue

__all__ = [
    "Base",
    "ImportStatus",
    "MetricSource",
    "HealthImport",
    "MetricDefinition",
    "MetricValue",
]
