from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class ImportStatus(str, enum.Enum):
    """Lifecycle of an uploaded export archive"""
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class MetricSource(str, enum.Enum):
    """Origin tag stored with each metric value"""
    APPLE_HEALTH = "apple_health"


def enum_values(enum_cls):
    """Persist enum values ("uploaded") rather than member names ("UPLOADED")"""
    return [member.value for member in enum_cls]
