"""Database module for SQLAlchemy models."""

from taxis.database.models import (
    MASTER_RECORD_FIELDS,
    Concept,
    Job,
    JobStatus,
    LlmCacheEntry,
    MasterRecord,
    Upload,
)

__all__ = [
    "MASTER_RECORD_FIELDS",
    "Concept",
    "Job",
    "JobStatus",
    "LlmCacheEntry",
    "MasterRecord",
    "Upload",
]
