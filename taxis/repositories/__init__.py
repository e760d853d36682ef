"""Repository layer for database access."""

from taxis.repositories.base_repository import BaseRepository
from taxis.repositories.concept_repository import ConceptRepository
from taxis.repositories.job_repository import JobRepository
from taxis.repositories.llm_cache_repository import LlmCacheRepository
from taxis.repositories.master_record_repository import MasterRecordRepository
from taxis.repositories.upload_repository import UploadRepository

__all__ = [
    "BaseRepository",
    "ConceptRepository",
    "JobRepository",
    "LlmCacheRepository",
    "MasterRecordRepository",
    "UploadRepository",
]
