"""Process-wide clients and per-session service factories.

Clients that hold connections or configuration (language-model client,
continuation sink, blob store) are built once per process. Repositories and
services are built per database session.
"""

import uuid
from typing import Annotated, Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from taxis.core.config import settings
from taxis.core.database import async_session_maker, get_async_session
from taxis.core.llm_client import ChatCompletionClient
from taxis.repositories import (
    ConceptRepository,
    JobRepository,
    LlmCacheRepository,
    MasterRecordRepository,
    UploadRepository,
)
from taxis.services.classifier import RelationshipClassifier
from taxis.services.continuation import (
    ContinuationSink,
    HttpContinuationSink,
    QueueContinuationSink,
)
from taxis.services.job_engine import JobEngine, SliceResult
from taxis.services.storage_service import get_blob_store
from taxis.services.upload_service import UploadService
from taxis.services.watchdog import Watchdog, WatchdogResult

_llm_client: Optional[ChatCompletionClient] = None
_continuation_sink: Optional[ContinuationSink] = None


def get_llm_client() -> ChatCompletionClient:
    global _llm_client
    if _llm_client is None:
        _llm_client = ChatCompletionClient(
            api_key=settings.llm.api_key,
            base_url=settings.llm.api_url,
            timeout=settings.llm.timeout_seconds,
            max_retries=settings.llm.max_retries,
            retry_delay=settings.llm.retry_delay,
        )
    return _llm_client


def get_relationship_classifier() -> RelationshipClassifier:
    return RelationshipClassifier(get_llm_client(), settings.llm.model_candidates)


def get_continuation_sink() -> ContinuationSink:
    """HTTP trigger of the worker endpoint, or the in-process queue."""
    global _continuation_sink
    if _continuation_sink is None:
        if settings.pipeline.continuation_mode.lower() == "queue":
            _continuation_sink = QueueContinuationSink()
        else:
            _continuation_sink = HttpContinuationSink(
                base_url=settings.pipeline.worker_base_url,
                timeout=settings.pipeline.trigger_timeout_seconds,
                api_prefix=settings.api_v1_prefix,
            )
    return _continuation_sink


def build_job_engine(session: AsyncSession) -> JobEngine:
    return JobEngine(
        jobs=JobRepository(session),
        uploads=UploadRepository(session),
        master_records=MasterRecordRepository(session),
        concepts=ConceptRepository(session),
        llm_cache=LlmCacheRepository(session),
        blob_store=get_blob_store(),
        classifier=get_relationship_classifier(),
        continuation=get_continuation_sink(),
        settings=settings,
    )


def build_watchdog(session: AsyncSession) -> Watchdog:
    return Watchdog(
        jobs=JobRepository(session),
        continuation=get_continuation_sink(),
        stale_seconds=settings.pipeline.watchdog_stale_seconds,
        batch_size=settings.pipeline.watchdog_batch_size,
    )


def build_upload_service(session: AsyncSession) -> UploadService:
    return UploadService(
        uploads=UploadRepository(session),
        jobs=JobRepository(session),
        blob_store=get_blob_store(),
        continuation=get_continuation_sink(),
        settings=settings,
    )


async def run_job_slice(job_id: uuid.UUID) -> SliceResult:
    """Run one slice outside a request, on its own session."""
    async with async_session_maker() as session:
        return await build_job_engine(session).run_slice(job_id)


async def run_watchdog_cycle() -> WatchdogResult:
    async with async_session_maker() as session:
        return await build_watchdog(session).run_once()


# FastAPI dependencies

async def get_job_engine(
    db_session: Annotated[AsyncSession, Depends(get_async_session)]
) -> JobEngine:
    return build_job_engine(db_session)


async def get_watchdog(
    db_session: Annotated[AsyncSession, Depends(get_async_session)]
) -> Watchdog:
    return build_watchdog(db_session)


async def get_upload_service(
    db_session: Annotated[AsyncSession, Depends(get_async_session)]
) -> UploadService:
    return build_upload_service(db_session)


async def get_job_repository(
    db_session: Annotated[AsyncSession, Depends(get_async_session)]
) -> JobRepository:
    return JobRepository(db_session)
