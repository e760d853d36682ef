"""Time-boxed processing slices over a job's rows.

One slice loads the job, walks rows from the committed cursor, merges each
into the aggregate table and the report, checkpoints on every flush, and
stops shortly before the time box runs out. Unfinished jobs ask for another
slice through the continuation sink; the watchdog covers lost requests.

Unhandled errors propagate to the caller and leave the job as it is, so a
stale ``running`` job is picked up again by the watchdog.
"""

import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from taxis.core.config import Settings
from taxis.core.exceptions import BlobNotFoundError, JobNotFoundError, UploadNotFoundError
from taxis.database.models import Job, JobStatus
from taxis.repositories.concept_repository import ConceptRepository
from taxis.repositories.job_repository import JobRepository
from taxis.repositories.llm_cache_repository import LlmCacheRepository
from taxis.repositories.master_record_repository import MasterRecordRepository
from taxis.repositories.upload_repository import UploadRepository
from taxis.services.classification_cache import CachedClassifier
from taxis.services.classifier import RelationshipClassifier
from taxis.services.concept_resolver import ConceptCache, ConceptResolver
from taxis.services.continuation import ContinuationSink
from taxis.services.field_mapping import FieldMappingLoader
from taxis.services.output_accumulator import OutputAccumulator
from taxis.services.record_merger import MergeResult, RecordMerger
from taxis.services.row_enricher import EnrichedPair, RowEnricher
from taxis.services.row_source import parse_upload_rows
from taxis.services.storage_service import BlobStore
from taxis.utils.logging import get_logger

LOGGER = get_logger(__name__)


def output_key_for(upload_id: Any) -> str:
    return f"outputs/{upload_id}.csv"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SliceResult:
    """Summary of one slice, returned by the trigger endpoint."""

    job_id: str
    status: str
    rows_total: Optional[int]
    rows_processed: int
    processed_this_slice: int = 0
    continued: bool = False
    classifications: int = 0
    cache_hits: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class JobEngine:
    """Runs processing slices for jobs."""

    def __init__(
        self,
        jobs: JobRepository,
        uploads: UploadRepository,
        master_records: MasterRecordRepository,
        concepts: ConceptRepository,
        llm_cache: LlmCacheRepository,
        blob_store: BlobStore,
        classifier: RelationshipClassifier,
        continuation: ContinuationSink,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
    ):
        self.jobs = jobs
        self.uploads = uploads
        self.master_records = master_records
        self.concepts = concepts
        self.llm_cache = llm_cache
        self.blob_store = blob_store
        self.classifier = classifier
        self.continuation = continuation
        self.settings = settings
        self.clock = clock
        self.now = now

    async def run_slice(self, job_id: uuid.UUID) -> SliceResult:
        """Run one bounded slice for ``job_id``.

        Raises:
            JobNotFoundError: Unknown job
            UploadNotFoundError: The job's upload record is gone
            BlobNotFoundError: The uploaded file is gone
            RowSourceError: The upload cannot be decoded
        """
        pipeline = self.settings.pipeline
        started = self.clock()
        deadline = started + pipeline.max_run_seconds - pipeline.deadline_margin_seconds

        job = await self.jobs.get_by_id(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")

        if JobStatus(job.status).is_terminal:
            LOGGER.info(f"Job {job_id} already {job.status}, nothing to do")
            return self._result(job)

        now = self.now()
        await self.jobs.update(
            job.id,
            status=JobStatus.RUNNING.value,
            started_at=job.started_at or now,
            last_heartbeat=now,
            locked_by=pipeline.worker_id,
            locked_at=now,
        )

        rows = await self._load_rows(job)
        mapping = await FieldMappingLoader(self.blob_store, self.settings.storage.config_bucket).load()

        rows_total = job.rows_total
        if rows_total is None or rows_total <= 0:
            rows_total = len(rows)
            await self.jobs.update(job.id, rows_total=rows_total)
        elif rows_total != len(rows):
            LOGGER.warning(
                f"Job {job_id} rows_total {rows_total} differs from upload row count {len(rows)}"
            )
            rows_total = min(rows_total, len(rows))

        cursor = max(job.cursor or 0, job.rows_processed or 0)

        output_key = job.output_blob_key or output_key_for(job.upload_id)
        if job.output_blob_key != output_key:
            await self.jobs.update(job.id, output_blob_key=output_key)

        if cursor >= rows_total:
            await self._complete(job, cursor)
            return self._result(job)

        LOGGER.info(
            f"Slice started for job {job_id}",
            extra={"cursor": cursor, "rows_total": rows_total, "mapping": mapping.source}
        )

        cached_classifier = CachedClassifier(self.classifier, self.llm_cache, self.settings.prompt_version)
        enricher = RowEnricher(ConceptResolver(self.concepts, ConceptCache()))
        merger = RecordMerger(self.master_records, cached_classifier, self.settings.llm.provider_name)
        accumulator = OutputAccumulator(
            self.blob_store,
            output_bucket=self.settings.storage.outputs_bucket,
            output_key=output_key,
            cache_bucket=self.settings.storage.llm_cache_bucket,
            cache_key=self.settings.storage.llm_cache_blob_key,
            flush_every_rows=pipeline.flush_every_rows,
            flush_every_seconds=pipeline.flush_every_seconds,
            clock=self.clock,
        )
        await accumulator.open()

        tokens_in = job.tokens_in or 0
        tokens_out = job.tokens_out or 0
        processed = 0

        for index in range(cursor, rows_total):
            row = rows[index]
            pair = await enricher.enrich(row)
            merge = await merger.merge(pair, mapping)

            accumulator.append_row(self._report_row(row, pair, merge))
            if merge.is_new:
                accumulator.queue_cache_row(self._cache_export_row(job, index, pair, merge))
            tokens_in += merge.usage.get("prompt_tokens", 0)
            tokens_out += merge.usage.get("completion_tokens", 0)

            cursor = index + 1
            processed += 1

            deadline_reached = self.clock() >= deadline
            if accumulator.should_flush(deadline_reached):
                await accumulator.flush()
                await self._checkpoint(job, cursor, output_key, tokens_in, tokens_out)
            if deadline_reached:
                LOGGER.info(f"Job {job_id} reached its time box at row {cursor}/{rows_total}")
                break

        if accumulator.has_unflushed:
            await accumulator.flush()
            await self._checkpoint(job, cursor, output_key, tokens_in, tokens_out)

        LOGGER.info(
            f"Slice finished for job {job_id}",
            extra={
                "processed": processed,
                "cursor": cursor,
                "rows_total": rows_total,
                "classifications": cached_classifier.calls,
                "cache_hits": cached_classifier.hits,
                "flushes": accumulator.flushes,
            }
        )

        continued = False
        if cursor >= rows_total:
            await self._complete(job, cursor)
        else:
            continued = await self.continuation.request_continuation(job.id)
            if not continued:
                LOGGER.warning(f"Continuation for job {job_id} not handed off; watchdog will reclaim it")

        result = self._result(job)
        result.processed_this_slice = processed
        result.continued = continued
        result.classifications = cached_classifier.calls
        result.cache_hits = cached_classifier.hits
        return result

    async def _load_rows(self, job: Job) -> List[Dict[str, Any]]:
        upload = await self.uploads.get_by_id(job.upload_id)
        if upload is None:
            raise UploadNotFoundError(f"Upload {job.upload_id} for job {job.id} not found")

        content = await self.blob_store.get_bytes(self.settings.storage.uploads_bucket, upload.blob_key)
        if content is None:
            raise BlobNotFoundError(f"Uploaded blob {upload.blob_key} not found")

        # the stored key always carries the extension chosen at registration
        return parse_upload_rows(content, upload.blob_key)

    async def _checkpoint(
        self, job: Job, cursor: int, output_key: str, tokens_in: int, tokens_out: int
    ) -> None:
        await self.jobs.update(
            job.id,
            rows_processed=cursor,
            cursor=cursor,
            last_heartbeat=self.now(),
            output_blob_key=output_key,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
        )

    async def _complete(self, job: Job, cursor: int) -> None:
        await self.jobs.update(
            job.id,
            status=JobStatus.COMPLETED.value,
            rows_processed=max(cursor, job.rows_processed or 0),
            cursor=max(cursor, job.cursor or 0),
            finished_at=self.now(),
            locked_by=None,
            locked_at=None,
        )
        LOGGER.info(f"Job {job.id} completed")

    @staticmethod
    def _result(job: Job) -> SliceResult:
        return SliceResult(
            job_id=str(job.id),
            status=job.status,
            rows_total=job.rows_total,
            rows_processed=job.rows_processed or 0,
        )

    @staticmethod
    def _report_row(row: Dict[str, Any], pair: EnrichedPair, merge: MergeResult) -> Dict[str, Any]:
        classification = merge.classification
        return {
            **row,
            "code_a": pair.code_a,
            "code_b": pair.code_b,
            "system_a": pair.system_a,
            "system_b": pair.system_b,
            "concept_a": pair.concept_a,
            "concept_b": pair.concept_b,
            "type_a": pair.type_a or "",
            "type_b": pair.type_b or "",
            "relationship_type": classification.label,
            "relationship_code": str(classification.code),
            "rationale": classification.rationale,
        }

    def _cache_export_row(
        self, job: Job, index: int, pair: EnrichedPair, merge: MergeResult
    ) -> Dict[str, Any]:
        classification = merge.classification
        usage = classification.usage
        return {
            "timestamp": self.now().isoformat(),
            "jobId": str(job.id),
            "uploadId": str(job.upload_id),
            "userId": job.user_id or "",
            "rowIndex": str(index),
            "pairId": pair.pair_id,
            "system_a": pair.system_a,
            "code_a": pair.code_a,
            "system_b": pair.system_b,
            "code_b": pair.code_b,
            "concept_a_t": pair.concept_a,
            "concept_b_t": pair.concept_b,
            "model": classification.model,
            "relationship_code": str(classification.code),
            "relationship_type": classification.label,
            "prompt_tokens": usage.get("prompt_tokens", ""),
            "completion_tokens": usage.get("completion_tokens", ""),
            "total_tokens": usage.get("total_tokens", ""),
        }
