"""Unit tests for time-boxed processing slices."""

import csv
import io
import uuid

import pytest
from sqlalchemy import inspect

from taxis.core.exceptions import BlobNotFoundError, JobNotFoundError, UploadNotFoundError
from taxis.database.models import JobStatus, MasterRecord
from taxis.services.classifier import RelationshipClassifier
from taxis.services.job_engine import JobEngine, output_key_for
from tests.fakes import (
    FakeChatClient,
    FakeConceptRepository,
    FakeJobRepository,
    FakeLlmCacheRepository,
    FakeMasterRecordRepository,
    FakeUploadRepository,
    InMemoryBlobStore,
    RecordingContinuationSink,
    api_failure,
)

PAIR_1 = "ICD10CM|201826|SNOMED|4329847"
PAIR_2 = "ICD10CM|201826|RXNORM|312327"


def _seed_vocabulary(concept_repo):
    concept_repo.add(201826, "Type 2 diabetes mellitus", "ICD10CM", "Condition")
    concept_repo.add(4329847, "Myocardial infarction", "SNOMED", "Clinical Finding")
    concept_repo.add(312327, "Metformin", "RXNORM", "Ingredient")


@pytest.fixture(autouse=True)
def vocabulary(concept_repo):
    _seed_vocabulary(concept_repo)


@pytest.fixture
def engine(job_repo, upload_repo, master_repo, concept_repo, cache_repo, blob_store,
           chat_client, continuation, test_settings) -> JobEngine:
    return JobEngine(
        jobs=job_repo,
        uploads=upload_repo,
        master_records=master_repo,
        concepts=concept_repo,
        llm_cache=cache_repo,
        blob_store=blob_store,
        classifier=RelationshipClassifier(chat_client, test_settings.llm.model_candidates),
        continuation=continuation,
        settings=test_settings,
    )


@pytest.fixture
async def job(job_repo, upload_repo, blob_store, sample_csv):
    upload = upload_repo.add(blob_key="tester/1_pairs.csv")
    await blob_store.put("uploads", upload.blob_key, sample_csv)
    return job_repo.add(upload_id=upload.id, user_id="tester")


def _report_lines(blob_store, job):
    return blob_store.text("outputs", output_key_for(job.upload_id)).splitlines()


# Stamped from the wall clock.
CLOCK_COLUMNS = {"created_at", "updated_at", "llm_date"}


def _record_snapshot(master_repo) -> dict:
    columns = [attr.key for attr in inspect(MasterRecord).column_attrs if attr.key not in CLOCK_COLUMNS]
    return {
        pair_id: {name: getattr(record, name) for name in columns}
        for pair_id, record in master_repo.records.items()
    }


async def _run_to_completion(settings, content: bytes):
    """Run a fresh job over ``content`` slice by slice until it completes."""
    uploads = FakeUploadRepository()
    jobs = FakeJobRepository(uploads)
    concepts = FakeConceptRepository()
    _seed_vocabulary(concepts)
    master_records = FakeMasterRecordRepository()
    blob_store = InMemoryBlobStore()

    upload = uploads.add(blob_key="tester/1_pairs.csv")
    await blob_store.put("uploads", upload.blob_key, content)
    job = jobs.add(upload_id=upload.id, user_id="tester")

    engine = JobEngine(
        jobs=jobs,
        uploads=uploads,
        master_records=master_records,
        concepts=concepts,
        llm_cache=FakeLlmCacheRepository(),
        blob_store=blob_store,
        classifier=RelationshipClassifier(
            FakeChatClient(default_reply="1: A causes B: Well documented direct cause"),
            settings.llm.model_candidates,
        ),
        continuation=RecordingContinuationSink(),
        settings=settings,
    )

    slices = 0
    while job.status != JobStatus.COMPLETED.value and slices < 10:
        await engine.run_slice(job.id)
        slices += 1
    return master_records, slices


class TestSingleSlice:

    @pytest.mark.asyncio
    async def test_processes_all_rows_and_completes(
        self, engine, job, master_repo, blob_store, chat_client, continuation
    ):
        result = await engine.run_slice(job.id)

        assert result.status == JobStatus.COMPLETED.value
        assert result.rows_total == 3
        assert result.rows_processed == 3
        assert result.processed_this_slice == 3
        assert result.classifications == 2
        assert continuation.requests == []
        assert job.finished_at is not None
        assert job.output_blob_key == output_key_for(job.upload_id)

        assert set(master_repo.records) == {PAIR_1, PAIR_2}
        repeated = master_repo.records[PAIR_1]
        assert repeated.source_count == 2
        assert repeated.cooc_obs == 8
        assert repeated.n_a == 21
        assert float(repeated.lift) == 2.5
        assert len(chat_client.calls) == 2

        lines = _report_lines(blob_store, job)
        assert len(lines) == 4
        assert lines[0].endswith("relationship_type,relationship_code,rationale")

        export = blob_store.text("cache", "llmcache.csv").splitlines()
        assert len(export) == 3

    @pytest.mark.asyncio
    async def test_cache_export_lists_every_new_pair(self, engine, job, blob_store, chat_client):
        chat_client.replies = {"model-a": api_failure()}

        await engine.run_slice(job.id)

        text = blob_store.text("cache", "llmcache.csv")
        exported = list(csv.DictReader(io.StringIO(text)))
        assert [row["pairId"] for row in exported] == [PAIR_1, PAIR_2]
        assert {row["relationship_code"] for row in exported} == {"11"}

    @pytest.mark.asyncio
    async def test_tokens_are_accounted(self, engine, job):
        await engine.run_slice(job.id)

        assert job.tokens_in == 240
        assert job.tokens_out == 24


class TestSlicing:

    @pytest.fixture
    def one_row_per_slice(self, test_settings):
        # The deadline falls on the slice start, so each slice stops after one row.
        test_settings.pipeline.max_run_seconds = 10.0
        test_settings.pipeline.deadline_margin_seconds = 10.0

    @pytest.mark.asyncio
    async def test_resumes_across_slices_without_duplicates(
        self, one_row_per_slice, engine, job, master_repo, blob_store, continuation
    ):
        first = await engine.run_slice(job.id)

        assert first.status == JobStatus.RUNNING.value
        assert first.rows_processed == 1
        assert first.continued is True
        assert continuation.requests == [job.id]

        second = await engine.run_slice(job.id)
        third = await engine.run_slice(job.id)

        assert (second.rows_processed, third.rows_processed) == (2, 3)
        assert third.status == JobStatus.COMPLETED.value
        assert continuation.requests == [job.id, job.id]
        assert master_repo.records[PAIR_1].source_count == 2

        lines = _report_lines(blob_store, job)
        assert len(lines) == 4
        assert sum(1 for line in lines if line.startswith("concept_a,")) == 1

    @pytest.mark.asyncio
    async def test_sliced_run_matches_uninterrupted_run(self, test_settings, sample_csv):
        uninterrupted, single_slices = await _run_to_completion(test_settings, sample_csv)

        test_settings.pipeline.max_run_seconds = 10.0
        test_settings.pipeline.deadline_margin_seconds = 10.0
        sliced, sliced_slices = await _run_to_completion(test_settings, sample_csv)

        assert (single_slices, sliced_slices) == (1, 3)
        assert set(uninterrupted.records) == {PAIR_1, PAIR_2}
        assert _record_snapshot(sliced) == _record_snapshot(uninterrupted)

    @pytest.mark.asyncio
    async def test_failed_handoff_leaves_job_running(self, one_row_per_slice, engine, job, continuation):
        continuation.handed_off = False

        result = await engine.run_slice(job.id)

        assert result.continued is False
        assert job.status == JobStatus.RUNNING.value
        assert job.last_heartbeat is not None

    @pytest.mark.asyncio
    async def test_resume_point_is_highest_progress_marker(self, engine, job, chat_client):
        job.status = JobStatus.RUNNING.value
        job.rows_total = 3
        job.cursor = 1
        job.rows_processed = 2

        result = await engine.run_slice(job.id)

        assert result.processed_this_slice == 1
        assert result.status == JobStatus.COMPLETED.value
        assert len(chat_client.calls) == 1

    @pytest.mark.asyncio
    async def test_nothing_left_completes_immediately(self, engine, job, chat_client):
        job.rows_total = 3
        job.cursor = 3
        job.rows_processed = 3

        result = await engine.run_slice(job.id)

        assert result.status == JobStatus.COMPLETED.value
        assert result.processed_this_slice == 0
        assert chat_client.calls == []


class TestTerminalAndErrors:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [JobStatus.COMPLETED.value, JobStatus.FAILED.value])
    async def test_terminal_job_is_a_no_op(self, engine, job, job_repo, chat_client, status):
        job.status = status

        result = await engine.run_slice(job.id)

        assert result.status == status
        assert job_repo.updates == []
        assert chat_client.calls == []

    @pytest.mark.asyncio
    async def test_unknown_job(self, engine):
        with pytest.raises(JobNotFoundError):
            await engine.run_slice(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_missing_upload_record(self, engine, job_repo):
        job = job_repo.add(upload_id=uuid.uuid4())

        with pytest.raises(UploadNotFoundError):
            await engine.run_slice(job.id)

    @pytest.mark.asyncio
    async def test_missing_upload_blob(self, engine, job_repo, upload_repo):
        upload = upload_repo.add(blob_key="tester/gone.csv")
        job = job_repo.add(upload_id=upload.id)

        with pytest.raises(BlobNotFoundError):
            await engine.run_slice(job.id)
