"""Unit tests for upload registration."""

import pytest

from taxis.core.exceptions import ValidationError
from taxis.database.models import JobStatus
from taxis.services.job_engine import output_key_for
from taxis.services.upload_service import (
    REQUIRED_FIELDS,
    UploadService,
    missing_required_fields,
    upload_extension,
)


@pytest.fixture
def service(upload_repo, job_repo, blob_store, continuation, test_settings) -> UploadService:
    return UploadService(upload_repo, job_repo, blob_store, continuation, test_settings, stamp=lambda: 1700000000000)


def test_upload_extension():
    assert upload_extension("Pairs.XLSX") == ".xlsx"
    assert upload_extension("pairs", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet") == ".xlsx"
    assert upload_extension("pairs", "text/csv") == ".csv"


def test_required_fields_compare_case_insensitively():
    headers = [name.upper() for name in REQUIRED_FIELDS if name != "same_day"]

    assert missing_required_fields(headers) == ["same_day"]


class TestRegisterUpload:

    @pytest.mark.asyncio
    async def test_valid_upload_is_stored_and_queued(
        self, service, sample_csv, blob_store, upload_repo, job_repo, continuation
    ):
        registered = await service.register_upload("My Pairs.csv", sample_csv, "text/csv", user_id="u-42")

        assert registered.input_blob_key == "u-42/1700000000000_My Pairs.csv"
        assert blob_store.objects[("uploads", registered.input_blob_key)] == sample_csv

        job = next(iter(job_repo.jobs.values()))
        upload = next(iter(upload_repo.uploads.values()))
        assert job.status == JobStatus.QUEUED.value
        assert job.upload_id == upload.id
        assert job.user_id == "u-42"
        assert registered.output_blob_key == output_key_for(upload.id)
        assert upload.original_name == "My Pairs.csv"
        assert upload.size == len(sample_csv)
        assert continuation.requests == [job.id]
        assert registered.continued is True

    @pytest.mark.asyncio
    async def test_anonymous_uploads(self, service, sample_csv):
        registered = await service.register_upload("pairs.csv", sample_csv)

        assert registered.input_blob_key.startswith("anonymous/")

    @pytest.mark.asyncio
    async def test_missing_columns_are_listed(self, service, job_repo, blob_store):
        with pytest.raises(ValidationError) as exc_info:
            await service.register_upload("pairs.csv", b"concept_a,concept_b\n1,2\n")

        details = exc_info.value.details
        assert "cooc_obs" in details["missing"]
        assert details["headers_found"] == ["concept_a", "concept_b"]
        assert details["original_name"] == "pairs.csv"
        assert job_repo.jobs == {}
        assert blob_store.objects == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("filename,content", [
        ("pairs.csv", b""),
        ("pairs.pdf", b"%PDF-1.4"),
        ("pairs.csv", b"\n\n"),
        ("pairs.xlsx", b"not a workbook"),
    ])
    async def test_rejected_files(self, service, filename, content):
        with pytest.raises(ValidationError):
            await service.register_upload(filename, content)
