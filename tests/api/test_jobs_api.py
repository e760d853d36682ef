"""Tests for the job, upload and watchdog endpoints."""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from taxis.dependencies import get_job_engine, get_job_repository, get_upload_service, get_watchdog
from taxis.main import app
from taxis.services.classifier import RelationshipClassifier
from taxis.services.job_engine import JobEngine
from taxis.services.storage_service import get_blob_store
from taxis.services.upload_service import REQUIRED_FIELDS, UploadService
from taxis.services.watchdog import Watchdog


@pytest.fixture
def wired(job_repo, upload_repo, master_repo, concept_repo, cache_repo, blob_store,
          chat_client, continuation, test_settings):
    """Point every endpoint dependency at the in-memory fakes."""
    engine = JobEngine(
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
    uploads = UploadService(upload_repo, job_repo, blob_store, continuation, test_settings)
    watchdog = Watchdog(job_repo, continuation)

    app.dependency_overrides[get_job_engine] = lambda: engine
    app.dependency_overrides[get_job_repository] = lambda: job_repo
    app.dependency_overrides[get_upload_service] = lambda: uploads
    app.dependency_overrides[get_watchdog] = lambda: watchdog
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    return engine


@pytest.fixture
def stored_job(job_repo, upload_repo, blob_store, sample_csv):
    upload = upload_repo.add(blob_key="tester/1_pairs.csv")
    blob_store.objects[("uploads", upload.blob_key)] = sample_csv
    return job_repo.add(upload_id=upload.id)


class TestProcessEndpoint:

    def test_runs_slice_and_reports_summary(self, test_client: TestClient, wired, stored_job):
        response = test_client.post(f"/api/v1/jobs/{stored_job.id}/process")

        assert response.status_code == 202
        data = response.json()["data"]
        assert data["status"] == "completed"
        assert data["rows_processed"] == 3
        assert data["processed_this_slice"] == 3

    def test_finished_job_is_a_no_op(self, test_client: TestClient, wired, stored_job, chat_client):
        test_client.post(f"/api/v1/jobs/{stored_job.id}/process")
        calls = len(chat_client.calls)

        response = test_client.post(f"/api/v1/jobs/{stored_job.id}/process")

        assert response.status_code == 202
        assert response.json()["data"]["processed_this_slice"] == 0
        assert len(chat_client.calls) == calls

    def test_unknown_job(self, test_client: TestClient, wired):
        response = test_client.post(f"/api/v1/jobs/{uuid.uuid4()}/process")

        assert response.status_code == 404
        assert response.json()["detail"]["title"] == "Job Not Found"

    def test_background_mode_schedules_slice(self, test_client: TestClient, wired, stored_job, monkeypatch):
        runner = AsyncMock()
        monkeypatch.setattr("taxis.api.v1.endpoints.jobs.run_job_slice", runner)

        response = test_client.post(f"/api/v1/jobs/{stored_job.id}/process?background=true")

        assert response.status_code == 202
        assert response.json()["data"] == {"job_id": str(stored_job.id), "scheduled": True}
        runner.assert_awaited_once_with(stored_job.id)

    def test_background_mode_checks_job_exists(self, test_client: TestClient, wired, monkeypatch):
        runner = AsyncMock()
        monkeypatch.setattr("taxis.api.v1.endpoints.jobs.run_job_slice", runner)

        response = test_client.post(f"/api/v1/jobs/{uuid.uuid4()}/process?background=true")

        assert response.status_code == 404
        runner.assert_not_awaited()


class TestJobListing:

    def test_lists_callers_jobs_newest_first(self, test_client: TestClient, wired, job_repo, upload_repo):
        now = datetime.now(timezone.utc)
        first_upload = upload_repo.add(blob_key="u-1/1_old.csv", original_name="old.csv", user_id="u-1")
        older = job_repo.add(upload_id=first_upload.id, user_id="u-1", created_at=now - timedelta(hours=1))
        second_upload = upload_repo.add(blob_key="u-1/2_new.csv", original_name="new.csv", user_id="u-1")
        newer = job_repo.add(
            upload_id=second_upload.id,
            status="completed",
            output_blob_key="outputs/new.csv",
            created_at=now,
        )
        foreign_upload = upload_repo.add(blob_key="u-2/1_theirs.csv", original_name="theirs.csv", user_id="u-2")
        job_repo.add(upload_id=foreign_upload.id, user_id="u-2")

        response = test_client.get("/api/v1/jobs", headers={"X-User-Id": "u-1"})

        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assert [item["id"] for item in items] == [str(newer.id), str(older.id)]
        assert items[0]["file_name"] == "new.csv"
        assert items[0]["status"] == "completed"
        assert items[0]["output_url"] == f"/api/v1/jobs/{newer.id}/output"
        assert items[1]["file_name"] == "old.csv"
        assert items[1]["output_url"] is None

    def test_anonymous_callers_see_unowned_jobs(self, test_client: TestClient, wired, stored_job, upload_repo, job_repo):
        owned_upload = upload_repo.add(blob_key="u-1/1_pairs.csv", user_id="u-1")
        job_repo.add(upload_id=owned_upload.id, user_id="u-1")

        anonymous = test_client.get("/api/v1/jobs").json()["data"]["items"]
        owned = test_client.get("/api/v1/jobs", headers={"X-User-Id": "u-1"}).json()["data"]["items"]

        assert [item["id"] for item in anonymous] == [str(stored_job.id)]
        assert str(stored_job.id) not in [item["id"] for item in owned]


class TestJobQueries:

    def test_status(self, test_client: TestClient, wired, stored_job):
        response = test_client.get(f"/api/v1/jobs/{stored_job.id}")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == str(stored_job.id)
        assert data["status"] == "queued"

    def test_output_download(self, test_client: TestClient, wired, stored_job):
        test_client.post(f"/api/v1/jobs/{stored_job.id}/process")

        response = test_client.get(f"/api/v1/jobs/{stored_job.id}/output")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert len(response.text.splitlines()) == 4

    def test_output_not_ready(self, test_client: TestClient, wired, stored_job):
        response = test_client.get(f"/api/v1/jobs/{stored_job.id}/output")

        assert response.status_code == 404


class TestUploadEndpoints:

    def test_required_fields(self, test_client: TestClient):
        response = test_client.get("/api/v1/uploads/required-fields")

        assert response.status_code == 200
        assert response.json()["data"]["required_fields"] == list(REQUIRED_FIELDS)

    def test_upload_accepted(self, test_client: TestClient, wired, sample_csv, continuation):
        response = test_client.post(
            "/api/v1/uploads",
            files={"file": ("pairs.csv", sample_csv, "text/csv")},
            headers={"X-User-Id": "u-1"},
        )

        assert response.status_code == 202
        data = response.json()["data"]
        assert data["input_blob_key"].startswith("u-1/")
        assert data["input_blob_key"].endswith("_pairs.csv")
        assert len(continuation.requests) == 1

    def test_upload_missing_columns(self, test_client: TestClient, wired):
        response = test_client.post(
            "/api/v1/uploads",
            files={"file": ("pairs.csv", b"concept_a,concept_b\n1,2\n", "text/csv")},
        )

        assert response.status_code == 400
        errors = response.json()["detail"]["errors"]
        assert "nA" in errors["missing"]


class TestWatchdogEndpoint:

    def test_run_cycle(self, test_client: TestClient, wired, stored_job, continuation):
        response = test_client.post("/api/v1/watchdog/run")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["reclaimed"] == 1
        assert data["job_ids"] == [str(stored_job.id)]
        assert continuation.requests == [stored_job.id]


def test_root(test_client: TestClient):
    response = test_client.get("/")

    assert response.status_code == 200
    assert response.json()["message"] == "Server is running"
    assert "X-Correlation-ID" in response.headers
