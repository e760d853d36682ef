"""Unit tests for stalled-job reclamation."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from taxis.database.models import JobStatus
from taxis.services.watchdog import Watchdog, WatchdogResult, run_forever

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def watchdog(job_repo, continuation) -> Watchdog:
    return Watchdog(job_repo, continuation, stale_seconds=120, batch_size=10, now=lambda: NOW)


class TestWatchdog:

    @pytest.mark.asyncio
    async def test_stale_running_job_is_requeued_and_triggered_once(self, watchdog, job_repo, continuation):
        job = job_repo.add(
            status=JobStatus.RUNNING.value,
            cursor=3,
            rows_processed=5,
            last_heartbeat=NOW - timedelta(minutes=10),
            locked_by="worker-1",
        )

        result = await watchdog.run_once()

        assert result.reclaimed == 1
        assert result.triggered == 1
        assert continuation.requests == [job.id]
        assert job.status == JobStatus.QUEUED.value
        assert job.cursor == 5
        assert job.restarted_at == NOW
        assert job.locked_by is None

    @pytest.mark.asyncio
    async def test_fresh_and_terminal_jobs_are_left_alone(self, watchdog, job_repo, continuation):
        job_repo.add(status=JobStatus.RUNNING.value, last_heartbeat=NOW - timedelta(seconds=30))
        job_repo.add(status=JobStatus.COMPLETED.value, last_heartbeat=NOW - timedelta(days=1))
        job_repo.add(status=JobStatus.FAILED.value)

        result = await watchdog.run_once()

        assert result.reclaimed == 0
        assert continuation.requests == []

    @pytest.mark.asyncio
    async def test_queued_and_heartbeatless_jobs_qualify(self, watchdog, job_repo, continuation):
        queued = job_repo.add(created_at=NOW - timedelta(minutes=2))
        never_beat = job_repo.add(status=JobStatus.RUNNING.value, created_at=NOW - timedelta(minutes=1))

        result = await watchdog.run_once()

        assert result.job_ids == [str(queued.id), str(never_beat.id)]
        assert continuation.requests == [queued.id, never_beat.id]

    @pytest.mark.asyncio
    async def test_trigger_failures_are_counted(self, watchdog, job_repo, continuation):
        continuation.handed_off = False
        job = job_repo.add()

        result = await watchdog.run_once()

        assert (result.reclaimed, result.triggered, result.trigger_failures) == (1, 0, 1)
        assert job.status == JobStatus.QUEUED.value


@pytest.mark.asyncio
async def test_loop_survives_failed_cycles():
    stop = asyncio.Event()
    cycles = []

    async def run_once():
        cycles.append(len(cycles))
        if len(cycles) == 1:
            raise RuntimeError("database unavailable")
        if len(cycles) == 3:
            stop.set()
        return WatchdogResult()

    await asyncio.wait_for(run_forever(run_once, 0.01, stop), timeout=2)

    assert len(cycles) == 3
