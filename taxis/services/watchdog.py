"""Periodic reclamation of stalled or never-started jobs."""

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List

from taxis.database.models import JobStatus
from taxis.repositories.job_repository import JobRepository
from taxis.services.continuation import ContinuationSink
from taxis.services.job_engine import utcnow
from taxis.utils.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass
class WatchdogResult:
    reclaimed: int = 0
    triggered: int = 0
    trigger_failures: int = 0
    job_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Watchdog:
    """Requeues jobs whose slices stopped and triggers them again.

    A job qualifies when it is ``queued``, or ``running`` with a heartbeat
    that is missing or older than the stale threshold.
    """

    def __init__(
        self,
        jobs: JobRepository,
        continuation: ContinuationSink,
        stale_seconds: float = 120.0,
        batch_size: int = 25,
        now: Callable[[], datetime] = utcnow,
    ):
        self.jobs = jobs
        self.continuation = continuation
        self.stale_seconds = stale_seconds
        self.batch_size = batch_size
        self.now = now

    async def run_once(self) -> WatchdogResult:
        """One reclamation pass. Trigger failures never stop the pass."""
        result = WatchdogResult()
        now = self.now()
        cutoff = now - timedelta(seconds=self.stale_seconds)

        candidates = await self.jobs.find_reclaimable(stale_before=cutoff, limit=self.batch_size)
        for job in candidates:
            cursor = max(job.cursor or 0, job.rows_processed or 0)
            await self.jobs.update(
                job.id,
                status=JobStatus.QUEUED.value,
                cursor=cursor,
                restarted_at=now,
                locked_by=None,
                locked_at=None,
            )
            result.reclaimed += 1
            result.job_ids.append(str(job.id))

            try:
                handed_off = await self.continuation.request_continuation(job.id)
            except Exception:
                LOGGER.error(f"Trigger for job {job.id} raised", exc_info=True)
                handed_off = False

            if handed_off:
                result.triggered += 1
            else:
                result.trigger_failures += 1

        if result.reclaimed:
            LOGGER.info(
                f"Watchdog reclaimed {result.reclaimed} job(s)",
                extra={"triggered": result.triggered, "trigger_failures": result.trigger_failures}
            )
        return result


async def run_forever(
    run_once: Callable[[], Awaitable[WatchdogResult]],
    interval_seconds: float,
    stop_event: asyncio.Event,
) -> None:
    """Call ``run_once`` every ``interval_seconds`` until ``stop_event`` is set.

    ``run_once`` builds its own watchdog per cycle so each pass gets a fresh
    database session.
    """
    LOGGER.info(f"Watchdog loop started (every {interval_seconds}s)")
    while not stop_event.is_set():
        try:
            await run_once()
        except Exception:
            LOGGER.error("Watchdog cycle failed", exc_info=True)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
    LOGGER.info("Watchdog loop stopped")
