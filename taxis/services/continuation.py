"""Requests for another processing slice of a job.

The engine only says "continue this job"; the sink decides how that happens:
an HTTP call to a worker's trigger endpoint, or a message on an in-process
queue drained by ``ContinuationConsumer``.
"""

import asyncio
import uuid
from typing import Awaitable, Callable, Optional

import httpx

from taxis.utils.logging import get_logger

LOGGER = get_logger(__name__)


class ContinuationSink:
    """Interface for continuation requests."""

    async def request_continuation(self, job_id: uuid.UUID) -> bool:
        """Ask for another slice of ``job_id``.

        Returns:
            True if the request was handed off. Failures are logged, never raised.
        """
        raise NotImplementedError


class HttpContinuationSink(ContinuationSink):
    """Posts to the worker trigger endpoint in background mode.

    The worker answers 202 as soon as the slice is scheduled.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        api_prefix: str = "/api/v1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_prefix = api_prefix
        self.timeout = timeout
        self.transport = transport

    def trigger_url(self, job_id: uuid.UUID) -> str:
        return f"{self.base_url}{self.api_prefix}/jobs/{job_id}/process?background=true"

    async def request_continuation(self, job_id: uuid.UUID) -> bool:
        url = self.trigger_url(job_id)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json={"job_id": str(job_id)})
        except httpx.HTTPError as e:
            LOGGER.warning(f"Failed to request continuation for job {job_id}: {e}")
            return False

        if response.status_code >= 400:
            LOGGER.warning(
                f"Continuation request for job {job_id} rejected",
                extra={"status_code": response.status_code, "body": response.text[:200]}
            )
            return False
        return True


class QueueContinuationSink(ContinuationSink):
    """Enqueues job ids for an in-process consumer."""

    def __init__(self, queue: Optional[asyncio.Queue] = None):
        self.queue: asyncio.Queue = queue if queue is not None else asyncio.Queue()

    async def request_continuation(self, job_id: uuid.UUID) -> bool:
        await self.queue.put(job_id)
        return True


class ContinuationConsumer:
    """Drains a ``QueueContinuationSink`` and runs one slice per message."""

    def __init__(
        self,
        sink: QueueContinuationSink,
        run_slice: Callable[[uuid.UUID], Awaitable[object]],
    ):
        self.sink = sink
        self.run_slice = run_slice
        self.processed = 0

    async def run_once(self) -> Optional[uuid.UUID]:
        """Process one queued continuation if any. Returns the job id handled."""
        try:
            job_id = self.sink.queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        await self._handle(job_id)
        return job_id

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            getter = asyncio.ensure_future(self.sink.queue.get())
            stopper = asyncio.ensure_future(stop_event.wait())
            done, _ = await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                stopper.cancel()
                break
            stopper.cancel()
            await self._handle(getter.result())

    async def _handle(self, job_id: uuid.UUID) -> None:
        try:
            await self.run_slice(job_id)
        except Exception:
            # The watchdog reclaims the job; one bad slice must not stop the consumer.
            LOGGER.error(f"Continuation slice for job {job_id} failed", exc_info=True)
        finally:
            self.processed += 1
            self.sink.queue.task_done()
