"""Worker pool: claims jobs, renews leases, records outcomes, reports failures."""

import asyncio
import logging
import os
import signal
import socket
import uuid
from typing import Optional

from ..executor.processor import JobProcessor
from ..integrations.linear import LinearClient, TrackerUnavailable
from ..plans.formatter import format_failure_comment
from ..state.reconciler import StateReconciler
from ..state.workflow import WorkflowState
from ..storage.queue import JobQueue, JobRecord, QueueError, RateLimiter
from ..tasks.models import Task
from ..utils.logging import job_context
from .dispatcher import InFlightMarkers

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


class Worker:
    """Pulls jobs from one queue with bounded concurrency.

    Each claimed job holds a lease that a background task renews every
    ``lock_renew_sec`` seconds. A job whose worker dies stops being renewed
    and is redelivered once the lease expires.
    """

    def __init__(
        self,
        queue: JobQueue,
        processor: JobProcessor,
        tracker: LinearClient,
        reconciler: StateReconciler,
        limiter: Optional[RateLimiter] = None,
        markers: Optional[InFlightMarkers] = None,
        concurrency: int = 1,
        lock_duration_sec: float = 600.0,
        lock_renew_sec: float = 30.0,
        poll_interval_sec: float = 1.0,
        worker_id: Optional[str] = None,
    ):
        self.queue = queue
        self.processor = processor
        self.tracker = tracker
        self.reconciler = reconciler
        self.limiter = limiter
        self.markers = markers
        self.concurrency = max(1, concurrency)
        self.lock_duration_sec = lock_duration_sec
        self.lock_renew_sec = lock_renew_sec
        self.poll_interval_sec = poll_interval_sec
        self.worker_id = worker_id or default_worker_id()
        self._stopping = asyncio.Event()
        self._in_flight: set[asyncio.Task] = set()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def stop(self) -> None:
        """Stop claiming new jobs; in-flight jobs are allowed to finish."""
        if not self._stopping.is_set():
            logger.info(
                "Worker %s shutting down after %d in-flight job(s)",
                self.worker_id,
                len(self._in_flight),
            )
            self._stopping.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.stop)

    async def run(self, handle_signals: bool = False) -> None:
        """Claim and process jobs until stop() is called."""
        if handle_signals:
            self.install_signal_handlers()
        logger.info(
            "Worker %s started on %s (concurrency=%d)",
            self.worker_id,
            self.queue.name,
            self.concurrency,
        )

        stop_waiter = asyncio.create_task(self._stopping.wait())
        while not self.stopping:
            await self.report_stalled()

            if len(self._in_flight) >= self.concurrency:
                await asyncio.wait(
                    self._in_flight | {stop_waiter},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                continue

            job = await asyncio.to_thread(self.queue.claim, self.worker_id, self.lock_duration_sec)
            if job is None:
                await self._idle(self.poll_interval_sec)
                continue

            handle = asyncio.create_task(self.handle(job))
            self._in_flight.add(handle)
            handle.add_done_callback(self._in_flight.discard)

        stop_waiter.cancel()
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.info("Worker %s stopped", self.worker_id)

    async def run_once(self) -> Optional[JobRecord]:
        """Claim and fully process at most one job."""
        await self.report_stalled()
        job = await asyncio.to_thread(self.queue.claim, self.worker_id, self.lock_duration_sec)
        if job is None:
            return None
        return await self.handle(job)

    async def handle(self, job: JobRecord) -> JobRecord:
        """Process one claimed job and record the outcome."""
        with job_context(job.job_id, job.data.get("ticketId")):
            return await self._handle(job)

    async def _handle(self, job: JobRecord) -> JobRecord:
        logger.info(
            "Claimed job %s for ticket %s (attempt %d/%d)",
            job.job_id,
            job.data.get("ticketId"),
            job.attempts_made,
            job.max_attempts,
        )
        renewal = asyncio.create_task(self._renew_lease(job.job_id))
        try:
            await self._wait_for_rate_token()
            task = Task.model_validate(job.data)
            outcome = await self.processor.process(task, job.job_id)
        except Exception as e:
            logger.error(
                "Job %s failed (attempt %d/%d): %s",
                job.job_id,
                job.attempts_made,
                job.max_attempts,
                e,
            )
            return await self._record_failure(job, f"{type(e).__name__}: {e}")
        finally:
            renewal.cancel()

        try:
            record = await asyncio.to_thread(
                self.queue.complete, job.job_id, self.worker_id, outcome.to_dict()
            )
        except QueueError as e:
            logger.error("Job %s finished but could not be recorded: %s", job.job_id, e)
            return job
        logger.info("Job %s completed (ticket %s)", job.job_id, task.ticket_id)
        await self._settle(task.ticket_id, job.job_id)
        return record

    async def _record_failure(self, job: JobRecord, error: str) -> JobRecord:
        try:
            record = await asyncio.to_thread(self.queue.fail, job.job_id, self.worker_id, error)
        except QueueError as e:
            # Lease lost: another worker owns the retry now.
            logger.error("Could not record failure of %s: %s", job.job_id, e)
            return job
        if record.is_terminal_failure:
            await self.report_terminal_failure(record)
        return record

    async def report_stalled(self) -> None:
        for record in await asyncio.to_thread(self.queue.reap_stalled):
            with job_context(record.job_id, record.data.get("ticketId")):
                await self.report_terminal_failure(record)

    async def report_terminal_failure(self, record: JobRecord) -> None:
        """Tell a human: comment on the ticket and move it back for review."""
        ticket_id = record.data.get("ticketId")
        logger.error(
            "Job %s FAILED PERMANENTLY after %d attempt(s); reporting to tracker",
            record.job_id,
            record.attempts_made,
        )
        if not ticket_id:
            return
        body = format_failure_comment(
            record.job_id, record.attempts_made, record.failed_reason or "unknown error"
        )
        try:
            await self.tracker.post_comment(ticket_id, body)
        except TrackerUnavailable as e:
            logger.warning("Could not post failure comment on %s: %s", ticket_id, e)
        await self.reconciler.transition(ticket_id, WorkflowState.AWAITING_APPROVAL)
        await self._settle(ticket_id, record.job_id)

    async def _settle(self, ticket_id: str, job_id: str) -> None:
        if self.markers is not None:
            await asyncio.to_thread(self.markers.settle, ticket_id, job_id)

    async def _renew_lease(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.lock_renew_sec)
            renewed = await asyncio.to_thread(
                self.queue.extend_lock, job_id, self.worker_id, self.lock_duration_sec
            )
            if not renewed:
                return
            logger.debug("Renewed lease on %s", job_id)

    async def _wait_for_rate_token(self) -> None:
        if self.limiter is None:
            return
        while True:
            wait = await asyncio.to_thread(self.limiter.try_acquire)
            if wait <= 0:
                return
            logger.info("Rate limit reached, waiting %.1fs", wait)
            await asyncio.sleep(wait)

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
