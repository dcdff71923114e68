"""Enqueue side of the task dispatcher."""

import logging
from typing import Optional

from ..storage.kv import TTLStore
from ..storage.queue import JobQueue, JobRecord, JobStatus
from ..tasks.models import Task

logger = logging.getLogger(__name__)


class InFlightMarkers:
    """Per-ticket markers for queued or running work, kept in the TTL store.

    A ticket is marked when a job for it is enqueued. The worker shortens the
    marker to ``settle_sec`` once the job finishes, so the issue-update events
    caused by the bot's own state writes still find it and are ignored.
    """

    def __init__(
        self,
        kv: TTLStore,
        ttl_sec: float = 10800.0,
        settle_sec: float = 120.0,
        key_prefix: str = "inflight:",
    ):
        self.kv = kv
        self.ttl_sec = ttl_sec
        self.settle_sec = settle_sec
        self.key_prefix = key_prefix

    def _key(self, ticket_id: str) -> str:
        return f"{self.key_prefix}{ticket_id}"

    def mark(self, ticket_id: str, job_id: str) -> None:
        self.kv.set(self._key(ticket_id), job_id, ttl_seconds=self.ttl_sec)

    def current(self, ticket_id: str) -> Optional[str]:
        """Job id holding the ticket, or None when nothing is in flight."""
        return self.kv.get(self._key(ticket_id))

    def settle(self, ticket_id: str, job_id: str) -> None:
        """Keep the marker only for the settle window after job_id ends.

        A marker that already belongs to a newer job is left alone.
        """
        if self.current(ticket_id) == job_id:
            self.kv.set(self._key(ticket_id), job_id, ttl_seconds=self.settle_sec)


class Dispatcher:
    """Puts classified tasks on the durable queue.

    The job id comes from the classifier and is derived from the event, so a
    redelivered webhook for the same event maps onto the existing job instead
    of a second one.
    """

    def __init__(self, queue: JobQueue, markers: Optional[InFlightMarkers] = None):
        self.queue = queue
        self.markers = markers

    def enqueue(self, task: Task, job_id: str) -> JobRecord:
        record = self.queue.add(task.mode.value, task.to_json_dict(), job_id=job_id)
        if self.markers is not None and record.status not in (JobStatus.COMPLETED, JobStatus.FAILED):
            self.markers.mark(task.ticket_id, record.job_id)
        logger.info(
            "Queued %s for ticket %s (%s, max %d attempts)",
            record.job_id,
            task.ticket_id,
            task.mode.value,
            record.max_attempts,
        )
        return record
