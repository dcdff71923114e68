"""Durable job queue and shared rate limiter backed by SQLModel + SQLite."""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import DateTime, String, and_, func, literal, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import insert as sa_insert
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from .db import Clock, as_utc, utc_now
from .models import QueueJob, RateToken

logger = logging.getLogger(__name__)


class QueueError(Exception):
    """Queue usage error (unknown job or lost claim)."""

    pass


class JobStatus(str, Enum):
    """Job lifecycle states."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class JobRecord:
    """Readable job view for the dispatcher and the admin endpoint."""

    job_id: str
    queue: str
    name: str
    data: dict[str, Any]
    status: JobStatus
    attempts_made: int
    max_attempts: int
    backoff_sec: float
    available_at: datetime
    lock_owner: Optional[str]
    lock_expires_at: Optional[datetime]
    failed_reason: Optional[str]
    created_at: datetime
    finished_at: Optional[datetime]

    @property
    def is_terminal_failure(self) -> bool:
        return self.status == JobStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "name": self.name,
            "status": self.status.value,
            "attemptsMade": self.attempts_made,
            "maxAttempts": self.max_attempts,
            "ticketId": self.data.get("ticketId"),
            "mode": self.data.get("mode"),
            "failedReason": self.failed_reason,
            "createdAt": self.created_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }


class JobQueue:
    """One named FIFO queue with leases, retries and exponential backoff.

    Delivery is at-least-once: a job whose lease expires (worker died or
    stopped renewing) is handed to the next claimant.
    """

    def __init__(
        self,
        engine: Engine,
        name: str,
        default_attempts: int = 3,
        default_backoff_sec: float = 5.0,
        clock: Clock = utc_now,
    ):
        self.engine = engine
        self.name = name
        self.default_attempts = default_attempts
        self.default_backoff_sec = default_backoff_sec
        self.clock = clock

    def add(
        self,
        name: str,
        data: dict[str, Any],
        *,
        job_id: Optional[str] = None,
        attempts: Optional[int] = None,
        backoff_sec: Optional[float] = None,
        delay_sec: float = 0.0,
    ) -> JobRecord:
        """Enqueue a job.

        Args:
            name: Job name (kind of work)
            data: JSON-serializable payload
            job_id: Explicit id; adding an existing id returns the existing job
            attempts: Max attempts (defaults to the queue default)
            backoff_sec: Backoff base delay (defaults to the queue default)
            delay_sec: Initial delay before the job becomes claimable

        Returns:
            The stored job
        """
        now = self.clock()
        job_id = job_id or str(uuid4())
        row = QueueJob(
            job_id=job_id,
            queue=self.name,
            name=name,
            data_json=json.dumps(data, ensure_ascii=False),
            status=(JobStatus.DELAYED if delay_sec > 0 else JobStatus.WAITING).value,
            attempts_made=0,
            max_attempts=attempts if attempts is not None else self.default_attempts,
            backoff_sec=backoff_sec if backoff_sec is not None else self.default_backoff_sec,
            available_at=as_utc(now + timedelta(seconds=delay_sec)),
            created_at=as_utc(now),
            updated_at=as_utc(now),
        )
        with Session(self.engine) as session:
            existing = session.get(QueueJob, job_id)
            if existing is not None:
                logger.info("Job %s already enqueued, skipping duplicate", job_id)
                return _to_record(existing)
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info("Job %s already enqueued, skipping duplicate", job_id)
                return _to_record(session.get(QueueJob, job_id))
            session.refresh(row)
            logger.info("Enqueued job %s (%s) on %s", job_id, name, self.name)
            return _to_record(row)

    def claim(self, worker_id: str, lock_duration_sec: float) -> Optional[JobRecord]:
        """Atomically claim the oldest ready job.

        Ready means waiting/delayed and due, or active with an expired lease
        (stalled) and attempts left.

        Returns:
            The claimed job, or None when nothing is ready
        """
        while True:
            now = self.clock()
            db_now = as_utc(now)
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueJob)
                    .where(QueueJob.queue == self.name, self._ready_clause(db_now))
                    .order_by(col(QueueJob.available_at).asc(), col(QueueJob.created_at).asc())
                    .limit(1)
                ).first()
                if candidate is None:
                    return None
                previous_status = candidate.status
                previous_owner = candidate.lock_owner

                result = session.exec(
                    sa_update(QueueJob)
                    .where(
                        col(QueueJob.job_id) == candidate.job_id,
                        col(QueueJob.status) == candidate.status,
                        col(QueueJob.attempts_made) == candidate.attempts_made,
                    )
                    .values(
                        status=JobStatus.ACTIVE.value,
                        attempts_made=candidate.attempts_made + 1,
                        lock_owner=worker_id,
                        lock_expires_at=as_utc(now + timedelta(seconds=lock_duration_sec)),
                        updated_at=db_now,
                    )
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()

                claimed = session.get(QueueJob, candidate.job_id)
                session.refresh(claimed)
                if previous_status == JobStatus.ACTIVE.value:
                    logger.warning(
                        "Job %s stalled (lease held by %s expired), redelivering",
                        claimed.job_id,
                        previous_owner,
                    )
                return _to_record(claimed)

    def reap_stalled(self) -> list[JobRecord]:
        """Fail stalled jobs that have no attempts left.

        Returns:
            Jobs moved to failed by this call (each is reported exactly once)
        """
        now = as_utc(self.clock())
        reaped = []
        with Session(self.engine) as session:
            candidates = session.exec(
                select(QueueJob).where(
                    QueueJob.queue == self.name,
                    QueueJob.status == JobStatus.ACTIVE.value,
                    col(QueueJob.lock_expires_at) < now,
                    col(QueueJob.attempts_made) >= col(QueueJob.max_attempts),
                )
            ).all()
            for candidate in candidates:
                result = session.exec(
                    sa_update(QueueJob)
                    .where(
                        col(QueueJob.job_id) == candidate.job_id,
                        col(QueueJob.status) == JobStatus.ACTIVE.value,
                        col(QueueJob.lock_expires_at) == as_utc(candidate.lock_expires_at),
                    )
                    .values(
                        status=JobStatus.FAILED.value,
                        failed_reason="job stalled more than allowable limit",
                        lock_owner=None,
                        lock_expires_at=None,
                        finished_at=now,
                        updated_at=now,
                    )
                )
                if result.rowcount == 1:
                    reaped.append(candidate.job_id)
            session.commit()
            records = [_to_record(session.get(QueueJob, job_id)) for job_id in reaped]
        for record in records:
            logger.error("Job %s stalled with no attempts left, marked failed", record.job_id)
        return records

    def extend_lock(self, job_id: str, worker_id: str, lock_duration_sec: float) -> bool:
        """Renew the lease on an active job. Returns False if the claim was lost."""
        now = self.clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.status) == JobStatus.ACTIVE.value,
                    col(QueueJob.lock_owner) == worker_id,
                )
                .values(
                    lock_expires_at=as_utc(now + timedelta(seconds=lock_duration_sec)),
                    updated_at=as_utc(now),
                )
            )
            session.commit()
            renewed = result.rowcount == 1
        if not renewed:
            logger.warning("Lost claim on job %s (worker %s)", job_id, worker_id)
        return renewed

    def complete(self, job_id: str, worker_id: str, result: Any = None) -> JobRecord:
        """Mark an active job completed.

        Raises:
            QueueError: If the worker no longer holds the claim
        """
        now = as_utc(self.clock())
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.status) == JobStatus.ACTIVE.value,
                    col(QueueJob.lock_owner) == worker_id,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    result_json=json.dumps(result, default=str) if result is not None else None,
                    lock_owner=None,
                    lock_expires_at=None,
                    finished_at=now,
                    updated_at=now,
                )
            )
            if outcome.rowcount != 1:
                session.rollback()
                raise QueueError(f"Cannot complete job {job_id}: claim not held by {worker_id}")
            session.commit()
            return _to_record(session.get(QueueJob, job_id))

    def fail(self, job_id: str, worker_id: str, error: str) -> JobRecord:
        """Record a failed attempt.

        The job is retried after ``backoff_sec * 2 ** (attempts_made - 1)``
        seconds while attempts remain; otherwise it becomes terminally failed.

        Raises:
            QueueError: If the worker no longer holds the claim
        """
        now = self.clock()
        with Session(self.engine) as session:
            row = session.get(QueueJob, job_id)
            if row is None:
                raise QueueError(f"Unknown job: {job_id}")

            if row.attempts_made < row.max_attempts:
                delay = row.backoff_sec * 2 ** max(row.attempts_made - 1, 0)
                values = {
                    "status": JobStatus.DELAYED.value,
                    "available_at": as_utc(now + timedelta(seconds=delay)),
                    "finished_at": None,
                }
            else:
                delay = None
                values = {
                    "status": JobStatus.FAILED.value,
                    "finished_at": as_utc(now),
                }

            outcome = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.status) == JobStatus.ACTIVE.value,
                    col(QueueJob.lock_owner) == worker_id,
                )
                .values(
                    failed_reason=error,
                    lock_owner=None,
                    lock_expires_at=None,
                    updated_at=as_utc(now),
                    **values,
                )
            )
            if outcome.rowcount != 1:
                session.rollback()
                raise QueueError(f"Cannot fail job {job_id}: claim not held by {worker_id}")
            session.commit()
            session.refresh(row)
            record = _to_record(row)

        if delay is not None:
            logger.warning(
                "Job %s failed (attempt %s/%s), retrying in %.1fs",
                job_id,
                record.attempts_made,
                record.max_attempts,
                delay,
            )
        return record

    def get(self, job_id: str) -> Optional[JobRecord]:
        with Session(self.engine) as session:
            row = session.get(QueueJob, job_id)
            return _to_record(row) if row is not None else None

    def counts(self) -> dict[str, int]:
        """Number of jobs per status (every status present, zero when empty)."""
        result = {status.value: 0 for status in JobStatus}
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueJob.status, func.count())
                .where(QueueJob.queue == self.name)
                .group_by(QueueJob.status)
            ).all()
        for status, count in rows:
            result[status] = count
        return result

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 50) -> list[JobRecord]:
        """Most recent jobs first."""
        query = select(QueueJob).where(QueueJob.queue == self.name)
        if status is not None:
            query = query.where(QueueJob.status == status.value)
        query = query.order_by(col(QueueJob.created_at).desc()).limit(limit)
        with Session(self.engine) as session:
            return [_to_record(row) for row in session.exec(query).all()]

    @staticmethod
    def _ready_clause(db_now: datetime):
        return or_(
            and_(
                col(QueueJob.status).in_([JobStatus.WAITING.value, JobStatus.DELAYED.value]),
                col(QueueJob.available_at) <= db_now,
            ),
            and_(
                col(QueueJob.status) == JobStatus.ACTIVE.value,
                col(QueueJob.lock_expires_at) < db_now,
                col(QueueJob.attempts_made) < col(QueueJob.max_attempts),
            ),
        )


class RateLimiter:
    """Token bucket shared by every worker that opens the same database.

    At most ``max_tokens`` acquisitions are granted per rolling window of
    ``window_sec`` seconds.
    """

    def __init__(
        self,
        engine: Engine,
        bucket: str,
        max_tokens: int,
        window_sec: float,
        clock: Clock = utc_now,
    ):
        self.engine = engine
        self.bucket = bucket
        self.max_tokens = max_tokens
        self.window_sec = window_sec
        self.clock = clock

    def try_acquire(self) -> float:
        """Take a token if one is free.

        Returns:
            0.0 when a token was taken, otherwise seconds until the next one frees up
        """
        now = self.clock()
        db_now = as_utc(now)
        cutoff = as_utc(now - timedelta(seconds=self.window_sec))

        in_window = (
            select(func.count())
            .select_from(RateToken)
            .where(col(RateToken.bucket) == self.bucket, col(RateToken.acquired_at) > cutoff)
            .scalar_subquery()
        )
        # Single INSERT ... SELECT so the check and the grant are one statement.
        grant = sa_insert(RateToken).from_select(
            ["bucket", "acquired_at"],
            select(literal(self.bucket, String), literal(db_now, DateTime(timezone=True))).where(
                in_window < self.max_tokens
            ),
        )

        with Session(self.engine) as session:
            session.exec(
                sa_delete(RateToken).where(
                    col(RateToken.bucket) == self.bucket, col(RateToken.acquired_at) <= cutoff
                )
            )
            result = session.exec(grant)
            session.commit()
            if result.rowcount == 1:
                return 0.0

            oldest = session.exec(
                select(func.min(RateToken.acquired_at)).where(
                    col(RateToken.bucket) == self.bucket, col(RateToken.acquired_at) > cutoff
                )
            ).one()

        if oldest is None:
            return 0.0
        frees_at = as_utc(oldest) + timedelta(seconds=self.window_sec)
        return max((frees_at - now).total_seconds(), 0.0)


def _to_record(row: QueueJob) -> JobRecord:
    return JobRecord(
        job_id=row.job_id,
        queue=row.queue,
        name=row.name,
        data=json.loads(row.data_json),
        status=JobStatus(row.status),
        attempts_made=row.attempts_made,
        max_attempts=row.max_attempts,
        backoff_sec=row.backoff_sec,
        available_at=as_utc(row.available_at),
        lock_owner=row.lock_owner,
        lock_expires_at=(
            as_utc(row.lock_expires_at) if row.lock_expires_at else None
        ),
        failed_reason=row.failed_reason,
        created_at=as_utc(row.created_at),
        finished_at=as_utc(row.finished_at) if row.finished_at else None,
    )
