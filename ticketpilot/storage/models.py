"""SQLModel tables for the TTL store, the job queue and the rate limiter."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class KeyValue(SQLModel, table=True):
    __tablename__ = "kv_entries"

    key: str = Field(primary_key=True)
    value: str = Field(sa_column=Column(Text, nullable=False))
    expires_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), index=True)
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueJob(SQLModel, table=True):
    __tablename__ = "queue_jobs"
    __table_args__ = (Index("idx_queue_jobs_ready", "queue", "status", "available_at"),)

    job_id: str = Field(primary_key=True)
    queue: str = Field(index=True)
    name: str
    data_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    attempts_made: int = Field(default=0)
    max_attempts: int = Field(default=3)
    backoff_sec: float = Field(default=5.0)
    available_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    lock_owner: Optional[str] = Field(default=None)
    lock_expires_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    failed_reason: Optional[str] = Field(default=None, sa_column=Column(Text))
    result_json: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class RateToken(SQLModel, table=True):
    __tablename__ = "rate_tokens"
    __table_args__ = (Index("idx_rate_tokens_bucket", "bucket", "acquired_at"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    bucket: str
    acquired_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
