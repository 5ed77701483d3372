from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Column, DateTime, Index, text
from sqlmodel import Field, SQLModel

from imgopt_shared.models import JobStatus


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back without tzinfo; they were written as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)
_ACTIVE_WHERE = text("status IN ('pending', 'processing')")


class QueueJobRecord(SQLModel, table=True):
    __tablename__ = "queue_jobs"
    __table_args__ = (
        # one active job per source; enforced by the database so concurrent enqueues stay idempotent
        Index(
            "ux_queue_jobs_active_source",
            "source_ref",
            unique=True,
            sqlite_where=_ACTIVE_WHERE,
            postgresql_where=_ACTIVE_WHERE,
        ),
        Index("ix_queue_jobs_claim_order", "status", "priority", "created_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    source_ref: str = Field(nullable=False, index=True)
    status: str = Field(default=JobStatus.PENDING.value, nullable=False)
    priority: int = Field(default=0, nullable=False)
    attempts: int = Field(default=0, nullable=False)
    error_message: Optional[str] = Field(default=None)
    claim_token: Optional[str] = Field(default=None, index=True)
    claimed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    result_summary: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class ActivityLogRecord(SQLModel, table=True):
    __tablename__ = "activity_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: Optional[int] = Field(default=None, index=True)
    source_ref: Optional[str] = Field(default=None)
    action: str = Field(nullable=False, index=True)
    status: str = Field(nullable=False, index=True)  # success | partial | warning | error | info
    message: str = Field(default="")
    bytes_saved: Optional[int] = Field(default=None)
    execution_time: Optional[float] = Field(default=None)
    memory_delta: Optional[int] = Field(default=None)  # peak RSS increase in bytes
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )
