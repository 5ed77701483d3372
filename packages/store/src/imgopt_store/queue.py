"""
Durable conversion queue.

Every state transition is a single conditional UPDATE on the job's current
status, so two runners can never own the same job: a claim that loses the
race simply matches fewer rows.
"""
from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Iterable, Iterator

from sqlalchemy import case, delete, func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlmodel import Session, col, select

from imgopt_shared.errors import StoreUnavailable
from imgopt_shared.models import ConversionResult, JobStatus, QueueJob

from .db import create_db_engine, init_db
from .tables import ACTIVE_STATUSES, QueueJobRecord, as_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

_PENDING = JobStatus.PENDING.value
_PROCESSING = JobStatus.PROCESSING.value
_COMPLETED = JobStatus.COMPLETED.value
_FAILED = JobStatus.FAILED.value

_CLAIM_ORDER = (
    col(QueueJobRecord.priority).desc(),
    col(QueueJobRecord.created_at).asc(),
    col(QueueJobRecord.id).asc(),
)


@dataclass
class EnqueueReport:
    added: int = 0
    skipped: int = 0
    job_ids: list[int] = field(default_factory=list)


def _to_job(record: QueueJobRecord) -> QueueJob:
    return QueueJob(
        id=record.id,
        source_ref=record.source_ref,
        status=JobStatus(record.status),
        priority=record.priority,
        attempts=record.attempts,
        error_message=record.error_message,
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
        claimed_at=as_utc(record.claimed_at),
        result_summary=record.result_summary,
    )


def _is_locked(exc: OperationalError) -> bool:
    return "locked" in str(exc.orig).lower() or "busy" in str(exc.orig).lower()


class QueueStore:
    """Queue of per-image conversion jobs backed by a SQL database."""

    def __init__(
        self,
        engine: Engine,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        claim_retries: int = 3,
    ):
        self._engine = engine
        self.max_attempts = max(1, int(max_attempts))
        self._claim_retries = max(0, int(claim_retries))
        init_db(engine)

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> QueueStore:
        return cls(create_db_engine(url), **kwargs)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self._engine) as session:
                yield session
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Queue database error: {e}") from e

    def _find_active(self, session: Session, source_ref: str) -> int | None:
        stmt = (
            select(QueueJobRecord.id)
            .where(QueueJobRecord.source_ref == source_ref)
            .where(col(QueueJobRecord.status).in_(ACTIVE_STATUSES))
        )
        return session.exec(stmt).first()

    def enqueue(self, source_ref: str, priority: int = 0) -> int:
        """
        Add a pending job for source_ref.

        Idempotent while a job for the same source is pending or processing:
        the existing job id is returned instead.
        """
        return self._enqueue(str(source_ref), int(priority))[0]

    def _enqueue(self, source_ref: str, priority: int) -> tuple[int, bool]:
        with self._session() as session:
            existing = self._find_active(session, source_ref)
            if existing is not None:
                return existing, False

            record = QueueJobRecord(source_ref=source_ref, priority=priority)
            session.add(record)
            try:
                session.commit()
            except IntegrityError:
                # a concurrent enqueue inserted the same source first
                session.rollback()
                existing = self._find_active(session, source_ref)
                if existing is None:
                    raise
                return existing, False

            session.refresh(record)
            logger.debug("Enqueued job %d for %s (priority %d)", record.id, source_ref, priority)
            return record.id, True

    def enqueue_many(self, source_refs: Iterable[str], priority: int = 0) -> EnqueueReport:
        report = EnqueueReport()
        for source_ref in source_refs:
            job_id, added = self._enqueue(str(source_ref), int(priority))
            report.job_ids.append(job_id)
            if added:
                report.added += 1
            else:
                report.skipped += 1
        logger.info("Enqueued %d jobs (%d already queued)", report.added, report.skipped)
        return report

    def claim_batch(self, limit: int) -> list[QueueJob]:
        """
        Atomically move up to limit pending jobs to processing and return them.

        Jobs are taken by priority (highest first), then age. Losing a race
        with another runner yields fewer jobs, never an error.
        """
        limit = max(1, int(limit))
        candidates = (
            select(QueueJobRecord.id)
            .where(QueueJobRecord.status == _PENDING)
            .order_by(*_CLAIM_ORDER)
            .limit(limit)
        )

        for attempt in range(self._claim_retries + 1):
            token = uuid.uuid4().hex
            now = utcnow()
            stmt = (
                update(QueueJobRecord)
                .where(col(QueueJobRecord.id).in_(candidates))
                .where(QueueJobRecord.status == _PENDING)
                .values(status=_PROCESSING, claim_token=token, claimed_at=now, updated_at=now)
            )
            try:
                with Session(self._engine) as session:
                    session.exec(stmt)
                    session.commit()
                    claimed = session.exec(
                        select(QueueJobRecord)
                        .where(QueueJobRecord.claim_token == token)
                        .order_by(*_CLAIM_ORDER)
                    ).all()
                    jobs = [_to_job(r) for r in claimed]
            except OperationalError as e:
                if not _is_locked(e):
                    raise StoreUnavailable(f"Queue database error: {e}") from e
                logger.warning("Claim attempt %d hit a locked database", attempt + 1)
                time.sleep(0.05 * (attempt + 1))
                continue
            except SQLAlchemyError as e:
                raise StoreUnavailable(f"Queue database error: {e}") from e

            if jobs:
                logger.debug("Claimed %d jobs: %s", len(jobs), [j.id for j in jobs])
            return jobs

        logger.warning("Could not claim jobs after %d attempts", self._claim_retries + 1)
        return []

    def claim(self, job_id: int) -> QueueJob | None:
        """Claim one specific pending job; None if it is not pending."""
        now = utcnow()
        stmt = (
            update(QueueJobRecord)
            .where(QueueJobRecord.id == job_id)
            .where(QueueJobRecord.status == _PENDING)
            .values(status=_PROCESSING, claim_token=uuid.uuid4().hex, claimed_at=now, updated_at=now)
        )
        with self._session() as session:
            if session.exec(stmt).rowcount != 1:
                session.rollback()
                return None
            session.commit()
            return _to_job(session.get(QueueJobRecord, job_id))

    def complete(self, job_id: int, result: ConversionResult) -> bool:
        """Mark a processing job completed and store its result summary."""
        stmt = (
            update(QueueJobRecord)
            .where(QueueJobRecord.id == job_id)
            .where(QueueJobRecord.status == _PROCESSING)
            .values(
                status=_COMPLETED,
                error_message=None,
                claim_token=None,
                result_summary=result.summary(),
                updated_at=utcnow(),
            )
        )
        with self._session() as session:
            done = session.exec(stmt).rowcount == 1
            session.commit()

        if not done:
            logger.warning("Job %d was not processing; completion ignored", job_id)
        return done

    def fail(self, job_id: int, error_message: str, permanent: bool = False) -> QueueJob | None:
        """
        Record a failed attempt for a processing job.

        The job goes back to pending while attempts < max_attempts, otherwise
        (or when permanent) it becomes failed and keeps error_message.
        """
        attempts = col(QueueJobRecord.attempts)
        if permanent:
            exhausted: Any = True
            new_status: Any = _FAILED
            new_error: Any = error_message
        else:
            exhausted = attempts + 1 >= self.max_attempts
            new_status = case((exhausted, _FAILED), else_=_PENDING)
            new_error = case((exhausted, error_message), else_=None)

        stmt = (
            update(QueueJobRecord)
            .where(QueueJobRecord.id == job_id)
            .where(QueueJobRecord.status == _PROCESSING)
            .values(
                attempts=attempts + 1,
                status=new_status,
                error_message=new_error,
                claim_token=None,
                claimed_at=None,
                updated_at=utcnow(),
            )
        )
        with self._session() as session:
            if session.exec(stmt).rowcount != 1:
                session.rollback()
                logger.warning("Job %d was not processing; failure ignored", job_id)
                return None
            session.commit()
            job = _to_job(session.get(QueueJobRecord, job_id))

        if job.status is JobStatus.FAILED:
            logger.warning("Job %d failed after %d attempts: %s", job.id, job.attempts, error_message)
        else:
            logger.info("Job %d will be retried (attempt %d/%d)", job.id, job.attempts, self.max_attempts)
        return job

    def _requeue_where(self, *conditions: Any) -> int:
        stmt = (
            update(QueueJobRecord)
            .where(QueueJobRecord.status == _PROCESSING)
            .where(*conditions)
            .values(status=_PENDING, claim_token=None, claimed_at=None, updated_at=utcnow())
        )
        with self._session() as session:
            count = session.exec(stmt).rowcount
            session.commit()
        return count

    def release(self, job_ids: Iterable[int]) -> int:
        """Return claimed but unstarted jobs to pending without counting an attempt."""
        ids = list(job_ids)
        if not ids:
            return 0
        count = self._requeue_where(col(QueueJobRecord.id).in_(ids))
        logger.info("Released %d unstarted jobs", count)
        return count

    def reclaim_stale(self, older_than: float) -> int:
        """Return jobs stuck in processing for longer than older_than seconds to pending."""
        cutoff = utcnow() - timedelta(seconds=older_than)
        count = self._requeue_where(col(QueueJobRecord.claimed_at) < cutoff)
        if count:
            logger.warning("Reclaimed %d stale jobs", count)
        return count

    def clear(self, status: JobStatus | str | None = None) -> int:
        """Delete jobs with the given status, or every job."""
        stmt = delete(QueueJobRecord)
        if status is not None:
            stmt = stmt.where(QueueJobRecord.status == JobStatus(status).value)
        with self._session() as session:
            count = session.exec(stmt).rowcount
            session.commit()
        logger.info("Cleared %d jobs (%s)", count, status or "all")
        return count

    def remove(self, source_ref: str) -> int:
        """Delete every job for a source, e.g. after the source was deleted."""
        stmt = delete(QueueJobRecord).where(QueueJobRecord.source_ref == str(source_ref))
        with self._session() as session:
            count = session.exec(stmt).rowcount
            session.commit()
        return count

    def cleanup_completed(self, days: int = 7) -> int:
        """Delete completed jobs last updated more than days ago."""
        cutoff = utcnow() - timedelta(days=days)
        stmt = (
            delete(QueueJobRecord)
            .where(QueueJobRecord.status == _COMPLETED)
            .where(col(QueueJobRecord.updated_at) < cutoff)
        )
        with self._session() as session:
            count = session.exec(stmt).rowcount
            session.commit()
        if count:
            logger.info("Cleaned up %d completed jobs", count)
        return count

    def get(self, job_id: int) -> QueueJob | None:
        with self._session() as session:
            record = session.get(QueueJobRecord, job_id)
            return _to_job(record) if record else None

    def list_jobs(
        self,
        status: JobStatus | str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[QueueJob]:
        stmt = select(QueueJobRecord)
        if status is not None:
            stmt = stmt.where(QueueJobRecord.status == JobStatus(status).value)
        stmt = stmt.order_by(*_CLAIM_ORDER).offset(offset).limit(limit)
        with self._session() as session:
            return [_to_job(r) for r in session.exec(stmt).all()]

    def stats(self) -> dict[str, int]:
        """Job counts by status, plus the total."""
        counts = {s.value: 0 for s in JobStatus}
        stmt = select(QueueJobRecord.status, func.count()).group_by(QueueJobRecord.status)
        with self._session() as session:
            for status, count in session.exec(stmt).all():
                counts[status] = count
        counts["total"] = sum(counts.values())
        return counts

    def statistics(self) -> dict[str, Any]:
        """Counts plus average processing time, success rate and today's throughput."""
        counts = self.stats()
        today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)

        stmt = select(QueueJobRecord.created_at, QueueJobRecord.updated_at).where(
            QueueJobRecord.status == _COMPLETED
        )
        durations = []
        processed_today = 0
        with self._session() as session:
            for created_at, updated_at in session.exec(stmt).all():
                created_at, updated_at = as_utc(created_at), as_utc(updated_at)
                durations.append((updated_at - created_at).total_seconds())
                if updated_at >= today:
                    processed_today += 1

        finished = counts[_COMPLETED] + counts[_FAILED]
        return {
            "counts": counts,
            "avg_processing_time": round(sum(durations) / len(durations), 2) if durations else 0.0,
            "success_rate": round(counts[_COMPLETED] / finished * 100, 2) if finished else 0.0,
            "processed_today": processed_today,
        }
