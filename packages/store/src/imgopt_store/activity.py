"""
Durable activity log fed by runner events.

Rows are written by a background thread so the runner never waits on the
log; a failing write is logged and dropped.
"""
from __future__ import annotations

import logging
import threading
from datetime import timedelta
from queue import Empty, Queue
from typing import Any, Callable

from sqlalchemy import delete, func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from imgopt_shared.errors import StoreUnavailable
from imgopt_shared.events import BatchFinished, EventBus, ItemProcessed

from .db import init_db
from .tables import ActivityLogRecord, as_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30


class ActivityLog:
    """Read/write access to the activity_log table."""

    def __init__(self, engine: Engine):
        self._engine = engine
        init_db(engine)

    def _run(self, fn: Callable[[Session], Any]) -> Any:
        try:
            with Session(self._engine) as session:
                return fn(session)
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Activity log error: {e}") from e

    def record(
        self,
        action: str,
        status: str,
        message: str = "",
        job_id: int | None = None,
        source_ref: str | None = None,
        bytes_saved: int | None = None,
        execution_time: float | None = None,
        memory_delta: int | None = None,
    ) -> int:
        entry = ActivityLogRecord(
            job_id=job_id,
            source_ref=source_ref,
            action=action,
            status=status,
            message=message,
            bytes_saved=bytes_saved,
            execution_time=execution_time,
            memory_delta=memory_delta,
        )

        def write(session: Session) -> int:
            session.add(entry)
            session.commit()
            session.refresh(entry)
            return entry.id

        return self._run(write)

    def recent(self, limit: int = 20, status: str | None = None) -> list[ActivityLogRecord]:
        stmt = select(ActivityLogRecord)
        if status is not None:
            stmt = stmt.where(ActivityLogRecord.status == status)
        stmt = stmt.order_by(col(ActivityLogRecord.created_at).desc(), col(ActivityLogRecord.id).desc())
        stmt = stmt.limit(limit)

        def read(session: Session) -> list[ActivityLogRecord]:
            rows = list(session.exec(stmt).all())
            for row in rows:
                session.expunge(row)
                row.created_at = as_utc(row.created_at)
            return rows

        return self._run(read)

    def statistics(self) -> dict[str, Any]:
        def read(session: Session) -> dict[str, Any]:
            by_status = dict(
                session.exec(
                    select(ActivityLogRecord.status, func.count()).group_by(ActivityLogRecord.status)
                ).all()
            )
            by_action = dict(
                session.exec(
                    select(ActivityLogRecord.action, func.count()).group_by(ActivityLogRecord.action)
                ).all()
            )
            avg_time, total_time, avg_mem, max_mem = session.exec(
                select(
                    func.avg(ActivityLogRecord.execution_time),
                    func.sum(ActivityLogRecord.execution_time),
                    func.avg(ActivityLogRecord.memory_delta),
                    func.max(ActivityLogRecord.memory_delta),
                )
            ).one()
            return {
                "total": sum(by_status.values()),
                "by_status": by_status,
                "by_action": by_action,
                "avg_execution_time": round(avg_time or 0.0, 4),
                "total_execution_time": round(total_time or 0.0, 4),
                "avg_memory_delta": int(avg_mem or 0),
                "max_memory_delta": int(max_mem or 0),
            }

        return self._run(read)

    def cleanup(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete rows older than retention_days."""
        cutoff = utcnow() - timedelta(days=retention_days)
        stmt = delete(ActivityLogRecord).where(col(ActivityLogRecord.created_at) < cutoff)

        def remove(session: Session) -> int:
            count = session.exec(stmt).rowcount
            session.commit()
            return count

        count = self._run(remove)
        if count:
            logger.info("Removed %d activity log rows older than %d days", count, retention_days)
        return count

    def clear(self) -> int:
        def remove(session: Session) -> int:
            count = session.exec(delete(ActivityLogRecord)).rowcount
            session.commit()
            return count

        return self._run(remove)


def _item_status(event: ItemProcessed) -> str:
    if event.outcome == "completed":
        return "partial" if event.errors else "success"
    if event.outcome == "retry":
        return "warning"
    return "error"


class ActivityLogSink:
    """Subscribes to runner events and writes them to the log off-thread."""

    _STOP = object()

    def __init__(self, log: ActivityLog):
        self._log = log
        self._queue: Queue[Any] = Queue()
        self._unsubscribers: list[Callable[[], None]] = []
        self._thread = threading.Thread(target=self._drain, name="activity-log", daemon=True)
        self._thread.start()

    def attach(self, bus: EventBus) -> None:
        self._unsubscribers.append(bus.subscribe(ItemProcessed, self._queue.put))
        self._unsubscribers.append(bus.subscribe(BatchFinished, self._queue.put))

    def close(self, timeout: float = 5.0) -> None:
        """Stop listening and flush pending rows."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if self._thread.is_alive():
            self._queue.put(self._STOP)
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Activity log sink did not finish within %.1fs", timeout)

    def _drain(self) -> None:
        while True:
            try:
                event = self._queue.get(timeout=1.0)
            except Empty:
                continue
            if event is self._STOP:
                return
            try:
                self._write(event)
            except StoreUnavailable as e:
                logger.warning("Dropped activity log entry: %s", e)
            except Exception:
                logger.exception("Activity log sink failed on %s", type(event).__name__)

    def _write(self, event: Any) -> None:
        if isinstance(event, ItemProcessed):
            message = event.message
            if not message:
                message = f"Formats: {', '.join(event.formats) or 'none'}"
            if event.errors:
                message += "; " + "; ".join(f"{fmt}: {err}" for fmt, err in sorted(event.errors.items()))
            self._log.record(
                action="image_processing",
                status=_item_status(event),
                message=message,
                job_id=event.job_id,
                source_ref=event.source_ref,
                bytes_saved=event.bytes_saved,
                execution_time=event.elapsed,
                memory_delta=event.memory_delta,
            )
        elif isinstance(event, BatchFinished):
            s = event.summary
            self._log.record(
                action="batch_process",
                status="error" if s.failed and not s.completed else "info",
                message=(
                    f"Processed {s.processed} items: {s.completed} completed, "
                    f"{s.retried} retried, {s.failed} failed ({s.stop_reason})"
                ),
                bytes_saved=s.bytes_saved,
                execution_time=s.elapsed,
            )
