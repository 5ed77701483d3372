"""Batch runner: drains the conversion queue under a time budget."""

from __future__ import annotations

import gc
import logging
import resource
import sys
import threading
import time
from pathlib import Path
from typing import Callable

from imgopt_converter import ConversionEngine
from imgopt_shared.errors import BackendUnavailable, InvalidInput, StoreUnavailable
from imgopt_shared.events import BatchFinished, BatchStarted, EventBus, ItemProcessed
from imgopt_shared.files import resolve_source_ref
from imgopt_shared.models import (
    BatchSummary,
    ConversionSettings,
    JobStatus,
    ProcessingStatus,
    QueueJob,
)
from imgopt_store import QueueStore

logger = logging.getLogger(__name__)


def peak_memory_bytes() -> int:
    """Peak resident set size of this process, a high-water mark that never falls."""
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # Linux reports kilobytes, macOS bytes
    return peak if sys.platform == "darwin" else peak * 1024


class BatchRunner:
    """
    Claims batches from the queue and converts them one image at a time.

    A run ends when the queue is drained, the stop signal is set, the
    wall-clock budget is spent, or max_batches batches were processed.
    Stop signal and budget are checked between items, so a run overshoots
    its budget by at most one in-flight item. Jobs claimed but not started
    when a run ends are released back to pending.
    """

    def __init__(
        self,
        store: QueueStore,
        engine: ConversionEngine,
        events: EventBus | None = None,
        resolve_source: Callable[[str], Path] | None = None,
        stale_after: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._engine = engine
        self._events = events or EventBus()
        self._resolve = resolve_source or resolve_source_ref
        self._stale_after = stale_after
        self._clock = clock

        self._lock = threading.Lock()
        self._status = ProcessingStatus()

    def status(self) -> ProcessingStatus:
        with self._lock:
            return self._status

    def _set_status(self, state: str, current: int = 0, total: int = 0) -> None:
        with self._lock:
            self._status = ProcessingStatus(state=state, current=current, total=total)

    def run(
        self,
        settings: ConversionSettings,
        stop_signal: threading.Event | None = None,
        max_batches: int | None = None,
    ) -> BatchSummary:
        """
        Process queued jobs until one of the stop conditions is met.

        Raises:
            BackendUnavailable: If no backend can produce any enabled format;
                raised before any job is claimed.
            StoreUnavailable: If the queue database fails mid-run.
        """
        started = self._clock()
        deadline = started + settings.max_execution_time
        stop_signal = stop_signal or threading.Event()
        summary = BatchSummary()

        self._engine.prepare(settings)

        if self._stale_after:
            summary.reclaimed = self._store.reclaim_stale(self._stale_after)

        logger.info(
            "Run started: batch size %d, budget %.0fs",
            settings.batch_size, settings.max_execution_time,
        )

        try:
            while summary.stop_reason == "drained":
                if stop_signal.is_set():
                    summary.stop_reason = "stopped"
                    break
                if self._clock() >= deadline:
                    summary.stop_reason = "time_budget"
                    break
                if max_batches is not None and summary.batches >= max_batches:
                    summary.stop_reason = "batch_limit"
                    break

                jobs = self._store.claim_batch(settings.batch_size)
                if not jobs:
                    break

                summary.batches += 1
                self._events.publish(
                    BatchStarted(summary.batches, len(jobs), tuple(j.id for j in jobs))
                )
                logger.info("Batch %d: claimed %d jobs", summary.batches, len(jobs))

                for index, job in enumerate(jobs):
                    self._set_status("running", index + 1, len(jobs))
                    event = self.process_job(job, settings)
                    self._count(summary, event)

                    if stop_signal.is_set():
                        summary.stop_reason = "stopped"
                    elif self._clock() >= deadline:
                        summary.stop_reason = "time_budget"
                    else:
                        continue

                    unstarted = [j.id for j in jobs[index + 1:]]
                    if unstarted:
                        summary.released += self._store.release(unstarted)
                    break

                gc.collect()
        finally:
            self._set_status("idle")

        summary.elapsed = self._clock() - started
        logger.info(
            "Run finished (%s): %d processed, %d completed, %d retried, %d failed in %.1fs",
            summary.stop_reason, summary.processed, summary.completed,
            summary.retried, summary.failed, summary.elapsed,
        )
        self._events.publish(BatchFinished(summary))
        return summary

    def _count(self, summary: BatchSummary, event: ItemProcessed) -> None:
        summary.processed += 1
        if event.outcome == "completed":
            summary.completed += 1
            summary.bytes_saved += event.bytes_saved
        elif event.outcome == "retry":
            summary.retried += 1
        else:
            summary.failed += 1

    def process_job(self, job: QueueJob, settings: ConversionSettings) -> ItemProcessed:
        """
        Convert one claimed job and record its outcome in the queue.

        Any error other than a store or backend failure is confined to
        this job.
        """
        started = time.monotonic()
        memory_before = peak_memory_bytes()
        formats: tuple[str, ...] = ()
        errors: dict[str, str] = {}
        bytes_saved = 0

        try:
            source_path = self._resolve(job.source_ref)
            result = self._engine.process(source_path, settings, source_ref=job.source_ref)
        except InvalidInput as e:
            logger.warning("Job %d: invalid input: %s", job.id, e)
            message = str(e)
            outcome = self._fail(job, message, permanent=True)
        except BackendUnavailable:
            self._store.release([job.id])
            raise
        except StoreUnavailable:
            raise
        except Exception as e:
            logger.exception("Job %d: unexpected error", job.id)
            message = f"{type(e).__name__}: {e}"
            outcome = self._fail(job, message)
        else:
            formats = tuple(sorted(result.produced))
            errors = dict(result.errors)
            if result.succeeded:
                self._store.complete(job.id, result)
                outcome = "completed"
                bytes_saved = result.total_saved_bytes
                message = f"Converted to {', '.join(formats)}" if formats else "Nothing to convert"
            else:
                details = "; ".join(f"{fmt}: {err}" for fmt, err in sorted(errors.items()))
                message = f"All formats failed ({details or 'nothing enabled'})"
                outcome = self._fail(job, message)

        event = ItemProcessed(
            job_id=job.id,
            source_ref=job.source_ref,
            outcome=outcome,
            bytes_saved=bytes_saved,
            elapsed=time.monotonic() - started,
            memory_delta=peak_memory_bytes() - memory_before,
            formats=formats,
            errors=errors,
            message=message,
        )
        self._events.publish(event)
        return event

    def _fail(self, job: QueueJob, message: str, permanent: bool = False) -> str:
        updated = self._store.fail(job.id, message, permanent=permanent)
        if updated is not None and updated.status is JobStatus.FAILED:
            return "failed"
        return "retry"
