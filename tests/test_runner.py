from __future__ import annotations

import os
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

from helpers import FakeBackend, fake_registry, file_store, make_image
from imgopt_converter import ConversionEngine
from imgopt_shared.errors import BackendUnavailable
from imgopt_shared.events import BatchFinished, BatchStarted, EventBus, ItemProcessed
from imgopt_shared.models import ConversionSettings, JobStatus
from imgopt_worker.runner import BatchRunner


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class BatchRunnerTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)
        self.store = file_store(self.dir, max_attempts=3)
        self.events = EventBus()
        self.backend = FakeBackend()
        self.engine = ConversionEngine(fake_registry(self.backend), self.events)
        self.clock = FakeClock()
        self.runner = BatchRunner(self.store, self.engine, self.events, clock=self.clock)
        self.settings = ConversionSettings(batch_size=10, max_execution_time=3600)

    def tearDown(self) -> None:
        self.store._engine.dispose()
        self._tmp.cleanup()

    def _images(self, count: int) -> list[str]:
        return [str(make_image(self.dir / f"img{i:02d}.png", (16, 16))) for i in range(count)]

    def test_three_single_batch_runs_drain_25_items(self) -> None:
        self.store.enqueue_many(self._images(25))

        summaries = [self.runner.run(self.settings, max_batches=1) for _ in range(3)]

        self.assertEqual([10, 10, 5], [s.processed for s in summaries])
        stats = self.store.stats()
        self.assertEqual(0, stats["pending"])
        self.assertEqual(0, stats["processing"])
        self.assertEqual(25, stats["completed"] + stats["failed"])
        self.assertEqual(25, stats["completed"])

    def test_run_drains_by_default(self) -> None:
        self.store.enqueue_many(self._images(25))
        started: list[BatchStarted] = []
        self.events.subscribe(BatchStarted, started.append)

        summary = self.runner.run(self.settings)

        self.assertEqual("drained", summary.stop_reason)
        self.assertEqual(25, summary.completed)
        self.assertEqual(3, summary.batches)
        self.assertEqual([10, 10, 5], [e.claimed for e in started])
        self.assertEqual("idle", self.runner.status().state)

    def test_job_failing_three_times_ends_failed(self) -> None:
        self.backend.fail_formats = {"webp", "avif"}
        job_id = self.store.enqueue(self._images(1)[0])

        summary = self.runner.run(self.settings)

        job = self.store.get(job_id)
        self.assertIs(JobStatus.FAILED, job.status)
        self.assertEqual(3, job.attempts)
        self.assertIn("All formats failed", job.error_message)
        self.assertEqual(2, summary.retried)
        self.assertEqual(1, summary.failed)

    def test_stop_after_first_item_releases_the_rest(self) -> None:
        self.store.enqueue_many(self._images(10))
        stop = threading.Event()
        self.events.subscribe(ItemProcessed, lambda _event: stop.set())

        summary = self.runner.run(self.settings, stop)

        self.assertEqual(1, summary.processed)
        self.assertEqual("stopped", summary.stop_reason)
        self.assertEqual(9, summary.released)
        stats = self.store.stats()
        self.assertEqual(1, stats["completed"])
        self.assertEqual(9, stats["pending"])
        self.assertEqual(0, stats["processing"])
        self.assertTrue(all(j.attempts == 0 for j in self.store.list_jobs(JobStatus.PENDING)))

    def test_stop_before_start_claims_nothing(self) -> None:
        self.store.enqueue_many(self._images(3))
        stop = threading.Event()
        stop.set()

        summary = self.runner.run(self.settings, stop)

        self.assertEqual(0, summary.processed)
        self.assertEqual(3, self.store.stats()["pending"])

    def test_time_budget_is_checked_between_items(self) -> None:
        self.store.enqueue_many(self._images(10))
        settings = self.settings.replace(max_execution_time=25)

        def tick(_event: ItemProcessed) -> None:
            self.clock.now += 10

        self.events.subscribe(ItemProcessed, tick)
        summary = self.runner.run(settings)

        self.assertEqual(3, summary.processed)
        self.assertEqual("time_budget", summary.stop_reason)
        self.assertEqual(7, self.store.stats()["pending"])

    def test_invalid_input_fails_without_retry(self) -> None:
        broken = self.dir / "broken.png"
        broken.write_text("not an image", encoding="utf-8")
        job_id = self.store.enqueue(str(broken))

        summary = self.runner.run(self.settings)

        job = self.store.get(job_id)
        self.assertIs(JobStatus.FAILED, job.status)
        self.assertEqual(1, job.attempts)
        self.assertIsNotNone(job.error_message)
        self.assertEqual(1, summary.failed)

    def test_unexpected_error_is_confined_to_its_job(self) -> None:
        ids = self.store.enqueue_many(self._images(2)).job_ids
        original = self.engine.process
        calls = []

        def flaky(path, settings, source_ref=None):
            calls.append(source_ref)
            if len(calls) == 1:
                raise RuntimeError("decoder crashed")
            return original(path, settings, source_ref=source_ref)

        with mock.patch.object(self.engine, "process", side_effect=flaky):
            summary = self.runner.run(self.settings)

        self.assertEqual(2, summary.completed)
        self.assertEqual(1, summary.retried)
        self.assertEqual(1, self.store.get(ids[0]).attempts)

    def test_partial_success_completes_job(self) -> None:
        self.backend.fail_formats = {"avif"}
        processed: list[ItemProcessed] = []
        self.events.subscribe(ItemProcessed, processed.append)
        job_id = self.store.enqueue(self._images(1)[0])

        self.runner.run(self.settings)

        job = self.store.get(job_id)
        self.assertIs(JobStatus.COMPLETED, job.status)
        self.assertEqual(["webp"], list(job.result_summary["produced"]))
        self.assertEqual(("webp",), processed[0].formats)
        self.assertIn("avif", processed[0].errors)

    def test_unreadable_derivative_does_not_fail_the_job(self) -> None:
        source = Path(self._images(1)[0])
        leftover = source.with_suffix(".webp")
        leftover.write_bytes(b"garbage")
        stamp = source.stat().st_mtime + 10
        os.utime(leftover, (stamp, stamp))
        job_id = self.store.enqueue(str(source))

        summary = self.runner.run(self.settings.replace(enable_avif=False))

        job = self.store.get(job_id)
        self.assertIs(JobStatus.COMPLETED, job.status)
        self.assertEqual(0, job.attempts)
        self.assertEqual(1, summary.completed)
        self.assertFalse(job.result_summary["produced"]["webp"]["reused"])

    def test_nothing_to_convert_completes_job(self) -> None:
        source = make_image(self.dir / "already.webp", (16, 16), fmt="WEBP")
        settings = self.settings.replace(allowed_mime_types=("image/webp",), enable_avif=False)
        processed: list[ItemProcessed] = []
        self.events.subscribe(ItemProcessed, processed.append)
        job_id = self.store.enqueue(str(source))

        summary = self.runner.run(settings)

        job = self.store.get(job_id)
        self.assertIs(JobStatus.COMPLETED, job.status)
        self.assertEqual(0, job.attempts)
        self.assertEqual(0, summary.retried)
        self.assertEqual("Nothing to convert", processed[0].message)
        self.assertEqual(0, processed[0].bytes_saved)
        self.assertEqual([], self.backend.calls)

    def test_memory_delta_is_peak_increase_during_the_item(self) -> None:
        processed: list[ItemProcessed] = []
        self.events.subscribe(ItemProcessed, processed.append)
        self.store.enqueue(self._images(1)[0])

        with mock.patch("imgopt_worker.runner.peak_memory_bytes", side_effect=[1000, 5000]):
            self.runner.run(self.settings)

        self.assertEqual(4000, processed[0].memory_delta)

    def test_no_backend_fails_before_claiming(self) -> None:
        engine = ConversionEngine(fake_registry(FakeBackend("absent", None)), self.events)
        runner = BatchRunner(self.store, engine, self.events, clock=self.clock)
        self.store.enqueue_many(self._images(2))

        with self.assertRaises(BackendUnavailable):
            runner.run(self.settings)
        self.assertEqual(2, self.store.stats()["pending"])

    def test_stale_claims_are_reclaimed_at_start(self) -> None:
        self.store.enqueue_many(self._images(2))
        self.store.claim_batch(2)
        runner = BatchRunner(self.store, self.engine, self.events, stale_after=600, clock=self.clock)

        with mock.patch.object(self.store, "reclaim_stale", wraps=self.store.reclaim_stale) as reclaim:
            summary = runner.run(self.settings)

        reclaim.assert_called_once_with(600)
        self.assertEqual(0, summary.processed)
        self.assertEqual(2, self.store.stats()["processing"])

    def test_batch_finished_is_published(self) -> None:
        finished: list[BatchFinished] = []
        self.events.subscribe(BatchFinished, finished.append)
        self.store.enqueue_many(self._images(2))

        summary = self.runner.run(self.settings)

        self.assertEqual([summary], [e.summary for e in finished])


if __name__ == "__main__":
    unittest.main()
