from __future__ import annotations

import tempfile
import threading
import unittest
from datetime import timedelta
from pathlib import Path

from sqlalchemy import text, update
from sqlmodel import Session

from helpers import file_store
from imgopt_shared.errors import StoreUnavailable
from imgopt_shared.models import ConversionResult, JobStatus
from imgopt_store import QueueJobRecord
from imgopt_store.tables import utcnow


def _result(ref: str = "a.png") -> ConversionResult:
    return ConversionResult(source_ref=ref, original_size_bytes=100)


class QueueStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)
        self.store = file_store(self.dir, max_attempts=3)

    def tearDown(self) -> None:
        self.store._engine.dispose()
        self._tmp.cleanup()

    def _age(self, job_id: int, **fields) -> None:
        with Session(self.store._engine) as session:
            session.exec(update(QueueJobRecord).where(QueueJobRecord.id == job_id).values(**fields))
            session.commit()

    def test_enqueue_is_idempotent_while_active(self) -> None:
        first = self.store.enqueue("a.png")
        self.assertEqual(first, self.store.enqueue("a.png"))
        self.assertEqual(1, self.store.stats()["total"])

        self.store.claim_batch(1)
        self.assertEqual(first, self.store.enqueue("a.png"))
        self.assertEqual(1, self.store.stats()["total"])

    def test_enqueue_again_after_completion(self) -> None:
        first = self.store.enqueue("a.png")
        self.store.claim_batch(1)
        self.store.complete(first, _result())

        second = self.store.enqueue("a.png")
        self.assertNotEqual(first, second)
        self.assertEqual(2, self.store.stats()["total"])

    def test_enqueue_many_reports_duplicates(self) -> None:
        self.store.enqueue("b.png")
        report = self.store.enqueue_many(["a.png", "b.png", "c.png", "a.png"])
        self.assertEqual(2, report.added)
        self.assertEqual(2, report.skipped)
        self.assertEqual(4, len(report.job_ids))
        self.assertEqual(report.job_ids[0], report.job_ids[3])

    def test_claim_order_priority_then_age(self) -> None:
        low = self.store.enqueue("low.png", priority=0)
        high = self.store.enqueue("high.png", priority=5)
        low_later = self.store.enqueue("low2.png", priority=0)
        self._age(low, created_at=utcnow() - timedelta(minutes=5))

        jobs = self.store.claim_batch(10)

        self.assertEqual([high, low, low_later], [j.id for j in jobs])
        self.assertTrue(all(j.status is JobStatus.PROCESSING for j in jobs))
        self.assertEqual([], self.store.claim_batch(10))

    def test_claim_respects_limit(self) -> None:
        self.store.enqueue_many([f"{i}.png" for i in range(5)])
        self.assertEqual(2, len(self.store.claim_batch(2)))
        self.assertEqual(3, self.store.stats()["pending"])
        self.assertEqual(2, self.store.stats()["processing"])

    def test_concurrent_claims_never_overlap(self) -> None:
        self.store.enqueue_many([f"{i}.png" for i in range(60)])
        stores = [file_store(self.dir) for _ in range(4)]
        claimed: list[list[int]] = [[] for _ in stores]
        barrier = threading.Barrier(len(stores))

        def worker(index: int) -> None:
            barrier.wait()
            while True:
                jobs = stores[index].claim_batch(5)
                if not jobs:
                    return
                claimed[index].extend(j.id for j in jobs)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(len(stores))]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        all_ids = [job_id for ids in claimed for job_id in ids]
        self.assertEqual(len(all_ids), len(set(all_ids)))
        for i, a in enumerate(claimed):
            for b in claimed[i + 1:]:
                self.assertEqual(set(), set(a) & set(b))
        self.assertEqual(0, self.store.stats()["pending"])
        self.assertEqual(60, len(all_ids))
        for s in stores:
            s._engine.dispose()

    def test_fail_retries_until_max_attempts(self) -> None:
        job_id = self.store.enqueue("a.png")

        for attempt in (1, 2):
            self.store.claim_batch(1)
            job = self.store.fail(job_id, f"boom {attempt}")
            self.assertIs(JobStatus.PENDING, job.status)
            self.assertEqual(attempt, job.attempts)
            self.assertIsNone(job.error_message)

        self.store.claim_batch(1)
        job = self.store.fail(job_id, "boom 3")
        self.assertIs(JobStatus.FAILED, job.status)
        self.assertEqual(3, job.attempts)
        self.assertEqual("boom 3", job.error_message)
        self.assertEqual([], self.store.claim_batch(1))

    def test_permanent_failure_is_immediate(self) -> None:
        job_id = self.store.enqueue("a.png")
        self.store.claim_batch(1)
        job = self.store.fail(job_id, "not an image", permanent=True)
        self.assertIs(JobStatus.FAILED, job.status)
        self.assertEqual(1, job.attempts)
        self.assertEqual("not an image", job.error_message)

    def test_transitions_require_processing(self) -> None:
        job_id = self.store.enqueue("a.png")
        self.assertIsNone(self.store.fail(job_id, "x"))
        self.assertFalse(self.store.complete(job_id, _result()))
        self.assertEqual(0, self.store.get(job_id).attempts)

    def test_complete_stores_summary(self) -> None:
        job_id = self.store.enqueue("a.png")
        self.store.claim_batch(1)
        self.assertTrue(self.store.complete(job_id, _result()))

        job = self.store.get(job_id)
        self.assertIs(JobStatus.COMPLETED, job.status)
        self.assertEqual(100, job.result_summary["original_size_bytes"])
        self.assertIsNone(job.error_message)

    def test_timestamps_round_trip_as_utc(self) -> None:
        before = utcnow()
        job_id = self.store.enqueue("a.png")
        claimed = self.store.claim(job_id)
        self.assertTrue(self.store.complete(job_id, _result()))
        job = self.store.get(job_id)

        for value in (claimed.claimed_at, job.claimed_at, job.created_at, job.updated_at):
            self.assertEqual(timedelta(0), value.utcoffset())
        self.assertGreaterEqual(job.updated_at, before - timedelta(seconds=1))
        self.assertGreaterEqual(job.updated_at, job.created_at)
        self.assertEqual(1, self.store.statistics()["processed_today"])

    def test_release_returns_jobs_without_attempt(self) -> None:
        self.store.enqueue_many(["a.png", "b.png"])
        jobs = self.store.claim_batch(2)
        self.assertEqual(2, self.store.release([j.id for j in jobs]))
        self.assertEqual(2, self.store.stats()["pending"])
        self.assertEqual(0, self.store.get(jobs[0].id).attempts)

    def test_reclaim_stale(self) -> None:
        self.store.enqueue_many(["old.png", "new.png"])
        old, new = self.store.claim_batch(2)
        self._age(old.id, claimed_at=utcnow() - timedelta(hours=1))

        self.assertEqual(1, self.store.reclaim_stale(600))
        self.assertIs(JobStatus.PENDING, self.store.get(old.id).status)
        self.assertIs(JobStatus.PROCESSING, self.store.get(new.id).status)

    def test_claim_single_job(self) -> None:
        job_id = self.store.enqueue("a.png")
        self.assertEqual(job_id, self.store.claim(job_id).id)
        self.assertIsNone(self.store.claim(job_id))

    def test_clear_by_status(self) -> None:
        done = self.store.enqueue("done.png")
        self.store.enqueue("waiting.png")
        self.store.claim(done)
        self.store.complete(done, _result())

        self.assertEqual(1, self.store.clear(JobStatus.COMPLETED))
        self.assertEqual({"pending": 1, "processing": 0, "completed": 0, "failed": 0, "total": 1},
                         self.store.stats())
        self.assertEqual(1, self.store.clear())
        self.assertEqual(0, self.store.stats()["total"])

    def test_remove_and_cleanup_completed(self) -> None:
        old = self.store.enqueue("old.png")
        recent = self.store.enqueue("recent.png")
        for job_id in (old, recent):
            self.store.claim(job_id)
            self.store.complete(job_id, _result())
        self._age(old, updated_at=utcnow() - timedelta(days=10))

        self.assertEqual(1, self.store.cleanup_completed(days=7))
        self.assertIsNone(self.store.get(old))
        self.assertEqual(1, self.store.remove("recent.png"))
        self.assertEqual(0, self.store.stats()["total"])

    def test_list_jobs_and_statistics(self) -> None:
        ids = self.store.enqueue_many(["a.png", "b.png", "c.png"]).job_ids
        self.store.claim_batch(3)
        self.store.complete(ids[0], _result())
        self.store.complete(ids[1], _result())
        self.store.fail(ids[2], "bad", permanent=True)

        self.assertEqual([ids[2]], [j.id for j in self.store.list_jobs(JobStatus.FAILED)])
        self.assertEqual(3, len(self.store.list_jobs()))
        self.assertEqual(1, len(self.store.list_jobs(limit=1, offset=2)))

        stats = self.store.statistics()
        self.assertEqual(2, stats["counts"]["completed"])
        self.assertAlmostEqual(66.67, stats["success_rate"])
        self.assertEqual(2, stats["processed_today"])

    def test_database_errors_become_store_unavailable(self) -> None:
        with self.store._engine.begin() as conn:
            conn.execute(text("DROP TABLE queue_jobs"))

        with self.assertRaises(StoreUnavailable):
            self.store.stats()
        with self.assertRaises(StoreUnavailable):
            self.store.claim_batch(1)
        with self.assertRaises(StoreUnavailable):
            self.store.enqueue("a.png")


if __name__ == "__main__":
    unittest.main()
