import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from calsync.job_queue import JobOptions, JobQueue


START = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class JobQueueTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.clock = Clock(START)
        self.queue = JobQueue(
            str(Path(self.temp_dir.name) / "state.db"),
            "calendar-sync",
            JobOptions(attempts=3, backoff_delay_seconds=5.0, keep_completed=2, keep_failed=1),
            clock=self.clock,
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_claim_marks_active_and_counts_attempt(self) -> None:
        job_id = self.queue.add("sync-connection", {"connection_id": "c1"})
        job = self.queue.claim_next()

        self.assertEqual(job.id, job_id)
        self.assertEqual(job.status, "active")
        self.assertEqual(job.attempts_made, 1)
        self.assertEqual(job.payload, {"connection_id": "c1"})
        self.assertIsNone(self.queue.claim_next())

    def test_delayed_job_waits_for_run_at(self) -> None:
        self.queue.add("sync-connection", {}, delay_seconds=10)
        self.assertIsNone(self.queue.claim_next())
        self.clock.advance(10)
        self.assertIsNotNone(self.queue.claim_next())

    def test_failed_attempts_back_off_exponentially_then_fail(self) -> None:
        job_id = self.queue.add("sync-connection", {"connection_id": "c1"})

        self.queue.claim_next()
        self.assertTrue(self.queue.fail(job_id, "boom 1"))
        self.assertEqual(self.queue.get(job_id).run_at, START + timedelta(seconds=5))
        self.assertIsNone(self.queue.claim_next())

        self.clock.advance(5)
        self.queue.claim_next()
        self.assertTrue(self.queue.fail(job_id, "boom 2"))
        self.assertEqual(self.queue.get(job_id).run_at, self.clock.now + timedelta(seconds=10))

        self.clock.advance(10)
        self.queue.claim_next()
        self.assertFalse(self.queue.fail(job_id, "boom 3"))
        job = self.queue.get(job_id)
        self.assertEqual(job.status, "failed")
        self.assertEqual(job.attempts_made, 3)
        self.assertEqual(job.last_error, "boom 3")

    def test_per_job_attempt_override(self) -> None:
        job_id = self.queue.add("sync-connection", {}, attempts=1)
        self.queue.claim_next()
        self.assertFalse(self.queue.fail(job_id, "boom"))
        self.assertEqual(self.queue.get(job_id).status, "failed")

    def test_completed_and_failed_history_is_pruned(self) -> None:
        for _ in range(4):
            job_id = self.queue.add("sync-connection", {})
            self.queue.claim_next()
            self.queue.complete(job_id)
        for _ in range(3):
            job_id = self.queue.add("sync-connection", {}, attempts=1)
            self.queue.claim_next()
            self.queue.fail(job_id, "boom")

        self.assertEqual(self.queue.counts(), {"completed": 2, "failed": 1})
        self.assertEqual(len(self.queue.list_jobs(status="completed")), 2)

    def test_recover_stalled_requeues_active_jobs(self) -> None:
        job_id = self.queue.add("sync-connection", {})
        self.queue.claim_next()
        self.assertEqual(self.queue.recover_stalled(), 1)
        self.assertEqual(self.queue.get(job_id).status, "waiting")
        self.assertEqual(self.queue.claim_next().attempts_made, 2)

    def test_repeatable_enqueues_when_due_and_reschedules(self) -> None:
        key = self.queue.add_repeatable("periodic-sync", 300)
        self.assertEqual(key, "calendar-sync:periodic-sync:300000")
        self.assertEqual(self.queue.enqueue_due_repeatables(), 0)

        self.clock.advance(300)
        self.assertEqual(self.queue.enqueue_due_repeatables(), 1)
        self.assertEqual(self.queue.enqueue_due_repeatables(), 0)
        self.assertEqual([job.name for job in self.queue.list_jobs()], ["periodic-sync"])
        self.assertEqual(self.queue.get_repeatables()[0].next_run_at, self.clock.now + timedelta(seconds=300))

    def test_adding_same_repeatable_twice_keeps_one_entry(self) -> None:
        self.queue.add_repeatable("periodic-sync", 300)
        self.queue.add_repeatable("periodic-sync", 300)
        self.assertEqual(len(self.queue.get_repeatables()), 1)

    def test_queues_sharing_a_database_are_isolated(self) -> None:
        other = JobQueue(str(self.queue.db_path), "other-queue", clock=self.clock)
        other.add("sync-connection", {})
        self.assertIsNone(self.queue.claim_next())
        self.assertEqual(self.queue.counts(), {})


if __name__ == "__main__":
    unittest.main()
