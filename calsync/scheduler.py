from __future__ import annotations

import logging
import threading
from typing import Optional

from calsync.config_manager import ConfigManager
from calsync.job_queue import Job, JobQueue
from calsync.sync_engine import SyncEngine


logger = logging.getLogger(__name__)

QUEUE_NAME = "calendar-sync"
SYNC_CONNECTION_JOB = "sync-connection"
PERIODIC_SYNC_JOB = "periodic-sync"


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, job_queue: JobQueue, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.job_queue = job_queue
        self.config_manager = config_manager
        self._workers: list[threading.Thread] = []
        self._ticker: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()

    def enqueue_sync_job(self, connection_id: str, immediate: bool = False) -> int:
        job_id = self.job_queue.add(
            SYNC_CONNECTION_JOB,
            {"connection_id": connection_id, "force": bool(immediate)},
        )
        self._wake_event.set()
        return job_id

    def ensure_periodic_schedule(self) -> str:
        interval = self.config_manager.load().sync.periodic_interval_seconds
        for repeatable in self.job_queue.get_repeatables():
            if repeatable.name == PERIODIC_SYNC_JOB:
                self.job_queue.remove_repeatable(repeatable.key)
        return self.job_queue.add_repeatable(PERIODIC_SYNC_JOB, interval)

    def process_job(self, job: Job) -> None:
        if job.name == SYNC_CONNECTION_JOB:
            connection_id = str(job.payload.get("connection_id") or "")
            if not connection_id:
                raise ValueError(f"Job {job.id} has no connection_id")
            result = self.sync_engine.sync_connection(
                connection_id,
                force=bool(job.payload.get("force")),
                trigger="manual" if job.payload.get("force") else "job",
            )
            logger.info("Job %s for connection %s finished: %s", job.id, connection_id, result.status)
        elif job.name == PERIODIC_SYNC_JOB:
            results = self.sync_engine.sync_all(trigger="periodic")
            logger.info("Periodic sync processed %s connections", len(results))
        else:
            logger.warning("Ignoring job %s with unknown name %r", job.id, job.name)

    def run_job(self, job: Job) -> None:
        try:
            self.process_job(job)
        except Exception as exc:
            retried = self.job_queue.fail(job.id, f"{type(exc).__name__}: {exc}")
            logger.error(
                "Job %s (%s) failed on attempt %s/%s%s",
                job.id,
                job.name,
                job.attempts_made,
                job.max_attempts,
                ", will retry" if retried else "",
                exc_info=True,
            )
            return
        self.job_queue.complete(job.id)

    def run_pending(self, max_jobs: int | None = None) -> int:
        processed = 0
        while max_jobs is None or processed < max_jobs:
            job = self.job_queue.claim_next()
            if job is None:
                break
            self.run_job(job)
            processed += 1
        return processed

    def start(self) -> None:
        if self._ticker and self._ticker.is_alive():
            return
        self._stop_event.clear()
        recovered = self.job_queue.recover_stalled()
        if recovered:
            logger.warning("Requeued %s jobs left active by a previous worker", recovered)
        self.ensure_periodic_schedule()

        concurrency = self.config_manager.load().sync.worker_concurrency
        self._workers = [
            threading.Thread(target=self._worker_loop, name=f"calsync-worker-{index}", daemon=True)
            for index in range(concurrency)
        ]
        for worker in self._workers:
            worker.start()
        self._ticker = threading.Thread(target=self._tick_loop, name="calsync-scheduler", daemon=True)
        self._ticker.start()
        logger.info("Started %s sync workers on queue %s", concurrency, self.job_queue.queue_name)

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        for thread in [*self._workers, self._ticker]:
            if thread:
                thread.join(timeout=5)
        self._workers = []
        self._ticker = None

    def _poll_interval(self) -> float:
        return self.config_manager.load().sync.poll_interval_seconds

    def _tick_loop(self) -> None:
        while not self._stop_event.is_set():
            if self.job_queue.enqueue_due_repeatables():
                self._wake_event.set()
            self._stop_event.wait(timeout=self._poll_interval())

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            job = self.job_queue.claim_next()
            if job is None:
                self._wake_event.wait(timeout=self._poll_interval())
                self._wake_event.clear()
                continue
            self.run_job(job)
