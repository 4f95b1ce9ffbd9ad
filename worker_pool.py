"""
worker_pool.py — supervised background execution of analysis jobs.

Requests never run an analysis themselves: they persist the upload as
`pending` (enqueue_upload) and hand a job to this pool. A fixed number of
worker tasks drain an asyncio.Queue and call AnalysisOrchestrator.run().

A job whose run raises (the store was unreachable, typically) is logged with
its traceback and re-queued after retry_delay, up to max_attempts. After that
it is recorded in `failures` and its upload is marked `failed`, so nothing
disappears silently.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import database as db
from orchestrator import AnalysisOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class AnalysisJob:
    upload_id: str
    image_path: str
    original_name: str = ""
    job_id: int = 0
    attempts: int = 0
    last_error: Optional[str] = None
    submitted_at: float = field(default_factory=time.monotonic)


class AnalysisWorkerPool:

    def __init__(
        self,
        orchestrator: AnalysisOrchestrator,
        workers: int = 2,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self._orchestrator = orchestrator
        self.workers = workers
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

        self._queue: asyncio.Queue[AnalysisJob] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._retry_tasks: set[asyncio.Task] = set()
        self._ids = itertools.count(1)
        self._running = False

        self.completed = 0
        self.retried = 0
        self.failures: list[AnalysisJob] = []

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Spawn the worker tasks. Call from inside the running event loop."""
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"analysis-worker-{i}")
            for i in range(1, self.workers + 1)
        ]
        logger.info("Analysis worker pool started (%d workers)", self.workers)

    def submit(self, upload_id: str, image_path: str, original_name: str = "") -> AnalysisJob:
        """Queue a job and return immediately."""
        job = AnalysisJob(upload_id, image_path, original_name, job_id=next(self._ids))
        self._queue.put_nowait(job)
        logger.debug("Queued job %d for upload %s", job.job_id, upload_id)
        return job

    async def join(self) -> None:
        """Wait until every submitted job (including pending retries) has finished."""
        while True:
            await self._queue.join()
            if not self._retry_tasks:
                return
            await asyncio.gather(*self._retry_tasks)

    async def stop(self) -> None:
        """Cancel the workers. Jobs still queued are left unprocessed."""
        self._running = False
        for task in [*self._tasks, *self._retry_tasks]:
            task.cancel()
        await asyncio.gather(*self._tasks, *self._retry_tasks, return_exceptions=True)
        self._tasks = []
        self._retry_tasks.clear()
        logger.info("Analysis worker pool stopped.")

    def stats(self) -> dict:
        return {
            "workers": self.workers,
            "queued": self._queue.qsize(),
            "retry_pending": len(self._retry_tasks),
            "completed": self.completed,
            "retried": self.retried,
            "failed": len(self.failures),
        }

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._execute(job)
            finally:
                self._queue.task_done()

    async def _execute(self, job: AnalysisJob) -> None:
        job.attempts += 1
        try:
            status = await self._orchestrator.run(job.upload_id, job.image_path, job.original_name)
        except Exception as exc:
            job.last_error = f"{type(exc).__name__}: {exc}"
            logger.exception(
                "Job %d (upload %s) failed on attempt %d/%d",
                job.job_id, job.upload_id, job.attempts, self.max_attempts,
            )
            if job.attempts >= self.max_attempts:
                self.failures.append(job)
                logger.error("Job %d (upload %s) gave up: %s", job.job_id, job.upload_id, job.last_error)
                await self._orchestrator.abandon(job.upload_id, job.last_error)
            else:
                self._schedule_retry(job)
            return

        self.completed += 1
        logger.debug("Job %d (upload %s) finished: %s", job.job_id, job.upload_id,
                     status.value if status else "skipped")

    def _schedule_retry(self, job: AnalysisJob) -> None:
        self.retried += 1

        async def _requeue() -> None:
            await asyncio.sleep(self.retry_delay)
            self._queue.put_nowait(job)

        task = asyncio.create_task(_requeue())
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)


async def enqueue_upload(
    pool: AnalysisWorkerPool,
    upload_id: str,
    image_handle: str,
    original_name: str = "",
) -> db.Upload:
    """Persist a new pending upload and hand it to the pool. Does not wait for the analysis."""
    upload = await db.create_upload(upload_id, image_handle, original_name)
    pool.submit(upload_id, image_handle, original_name)
    return upload
