import asyncio
import inspect
import logging
import random
import string
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from config import settings

logger = logging.getLogger(__name__)

JobHandler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


def _job_id(job_type: str) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{job_type}_{int(time.time() * 1000)}_{suffix}"


@dataclass
class Job:
    type: str
    payload: Dict[str, Any]
    max_attempts: int = 3
    attempts: int = 0
    id: str = field(default="")

    def __post_init__(self):
        if not self.id:
            self.id = _job_id(self.type)


class JobQueue:
    """
    In-process, non-durable job queue with a fixed pool of asyncio workers.

    Handlers may be coroutine functions or plain functions; plain functions run
    in a worker thread. A failed job with attempts left is resubmitted after
    2^attempts * retry_base_seconds. Jobs still queued at shutdown are lost.
    """

    def __init__(self, concurrency: Optional[int] = None, retry_base_seconds: Optional[float] = None):
        self.concurrency = concurrency or settings.JOB_QUEUE_CONCURRENCY
        self.retry_base_seconds = (
            settings.JOB_RETRY_BASE_SECONDS if retry_base_seconds is None else retry_base_seconds
        )
        self._handlers: Dict[str, JobHandler] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._workers: List[asyncio.Task] = []
        self._active = 0
        self._scheduled = 0  # retries waiting on their backoff timer
        self._retry_handles: List[asyncio.TimerHandle] = []

    def register_handler(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    # ------------------------
    # Lifecycle
    # ------------------------
    async def start(self) -> None:
        if self._workers:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"job-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"[QUEUE] started {self.concurrency} workers")

    async def stop(self) -> None:
        for handle in self._retry_handles:
            handle.cancel()
        self._retry_handles.clear()
        self._scheduled = 0

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        dropped = self._queue.qsize() if self._queue else 0
        if dropped:
            logger.warning(f"[QUEUE] stopped with {dropped} queued jobs dropped")
        self._queue = None
        self._loop = None

    async def drain(self) -> None:
        """Wait until no job is queued, running or waiting for a retry."""
        while True:
            if self._queue is not None:
                await self._queue.join()
            if self._scheduled == 0 and (self._queue is None or self._queue.qsize() == 0):
                return
            await asyncio.sleep(0.01)

    # ------------------------
    # Submission
    # ------------------------
    def enqueue(self, job_type: str, payload: Dict[str, Any], max_attempts: Optional[int] = None) -> str:
        """
        Add a job and return its id. Safe to call from the event loop thread
        or from a worker thread.
        """
        if self._loop is None or self._queue is None:
            raise RuntimeError("JobQueue is not started")

        job = Job(
            type=job_type,
            payload=payload,
            max_attempts=max_attempts or settings.JOB_MAX_ATTEMPTS,
        )
        if self._in_loop_thread():
            self._queue.put_nowait(job)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, job)
        logger.info(f"[QUEUE] enqueued {job.id}")
        return job.id

    def queue_size(self) -> int:
        return self._queue.qsize() if self._queue else 0

    def active_jobs(self) -> int:
        return self._active

    def _in_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    # ------------------------
    # Execution
    # ------------------------
    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            self._active += 1
            try:
                await self._run(job)
            finally:
                self._active -= 1
                self._queue.task_done()

    async def _run(self, job: Job) -> None:
        handler = self._handlers.get(job.type)
        if handler is None:
            logger.error(f"[QUEUE] no handler registered for job type: {job.type}")
            return

        job.attempts += 1
        try:
            if inspect.iscoroutinefunction(handler):
                await handler(job.payload)
            else:
                await asyncio.to_thread(handler, job.payload)
        except Exception:
            logger.exception(f"[QUEUE] job {job.id} failed (attempt {job.attempts}/{job.max_attempts})")
            if job.attempts < job.max_attempts:
                self._schedule_retry(job)
            return

        logger.info(f"[QUEUE] job {job.id} done")

    def _schedule_retry(self, job: Job) -> None:
        delay = (2 ** job.attempts) * self.retry_base_seconds
        self._scheduled += 1
        logger.info(f"[QUEUE] retrying {job.id} in {delay:.1f}s")

        def resubmit():
            self._scheduled -= 1
            if self._queue is not None:
                self._queue.put_nowait(job)

        self._retry_handles = [h for h in self._retry_handles if not h.cancelled()]
        self._retry_handles.append(self._loop.call_later(delay, resubmit))
