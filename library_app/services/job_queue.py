"""In-process background job queue.

Jobs are named; each name has one async processor. A single worker task
drains the queue in FIFO order on the event loop that called ``start()``.
``enqueue`` may be called from that loop or from a worker thread (FastAPI
runs sync endpoints in a threadpool).
"""

import asyncio
import itertools
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from library_app.errors import ServiceError, ServiceUnavailable

logger = logging.getLogger(__name__)

GOOGLE_BOOKS_QUEUE_NAME = "google-books"
ENRICH_BOOK_JOB_NAME = "enrich-book"
CREATE_BOOK_FROM_GOOGLE_JOB_NAME = "create-book-from-google"


class Job:
    def __init__(self, id: int, name: str, data: Dict[str, Any], future: asyncio.Future) -> None:
        self.id = id
        self.name = name
        self.data = data
        self.status = "waiting"
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.future = future

    def __repr__(self) -> str:  # pragma: no cover
        return f"Job(id={self.id}, name={self.name!r}, status={self.status!r})"


def _mark_retrieved(future: asyncio.Future) -> None:
    # nobody may ever await an enrichment job; keep asyncio from warning about it
    if not future.cancelled():
        future.exception()


class JobQueue:
    def __init__(self, name: str = GOOGLE_BOOKS_QUEUE_NAME) -> None:
        self.name = name
        self._processors: Dict[str, Callable[[Job], Awaitable[Any]]] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._worker: Optional[asyncio.Task] = None
        self._pending: Dict[int, Job] = {}
        self._ids = itertools.count(1)

    def register(self, job_name: str, processor: Callable[[Job], Awaitable[Any]]) -> None:
        self._processors[job_name] = processor

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        """Start the worker on the running event loop."""
        if self.is_running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._worker = self._loop.create_task(self._run(), name=f"{self.name}-worker")
        logger.info("Job queue %s started", self.name)

    def enqueue(self, job_name: str, data: Dict[str, Any]) -> Job:
        if job_name not in self._processors:
            raise ServiceError(f"Unknown job type: {job_name}")
        if not self.is_running:
            raise ServiceUnavailable(f"Job queue {self.name} is not running")

        future = self._loop.create_future()
        future.add_done_callback(_mark_retrieved)
        job = Job(next(self._ids), job_name, dict(data), future)
        self._pending[job.id] = job

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(job)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, job)

        logger.info("Queued job %s (%s)", job.id, job_name)
        return job

    async def wait_until_finished(self, job: Job, timeout: float) -> Any:
        """Wait for ``job`` and return its result; raises ``asyncio.TimeoutError`` after ``timeout`` seconds."""
        return await asyncio.wait_for(asyncio.shield(job.future), timeout)

    async def join(self) -> None:
        """Block until every queued job has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._process(job)
            finally:
                if not job.future.done():
                    job.future.cancel()
                self._pending.pop(job.id, None)
                self._queue.task_done()

    async def _process(self, job: Job) -> None:
        job.status = "active"
        logger.info("Processing job %s of type %s", job.id, job.name)
        try:
            result = await self._processors[job.name](job)
        except Exception as e:
            job.status = "failed"
            job.error = e
            logger.error("Job %s failed: %s", job.id, e)
            if not job.future.done():
                job.future.set_exception(e)
        else:
            job.status = "completed"
            job.result = result
            if not job.future.done():
                job.future.set_result(result)

    async def close(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        for job in self._pending.values():
            if not job.future.done():
                job.future.cancel()
        self._pending.clear()
        self._worker = None
        self._queue = None
        self._loop = None
        logger.info("Job queue %s closed", self.name)
