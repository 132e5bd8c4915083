"""
Polling consumers for the job queue.

A Worker drains one queue with ``concurrency`` async loops. Handlers are
plain callables taking the job payload; synchronous handlers run in a worker
thread so the event loop keeps polling while images are transcoded or the
database is busy.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from errors import UnknownJobType
from jobqueue import Job, JobQueue

logger = logging.getLogger(__name__)

JobHandler = Callable[[Dict[str, Any]], Any]


class Worker:
    """
    Consumes jobs from one queue.

    Args:
        queue: Queue client.
        queue_name: Logical queue to drain.
        handlers: Map of job type to handler.
        concurrency: Number of parallel polling loops.
        poll_interval: Seconds to wait when the queue is idle.
    """

    def __init__(
        self,
        queue: JobQueue,
        queue_name: str,
        handlers: Dict[str, JobHandler],
        concurrency: int = 1,
        poll_interval: float = 1.0,
    ):
        self.queue = queue
        self.queue_name = queue_name
        self.handlers = handlers
        self.concurrency = max(concurrency, 1)
        self.poll_interval = poll_interval

    async def run(self, shutdown_event: Optional[asyncio.Event] = None) -> None:
        """Run until ``shutdown_event`` is set; the current job always finishes."""
        if shutdown_event is None:
            shutdown_event = asyncio.Event()
        logger.info("Worker for %s started (%d loop(s))", self.queue_name, self.concurrency)
        async with asyncio.TaskGroup() as tg:
            for i in range(self.concurrency):
                tg.create_task(self._loop(i, shutdown_event))
        logger.info("Worker for %s stopped", self.queue_name)

    async def run_once(self) -> Optional[Job]:
        """Claim and process a single job; returns it, or None if the queue was idle."""
        job = await asyncio.to_thread(self.queue.claim, self.queue_name)
        if job is None:
            return None
        await self.process(job)
        return job

    async def _loop(self, loop_id: int, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            try:
                job = await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in %s loop %d", self.queue_name, loop_id)
                job = None
            if job is None:
                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

    async def process(self, job: Job) -> None:
        handler = self.handlers.get(job.name)
        logger.info("Job %s (%s) started, attempt %d/%d", job.id, job.name, job.attempts_made, job.attempts)
        try:
            if handler is None:
                raise UnknownJobType(f"No handler registered for job type: {job.name}")
            if inspect.iscoroutinefunction(handler):
                result = await handler(job.payload)
            else:
                result = await asyncio.to_thread(handler, job.payload)
        except Exception as e:
            # A payload that fails validation fails the same way on every delivery
            retriable = getattr(e, "retriable", True) and not isinstance(e, ValidationError)
            await asyncio.to_thread(self.queue.fail, job, f"{type(e).__name__}: {e}", retriable)
            return
        await asyncio.to_thread(self.queue.complete, job, _jsonable(result))
        logger.info("Job %s (%s) completed", job.id, job.name)


def _jsonable(result: Any) -> Any:
    if result is None or isinstance(result, (str, int, float, bool, dict, list)):
        return result
    return str(result)
