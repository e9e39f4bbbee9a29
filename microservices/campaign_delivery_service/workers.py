"""
Queue Workers

asyncio worker pools that consume the durable queues and dispatch each
payload variant to its handler.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

from .job_queue import JobQueue
from .models import AIJob, AnalyticsJob, EmailJob, Job, JobState
from .protocols import JobDeferred, UnsupportedJobError

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]
JobHook = Callable[[Job], Awaitable[None]]


class JobDispatcher:
    """Routes a job to the handler for its payload variant"""

    def __init__(
        self,
        email_handler: Optional[Callable[[EmailJob], Awaitable[Any]]] = None,
        analytics_handler: Optional[Callable[[AnalyticsJob], Awaitable[Any]]] = None,
        ai_handler: Optional[Callable[[AIJob], Awaitable[Any]]] = None,
    ):
        self.email_handler = email_handler
        self.analytics_handler = analytics_handler
        self.ai_handler = ai_handler

    async def __call__(self, job: Job) -> Any:
        payload = job.payload
        if isinstance(payload, EmailJob):
            handler = self.email_handler
        elif isinstance(payload, AnalyticsJob):
            handler = self.analytics_handler
        elif isinstance(payload, AIJob):
            handler = self.ai_handler
        else:
            raise UnsupportedJobError(f"Unknown job payload: {type(payload).__name__}")

        if handler is None:
            raise UnsupportedJobError(f"No handler for {payload.kind} jobs in this process")
        return await handler(payload)


class QueueWorker:
    """
    Pool of ``concurrency`` asyncio tasks pulling from one queue.

    A handler that returns completes the job, one that raises JobDeferred
    puts it back in delayed without spending an attempt, and any other
    exception counts as a failed attempt (retried with backoff until the
    job's attempts are exhausted).
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        concurrency: int = 3,
        poll_interval_ms: int = 500,
        stall_timeout_ms: int = 300000,
        on_completed: Optional[JobHook] = None,
        on_failed: Optional[JobHook] = None,
    ):
        self.queue = queue
        self.handler = handler
        self.on_completed = on_completed
        self.on_failed = on_failed
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval_ms / 1000
        self.stall_timeout_ms = stall_timeout_ms
        self._running = False
        self._tasks: List[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._run_loop(slot), name=f"{self.queue.name}-worker-{slot}")
            for slot in range(self.concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._stall_loop(), name=f"{self.queue.name}-stall"))
        logger.info(f"Started {self.concurrency} workers for queue {self.queue.name}")

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f"Stopped workers for queue {self.queue.name}")

    async def process_next(self) -> bool:
        """Claim and run one job; False when nothing was ready"""
        job = await self.queue.fetch_next()
        if job is None:
            return False
        await self.process_job(job)
        return True

    async def process_job(self, job: Job) -> None:
        try:
            result = await self.handler(job)
        except JobDeferred as deferred:
            await self.queue.defer(job, deferred.delay_ms)
            logger.info(f"Deferred job {job.id} on {self.queue.name}: {deferred}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            state = await self.queue.fail(job, e)
            if state == JobState.FAILED:
                logger.error(
                    f"Job {job.id} ({job.name}) failed permanently after "
                    f"{job.attempts_made} attempts: {e}",
                    exc_info=True,
                )
                await self._run_hook(self.on_failed, job)
            else:
                logger.warning(
                    f"Job {job.id} ({job.name}) attempt {job.attempts_made} failed, will retry: {e}"
                )
        else:
            await self.queue.complete(job, result)
            logger.debug(f"Completed job {job.id} on {self.queue.name}")
            await self._run_hook(self.on_completed, job)

    async def _run_hook(self, hook: Optional[JobHook], job: Job) -> None:
        # Hooks run after the job state is persisted
        if hook is None:
            return
        try:
            await hook(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Post-processing hook failed for job {job.id}: {e}", exc_info=True)

    async def _run_loop(self, slot: int) -> None:
        while self._running:
            try:
                processed = await self.process_next()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Worker {self.queue.name}-{slot} loop error: {e}", exc_info=True)
                processed = False
            if not processed:
                await asyncio.sleep(self.poll_interval)

    async def _stall_loop(self) -> None:
        interval = max(self.stall_timeout_ms / 2000, self.poll_interval)
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.queue.recover_stalled(self.stall_timeout_ms)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Stall recovery failed for {self.queue.name}: {e}")


__all__ = ["JobDispatcher", "QueueWorker", "JobHandler", "JobHook"]
