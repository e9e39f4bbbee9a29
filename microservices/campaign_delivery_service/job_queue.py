"""
Job Queue

Durable, prioritized, delayable job queues on Redis.

Per queue, under ``{namespace}:{queue}``:
- ``job:{id}``   JSON job record
- ``waiting``    sorted set, score = priority * 1e12 + sequence (lowest first)
- ``delayed``    sorted set, score = ready-at epoch ms
- ``active``     sorted set, score = claimed-at epoch ms
- ``completed``  sorted set, score = finished-at epoch ms
- ``failed``     sorted set, score = finished-at epoch ms
- ``paused``     flag key; a paused queue hands out no jobs

The email queue also keeps ``campaign:{id}:batches``, a sorted set of the
batch job ids of a campaign's latest fan-out, score = batch index.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, TypeVar, Union

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.config import QueueConfig

from .models import (
    AIJob,
    AnalyticsJob,
    AnalyticsJobType,
    EmailJob,
    Job,
    JobHandle,
    JobOptions,
    JobPayload,
    JobState,
    PAYLOAD_QUEUES,
    QueueName,
    QueueStats,
    Recipient,
    utc_now,
)
from .protocols import TransientInfraError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRIORITY_SCALE = 1_000_000_000_000
DEFAULT_CLEAN_GRACE_MS = 24 * 60 * 60 * 1000
CLEAN_COMPLETED_LIMIT = 100
CLEAN_FAILED_LIMIT = 50
BATCH_JOB_PRIORITY = 10
SEND_CAMPAIGN_PRIORITY = 10
SCHEDULED_CAMPAIGN_PRIORITY = 5
NIGHTLY_AGGREGATION_HOUR = 2


# Pops the best waiting job into active unless the queue is paused
CLAIM_JOB_SCRIPT = """
if redis.call("exists", KEYS[1]) == 1 then
    return false
end
local popped = redis.call("zpopmin", KEYS[2])
if #popped == 0 then
    return false
end
redis.call("zadd", KEYS[3], ARGV[1], popped[1])
return popped[1]
"""


@dataclass(frozen=True)
class QueueDefaults:
    """Per-queue job defaults"""
    remove_on_complete: int
    remove_on_fail: int
    attempts: int
    backoff_ms: int


QUEUE_DEFAULTS: Dict[QueueName, QueueDefaults] = {
    QueueName.EMAIL: QueueDefaults(remove_on_complete=100, remove_on_fail=50, attempts=3, backoff_ms=2000),
    QueueName.ANALYTICS: QueueDefaults(remove_on_complete=50, remove_on_fail=25, attempts=2, backoff_ms=1000),
    QueueName.AI: QueueDefaults(remove_on_complete=25, remove_on_fail=10, attempts=2, backoff_ms=5000),
}


def now_ms() -> int:
    return int(time.time() * 1000)


def chunk_list(items: Sequence[T], size: int) -> List[List[T]]:
    """Split items into contiguous, order-preserving chunks of at most size"""
    if size < 1:
        raise ValidationError("Batch size must be at least 1", field="batch_size")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def backoff_delay_ms(backoff_ms: int, attempts_made: int) -> int:
    """Exponential backoff: backoff * 2^(attempt - 1)"""
    return backoff_ms * (2 ** max(0, attempts_made - 1))


class JobQueue:
    """One named queue"""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        name: str,
        namespace: str = "bull",
        defaults: Optional[QueueDefaults] = None,
    ):
        self.redis = redis_client
        self.name = name
        self.prefix = f"{namespace}:{name}"
        self.defaults = defaults or QueueDefaults(remove_on_complete=100, remove_on_fail=50, attempts=1, backoff_ms=0)

        self.waiting_key = f"{self.prefix}:waiting"
        self.delayed_key = f"{self.prefix}:delayed"
        self.active_key = f"{self.prefix}:active"
        self.completed_key = f"{self.prefix}:completed"
        self.failed_key = f"{self.prefix}:failed"
        self.paused_key = f"{self.prefix}:paused"
        self.id_key = f"{self.prefix}:id"
        self.seq_key = f"{self.prefix}:seq"

        self._claim_script = self.redis.register_script(CLAIM_JOB_SCRIPT)

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _state_key(self, state: JobState) -> str:
        return {
            JobState.WAITING: self.waiting_key,
            JobState.DELAYED: self.delayed_key,
            JobState.ACTIVE: self.active_key,
            JobState.COMPLETED: self.completed_key,
            JobState.FAILED: self.failed_key,
        }[state]

    async def _save(self, job: Job) -> None:
        await self.redis.set(self._job_key(job.id), job.model_dump_json())

    async def _push_waiting(self, job: Job) -> None:
        seq = await self.redis.incr(self.seq_key)
        await self.redis.zadd(self.waiting_key, {job.id: job.priority * PRIORITY_SCALE + seq})

    # ====================
    # Producer
    # ====================

    async def add(self, name: str, payload: JobPayload, options: Optional[JobOptions] = None) -> Job:
        """
        Persist a job and make it claimable.

        An explicit ``job_id`` that already exists is a no-op returning the
        stored job.
        """
        options = options or JobOptions()
        job_id = options.job_id or str(await self.redis.incr(self.id_key))
        created = now_ms()

        job = Job(
            id=job_id,
            name=name,
            queue=self.name,
            payload=payload,
            priority=options.priority,
            delay_ms=options.delay_ms,
            max_attempts=max(options.attempts, 1),
            backoff_ms=options.backoff_ms,
            state=JobState.DELAYED if options.delay_ms > 0 else JobState.WAITING,
            remove_on_complete=options.remove_on_complete,
            remove_on_fail=options.remove_on_fail,
            timestamp=created,
        )

        stored = await self.redis.set(self._job_key(job_id), job.model_dump_json(), nx=True)
        if not stored:
            existing = await self.get_job(job_id)
            logger.debug(f"Job {job_id} already exists in {self.name}")
            return existing or job

        if options.delay_ms > 0:
            await self.redis.zadd(self.delayed_key, {job_id: created + options.delay_ms})
        else:
            await self._push_waiting(job)
        return job

    # ====================
    # Consumer
    # ====================

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose time has come to waiting"""
        ready = await self.redis.zrangebyscore(self.delayed_key, 0, now_ms())
        promoted = 0
        for job_id in ready:
            # Only the caller that wins the zrem promotes the job
            if not await self.redis.zrem(self.delayed_key, job_id):
                continue
            job = await self.get_job(job_id)
            if job is None:
                continue
            job.state = JobState.WAITING
            await self._save(job)
            await self._push_waiting(job)
            promoted += 1
        return promoted

    async def fetch_next(self) -> Optional[Job]:
        """Claim the next job, or None when nothing is ready or the queue is paused"""
        await self.promote_delayed()
        claimed_at = now_ms()
        job_id = await self._claim_script(
            keys=[self.paused_key, self.waiting_key, self.active_key],
            args=[claimed_at],
        )
        if not job_id:
            return None

        job = await self.get_job(job_id)
        if job is None:
            await self.redis.zrem(self.active_key, job_id)
            return None

        job.state = JobState.ACTIVE
        job.processed_on = claimed_at
        await self._save(job)
        return job

    async def complete(self, job: Job, return_value: Any = None) -> None:
        finished = now_ms()
        await self.redis.zrem(self.active_key, job.id)
        job.state = JobState.COMPLETED
        job.finished_on = finished
        job.return_value = return_value
        await self._save(job)
        await self.redis.zadd(self.completed_key, {job.id: finished})
        await self._prune(self.completed_key, job.remove_on_complete)

    async def fail(self, job: Job, error: Union[BaseException, str]) -> JobState:
        """
        Record a failed attempt.

        Returns DELAYED when the job will be retried after backoff, FAILED when
        attempts are exhausted.
        """
        finished = now_ms()
        await self.redis.zrem(self.active_key, job.id)
        job.attempts_made += 1
        job.failed_reason = str(error)

        if job.attempts_made < job.max_attempts:
            job.state = JobState.DELAYED
            await self._save(job)
            delay = backoff_delay_ms(job.backoff_ms, job.attempts_made)
            await self.redis.zadd(self.delayed_key, {job.id: finished + delay})
            return JobState.DELAYED

        job.state = JobState.FAILED
        job.finished_on = finished
        await self._save(job)
        await self.redis.zadd(self.failed_key, {job.id: finished})
        await self._prune(self.failed_key, job.remove_on_fail)
        return JobState.FAILED

    async def defer(self, job: Job, delay_ms: int) -> None:
        """Put an active job back in delayed without consuming an attempt"""
        await self.redis.zrem(self.active_key, job.id)
        job.state = JobState.DELAYED
        await self._save(job)
        await self.redis.zadd(self.delayed_key, {job.id: now_ms() + max(0, delay_ms)})

    async def recover_stalled(self, stall_timeout_ms: int) -> int:
        """Return jobs that have been active longer than the timeout to waiting"""
        stalled = await self.redis.zrangebyscore(self.active_key, 0, now_ms() - stall_timeout_ms)
        recovered = 0
        for job_id in stalled:
            if not await self.redis.zrem(self.active_key, job_id):
                continue
            job = await self.get_job(job_id)
            if job is None:
                continue
            job.state = JobState.WAITING
            await self._save(job)
            await self._push_waiting(job)
            recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} stalled jobs in {self.name}")
        return recovered

    async def _prune(self, set_key: str, keep: Optional[int]) -> None:
        if keep is None:
            return
        count = await self.redis.zcard(set_key)
        excess = count - max(0, keep)
        if excess <= 0:
            return
        oldest = await self.redis.zrange(set_key, 0, excess - 1)
        if oldest:
            await self.redis.zrem(set_key, *oldest)
            await self.redis.delete(*[self._job_key(job_id) for job_id in oldest])

    # ====================
    # Administration
    # ====================

    async def get_job(self, job_id: str) -> Optional[Job]:
        raw = await self.redis.get(self._job_key(job_id))
        if raw is None:
            return None
        return Job.model_validate_json(raw)

    async def get_stats(self) -> QueueStats:
        return QueueStats(
            waiting=await self.redis.zcard(self.waiting_key),
            active=await self.redis.zcard(self.active_key),
            completed=await self.redis.zcard(self.completed_key),
            failed=await self.redis.zcard(self.failed_key),
            delayed=await self.redis.zcard(self.delayed_key),
            paused=bool(await self.redis.exists(self.paused_key)),
        )

    async def pause(self) -> None:
        await self.redis.set(self.paused_key, "1")

    async def resume(self) -> None:
        await self.redis.delete(self.paused_key)

    async def is_paused(self) -> bool:
        return bool(await self.redis.exists(self.paused_key))

    async def clean(self, grace_ms: int, state: JobState, limit: int) -> List[str]:
        """Remove up to limit terminal jobs finished more than grace_ms ago"""
        set_key = self._state_key(state)
        cutoff = now_ms() - grace_ms
        job_ids = await self.redis.zrangebyscore(set_key, 0, cutoff, start=0, num=limit)
        if job_ids:
            await self.redis.zrem(set_key, *job_ids)
            await self.redis.delete(*[self._job_key(job_id) for job_id in job_ids])
        return list(job_ids)

    async def get_failed(self, limit: int = 50) -> List[Job]:
        """Failed jobs, newest first"""
        job_ids = await self.redis.zrevrange(self.failed_key, 0, limit - 1)
        jobs = []
        for job_id in job_ids:
            job = await self.get_job(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def retry(self, job_id: str) -> bool:
        """Move a failed job back to waiting with a fresh attempt budget"""
        if not await self.redis.zrem(self.failed_key, job_id):
            return False
        job = await self.get_job(job_id)
        if job is None:
            return False
        job.state = JobState.WAITING
        job.attempts_made = 0
        job.failed_reason = None
        job.finished_on = None
        await self._save(job)
        await self._push_waiting(job)
        return True

    async def remove(self, job_id: str) -> bool:
        for state in JobState:
            await self.redis.zrem(self._state_key(state), job_id)
        return await self.redis.delete(self._job_key(job_id)) > 0


class QueueManager:
    """
    Owns the email, analytics and AI queues.

    Producers call the schedule_* helpers and return immediately; the
    :class:`~.workers.QueueWorker` pool consumes.
    """

    def __init__(self, redis_client: aioredis.Redis, config: Optional[QueueConfig] = None):
        self.redis = redis_client
        self.config = config or QueueConfig()
        self.queues: Dict[QueueName, JobQueue] = {
            name: JobQueue(redis_client, name.value, self.config.namespace, QUEUE_DEFAULTS[name])
            for name in QueueName
        }

    def get_queue(self, name: Union[str, QueueName]) -> JobQueue:
        try:
            return self.queues[QueueName(name)]
        except ValueError:
            raise ValidationError(f"Unknown queue: {name}", field="queue")

    # ====================
    # Scheduling
    # ====================

    async def schedule_job(
        self,
        payload: JobPayload,
        name: Optional[str] = None,
        priority: int = 0,
        delay_ms: int = 0,
        job_id: Optional[str] = None,
        remove_on_complete: Optional[int] = None,
        remove_on_fail: Optional[int] = None,
    ) -> JobHandle:
        """Enqueue a payload on the queue that owns its kind"""
        queue = self.queues[PAYLOAD_QUEUES[payload.kind]]
        defaults = queue.defaults
        options = JobOptions(
            job_id=job_id,
            priority=priority,
            delay_ms=max(0, delay_ms),
            attempts=defaults.attempts,
            backoff_ms=defaults.backoff_ms,
            remove_on_complete=defaults.remove_on_complete if remove_on_complete is None else remove_on_complete,
            remove_on_fail=defaults.remove_on_fail if remove_on_fail is None else remove_on_fail,
        )
        job_name = name or self._default_job_name(payload)
        try:
            job = await queue.add(job_name, payload, options)
        except (RedisError, OSError) as e:
            logger.error(f"Failed to enqueue {job_name} on {queue.name}: {e}")
            raise TransientInfraError(f"Failed to enqueue job {job_name}: {e}") from e

        logger.debug(f"Scheduled {job_name} ({job.id}) on {queue.name}")
        return JobHandle(id=job.id, name=job.name, queue=queue.name)

    @staticmethod
    def _default_job_name(payload: JobPayload) -> str:
        if isinstance(payload, EmailJob):
            return "send-email"
        if isinstance(payload, AnalyticsJob):
            return payload.event_type.value
        return payload.type.value

    async def schedule_email_job(self, payload: EmailJob, **kwargs: Any) -> JobHandle:
        return await self.schedule_job(payload, **kwargs)

    async def schedule_analytics_job(self, payload: AnalyticsJob, **kwargs: Any) -> JobHandle:
        return await self.schedule_job(payload, **kwargs)

    async def schedule_ai_job(self, payload: AIJob, **kwargs: Any) -> JobHandle:
        return await self.schedule_job(payload, **kwargs)

    async def schedule_batch_email_sending(
        self,
        campaign_id: str,
        tenant_id: str,
        recipients: List[Recipient],
        batch_size: int = 100,
        retry: bool = False,
    ) -> List[JobHandle]:
        """Enqueue one EmailJob per contiguous recipient chunk"""
        handles = []
        for index, chunk in enumerate(chunk_list(recipients, batch_size)):
            payload = EmailJob(
                campaign_id=campaign_id,
                tenant_id=tenant_id,
                recipients=chunk,
                batch_size=batch_size,
                batch_index=index,
                retry=retry,
            )
            handles.append(
                await self.schedule_email_job(
                    payload,
                    name=f"email-batch-{campaign_id}-{index}",
                    priority=BATCH_JOB_PRIORITY,
                )
            )
        logger.info(f"Scheduled {len(handles)} email batches for campaign {campaign_id}")
        return handles

    async def schedule_daily_aggregation(self, now: Optional[datetime] = None) -> JobHandle:
        """Queue the rollup of the day before now; a day already queued is not queued twice"""
        day = ((now or utc_now()) - timedelta(days=1)).date()
        payload = AnalyticsJob(
            event_type=AnalyticsJobType.DAILY_AGGREGATION,
            data={"day": day.isoformat()},
        )
        return await self.schedule_analytics_job(
            payload,
            name=AnalyticsJobType.DAILY_AGGREGATION.value,
            job_id=f"daily-aggregation-{day.isoformat()}",
        )

    # ====================
    # Campaign Email Helpers
    # ====================

    @staticmethod
    def send_job_id(campaign_id: str) -> str:
        return f"send-campaign-{campaign_id}"

    @staticmethod
    def scheduled_job_id(campaign_id: str) -> str:
        return f"scheduled-campaign-{campaign_id}"

    async def _discard_finished(self, queue: JobQueue, job_id: str) -> None:
        # A finished record with the same id would swallow the new job
        job = await queue.get_job(job_id)
        if job is not None and job.state in (JobState.COMPLETED, JobState.FAILED):
            await queue.remove(job_id)

    async def send_email_campaign(self, campaign_id: str, tenant_id: str) -> JobHandle:
        """Queue a campaign start for immediate dispatch"""
        queue = self.queues[QueueName.EMAIL]
        job_id = self.send_job_id(campaign_id)
        await self._discard_finished(queue, job_id)
        return await self.schedule_email_job(
            EmailJob(campaign_id=campaign_id, tenant_id=tenant_id),
            name="send-campaign",
            job_id=job_id,
            priority=SEND_CAMPAIGN_PRIORITY,
        )

    async def schedule_email_campaign(
        self, campaign_id: str, tenant_id: str, scheduled_at: datetime
    ) -> JobHandle:
        """Queue a campaign start that fires at scheduled_at"""
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
        delay_ms = int((scheduled_at - utc_now()).total_seconds() * 1000)
        if delay_ms <= 0:
            raise ValidationError("Scheduled time must be in the future", field="scheduled_at")

        queue = self.queues[QueueName.EMAIL]
        job_id = self.scheduled_job_id(campaign_id)
        await self._discard_finished(queue, job_id)
        return await self.schedule_email_job(
            EmailJob(campaign_id=campaign_id, tenant_id=tenant_id),
            name="scheduled-campaign",
            job_id=job_id,
            priority=SCHEDULED_CAMPAIGN_PRIORITY,
            delay_ms=delay_ms,
        )

    def _campaign_batches_key(self, campaign_id: str) -> str:
        return f"{self.queues[QueueName.EMAIL].prefix}:campaign:{campaign_id}:batches"

    async def record_campaign_batches(self, campaign_id: str, job_ids: List[str]) -> None:
        """Replace the batch job ids of the campaign's latest fan-out (no expiry)"""
        key = self._campaign_batches_key(campaign_id)
        try:
            await self.redis.delete(key)
            if job_ids:
                await self.redis.zadd(key, {job_id: index for index, job_id in enumerate(job_ids)})
        except (RedisError, OSError) as e:
            logger.error(f"Failed to record batches of campaign {campaign_id}: {e}")
            raise TransientInfraError(f"Failed to record batches of campaign {campaign_id}: {e}") from e

    async def get_campaign_batches(self, campaign_id: str) -> List[str]:
        return await self.redis.zrange(self._campaign_batches_key(campaign_id), 0, -1)

    async def cancel_scheduled_job(self, campaign_id: str) -> bool:
        removed = await self.queues[QueueName.EMAIL].remove(self.scheduled_job_id(campaign_id))
        if removed:
            logger.info(f"Cancelled scheduled job for campaign {campaign_id}")
        return removed

    async def get_campaign_job_status(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        queue = self.queues[QueueName.EMAIL]
        for job_id in (self.scheduled_job_id(campaign_id), self.send_job_id(campaign_id)):
            job = await queue.get_job(job_id)
            if job is None:
                continue
            return {
                "job_id": job.id,
                "name": job.name,
                "state": job.state.value,
                "attempts_made": job.attempts_made,
                "delay_ms": job.delay_ms,
                "processed_on": job.processed_on,
                "finished_on": job.finished_on,
                "failed_reason": job.failed_reason,
            }
        return None

    # ====================
    # Administration
    # ====================

    async def get_job(self, queue_name: Union[str, QueueName], job_id: str) -> Optional[Job]:
        return await self.get_queue(queue_name).get_job(job_id)

    async def get_queue_stats(self, queue_name: Union[str, QueueName]) -> QueueStats:
        return await self.get_queue(queue_name).get_stats()

    async def get_all_queue_stats(self) -> Dict[str, QueueStats]:
        return {name.value: await queue.get_stats() for name, queue in self.queues.items()}

    async def pause_queue(self, queue_name: Union[str, QueueName]) -> None:
        await self.get_queue(queue_name).pause()
        logger.info(f"Paused queue {queue_name}")

    async def resume_queue(self, queue_name: Union[str, QueueName]) -> None:
        await self.get_queue(queue_name).resume()
        logger.info(f"Resumed queue {queue_name}")

    async def clean_queue(
        self, queue_name: Union[str, QueueName], grace_ms: int = DEFAULT_CLEAN_GRACE_MS
    ) -> Dict[str, int]:
        queue = self.get_queue(queue_name)
        completed = await queue.clean(grace_ms, JobState.COMPLETED, CLEAN_COMPLETED_LIMIT)
        failed = await queue.clean(grace_ms, JobState.FAILED, CLEAN_FAILED_LIMIT)
        logger.info(f"Cleaned {queue.name}: {len(completed)} completed, {len(failed)} failed")
        return {"completed": len(completed), "failed": len(failed)}

    async def get_failed_jobs(self, queue_name: Union[str, QueueName], limit: int = 50) -> List[Job]:
        return await self.get_queue(queue_name).get_failed(limit)

    async def retry_job(self, queue_name: Union[str, QueueName], job_id: str) -> bool:
        return await self.get_queue(queue_name).retry(job_id)

    async def remove_job(self, queue_name: Union[str, QueueName], job_id: str) -> bool:
        return await self.get_queue(queue_name).remove(job_id)

    async def recover_stalled(self) -> int:
        recovered = 0
        for queue in self.queues.values():
            recovered += await queue.recover_stalled(self.config.stall_timeout_ms)
        return recovered

    async def health_check(self) -> Dict[str, Any]:
        """Report connectivity per queue; never raises"""
        try:
            redis_ok = bool(await self.redis.ping())
        except (RedisError, OSError) as e:
            logger.warning(f"Queue redis ping failed: {e}")
            redis_ok = False

        queues: Dict[str, bool] = {}
        for name, queue in self.queues.items():
            try:
                await queue.get_stats()
                queues[name.value] = True
            except (RedisError, OSError) as e:
                logger.warning(f"Queue {name.value} health check failed: {e}")
                queues[name.value] = False

        return {
            "redis": redis_ok,
            "queues": queues,
            "overall": redis_ok and all(queues.values()),
        }


__all__ = [
    "JobQueue",
    "QueueManager",
    "QueueDefaults",
    "QUEUE_DEFAULTS",
    "CLAIM_JOB_SCRIPT",
    "chunk_list",
    "backoff_delay_ms",
    "NIGHTLY_AGGREGATION_HOUR",
    "now_ms",
]
