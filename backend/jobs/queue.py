# jobs/queue.py — Redis-backed durable job queue
"""
Durable FIFO/delay queue stored in Redis.

Key layout, per queue (`{prefix}:{queue}:…`):

    id          INCR counter for job ids
    job:{id}    hash with the job record
    waiting     list; producers LPUSH, consumers LMOVE RIGHT → active LEFT
    active      list of jobs currently owned by a worker
    delayed     sorted set scored by due time (ms since epoch)
    completed   list, newest first, trimmed to the retention bound
    failed      list, newest first, trimmed to the retention bound
    paused      flag; when present consumers receive nothing
    repeat      hash of repeatable job definitions (cron)

Retry state lives here, not in processors: `fail()` either reschedules the job
with its backoff delay or moves it to `failed` once attempts are exhausted.
Jobs left in `active` by a dead worker are put through the same path once
they exceed the stall timeout.
"""
import json
import time
import hashlib
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from croniter import croniter
from redis.asyncio import Redis
from redis.exceptions import RedisError

from exceptions import QueueUnavailableError

logger = logging.getLogger("collabute.jobs.queue")

JOB_STATES = ("waiting", "active", "completed", "failed", "delayed")

# Active jobs older than this are treated as abandoned by a dead worker
STALLED_JOB_TIMEOUT_MS = 30 * 60 * 1000


@dataclass
class BackoffPolicy:
    type: str = "fixed"  # "fixed" | "exponential"
    delay: int = 0  # ms

    def delay_for(self, attempts_made: int) -> int:
        """Delay before the next attempt, after `attempts_made` failures"""
        if self.type == "exponential":
            return int(round((2 ** attempts_made - 1) * self.delay))
        return self.delay


@dataclass
class JobOptions:
    attempts: int = 1
    backoff: Optional[BackoffPolicy] = None
    delay: int = 0  # ms
    repeat_cron: Optional[str] = None
    repeat_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "JobOptions":
        backoff = data.get("backoff")
        return JobOptions(
            attempts=int(data.get("attempts", 1)),
            backoff=BackoffPolicy(**backoff) if backoff else None,
            delay=int(data.get("delay", 0)),
            repeat_cron=data.get("repeat_cron"),
            repeat_key=data.get("repeat_key"),
        )


@dataclass
class Job:
    id: str
    queue: str
    name: str
    data: Dict[str, Any]
    opts: JobOptions = field(default_factory=JobOptions)
    status: str = "waiting"
    attempts_made: int = 0
    timestamp: int = 0
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None
    failed_reason: Optional[str] = None
    return_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "name": self.name,
            "data": self.data,
            "status": self.status,
            "attempts": self.opts.attempts,
            "attempts_made": self.attempts_made,
            "delay": self.opts.delay,
            "repeat": self.opts.repeat_cron,
            "created_at": _ms_to_iso(self.timestamp),
            "processed_at": _ms_to_iso(self.processed_on),
            "finished_at": _ms_to_iso(self.finished_on),
            "failed_reason": self.failed_reason,
            "return_value": self.return_value,
        }


def _ms_to_iso(ms: Optional[int]) -> Optional[str]:
    if not ms:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def _now_ms() -> int:
    return int(time.time() * 1000)


class RedisQueue:
    """A named job queue backed by Redis"""

    def __init__(
        self,
        name: str,
        redis: Redis,
        prefix: str = "collabute",
        remove_on_complete: int = 100,
        remove_on_fail: int = 50,
        stall_timeout: int = STALLED_JOB_TIMEOUT_MS,
    ):
        self.name = name
        self.redis = redis
        self.prefix = prefix
        self.remove_on_complete = remove_on_complete
        self.remove_on_fail = remove_on_fail
        self.stall_timeout = stall_timeout
        self.clock: Callable[[], int] = _now_ms

    # --- keys ---

    def _key(self, suffix: str) -> str:
        return f"{self.prefix}:{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    # --- serialization ---

    def _serialize(self, job: Job) -> Dict[str, str]:
        record = {
            "name": job.name,
            "data": json.dumps(job.data),
            "opts": json.dumps(job.opts.to_dict()),
            "status": job.status,
            "attempts_made": str(job.attempts_made),
            "timestamp": str(job.timestamp),
        }
        if job.processed_on:
            record["processed_on"] = str(job.processed_on)
        if job.finished_on:
            record["finished_on"] = str(job.finished_on)
        if job.failed_reason:
            record["failed_reason"] = job.failed_reason
        if job.return_value is not None:
            record["return_value"] = json.dumps(job.return_value, default=str)
        return record

    def _deserialize(self, job_id: str, record: Dict[str, str]) -> Job:
        return Job(
            id=job_id,
            queue=self.name,
            name=record.get("name", ""),
            data=json.loads(record.get("data") or "{}"),
            opts=JobOptions.from_dict(json.loads(record.get("opts") or "{}")),
            status=record.get("status", "waiting"),
            attempts_made=int(record.get("attempts_made") or 0),
            timestamp=int(record.get("timestamp") or 0),
            processed_on=int(record["processed_on"]) if record.get("processed_on") else None,
            finished_on=int(record["finished_on"]) if record.get("finished_on") else None,
            failed_reason=record.get("failed_reason"),
            return_value=json.loads(record["return_value"]) if record.get("return_value") else None,
        )

    # ============================================================
    # PRODUCER
    # ============================================================

    async def add(self, name: str, data: Dict[str, Any], opts: Optional[JobOptions] = None) -> Job:
        """Enqueue a job. Repeatable jobs (opts.repeat_cron) schedule their first run."""
        opts = opts or JobOptions()
        try:
            if opts.repeat_cron:
                return await self._add_repeatable(name, data, opts)
            job_id = str(await self.redis.incr(self._key("id")))
            return await self._store_new(job_id, name, data, opts)
        except RedisError as e:
            logger.error(f"Queue {self.name} unavailable while adding {name}: {e}")
            raise QueueUnavailableError(f"Queue backend unavailable: {e}")

    async def _store_new(self, job_id: str, name: str, data: Dict[str, Any], opts: JobOptions) -> Job:
        now = self.clock()
        job = Job(
            id=job_id, queue=self.name, name=name, data=data, opts=opts,
            status="delayed" if opts.delay > 0 else "waiting",
            timestamp=now,
        )
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job_id), mapping=self._serialize(job))
            if opts.delay > 0:
                pipe.zadd(self._key("delayed"), {job_id: now + opts.delay})
            else:
                pipe.lpush(self._key("waiting"), job_id)
            await pipe.execute()
        logger.debug(f"Queue {self.name}: added job {job_id} ({name}) status={job.status}")
        return job

    async def _add_repeatable(self, name: str, data: Dict[str, Any], opts: JobOptions) -> Job:
        if not croniter.is_valid(opts.repeat_cron):
            raise ValueError(f"Invalid cron expression: {opts.repeat_cron}")
        digest = hashlib.md5(json.dumps(data, sort_keys=True).encode()).hexdigest()
        repeat_key = f"{name}:{opts.repeat_cron}:{digest}"
        opts.repeat_key = repeat_key
        await self.redis.hset(self._key("repeat"), repeat_key, json.dumps({
            "name": name,
            "data": data,
            "opts": opts.to_dict(),
        }))
        return await self._schedule_next_repeat(name, data, opts)

    async def _schedule_next_repeat(self, name: str, data: Dict[str, Any], opts: JobOptions) -> Job:
        now = self.clock()
        next_run = int(croniter(opts.repeat_cron, now / 1000).get_next(float) * 1000)
        job_id = f"repeat:{opts.repeat_key}:{next_run}"
        existing = await self.get_job(job_id)
        if existing:
            return existing
        run_opts = JobOptions(
            attempts=opts.attempts,
            backoff=opts.backoff,
            delay=max(next_run - now, 1),
            repeat_cron=opts.repeat_cron,
            repeat_key=opts.repeat_key,
        )
        return await self._store_new(job_id, name, data, run_opts)

    async def get_repeatable_jobs(self) -> List[Dict[str, Any]]:
        entries = await self.redis.hgetall(self._key("repeat"))
        return [{"key": key, **json.loads(value)} for key, value in entries.items()]

    # ============================================================
    # CONSUMER
    # ============================================================

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose due time has passed onto the waiting list"""
        due = await self.redis.zrangebyscore(self._key("delayed"), "-inf", self.clock())
        promoted = 0
        for job_id in due:
            # Only the client that removes the entry owns the promotion
            if await self.redis.zrem(self._key("delayed"), job_id):
                async with self.redis.pipeline(transaction=True) as pipe:
                    pipe.hset(self._job_key(job_id), "status", "waiting")
                    pipe.lpush(self._key("waiting"), job_id)
                    await pipe.execute()
                promoted += 1
        return promoted

    async def recover_stalled(self) -> int:
        """Fail active jobs whose worker stopped reporting, so they retry or land in `failed`"""
        cutoff = self.clock() - self.stall_timeout
        recovered = 0
        for job_id in await self.redis.lrange(self._key("active"), 0, -1):
            record = await self.redis.hgetall(self._job_key(job_id))
            if record and int(record.get("processed_on") or 0) > cutoff:
                continue
            # Only the client that removes the entry owns the recovery
            if not await self.redis.lrem(self._key("active"), 0, job_id):
                continue
            if not record:
                continue
            job = self._deserialize(job_id, record)
            retry = await self.fail(job, RuntimeError("job stalled: worker stopped before finishing"))
            logger.warning(f"Queue {self.name}: recovered stalled job {job_id} (retry={retry})")
            recovered += 1
        return recovered

    async def fetch_next(self) -> Optional[Job]:
        """Claim the oldest waiting job, or None when paused or empty"""
        if await self.is_paused():
            return None
        await self.recover_stalled()
        await self.promote_delayed()
        job_id = await self.redis.lmove(self._key("waiting"), self._key("active"), "RIGHT", "LEFT")
        if job_id is None:
            return None
        record = await self.redis.hgetall(self._job_key(job_id))
        if not record:
            await self.redis.lrem(self._key("active"), 0, job_id)
            return None
        job = self._deserialize(job_id, record)
        job.status = "active"
        job.processed_on = self.clock()
        await self.redis.hset(self._job_key(job_id), mapping={
            "status": job.status,
            "processed_on": str(job.processed_on),
        })
        return job

    async def _owns(self, job: Job) -> bool:
        """True while the stored record is still the run this worker claimed"""
        status, processed_on = await self.redis.hmget(self._job_key(job.id), "status", "processed_on")
        return status == "active" and processed_on == str(job.processed_on)

    async def complete(self, job: Job, result: Any = None) -> None:
        if not await self._owns(job):
            logger.info(f"Queue {self.name}: job {job.id} was cleaned or recovered while running, dropping result")
            await self._reschedule_repeat(job)
            return
        job.status = "completed"
        job.finished_on = self.clock()
        job.return_value = result
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 0, job.id)
            pipe.hset(self._job_key(job.id), mapping=self._serialize(job))
            pipe.lpush(self._key("completed"), job.id)
            await pipe.execute()
        await self._trim("completed", self.remove_on_complete)
        await self._reschedule_repeat(job)

    async def fail(self, job: Job, error: BaseException) -> bool:
        """Record a failed attempt. Returns True if the job will be retried."""
        if not await self._owns(job):
            logger.info(f"Queue {self.name}: job {job.id} was cleaned or recovered while running, dropping failure")
            await self._reschedule_repeat(job)
            return False
        job.attempts_made += 1
        job.failed_reason = str(error) or type(error).__name__
        retry = job.attempts_made < job.opts.attempts

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 0, job.id)
            if retry:
                backoff = job.opts.backoff.delay_for(job.attempts_made) if job.opts.backoff else 0
                job.status = "delayed" if backoff > 0 else "waiting"
                if backoff > 0:
                    pipe.zadd(self._key("delayed"), {job.id: self.clock() + backoff})
                else:
                    pipe.lpush(self._key("waiting"), job.id)
            else:
                job.status = "failed"
                job.finished_on = self.clock()
                pipe.lpush(self._key("failed"), job.id)
            pipe.hset(self._job_key(job.id), mapping=self._serialize(job))
            await pipe.execute()

        if not retry:
            await self._trim("failed", self.remove_on_fail)
            await self._reschedule_repeat(job)
        return retry

    async def _reschedule_repeat(self, job: Job) -> None:
        if not job.opts.repeat_key:
            return
        if not await self.redis.hexists(self._key("repeat"), job.opts.repeat_key):
            return
        await self._schedule_next_repeat(job.name, job.data, job.opts)

    async def _trim(self, state: str, keep: int) -> None:
        """Drop the oldest terminal jobs beyond the retention bound"""
        overflow = await self.redis.llen(self._key(state)) - keep
        for _ in range(max(overflow, 0)):
            job_id = await self.redis.rpop(self._key(state))
            if job_id is None:
                break
            await self.redis.delete(self._job_key(job_id))

    # ============================================================
    # INTROSPECTION & CONTROL
    # ============================================================

    async def get_job(self, job_id: str) -> Optional[Job]:
        record = await self.redis.hgetall(self._job_key(job_id))
        if not record:
            return None
        return self._deserialize(job_id, record)

    async def get_job_counts(self) -> Dict[str, int]:
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                pipe.llen(self._key("waiting"))
                pipe.llen(self._key("active"))
                pipe.llen(self._key("completed"))
                pipe.llen(self._key("failed"))
                pipe.zcard(self._key("delayed"))
                waiting, active, completed, failed, delayed = await pipe.execute()
        except RedisError as e:
            raise QueueUnavailableError(f"Queue backend unavailable: {e}")
        return {
            "waiting": waiting,
            "active": active,
            "completed": completed,
            "failed": failed,
            "delayed": delayed,
        }

    async def is_paused(self) -> bool:
        return bool(await self.redis.exists(self._key("paused")))

    async def pause(self) -> None:
        try:
            await self.redis.set(self._key("paused"), "1")
        except RedisError as e:
            raise QueueUnavailableError(f"Queue backend unavailable: {e}")
        logger.info(f"Queue {self.name} paused")

    async def resume(self) -> None:
        try:
            await self.redis.delete(self._key("paused"))
        except RedisError as e:
            raise QueueUnavailableError(f"Queue backend unavailable: {e}")
        logger.info(f"Queue {self.name} resumed")

    async def clean(self, state: str) -> int:
        """Remove every job record in a completed/failed/active list"""
        if state not in ("completed", "failed", "active"):
            raise ValueError(f"Cannot clean jobs in state {state!r}")
        try:
            job_ids = await self.redis.lrange(self._key(state), 0, -1)
            async with self.redis.pipeline(transaction=True) as pipe:
                for job_id in job_ids:
                    pipe.delete(self._job_key(job_id))
                pipe.delete(self._key(state))
                await pipe.execute()
        except RedisError as e:
            raise QueueUnavailableError(f"Queue backend unavailable: {e}")
        logger.info(f"Queue {self.name}: cleaned {len(job_ids)} {state} jobs")
        return len(job_ids)
