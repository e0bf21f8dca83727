"""Priority job queue with retries, backoff and bounded retention.

Two backends share the same contract: ``MemoryJobQueue`` for a single process
and ``RedisJobQueue`` (sorted sets) when the API and the worker run apart.
A job moves ``waiting -> active -> completed | waiting (retry) | failed``.

On Redis a reserved job carries a lease deadline. A job whose worker died
before acking is taken back once the lease runs out and counts as a failed
attempt, so it is retried with backoff or fails for good like any other error.
"""

from __future__ import annotations

import asyncio
import heapq
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Protocol

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError
from sqlalchemy.exc import InterfaceError, OperationalError

from coinbook.errors import CoinbookError, DependencyUnavailable, InvalidInput, JobLeaseExpired, PermanentJobError
from coinbook.telemetry import Telemetry

logger = logging.getLogger(__name__)

WEBHOOK_QUEUE = "webhooks"
RECALC_QUEUE = "coin-recalculation"

# orders affect user-facing stats most directly
JOB_PRIORITIES: dict[str, int] = {"orders": 1, "customers": 2, "products": 3}


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    id: str
    queue: str
    type: str
    topic: str
    payload: dict[str, Any]
    priority: int
    seq: int
    enqueued_at: float
    max_attempts: int
    attempts: int = 0
    state: JobState = JobState.WAITING
    available_at: float = 0.0
    finished_at: float | None = None
    last_error: str | None = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        return cls(**{**data, "state": JobState(data["state"])})


@dataclass(frozen=True)
class RetentionPolicy:
    completed_age: float = 3600.0
    completed_count: int = 100
    failed_age: float = 86400.0
    failed_count: int = 1000


def backoff_delay(attempt: int, base: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base, 2*base, 4*base..."""
    return base * 2 ** (attempt - 1)


RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    DependencyUnavailable,
    OperationalError,
    InterfaceError,
    RedisConnectionError,
    RedisTimeoutError,
    OSError,
    asyncio.TimeoutError,
)
PERMANENT_ERRORS: tuple[type[BaseException], ...] = (
    InvalidInput,
    PermanentJobError,
    KeyError,
    TypeError,
    ValueError,
)


def classify_error(exc: BaseException) -> bool:
    """True when the job should be retried."""
    if isinstance(exc, PERMANENT_ERRORS):
        return False
    if isinstance(exc, RETRYABLE_ERRORS):
        return True
    if isinstance(exc, CoinbookError):
        return exc.retryable
    return False


class JobQueue(Protocol):
    name: str

    async def enqueue(self, job_type: str, topic: str, payload: dict[str, Any], *, priority: int | None = None) -> Job: ...
    async def reserve(self) -> Job | None: ...
    async def complete(self, job: Job) -> None: ...
    async def fail(self, job: Job, exc: BaseException, *, retryable: bool) -> JobState: ...
    async def get(self, job_id: str) -> Job | None: ...
    async def counts(self) -> dict[str, int]: ...
    async def trim(self) -> int: ...


class _QueueBase:
    def __init__(
        self,
        name: str,
        *,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        retention: RetentionPolicy | None = None,
        lease_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.max_attempts = max_retries + 1
        self.backoff_base = backoff_base
        self.lease_seconds = lease_seconds
        self.retention = retention or RetentionPolicy()
        self.clock = clock
        self._last_stamp = 0

    def _stamp(self) -> int:
        """Microsecond enqueue timestamp, strictly increasing per queue."""
        stamp = max(int(self.clock() * 1_000_000), self._last_stamp + 1)
        self._last_stamp = stamp
        return stamp

    def _new_job(self, job_type: str, topic: str, payload: dict[str, Any], priority: int | None, seq: int) -> Job:
        stamp = self._stamp()
        return Job(
            id=f"{job_type}:{topic}:{stamp}",
            queue=self.name,
            type=job_type,
            topic=topic,
            payload=payload,
            priority=priority if priority is not None else JOB_PRIORITIES.get(job_type, 3),
            seq=seq,
            enqueued_at=stamp / 1_000_000,
            max_attempts=self.max_attempts,
        )

    def _apply_failure(self, job: Job, exc: BaseException, retryable: bool) -> JobState:
        job.last_error = f"{type(exc).__name__}: {exc}"
        job.errors.append(job.last_error)
        if retryable and job.attempts < job.max_attempts:
            job.state = JobState.WAITING
            job.available_at = self.clock() + backoff_delay(job.attempts, self.backoff_base)
        else:
            job.state = JobState.FAILED
            job.finished_at = self.clock()
        return job.state


class MemoryJobQueue(_QueueBase):
    """In-process queue ordered by (priority, enqueue order)."""

    def __init__(self, name: str, **kwargs: Any) -> None:  # noqa: ANN401
        super().__init__(name, **kwargs)
        self._seq = 0
        self._waiting: list[tuple[int, int, str]] = []
        self._delayed: list[tuple[float, int, str]] = []
        self._jobs: dict[str, Job] = {}
        self._completed: list[str] = []
        self._failed: list[str] = []
        self._available = asyncio.Event()

    async def enqueue(self, job_type: str, topic: str, payload: dict[str, Any], *, priority: int | None = None) -> Job:
        self._seq += 1
        job = self._new_job(job_type, topic, payload, priority, self._seq)
        self._jobs[job.id] = job
        heapq.heappush(self._waiting, (job.priority, job.seq, job.id))
        self._available.set()
        logger.debug("Enqueued %s on %s (priority %d)", job.id, self.name, job.priority)
        return job

    def _promote_due(self) -> None:
        now = self.clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is not None:
                heapq.heappush(self._waiting, (job.priority, job.seq, job.id))

    async def reserve(self) -> Job | None:
        self._promote_due()
        while self._waiting:
            _, _, job_id = heapq.heappop(self._waiting)
            job = self._jobs.get(job_id)
            if job is None or job.state is not JobState.WAITING:
                continue
            job.state = JobState.ACTIVE
            job.attempts += 1
            return job
        self._available.clear()
        return None

    async def wait_for_work(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._available.wait(), timeout)
        except asyncio.TimeoutError:
            pass

    async def complete(self, job: Job) -> None:
        job.state = JobState.COMPLETED
        job.finished_at = self.clock()
        self._completed.append(job.id)

    async def fail(self, job: Job, exc: BaseException, *, retryable: bool) -> JobState:
        state = self._apply_failure(job, exc, retryable)
        if state is JobState.WAITING:
            heapq.heappush(self._delayed, (job.available_at, job.seq, job.id))
        else:
            self._failed.append(job.id)
        return state

    async def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    async def counts(self) -> dict[str, int]:
        states = [j.state for j in self._jobs.values()]
        delayed = sum(1 for _, _, jid in self._delayed if jid in self._jobs and self._jobs[jid].state is JobState.WAITING)
        return {
            "waiting": states.count(JobState.WAITING) - delayed,
            "delayed": delayed,
            "active": states.count(JobState.ACTIVE),
            "completed": states.count(JobState.COMPLETED),
            "failed": states.count(JobState.FAILED),
        }

    def _trim_list(self, ids: list[str], max_age: float, max_count: int) -> tuple[list[str], int]:
        cutoff = self.clock() - max_age
        kept = [jid for jid in ids if (self._jobs[jid].finished_at or 0) >= cutoff]
        kept = kept[-max_count:] if max_count > 0 else []
        dropped = set(ids) - set(kept)
        for jid in dropped:
            self._jobs.pop(jid, None)
        return kept, len(dropped)

    async def trim(self) -> int:
        self._completed, done = self._trim_list(
            self._completed, self.retention.completed_age, self.retention.completed_count
        )
        self._failed, failed = self._trim_list(self._failed, self.retention.failed_age, self.retention.failed_count)
        return done + failed


def _text(value: str | bytes) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisJobQueue(_QueueBase):
    """Sorted-set queue shared by every process using the same Redis.

    ``active`` is scored by lease deadline rather than priority.
    """

    PRIORITY_SPAN = 10**12

    def __init__(self, redis: aioredis.Redis, name: str, **kwargs: Any) -> None:  # noqa: ANN401
        super().__init__(name, **kwargs)
        self.redis = redis
        prefix = f"queue:{name}"
        self.k_seq = f"{prefix}:seq"
        self.k_waiting = f"{prefix}:waiting"
        self.k_delayed = f"{prefix}:delayed"
        self.k_active = f"{prefix}:active"
        self.k_completed = f"{prefix}:completed"
        self.k_failed = f"{prefix}:failed"
        self.k_job = f"{prefix}:job:"

    def _score(self, job: Job) -> int:
        return job.priority * self.PRIORITY_SPAN + job.seq

    async def _save(self, job: Job) -> None:
        await self.redis.set(self.k_job + job.id, json.dumps(job.to_dict()))

    async def enqueue(self, job_type: str, topic: str, payload: dict[str, Any], *, priority: int | None = None) -> Job:
        try:
            seq = int(await self.redis.incr(self.k_seq))
            job = self._new_job(job_type, topic, payload, priority, seq)
            await self._save(job)
            await self.redis.zadd(self.k_waiting, {job.id: self._score(job)})
        except RedisError as exc:
            msg = "Job queue unavailable"
            raise DependencyUnavailable(msg) from exc
        return job

    async def get(self, job_id: str) -> Job | None:
        raw = await self.redis.get(self.k_job + job_id)
        return Job.from_dict(json.loads(raw)) if raw else None

    async def _promote_due(self, now: float) -> None:
        for job_id in await self.redis.zrangebyscore(self.k_delayed, "-inf", now):
            job = await self.get(_text(job_id))
            if await self.redis.zrem(self.k_delayed, job_id) and job is not None:
                await self.redis.zadd(self.k_waiting, {job.id: self._score(job)})

    async def _recover_expired(self, now: float) -> int:
        """Take back jobs whose lease ran out; whoever removes the lease owns the recovery."""
        recovered = 0
        for raw_id in await self.redis.zrangebyscore(self.k_active, "-inf", now):
            if not await self.redis.zrem(self.k_active, raw_id):
                continue
            job = await self.get(_text(raw_id))
            if job is None:
                continue
            expired = JobLeaseExpired(f"lease of {self.lease_seconds:g}s expired on attempt {job.attempts}")
            await self._settle(job, self._apply_failure(job, expired, retryable=True))
            logger.warning("Recovered job %s from an expired lease (now %s)", job.id, job.state.value)
            recovered += 1
        return recovered

    async def _claim(self) -> str | None:
        """Pop the head of ``waiting`` and lease it in one transaction."""
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self.k_waiting)
                    head = await pipe.zrange(self.k_waiting, 0, 0)
                    if not head:
                        return None
                    job_id = _text(head[0])
                    pipe.multi()
                    pipe.zrem(self.k_waiting, job_id)
                    pipe.zadd(self.k_active, {job_id: self.clock() + self.lease_seconds})
                    await pipe.execute()
                    return job_id
                except WatchError:
                    continue

    async def reserve(self) -> Job | None:
        try:
            now = self.clock()
            await self._recover_expired(now)
            await self._promote_due(now)

            while True:
                job_id = await self._claim()
                if job_id is None:
                    return None
                job = await self.get(job_id)
                if job is None:
                    await self.redis.zrem(self.k_active, job_id)
                    continue
                job.state = JobState.ACTIVE
                job.attempts += 1
                await self._save(job)
                return job
        except RedisError as exc:
            msg = "Job queue unavailable"
            raise DependencyUnavailable(msg) from exc

    async def _settle(self, job: Job, state: JobState) -> None:
        await self._save(job)
        if state is JobState.WAITING:
            await self.redis.zadd(self.k_delayed, {job.id: job.available_at})
        else:
            await self.redis.zadd(self.k_failed, {job.id: job.finished_at or self.clock()})

    async def complete(self, job: Job) -> None:
        job.state = JobState.COMPLETED
        job.finished_at = self.clock()
        await self._save(job)
        if not await self.redis.zrem(self.k_active, job.id):
            # finished after its lease ran out; drop the retry the recovery scheduled
            logger.warning("Job %s completed after its lease expired", job.id)
            await self.redis.zrem(self.k_delayed, job.id)
            await self.redis.zrem(self.k_waiting, job.id)
            await self.redis.zrem(self.k_failed, job.id)
        await self.redis.zadd(self.k_completed, {job.id: job.finished_at})

    async def fail(self, job: Job, exc: BaseException, *, retryable: bool) -> JobState:
        if not await self.redis.zrem(self.k_active, job.id):
            stored = await self.get(job.id)
            if stored is not None:
                # the lease recovery already recorded this attempt
                logger.warning("Job %s failed after its lease expired: %s", job.id, exc)
                return stored.state
        state = self._apply_failure(job, exc, retryable)
        await self._settle(job, state)
        return state

    async def counts(self) -> dict[str, int]:
        return {
            "waiting": int(await self.redis.zcard(self.k_waiting)),
            "delayed": int(await self.redis.zcard(self.k_delayed)),
            "active": int(await self.redis.zcard(self.k_active)),
            "completed": int(await self.redis.zcard(self.k_completed)),
            "failed": int(await self.redis.zcard(self.k_failed)),
        }

    async def _trim_set(self, key: str, max_age: float, max_count: int) -> int:
        expired = await self.redis.zrangebyscore(key, "-inf", self.clock() - max_age)
        total = int(await self.redis.zcard(key)) - len(expired)
        overflow = await self.redis.zrange(key, len(expired), len(expired) + total - max_count - 1) if total > max_count else []
        doomed = [*expired, *overflow]
        if doomed:
            await self.redis.zrem(key, *doomed)
            await self.redis.delete(*[self.k_job + _text(d) for d in doomed])
        return len(doomed)

    async def trim(self) -> int:
        return await self._trim_set(
            self.k_completed, self.retention.completed_age, self.retention.completed_count
        ) + await self._trim_set(self.k_failed, self.retention.failed_age, self.retention.failed_count)

    async def wait_for_work(self, timeout: float) -> None:
        await asyncio.sleep(timeout)


JobHandler = Callable[[Job], Awaitable[Any]]


class QueueConsumer:
    """Bounded pool of workers pulling from one queue, one job at a time each."""

    def __init__(
        self,
        queue: Any,  # noqa: ANN401
        handler: JobHandler,
        *,
        concurrency: int = 3,
        poll_interval: float = 0.5,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.telemetry = telemetry
        self.processed = 0
        self.failed = 0
        self._running = False
        self._workers: list[asyncio.Task[None]] = []

    async def process(self, job: Job) -> JobState:
        try:
            await self.handler(job)
        except Exception as exc:
            retryable = classify_error(exc)
            state = await self.queue.fail(job, exc, retryable=retryable)
            if state is JobState.FAILED:
                self.failed += 1
                logger.error("Job %s failed permanently after %d attempt(s): %s", job.id, job.attempts, exc)
                if self.telemetry is not None:
                    self.telemetry.capture_exception(
                        exc, tags={"queue": self.queue.name, "job_type": job.type}, extra={"job_id": job.id}
                    )
            else:
                logger.warning("Job %s attempt %d failed, retrying: %s", job.id, job.attempts, exc)
            return state
        await self.queue.complete(job)
        self.processed += 1
        return JobState.COMPLETED

    async def run_once(self) -> Job | None:
        job = await self.queue.reserve()
        if job is not None:
            await self.process(job)
        return job

    async def drain(self) -> int:
        """Process until nothing is immediately available; returns jobs handled."""
        handled = 0
        while await self.run_once() is not None:
            handled += 1
        return handled

    async def _worker(self, index: int) -> None:
        while self._running:
            try:
                job = await self.queue.reserve()
            except DependencyUnavailable:
                logger.warning("Queue %s unavailable; worker %d backing off", self.queue.name, index)
                await asyncio.sleep(self.poll_interval * 4)
                continue
            if job is None:
                await self.queue.wait_for_work(self.poll_interval)
                continue
            await self.process(job)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"{self.queue.name}-worker-{i}") for i in range(self.concurrency)
        ]
        logger.info("Started %d consumer(s) on queue %s", self.concurrency, self.queue.name)

    async def stop(self) -> None:
        self._running = False
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
