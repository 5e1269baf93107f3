"""Redis-backed broker (redis-py asyncio).

Key layout under ``{prefix}:{queue}``::

    :job:<id>     JSON job record
    :wait         list of waiting ids (FIFO)
    :delayed      sorted set of ids scored by run_at
    :active       sorted set of claimed ids scored by lease expiry
    :completed    set of completed ids
    :failed       set of failed ids
    :paused       present while the queue is paused

A claim moves an id from ``:wait`` to ``:active`` in one transaction. Workers
renew their lease while the handler runs; an id whose lease ran out belongs
to a worker that died, and the next ``fetch_next`` puts it back on ``:wait``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from redis.exceptions import WatchError

from .base import DEFAULT_LEASE, Broker, JobCounts, JobRecord, JobState

logger = logging.getLogger(__name__)

MAX_WATCH_RETRIES = 50


class RedisBroker(Broker):
    def __init__(self, redis, queue_name: str, *, prefix: str = "klyro"):
        # client must be created with decode_responses=True
        self._redis = redis
        self._base = f"{prefix}:{queue_name}"

    def _job_key(self, job_id: str) -> str:
        return f"{self._base}:job:{job_id}"

    @property
    def _wait(self) -> str:
        return f"{self._base}:wait"

    @property
    def _delayed(self) -> str:
        return f"{self._base}:delayed"

    @property
    def _active(self) -> str:
        return f"{self._base}:active"

    @property
    def _completed(self) -> str:
        return f"{self._base}:completed"

    @property
    def _failed(self) -> str:
        return f"{self._base}:failed"

    @property
    def _paused(self) -> str:
        return f"{self._base}:paused"

    async def add(self, record: JobRecord, *, replace: bool = False) -> tuple[JobRecord, bool]:
        key = self._job_key(record.id)
        record.state = JobState.WAITING
        async with self._redis.pipeline(transaction=True) as pipe:
            for _ in range(MAX_WATCH_RETRIES):
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    existing = JobRecord.from_json(raw) if raw else None
                    if existing is not None and (existing.state.in_flight or not replace):
                        await pipe.unwatch()
                        return existing, False
                    pipe.multi()
                    pipe.set(key, record.to_json())
                    pipe.srem(self._completed, record.id)
                    pipe.srem(self._failed, record.id)
                    pipe.rpush(self._wait, record.id)
                    await pipe.execute()
                    return record, True
                except WatchError:
                    logger.debug("Concurrent write on %s, retrying add", key)
                    continue
        raise RuntimeError(f"Could not add job {record.id}: too much contention")

    async def fetch_next(self, lease: float = DEFAULT_LEASE) -> Optional[JobRecord]:
        if await self._redis.exists(self._paused):
            return None
        now = time.time()
        await self._requeue_stalled(now)
        await self._promote_delayed(now)
        async with self._redis.pipeline(transaction=True) as pipe:
            for _ in range(MAX_WATCH_RETRIES):
                try:
                    await pipe.watch(self._wait)
                    job_id = await pipe.lindex(self._wait, 0)
                    if job_id is None:
                        await pipe.unwatch()
                        return None
                    key = self._job_key(job_id)
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    record = JobRecord.from_json(raw) if raw else None
                    pipe.multi()
                    pipe.lpop(self._wait)
                    if record is None or record.state != JobState.WAITING:
                        await pipe.execute()
                        continue
                    record.state = JobState.ACTIVE
                    record.attempts_made += 1
                    pipe.set(key, record.to_json())
                    pipe.zadd(self._active, {job_id: time.time() + lease})
                    await pipe.execute()
                    return record
                except WatchError:
                    continue
        return None

    async def extend_lease(self, job_id: str, lease: float) -> None:
        # xx: a claim that was already recovered is not revived
        await self._redis.zadd(self._active, {job_id: time.time() + lease}, xx=True)

    async def release(self, job_id: str) -> Optional[JobRecord]:
        return await self._requeue(job_id, refund=True)

    async def _requeue_stalled(self, now: float) -> None:
        for job_id in await self._redis.zrangebyscore(self._active, 0, now):
            record = await self._requeue(job_id, refund=False, expired_by=now)
            if record is not None:
                logger.warning("Requeued stalled job %s (attempt %d)", job_id, record.attempts_made)

    async def _requeue(self, job_id: str, *, refund: bool,
                       expired_by: Optional[float] = None) -> Optional[JobRecord]:
        """Move a claimed id back to the head of ``:wait``.

        With ``expired_by`` the move only happens if the lease is still
        older than that time, so a heartbeat racing the recovery wins.
        """
        key = self._job_key(job_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            for _ in range(MAX_WATCH_RETRIES):
                try:
                    await pipe.watch(key, self._active)
                    expires = await pipe.zscore(self._active, job_id)
                    raw = await pipe.get(key)
                    if expires is None or (expired_by is not None and expires > expired_by):
                        await pipe.unwatch()
                        return None
                    record = JobRecord.from_json(raw) if raw else None
                    pipe.multi()
                    pipe.zrem(self._active, job_id)
                    if record is not None and record.state == JobState.ACTIVE:
                        record.state = JobState.WAITING
                        if refund:
                            record.attempts_made = max(record.attempts_made - 1, 0)
                        pipe.set(key, record.to_json())
                        pipe.lpush(self._wait, job_id)
                    await pipe.execute()
                    return record if record is not None and record.state == JobState.WAITING else None
                except WatchError:
                    continue
        return None

    async def _promote_delayed(self, now: float) -> None:
        due = await self._redis.zrangebyscore(self._delayed, 0, now)
        for job_id in due:
            # zrem is the claim: only one worker moves a given id
            if not await self._redis.zrem(self._delayed, job_id):
                continue
            raw = await self._redis.get(self._job_key(job_id))
            if not raw:
                continue
            record = JobRecord.from_json(raw)
            record.state = JobState.WAITING
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(job_id), record.to_json())
                pipe.rpush(self._wait, job_id)
                await pipe.execute()

    async def _load(self, job_id: str) -> JobRecord:
        raw = await self._redis.get(self._job_key(job_id))
        if not raw:
            raise KeyError(job_id)
        return JobRecord.from_json(raw)

    async def complete(self, job_id: str, result: Any) -> JobRecord:
        record = await self._load(job_id)
        record.state = JobState.COMPLETED
        record.result = result
        record.finished_at = time.time()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job_id), record.to_json())
            pipe.zrem(self._active, job_id)
            pipe.sadd(self._completed, job_id)
            await pipe.execute()
        return record

    async def fail(self, job_id: str, reason: str, *, retry_at: Optional[float] = None) -> JobRecord:
        record = await self._load(job_id)
        record.failed_reason = reason
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._active, job_id)
            if retry_at is None:
                record.state = JobState.FAILED
                record.finished_at = time.time()
                pipe.sadd(self._failed, job_id)
            else:
                record.state = JobState.DELAYED
                record.run_at = retry_at
                pipe.zadd(self._delayed, {job_id: retry_at})
            pipe.set(self._job_key(job_id), record.to_json())
            await pipe.execute()
        return record

    async def get(self, job_id: str) -> Optional[JobRecord]:
        raw = await self._redis.get(self._job_key(job_id))
        return JobRecord.from_json(raw) if raw else None

    async def counts(self) -> JobCounts:
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.llen(self._wait)
            pipe.zcard(self._delayed)
            pipe.zcard(self._active)
            pipe.scard(self._completed)
            pipe.scard(self._failed)
            waiting, delayed, active, completed, failed = await pipe.execute()
        return JobCounts(
            waiting=waiting + delayed,
            active=active,
            completed=completed,
            failed=failed,
        )

    async def set_paused(self, paused: bool) -> None:
        if paused:
            await self._redis.set(self._paused, "1")
        else:
            await self._redis.delete(self._paused)

    async def is_paused(self) -> bool:
        return bool(await self._redis.exists(self._paused))
