"""In-process broker. Jobs live as long as the event loop's process."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import replace as _copy
from typing import Any, Optional

from .base import DEFAULT_LEASE, Broker, JobCounts, JobRecord, JobState


class MemoryBroker(Broker):
    """Single-process broker used for tests and ``KLYRO_BACKEND=memory``.

    Every method runs without awaiting, so each call is atomic with respect
    to other coroutines on the same loop.
    """

    def __init__(self):
        self._jobs: dict[str, JobRecord] = {}
        self._wait: deque[str] = deque()
        self._paused = False

    async def add(self, record: JobRecord, *, replace: bool = False) -> tuple[JobRecord, bool]:
        existing = self._jobs.get(record.id)
        if existing is not None and (existing.state.in_flight or not replace):
            return _copy(existing), False
        record.state = JobState.WAITING
        self._jobs[record.id] = record
        self._wait.append(record.id)
        return _copy(record), True

    async def fetch_next(self, lease: float = DEFAULT_LEASE) -> Optional[JobRecord]:
        # claims die with the process, so the lease is not tracked
        if self._paused:
            return None
        self._promote_delayed(time.time())
        while self._wait:
            job_id = self._wait.popleft()
            record = self._jobs.get(job_id)
            if record is None or record.state != JobState.WAITING:
                continue
            record.state = JobState.ACTIVE
            record.attempts_made += 1
            return _copy(record)
        return None

    def _promote_delayed(self, now: float) -> None:
        due = sorted(
            (r for r in self._jobs.values() if r.state == JobState.DELAYED and r.run_at <= now),
            key=lambda r: r.run_at,
        )
        for record in due:
            record.state = JobState.WAITING
            self._wait.append(record.id)

    async def release(self, job_id: str) -> Optional[JobRecord]:
        record = self._jobs.get(job_id)
        if record is None or record.state != JobState.ACTIVE:
            return None
        record.state = JobState.WAITING
        record.attempts_made = max(record.attempts_made - 1, 0)
        self._wait.appendleft(job_id)
        return _copy(record)

    async def complete(self, job_id: str, result: Any) -> JobRecord:
        record = self._jobs[job_id]
        record.state = JobState.COMPLETED
        record.result = result
        record.finished_at = time.time()
        return _copy(record)

    async def fail(self, job_id: str, reason: str, *, retry_at: Optional[float] = None) -> JobRecord:
        record = self._jobs[job_id]
        record.failed_reason = reason
        if retry_at is None:
            record.state = JobState.FAILED
            record.finished_at = time.time()
        else:
            record.state = JobState.DELAYED
            record.run_at = retry_at
        return _copy(record)

    async def get(self, job_id: str) -> Optional[JobRecord]:
        record = self._jobs.get(job_id)
        return _copy(record) if record else None

    async def counts(self) -> JobCounts:
        counts = JobCounts()
        for record in self._jobs.values():
            if record.state in (JobState.WAITING, JobState.DELAYED):
                counts.waiting += 1
            elif record.state == JobState.ACTIVE:
                counts.active += 1
            elif record.state == JobState.COMPLETED:
                counts.completed += 1
            else:
                counts.failed += 1
        return counts

    async def set_paused(self, paused: bool) -> None:
        self._paused = paused

    async def is_paused(self) -> bool:
        return self._paused
