"""JobQueue: typed producer/worker front-end over a :class:`Broker`."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Generic, Optional

from .base import (
    DEFAULT_LEASE,
    Broker,
    Job,
    JobCounts,
    JobHandle,
    JobOptions,
    JobRecord,
    P,
    StalledJobError,
    UnrecoverableError,
)

logger = logging.getLogger(__name__)

EVENTS = ("completed", "failed", "error")

Handler = Callable[[Job[P]], Awaitable[Any]]


def _identity(value):
    return value


class JobQueue(Generic[P]):
    """Durable job queue with caller-chosen ids, retries and completion events.

    ``encode``/``decode`` convert between the typed payload and the dict the
    broker stores. Handlers run inside asyncio tasks started by
    :meth:`register_worker`; each task processes one job at a time.

    A claimed job is held for ``lease`` seconds and renewed every
    ``lease / 3`` while its handler runs. If the worker is cancelled the job
    goes back to the wait list with its attempt refunded.
    """

    def __init__(
        self,
        name: str,
        broker: Broker,
        *,
        encode: Callable[[P], dict] = _identity,
        decode: Callable[[dict], P] = _identity,
        default_options: Optional[JobOptions] = None,
        poll_interval: float = 0.05,
        lease: float = DEFAULT_LEASE,
    ):
        if lease <= 0:
            raise ValueError("lease must be > 0")
        self.name = name
        self.broker = broker
        self._encode = encode
        self._decode = decode
        self.default_options = default_options or JobOptions()
        self.poll_interval = poll_interval
        self.lease = lease
        self._listeners: dict[str, list[Callable]] = {e: [] for e in EVENTS}
        self._handler: Optional[Handler] = None
        self._concurrency = 0
        self._tasks: list[asyncio.Task] = []
        self._wakeup = asyncio.Event()
        self._running = False
        self._inflight = 0

    # ── producer side ──

    async def enqueue(self, job_id: str, payload: P, options: Optional[JobOptions] = None,
                      *, replace: bool = False) -> JobHandle:
        """Add a job unless one with ``job_id`` is already queued or running.

        A terminal job under the same id is replaced only with ``replace=True``.
        """
        record = JobRecord.new(job_id, self._encode(payload), options or self.default_options)
        stored, created = await self.broker.add(record, replace=replace)
        if created:
            logger.debug("Queued %s on %s", job_id, self.name)
            self._wakeup.set()
        else:
            logger.debug("Coalesced %s on %s (state=%s)", job_id, self.name, stored.state.value)
        return JobHandle(id=job_id, created=created, state=stored.state)

    async def get_job(self, job_id: str) -> Optional[Job[P]]:
        record = await self.broker.get(job_id)
        return self._to_job(record) if record else None

    async def counts(self) -> JobCounts:
        return await self.broker.counts()

    async def pause(self) -> None:
        await self.broker.set_paused(True)
        logger.info("Queue %s paused", self.name)

    async def resume(self) -> None:
        await self.broker.set_paused(False)
        self._wakeup.set()
        logger.info("Queue %s resumed", self.name)

    async def is_paused(self) -> bool:
        return await self.broker.is_paused()

    # ── events ──

    def on(self, event: str, listener: Callable) -> None:
        """Subscribe to ``completed(job, result)``, ``failed(job, error)`` or ``error(exc)``."""
        if event not in self._listeners:
            raise ValueError(f"Unknown event {event!r}")
        self._listeners[event].append(listener)

    async def _emit(self, event: str, *args) -> None:
        for listener in list(self._listeners[event]):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.exception("Listener for %s on %s raised", event, self.name)
                if event != "error":
                    await self._emit("error", exc)

    # ── worker side ──

    def register_worker(self, handler: Handler, concurrency: int = 1) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._handler = handler
        self._concurrency = concurrency
        if self._running:
            self._spawn()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        if self._handler is not None:
            self._spawn()
        logger.info("Queue %s started (concurrency=%d)", self.name, self._concurrency)

    def _spawn(self) -> None:
        while len(self._tasks) < self._concurrency:
            idx = len(self._tasks)
            self._tasks.append(asyncio.create_task(self._work(), name=f"{self.name}-worker-{idx}"))

    async def close(self, timeout: float = 10.0) -> None:
        """Stop the workers. In-flight handlers get ``timeout`` seconds to finish."""
        self._running = False
        self._wakeup.set()
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            for task in pending:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tasks = []
        await self.broker.close()
        logger.info("Queue %s closed", self.name)

    async def wait_idle(self, timeout: float = 10.0) -> bool:
        """Wait until nothing is waiting, delayed or being processed."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            counts = await self.broker.counts()
            if counts.waiting == 0 and counts.active == 0 and self._inflight == 0:
                return True
            await asyncio.sleep(self.poll_interval / 2)
        return False

    async def _work(self) -> None:
        while self._running:
            try:
                record = await self.broker.fetch_next(self.lease)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Broker fetch failed on %s", self.name)
                await self._emit("error", exc)
                await asyncio.sleep(self.poll_interval)
                continue

            if record is None:
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue

            self._inflight += 1
            try:
                await self._process(record)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Bookkeeping failed for job %s", record.id)
                await self._emit("error", exc)
            finally:
                self._inflight -= 1

    async def _process(self, record: JobRecord) -> None:
        if record.attempts_made > record.attempts:
            # claimed again after its worker died on the last allowed attempt
            await self._on_handler_error(
                record, StalledJobError(f"job stalled after {record.attempts} attempt(s)"))
            return

        job = self._to_job(record)
        heartbeat = asyncio.create_task(self._heartbeat(record.id))
        try:
            result = await self._handler(job)
        except asyncio.CancelledError:
            await self._release(record)
            raise
        except Exception as exc:
            await self._on_handler_error(record, exc)
            return
        finally:
            heartbeat.cancel()
        stored = await self.broker.complete(record.id, result)
        await self._emit("completed", self._to_job(stored), result)

    async def _heartbeat(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.lease / 3)
            try:
                await self.broker.extend_lease(job_id, self.lease)
            except Exception:
                logger.warning("Could not extend lease on %s", job_id, exc_info=True)

    async def _release(self, record: JobRecord) -> None:
        try:
            await self.broker.release(record.id)
        except Exception:
            # the lease runs out and the job is recovered as stalled
            logger.exception("Could not release job %s on shutdown", record.id)
            return
        logger.info("Released job %s back to %s", record.id, self.name)

    async def _on_handler_error(self, record: JobRecord, exc: Exception) -> None:
        reason = str(exc) or type(exc).__name__
        options = record.options
        exhausted = record.attempts_made >= options.attempts
        if isinstance(exc, UnrecoverableError) or exhausted:
            stored = await self.broker.fail(record.id, reason)
            logger.warning("Job %s failed after %d attempt(s): %s",
                           record.id, record.attempts_made, reason)
            await self._emit("failed", self._to_job(stored), exc)
            return

        delay = options.backoff.delay_for(record.attempts_made)
        retry_after = getattr(exc, "retry_after", None)
        if isinstance(retry_after, (int, float)) and retry_after > delay:
            delay = float(retry_after)
        await self.broker.fail(record.id, reason, retry_at=time.time() + delay)
        logger.info("Job %s attempt %d/%d failed (%s), retrying in %.2fs",
                    record.id, record.attempts_made, options.attempts, reason, delay)

    def _to_job(self, record: JobRecord) -> Job[P]:
        return Job(
            id=record.id,
            payload=self._decode(record.data),
            options=record.options,
            state=record.state,
            attempts_made=record.attempts_made,
            failed_reason=record.failed_reason,
        )
