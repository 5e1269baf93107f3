"""Tests for the Redis broker and the pipeline running on Redis (fakeredis)."""

import asyncio
import time

import pytest

from fakes import ADDRESS, GITHUB_RESULT, SUBJECT, FakeCollector, FakeCredentials, make_collectors
from klyro.config import Settings
from klyro.errors import UpstreamError
from klyro.models import ALL_STAGES, OverallStatus, StageName, StageStatus
from klyro.queue import (
    Backoff,
    BackoffType,
    JobOptions,
    JobQueue,
    JobRecord,
    JobState,
    StalledJobError,
)
from klyro.queue.redis_broker import RedisBroker
from klyro.runtime import Runtime


def record(job_id, attempts=1):
    return JobRecord.new(job_id, {"id": job_id}, JobOptions(attempts=attempts))


# ─── Broker primitives ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_add_is_unique_per_id(fake_redis):
    broker = RedisBroker(fake_redis, "q", prefix="t")
    stored, created = await broker.add(record("a"))
    again, created_again = await broker.add(record("a"))
    assert created is True
    assert created_again is False
    assert again.id == stored.id
    assert await fake_redis.llen("t:q:wait") == 1


@pytest.mark.asyncio
async def test_concurrent_add_creates_once(fake_redis):
    broker = RedisBroker(fake_redis, "q", prefix="t")
    results = await asyncio.gather(*(broker.add(record("same")) for _ in range(10)))
    assert sum(created for _, created in results) == 1
    assert (await broker.counts()).waiting == 1


@pytest.mark.asyncio
async def test_fetch_complete_lifecycle(fake_redis):
    broker = RedisBroker(fake_redis, "q", prefix="t")
    await broker.add(record("a"))

    claimed = await broker.fetch_next()
    assert claimed.state == JobState.ACTIVE
    assert claimed.attempts_made == 1
    assert (await broker.counts()).active == 1
    assert await broker.fetch_next() is None

    done = await broker.complete("a", {"ok": True})
    assert done.state == JobState.COMPLETED
    assert (await broker.get("a")).result == {"ok": True}
    counts = await broker.counts()
    assert (counts.active, counts.completed) == (0, 1)


@pytest.mark.asyncio
async def test_terminal_job_replaced_on_request(fake_redis):
    broker = RedisBroker(fake_redis, "q", prefix="t")
    await broker.add(record("a"))
    await broker.fetch_next()
    await broker.fail("a", "boom")
    assert (await broker.counts()).failed == 1

    _, created = await broker.add(record("a"))
    assert created is False
    _, created = await broker.add(record("a"), replace=True)
    assert created is True
    counts = await broker.counts()
    assert (counts.waiting, counts.failed) == (1, 0)


@pytest.mark.asyncio
async def test_delayed_retry_is_promoted_when_due(fake_redis):
    broker = RedisBroker(fake_redis, "q", prefix="t")
    await broker.add(record("a", attempts=2))
    await broker.fetch_next()

    delayed = await broker.fail("a", "flaky", retry_at=time.time() + 0.1)
    assert delayed.state == JobState.DELAYED
    assert await broker.fetch_next() is None
    assert (await broker.counts()).waiting == 1

    await asyncio.sleep(0.15)
    again = await broker.fetch_next()
    assert again.id == "a"
    assert again.attempts_made == 2
    assert again.failed_reason == "flaky"


@pytest.mark.asyncio
async def test_paused_broker_hands_out_nothing(fake_redis):
    broker = RedisBroker(fake_redis, "q", prefix="t")
    await broker.add(record("a"))
    await broker.set_paused(True)
    assert await broker.is_paused()
    assert await broker.fetch_next() is None
    await broker.set_paused(False)
    assert (await broker.fetch_next()).id == "a"


@pytest.mark.asyncio
async def test_queue_retries_on_redis(fake_redis):
    queue = JobQueue("q", RedisBroker(fake_redis, "q", prefix="t"), poll_interval=0.01,
                     default_options=JobOptions(attempts=3, backoff=Backoff(BackoffType.FIXED, 0.01)))
    calls = []

    async def handler(job):
        calls.append(job.attempts_made)
        if len(calls) < 2:
            raise UpstreamError("test", "flaky")
        return "ok"

    queue.register_worker(handler, concurrency=2)
    await queue.start()
    await queue.enqueue("job", {})
    assert await queue.wait_idle(3)
    await queue.close()
    assert calls == [1, 2]
    assert (await queue.get_job("job")).state == JobState.COMPLETED


@pytest.mark.asyncio
async def test_job_cut_off_by_shutdown_runs_on_next_worker(fake_redis):
    started = asyncio.Event()

    async def stuck(job):
        started.set()
        await asyncio.sleep(10)

    q1 = JobQueue("q", RedisBroker(fake_redis, "q", prefix="t"), poll_interval=0.01)
    q1.register_worker(stuck)
    await q1.start()
    await q1.enqueue("job", {"n": 1})
    await asyncio.wait_for(started.wait(), 2)
    await q1.close(timeout=0.1)

    held = await q1.get_job("job")
    assert held.state == JobState.WAITING
    assert held.attempts_made == 0
    assert (await q1.counts()).active == 0

    ran = []

    async def quick(job):
        ran.append(job.attempts_made)
        return "ok"

    q2 = JobQueue("q", RedisBroker(fake_redis, "q", prefix="t"), poll_interval=0.01)
    q2.register_worker(quick)
    await q2.start()
    assert await q2.wait_idle(3)
    await q2.close()
    assert ran == [1]
    assert (await q2.get_job("job")).state == JobState.COMPLETED


@pytest.mark.asyncio
async def test_claim_of_dead_worker_is_recovered_after_lease(fake_redis):
    broker = RedisBroker(fake_redis, "q", prefix="t")
    await broker.add(record("a", attempts=3))

    # claimed by a worker that never reports back
    claimed = await broker.fetch_next(lease=0.05)
    assert claimed.attempts_made == 1
    assert await broker.fetch_next() is None

    await asyncio.sleep(0.1)
    again = await broker.fetch_next()
    assert again.id == "a"
    assert again.attempts_made == 2
    assert (await broker.counts()).active == 1


@pytest.mark.asyncio
async def test_renewed_lease_is_not_recovered(fake_redis):
    broker = RedisBroker(fake_redis, "q", prefix="t")
    await broker.add(record("a"))
    await broker.fetch_next(lease=0.05)
    await broker.extend_lease("a", 5)

    await asyncio.sleep(0.1)
    assert await broker.fetch_next() is None
    assert (await broker.counts()).active == 1


@pytest.mark.asyncio
async def test_heartbeat_keeps_long_job_with_one_worker(fake_redis):
    calls = []

    async def slow(job):
        calls.append(job.attempts_made)
        await asyncio.sleep(0.3)
        return "ok"

    queue = JobQueue("q", RedisBroker(fake_redis, "q", prefix="t"), poll_interval=0.01, lease=0.1)
    queue.register_worker(slow, concurrency=2)
    await queue.start()
    await queue.enqueue("job", {})
    assert await queue.wait_idle(3)
    await queue.close()
    assert calls == [1]


@pytest.mark.asyncio
async def test_job_stalled_on_last_attempt_fails(fake_redis):
    broker = RedisBroker(fake_redis, "q", prefix="t")
    queue = JobQueue("q", broker, poll_interval=0.01, default_options=JobOptions(attempts=1))
    await queue.enqueue("job", {})
    await broker.fetch_next(lease=0.01)
    await asyncio.sleep(0.05)

    failures = []
    calls = []
    queue.on("failed", lambda job, err: failures.append((job.id, type(err))))

    async def handler(job):
        calls.append(job.id)

    queue.register_worker(handler)
    await queue.start()
    assert await queue.wait_idle(3)
    await queue.close()
    assert calls == []
    assert failures == [("job", StalledJobError)]
    assert (await queue.get_job("job")).state == JobState.FAILED


@pytest.mark.asyncio
async def test_pipeline_finishes_after_worker_restart(fake_redis):
    """Every stage ends COMPLETED or FAILED even when workers stop mid-run."""
    github = FakeCollector(StageName.GITHUB_DATA, GITHUB_RESULT, delay=0.5)
    settings = Settings(backend="redis", key_prefix="restart", worker_concurrency=4)

    first = Runtime.build(settings, collectors=make_collectors(githubData=github),
                          credentials=FakeCredentials(), redis=fake_redis)
    await first.start()
    await first.orchestrator.submit(SUBJECT, [ADDRESS])
    while not github.calls:
        await asyncio.sleep(0.01)
    await first.queue.close(timeout=0.05)

    stuck = await first.orchestrator.status(SUBJECT)
    assert stuck.stages[StageName.GITHUB_DATA] == StageStatus.PROCESSING

    github.delay = 0
    second = Runtime.build(settings, collectors=make_collectors(githubData=github),
                           credentials=FakeCredentials(), redis=fake_redis)
    await second.start()
    try:
        assert await second.queue.wait_idle(5)
        job = await second.orchestrator.status(SUBJECT)
    finally:
        await second.orchestrator.close()

    assert all(job.stages[s] in (StageStatus.COMPLETED, StageStatus.FAILED) for s in ALL_STAGES)
    assert job.overall_status == OverallStatus.COMPLETED
    assert len(github.calls) == 2


# ─── Runtime on Redis ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_runtime_end_to_end_on_redis(fake_redis):
    settings = Settings(backend="redis", key_prefix="e2e", worker_concurrency=4)
    runtime = Runtime.build(settings, collectors=make_collectors(),
                            credentials=FakeCredentials(), redis=fake_redis)
    assert await runtime.ping() is True

    await runtime.start()
    try:
        sub = await runtime.orchestrator.submit(SUBJECT, [ADDRESS])
        assert sub.created is True
        assert await runtime.queue.wait_idle(5)
        job = await runtime.orchestrator.status(SUBJECT)
    finally:
        await runtime.close()

    assert job.overall_status == OverallStatus.COMPLETED
    assert job.credential_result.credential_hash == "0xhash"


@pytest.mark.asyncio
async def test_progress_and_queue_share_prefix(fake_redis):
    settings = Settings(backend="redis", key_prefix="shared")
    runtime = Runtime.build(settings, collectors=make_collectors(),
                            credentials=FakeCredentials(), redis=fake_redis)
    await runtime.orchestrator.submit(SUBJECT, [ADDRESS])

    keys = set(await fake_redis.keys("shared:*"))
    assert "shared:analysis:wait" in keys
    assert "shared:analysis:job:octocat:githubData" in keys
    assert "shared:job:octocat" in keys
