"""Runtime: builds the storage backends, queue and orchestrator from Settings."""

from __future__ import annotations

import logging
from typing import Mapping, Optional

from klyro.collectors import build_collectors
from klyro.collectors.base import BaseCollector
from klyro.config import Settings
from klyro.credentials import CredentialService
from klyro.models import StageName
from klyro.orchestrator import AnalysisOrchestrator, StagePayload
from klyro.progress import MemoryProgressStore, ProgressStore, RedisProgressStore
from klyro.queue import Broker, JobQueue, MemoryBroker
from klyro.scoring import ScoreConfigLoader

logger = logging.getLogger(__name__)

QUEUE_NAME = "analysis"


class Runtime:
    """Everything a process needs to submit analyses and (optionally) run workers.

    ``redis`` is the shared redis.asyncio client when the redis backend is in
    use; the runtime owns it and closes it last.
    """

    def __init__(self, settings: Settings, orchestrator: AnalysisOrchestrator, *, redis=None):
        self.settings = settings
        self.orchestrator = orchestrator
        self.redis = redis
        self._started = False

    @property
    def queue(self) -> JobQueue[StagePayload]:
        return self.orchestrator.queue

    @property
    def store(self) -> ProgressStore:
        return self.orchestrator.store

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        *,
        collectors: Optional[Mapping[StageName, BaseCollector]] = None,
        credentials: Optional[CredentialService] = None,
        redis=None,
    ) -> "Runtime":
        settings = settings or Settings.from_env()

        broker: Broker
        store: ProgressStore
        if settings.backend == "memory":
            broker = MemoryBroker()
            store = MemoryProgressStore(ttl=settings.progress_ttl, prefix=settings.key_prefix)
        else:
            from redis.asyncio import Redis

            from klyro.queue.redis_broker import RedisBroker

            if redis is None:
                redis = Redis.from_url(settings.redis_url, decode_responses=True)
            broker = RedisBroker(redis, QUEUE_NAME, prefix=settings.key_prefix)
            store = RedisProgressStore(redis, ttl=settings.progress_ttl, prefix=settings.key_prefix)

        queue: JobQueue[StagePayload] = JobQueue(
            QUEUE_NAME, broker,
            encode=StagePayload.to_dict,
            decode=StagePayload.from_dict,
            lease=settings.job_lease,
        )
        orchestrator = AnalysisOrchestrator(
            store,
            queue,
            collectors if collectors is not None else build_collectors(settings),
            credentials or CredentialService.from_settings(settings),
            score_config=ScoreConfigLoader(settings.score_config_path),
            retry_policy=settings.retry_policy,
            refresh_after=settings.refresh_after,
            server_issuance=settings.server_issuance,
        )
        logger.info("Runtime built (backend=%s, workers=%s)",
                    settings.backend, settings.run_workers)
        return cls(settings, orchestrator, redis=redis)

    async def start(self, *, workers: Optional[bool] = None) -> None:
        if self._started:
            return
        run_workers = self.settings.run_workers if workers is None else workers
        if run_workers:
            self.orchestrator.register_workers(self.settings.worker_concurrency)
            await self.orchestrator.start()
        self._started = True

    async def close(self) -> None:
        await self.orchestrator.close()
        if self.redis is not None:
            await self.redis.aclose()
        self._started = False

    async def ping(self) -> bool:
        """Backend connectivity for the health endpoint."""
        if self.redis is None:
            return True
        try:
            return bool(await self.redis.ping())
        except Exception as e:
            logger.warning("Redis ping failed: %s", e)
            return False
