"""
Progress store: one JSON document per Subject Key with a TTL.

Every write goes through :meth:`ProgressStore.update`, an atomic
compare-and-set. Callers express a transition as a pure function of the
current document, so concurrent callbacks can never both win the same
transition.

Backends: MemoryProgressStore, RedisProgressStore
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from redis.exceptions import WatchError

from klyro.models import AnalysisJob

logger = logging.getLogger(__name__)

Mutation = Callable[[Optional[AnalysisJob]], Optional[AnalysisJob]]

MAX_CAS_RETRIES = 50


def merge_documents(base: dict, incoming: dict) -> dict:
    """Deep-merge two dicts. Nested dicts merge recursively, other values from ``incoming`` win.

    When callers write disjoint top-level sections the result does not depend
    on the order the sections arrive in.
    """
    out = dict(base)
    for key, value in incoming.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = merge_documents(out[key], value)
        else:
            out[key] = value
    return out


# ─── Abstract Store ────────────────────────────────────────────────

class ProgressStore(ABC):
    """Keyed document store with atomic read-modify-write."""

    def __init__(self, *, ttl: int = 7 * 24 * 3600, prefix: str = "klyro"):
        self.ttl = ttl
        self.prefix = prefix

    def key(self, subject_key: str) -> str:
        return f"{self.prefix}:job:{subject_key}"

    @abstractmethod
    async def get(self, subject_key: str) -> Optional[AnalysisJob]: ...

    @abstractmethod
    async def update(self, subject_key: str, mutate: Mutation) -> tuple[Optional[AnalysisJob], bool]:
        """Apply ``mutate`` atomically.

        ``mutate`` receives the current document (None if absent or expired)
        and returns the replacement, or None to leave it untouched. It may be
        called more than once under contention and must not have side
        effects. Returns ``(document, changed)``.
        """

    @abstractmethod
    async def delete(self, subject_key: str) -> bool: ...

    async def close(self) -> None:
        return None


# ─── Memory Store ──────────────────────────────────────────────────

class MemoryProgressStore(ProgressStore):
    """In-process store. Documents are kept JSON-encoded; updates are serialized by a lock."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    def _load(self, key: str) -> Optional[AnalysisJob]:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at <= time.time():
            del self._data[key]
            return None
        return AnalysisJob.from_dict(json.loads(raw))

    async def get(self, subject_key: str) -> Optional[AnalysisJob]:
        return self._load(self.key(subject_key))

    async def update(self, subject_key, mutate):
        key = self.key(subject_key)
        async with self._lock:
            current = self._load(key)
            new = mutate(current)
            if new is None:
                return current, False
            self._data[key] = (json.dumps(new.to_dict()), time.time() + self.ttl)
            return new, True

    async def delete(self, subject_key: str) -> bool:
        return self._data.pop(self.key(subject_key), None) is not None


# ─── Redis Store ───────────────────────────────────────────────────

class RedisProgressStore(ProgressStore):
    """Documents as JSON strings; updates use WATCH/MULTI optimistic transactions."""

    def __init__(self, redis, **kwargs):
        super().__init__(**kwargs)
        self._redis = redis

    async def get(self, subject_key: str) -> Optional[AnalysisJob]:
        raw = await self._redis.get(self.key(subject_key))
        return AnalysisJob.from_dict(json.loads(raw)) if raw else None

    async def update(self, subject_key, mutate):
        key = self.key(subject_key)
        async with self._redis.pipeline(transaction=True) as pipe:
            for attempt in range(MAX_CAS_RETRIES):
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    current = AnalysisJob.from_dict(json.loads(raw)) if raw else None
                    new = mutate(current)
                    if new is None:
                        await pipe.unwatch()
                        return current, False
                    pipe.multi()
                    pipe.set(key, json.dumps(new.to_dict()), ex=self.ttl)
                    await pipe.execute()
                    return new, True
                except WatchError:
                    logger.debug("CAS conflict on %s (attempt %d)", key, attempt + 1)
                    continue
        raise RuntimeError(f"Progress update for {subject_key} lost {MAX_CAS_RETRIES} races")

    async def delete(self, subject_key: str) -> bool:
        return bool(await self._redis.delete(self.key(subject_key)))
