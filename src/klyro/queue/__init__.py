"""Durable job queue: unique job ids, bounded retries with backoff, completion events."""

from .base import (
    Backoff,
    BackoffType,
    Broker,
    Job,
    JobCounts,
    JobHandle,
    JobOptions,
    JobRecord,
    JobState,
    StalledJobError,
    UnrecoverableError,
)
from .manager import JobQueue
from .memory import MemoryBroker

__all__ = [
    "Backoff",
    "BackoffType",
    "Broker",
    "Job",
    "JobCounts",
    "JobHandle",
    "JobOptions",
    "JobQueue",
    "JobRecord",
    "JobState",
    "MemoryBroker",
    "StalledJobError",
    "UnrecoverableError",
]
