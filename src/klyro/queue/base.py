"""Job queue primitives: options, records, counts and the broker interface.

Nothing in here knows about analysis stages. Payloads travel as plain dicts;
the typed view is applied by :class:`klyro.queue.manager.JobQueue`.
"""

from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

P = TypeVar("P")

DEFAULT_LEASE = 30.0  # seconds a claim survives without a heartbeat


class UnrecoverableError(Exception):
    """Raise (or subclass) from a handler to fail the job without further attempts."""


class StalledJobError(UnrecoverableError):
    """A job whose claims kept expiring until its attempts ran out."""


class BackoffType(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class Backoff:
    type: BackoffType = BackoffType.FIXED
    delay: float = 0.0  # seconds

    def delay_for(self, attempts_made: int) -> float:
        """Delay before the next attempt, given how many attempts already ran."""
        if self.delay <= 0:
            return 0.0
        if self.type == BackoffType.EXPONENTIAL:
            return self.delay * (2 ** max(attempts_made - 1, 0))
        return self.delay


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 1
    backoff: Backoff = field(default_factory=Backoff)

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def in_flight(self) -> bool:
        return self in (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)


@dataclass
class JobRecord:
    """Broker-side representation of a job."""

    id: str
    data: dict
    attempts: int = 1
    backoff_type: str = BackoffType.FIXED.value
    backoff_delay: float = 0.0
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    failed_reason: Optional[str] = None
    result: Any = None
    created_at: float = field(default_factory=time.time)
    run_at: float = 0.0
    finished_at: Optional[float] = None

    @classmethod
    def new(cls, job_id: str, data: dict, options: JobOptions) -> "JobRecord":
        return cls(
            id=job_id,
            data=data,
            attempts=options.attempts,
            backoff_type=BackoffType(options.backoff.type).value,
            backoff_delay=options.backoff.delay,
        )

    @property
    def options(self) -> JobOptions:
        return JobOptions(
            attempts=self.attempts,
            backoff=Backoff(BackoffType(self.backoff_type), self.backoff_delay),
        )

    def to_json(self) -> str:
        d = asdict(self)
        d["state"] = self.state.value
        return json.dumps(d, default=str)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "JobRecord":
        d = json.loads(raw)
        d["state"] = JobState(d["state"])
        return cls(**d)


@dataclass
class Job(Generic[P]):
    """What a handler and event listeners see."""

    id: str
    payload: P
    options: JobOptions
    state: JobState
    attempts_made: int = 0
    failed_reason: Optional[str] = None


@dataclass
class JobHandle:
    id: str
    created: bool
    state: JobState


@dataclass
class JobCounts:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class Broker(ABC):
    """Storage for queued jobs. Implementations must make ``add`` atomic per job id."""

    @abstractmethod
    async def add(self, record: JobRecord, *, replace: bool = False) -> tuple[JobRecord, bool]:
        """Insert ``record`` unless a job with the same id exists.

        An in-flight job is never replaced. A terminal one is replaced only
        when ``replace`` is true. Returns the stored record and whether it was
        inserted.
        """

    @abstractmethod
    async def fetch_next(self, lease: float = DEFAULT_LEASE) -> Optional[JobRecord]:
        """Claim the next due job (marking it active) or return None.

        The claim holds for ``lease`` seconds unless renewed with
        :meth:`extend_lease`. Brokers shared between processes hand expired
        claims back out as stalled jobs.
        """

    @abstractmethod
    async def release(self, job_id: str) -> Optional[JobRecord]:
        """Put an active job back at the head of the wait list without using up an attempt."""

    async def extend_lease(self, job_id: str, lease: float) -> None:
        return None

    @abstractmethod
    async def complete(self, job_id: str, result: Any) -> JobRecord: ...

    @abstractmethod
    async def fail(self, job_id: str, reason: str, *, retry_at: Optional[float] = None) -> JobRecord:
        """Record a failed attempt. ``retry_at`` schedules another; None makes it terminal."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[JobRecord]: ...

    @abstractmethod
    async def counts(self) -> JobCounts: ...

    @abstractmethod
    async def set_paused(self, paused: bool) -> None: ...

    @abstractmethod
    async def is_paused(self) -> bool: ...

    async def close(self) -> None:
        return None
