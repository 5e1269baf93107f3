"""Base collector interface and shared response checks."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

import httpx

from klyro.errors import UpstreamError
from klyro.models import StageName

TESTNET_MARKERS = ("sepolia", "goerli", "holesky")


def is_testnet(chain: str) -> bool:
    return any(marker in chain for marker in TESTNET_MARKERS)


def _retry_after(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("retry-after")
    if raw:
        try:
            return max(float(raw), 0.0)
        except ValueError:
            pass
    reset = resp.headers.get("x-ratelimit-reset")
    if reset:
        try:
            return max(float(reset) - time.time(), 0.0)
        except ValueError:
            pass
    return None


def check_response(resp: httpx.Response, source: str) -> None:
    """Raise UpstreamError for rate limits and non-2xx statuses."""
    if resp.status_code == 429 or (
        resp.status_code == 403 and resp.headers.get("x-ratelimit-remaining") == "0"
    ):
        raise UpstreamError(source, "rate limited", status=resp.status_code,
                            retry_after=_retry_after(resp))
    if resp.status_code >= 400:
        raise UpstreamError(source, f"HTTP {resp.status_code}: {resp.text[:200]}",
                            status=resp.status_code)


def parse_json(resp: httpx.Response, source: str) -> Any:
    try:
        return resp.json()
    except ValueError:
        raise UpstreamError(source, "malformed JSON payload", status=resp.status_code) from None


class BaseCollector(ABC):
    """Adapter from one external API to a normalized stage result.

    One call to :meth:`collect` is one logical attempt. Collectors never retry;
    failures surface as :class:`UpstreamError` and the job queue decides.
    """

    stage: Optional[StageName] = None
    source: str = "unknown"
    timeout: float = 20.0

    @abstractmethod
    async def collect(self, subject_key: str, addresses: Sequence[str]) -> dict:
        ...

    def _network_error(self, exc: httpx.HTTPError) -> UpstreamError:
        return UpstreamError(self.source, f"{type(exc).__name__}: {exc}")
