"""
klyro-client: Python SDK for the klyro analysis API.

Usage:
    from klyro.client import KlyroClient

    with KlyroClient("http://localhost:8000") as client:
        client.submit("octocat", ["0x..."])
        outcome = client.wait_for_completion("octocat", timeout=300)
        if outcome.finished:
            print(outcome.snapshot["score"])
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional

import httpx

TERMINAL_STATUSES = ("COMPLETED", "FAILED")


class ApiError(Exception):
    """Raised when the API returns an error."""
    def __init__(self, status: int, detail: str):
        self.status = status
        self.detail = detail
        super().__init__(f"[{status}] {detail}")


@dataclass
class PollOutcome:
    """Result of a bounded polling window.

    ``finished`` is False when the window expired first; the analysis is
    still running and ``snapshot`` is the last status seen.
    """
    snapshot: dict
    finished: bool

    @property
    def status(self) -> str:
        return self.snapshot.get("status", "PENDING")

    @property
    def succeeded(self) -> bool:
        return self.finished and self.status == "COMPLETED"


@dataclass
class KlyroClient:
    """Lightweight sync client for the klyro API."""

    base_url: str = "http://localhost:8000"
    timeout: float = 10.0
    api_key: Optional[str] = None
    _http: httpx.Client = field(init=False, repr=False)

    def __post_init__(self):
        headers = {"X-API-Key": self.api_key} if self.api_key else {}
        self._http = httpx.Client(base_url=self.base_url, timeout=self.timeout, headers=headers)

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # -- internal --

    def _request(self, method: str, path: str, **kwargs) -> dict:
        r = self._http.request(method, path, **kwargs)
        if r.status_code >= 400:
            detail = r.json().get("detail", r.text) if r.headers.get("content-type", "").startswith("application/json") else r.text
            raise ApiError(r.status_code, detail)
        return r.json()

    # -- Analysis --

    def submit(self, subject_key: str, addresses: list[str] | None = None,
               email: str | None = None, force_refresh: bool = False) -> dict:
        """Submit an analysis. Returns {jobId, subjectKey, status, created}."""
        payload: dict = {"subjectKey": subject_key, "addresses": addresses or []}
        if email:
            payload["email"] = email
        if force_refresh:
            payload["forceRefresh"] = True
        return self._request("POST", "/analyze-user", json=payload)

    def status(self, subject_key: str) -> dict:
        return self._request("GET", f"/status/{subject_key}")

    def wait_for_completion(self, subject_key: str, timeout: float = 300.0,
                            interval: float = 2.0) -> PollOutcome:
        """Poll status until COMPLETED or FAILED, or until ``timeout`` expires.

        Expiry is not an error: the returned outcome has ``finished=False``.
        """
        deadline = time.monotonic() + timeout
        while True:
            snapshot = self.status(subject_key)
            if snapshot.get("status") in TERMINAL_STATUSES:
                return PollOutcome(snapshot, True)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return PollOutcome(snapshot, False)
            time.sleep(min(interval, remaining))

    # -- Credentials --

    def credential(self, subject_key: str) -> dict:
        return self._request("GET", f"/credentials/{subject_key}")

    def mark_credential_issued(self, subject_key: str) -> dict:
        """Tell the server a client-side issuance succeeded."""
        return self._request("POST", "/update-credential-status",
                             json={"subjectKey": subject_key, "status": "ISSUED"})

    def retry_credential(self, subject_key: str) -> dict:
        return self._request("POST", f"/retry-credential/{subject_key}")

    # -- Admin (requires api_key) --

    def reprocess(self, subject_key: str) -> dict:
        return self._request("POST", f"/reprocess-user/{subject_key}")

    def queue_status(self) -> dict:
        return self._request("GET", "/admin/queue")

    # -- Health --

    def health(self) -> dict:
        return self._request("GET", "/health")
