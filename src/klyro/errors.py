"""Exception hierarchy shared by the pipeline components."""

from __future__ import annotations

from typing import Optional

from klyro.queue.base import UnrecoverableError


class KlyroError(Exception):
    """Base class for all klyro errors."""


class ValidationError(KlyroError, ValueError):
    """Submitted input failed synchronous validation. Nothing was enqueued."""


class ConfigurationError(KlyroError, UnrecoverableError):
    """Required settings are missing or malformed. Retrying will not help."""


class UpstreamError(KlyroError):
    """A collector or the credential issuer got a bad answer from a remote service."""

    def __init__(self, source: str, message: str, *, status: Optional[int] = None,
                 retryable: bool = True, retry_after: Optional[float] = None):
        self.source = source
        self.message = message
        self.status = status
        self.retryable = retryable
        self.retry_after = retry_after
        prefix = f"{source} [{status}]" if status is not None else source
        super().__init__(f"{prefix}: {message}")


class PermanentUpstreamError(UpstreamError, UnrecoverableError):
    """Upstream failure that will not go away on retry (unknown user, bad request)."""

    def __init__(self, source: str, message: str, *, status: Optional[int] = None):
        super().__init__(source, message, status=status, retryable=False)


class SubjectNotFound(KlyroError, LookupError):
    def __init__(self, subject_key: str):
        self.subject_key = subject_key
        super().__init__(f"No analysis for {subject_key}")


class StateConflict(KlyroError):
    """Requested transition is not valid for the job's current state."""
