"""Runtime settings read from the environment.

Issuer:
    KLYRO_ISSUER_DID, KLYRO_ISSUER_API_KEY, KLYRO_CREDENTIAL_ID
    KLYRO_ISSUER_ENV        SANDBOX (default) | STAGING
    KLYRO_ISSUER_API_URL    overrides the environment's URL
Backend:
    KLYRO_BACKEND           redis (default) | memory
    REDIS_URL               or REDIS_HOST / REDIS_PORT / REDIS_PASSWORD / REDIS_DB
    KLYRO_KEY_PREFIX        default "klyro"
Pipeline:
    KLYRO_PROGRESS_TTL      seconds a progress document lives (default 7 days)
    KLYRO_REFRESH_AFTER     age after which a completed analysis is redone (default 24h)
    KLYRO_WORKER_CONCURRENCY, KLYRO_RUN_WORKERS
    KLYRO_RETRY_ATTEMPTS, KLYRO_BACKOFF_TYPE, KLYRO_BACKOFF_DELAY
    KLYRO_<STAGE>_ATTEMPTS / _BACKOFF_TYPE / _BACKOFF_DELAY   per-stage overrides,
        STAGE in GITHUB_DATA, CONTRACTS_DATA, ONCHAIN_DATA, CREDENTIAL_ISSUING
    KLYRO_SERVER_ISSUANCE   issue credentials from the worker (default true)
    KLYRO_JOB_LEASE         seconds a claimed job survives without a heartbeat (default 30)
Upstreams:
    GITHUB_TOKENS, ALCHEMY_API_KEYS (comma separated, rotated round-robin)
    CRYPTO_COMPARE_API_KEY, KLYRO_CHAINS
Other:
    KLYRO_SCORE_CONFIG, KLYRO_ADMIN_API_KEY, KLYRO_SUBMIT_RATE, LOG_LEVEL
"""

from __future__ import annotations

import os
import re
import threading
from dataclasses import dataclass, field
from typing import Mapping, Optional

from klyro.errors import ConfigurationError
from klyro.queue import Backoff, BackoffType, JobOptions

ISSUER_API_URLS = {
    "SANDBOX": "https://credential.api.sandbox.air3.com",
    "STAGING": "https://credential.api.test.air3.com",
}

DEFAULT_SUBMIT_RATE = "30/minute"

DEFAULT_CHAINS = ("eth-mainnet", "eth-sepolia", "base-mainnet", "base-sepolia")

STAGE_ENV_NAMES = {
    "githubData": "GITHUB_DATA",
    "contractsData": "CONTRACTS_DATA",
    "onchainData": "ONCHAIN_DATA",
    "credentialIssuing": "CREDENTIAL_ISSUING",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class KeyRing:
    """Round-robin over a list of API credentials."""

    def __init__(self, keys=()):
        self._keys = [k for k in keys if k]
        self._idx = 0
        self._lock = threading.Lock()

    @classmethod
    def from_csv(cls, raw: str) -> "KeyRing":
        return cls(k.strip() for k in (raw or "").split(","))

    def __bool__(self) -> bool:
        return bool(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def next(self) -> Optional[str]:
        if not self._keys:
            return None
        with self._lock:
            key = self._keys[self._idx % len(self._keys)]
            self._idx += 1
        return key


def _int(env: Mapping[str, str], name: str, default: int, *, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative")
    return value


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def _backoff_type(env: Mapping[str, str], name: str, default: BackoffType) -> BackoffType:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    try:
        return BackoffType(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be 'fixed' or 'exponential'") from None


def read_submit_rate(env: Mapping[str, str]) -> str:
    return env.get("KLYRO_SUBMIT_RATE", "").strip() or DEFAULT_SUBMIT_RATE


def _lease(env: Mapping[str, str]) -> float:
    value = _float(env, "KLYRO_JOB_LEASE", 30.0)
    if value <= 0:
        raise ConfigurationError("KLYRO_JOB_LEASE must be > 0")
    return value


def _csv(raw: str) -> list[str]:
    return [p.strip() for p in (raw or "").split(",") if p.strip()]


@dataclass
class Settings:
    # issuer
    issuer_did: str = ""
    issuer_api_key: str = ""
    credential_id: str = ""
    issuer_env: str = "SANDBOX"
    issuer_api_url: str = ISSUER_API_URLS["SANDBOX"]
    server_issuance: bool = True

    # backend
    backend: str = "redis"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "klyro"

    # pipeline
    progress_ttl: int = 7 * 24 * 3600
    refresh_after: int = 24 * 3600
    worker_concurrency: int = 4
    run_workers: bool = True
    retry_policies: dict[str, JobOptions] = field(default_factory=dict)
    job_lease: float = 30.0

    # upstreams
    github_tokens: KeyRing = field(default_factory=KeyRing)
    alchemy_keys: KeyRing = field(default_factory=KeyRing)
    cryptocompare_api_key: str = ""
    chains: tuple[str, ...] = DEFAULT_CHAINS

    # misc
    score_config_path: Optional[str] = None
    admin_api_key: str = ""
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        issuer_env = env.get("KLYRO_ISSUER_ENV", "SANDBOX").strip().upper() or "SANDBOX"
        if issuer_env not in ISSUER_API_URLS:
            raise ConfigurationError(
                f"KLYRO_ISSUER_ENV must be one of {', '.join(ISSUER_API_URLS)}, got {issuer_env!r}")
        issuer_api_url = env.get("KLYRO_ISSUER_API_URL", "").strip() or ISSUER_API_URLS[issuer_env]

        backend = env.get("KLYRO_BACKEND", "redis").strip().lower() or "redis"
        if backend not in ("redis", "memory"):
            raise ConfigurationError(f"KLYRO_BACKEND must be 'redis' or 'memory', got {backend!r}")

        redis_url = env.get("REDIS_URL", "").strip()
        if not redis_url:
            host = env.get("REDIS_HOST", "localhost").strip() or "localhost"
            port = _int(env, "REDIS_PORT", 6379, minimum=1)
            db = _int(env, "REDIS_DB", 0)
            password = env.get("REDIS_PASSWORD", "")
            auth = f":{password}@" if password else ""
            redis_url = f"redis://{auth}{host}:{port}/{db}"

        chains = tuple(_csv(env.get("KLYRO_CHAINS", ""))) or DEFAULT_CHAINS
        for chain in chains:
            if not re.fullmatch(r"[a-z0-9]+-[a-z0-9-]+", chain):
                raise ConfigurationError(f"Invalid chain slug in KLYRO_CHAINS: {chain!r}")

        return cls(
            issuer_did=env.get("KLYRO_ISSUER_DID", "").strip(),
            issuer_api_key=env.get("KLYRO_ISSUER_API_KEY", "").strip(),
            credential_id=env.get("KLYRO_CREDENTIAL_ID", "").strip(),
            issuer_env=issuer_env,
            issuer_api_url=issuer_api_url.rstrip("/"),
            server_issuance=_bool(env, "KLYRO_SERVER_ISSUANCE", True),
            backend=backend,
            redis_url=redis_url,
            key_prefix=env.get("KLYRO_KEY_PREFIX", "klyro").strip() or "klyro",
            progress_ttl=_int(env, "KLYRO_PROGRESS_TTL", 7 * 24 * 3600, minimum=1),
            refresh_after=_int(env, "KLYRO_REFRESH_AFTER", 24 * 3600),
            worker_concurrency=_int(env, "KLYRO_WORKER_CONCURRENCY", 4, minimum=1),
            run_workers=_bool(env, "KLYRO_RUN_WORKERS", True),
            retry_policies=load_retry_policies(env),
            github_tokens=KeyRing.from_csv(env.get("GITHUB_TOKENS", "") or env.get("GITHUB_TOKEN", "")),
            alchemy_keys=KeyRing.from_csv(env.get("ALCHEMY_API_KEYS", "") or env.get("ALCHEMY_API_KEY", "")),
            cryptocompare_api_key=env.get("CRYPTO_COMPARE_API_KEY", "").strip(),
            chains=chains,
            score_config_path=env.get("KLYRO_SCORE_CONFIG", "").strip() or None,
            admin_api_key=env.get("KLYRO_ADMIN_API_KEY", "") or env.get("ADMIN_API_KEY", ""),
            job_lease=_lease(env),
            log_level=env.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )

    @property
    def issuer_configured(self) -> bool:
        return bool(self.issuer_did and self.issuer_api_key and self.credential_id)

    def retry_policy(self, stage: str) -> JobOptions:
        return self.retry_policies.get(stage) or JobOptions(
            attempts=6, backoff=Backoff(BackoffType.EXPONENTIAL, 10.0))


def load_retry_policies(env: Mapping[str, str]) -> dict[str, JobOptions]:
    """Build per-stage JobOptions: global defaults overlaid by KLYRO_<STAGE>_* overrides."""
    attempts = _int(env, "KLYRO_RETRY_ATTEMPTS", 6, minimum=1)
    kind = _backoff_type(env, "KLYRO_BACKOFF_TYPE", BackoffType.EXPONENTIAL)
    delay = _float(env, "KLYRO_BACKOFF_DELAY", 10.0)

    policies = {}
    for stage, env_name in STAGE_ENV_NAMES.items():
        prefix = f"KLYRO_{env_name}_"
        policies[stage] = JobOptions(
            attempts=_int(env, prefix + "ATTEMPTS", attempts, minimum=1),
            backoff=Backoff(
                _backoff_type(env, prefix + "BACKOFF_TYPE", kind),
                _float(env, prefix + "BACKOFF_DELAY", delay),
            ),
        )
    return policies
