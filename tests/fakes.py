"""Test doubles and canned collector results shared by the test modules."""

import asyncio
import time

from klyro.credentials import IssueResult
from klyro.models import StageName
from klyro.queue import Backoff, BackoffType, JobOptions

TEST_API_KEY = "test-admin-key-global"
AUTH_HEADERS = {"X-API-Key": TEST_API_KEY}

SUBJECT = "octocat"
ADDRESS = "0x" + "ab" * 20


class FakeCollector:
    """Collector double: raises the queued ``errors`` in order, then returns ``result``."""

    source = "fake"

    def __init__(self, stage, result=None, errors=(), delay=0.0, always_fail=None):
        self.stage = stage
        self.result = result if result is not None else {}
        self.errors = list(errors)
        self.delay = delay
        self.always_fail = always_fail
        self.calls = []

    async def collect(self, subject_key, addresses):
        self.calls.append((subject_key, tuple(addresses), time.monotonic()))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.always_fail is not None:
            raise self.always_fail
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class FakeCredentials:
    """Credential-service double. Returns ``results`` in order; the last one repeats."""

    def __init__(self, results=None):
        self.results = list(results or [IssueResult(True, credential_hash="0xhash",
                                                    credential_id="cred-1", issuer_did="did:air:1")])
        self.calls = []

    def is_configured(self):
        return True

    async def issue_credential(self, merged_data, *, score=None, developer_worth=None, email=None):
        self.calls.append({"merged_data": merged_data, "score": score,
                           "developer_worth": developer_worth, "email": email})
        return self.results.pop(0) if len(self.results) > 1 else self.results[0]


GITHUB_RESULT = {
    "login": SUBJECT,
    "totalPRs": 30,
    "totalContributions": 250,
    "totalStars": 40,
    "totalForks": 12,
    "totalIssues": 4,
    "followers": 20,
    "accountAge": 2000,
    "languages": {"Python": 50_000, "Solidity": 10_000},
    "repoContributions": {"ethereum/go-ethereum": 3},
}
CONTRACTS_RESULT = {"mainnetContracts": 2, "testnetContracts": 4, "totalTVL": 100.0, "uniqueUsers": 10}
ONCHAIN_RESULT = {
    "transactionStats": {"mainnet": {"total": 300}, "testnet": {"total": 10}},
    "hackathon": {"totalWins": 1, "totalHackerExperience": 3},
}


def make_collectors(**overrides):
    """Fake collectors for the three data stages; override by stage value."""
    collectors = {
        StageName.GITHUB_DATA: FakeCollector(StageName.GITHUB_DATA, GITHUB_RESULT),
        StageName.CONTRACTS_DATA: FakeCollector(StageName.CONTRACTS_DATA, CONTRACTS_RESULT),
        StageName.ONCHAIN_DATA: FakeCollector(StageName.ONCHAIN_DATA, ONCHAIN_RESULT),
    }
    for stage, collector in overrides.items():
        collectors[StageName(stage)] = collector
    return collectors


def fast_retry_policy(attempts=3, delay=0.01):
    options = JobOptions(attempts=attempts, backoff=Backoff(BackoffType.FIXED, delay))
    return lambda stage: options
