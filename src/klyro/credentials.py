"""
Credential Service: issues the developer credential through the issuer API.

Flow: login (issuer DID + API key → bearer token), build the credential
subject from merged data and score, POST it to /issuer/issue. The provider
signals success with code 80000000; anything else is a failure carrying the
provider's ``msg``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import httpx

from klyro.config import Settings
from klyro.models import ScoreSummary, parse_ts
from klyro.scoring import verification_level

logger = logging.getLogger(__name__)

SUCCESS_CODE = 80000000

_SENTINELS = {
    "string": "N/A",
    "email": "No Email",
    "location": "None",
    "username": "Unknown",
    "number": 0,
}


def default_value(value: Any, kind: str = "string") -> Any:
    """Fill missing values with the sentinel for ``kind``; floor and clamp numbers at 0."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return _SENTINELS.get(kind, "N/A")
    if kind == "number":
        if isinstance(value, bool):
            return 0
        try:
            num = float(value)
        except (TypeError, ValueError):
            return 0
        if math.isnan(num) or math.isinf(num):
            return 0
        return max(0, math.floor(num))
    if isinstance(value, str):
        return value.strip()
    return value


def _account_age_years(created_at: Optional[str], now: datetime) -> int:
    created = now
    if created_at:
        try:
            created = parse_ts(created_at)
        except ValueError:
            pass
    return max(1, now.year - created.year)


def build_credential_subject(
    merged_data: Mapping,
    *,
    score: Optional[ScoreSummary] = None,
    developer_worth: Optional[float] = None,
    email: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Flatten merged collector data, score and worth into the issuer's schema."""
    now = now or datetime.now(timezone.utc)
    github = merged_data.get("github") or {}
    contracts = merged_data.get("contracts") or {}
    onchain = merged_data.get("onchain") or {}
    hackathon = onchain.get("hackathon") or {}
    tx_stats = onchain.get("transactionStats") or {}
    languages = github.get("languages") or {}

    login = default_value(github.get("login"), "username")
    total_txs = sum(default_value((tx_stats.get(net) or {}).get("total"), "number")
                    for net in ("mainnet", "testnet"))
    total_score = score.total_score if score else 0
    loc = sum(default_value(v, "number") for v in languages.values()) if isinstance(languages, Mapping) else 0

    return {
        "id": f"did:klyro:{login}",
        "githubUsername": login,
        "name": default_value(github.get("name"), "string"),
        "email": default_value(email or github.get("email"), "email"),
        "location": default_value(github.get("location"), "location"),
        "followers": default_value(github.get("followers"), "number"),
        "totalRepositories": default_value(github.get("publicRepos"), "number"),
        "totalStars": default_value(github.get("totalStars"), "number"),
        "totalForks": default_value(github.get("totalForks"), "number"),
        "totalContributions": default_value(github.get("totalContributions"), "number"),
        "totalPullRequests": default_value(github.get("totalPRs"), "number"),
        "totalIssues": default_value(github.get("totalIssues"), "number"),
        "totalLinesOfCode": default_value(loc, "number"),
        "solidityLinesOfCode": default_value(
            languages.get("Solidity") if isinstance(languages, Mapping) else None, "number"),
        "accountAge": _account_age_years(github.get("createdAt"), now),
        "KlyroScore": default_value(total_score, "number"),
        "web3Score": default_value(score.web3_total if score else None, "number"),
        "developerWorth": default_value(developer_worth, "number"),
        "totalTransactions": default_value(total_txs, "number"),
        "mainnetContracts": default_value(contracts.get("mainnetContracts"), "number"),
        "testnetContracts": default_value(contracts.get("testnetContracts"), "number"),
        "hackathonParticipations": str(default_value(hackathon.get("totalHackerExperience"), "number")),
        "hackathonWins": default_value(hackathon.get("totalWins"), "number"),
        "totalTVL": default_value(contracts.get("totalTVL"), "number"),
        "uniqueUsers": default_value(contracts.get("uniqueUsers"), "number"),
        "lastUpdated": now.isoformat(),
        "verificationLevel": verification_level(total_score or 0),
    }


@dataclass
class IssueResult:
    success: bool
    credential_hash: Optional[str] = None
    credential_id: Optional[str] = None
    issuer_did: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    configuration_error: bool = False

    def to_dict(self) -> dict:
        if self.success:
            return {"success": True, "credentialHash": self.credential_hash,
                    "credentialId": self.credential_id, "issuerDid": self.issuer_did}
        return {"success": False, "error": self.error}


class _IssuerFailure(Exception):
    def __init__(self, message: str, retryable: bool = True):
        self.message = message
        self.retryable = retryable
        super().__init__(message)


class CredentialService:
    """Client for the credential issuer. Never raises for upstream problems; returns IssueResult."""

    def __init__(self, issuer_did: str, api_key: str, credential_id: str, api_url: str, *,
                 timeout: float = 20.0):
        self.issuer_did = issuer_did
        self.api_key = api_key
        self.credential_id = credential_id
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        if not self.is_configured():
            logger.warning("Issuer configuration missing, credential issuing is disabled")

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialService":
        return cls(settings.issuer_did, settings.issuer_api_key, settings.credential_id,
                   settings.issuer_api_url)

    def is_configured(self) -> bool:
        return bool(self.issuer_did and self.api_key and self.credential_id)

    async def issue_credential(
        self,
        merged_data: Mapping,
        *,
        score: Optional[ScoreSummary] = None,
        developer_worth: Optional[float] = None,
        email: Optional[str] = None,
    ) -> IssueResult:
        if not self.is_configured():
            return IssueResult(False, error="Issuer configuration missing",
                               retryable=False, configuration_error=True)

        subject = build_credential_subject(
            merged_data, score=score, developer_worth=developer_worth, email=email)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                token = await self._login(client)
                data = await self._post(
                    client, "/issuer/issue",
                    {"credentialId": self.credential_id, "credentialSubject": subject},
                    headers={"Authorization": f"Bearer {token}"},
                )
        except _IssuerFailure as e:
            logger.error("Credential issuing failed for %s: %s", subject["githubUsername"], e.message)
            return IssueResult(False, error=e.message, retryable=e.retryable)
        except httpx.HTTPError as e:
            logger.error("Credential issuing failed for %s: %s", subject["githubUsername"], e)
            return IssueResult(False, error=f"{type(e).__name__}: {e}", retryable=True)

        credential_hash = data.get("credentialHash") if isinstance(data, dict) else None
        if not credential_hash:
            # accepted without a hash: issuing again could mint a duplicate
            logger.error("Issuer returned no credential for %s", subject["githubUsername"])
            return IssueResult(False, error="Failed to issue credential: no credential in response",
                               retryable=False)

        logger.info("Issued credential for %s", subject["githubUsername"],
                    extra={"credential_id": self.credential_id, "issuer_did": self.issuer_did})
        return IssueResult(
            True,
            credential_hash=credential_hash,
            credential_id=self.credential_id,
            issuer_did=self.issuer_did,
        )

    async def login(self) -> str:
        """Exchange issuer DID + API key for a bearer token."""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await self._login(client)

    async def _login(self, client: httpx.AsyncClient) -> str:
        data = await self._post(client, "/issuer/login",
                                {"issuerDid": self.issuer_did, "authToken": self.api_key})
        token = (data or {}).get("token")
        if not token:
            raise _IssuerFailure("Failed to get issuer auth token")
        return token

    async def _post(self, client: httpx.AsyncClient, path: str, body: dict,
                    headers: Optional[dict] = None) -> Any:
        resp = await client.post(f"{self.api_url}{path}", json=body,
                                 headers={"accept": "*/*", **(headers or {})})
        if resp.status_code >= 400:
            retryable = resp.status_code >= 500 or resp.status_code in (408, 429)
            raise _IssuerFailure(f"{path} failed with status {resp.status_code}", retryable)
        try:
            payload = resp.json()
        except ValueError:
            raise _IssuerFailure(f"{path} returned malformed JSON") from None
        if not isinstance(payload, dict) or payload.get("code") != SUCCESS_CODE:
            msg = payload.get("msg") if isinstance(payload, dict) else None
            raise _IssuerFailure(msg or "Unknown error")
        return payload.get("data")
