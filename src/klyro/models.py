"""Analysis job document and the status projection derived from it."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class StageName(str, Enum):
    GITHUB_DATA = "githubData"
    CONTRACTS_DATA = "contractsData"
    ONCHAIN_DATA = "onchainData"
    CREDENTIAL_ISSUING = "credentialIssuing"


DATA_STAGES = (StageName.GITHUB_DATA, StageName.CONTRACTS_DATA, StageName.ONCHAIN_DATA)
ALL_STAGES = DATA_STAGES + (StageName.CREDENTIAL_ISSUING,)

# merged_data section each data stage writes under
STAGE_SECTIONS = {
    StageName.GITHUB_DATA: "github",
    StageName.CONTRACTS_DATA: "contracts",
    StageName.ONCHAIN_DATA: "onchain",
}


class StageStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    READY = "READY"


class OverallStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(frozen=True)
class ScoreSummary:
    total_score: float
    web2_total: float
    web3_total: float
    verification_level: str

    def to_dict(self) -> dict:
        return {
            "totalScore": self.total_score,
            "web2Total": self.web2_total,
            "web3Total": self.web3_total,
            "verificationLevel": self.verification_level,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ScoreSummary":
        return cls(
            total_score=d["totalScore"],
            web2_total=d["web2Total"],
            web3_total=d["web3Total"],
            verification_level=d["verificationLevel"],
        )


@dataclass(frozen=True)
class CredentialRecord:
    credential_hash: Optional[str] = None
    credential_id: Optional[str] = None
    issuer_did: Optional[str] = None
    issued_at: Optional[str] = None
    source: str = "server"

    def to_dict(self) -> dict:
        return {
            "credentialHash": self.credential_hash,
            "credentialId": self.credential_id,
            "issuerDid": self.issuer_did,
            "issuedAt": self.issued_at,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "CredentialRecord":
        return cls(
            credential_hash=d.get("credentialHash"),
            credential_id=d.get("credentialId"),
            issuer_did=d.get("issuerDid"),
            issued_at=d.get("issuedAt"),
            source=d.get("source", "server"),
        )


def _can_progress(stage: StageName, status: StageStatus, any_data_failed: bool) -> bool:
    if stage == StageName.CREDENTIAL_ISSUING:
        if status in (StageStatus.READY, StageStatus.PROCESSING):
            return True
        return status == StageStatus.PENDING and not any_data_failed
    return status in (StageStatus.PENDING, StageStatus.PROCESSING)


def project_overall(stages: dict[StageName, StageStatus]) -> OverallStatus:
    """Derive the overall status from the four stage statuses."""
    values = [stages[s] for s in ALL_STAGES]
    if all(v == StageStatus.COMPLETED for v in values):
        return OverallStatus.COMPLETED
    if all(v == StageStatus.PENDING for v in values):
        return OverallStatus.PENDING
    if StageStatus.FAILED in values:
        any_data_failed = any(stages[s] == StageStatus.FAILED for s in DATA_STAGES)
        if not any(_can_progress(s, stages[s], any_data_failed) for s in ALL_STAGES):
            return OverallStatus.FAILED
    return OverallStatus.PROCESSING


@dataclass
class AnalysisJob:
    """One analysis per Subject Key, persisted by the progress store."""

    subject_key: str
    addresses: tuple[str, ...] = ()
    email: Optional[str] = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    stages: dict[StageName, StageStatus] = field(
        default_factory=lambda: {s: StageStatus.PENDING for s in ALL_STAGES})
    errors: dict[StageName, str] = field(default_factory=dict)
    merged_data: dict = field(default_factory=dict)
    score: Optional[ScoreSummary] = None
    developer_worth: Optional[float] = None
    credential_result: Optional[CredentialRecord] = None
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    @property
    def overall_status(self) -> OverallStatus:
        return project_overall(self.stages)

    @property
    def data_complete(self) -> bool:
        return all(self.stages[s] == StageStatus.COMPLETED for s in DATA_STAGES)

    def evolve(self, **changes) -> "AnalysisJob":
        """Copy with ``changes`` applied and ``updated_at`` bumped. Stage dicts are copied."""
        changes.setdefault("stages", dict(self.stages))
        changes.setdefault("errors", dict(self.errors))
        changes["updated_at"] = utcnow()
        return replace(self, **changes)

    def with_stage(self, name: StageName, status: StageStatus, *, error: Optional[str] = None,
                   **changes) -> "AnalysisJob":
        stages = dict(self.stages)
        stages[name] = status
        errors = dict(self.errors)
        if error is not None:
            errors[name] = error
        elif status in (StageStatus.PROCESSING, StageStatus.COMPLETED, StageStatus.READY):
            errors.pop(name, None)
        return self.evolve(stages=stages, errors=errors, **changes)

    def to_dict(self) -> dict:
        return {
            "subjectKey": self.subject_key,
            "addresses": list(self.addresses),
            "email": self.email,
            "runId": self.run_id,
            "status": self.overall_status.value,
            "stages": {s.value: v.value for s, v in self.stages.items()},
            "errors": {s.value: msg for s, msg in self.errors.items()},
            "mergedData": self.merged_data,
            "score": self.score.to_dict() if self.score else None,
            "developerWorth": self.developer_worth,
            "credentialResult": self.credential_result.to_dict() if self.credential_result else None,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "AnalysisJob":
        stages = {s: StageStatus.PENDING for s in ALL_STAGES}
        stages.update({StageName(k): StageStatus(v) for k, v in (d.get("stages") or {}).items()})
        return cls(
            subject_key=d["subjectKey"],
            addresses=tuple(d.get("addresses") or ()),
            email=d.get("email"),
            run_id=d["runId"],
            stages=stages,
            errors={StageName(k): v for k, v in (d.get("errors") or {}).items()},
            merged_data=d.get("mergedData") or {},
            score=ScoreSummary.from_dict(d["score"]) if d.get("score") else None,
            developer_worth=d.get("developerWorth"),
            credential_result=CredentialRecord.from_dict(d["credentialResult"]) if d.get("credentialResult") else None,
            created_at=d["createdAt"],
            updated_at=d.get("updatedAt", d["createdAt"]),
        )
