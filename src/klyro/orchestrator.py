"""
Analysis Orchestrator: drives one AnalysisJob per Subject Key through its stages.

    submit ─▶ githubData ─┐
              contractsData ─┼─▶ readiness gate ─▶ credentialIssuing
              onchainData ─┘

Collectors and the credential service only return results. Every write to
the job document happens here, through the progress store's compare-and-set,
so queue callbacks can race freely. The readiness gate is a single CAS from
credentialIssuing=PENDING to READY; only the caller that wins it enqueues
the issuance job.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping, Optional

from klyro.collectors.base import BaseCollector
from klyro.credentials import CredentialService
from klyro.errors import (
    ConfigurationError,
    PermanentUpstreamError,
    StateConflict,
    SubjectNotFound,
    UpstreamError,
    ValidationError,
)
from klyro.models import (
    DATA_STAGES,
    STAGE_SECTIONS,
    AnalysisJob,
    CredentialRecord,
    OverallStatus,
    ScoreSummary,
    StageName,
    StageStatus,
    parse_ts,
    utcnow,
)
from klyro.progress import ProgressStore, merge_documents
from klyro.queue import Job, JobOptions, JobQueue
from klyro.scoring import ScoreConfigLoader, ScoreEngine

logger = logging.getLogger(__name__)

CRED = StageName.CREDENTIAL_ISSUING

_LOGIN_RE = re.compile(r"^[a-z0-9](?:[a-z0-9]|-(?=[a-z0-9])){0,38}$")
_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# ─── Input normalization ───────────────────────────────────────────

def normalize_subject_key(raw) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError("subjectKey is required")
    key = raw.strip().lower()
    if not _LOGIN_RE.match(key):
        raise ValidationError(f"Invalid subject key: {raw!r}")
    return key


def normalize_addresses(raw: Optional[Iterable]) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        raise ValidationError("addresses must be a list")
    out: list[str] = []
    for value in raw:
        if not isinstance(value, str):
            raise ValidationError(f"Invalid address: {value!r}")
        address = value.strip().lower()
        if not _ADDRESS_RE.match(address):
            raise ValidationError(f"Invalid address: {value!r}")
        if address not in out:
            out.append(address)
    return tuple(out)


def normalize_email(raw: Optional[str]) -> Optional[str]:
    if raw is None or not str(raw).strip():
        return None
    email = str(raw).strip()
    if not _EMAIL_RE.match(email):
        raise ValidationError(f"Invalid email: {raw!r}")
    return email


def stage_job_id(subject_key: str, stage: StageName) -> str:
    return f"{subject_key}:{stage.value}"


# ─── Queue payload ─────────────────────────────────────────────────

@dataclass(frozen=True)
class StagePayload:
    subject_key: str
    stage: StageName
    run_id: str
    addresses: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "subjectKey": self.subject_key,
            "stage": self.stage.value,
            "runId": self.run_id,
            "addresses": list(self.addresses),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "StagePayload":
        return cls(
            subject_key=d["subjectKey"],
            stage=StageName(d["stage"]),
            run_id=d["runId"],
            addresses=tuple(d.get("addresses") or ()),
        )


@dataclass
class Submission:
    job: AnalysisJob
    created: bool

    @property
    def job_id(self) -> str:
        return self.job.subject_key


SKIPPED = {"skipped": True}


class AnalysisOrchestrator:
    def __init__(
        self,
        store: ProgressStore,
        queue: JobQueue[StagePayload],
        collectors: Mapping[StageName, BaseCollector],
        credentials: CredentialService,
        *,
        score_config: Optional[ScoreConfigLoader] = None,
        retry_policy: Optional[Callable[[str], JobOptions]] = None,
        refresh_after: int = 24 * 3600,
        server_issuance: bool = True,
        engine: Optional[ScoreEngine] = None,
    ):
        missing = [s.value for s in DATA_STAGES if s not in collectors]
        if missing:
            raise ConfigurationError(f"No collector for stage(s): {', '.join(missing)}")
        self.store = store
        self.queue = queue
        self.collectors = dict(collectors)
        self.credentials = credentials
        self.score_config = score_config or ScoreConfigLoader()
        self.retry_policy = retry_policy or (lambda stage: queue.default_options)
        self.refresh_after = refresh_after
        self.server_issuance = server_issuance
        self.engine = engine or ScoreEngine()

        queue.on("completed", self._on_completed)
        queue.on("failed", self._on_failed)
        queue.on("error", self._on_error)

    # ── lifecycle ──

    def register_workers(self, concurrency: int) -> None:
        self.queue.register_worker(self.handle, concurrency)

    async def start(self) -> None:
        await self.queue.start()

    async def close(self) -> None:
        await self.queue.close()
        await self.store.close()

    # ── submission ──

    async def submit(self, subject_key, addresses=None, *, email=None,
                     force: bool = False) -> Submission:
        """Create an analysis (or return the live one) and fan out the collector jobs.

        Raises ValidationError before anything is written or enqueued.
        """
        subject = normalize_subject_key(subject_key)
        addrs = normalize_addresses(addresses)
        email = normalize_email(email)

        def create(current: Optional[AnalysisJob]) -> Optional[AnalysisJob]:
            if current is not None and not self._should_restart(current, force):
                return None
            return AnalysisJob(subject_key=subject, addresses=addrs, email=email)

        job, created = await self.store.update(subject, create)
        if not created:
            logger.info("Analysis for %s already %s, returning existing job",
                        subject, job.overall_status.value)
            return Submission(job, False)

        logger.info("Created analysis for %s (run=%s, %d address(es))",
                    subject, job.run_id, len(addrs))
        outcomes = await asyncio.gather(
            *(self._enqueue_stage(job, stage) for stage in DATA_STAGES), return_exceptions=True)
        errors = {}
        for stage, outcome in zip(DATA_STAGES, outcomes):
            if isinstance(outcome, Exception):
                errors[stage] = outcome
            elif isinstance(outcome, BaseException):
                raise outcome
        if errors:
            first = next(iter(errors.values()))
            logger.error("Enqueue failed for %s stage(s) %s: %s", subject,
                         ", ".join(s.value for s in errors), first)
            await self._fail_unqueued(job, errors, f"enqueue failed: {first}")
            raise first
        return Submission(job, True)

    def _should_restart(self, job: AnalysisJob, force: bool) -> bool:
        status = job.overall_status
        if status == OverallStatus.FAILED:
            return True
        if status != OverallStatus.COMPLETED:
            return False
        if force:
            return True
        age = datetime.now(timezone.utc) - parse_ts(job.updated_at)
        return age.total_seconds() > self.refresh_after

    async def reprocess(self, subject_key) -> Submission:
        """Force a fresh run with the stored addresses."""
        subject = normalize_subject_key(subject_key)
        job = await self.store.get(subject)
        if job is None:
            raise SubjectNotFound(subject)
        return await self.submit(subject, job.addresses, email=job.email, force=True)

    async def status(self, subject_key) -> Optional[AnalysisJob]:
        return await self.store.get(normalize_subject_key(subject_key))

    async def _enqueue_stage(self, job: AnalysisJob, stage: StageName):
        payload = StagePayload(job.subject_key, stage, job.run_id, job.addresses)
        handle = await self.queue.enqueue(
            stage_job_id(job.subject_key, stage), payload,
            self.retry_policy(stage.value), replace=True,
        )
        if not handle.created:
            # picked up again by _redispatch once the earlier job finishes
            logger.warning("Stage job %s still %s from an earlier run",
                           handle.id, handle.state.value)
        return handle

    async def _redispatch(self, p: StagePayload) -> None:
        """Queue the live run's job for a stage whose queue slot a stale job was holding."""
        current = await self.store.get(p.subject_key)
        if current is None or current.run_id == p.run_id:
            return
        waiting = StageStatus.READY if p.stage == CRED else StageStatus.PENDING
        if current.stages[p.stage] != waiting:
            return
        if p.stage == CRED and not self.server_issuance:
            return
        handle = await self._enqueue_stage(current, p.stage)
        if handle.created:
            logger.info("Re-dispatched %s for %s (run=%s)", p.stage.value, p.subject_key, current.run_id)

    async def _fail_unqueued(self, job: AnalysisJob, stages, reason: str) -> None:
        def fail(current):
            if current is None or current.run_id != job.run_id:
                return None
            out = current
            for stage in stages:
                if out.stages[stage] in (StageStatus.PENDING, StageStatus.READY):
                    out = out.with_stage(stage, StageStatus.FAILED, error=reason)
            return out if out is not current else None

        await self.store.update(job.subject_key, fail)

    # ── worker ──

    async def handle(self, job: Job[StagePayload]) -> dict:
        payload = job.payload
        if payload.stage == CRED:
            return await self._issue(payload)
        return await self._collect(payload)

    async def _collect(self, p: StagePayload) -> dict:
        def begin(current):
            if current is None or current.run_id != p.run_id:
                return None
            # a retry finds the stage already PROCESSING and runs again
            if current.stages[p.stage] != StageStatus.PENDING:
                return None
            return current.with_stage(p.stage, StageStatus.PROCESSING)

        job, _ = await self.store.update(p.subject_key, begin)
        if job is None or job.run_id != p.run_id or job.stages[p.stage] != StageStatus.PROCESSING:
            logger.info("Skipping stale %s job for %s", p.stage.value, p.subject_key)
            return SKIPPED

        collector = self.collectors[p.stage]
        return await collector.collect(p.subject_key, p.addresses)

    async def _issue(self, p: StagePayload) -> dict:
        def begin(current):
            if current is None or current.run_id != p.run_id:
                return None
            if current.stages[CRED] != StageStatus.READY:
                return None
            return current.with_stage(CRED, StageStatus.PROCESSING)

        job, _ = await self.store.update(p.subject_key, begin)
        if job is None or job.run_id != p.run_id or job.stages[CRED] != StageStatus.PROCESSING:
            logger.info("Skipping issuance for %s (not pending issuance)", p.subject_key)
            return SKIPPED

        result = await self.credentials.issue_credential(
            job.merged_data, score=job.score, developer_worth=job.developer_worth, email=job.email)
        if result.success:
            return {
                "credentialHash": result.credential_hash,
                "credentialId": result.credential_id,
                "issuerDid": result.issuer_did,
                "issuedAt": utcnow(),
            }
        if result.configuration_error:
            raise ConfigurationError(result.error)
        if not result.retryable:
            raise PermanentUpstreamError("issuer", result.error or "issuance rejected")
        raise UpstreamError("issuer", result.error or "issuance failed")

    # ── queue callbacks ──

    async def _on_completed(self, job: Job[StagePayload], result) -> None:
        p = job.payload
        skipped = isinstance(result, dict) and result.get("skipped")
        try:
            if skipped:
                logger.debug("Stale %s job for %s finished", p.stage.value, p.subject_key)
            elif p.stage == CRED:
                await self._record_credential(p, result or {})
            else:
                await self._record_stage(p, StageStatus.COMPLETED, data=result or {})
                await self.evaluate_gate(p.subject_key)
            await self._redispatch(p)
        except Exception:
            logger.exception("Completion callback failed for %s", job.id)

    async def _on_failed(self, job: Job[StagePayload], error: Exception) -> None:
        p = job.payload
        reason = str(error) or type(error).__name__
        try:
            await self._record_stage(p, StageStatus.FAILED, error=reason)
            if p.stage != CRED:
                await self.evaluate_gate(p.subject_key)
            await self._redispatch(p)
        except Exception:
            logger.exception("Failure callback failed for %s", job.id)

    async def _on_error(self, error: Exception) -> None:
        logger.error("Queue error: %s", error)

    async def _record_stage(self, p: StagePayload, status: StageStatus, *,
                            data: Optional[dict] = None, error: Optional[str] = None) -> bool:
        active = (StageStatus.PROCESSING, StageStatus.READY) if p.stage == CRED \
            else (StageStatus.PENDING, StageStatus.PROCESSING)

        def transition(current):
            if current is None or current.run_id != p.run_id:
                return None
            if current.stages[p.stage] not in active:
                return None
            changes = {}
            if data is not None:
                section = STAGE_SECTIONS[p.stage]
                changes["merged_data"] = merge_documents(current.merged_data, {section: data})
            return current.with_stage(p.stage, status, error=error, **changes)

        job, changed = await self.store.update(p.subject_key, transition)
        if changed:
            log = logger.warning if status == StageStatus.FAILED else logger.info
            log("Stage %s for %s -> %s%s", p.stage.value, p.subject_key, status.value,
                f" ({error})" if error else "")
            if job.overall_status == OverallStatus.FAILED:
                logger.warning("Analysis for %s failed", p.subject_key)
        else:
            logger.debug("Ignored %s callback for %s (stale or duplicate)", p.stage.value, p.subject_key)
        return changed

    async def _record_credential(self, p: StagePayload, result: dict) -> None:
        record = CredentialRecord(
            credential_hash=result.get("credentialHash"),
            credential_id=result.get("credentialId"),
            issuer_did=result.get("issuerDid"),
            issued_at=result.get("issuedAt") or utcnow(),
            source="server",
        )

        def transition(current):
            if current is None or current.run_id != p.run_id:
                return None
            if current.stages[CRED] not in (StageStatus.PROCESSING, StageStatus.READY,
                                            StageStatus.COMPLETED):
                return None
            return current.with_stage(CRED, StageStatus.COMPLETED, credential_result=record)

        _, changed = await self.store.update(p.subject_key, transition)
        if changed:
            logger.info("Credential issued for %s", p.subject_key,
                        extra={"credential_hash": record.credential_hash})

    # ── readiness gate ──

    async def evaluate_gate(self, subject_key: str) -> bool:
        """Move credentialIssuing PENDING -> READY once every data stage is COMPLETED.

        Returns True only for the caller whose compare-and-set won; that caller
        alone enqueues the issuance job.
        """
        config = self.score_config.current()

        def gate(current):
            if current is None or not current.data_complete:
                return None
            if current.stages[CRED] != StageStatus.PENDING:
                return None
            result = self.engine.compute(current.merged_data, config)
            summary = ScoreSummary(
                total_score=result.total_score,
                web2_total=result.web2_total,
                web3_total=result.web3_total,
                verification_level=result.verification_level,
            )
            return current.with_stage(CRED, StageStatus.READY, score=summary,
                                      developer_worth=result.developer_worth)

        job, changed = await self.store.update(subject_key, gate)
        if not changed:
            return False

        logger.info("Readiness gate passed for %s (score=%.2f, level=%s)", subject_key,
                    job.score.total_score, job.score.verification_level)
        if self.server_issuance:
            await self._enqueue_issuance(job)
        return True

    async def _enqueue_issuance(self, job: AnalysisJob) -> None:
        try:
            await self._enqueue_stage(job, CRED)
        except Exception as e:
            logger.exception("Could not enqueue issuance for %s", job.subject_key)
            await self._fail_unqueued(job, (CRED,), f"enqueue failed: {e}")

    # ── credential operations ──

    async def retry_credential(self, subject_key) -> AnalysisJob:
        """Re-run only the issuance step after it failed."""
        subject = normalize_subject_key(subject_key)

        def reset(current):
            if current is None or current.stages[CRED] != StageStatus.FAILED:
                return None
            if not current.data_complete:
                return None
            return current.with_stage(CRED, StageStatus.READY)

        job, changed = await self.store.update(subject, reset)
        if job is None:
            raise SubjectNotFound(subject)
        if not changed:
            raise StateConflict(
                f"Credential issuance for {subject} is {job.stages[CRED].value}, not a retryable FAILED")
        logger.info("Retrying credential issuance for %s", subject)
        await self._enqueue_issuance(job)
        return job

    async def mark_credential_issued(self, subject_key, status: str = "ISSUED") -> AnalysisJob:
        """Client callback after a client-side issuance. Idempotent."""
        subject = normalize_subject_key(subject_key)
        if str(status).upper() != "ISSUED":
            raise ValidationError(f"Unsupported credential status: {status!r}")

        def mark(current):
            if current is None:
                return None
            if current.stages[CRED] not in (StageStatus.READY, StageStatus.PROCESSING,
                                            StageStatus.FAILED):
                return None
            record = current.credential_result or CredentialRecord(issued_at=utcnow(), source="client")
            return current.with_stage(CRED, StageStatus.COMPLETED, credential_result=record)

        job, changed = await self.store.update(subject, mark)
        if job is None:
            raise SubjectNotFound(subject)
        if not changed and job.stages[CRED] != StageStatus.COMPLETED:
            raise StateConflict(f"Analysis for {subject} has not passed the readiness gate")
        if changed:
            logger.info("Credential for %s marked issued by client", subject)
        return job
