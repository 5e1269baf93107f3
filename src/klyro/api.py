"""
klyro API: submission and status endpoints for the analysis pipeline.

Public endpoints:
  POST /analyze-user                      - submit (or join) an analysis, 202
  GET  /status/{subject_key}              - pollable status snapshot
  POST /update-credential-status          - client-side issuance callback
  GET  /credentials/{subject_key}         - issued credential, if any
  POST /retry-credential/{subject_key}    - re-run a failed issuance
  GET  /health
Admin endpoints (X-API-Key):
  POST /reprocess-user/{subject_key}
  GET  /admin/queue, POST /admin/queue/pause, POST /admin/queue/resume
"""

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator

from klyro import __version__
from klyro.errors import StateConflict, SubjectNotFound, ValidationError
from klyro.models import ALL_STAGES, AnalysisJob, StageName, StageStatus
from klyro.runtime import Runtime
from klyro.security import (
    apply_security,
    limiter,
    logger,
    require_admin_key,
    setup_structured_logging,
    submit_rate,
)

# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

class AnalyzeRequest(BaseModel):
    """Submission body. ``githubUsername`` is accepted as an alias of ``subjectKey``."""
    model_config = ConfigDict(populate_by_name=True)

    subject_key: Optional[str] = Field(None, alias="subjectKey", max_length=100)
    github_username: Optional[str] = Field(None, alias="githubUsername", max_length=100)
    addresses: list[str] = Field(default_factory=list, max_length=20)
    email: Optional[str] = Field(None, max_length=254)
    force_refresh: bool = Field(False, alias="forceRefresh")

    @model_validator(mode="after")
    def _subject_present(self):
        if not (self.subject_key or self.github_username):
            raise ValueError("subjectKey is required")
        return self

    @property
    def subject(self) -> str:
        return self.subject_key or self.github_username


class AnalyzeResponse(BaseModel):
    jobId: str
    subjectKey: str
    status: str
    created: bool


class StatusResponse(BaseModel):
    subjectKey: str
    status: str
    progress: dict[str, str]
    readyForCredentials: bool
    userData: Optional[dict] = None
    score: Optional[dict] = None
    developerWorth: Optional[float] = None
    credential: Optional[dict] = None
    errors: dict[str, str] = {}
    updatedAt: Optional[str] = None


class CredentialStatusRequest(BaseModel):
    subjectKey: str = Field(..., min_length=1, max_length=100)
    status: str = "ISSUED"


class CredentialResponse(BaseModel):
    subjectKey: str
    hasCredential: bool
    status: str
    credentialHash: Optional[str] = None
    credentialId: Optional[str] = None
    issuerDid: Optional[str] = None
    issuedAt: Optional[str] = None
    source: Optional[str] = None


class QueueResponse(BaseModel):
    queue: str
    paused: bool
    counts: dict[str, int]


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = __version__
    backend: str = ""
    timestamp: float = 0.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return runtime


def status_view(job: AnalysisJob) -> StatusResponse:
    return StatusResponse(
        subjectKey=job.subject_key,
        status=job.overall_status.value,
        progress={s.value: job.stages[s].value for s in ALL_STAGES},
        readyForCredentials=job.stages[StageName.CREDENTIAL_ISSUING] == StageStatus.READY,
        userData=job.merged_data or None,
        score=job.score.to_dict() if job.score else None,
        developerWorth=job.developer_worth,
        credential=job.credential_result.to_dict() if job.credential_result else None,
        errors={s.value: msg for s, msg in job.errors.items()},
        updatedAt=job.updated_at,
    )


def credential_view(job: AnalysisJob) -> CredentialResponse:
    record = job.credential_result
    return CredentialResponse(
        subjectKey=job.subject_key,
        hasCredential=job.stages[StageName.CREDENTIAL_ISSUING] == StageStatus.COMPLETED,
        status=job.stages[StageName.CREDENTIAL_ISSUING].value,
        **({
            "credentialHash": record.credential_hash,
            "credentialId": record.credential_id,
            "issuerDid": record.issuer_did,
            "issuedAt": record.issued_at,
            "source": record.source,
        } if record else {}),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Request body errors are client errors: 400, not FastAPI's default 422."""
    parts = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ())[1:]) or "body"
        parts.append(f"{field}: {err.get('msg', 'invalid')}")
    return JSONResponse(status_code=400, content={"detail": "; ".join(parts) or "Invalid request"})


async def _load(runtime: Runtime, subject_key: str) -> AnalysisJob:
    try:
        job = await runtime.orchestrator.status(subject_key)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if job is None:
        raise HTTPException(status_code=404, detail=f"No analysis for {subject_key}")
    return job


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

router = APIRouter()


@router.post("/analyze-user", response_model=AnalyzeResponse, status_code=202)
@limiter.limit(submit_rate)
async def analyze_user(request: Request, body: AnalyzeRequest,
                       runtime: Runtime = Depends(get_runtime)):
    try:
        submission = await runtime.orchestrator.submit(
            body.subject, body.addresses, email=body.email, force=body.force_refresh)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    job = submission.job
    return AnalyzeResponse(
        jobId=submission.job_id,
        subjectKey=job.subject_key,
        status=job.overall_status.value,
        created=submission.created,
    )


@router.get("/status/{subject_key}", response_model=StatusResponse)
async def get_status(subject_key: str, runtime: Runtime = Depends(get_runtime)):
    return status_view(await _load(runtime, subject_key))


@router.post("/update-credential-status", response_model=StatusResponse)
async def update_credential_status(body: CredentialStatusRequest,
                                   runtime: Runtime = Depends(get_runtime)):
    try:
        job = await runtime.orchestrator.mark_credential_issued(body.subjectKey, body.status)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SubjectNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StateConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    return status_view(job)


@router.get("/credentials/{subject_key}", response_model=CredentialResponse)
async def get_credential(subject_key: str, runtime: Runtime = Depends(get_runtime)):
    return credential_view(await _load(runtime, subject_key))


@router.post("/retry-credential/{subject_key}", response_model=StatusResponse, status_code=202)
async def retry_credential(subject_key: str, runtime: Runtime = Depends(get_runtime)):
    try:
        job = await runtime.orchestrator.retry_credential(subject_key)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SubjectNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StateConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    return status_view(job)


@router.post("/reprocess-user/{subject_key}", response_model=AnalyzeResponse, status_code=202)
async def reprocess_user(subject_key: str, _admin: bool = Depends(require_admin_key),
                         runtime: Runtime = Depends(get_runtime)):
    try:
        submission = await runtime.orchestrator.reprocess(subject_key)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SubjectNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    logger.info("Reprocess requested for %s (created=%s)", submission.job.subject_key,
                submission.created)
    return AnalyzeResponse(
        jobId=submission.job_id,
        subjectKey=submission.job.subject_key,
        status=submission.job.overall_status.value,
        created=submission.created,
    )


async def _queue_view(runtime: Runtime) -> QueueResponse:
    counts = await runtime.queue.counts()
    return QueueResponse(queue=runtime.queue.name, paused=await runtime.queue.is_paused(),
                         counts=counts.to_dict())


@router.get("/admin/queue", response_model=QueueResponse)
async def queue_status(_admin: bool = Depends(require_admin_key),
                       runtime: Runtime = Depends(get_runtime)):
    return await _queue_view(runtime)


@router.post("/admin/queue/pause", response_model=QueueResponse)
async def pause_queue(_admin: bool = Depends(require_admin_key),
                      runtime: Runtime = Depends(get_runtime)):
    await runtime.queue.pause()
    return await _queue_view(runtime)


@router.post("/admin/queue/resume", response_model=QueueResponse)
async def resume_queue(_admin: bool = Depends(require_admin_key),
                       runtime: Runtime = Depends(get_runtime)):
    await runtime.queue.resume()
    return await _queue_view(runtime)


@router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        return HealthResponse(status="starting", timestamp=time.time())
    ok = await runtime.ping()
    return HealthResponse(
        status="ok" if ok else "degraded",
        backend=runtime.settings.backend,
        timestamp=time.time(),
    )


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(runtime: Optional[Runtime] = None, *, allowed_origins: list[str] | None = None,
               use_lifespan: bool = True) -> FastAPI:
    """Create the API app. An injected ``runtime`` is used as-is and not closed on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.runtime is None
        if owned:
            rt = Runtime.build()
            setup_structured_logging(rt.settings.log_level)
            app.state.runtime = rt
        await app.state.runtime.start()
        try:
            yield
        finally:
            if owned:
                await app.state.runtime.close()
                app.state.runtime = None

    app = FastAPI(
        title="klyro API",
        description="Developer reputation analysis and credentialing",
        version=__version__,
        lifespan=lifespan if use_lifespan else None,
    )
    app.state.runtime = runtime
    apply_security(app, allowed_origins)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.include_router(router)
    return app
