from typing import Annotated

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from genqueue import jobs, ledger
from genqueue.config import settings
from genqueue.db import init_db
from genqueue.errors import (
    GenQueueError,
    InsufficientBalance,
    InvalidTransition,
    NotFound,
    RateLimitExceeded,
    ValidationError,
)
from genqueue.handlers.registry import build_registry
from genqueue.schemas import (
    AdminGrantRequest,
    CancelJobResponse,
    CreateJobRequest,
    CreateJobResponse,
    CreditBalanceResponse,
    CreditsResponse,
    JobChainResponse,
    JobListResponse,
)
from genqueue.worker import process_job

app = FastAPI(title="GenQueue", version=settings.app_version)
init_db()

ERROR_STATUS = {
    ValidationError: 400,
    InsufficientBalance: 402,
    NotFound: 404,
    InvalidTransition: 409,
    RateLimitExceeded: 429,
}


def envelope(data: dict, status: str = "ok", error: dict | None = None) -> dict:
    return {
        "status": status,
        "data": data,
        "meta": {"version": settings.app_version},
        "error": error,
    }


@app.exception_handler(GenQueueError)
async def _domain_error(request: Request, exc: GenQueueError) -> JSONResponse:
    code = next((c for t, c in ERROR_STATUS.items() if isinstance(exc, t)), 500)
    return JSONResponse(
        status_code=code,
        content=envelope({}, status="error", error={"type": type(exc).__name__, "message": str(exc)}),
    )


def _require_admin(x_admin_token: Annotated[str | None, Header()] = None) -> None:
    if not settings.admin_api_token:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN is not configured")
    if x_admin_token != settings.admin_api_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


async def _run_inline(job_id: str) -> None:
    await process_job(job_id, build_registry())


@app.get("/health")
def health() -> dict:
    return envelope({"service": "genqueue"})


@app.get("/version")
def version() -> dict:
    return envelope({"service": "genqueue", "version": settings.app_version})


@app.post("/v1/jobs")
def create_job(payload: CreateJobRequest, background_tasks: BackgroundTasks) -> dict:
    job = jobs.create_job(
        owner_id=payload.owner_id,
        job_type=payload.type,
        input_data=payload.input_data,
        total_steps=payload.total_steps,
        parent_job_id=payload.parent_job_id,
        scope_id=payload.scope_id,
    )
    if settings.execute_inline:
        background_tasks.add_task(_run_inline, job.job_id)
    return envelope(CreateJobResponse(job_id=job.job_id, job=job).model_dump(mode="json"))


@app.get("/v1/jobs")
def list_jobs(
    owner_id: str,
    status: Annotated[list[str] | None, Query()] = None,
    limit: int = 50,
    scope_id: str | None = None,
) -> dict:
    items = jobs.list_for_owner(owner_id, status, limit, scope_id=scope_id)
    return envelope(JobListResponse(jobs=items, count=len(items)).model_dump(mode="json"))


@app.get("/v1/jobs/{job_id}")
def get_job(job_id: str) -> dict:
    return envelope(jobs.get_job(job_id).model_dump(mode="json"))


@app.get("/v1/jobs/{job_id}/chain")
def get_job_chain(job_id: str) -> dict:
    chain = jobs.follow_chain(job_id)
    return envelope(JobChainResponse(chain=chain, final=chain[-1]).model_dump(mode="json"))


@app.post("/v1/jobs/{job_id}/cancel")
def cancel_job(job_id: str, owner_id: str | None = None) -> dict:
    cancelled = jobs.cancel_job(job_id, owner_id=owner_id)
    job = jobs.get_job(job_id)
    return envelope(CancelJobResponse(job_id=job_id, cancelled=cancelled, status=job.status.value).model_dump())


@app.post("/v1/jobs/{job_id}/retry")
def retry_job(job_id: str, owner_id: str | None = None) -> dict:
    job = jobs.retry_job(job_id, owner_id=owner_id)
    return envelope(CreateJobResponse(job_id=job.job_id, job=job).model_dump(mode="json"))


@app.get("/v1/credits/{account_id}")
def get_credits(account_id: str) -> dict:
    balance = CreditBalanceResponse(**ledger.get_account(account_id))
    recent = ledger.list_transactions(account_id, limit=20)
    return envelope(CreditsResponse(balance=balance, recent_transactions=recent).model_dump(mode="json"))


@app.post("/v1/admin/credits/grant")
def admin_grant_credits(payload: AdminGrantRequest, x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    tx = ledger.grant(
        payload.account_id,
        payload.amount,
        payload.note,
        kind=payload.kind,
        metadata={"external_ref": payload.external_ref} if payload.external_ref else None,
    )
    return envelope(
        {
            "account_id": payload.account_id,
            "transaction_id": tx.transaction_id,
            "balance": tx.resulting_balance,
        }
    )


@app.get("/v1/admin/jobs/stats")
def admin_job_stats(x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    return envelope(jobs.job_stats())
