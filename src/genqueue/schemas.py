from typing import Any

from pydantic import BaseModel, Field

from genqueue.models import CreditTransaction, Job, TransactionKind


class CreateJobRequest(BaseModel):
    owner_id: str = Field(min_length=1)
    type: str
    input_data: Any = Field(default_factory=dict)
    total_steps: int | None = None
    scope_id: str | None = None
    parent_job_id: str | None = None


class CreateJobResponse(BaseModel):
    job_id: str
    job: Job


class JobListResponse(BaseModel):
    jobs: list[Job]
    count: int


class JobChainResponse(BaseModel):
    chain: list[Job]
    final: Job


class CancelJobResponse(BaseModel):
    job_id: str
    cancelled: bool
    status: str


class CreditBalanceResponse(BaseModel):
    account_id: str
    balance: int
    total_earned: int
    total_spent: int


class CreditsResponse(BaseModel):
    balance: CreditBalanceResponse
    recent_transactions: list[CreditTransaction]


class AdminGrantRequest(BaseModel):
    account_id: str = Field(min_length=1)
    amount: int
    kind: TransactionKind = TransactionKind.PURCHASE
    note: str = "manual grant"
    external_ref: str | None = None
