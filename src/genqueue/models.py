"""Domain records for jobs and credit transactions."""

import sqlite3
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from genqueue.db import loads


class JobType(str, Enum):
    IMAGE_GENERATION = "image_generation"
    VIDEO_GENERATION = "video_generation"
    AUDIO_GENERATION = "audio_generation"
    EXPORT = "export"
    STORYBOARD_GENERATION = "storyboard_generation"
    STORYBOARD_BASIC_EXTRACTION = "storyboard_basic_extraction"
    STORYBOARD_MATCHING = "storyboard_matching"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Allowed moves of the job state machine; terminal states have no exits.
TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class TransactionKind(str, Enum):
    SPEND = "spend"
    REFUND = "refund"
    PURCHASE = "purchase"
    BONUS = "bonus"
    REDEEM = "redeem"


class Job(BaseModel):
    """One unit of asynchronous work and its lifecycle state."""

    job_id: str
    owner_id: str
    scope_id: str | None = None
    type: JobType
    status: JobStatus
    parent_job_id: str | None = None
    progress: int = 0
    current_step: int | None = None
    total_steps: int | None = None
    progress_message: str | None = None
    input_data: dict[str, Any] = Field(default_factory=dict)
    result_data: dict[str, Any] | None = None
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Job":
        data = dict(row)
        data["input_data"] = loads(data["input_data"]) or {}
        data["result_data"] = loads(data["result_data"])
        return cls(**data)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def child_job_id(self) -> str | None:
        if not self.result_data:
            return None
        child = self.result_data.get("child_job_id")
        return str(child) if child else None


class CreditTransaction(BaseModel):
    transaction_id: str
    account_id: str
    kind: TransactionKind
    amount: int
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    job_id: str | None = None
    original_transaction_id: str | None = None
    resulting_balance: int
    created_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CreditTransaction":
        data = dict(row)
        data["metadata"] = loads(data["metadata"]) or {}
        return cls(**data)


class Charge(BaseModel):
    """A completed spend that a handler may have to compensate."""

    transaction_id: str
    account_id: str
    amount: int
    job_id: str
