from enum import Enum
from typing import Any, Dict, List, Optional, Union
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator, model_validator

from .accounts import AccountSelection, AllAccessibleAccounts, ExplicitAccounts, parse_accounts
from .ids import check_id, generate_id

MANUAL_SCHEDULE_ID = "_manual"


class JobType(str, Enum):
    BACKUP = "backup"
    RESTORE = "restore"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobCollection(str, Enum):
    """
    Named collections a job can live in. A job is in exactly one at a time.
    """
    QUEUE = "queue"
    RUNNING = "running"
    COMPLETED = "completed"


class JobProgress(BaseModel):
    accounts_total: int = Field(0, ge=0)
    accounts_completed: int = Field(0, ge=0)

    @model_validator(mode="after")
    def check_bounds(self) -> "JobProgress":
        if self.accounts_completed > self.accounts_total:
            raise ValueError("accounts_completed cannot exceed accounts_total")
        return self

    @property
    def percent(self) -> float:
        if not self.accounts_total:
            return 0.0
        return round(100.0 * self.accounts_completed / self.accounts_total, 1)


class AccountResult(BaseModel):
    """
    Outcome of one account-level unit of work inside a job.
    """
    account: str
    success: bool
    message: str = ""
    filename: Optional[str] = None
    companion_filename: Optional[str] = None
    size: int = 0
    duration_seconds: float = 0.0


class Job(BaseModel):
    """
    A single backup or restore run over one or more accounts.
    """
    id: str = Field(default_factory=lambda: generate_id("job"), description="Unique job identifier, never reused")
    type: JobType = JobType.BACKUP
    accounts: AccountSelection = Field(..., description="Explicit accounts, or all accounts accessible to the owner")
    destination_id: str = Field(..., description="Destination the job reads from or writes to")
    owner: str = Field("root", description="Principal that requested the job")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: JobStatus = JobStatus.QUEUED
    schedule_id: str = Field(MANUAL_SCHEDULE_ID, description="Schedule that spawned this job, or '_manual'")
    retention: int = Field(30, ge=0, description="Artifacts to keep per account, 0 means unlimited")
    progress: JobProgress = Field(default_factory=JobProgress)
    options: Dict[str, Any] = Field(default_factory=dict, description="Executor options, validated per job type")
    results: Dict[str, AccountResult] = Field(default_factory=dict, description="Per-account results keyed by account")
    errors: List[str] = Field(default_factory=list)
    message: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @field_validator("id")
    def check_safe_id(cls, v: str) -> str:
        return check_id(v)

    @field_validator("accounts", mode="before")
    def normalise_accounts(cls, v: Any) -> Union[ExplicitAccounts, AllAccessibleAccounts, dict]:
        return parse_accounts(v)

    @property
    def is_manual(self) -> bool:
        return self.schedule_id == MANUAL_SCHEDULE_ID

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def uses_all_accounts(self) -> bool:
        return isinstance(self.accounts, AllAccessibleAccounts)
