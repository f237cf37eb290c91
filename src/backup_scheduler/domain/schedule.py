from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator

from .accounts import AccountSelection, AllAccessibleAccounts, ExplicitAccounts, parse_accounts
from .ids import check_id, generate_id


class Frequency(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


class Schedule(BaseModel):
    """
    A recurrence definition that materializes backup jobs when it becomes due.
    """
    id: str = Field(default_factory=lambda: generate_id("sch"), description="Unique schedule identifier")
    owner: str = Field("root", description="Principal owning the schedule")
    accounts: AccountSelection = Field(..., description="Explicit accounts, or all accounts accessible to the owner")
    destination_id: str = Field(..., description="Destination the materialized jobs write to")
    frequency: Frequency = Frequency.DAILY
    preferred_hour: int = Field(2, ge=0, le=23, description="Hour of day (local time) the schedule fires at")
    day_of_week: int = Field(0, ge=0, le=6, description="0=Sunday..6=Saturday, only used by weekly schedules")
    retention: int = Field(30, ge=0, description="Artifacts to keep per account, 0 means unlimited")
    enabled: bool = True
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_status: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None

    @field_validator("id")
    def check_safe_id(cls, v: str) -> str:
        return check_id(v)

    @field_validator("accounts", mode="before")
    def normalise_accounts(cls, v: Any) -> Union[ExplicitAccounts, AllAccessibleAccounts, dict]:
        return parse_accounts(v)

    @property
    def uses_all_accounts(self) -> bool:
        return isinstance(self.accounts, AllAccessibleAccounts)

    def is_due(self, now: datetime) -> bool:
        return self.enabled and self.next_run is not None and self.next_run <= now

    @property
    def readable_string(self) -> str:
        when = f"{self.preferred_hour:02d}:00"
        if self.frequency == Frequency.HOURLY:
            cadence = "Every hour"
        elif self.frequency == Frequency.DAILY:
            cadence = f"Daily at {when}"
        elif self.frequency == Frequency.WEEKLY:
            cadence = f"Weekly on {DAY_NAMES[self.day_of_week]} at {when}"
        else:
            cadence = f"Monthly on the 1st at {when}"
        retention = "unlimited" if self.retention == 0 else str(self.retention)
        return (
            f"Interval: {cadence}\n"
            f"Accounts: {self.accounts.describe()}\n"
            f"Destination: {self.destination_id}\n"
            f"Retention: {retention}"
        )
