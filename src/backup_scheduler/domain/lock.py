from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


class LockRecord(BaseModel):
    """
    The single processing-pass lock.
    """
    token: str = Field(..., description="Opaque value identifying this acquisition")
    holder_pid: Optional[int] = Field(None, description="Process id of the pass holding the lock, if known")
    acquired_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    heartbeat_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CancelMarker(BaseModel):
    job_id: str
    requested_by: str = "root"
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: Optional[str] = None
