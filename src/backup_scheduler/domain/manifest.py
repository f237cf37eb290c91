from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


class ManifestEntry(BaseModel):
    """
    Records that a backup artifact on a destination was produced for an account by a schedule.
    """
    destination_id: str
    schedule_id: str = Field(..., description="Producing schedule id, or '_manual' for ad-hoc jobs")
    account: str
    filename: str = Field(..., description="Artifact file name, relative to the account's directory")
    companion_filename: Optional[str] = Field(None, description="Secondary artifact deleted alongside the main one")
    size: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    seq: Optional[int] = Field(None, description="Insertion order, assigned by storage")
