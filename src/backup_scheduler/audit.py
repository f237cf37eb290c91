import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Protocol, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class AuditEvent(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    user: str = "root"
    type: str = Field(..., description="Event type, e.g. schedule_create, backup, prune")
    items: List[str] = Field(default_factory=list, description="Affected accounts, job or schedule ids")
    success: bool = True
    message: str = ""
    requestor: str = "cron"
    job_id: Optional[str] = None


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None:
        ...


class NullAuditSink(AuditSink):
    def record(self, event: AuditEvent) -> None:
        pass


class JsonLinesAuditSink(AuditSink):
    """
    Appends one JSON object per line to an operations log.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def record(self, event: AuditEvent) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = event.model_dump_json(exclude_none=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
        os.chmod(self.path, 0o644)

    def read(self) -> List[AuditEvent]:
        if not self.path.exists():
            return []
        with open(self.path, encoding="utf-8") as f:
            return [AuditEvent.model_validate_json(line) for line in f if line.strip()]


def emit(sink: Optional[AuditSink], event: AuditEvent) -> None:
    """
    Fire-and-forget delivery. A broken sink is logged and otherwise ignored
    so that auditing can never fail a processing pass.
    """
    if sink is None:
        return
    try:
        sink.record(event)
    except Exception as e:
        logger.warning("Audit sink unavailable, dropped %s event: %s", event.type, e)
