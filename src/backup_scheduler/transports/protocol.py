from datetime import datetime
from typing import List, Optional, Protocol

from pydantic import BaseModel

from backup_scheduler.domain.destination import Destination


class TransportResult(BaseModel):
    success: bool
    message: str = ""


class RemoteFile(BaseModel):
    name: str
    size: int = 0
    modified_time: Optional[datetime] = None


class Transport(Protocol):
    async def delete(self, path: str, destination: Destination) -> TransportResult:
        """Delete a file relative to the destination root."""
        ...

    async def list(self, prefix: str, destination: Destination) -> List[RemoteFile]:
        """List the files directly under a prefix. Raise TransportFailure on errors."""
        ...
