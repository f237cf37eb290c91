import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .domain.job import JobCollection
from .domain.lock import CancelMarker
from .errors import AlreadyTerminal, NotFound
from .storages.protocol import Storage

logger = logging.getLogger(__name__)


class CancelOutcome(str, Enum):
    REMOVED = "removed"
    REQUESTED = "requested"


class CancellationToken:
    """
    Cancellation handle for one running job, consulted between account units.
    """

    def __init__(self, signal: "CancellationSignal", job_id: str):
        self.signal = signal
        self.job_id = job_id

    async def is_requested(self) -> bool:
        return await self.signal.is_cancel_requested(self.job_id)

    async def clear(self) -> None:
        await self.signal.clear_cancel_request(self.job_id)


class CancellationSignal:
    """
    Cooperative cancellation. A queued job is removed on the spot; a running
    job gets a marker and stops after the account it is currently on.
    """

    def __init__(self, storage: Storage):
        self.storage = storage

    async def request_cancel(self, job_id: str, requested_by: str = "root",
                             reason: Optional[str] = None) -> CancelOutcome:
        # Two attempts: the job may be picked up between the lookup and the removal.
        for _ in range(2):
            collection = await self.storage.job_collection(job_id)
            if collection is None:
                raise NotFound(f"Job '{job_id}' not found")
            if collection == JobCollection.COMPLETED:
                raise AlreadyTerminal(f"Job '{job_id}' has already finished")
            if collection == JobCollection.QUEUE:
                if await self.storage.delete_job(job_id, JobCollection.QUEUE):
                    logger.info("Queued job %s cancelled before start", job_id)
                    return CancelOutcome.REMOVED
                continue
            await self.storage.create_cancel_marker(CancelMarker(
                job_id=job_id,
                requested_by=requested_by,
                requested_at=datetime.now(timezone.utc),
                reason=reason,
            ))
            # The job may have finished, and its markers been cleared, since the lookup.
            if await self.storage.job_collection(job_id) != JobCollection.RUNNING:
                await self.storage.delete_cancel_marker(job_id)
                raise AlreadyTerminal(f"Job '{job_id}' has already finished")
            logger.info("Cancellation requested for job %s, it will stop after the current account", job_id)
            return CancelOutcome.REQUESTED
        raise NotFound(f"Job '{job_id}' not found")

    async def is_cancel_requested(self, job_id: str) -> bool:
        return await self.storage.get_cancel_marker(job_id) is not None

    async def clear_cancel_request(self, job_id: str) -> None:
        await self.storage.delete_cancel_marker(job_id)

    def token(self, job_id: str) -> CancellationToken:
        return CancellationToken(self, job_id)
