from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from backup_scheduler.domain.job import Job, JobCollection
from backup_scheduler.domain.schedule import Schedule
from backup_scheduler.domain.manifest import ManifestEntry
from backup_scheduler.domain.lock import CancelMarker, LockRecord


class Storage(Protocol):
    async def create_job(self, job: Job, collection: JobCollection = JobCollection.QUEUE) -> str:
        """Store a new job in a collection and return its ID. Raise DuplicateID if the ID was ever issued."""
        ...

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Retrieve a job by its ID from whichever collection holds it."""
        ...

    async def job_collection(self, job_id: str) -> Optional[JobCollection]:
        """Return the collection currently holding the job, or None."""
        ...

    async def list_collection(self, collection: JobCollection) -> List[Job]:
        """List the jobs of a collection in insertion order. Empty when there are none."""
        ...

    async def update_job(self, job_id: str, fields: Dict[str, Any], collection: Optional[JobCollection] = None) -> Job:
        """Merge fields into a job. Raise NotFound if it is absent (from the given collection)."""
        ...

    async def move_job(self, job_id: str, source: JobCollection, target: JobCollection,
                       fields: Optional[Dict[str, Any]] = None) -> Job:
        """Atomically move a job between collections, merging fields. Raise NotFound if absent from source."""
        ...

    async def delete_job(self, job_id: str, collection: Optional[JobCollection] = None) -> bool:
        """Delete a job. Return True if something was deleted."""
        ...

    async def create_schedule(self, schedule: Schedule) -> str:
        """Store a new schedule and return its ID. Raise DuplicateID if the ID was ever issued."""
        ...

    async def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        ...

    async def list_schedules(self) -> List[Schedule]:
        """List schedules in creation order."""
        ...

    async def update_schedule(self, schedule_id: str, fields: Dict[str, Any]) -> Schedule:
        """Merge fields into a schedule. Raise NotFound if it is absent."""
        ...

    async def delete_schedule(self, schedule_id: str) -> bool:
        ...

    async def append_manifest_entry(self, entry: ManifestEntry) -> ManifestEntry:
        """Append an entry to its destination's manifest and return it with its sequence number."""
        ...

    async def list_manifest_entries(self, destination_id: str, schedule_id: str,
                                    account: Optional[str] = None) -> List[ManifestEntry]:
        """List manifest entries oldest first, ties broken by insertion order."""
        ...

    async def delete_manifest_entries(self, destination_id: str, schedule_id: str, filenames: List[str],
                                      account: Optional[str] = None) -> int:
        """Remove manifest entries by filename and return how many were removed."""
        ...

    async def create_cancel_marker(self, marker: CancelMarker) -> None:
        ...

    async def get_cancel_marker(self, job_id: str) -> Optional[CancelMarker]:
        ...

    async def delete_cancel_marker(self, job_id: str) -> bool:
        ...

    async def get_lock(self) -> Optional[LockRecord]:
        ...

    async def insert_lock(self, lock: LockRecord) -> bool:
        """Insert the lock row. Return False if a lock row already exists."""
        ...

    async def delete_lock(self, token: str) -> bool:
        """Delete the lock row only if it still carries the given token."""
        ...

    async def touch_lock(self, token: str, at: datetime) -> bool:
        """Refresh the heartbeat of the lock carrying the given token."""
        ...
