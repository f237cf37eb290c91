import logging
from datetime import datetime, timezone
from typing import List, Optional

from .domain.job import MANUAL_SCHEDULE_ID
from .domain.manifest import ManifestEntry
from .storages.protocol import Storage

logger = logging.getLogger(__name__)


class ManifestLedger:
    """
    Append-only record of the artifacts produced on one destination.

    Pruning only ever reasons about artifacts listed here: an artifact is
    eligible for deletion when it falls outside its schedule's per-account
    retention count. Entries recorded for ad-hoc jobs carry the ``_manual``
    schedule id and are never reported as expired.
    """

    def __init__(self, storage: Storage, destination_id: str):
        self.storage = storage
        self.destination_id = destination_id

    async def record(self, schedule_id: Optional[str], account: str, filename: str,
                     companion_filename: Optional[str] = None, size: int = 0,
                     created_at: Optional[datetime] = None) -> ManifestEntry:
        entry = ManifestEntry(
            destination_id=self.destination_id,
            schedule_id=schedule_id or MANUAL_SCHEDULE_ID,
            account=account,
            filename=filename,
            companion_filename=companion_filename,
            size=size,
            created_at=created_at or datetime.now(timezone.utc),
        )
        entry = await self.storage.append_manifest_entry(entry)
        logger.debug("Manifest %s: recorded %s/%s for schedule %s",
                     self.destination_id, account, filename, entry.schedule_id)
        return entry

    async def entries(self, schedule_id: str, account: Optional[str] = None) -> List[ManifestEntry]:
        """Entries for a schedule, oldest first."""
        return await self.storage.list_manifest_entries(self.destination_id, schedule_id, account)

    async def has_entries(self, schedule_id: str) -> bool:
        return bool(await self.entries(schedule_id))

    async def accounts(self, schedule_id: str) -> List[str]:
        """Accounts with at least one entry for the schedule, in order of first appearance."""
        accounts: List[str] = []
        for entry in await self.entries(schedule_id):
            if entry.account not in accounts:
                accounts.append(entry.account)
        return accounts

    async def expired_entries(self, schedule_id: str, account: str, keep_count: int) -> List[ManifestEntry]:
        """
        Entries beyond the ``keep_count`` most recent ones, oldest first.

        Manual entries and unlimited retention (``keep_count <= 0``) never expire.
        """
        if schedule_id == MANUAL_SCHEDULE_ID or keep_count <= 0:
            return []
        entries = await self.entries(schedule_id, account)
        excess = len(entries) - keep_count
        if excess <= 0:
            return []
        return entries[:excess]

    async def remove(self, schedule_id: str, filenames: List[str], account: Optional[str] = None) -> int:
        removed = await self.storage.delete_manifest_entries(self.destination_id, schedule_id, filenames, account)
        logger.debug("Manifest %s: removed %d entries for schedule %s", self.destination_id, removed, schedule_id)
        return removed
