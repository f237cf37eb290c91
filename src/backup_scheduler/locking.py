"""
Single-flight lock for queue processing passes.

Validity rules, in order:

1. If the holder process is verifiably alive the lock is valid, however old
   it is. Multi-hour backups must never lose their lock to a timeout.
2. If the holder is verifiably dead the lock is orphaned and removed.
3. If liveness cannot be determined, the lock stays valid until its last
   heartbeat is older than ``stale_after`` (one hour by default), and only
   then is it discarded.
"""
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from .domain.lock import LockRecord
from .errors import LockContention
from .storages.protocol import Storage

logger = logging.getLogger(__name__)

LOCK_STALE_AFTER = timedelta(hours=1)


class ProcessLiveness(Protocol):
    def is_alive(self, pid: int) -> Optional[bool]:
        """Return True/False when the process state is known, None when it cannot be determined."""
        ...


class PosixProcessLiveness:
    """
    Checks ``/proc/<pid>`` when procfs is mounted, otherwise probes with signal 0.
    """

    def __init__(self, proc_root: str = "/proc"):
        self.proc_root = proc_root

    def is_alive(self, pid: int) -> Optional[bool]:
        if pid <= 0:
            return False
        if os.path.isdir(os.path.join(self.proc_root, "self")):
            return os.path.exists(os.path.join(self.proc_root, str(pid)))
        if os.name != "posix":
            return None
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists, owned by someone else.
            return True
        except OSError:
            return None
        return True


class UnknownProcessLiveness:
    """For platforms without a usable liveness primitive."""

    def is_alive(self, pid: int) -> Optional[bool]:
        return None


@dataclass(frozen=True)
class LockHandle:
    token: str
    holder_pid: int
    acquired_at: datetime


class LockManager:
    def __init__(
        self,
        storage: Storage,
        liveness: Optional[ProcessLiveness] = None,
        stale_after: timedelta = LOCK_STALE_AFTER,
        pid: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.liveness = liveness or PosixProcessLiveness()
        self.stale_after = stale_after
        self.pid = pid if pid is not None else os.getpid()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def acquire(self) -> LockHandle:
        """
        Take the lock, or raise LockContention if another valid lock holds it.
        """
        now = self.clock()
        existing = await self.storage.get_lock()
        if existing is not None and not await self._discard_if_invalid(existing, now):
            raise LockContention(f"Queue lock held by pid {existing.holder_pid}")

        record = LockRecord(token=uuid.uuid4().hex, holder_pid=self.pid, acquired_at=now, heartbeat_at=now)
        # Insert-or-fail: of two passes racing past the check, only one row wins.
        if not await self.storage.insert_lock(record):
            raise LockContention("Queue lock was taken by a concurrent pass")
        logger.debug("Lock acquired by pid %s", self.pid)
        return LockHandle(token=record.token, holder_pid=self.pid, acquired_at=now)

    async def touch(self, handle: LockHandle) -> None:
        if not await self.storage.touch_lock(handle.token, self.clock()):
            logger.warning("Heartbeat for lock %s found no lock row", handle.token)

    async def release(self, handle: LockHandle) -> None:
        if await self.storage.delete_lock(handle.token):
            logger.debug("Lock released by pid %s", handle.holder_pid)

    async def current(self) -> Optional[LockRecord]:
        return await self.storage.get_lock()

    async def is_running(self) -> bool:
        """Whether a valid lock exists. Orphaned and stale locks are cleaned up on the way."""
        existing = await self.storage.get_lock()
        if existing is None:
            return False
        return not await self._discard_if_invalid(existing, self.clock())

    async def _discard_if_invalid(self, lock: LockRecord, now: datetime) -> bool:
        """Return True if the lock was invalid and has been removed."""
        age = now - lock.heartbeat_at
        alive = self.liveness.is_alive(lock.holder_pid) if lock.holder_pid else None
        logger.debug("Existing lock: pid=%s, heartbeat age=%ss", lock.holder_pid, int(age.total_seconds()))

        if alive:
            logger.debug("Process %s still running, lock valid", lock.holder_pid)
            return False
        if alive is False:
            logger.info("Removing orphaned lock (pid %s not running)", lock.holder_pid)
            await self.storage.delete_lock(lock.token)
            return True
        if age > self.stale_after:
            logger.info("Removing stale lock (liveness unknown, last heartbeat %s ago)", age)
            await self.storage.delete_lock(lock.token)
            return True
        logger.debug("Lock liveness unknown, treating as valid until it goes stale")
        return False
