import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from .audit import AuditEvent, AuditSink, emit
from .cancellation import CancellationSignal, CancelOutcome
from .destinations import DestinationRegistry
from .domain.job import Job, JobCollection, JobStatus, JobType
from .domain.schedule import Frequency, Schedule
from .errors import AlreadyTerminal, NotFound
from .executor_factory import ExecutorFactory
from .recurrence import next_run
from .storages.protocol import Storage

logger = logging.getLogger(__name__)

SCHEDULE_FIELDS = {"accounts", "destination_id", "frequency", "preferred_hour", "day_of_week", "retention", "enabled"}
RECURRENCE_FIELDS = {"frequency", "preferred_hour", "day_of_week"}


class QueueSnapshot(BaseModel):
    queued: List[Job] = Field(default_factory=list, description="Queued jobs, oldest first")
    running: List[Job] = Field(default_factory=list)
    schedules: List[Schedule] = Field(default_factory=list)


class QueueStats(BaseModel):
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return self.queued + self.processing + self.completed + self.failed + self.cancelled


class KillAllResult(BaseModel):
    queued_removed: int = 0
    running_cancelled: int = 0


class BackupService:
    """
    Request-facing operations: creating jobs and schedules, querying the
    queue, cancelling, and housekeeping of finished job records.

    Nothing here executes a job; the queue processor is the only writer of
    job progress and outcomes.
    """

    def __init__(
        self,
        storage: Storage,
        executor_factory: ExecutorFactory,
        destinations: DestinationRegistry,
        audit_sink: Optional[AuditSink] = None,
        tz: Optional[tzinfo] = None,
        clock: Optional[Callable[[], datetime]] = None,
        default_retention: int = 30,
        default_preferred_hour: int = 2,
    ):
        self.storage = storage
        self.executor_factory = executor_factory
        self.destinations = destinations
        self.audit_sink = audit_sink
        self.tz = tz or timezone.utc
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.default_retention = default_retention
        self.default_preferred_hour = default_preferred_hour
        self.cancellation = CancellationSignal(storage)

    def _now(self) -> datetime:
        return self.clock()

    def _next_run(self, schedule: Schedule) -> datetime:
        return next_run(schedule.frequency, schedule.preferred_hour, schedule.day_of_week,
                        self._now().astimezone(self.tz))

    # Jobs

    async def create_job(
        self,
        accounts: Any,
        destination_id: str,
        owner: str = "root",
        type: JobType = JobType.BACKUP,
        retention: Optional[int] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """
        Queue a one-time job.

        Options are validated against the job type's schema up front, so a
        malformed restore request never reaches the queue.
        """
        destination = self.destinations.require(destination_id, for_schedule=False)
        self.executor_factory.validate_options(type, options or {})
        job = Job(
            type=type,
            accounts=accounts,
            destination_id=destination.id,
            owner=owner,
            retention=self.default_retention if retention is None else retention,
            options=options or {},
            created_at=self._now(),
        )
        await self.storage.create_job(job)
        logger.info("Queued %s job %s for %s", job.type.value, job.id, job.accounts.describe())
        emit(self.audit_sink, AuditEvent(
            user=owner, type="queue_add", items=list(job.accounts.accounts), requestor="api",
            message=f"{job.type.value.capitalize()} queued to {destination.display_name}", job_id=job.id,
        ))
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.storage.get_job(job_id)

    async def get_queue(self, owner: Optional[str] = None) -> QueueSnapshot:
        queued = await self.storage.list_collection(JobCollection.QUEUE)
        running = await self.storage.list_collection(JobCollection.RUNNING)
        schedules = await self.storage.list_schedules()
        if owner is not None:
            queued = [j for j in queued if j.owner == owner]
            running = [j for j in running if j.owner == owner]
            schedules = [s for s in schedules if s.owner == owner]
        return QueueSnapshot(queued=queued, running=running, schedules=schedules)

    async def get_stats(self) -> QueueStats:
        stats = QueueStats(
            queued=len(await self.storage.list_collection(JobCollection.QUEUE)),
            processing=len(await self.storage.list_collection(JobCollection.RUNNING)),
        )
        for job in await self.storage.list_collection(JobCollection.COMPLETED):
            if job.status == JobStatus.COMPLETED:
                stats.completed += 1
            elif job.status == JobStatus.CANCELLED:
                stats.cancelled += 1
            else:
                stats.failed += 1
        return stats

    # Cancellation

    async def request_cancel(self, job_id: str, requested_by: str = "root", reason: Optional[str] = None) -> CancelOutcome:
        outcome = await self.cancellation.request_cancel(job_id, requested_by, reason)
        removed = outcome == CancelOutcome.REMOVED
        message = "Job removed from queue" if removed else "Cancellation requested"
        emit(self.audit_sink, AuditEvent(
            user=requested_by, type="queue_remove" if removed else "cancel", items=[job_id],
            requestor="api", message=message, job_id=job_id,
        ))
        return outcome

    async def remove_from_queue(self, item_id: str, requested_by: str = "root") -> str:
        """
        Remove a queued job or a schedule by id.

        A job that already started gets a cancel request instead.
        """
        if await self.storage.job_collection(item_id) is not None:
            outcome = await self.request_cancel(item_id, requested_by)
            return "Job removed from queue" if outcome == CancelOutcome.REMOVED else "Cancellation requested"
        if await self.delete_schedule(item_id, requested_by):
            return "Schedule removed"
        raise NotFound(f"Job or schedule '{item_id}' not found")

    async def kill_all_jobs(self, requested_by: str = "root") -> KillAllResult:
        """
        Empty the queue and ask every running job to stop after its current account.
        """
        result = KillAllResult()
        for job in await self.storage.list_collection(JobCollection.QUEUE):
            if await self.storage.delete_job(job.id, JobCollection.QUEUE):
                result.queued_removed += 1
        for job in await self.storage.list_collection(JobCollection.RUNNING):
            # The job may finish between the listing and the request.
            try:
                if await self.cancellation.request_cancel(job.id, requested_by, "kill_all_jobs") == CancelOutcome.REQUESTED:
                    result.running_cancelled += 1
            except (NotFound, AlreadyTerminal):
                continue
        logger.info("Kill all: removed %d queued job(s), cancelled %d running job(s)",
                    result.queued_removed, result.running_cancelled)
        emit(self.audit_sink, AuditEvent(
            user=requested_by, type="kill_all", requestor="api",
            message=f"Removed {result.queued_removed} queued, cancelled {result.running_cancelled} running",
        ))
        return result

    # Schedules

    async def create_schedule(
        self,
        accounts: Any,
        destination_id: str,
        owner: str = "root",
        frequency: Frequency = Frequency.DAILY,
        preferred_hour: Optional[int] = None,
        day_of_week: int = 0,
        retention: Optional[int] = None,
        enabled: bool = True,
    ) -> Schedule:
        destination = self.destinations.require(destination_id, for_schedule=True)
        schedule = Schedule(
            owner=owner,
            accounts=accounts,
            destination_id=destination.id,
            frequency=frequency,
            preferred_hour=self.default_preferred_hour if preferred_hour is None else preferred_hour,
            day_of_week=day_of_week,
            retention=self.default_retention if retention is None else retention,
            enabled=enabled,
            created_at=self._now(),
        )
        schedule.next_run = self._next_run(schedule)
        await self.storage.create_schedule(schedule)
        logger.info("Created schedule %s, first run %s", schedule.id, schedule.next_run.isoformat())
        emit(self.audit_sink, AuditEvent(
            user=owner, type="schedule_create", items=list(schedule.accounts.accounts), requestor="api",
            message=schedule.readable_string,
        ))
        return schedule

    async def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        return await self.storage.get_schedule(schedule_id)

    async def update_schedule(self, schedule_id: str, **changes: Any) -> Schedule:
        """
        Apply changes to a schedule.

        ``next_run`` is recomputed when the recurrence changes. Moving the
        schedule to another destination requires that destination to be enabled.
        """
        unknown = set(changes) - SCHEDULE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update schedule fields: {', '.join(sorted(unknown))}")
        current = await self.storage.get_schedule(schedule_id)
        if current is None:
            raise NotFound(f"Schedule '{schedule_id}' not found")
        if "destination_id" in changes and changes["destination_id"] != current.destination_id:
            self.destinations.require(changes["destination_id"], for_schedule=True)

        updated = Schedule.model_validate({**current.model_dump(), **changes})
        fields: Dict[str, Any] = {
            key: getattr(updated, key) for key in changes
        }
        if any(getattr(updated, key) != getattr(current, key) for key in RECURRENCE_FIELDS):
            fields["next_run"] = self._next_run(updated)
        fields["updated_at"] = self._now()
        schedule = await self.storage.update_schedule(schedule_id, fields)
        logger.info("Updated schedule %s: %s", schedule_id, ", ".join(sorted(changes)))
        emit(self.audit_sink, AuditEvent(
            user=schedule.owner, type="schedule_update", items=[schedule_id], requestor="api",
            message=schedule.readable_string,
        ))
        return schedule

    async def set_schedule_enabled(self, schedule_id: str, enabled: bool) -> Schedule:
        current = await self.storage.get_schedule(schedule_id)
        if current is None:
            raise NotFound(f"Schedule '{schedule_id}' not found")
        fields: Dict[str, Any] = {"enabled": enabled, "updated_at": self._now()}
        # A schedule re-enabled after missing runs fires at its next slot, not immediately.
        if enabled and (current.next_run is None or current.next_run <= self._now()):
            fields["next_run"] = self._next_run(current)
        return await self.storage.update_schedule(schedule_id, fields)

    async def delete_schedule(self, schedule_id: str, requested_by: str = "root") -> bool:
        """Delete a schedule. Artifacts it produced stay on their destination."""
        deleted = await self.storage.delete_schedule(schedule_id)
        if deleted:
            logger.info("Deleted schedule %s", schedule_id)
            emit(self.audit_sink, AuditEvent(
                user=requested_by, type="schedule_delete", items=[schedule_id], requestor="api",
                message="Schedule removed",
            ))
        return deleted

    # Housekeeping

    async def _clear_finished(self, predicate: Callable[[Job], bool]) -> int:
        cleared = 0
        for job in await self.storage.list_collection(JobCollection.COMPLETED):
            if predicate(job) and await self.storage.delete_job(job.id, JobCollection.COMPLETED):
                cleared += 1
        return cleared

    async def clear_completed(self) -> int:
        return await self._clear_finished(lambda job: job.status == JobStatus.COMPLETED)

    async def clear_failed(self) -> int:
        return await self._clear_finished(lambda job: job.status == JobStatus.FAILED)

    async def cleanup_completed_jobs(self, days: int = 30) -> int:
        """Delete finished job records older than ``days`` days."""
        if days < 0:
            raise ValueError("days must be >= 0")
        cutoff = self._now() - timedelta(days=days)
        cleaned = await self._clear_finished(lambda job: (job.finished_at or job.created_at) < cutoff)
        if cleaned:
            logger.info("Cleaned up %d finished job record(s) older than %d days", cleaned, days)
        return cleaned
