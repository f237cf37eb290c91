"""
Queue processor.

An external periodic trigger calls :meth:`QueueProcessor.run_pass`. Each pass
is single-task and runs to completion:

1. acquire the processing lock (or report the pass as skipped),
2. finalize jobs orphaned in ``running`` by a pass that died,
3. materialize due schedules into queued jobs,
4. drain the queue one job at a time, one account at a time,
5. prune artifacts beyond each schedule's retention count,
6. release the lock, whatever happened in between.

Jobs run strictly one at a time (``MAX_CONCURRENT = 1``).
"""
import logging
import time
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .access import AccessResolver
from .audit import AuditEvent, AuditSink, emit
from .cancellation import CancellationSignal
from .destinations import DestinationRegistry
from .domain.accounts import AllAccessibleAccounts, ExplicitAccounts
from .domain.destination import Destination
from .domain.job import AccountResult, Job, JobCollection, JobProgress, JobStatus, JobType
from .domain.manifest import ManifestEntry
from .domain.schedule import Schedule
from .errors import BackupSchedulerError, ExecutionFailure, InvalidDestination, LockContention, NotFound, TransportFailure
from .executor_factory import ExecutorFactory
from .executors.protocol import AccountOperationExecutor, OperationResult
from .locking import LOCK_STALE_AFTER, LockHandle, LockManager, ProcessLiveness
from .manifest import ManifestLedger
from .recurrence import next_run
from .storages.protocol import Storage
from .transports import transport_for
from .transports.protocol import Transport

logger = logging.getLogger(__name__)

MAX_CONCURRENT = 1
INTERRUPTED_ERROR = "Interrupted: the processing pass ended before this job finished"


class PruneDetail(BaseModel):
    schedule_id: str
    retention: int = 0
    pruned: int = 0
    skipped: bool = False
    reason: Optional[str] = None
    files: List[str] = Field(default_factory=list, description="Deleted artifact paths")
    failures: List[str] = Field(default_factory=list, description="Artifacts kept because deletion failed")


class PassResult(BaseModel):
    skipped: bool = False
    message: str = ""
    scheduled: Dict[str, str] = Field(default_factory=dict, description="Schedule id to the job id it queued")
    processed: int = 0
    failed: int = 0
    cancelled: int = 0
    recovered: List[str] = Field(default_factory=list, description="Orphaned jobs finalized as failed")
    results: Dict[str, JobStatus] = Field(default_factory=dict, description="Final status per job run in this pass")
    pruned: int = 0
    prune_details: Dict[str, PruneDetail] = Field(default_factory=dict)


class QueueProcessor:
    def __init__(
        self,
        storage: Storage,
        executor_factory: ExecutorFactory,
        destinations: DestinationRegistry,
        access_resolver: AccessResolver,
        transport_factory: Callable[[Destination], Transport] = transport_for,
        audit_sink: Optional[AuditSink] = None,
        liveness: Optional[ProcessLiveness] = None,
        lock_stale_after: timedelta = LOCK_STALE_AFTER,
        tz: Optional[tzinfo] = None,
        clock: Optional[Callable[[], datetime]] = None,
        pid: Optional[int] = None,
    ):
        self.storage = storage
        self.executor_factory = executor_factory
        self.destinations = destinations
        self.access_resolver = access_resolver
        self.transport_factory = transport_factory
        self.audit_sink = audit_sink
        self.tz = tz or timezone.utc
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.cancellation = CancellationSignal(storage)
        self.lock_manager = LockManager(storage, liveness, lock_stale_after, pid, self.clock)

    def _now(self) -> datetime:
        return self.clock()

    async def is_running(self) -> bool:
        return await self.lock_manager.is_running()

    async def run_pass(self) -> PassResult:
        try:
            handle = await self.lock_manager.acquire()
        except LockContention as e:
            logger.info("Queue processor already running, skipped (%s)", e)
            return PassResult(skipped=True, message="Queue processor already running, skipped")

        result = PassResult()
        try:
            result.recovered = await self.recover_orphaned_jobs()
            await self.process_schedules(result)
            await self.process_queue(handle, result)
            await self.prune_old_backups(result)
        finally:
            await self.lock_manager.release(handle)

        result.message = (
            f"Processed {result.processed} items, {result.failed} failed, {result.cancelled} cancelled; "
            f"pruned {result.pruned} old backup(s)"
        )
        logger.info(result.message)
        if result.processed or result.failed or result.cancelled:
            emit(self.audit_sink, AuditEvent(
                type="queue_cron_process",
                items=list(result.results),
                success=result.failed == 0,
                message=result.message,
            ))
        return result

    # Recovery

    async def recover_orphaned_jobs(self) -> List[str]:
        """
        Finalize jobs left in ``running`` by a pass that died.

        Only called while holding the lock, so no live pass can own them.
        """
        recovered = []
        for job in await self.storage.list_collection(JobCollection.RUNNING):
            logger.warning("Job %s was left processing by a dead pass, marking it failed", job.id)
            await self.storage.move_job(job.id, JobCollection.RUNNING, JobCollection.COMPLETED, {
                "status": JobStatus.FAILED,
                "message": INTERRUPTED_ERROR,
                "error": INTERRUPTED_ERROR,
                "finished_at": self._now(),
            })
            await self.cancellation.clear_cancel_request(job.id)
            recovered.append(job.id)
        return recovered

    # Schedules

    def _next_run(self, schedule: Schedule, now: datetime) -> datetime:
        anchor = now
        if schedule.next_run is not None and schedule.next_run > anchor:
            anchor = schedule.next_run
        return next_run(schedule.frequency, schedule.preferred_hour, schedule.day_of_week, anchor.astimezone(self.tz))

    async def _resolve_accounts(self, owner: str, selection: Union[ExplicitAccounts, AllAccessibleAccounts]) -> List[str]:
        if isinstance(selection, AllAccessibleAccounts):
            accounts = await self.access_resolver.accessible_accounts(owner)
            logger.debug("Resolved all accounts for %s to %d accounts", owner, len(accounts))
            return list(dict.fromkeys(accounts))
        return list(selection.accounts)

    async def process_schedules(self, result: Optional[PassResult] = None) -> Dict[str, str]:
        """
        Queue a job for every enabled schedule whose ``next_run`` has passed.

        Returns a mapping of schedule id to the queued job id.
        """
        now = self._now()
        queued: Dict[str, str] = {}
        for schedule in await self.storage.list_schedules():
            if not schedule.enabled:
                continue
            if schedule.next_run is None:
                schedule = await self.storage.update_schedule(schedule.id, {"next_run": self._next_run(schedule, now)})
            if not schedule.is_due(now):
                continue
            job_id = await self._materialize(schedule, now)
            if job_id:
                queued[schedule.id] = job_id
        if result is not None:
            result.scheduled.update(queued)
        return queued

    async def _materialize(self, schedule: Schedule, now: datetime) -> Optional[str]:
        accounts = await self._resolve_accounts(schedule.owner, schedule.accounts)
        upcoming = self._next_run(schedule, now)
        if not accounts:
            logger.warning("Schedule %s resolved to no accounts, nothing queued", schedule.id)
            await self.storage.update_schedule(schedule.id, {
                "last_run": now, "next_run": upcoming, "last_status": "no_accounts",
            })
            emit(self.audit_sink, AuditEvent(
                user=schedule.owner, type="schedule_queued", items=[schedule.id], success=False,
                message="Schedule resolved to no accounts",
            ))
            return None

        job = Job(
            type=JobType.BACKUP,
            accounts=ExplicitAccounts(accounts=accounts),
            destination_id=schedule.destination_id,
            owner=schedule.owner,
            schedule_id=schedule.id,
            retention=schedule.retention,
            created_at=now,
        )
        await self.storage.create_job(job)
        await self.storage.update_schedule(schedule.id, {
            "last_run": now, "next_run": upcoming, "last_status": "queued",
        })
        logger.info("Schedule %s due: queued job %s for %d account(s), next run %s",
                    schedule.id, job.id, len(accounts), upcoming.isoformat())
        emit(self.audit_sink, AuditEvent(
            user=schedule.owner, type="schedule_queued", items=accounts,
            message=f"Queued by schedule {schedule.id}", job_id=job.id,
        ))
        return job.id

    # Queue

    async def process_queue(self, handle: LockHandle, result: Optional[PassResult] = None) -> List[Job]:
        """
        Run every queued job, oldest first, one at a time.
        """
        result = result if result is not None else PassResult()
        finished = []
        queued = await self.storage.list_collection(JobCollection.QUEUE)
        logger.debug("Found %d queued jobs", len(queued))
        for job in queued:
            if job.status != JobStatus.QUEUED:
                logger.debug("Skipping job %s - status %s", job.id, job.status.value)
                continue
            try:
                job = await self.storage.move_job(job.id, JobCollection.QUEUE, JobCollection.RUNNING, {
                    "status": JobStatus.PROCESSING,
                    "started_at": self._now(),
                })
            except NotFound:
                logger.info("Job %s left the queue before it started", job.id)
                continue

            final = await self._process_job(job, handle)
            finished.append(final)
            result.results[final.id] = final.status
            if final.status == JobStatus.COMPLETED:
                result.processed += 1
            elif final.status == JobStatus.CANCELLED:
                result.cancelled += 1
            else:
                result.failed += 1
            await self.lock_manager.touch(handle)
        return finished

    async def _process_job(self, job: Job, handle: LockHandle) -> Job:
        logger.info("Job %s: queued → processing", job.id)
        try:
            fields = await self._execute(job, handle)
        except BackupSchedulerError as e:
            logger.warning("Job %s failed: %s", job.id, e)
            fields = {"status": JobStatus.FAILED, "message": str(e), "error": str(e)}
        except Exception as e:
            logger.exception("Job %s failed unexpectedly", job.id)
            fields = {"status": JobStatus.FAILED, "message": "Unexpected error", "error": f"{type(e).__name__}: {e}"}
        fields["finished_at"] = self._now()

        final = await self.storage.move_job(job.id, JobCollection.RUNNING, JobCollection.COMPLETED, fields)
        await self.cancellation.clear_cancel_request(job.id)
        logger.info("Job %s: processing → %s (%s)", final.id, final.status.value, final.message)
        emit(self.audit_sink, AuditEvent(
            user=final.owner,
            type=final.type.value,
            items=list(final.results) or [final.id],
            success=final.status == JobStatus.COMPLETED,
            message=final.message or "",
            job_id=final.id,
        ))
        return final

    async def _execute(self, job: Job, handle: LockHandle) -> Dict[str, Any]:
        destination = self.destinations.get(job.destination_id)
        if destination is None:
            raise InvalidDestination(f"Invalid destination '{job.destination_id}'")
        if not destination.enabled:
            raise InvalidDestination(f"Destination '{destination.display_name}' is disabled")
        executor, options = self.executor_factory.get_executor(job.type, job.options)

        accounts = await self._resolve_accounts(job.owner, job.accounts)
        if not accounts:
            raise ExecutionFailure("No accounts specified")
        total = len(accounts)
        await self.storage.update_job(job.id, {
            "accounts": accounts,
            "progress": JobProgress(accounts_total=total, accounts_completed=0),
        }, JobCollection.RUNNING)

        token = self.cancellation.token(job.id)
        ledger = ManifestLedger(self.storage, destination.id)
        results: Dict[str, AccountResult] = {}
        errors: List[str] = []
        completed = 0
        for account in accounts:
            logger.info("Job %s: account %d/%d: %s", job.id, completed + 1, total, account)
            account_result = await self._run_account(executor, job, account, destination, options)
            results[account] = account_result
            completed += 1
            if not account_result.success:
                errors.append(f"{account}: {account_result.message}")
            elif job.type == JobType.BACKUP and account_result.filename:
                await ledger.record(job.schedule_id, account, account_result.filename,
                                    account_result.companion_filename, account_result.size, self._now())

            await self.storage.update_job(job.id, {
                "progress": JobProgress(accounts_total=total, accounts_completed=completed),
                "results": results,
                "errors": errors,
            }, JobCollection.RUNNING)
            await self.lock_manager.touch(handle)

            if await token.is_requested():
                await token.clear()
                skipped = accounts[completed:]
                logger.info("Job %s cancelled after %d/%d accounts, skipping: %s",
                            job.id, completed, total, ", ".join(skipped) or "none")
                return {"status": JobStatus.CANCELLED, "message": f"Cancelled after {completed}/{total} accounts"}

        noun = "backups" if job.type == JobType.BACKUP else "restores"
        if errors:
            return {"status": JobStatus.FAILED, "message": f"Some {noun} failed", "error": "; ".join(errors)}
        return {"status": JobStatus.COMPLETED, "message": f"All {noun} completed successfully"}

    async def _run_account(self, executor: AccountOperationExecutor, job: Job, account: str,
                           destination: Destination, options: BaseModel) -> AccountResult:
        started = time.monotonic()
        try:
            outcome = await executor.run_account_operation(job.type, account, destination, options)
        except ExecutionFailure as e:
            outcome = OperationResult(success=False, message=str(e))
        duration = time.monotonic() - started
        if outcome.success:
            logger.info("Job %s: %s succeeded: %s", job.id, account, outcome.message)
        else:
            logger.warning("Job %s: %s failed: %s", job.id, account, outcome.message)
        return AccountResult(
            account=account,
            success=outcome.success,
            message=outcome.message,
            filename=outcome.filename,
            companion_filename=outcome.companion_filename,
            size=outcome.size,
            duration_seconds=round(duration, 3),
        )

    # Retention

    async def prune_old_backups(self, result: Optional[PassResult] = None) -> Dict[str, PruneDetail]:
        """
        Delete artifacts beyond each schedule's retention count, oldest first.

        A manifest entry is only removed once its artifact was deleted; a
        failed deletion keeps the entry so the next pass retries it.
        """
        details: Dict[str, PruneDetail] = {}
        for schedule in await self.storage.list_schedules():
            detail = await self._prune_schedule(schedule)
            details[schedule.id] = detail
        if result is not None:
            result.prune_details.update(details)
            result.pruned += sum(d.pruned for d in details.values())
        total = sum(d.pruned for d in details.values())
        if total:
            logger.info("Pruned %d old backup(s)", total)
        return details

    async def _prune_schedule(self, schedule: Schedule) -> PruneDetail:
        detail = PruneDetail(schedule_id=schedule.id, retention=schedule.retention)
        if schedule.retention <= 0:
            detail.skipped, detail.reason = True, "unlimited retention"
            return detail

        destination = self.destinations.get(schedule.destination_id)
        if destination is None or not destination.enabled:
            detail.skipped = True
            detail.reason = "invalid destination" if destination is None else "destination disabled"
            logger.warning("Pruning skipped for schedule %s: %s", schedule.id, detail.reason)
            emit(self.audit_sink, AuditEvent(
                user=schedule.owner, type="prune", items=[schedule.id], success=False,
                message=f"Pruning skipped for schedule '{schedule.id}': {detail.reason} '{schedule.destination_id}'",
            ))
            return detail

        ledger = ManifestLedger(self.storage, destination.id)
        accounts = await ledger.accounts(schedule.id)
        if not accounts:
            detail.skipped, detail.reason = True, "no manifest"
            return detail

        transport = self.transport_factory(destination)
        for account in accounts:
            removed = []
            for entry in await ledger.expired_entries(schedule.id, account, schedule.retention):
                path = f"{entry.account}/{entry.filename}"
                if await self._delete_artifact(transport, destination, entry):
                    removed.append(entry.filename)
                    detail.files.append(path)
                else:
                    detail.failures.append(path)
            if removed:
                await ledger.remove(schedule.id, removed, account)
        detail.pruned = len(detail.files)

        if detail.pruned:
            emit(self.audit_sink, AuditEvent(
                user=schedule.owner,
                type="prune",
                items=[schedule.id],
                message=f"Retention: {schedule.retention}\nDeleted:\n" + "\n".join(detail.files),
            ))
        return detail

    async def _delete_artifact(self, transport: Transport, destination: Destination, entry: ManifestEntry) -> bool:
        path = f"{entry.account}/{entry.filename}"
        try:
            outcome = await transport.delete(path, destination)
        except TransportFailure as e:
            logger.warning("Failed to delete %s from %s: %s", path, destination.id, e)
            return False
        if not outcome.success:
            logger.warning("Failed to delete %s from %s: %s", path, destination.id, outcome.message)
            return False
        logger.debug("Deleted %s from %s for schedule %s", path, destination.id, entry.schedule_id)

        if entry.companion_filename:
            companion = f"{entry.account}/{entry.companion_filename}"
            try:
                companion_outcome = await transport.delete(companion, destination)
            except TransportFailure as e:
                logger.warning("Failed to delete companion %s from %s: %s", companion, destination.id, e)
            else:
                if not companion_outcome.success:
                    logger.warning("Failed to delete companion %s from %s: %s",
                                   companion, destination.id, companion_outcome.message)
        return True
