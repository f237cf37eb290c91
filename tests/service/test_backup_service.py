from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from backup_scheduler.cancellation import CancelOutcome
from backup_scheduler.domain.job import JobCollection, JobStatus, JobType
from backup_scheduler.domain.schedule import Frequency
from backup_scheduler.errors import AlreadyTerminal, InvalidDestination, InvalidOptions, NotFound
from backup_scheduler.service import BackupService

UTC = timezone.utc


@pytest.mark.asyncio
async def test_create_job(service, storage, audit):
    job = await service.create_job(["alice", "bob"], "local", owner="reseller1", retention=7,
                                   options={"skip_databases": True})

    assert job.status == JobStatus.QUEUED
    assert job.is_manual
    stored = await storage.get_job(job.id)
    assert stored.owner == "reseller1"
    assert stored.retention == 7
    assert stored.options == {"skip_databases": True}
    assert await storage.job_collection(job.id) == JobCollection.QUEUE
    assert audit.of_type("queue_add")[0].items == ["alice", "bob"]


@pytest.mark.asyncio
async def test_create_job_on_disabled_destination_is_accepted(service):
    job = await service.create_job(["alice"], "retired")
    assert job.destination_id == "retired"


@pytest.mark.asyncio
async def test_create_job_on_unknown_destination(service):
    with pytest.raises(InvalidDestination):
        await service.create_job(["alice"], "nowhere")


@pytest.mark.asyncio
async def test_create_restore_requires_backup_file(service):
    with pytest.raises(InvalidOptions):
        await service.create_job(["alice"], "local", type=JobType.RESTORE)

    job = await service.create_job(["alice"], "local", type=JobType.RESTORE,
                                   options={"backup_file": "backup-alice.tar.gz"})
    assert job.type == JobType.RESTORE


@pytest.mark.asyncio
async def test_create_job_without_accounts(service):
    with pytest.raises(ValidationError):
        await service.create_job([], "local")


@pytest.mark.asyncio
async def test_create_schedule_computes_next_run(service, clock):
    schedule = await service.create_schedule(["alice"], "local", frequency=Frequency.WEEKLY,
                                             preferred_hour=3, day_of_week=0, retention=4)

    # clock is Wednesday 2024-01-10 01:30 UTC
    assert schedule.next_run == datetime(2024, 1, 14, 3, 0, tzinfo=UTC)
    stored = await service.get_schedule(schedule.id)
    assert stored.next_run == schedule.next_run
    assert stored.retention == 4


@pytest.mark.asyncio
async def test_create_schedule_uses_default_preferred_hour(storage, factory, destinations, clock):
    service = BackupService(storage, factory, destinations, tz=UTC, clock=clock, default_preferred_hour=5)

    schedule = await service.create_schedule(["alice"], "local")
    explicit = await service.create_schedule(["alice"], "local", preferred_hour=0)

    assert schedule.preferred_hour == 5
    assert schedule.next_run == datetime(2024, 1, 10, 5, 0, tzinfo=UTC)
    assert explicit.preferred_hour == 0
    assert explicit.next_run == datetime(2024, 1, 11, 0, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_create_schedule_on_disabled_destination_is_rejected(service):
    with pytest.raises(InvalidDestination, match="disabled"):
        await service.create_schedule(["alice"], "retired")


@pytest.mark.asyncio
async def test_update_schedule_recomputes_next_run(service, clock):
    schedule = await service.create_schedule(["alice"], "local", frequency=Frequency.DAILY, preferred_hour=2)
    assert schedule.next_run == datetime(2024, 1, 10, 2, 0, tzinfo=UTC)

    updated = await service.update_schedule(schedule.id, frequency=Frequency.MONTHLY, preferred_hour=4)

    assert updated.frequency == Frequency.MONTHLY
    assert updated.next_run == datetime(2024, 2, 1, 4, 0, tzinfo=UTC)
    assert updated.updated_at == clock()


@pytest.mark.asyncio
async def test_update_schedule_keeps_next_run_for_other_changes(service):
    schedule = await service.create_schedule(["alice"], "local")

    updated = await service.update_schedule(schedule.id, retention=10, accounts=["alice", "bob"])

    assert updated.next_run == schedule.next_run
    assert updated.retention == 10
    assert updated.accounts.accounts == ["alice", "bob"]


@pytest.mark.asyncio
async def test_update_schedule_destination_must_be_enabled(service):
    schedule = await service.create_schedule(["alice"], "local")

    with pytest.raises(InvalidDestination):
        await service.update_schedule(schedule.id, destination_id="retired")
    updated = await service.update_schedule(schedule.id, destination_id="offsite")
    assert updated.destination_id == "offsite"


@pytest.mark.asyncio
async def test_update_schedule_rejects_unknown_fields(service):
    schedule = await service.create_schedule(["alice"], "local")
    with pytest.raises(ValueError, match="next_run"):
        await service.update_schedule(schedule.id, next_run=datetime.now(UTC))
    with pytest.raises(NotFound):
        await service.update_schedule("sch_missing", retention=1)


@pytest.mark.asyncio
async def test_reenabled_schedule_does_not_fire_for_missed_runs(service, clock):
    schedule = await service.create_schedule(["alice"], "local")
    await service.set_schedule_enabled(schedule.id, False)

    clock.advance(days=3)
    updated = await service.set_schedule_enabled(schedule.id, True)

    assert updated.enabled
    assert updated.next_run > clock()


@pytest.mark.asyncio
async def test_delete_schedule(service, audit):
    schedule = await service.create_schedule(["alice"], "local")

    assert await service.delete_schedule(schedule.id)
    assert await service.get_schedule(schedule.id) is None
    assert not await service.delete_schedule(schedule.id)
    assert len(audit.of_type("schedule_delete")) == 1


@pytest.mark.asyncio
async def test_get_queue_and_owner_filter(service, storage):
    mine = await service.create_job(["a"], "local", owner="reseller1")
    theirs = await service.create_job(["x"], "local", owner="reseller2")
    await service.create_schedule(["a"], "local", owner="reseller1")
    await storage.move_job(theirs.id, JobCollection.QUEUE, JobCollection.RUNNING, {"status": JobStatus.PROCESSING})

    everything = await service.get_queue()
    assert [j.id for j in everything.queued] == [mine.id]
    assert [j.id for j in everything.running] == [theirs.id]
    assert len(everything.schedules) == 1

    filtered = await service.get_queue(owner="reseller2")
    assert filtered.queued == []
    assert [j.id for j in filtered.running] == [theirs.id]
    assert filtered.schedules == []


@pytest.mark.asyncio
async def test_get_stats(service, processor, executor):
    executor.failures.add("broken")
    await service.create_job(["ok"], "local")
    await service.create_job(["broken"], "local")
    await processor.run_pass()
    await service.create_job(["waiting"], "local")

    stats = await service.get_stats()

    assert stats.queued == 1
    assert stats.processing == 0
    assert stats.completed == 1
    assert stats.failed == 1
    assert stats.total == 3


@pytest.mark.asyncio
async def test_request_cancel(service, storage, processor):
    queued = await service.create_job(["a"], "local")
    assert await service.request_cancel(queued.id) == CancelOutcome.REMOVED

    done = await service.create_job(["b"], "local")
    await processor.run_pass()
    with pytest.raises(AlreadyTerminal):
        await service.request_cancel(done.id)


@pytest.mark.asyncio
async def test_remove_from_queue(service, storage):
    job = await service.create_job(["a"], "local")
    schedule = await service.create_schedule(["a"], "local")

    assert await service.remove_from_queue(job.id) == "Job removed from queue"
    assert await service.remove_from_queue(schedule.id) == "Schedule removed"
    with pytest.raises(NotFound):
        await service.remove_from_queue(schedule.id)


@pytest.mark.asyncio
async def test_kill_all_jobs(service, storage):
    for account in ["a", "b"]:
        await service.create_job([account], "local")
    running = await service.create_job(["c"], "local")
    await storage.move_job(running.id, JobCollection.QUEUE, JobCollection.RUNNING, {"status": JobStatus.PROCESSING})

    result = await service.kill_all_jobs()

    assert result.queued_removed == 2
    assert result.running_cancelled == 1
    assert await storage.list_collection(JobCollection.QUEUE) == []
    assert await storage.get_cancel_marker(running.id) is not None
    # Running jobs are never preempted.
    assert await storage.job_collection(running.id) == JobCollection.RUNNING


@pytest.mark.asyncio
async def test_clear_completed_and_failed(service, processor, executor):
    executor.failures.add("broken")
    await service.create_job(["ok"], "local")
    await service.create_job(["broken"], "local")
    await processor.run_pass()

    assert await service.clear_failed() == 1
    assert (await service.get_stats()).completed == 1
    assert await service.clear_completed() == 1
    assert (await service.get_stats()).total == 0


@pytest.mark.asyncio
async def test_cleanup_completed_jobs_by_age(service, processor, clock):
    old = await service.create_job(["a"], "local")
    await processor.run_pass()
    clock.advance(days=20)
    recent = await service.create_job(["b"], "local")
    await processor.run_pass()
    clock.advance(days=15)

    assert await service.cleanup_completed_jobs(30) == 1
    assert await service.get_job(old.id) is None
    assert await service.get_job(recent.id) is not None
    with pytest.raises(ValueError):
        await service.cleanup_completed_jobs(-1)
