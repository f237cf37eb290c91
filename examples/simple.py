import asyncio
import tempfile
from datetime import datetime, timedelta, timezone

from backup_scheduler.access import StaticAccessResolver
from backup_scheduler.destinations import DestinationRegistry
from backup_scheduler.domain.destination import Destination
from backup_scheduler.domain.job import JobType
from backup_scheduler.domain.schedule import Frequency
from backup_scheduler.executor_factory import ExecutorFactory
from backup_scheduler.executors.protocol import OperationResult
from backup_scheduler.log import configure_logging
from backup_scheduler.processor import QueueProcessor
from backup_scheduler.service import BackupService
from backup_scheduler.storages.sqlalchemy import InMemoryStorage


class PrintExecutor:
    def supported_type(self) -> JobType:
        return JobType.BACKUP

    async def run_account_operation(self, job_type, account, destination, options) -> OperationResult:
        print(f"Packaging {account} to {destination.display_name}")
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
        return OperationResult(success=True, message="ok", filename=f"backup-{account}-{stamp}.tar.gz")


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


async def main():
    configure_logging("WARNING")
    storage = InMemoryStorage()
    await storage.create_tables()

    executor_factory = ExecutorFactory()
    executor_factory.register(PrintExecutor())
    destinations = DestinationRegistry([Destination(id="local", name="Local disk", path=tempfile.mkdtemp())])
    accounts = StaticAccessResolver({"reseller1": ["alice", "bob"]})
    clock = Clock(datetime(2024, 1, 10, 1, 0, tzinfo=timezone.utc))

    service = BackupService(storage, executor_factory, destinations, clock=clock)
    processor = QueueProcessor(storage, executor_factory, destinations, accounts, clock=clock)

    schedule = await service.create_schedule("*", "local", owner="reseller1", frequency=Frequency.DAILY,
                                             preferred_hour=2, retention=2)
    print(schedule.readable_string)
    await service.create_job(["alice"], "local", owner="reseller1")

    for day in range(4):
        clock.now = datetime(2024, 1, 10 + day, 2, 0, tzinfo=timezone.utc)
        if day == 2:
            accounts.add_account("reseller1", "carol")
        result = await processor.run_pass()
        print(f"{clock.now:%Y-%m-%d}: {result.message}")

    stats = await service.get_stats()
    print(f"Completed jobs: {stats.completed}, failed: {stats.failed}")
    await storage.close()


if __name__ == "__main__":
    asyncio.run(main())
