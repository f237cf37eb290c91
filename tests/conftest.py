from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

import pytest
import pytest_asyncio

from backup_scheduler.access import StaticAccessResolver
from backup_scheduler.audit import AuditEvent
from backup_scheduler.destinations import DestinationRegistry
from backup_scheduler.domain.destination import Destination, DestinationType
from backup_scheduler.domain.job import JobType
from backup_scheduler.executor_factory import ExecutorFactory
from backup_scheduler.executors.protocol import OperationResult
from backup_scheduler.processor import QueueProcessor
from backup_scheduler.service import BackupService
from backup_scheduler.storages.sqlalchemy import InMemoryStorage
from backup_scheduler.transports.protocol import TransportResult

PROCESSOR_PID = 4242


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedExecutor:
    """
    Executor double. Every account succeeds and produces a numbered artifact
    unless it is listed in ``failures``. ``on_account`` runs before each
    account and can be used to cancel, add accounts or block.
    """

    def __init__(self, job_type: JobType = JobType.BACKUP, failures: Iterable[str] = (),
                 on_account: Optional[Callable[[str], Awaitable[None]]] = None):
        self.job_type = job_type
        self.failures = set(failures)
        self.on_account = on_account
        self.calls: List[str] = []
        self.counter = 0

    def supported_type(self) -> JobType:
        return self.job_type

    async def run_account_operation(self, job_type, account, destination, options) -> OperationResult:
        self.calls.append(account)
        if self.on_account is not None:
            await self.on_account(account)
        if account in self.failures:
            return OperationResult(success=False, message=f"{account}: tool exited with status 1")
        if job_type == JobType.RESTORE:
            return OperationResult(success=True, message=f"Restored {account} from {options.backup_file}")
        self.counter += 1
        return OperationResult(
            success=True,
            message=f"Backed up {account}",
            filename=f"backup-{account}-{self.counter:03d}.tar.gz",
            companion_filename=f"backup-{account}-{self.counter:03d}.sql.gz",
            size=1024,
        )


class RecordingTransport:
    def __init__(self):
        self.fail_paths = set()
        self.attempts: List[str] = []
        self.deleted: List[str] = []

    async def delete(self, path: str, destination: Destination) -> TransportResult:
        self.attempts.append(path)
        if path in self.fail_paths:
            return TransportResult(success=False, message="Permission denied")
        self.deleted.append(path)
        return TransportResult(success=True, message=f"Deleted {path}")

    async def list(self, prefix: str, destination: Destination):
        return []


class FakeLiveness:
    def __init__(self, states: Optional[Dict[int, Optional[bool]]] = None):
        self.states = dict(states or {})

    def is_alive(self, pid: int) -> Optional[bool]:
        return self.states.get(pid)


class RecordingAuditSink:
    def __init__(self):
        self.events: List[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[AuditEvent]:
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def clock() -> FrozenClock:
    # Wednesday, 01:30 UTC
    return FrozenClock(datetime(2024, 1, 10, 1, 30, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def storage():
    storage = InMemoryStorage()
    await storage.create_tables()
    yield storage
    await storage.close()


@pytest.fixture
def destinations(tmp_path) -> DestinationRegistry:
    return DestinationRegistry([
        Destination(id="local", name="Local disk", path=str(tmp_path / "backups")),
        Destination(id="offsite", type=DestinationType.REMOTE, url="http://backups.example.test/store"),
        Destination(id="retired", name="Retired NAS", enabled=False),
    ])


@pytest.fixture
def resolver() -> StaticAccessResolver:
    return StaticAccessResolver({"reseller1": ["a", "b"], "reseller2": ["x"]})


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def restore_executor() -> ScriptedExecutor:
    return ScriptedExecutor(JobType.RESTORE)


@pytest.fixture
def factory(executor, restore_executor) -> ExecutorFactory:
    factory = ExecutorFactory()
    factory.register(executor)
    factory.register(restore_executor)
    return factory


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def liveness() -> FakeLiveness:
    return FakeLiveness({PROCESSOR_PID: True})


@pytest.fixture
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def processor(storage, factory, destinations, resolver, transport, audit, liveness, clock) -> QueueProcessor:
    return QueueProcessor(
        storage,
        factory,
        destinations,
        resolver,
        transport_factory=lambda destination: transport,
        audit_sink=audit,
        liveness=liveness,
        tz=timezone.utc,
        clock=clock,
        pid=PROCESSOR_PID,
    )


@pytest.fixture
def service(storage, factory, destinations, audit, clock) -> BackupService:
    return BackupService(storage, factory, destinations, audit_sink=audit, tz=timezone.utc, clock=clock)
