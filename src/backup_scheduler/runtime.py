import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .access import AccessResolver, StaticAccessResolver
from .audit import AuditSink, JsonLinesAuditSink
from .destinations import DestinationRegistry
from .domain.job import JobType
from .executor_factory import ExecutorFactory
from .executors.command import CommandExecutor
from .executors.protocol import AccountOperationExecutor
from .processor import QueueProcessor
from .service import BackupService
from .settings import Settings
from .storages.sqlalchemy import SqlAlchemyStorage

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    storage: SqlAlchemyStorage
    destinations: DestinationRegistry
    access_resolver: AccessResolver
    executor_factory: ExecutorFactory
    audit_sink: AuditSink
    processor: QueueProcessor
    service: BackupService

    async def close(self) -> None:
        await self.storage.close()


def build_executor_factory(settings: Settings, executors: Iterable[AccountOperationExecutor] = ()) -> ExecutorFactory:
    """
    Register the given executors, then fall back to the configured
    command templates for job types still without one.
    """
    factory = ExecutorFactory()
    registered = set()
    for executor in executors:
        factory.register(executor)
        registered.add(JobType(executor.supported_type()))
    for job_type, argv in ((JobType.BACKUP, settings.backup_command), (JobType.RESTORE, settings.restore_command)):
        if job_type in registered:
            continue
        if argv:
            factory.register(CommandExecutor(job_type, argv))
        else:
            logger.debug("No %s command configured", job_type.value)
    return factory


async def create_runtime(
    settings: Optional[Settings] = None,
    executors: Iterable[AccountOperationExecutor] = (),
    access_resolver: Optional[AccessResolver] = None,
) -> Runtime:
    settings = settings or Settings()
    if settings.database_url is None:
        settings.data_dir.mkdir(parents=True, exist_ok=True)

    storage = SqlAlchemyStorage(settings.resolved_database_url)
    await storage.create_tables()

    destinations = DestinationRegistry.from_file(settings.resolved_destinations_file)
    access_resolver = access_resolver or StaticAccessResolver.from_file(
        settings.resolved_accounts_file, root_user=settings.root_user
    )
    executor_factory = build_executor_factory(settings, executors)
    audit_sink = JsonLinesAuditSink(settings.resolved_audit_log_file)
    tz = settings.tzinfo

    processor = QueueProcessor(
        storage,
        executor_factory,
        destinations,
        access_resolver,
        audit_sink=audit_sink,
        lock_stale_after=settings.lock_stale_delta,
        tz=tz,
    )
    service = BackupService(
        storage,
        executor_factory,
        destinations,
        audit_sink=audit_sink,
        tz=tz,
        default_retention=settings.default_retention,
        default_preferred_hour=settings.default_preferred_hour,
    )
    return Runtime(
        settings=settings,
        storage=storage,
        destinations=destinations,
        access_resolver=access_resolver,
        executor_factory=executor_factory,
        audit_sink=audit_sink,
        processor=processor,
        service=service,
    )
