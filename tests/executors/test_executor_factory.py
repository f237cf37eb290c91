import pytest
from pydantic import BaseModel

from backup_scheduler.domain.job import JobType
from backup_scheduler.errors import InvalidOptions
from backup_scheduler.executor_factory import ExecutorFactory
from backup_scheduler.executors.options import BackupOptions, RestoreOptions
from backup_scheduler.executors.protocol import OperationResult


class DummyExecutor:
    def __init__(self, job_type: JobType = JobType.BACKUP):
        self.job_type = job_type

    def supported_type(self) -> JobType:
        return self.job_type

    async def run_account_operation(self, job_type, account, destination, options) -> OperationResult:
        return OperationResult(success=True)


class BackupOnlyOptions(BaseModel):
    compress: bool = True


@pytest.fixture
def factory() -> ExecutorFactory:
    return ExecutorFactory()


def test_default_schemas(factory: ExecutorFactory) -> None:
    assert factory.supported_schemas == {JobType.BACKUP: BackupOptions, JobType.RESTORE: RestoreOptions}


def test_register_executor(factory: ExecutorFactory) -> None:
    executor = DummyExecutor()
    factory.register(executor)
    assert factory.get_executor(JobType.BACKUP, {})[0] is executor


def test_register_executor_unsupported_type() -> None:
    factory = ExecutorFactory({JobType.BACKUP: BackupOnlyOptions})
    with pytest.raises(ValueError, match="Job type 'restore' is not supported"):
        factory.register(DummyExecutor(JobType.RESTORE))


def test_register_executor_duplicate(factory: ExecutorFactory) -> None:
    factory.register(DummyExecutor())
    with pytest.raises(ValueError, match="An executor for job type 'backup' is already registered"):
        factory.register(DummyExecutor())


def test_get_executor_validates_options(factory: ExecutorFactory) -> None:
    factory.register(DummyExecutor(JobType.RESTORE))

    executor, options = factory.get_executor(JobType.RESTORE, {"backup_file": "alice.tar.gz", "force": True})

    assert isinstance(executor, DummyExecutor)
    assert isinstance(options, RestoreOptions)
    assert options.backup_file == "alice.tar.gz"
    assert options.force


def test_get_executor_unregistered(factory: ExecutorFactory) -> None:
    with pytest.raises(KeyError, match="No executor registered for job type 'backup'"):
        factory.get_executor(JobType.BACKUP, {})


def test_get_executor_invalid_options(factory: ExecutorFactory) -> None:
    factory.register(DummyExecutor(JobType.RESTORE))
    with pytest.raises(InvalidOptions, match="Invalid options for job type 'restore'"):
        factory.get_executor(JobType.RESTORE, {"force": True})


def test_backup_options_defaults() -> None:
    options = BackupOptions()
    assert options.exclude_paths == []
    assert not options.skip_databases
