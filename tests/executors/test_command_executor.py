import logging
import sys

import pytest

from backup_scheduler.domain.destination import Destination
from backup_scheduler.domain.job import JobType
from backup_scheduler.errors import ExecutionFailure
from backup_scheduler.executors.command import CommandExecutor
from backup_scheduler.executors.options import BackupOptions, RestoreOptions

REPORTING_TOOL = (
    "print('packaging {account} to {destination_path}'); "
    "print('ARTIFACT backup-{account}.tar.gz'); "
    "print('COMPANION backup-{account}.sql.gz'); "
    "print('SIZE 2048')"
)


@pytest.fixture
def destination(tmp_path) -> Destination:
    return Destination(id="local", path=str(tmp_path))


def test_build_argv(destination):
    executor = CommandExecutor(JobType.RESTORE, ["restore-tool", "--account={account}", "{destination_path}/{backup_file}"])

    argv = executor.build_argv("alice", destination, RestoreOptions(backup_file="alice/backup.tar.gz"))

    assert argv == ["restore-tool", "--account=alice", f"{destination.path}/alice/backup.tar.gz"]


def test_command_template_is_required():
    with pytest.raises(ValueError):
        CommandExecutor(JobType.BACKUP, [])


@pytest.mark.asyncio
async def test_backup_reports_artifacts(destination, caplog):
    executor = CommandExecutor(JobType.BACKUP, [sys.executable, "-c", REPORTING_TOOL])

    with caplog.at_level(logging.INFO, logger="backup_scheduler.tool"):
        result = await executor.run_account_operation(JobType.BACKUP, "alice", destination, BackupOptions())

    assert result.success
    assert result.filename == "backup-alice.tar.gz"
    assert result.companion_filename == "backup-alice.sql.gz"
    assert result.size == 2048
    assert result.message.startswith("Backed up alice")
    assert f"packaging alice to {destination.path}" in caplog.text


@pytest.mark.asyncio
async def test_non_zero_exit_is_an_account_failure(destination):
    executor = CommandExecutor(JobType.BACKUP, [sys.executable, "-c", "import sys; sys.exit(3)"])

    result = await executor.run_account_operation(JobType.BACKUP, "alice", destination, BackupOptions())

    assert not result.success
    assert "exited with status 3" in result.message


@pytest.mark.asyncio
async def test_backup_without_artifact_fails(destination):
    executor = CommandExecutor(JobType.BACKUP, [sys.executable, "-c", "print('done')"])

    result = await executor.run_account_operation(JobType.BACKUP, "alice", destination, BackupOptions())

    assert not result.success
    assert "did not report an artifact" in result.message


@pytest.mark.asyncio
async def test_restore_needs_no_artifact(destination):
    executor = CommandExecutor(JobType.RESTORE, [sys.executable, "-c", "print('restoring {account} from {backup_file}')"])

    result = await executor.run_account_operation(JobType.RESTORE, "alice", destination,
                                                  RestoreOptions(backup_file="alice.tar.gz"))

    assert result.success
    assert result.filename is None
    assert result.message.startswith("Restored alice")


@pytest.mark.asyncio
async def test_missing_tool_raises(destination):
    executor = CommandExecutor(JobType.BACKUP, ["/nonexistent/backup-tool", "{account}"])

    with pytest.raises(ExecutionFailure, match="Could not start"):
        await executor.run_account_operation(JobType.BACKUP, "alice", destination, BackupOptions())


@pytest.mark.asyncio
async def test_oversized_output_line_is_logged_truncated(destination, caplog):
    tool = "import sys; sys.stdout.write('x' * 200000); print(); print('ARTIFACT backup-{account}.tar.gz')"
    executor = CommandExecutor(JobType.BACKUP, [sys.executable, "-c", tool])

    with caplog.at_level(logging.INFO, logger="backup_scheduler.tool"):
        result = await executor.run_account_operation(JobType.BACKUP, "alice", destination, BackupOptions())

    assert result.success
    assert result.filename == "backup-alice.tar.gz"
    assert "(truncated)" in caplog.text


@pytest.mark.asyncio
async def test_output_without_trailing_newline_is_parsed(destination):
    tool = "import sys; sys.stdout.write('ARTIFACT backup-{account}.tar.gz')"
    executor = CommandExecutor(JobType.BACKUP, [sys.executable, "-c", tool])

    result = await executor.run_account_operation(JobType.BACKUP, "alice", destination, BackupOptions())

    assert result.filename == "backup-alice.tar.gz"
