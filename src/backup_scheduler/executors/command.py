import asyncio
import contextlib
import logging
import time
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel

from backup_scheduler.domain.destination import Destination
from backup_scheduler.domain.job import JobType
from backup_scheduler.errors import ExecutionFailure
from backup_scheduler.executors.protocol import AccountOperationExecutor, OperationResult

logger = logging.getLogger(__name__)

ARTIFACT_PREFIX = "ARTIFACT "
COMPANION_PREFIX = "COMPANION "
SIZE_PREFIX = "SIZE "

READ_CHUNK = 64 * 1024
# Longer runs without a newline are logged truncated and never parsed as reports.
MAX_LINE = 64 * 1024


class _ToolReport:
    def __init__(self, tool_logger: logging.Logger):
        self.tool_logger = tool_logger
        self.filename: Optional[str] = None
        self.companion: Optional[str] = None
        self.size = 0

    def feed(self, raw: bytes, truncated: bool = False) -> None:
        line = raw.decode(errors="replace").rstrip()
        if truncated:
            self.tool_logger.info("%s... (truncated)", line[:200])
            return
        if line.startswith(ARTIFACT_PREFIX):
            self.filename = line[len(ARTIFACT_PREFIX):].strip()
        elif line.startswith(COMPANION_PREFIX):
            self.companion = line[len(COMPANION_PREFIX):].strip()
        elif line.startswith(SIZE_PREFIX):
            try:
                self.size = int(line[len(SIZE_PREFIX):].strip())
            except ValueError:
                self.tool_logger.warning("Ignoring malformed size report: %s", line)
        self.tool_logger.info(line)


class CommandExecutor(AccountOperationExecutor):
    """
    Runs an external backup or restore tool once per account.

    ``argv`` is a list of ``str.format`` templates; the placeholders
    ``{account}``, ``{destination}``, ``{destination_path}``,
    ``{destination_url}`` and every option field are available.

    Everything the tool prints is forwarded to the ``backup_scheduler.tool``
    logger. The tool reports what it produced with lines of the form
    ``ARTIFACT <file>``, ``COMPANION <file>`` and ``SIZE <bytes>``.
    """

    def __init__(self, job_type: JobType, argv: Sequence[str], env: Optional[Dict[str, str]] = None):
        if not argv:
            raise ValueError("A command template is required")
        self.job_type = JobType(job_type)
        self.argv = list(argv)
        self.env = env

    def supported_type(self) -> JobType:
        return self.job_type

    def build_argv(self, account: str, destination: Destination, options: BaseModel) -> List[str]:
        values = options.model_dump()
        values.update(
            account=account,
            destination=destination.id,
            destination_path=destination.path,
            destination_url=destination.url or "",
        )
        return [part.format(**values) for part in self.argv]

    async def run_account_operation(self, job_type: JobType, account: str, destination: Destination,
                                    options: BaseModel) -> OperationResult:
        argv = self.build_argv(account, destination, options)
        tool_logger = logging.getLogger(f"backup_scheduler.tool.{account}")
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self.env,
            )
        except OSError as e:
            raise ExecutionFailure(f"Could not start {argv[0]}: {e}") from e

        report = _ToolReport(tool_logger)
        try:
            pending = b""
            while True:
                chunk = await process.stdout.read(READ_CHUNK)
                if not chunk:
                    break
                pending += chunk
                *lines, pending = pending.split(b"\n")
                for raw in lines:
                    report.feed(raw)
                if len(pending) > MAX_LINE:
                    report.feed(pending[:MAX_LINE], truncated=True)
                    pending = b""
            if pending:
                report.feed(pending)
            code = await process.wait()
        except (OSError, ValueError) as e:
            raise ExecutionFailure(f"Lost output of {argv[0]}: {e}") from e
        finally:
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        elapsed = time.monotonic() - started
        if code != 0:
            return OperationResult(success=False, message=f"{argv[0]} exited with status {code} after {elapsed:.0f}s")
        if self.job_type == JobType.BACKUP and not report.filename:
            return OperationResult(success=False, message=f"{argv[0]} did not report an artifact")
        verb = "Backed up" if self.job_type == JobType.BACKUP else "Restored"
        return OperationResult(
            success=True,
            message=f"{verb} {account} in {elapsed:.0f}s",
            filename=report.filename,
            companion_filename=report.companion,
            size=report.size,
        )
