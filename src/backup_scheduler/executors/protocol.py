from typing import Optional, Protocol

from pydantic import BaseModel, Field

from backup_scheduler.domain.destination import Destination
from backup_scheduler.domain.job import JobType


class OperationResult(BaseModel):
    """
    What the execution engine reports for one account.
    """
    success: bool
    message: str = ""
    filename: Optional[str] = Field(None, description="Artifact produced on the destination, if any")
    companion_filename: Optional[str] = Field(None, description="Secondary artifact, e.g. a separate database dump")
    size: int = 0


class AccountOperationExecutor(Protocol):
    """
    Protocol class for the external backup/restore engine.
    """

    async def run_account_operation(self, job_type: JobType, account: str, destination: Destination,
                                    options: BaseModel) -> OperationResult:
        """
        Run one account-level operation to completion.

        May take hours. Must not be retried by the caller. Raise
        ExecutionFailure (or return ``success=False``) when the account failed.
        """
        ...

    def supported_type(self) -> JobType:
        """
        Return the job type this executor handles.
        """
        ...
