from typing import Any, Dict, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError

from backup_scheduler.domain.job import JobType
from backup_scheduler.errors import InvalidOptions
from backup_scheduler.executors.options import BackupOptions, RestoreOptions
from backup_scheduler.executors.protocol import AccountOperationExecutor

DEFAULT_OPTION_SCHEMAS: Dict[JobType, Type[BaseModel]] = {
    JobType.BACKUP: BackupOptions,
    JobType.RESTORE: RestoreOptions,
}


class ExecutorFactory:
    """
    Registry of execution engines, one per job type.
    """
    def __init__(self, schemas: Optional[Dict[JobType, Type[BaseModel]]] = None):
        self._schemas: Dict[JobType, Type[BaseModel]] = dict(schemas or DEFAULT_OPTION_SCHEMAS)
        self._executors: Dict[JobType, AccountOperationExecutor] = {}

    @property
    def supported_schemas(self) -> Dict[JobType, Type[BaseModel]]:
        return self._schemas

    def register(self, executor: AccountOperationExecutor) -> None:
        """
        Register an executor for the job type it supports.

        Args:
            executor (AccountOperationExecutor): The executor to register.
        """
        job_type = JobType(executor.supported_type())
        if job_type not in self._schemas:
            raise ValueError(f"Job type '{job_type.value}' is not supported")
        if job_type in self._executors:
            raise ValueError(f"An executor for job type '{job_type.value}' is already registered")
        self._executors[job_type] = executor

    def validate_options(self, job_type: JobType, options: Dict[str, Any]) -> BaseModel:
        job_type = JobType(job_type)
        if job_type not in self._schemas:
            raise KeyError(f"No options schema registered for job type '{job_type.value}'")
        try:
            return self._schemas[job_type].model_validate(options or {})
        except ValidationError as e:
            raise InvalidOptions(f"Invalid options for job type '{job_type.value}': {str(e)}")

    def get_executor(self, job_type: JobType, options: Dict[str, Any]) -> Tuple[AccountOperationExecutor, BaseModel]:
        """
        Get the executor for a job type together with its validated options.

        Args:
            job_type (JobType): The job type to run.
            options (Dict[str, Any]): The job options to validate.

        Returns:
            Tuple[AccountOperationExecutor, BaseModel]: The executor and the parsed options.

        Raises:
            KeyError: If no executor is registered for the job type.
            InvalidOptions: If the options are invalid for the job type.
        """
        job_type = JobType(job_type)
        if job_type not in self._executors:
            raise KeyError(f"No executor registered for job type '{job_type.value}'")
        return self._executors[job_type], self.validate_options(job_type, options)
