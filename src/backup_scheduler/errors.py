class BackupSchedulerError(Exception):
    """
    Base class for every error raised by the scheduling core.
    """


class NotFound(BackupSchedulerError):
    """A job or schedule id is absent from the expected collection."""


class DuplicateID(BackupSchedulerError):
    """A record id has already been issued, even if that record was deleted since."""


class AlreadyTerminal(BackupSchedulerError):
    """The job has already finished (completed, failed or cancelled)."""


class InvalidDestination(BackupSchedulerError):
    """The destination does not exist, or is disabled where that is not allowed."""


class InvalidOptions(BackupSchedulerError):
    """Job options do not validate against the executor's options schema."""


class LockContention(BackupSchedulerError):
    """
    Another processing pass holds a valid lock.

    This is not a failure for the caller of a pass: the pass reports itself
    as skipped instead of raising.
    """


class ExecutionFailure(BackupSchedulerError):
    """The execution engine reported a failure for a single account."""


class TransportFailure(BackupSchedulerError):
    """A transport list/delete call failed."""
