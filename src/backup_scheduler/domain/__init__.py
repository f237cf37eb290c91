from .accounts import AllAccessibleAccounts, ExplicitAccounts, parse_accounts
from .job import Job, JobStatus, JobType, JobCollection, JobProgress, AccountResult, MANUAL_SCHEDULE_ID
from .schedule import Schedule, Frequency
from .manifest import ManifestEntry
from .lock import LockRecord, CancelMarker
from .destination import Destination, DestinationType

__all__ = [
    "AllAccessibleAccounts", "ExplicitAccounts", "parse_accounts",
    "Job", "JobStatus", "JobType", "JobCollection", "JobProgress", "AccountResult", "MANUAL_SCHEDULE_ID",
    "Schedule", "Frequency", "ManifestEntry", "LockRecord", "CancelMarker",
    "Destination", "DestinationType",
]
