"""
Backup Job Scheduling System

This package queues, runs, cancels and retention-prunes long-running backup
and restore jobs against pluggable storage destinations.

Core Concepts:

Schedule:
    A Schedule is a recurrence definition (hourly, daily, weekly, monthly)
    over a set of accounts and a destination. It does no work itself.
    When it becomes due, it is materialized into a Job.

Job:
    A Job is a single backup or restore run over one or more accounts.
    It lives in exactly one collection at a time (queue, running, completed)
    and reaches a terminal status exactly once.

Queue Processor:
    Invoked periodically from outside. Each pass holds an exclusive lock,
    queues due schedules, drains the queue one job at a time and prunes
    artifacts beyond each schedule's retention count.

Manifest:
    Per-destination ledger of the artifacts each schedule produced. Pruning
    only ever deletes what the manifest attributes to the schedule.

Relationships:
    - A Schedule can produce many Jobs; a manual Job belongs to no Schedule.
    - A successful backup Job adds one manifest entry per account.
"""

from .domain import *
from .processor import PassResult, QueueProcessor
from .service import BackupService

__all__ = ["domain", "QueueProcessor", "PassResult", "BackupService"]
