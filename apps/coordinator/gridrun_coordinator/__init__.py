"""
GridRun Coordinator
===================

The central coordination engine that agents talk to.

What it does:
  1. Keeps the Job and Worker records (Registry) behind an abstract store
  2. Accepts job submissions and worker registrations / heartbeats
  3. Runs the scheduler loop: heartbeat sweep, timeout sweep, assignment
  4. Hands ASSIGNED jobs to the owning agent when it polls
  5. Records results and applies the retry / cooldown policy

Transport is not part of this package — an HTTP layer (or anything else)
wraps `Coordinator` and maps its errors via `CoordinatorError.status_code`.

Usage:
  from gridrun_coordinator import Coordinator, CoordinatorConfig

  coordinator = Coordinator.create(CoordinatorConfig.from_env())
  coordinator.start()
"""

from .config import CoordinatorConfig
from .errors import (
    CoordinatorError,
    UnknownWorkerError,
    UnknownJobError,
    ConflictError,
    InvalidStateError,
    InvalidRequestError,
)
from .models import Job, JobResult, JobStatus, Worker, WorkerStatus
from .registry import Registry
from .scheduler import PassReport, Scheduler
from .service import Coordinator
from .store import MemoryStore, RecordStore, SQLiteStore

__all__ = [
    "Coordinator",
    "CoordinatorConfig",
    "CoordinatorError",
    "UnknownWorkerError",
    "UnknownJobError",
    "ConflictError",
    "InvalidStateError",
    "InvalidRequestError",
    "Job",
    "JobResult",
    "JobStatus",
    "Worker",
    "WorkerStatus",
    "Registry",
    "Scheduler",
    "PassReport",
    "RecordStore",
    "MemoryStore",
    "SQLiteStore",
]
