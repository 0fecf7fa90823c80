"""
Job & Worker Records
====================

Plain dataclasses for the two record kinds the Registry owns.

Records are serialized with `to_dict()` / `from_dict()` in the current schema
only. Older shapes are upgraded once by `migrations` when the registry loads;
nothing here guesses at legacy field names.
"""

from __future__ import annotations
import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

SCHEMA_VERSION = 2

# ─── Status Enums ─────────────────────────────────────────────────────────────

class WorkerStatus(str, Enum):
    IDLE      = "IDLE"
    BUSY      = "BUSY"
    UNHEALTHY = "UNHEALTHY"
    OFFLINE   = "OFFLINE"


class JobStatus(str, Enum):
    SUBMITTED          = "SUBMITTED"
    QUEUED             = "QUEUED"
    ASSIGNED           = "ASSIGNED"
    RUNNING            = "RUNNING"
    COMPLETED          = "COMPLETED"
    FAILED             = "FAILED"
    CANCELLED          = "CANCELLED"
    TIMED_OUT_RETRYING = "TIMED_OUT_RETRYING"   # retry pending after a timeout reclaim

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_JOB_STATES


TERMINAL_JOB_STATES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_JOB_STATES   = frozenset({JobStatus.ASSIGNED, JobStatus.RUNNING})
SCHEDULABLE_WORKER_STATES = frozenset({WorkerStatus.IDLE, WorkerStatus.BUSY})


def _round(value: float) -> float:
    # Keeps reserve/release exact inverses for fractional CPU shares
    return round(value, 6)


# ─── Worker ───────────────────────────────────────────────────────────────────

@dataclass
class Worker:
    worker_id:          str
    hostname:           str
    os:                 str
    cpu_count:          float
    ram_total_mb:       int
    max_parallel_jobs:  int
    registered_at:      float
    last_heartbeat_at:  float

    status:             WorkerStatus = WorkerStatus.IDLE
    reported_status:    Optional[WorkerStatus] = None
    health_reason:      Optional[str] = None
    cpu_usage_percent:  float = 0.0
    ram_free_mb:        int = 0
    reserved_cpu:       float = 0.0
    reserved_ram_mb:    int = 0
    current_job_ids:    list[str] = field(default_factory=list)
    cooldown_until:     Optional[float] = None
    version:            str = "unknown"
    schema_version:     int = SCHEMA_VERSION

    # ─── Capacity ─────────────────────────────────────────────────────────────

    @property
    def free_cpu(self) -> float:
        return _round(self.cpu_count - self.reserved_cpu)

    @property
    def free_ram_mb(self) -> int:
        return self.ram_total_mb - self.reserved_ram_mb

    def in_cooldown(self, now: float) -> bool:
        return self.cooldown_until is not None and self.cooldown_until > now

    def has_headroom(self, required_cpu: float, required_ram_mb: int) -> bool:
        """Reservation-based admission: the authoritative capacity check."""
        return (
            self.free_cpu >= required_cpu
            and self.free_ram_mb >= required_ram_mb
            and len(self.current_job_ids) < self.max_parallel_jobs
        )

    def accepts_work(self, now: float) -> bool:
        return self.status in SCHEDULABLE_WORKER_STATES and not self.in_cooldown(now)

    def settle_status(self):
        """IDLE/BUSY from the current job set; leaves UNHEALTHY/OFFLINE alone."""
        if self.status in SCHEDULABLE_WORKER_STATES:
            self.status = WorkerStatus.BUSY if self.current_job_ids else WorkerStatus.IDLE

    # ─── Reservation bookkeeping ──────────────────────────────────────────────

    def add_reservation(self, job: "Job"):
        self.reserved_cpu    = _round(self.reserved_cpu + job.required_cpu)
        self.reserved_ram_mb = self.reserved_ram_mb + job.required_ram_mb
        if job.job_id not in self.current_job_ids:
            self.current_job_ids = sorted(self.current_job_ids + [job.job_id])

    def remove_reservation(self, job: "Job"):
        if job.job_id not in self.current_job_ids:
            return
        self.current_job_ids = [j for j in self.current_job_ids if j != job.job_id]
        self.reserved_cpu    = max(0.0, _round(self.reserved_cpu - job.required_cpu))
        self.reserved_ram_mb = max(0, self.reserved_ram_mb - job.required_ram_mb)
        if not self.current_job_ids:
            # Rounding must not leave phantom capacity behind
            self.reserved_cpu, self.reserved_ram_mb = 0.0, 0

    # ─── Serialization ────────────────────────────────────────────────────────

    def to_dict(self) -> dict:
        data = dataclasses.asdict(self)
        data["status"] = self.status.value
        data["reported_status"] = self.reported_status.value if self.reported_status else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Worker":
        known = {f.name for f in dataclasses.fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["status"] = WorkerStatus(kwargs.get("status", WorkerStatus.IDLE.value))
        if kwargs.get("reported_status"):
            kwargs["reported_status"] = WorkerStatus(kwargs["reported_status"])
        kwargs["current_job_ids"] = list(kwargs.get("current_job_ids") or [])
        return cls(**kwargs)


# ─── Job ──────────────────────────────────────────────────────────────────────

@dataclass
class JobResult:
    """What an agent reports when a sandbox run ends."""
    stdout:     str = ""
    stderr:     str = ""
    exit_code:  Optional[int] = None
    elapsed_ms: int = 0
    timed_out:  bool = False
    error:      Optional[str] = None   # e.g. sandbox could not start

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.error


@dataclass
class Job:
    job_id:             str
    sequence:           int
    command:            str
    required_cpu:       float
    required_ram_mb:    int
    timeout_ms:         int
    max_retries:        int
    submitted_at:       float

    file_url:           Optional[str] = None
    filename:           Optional[str] = None
    runtime:            str = "bash"
    attempts:           int = 0
    status:             JobStatus = JobStatus.SUBMITTED
    assigned_worker_id: Optional[str] = None
    last_worker_id:     Optional[str] = None

    queued_at:          Optional[float] = None
    assigned_at:        Optional[float] = None
    started_at:         Optional[float] = None
    completed_at:       Optional[float] = None
    retry_at:           Optional[float] = None

    stdout:             str = ""
    stderr:             str = ""
    exit_code:          Optional[int] = None
    elapsed_ms:         Optional[int] = None
    timed_out:          bool = False
    error_message:      Optional[str] = None
    cancel_requested:   bool = False
    live_output:        str = ""
    schema_version:     int = SCHEMA_VERSION

    def release_owner(self):
        """Drop the active owner; the terminal record remembers it as last_worker_id."""
        if self.assigned_worker_id:
            self.last_worker_id = self.assigned_worker_id
        self.assigned_worker_id = None

    def to_dict(self) -> dict:
        data = dataclasses.asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        known = {f.name for f in dataclasses.fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["status"] = JobStatus(kwargs.get("status", JobStatus.SUBMITTED.value))
        return cls(**kwargs)
