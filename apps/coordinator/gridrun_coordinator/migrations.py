"""
Record Migrations
=================

Upgrades stored records to the current schema. Runs once, from
`Registry.load()`; business logic only ever sees current-version records.

Version 1 (pre-schema_version) records come from the first generation of
the system:
  - camelCase keys (jobId, ramTotalMb, lastHeartbeat, …)
  - lowercase statuses ("pending", "running", "idle", …)
  - job owner stored as `assignedAgentId` or `workerId`
  - worker RAM in bytes (`ramTotal`, `ramFree`, `reservedRam`)
  - a single `currentJobId` instead of a job set
  - millisecond epoch timestamps
"""

from __future__ import annotations
import logging
from typing import Any, Optional

from .config import CoordinatorConfig
from .models import SCHEMA_VERSION, JobStatus, WorkerStatus

log = logging.getLogger(__name__)

_LEGACY_JOB_STATUS = {
    "pending":   JobStatus.QUEUED,
    "queued":    JobStatus.QUEUED,
    "submitted": JobStatus.QUEUED,
    "assigned":  JobStatus.ASSIGNED,
    "running":   JobStatus.RUNNING,
    "completed": JobStatus.COMPLETED,
    "failed":    JobStatus.FAILED,
    "cancelled": JobStatus.CANCELLED,
}

_LEGACY_WORKER_STATUS = {
    "idle":      WorkerStatus.IDLE,
    "busy":      WorkerStatus.BUSY,
    "unhealthy": WorkerStatus.UNHEALTHY,
    "offline":   WorkerStatus.OFFLINE,
    "online":    WorkerStatus.IDLE,
}

_BYTES_PER_MB = 1024 * 1024


def needs_migration(raw: dict) -> bool:
    return raw.get("schema_version") != SCHEMA_VERSION


def _first(raw: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return default


def _seconds(value: Any) -> Optional[float]:
    """Epoch seconds from seconds or milliseconds."""
    if value is None:
        return None
    value = float(value)
    # Anything past year 5138 in seconds is really milliseconds
    return value / 1000.0 if value > 1e11 else value


def _mb(raw: dict, mb_key: str, mb_key_v1: str, bytes_key: str) -> Optional[int]:
    value = _first(raw, mb_key, mb_key_v1)
    if value is not None:
        return int(value)
    if raw.get(bytes_key) is not None:
        return int(raw[bytes_key] // _BYTES_PER_MB)
    return None


def _status(value: Any, legacy: dict, enum, default):
    if value is None:
        return default
    if isinstance(value, enum):
        return value
    text = str(value)
    if text in legacy:
        return legacy[text]
    try:
        return enum(text.upper())
    except ValueError:
        log.warning(f"[migrations] Unknown status {text!r} — using {default.value}")
        return default


# ─── Jobs ─────────────────────────────────────────────────────────────────────

def migrate_job(raw: dict, config: CoordinatorConfig, now: float) -> dict:
    """Return `raw` upgraded to the current Job schema (as a dict)."""
    if not needs_migration(raw):
        return raw

    submitted = _seconds(_first(raw, "submitted_at", "submittedAt", "createdAt")) or now
    status = _status(raw.get("status"), _LEGACY_JOB_STATUS, JobStatus, JobStatus.QUEUED)
    if status == JobStatus.SUBMITTED:
        status = JobStatus.QUEUED

    job = {
        "job_id":             _first(raw, "job_id", "jobId"),
        "sequence":           int(_first(raw, "sequence", default=0)),
        "command":            _first(raw, "command", default=""),
        "file_url":           _first(raw, "file_url", "fileUrl"),
        "filename":           _first(raw, "filename"),
        "runtime":            _first(raw, "runtime", default="bash"),
        "required_cpu":       float(_first(raw, "required_cpu", "requiredCpu", default=config.default_job_cpu)),
        "required_ram_mb":    int(_first(raw, "required_ram_mb", "requiredRamMb", default=config.default_job_ram_mb)),
        "timeout_ms":         int(_first(raw, "timeout_ms", "timeoutMs", default=config.default_job_timeout_ms)),
        "max_retries":        int(_first(raw, "max_retries", "maxRetries", default=config.default_max_retries)),
        "attempts":           int(_first(raw, "attempts", default=0)),
        "status":             status.value,
        "assigned_worker_id": _first(raw, "assigned_worker_id", "assignedAgentId", "workerId"),
        "last_worker_id":     _first(raw, "last_worker_id"),
        "submitted_at":       submitted,
        "queued_at":          _seconds(_first(raw, "queued_at", "queuedAt")) or submitted,
        "assigned_at":        _seconds(_first(raw, "assigned_at", "assignedAt")),
        "started_at":         _seconds(_first(raw, "started_at", "startedAt")),
        "completed_at":       _seconds(_first(raw, "completed_at", "completedAt")),
        "retry_at":           _seconds(_first(raw, "retry_at", "retryAt")),
        "stdout":             _first(raw, "stdout", default=""),
        "stderr":             _first(raw, "stderr", default=""),
        "exit_code":          _first(raw, "exit_code", "exitCode"),
        "elapsed_ms":         _first(raw, "elapsed_ms", "elapsedMs", "executionTime"),
        "timed_out":          bool(_first(raw, "timed_out", "timedOut", default=False)),
        "error_message":      _first(raw, "error_message", "errorMessage"),
        "cancel_requested":   bool(_first(raw, "cancel_requested", "cancelRequested", default=False)),
        "live_output":        "",
        "schema_version":     SCHEMA_VERSION,
    }
    # attempts ≤ max_retries + 1 must hold even for hand-edited records
    job["attempts"] = min(max(job["attempts"], 0), job["max_retries"] + 1)
    return job


# ─── Workers ──────────────────────────────────────────────────────────────────

def migrate_worker(raw: dict, now: float) -> dict:
    """Return `raw` upgraded to the current Worker schema (as a dict)."""
    if not needs_migration(raw):
        return raw

    cpu_count = float(_first(raw, "cpu_count", "cpuCount", default=1))
    ram_total = _mb(raw, "ram_total_mb", "ramTotalMb", "ramTotal") or 0
    ram_free  = _mb(raw, "ram_free_mb", "ramFreeMb", "ramFree")

    job_ids = _first(raw, "current_job_ids", "currentJobIds")
    if job_ids is None:
        single = _first(raw, "currentJobId")
        job_ids = [single] if single else []

    reported = _first(raw, "reported_status")
    return {
        "worker_id":         _first(raw, "worker_id", "workerId"),
        "hostname":          _first(raw, "hostname", default="unknown"),
        "os":                _first(raw, "os", default="unknown"),
        "cpu_count":         cpu_count,
        "ram_total_mb":      ram_total,
        "max_parallel_jobs": int(_first(raw, "max_parallel_jobs", "maxParallelJobs", default=max(1, int(cpu_count)))),
        "registered_at":     _seconds(_first(raw, "registered_at", "createdAt")) or now,
        "last_heartbeat_at": _seconds(_first(raw, "last_heartbeat_at", "lastHeartbeat")) or now,
        "status":            _status(raw.get("status"), _LEGACY_WORKER_STATUS, WorkerStatus, WorkerStatus.IDLE).value,
        "reported_status":   reported,
        "health_reason":     _first(raw, "health_reason", "healthReason"),
        "cpu_usage_percent": float(_first(raw, "cpu_usage_percent", "cpuUsage", default=0.0)),
        "ram_free_mb":       ram_free if ram_free is not None else ram_total,
        "reserved_cpu":      float(_first(raw, "reserved_cpu", "reservedCpu", default=0.0)),
        "reserved_ram_mb":   _mb(raw, "reserved_ram_mb", "reservedRamMb", "reservedRam") or 0,
        "current_job_ids":   sorted(set(job_ids)),
        "cooldown_until":    _seconds(_first(raw, "cooldown_until", "cooldownUntil")),
        "version":           _first(raw, "version", default="unknown"),
        "schema_version":    SCHEMA_VERSION,
    }
