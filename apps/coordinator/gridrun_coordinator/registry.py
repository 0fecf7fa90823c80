"""
Job / Worker Registry
=====================

The sole writer of Job and Worker records.

Every mutation is a read-modify-write of one or more records under
per-record locks, so concurrent heartbeats, result submissions, job
submissions and scheduler passes never lose updates or double-book
capacity. Multi-record operations take their locks in sorted key order.

Invariants held after every operation:
  - worker.reserved_cpu ≤ worker.cpu_count, reserved_ram_mb ≤ ram_total_mb
  - len(worker.current_job_ids) ≤ worker.max_parallel_jobs
  - job.assigned_worker_id is set  ⇔  job.status ∈ {ASSIGNED, RUNNING}
  - an ASSIGNED/RUNNING job sits in exactly one worker's current_job_ids
  - job.attempts ≤ job.max_retries + 1
"""

from __future__ import annotations
import logging
import threading
import time
import uuid
from contextlib import ExitStack, contextmanager
from typing import Callable, Iterable, Iterator, Optional

from .config import CoordinatorConfig
from .errors import (
    ConflictError,
    InvalidRequestError,
    InvalidStateError,
    UnknownJobError,
    UnknownWorkerError,
)
from .migrations import migrate_job, migrate_worker, needs_migration
from .models import (
    Job,
    JobResult,
    JobStatus,
    SCHEDULABLE_WORKER_STATES,
    Worker,
    WorkerStatus,
)
from .store import JOBS, WORKERS, RecordStore

log = logging.getLogger(__name__)

# ─── Per-record locks ─────────────────────────────────────────────────────────

def _job_key(job_id: str) -> str:
    return f"job:{job_id}"


def _worker_key(worker_id: str) -> str:
    return f"worker:{worker_id}"


class _LockTable:
    """One lock per record key, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self._lock_for(key))
            yield


# ─── Registry ─────────────────────────────────────────────────────────────────

class Registry:
    def __init__(
        self,
        store:  RecordStore,
        config: Optional[CoordinatorConfig] = None,
        clock:  Callable[[], float] = time.time,
    ):
        self.store  = store
        self.config = config or CoordinatorConfig()
        self.clock  = clock

        self._locks         = _LockTable()
        self._sequence_lock = threading.Lock()
        self._sequence      = 0

    # ─── Record access ────────────────────────────────────────────────────────

    def _get_job(self, job_id: str) -> Optional[Job]:
        raw = self.store.get(JOBS, job_id)
        return Job.from_dict(raw) if raw is not None else None

    def _get_worker(self, worker_id: str) -> Optional[Worker]:
        raw = self.store.get(WORKERS, worker_id)
        return Worker.from_dict(raw) if raw is not None else None

    def _load_job(self, job_id: str) -> Job:
        job = self._get_job(job_id)
        if job is None:
            raise UnknownJobError(f"Unknown job {job_id}")
        return job

    def _load_worker(self, worker_id: str) -> Worker:
        worker = self._get_worker(worker_id)
        if worker is None:
            raise UnknownWorkerError(f"Unknown worker {worker_id}")
        return worker

    def _save_job(self, job: Job):
        self.store.put(JOBS, job.job_id, job.to_dict())

    def _save_worker(self, worker: Worker):
        self.store.put(WORKERS, worker.worker_id, worker.to_dict())

    def _next_sequence(self) -> int:
        with self._sequence_lock:
            self._sequence += 1
            return self._sequence

    @contextmanager
    def _job_with_owner(self, job_id: str) -> Iterator[tuple[Job, Optional[Worker]]]:
        """Lock a job together with its current owner (if any)."""
        while True:
            owner = self._load_job(job_id).assigned_worker_id
            keys = [_job_key(job_id)] + ([_worker_key(owner)] if owner else [])
            with self._locks.hold(*keys):
                job = self._load_job(job_id)
                if job.assigned_worker_id != owner:
                    continue  # owner changed between read and lock
                worker = self._get_worker(owner) if owner else None
                yield job, worker
                return

    @contextmanager
    def _worker_with_jobs(self, worker_id: str) -> Iterator[tuple[Worker, list[Job]]]:
        """Lock a worker together with every job it currently holds."""
        while True:
            job_ids = list(self._load_worker(worker_id).current_job_ids)
            keys = [_worker_key(worker_id)] + [_job_key(j) for j in job_ids]
            with self._locks.hold(*keys):
                worker = self._load_worker(worker_id)
                if set(worker.current_job_ids) != set(job_ids):
                    continue
                jobs = [j for j in (self._get_job(i) for i in job_ids) if j is not None]
                yield worker, jobs
                return

    # ─── Startup ──────────────────────────────────────────────────────────────

    def load(self) -> dict:
        """
        Migrate stored records to the current schema and restore invariants.

        Worker reservations are rebuilt from the jobs that reference them, so a
        crash between the job write and the worker write of a reservation
        leaves nothing inconsistent after restart.
        """
        now = self.clock()
        migrated = 0

        workers: dict[str, Worker] = {}
        for raw in self.store.all(WORKERS):
            if needs_migration(raw):
                raw = migrate_worker(raw, now)
                migrated += 1
            worker = Worker.from_dict(raw)
            workers[worker.worker_id] = worker

        jobs: dict[str, Job] = {}
        for raw in self.store.all(JOBS):
            if needs_migration(raw):
                raw = migrate_job(raw, self.config, now)
                migrated += 1
            job = Job.from_dict(raw)
            jobs[job.job_id] = job

        with self._sequence_lock:
            self._sequence = max((j.sequence for j in jobs.values()), default=0)
            for job in sorted(jobs.values(), key=lambda j: (j.submitted_at, j.job_id)):
                if job.sequence <= 0:
                    self._sequence += 1
                    job.sequence = self._sequence

        requeued = 0
        for job in jobs.values():
            if job.status.is_active and job.assigned_worker_id not in workers:
                job.release_owner()
                job.status      = JobStatus.QUEUED
                job.queued_at   = now
                job.assigned_at = None
                job.started_at  = None
                requeued += 1
            elif not job.status.is_active and job.assigned_worker_id:
                job.release_owner()
            # Timeout clocks start at load for records that never had one
            elif job.status == JobStatus.RUNNING and job.started_at is None:
                job.started_at = now
            elif job.status == JobStatus.ASSIGNED and job.assigned_at is None:
                job.assigned_at = now

        for worker in workers.values():
            held = [
                j for j in jobs.values()
                if j.status.is_active and j.assigned_worker_id == worker.worker_id
            ]
            worker.current_job_ids = sorted(j.job_id for j in held)
            worker.reserved_cpu    = round(sum(j.required_cpu for j in held), 6)
            worker.reserved_ram_mb = sum(j.required_ram_mb for j in held)
            self._clamp_capacity(worker)
            worker.settle_status()

        for worker in workers.values():
            self._save_worker(worker)
        for job in jobs.values():
            self._save_job(job)

        summary = {
            "workers":  len(workers),
            "jobs":     len(jobs),
            "migrated": migrated,
            "requeued": requeued,
        }
        log.info(
            f"[registry] Loaded {summary['workers']} worker(s), {summary['jobs']} job(s) "
            f"— {migrated} migrated, {requeued} orphaned job(s) requeued"
        )
        return summary

    def _clamp_capacity(self, worker: Worker):
        """Capacity never drops below what is already reserved."""
        if worker.reserved_cpu > worker.cpu_count:
            log.warning(
                f"[registry] Worker {worker.worker_id} reports {worker.cpu_count} CPU "
                f"but {worker.reserved_cpu} is reserved — clamping"
            )
            worker.cpu_count = worker.reserved_cpu
        if worker.reserved_ram_mb > worker.ram_total_mb:
            log.warning(
                f"[registry] Worker {worker.worker_id} reports {worker.ram_total_mb} MB "
                f"but {worker.reserved_ram_mb} MB is reserved — clamping"
            )
            worker.ram_total_mb = worker.reserved_ram_mb
        if len(worker.current_job_ids) > worker.max_parallel_jobs:
            worker.max_parallel_jobs = len(worker.current_job_ids)

    # ─── Workers ──────────────────────────────────────────────────────────────

    def register_worker(
        self,
        hostname:          str,
        os_name:           str,
        cpu_count:         float,
        ram_total_mb:      int,
        worker_id:         Optional[str] = None,
        max_parallel_jobs: Optional[int] = None,
        version:           Optional[str] = None,
    ) -> str:
        """
        Create a worker, or refresh a known one.

        Idempotent for a known `worker_id`: reservations and the job set are
        kept, host facts and the heartbeat time are refreshed, and an OFFLINE
        worker comes back as IDLE/BUSY.
        """
        if not cpu_count or cpu_count <= 0:
            raise InvalidRequestError("cpu_count must be positive")
        if not ram_total_mb or ram_total_mb <= 0:
            raise InvalidRequestError("ram_total_mb must be positive")
        if max_parallel_jobs is not None and max_parallel_jobs < 1:
            raise InvalidRequestError("max_parallel_jobs must be at least 1")

        worker_id = worker_id or f"worker-{uuid.uuid4().hex[:12]}"
        now = self.clock()
        parallel = max_parallel_jobs or max(1, int(cpu_count))

        with self._locks.hold(_worker_key(worker_id)):
            worker = self._get_worker(worker_id)
            if worker is None:
                worker = Worker(
                    worker_id         = worker_id,
                    hostname          = hostname,
                    os                = os_name,
                    cpu_count         = float(cpu_count),
                    ram_total_mb      = int(ram_total_mb),
                    max_parallel_jobs = parallel,
                    registered_at     = now,
                    last_heartbeat_at = now,
                    ram_free_mb       = int(ram_total_mb),
                    version           = version or "unknown",
                )
                log.info(
                    f"[registry] Worker {worker_id} registered — {hostname} ({os_name}), "
                    f"{cpu_count} CPU, {ram_total_mb} MB, parallel {parallel}"
                )
            else:
                worker.hostname          = hostname
                worker.os                = os_name
                worker.cpu_count         = float(cpu_count)
                worker.ram_total_mb      = int(ram_total_mb)
                worker.max_parallel_jobs = parallel
                worker.last_heartbeat_at = now
                if version:
                    worker.version = version
                if worker.status == WorkerStatus.OFFLINE:
                    worker.status        = WorkerStatus.IDLE
                    worker.health_reason = None
                log.info(f"[registry] Worker {worker_id} re-registered")

            self._clamp_capacity(worker)
            worker.settle_status()
            self._save_worker(worker)
        return worker_id

    def record_heartbeat(
        self,
        worker_id:         str,
        cpu_usage_percent: float,
        ram_free_mb:       int,
        ram_total_mb:      Optional[int] = None,
        status:            Optional[str] = None,
    ) -> Worker:
        try:
            reported = WorkerStatus(status) if status else None
        except ValueError:
            raise InvalidRequestError(f"Unknown worker status {status!r}")

        with self._locks.hold(_worker_key(worker_id)):
            worker = self._load_worker(worker_id)
            now = self.clock()

            worker.last_heartbeat_at = now
            worker.cpu_usage_percent = max(0.0, float(cpu_usage_percent or 0.0))
            worker.ram_free_mb       = max(0, int(ram_free_mb or 0))
            if ram_total_mb:
                worker.ram_total_mb = int(ram_total_mb)
                self._clamp_capacity(worker)
            worker.reported_status = reported

            if reported == WorkerStatus.UNHEALTHY and worker.status in SCHEDULABLE_WORKER_STATES:
                worker.status        = WorkerStatus.UNHEALTHY
                worker.health_reason = "agent_reported"
                log.warning(f"[registry] Worker {worker_id} reports itself UNHEALTHY")
            elif not worker.in_cooldown(now):
                worker.settle_status()

            self._save_worker(worker)
            return worker

    def revive_worker(self, worker_id: str, fresh_after: float) -> bool:
        """OFFLINE/UNHEALTHY → IDLE/BUSY once heartbeats are fresh again."""
        with self._locks.hold(_worker_key(worker_id)):
            worker = self._load_worker(worker_id)
            now = self.clock()
            if worker.status not in (WorkerStatus.OFFLINE, WorkerStatus.UNHEALTHY):
                return False
            if worker.last_heartbeat_at < fresh_after or worker.in_cooldown(now):
                return False
            if worker.reported_status == WorkerStatus.UNHEALTHY:
                return False

            worker.status        = WorkerStatus.IDLE
            worker.health_reason = None
            worker.settle_status()
            self._save_worker(worker)
            log.info(f"[registry] Worker {worker_id} healthy again ({worker.status.value})")
            return True

    def mark_offline(
        self,
        worker_id:    str,
        reason:       str,
        stale_before: Optional[float] = None,
    ) -> Optional[list[str]]:
        """
        Mark a worker OFFLINE and reclaim every job it holds.

        With `stale_before`, this is a compare-and-set: a heartbeat that
        arrived after the cutoff wins, nothing changes and None is returned.
        Otherwise returns the reclaimed job ids.
        """
        with self._worker_with_jobs(worker_id) as (worker, jobs):
            if stale_before is not None and worker.last_heartbeat_at >= stale_before:
                return None
            now = self.clock()

            reclaimed = []
            for job in jobs:
                if not (job.status.is_active and job.assigned_worker_id == worker_id):
                    continue
                self._retry_or_fail(job, reason, now)
                self._save_job(job)
                reclaimed.append(job.job_id)

            worker.status          = WorkerStatus.OFFLINE
            worker.health_reason   = reason
            worker.current_job_ids = []
            worker.reserved_cpu    = 0.0
            worker.reserved_ram_mb = 0
            self._save_worker(worker)

        log.warning(f"[registry] Worker {worker_id} OFFLINE ({reason}) — reclaimed {len(reclaimed)} job(s)")
        return reclaimed

    def deregister_worker(self, worker_id: str) -> list[str]:
        return self.mark_offline(worker_id, "Worker deregistered")

    def _start_cooldown(self, worker: Worker, reason: str, now: float):
        worker.cooldown_until = now + self.config.agent_cooldown_s
        worker.health_reason  = f"cooldown: {reason}"
        log.info(
            f"[registry] Worker {worker.worker_id} in cooldown for "
            f"{self.config.agent_cooldown_s:.0f}s — {reason}"
        )

    # ─── Jobs ─────────────────────────────────────────────────────────────────

    def submit_job(
        self,
        command:         str,
        file_url:        Optional[str] = None,
        filename:        Optional[str] = None,
        required_cpu:    Optional[float] = None,
        required_ram_mb: Optional[int] = None,
        timeout_ms:      Optional[int] = None,
        max_retries:     Optional[int] = None,
        runtime:         Optional[str] = None,
    ) -> str:
        if not command or not str(command).strip():
            raise InvalidRequestError("command is required")

        cfg = self.config
        required_cpu    = cfg.default_job_cpu if required_cpu is None else float(required_cpu)
        required_ram_mb = cfg.default_job_ram_mb if required_ram_mb is None else int(required_ram_mb)
        timeout_ms      = cfg.default_job_timeout_ms if timeout_ms is None else int(timeout_ms)
        max_retries     = cfg.default_max_retries if max_retries is None else int(max_retries)

        if required_cpu <= 0 or required_ram_mb <= 0:
            raise InvalidRequestError("required_cpu and required_ram_mb must be positive")
        if timeout_ms <= 0:
            raise InvalidRequestError("timeout_ms must be positive")
        if max_retries < 0:
            raise InvalidRequestError("max_retries must not be negative")

        now = self.clock()
        job = Job(
            job_id          = f"job-{uuid.uuid4().hex}",
            sequence        = self._next_sequence(),
            command         = str(command),
            required_cpu    = required_cpu,
            required_ram_mb = required_ram_mb,
            timeout_ms      = timeout_ms,
            max_retries     = max_retries,
            submitted_at    = now,
            file_url        = file_url,
            filename        = filename,
            runtime         = runtime or "bash",
        )
        # SUBMITTED is momentary: the job is queued as soon as it is accepted
        job.status    = JobStatus.QUEUED
        job.queued_at = now

        with self._locks.hold(_job_key(job.job_id)):
            self._save_job(job)

        log.info(
            f"[registry] Job {job.job_id} queued — {required_cpu} CPU, "
            f"{required_ram_mb} MB, timeout {timeout_ms}ms, retries {max_retries}"
        )
        return job.job_id

    def reserve(self, job_id: str, worker_id: str) -> Job:
        """
        Atomically move a QUEUED job to ASSIGNED on a worker and book its
        resources. Raises ConflictError when the job or the worker's headroom
        changed since the caller looked.
        """
        with self._locks.hold(_job_key(job_id), _worker_key(worker_id)):
            job = self._load_job(job_id)
            worker = self._load_worker(worker_id)
            now = self.clock()

            if job.status != JobStatus.QUEUED:
                raise ConflictError(f"Job {job_id} is {job.status.value}, not QUEUED")
            if not worker.accepts_work(now):
                raise ConflictError(f"Worker {worker_id} is not accepting work")
            if not worker.has_headroom(job.required_cpu, job.required_ram_mb):
                raise ConflictError(f"Worker {worker_id} has no headroom for {job_id}")

            job.status             = JobStatus.ASSIGNED
            job.assigned_worker_id = worker_id
            job.assigned_at        = now
            job.started_at         = None
            job.retry_at           = None
            worker.add_reservation(job)
            worker.settle_status()

            self._save_job(job)
            self._save_worker(worker)

        log.info(f"[registry] Job {job_id} → ASSIGNED to {worker_id}")
        return job

    def mark_running(self, job_id: str, worker_id: str) -> Job:
        with self._locks.hold(_job_key(job_id)):
            job = self._load_job(job_id)
            if job.status != JobStatus.ASSIGNED or job.assigned_worker_id != worker_id:
                raise ConflictError(f"Job {job_id} is not ASSIGNED to {worker_id}")
            job.status      = JobStatus.RUNNING
            job.started_at  = self.clock()
            job.live_output = ""
            self._save_job(job)
        log.info(f"[registry] Job {job_id} → RUNNING on {worker_id}")
        return job

    def _check_owner(self, job: Job, worker_id: str):
        if not job.status.is_active or job.assigned_worker_id != worker_id:
            raise ConflictError(
                f"Job {job.job_id} is {job.status.value} and not owned by {worker_id}"
            )

    def _record_result(self, job: Job, result: JobResult):
        limit = self.config.max_output_chars
        job.stdout     = (result.stdout or "")[-limit:]
        job.stderr     = (result.stderr or "")[-limit:]
        job.exit_code  = result.exit_code
        job.elapsed_ms = result.elapsed_ms
        job.timed_out  = bool(result.timed_out)

    def complete(self, job_id: str, worker_id: str, result: JobResult) -> Job:
        with self._locks.hold(_job_key(job_id), _worker_key(worker_id)):
            job = self._load_job(job_id)
            self._check_owner(job, worker_id)
            worker = self._load_worker(worker_id)
            now = self.clock()

            self._record_result(job, result)
            worker.remove_reservation(job)
            worker.settle_status()
            job.release_owner()
            job.status        = JobStatus.COMPLETED
            job.completed_at  = now
            job.error_message = None

            self._save_job(job)
            self._save_worker(worker)

        log.info(f"[registry] Job {job_id} → COMPLETED on {worker_id} (exit {result.exit_code})")
        return job

    def fail(self, job_id: str, worker_id: str, result: JobResult, reason: str) -> Job:
        """Record a failed attempt, release it, cool the worker down and retry or fail."""
        with self._locks.hold(_job_key(job_id), _worker_key(worker_id)):
            job = self._load_job(job_id)
            self._check_owner(job, worker_id)
            worker = self._load_worker(worker_id)
            now = self.clock()

            self._record_result(job, result)
            worker.remove_reservation(job)
            self._start_cooldown(worker, reason, now)
            worker.settle_status()
            self._retry_or_fail(job, reason, now)

            self._save_job(job)
            self._save_worker(worker)

        log.warning(f"[registry] Job {job_id} attempt failed on {worker_id} — {reason} → {job.status.value}")
        return job

    def release(
        self,
        job_id:          str,
        reason:          str,
        *,
        expected_status: Optional[JobStatus] = None,
        penalize:        bool = False,
        retry_status:    JobStatus = JobStatus.QUEUED,
    ) -> Job:
        """
        Reclaim an ASSIGNED/RUNNING job: release its reservation and apply the
        retry policy. `penalize` also puts a reachable owner into cooldown.
        """
        with self._job_with_owner(job_id) as (job, worker):
            if not job.status.is_active:
                raise ConflictError(f"Job {job_id} is {job.status.value}, nothing to release")
            if expected_status is not None and job.status != expected_status:
                raise ConflictError(f"Job {job_id} is {job.status.value}, expected {expected_status.value}")
            now = self.clock()

            if worker is not None:
                worker.remove_reservation(job)
                if penalize and worker.status != WorkerStatus.OFFLINE:
                    self._start_cooldown(worker, reason, now)
                worker.settle_status()
                self._save_worker(worker)

            self._retry_or_fail(job, reason, now, retry_status=retry_status)
            self._save_job(job)

        log.warning(f"[registry] Job {job_id} reclaimed — {reason} → {job.status.value}")
        return job

    def _retry_or_fail(
        self,
        job:          Job,
        reason:       str,
        now:          float,
        retry_status: JobStatus = JobStatus.QUEUED,
    ):
        """The one retry policy: requeue while attempts < max_retries, else FAILED."""
        job.release_owner()
        job.assigned_at = None
        job.attempts += 1

        if job.attempts <= job.max_retries:
            job.status        = retry_status
            job.started_at    = None
            job.error_message = reason
            if retry_status == JobStatus.TIMED_OUT_RETRYING:
                job.queued_at = None
                job.retry_at  = now + self.config.retry_delay_s
            else:
                job.queued_at = now
                job.retry_at  = None
        else:
            job.status        = JobStatus.FAILED
            job.error_message = f"{reason} (max retries reached)"
            job.completed_at  = now
            job.retry_at      = None

    def promote_retries(self) -> int:
        """TIMED_OUT_RETRYING jobs whose retry time has come go back to QUEUED."""
        promoted = 0
        for candidate in self.list_jobs([JobStatus.TIMED_OUT_RETRYING]):
            with self._locks.hold(_job_key(candidate.job_id)):
                job = self._load_job(candidate.job_id)
                now = self.clock()
                if job.status != JobStatus.TIMED_OUT_RETRYING:
                    continue
                if job.retry_at is not None and job.retry_at > now:
                    continue
                job.status    = JobStatus.QUEUED
                job.queued_at = now
                job.retry_at  = None
                self._save_job(job)
                promoted += 1
        return promoted

    def cancel(self, job_id: str) -> Job:
        with self._job_with_owner(job_id) as (job, worker):
            if job.status.is_terminal:
                raise InvalidStateError(f"Job {job_id} is already {job.status.value}")

            if worker is not None:
                worker.remove_reservation(job)
                worker.settle_status()
                self._save_worker(worker)

            job.release_owner()
            job.status           = JobStatus.CANCELLED
            job.cancel_requested = True
            job.completed_at     = self.clock()
            job.retry_at         = None
            job.error_message    = "Job cancelled by user"
            self._save_job(job)

        log.info(f"[registry] Job {job_id} → CANCELLED")
        return job

    def should_stop(self, job_id: str, worker_id: str) -> bool:
        """True once the job is no longer active on this worker (cancelled, reclaimed, …)."""
        job = self._load_job(job_id)
        return not (job.status.is_active and job.assigned_worker_id == worker_id)

    def append_output(self, job_id: str, worker_id: str, text: str) -> None:
        with self._locks.hold(_job_key(job_id)):
            job = self._load_job(job_id)
            self._check_owner(job, worker_id)
            job.live_output = (job.live_output + text)[-self.config.live_output_chars:]
            self._save_job(job)

    # ─── Reads ────────────────────────────────────────────────────────────────

    def get_job(self, job_id: str) -> Job:
        return self._load_job(job_id)

    def get_worker(self, worker_id: str) -> Worker:
        return self._load_worker(worker_id)

    def list_jobs(self, statuses: Optional[Iterable[JobStatus]] = None) -> list[Job]:
        wanted = set(statuses) if statuses is not None else None
        jobs = [Job.from_dict(raw) for raw in self.store.all(JOBS)]
        if wanted is not None:
            jobs = [j for j in jobs if j.status in wanted]
        return sorted(jobs, key=lambda j: j.sequence)

    def list_workers(self, statuses: Optional[Iterable[WorkerStatus]] = None) -> list[Worker]:
        wanted = set(statuses) if statuses is not None else None
        workers = [Worker.from_dict(raw) for raw in self.store.all(WORKERS)]
        if wanted is not None:
            workers = [w for w in workers if w.status in wanted]
        return sorted(workers, key=lambda w: (w.registered_at, w.worker_id))

    def jobs_for_worker(
        self,
        worker_id: str,
        statuses:  Optional[Iterable[JobStatus]] = None,
    ) -> list[Job]:
        return [j for j in self.list_jobs(statuses) if j.assigned_worker_id == worker_id]

    def audit(self) -> list[str]:
        """Describe every invariant violation found (empty list = consistent)."""
        problems = []
        jobs = {j.job_id: j for j in self.list_jobs()}
        holders: dict[str, list[str]] = {}

        for w in self.list_workers():
            if w.reserved_cpu > w.cpu_count + 1e-9:
                problems.append(f"{w.worker_id}: reserved_cpu {w.reserved_cpu} > cpu_count {w.cpu_count}")
            if w.reserved_ram_mb > w.ram_total_mb:
                problems.append(f"{w.worker_id}: reserved_ram_mb {w.reserved_ram_mb} > ram_total_mb {w.ram_total_mb}")
            if len(w.current_job_ids) > w.max_parallel_jobs:
                problems.append(f"{w.worker_id}: {len(w.current_job_ids)} jobs > parallelism {w.max_parallel_jobs}")
            for job_id in w.current_job_ids:
                holders.setdefault(job_id, []).append(w.worker_id)

        for job in jobs.values():
            if job.attempts > job.max_retries + 1:
                problems.append(f"{job.job_id}: attempts {job.attempts} > max_retries + 1")
            if job.status.is_active != bool(job.assigned_worker_id):
                problems.append(f"{job.job_id}: {job.status.value} with owner {job.assigned_worker_id}")
            owners = holders.get(job.job_id, [])
            if job.status.is_active and owners != [job.assigned_worker_id]:
                problems.append(f"{job.job_id}: held by {owners}, owner {job.assigned_worker_id}")
            if not job.status.is_active and owners:
                problems.append(f"{job.job_id}: {job.status.value} but still held by {owners}")
        return problems
