"""
Coordination Protocol
=====================

`Coordinator` is the request/response surface agents and clients call.
Every method takes plain values and returns JSON-ready dicts, so any
transport (HTTP handler, RPC server, test harness) can sit in front of it.

  RegisterWorker  register_worker(hostname, os, cpu_count, ram_total_mb, worker_id?)
  Heartbeat       heartbeat(worker_id, cpu_usage_percent, ram_free_mb, ram_total_mb?, status?)
  SubmitJob       submit_job(command, file_url, filename, …)
  PollForJob      poll_for_job(worker_id)          → job dict or None
  SubmitResult    submit_result(job_id, worker_id, stdout, stderr, exit_code, elapsed_ms, timed_out)
  GetJobStatus    get_job_status(job_id)
  CancelJob       cancel_job(job_id)

plus deregister_worker, check_cancel, stream_output, list_workers, list_jobs.

Polling never assigns: it only hands out jobs the scheduler already
ASSIGNED to the caller, and marks them RUNNING on delivery.
"""

from __future__ import annotations
import logging
from typing import Optional

from .config import CoordinatorConfig
from .errors import ConflictError, InvalidRequestError
from .models import JobResult, JobStatus, WorkerStatus
from .registry import Registry
from .scheduler import EXECUTION_TIMEOUT_REASON, Scheduler
from .store import MemoryStore, RecordStore, SQLiteStore

log = logging.getLogger(__name__)

# Fields an agent needs to run a job; the rest of the record stays server-side
ASSIGNMENT_FIELDS = (
    "job_id", "command", "file_url", "filename", "runtime",
    "required_cpu", "required_ram_mb", "timeout_ms", "attempts",
)


class Coordinator:
    def __init__(self, registry: Registry, scheduler: Optional[Scheduler] = None):
        self.registry  = registry
        self.scheduler = scheduler or Scheduler(registry)

    @classmethod
    def create(
        cls,
        config: Optional[CoordinatorConfig] = None,
        store:  Optional[RecordStore] = None,
        **registry_kwargs,
    ) -> "Coordinator":
        """Build store → registry → scheduler from config and load persisted state."""
        config = config or CoordinatorConfig()
        if store is None:
            store = SQLiteStore(config.db_path) if config.db_path else MemoryStore()
        registry = Registry(store, config, **registry_kwargs)
        registry.load()
        return cls(registry)

    def start(self):
        self.scheduler.start()

    def stop(self):
        self.scheduler.stop()
        self.registry.store.close()

    # ─── Workers ──────────────────────────────────────────────────────────────

    def register_worker(
        self,
        hostname:          str,
        os:                str,
        cpu_count:         float,
        ram_total_mb:      int,
        worker_id:         Optional[str] = None,
        max_parallel_jobs: Optional[int] = None,
        version:           Optional[str] = None,
    ) -> dict:
        worker_id = self.registry.register_worker(
            hostname          = hostname,
            os_name           = os,
            cpu_count         = cpu_count,
            ram_total_mb      = ram_total_mb,
            worker_id         = worker_id,
            max_parallel_jobs = max_parallel_jobs,
            version           = version,
        )
        self.scheduler.trigger("registration")
        return {"worker_id": worker_id}

    def heartbeat(
        self,
        worker_id:         str,
        cpu_usage_percent: float,
        ram_free_mb:       int,
        ram_total_mb:      Optional[int] = None,
        status:            Optional[str] = None,
    ) -> dict:
        worker = self.registry.record_heartbeat(
            worker_id, cpu_usage_percent, ram_free_mb, ram_total_mb, status,
        )
        self.scheduler.trigger("heartbeat")
        return {
            "worker_id":      worker.worker_id,
            "status":         worker.status.value,
            "cooldown_until": worker.cooldown_until,
        }

    def deregister_worker(self, worker_id: str) -> dict:
        reclaimed = self.registry.deregister_worker(worker_id)
        if reclaimed:
            self.scheduler.trigger("deregistration")
        return {"worker_id": worker_id, "reclaimed": reclaimed}

    def list_workers(self, status: Optional[str] = None) -> list[dict]:
        try:
            statuses = [WorkerStatus(status)] if status else None
        except ValueError:
            raise InvalidRequestError(f"Unknown worker status {status!r}")
        return [w.to_dict() for w in self.registry.list_workers(statuses)]

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
    ) -> dict:
        job_id = self.registry.submit_job(
            command         = command,
            file_url        = file_url,
            filename        = filename,
            required_cpu    = required_cpu,
            required_ram_mb = required_ram_mb,
            timeout_ms      = timeout_ms,
            max_retries     = max_retries,
            runtime         = runtime,
        )
        self.scheduler.trigger("job-submitted")
        return {"job_id": job_id, "status": JobStatus.QUEUED.value}

    def poll_for_job(self, worker_id: str) -> Optional[dict]:
        self.registry.get_worker(worker_id)  # UnknownWorkerError for strangers

        waiting = sorted(
            self.registry.jobs_for_worker(worker_id, [JobStatus.ASSIGNED]),
            key=lambda j: (j.assigned_at or 0.0, j.sequence),
        )
        for job in waiting:
            try:
                job = self.registry.mark_running(job.job_id, worker_id)
            except ConflictError:
                continue  # reclaimed or cancelled since we listed it
            return {name: getattr(job, name) for name in ASSIGNMENT_FIELDS}
        return None

    def submit_result(
        self,
        job_id:     str,
        worker_id:  str,
        stdout:     str = "",
        stderr:     str = "",
        exit_code:  Optional[int] = None,
        elapsed_ms: int = 0,
        timed_out:  bool = False,
        error:      Optional[str] = None,
    ) -> dict:
        """
        Record the outcome of a run. Raises ConflictError if the job is no
        longer ASSIGNED/RUNNING on this worker.
        """
        result = JobResult(
            stdout     = stdout or "",
            stderr     = stderr or "",
            exit_code  = exit_code,
            elapsed_ms = int(elapsed_ms or 0),
            timed_out  = bool(timed_out),
            error      = error,
        )
        if result.succeeded:
            job = self.registry.complete(job_id, worker_id, result)
        else:
            job = self.registry.fail(job_id, worker_id, result, self._failure_reason(result))

        self.scheduler.trigger("job-finished")
        return {"job_id": job.job_id, "status": job.status.value, "attempts": job.attempts}

    @staticmethod
    def _failure_reason(result: JobResult) -> str:
        if result.timed_out:
            return f"{EXECUTION_TIMEOUT_REASON} after {result.elapsed_ms}ms"
        if result.error:
            return result.error
        return f"Command exited with code {result.exit_code}"

    def get_job_status(self, job_id: str) -> dict:
        return self.registry.get_job(job_id).to_dict()

    def list_jobs(self, status: Optional[str] = None) -> list[dict]:
        try:
            statuses = [JobStatus(status)] if status else None
        except ValueError:
            raise InvalidRequestError(f"Unknown job status {status!r}")
        return [j.to_dict() for j in self.registry.list_jobs(statuses)]

    def cancel_job(self, job_id: str) -> dict:
        job = self.registry.cancel(job_id)
        self.scheduler.trigger("job-cancelled")
        return {"job_id": job.job_id, "status": job.status.value}

    def check_cancel(self, job_id: str, worker_id: str) -> dict:
        return {"job_id": job_id, "cancel_requested": self.registry.should_stop(job_id, worker_id)}

    def stream_output(self, job_id: str, worker_id: str, data: str) -> dict:
        self.registry.append_output(job_id, worker_id, data)
        return {"ok": True}
