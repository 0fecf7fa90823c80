"""
Scheduler Loop
==============

The decision engine. One pass at a time, driven by a fixed tick and by
triggers (registration, heartbeat, submission, result).

Each pass, in order:
  1. Heartbeat sweep   — stale workers go OFFLINE, their jobs are reclaimed;
                         workers with fresh heartbeats come back
  2. Timeout sweep     — RUNNING jobs past timeout_ms, ASSIGNED jobs past
                         timeout_ms + assignment grace are reclaimed and the
                         owner is put into cooldown
  3. Assignment        — due retries are requeued, then each QUEUED job
                         (FIFO) is reserved on the least-loaded eligible worker

A job nobody can fit stays QUEUED. That is the steady state, not an error.

Triggers never run a pass themselves: they wake the loop thread, and any
number of triggers arriving during a pass collapse into one follow-up pass.
"""

from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .config import CoordinatorConfig
from .errors import ConflictError, CoordinatorError
from .models import Job, JobStatus, Worker, WorkerStatus
from .registry import Registry

log = logging.getLogger(__name__)

HEARTBEAT_TIMEOUT_REASON = "Worker offline: heartbeat timeout"
EXECUTION_TIMEOUT_REASON = "Execution timeout"
PICKUP_TIMEOUT_REASON    = "Assignment not picked up before timeout"


@dataclass
class PassReport:
    trigger:          str
    started_at:       float
    workers_offlined: list[str] = field(default_factory=list)
    workers_revived:  list[str] = field(default_factory=list)
    reclaimed:        list[str] = field(default_factory=list)   # heartbeat sweep
    timed_out:        list[str] = field(default_factory=list)   # timeout sweep
    promoted:         int = 0
    assigned:         dict[str, str] = field(default_factory=dict)  # job_id → worker_id
    still_queued:     int = 0
    duration_s:       float = 0.0

    @property
    def changed(self) -> bool:
        return bool(
            self.workers_offlined or self.workers_revived or self.reclaimed
            or self.timed_out or self.promoted or self.assigned
        )


def load_score(worker: Worker) -> float:
    """
    Composite load, lower is better. Live CPU usage dominates; reservation
    saturation keeps packing even when agents report stale usage.
    """
    cpu_count = worker.cpu_count or 1
    ram_total = worker.ram_total_mb or 1
    cpu_saturation = worker.reserved_cpu / cpu_count * 100
    ram_saturation = worker.reserved_ram_mb / ram_total * 100
    cpu_headroom = max(worker.free_cpu, 0.1)

    return (
        worker.cpu_usage_percent * 0.6
        + cpu_saturation * 0.3
        + ram_saturation * 0.1
        + (1 / cpu_headroom) * 5
    )


class Scheduler:
    def __init__(
        self,
        registry: Registry,
        config:   Optional[CoordinatorConfig] = None,
        clock:    Optional[Callable[[], float]] = None,
    ):
        self.registry = registry
        self.config   = config or registry.config
        self.clock    = clock or registry.clock

        self._pass_lock = threading.Lock()
        self._wake      = threading.Event()
        self._stop      = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._pending_triggers: list[str] = []
        self._trigger_lock = threading.Lock()
        self.last_report: Optional[PassReport] = None

    # ─── Loop control ─────────────────────────────────────────────────────────

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="gridrun-scheduler", daemon=True)
        self._thread.start()
        log.info(f"[scheduler] Loop started — tick every {self.config.scheduler_interval_s}s")

    def stop(self, timeout: float = 10.0):
        self._stop.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        log.info("[scheduler] Loop stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def trigger(self, reason: str):
        """Ask for a pass soon. Coalesced; never runs a pass on the caller's thread."""
        with self._trigger_lock:
            self._pending_triggers.append(reason)
        self._wake.set()

    def _take_triggers(self) -> str:
        with self._trigger_lock:
            reasons, self._pending_triggers = self._pending_triggers, []
        if not reasons:
            return "tick"
        return ",".join(sorted(set(reasons)))

    def _loop(self):
        while not self._stop.is_set():
            self._wake.wait(timeout=self.config.scheduler_interval_s)
            if self._stop.is_set():
                break
            self._wake.clear()
            try:
                self.run_pass(self._take_triggers())
            except Exception as e:
                # One bad pass must not kill the loop; the next tick retries
                log.exception(f"[scheduler] Pass failed: {e}")

    # ─── Pass ─────────────────────────────────────────────────────────────────

    def run_pass(self, trigger: str = "manual") -> PassReport:
        with self._pass_lock:
            report = PassReport(trigger=trigger, started_at=self.clock())
            self._sweep_heartbeats(report)
            self._sweep_timeouts(report)
            self._assign(report)
            report.duration_s = self.clock() - report.started_at
            self.last_report = report

        if report.changed:
            log.info(
                f"[scheduler] Pass ({trigger}): {len(report.workers_offlined)} offline, "
                f"{len(report.reclaimed) + len(report.timed_out)} reclaimed, "
                f"{len(report.assigned)} assigned, {report.still_queued} queued"
            )
        else:
            log.debug(f"[scheduler] Pass ({trigger}): no changes, {report.still_queued} queued")
        return report

    def _sweep_heartbeats(self, report: PassReport):
        now = self.clock()
        cutoff = now - self.config.heartbeat_timeout_s

        for worker in self.registry.list_workers():
            try:
                if worker.last_heartbeat_at < cutoff:
                    if worker.status != WorkerStatus.OFFLINE or worker.current_job_ids:
                        reclaimed = self.registry.mark_offline(
                            worker.worker_id, HEARTBEAT_TIMEOUT_REASON, stale_before=cutoff,
                        )
                        if reclaimed is not None:
                            report.workers_offlined.append(worker.worker_id)
                            report.reclaimed.extend(reclaimed)
                elif worker.status in (WorkerStatus.OFFLINE, WorkerStatus.UNHEALTHY):
                    if self.registry.revive_worker(worker.worker_id, fresh_after=cutoff):
                        report.workers_revived.append(worker.worker_id)
            except CoordinatorError as e:
                log.warning(f"[scheduler] Heartbeat sweep skipped {worker.worker_id}: {e}")

    def _timed_out(self, job: Job, now: float) -> Optional[str]:
        limit = job.timeout_ms / 1000.0
        if job.status == JobStatus.RUNNING and job.started_at is not None:
            if now - job.started_at > limit:
                return EXECUTION_TIMEOUT_REASON
        elif job.status == JobStatus.ASSIGNED and job.assigned_at is not None:
            if now - job.assigned_at > limit + self.config.assignment_grace_s:
                return PICKUP_TIMEOUT_REASON
        return None

    def _sweep_timeouts(self, report: PassReport):
        now = self.clock()
        for job in self.registry.list_jobs([JobStatus.RUNNING, JobStatus.ASSIGNED]):
            reason = self._timed_out(job, now)
            if reason is None:
                continue
            try:
                self.registry.release(
                    job.job_id,
                    reason,
                    expected_status = job.status,
                    penalize        = True,
                    retry_status    = JobStatus.TIMED_OUT_RETRYING,
                )
                report.timed_out.append(job.job_id)
            except ConflictError:
                # Result or cancel landed first — nothing to reclaim
                log.debug(f"[scheduler] Job {job.job_id} changed before timeout reclaim")

    def _eligible(self, worker: Worker, job: Job, now: float) -> bool:
        return (
            worker.accepts_work(now)
            and worker.has_headroom(job.required_cpu, job.required_ram_mb)
            and worker.ram_free_mb >= job.required_ram_mb
            and worker.cpu_usage_percent <= self.config.cpu_overload_percent
        )

    def _assign(self, report: PassReport):
        report.promoted = self.registry.promote_retries()

        queued = sorted(
            self.registry.list_jobs([JobStatus.QUEUED]),
            key=lambda j: (j.queued_at if j.queued_at is not None else j.submitted_at, j.sequence),
        )
        for job in queued:
            now = self.clock()
            candidates = sorted(
                (w for w in self.registry.list_workers() if self._eligible(w, job, now)),
                key=lambda w: (
                    w.worker_id == job.last_worker_id,  # prefer a different worker on retry
                    load_score(w),
                    w.registered_at,
                    w.worker_id,
                ),
            )
            for worker in candidates:
                try:
                    self.registry.reserve(job.job_id, worker.worker_id)
                except ConflictError as e:
                    log.debug(f"[scheduler] Reservation lost for {job.job_id} on {worker.worker_id}: {e}")
                    continue
                report.assigned[job.job_id] = worker.worker_id
                break
            else:
                report.still_queued += 1
                log.debug(
                    f"[scheduler] No eligible worker for {job.job_id} "
                    f"({job.required_cpu} CPU, {job.required_ram_mb} MB) — stays QUEUED"
                )
