"""
GridRun Worker Agent — Main Daemon
==================================

The entry point for the worker-side daemon.

Startup sequence:
  1. Load state (worker id) from ~/.gridrun/agent.json
  2. Remove sandbox containers a previous run left behind
  3. Discover host resources and register (exponential backoff)
  4. Heartbeat every 10s from a background thread
  5. Poll for assigned jobs every 5s while a slot is free
  6. For each job: JobRunner in a thread; the slot is held until the
     coordinator has the result
  7. Deliver results spooled by a previous run

Safe shutdown:
  SIGTERM/SIGINT → stop polling → wait for running jobs → cancel the rest
  → short window for reports → stop heartbeats → deregister → exit
"""

from __future__ import annotations
import argparse
import json
import logging
import os
import signal
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    stop_when_event_set,
    wait_exponential,
)

from . import __version__
from .client import (
    ClientError,
    ConflictError,
    CoordinatorClient,
    ProtocolError,
    TransientError,
    UnknownJobError,
    UnknownWorkerError,
)
from .host_discovery import HostInfo, discover_host
from .job_runner import ExecutionReport, JobAssignment, JobRunner
from .sandbox import SandboxRunner
from .spool import ResultSpool
from .telemetry import TelemetryCollector, local_status

log = logging.getLogger("gridrun.agent")

LOG_FORMAT  = "[%(asctime)s] %(levelname)s %(name)s — %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"

# ─── Config ───────────────────────────────────────────────────────────────────

STATE_DIR   = Path.home() / ".gridrun"
CONFIG_PATH = STATE_DIR / "agent.json"

SANDBOX_RECHECK_EVERY = 6   # heartbeats between sandbox availability probes


def load_config(path: Path) -> dict:
    if path.exists():
        try:
            return json.loads(path.read_text())
        except ValueError as e:
            log.warning(f"Ignoring unreadable state file {path}: {e}")
    return {}


def save_config(path: Path, cfg: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(cfg, indent=2))


@dataclass
class AgentConfig:
    api_url:               str
    token:                 Optional[str] = None
    worker_id:             Optional[str] = None
    state_path:            Path = CONFIG_PATH
    work_dir:              Path = STATE_DIR / "work"
    heartbeat_interval:    float = 10.0
    poll_interval:         float = 5.0
    max_parallel_jobs:     Optional[int] = None    # None → half the cores
    register_attempts:     int = 0                 # 0 → retry forever
    backoff_min:           float = 1.0
    backoff_max:           float = 60.0
    shutdown_timeout:      float = 300.0
    report_grace:          float = 30.0
    cancel_check_interval: float = 2.0
    request_timeout:       float = 10.0
    allow_network:         bool = False
    pids_limit:            int = 64
    tmp_size_mb:           int = 64
    image:                 Optional[str] = None


class RegistrationError(Exception):
    """The coordinator could not be reached or refused us; fatal at startup."""


# ─── Worker Agent ─────────────────────────────────────────────────────────────

class WorkerAgent:
    def __init__(
        self,
        config:    AgentConfig,
        client:    Optional[CoordinatorClient] = None,
        sandbox:   Optional[SandboxRunner] = None,
        host:      Optional[HostInfo] = None,
        telemetry: Optional[TelemetryCollector] = None,
    ):
        self.config    = config
        self.client    = client or CoordinatorClient(
            config.api_url, token=config.token, timeout=config.request_timeout,
        )
        self.sandbox   = sandbox or SandboxRunner(
            default_image         = config.image,
            cancel_check_interval = config.cancel_check_interval,
        )
        self.host      = host or discover_host()
        self.telemetry = telemetry or TelemetryCollector()
        self.spool     = ResultSpool(Path(config.work_dir) / "outbox")

        self.worker_id: Optional[str] = config.worker_id or load_config(Path(config.state_path)).get("worker_id")
        self.max_parallel = config.max_parallel_jobs or self.host.default_parallelism()

        self._stop           = threading.Event()   # stop polling
        self._abandon        = threading.Event()   # stop retrying reports
        self._heartbeat_stop = threading.Event()
        self._active: dict[str, tuple[threading.Thread, JobRunner]] = {}
        self._active_lock    = threading.Lock()
        self._sandbox_ready  = True
        self._heartbeats     = 0

    @property
    def active_count(self) -> int:
        with self._active_lock:
            return len(self._active)

    def stop(self):
        self._stop.set()

    # ─── Backoff ──────────────────────────────────────────────────────────────

    def _retrying(self, stop, event: threading.Event) -> Retrying:
        return Retrying(
            retry        = retry_if_exception_type(TransientError),
            wait         = wait_exponential(multiplier=self.config.backoff_min,
                                            min=self.config.backoff_min,
                                            max=self.config.backoff_max),
            stop         = stop | stop_when_event_set(event),
            sleep        = event.wait,
            before_sleep = before_sleep_log(log, logging.WARNING),
            reraise      = True,
        )

    # ─── Registration ─────────────────────────────────────────────────────────

    def _register_payload(self) -> dict:
        return self.host.to_register_payload(self.worker_id, self.max_parallel, __version__)

    def register(self) -> str:
        """Register until accepted. Raises RegistrationError when attempts run out."""
        attempts = self.config.register_attempts
        retrying = self._retrying(stop_after_attempt(attempts) if attempts > 0 else stop_never, self._stop)
        try:
            worker_id = retrying(self.client.register, self._register_payload())
        except TransientError as e:
            raise RegistrationError(f"Coordinator unreachable: {e}") from e
        except ProtocolError as e:
            raise RegistrationError(f"Registration rejected: {e}") from e
        self._adopt_worker_id(worker_id)
        log.info(f"  ✓ Registered as {worker_id} ({self.max_parallel} slot(s))")
        return worker_id

    def _register_once(self):
        try:
            self._adopt_worker_id(self.client.register(self._register_payload()))
            log.info(f"Re-registered as {self.worker_id}")
        except ClientError as e:
            log.warning(f"Re-registration failed: {e}")

    def _adopt_worker_id(self, worker_id: str):
        self.worker_id = worker_id
        self.sandbox.owner = worker_id
        state_path = Path(self.config.state_path)
        cfg = load_config(state_path)
        if cfg.get("worker_id") != worker_id:
            cfg.update({"worker_id": worker_id, "api_url": self.config.api_url})
            save_config(state_path, cfg)

    # ─── Heartbeat ────────────────────────────────────────────────────────────

    def _heartbeat_loop(self):
        while True:
            try:
                self._send_heartbeat()
            except Exception:
                # A bad sample or state write must not silence the worker
                log.exception("Heartbeat cycle failed")
            if self._heartbeat_stop.wait(self.config.heartbeat_interval):
                return

    def _send_heartbeat(self):
        """Tell the coordinator this worker is alive and how loaded it is."""
        self._heartbeats += 1
        if self._heartbeats % SANDBOX_RECHECK_EVERY == 0:
            ready = self.sandbox.is_available()
            if ready != self._sandbox_ready:
                log.warning(f"Sandbox runtime {'available again' if ready else 'became unavailable'}")
            self._sandbox_ready = ready

        metrics = self.telemetry.sample()
        status = local_status(self.active_count, self._sandbox_ready)
        try:
            self.client.heartbeat(metrics.to_heartbeat_payload(self.worker_id, status))
        except UnknownWorkerError:
            log.warning("Coordinator does not know this worker — registering again")
            self._register_once()
        except TransientError as e:
            log.warning(f"Heartbeat failed: {e}")
        except ProtocolError as e:
            log.error(f"Heartbeat rejected: {e}")

    # ─── Job Polling ──────────────────────────────────────────────────────────

    def _fill_slots(self) -> int:
        """Poll while a slot is free. Returns the number of jobs started."""
        started = 0
        while not self._stop.is_set() and self.active_count < self.max_parallel:
            try:
                raw = self.client.poll_for_job(self.worker_id)
            except UnknownWorkerError:
                log.warning("Poll rejected: unknown worker — registering again")
                self._register_once()
                break
            except TransientError as e:
                log.debug(f"Job poll failed — will retry: {e}")
                break
            except ProtocolError as e:
                log.error(f"Job poll rejected: {e}")
                break
            if not raw:
                break
            if self._accept_job(raw):
                started += 1
        return started

    # ─── Job Execution ────────────────────────────────────────────────────────

    def _make_runner(self, job: JobAssignment) -> JobRunner:
        return JobRunner(
            job                   = job,
            worker_id             = self.worker_id,
            sandbox               = self.sandbox,
            work_root             = Path(self.config.work_dir) / "jobs",
            client                = self.client,
            cancel_check_interval = self.config.cancel_check_interval,
            allow_network         = self.config.allow_network,
            pids_limit            = self.config.pids_limit,
            tmp_size_mb           = self.config.tmp_size_mb,
        )

    def _accept_job(self, raw: dict) -> bool:
        """Start a runner thread for an assignment."""
        try:
            job = JobAssignment.from_payload(raw)
        except (TypeError, ValueError) as e:
            log.warning(f"Ignoring malformed assignment: {e}")
            return False

        runner = self._make_runner(job)
        t = threading.Thread(
            target = self._run_and_report,
            args   = (runner,),
            name   = f"job-{job.job_id[-12:]}",
            daemon = True,
        )
        with self._active_lock:
            if job.job_id in self._active:
                return False  # Already running
            self._active[job.job_id] = (t, runner)
        t.start()
        log.info(f"[agent] Job {job.job_id} started ({self.active_count}/{self.max_parallel} slots)")
        return True

    def _run_and_report(self, runner: JobRunner):
        job_id = runner.job.job_id
        started = time.monotonic()
        try:
            try:
                report = runner.run()
            except Exception as e:
                log.exception(f"[agent] Job {job_id} crashed the runner")
                message = f"Runner error: {e}"
                report = ExecutionReport(
                    job_id     = job_id,
                    worker_id  = self.worker_id,
                    stdout     = "",
                    stderr     = message,
                    exit_code  = None,
                    elapsed_ms = int((time.monotonic() - started) * 1000),
                    error      = message,
                )
            try:
                self.spool.save(report)
            except OSError as e:
                log.error(f"[agent] Could not spool result for {job_id}, delivering anyway: {e}")
            self.deliver(report)
        except Exception:
            log.exception(f"[agent] Result for {job_id} could not be reported")
        finally:
            with self._active_lock:
                self._active.pop(job_id, None)

    # ─── Result Reporting ─────────────────────────────────────────────────────

    def deliver(self, report: ExecutionReport) -> bool:
        """
        Submit a spooled report, retrying transient failures until accepted
        or the agent gives up at shutdown. True if the coordinator accepted it.
        """
        retrying = self._retrying(stop_never, self._abandon)
        try:
            retrying(self.client.submit_result, report.to_payload())
        except (ConflictError, UnknownJobError) as e:
            log.warning(f"Result for {report.job_id} rejected, dropping it: {e}")
            self.spool.remove(report.job_id)
            return False
        except TransientError as e:
            log.error(f"Result for {report.job_id} not delivered, kept in spool: {e}")
            return False
        except ProtocolError as e:
            log.error(f"Result for {report.job_id} refused, dropping it: {e}")
            self.spool.remove(report.job_id)
            return False
        self.spool.remove(report.job_id)
        log.info(f"[agent] Result for {report.job_id} delivered")
        return True

    def flush_spool(self) -> int:
        delivered = 0
        for report in self.spool.pending():
            with self._active_lock:
                if report.job_id in self._active:
                    continue
            if self.deliver(report):
                delivered += 1
        return delivered

    # ─── Main Loop ────────────────────────────────────────────────────────────

    def run(self) -> int:
        log.info(f"GridRun worker agent {__version__} starting")
        log.info(f"Coordinator: {self.config.api_url}")

        self.sandbox.owner = self.worker_id
        self.sandbox.cleanup_orphans()
        self._sandbox_ready = self.sandbox.is_available()
        if not self._sandbox_ready:
            log.error("Docker is not available — this worker will report UNHEALTHY")

        try:
            self.register()
        except RegistrationError as e:
            if self._stop.is_set():
                return 0
            log.error(f"{e} — exiting")
            return 1

        heartbeat = threading.Thread(target=self._heartbeat_loop, name="heartbeat", daemon=True)
        heartbeat.start()
        threading.Thread(target=self.flush_spool, name="spool-flush", daemon=True).start()

        log.info(f"Agent ready. Polling for jobs every {self.config.poll_interval}s… (Ctrl+C to stop)")
        while not self._stop.is_set():
            self._fill_slots()
            self._stop.wait(self.config.poll_interval)

        self._shutdown()
        self._heartbeat_stop.set()
        heartbeat.join(timeout=self.config.request_timeout + 1)
        try:
            self.client.deregister(self.worker_id)
        except ClientError as e:
            log.warning(f"Deregistration failed: {e}")
        log.info("Agent exited cleanly.")
        return 0

    def _shutdown(self):
        log.info("Shutting down — waiting for active jobs to finish…")
        self._join_active(self.config.shutdown_timeout)

        with self._active_lock:
            leftover = list(self._active.values())
        if leftover:
            log.warning(f"Cancelling {len(leftover)} job(s) still running")
            for _, runner in leftover:
                runner.cancel("Agent shutting down")
            self._join_active(self.config.report_grace)

        # Reports still retrying stay in the spool for the next start
        self._abandon.set()
        self._join_active(5.0)

    def _join_active(self, timeout: float):
        deadline = time.monotonic() + timeout
        with self._active_lock:
            threads = [t for t, _ in self._active.values()]
        for t in threads:
            t.join(timeout=max(0.0, deadline - time.monotonic()))


# ─── Entry Point ──────────────────────────────────────────────────────────────

def _env_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value else None


def main():
    parser = argparse.ArgumentParser(description="GridRun Worker Agent")
    parser.add_argument("--api-url",   default=os.getenv("GRIDRUN_API_URL", "http://localhost:8080"),
                        help="Coordinator API URL")
    parser.add_argument("--token",     default=os.getenv("GRIDRUN_TOKEN"),
                        help="Bearer token for the coordinator")
    parser.add_argument("--worker-id", default=os.getenv("GRIDRUN_WORKER_ID"),
                        help="Reuse this worker id instead of the stored one")
    parser.add_argument("--state-file", type=Path, default=Path(os.getenv("GRIDRUN_STATE_FILE", CONFIG_PATH)),
                        help=f"Where the worker id is kept (default: {CONFIG_PATH})")
    parser.add_argument("--work-dir",  type=Path, default=Path(os.getenv("GRIDRUN_WORK_DIR", STATE_DIR / "work")),
                        help="Job workspaces and result spool")
    parser.add_argument("--max-parallel", type=int, default=_env_int("GRIDRUN_MAX_PARALLEL_JOBS"),
                        help="Concurrent job slots (default: half the CPU cores)")
    parser.add_argument("--poll",      type=float, default=float(os.getenv("GRIDRUN_POLL_INTERVAL", 5)),
                        help="Job poll interval in seconds (default: 5)")
    parser.add_argument("--heartbeat", type=float, default=float(os.getenv("GRIDRUN_HEARTBEAT_INTERVAL", 10)),
                        help="Heartbeat interval in seconds (default: 10)")
    parser.add_argument("--register-attempts", type=int, default=_env_int("GRIDRUN_REGISTER_ATTEMPTS") or 0,
                        help="Give up registering after N attempts (default: retry forever)")
    parser.add_argument("--shutdown-timeout", type=float, default=300.0,
                        help="Seconds to let running jobs finish on shutdown")
    parser.add_argument("--allow-network", action="store_true",
                        default=os.getenv("GRIDRUN_ALLOW_NETWORK", "").lower() in ("1", "true", "yes"),
                        help="Give job containers network access")
    parser.add_argument("--image",     default=os.getenv("GRIDRUN_IMAGE"),
                        help="Image for bash jobs (default: alpine:latest)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level   = logging.DEBUG if args.verbose else logging.INFO,
        format  = LOG_FORMAT,
        datefmt = LOG_DATEFMT,
    )

    agent = WorkerAgent(AgentConfig(
        api_url           = args.api_url,
        token             = args.token,
        worker_id         = args.worker_id,
        state_path        = args.state_file,
        work_dir          = args.work_dir,
        heartbeat_interval= args.heartbeat,
        poll_interval     = args.poll,
        max_parallel_jobs = args.max_parallel,
        register_attempts = args.register_attempts,
        shutdown_timeout  = args.shutdown_timeout,
        allow_network     = args.allow_network,
        image             = args.image,
    ))

    signal.signal(signal.SIGTERM, lambda s, f: agent.stop())
    signal.signal(signal.SIGINT,  lambda s, f: agent.stop())

    sys.exit(agent.run())


if __name__ == "__main__":
    main()
