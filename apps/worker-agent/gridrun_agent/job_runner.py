"""
Job Runner
==========

Runs one assigned job end-to-end on this worker.

  1. Create a job-scoped workspace (mode 0700) under the agent's work dir
  2. Download the job's input file, if any, and unpack zip/tar archives
     (members escaping the workspace are rejected)
  3. Run the command in the sandbox with the job's limits
  4. Build the execution report for the coordinator
  5. Remove the workspace, whatever happened

While the command runs, a watcher thread asks the coordinator every
`cancel_check_interval` seconds whether the job should stop, and forwards
buffered output in small batches. The sandbox's pipe readers only append to
the buffer, so a slow coordinator never stalls them.

Local failures (workspace, download, sandbox) come back as a failed report
rather than an exception.
"""

from __future__ import annotations
import logging
import os
import shutil
import tarfile
import tempfile
import threading
import time
import zipfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import requests

from .client import ClientError, CoordinatorClient, TransientError, UnknownJobError
from .sandbox import SandboxLimits, SandboxRunner, SandboxUnavailableError

log = logging.getLogger(__name__)

OUTPUT_FLUSH_INTERVAL = 1.0   # seconds between live-output batches


class InputError(Exception):
    """The job's input file could not be fetched or unpacked."""


# ─── Assignment & Report ──────────────────────────────────────────────────────

@dataclass
class JobAssignment:
    """What the coordinator hands out on poll."""
    job_id:          str
    command:         str
    timeout_ms:      int
    required_cpu:    float = 1.0
    required_ram_mb: int = 256
    file_url:        Optional[str] = None
    filename:        Optional[str] = None
    runtime:         str = "bash"
    attempts:        int = 0

    @classmethod
    def from_payload(cls, raw: dict) -> "JobAssignment":
        job_id = raw.get("job_id") or raw.get("id")
        if not job_id:
            raise ValueError(f"Job assignment missing job_id: {raw}")
        return cls(
            job_id          = job_id,
            command         = raw.get("command") or "",
            timeout_ms      = int(raw.get("timeout_ms") or 300_000),
            required_cpu    = float(raw.get("required_cpu") or 1.0),
            required_ram_mb = int(raw.get("required_ram_mb") or 256),
            file_url        = raw.get("file_url") or None,
            filename        = raw.get("filename") or None,
            runtime         = raw.get("runtime") or "bash",
            attempts        = int(raw.get("attempts") or 0),
        )


@dataclass
class ExecutionReport:
    job_id:     str
    worker_id:  str
    stdout:     str
    stderr:     str
    exit_code:  Optional[int]
    elapsed_ms: int
    timed_out:  bool = False
    error:      Optional[str] = None

    def to_payload(self) -> dict:
        return asdict(self)

    @classmethod
    def from_payload(cls, raw: dict) -> "ExecutionReport":
        return cls(
            job_id     = raw["job_id"],
            worker_id  = raw["worker_id"],
            stdout     = raw.get("stdout", ""),
            stderr     = raw.get("stderr", ""),
            exit_code  = raw.get("exit_code"),
            elapsed_ms = int(raw.get("elapsed_ms", 0)),
            timed_out  = bool(raw.get("timed_out", False)),
            error      = raw.get("error"),
        )


# ─── Job Runner ───────────────────────────────────────────────────────────────

class JobRunner:
    def __init__(
        self,
        job:                   JobAssignment,
        worker_id:             str,
        sandbox:               SandboxRunner,
        work_root:             Path,
        client:                Optional[CoordinatorClient] = None,
        cancel_check_interval: float = 2.0,
        allow_network:         bool = False,
        pids_limit:            int = 64,
        tmp_size_mb:           int = 64,
        download_timeout:      float = 300.0,
        stream_output:         bool = True,
    ):
        self.job                   = job
        self.worker_id             = worker_id
        self.sandbox               = sandbox
        self.work_root             = Path(work_root)
        self.client                = client
        self.cancel_check_interval = cancel_check_interval
        self.allow_network         = allow_network
        self.pids_limit            = pids_limit
        self.tmp_size_mb           = tmp_size_mb
        self.download_timeout      = download_timeout
        self.stream_output         = stream_output and client is not None

        self._cancel        = threading.Event()
        self._cancel_reason: Optional[str] = None
        self._done          = threading.Event()
        self._pending_output: list[str] = []
        self._output_lock   = threading.Lock()
        self._last_flush    = 0.0

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self, reason: str = "Cancelled"):
        """Stop the job; the sandbox kills the container at its next check."""
        if not self._cancel.is_set():
            self._cancel_reason = reason
            self._cancel.set()

    # ─── Run ──────────────────────────────────────────────────────────────────

    def run(self) -> ExecutionReport:
        job = self.job
        log.info(f"[runner] Starting job {job.job_id} (attempt {job.attempts + 1})")
        started = time.monotonic()

        workspace = None
        watcher = None
        try:
            try:
                workspace = self._create_workspace()
            except OSError as e:
                log.error(f"[runner] Job {job.job_id} workspace failed: {e}")
                return self._error_report(f"Workspace setup failed: {e}", started)

            if self.client is not None:
                watcher = threading.Thread(
                    target = self._watch,
                    name   = f"watch-{job.job_id[:12]}",
                    daemon = True,
                )
                watcher.start()

            if job.file_url:
                try:
                    self._fetch_input(job.file_url, workspace)
                except InputError as e:
                    log.error(f"[runner] Job {job.job_id} input failed: {e}")
                    return self._error_report(f"Input download failed: {e}", started)

            if self._cancel.is_set():
                return self._error_report(self._cancel_reason or "Cancelled", started)

            limits = SandboxLimits(
                timeout_ms  = job.timeout_ms,
                memory_mb   = job.required_ram_mb,
                cpus        = job.required_cpu,
                pids_limit  = self.pids_limit,
                network     = self.allow_network,
                tmp_size_mb = self.tmp_size_mb,
            )
            try:
                result = self.sandbox.run(
                    job.command,
                    str(workspace),
                    limits,
                    job_id        = job.job_id,
                    runtime       = job.runtime,
                    should_cancel = self._cancel.is_set,
                    on_output     = self._on_output if self.stream_output else None,
                )
            except SandboxUnavailableError as e:
                log.error(f"[runner] Sandbox unavailable for {job.job_id}: {e}")
                return self._error_report(f"Sandbox unavailable: {e}", started)

            report = ExecutionReport(
                job_id     = job.job_id,
                worker_id  = self.worker_id,
                stdout     = result.stdout,
                stderr     = result.stderr,
                exit_code  = result.exit_code,
                elapsed_ms = result.elapsed_ms,
                timed_out  = result.timed_out,
                error      = (self._cancel_reason or "Cancelled") if result.cancelled else None,
            )
            log.info(
                f"[runner] Job {job.job_id} → exit {report.exit_code}"
                f"{' (timed out)' if report.timed_out else ''} in {report.elapsed_ms}ms"
            )
            return report
        finally:
            self._done.set()
            if watcher is not None:
                watcher.join(timeout=self.cancel_check_interval + 1)
            self._flush_output(force=True)
            if workspace is not None:
                self._remove_workspace(workspace)

    def _error_report(self, message: str, started: float) -> ExecutionReport:
        return ExecutionReport(
            job_id     = self.job.job_id,
            worker_id  = self.worker_id,
            stdout     = "",
            stderr     = message,
            exit_code  = None,
            elapsed_ms = int((time.monotonic() - started) * 1000),
            error      = message,
        )

    # ─── Workspace ────────────────────────────────────────────────────────────

    def _create_workspace(self) -> Path:
        self.work_root.mkdir(parents=True, exist_ok=True)
        workspace = Path(tempfile.mkdtemp(prefix=f"job-{self.job.job_id[-12:]}-", dir=self.work_root))
        # Owner only, so other local users cannot read job files
        os.chmod(workspace, 0o700)
        return workspace

    def _remove_workspace(self, workspace: Path):
        shutil.rmtree(workspace, ignore_errors=True)
        if workspace.exists():
            log.error(f"[runner] Could not remove workspace {workspace}")

    # ─── Input ────────────────────────────────────────────────────────────────

    def _fetch_input(self, url: str, workspace: Path):
        """Download the input file into the workspace; unpack archives in place."""
        filename = _safe_filename(self.job.filename or os.path.basename(urlparse(url).path))
        dest = workspace / filename
        log.info(f"[runner] Downloading input {filename}…")
        try:
            with requests.get(url, stream=True, timeout=(10, self.download_timeout)) as resp:
                resp.raise_for_status()
                with open(dest, "wb") as fh:
                    for chunk in resp.iter_content(chunk_size=64 * 1024):
                        if chunk:
                            fh.write(chunk)
        except requests.RequestException as e:
            raise InputError(str(e)) from e
        except OSError as e:
            raise InputError(f"Cannot write {filename}: {e}") from e

        try:
            if zipfile.is_zipfile(dest):
                _extract_zip(dest, workspace)
                dest.unlink()
            elif tarfile.is_tarfile(dest):
                _extract_tar(dest, workspace)
                dest.unlink()
        except (zipfile.BadZipFile, tarfile.TarError, OSError) as e:
            raise InputError(f"Cannot unpack {filename}: {e}") from e
        log.info(f"[runner] Input ready in {workspace}")

    # ─── Coordinator side channels ────────────────────────────────────────────

    def _watch(self):
        while not self._done.wait(self.cancel_check_interval):
            self._flush_output()
            if not self._cancel.is_set():
                self._check_cancel()

    def _check_cancel(self):
        try:
            if self.client.check_cancel(self.job.job_id, self.worker_id):
                log.warning(f"[runner] Coordinator asked to stop {self.job.job_id}")
                self.cancel("Cancelled by coordinator")
        except UnknownJobError:
            log.warning(f"[runner] Job {self.job.job_id} no longer known — stopping")
            self.cancel("Job no longer known to coordinator")
        except TransientError as e:
            log.debug(f"[runner] Cancel check failed: {e}")
        except ClientError as e:
            log.warning(f"[runner] Cancel check rejected: {e}")

    def _on_output(self, stream: str, text: str):
        # Called on the sandbox's pipe-reader threads: buffer only
        with self._output_lock:
            self._pending_output.append(text)

    def _flush_output(self, force: bool = False):
        if not self.stream_output:
            return
        with self._output_lock:
            now = time.monotonic()
            if not self._pending_output or (not force and now - self._last_flush < OUTPUT_FLUSH_INTERVAL):
                return
            data = "".join(self._pending_output)
            self._pending_output.clear()
            self._last_flush = now
        try:
            self.client.stream_output(self.job.job_id, self.worker_id, data)
        except ClientError as e:
            # Live output is best-effort; the final report carries the full text
            log.debug(f"[runner] Output stream for {self.job.job_id} dropped: {e}")


# ─── Archive helpers ──────────────────────────────────────────────────────────

def _safe_filename(name: str) -> str:
    name = os.path.basename((name or "").replace("\\", "/")).strip()
    if name in ("", ".", ".."):
        return "input"
    return name


def _inside(root: Path, member: str) -> bool:
    root = root.resolve()
    target = (root / member).resolve()
    return target == root or root in target.parents


def _extract_zip(archive: Path, dest: Path):
    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            if not _inside(dest, info.filename):
                raise InputError(f"Archive member escapes workspace: {info.filename}")
        zf.extractall(dest)


def _extract_tar(archive: Path, dest: Path):
    with tarfile.open(archive) as tf:
        for member in tf.getmembers():
            if not _inside(dest, member.name):
                raise InputError(f"Archive member escapes workspace: {member.name}")
            if member.isdev():
                raise InputError(f"Archive contains a device file: {member.name}")
            if member.issym() or member.islnk():
                link_base = Path(member.name).parent if member.issym() else Path()
                if os.path.isabs(member.linkname) or not _inside(dest, str(link_base / member.linkname)):
                    raise InputError(f"Archive link escapes workspace: {member.name}")
        if hasattr(tarfile, "data_filter"):
            tf.extractall(dest, filter="data")
        else:
            tf.extractall(dest)
