"""
Sandbox Runner
==============

Executes one shell command inside a throwaway Docker container and returns
a structured result. Knows nothing about jobs or scheduling.

Security guarantees:
  - Fresh container per run, --rm, unique name, labelled for orphan cleanup
  - --read-only:      read-only root FS
  - --tmpfs:          small, size-capped, noexec /tmp and /run
  - --volume:         the run's workspace is the only writable host path
  - --network=none:   no network unless the limits explicitly allow it
  - --memory / --memory-swap / --cpus / --pids-limit from the limits
  - --cap-drop=ALL + no-new-privileges: no capabilities, no escalation
  - --user:           the agent's own uid:gid, never root

Watchdog:
  - Hard wall-clock kill at timeout_ms → timed_out=True, exit code 124
  - Cancellation probe between waits → exit code 130
  - `docker rm -f` in a finally block on every exit path
"""

from __future__ import annotations
import logging
import os
import shutil
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

log = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE   = 124   # conventional timeout(1) exit status
CANCELLED_EXIT_CODE = 130   # 128 + SIGINT
DOCKER_ERROR_EXIT   = 125   # docker run itself failed

MANAGED_LABEL = "gridrun.managed=true"

RUNTIME_IMAGES = {
    "bash":   "alpine:latest",
    "sh":     "alpine:latest",
    "python": "python:3.11-slim",
    "node":   "node:22-alpine",
    "cpp":    "gcc:14",
    "java":   "eclipse-temurin:21-jdk-alpine",
    "dotnet": "mcr.microsoft.com/dotnet/sdk:8.0-alpine",
}

OutputCallback = Callable[[str, str], None]   # (stream name, text)


class SandboxUnavailableError(RuntimeError):
    """The container runtime cannot run anything (missing CLI, daemon down, …)."""


# ─── Limits & Result ──────────────────────────────────────────────────────────

@dataclass
class SandboxLimits:
    timeout_ms:  int
    memory_mb:   int   = 512
    cpus:        float = 1.0
    pids_limit:  int   = 64
    network:     bool  = False
    tmp_size_mb: int   = 64
    run_size_mb: int   = 8


@dataclass
class SandboxResult:
    exit_code:  int
    stdout:     str
    stderr:     str
    elapsed_ms: int
    timed_out:  bool = False
    cancelled:  bool = False


# ─── Output capture ───────────────────────────────────────────────────────────

class _StreamReader(threading.Thread):
    """Drains one pipe so the child never blocks; keeps the last `limit` bytes."""

    def __init__(self, stream, name: str, limit: int, on_output: Optional[OutputCallback]):
        super().__init__(name=f"sandbox-{name}", daemon=True)
        self.stream    = stream
        self.stream_name = name
        self.limit     = limit
        self.on_output = on_output
        self.truncated = False
        self._buf      = bytearray()

    def run(self):
        try:
            for chunk in iter(lambda: self.stream.read1(8192), b""):
                self._buf.extend(chunk)
                if len(self._buf) > self.limit:
                    del self._buf[: len(self._buf) - self.limit]
                    self.truncated = True
                if self.on_output is not None:
                    try:
                        self.on_output(self.stream_name, chunk.decode("utf-8", errors="replace"))
                    except Exception as e:
                        log.debug(f"[sandbox] Output callback failed: {e}")
        except (OSError, ValueError) as e:
            log.debug(f"[sandbox] {self.stream_name} reader stopped: {e}")

    @property
    def text(self) -> str:
        return self._buf.decode("utf-8", errors="replace")


# ─── Runner ───────────────────────────────────────────────────────────────────

class SandboxRunner:
    def __init__(
        self,
        docker_bin:            str = "docker",
        images:                Optional[dict] = None,
        default_image:         Optional[str] = None,
        max_output_bytes:      int = 1_000_000,
        cancel_check_interval: float = 2.0,
        run_as_host_user:      bool = True,
        owner:                 Optional[str] = None,
    ):
        self.docker_bin            = docker_bin
        self.images                = dict(RUNTIME_IMAGES, **(images or {}))
        if default_image:
            self.images["bash"] = self.images["sh"] = default_image
        self.max_output_bytes      = max_output_bytes
        self.cancel_check_interval = cancel_check_interval
        self.run_as_host_user      = run_as_host_user
        self.owner                 = owner   # worker id, labels containers for cleanup

    def image_for(self, runtime: Optional[str]) -> str:
        return self.images.get((runtime or "bash").lower(), self.images["bash"])

    def is_available(self) -> bool:
        """True if the docker CLI exists and the engine answers."""
        if shutil.which(self.docker_bin) is None:
            return False
        try:
            result = subprocess.run(
                [self.docker_bin, "info", "--format", "{{.ServerVersion}}"],
                capture_output=True, text=True, timeout=15,
            )
        except (OSError, subprocess.SubprocessError) as e:
            log.warning(f"[sandbox] docker info failed: {e}")
            return False
        if result.returncode != 0:
            log.warning(f"[sandbox] Docker engine unavailable: {result.stderr.strip()[:200]}")
            return False
        return True

    def build_args(
        self,
        name:    str,
        command: str,
        workdir: str,
        limits:  SandboxLimits,
        image:   str,
        job_id:  str,
    ) -> list[str]:
        args = [
            self.docker_bin, "run",
            "--rm",                                         # Delete container on exit
            "--name", name,
            "--label", MANAGED_LABEL,
            "--label", f"gridrun.job={job_id}",
        ]
        if self.owner:
            args += ["--label", f"gridrun.worker={self.owner}"]
        args += [
            "--read-only",                                  # Read-only root FS
            "--cap-drop", "ALL",                            # Drop all capabilities
            "--security-opt", "no-new-privileges",
            "--network", "bridge" if limits.network else "none",
            "--memory", f"{limits.memory_mb}m",             # Hard memory limit
            "--memory-swap", f"{limits.memory_mb}m",        # Disable swap
            "--cpus", f"{limits.cpus:g}",
            "--pids-limit", str(limits.pids_limit),         # No fork bombs
            "--tmpfs", f"/tmp:rw,noexec,nosuid,size={limits.tmp_size_mb}m",
            "--tmpfs", f"/run:rw,noexec,nosuid,size={limits.run_size_mb}m",
            "--volume", f"{workdir}:/workspace:rw",         # The only writable host path
            "--workdir", "/workspace",
            "--env", "HOME=/workspace",
        ]
        if self.run_as_host_user and hasattr(os, "getuid"):
            args += ["--user", f"{os.getuid()}:{os.getgid()}"]
        args += [image, "/bin/sh", "-c", command]
        return args

    def run(
        self,
        command:       str,
        workdir:       str,
        limits:        SandboxLimits,
        *,
        job_id:        str,
        runtime:       Optional[str] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
        on_output:     Optional[OutputCallback] = None,
    ) -> SandboxResult:
        """
        Run `command` with `workdir` mounted at /workspace.
        Raises SandboxUnavailableError if no container could be started.
        """
        if shutil.which(self.docker_bin) is None:
            raise SandboxUnavailableError(f"'{self.docker_bin}' CLI not found in PATH")

        safe_id = "".join(c for c in job_id if c.isalnum() or c in "-_")[:24]
        name = f"gridrun-{safe_id}-{uuid.uuid4().hex[:8]}"
        args = self.build_args(name, command, workdir, limits, self.image_for(runtime), job_id)

        log.info(f"[sandbox] docker run {name} (timeout {limits.timeout_ms}ms)")
        log.debug(f"[sandbox] cmd: {' '.join(args)}")

        timed_out = cancelled = False
        proc = None
        readers: list[_StreamReader] = []
        start = time.monotonic()
        try:
            try:
                proc = subprocess.Popen(
                    args,
                    stdin  = subprocess.DEVNULL,
                    stdout = subprocess.PIPE,
                    stderr = subprocess.PIPE,
                )
            except OSError as e:
                raise SandboxUnavailableError(f"Cannot start docker: {e}") from e

            readers = [
                _StreamReader(proc.stdout, "stdout", self.max_output_bytes, on_output),
                _StreamReader(proc.stderr, "stderr", self.max_output_bytes, on_output),
            ]
            for reader in readers:
                reader.start()

            deadline = start + limits.timeout_ms / 1000.0
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    timed_out = True
                    log.warning(f"[sandbox] {name} exceeded {limits.timeout_ms}ms — killing")
                    self._kill(name, proc)
                    break
                try:
                    proc.wait(timeout=min(remaining, self.cancel_check_interval))
                    break
                except subprocess.TimeoutExpired:
                    pass
                if should_cancel is not None and should_cancel():
                    cancelled = True
                    log.warning(f"[sandbox] {name} cancelled — killing")
                    self._kill(name, proc)
                    break

            try:
                proc.wait(timeout=10)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
            for reader in readers:
                reader.join(timeout=5)
        finally:
            if proc is not None and proc.poll() is None:
                proc.kill()
            self._teardown(name)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        stdout, stderr = readers[0].text, readers[1].text

        if timed_out:
            exit_code = TIMEOUT_EXIT_CODE
            stderr += f"\n[TIMEOUT] Command exceeded {limits.timeout_ms}ms and was killed"
        elif cancelled:
            exit_code = CANCELLED_EXIT_CODE
            stderr += "\n[CANCELLED] Job was cancelled"
        else:
            exit_code = proc.returncode
            if exit_code == DOCKER_ERROR_EXIT and _is_engine_error(stderr):
                raise SandboxUnavailableError(f"Docker could not start the container: {stderr.strip()[-300:]}")

        log.info(f"[sandbox] {name} finished — exit {exit_code} in {elapsed_ms}ms")
        return SandboxResult(
            exit_code  = exit_code,
            stdout     = stdout,
            stderr     = stderr,
            elapsed_ms = elapsed_ms,
            timed_out  = timed_out,
            cancelled  = cancelled,
        )

    def _kill(self, name: str, proc: subprocess.Popen):
        """Kill the container; the attached `docker run` client exits with it."""
        try:
            subprocess.run(
                [self.docker_bin, "kill", name],
                capture_output=True, timeout=10,
            )
        except (OSError, subprocess.SubprocessError) as e:
            log.error(f"[sandbox] Failed to kill container {name}: {e}")
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()

    def _teardown(self, name: str):
        """Remove the container whatever happened. 'No such container' is the normal case."""
        try:
            subprocess.run(
                [self.docker_bin, "rm", "-f", name],
                capture_output=True, timeout=30,
            )
        except (OSError, subprocess.SubprocessError) as e:
            log.error(f"[sandbox] Teardown of {name} failed: {e}")

    def cleanup_orphans(self) -> int:
        """Remove containers a previous run of this agent left behind."""
        if shutil.which(self.docker_bin) is None:
            return 0
        label = f"gridrun.worker={self.owner}" if self.owner else MANAGED_LABEL
        try:
            listing = subprocess.run(
                [self.docker_bin, "ps", "-aq", "--filter", f"label={label}"],
                capture_output=True, text=True, timeout=15,
            )
            ids = listing.stdout.split() if listing.returncode == 0 else []
            if ids:
                subprocess.run(
                    [self.docker_bin, "rm", "-f", *ids],
                    capture_output=True, timeout=60,
                )
                log.warning(f"[sandbox] Removed {len(ids)} orphaned container(s)")
            return len(ids)
        except (OSError, subprocess.SubprocessError) as e:
            log.error(f"[sandbox] Orphan cleanup failed: {e}")
            return 0


def _is_engine_error(stderr: str) -> bool:
    text = stderr.lower()
    return "docker:" in text or "cannot connect to the docker daemon" in text or "error response from daemon" in text
