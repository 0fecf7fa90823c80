import io
import subprocess
import time

import pytest

from gridrun_agent import sandbox as sandbox_mod
from gridrun_agent.sandbox import (
    CANCELLED_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    SandboxLimits,
    SandboxRunner,
    SandboxUnavailableError,
)


class FakeProcess:
    """Stands in for the `docker run` client process."""

    def __init__(self, args, exit_code=0, out=b"", err=b"", runs_for=0.0):
        self.args = args
        self.stdout = io.BytesIO(out)
        self.stderr = io.BytesIO(err)
        self.exit_code = exit_code
        self.runs_for = runs_for
        self.started = time.monotonic()
        self.killed = False

    def _done(self):
        return self.killed or time.monotonic() - self.started >= self.runs_for

    @property
    def returncode(self):
        if self.killed:
            return 137
        return self.exit_code if self._done() else None

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        end = None if timeout is None else time.monotonic() + timeout
        while not self._done():
            if end is not None and time.monotonic() >= end:
                raise subprocess.TimeoutExpired(self.args, timeout)
            time.sleep(0.005)
        return self.returncode

    def kill(self):
        self.killed = True


class FakeDocker:
    """Records docker CLI calls; `docker kill` stops the running process."""

    def __init__(self, monkeypatch, **process_kwargs):
        self.process_kwargs = process_kwargs
        self.process = None
        self.calls = []
        self.ps_output = ""
        monkeypatch.setattr(sandbox_mod.shutil, "which", lambda name: f"/usr/bin/{name}")
        monkeypatch.setattr(sandbox_mod.subprocess, "Popen", self.popen)
        monkeypatch.setattr(sandbox_mod.subprocess, "run", self.run)

    def popen(self, args, **kwargs):
        self.calls.append(list(args))
        self.process = FakeProcess(args, **self.process_kwargs)
        return self.process

    def run(self, args, **kwargs):
        self.calls.append(list(args))
        if args[1] == "kill" and self.process is not None:
            self.process.kill()
        stdout = self.ps_output if args[1] == "ps" else ""
        return subprocess.CompletedProcess(args, 0, stdout=stdout, stderr="")

    def commands(self, verb):
        return [c for c in self.calls if c[1] == verb]


def limits(**overrides):
    values = {"timeout_ms": 5000, "memory_mb": 512, "cpus": 1.5}
    values.update(overrides)
    return SandboxLimits(**values)


# ─── Arguments ────────────────────────────────────────────────────────────────

def test_build_args_hardens_container(tmp_path):
    runner = SandboxRunner(owner="worker-abc")
    args = runner.build_args("gridrun-j1-xyz", "echo hi", str(tmp_path), limits(), "alpine:latest", "j1")

    def flag(name):
        return args[args.index(name) + 1]

    assert args[:3] == ["docker", "run", "--rm"]
    assert flag("--name") == "gridrun-j1-xyz"
    assert flag("--network") == "none"
    assert flag("--memory") == "512m"
    assert flag("--memory-swap") == "512m"
    assert flag("--cpus") == "1.5"
    assert flag("--pids-limit") == "64"
    assert flag("--cap-drop") == "ALL"
    assert flag("--volume") == f"{tmp_path}:/workspace:rw"
    assert flag("--workdir") == "/workspace"
    assert "--read-only" in args
    assert "no-new-privileges" in args
    assert "gridrun.managed=true" in args
    assert "gridrun.worker=worker-abc" in args
    assert "/tmp:rw,noexec,nosuid,size=64m" in args
    assert args[-4:] == ["alpine:latest", "/bin/sh", "-c", "echo hi"]


def test_network_is_opt_in(tmp_path):
    args = SandboxRunner().build_args("n", "x", str(tmp_path), limits(network=True), "alpine", "j")
    assert args[args.index("--network") + 1] == "bridge"


def test_runtime_selects_image():
    runner = SandboxRunner(default_image="busybox:1.36")
    assert runner.image_for("python") == "python:3.11-slim"
    assert runner.image_for("bash") == "busybox:1.36"
    assert runner.image_for("cobol") == "busybox:1.36"


# ─── Runs ─────────────────────────────────────────────────────────────────────

def test_run_captures_output_and_exit_code(monkeypatch, tmp_path):
    docker = FakeDocker(monkeypatch, exit_code=3, out=b"hello\n", err=b"warn\n")
    result = SandboxRunner().run("echo hello", str(tmp_path), limits(), job_id="job-1")

    assert result.exit_code == 3
    assert result.stdout == "hello\n"
    assert result.stderr == "warn\n"
    assert not result.timed_out and not result.cancelled
    name = docker.calls[0][docker.calls[0].index("--name") + 1]
    assert docker.commands("rm") == [["docker", "rm", "-f", name]]


def test_run_kills_on_timeout(monkeypatch, tmp_path):
    docker = FakeDocker(monkeypatch, runs_for=30)
    runner = SandboxRunner(cancel_check_interval=0.05)

    started = time.monotonic()
    result = runner.run("sleep 30", str(tmp_path), limits(timeout_ms=200), job_id="job-slow")

    assert time.monotonic() - started < 5
    assert result.timed_out
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert "[TIMEOUT]" in result.stderr
    assert len(docker.commands("kill")) == 1
    assert len(docker.commands("rm")) == 1


def test_run_stops_when_cancelled(monkeypatch, tmp_path):
    docker = FakeDocker(monkeypatch, runs_for=30)
    runner = SandboxRunner(cancel_check_interval=0.02)
    checks = []

    def should_cancel():
        checks.append(1)
        return len(checks) >= 2

    result = runner.run("sleep 30", str(tmp_path), limits(), job_id="job-c", should_cancel=should_cancel)

    assert result.cancelled
    assert result.exit_code == CANCELLED_EXIT_CODE
    assert not result.timed_out
    assert len(docker.commands("kill")) == 1
    assert len(docker.commands("rm")) == 1


def test_engine_failure_raises_and_still_tears_down(monkeypatch, tmp_path):
    docker = FakeDocker(monkeypatch, exit_code=125,
                        err=b"docker: Error response from daemon: pull access denied.\n")
    with pytest.raises(SandboxUnavailableError):
        SandboxRunner().run("x", str(tmp_path), limits(), job_id="job-e")
    assert len(docker.commands("rm")) == 1


def test_command_exiting_125_is_not_an_engine_failure(monkeypatch, tmp_path):
    FakeDocker(monkeypatch, exit_code=125, err=b"my tool failed\n")
    result = SandboxRunner().run("exit 125", str(tmp_path), limits(), job_id="job-125")
    assert result.exit_code == 125


def test_missing_docker_cli(monkeypatch, tmp_path):
    monkeypatch.setattr(sandbox_mod.shutil, "which", lambda name: None)
    runner = SandboxRunner()
    with pytest.raises(SandboxUnavailableError):
        runner.run("x", str(tmp_path), limits(), job_id="job-m")
    assert runner.is_available() is False
    assert runner.cleanup_orphans() == 0


def test_output_is_capped_to_tail(monkeypatch, tmp_path):
    FakeDocker(monkeypatch, out=b"0123456789")
    result = SandboxRunner(max_output_bytes=5).run("x", str(tmp_path), limits(), job_id="job-o")
    assert result.stdout == "56789"


def test_output_callback_sees_stream(monkeypatch, tmp_path):
    FakeDocker(monkeypatch, out=b"progress\n")
    seen = []
    SandboxRunner().run("x", str(tmp_path), limits(), job_id="job-s",
                        on_output=lambda stream, text: seen.append((stream, text)))
    assert ("stdout", "progress\n") in seen


def test_cleanup_orphans_removes_labelled_containers(monkeypatch):
    docker = FakeDocker(monkeypatch)
    docker.ps_output = "abc123\ndef456\n"

    assert SandboxRunner(owner="worker-1").cleanup_orphans() == 2
    assert docker.commands("ps")[0][-1] == "label=gridrun.worker=worker-1"
    assert docker.commands("rm") == [["docker", "rm", "-f", "abc123", "def456"]]


def test_is_available_checks_engine(monkeypatch):
    monkeypatch.setattr(sandbox_mod.shutil, "which", lambda name: "/usr/bin/docker")
    monkeypatch.setattr(sandbox_mod.subprocess, "run",
                        lambda args, **kw: subprocess.CompletedProcess(args, 1, stdout="", stderr="no daemon"))
    assert SandboxRunner().is_available() is False
