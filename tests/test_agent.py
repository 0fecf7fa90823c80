import json
import threading
import time

import pytest

from conftest import LocalClient
from gridrun_agent.agent import AgentConfig, RegistrationError, WorkerAgent, load_config
from gridrun_agent.client import ConflictError, ProtocolError, TransientError, UnknownWorkerError
from gridrun_agent.host_discovery import HostInfo
from gridrun_agent.job_runner import ExecutionReport, JobAssignment, JobRunner
from gridrun_agent.sandbox import SandboxResult
from gridrun_agent.telemetry import HostMetrics
from gridrun_coordinator import JobStatus

HOST = HostInfo(hostname="node", os="Linux 6.8", cpu_count=4, ram_total_mb=4096)


class FakeSandbox:
    def __init__(self, ready=True):
        self.ready = ready
        self.owner = None
        self.runs = []

    def is_available(self):
        return self.ready

    def cleanup_orphans(self):
        return 0

    def run(self, command, workdir, limits, *, job_id, runtime=None, should_cancel=None, on_output=None):
        self.runs.append(job_id)
        return SandboxResult(exit_code=0, stdout=f"ran {command}\n", stderr="", elapsed_ms=3)


class FakeTelemetry:
    def sample(self):
        return HostMetrics(cpu_usage_percent=5.0, ram_free_mb=2048, ram_total_mb=4096)


class ScriptedClient:
    """Coordinator stand-in; each method pops scripted outcomes, then falls back to a default."""

    def __init__(self):
        self.worker_id = None
        self.register_outcomes = []
        self.heartbeat_outcomes = []
        self.submit_outcomes = []
        self.poll_outcomes = []
        self.registrations = []
        self.heartbeats = []
        self.submitted = []
        self.polls = 0
        self.deregistered = []

    @staticmethod
    def _next(outcomes, default):
        outcome = outcomes.pop(0) if outcomes else default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def register(self, payload):
        self.registrations.append(payload)
        self.worker_id = self._next(self.register_outcomes, payload.get("worker_id") or "worker-new")
        return self.worker_id

    def heartbeat(self, payload):
        self.heartbeats.append(payload)
        return self._next(self.heartbeat_outcomes, {})

    def deregister(self, worker_id):
        self.deregistered.append(worker_id)
        return {}

    def poll_for_job(self, worker_id):
        self.polls += 1
        return self._next(self.poll_outcomes, None)

    def submit_result(self, report):
        self.submitted.append(report)
        return self._next(self.submit_outcomes, {"status": "COMPLETED"})

    def check_cancel(self, job_id, worker_id):
        return False

    def stream_output(self, job_id, worker_id, data):
        pass


class BlockingRunner:
    """Holds its slot until released or cancelled."""

    def __init__(self, job, worker_id):
        self.job = job
        self.worker_id = worker_id
        self.release = threading.Event()
        self.cancel_reason = None

    def cancel(self, reason="Cancelled"):
        self.cancel_reason = reason
        self.release.set()

    def run(self):
        self.release.wait(10)
        return ExecutionReport(
            job_id=self.job.job_id, worker_id=self.worker_id, stdout="", stderr="",
            exit_code=130 if self.cancel_reason else 0, elapsed_ms=1, error=self.cancel_reason,
        )


@pytest.fixture
def agent_config(tmp_path):
    return AgentConfig(
        api_url               = "http://coord:8080",
        state_path            = tmp_path / "state" / "agent.json",
        work_dir              = tmp_path / "work",
        heartbeat_interval    = 0.05,
        poll_interval         = 0.02,
        backoff_min           = 0.01,
        backoff_max           = 0.02,
        shutdown_timeout      = 5.0,
        report_grace          = 2.0,
        cancel_check_interval = 0.01,
    )


def make_agent(config, client, sandbox=None):
    return WorkerAgent(config, client=client, sandbox=sandbox or FakeSandbox(), host=HOST, telemetry=FakeTelemetry())


def report_for(job_id, exit_code=0):
    return ExecutionReport(job_id=job_id, worker_id="worker-1", stdout="out", stderr="",
                           exit_code=exit_code, elapsed_ms=10)


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)


# ─── Registration ─────────────────────────────────────────────────────────────

def test_register_persists_worker_id(agent_config, coordinator):
    sandbox = FakeSandbox()
    agent = make_agent(agent_config, LocalClient(coordinator), sandbox)

    worker_id = agent.register()

    assert load_config(agent_config.state_path)["worker_id"] == worker_id
    assert sandbox.owner == worker_id
    assert agent.max_parallel == 2  # half of 4 cores

    # A restarted agent comes back under the same identity
    again = make_agent(agent_config, LocalClient(coordinator))
    assert again.worker_id == worker_id
    assert again.register() == worker_id
    assert len(coordinator.list_workers()) == 1


def test_register_retries_transient_failures(agent_config):
    client = ScriptedClient()
    client.register_outcomes = [TransientError("down"), TransientError("down"), "worker-7"]

    assert make_agent(agent_config, client).register() == "worker-7"
    assert len(client.registrations) == 3


def test_register_gives_up_after_attempts(agent_config):
    agent_config.register_attempts = 3
    client = ScriptedClient()
    client.register_outcomes = [TransientError("down")] * 5

    with pytest.raises(RegistrationError):
        make_agent(agent_config, client).register()
    assert len(client.registrations) == 3


def test_rejected_registration_is_not_retried(agent_config):
    client = ScriptedClient()
    client.register_outcomes = [ProtocolError("cpu_count must be positive", 400)]

    with pytest.raises(RegistrationError):
        make_agent(agent_config, client).register()
    assert len(client.registrations) == 1


def test_run_exits_nonzero_when_registration_fails(agent_config):
    agent_config.register_attempts = 2
    client = ScriptedClient()
    client.register_outcomes = [TransientError("down")] * 2

    assert make_agent(agent_config, client).run() == 1


# ─── Heartbeat ────────────────────────────────────────────────────────────────

def test_heartbeat_reports_metrics_and_status(agent_config):
    client = ScriptedClient()
    agent = make_agent(agent_config, client)
    agent.worker_id = "worker-1"

    agent._send_heartbeat()
    assert client.heartbeats == [{
        "worker_id": "worker-1", "cpu_usage_percent": 5.0,
        "ram_free_mb": 2048, "ram_total_mb": 4096, "status": "IDLE",
    }]


def test_heartbeat_turns_unhealthy_when_sandbox_goes_away(agent_config):
    client = ScriptedClient()
    sandbox = FakeSandbox()
    agent = make_agent(agent_config, client, sandbox)
    agent.worker_id = "worker-1"

    sandbox.ready = False
    for _ in range(6):
        agent._send_heartbeat()
    statuses = [hb["status"] for hb in client.heartbeats]
    assert statuses == ["IDLE"] * 5 + ["UNHEALTHY"]


def test_unknown_worker_heartbeat_registers_again(agent_config):
    client = ScriptedClient()
    client.heartbeat_outcomes = [UnknownWorkerError("Unknown worker worker-old", 404)]
    client.register_outcomes = ["worker-fresh"]
    agent = make_agent(agent_config, client)
    agent.worker_id = "worker-old"

    agent._send_heartbeat()

    assert agent.worker_id == "worker-fresh"
    assert client.registrations[0]["worker_id"] == "worker-old"
    assert load_config(agent_config.state_path)["worker_id"] == "worker-fresh"


def test_heartbeat_failures_do_not_raise(agent_config):
    client = ScriptedClient()
    client.heartbeat_outcomes = [TransientError("timeout"), ProtocolError("bad", 400)]
    agent = make_agent(agent_config, client)
    agent.worker_id = "worker-1"

    agent._send_heartbeat()
    agent._send_heartbeat()
    assert len(client.heartbeats) == 2


class FlakyTelemetry(FakeTelemetry):
    def __init__(self, fail_on=2):
        self.fail_on = fail_on
        self.calls = 0

    def sample(self):
        self.calls += 1
        if self.calls == self.fail_on:
            raise OSError("/proc/meminfo unavailable")
        return super().sample()


def test_heartbeat_thread_survives_a_failed_sample(agent_config):
    client = ScriptedClient()
    agent = WorkerAgent(agent_config, client=client, sandbox=FakeSandbox(), host=HOST,
                        telemetry=FlakyTelemetry(fail_on=2))
    agent.worker_id = "worker-1"

    thread = threading.Thread(target=agent._heartbeat_loop, daemon=True)
    thread.start()
    wait_until(lambda: len(client.heartbeats) >= 2)
    assert thread.is_alive()

    agent._heartbeat_stop.set()
    thread.join(2)
    assert not thread.is_alive()


def test_heartbeat_thread_survives_a_failed_state_write(agent_config, monkeypatch):
    client = ScriptedClient()
    client.heartbeat_outcomes = [UnknownWorkerError("Unknown worker", 404)]
    agent = make_agent(agent_config, client)
    agent.worker_id = "worker-1"

    def read_only(path, cfg):
        raise PermissionError(13, "Read-only file system")

    monkeypatch.setattr("gridrun_agent.agent.save_config", read_only)
    thread = threading.Thread(target=agent._heartbeat_loop, daemon=True)
    thread.start()
    wait_until(lambda: len(client.heartbeats) >= 2)
    assert thread.is_alive()

    agent._heartbeat_stop.set()
    thread.join(2)


# ─── Polling ──────────────────────────────────────────────────────────────────

def test_polling_stops_when_slots_are_full(agent_config, monkeypatch):
    agent_config.max_parallel_jobs = 2
    client = ScriptedClient()
    client.poll_outcomes = [{"job_id": f"job-{i}", "command": "x", "timeout_ms": 1000} for i in range(5)]
    agent = make_agent(agent_config, client)
    agent.worker_id = "worker-1"
    runners = []

    def blocking_runner(job):
        runners.append(BlockingRunner(job, agent.worker_id))
        return runners[-1]

    monkeypatch.setattr(agent, "_make_runner", blocking_runner)

    assert agent._fill_slots() == 2
    assert client.polls == 2
    assert agent.active_count == 2

    # Slots stay held until results are delivered
    for runner in runners:
        runner.release.set()
    agent._join_active(5)
    assert agent.active_count == 0
    assert sorted(r["job_id"] for r in client.submitted) == ["job-0", "job-1"]

    assert agent._fill_slots() == 2
    for runner in runners[2:]:
        runner.release.set()
    agent._join_active(5)


def test_malformed_assignment_is_skipped(agent_config):
    client = ScriptedClient()
    client.poll_outcomes = [{"command": "no id"}]
    agent = make_agent(agent_config, client)
    agent.worker_id = "worker-1"

    assert agent._fill_slots() == 0
    assert agent.active_count == 0


def test_poll_from_forgotten_worker_registers_again(agent_config):
    client = ScriptedClient()
    client.poll_outcomes = [UnknownWorkerError("Unknown worker", 404)]
    agent = make_agent(agent_config, client)
    agent.worker_id = "worker-1"

    assert agent._fill_slots() == 0
    assert len(client.registrations) == 1


# ─── Result delivery ──────────────────────────────────────────────────────────

def test_delivery_retries_until_accepted(agent_config):
    client = ScriptedClient()
    client.submit_outcomes = [TransientError("503"), TransientError("503")]
    agent = make_agent(agent_config, client)
    report = report_for("job-1")
    agent.spool.save(report)

    assert agent.deliver(report) is True
    assert len(client.submitted) == 3
    assert agent.spool.pending() == []


def test_conflicting_result_is_dropped(agent_config):
    client = ScriptedClient()
    client.submit_outcomes = [ConflictError("job reassigned", 409)]
    agent = make_agent(agent_config, client)
    report = report_for("job-1")
    agent.spool.save(report)

    assert agent.deliver(report) is False
    assert len(client.submitted) == 1
    assert agent.spool.pending() == []


def test_abandoned_delivery_stays_in_spool(agent_config):
    client = ScriptedClient()
    client.submit_outcomes = [TransientError("503")] * 3
    agent = make_agent(agent_config, client)
    report = report_for("job-1")
    agent.spool.save(report)
    agent._abandon.set()

    assert agent.deliver(report) is False
    assert agent.spool.pending() == [report]


def test_result_is_delivered_when_spool_write_fails(agent_config, monkeypatch):
    client = ScriptedClient()
    client.poll_outcomes = [{"job_id": "job-1", "command": "echo hi", "timeout_ms": 1000}]
    agent = make_agent(agent_config, client)
    agent.worker_id = "worker-1"

    def disk_full(report):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(agent.spool, "save", disk_full)
    assert agent._fill_slots() == 1
    agent._join_active(5)

    assert [r["job_id"] for r in client.submitted] == ["job-1"]
    assert client.submitted[0]["stdout"] == "ran echo hi\n"
    assert agent.active_count == 0


def test_flush_spool_delivers_leftovers(agent_config):
    client = ScriptedClient()
    agent = make_agent(agent_config, client)
    agent.spool.save(report_for("job-a"))
    agent.spool.save(report_for("job-b", exit_code=2))

    assert agent.flush_spool() == 2
    assert {r["job_id"] for r in client.submitted} == {"job-a", "job-b"}
    assert agent.spool.pending() == []


def test_unreadable_spool_file_is_discarded(agent_config):
    agent = make_agent(agent_config, ScriptedClient())
    agent.spool.save(report_for("job-ok"))
    broken = agent.spool.directory / "job-broken.json"
    broken.write_text("{not json")

    assert [r.job_id for r in agent.spool.pending()] == ["job-ok"]
    assert not broken.exists()


def test_spool_file_names_are_sanitised(agent_config):
    agent = make_agent(agent_config, ScriptedClient())
    agent.spool.save(report_for("../../etc/passwd"))
    [path] = list(agent.spool.directory.iterdir())
    assert path.parent == agent.spool.directory
    assert json.loads(path.read_text())["job_id"] == "../../etc/passwd"


# ─── Shutdown ─────────────────────────────────────────────────────────────────

def test_shutdown_cancels_jobs_that_outlive_the_timeout(agent_config, monkeypatch):
    agent_config.shutdown_timeout = 0.1
    client = ScriptedClient()
    agent = make_agent(agent_config, client)
    agent.worker_id = "worker-1"
    runners = []
    monkeypatch.setattr(agent, "_make_runner",
                        lambda job: runners.append(BlockingRunner(job, agent.worker_id)) or runners[-1])

    assert agent._accept_job({"job_id": "job-long", "command": "sleep 600", "timeout_ms": 600_000})
    agent.stop()
    agent._shutdown()

    assert runners[0].cancel_reason == "Agent shutting down"
    assert agent.active_count == 0
    assert client.submitted[0]["error"] == "Agent shutting down"


def test_run_loop_end_to_end(agent_config):
    client = ScriptedClient()
    client.poll_outcomes = [{"job_id": "job-1", "command": "echo hi", "timeout_ms": 1000}]
    sandbox = FakeSandbox()
    agent = make_agent(agent_config, client, sandbox)
    outcome = []

    thread = threading.Thread(target=lambda: outcome.append(agent.run()))
    thread.start()
    wait_until(lambda: client.submitted and client.heartbeats)
    agent.stop()
    thread.join(10)

    assert outcome == [0]
    assert sandbox.runs == ["job-1"]
    assert client.submitted[0]["stdout"] == "ran echo hi\n"
    assert client.deregistered == ["worker-new"]


# ─── With a real coordinator ──────────────────────────────────────────────────

def test_job_completes_through_coordinator(agent_config, coordinator, scheduler, registry):
    agent = make_agent(agent_config, LocalClient(coordinator))
    worker_id = agent.register()
    job_id = coordinator.submit_job("python train.py", runtime="python")["job_id"]
    scheduler.run_pass()

    assert agent._fill_slots() == 1
    agent._join_active(5)

    job = registry.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.stdout == "ran python train.py\n"
    assert registry.get_worker(worker_id).current_job_ids == []
    assert agent.spool.pending() == []


def test_cancelled_job_result_is_dropped(agent_config, coordinator, scheduler, registry):
    agent = make_agent(agent_config, LocalClient(coordinator))
    worker_id = agent.register()
    job_id = coordinator.submit_job("sleep 600")["job_id"]
    scheduler.run_pass()
    raw = coordinator.poll_for_job(worker_id)
    coordinator.cancel_job(job_id)

    report = ExecutionReport(job_id=job_id, worker_id=worker_id, stdout="", stderr="[CANCELLED]",
                             exit_code=130, elapsed_ms=5, error="Cancelled by coordinator")
    assert agent.deliver(report) is False
    assert registry.get_job(job_id).status == JobStatus.CANCELLED
    assert JobAssignment.from_payload(raw).job_id == job_id


def test_workspace_failure_is_reported_as_failed_result(agent_config, coordinator, scheduler, registry,
                                                        monkeypatch):
    agent = make_agent(agent_config, LocalClient(coordinator))
    worker_id = agent.register()
    job_id = coordinator.submit_job("make")["job_id"]
    scheduler.run_pass()

    def disk_full(self):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(JobRunner, "_create_workspace", disk_full)
    assert agent._fill_slots() == 1
    agent._join_active(5)

    job = registry.get_job(job_id)
    assert job.status == JobStatus.QUEUED
    assert job.attempts == 1
    assert job.error_message.startswith("Workspace setup failed")
    assert registry.get_worker(worker_id).current_job_ids == []


class CrashingRunner:
    def __init__(self, job):
        self.job = job

    def cancel(self, reason="Cancelled"):
        pass

    def run(self):
        raise RuntimeError("unexpected state")


def test_runner_crash_is_reported_as_failed_result(agent_config, coordinator, scheduler, registry, monkeypatch):
    agent = make_agent(agent_config, LocalClient(coordinator))
    worker_id = agent.register()
    job_id = coordinator.submit_job("make", max_retries=0)["job_id"]
    scheduler.run_pass()

    monkeypatch.setattr(agent, "_make_runner", CrashingRunner)
    assert agent._fill_slots() == 1
    agent._join_active(5)

    job = registry.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert "Runner error: unexpected state" in job.error_message
    assert registry.get_worker(worker_id).current_job_ids == []
    assert agent.spool.pending() == []
