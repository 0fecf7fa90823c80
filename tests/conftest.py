import pytest

from gridrun_agent import client as agent_client
from gridrun_coordinator import (
    ConflictError,
    Coordinator,
    CoordinatorConfig,
    CoordinatorError,
    InvalidStateError,
    MemoryStore,
    Registry,
    Scheduler,
    UnknownJobError,
    UnknownWorkerError,
)

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class LocalClient:
    """Agent-side client that calls a Coordinator in-process."""

    def __init__(self, coordinator: Coordinator):
        self.coordinator = coordinator
        self.worker_id = None

    def _call(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except UnknownWorkerError as e:
            raise agent_client.UnknownWorkerError(str(e), 404) from e
        except UnknownJobError as e:
            raise agent_client.UnknownJobError(str(e), 404) from e
        except (ConflictError, InvalidStateError) as e:
            raise agent_client.ConflictError(str(e), 409) from e
        except CoordinatorError as e:
            raise agent_client.ProtocolError(str(e), e.status_code) from e

    def register(self, payload: dict) -> str:
        self.worker_id = self._call(self.coordinator.register_worker, **payload)["worker_id"]
        return self.worker_id

    def heartbeat(self, payload: dict) -> dict:
        return self._call(self.coordinator.heartbeat, **payload)

    def deregister(self, worker_id: str) -> dict:
        return self._call(self.coordinator.deregister_worker, worker_id)

    def poll_for_job(self, worker_id: str):
        return self._call(self.coordinator.poll_for_job, worker_id)

    def submit_result(self, report: dict) -> dict:
        return self._call(self.coordinator.submit_result, **report)

    def check_cancel(self, job_id: str, worker_id: str) -> bool:
        return self._call(self.coordinator.check_cancel, job_id, worker_id)["cancel_requested"]

    def stream_output(self, job_id: str, worker_id: str, data: str) -> None:
        self._call(self.coordinator.stream_output, job_id, worker_id, data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return CoordinatorConfig()


@pytest.fixture
def registry(clock, config):
    return Registry(MemoryStore(), config, clock=clock)


@pytest.fixture
def scheduler(registry):
    return Scheduler(registry)


@pytest.fixture
def coordinator(registry, scheduler):
    return Coordinator(registry, scheduler)


def add_worker(registry, cpu=2, ram=1024, parallel=None, worker_id=None, hostname="node"):
    return registry.register_worker(
        hostname          = hostname,
        os_name           = "Linux 6.8",
        cpu_count         = cpu,
        ram_total_mb      = ram,
        worker_id         = worker_id,
        max_parallel_jobs = parallel,
    )
