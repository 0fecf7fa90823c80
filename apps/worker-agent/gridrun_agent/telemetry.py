"""
Telemetry
=========

Samples the live resource signals the heartbeat carries:
  - CPU usage % (psutil, non-blocking between samples)
  - free and total RAM in MB

and computes the agent's local status:
  UNHEALTHY  the sandbox runtime is not usable on this host
  BUSY       at least one job in flight
  IDLE       otherwise
"""

from __future__ import annotations
import logging
from dataclasses import dataclass

import psutil  # type: ignore

log = logging.getLogger(__name__)

_MB = 1024 * 1024


@dataclass
class HostMetrics:
    cpu_usage_percent: float
    ram_free_mb:       int
    ram_total_mb:      int

    def to_heartbeat_payload(self, worker_id: str, status: str) -> dict:
        return {
            "worker_id":         worker_id,
            "cpu_usage_percent": self.cpu_usage_percent,
            "ram_free_mb":       self.ram_free_mb,
            "ram_total_mb":      self.ram_total_mb,
            "status":            status,
        }


class TelemetryCollector:
    def __init__(self):
        self._ram_mb = (0, 0)   # last good (free, total)
        # First cpu_percent(None) call only primes psutil's counters
        try:
            psutil.cpu_percent(interval=None)
        except Exception as e:
            log.debug(f"CPU counter priming failed: {e}")

    def sample(self) -> HostMetrics:
        try:
            cpu = float(psutil.cpu_percent(interval=None))
        except Exception as e:
            log.debug(f"CPU telemetry unavailable: {e}")
            cpu = 0.0

        try:
            mem = psutil.virtual_memory()
            self._ram_mb = (int(mem.available // _MB), int(mem.total // _MB))
        except Exception as e:
            log.warning(f"RAM telemetry unavailable, reusing last sample: {e}")

        free_mb, total_mb = self._ram_mb
        return HostMetrics(
            cpu_usage_percent = round(cpu, 1),
            ram_free_mb       = free_mb,
            ram_total_mb      = total_mb,
        )


def local_status(active_jobs: int, sandbox_ready: bool) -> str:
    if not sandbox_ready:
        return "UNHEALTHY"
    return "BUSY" if active_jobs > 0 else "IDLE"
