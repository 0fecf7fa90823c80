"""
Host Discovery
==============

Describes this machine to the coordinator: hostname, OS, logical CPU count
and total RAM, via psutil.

Returns a HostInfo dataclass ready to be sent to the coordinator's
/api/workers/register endpoint.
"""

from __future__ import annotations
import logging
import os
import platform
import socket
from dataclasses import dataclass
from typing import Optional

import psutil  # type: ignore

log = logging.getLogger(__name__)

# ─── Host Info ────────────────────────────────────────────────────────────────

@dataclass
class HostInfo:
    hostname:     str
    os:           str            # e.g. "Linux 6.8.0"
    cpu_count:    int            # logical cores
    ram_total_mb: int

    def default_parallelism(self) -> int:
        """Half the cores, at least one slot."""
        return max(1, self.cpu_count // 2)

    def to_register_payload(
        self,
        worker_id:         Optional[str],
        max_parallel_jobs: int,
        version:           str,
    ) -> dict:
        return {
            "worker_id":         worker_id,
            "hostname":          self.hostname,
            "os":                self.os,
            "cpu_count":         self.cpu_count,
            "ram_total_mb":      self.ram_total_mb,
            "max_parallel_jobs": max_parallel_jobs,
            "version":           version,
        }


# ─── Discovery ────────────────────────────────────────────────────────────────

def discover_host() -> HostInfo:
    cpu_count = psutil.cpu_count(logical=True) or os.cpu_count() or 1
    ram_total_mb = psutil.virtual_memory().total // (1024 * 1024)

    info = HostInfo(
        hostname     = socket.gethostname() or platform.node() or "unknown",
        os           = f"{platform.system()} {platform.release()}".strip(),
        cpu_count    = int(cpu_count),
        ram_total_mb = int(ram_total_mb),
    )
    log.info(f"Host: {info.hostname} — {info.os}, {info.cpu_count} CPU, {info.ram_total_mb} MB RAM")
    return info
