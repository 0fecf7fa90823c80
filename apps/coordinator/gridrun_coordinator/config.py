"""
Coordinator configuration.

All tuning constants live here with their defaults; nothing else in the
package hard-codes a timeout or a cooldown.

Environment overrides (all optional):
  GRIDRUN_HEARTBEAT_TIMEOUT_S     seconds without heartbeat before OFFLINE  (30)
  GRIDRUN_AGENT_COOLDOWN_S        cooldown after a failure / timeout        (30)
  GRIDRUN_SCHEDULER_INTERVAL_S    scheduler tick                             (5)
  GRIDRUN_ASSIGNMENT_GRACE_S      extra time an ASSIGNED job may sit unpolled (30)
  GRIDRUN_RETRY_DELAY_S           delay before a timed-out job is requeued   (0)
  GRIDRUN_CPU_OVERLOAD_PERCENT    live CPU usage above which a worker is skipped (90)
  GRIDRUN_DEFAULT_JOB_CPU         cores when a submission omits requiredCpu  (1)
  GRIDRUN_DEFAULT_JOB_RAM_MB      RAM when a submission omits requiredRamMb  (256)
  GRIDRUN_DEFAULT_JOB_TIMEOUT_MS  timeout when omitted                       (300000)
  GRIDRUN_DEFAULT_MAX_RETRIES     retries when omitted                       (3)
  GRIDRUN_DB_PATH                 SQLite file; unset = in-memory store
"""

from __future__ import annotations
import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional


@dataclass
class CoordinatorConfig:
    heartbeat_timeout_s:    float = 30.0
    agent_cooldown_s:       float = 30.0
    scheduler_interval_s:   float = 5.0
    assignment_grace_s:     float = 30.0
    retry_delay_s:          float = 0.0
    cpu_overload_percent:   float = 90.0

    default_job_cpu:        float = 1.0
    default_job_ram_mb:     int   = 256
    default_job_timeout_ms: int   = 5 * 60 * 1000
    default_max_retries:    int   = 3

    max_output_chars:       int   = 1_000_000   # stdout / stderr kept on the record
    live_output_chars:      int   = 64_000      # tail kept while RUNNING

    db_path:                Optional[str] = None

    def __post_init__(self):
        for name in ("heartbeat_timeout_s", "agent_cooldown_s", "scheduler_interval_s"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        for name in ("assignment_grace_s", "retry_delay_s", "default_max_retries"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        if self.default_job_cpu <= 0 or self.default_job_ram_mb <= 0:
            raise ValueError("default job resources must be positive")
        if self.default_job_timeout_ms <= 0:
            raise ValueError("default_job_timeout_ms must be positive")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CoordinatorConfig":
        """Build a config from GRIDRUN_* variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            raw = env.get(f"GRIDRUN_{f.name.upper()}")
            if raw is None or raw == "":
                continue
            if f.name == "db_path":
                overrides[f.name] = raw
            elif f.type in ("int", int):
                overrides[f.name] = int(raw)
            else:
                overrides[f.name] = float(raw)
        return cls(**overrides)
