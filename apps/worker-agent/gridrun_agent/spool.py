"""
Result spool: execution reports waiting to be accepted by the coordinator.

One JSON file per job under the spool directory. A report is written before
the first delivery attempt and removed once the coordinator accepts or
rejects it, so a report survives an agent restart.
"""

from __future__ import annotations
import json
import logging
import os
import threading
from pathlib import Path

from .job_runner import ExecutionReport

log = logging.getLogger(__name__)


class ResultSpool:
    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def _path(self, job_id: str) -> Path:
        safe = "".join(c for c in job_id if c.isalnum() or c in "-_")
        return self.directory / f"{safe}.json"

    def save(self, report: ExecutionReport):
        path = self._path(report.job_id)
        tmp = path.with_suffix(".tmp")
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(report.to_payload()))
            os.replace(tmp, path)

    def remove(self, job_id: str):
        with self._lock:
            try:
                self._path(job_id).unlink(missing_ok=True)
            except OSError as e:
                log.warning(f"[spool] Could not remove report for {job_id}: {e}")

    def pending(self) -> list[ExecutionReport]:
        if not self.directory.is_dir():
            return []
        reports = []
        with self._lock:
            for path in sorted(self.directory.glob("*.json")):
                try:
                    reports.append(ExecutionReport.from_payload(json.loads(path.read_text())))
                except (OSError, ValueError, KeyError) as e:
                    log.error(f"[spool] Discarding unreadable report {path.name}: {e}")
                    path.unlink(missing_ok=True)
        return reports
