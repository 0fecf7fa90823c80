"""
Coordinator Client
==================

The agent's side of the coordination protocol, over HTTP with requests.

Errors are split by what the caller should do next:
  TransientError      network trouble or 5xx — retry with backoff
  UnknownWorkerError  coordinator forgot us — register again
  UnknownJobError     job is gone — drop it
  ConflictError       state moved on (job reclaimed / cancelled) — drop it
  ProtocolError       anything else the coordinator rejected
"""

from __future__ import annotations
import logging
from typing import Optional

import requests

log = logging.getLogger(__name__)

# ─── Errors ───────────────────────────────────────────────────────────────────

class ClientError(Exception):
    pass


class TransientError(ClientError):
    pass


class ProtocolError(ClientError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UnknownWorkerError(ProtocolError):
    pass


class UnknownJobError(ProtocolError):
    pass


class ConflictError(ProtocolError):
    pass


_ERRORS_BY_KIND = {
    "UnknownWorker": UnknownWorkerError,
    "UnknownJob":    UnknownJobError,
    "Conflict":      ConflictError,
    "InvalidState":  ConflictError,
}

# ─── Client ───────────────────────────────────────────────────────────────────

class CoordinatorClient:
    def __init__(
        self,
        api_url:   str,
        token:     Optional[str] = None,
        timeout:   float = 10.0,
        session:   Optional[requests.Session] = None,
    ):
        self.api_url   = api_url.rstrip("/")
        self.token     = token
        self.timeout   = timeout
        self.session   = session or requests.Session()
        self.worker_id: Optional[str] = None

    # ─── Headers ──────────────────────────────────────────────────────────────

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if self.worker_id:
            headers["X-Worker-Id"] = self.worker_id
        return headers

    def _request(
        self,
        method:    str,
        path:      str,
        not_found: type = UnknownWorkerError,
        **kwargs,
    ) -> dict:
        url = f"{self.api_url}{path}"
        try:
            resp = self.session.request(
                method,
                url,
                headers = self._headers(),
                timeout = self.timeout,
                **kwargs,
            )
        except requests.RequestException as e:
            raise TransientError(f"{method} {path} failed: {e}") from e

        if resp.ok:
            if not resp.content:
                return {}
            try:
                return resp.json()
            except ValueError as e:
                raise ProtocolError(f"{method} {path} returned invalid JSON", resp.status_code) from e

        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientError(f"{method} {path} returned {resp.status_code}: {resp.text[:200]}")

        try:
            body = resp.json()
        except ValueError:
            body = {}
        kind = body.get("error") if isinstance(body, dict) else None
        message = (body.get("message") if isinstance(body, dict) else None) or resp.text[:200]

        error_cls = _ERRORS_BY_KIND.get(kind)
        if error_cls is None:
            if resp.status_code == 404:
                error_cls = not_found
            elif resp.status_code == 409:
                error_cls = ConflictError
            else:
                error_cls = ProtocolError
        raise error_cls(f"{method} {path}: {message}", resp.status_code)

    # ─── Protocol ─────────────────────────────────────────────────────────────

    def register(self, payload: dict) -> str:
        data = self._request("POST", "/api/workers/register", json=payload)
        worker_id = data.get("worker_id")
        if not worker_id:
            raise ProtocolError("Registration response missing worker_id")
        self.worker_id = worker_id
        return worker_id

    def heartbeat(self, payload: dict) -> dict:
        return self._request("POST", "/api/workers/heartbeat", json=payload)

    def deregister(self, worker_id: str) -> dict:
        return self._request("POST", "/api/workers/deregister", json={"worker_id": worker_id})

    def poll_for_job(self, worker_id: str) -> Optional[dict]:
        data = self._request("GET", "/api/jobs/poll", params={"worker_id": worker_id})
        return data.get("job") or None

    def submit_result(self, report: dict) -> dict:
        return self._request(
            "POST", "/api/jobs/submit-result",
            not_found = UnknownJobError,
            json      = report,
        )

    def check_cancel(self, job_id: str, worker_id: str) -> bool:
        data = self._request(
            "GET", "/api/jobs/check-cancel",
            not_found = UnknownJobError,
            params    = {"job_id": job_id, "worker_id": worker_id},
        )
        return bool(data.get("cancel_requested"))

    def stream_output(self, job_id: str, worker_id: str, data: str) -> None:
        self._request(
            "POST", "/api/jobs/stream-output",
            not_found = UnknownJobError,
            json      = {"job_id": job_id, "worker_id": worker_id, "data": data},
        )
