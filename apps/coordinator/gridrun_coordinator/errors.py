"""
Coordinator errors.

Each error carries a protocol `kind` and the HTTP status an external
transport should answer with.
"""

from __future__ import annotations


class CoordinatorError(Exception):
    kind        = "CoordinatorError"
    status_code = 500

    def to_payload(self) -> dict:
        return {"error": self.kind, "message": str(self)}


class UnknownWorkerError(CoordinatorError):
    """The caller referenced a worker that was never registered."""
    kind        = "UnknownWorker"
    status_code = 404


class UnknownJobError(CoordinatorError):
    """The caller referenced a job that does not exist."""
    kind        = "UnknownJob"
    status_code = 404


class ConflictError(CoordinatorError):
    """
    A compare-and-set transition lost: reservation race, or a result for a
    job the worker no longer owns. Callers re-read state instead of retrying.
    """
    kind        = "Conflict"
    status_code = 409


class InvalidStateError(CoordinatorError):
    """Operation not allowed in the job's current state (e.g. cancel a terminal job)."""
    kind        = "InvalidState"
    status_code = 409


class InvalidRequestError(CoordinatorError, ValueError):
    kind        = "InvalidRequest"
    status_code = 400
