"""Error taxonomy shared by every component of the service.

Each error carries a stable ``kind`` string and a human readable
``detail``.  Domain code raises these; the HTTP layer translates them into
status codes in a single place (see :mod:`coderun.api.main`).

``ExecutionTimeout`` and ``ExecutionCrash`` are never raised to API
callers.  They name the outcome of a finished submission and end up in
the ``error`` field of its report.
"""

from __future__ import annotations


class CodeRunError(Exception):
    """Base class for errors with a stable, user visible kind."""

    kind = "CodeRunError"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ValidationError(CodeRunError):
    """Bad language, bad filename or oversized input.  Not retried."""

    kind = "ValidationError"


class AdmissionRejected(CodeRunError):
    """The queue is saturated; the caller may retry with backoff."""

    kind = "AdmissionRejected"


class ExecutionTimeout(CodeRunError):
    kind = "ExecutionTimeout"


class ExecutionCrash(CodeRunError):
    kind = "ExecutionCrash"


class InfrastructureFailure(CodeRunError):
    """Sandbox provisioning or runtime startup failed."""

    kind = "InfrastructureFailure"


class NotFound(CodeRunError):
    kind = "NotFound"


class Conflict(CodeRunError):
    kind = "Conflict"


class InvariantViolation(CodeRunError):
    kind = "InvariantViolation"
