"""Result reporter.

Holds the terminal report of every finished submission until its
retention window runs out.  Reports are immutable: the first one published
for a submission id is the one every later lookup returns.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from .errors import CodeRunError, ExecutionCrash, ExecutionTimeout
from .executor import ExecutionResult
from .submissions import Submission, SubmissionStatus


logger = logging.getLogger("coderun.reporter")


@dataclass(frozen=True)
class ErrorInfo:
    kind: str
    detail: str

    @classmethod
    def from_error(cls, error: CodeRunError) -> "ErrorInfo":
        return cls(kind=error.kind, detail=error.detail)


@dataclass(frozen=True)
class Report:
    """Final, uniform view of a finished submission."""

    submission_id: str
    language: str
    status: SubmissionStatus
    result: ExecutionResult
    error: Optional[ErrorInfo] = None
    finished_at: Optional[datetime] = None


def classify(result: ExecutionResult, timeout: Optional[int] = None) -> Tuple[SubmissionStatus, Optional[ErrorInfo]]:
    """Map an execution result onto a terminal status and error kind.

    A non-zero exit is an ordinary outcome of the user's program, reported
    as ``failed`` with kind ``ExecutionCrash``; it is not an infrastructure
    problem.
    """
    if result.cancelled:
        return SubmissionStatus.CANCELLED, None
    if result.timed_out:
        detail = "Execution timed out" if timeout is None else f"Execution timed out after {timeout} seconds"
        return SubmissionStatus.TIMED_OUT, ErrorInfo.from_error(ExecutionTimeout(detail))
    if result.exit_code == 0:
        return SubmissionStatus.SUCCEEDED, None
    if result.signal is not None:
        detail = f"Process terminated by signal {result.signal}"
    else:
        detail = f"Process exited with code {result.exit_code}"
    return SubmissionStatus.FAILED, ErrorInfo.from_error(ExecutionCrash(detail))


class ResultReporter:
    """Thread-safe store of terminal reports with time based eviction."""

    def __init__(self, retention_seconds: float = 300, clock: Callable[[], float] = time.monotonic) -> None:
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._reports: Dict[str, Tuple[float, Report]] = {}

    def publish(self, report: Report) -> Report:
        """Store ``report`` unless one already exists; return the stored one."""
        with self._lock:
            self._evict_expired()
            existing = self._reports.get(report.submission_id)
            if existing is not None:
                logger.warning("Ignoring duplicate report for submission %s", report.submission_id)
                return existing[1]
            self._reports[report.submission_id] = (self._clock() + self.retention_seconds, report)
            return report

    def report(self, submission_id: str) -> Optional[Report]:
        with self._lock:
            self._evict_expired()
            entry = self._reports.get(submission_id)
            return entry[1] if entry is not None else None

    def report_for(
        self,
        submission: Submission,
        result: ExecutionResult,
        error: Optional[ErrorInfo] = None,
    ) -> Report:
        """Build and publish the report of ``submission`` after it reached a terminal status."""
        return self.publish(
            Report(
                submission_id=submission.id,
                language=submission.language,
                status=submission.status,
                result=result,
                error=error,
                finished_at=submission.finished_at,
            )
        )

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [sid for sid, (expires_at, _) in self._reports.items() if expires_at <= now]
        for sid in expired:
            del self._reports[sid]
        if expired:
            logger.debug("Evicted %d expired reports", len(expired))

    def __len__(self) -> int:
        with self._lock:
            self._evict_expired()
            return len(self._reports)
