"""Submission queue: admission control and dispatch to executor slots.

The queue is the single point of admission.  A submission is rejected with
:class:`~coderun.errors.ValidationError` when it names an unknown language,
an invalid file or carries too much source, and with
:class:`~coderun.errors.AdmissionRejected` when the number of queued plus
running submissions has reached ``max_pending``.

Accepted submissions wait in a heap ordered by ``(requested_at, id)``, or by
``(priority, requested_at, id)`` when priorities are enabled.  A fixed
number of worker threads (the executor slots) take submissions off the heap
and hand them to the executor.  Every accepted submission ends with exactly
one report published to the :class:`~coderun.reporter.ResultReporter`.
"""

from __future__ import annotations

import dataclasses
import heapq
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .errors import AdmissionRejected, InfrastructureFailure, ValidationError
from .executor import CodeExecutor, ExecutionResult
from .languages import LanguageRegistry
from .reporter import ErrorInfo, ResultReporter, classify
from .submissions import Submission, SubmissionStatus, validate_filename


logger = logging.getLogger("coderun.queue")

_HeapItem = Tuple[int, datetime, str]


@dataclass
class _Entry:
    submission: Submission
    cancel_event: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)


class SubmissionQueue:
    """Bounded pool of executor slots fed from an ordered wait queue."""

    def __init__(
        self,
        executor: CodeExecutor,
        reporter: ResultReporter,
        registry: LanguageRegistry,
        slots: int = 4,
        max_pending: int = 32,
        max_source_bytes: int = 64 * 1024,
        priority_enabled: bool = False,
        cancel_grace_seconds: float = 10.0,
    ) -> None:
        if slots < 1:
            raise ValueError("slots must be >= 1")
        self.executor = executor
        self.reporter = reporter
        self.registry = registry
        self.slots = slots
        self.max_pending = max_pending
        self.max_source_bytes = max_source_bytes
        self.priority_enabled = priority_enabled
        self.cancel_grace_seconds = cancel_grace_seconds

        self._cond = threading.Condition()
        self._heap: List[_HeapItem] = []
        self._active: Dict[str, _Entry] = {}
        self._workers: List[threading.Thread] = []
        self._closed = False

    # -- lifecycle -----------------------------------------------------

    def start(self) -> None:
        """Start the worker threads, reopening the queue after a shutdown."""
        with self._cond:
            if self._closed:
                self._closed = False
                self._workers = [w for w in self._workers if w.is_alive()]
            self._spawn_workers()

    def _spawn_workers(self) -> None:
        # Caller holds self._cond.
        if self._workers:
            return
        for index in range(self.slots):
            worker = threading.Thread(target=self._worker, name=f"coderun-slot-{index}", daemon=True)
            worker.start()
            self._workers.append(worker)
        logger.info("Started %d executor slots", self.slots)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work, cancel everything pending and stop the workers."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            pending = list(self._active.values())
        for entry in pending:
            self.cancel(entry.submission.id, wait=False)
        with self._cond:
            self._cond.notify_all()
        if wait:
            for worker in self._workers:
                worker.join(self.cancel_grace_seconds)
        logger.info("Submission queue shut down")

    # -- public operations ---------------------------------------------

    def submit(self, submission: Submission) -> Submission:
        """Admit ``submission`` or raise ``ValidationError``/``AdmissionRejected``."""
        profile = self.registry.get(submission.language)
        submission.language = profile.key
        if not submission.entry_file:
            submission.entry_file = profile.entry_name
        validate_filename(submission.entry_file)
        for name in submission.files:
            validate_filename(name)
        if submission.source_bytes > self.max_source_bytes:
            raise ValidationError(
                f"Source is {submission.source_bytes} bytes; the limit is {self.max_source_bytes} bytes"
            )
        timeout = submission.timeout_seconds
        if timeout is not None and not 1 <= timeout <= self.executor.max_execution_seconds:
            raise ValidationError(
                f"timeout_seconds must be between 1 and {self.executor.max_execution_seconds}"
            )
        if submission.status is not SubmissionStatus.QUEUED:
            raise ValueError(f"Submission {submission.id} was already submitted")

        with self._cond:
            if self._closed:
                raise AdmissionRejected("Service is shutting down")
            self._spawn_workers()
            if submission.id in self._active:
                raise ValidationError(f"Duplicate submission id: {submission.id}")
            if len(self._active) >= self.max_pending:
                raise AdmissionRejected(
                    f"Too many pending submissions ({len(self._active)}/{self.max_pending}); retry later"
                )
            self._active[submission.id] = _Entry(submission)
            heapq.heappush(self._heap, self._heap_item(submission))
            self._cond.notify()
        logger.info(
            "Accepted submission %s (%s, entry=%s, %d bytes)",
            submission.id,
            submission.language,
            submission.entry_file,
            submission.source_bytes,
        )
        return submission

    def get(self, submission_id: str) -> Optional[Submission]:
        """Snapshot of a queued or running submission, else ``None``."""
        with self._cond:
            entry = self._active.get(submission_id)
            return dataclasses.replace(entry.submission) if entry is not None else None

    def cancel(self, submission_id: str, wait: bool = True) -> bool:
        """Cancel a queued or running submission.

        A running submission is acknowledged only after the executor has
        killed its process group and removed its sandbox, or after
        ``cancel_grace_seconds`` if that never happens.  Returns ``True`` when
        the submission ended up ``cancelled``.
        """
        with self._cond:
            entry = self._active.get(submission_id)
            if entry is None:
                return False
            submission = entry.submission
            if submission.status is SubmissionStatus.QUEUED:
                submission.transition(SubmissionStatus.CANCELLED)
                self.reporter.report_for(submission, ExecutionResult(submission.id, cancelled=True))
                del self._active[submission_id]
                entry.done.set()
                logger.info("Cancelled queued submission %s", submission_id)
                return True
            entry.cancel_event.set()
        logger.info("Cancelling running submission %s", submission_id)
        if not wait:
            return True
        if not entry.done.wait(self.cancel_grace_seconds):
            logger.error(
                "Submission %s did not stop within %.1fs of cancellation",
                submission_id,
                self.cancel_grace_seconds,
            )
            return False
        report = self.reporter.report(submission_id)
        return report is not None and report.status is SubmissionStatus.CANCELLED

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._active)

    # -- workers ---------------------------------------------------------

    def _heap_item(self, submission: Submission) -> _HeapItem:
        priority = submission.priority if self.priority_enabled else 0
        return (priority, submission.requested_at, submission.id)

    def _next_entry(self) -> Optional[_Entry]:
        # Cancelled submissions are dropped from _active but stay in the heap.
        while self._heap:
            _, _, submission_id = heapq.heappop(self._heap)
            entry = self._active.get(submission_id)
            if entry is not None and entry.submission.status is SubmissionStatus.QUEUED:
                return entry
        return None

    def _worker(self) -> None:
        while True:
            with self._cond:
                entry = self._next_entry()
                while entry is None:
                    if self._closed:
                        return
                    self._cond.wait()
                    entry = self._next_entry()
                entry.submission.transition(SubmissionStatus.RUNNING)
            self._run(entry)

    def _run(self, entry: _Entry) -> None:
        submission = entry.submission
        error: Optional[ErrorInfo] = None
        try:
            profile = self.registry.get(submission.language)
            result = self.executor.execute(submission, profile, entry.cancel_event)
            status, error = classify(result, self.executor.timeout_for(submission, profile))
        except InfrastructureFailure as exc:
            logger.error("Infrastructure failure for submission %s: %s", submission.id, exc.detail)
            result = ExecutionResult(submission.id)
            status, error = SubmissionStatus.FAILED, ErrorInfo.from_error(exc)
        except Exception:
            logger.exception("Unexpected error while executing submission %s", submission.id)
            result = ExecutionResult(submission.id)
            status = SubmissionStatus.FAILED
            error = ErrorInfo.from_error(InfrastructureFailure("Internal error while executing submission"))

        with self._cond:
            submission.transition(status)
            self.reporter.report_for(submission, result, error)
            del self._active[submission.id]
            self._cond.notify_all()
        entry.done.set()
