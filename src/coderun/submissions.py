"""Submission records and their status lifecycle."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Dict, Optional

from .errors import ValidationError


MAX_FILENAME_LENGTH = 255


class SubmissionStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed-out"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (SubmissionStatus.QUEUED, SubmissionStatus.RUNNING)


_TRANSITIONS = {
    SubmissionStatus.QUEUED: {SubmissionStatus.RUNNING, SubmissionStatus.CANCELLED},
    SubmissionStatus.RUNNING: {
        SubmissionStatus.SUCCEEDED,
        SubmissionStatus.FAILED,
        SubmissionStatus.TIMED_OUT,
        SubmissionStatus.CANCELLED,
    },
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_submission_id() -> str:
    return uuid.uuid4().hex


def validate_filename(name: Optional[str]) -> str:
    """Return ``name`` if it is a plain file name, else raise ``ValidationError``.

    Only bare names are accepted: no directory separators, no ``.``/``..``
    and nothing hidden, so a name can never escape the directory it is
    written into.
    """
    if not name or not name.strip():
        raise ValidationError("File name must not be empty")
    if len(name) > MAX_FILENAME_LENGTH:
        raise ValidationError(f"File name longer than {MAX_FILENAME_LENGTH} characters")
    if "/" in name or "\\" in name or "\x00" in name:
        raise ValidationError(f"File name must not contain path separators: {name!r}")
    if name.startswith(".") or PurePosixPath(name).name != name:
        raise ValidationError(f"Invalid file name: {name!r}")
    return name


@dataclass
class Submission:
    """One request to execute a unit of source code.

    ``status`` is changed only through :meth:`transition`, which enforces
    the lifecycle and keeps terminal states immutable.  The queue holds its
    lock around every transition.
    """

    language: str
    source: str
    entry_file: str
    id: str = field(default_factory=new_submission_id)
    files: Dict[str, str] = field(default_factory=dict)
    stdin: Optional[str] = None
    priority: int = 0
    timeout_seconds: Optional[int] = None
    requested_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    status: SubmissionStatus = SubmissionStatus.QUEUED

    @property
    def source_bytes(self) -> int:
        total = len(self.source.encode("utf-8"))
        for name, content in self.files.items():
            if name != self.entry_file:
                total += len(content.encode("utf-8"))
        return total

    def transition(self, new_status: SubmissionStatus) -> None:
        allowed = _TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise ValueError(
                f"Submission {self.id}: illegal transition {self.status.value} -> {new_status.value}"
            )
        self.status = new_status
        if new_status is SubmissionStatus.RUNNING:
            self.started_at = utcnow()
        elif new_status.terminal:
            self.finished_at = utcnow()
