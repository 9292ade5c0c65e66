"""
Executor running each submission in a throwaway sandbox directory.

For every submission a fresh directory is created below the configured
sandbox root.  The entry file and any additional project files are
written into it, the language's build command (if any) runs first and
the run command follows.  Both steps share one wall clock deadline and
run under the resource ceilings of :mod:`coderun.executor.limits`.

The sandbox directory is removed on every exit path.  Nothing created for
one submission is ever reused for another, so concurrent runs cannot
observe each other's files.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from ..errors import InfrastructureFailure
from ..languages import LanguageProfile
from ..submissions import Submission, validate_filename
from .base import CodeExecutor, ExecutionResult, ProcessOutcome
from .limits import ResourceLimits


logger = logging.getLogger("coderun.executor")

PROVISION_ATTEMPTS = 2


class SandboxExecutor(CodeExecutor):
    """Execute submissions in per-run directories under ``sandbox_root``."""

    def __init__(
        self,
        sandbox_root: Path,
        max_execution_seconds: int = 30,
        max_memory_mb: int = 256,
        max_cpu_secs: int = 10,
        max_output_bytes: int = 64 * 1024,
        isolate_network: bool = False,
    ) -> None:
        super().__init__(max_execution_seconds, max_memory_mb, max_cpu_secs, max_output_bytes)
        self.sandbox_root = Path(sandbox_root)
        self.isolate_network = isolate_network
        self._unshare = shutil.which("unshare") if isolate_network else None
        if isolate_network and self._unshare is None:
            logger.warning("CODERUN_ISOLATE_NETWORK is set but 'unshare' was not found; network stays enabled")

    def execute(
        self,
        submission: Submission,
        profile: LanguageProfile,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExecutionResult:
        timeout = self.timeout_for(submission, profile)
        sandbox = self._provision(submission.id)
        started = time.monotonic()
        try:
            self._write_files(sandbox, submission)
            deadline = started + timeout
            # CPU ceiling never undercuts the wall clock deadline
            limits = ResourceLimits.from_megabytes(
                profile.memory_mb or self.max_memory_mb, max(self.max_cpu_secs, timeout + 1)
            )
            env = self._environment(sandbox)

            outcome: Optional[ProcessOutcome] = None
            if profile.needs_build:
                logger.info("Building submission %s (%s)", submission.id, profile.key)
                outcome = self._run_subprocess(
                    self._wrap(profile.build_args(submission.entry_file)),
                    sandbox,
                    deadline,
                    env=env,
                    preexec=limits.preexec(),
                    cancel_event=cancel_event,
                    run_tag=sandbox.name,
                )
            if outcome is None or outcome.ok:
                stdin_data = submission.stdin.encode("utf-8") if submission.stdin is not None else None
                outcome = self._run_subprocess(
                    self._wrap(profile.run_args(submission.entry_file)),
                    sandbox,
                    deadline,
                    stdin_data=stdin_data,
                    env=env,
                    preexec=limits.preexec(),
                    cancel_event=cancel_event,
                    run_tag=sandbox.name,
                )
            return self._result(submission, outcome, timeout, time.monotonic() - started)
        finally:
            self._cleanup(sandbox)

    def _provision(self, submission_id: str) -> Path:
        """Create the sandbox directory, retrying once before giving up."""
        last_error: Optional[OSError] = None
        for attempt in range(1, PROVISION_ATTEMPTS + 1):
            try:
                self.sandbox_root.mkdir(parents=True, exist_ok=True)
                path = Path(tempfile.mkdtemp(prefix=f"{submission_id[:12]}-", dir=str(self.sandbox_root)))
                path.chmod(0o700)
                return path
            except OSError as exc:
                last_error = exc
                logger.warning(
                    "Sandbox provisioning failed for %s (attempt %d/%d): %s",
                    submission_id,
                    attempt,
                    PROVISION_ATTEMPTS,
                    exc,
                )
        raise InfrastructureFailure(f"Could not provision sandbox: {last_error}")

    def _write_files(self, sandbox: Path, submission: Submission) -> None:
        files: Dict[str, str] = dict(submission.files)
        files[submission.entry_file] = submission.source
        for name, content in files.items():
            validate_filename(name)
            (sandbox / name).write_text(content, encoding="utf-8")

    def _environment(self, sandbox: Path) -> Dict[str, str]:
        return {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": str(sandbox),
            "TMPDIR": str(sandbox),
            "LANG": "C.UTF-8",
            "PYTHONDONTWRITEBYTECODE": "1",
        }

    def _wrap(self, args: List[str]) -> List[str]:
        if self._unshare is None:
            return args
        return [self._unshare, "--net", "--map-root-user"] + args

    def _result(
        self,
        submission: Submission,
        outcome: ProcessOutcome,
        timeout: int,
        wall_time: float,
    ) -> ExecutionResult:
        stderr = outcome.stderr
        if outcome.timed_out:
            stderr += f"\nExecution timed out after {timeout} seconds.".encode()
        elif outcome.signal is not None and not outcome.cancelled:
            stderr += f"\nProcess terminated by signal {outcome.signal}.".encode()
        logger.info(
            "Submission %s finished: exit_code=%s signal=%s timed_out=%s cancelled=%s wall=%.3fs",
            submission.id,
            outcome.exit_code,
            outcome.signal,
            outcome.timed_out,
            outcome.cancelled,
            wall_time,
        )
        return ExecutionResult(
            submission_id=submission.id,
            stdout=outcome.stdout,
            stderr=stderr,
            exit_code=outcome.exit_code,
            signal=outcome.signal,
            wall_time=wall_time,
            truncated=outcome.truncated,
            timed_out=outcome.timed_out,
            cancelled=outcome.cancelled,
        )

    def _cleanup(self, sandbox: Path) -> None:
        try:
            shutil.rmtree(sandbox)
        except OSError:
            logger.exception("Failed to remove sandbox %s", sandbox)
