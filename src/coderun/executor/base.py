"""
Base interfaces and dataclasses for code execution backends.

All concrete executors inherit from :class:`CodeExecutor` and implement
the :meth:`~CodeExecutor.execute` method.  The returned
:class:`ExecutionResult` captures the outcome of one submission and is
immutable once produced.

Wall clock timeouts, cancellation and output truncation are enforced by
the :meth:`CodeExecutor._run_subprocess` helper shared by every executor.
Memory and CPU ceilings are applied inside the child process through
``setrlimit`` (see :mod:`coderun.executor.limits`).
"""

from __future__ import annotations

import abc
import logging
import os
import signal
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

from ..errors import InfrastructureFailure
from ..languages import LanguageProfile
from ..submissions import Submission


logger = logging.getLogger("coderun.executor")

# How often the supervising thread checks for cancellation.
POLL_INTERVAL = 0.05
READ_CHUNK = 65536
# Upper bound for draining pipes once the process group is gone.
DRAIN_TIMEOUT = 5.0
# Environment variable tagging every process started for one run.
RUN_TAG_ENV = "CODERUN_RUN"
PROC_ROOT = Path("/proc")
SWEEP_ROUNDS = 5

# Held while forking children and while sweeping /proc, so a sweep never
# sees a freshly forked child that has not yet dropped inherited pipes.
_spawn_lock = threading.Lock()


@dataclass(frozen=True)
class ExecutionResult:
    """Result of running one submission.

    Attributes
    ----------
    submission_id: str
        Identifier of the submission that produced this result.
    stdout: bytes
        Standard output, at most ``max_output_bytes`` long.
    stderr: bytes
        Standard error, at most ``max_output_bytes`` long plus any notice
        appended by the executor (for example the timeout message).
    exit_code: int or None
        Exit status of the process.  ``None`` when it died from a signal
        or never started.
    signal: int or None
        Number of the signal that terminated the process, if any.
    wall_time: float
        Wall clock time in seconds, build step included.
    truncated: bool
        True when either output stream hit the size ceiling.
    timed_out: bool
        True when the run was killed at its deadline.
    cancelled: bool
        True when the run was killed because it was cancelled.
    """

    submission_id: str
    stdout: bytes = b""
    stderr: bytes = b""
    exit_code: Optional[int] = None
    signal: Optional[int] = None
    wall_time: float = 0.0
    truncated: bool = False
    timed_out: bool = False
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not (self.timed_out or self.cancelled)


@dataclass
class ProcessOutcome:
    """Raw outcome of one child process (a build or a run step)."""

    stdout: bytes
    stderr: bytes
    returncode: Optional[int]
    truncated: bool = False
    timed_out: bool = False
    cancelled: bool = False

    @property
    def exit_code(self) -> Optional[int]:
        if self.returncode is None or self.returncode < 0:
            return None
        return self.returncode

    @property
    def signal(self) -> Optional[int]:
        if self.returncode is not None and self.returncode < 0:
            return -self.returncode
        return None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not (self.timed_out or self.cancelled)


class _StreamCollector(threading.Thread):
    """Drain a pipe, keeping at most ``limit`` bytes of it."""

    def __init__(self, stream, limit: int) -> None:
        super().__init__(daemon=True)
        self.stream = stream
        self.limit = limit
        self.buffer = bytearray()
        self.truncated = False

    def run(self) -> None:
        fd = self.stream.fileno()
        try:
            while True:
                chunk = os.read(fd, READ_CHUNK)
                if not chunk:
                    break
                room = self.limit - len(self.buffer)
                if room > 0:
                    self.buffer.extend(chunk[:room])
                if len(chunk) > room:
                    # Keep reading so the child never blocks on a full pipe.
                    self.truncated = True
        except OSError as exc:
            logger.debug("Output pipe closed early: %s", exc)
        finally:
            self.stream.close()


def _feed_stdin(stream, data: bytes) -> None:
    try:
        stream.write(data)
    except BrokenPipeError:
        logger.debug("Process exited before consuming its stdin")
    finally:
        try:
            stream.close()
        except BrokenPipeError:
            pass


def kill_process_group(process: subprocess.Popen) -> None:
    """SIGKILL every process in the child's group (the child leads it)."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def _pipe_links(*streams) -> Set[str]:
    """``/proc/<pid>/fd`` link targets of the given pipe ends."""
    return {f"pipe:[{os.fstat(stream.fileno()).st_ino}]" for stream in streams}


def _holds_run(proc: Path, marker: bytes, pipes: Set[str]) -> bool:
    try:
        if marker in (proc / "environ").read_bytes().split(b"\0"):
            return True
    except OSError:
        pass
    try:
        fds = list((proc / "fd").iterdir())
    except OSError:
        return False
    for fd in fds:
        try:
            if os.readlink(fd) in pipes:
                return True
        except OSError:
            continue
    return False


def _run_processes(marker: bytes, pipes: Set[str], group: Optional[int]) -> List[int]:
    own = os.getpid()
    found = []
    for proc in PROC_ROOT.iterdir():
        if not proc.name.isdigit() or int(proc.name) == own:
            continue
        pid = int(proc.name)
        try:
            if group is not None and os.getpgid(pid) == group:
                # already sent SIGKILL by killpg
                continue
        except ProcessLookupError:
            continue
        if _holds_run(proc, marker, pipes):
            found.append(pid)
    return found


def kill_escaped_processes(run_tag: str, pipes: Iterable[str] = (), group: Optional[int] = None) -> int:
    """SIGKILL processes of a run that left its process group.

    A program can escape ``killpg`` by starting a new session (``setsid``)
    or by double forking.  Such processes are found in ``/proc`` by the
    run tag in their environment or by an open descriptor on one of the
    run's output pipes.  Members of ``group``, the process group already
    killed, are skipped.  Returns how many processes were killed.
    """
    if not PROC_ROOT.is_dir():
        return 0
    marker = f"{RUN_TAG_ENV}={run_tag}".encode()
    pipes = set(pipes)
    killed: Set[int] = set()
    with _spawn_lock:
        for _ in range(SWEEP_ROUNDS):
            found = _run_processes(marker, pipes, group)
            if not found:
                break
            for pid in found:
                try:
                    os.kill(pid, signal.SIGKILL)
                except (ProcessLookupError, PermissionError):
                    continue
                killed.add(pid)
            # Let the kills land before looking for children forked meanwhile.
            time.sleep(POLL_INTERVAL / 5)
    return len(killed)


class CodeExecutor(abc.ABC):
    """
    Abstract base class defining the interface for code executors.

    Executors run a submission in an environment of their own and return
    the captured output.  Subclasses override :meth:`execute`.
    """

    def __init__(
        self,
        max_execution_seconds: int = 30,
        max_memory_mb: int = 256,
        max_cpu_secs: int = 10,
        max_output_bytes: int = 64 * 1024,
    ) -> None:
        """
        Parameters
        ----------
        max_execution_seconds: int, optional
            Upper bound for the wall clock timeout of one submission.
            Submissions and language profiles may ask for less, never more.
        max_memory_mb: int, optional
            Address space ceiling for languages whose profile does not
            declare its own.
        max_cpu_secs: int, optional
            Minimum CPU time limit (``RLIMIT_CPU``) for every child process.
            It is raised above the run's wall clock timeout when lower.
        max_output_bytes: int, optional
            Ceiling for each of stdout and stderr.  Output beyond it is
            discarded and the result is flagged as truncated.
        """
        self.max_execution_seconds = max_execution_seconds
        self.max_memory_mb = max_memory_mb
        self.max_cpu_secs = max_cpu_secs
        self.max_output_bytes = max_output_bytes

    @abc.abstractmethod
    def execute(
        self,
        submission: Submission,
        profile: LanguageProfile,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExecutionResult:
        """Run ``submission`` with the commands of ``profile``.

        Must not return before every process and temporary file created for
        the run is gone.  Raises :class:`~coderun.errors.InfrastructureFailure`
        when the environment for the run cannot be provided.
        """
        raise NotImplementedError

    def timeout_for(self, submission: Submission, profile: LanguageProfile) -> int:
        requested = submission.timeout_seconds or profile.default_timeout
        return max(1, min(requested, self.max_execution_seconds))

    def _run_subprocess(
        self,
        args: List[str],
        cwd: Path,
        deadline: float,
        stdin_data: Optional[bytes] = None,
        env: Optional[Dict[str, str]] = None,
        preexec: Optional[Callable[[], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        run_tag: Optional[str] = None,
    ) -> ProcessOutcome:
        """
        Run ``args`` in ``cwd`` until it exits, ``deadline`` (a
        ``time.monotonic`` value) passes or ``cancel_event`` is set.

        The child is started in a new session so that it leads its own
        process group, and with ``run_tag`` in its environment.  When the
        helper returns, whatever the reason, the whole group is killed and
        so is every descendant that left it (see
        :func:`kill_escaped_processes`).
        """
        run_tag = run_tag or uuid.uuid4().hex
        env = dict(os.environ if env is None else env)
        env[RUN_TAG_ENV] = run_tag
        with _spawn_lock:
            try:
                process = subprocess.Popen(
                    args,
                    cwd=str(cwd),
                    stdin=subprocess.PIPE if stdin_data is not None else subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    env=env,
                    preexec_fn=preexec,
                    start_new_session=True,
                )
            except (FileNotFoundError, PermissionError) as exc:
                raise InfrastructureFailure(f"Runtime not available: {args[0]} ({exc})") from exc
            except (OSError, subprocess.SubprocessError) as exc:
                raise InfrastructureFailure(f"Failed to start {args[0]}: {exc}") from exc
        pipes = _pipe_links(process.stdout, process.stderr)

        collectors = [
            _StreamCollector(process.stdout, self.max_output_bytes),
            _StreamCollector(process.stderr, self.max_output_bytes),
        ]
        for collector in collectors:
            collector.start()
        if stdin_data is not None:
            threading.Thread(target=_feed_stdin, args=(process.stdin, stdin_data), daemon=True).start()

        timed_out = False
        cancelled = False
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    timed_out = True
                    break
                try:
                    process.wait(timeout=min(POLL_INTERVAL, remaining))
                    break
                except subprocess.TimeoutExpired:
                    continue
        finally:
            kill_process_group(process)
            escaped = kill_escaped_processes(run_tag, pipes, group=process.pid)
            if escaped:
                logger.warning("Killed %d process(es) that left the process group of %s", escaped, args[0])
            process.wait()
            for collector in collectors:
                collector.join(DRAIN_TIMEOUT)

        stdout, stderr = collectors
        return ProcessOutcome(
            stdout=bytes(stdout.buffer),
            stderr=bytes(stderr.buffer),
            returncode=process.returncode,
            truncated=stdout.truncated or stderr.truncated,
            timed_out=timed_out,
            cancelled=cancelled,
        )
