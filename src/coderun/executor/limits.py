"""Per-process resource ceilings applied in the child before ``exec``."""

from __future__ import annotations

import resource
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class ResourceLimits:
    memory_bytes: int
    cpu_seconds: int
    file_size_bytes: int = 16 * 1024 * 1024

    @classmethod
    def from_megabytes(cls, memory_mb: int, cpu_seconds: int) -> "ResourceLimits":
        return cls(memory_bytes=memory_mb * 1024 * 1024, cpu_seconds=cpu_seconds)

    def preexec(self) -> Callable[[], None]:
        """Return a ``preexec_fn`` applying these limits."""

        def _apply() -> None:
            apply_rlimits(self)

        return _apply


def _set(limit: int, soft: int, hard: int) -> None:
    # Some platforms do not support every limit; the others still apply.
    try:
        resource.setrlimit(limit, (soft, hard))
    except (ValueError, OSError):
        pass


def apply_rlimits(limits: ResourceLimits) -> None:
    """Apply address space, CPU time, file size and core dump limits.

    The CPU hard limit is one second above the soft one so the process
    first receives ``SIGXCPU`` and is killed outright only if it ignores it.
    """
    _set(resource.RLIMIT_AS, limits.memory_bytes, limits.memory_bytes)
    _set(resource.RLIMIT_CPU, limits.cpu_seconds, limits.cpu_seconds + 1)
    _set(resource.RLIMIT_FSIZE, limits.file_size_bytes, limits.file_size_bytes)
    _set(resource.RLIMIT_CORE, 0, 0)
