"""
Execution backends for the code execution service.

An executor takes a :class:`~coderun.submissions.Submission` and the
:class:`~coderun.languages.LanguageProfile` of its language, runs it in an
isolated environment under resource and time limits and returns the
captured output.  Additional executors can be added by implementing the
``CodeExecutor`` interface from ``base.py``.
"""

from .base import CodeExecutor, ExecutionResult
from .limits import ResourceLimits
from .sandbox_executor import SandboxExecutor

__all__ = [
    "ExecutionResult",
    "CodeExecutor",
    "ResourceLimits",
    "SandboxExecutor",
]
