"""Configuration loader.

The execution service reads its configuration from environment variables so
that the same container image can run in multiple contexts (docker-compose,
Cloud Run, a developer laptop).  Reasonable defaults are provided so that
local development works out of the box.

Environment variables:

``CODERUN_API_KEY``
    Shared secret used to authenticate incoming requests.  Clients must send
    it in the ``x-api-key`` header.  Empty disables authentication.

``CODERUN_STORAGE_BACKEND``
    Storage backend for workspaces.  Supported values are ``local`` and
    ``gcs``.  Defaults to ``local``.

``CODERUN_STORAGE_PATH``
    Base directory for workspace documents when using the ``local`` backend.
    Defaults to ``/tmp/coderun/workspaces``.

``CODERUN_GCS_BUCKET``
    Google Cloud Storage bucket used when the backend is ``gcs``.

``CODERUN_SANDBOX_DIR``
    Directory under which a fresh sandbox directory is created for every
    submission.  Defaults to ``/tmp/coderun/sandboxes``.

``CODERUN_ALLOWED_LANGS``
    Comma separated list of languages permitted for execution.  Defaults to
    every builtin profile.

``CODERUN_MAX_MEMORY_MB``
    Address space ceiling (in megabytes) for languages that do not declare
    their own.  Default is 256.

``CODERUN_MAX_CPU_SECS``
    CPU time limit (in seconds) per process.  A run always gets at least one
    second more than its wall clock timeout.  Default is 10.

``CODERUN_MAX_EXECUTION_SECONDS``
    Upper bound for the wall clock timeout of a single submission.  Default
    is 30.

``CODERUN_MAX_SOURCE_BYTES`` / ``CODERUN_MAX_OUTPUT_BYTES``
    Size ceilings for submitted source (all files together) and for each
    captured output stream.  Defaults are 64 KiB each.

``CODERUN_EXECUTOR_SLOTS``
    Number of submissions executed in parallel.  Default is 4.

``CODERUN_MAX_PENDING``
    Admission ceiling for queued plus running submissions.  Default is 32.

``CODERUN_PRIORITY_ENABLED``
    If ``true``, lower ``priority`` values are dispatched first instead of
    plain arrival order.  Defaults to ``false``.

``CODERUN_RESULT_RETENTION_SECONDS``
    How long finished results stay available for polling.  Default is 300.

``CODERUN_ISOLATE_NETWORK``
    If ``true``, programs run in a private network namespace (requires
    ``unshare``).  Defaults to ``false``.

``CODERUN_LOG_LEVEL``
    Level of the ``coderun`` logger.  Defaults to ``INFO``.

``PORT``
    Port on which the API server listens.  Defaults to 8080.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List


DEFAULT_LANGS = "python,bash,javascript,ruby,c,java"


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y"}


def _int_var(name: str, default: int, minimum: int = 0) -> int:
    val = os.getenv(name)
    if val is None:
        return default
    try:
        parsed = int(val)
    except ValueError:
        raise ValueError(f"Invalid integer for {name}: {val}")
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {parsed}")
    return parsed


@dataclass
class Config:
    """Centralised configuration object."""

    api_key: str
    storage_backend: str
    storage_path: str
    gcs_bucket: str | None
    sandbox_dir: str
    allowed_langs: List[str]
    max_memory_mb: int
    max_cpu_secs: int
    max_execution_seconds: int
    max_source_bytes: int
    max_output_bytes: int
    executor_slots: int
    max_pending: int
    priority_enabled: bool
    result_retention_seconds: int
    isolate_network: bool
    log_level: str
    port: int

    @classmethod
    def load(cls) -> "Config":
        # API key may be empty in local development but should be set in production.
        api_key = os.getenv("CODERUN_API_KEY", "")

        storage_backend = os.getenv("CODERUN_STORAGE_BACKEND", "local").lower()
        if storage_backend not in {"local", "gcs"}:
            raise ValueError(
                f"Invalid CODERUN_STORAGE_BACKEND: {storage_backend}. Use 'local' or 'gcs'."
            )
        storage_path = os.getenv("CODERUN_STORAGE_PATH", "/tmp/coderun/workspaces")
        gcs_bucket = os.getenv("CODERUN_GCS_BUCKET")
        if storage_backend == "gcs" and not gcs_bucket:
            raise RuntimeError(
                "CODERUN_GCS_BUCKET must be set when using the GCS storage backend"
            )
        sandbox_dir = os.getenv("CODERUN_SANDBOX_DIR", "/tmp/coderun/sandboxes")

        allowed_langs_env = os.getenv("CODERUN_ALLOWED_LANGS", DEFAULT_LANGS)
        allowed_langs = [lang.strip().lower() for lang in allowed_langs_env.split(",") if lang.strip()]

        log_level = os.getenv("CODERUN_LOG_LEVEL", "INFO").upper()

        return cls(
            api_key=api_key,
            storage_backend=storage_backend,
            storage_path=storage_path,
            gcs_bucket=gcs_bucket,
            sandbox_dir=sandbox_dir,
            allowed_langs=allowed_langs,
            max_memory_mb=_int_var("CODERUN_MAX_MEMORY_MB", 256, minimum=16),
            max_cpu_secs=_int_var("CODERUN_MAX_CPU_SECS", 10, minimum=1),
            max_execution_seconds=_int_var("CODERUN_MAX_EXECUTION_SECONDS", 30, minimum=1),
            max_source_bytes=_int_var("CODERUN_MAX_SOURCE_BYTES", 64 * 1024, minimum=1),
            max_output_bytes=_int_var("CODERUN_MAX_OUTPUT_BYTES", 64 * 1024, minimum=1),
            executor_slots=_int_var("CODERUN_EXECUTOR_SLOTS", 4, minimum=1),
            max_pending=_int_var("CODERUN_MAX_PENDING", 32),
            priority_enabled=_parse_bool(os.getenv("CODERUN_PRIORITY_ENABLED"), False),
            result_retention_seconds=_int_var("CODERUN_RESULT_RETENTION_SECONDS", 300, minimum=1),
            isolate_network=_parse_bool(os.getenv("CODERUN_ISOLATE_NETWORK"), False),
            log_level=log_level,
            port=_int_var("PORT", 8080),
        )

    @classmethod
    def from_env(cls) -> "Config":
        """
        Alternate constructor used by the API to load configuration.

        This wrapper calls :meth:`load` to construct the configuration.
        It exists to provide a more intuitive name when consumed in
        application code.
        """
        return cls.load()
