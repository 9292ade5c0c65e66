"""
FastAPI application for the code execution service.

This module wires the language registry, the workspace store, the
submission queue, the sandbox executor and the result reporter together,
registers the HTTP routes and enforces authentication via an API key.
Callers submit code, poll for the result and may cancel a submission;
workspaces hold the multi-file projects edited in the browser.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import FastAPI, File, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response

from ..config import Config
from ..errors import (
    AdmissionRejected,
    CodeRunError,
    Conflict,
    InfrastructureFailure,
    InvariantViolation,
    NotFound,
    ValidationError,
)
from ..executor import SandboxExecutor
from ..languages import LanguageRegistry
from ..models import (
    FileCreateRequest,
    FileInfo,
    FileUpdateRequest,
    FileUploadResponse,
    LanguageInfo,
    SubmissionAccepted,
    SubmissionInfo,
    SubmissionRequest,
    WorkspaceCreateRequest,
    WorkspaceInfo,
    WorkspaceRunRequest,
)
from ..reporter import ResultReporter
from ..storage import GCSStorageBackend, LocalStorageBackend, StorageBackend
from ..submission_queue import SubmissionQueue
from ..submissions import Submission
from ..workspaces import WorkspaceStore


logger = logging.getLogger("coderun")

if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter("[coderun] %(levelname)s - %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)


config = Config.from_env()
logger.setLevel(config.log_level)

logger.info(
    "Loaded config: storage_backend=%s, storage_path=%s, allowed_langs=%s, slots=%s, max_pending=%s, max_exec=%s",
    config.storage_backend,
    config.storage_path,
    config.allowed_langs,
    config.executor_slots,
    config.max_pending,
    config.max_execution_seconds,
)

registry = LanguageRegistry.from_config(config)

if config.storage_backend == "gcs":
    if config.gcs_bucket is None:
        raise RuntimeError("CODERUN_GCS_BUCKET must be set when using GCS storage backend")
    storage: StorageBackend = GCSStorageBackend(config.gcs_bucket)
else:
    storage = LocalStorageBackend(Path(config.storage_path))

workspaces = WorkspaceStore(storage, registry, max_file_bytes=config.max_source_bytes)

executor = SandboxExecutor(
    Path(config.sandbox_dir),
    max_execution_seconds=config.max_execution_seconds,
    max_memory_mb=config.max_memory_mb,
    max_cpu_secs=config.max_cpu_secs,
    max_output_bytes=config.max_output_bytes,
    isolate_network=config.isolate_network,
)
reporter = ResultReporter(retention_seconds=config.result_retention_seconds)
queue = SubmissionQueue(
    executor,
    reporter,
    registry,
    slots=config.executor_slots,
    max_pending=config.max_pending,
    max_source_bytes=config.max_source_bytes,
    priority_enabled=config.priority_enabled,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    queue.start()
    yield
    queue.shutdown()


app = FastAPI(title="Code Execution Service", version="0.1.0", lifespan=lifespan)


ERROR_STATUS = {
    ValidationError: 400,
    NotFound: 404,
    Conflict: 409,
    InvariantViolation: 409,
    AdmissionRejected: 429,
    InfrastructureFailure: 503,
}


@app.exception_handler(CodeRunError)
async def handle_coderun_error(request: Request, exc: CodeRunError) -> JSONResponse:
    status_code = 500
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    headers = {"Retry-After": "1"} if isinstance(exc, AdmissionRejected) else None
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(
        status_code=status_code,
        content={"kind": exc.kind, "detail": exc.detail},
        headers=headers,
    )


@app.middleware("http")
async def authenticate(request, call_next):
    """Middleware to enforce API key authentication on all requests."""
    path = request.url.path
    method = request.method
    client = getattr(request.client, "host", "unknown")

    logger.info("Incoming request: %s %s from %s", method, path, client)

    if config.api_key:
        provided_key = request.headers.get("x-api-key")
        if provided_key != config.api_key:
            logger.warning("Invalid API key for %s %s from %s", method, path, client)
            return JSONResponse(status_code=401, content={"kind": "Unauthorized", "detail": "Invalid API key"})

    response = await call_next(request)
    logger.info("Response: %s %s -> %s", method, path, response.status_code)
    return response


@app.get("/health")
async def health() -> Dict[str, str]:
    """Return a simple health check response."""
    return {"status": "ok"}


@app.get("/languages", response_model=List[LanguageInfo])
async def list_languages() -> List[LanguageInfo]:
    """List the languages this deployment can run."""
    return [LanguageInfo.from_profile(profile) for profile in registry]


# -- submissions ---------------------------------------------------------


@app.post("/submissions", response_model=SubmissionAccepted, status_code=202)
async def create_submission(req: SubmissionRequest) -> SubmissionAccepted:
    """Queue a single source file for execution."""
    submission = Submission(
        language=req.language,
        source=req.source,
        entry_file=req.entry_file or "",
        stdin=req.stdin,
        priority=req.priority,
        timeout_seconds=req.timeout_seconds,
    )
    queue.submit(submission)
    return SubmissionAccepted(submission_id=submission.id, status=submission.status)


@app.get("/submissions/{submission_id}", response_model=SubmissionInfo, response_model_exclude_none=True)
async def get_submission(submission_id: str) -> SubmissionInfo:
    """Return the status of a submission and, once finished, its result.

    The queue publishes the report before it forgets a submission, so a
    submission missing from the queue is either reported or unknown.
    """
    submission = queue.get(submission_id)
    if submission is not None:
        return SubmissionInfo.from_submission(submission)
    report = reporter.report(submission_id)
    if report is None:
        raise NotFound(f"Submission {submission_id} not found")
    return SubmissionInfo.from_report(report)


@app.delete("/submissions/{submission_id}", status_code=204)
def cancel_submission(submission_id: str) -> Response:
    """Cancel a submission; blocks until its processes are gone."""
    if queue.cancel(submission_id):
        return Response(status_code=204)
    if reporter.report(submission_id) is not None:
        # Already finished: the result stays as it is.
        return Response(status_code=204)
    if queue.get(submission_id) is not None:
        raise InfrastructureFailure(f"Submission {submission_id} could not be stopped")
    raise NotFound(f"Submission {submission_id} not found")


# -- workspaces ----------------------------------------------------------


@app.post("/workspaces", response_model=WorkspaceInfo, status_code=201)
async def create_workspace(req: WorkspaceCreateRequest) -> WorkspaceInfo:
    """Create a workspace holding one sample file of the chosen language."""
    workspace = workspaces.create(req.owner_id, language=req.language, workspace_id=req.workspace_id)
    return WorkspaceInfo.from_workspace(workspace)


@app.get("/workspaces", response_model=List[WorkspaceInfo])
async def list_workspaces(owner_id: Optional[str] = Query(default=None, alias="ownerId")) -> List[WorkspaceInfo]:
    return [WorkspaceInfo.from_workspace(w) for w in workspaces.list_workspaces(owner_id)]


@app.get("/workspaces/{workspace_id}", response_model=WorkspaceInfo)
async def get_workspace(workspace_id: str) -> WorkspaceInfo:
    return WorkspaceInfo.from_workspace(workspaces.get(workspace_id))


@app.delete("/workspaces/{workspace_id}", status_code=204)
async def delete_workspace(workspace_id: str) -> Response:
    """Delete a workspace and all of its files."""
    workspaces.delete_workspace(workspace_id)
    return Response(status_code=204)


@app.get("/workspaces/{workspace_id}/files", response_model=List[FileInfo])
async def list_files(workspace_id: str) -> List[FileInfo]:
    return [FileInfo.from_file(f) for f in workspaces.list_files(workspace_id)]


@app.post("/workspaces/{workspace_id}/files", response_model=FileInfo, status_code=201)
async def create_file(workspace_id: str, req: FileCreateRequest) -> FileInfo:
    created = workspaces.add_file(workspace_id, name=req.name, content=req.content, language=req.language)
    return FileInfo.from_file(created)


@app.post("/workspaces/{workspace_id}/files/upload", response_model=FileUploadResponse)
async def upload_files(workspace_id: str, files: List[UploadFile] = File(...)) -> FileUploadResponse:
    """Upload one or more text files; existing files with the same name are overwritten."""
    workspaces.get(workspace_id)
    saved_paths: List[str] = []
    for upload in files:
        name = Path(upload.filename or "").name
        try:
            content = (await upload.read()).decode("utf-8")
        except UnicodeDecodeError:
            raise ValidationError(f"File {name!r} is not UTF-8 text")
        try:
            workspaces.add_file(workspace_id, name=name, content=content)
        except Conflict:
            workspaces.update_file(workspace_id, name, content=content)
        saved_paths.append(name)
    return FileUploadResponse(paths=saved_paths)


@app.get("/workspaces/{workspace_id}/files/{name}", response_model=FileInfo)
async def read_file(workspace_id: str, name: str) -> FileInfo:
    return FileInfo.from_file(workspaces.read_file(workspace_id, name))


@app.patch("/workspaces/{workspace_id}/files/{name}", response_model=FileInfo)
async def update_file(workspace_id: str, name: str, req: FileUpdateRequest) -> FileInfo:
    """Rename a file and/or replace its content."""
    updated = workspaces.update_file(workspace_id, name, content=req.content, new_name=req.new_name)
    return FileInfo.from_file(updated)


@app.delete("/workspaces/{workspace_id}/files/{name}", status_code=204)
async def delete_file(workspace_id: str, name: str) -> Response:
    workspaces.delete(workspace_id, name)
    return Response(status_code=204)


@app.post("/workspaces/{workspace_id}/submissions", response_model=SubmissionAccepted, status_code=202)
async def run_workspace(workspace_id: str, req: WorkspaceRunRequest) -> SubmissionAccepted:
    """Queue the current files of a workspace for execution.

    The files are copied into the submission, so later edits to the
    workspace do not affect a run that is already queued.
    """
    workspace = workspaces.get(workspace_id)
    entry = workspace.file(req.entry_file) if req.entry_file else workspace.files[0]
    if entry is None:
        raise NotFound(f"File {req.entry_file!r} not found in workspace {workspace_id}")
    language = entry.language
    if language is None:
        raise ValidationError(f"Cannot tell the language of {entry.name!r}")
    submission = Submission(
        language=language,
        source=entry.content,
        entry_file=entry.name,
        files={f.name: f.content for f in workspace.files},
        stdin=req.stdin,
        priority=req.priority,
        timeout_seconds=req.timeout_seconds,
    )
    queue.submit(submission)
    return SubmissionAccepted(submission_id=submission.id, status=submission.status)
