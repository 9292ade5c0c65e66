"""Pydantic models for request and response bodies.

These models express the structure of the HTTP API.  JSON field names are
camelCase (``entryFile``, ``submissionId``, ``exitCode``) to suit the
browser editor that consumes the service; snake_case names are accepted on
input as well.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .executor import ExecutionResult
from .languages import LanguageProfile
from .reporter import Report
from .submissions import Submission, SubmissionStatus
from .workspaces import Workspace, WorkspaceFile


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorResponse(ApiModel):
    """Body of every error response."""

    kind: str
    detail: str


class LanguageInfo(ApiModel):
    key: str
    display_name: str
    extension: str
    default_entry: str
    default_timeout: int
    compiled: bool
    sample_code: str

    @classmethod
    def from_profile(cls, profile: LanguageProfile) -> "LanguageInfo":
        return cls(
            key=profile.key,
            display_name=profile.display_name,
            extension=profile.extension,
            default_entry=profile.entry_name,
            default_timeout=profile.default_timeout,
            compiled=profile.needs_build,
            sample_code=profile.sample_code,
        )


class SubmissionRequest(ApiModel):
    """Request body for running a single source file."""

    language: str = Field(..., description="Language key, see GET /languages.")
    source: str = Field(..., description="Source code of the entry file.")
    entry_file: Optional[str] = Field(
        default=None,
        description="Entry filename. Defaults to the language's main file (main.py, Main.java, ...).",
    )
    stdin: Optional[str] = Field(default=None, description="Standard input to pass to the program.")
    timeout_seconds: Optional[int] = Field(default=None, ge=1, description="Wall clock timeout.")
    priority: int = Field(default=0, description="Lower runs first when priorities are enabled.")


class WorkspaceRunRequest(ApiModel):
    """Request body for running the files of a workspace."""

    entry_file: Optional[str] = Field(
        default=None, description="File to run. Defaults to the first file of the workspace."
    )
    stdin: Optional[str] = None
    timeout_seconds: Optional[int] = Field(default=None, ge=1)
    priority: int = 0


class SubmissionAccepted(ApiModel):
    submission_id: str
    status: SubmissionStatus


class ExecutionResultBody(ApiModel):
    stdout: str
    stderr: str
    exit_code: Optional[int] = None
    signal: Optional[int] = None
    wall_time_ms: int
    truncated: bool

    @classmethod
    def from_result(cls, result: ExecutionResult) -> "ExecutionResultBody":
        return cls(
            stdout=result.stdout.decode("utf-8", errors="replace"),
            stderr=result.stderr.decode("utf-8", errors="replace"),
            exit_code=result.exit_code,
            signal=result.signal,
            wall_time_ms=int(result.wall_time * 1000),
            truncated=result.truncated,
        )


class SubmissionInfo(ApiModel):
    """Response body for polling a submission."""

    submission_id: str
    language: str
    status: SubmissionStatus
    result: Optional[ExecutionResultBody] = None
    error: Optional[ErrorResponse] = None

    @classmethod
    def from_submission(cls, submission: Submission) -> "SubmissionInfo":
        return cls(submission_id=submission.id, language=submission.language, status=submission.status)

    @classmethod
    def from_report(cls, report: Report) -> "SubmissionInfo":
        error = None
        if report.error is not None:
            error = ErrorResponse(kind=report.error.kind, detail=report.error.detail)
        return cls(
            submission_id=report.submission_id,
            language=report.language,
            status=report.status,
            result=ExecutionResultBody.from_result(report.result),
            error=error,
        )


class FileCreateRequest(ApiModel):
    name: Optional[str] = Field(default=None, description="Defaults to file<N>.<ext>.")
    content: str = ""
    language: Optional[str] = None


class FileUpdateRequest(ApiModel):
    new_name: Optional[str] = None
    content: Optional[str] = None


class FileInfo(ApiModel):
    name: str
    content: str
    language: Optional[str] = None

    @classmethod
    def from_file(cls, f: WorkspaceFile) -> "FileInfo":
        return cls(name=f.name, content=f.content, language=f.language)


class WorkspaceCreateRequest(ApiModel):
    owner_id: str = Field(..., min_length=1)
    language: str = "python"
    workspace_id: Optional[str] = None


class WorkspaceInfo(ApiModel):
    """Metadata about a workspace and its files."""

    workspace_id: str
    owner_id: str
    created_at: datetime
    files: List[FileInfo] = Field(default_factory=list)

    @classmethod
    def from_workspace(cls, workspace: Workspace) -> "WorkspaceInfo":
        return cls(
            workspace_id=workspace.id,
            owner_id=workspace.owner_id,
            created_at=workspace.created_at,
            files=[FileInfo.from_file(f) for f in workspace.files],
        )


class FileUploadResponse(ApiModel):
    """Response after uploading files."""

    paths: List[str] = Field(..., description="Names of the files stored in the workspace.")
