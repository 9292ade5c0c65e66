"""Workspace store: multi-file projects owned by one user or session.

A workspace is an ordered set of uniquely named files and always contains
at least one of them.  It is persisted as a single JSON document through a
:class:`~coderun.storage.StorageBackend`, and every mutation rewrites that
document while holding the workspace's lock.  A rename or delete therefore
either happens completely or not at all, and mutations of one workspace are
applied one at a time.  Different workspaces never wait on each other.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import re
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Tuple

from .errors import Conflict, InvariantViolation, NotFound, ValidationError
from .languages import LanguageRegistry
from .storage import StorageBackend
from .submissions import validate_filename


logger = logging.getLogger("coderun.workspaces")

DOCUMENT = "workspace.json"
_WORKSPACE_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


@dataclass(frozen=True)
class WorkspaceFile:
    name: str
    content: str = ""
    language: Optional[str] = None


@dataclass(frozen=True)
class Workspace:
    id: str
    owner_id: str
    created_at: datetime
    files: Tuple[WorkspaceFile, ...]

    def file(self, name: str) -> Optional[WorkspaceFile]:
        for f in self.files:
            if f.name == name:
                return f
        return None

    @property
    def names(self) -> List[str]:
        return [f.name for f in self.files]

    def to_document(self) -> bytes:
        return json.dumps(
            {
                "id": self.id,
                "owner_id": self.owner_id,
                "created_at": self.created_at.isoformat(),
                "files": [dataclasses.asdict(f) for f in self.files],
            }
        ).encode("utf-8")

    @classmethod
    def from_document(cls, raw: bytes) -> "Workspace":
        data = json.loads(raw.decode("utf-8"))
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            files=tuple(WorkspaceFile(**f) for f in data["files"]),
        )


class _WorkspaceLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0


class WorkspaceStore:
    """CRUD over the files of workspaces, serialised per workspace."""

    def __init__(
        self,
        storage: StorageBackend,
        registry: LanguageRegistry,
        max_file_bytes: Optional[int] = None,
    ) -> None:
        self.storage = storage
        self.registry = registry
        self.max_file_bytes = max_file_bytes
        self._locks: Dict[str, _WorkspaceLock] = {}
        self._locks_guard = threading.Lock()

    # -- workspaces ------------------------------------------------------

    def create(
        self,
        owner_id: str,
        language: str = "python",
        workspace_id: Optional[str] = None,
    ) -> Workspace:
        """Create a workspace holding the language's default file and sample code."""
        profile = self.registry.get(language)
        workspace_id = self._check_id(workspace_id or uuid.uuid4().hex)
        if not owner_id:
            raise ValidationError("owner_id must not be empty")
        with self._lock(workspace_id):
            if self.storage.exists(workspace_id, DOCUMENT):
                raise Conflict(f"Workspace {workspace_id} already exists")
            workspace = Workspace(
                id=workspace_id,
                owner_id=owner_id,
                created_at=datetime.now(timezone.utc),
                files=(WorkspaceFile(profile.entry_name, profile.sample_code, profile.key),),
            )
            self._save(workspace)
        logger.info("Created workspace %s for owner %s", workspace_id, owner_id)
        return workspace

    def get(self, workspace_id: str) -> Workspace:
        with self._lock(workspace_id):
            return self._load(workspace_id)

    def list_workspaces(self, owner_id: Optional[str] = None) -> List[Workspace]:
        workspaces = []
        for workspace_id in self.storage.list_workspaces():
            try:
                workspace = self.get(workspace_id)
            except NotFound:
                continue
            if owner_id is None or workspace.owner_id == owner_id:
                workspaces.append(workspace)
        return workspaces

    def delete_workspace(self, workspace_id: str) -> None:
        with self._lock(workspace_id):
            self._load(workspace_id)
            self.storage.delete_workspace(workspace_id)
        logger.info("Deleted workspace %s", workspace_id)

    # -- files -----------------------------------------------------------

    def list_files(self, workspace_id: str) -> Tuple[WorkspaceFile, ...]:
        return self.get(workspace_id).files

    def read_file(self, workspace_id: str, name: str) -> WorkspaceFile:
        workspace = self.get(workspace_id)
        found = workspace.file(name)
        if found is None:
            raise NotFound(f"File {name!r} not found in workspace {workspace_id}")
        return found

    def add_file(
        self,
        workspace_id: str,
        name: Optional[str] = None,
        content: str = "",
        language: Optional[str] = None,
    ) -> WorkspaceFile:
        self._check_size(content)
        with self._lock(workspace_id):
            workspace = self._load(workspace_id)
            if name is None:
                name = self._default_name(workspace, language)
            validate_filename(name)
            if workspace.file(name) is not None:
                raise Conflict(f"File {name!r} already exists in workspace {workspace_id}")
            new_file = WorkspaceFile(name, content, self._language_for(name, language))
            self._save(dataclasses.replace(workspace, files=workspace.files + (new_file,)))
        logger.info("Added %s to workspace %s", name, workspace_id)
        return new_file

    def update_file(
        self,
        workspace_id: str,
        name: str,
        content: Optional[str] = None,
        new_name: Optional[str] = None,
    ) -> WorkspaceFile:
        """Change the content and/or the name of a file in one atomic step.

        Renaming onto a name already used by another file raises
        ``Conflict`` and leaves the workspace untouched.
        """
        if content is not None:
            self._check_size(content)
        with self._lock(workspace_id):
            workspace = self._load(workspace_id)
            current = workspace.file(name)
            if current is None:
                raise NotFound(f"File {name!r} not found in workspace {workspace_id}")
            updated = current
            if new_name is not None and new_name != name:
                validate_filename(new_name)
                if workspace.file(new_name) is not None:
                    raise Conflict(f"File {new_name!r} already exists in workspace {workspace_id}")
                language = current.language
                if self.registry.for_filename(new_name) is not None:
                    language = self._language_for(new_name, None)
                updated = dataclasses.replace(updated, name=new_name, language=language)
            if content is not None:
                updated = dataclasses.replace(updated, content=content)
            files = tuple(updated if f.name == name else f for f in workspace.files)
            self._save(dataclasses.replace(workspace, files=files))
        if updated.name != name:
            logger.info("Renamed %s to %s in workspace %s", name, updated.name, workspace_id)
        return updated

    def rename(self, workspace_id: str, name: str, new_name: str) -> WorkspaceFile:
        return self.update_file(workspace_id, name, new_name=new_name)

    def delete(self, workspace_id: str, name: str) -> None:
        """Delete a file; refuse to delete the last one."""
        with self._lock(workspace_id):
            workspace = self._load(workspace_id)
            if workspace.file(name) is None:
                raise NotFound(f"File {name!r} not found in workspace {workspace_id}")
            if len(workspace.files) == 1:
                raise InvariantViolation("A workspace must keep at least one file")
            files = tuple(f for f in workspace.files if f.name != name)
            self._save(dataclasses.replace(workspace, files=files))
        logger.info("Deleted %s from workspace %s", name, workspace_id)

    # -- helpers ---------------------------------------------------------

    @contextmanager
    def _lock(self, workspace_id: str) -> Iterator[None]:
        """Hold the workspace's lock.

        Entries exist only while some thread holds or waits for them, so
        lookups of unknown ids and deleted workspaces leave nothing behind.
        """
        if not _WORKSPACE_ID.match(workspace_id):
            raise NotFound(f"Workspace {workspace_id} not found")
        with self._locks_guard:
            entry = self._locks.get(workspace_id)
            if entry is None:
                entry = self._locks[workspace_id] = _WorkspaceLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[workspace_id]

    def _check_id(self, workspace_id: str) -> str:
        if not _WORKSPACE_ID.match(workspace_id):
            raise ValidationError(f"Invalid workspace id: {workspace_id!r}")
        return workspace_id

    def _check_size(self, content: str) -> None:
        if self.max_file_bytes is not None and len(content.encode("utf-8")) > self.max_file_bytes:
            raise ValidationError(f"File content exceeds {self.max_file_bytes} bytes")

    def _load(self, workspace_id: str) -> Workspace:
        if not _WORKSPACE_ID.match(workspace_id):
            raise NotFound(f"Workspace {workspace_id} not found")
        try:
            raw = self.storage.open(workspace_id, DOCUMENT)
        except FileNotFoundError:
            raise NotFound(f"Workspace {workspace_id} not found")
        return Workspace.from_document(raw)

    def _save(self, workspace: Workspace) -> None:
        self.storage.save(workspace.id, DOCUMENT, workspace.to_document())

    def _language_for(self, name: str, language: Optional[str]) -> Optional[str]:
        if language is not None:
            return self.registry.get(language).key
        profile = self.registry.for_filename(name)
        return profile.key if profile is not None else None

    def _default_name(self, workspace: Workspace, language: Optional[str]) -> str:
        if language is not None:
            extension = self.registry.get(language).extension
        else:
            first = workspace.files[0]
            extension = first.name.rsplit(".", 1)[-1] if "." in first.name else "txt"
        number = len(workspace.files) + 1
        while workspace.file(f"file{number}.{extension}") is not None:
            number += 1
        return f"file{number}.{extension}"
