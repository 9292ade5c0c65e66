"""Storage backend abstractions for workspaces.

Each workspace is persisted as documents stored under its id.  To decouple
the workspace store from the underlying storage mechanism, an abstract
backend is defined with a common interface.  Two concrete backends are
provided:

* ``LocalStorageBackend`` – stores documents on the local filesystem under a
  configurable base directory.  Writes go to a temporary file that is then
  renamed over the target, so a reader sees either the old or the new
  document, never a partial one.  Suitable for docker-compose deployments
  with a mounted volume.

* ``GCSStorageBackend`` – stores documents in Google Cloud Storage.  A blob
  upload replaces the object in one step.  Suitable when deploying to Cloud
  Run and requiring durable cross-instance storage.

Backends do not lock; callers serialise writes to the same workspace.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import List

try:
    from google.cloud import storage  # type: ignore
except ImportError:
    storage = None  # type: ignore


class StorageBackend:
    """Protocol for storage backends."""

    def save(self, workspace_id: str, name: str, content: bytes) -> str:
        raise NotImplementedError

    def open(self, workspace_id: str, name: str) -> bytes:
        """Return the stored bytes; raise ``FileNotFoundError`` when missing."""
        raise NotImplementedError

    def exists(self, workspace_id: str, name: str) -> bool:
        raise NotImplementedError

    def list_workspaces(self) -> List[str]:
        raise NotImplementedError

    def delete_workspace(self, workspace_id: str) -> None:
        raise NotImplementedError


class LocalStorageBackend(StorageBackend):
    """Store workspace documents on a local filesystem."""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _workspace_dir(self, workspace_id: str) -> Path:
        return self.base_dir / workspace_id

    def save(self, workspace_id: str, name: str, content: bytes) -> str:
        workspace_dir = self._workspace_dir(workspace_id)
        workspace_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{name}.", dir=str(workspace_dir))
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
            os.replace(tmp_name, workspace_dir / name)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        # Return a path relative to the storage root for API clients
        return f"{workspace_id}/{name}"

    def open(self, workspace_id: str, name: str) -> bytes:
        return (self._workspace_dir(workspace_id) / name).read_bytes()

    def exists(self, workspace_id: str, name: str) -> bool:
        return (self._workspace_dir(workspace_id) / name).is_file()

    def list_workspaces(self) -> List[str]:
        if not self.base_dir.exists():
            return []
        return sorted(p.name for p in self.base_dir.iterdir() if p.is_dir())

    def delete_workspace(self, workspace_id: str) -> None:
        workspace_dir = self._workspace_dir(workspace_id)
        if not workspace_dir.exists():
            raise FileNotFoundError(workspace_id)
        shutil.rmtree(workspace_dir)


class GCSStorageBackend(StorageBackend):
    """Store workspace documents in Google Cloud Storage.

    Documents are stored under the prefix ``workspace_id/``.  This backend
    requires ``google-cloud-storage`` to be installed and appropriate service
    credentials to be available (Cloud Run automatically provides credentials
    via its service account).
    """

    def __init__(self, bucket_name: str) -> None:
        if storage is None:
            raise RuntimeError(
                "google-cloud-storage is not installed; cannot use GCSStorageBackend"
            )
        client = storage.Client()
        self.bucket = client.bucket(bucket_name)

    def save(self, workspace_id: str, name: str, content: bytes) -> str:
        blob_name = f"{workspace_id}/{name}"
        blob = self.bucket.blob(blob_name)
        blob.upload_from_string(content)
        return blob_name

    def open(self, workspace_id: str, name: str) -> bytes:
        blob = self.bucket.blob(f"{workspace_id}/{name}")
        if not blob.exists():
            raise FileNotFoundError(f"{workspace_id}/{name}")
        return blob.download_as_bytes()

    def exists(self, workspace_id: str, name: str) -> bool:
        return self.bucket.blob(f"{workspace_id}/{name}").exists()

    def list_workspaces(self) -> List[str]:
        ids = set()
        for blob in self.bucket.list_blobs():
            if "/" in blob.name:
                ids.add(blob.name.split("/", 1)[0])
        return sorted(ids)

    def delete_workspace(self, workspace_id: str) -> None:
        prefix = f"{workspace_id}/"
        blobs = list(self.bucket.list_blobs(prefix=prefix))
        if not blobs:
            raise FileNotFoundError(workspace_id)
        for blob in blobs:
            blob.delete()
