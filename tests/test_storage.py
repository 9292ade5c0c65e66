from __future__ import annotations

import pytest

from coderun import storage as storage_module
from coderun.storage import GCSStorageBackend, LocalStorageBackend


class FakeBlob:
    def __init__(self, bucket, name):
        self.bucket = bucket
        self.name = name

    def exists(self):
        return self.name in self.bucket.objects

    def upload_from_string(self, content):
        self.bucket.objects[self.name] = content

    def download_as_bytes(self):
        return self.bucket.objects[self.name]

    def delete(self):
        del self.bucket.objects[self.name]


class FakeBucket:
    def __init__(self):
        self.objects = {}

    def blob(self, name):
        return FakeBlob(self, name)

    def list_blobs(self, prefix=""):
        return [FakeBlob(self, name) for name in sorted(self.objects) if name.startswith(prefix)]


class FakeClient:
    bucket_instance = None

    def bucket(self, name):
        return self.bucket_instance


class FakeStorageModule:
    Client = FakeClient


@pytest.fixture
def gcs(monkeypatch):
    FakeClient.bucket_instance = FakeBucket()
    monkeypatch.setattr(storage_module, "storage", FakeStorageModule)
    return GCSStorageBackend("coderun-test")


def test_local_roundtrip(tmp_path):
    backend = LocalStorageBackend(tmp_path)
    assert backend.save("ws", "doc.json", b"{}") == "ws/doc.json"
    assert backend.exists("ws", "doc.json")
    assert backend.open("ws", "doc.json") == b"{}"
    backend.save("ws", "doc.json", b"[1]")
    assert backend.open("ws", "doc.json") == b"[1]"
    # no temporary files are left behind
    assert [p.name for p in (tmp_path / "ws").iterdir()] == ["doc.json"]


def test_local_missing(tmp_path):
    backend = LocalStorageBackend(tmp_path)
    assert not backend.exists("ws", "doc.json")
    with pytest.raises(FileNotFoundError):
        backend.open("ws", "doc.json")
    with pytest.raises(FileNotFoundError):
        backend.delete_workspace("ws")


def test_local_list_and_delete(tmp_path):
    backend = LocalStorageBackend(tmp_path)
    backend.save("b", "doc.json", b"1")
    backend.save("a", "doc.json", b"2")
    assert backend.list_workspaces() == ["a", "b"]
    backend.delete_workspace("a")
    assert backend.list_workspaces() == ["b"]


def test_gcs_roundtrip(gcs):
    assert gcs.save("ws", "doc.json", b"{}") == "ws/doc.json"
    assert gcs.exists("ws", "doc.json")
    assert gcs.open("ws", "doc.json") == b"{}"
    with pytest.raises(FileNotFoundError):
        gcs.open("ws", "other.json")


def test_gcs_list_and_delete(gcs):
    gcs.save("b", "doc.json", b"1")
    gcs.save("a", "doc.json", b"2")
    assert gcs.list_workspaces() == ["a", "b"]
    gcs.delete_workspace("a")
    assert gcs.list_workspaces() == ["b"]
    with pytest.raises(FileNotFoundError):
        gcs.delete_workspace("a")


def test_gcs_requires_library(monkeypatch):
    monkeypatch.setattr(storage_module, "storage", None)
    with pytest.raises(RuntimeError, match="google-cloud-storage"):
        GCSStorageBackend("bucket")
