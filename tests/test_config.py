from __future__ import annotations

import pytest

from coderun.config import Config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in [
        "CODERUN_STORAGE_BACKEND",
        "CODERUN_GCS_BUCKET",
        "CODERUN_ALLOWED_LANGS",
        "CODERUN_MAX_MEMORY_MB",
        "CODERUN_EXECUTOR_SLOTS",
        "CODERUN_MAX_PENDING",
        "CODERUN_PRIORITY_ENABLED",
        "CODERUN_LOG_LEVEL",
    ]:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = Config.from_env()
    assert config.storage_backend == "local"
    assert config.allowed_langs == ["python", "bash", "javascript", "ruby", "c", "java"]
    assert config.max_memory_mb == 256
    assert config.executor_slots == 4
    assert config.max_pending == 32
    assert config.priority_enabled is False
    assert config.log_level == "INFO"


def test_overrides(monkeypatch):
    monkeypatch.setenv("CODERUN_ALLOWED_LANGS", " Python, bash ,")
    monkeypatch.setenv("CODERUN_EXECUTOR_SLOTS", "2")
    monkeypatch.setenv("CODERUN_PRIORITY_ENABLED", "yes")
    monkeypatch.setenv("CODERUN_LOG_LEVEL", "debug")
    config = Config.from_env()
    assert config.allowed_langs == ["python", "bash"]
    assert config.executor_slots == 2
    assert config.priority_enabled is True
    assert config.log_level == "DEBUG"


def test_invalid_integer(monkeypatch):
    monkeypatch.setenv("CODERUN_MAX_MEMORY_MB", "lots")
    with pytest.raises(ValueError, match="CODERUN_MAX_MEMORY_MB"):
        Config.from_env()


def test_slots_must_be_positive(monkeypatch):
    monkeypatch.setenv("CODERUN_EXECUTOR_SLOTS", "0")
    with pytest.raises(ValueError, match=">= 1"):
        Config.from_env()


def test_invalid_backend(monkeypatch):
    monkeypatch.setenv("CODERUN_STORAGE_BACKEND", "s3")
    with pytest.raises(ValueError):
        Config.from_env()


def test_gcs_requires_bucket(monkeypatch):
    monkeypatch.setenv("CODERUN_STORAGE_BACKEND", "gcs")
    with pytest.raises(RuntimeError, match="CODERUN_GCS_BUCKET"):
        Config.from_env()
