from __future__ import annotations

import sys
from types import SimpleNamespace

import pytest

from coderun.errors import ValidationError
from coderun.languages import BUILTIN_PROFILES, LanguageProfile, LanguageRegistry


@pytest.fixture
def registry():
    return LanguageRegistry(BUILTIN_PROFILES)


def test_lookup_is_case_insensitive(registry):
    assert registry.get("Python").key == "python"
    assert "ruby" in registry
    assert len(registry) == len(BUILTIN_PROFILES)


def test_unknown_language(registry):
    with pytest.raises(ValidationError, match="cobol"):
        registry.get("cobol")
    with pytest.raises(ValidationError):
        registry.get(None)


def test_for_filename(registry):
    assert registry.for_filename("main.py").key == "python"
    assert registry.for_filename("Main.JAVA").key == "java"
    assert registry.for_filename("notes.txt") is None
    assert registry.for_filename("Makefile") is None


def test_command_rendering(registry):
    c = registry.get("c")
    assert c.needs_build
    assert c.build_args("main.c") == ["gcc", "-O2", "-o", "main", "main.c", "-lm"]
    assert c.run_args("main.c") == ["./main"]

    java = registry.get("java")
    assert java.entry_name == "Main.java"
    assert java.run_args("Main.java")[-1] == "Main"

    python = registry.get("python")
    assert not python.needs_build
    assert python.run_args("main.py") == [sys.executable, "main.py"]
    assert python.entry_name == "main.py"


def test_profiles_are_immutable(registry):
    with pytest.raises(AttributeError):
        registry.get("python").default_timeout = 99


def test_from_config_filters(registry):
    limited = LanguageRegistry.from_config(SimpleNamespace(allowed_langs=["python", "bash"]))
    assert [p.key for p in limited] == ["python", "bash"]
    with pytest.raises(ValidationError):
        limited.get("java")


def test_from_config_rejects_unknown():
    with pytest.raises(ValueError, match="fortran"):
        LanguageRegistry.from_config(SimpleNamespace(allowed_langs=["python", "fortran"]))


def test_duplicate_profiles_rejected():
    profile = LanguageProfile(key="x", display_name="X", extension="x", run_command=("x",))
    with pytest.raises(ValueError):
        LanguageRegistry([profile, profile])
