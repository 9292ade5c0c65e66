"""Language registry.

Each supported language is described by an immutable :class:`LanguageProfile`
holding the commands used to build and run a program, the file extension,
and the default limits applied to a run.  The registry is built once when
the service starts and is only ever read afterwards.

Command templates are argument lists.  Items may contain the placeholders
``{source}`` (the entry filename, relative to the sandbox directory) and
``{stem}`` (the entry filename without its extension).
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import ValidationError


@dataclass(frozen=True)
class LanguageProfile:
    """Static metadata for one language."""

    key: str
    display_name: str
    extension: str
    run_command: Tuple[str, ...]
    build_command: Tuple[str, ...] = ()
    default_timeout: int = 10
    # None means "use the service wide ceiling"
    memory_mb: Optional[int] = None
    default_entry: str = ""
    sample_code: str = ""

    @property
    def entry_name(self) -> str:
        return self.default_entry or f"main.{self.extension}"

    @property
    def needs_build(self) -> bool:
        return bool(self.build_command)

    def _render(self, template: Iterable[str], entry: str) -> List[str]:
        stem = PurePosixPath(entry).stem
        return [part.format(source=entry, stem=stem) for part in template]

    def build_args(self, entry: str) -> List[str]:
        return self._render(self.build_command, entry)

    def run_args(self, entry: str) -> List[str]:
        return self._render(self.run_command, entry)


BUILTIN_PROFILES: Tuple[LanguageProfile, ...] = (
    LanguageProfile(
        key="python",
        display_name="Python",
        extension="py",
        run_command=(sys.executable, "{source}"),
        sample_code='print("Hello, World!")\n',
    ),
    LanguageProfile(
        key="bash",
        display_name="Bash",
        extension="sh",
        run_command=("bash", "{source}"),
        sample_code='echo "Hello, World!"\n',
    ),
    LanguageProfile(
        key="javascript",
        display_name="JavaScript",
        extension="js",
        run_command=("node", "{source}"),
        # V8 reserves a large virtual address space up front
        memory_mb=4096,
        sample_code='console.log("Hello, World!");\n',
    ),
    LanguageProfile(
        key="ruby",
        display_name="Ruby",
        extension="rb",
        run_command=("ruby", "{source}"),
        sample_code='puts "Hello, World!"\n',
    ),
    LanguageProfile(
        key="c",
        display_name="C",
        extension="c",
        build_command=("gcc", "-O2", "-o", "{stem}", "{source}", "-lm"),
        run_command=("./{stem}",),
        default_timeout=15,
        sample_code='#include <stdio.h>\n\nint main() {\n    printf("Hello, World!\\n");\n    return 0;\n}\n',
    ),
    LanguageProfile(
        key="java",
        display_name="Java",
        extension="java",
        build_command=("javac", "{source}"),
        run_command=("java", "-Xmx256m", "-cp", ".", "{stem}"),
        default_timeout=20,
        memory_mb=4096,
        default_entry="Main.java",
        sample_code=(
            "public class Main {\n"
            "    public static void main(String[] args) {\n"
            '        System.out.println("Hello, World!");\n'
            "    }\n"
            "}\n"
        ),
    ),
)


class LanguageRegistry:
    """Read-only lookup of language profiles by key or file extension."""

    def __init__(self, profiles: Iterable[LanguageProfile]) -> None:
        self._profiles: Dict[str, LanguageProfile] = {}
        self._by_extension: Dict[str, LanguageProfile] = {}
        for profile in profiles:
            if profile.key in self._profiles:
                raise ValueError(f"Duplicate language profile: {profile.key}")
            self._profiles[profile.key] = profile
            self._by_extension.setdefault(profile.extension, profile)

    @classmethod
    def from_config(cls, config) -> "LanguageRegistry":
        """Builtin profiles restricted to ``config.allowed_langs``."""
        known = {p.key for p in BUILTIN_PROFILES}
        unknown = [lang for lang in config.allowed_langs if lang not in known]
        if unknown:
            raise ValueError(f"Unknown languages in CODERUN_ALLOWED_LANGS: {unknown}")
        return cls(p for p in BUILTIN_PROFILES if p.key in config.allowed_langs)

    def get(self, key: Optional[str]) -> LanguageProfile:
        profile = self._profiles.get((key or "").lower())
        if profile is None:
            raise ValidationError(f"Unsupported language: {key}")
        return profile

    def for_filename(self, name: str) -> Optional[LanguageProfile]:
        suffix = PurePosixPath(name).suffix.lstrip(".").lower()
        return self._by_extension.get(suffix)

    def __contains__(self, key: object) -> bool:
        return key in self._profiles

    def __iter__(self) -> Iterator[LanguageProfile]:
        return iter(self._profiles.values())

    def __len__(self) -> int:
        return len(self._profiles)
