"""Compilation Flag Builder.

This module builds compiler command lines for a translation unit from the
effective profile, the package edition, and dependency contributions.

Design:
    - Flags are written in portable GCC/Clang syntax in cxbuild.ini
    - For MSVC-flavored toolchains, known portable flags are translated
      (-O3 -> /O2, -g -> /Z7, -DX -> /DX, ...); unknown flags pass through
    - The language standard flag comes from the package edition and is only
      applied to sources of the matching language
    - LTO and sanitizers are per-build switches, not profile settings; they
      add flags to both compile and link commands
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from cxbuild.build.source_scanner import is_c_source
from cxbuild.config.manifest import ConfigError
from cxbuild.packages.toolchain import Toolchain

MSVC_TRANSLATIONS: Dict[str, str] = {
    "-O0": "/Od",
    "-O1": "/O1",
    "-O2": "/O2",
    "-O3": "/O2",
    "-Os": "/O1",
    "-g": "/Z7",
    "-Wall": "/W4",
    "-Wextra": "/W4",
    "-Werror": "/WX",
    "-w": "/w",
}

MSVC_STD_OVERRIDES = {
    "c++23": "/std:c++latest",
    "c++11": "/std:c++14",
    "c99": "/std:c11",
    "c89": "/std:c11",
}

SANITIZERS = ("address", "thread", "undefined", "leak", "memory")
EXCLUSIVE_SANITIZERS = {"address", "thread", "memory"}


def translate_flag(flag: str, toolchain: Toolchain) -> str:
    """Translate a portable flag into the toolchain's syntax."""
    if not toolchain.is_msvc:
        if flag.startswith("/D") and len(flag) > 2:
            return "-D" + flag[2:]
        if flag.startswith("/I") and len(flag) > 2:
            return "-I" + flag[2:]
        return flag

    if flag in MSVC_TRANSLATIONS:
        return MSVC_TRANSLATIONS[flag]
    if flag.startswith("-D") and len(flag) > 2:
        return "/D" + flag[2:]
    if flag.startswith("-I") and len(flag) > 2:
        return "/I" + flag[2:]
    return flag


def std_flag(edition: str, source: Path, toolchain: Toolchain) -> List[str]:
    """Language standard flag for ``source``, or nothing if the edition is for the other language."""
    edition = edition.lower()
    edition_is_cpp = edition.startswith("c++")
    if is_c_source(source) == edition_is_cpp:
        return []
    if toolchain.is_msvc:
        return [MSVC_STD_OVERRIDES.get(edition, f"/std:{edition}")]
    return [f"-std={edition}"]


@dataclass(frozen=True)
class Instrumentation:
    """Link-time optimization and sanitizers requested for one build."""

    lto: bool = False
    sanitize: Optional[str] = None

    def sanitizers(self) -> List[str]:
        """Requested sanitizers, validated.

        Raises:
            ConfigError: For an unknown sanitizer or an impossible combination
        """
        if not self.sanitize:
            return []
        kinds = [kind.strip() for kind in self.sanitize.split(",") if kind.strip()]
        unknown = [kind for kind in kinds if kind not in SANITIZERS]
        if unknown:
            raise ConfigError(
                f"Unknown sanitizer {', '.join(unknown)}. Choose from: {', '.join(SANITIZERS)}"
            )
        exclusive = sorted(EXCLUSIVE_SANITIZERS.intersection(kinds))
        if len(exclusive) > 1:
            raise ConfigError(f"Sanitizers {' and '.join(exclusive)} can't be combined")
        return kinds

    def compile_flags(self, toolchain: Toolchain) -> List[str]:
        result: List[str] = []
        if self.lto:
            result.append("/GL" if toolchain.is_msvc else "-flto")
        kinds = self.sanitizers()
        if kinds:
            if toolchain.is_msvc:
                result.extend(f"/fsanitize={kind}" for kind in kinds)
            else:
                result.extend([f"-fsanitize={','.join(kinds)}", "-fno-omit-frame-pointer"])
        return result

    def link_flags(self, toolchain: Toolchain) -> List[str]:
        result: List[str] = []
        if self.lto:
            result.append("/LTCG" if toolchain.is_msvc else "-flto")
        kinds = self.sanitizers()
        if kinds and not toolchain.is_msvc:
            result.append(f"-fsanitize={','.join(kinds)}")
        return result

    def fingerprint(self) -> Dict[str, Any]:
        return {"lto": self.lto, "sanitize": self.sanitizers()}


class FlagBuilder:
    """Builds compile command lines.

    This class handles:
    - Standard selection per source language
    - Profile flags and defines, translated for the toolchain flavor
    - Dependency-provided compile flags (pkg-config)
    - Include flags, kept separate so they can go into a response file
    """

    def __init__(
        self,
        toolchain: Toolchain,
        edition: str,
        flags: Sequence[str] = (),
        defines: Sequence[str] = (),
        dependency_cflags: Sequence[str] = (),
    ):
        """Initialize flag builder.

        Args:
            toolchain: Resolved compiler and flavor
            edition: Package language edition (e.g., "c++20")
            flags: Effective profile flags, in order
            defines: Effective profile defines (NAME or NAME=VALUE)
            dependency_cflags: Extra flags contributed by dependencies
        """
        self.toolchain = toolchain
        self.edition = edition
        self.flags = list(flags)
        self.defines = list(defines)
        self.dependency_cflags = list(dependency_cflags)

    def compile_flags(self, source: Path) -> List[str]:
        """Flags for compiling ``source``, excluding includes and in/out paths."""
        result: List[str] = []
        if self.toolchain.is_msvc:
            result.extend(["/nologo", "/EHsc"])
        result.extend(std_flag(self.edition, source, self.toolchain))
        result.extend(translate_flag(flag, self.toolchain) for flag in self.flags)
        prefix = "/D" if self.toolchain.is_msvc else "-D"
        result.extend(f"{prefix}{define}" for define in self.defines)
        result.extend(translate_flag(flag, self.toolchain) for flag in self.dependency_cflags)
        return result

    def include_flags(self, include_dirs: Sequence[Path]) -> List[str]:
        prefix = "/I" if self.toolchain.is_msvc else "-I"
        return [f"{prefix}{Path(d).as_posix()}" for d in include_dirs]

    def io_flags(self, source: Path, object_path: Path) -> List[str]:
        if self.toolchain.is_msvc:
            return ["/c", str(source), f"/Fo{object_path}"]
        return ["-c", str(source), "-o", str(object_path)]

    def command(self, source: Path, object_path: Path, include_dirs: Sequence[Path]) -> List[str]:
        """Full command line with includes inline (for compile_commands.json)."""
        return (
            [self.toolchain.compiler]
            + self.compile_flags(source)
            + self.include_flags(include_dirs)
            + self.io_flags(source, object_path)
        )
