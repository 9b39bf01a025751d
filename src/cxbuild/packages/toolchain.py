"""Compiler toolchain selection.

The build core treats a compiler as an opaque invocation string plus a flavor
tag. The flavor only selects flag syntax (POSIX ``-I``/``-D`` versus MSVC
``/I``/``/D``); no version probing happens here.
"""

import os
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from cxbuild.errors import CxBuildError

FALLBACK_COMPILERS = ("c++", "g++", "clang++")
MSVC_NAMES = {"cl", "cl.exe", "clang-cl", "clang-cl.exe"}


class ToolchainNotFound(CxBuildError):
    """Raised when a required compiler or tool isn't installed."""

    pass


class ToolchainFlavor(Enum):
    GCC = "gcc"
    MSVC = "msvc"


@dataclass(frozen=True)
class Toolchain:
    """A resolved compiler."""

    compiler: str
    flavor: ToolchainFlavor = ToolchainFlavor.GCC

    @property
    def is_msvc(self) -> bool:
        return self.flavor == ToolchainFlavor.MSVC

    @property
    def object_suffix(self) -> str:
        return ".obj" if self.is_msvc else ".o"

    def executable_name(self, bin_name: str) -> str:
        if self.is_msvc or os.name == "nt":
            return bin_name if bin_name.endswith(".exe") else f"{bin_name}.exe"
        return bin_name


def detect_flavor(compiler: str) -> ToolchainFlavor:
    name = Path(compiler).name.lower()
    if name in MSVC_NAMES:
        return ToolchainFlavor.MSVC
    return ToolchainFlavor.GCC


def _locate(compiler: str) -> Optional[str]:
    if os.sep in compiler or (os.altsep and os.altsep in compiler):
        return compiler if Path(compiler).exists() else None
    return shutil.which(compiler)


def resolve_toolchain(compiler: Optional[str] = None, has_cpp: bool = True) -> Toolchain:
    """Pick the compiler for a build.

    Order: explicit compiler (manifest/profile), then $CXX (or $CC for pure C
    projects), then the first of c++, g++, clang++ on PATH.

    Args:
        compiler: Compiler named by the effective profile, if any
        has_cpp: Whether the project has C++ sources

    Returns:
        Toolchain with the located compiler

    Raises:
        ToolchainNotFound: If no candidate compiler is installed
    """
    if compiler:
        located = _locate(compiler)
        if located is None:
            raise ToolchainNotFound(
                f"Compiler '{compiler}' not found. Install it or change the profile's compiler."
            )
        return Toolchain(compiler=located, flavor=detect_flavor(compiler))

    env_var = "CXX" if has_cpp else "CC"
    env_compiler = os.environ.get(env_var)
    if env_compiler:
        located = _locate(env_compiler)
        if located is None:
            raise ToolchainNotFound(f"${env_var} names '{env_compiler}', which was not found")
        return Toolchain(compiler=located, flavor=detect_flavor(env_compiler))

    candidates = FALLBACK_COMPILERS if has_cpp else ("cc", "gcc", "clang") + FALLBACK_COMPILERS
    for candidate in candidates:
        located = shutil.which(candidate)
        if located:
            return Toolchain(compiler=located, flavor=detect_flavor(candidate))

    raise ToolchainNotFound(
        f"No C/C++ compiler found (tried {', '.join(candidates)}). "
        + "Install one or set 'compiler' in cxbuild.ini."
    )
