"""System package discovery through pkg-config.

System packages are never fetched, cached, or installed; pkg-config either
knows them or the dependency fails with a clear message.
"""

import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from cxbuild.packages.git import FetchFailure
from cxbuild.packages.toolchain import ToolchainNotFound


class SystemPackageNotFound(FetchFailure):
    """pkg-config has no entry for the requested package."""

    pass


@dataclass
class SystemPackageInfo:
    """Flags reported by pkg-config for one package."""

    name: str
    version: str
    cflags: List[str] = field(default_factory=list)
    libs: List[str] = field(default_factory=list)
    include_dirs: List[Path] = field(default_factory=list)


class PkgConfig:
    """Queries pkg-config for compile and link flags."""

    def __init__(self, executable: Optional[str] = None, timeout: int = 30):
        self.executable = executable or shutil.which("pkg-config")
        self.timeout = timeout

    def _query(self, package: str, option: str) -> str:
        if not self.executable:
            raise ToolchainNotFound(
                f"pkg-config not found; it is required for system package '{package}'"
            )
        try:
            result = subprocess.run(
                [self.executable, option, package],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise FetchFailure(f"pkg-config:{package}", "pkg-config timed out")

        if result.returncode != 0:
            raise SystemPackageNotFound(
                f"pkg-config:{package}",
                f"system package not found ({result.stderr.strip() or 'no output'}). "
                + "Install it with your system package manager.",
            )
        return result.stdout.strip()

    def query(self, package: str) -> SystemPackageInfo:
        """Look up a system package.

        Raises:
            ToolchainNotFound: If pkg-config isn't installed
            SystemPackageNotFound: If pkg-config doesn't know the package
        """
        version = self._query(package, "--modversion")
        cflags = shlex.split(self._query(package, "--cflags"))
        libs = shlex.split(self._query(package, "--libs"))
        include_dirs = [Path(flag[2:]) for flag in cflags if flag.startswith("-I") and len(flag) > 2]
        return SystemPackageInfo(
            name=package,
            version=version,
            cflags=[flag for flag in cflags if not flag.startswith("-I")],
            libs=libs,
            include_dirs=include_dirs,
        )
