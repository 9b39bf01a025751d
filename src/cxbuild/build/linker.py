"""
Linker wrapper for producing the project executable.

Link order is: project objects, dependency link inputs, dependency link
flags (pkg-config), system libraries, then extra linker flags.
"""

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from cxbuild.build.build_graph import LinkInputs
from cxbuild.errors import CxBuildError
from cxbuild.packages.toolchain import Toolchain

LINK_TIMEOUT = 600


class LinkError(CxBuildError):
    """Raised when linking fails."""

    def __init__(self, message: str, diagnostics: str = ""):
        self.diagnostics = diagnostics
        super().__init__(f"{message}\n{diagnostics}".rstrip())


@dataclass
class LinkResult:
    """Result of linking operation."""

    output_path: Path
    elapsed: float
    command: List[str]
    stdout: str = ""
    stderr: str = ""


class Linker:
    """
    Wrapper for the compiler driver in link mode.

    Links to a temporary path and renames over the final artifact, so a
    failed or interrupted link never leaves a truncated executable behind.
    """

    def __init__(self, toolchain: Toolchain, timeout: int = LINK_TIMEOUT):
        """
        Initialize linker.

        Args:
            toolchain: Compiler used as the link driver
            timeout: Link timeout in seconds
        """
        self.toolchain = toolchain
        self.timeout = timeout

    def _system_lib_flag(self, lib: str) -> str:
        if self.toolchain.is_msvc:
            return lib if lib.endswith(".lib") else f"{lib}.lib"
        return lib if lib.startswith("-l") else f"-l{lib}"

    def build_command(self, link_inputs: LinkInputs, output_path: Path) -> List[str]:
        """
        Assemble the link command line.

        Args:
            link_inputs: Objects, libraries and flags to link
            output_path: Where the linker writes the executable

        Returns:
            Command argument list
        """
        cmd = [self.toolchain.compiler]
        if self.toolchain.is_msvc:
            cmd.append("/nologo")
        cmd.extend(str(obj) for obj in link_inputs.objects)
        cmd.extend(str(lib) for lib in link_inputs.dependency_libs)
        cmd.extend(link_inputs.dependency_link_flags)
        cmd.extend(self._system_lib_flag(lib) for lib in link_inputs.system_libs)

        if self.toolchain.is_msvc:
            cmd.append(f"/Fe:{output_path}")
            if link_inputs.ldflags:
                cmd.append("/link")
                cmd.extend(link_inputs.ldflags)
        else:
            cmd.extend(link_inputs.ldflags)
            cmd.extend(["-o", str(output_path)])
        return cmd

    def link(self, link_inputs: LinkInputs, output_path: Path) -> LinkResult:
        """
        Link object files into an executable.

        Args:
            link_inputs: Objects, libraries and flags to link
            output_path: Final executable path

        Returns:
            LinkResult with timing and tool output

        Raises:
            LinkError: If the link command fails or times out
        """
        if not link_inputs.objects:
            raise LinkError("Nothing to link: the project has no source files")

        output_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = output_path.with_name(f".{output_path.stem}.{os.getpid()}.tmp{output_path.suffix}")
        cmd = self.build_command(link_inputs, temp_path)

        logging.debug(f"Linking: {' '.join(cmd)}")
        start = time.time()
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise LinkError(f"Linker not found: {cmd[0]}", str(e))
        except subprocess.TimeoutExpired:
            self._discard(temp_path)
            raise LinkError(f"Link timeout after {self.timeout}s")

        if result.returncode != 0 or not temp_path.exists():
            self._discard(temp_path)
            raise LinkError(
                f"Linking {output_path.name} failed (exit code {result.returncode})",
                f"{result.stdout}{result.stderr}".strip(),
            )

        os.replace(temp_path, output_path)
        return LinkResult(
            output_path=output_path,
            elapsed=time.time() - start,
            command=self.build_command(link_inputs, output_path),
            stdout=result.stdout,
            stderr=result.stderr,
        )

    @staticmethod
    def _discard(path: Optional[Path]) -> None:
        if path is not None and path.exists():
            try:
                path.unlink()
            except OSError as e:
                logging.debug(f"Could not remove partial link output {path}: {e}")
