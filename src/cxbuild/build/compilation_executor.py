"""Compilation Executor.

This module handles running the compiler for a single translation unit.

Design:
    - Spawns the compiler with subprocess.Popen so in-flight compiles can be
      terminated on interrupt
    - Writes include flags to a per-object response file (avoids command line
      length limits, and never shared between concurrent compiles)
    - Captures compiler diagnostics on failure as a CompileError
    - Builds the precompiled header, when configured, before any unit
"""

import logging
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Set

from cxbuild.build.flag_builder import FlagBuilder
from cxbuild.errors import CxBuildError
from cxbuild.interrupt_utils import terminate_process_tree

DEFAULT_TIMEOUT = 600


class CompileError(CxBuildError):
    """A translation unit failed to compile."""

    def __init__(self, source: Path, diagnostics: str, returncode: Optional[int] = None):
        self.source = Path(source)
        self.diagnostics = diagnostics
        self.returncode = returncode
        super().__init__(f"Compilation failed for {self.source.name}\n{diagnostics}".rstrip())


class CompilationCancelled(CxBuildError):
    """Raised for units that were skipped or killed because the build was interrupted."""

    pass


@dataclass
class UnitResult:
    """Outcome of one successful compile."""

    source: Path
    object_path: Path
    elapsed: float
    start: float
    command: List[str] = field(default_factory=list)
    warnings: str = ""
    thread: str = "main"


class CompilationExecutor:
    """Executes compile commands with response file support.

    This class handles:
    - Running compiler subprocess commands
    - Generating response files for include paths
    - Tracking live child processes for cancellation
    - Handling compilation errors with clear messages
    """

    def __init__(
        self,
        flag_builder: FlagBuilder,
        include_dirs: Sequence[Path],
        show_progress: bool = True,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        """Initialize compilation executor.

        Args:
            flag_builder: Builds flags for the active toolchain and profile
            include_dirs: Include search path for every unit
            show_progress: Whether to print per-unit progress
            timeout: Per-unit compile timeout in seconds
        """
        self.flag_builder = flag_builder
        self.include_dirs = list(include_dirs)
        self.show_progress = show_progress
        self.timeout = timeout
        self.pch_use_flags: List[str] = []
        self.cancel_event = threading.Event()
        self._procs_lock = threading.Lock()
        self._procs: Set[subprocess.Popen] = set()

    @property
    def toolchain(self):
        return self.flag_builder.toolchain

    def command_for(self, source: Path, object_path: Path) -> List[str]:
        """Command as it would run, with includes inline."""
        return self.flag_builder.command(source, object_path, self.include_dirs)

    def _write_response_file(self, object_path: Path) -> Path:
        """Write include flags next to the object file."""
        response_file = object_path.with_name(object_path.name + ".rsp")
        response_file.parent.mkdir(parents=True, exist_ok=True)
        include_flags = self.flag_builder.include_flags(self.include_dirs)
        with open(response_file, "w", encoding="utf-8") as f:
            f.write("\n".join(f'"{flag}"' if " " in flag else flag for flag in include_flags))
        return response_file

    def _run(self, cmd: List[str], source: Path, cwd: Optional[Path] = None) -> str:
        if self.cancel_event.is_set():
            raise CompilationCancelled(f"Skipped {source.name}: build interrupted")

        logging.debug(f"Running: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                cwd=str(cwd) if cwd else None,
            )
        except FileNotFoundError as e:
            raise CompileError(source, f"Compiler not found: {cmd[0]} ({e})")

        with self._procs_lock:
            self._procs.add(proc)
        try:
            stdout, stderr = proc.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            terminate_process_tree(proc.pid)
            proc.communicate()
            raise CompileError(source, f"Compilation timeout after {self.timeout}s")
        finally:
            with self._procs_lock:
                self._procs.discard(proc)

        if self.cancel_event.is_set() and proc.returncode != 0:
            raise CompilationCancelled(f"Compilation of {source.name} was interrupted")
        if proc.returncode != 0:
            raise CompileError(source, f"{stdout}{stderr}".strip(), proc.returncode)
        return f"{stdout}{stderr}".strip()

    def compile_source(self, source: Path, object_path: Path) -> UnitResult:
        """Compile a single source file.

        Args:
            source: Path to source file
            object_path: Path for output object file

        Returns:
            UnitResult with timing and any warning output

        Raises:
            CompileError: If compilation fails
            CompilationCancelled: If the build was interrupted
        """
        if not source.exists():
            raise CompileError(source, f"Source file not found: {source}")

        object_path.parent.mkdir(parents=True, exist_ok=True)
        response_file = self._write_response_file(object_path)

        cmd = [self.toolchain.compiler]
        cmd.extend(self.flag_builder.compile_flags(source))
        cmd.extend(self.pch_use_flags)
        cmd.append(f"@{response_file}")
        cmd.extend(self.flag_builder.io_flags(source, object_path))

        if self.show_progress:
            print(f"Compiling {source.name}...")

        start = time.time()
        output = self._run(cmd, source)
        elapsed = time.time() - start

        if self.show_progress and output:
            print(output)

        return UnitResult(
            source=source,
            object_path=object_path,
            elapsed=elapsed,
            start=start,
            command=self.command_for(source, object_path),
            warnings=output,
            thread=threading.current_thread().name,
        )

    # Precompiled headers

    def compile_pch(self, header: Path, pch_dir: Path) -> List[Path]:
        """Precompile ``header`` and configure subsequent compiles to use it.

        GCC/Clang: emits ``<pch_dir>/<header>.gch`` next to a copy of the header
        and force-includes that copy with ``-include``. A same-named header in
        the including file's directory can't shadow it.
        MSVC: emits ``.pch`` plus an object that must be linked.

        Returns:
            Extra link inputs (the MSVC pch object), usually empty
        """
        if not header.exists():
            raise CompileError(header, f"Precompiled header not found: {header}")
        pch_dir.mkdir(parents=True, exist_ok=True)
        flags = self.flag_builder.compile_flags(Path(header.stem + ".cpp"))
        response_file = self._write_response_file(pch_dir / header.name)

        if self.toolchain.is_msvc:
            pch_file = pch_dir / f"{header.stem}.pch"
            pch_obj = pch_dir / f"{header.stem}.pch.obj"
            stub = pch_dir / f"{header.stem}.pch.cpp"
            stub.write_text(f'#include "{header.name}"\n', encoding="utf-8")
            cmd = [self.toolchain.compiler] + flags + [
                f"@{response_file}", f"/I{header.parent.as_posix()}",
                f"/Yc{header.name}", f"/Fp{pch_file}", "/c", str(stub), f"/Fo{pch_obj}",
            ]
            self.pch_use_flags = [f"/Yu{header.name}", f"/Fp{pch_file}"]
            extra = [pch_obj]
        else:
            gch = pch_dir / f"{header.name}.gch"
            cmd = [self.toolchain.compiler] + flags + [
                f"@{response_file}", "-x", "c++-header", str(header), "-o", str(gch),
            ]
            extra = []

        if self.show_progress:
            print(f"Precompiling {header.name}...")
        self._run(cmd, header)

        if not self.toolchain.is_msvc:
            self._use_gch(header, pch_dir)
        return extra

    def use_existing_pch(self, header: Path, pch_dir: Path) -> List[Path]:
        """Configure compiles to use a PCH built by an earlier run."""
        if self.toolchain.is_msvc:
            self.pch_use_flags = [f"/Yu{header.name}", f"/Fp{pch_dir / (header.stem + '.pch')}"]
            return [pch_dir / f"{header.stem}.pch.obj"]
        self._use_gch(header, pch_dir)
        return []

    def _use_gch(self, header: Path, pch_dir: Path) -> None:
        # The copy keeps its mtime so #pragma once treats it as the original
        staged = pch_dir / header.name
        shutil.copy2(header, staged)
        self.pch_use_flags = ["-include", str(staged)]

    # Cancellation

    def cancel(self) -> None:
        """Stop starting new compiles and kill the ones in flight."""
        self.cancel_event.set()
        self.terminate_all()

    def terminate_all(self) -> int:
        with self._procs_lock:
            procs = list(self._procs)
        for proc in procs:
            terminate_process_tree(proc.pid)
        return len(procs)
