"""
Build orchestration for cxbuild projects.

This module coordinates the entire build process, from parsing cxbuild.ini
to producing the project executable. It integrates all build system
components:
- Configuration parsing (cxbuild.ini, profiles)
- Toolchain selection
- Dependency resolution, fetching, and the lock file
- Source scanning and incremental staleness analysis
- Parallel compilation and linking
- Pre/post build scripts, build trace, and compile database
"""

import logging
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from cxbuild.build.build_graph import BuildGraph, TranslationUnit, relative_source
from cxbuild.build.build_state import BuildState, FileHasher, UnitRecord, global_inputs_hash
from cxbuild.build.compilation_executor import CompilationExecutor, UnitResult
from cxbuild.build.flag_builder import FlagBuilder, Instrumentation
from cxbuild.build.include_scanner import IncludeScanner
from cxbuild.build.linker import Linker
from cxbuild.build.parallel_compiler import CompilationFailedError, ParallelCompiler
from cxbuild.build.script_runner import ScriptFailure, ScriptRunner
from cxbuild.build.source_scanner import SourceScanner
from cxbuild.build.trace import (
    COMPILE_COMMANDS_NAME,
    TRACE_FILE_NAME,
    TraceEvent,
    write_chrome_trace,
    write_compile_commands,
)
from cxbuild.config.manifest import Manifest
from cxbuild.config.manifest_loader import load_manifest
from cxbuild.config.profiles import DEFAULT_PROFILE, EffectiveConfig, ProfileResolver
from cxbuild.errors import CxBuildError
from cxbuild.packages.cache import ArtifactCache
from cxbuild.packages.dependency_resolver import (
    DependencyResolver,
    ResolvedDependency,
    ResolveMode,
    resolved_revisions,
)
from cxbuild.packages.dependency_tree import DependencyNode, build_dependency_tree
from cxbuild.packages.lockfile import LockReport, LockStore
from cxbuild.packages.registry import AliasRegistry
from cxbuild.packages.toolchain import Toolchain, ToolchainNotFound, resolve_toolchain
from cxbuild.packages.vendor import vendor_dependencies

WORK_DIR = ".cxbuild"
BUILD_DIR = "build"


@dataclass
class UnitDiagnostic:
    """Compiler output for one failed translation unit."""

    source: Path
    message: str


@dataclass
class BuildResult:
    """Result of a complete build operation."""

    success: bool
    artifact_path: Optional[Path]
    build_time: float
    message: str
    diagnostics: List[UnitDiagnostic] = field(default_factory=list)
    compiled_units: int = 0
    cached_units: int = 0
    linked: bool = False
    trace_path: Optional[Path] = None
    error: Optional[CxBuildError] = None
    script_error: Optional[ScriptFailure] = None
    dry_run: bool = False
    planned_commands: List[List[str]] = field(default_factory=list)


def build_root(project_dir: Path) -> Path:
    return Path(project_dir) / WORK_DIR / BUILD_DIR


class BuildOrchestrator:
    """
    Orchestrates the complete build process for C/C++ projects.

    This class coordinates all phases of the build:
    1. Parse cxbuild.ini
    2. Resolve the build profile
    3. Select the compiler toolchain
    4. Resolve and fetch dependencies (under the lock file)
    5. Run the pre-build script
    6. Scan source files
    7. Construct the build graph and find stale units
    8. Compile the precompiled header, if configured
    9. Compile stale units in parallel
    10. Link the executable when anything it consumes changed
    11. Write the build trace and compile_commands.json
    12. Run the post-build script

    A dry run stops after step 7 without running the pre-build script. It
    reports the compile and link commands of steps 9 and 10 instead.

    Example usage:
        orchestrator = BuildOrchestrator()
        result = orchestrator.build(project_dir=Path("."), profile="release")
        if result.success:
            print(f"Executable: {result.artifact_path}")
    """

    def __init__(
        self,
        cache: Optional[ArtifactCache] = None,
        verbose: bool = False,
        show_progress: bool = True,
    ):
        """
        Initialize build orchestrator.

        Args:
            cache: Shared artifact cache (defaults to ~/.cxbuild/cache)
            verbose: Enable verbose output
            show_progress: Print per-step progress
        """
        self.cache = cache
        self.verbose = verbose
        self.show_progress = show_progress

    def _cache(self) -> ArtifactCache:
        if self.cache is None:
            self.cache = ArtifactCache()
        return self.cache

    def _load(self, project_dir: Path) -> Manifest:
        registry = AliasRegistry(self._cache().registry_overlay_path)
        return load_manifest(project_dir, registry)

    def _resolver(
        self,
        project_dir: Path,
        manifest: Manifest,
        toolchain: Optional[Toolchain],
        jobs: Optional[int] = None,
    ) -> DependencyResolver:
        return DependencyResolver(
            project_dir,
            manifest,
            self._cache(),
            toolchain=toolchain,
            show_progress=self.show_progress,
            jobs=jobs,
        )

    def _optional_toolchain(self, manifest: Manifest, effective: Optional[EffectiveConfig] = None) -> Optional[Toolchain]:
        """Toolchain for commands that can work without one (lock, sync, vendor)."""
        compiler = effective.compiler if effective else manifest.build.compiler
        try:
            return resolve_toolchain(compiler, has_cpp=manifest.package.edition.startswith("c++"))
        except ToolchainNotFound as e:
            logging.debug(f"No toolchain for dependency builds: {e}")
            return None

    def _phase(self, step: int, text: str) -> None:
        if self.show_progress:
            print(f"[{step}/12] {text}")

    def build(
        self,
        project_dir: Path,
        profile: Optional[str] = None,
        clean: bool = False,
        mode: ResolveMode = ResolveMode.DEFAULT,
        jobs: Optional[int] = None,
        trace: bool = True,
        dry_run: bool = False,
        lto: bool = False,
        sanitize: Optional[str] = None,
    ) -> BuildResult:
        """
        Execute complete build process.

        Args:
            project_dir: Project root directory containing cxbuild.ini
            profile: Profile to build (defaults to "debug")
            clean: Remove this profile's build output first
            mode: Dependency resolution mode (DEFAULT, or LOCKED for --locked)
            jobs: Parallel compile jobs (defaults to CXBUILD_JOBS or CPU count)
            trace: Write build_trace.json and compile_commands.json
            dry_run: Report the commands an actual build would run and stop;
                dependencies are still resolved, nothing is compiled
            lto: Enable link-time optimization
            sanitize: Comma-separated sanitizers (address, thread, undefined,
                leak, memory)

        Returns:
            BuildResult with build status and output paths

        Raises:
            KeyboardInterrupt: After in-flight compiles are stopped and the
                build state is saved
        """
        start_time = time.time()
        project_dir = Path(project_dir).resolve()
        events: List[TraceEvent] = []
        compiled = 0
        cached = 0

        try:
            # Phases 1-3 fail fast and touch nothing on disk
            self._phase(1, "Parsing cxbuild.ini...")
            manifest = self._load(project_dir)

            self._phase(2, f"Resolving profile {profile or DEFAULT_PROFILE}...")
            effective = ProfileResolver(manifest).resolve(profile)
            if self.verbose:
                print(f"      Profile chain: {' -> '.join(effective.chain)}")
                print(f"      Flags: {' '.join(effective.flags)}")

            self._phase(3, "Selecting toolchain...")
            toolchain = resolve_toolchain(
                effective.compiler, has_cpp=manifest.package.edition.startswith("c++")
            )
            if self.verbose:
                print(f"      Compiler: {toolchain.compiler} ({toolchain.flavor.value})")
            instrumentation = Instrumentation(lto=lto, sanitize=sanitize)
            instrumentation_cflags = instrumentation.compile_flags(toolchain)

            profile_dir = build_root(project_dir) / effective.profile
            if clean and profile_dir.exists() and not dry_run:
                shutil.rmtree(profile_dir)

            self._phase(4, "Resolving dependencies...")
            phase_start = time.time()
            resolver = self._resolver(project_dir, manifest, toolchain, jobs)
            resolved = resolver.resolve(LockStore(project_dir), mode)
            events.append(TraceEvent("dependencies", "resolve", phase_start, time.time() - phase_start))

            self._phase(5, "Running pre-build script...")
            runner = ScriptRunner(project_dir, show_progress=self.show_progress)
            if not dry_run:
                runner.run("pre_build", manifest.scripts.pre_build)

            self._phase(6, "Scanning sources...")
            collection = SourceScanner(project_dir).scan(manifest.build.sources, manifest.build.include)
            if not collection.sources:
                raise CxBuildError(f"No source files found in {project_dir}")

            include_dirs = list(collection.include_dirs)
            dependency_cflags: List[str] = []
            dependency_libs: List[Path] = []
            dependency_link_flags: List[str] = []
            for dep in resolved:
                include_dirs.extend(d for d in dep.include_dirs if d not in include_dirs)
                dependency_cflags.extend(dep.cflags)
                dependency_libs.extend(dep.link_inputs)
                dependency_link_flags.extend(dep.link_flags)

            global_hash = global_inputs_hash(
                {
                    **effective.fingerprint(),
                    "include_dirs": [str(d) for d in include_dirs],
                    "dependency_cflags": dependency_cflags,
                    "instrumentation": instrumentation.fingerprint(),
                },
                toolchain.compiler,
                resolved_revisions(resolved),
                manifest.build_section_fingerprint(),
            )

            self._phase(7, "Analyzing build graph...")
            state = BuildState(profile_dir) if dry_run and clean else BuildState.load(profile_dir)
            hasher = FileHasher()
            output_path = profile_dir / toolchain.executable_name(effective.bin_name or "app")
            graph = BuildGraph.construct(
                project_dir,
                build_root(project_dir),
                effective.profile,
                toolchain,
                collection.sources,
                include_dirs,
                global_hash,
                state,
                output_path,
                dependency_libs=dependency_libs,
                dependency_link_flags=dependency_link_flags,
                system_libs=effective.libs,
                ldflags=list(manifest.build.ldflags) + instrumentation.link_flags(toolchain),
                hasher=hasher,
            )

            flag_builder = FlagBuilder(
                toolchain,
                manifest.package.edition,
                list(effective.flags) + instrumentation_cflags,
                effective.defines,
                dependency_cflags,
            )
            executor = CompilationExecutor(flag_builder, include_dirs, show_progress=self.show_progress)

            if dry_run:
                return self._dry_run_result(graph, state, executor, toolchain, start_time)

            self._phase(8, "Preparing precompiled header...")
            pch_objects = self._prepare_pch(
                project_dir, manifest, effective, toolchain, executor, graph, state, include_dirs, hasher, events
            )
            graph.link_inputs.objects.extend(pch_objects)

            stale, fresh = graph.partition(state)
            cached = len(fresh)
            if self.verbose:
                for unit in stale:
                    print(f"      {unit.rel_source}: {graph.stale_reason(unit, state)}")

            self._phase(9, f"Compiling {len(stale)} of {len(graph.units)} units...")
            for unit in stale:
                # A failed compile must not leave an old record claiming freshness
                state.forget_unit(unit.rel_source)

            def on_success(unit: TranslationUnit, result: UnitResult) -> None:
                state.record_unit(unit.rel_source, unit.record())
                events.append(TraceEvent(unit.rel_source, "compile", result.start, result.elapsed, result.thread))

            compiler = ParallelCompiler(executor, jobs)
            try:
                compiler.compile_all(stale, on_success)
            finally:
                compiled = len(compiler.results)
                state.save()

            self._phase(10, "Linking...")
            linked = False
            if graph.needs_link(state, compiled_any=compiled > 0):
                state.invalidate_artifact()
                link_result = Linker(toolchain).link(graph.link_inputs, output_path)
                state.record_artifact(output_path, graph.link_hash())
                state.save()
                linked = True
                events.append(TraceEvent("link", "link", time.time() - link_result.elapsed, link_result.elapsed))
            elif self.show_progress:
                print(f"      {output_path.name} is up to date")

            trace_path = None
            if trace:
                self._phase(11, "Writing build trace...")
                trace_path = write_chrome_trace(profile_dir / TRACE_FILE_NAME, events)
                write_compile_commands(
                    profile_dir / COMPILE_COMMANDS_NAME,
                    project_dir,
                    [(u.source, u.object_path, executor.command_for(u.source, u.object_path)) for u in graph.units],
                )

            self._phase(12, "Running post-build script...")
            script_error = None
            try:
                runner.run("post_build", manifest.scripts.post_build)
            except ScriptFailure as e:
                script_error = e

            build_time = time.time() - start_time
            if self.show_progress:
                print(f"Build time: {build_time:.2f}s ({compiled} compiled, {cached} up to date)")

            return BuildResult(
                success=script_error is None,
                artifact_path=output_path,
                build_time=build_time,
                message="Build successful" if script_error is None else str(script_error),
                compiled_units=compiled,
                cached_units=cached,
                linked=linked,
                trace_path=trace_path,
                error=script_error,
                script_error=script_error,
            )

        except CompilationFailedError as e:
            return BuildResult(
                success=False,
                artifact_path=None,
                build_time=time.time() - start_time,
                message=str(e),
                diagnostics=[UnitDiagnostic(err.source, err.diagnostics) for err in e.errors],
                compiled_units=compiled,
                cached_units=cached,
                error=e,
            )
        except CxBuildError as e:
            return BuildResult(
                success=False,
                artifact_path=None,
                build_time=time.time() - start_time,
                message=str(e),
                compiled_units=compiled,
                cached_units=cached,
                error=e,
            )
        except KeyboardInterrupt as ke:
            from cxbuild.interrupt_utils import handle_keyboard_interrupt_properly
            handle_keyboard_interrupt_properly(ke)
            raise  # Never reached, but satisfies type checker

    def run(
        self,
        project_dir: Path,
        program_args: Sequence[str] = (),
        **build_options: Any,
    ) -> Tuple[BuildResult, Optional[int]]:
        """
        Build, then run the executable from the project directory.

        Args:
            project_dir: Project root directory containing cxbuild.ini
            program_args: Arguments passed to the executable
            **build_options: Forwarded to build()

        Returns:
            (build result, the program's exit code); the exit code is None when
            the build failed or was a dry run

        Raises:
            CxBuildError: If the executable can't be started
        """
        project_dir = Path(project_dir).resolve()
        result = self.build(project_dir, **build_options)
        if not result.success or result.dry_run or result.artifact_path is None:
            if result.dry_run and self.show_progress and result.artifact_path is not None:
                print(f"Would run: {' '.join([str(result.artifact_path), *program_args])}")
            return result, None

        cmd = [str(result.artifact_path), *program_args]
        if self.show_progress:
            print(f"Running {' '.join(cmd)}")
        logging.info(f"Running {cmd} in {project_dir}")
        try:
            proc = subprocess.run(cmd, cwd=str(project_dir))
        except OSError as e:
            raise CxBuildError(f"Cannot run {result.artifact_path}: {e}")
        return result, proc.returncode

    def _dry_run_result(
        self,
        graph: BuildGraph,
        state: BuildState,
        executor: CompilationExecutor,
        toolchain: Toolchain,
        start_time: float,
    ) -> BuildResult:
        """Report what a build would run, without running anything."""
        stale, fresh = graph.partition(state)
        commands = [executor.command_for(u.source, u.object_path) for u in stale]
        if graph.needs_link(state, compiled_any=bool(stale)):
            commands.append(Linker(toolchain).build_command(graph.link_inputs, graph.output_path))

        if self.show_progress:
            print(f"Dry run: {len(stale)} of {len(graph.units)} units would compile")
            for cmd in commands:
                print(f"      {' '.join(cmd)}")

        return BuildResult(
            success=True,
            artifact_path=graph.output_path,
            build_time=time.time() - start_time,
            message="Dry run complete, no commands were executed",
            cached_units=len(fresh),
            dry_run=True,
            planned_commands=commands,
        )

    def _prepare_pch(
        self,
        project_dir: Path,
        manifest: Manifest,
        effective: EffectiveConfig,
        toolchain: Toolchain,
        executor: CompilationExecutor,
        graph: BuildGraph,
        state: BuildState,
        include_dirs: List[Path],
        hasher: FileHasher,
        events: List[TraceEvent],
    ) -> List[Path]:
        """Build (or reuse) the precompiled header; returns extra link objects."""
        if not manifest.build.pch:
            return []

        header = (project_dir / manifest.build.pch).resolve()
        pch_dir = build_root(project_dir) / effective.profile / "pch"
        scanner = IncludeScanner(include_dirs, hasher, cache=state.include_cache)
        headers = scanner.transitive_includes(header)
        suffix = ".pch" if toolchain.is_msvc else ".gch"
        pch_file = pch_dir / (f"{header.stem}{suffix}" if toolchain.is_msvc else f"{header.name}{suffix}")

        unit = TranslationUnit(
            source=header,
            rel_source=f"@pch/{relative_source(header, project_dir)}",
            object_path=pch_file,
            headers=headers,
            source_hash=hasher.hash(header) or "",
            header_hashes={str(h): hasher.hash(h) or "" for h in headers},
            global_hash=graph.global_hash,
        )

        if graph.stale_reason(unit, state) is None:
            return executor.use_existing_pch(header, pch_dir)

        state.forget_unit(unit.rel_source)
        start = time.time()
        extra = executor.compile_pch(header, pch_dir)
        state.record_unit(unit.rel_source, UnitRecord(
            object_path=str(pch_file),
            source_hash=unit.source_hash,
            headers=dict(unit.header_hashes),
            global_hash=unit.global_hash,
        ))
        events.append(TraceEvent(unit.rel_source, "pch", start, time.time() - start))
        return extra

    def clean(self, project_dir: Path, profile: Optional[str] = None) -> List[Path]:
        """
        Remove build output. Lock file, vendor/ and the shared cache are untouched.

        Returns:
            Directories that were removed
        """
        root = build_root(Path(project_dir).resolve())
        target = root / profile if profile else root
        if not target.exists():
            return []
        shutil.rmtree(target)
        logging.info(f"Removed {target}")
        return [target]

    def lock(self, project_dir: Path, check: bool = False, update: bool = False) -> LockReport:
        """
        Check or refresh cxbuild.lock.

        Args:
            project_dir: Project root
            check: Only compare the lock with the manifest; never writes
            update: Re-resolve every dependency and rewrite the lock

        Returns:
            LockReport of the lock as it stands afterwards
        """
        project_dir = Path(project_dir).resolve()
        manifest = self._load(project_dir)
        store = LockStore(project_dir)
        if check:
            return store.check(manifest, strict=False)

        mode = ResolveMode.UPDATE if update else ResolveMode.DEFAULT
        resolver = self._resolver(project_dir, manifest, self._optional_toolchain(manifest))
        resolver.resolve(store, mode)
        return store.check(manifest, strict=False)

    def sync(self, project_dir: Path) -> List[ResolvedDependency]:
        """Fetch exactly the locked revisions; the lock must match the manifest."""
        project_dir = Path(project_dir).resolve()
        manifest = self._load(project_dir)
        store = LockStore(project_dir)
        store.check(manifest, strict=True)
        resolver = self._resolver(project_dir, manifest, self._optional_toolchain(manifest))
        return resolver.resolve(store, ResolveMode.LOCKED)

    def update(self, project_dir: Path, names: Optional[Iterable[str]] = None) -> List[ResolvedDependency]:
        """Re-resolve the named dependencies (all when None) and rewrite their lock entries."""
        project_dir = Path(project_dir).resolve()
        manifest = self._load(project_dir)
        names = list(names) if names else None
        resolver = self._resolver(project_dir, manifest, self._optional_toolchain(manifest))
        return resolver.resolve(LockStore(project_dir), ResolveMode.UPDATE, names)

    def vendor(self, project_dir: Path) -> List[str]:
        """Copy the locked dependencies into vendor/."""
        project_dir = Path(project_dir).resolve()
        manifest = self._load(project_dir)
        resolver = self._resolver(project_dir, manifest, self._optional_toolchain(manifest))
        resolved = resolver.resolve(LockStore(project_dir), ResolveMode.DEFAULT)
        return vendor_dependencies(project_dir, resolved, show_progress=self.show_progress)

    def tree(self, project_dir: Path) -> Dict[str, object]:
        """Resolve dependencies and return the root name plus the dependency tree."""
        project_dir = Path(project_dir).resolve()
        manifest = self._load(project_dir)
        resolver = self._resolver(project_dir, manifest, self._optional_toolchain(manifest))
        resolved = resolver.resolve(LockStore(project_dir), ResolveMode.DEFAULT)
        nodes: List[DependencyNode] = build_dependency_tree(resolved)
        return {"name": manifest.package.name, "nodes": nodes}
