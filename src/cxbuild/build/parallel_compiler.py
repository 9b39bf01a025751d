"""Parallel compilation of stale translation units.

Units are compiled on a thread pool; each worker only runs the compiler
subprocess. Results are consumed on the coordinating thread, which is the
only place build state is mutated, so a unit is recorded only after its own
compile succeeded.

Every unit is attempted even when some fail, so one build reports all
compile errors. On KeyboardInterrupt, pending units are cancelled, running
compilers are killed, and the interrupt is re-raised.
"""

import logging
import multiprocessing
import os
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Sequence

from cxbuild.build.build_graph import TranslationUnit
from cxbuild.build.compilation_executor import (
    CompilationCancelled,
    CompilationExecutor,
    CompileError,
    UnitResult,
)
from cxbuild.errors import CxBuildError


class CompilationFailedError(CxBuildError):
    """One or more translation units failed to compile."""

    def __init__(self, errors: List[CompileError]):
        self.errors = errors
        names = ", ".join(e.source.name for e in errors)
        super().__init__(f"{len(errors)} translation unit(s) failed to compile: {names}")

    @property
    def diagnostics(self) -> str:
        return "\n\n".join(str(e) for e in self.errors)


def cpu_count() -> int:
    return multiprocessing.cpu_count() or 1


def get_max_workers(requested: Optional[int] = None) -> int:
    """Worker count: explicit request, then CXBUILD_JOBS, then the CPU count.

    NO_PARALLEL forces sequential compilation.
    """
    if os.environ.get("NO_PARALLEL"):
        logging.info("NO_PARALLEL environment variable set - forcing sequential compilation")
        return 1
    if requested:
        return max(1, requested)
    env_jobs = os.environ.get("CXBUILD_JOBS")
    if env_jobs:
        try:
            return max(1, int(env_jobs))
        except ValueError:
            logging.warning(f"Ignoring invalid CXBUILD_JOBS={env_jobs!r}")
    return cpu_count()


class ParallelCompiler:
    """Compiles translation units concurrently with a bounded worker pool."""

    def __init__(self, executor: CompilationExecutor, jobs: Optional[int] = None):
        self.executor = executor
        self.jobs = get_max_workers(jobs)
        self.results: List[UnitResult] = []

    def compile_all(
        self,
        units: Sequence[TranslationUnit],
        on_success: Callable[[TranslationUnit, UnitResult], None],
    ) -> List[UnitResult]:
        """Compile every unit, calling ``on_success`` on this thread per success.

        Args:
            units: Stale units to compile
            on_success: Invoked for each unit whose compile succeeded

        Returns:
            Results of successful compiles, in completion order

        Raises:
            CompilationFailedError: After all units ran, if any failed
            KeyboardInterrupt: If interrupted; in-flight compiles are killed
        """
        self.results = []
        if not units:
            return []

        errors: List[CompileError] = []
        workers = max(1, min(self.jobs, len(units)))
        logging.info(f"Compiling {len(units)} unit(s) with {workers} worker(s)")

        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cxbuild-cc")
        futures: Dict[Future, TranslationUnit] = {}
        try:
            for unit in units:
                futures[pool.submit(self.executor.compile_source, unit.source, unit.object_path)] = unit

            for future in as_completed(futures):
                unit = futures[future]
                try:
                    result = future.result()
                except CompileError as e:
                    logging.debug(f"Compile failed: {unit.rel_source}")
                    errors.append(e)
                    continue
                except CompilationCancelled:
                    continue
                self.results.append(result)
                on_success(unit, result)
        except KeyboardInterrupt:
            logging.warning("Build interrupted, stopping compilers")
            self.executor.cancel()
            pool.shutdown(wait=True, cancel_futures=True)
            raise
        else:
            pool.shutdown(wait=True)

        if errors:
            errors.sort(key=lambda e: str(e.source))
            raise CompilationFailedError(errors)
        return self.results
