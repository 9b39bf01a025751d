"""
Build system components for cxbuild.

This module provides the build system implementation including:
- Source file discovery and include scanning
- Incremental build state and staleness analysis
- Parallel compilation and linking
- Build orchestration
"""

from .build_graph import BuildGraph, TranslationUnit
from .compilation_executor import CompilationExecutor, CompileError
from .flag_builder import FlagBuilder
from .linker import Linker, LinkError
from .orchestrator import BuildOrchestrator, BuildResult
from .parallel_compiler import CompilationFailedError, ParallelCompiler
from .script_runner import ScriptFailure
from .source_scanner import SourceCollection, SourceScanner

__all__ = [
    'BuildGraph',
    'BuildOrchestrator',
    'BuildResult',
    'CompilationExecutor',
    'CompilationFailedError',
    'CompileError',
    'FlagBuilder',
    'LinkError',
    'Linker',
    'ParallelCompiler',
    'ScriptFailure',
    'SourceCollection',
    'SourceScanner',
    'TranslationUnit',
]
