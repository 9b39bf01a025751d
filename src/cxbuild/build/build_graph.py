"""Build graph construction and staleness analysis.

A translation unit is stale when any of these changed since its last
successful compile:

    - its own content
    - the content (or set) of headers it transitively includes
    - the global build inputs: effective profile, compiler, resolved
      dependency revisions, and the manifest's build section

or when its object file has gone missing. Object paths are a pure function
of (relative source path, profile, compiler), so sources that share a base
name in different directories never collide.
"""

import hashlib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from cxbuild.build.build_state import BuildState, FileHasher, UnitRecord, canonical_hash
from cxbuild.build.include_scanner import IncludeScanner
from cxbuild.packages.toolchain import Toolchain

_UNSAFE = re.compile(r"[^A-Za-z0-9_.+-]")


def compiler_slug(compiler: str) -> str:
    """Filesystem-safe, collision-resistant tag for a compiler invocation."""
    name = _UNSAFE.sub("_", Path(compiler).name) or "cc"
    digest = hashlib.sha256(compiler.encode("utf-8")).hexdigest()[:8]
    return f"{name}-{digest}"


def relative_source(source: Path, project_dir: Path) -> str:
    """Project-relative POSIX path; sources outside the project map under ``_ext/``."""
    try:
        return Path(source).resolve().relative_to(Path(project_dir).resolve()).as_posix()
    except ValueError:
        parent_hash = hashlib.sha256(str(Path(source).resolve().parent).encode("utf-8")).hexdigest()[:8]
        return f"_ext/{parent_hash}/{Path(source).name}"


def object_path_for(
    build_root: Path,
    rel_source: str,
    profile: str,
    compiler: str,
    suffix: str = ".o",
) -> Path:
    """Deterministic object file location.

    Example:
        (.cxbuild/build, "src/net/util.cpp", "debug", "/usr/bin/g++")
        -> .cxbuild/build/debug/obj/g++-1a2b3c4d/src/net/util.cpp.o
    """
    return Path(build_root) / profile / "obj" / compiler_slug(compiler) / f"{rel_source}{suffix}"


@dataclass
class TranslationUnit:
    """One source file compiled into one object file."""

    source: Path
    rel_source: str
    object_path: Path
    headers: List[Path] = field(default_factory=list)
    source_hash: str = ""
    header_hashes: Dict[str, str] = field(default_factory=dict)
    global_hash: str = ""

    def record(self) -> UnitRecord:
        return UnitRecord(
            object_path=str(self.object_path),
            source_hash=self.source_hash,
            headers=dict(self.header_hashes),
            global_hash=self.global_hash,
        )


@dataclass
class LinkInputs:
    """Everything handed to the linker, in resolution order."""

    objects: List[Path] = field(default_factory=list)
    dependency_libs: List[Path] = field(default_factory=list)
    dependency_link_flags: List[str] = field(default_factory=list)
    system_libs: List[str] = field(default_factory=list)
    ldflags: List[str] = field(default_factory=list)


class BuildGraph:
    """Translation units plus link inputs for one build."""

    def __init__(
        self,
        units: List[TranslationUnit],
        link_inputs: LinkInputs,
        output_path: Path,
        global_hash: str,
        include_dirs: Sequence[Path],
        hasher: FileHasher,
    ):
        self.units = units
        self.link_inputs = link_inputs
        self.output_path = output_path
        self.global_hash = global_hash
        self.include_dirs = list(include_dirs)
        self.hasher = hasher

    @classmethod
    def construct(
        cls,
        project_dir: Path,
        build_root: Path,
        profile: str,
        toolchain: Toolchain,
        sources: Sequence[Path],
        include_dirs: Sequence[Path],
        global_hash: str,
        state: BuildState,
        output_path: Path,
        dependency_libs: Sequence[Path] = (),
        dependency_link_flags: Sequence[str] = (),
        system_libs: Sequence[str] = (),
        ldflags: Sequence[str] = (),
        hasher: Optional[FileHasher] = None,
    ) -> "BuildGraph":
        """Scan includes and fingerprint every source.

        The include scanner reuses and refreshes ``state.include_cache``;
        entries for files no longer reachable are dropped.
        """
        hasher = hasher or FileHasher()
        scanner = IncludeScanner(include_dirs, hasher, cache=dict(state.include_cache))

        units: List[TranslationUnit] = []
        for source in sources:
            rel = relative_source(source, project_dir)
            headers = scanner.transitive_includes(source)
            header_hashes = {str(h): hasher.hash(h) or "" for h in headers}
            units.append(
                TranslationUnit(
                    source=source,
                    rel_source=rel,
                    object_path=object_path_for(
                        build_root, rel, profile, toolchain.compiler, toolchain.object_suffix
                    ),
                    headers=headers,
                    source_hash=hasher.hash(source) or "",
                    header_hashes=header_hashes,
                    global_hash=global_hash,
                )
            )

        reachable = {str(u.source) for u in units}
        for unit in units:
            reachable.update(unit.header_hashes)
        state.include_cache = {k: v for k, v in scanner.cache.items() if k in reachable}

        link_inputs = LinkInputs(
            objects=[u.object_path for u in units],
            dependency_libs=list(dependency_libs),
            dependency_link_flags=list(dependency_link_flags),
            system_libs=list(system_libs),
            ldflags=list(ldflags),
        )
        return cls(units, link_inputs, output_path, global_hash, include_dirs, hasher)

    @staticmethod
    def stale_reason(unit: TranslationUnit, state: BuildState) -> Optional[str]:
        """Why ``unit`` must be recompiled, or None if it is fresh."""
        record = state.units.get(unit.rel_source)
        if record is None:
            return "never compiled"
        if record.object_path != str(unit.object_path) or not unit.object_path.exists():
            return "object missing"
        if record.source_hash != unit.source_hash:
            return "source changed"
        if record.global_hash != unit.global_hash:
            return "build configuration changed"
        if record.headers != unit.header_hashes:
            changed = sorted(
                set(record.headers.items()) ^ set(unit.header_hashes.items())
            )
            return f"header changed: {Path(changed[0][0]).name}" if changed else "headers changed"
        return None

    def partition(self, state: BuildState) -> Tuple[List[TranslationUnit], List[TranslationUnit]]:
        """Split units into (stale, fresh)."""
        stale, fresh = [], []
        for unit in self.units:
            (stale if self.stale_reason(unit, state) else fresh).append(unit)
        return stale, fresh

    def stale_units(self, state: BuildState) -> List[TranslationUnit]:
        return self.partition(state)[0]

    def link_hash(self) -> str:
        """Fingerprint of everything the link step consumes."""
        return canonical_hash({
            "global": self.global_hash,
            "units": sorted(
                (u.rel_source, u.source_hash, sorted(u.header_hashes.items())) for u in self.units
            ),
            "dependency_libs": [(str(p), self.hasher.hash(p)) for p in self.link_inputs.dependency_libs],
            "dependency_link_flags": self.link_inputs.dependency_link_flags,
            "system_libs": self.link_inputs.system_libs,
            "ldflags": self.link_inputs.ldflags,
            "output": str(self.output_path),
        })

    def needs_link(self, state: BuildState, compiled_any: bool) -> bool:
        if compiled_any or not self.output_path.exists():
            return True
        artifact = state.artifact
        return artifact is None or artifact.path != str(self.output_path) or artifact.link_hash != self.link_hash()
