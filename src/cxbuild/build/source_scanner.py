"""
Source file discovery.

This module handles:
- Scanning project directories for C/C++ translation units
- Expanding explicit source globs from the manifest
- Collecting headers and project include directories
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

SOURCE_EXTENSIONS = {".c", ".cc", ".cpp", ".cxx", ".c++"}
HEADER_EXTENSIONS = {".h", ".hh", ".hpp", ".hxx", ".inl"}
EXCLUDED_DIRS = {".cxbuild", "vendor", "build", ".git", "__pycache__", "node_modules"}


@dataclass
class SourceCollection:
    """Collection of project files categorized by type."""

    sources: List[Path]  # Translation units (.c/.cpp/...)
    headers: List[Path]  # Project headers for dependency tracking
    include_dirs: List[Path]  # Project include search paths

    @property
    def has_cpp(self) -> bool:
        return any(source.suffix != ".c" for source in self.sources)


def is_c_source(path: Path) -> bool:
    return path.suffix == ".c"


class SourceScanner:
    """
    Scans a project for translation units.

    The scanner:
    1. Uses explicit ``sources`` globs from the manifest when given
    2. Otherwise walks ``src/`` (or the project root if there is no src/)
    3. Skips build output, vendored code, and hidden directories
    4. Returns a sorted, de-duplicated SourceCollection
    """

    def __init__(self, project_dir: Path):
        """
        Initialize source scanner.

        Args:
            project_dir: Root project directory
        """
        self.project_dir = Path(project_dir).resolve()

    def scan(
        self,
        sources: Optional[Iterable[str]] = None,
        include: Optional[Iterable[str]] = None,
    ) -> SourceCollection:
        """
        Scan for all source files.

        Args:
            sources: Glob patterns relative to the project (manifest ``sources``)
            include: Include directories relative to the project (manifest ``include``)

        Returns:
            SourceCollection with all discovered files
        """
        sources = list(sources or [])
        roots = self.source_roots()

        if sources:
            found = self._expand_globs(sources)
        else:
            found = []
            for root in roots:
                found.extend(self._walk(root, SOURCE_EXTENSIONS))

        headers: List[Path] = []
        for root in roots:
            headers.extend(self._walk(root, HEADER_EXTENSIONS))

        include_dirs = self._include_dirs(list(include or []), roots)
        for include_dir in include_dirs:
            if include_dir not in roots:
                headers.extend(self._walk(include_dir, HEADER_EXTENSIONS))

        return SourceCollection(
            sources=_unique_sorted(found),
            headers=_unique_sorted(headers),
            include_dirs=include_dirs,
        )

    def source_roots(self) -> List[Path]:
        src_dir = self.project_dir / "src"
        if src_dir.is_dir():
            return [src_dir]
        return [self.project_dir]

    def _include_dirs(self, include: List[str], roots: List[Path]) -> List[Path]:
        dirs: List[Path] = []
        if include:
            for entry in include:
                path = Path(entry)
                dirs.append(path if path.is_absolute() else (self.project_dir / path).resolve())
        elif (self.project_dir / "include").is_dir():
            dirs.append(self.project_dir / "include")
        for root in roots:
            if root not in dirs:
                dirs.append(root)
        return dirs

    def _expand_globs(self, patterns: List[str]) -> List[Path]:
        found = []
        for pattern in patterns:
            path = Path(pattern)
            if path.is_absolute():
                if path.is_file():
                    found.append(path)
                continue
            literal = self.project_dir / pattern
            if literal.is_file():
                found.append(literal.resolve())
                continue
            for match in self.project_dir.glob(pattern):
                if match.is_file() and match.suffix.lower() in SOURCE_EXTENSIONS:
                    found.append(match.resolve())
        return found

    def _walk(self, root: Path, extensions: set) -> List[Path]:
        """Recursively collect files with the given extensions, skipping excluded dirs."""
        if not root.is_dir():
            return []

        found = []
        for entry in sorted(root.iterdir()):
            if entry.is_dir():
                if entry.name in EXCLUDED_DIRS or entry.name.startswith("."):
                    continue
                found.extend(self._walk(entry, extensions))
            elif entry.suffix.lower() in extensions:
                found.append(entry.resolve())
        return found


def _unique_sorted(paths: List[Path]) -> List[Path]:
    return sorted(set(paths))
