"""Lightweight header dependency discovery.

Finds ``#include "..."`` and ``#include <...>`` directives with a regular
expression and resolves them against the include search path. There is no
preprocessing: conditional includes count whether or not they are active,
and includes that resolve nowhere (system headers) are ignored.

The directives of each file are cached, keyed by the file's content hash, so
an unchanged file is never re-read. Directives are resolved against the
search path on every scan; a header added earlier in the search order
shadows the old resolution immediately.
"""

import logging
import re
from collections import deque
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

from cxbuild.build.build_state import FileHasher, IncludeCacheEntry

INCLUDE_RE = re.compile(r'^\s*#\s*include\s*([<"])([^>"]+)[>"]', re.MULTILINE)
DEFAULT_MAX_DEPTH = 32


class IncludeScanner:
    """Resolves transitive includes for source files."""

    def __init__(
        self,
        search_paths: Sequence[Path],
        hasher: FileHasher,
        cache: Optional[Dict[str, IncludeCacheEntry]] = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ):
        self.search_paths = [Path(p) for p in search_paths]
        self.hasher = hasher
        self.cache: Dict[str, IncludeCacheEntry] = cache if cache is not None else {}
        self.max_depth = max_depth
        self.scanned_files = 0

    def _resolve(self, name: str, quoted: bool, including_dir: Path) -> Optional[Path]:
        candidates = [including_dir] if quoted else []
        candidates.extend(self.search_paths)
        for base in candidates:
            candidate = base / name
            if candidate.is_file():
                return candidate.resolve()
        return None

    def directives(self, path: Path) -> List[Tuple[str, bool]]:
        """(name, quoted) pairs of one file, from cache when the file is unchanged."""
        content_hash = self.hasher.hash(path)
        if content_hash is None:
            return []
        cached = self.cache.get(str(path))
        if cached is not None and cached.key == content_hash:
            return [(spelled[1:-1], spelled[0] == '"') for spelled in cached.directives]

        self.scanned_files += 1
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logging.warning(f"Cannot scan includes of {path}: {e}")
            return []

        found: List[Tuple[str, bool]] = []
        for match in INCLUDE_RE.finditer(text):
            directive = (match.group(2).strip(), match.group(1) == '"')
            if directive not in found:
                found.append(directive)

        self.cache[str(path)] = IncludeCacheEntry(
            key=content_hash,
            directives=[f'"{name}"' if quoted else f"<{name}>" for name, quoted in found],
        )
        return found

    def direct_includes(self, path: Path) -> List[Path]:
        """Includes of one file resolved against the current search path."""
        resolved: List[Path] = []
        for name, quoted in self.directives(path):
            target = self._resolve(name, quoted, path.parent)
            if target is not None and target not in resolved:
                resolved.append(target)
        return resolved

    def transitive_includes(self, source: Path) -> List[Path]:
        """All headers reachable from ``source``, to at most ``max_depth`` levels.

        Cycles terminate through the visited set.
        """
        visited: Set[Path] = set()
        ordered: List[Path] = []
        queue = deque([(source, 0)])
        while queue:
            current, depth = queue.popleft()
            if depth >= self.max_depth:
                continue
            for header in self.direct_includes(current):
                if header in visited or header == source:
                    continue
                visited.add(header)
                ordered.append(header)
                queue.append((header, depth + 1))
        return sorted(ordered)
