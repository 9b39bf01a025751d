"""Persisted incremental build state.

One JSON record per profile build directory:

    .cxbuild/build/<profile>/build_state.json
    {
      "version": 1,
      "units": {"src/main.cpp": {"object_path": ..., "source_hash": ...,
                                 "headers": {path: hash}, "global_hash": ...}},
      "include_cache": {path: {"key": ..., "includes": [...]}},
      "artifact": {"path": ..., "link_hash": ...} | null
    }

Records are written only for units that compiled successfully, and the
artifact record only after a successful link. Saving is atomic.
"""

import hashlib
import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

STATE_FILE_NAME = "build_state.json"
STATE_VERSION = 2


def canonical_hash(value: Any) -> str:
    """sha256 of a value's canonical JSON form."""
    encoded = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def global_inputs_hash(
    effective: Dict[str, Any],
    compiler: str,
    dependency_revisions: Dict[str, str],
    build_section: Dict[str, Any],
) -> str:
    """Hash of every input that, when changed, makes all units stale."""
    return canonical_hash({
        "effective": effective,
        "compiler": compiler,
        "dependencies": dependency_revisions,
        "build": build_section,
    })


class FileHasher:
    """Content hashes with a stat-keyed memo.

    A file whose (mtime_ns, size) hasn't changed since it was last hashed in
    this process is not re-read. Thread-safe.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._memo: Dict[str, Tuple[int, int, str]] = {}

    def hash(self, path: Path) -> Optional[str]:
        """Return the file's sha256, or None if it doesn't exist."""
        key = str(path)
        try:
            stat = path.stat()
        except FileNotFoundError:
            return None

        with self._lock:
            cached = self._memo.get(key)
        if cached and cached[0] == stat.st_mtime_ns and cached[1] == stat.st_size:
            return cached[2]

        sha256 = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                sha256.update(chunk)
        digest = sha256.hexdigest()

        with self._lock:
            self._memo[key] = (stat.st_mtime_ns, stat.st_size, digest)
        return digest


@dataclass
class UnitRecord:
    """Last successful compile of one translation unit."""

    object_path: str
    source_hash: str
    headers: Dict[str, str] = field(default_factory=dict)
    global_hash: str = ""
    compiled_at: float = 0.0


@dataclass
class ArtifactRecord:
    path: str
    link_hash: str
    linked_at: float = 0.0


@dataclass
class IncludeCacheEntry:
    """Include directives of one file, spelled as written ('"a.h"' or '<a.h>')."""

    key: str
    directives: List[str] = field(default_factory=list)


class BuildState:
    """Loads, mutates, and saves a profile's build state.

    Only the owning build's coordinating thread mutates it.
    """

    def __init__(self, build_dir: Path):
        self.build_dir = Path(build_dir)
        self.path = self.build_dir / STATE_FILE_NAME
        self.units: Dict[str, UnitRecord] = {}
        self.include_cache: Dict[str, IncludeCacheEntry] = {}
        self.artifact: Optional[ArtifactRecord] = None

    @classmethod
    def load(cls, build_dir: Path) -> "BuildState":
        state = cls(build_dir)
        if not state.path.exists():
            return state
        try:
            with open(state.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if data.get("version") != STATE_VERSION:
                logging.info(f"Discarding build state with version {data.get('version')}")
                return state
            state.units = {k: UnitRecord(**v) for k, v in data.get("units", {}).items()}
            state.include_cache = {
                k: IncludeCacheEntry(**v) for k, v in data.get("include_cache", {}).items()
            }
            artifact = data.get("artifact")
            state.artifact = ArtifactRecord(**artifact) if artifact else None
        except (OSError, json.JSONDecodeError, TypeError) as e:
            # Losing the state only costs a full rebuild
            logging.warning(f"Build state at {state.path} unreadable, rebuilding everything: {e}")
            return cls(build_dir)
        return state

    def save(self) -> None:
        self.build_dir.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": STATE_VERSION,
            "units": {k: asdict(v) for k, v in sorted(self.units.items())},
            "include_cache": {k: asdict(v) for k, v in sorted(self.include_cache.items())},
            "artifact": asdict(self.artifact) if self.artifact else None,
        }
        temp = self.path.with_suffix(f".{os.getpid()}.tmp")
        with open(temp, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=1)
        os.replace(temp, self.path)

    def record_unit(self, rel_source: str, record: UnitRecord) -> None:
        record.compiled_at = record.compiled_at or time.time()
        self.units[rel_source] = record

    def forget_unit(self, rel_source: str) -> None:
        self.units.pop(rel_source, None)

    def invalidate_artifact(self) -> None:
        """Drop the artifact record and persist that immediately."""
        if self.artifact is not None:
            self.artifact = None
            self.save()

    def record_artifact(self, path: Path, link_hash: str) -> None:
        self.artifact = ArtifactRecord(path=str(path), link_hash=link_hash, linked_at=time.time())
