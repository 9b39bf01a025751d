"""Lock file storage and manifest consistency checking.

``cxbuild.lock`` records exactly which revision every dependency resolved to:

    {
      "version": 1,
      "dependencies": [
        {"name": "fmt", "url": "https://github.com/fmtlib/fmt",
         "rev": "<commit>", "ref": "tag:10.2.1"}
      ]
    }

Writes go through a temp file and an atomic rename, inside an exclusive
cross-process lock, so concurrent invocations never interleave.
"""

import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from cxbuild.config.manifest import Manifest, ref_key, source_url
from cxbuild.errors import CxBuildError
from cxbuild.packages.locking import ProcessFileLock
from cxbuild.packages.url_utils import normalize_url

LOCK_FILE_NAME = "cxbuild.lock"
LOCK_FORMAT_VERSION = 1


@dataclass(frozen=True)
class LockEntry:
    """One resolved dependency."""

    name: str
    url: str
    rev: str
    ref: Optional[str] = None
    checksum: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        data = {"name": self.name, "url": self.url, "rev": self.rev}
        if self.ref:
            data["ref"] = self.ref
        if self.checksum:
            data["checksum"] = self.checksum
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "LockEntry":
        return cls(
            name=data["name"],
            url=data["url"],
            rev=data["rev"],
            ref=data.get("ref"),
            checksum=data.get("checksum"),
        )


@dataclass
class LockReport:
    """Differences between a manifest and a lock file."""

    missing: List[str] = field(default_factory=list)
    extra: List[str] = field(default_factory=list)
    url_mismatch: List[str] = field(default_factory=list)
    ref_mismatch: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.missing or self.extra or self.url_mismatch or self.ref_mismatch)

    def format_lines(self) -> List[str]:
        lines = []
        for label, names in (
            ("missing from lock", self.missing),
            ("no longer declared", self.extra),
            ("source URL changed", self.url_mismatch),
            ("pinned reference changed", self.ref_mismatch),
        ):
            for name in names:
                lines.append(f"  {name}: {label}")
        return lines

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "missing": list(self.missing),
            "extra": list(self.extra),
            "url_mismatch": list(self.url_mismatch),
            "ref_mismatch": list(self.ref_mismatch),
        }


class LockMismatchError(CxBuildError):
    """The lock file disagrees with the manifest."""

    def __init__(self, report: LockReport, hint: str = "Run 'cxbuild lock --update' to re-resolve."):
        self.report = report
        self.missing = report.missing
        self.extra = report.extra
        self.url_mismatch = report.url_mismatch
        message = "Lock file is out of date with cxbuild.ini:\n" + "\n".join(report.format_lines())
        if hint:
            message += f"\n{hint}"
        super().__init__(message)


class LockFileError(CxBuildError):
    """The lock file exists but can't be read."""

    pass


def check_lock(manifest: Manifest, entries: Iterable[LockEntry]) -> LockReport:
    """Compare declared dependencies with lock entries.

    ``missing`` and ``extra`` together are the symmetric difference of the
    name sets. ``url_mismatch`` holds names present in both whose normalized
    source URLs differ; ``ref_mismatch`` those whose URLs agree but whose
    declared pin changed.
    """
    locked = {entry.name: entry for entry in entries}
    declared = manifest.dependencies

    report = LockReport(
        missing=sorted(set(declared) - set(locked)),
        extra=sorted(set(locked) - set(declared)),
    )

    for name in sorted(set(declared) & set(locked)):
        spec = declared[name]
        entry = locked[name]
        if normalize_url(source_url(spec)) != normalize_url(entry.url):
            report.url_mismatch.append(name)
        elif entry.ref is not None and entry.ref != ref_key(spec):
            report.ref_mismatch.append(name)

    return report


class LockStore:
    """Reads and writes a project's lock file."""

    def __init__(self, project_dir: Path):
        self.project_dir = Path(project_dir)
        self.path = self.project_dir / LOCK_FILE_NAME
        self._file_lock_path = self.project_dir / ".cxbuild" / f"{LOCK_FILE_NAME}.lock"

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Dict[str, LockEntry]:
        """Load lock entries keyed by name. A missing file is an empty lock.

        Raises:
            LockFileError: If the file is corrupt
        """
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            entries = [LockEntry.from_dict(raw) for raw in data.get("dependencies", [])]
        except (OSError, json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            raise LockFileError(f"Cannot read {self.path}: {e}") from e
        return {entry.name: entry for entry in entries}

    def save(self, entries: Iterable[LockEntry]) -> None:
        """Atomically replace the lock file."""
        ordered = sorted(entries, key=lambda e: e.name)
        payload = {
            "version": LOCK_FORMAT_VERSION,
            "dependencies": [entry.to_dict() for entry in ordered],
        }
        temp = self.path.with_name(f".{LOCK_FILE_NAME}.{os.getpid()}.tmp")
        with open(temp, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
            f.write("\n")
        os.replace(temp, self.path)
        logging.info(f"Wrote {len(ordered)} entries to {self.path}")

    @contextmanager
    def transaction(self) -> Iterator[Dict[str, LockEntry]]:
        """Hold the lock file exclusively for a read-modify-write.

        Yields the current entries; whatever the dict holds on normal exit is
        written back if it changed.
        """
        with ProcessFileLock(self._file_lock_path):
            entries = self.load()
            original = dict(entries)
            yield entries
            if entries != original:
                self.save(entries.values())

    def check(self, manifest: Manifest, strict: bool = True) -> LockReport:
        """Check the lock against the manifest.

        Raises:
            LockMismatchError: In strict mode, if anything disagrees
        """
        with ProcessFileLock(self._file_lock_path):
            report = check_lock(manifest, self.load().values())
        if strict and not report.ok:
            raise LockMismatchError(report)
        return report

    def pinned_identities(self) -> Set[Tuple[str, str]]:
        """(normalized_url, rev) pairs this lock pins."""
        try:
            entries = self.load()
        except LockFileError as e:
            logging.warning(str(e))
            return set()
        return {(normalize_url(e.url), e.rev) for e in entries.values() if not e.url.startswith("pkg-config:")}


def referenced_identities(projects: Iterable[str]) -> Set[Tuple[str, str]]:
    """Everything pinned by the lock files of projects that still exist."""
    live: Set[Tuple[str, str]] = set()
    for project in projects:
        store = LockStore(Path(project))
        if store.exists():
            live |= store.pinned_identities()
    return live
