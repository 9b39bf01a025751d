"""Shared dependency cache.

This module provides the process-wide, disk-backed store of dependency
checkouts shared by every project on the machine.

Cache Structure:
    ~/.cxbuild/cache/               # or $CXBUILD_CACHE_DIR
    ├── index.json                  # identity key -> entry metadata
    ├── registry.json               # optional alias overlay
    ├── checkouts/
    │   └── {identity_key}/         # SHA256 of normalized URL + pin
    │       └── .cxbuild-complete   # written once the checkout is usable
    ├── downloads/                  # prebuilt archives
    └── locks/
        └── {identity_key}.lock     # per-identity mutation lock

A checkout directory without its completion marker is never handed out.
Lookups of completed checkouts take no lock; every mutation of a given
identity runs under that identity's lock.
"""

import hashlib
import json
import logging
import os
import shutil
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from cxbuild.packages.locking import IdentityLock, KeyedLocks, ProcessFileLock
from cxbuild.packages.url_utils import normalize_url

COMPLETE_MARKER = ".cxbuild-complete"
DEFAULT_RETENTION_DAYS = 30


def default_cache_root() -> Path:
    cache_env = os.environ.get("CXBUILD_CACHE_DIR")
    if cache_env:
        return Path(cache_env).resolve()
    return Path.home() / ".cxbuild" / "cache"


@dataclass(frozen=True)
class DependencyIdentity:
    """Normalized source URL plus pin.

    The pin is the concrete commit a dependency resolved to. ``variant`` keeps
    checkouts built with different recipes apart.
    """

    url: str
    pin: str
    variant: str = ""

    @property
    def normalized_url(self) -> str:
        return normalize_url(self.url)

    @property
    def key(self) -> str:
        raw = f"{self.normalized_url}@{self.pin}"
        if self.variant:
            raw += f"+{self.variant}"
        return ArtifactCache.hash_url(raw)

    def __str__(self) -> str:
        suffix = f" [{self.variant}]" if self.variant else ""
        return f"{self.normalized_url}@{self.pin[:12]}{suffix}"


@dataclass
class CacheEntry:
    """Index record for one identity."""

    key: str
    url: str
    pin: str
    path: str
    variant: str = ""
    created_at: float = 0.0
    last_used: float = 0.0
    projects: List[str] = field(default_factory=list)


@dataclass
class PrunedEntry:
    key: str
    url: str
    pin: str
    path: str


class ArtifactCache:
    """Manages the cxbuild cache directory structure.

    The cache lives in ~/.cxbuild/cache unless the CXBUILD_CACHE_DIR
    environment variable names another location. It is an explicit service
    object: resolvers and fetchers receive it, nothing reaches for a global.
    """

    def __init__(self, cache_root: Optional[Path] = None):
        """Initialize cache manager.

        Args:
            cache_root: Cache directory. If None, uses the default location.
        """
        self.cache_root = Path(cache_root).resolve() if cache_root else default_cache_root()
        self._thread_locks = KeyedLocks()

    @staticmethod
    def hash_url(url: str) -> str:
        """Generate a SHA256 hash of a URL for cache directory naming.

        Args:
            url: The string to hash

        Returns:
            First 16 characters of SHA256 hash (sufficient for uniqueness)
        """
        return hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]

    @property
    def checkouts_dir(self) -> Path:
        return self.cache_root / "checkouts"

    @property
    def downloads_dir(self) -> Path:
        return self.cache_root / "downloads"

    @property
    def locks_dir(self) -> Path:
        return self.cache_root / "locks"

    @property
    def index_path(self) -> Path:
        return self.cache_root / "index.json"

    @property
    def registry_overlay_path(self) -> Path:
        return self.cache_root / "registry.json"

    def ensure_directories(self) -> None:
        """Create all cache directories if they don't exist."""
        for directory in [self.checkouts_dir, self.downloads_dir, self.locks_dir]:
            directory.mkdir(parents=True, exist_ok=True)

    def checkout_path(self, identity: DependencyIdentity) -> Path:
        return self.checkouts_dir / identity.key

    def identity_lock(self, identity: DependencyIdentity) -> IdentityLock:
        return self.lock_for_key(identity.key)

    def lock_for_key(self, key: str) -> IdentityLock:
        return IdentityLock(
            self._thread_locks.get(key),
            ProcessFileLock(self.locks_dir / f"{key}.lock"),
        )

    def lookup(self, identity: DependencyIdentity) -> Optional[Path]:
        """Return the completed checkout for an identity, or None. Lock-free."""
        path = self.checkout_path(identity)
        if (path / COMPLETE_MARKER).exists():
            return path
        return None

    def lookup_or_create(
        self,
        identity: DependencyIdentity,
        populate: Callable[[Path], None],
        project: Optional[Path] = None,
        finalize: Optional[Callable[[Path], None]] = None,
    ) -> Path:
        """Return the checkout for an identity, fetching it on first use.

        ``populate`` receives an empty staging directory and must leave a
        usable checkout in it. The staging directory is renamed into place,
        ``finalize`` (if given) runs on the final directory, and only then is
        the checkout marked complete.

        Args:
            identity: Dependency identity
            populate: Callable that fills a directory with the checkout
            project: Project directory to record as a user of this entry
            finalize: Callable run on the checkout after it is moved into place

        Returns:
            Path to the completed checkout
        """
        existing = self.lookup(identity)
        if existing is not None:
            self._touch(identity, project)
            return existing

        self.ensure_directories()
        with self.identity_lock(identity):
            # Another thread or process may have finished while we waited
            existing = self.lookup(identity)
            if existing is not None:
                self._touch(identity, project)
                return existing

            path = self._populate_locked(identity, populate, finalize)
            self._record(identity, path, project)
            return path

    def update(
        self,
        identity: DependencyIdentity,
        populate: Callable[[Path], None],
        project: Optional[Path] = None,
        finalize: Optional[Callable[[Path], None]] = None,
    ) -> Path:
        """Re-fetch an identity in place, replacing any existing checkout."""
        self.ensure_directories()
        with self.identity_lock(identity):
            path = self._populate_locked(identity, populate, finalize)
            self._record(identity, path, project)
            return path

    def remove(self, identity: DependencyIdentity) -> bool:
        """Remove one identity's checkout and index entry."""
        with self.identity_lock(identity):
            removed = self._remove_key(identity.key)
        return removed

    def _populate_locked(
        self,
        identity: DependencyIdentity,
        populate: Callable[[Path], None],
        finalize: Optional[Callable[[Path], None]] = None,
    ) -> Path:
        final = self.checkout_path(identity)
        staging = self.checkouts_dir / f".{identity.key}.{uuid.uuid4().hex[:8]}.tmp"
        staging.mkdir(parents=True)

        try:
            populate(staging)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        if final.exists():
            shutil.rmtree(final)
        os.replace(staging, final)

        # Build steps run at the final location so generated paths stay valid
        if finalize is not None:
            try:
                finalize(final)
            except BaseException:
                shutil.rmtree(final, ignore_errors=True)
                raise

        (final / COMPLETE_MARKER).write_text(f"{identity.normalized_url}@{identity.pin}\n", encoding="utf-8")
        logging.info(f"Cached {identity} at {final}")
        return final

    # Index bookkeeping

    def _index_lock(self) -> ProcessFileLock:
        return ProcessFileLock(self.locks_dir / "index.lock")

    def _read_index(self) -> Dict[str, CacheEntry]:
        if not self.index_path.exists():
            return {}
        try:
            with open(self.index_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logging.warning(f"Cache index unreadable, rebuilding: {e}")
            return {}
        entries = {}
        for key, raw in data.get("entries", {}).items():
            try:
                entries[key] = CacheEntry(**raw)
            except TypeError:
                logging.warning(f"Skipping malformed cache index entry {key}")
        return entries

    def _write_index(self, entries: Dict[str, CacheEntry]) -> None:
        self.cache_root.mkdir(parents=True, exist_ok=True)
        temp = self.index_path.with_suffix(f".{os.getpid()}.tmp")
        with open(temp, "w", encoding="utf-8") as f:
            json.dump({"version": 1, "entries": {k: asdict(v) for k, v in entries.items()}}, f, indent=2)
        os.replace(temp, self.index_path)

    def _record(self, identity: DependencyIdentity, path: Path, project: Optional[Path]) -> None:
        now = time.time()
        with self._index_lock():
            entries = self._read_index()
            entry = entries.get(identity.key)
            if entry is None:
                entry = CacheEntry(
                    key=identity.key,
                    url=identity.normalized_url,
                    pin=identity.pin,
                    variant=identity.variant,
                    path=str(path),
                    created_at=now,
                )
                entries[identity.key] = entry
            entry.path = str(path)
            entry.last_used = now
            if project is not None:
                project_str = str(Path(project).resolve())
                if project_str not in entry.projects:
                    entry.projects.append(project_str)
            self._write_index(entries)

    def _touch(self, identity: DependencyIdentity, project: Optional[Path]) -> None:
        self._record(identity, self.checkout_path(identity), project)

    def entries(self) -> List[CacheEntry]:
        return sorted(self._read_index().values(), key=lambda e: (e.url, e.pin))

    def known_projects(self) -> Set[str]:
        projects: Set[str] = set()
        for entry in self._read_index().values():
            projects.update(entry.projects)
        return projects

    def _remove_key(self, key: str) -> bool:
        path = self.checkouts_dir / key
        existed = path.exists()
        if existed:
            shutil.rmtree(path)
        with self._index_lock():
            entries = self._read_index()
            if entries.pop(key, None) is not None:
                existed = True
                self._write_index(entries)
        return existed

    def prune(
        self,
        referenced: Callable[[Iterable[str]], Set[Tuple[str, str]]],
        retention_days: float = DEFAULT_RETENTION_DAYS,
        dry_run: bool = False,
    ) -> List[PrunedEntry]:
        """Remove entries no known project references any more.

        Args:
            referenced: Maps the known project directories to the set of
                (normalized_url, rev) pairs their lock files still pin
            retention_days: Unreferenced entries used within this many days
                are kept
            dry_run: Report what would be removed without removing it

        Returns:
            The entries that were (or would be) removed
        """
        entries = self._read_index()
        live = referenced(sorted(self.known_projects()))
        cutoff = time.time() - retention_days * 86400

        pruned: List[PrunedEntry] = []
        for key, entry in sorted(entries.items()):
            if (normalize_url(entry.url), entry.pin) in live:
                continue
            if entry.last_used > cutoff:
                continue
            pruned.append(PrunedEntry(key=key, url=entry.url, pin=entry.pin, path=entry.path))
            if not dry_run:
                with self.lock_for_key(key):
                    self._remove_key(key)
                logging.info(f"Pruned cache entry {entry.url}@{entry.pin}")

        # Half-written staging dirs from interrupted fetches
        if not dry_run and self.checkouts_dir.exists():
            for stale in self.checkouts_dir.glob(".*.tmp"):
                if stale.stat().st_mtime < cutoff:
                    shutil.rmtree(stale, ignore_errors=True)

        return pruned
