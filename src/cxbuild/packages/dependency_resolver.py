"""Dependency resolution and fetching.

Resolution turns each declared dependency into a concrete revision, and
fetching makes that revision available on disk:

    1. plan()  - decide, per dependency, which revision to use and where it
                 comes from (lock file, remote ref lookup, vendor directory,
                 or pkg-config)
    2. fetch() - populate the shared cache for every git identity, run
                 source build commands, query pkg-config; distinct identities
                 are fetched concurrently
    3. resolve() wraps both in a lock file transaction and records new or
                 updated lock entries

Failures for independent dependencies are collected and raised together once
all work has finished.
"""

import json
import logging
import os
import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from cxbuild.config.manifest import (
    ComplexBuild,
    DependencySpec,
    GitHead,
    GitPinned,
    Manifest,
    RefKind,
    SystemPackage,
    is_header_only,
    ref_key,
    source_url,
)
from cxbuild.errors import CxBuildError
from cxbuild.packages.cache import ArtifactCache, DependencyIdentity
from cxbuild.packages.git import FetchFailure, GitClient
from cxbuild.packages.lockfile import LockEntry, LockMismatchError, LockReport, LockStore, check_lock
from cxbuild.packages.pkg_config import PkgConfig
from cxbuild.packages.prebuilt import PrebuiltCatalog
from cxbuild.packages.toolchain import Toolchain
from cxbuild.packages.url_utils import normalize_url

VENDOR_DIR = "vendor"
VENDOR_RECORD = ".cxbuild-vendor.json"
PREBUILT_CHECKSUM_FILE = ".cxbuild-prebuilt.sha256"
INCLUDE_CANDIDATES = ("include", "single_include", "build/include")
BUILD_COMMAND_TIMEOUT = 3600

T = TypeVar("T")
R = TypeVar("R")


class ResolveMode(Enum):
    """How lock entries are treated during resolution."""

    DEFAULT = "default"  # reuse lock entries, add new dependencies
    LOCKED = "locked"  # strict: lock must match, never re-resolve
    UPDATE = "update"  # re-resolve and overwrite the lock


class DependencyFetchError(CxBuildError):
    """One or more dependencies failed to resolve or fetch."""

    def __init__(self, failures: Dict[str, Exception]):
        self.failures = failures
        lines = [f"  {name}: {error}" for name, error in sorted(failures.items())]
        super().__init__(
            f"{len(failures)} dependenc{'y' if len(failures) == 1 else 'ies'} failed:\n" + "\n".join(lines)
        )


@dataclass
class FetchAction:
    """What to do for one dependency."""

    name: str
    spec: DependencySpec
    rev: str
    source: str  # "lock", "remote", "literal", "vendor", "system"
    vendor_dir: Optional[Path] = None

    @property
    def identity(self) -> Optional[DependencyIdentity]:
        if isinstance(self.spec, SystemPackage):
            return None
        return identity_for(self.spec, self.rev)


@dataclass
class ResolvedDependency:
    """A dependency available on disk, with its build contributions."""

    name: str
    spec: DependencySpec
    url: str
    rev: str
    identity: Optional[DependencyIdentity] = None
    source_dir: Optional[Path] = None
    include_dirs: List[Path] = field(default_factory=list)
    link_inputs: List[Path] = field(default_factory=list)
    cflags: List[str] = field(default_factory=list)
    link_flags: List[str] = field(default_factory=list)
    checksum: Optional[str] = None
    vendored: bool = False

    @property
    def header_only(self) -> bool:
        return is_header_only(self.spec)

    def lock_entry(self) -> LockEntry:
        return LockEntry(
            name=self.name,
            url=source_url(self.spec),
            rev=self.rev,
            ref=ref_key(self.spec),
            checksum=self.checksum,
        )


def identity_for(spec: DependencySpec, rev: str) -> DependencyIdentity:
    """Cache identity of a git dependency at a resolved revision."""
    if isinstance(spec, SystemPackage):
        raise ValueError("system packages have no cache identity")
    variant = ""
    if isinstance(spec, ComplexBuild):
        recipe = json.dumps([spec.build_command, list(spec.output_path)])
        variant = "build-" + ArtifactCache.hash_url(recipe)[:8]
    return DependencyIdentity(url=spec.url, pin=rev, variant=variant)


def read_vendor_record(vendor_dir: Path) -> Optional[Dict[str, str]]:
    record = vendor_dir / VENDOR_RECORD
    if not record.exists():
        return None
    try:
        with open(record, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logging.warning(f"Ignoring unreadable vendor record {record}: {e}")
        return None


def dependency_include_dirs(source_dir: Path) -> List[Path]:
    dirs = [source_dir / c for c in INCLUDE_CANDIDATES if (source_dir / c).is_dir()]
    return dirs or [source_dir]


def run_concurrently(
    items: Sequence[T],
    key: Callable[[T], str],
    work: Callable[[T], R],
    max_workers: int,
) -> tuple:
    """Run ``work`` over ``items`` on a thread pool, collecting failures.

    Returns:
        (results keyed by name, failures keyed by name)
    """
    results: Dict[str, R] = {}
    failures: Dict[str, Exception] = {}
    if not items:
        return results, failures

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(items)))) as pool:
        futures = {key(item): pool.submit(work, item) for item in items}
        for name, future in futures.items():
            try:
                results[name] = future.result()
            except (CxBuildError, OSError) as e:
                failures[name] = e

    return results, failures


class DependencyResolver:
    """Resolves and fetches a manifest's dependencies."""

    def __init__(
        self,
        project_dir: Path,
        manifest: Manifest,
        cache: ArtifactCache,
        git: Optional[GitClient] = None,
        pkg_config: Optional[PkgConfig] = None,
        toolchain: Optional[Toolchain] = None,
        prebuilt: Optional[PrebuiltCatalog] = None,
        show_progress: bool = True,
        jobs: Optional[int] = None,
    ):
        self.project_dir = Path(project_dir).resolve()
        self.manifest = manifest
        self.cache = cache
        self.git = git or GitClient()
        self.pkg_config = pkg_config or PkgConfig()
        self.toolchain = toolchain
        self.prebuilt = prebuilt or PrebuiltCatalog()
        self.show_progress = show_progress
        self.jobs = jobs or min(8, os.cpu_count() or 1)

    # Planning

    def _vendored(self, name: str, spec: DependencySpec, rev: Optional[str]) -> Optional[Path]:
        vendor_dir = self.project_dir / VENDOR_DIR / name
        record = read_vendor_record(vendor_dir)
        if record is None or isinstance(spec, SystemPackage):
            return None
        if normalize_url(record.get("url", "")) != normalize_url(spec.url):
            return None
        if rev is not None and record.get("rev") != rev:
            return None
        return vendor_dir

    def _remote_rev(self, spec: DependencySpec) -> tuple:
        if isinstance(spec, GitHead):
            return self.git.ls_remote_ref(spec.url, None), "remote"
        if isinstance(spec, (GitPinned, ComplexBuild)):
            ref = spec.ref
            if ref is not None and ref.kind == RefKind.COMMIT:
                return self.git.expand_commit(spec.url, ref.value), "literal"
            return self.git.ls_remote_ref(spec.url, ref), "remote"
        raise TypeError(f"not a git dependency: {spec!r}")

    def _plan_one(self, name: str, locked: Optional[LockEntry], mode: ResolveMode, refresh: bool) -> FetchAction:
        spec = self.manifest.dependencies[name]

        if isinstance(spec, SystemPackage):
            return FetchAction(name=name, spec=spec, rev=locked.rev if locked else "", source="system")

        if locked is not None and not refresh:
            vendor_dir = self._vendored(name, spec, locked.rev)
            source = "vendor" if vendor_dir else "lock"
            return FetchAction(name=name, spec=spec, rev=locked.rev, source=source, vendor_dir=vendor_dir)

        if mode == ResolveMode.LOCKED:
            raise FetchFailure(name, "no lock entry; run 'cxbuild lock --update'")

        if mode == ResolveMode.DEFAULT:
            # Offline builds: a vendored copy of the right source stands in
            vendor_dir = self._vendored(name, spec, None)
            if vendor_dir is not None:
                record = read_vendor_record(vendor_dir) or {}
                return FetchAction(name=name, spec=spec, rev=record["rev"], source="vendor", vendor_dir=vendor_dir)

        rev, source = self._remote_rev(spec)
        return FetchAction(name=name, spec=spec, rev=rev, source=source)

    def plan(
        self,
        locked: Dict[str, LockEntry],
        mode: ResolveMode = ResolveMode.DEFAULT,
        names: Optional[Iterable[str]] = None,
    ) -> List[FetchAction]:
        """Decide the revision and source for every declared dependency.

        Args:
            locked: Current lock entries by name
            mode: Resolution mode
            names: In UPDATE mode, restrict re-resolution to these names

        Returns:
            One FetchAction per declared dependency, sorted by name

        Raises:
            LockMismatchError: In DEFAULT or LOCKED mode, if a lock entry
                disagrees with the manifest
            DependencyFetchError: If any reference failed to resolve
        """
        selected = set(names) if names is not None else None
        unknown = (selected or set()) - set(self.manifest.dependencies)
        if unknown:
            raise FetchFailure(", ".join(sorted(unknown)), "not declared in cxbuild.ini")

        if mode != ResolveMode.UPDATE or selected is not None:
            report = check_lock(self.manifest, locked.values())
            stale = set(report.url_mismatch) | set(report.ref_mismatch)
            if mode == ResolveMode.UPDATE:
                stale -= selected or set()
            if mode == ResolveMode.LOCKED and not report.ok:
                raise LockMismatchError(report, hint="Refusing to sync; run 'cxbuild lock --update' first.")
            if stale:
                raise LockMismatchError(
                    LockReport(
                        url_mismatch=sorted(set(report.url_mismatch) & stale),
                        ref_mismatch=sorted(set(report.ref_mismatch) & stale),
                    )
                )

        def plan_one(name: str) -> FetchAction:
            refresh = mode == ResolveMode.UPDATE and (selected is None or name in selected)
            return self._plan_one(name, locked.get(name), mode, refresh)

        actions, failures = run_concurrently(
            self.manifest.dependency_names(), key=lambda n: n, work=plan_one, max_workers=self.jobs
        )
        if failures:
            raise DependencyFetchError(failures)
        return [actions[name] for name in sorted(actions)]

    # Fetching

    def _run_build_command(self, spec: ComplexBuild, identity: DependencyIdentity, checkout: Path) -> None:
        if self.show_progress:
            print(f"Building {identity}: {spec.build_command}")
        try:
            result = subprocess.run(
                spec.build_command,
                shell=True,
                cwd=str(checkout),
                capture_output=True,
                text=True,
                timeout=BUILD_COMMAND_TIMEOUT,
            )
        except subprocess.TimeoutExpired:
            raise FetchFailure(str(identity), f"build command timed out after {BUILD_COMMAND_TIMEOUT}s")
        if result.returncode != 0:
            raise FetchFailure(
                str(identity),
                f"build command failed with exit code {result.returncode}\n{result.stdout}{result.stderr}".rstrip(),
            )

    def _finalize_build(self, action: FetchAction, identity: DependencyIdentity) -> Callable[[Path], None]:
        spec = action.spec
        if not isinstance(spec, ComplexBuild):
            raise TypeError(f"{action.name} has no build command")

        def finalize(checkout: Path) -> None:
            if (
                self.toolchain is not None
                and self.toolchain.is_msvc
                and spec.ref is not None
                and spec.ref.kind == RefKind.TAG
                and len(spec.output_path) == 1
            ):
                prebuilt = self.prebuilt.try_fetch(
                    action.name,
                    spec.url,
                    spec.ref.value,
                    checkout,
                    spec.output_path[0],
                    self.cache.downloads_dir,
                    show_progress=self.show_progress,
                )
                if prebuilt is not None:
                    (checkout / PREBUILT_CHECKSUM_FILE).write_text(prebuilt.checksum, encoding="utf-8")
                    return
            self._run_build_command(spec, identity, checkout)

        return finalize

    def _fetch_git(self, action: FetchAction) -> ResolvedDependency:
        spec = action.spec
        if isinstance(spec, SystemPackage):
            raise TypeError(f"{action.name} is a system package, not a git dependency")
        identity = identity_for(spec, action.rev)

        if action.vendor_dir is not None:
            source_dir = action.vendor_dir
            rev = action.rev
            vendored = True
        else:
            if self.show_progress and self.cache.lookup(identity) is None:
                print(f"Fetching {action.name} ({identity})...")

            def populate(dest: Path) -> None:
                self.git.fetch_at(spec.url, action.rev, dest)

            finalize = self._finalize_build(action, identity) if isinstance(spec, ComplexBuild) else None
            source_dir = self.cache.lookup_or_create(identity, populate, project=self.project_dir, finalize=finalize)
            rev = action.rev
            vendored = False

        link_inputs = [source_dir / output for output in spec.output_path]
        missing = [str(p) for p in link_inputs if not p.exists()]
        if missing:
            raise FetchFailure(str(identity), f"declared output not found: {', '.join(missing)}")

        checksum_file = source_dir / PREBUILT_CHECKSUM_FILE
        checksum = checksum_file.read_text(encoding="utf-8").strip() if checksum_file.exists() else None

        return ResolvedDependency(
            name=action.name,
            spec=spec,
            url=spec.url,
            rev=rev,
            identity=identity,
            source_dir=source_dir,
            include_dirs=dependency_include_dirs(source_dir),
            link_inputs=link_inputs,
            checksum=checksum,
            vendored=vendored,
        )

    def _fetch_system(self, action: FetchAction) -> ResolvedDependency:
        spec = action.spec
        if not isinstance(spec, SystemPackage):
            raise TypeError(f"{action.name} is not a system package")
        info = self.pkg_config.query(spec.package_name)
        return ResolvedDependency(
            name=action.name,
            spec=spec,
            url=source_url(spec),
            rev=info.version,
            include_dirs=list(info.include_dirs),
            cflags=list(info.cflags),
            link_flags=list(info.libs),
        )

    def _fetch_one(self, action: FetchAction) -> ResolvedDependency:
        if isinstance(action.spec, SystemPackage):
            return self._fetch_system(action)
        return self._fetch_git(action)

    def fetch(self, actions: Sequence[FetchAction]) -> List[ResolvedDependency]:
        """Execute fetch actions, concurrently across identities.

        Raises:
            DependencyFetchError: With every failure, after all actions ran
        """
        results, failures = run_concurrently(
            actions, key=lambda a: a.name, work=self._fetch_one, max_workers=self.jobs
        )
        if failures:
            raise DependencyFetchError(failures)
        return [results[name] for name in sorted(results)]

    # Resolution against the lock file

    def resolve(
        self,
        lock_store: LockStore,
        mode: ResolveMode = ResolveMode.DEFAULT,
        names: Optional[Iterable[str]] = None,
    ) -> List[ResolvedDependency]:
        """Plan, fetch, and update the lock file in one transaction.

        DEFAULT mode only adds entries for dependencies the lock doesn't know
        yet; UPDATE mode rewrites the lock to match the manifest exactly;
        LOCKED mode never writes.
        """
        names = list(names) if names is not None else None
        with lock_store.transaction() as entries:
            actions = self.plan(entries, mode, names)
            resolved = self.fetch(actions)

            if mode == ResolveMode.UPDATE:
                entries.clear()
                entries.update({dep.name: dep.lock_entry() for dep in resolved})
            elif mode == ResolveMode.DEFAULT:
                for dep in resolved:
                    if dep.name not in entries:
                        entries[dep.name] = dep.lock_entry()

        return resolved


def resolved_revisions(resolved: Iterable[ResolvedDependency]) -> Dict[str, str]:
    """name -> revision map used as a global build input."""
    return {dep.name: f"{normalize_url(source_url(dep.spec))}@{dep.rev}" for dep in resolved}
