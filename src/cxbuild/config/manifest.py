"""Project manifest model.

The manifest is the validated, immutable view of ``cxbuild.ini`` that every
other component consumes. Dependency declarations are discriminated into one
of four shapes exactly once, in :func:`parse_dependency`; downstream code
dispatches on the concrete type and never inspects raw fields again.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from cxbuild.errors import CxBuildError
from cxbuild.packages.registry import AliasRegistry
from cxbuild.packages.url_utils import (
    github_shorthand_to_url,
    is_github_shorthand,
    is_local_path,
)

DEFAULT_EDITION = "c++20"
SYSTEM_PACKAGE_PREFIX = "pkg:"


class ConfigError(CxBuildError):
    """Malformed or contradictory build, dependency, or profile settings."""

    pass


class RefKind(Enum):
    TAG = "tag"
    BRANCH = "branch"
    COMMIT = "commit"


@dataclass(frozen=True)
class GitRef:
    """A pinned git reference."""

    kind: RefKind
    value: str

    def key(self) -> str:
        """Stable string form, e.g. ``tag:v10.0.0``."""
        return f"{self.kind.value}:{self.value}"


@dataclass(frozen=True)
class GitHead:
    """Track the default branch tip of a repository."""

    url: str
    output_path: Tuple[str, ...] = ()


@dataclass(frozen=True)
class GitPinned:
    """Repository pinned to a tag, branch, or commit."""

    url: str
    ref: GitRef
    output_path: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SystemPackage:
    """Package discovered through pkg-config."""

    package_name: str


@dataclass(frozen=True)
class ComplexBuild:
    """Repository built in place with a custom command."""

    url: str
    build_command: str
    output_path: Tuple[str, ...] = ()
    ref: Optional[GitRef] = None


DependencySpec = Union[GitHead, GitPinned, SystemPackage, ComplexBuild]


def is_git_dependency(spec: DependencySpec) -> bool:
    return isinstance(spec, (GitHead, GitPinned, ComplexBuild))


def is_header_only(spec: DependencySpec) -> bool:
    """A git dependency with no declared output contributes includes only."""
    if isinstance(spec, SystemPackage):
        return False
    return not spec.output_path


def ref_key(spec: DependencySpec) -> str:
    """The pin a dependency was declared with, as recorded in the lock."""
    if isinstance(spec, GitPinned):
        return spec.ref.key()
    if isinstance(spec, ComplexBuild) and spec.ref is not None:
        return spec.ref.key()
    if isinstance(spec, SystemPackage):
        return "system"
    return "HEAD"


def source_url(spec: DependencySpec) -> str:
    """The URL recorded for a dependency in the lock."""
    if isinstance(spec, SystemPackage):
        return f"pkg-config:{spec.package_name}"
    return spec.url


@dataclass(frozen=True)
class PackageConfig:
    name: str
    version: str = "0.1.0"
    edition: str = DEFAULT_EDITION


@dataclass(frozen=True)
class BuildConfig:
    """The ``[build]`` section."""

    compiler: Optional[str] = None
    bin: Optional[str] = None
    flags: Tuple[str, ...] = ()
    defines: Tuple[str, ...] = ()
    libs: Tuple[str, ...] = ()
    ldflags: Tuple[str, ...] = ()
    include: Tuple[str, ...] = ()
    sources: Tuple[str, ...] = ()
    pch: Optional[str] = None


@dataclass(frozen=True)
class ProfileOverride:
    """A named ``[profile:<name>]`` section."""

    name: str
    base: Optional[str] = None
    compiler: Optional[str] = None
    flags: Tuple[str, ...] = ()
    defines: Tuple[str, ...] = ()
    libs: Tuple[str, ...] = ()
    bin: Optional[str] = None
    target: Optional[str] = None


@dataclass(frozen=True)
class ScriptsConfig:
    pre_build: Optional[str] = None
    post_build: Optional[str] = None


@dataclass(frozen=True)
class Manifest:
    """Validated project manifest."""

    package: PackageConfig
    build: BuildConfig = field(default_factory=BuildConfig)
    dependencies: Mapping[str, DependencySpec] = field(default_factory=dict)
    profiles: Mapping[str, ProfileOverride] = field(default_factory=dict)
    scripts: ScriptsConfig = field(default_factory=ScriptsConfig)

    def dependency_names(self):
        return sorted(self.dependencies)

    def build_section_fingerprint(self) -> Dict[str, Any]:
        """Build section values that affect compiled output."""
        return {
            "edition": self.package.edition,
            "compiler": self.build.compiler,
            "flags": list(self.build.flags),
            "defines": list(self.build.defines),
            "include": list(self.build.include),
            "pch": self.build.pch,
        }


def _parse_ref(name: str, raw: Mapping[str, str]) -> Optional[GitRef]:
    pins = [(kind, raw.get(key)) for key, kind in (
        ("tag", RefKind.TAG),
        ("branch", RefKind.BRANCH),
        ("rev", RefKind.COMMIT),
    ) if raw.get(key)]
    if len(pins) > 1:
        keys = ", ".join(kind.value for kind, _ in pins)
        raise ConfigError(f"Dependency '{name}' pins more than one reference ({keys})")
    if not pins:
        return None
    kind, value = pins[0]
    return GitRef(kind=kind, value=str(value).strip())


def _parse_outputs(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def resolve_source(value: str, registry: Optional[AliasRegistry] = None) -> str:
    """Turn a short dependency source into a full URL.

    Accepts full URLs, local paths, ``owner/repo`` shorthand, and registry
    aliases.
    """
    value = value.strip()
    if "://" in value or value.startswith("git@") or is_local_path(value):
        return value
    if is_github_shorthand(value):
        return github_shorthand_to_url(value)
    registry = registry or AliasRegistry()
    url = registry.get(value)
    if url is None:
        raise ConfigError(
            f"Unknown dependency source '{value}'. "
            + "Use a URL, an owner/repo shorthand, or a known alias"
        )
    return url


def parse_dependency(
    name: str,
    raw: Union[str, Mapping[str, str]],
    registry: Optional[AliasRegistry] = None,
) -> DependencySpec:
    """Discriminate a raw dependency declaration into a DependencySpec.

    Args:
        name: Dependency name
        raw: Either the short string form or a mapping with keys
            ``git``, ``pkg``, ``tag``, ``branch``, ``rev``, ``build``, ``output``
        registry: Alias registry for bare names

    Returns:
        One of GitHead, GitPinned, SystemPackage, ComplexBuild

    Raises:
        ConfigError: If the declaration is empty or contradictory
    """
    if isinstance(raw, str):
        value = raw.strip()
        if not value:
            raise ConfigError(f"Dependency '{name}' has an empty source")
        if value.startswith(SYSTEM_PACKAGE_PREFIX):
            package = value[len(SYSTEM_PACKAGE_PREFIX):].strip()
            if not package:
                raise ConfigError(f"Dependency '{name}' names no system package")
            return SystemPackage(package_name=package)
        return GitHead(url=resolve_source(value, registry))

    unknown = set(raw) - {"git", "pkg", "tag", "branch", "rev", "build", "output"}
    if unknown:
        raise ConfigError(
            f"Dependency '{name}' has unknown keys: {', '.join(sorted(unknown))}"
        )

    git = (raw.get("git") or "").strip()
    pkg = (raw.get("pkg") or "").strip()
    build = (raw.get("build") or "").strip()
    outputs = _parse_outputs(raw.get("output"))
    ref = _parse_ref(name, raw)

    if git and pkg:
        raise ConfigError(f"Dependency '{name}' sets both 'git' and 'pkg'")

    if pkg:
        if ref or build or outputs:
            raise ConfigError(
                f"System package dependency '{name}' cannot pin a reference or declare build outputs"
            )
        return SystemPackage(package_name=pkg)

    if not git:
        raise ConfigError(f"Dependency '{name}' must set 'git' or 'pkg'")

    url = resolve_source(git, registry)

    if build:
        return ComplexBuild(url=url, build_command=build, output_path=outputs, ref=ref)
    if ref is not None:
        return GitPinned(url=url, ref=ref, output_path=outputs)
    return GitHead(url=url, output_path=outputs)
