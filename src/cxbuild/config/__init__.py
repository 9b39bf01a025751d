"""Configuration parsing and profile resolution."""

from cxbuild.config.manifest import (
    BuildConfig,
    ComplexBuild,
    ConfigError,
    DependencySpec,
    GitHead,
    GitPinned,
    GitRef,
    Manifest,
    PackageConfig,
    ProfileOverride,
    RefKind,
    ScriptsConfig,
    SystemPackage,
    parse_dependency,
)
from cxbuild.config.manifest_loader import MANIFEST_NAME, ManifestLoader, load_manifest
from cxbuild.config.profiles import (
    EffectiveConfig,
    ProfileCycleError,
    ProfileResolver,
)

__all__ = [
    "BuildConfig",
    "ComplexBuild",
    "ConfigError",
    "DependencySpec",
    "EffectiveConfig",
    "GitHead",
    "GitPinned",
    "GitRef",
    "MANIFEST_NAME",
    "Manifest",
    "ManifestLoader",
    "PackageConfig",
    "ProfileCycleError",
    "ProfileOverride",
    "ProfileResolver",
    "RefKind",
    "ScriptsConfig",
    "SystemPackage",
    "load_manifest",
    "parse_dependency",
]
