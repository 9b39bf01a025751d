"""
cxbuild.ini manifest loader.

This module parses cxbuild.ini project files into the immutable Manifest
model consumed by the rest of the build system.
"""

import configparser
import shlex
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from cxbuild.config.manifest import (
    DEFAULT_EDITION,
    BuildConfig,
    ConfigError,
    DependencySpec,
    Manifest,
    PackageConfig,
    ProfileOverride,
    ScriptsConfig,
    parse_dependency,
)
from cxbuild.packages.registry import AliasRegistry

MANIFEST_NAME = "cxbuild.ini"

KNOWN_EDITIONS = {
    "c89", "c99", "c11", "c17", "c23",
    "c++11", "c++14", "c++17", "c++20", "c++23",
}


class ManifestLoader:
    """
    Parser for cxbuild.ini project files.

    Example cxbuild.ini:
        [package]
        name = hello
        edition = c++20

        [build]
        flags = -Wall -Wextra

        [dependencies]
        fmt = https://github.com/fmtlib/fmt

        [dependency:json]
        git = nlohmann/json
        tag = v3.11.3

        [profile:esp32]
        base = release
        compiler = xtensa-esp32-elf-g++
        flags = -mcpu=esp32

    Usage:
        manifest = ManifestLoader(Path("cxbuild.ini")).load()
    """

    def __init__(self, ini_path: Path, registry: Optional[AliasRegistry] = None):
        """
        Initialize the loader with a cxbuild.ini file.

        Args:
            ini_path: Path to the cxbuild.ini file
            registry: Alias registry used for bare dependency names

        Raises:
            ConfigError: If the file doesn't exist or cannot be parsed
        """
        self.ini_path = ini_path
        self.registry = registry

        if not ini_path.exists():
            raise ConfigError(f"Manifest not found: {ini_path}")

        self.config = configparser.ConfigParser(
            allow_no_value=True, interpolation=configparser.ExtendedInterpolation()
        )
        # Dependency names are case-sensitive
        self.config.optionxform = str  # type: ignore[assignment]

        try:
            self.config.read(ini_path, encoding="utf-8")
        except configparser.Error as e:
            raise ConfigError(f"Failed to parse {ini_path}: {e}") from e

    @classmethod
    def from_project(cls, project_dir: Path, registry: Optional[AliasRegistry] = None) -> "ManifestLoader":
        return cls(project_dir / MANIFEST_NAME, registry)

    def load(self) -> Manifest:
        """
        Parse the whole file into a Manifest.

        Raises:
            ConfigError: On any malformed or contradictory setting
        """
        try:
            return Manifest(
                package=self._package(),
                build=self._build(),
                dependencies=self._dependencies(),
                profiles=self._profiles(),
                scripts=self._scripts(),
            )
        except configparser.Error as e:
            raise ConfigError(f"Invalid value in {self.ini_path}: {e}") from e

    def get_profiles(self) -> List[str]:
        """
        Get list of all profile names defined in the file.

        Example:
            For [profile:asan], [profile:bench], returns ['asan', 'bench']
        """
        return [s.split(":", 1)[1] for s in self.config.sections() if s.startswith("profile:")]

    def _section(self, name: str) -> Dict[str, str]:
        if name not in self.config:
            return {}
        return {key: (value or "").strip() for key, value in self.config[name].items()}

    def _package(self) -> PackageConfig:
        section = self._section("package")
        name = section.get("name")
        if not name:
            raise ConfigError(f"{self.ini_path.name}: [package] requires a 'name'")
        edition = section.get("edition") or DEFAULT_EDITION
        if edition.lower() not in KNOWN_EDITIONS:
            raise ConfigError(
                f"Unknown edition '{edition}'. Expected one of: {', '.join(sorted(KNOWN_EDITIONS))}"
            )
        return PackageConfig(
            name=name,
            version=section.get("version") or "0.1.0",
            edition=edition.lower(),
        )

    def _build(self) -> BuildConfig:
        section = self._section("build")
        # `cflags` is the legacy spelling; `flags` wins when both are present
        flags = section.get("flags") or section.get("cflags", "")
        return BuildConfig(
            compiler=section.get("compiler") or None,
            bin=section.get("bin") or None,
            flags=_split(flags),
            defines=_split(section.get("defines", "")),
            libs=_split(section.get("libs", "")),
            ldflags=_split(section.get("ldflags", "")),
            include=_split(section.get("include", "")),
            sources=_split(section.get("sources", "")),
            pch=section.get("pch") or None,
        )

    def _dependencies(self) -> Dict[str, DependencySpec]:
        deps: Dict[str, DependencySpec] = {}

        for name, value in self._section("dependencies").items():
            deps[name] = parse_dependency(name, value, self.registry)

        for section in self.config.sections():
            if not section.startswith("dependency:"):
                continue
            name = section.split(":", 1)[1].strip()
            if not name:
                raise ConfigError(f"Section [{section}] has no dependency name")
            if name in deps:
                raise ConfigError(
                    f"Dependency '{name}' is declared both in [dependencies] and [{section}]"
                )
            deps[name] = parse_dependency(name, self._section(section), self.registry)

        return deps

    def _profiles(self) -> Dict[str, ProfileOverride]:
        profiles: Dict[str, ProfileOverride] = {}
        for name in self.get_profiles():
            section = self._section(f"profile:{name}")
            profiles[name] = ProfileOverride(
                name=name,
                base=section.get("base") or None,
                compiler=section.get("compiler") or None,
                flags=_split(section.get("flags", "")),
                defines=_split(section.get("defines", "")),
                libs=_split(section.get("libs", "")),
                bin=section.get("bin") or None,
                target=section.get("target") or None,
            )
        return profiles

    def _scripts(self) -> ScriptsConfig:
        section = self._section("scripts")
        return ScriptsConfig(
            pre_build=section.get("pre_build") or None,
            post_build=section.get("post_build") or None,
        )


def _split(value: str) -> Tuple[str, ...]:
    """Split a list value on whitespace and newlines, honoring quotes."""
    if not value:
        return ()
    try:
        return tuple(shlex.split(value))
    except ValueError as e:
        raise ConfigError(f"Cannot parse list value {value!r}: {e}") from e


def load_manifest(project_dir: Path, registry: Optional[AliasRegistry] = None) -> Manifest:
    """Load ``cxbuild.ini`` from a project directory."""
    return ManifestLoader.from_project(project_dir, registry).load()
