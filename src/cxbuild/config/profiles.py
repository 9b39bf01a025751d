"""Build profile resolution.

A profile may name a ``base`` profile; resolution walks that chain from the
requested profile upward and then applies the layers base-to-derived on top
of the manifest's ``[build]`` section:

    - compiler, bin, and target replace whatever was inherited
    - flags, defines, and libs are appended, inherited first, never deduplicated

``debug`` and ``release`` exist even when the manifest doesn't declare them;
a manifest section with the same name replaces the built-in.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from cxbuild.config.manifest import ConfigError, Manifest, ProfileOverride

DEFAULT_PROFILE = "debug"

BUILTIN_PROFILES: Dict[str, ProfileOverride] = {
    "debug": ProfileOverride(name="debug", flags=("-g", "-O0", "-Wall")),
    "release": ProfileOverride(name="release", flags=("-O3", "-DNDEBUG")),
}


class ProfileCycleError(ConfigError):
    """Raised when a profile's base chain loops back on itself."""

    def __init__(self, chain: List[str]):
        self.chain = chain
        super().__init__(f"Profile inheritance cycle: {' -> '.join(chain)}")


@dataclass(frozen=True)
class EffectiveConfig:
    """Fully merged build configuration for one profile."""

    profile: str
    compiler: Optional[str]
    flags: Tuple[str, ...] = ()
    defines: Tuple[str, ...] = ()
    libs: Tuple[str, ...] = ()
    bin_name: Optional[str] = None
    target: Optional[str] = None
    chain: Tuple[str, ...] = field(default=(), compare=False)

    def fingerprint(self) -> Dict[str, Any]:
        return {
            "profile": self.profile,
            "compiler": self.compiler,
            "flags": list(self.flags),
            "defines": list(self.defines),
            "libs": list(self.libs),
            "target": self.target,
        }


class ProfileResolver:
    """Merges named profiles against their bases."""

    def __init__(self, manifest: Manifest):
        self.manifest = manifest

    @property
    def profiles(self) -> Mapping[str, ProfileOverride]:
        merged = dict(BUILTIN_PROFILES)
        merged.update(self.manifest.profiles)
        return merged

    def available(self) -> List[str]:
        return sorted(self.profiles)

    def chain(self, name: str) -> List[ProfileOverride]:
        """Return the inheritance chain ordered base-first.

        Raises:
            ConfigError: If the profile or one of its bases is unknown
            ProfileCycleError: If a profile is visited twice
        """
        profiles = self.profiles
        if name not in profiles:
            raise ConfigError(
                f"Profile '{name}' not found. Available profiles: {', '.join(self.available())}"
            )

        walk: List[ProfileOverride] = []
        visited: List[str] = []
        current: Optional[str] = name
        while current is not None:
            if current in visited:
                raise ProfileCycleError(visited + [current])
            visited.append(current)
            profile = profiles.get(current)
            if profile is None:
                raise ConfigError(
                    f"Profile '{visited[-2]}' has unknown base '{current}'"
                )
            walk.append(profile)
            current = profile.base

        walk.reverse()
        return walk

    def resolve(self, name: Optional[str] = None) -> EffectiveConfig:
        """Resolve a profile into its effective configuration.

        Args:
            name: Profile name, or None for the default profile

        Returns:
            EffectiveConfig with all layers applied
        """
        name = name or DEFAULT_PROFILE
        layers = self.chain(name)
        build = self.manifest.build

        compiler = build.compiler
        bin_name = build.bin
        target: Optional[str] = None
        flags: List[str] = list(build.flags)
        defines: List[str] = list(build.defines)
        libs: List[str] = list(build.libs)

        for layer in layers:
            if layer.compiler:
                compiler = layer.compiler
            if layer.bin:
                bin_name = layer.bin
            if layer.target:
                target = layer.target
            flags.extend(layer.flags)
            defines.extend(layer.defines)
            libs.extend(layer.libs)

        logging.debug(f"Resolved profile {name} via {[p.name for p in layers]}")

        return EffectiveConfig(
            profile=name,
            compiler=compiler,
            flags=tuple(flags),
            defines=tuple(defines),
            libs=tuple(libs),
            bin_name=bin_name or self.manifest.package.name,
            target=target,
            chain=tuple(p.name for p in layers),
        )


def effective_flags(manifest: Manifest, name: Optional[str] = None) -> Tuple[str, ...]:
    return ProfileResolver(manifest).resolve(name).flags
