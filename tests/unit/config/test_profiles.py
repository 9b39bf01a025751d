"""Tests for profile inheritance."""

import pytest

from cxbuild.config.manifest import BuildConfig, ConfigError, Manifest, PackageConfig, ProfileOverride
from cxbuild.config.profiles import (
    DEFAULT_PROFILE,
    ProfileCycleError,
    ProfileResolver,
    effective_flags,
)


def make_manifest(build=None, profiles=()):
    return Manifest(
        package=PackageConfig(name="app"),
        build=build or BuildConfig(),
        profiles={p.name: p for p in profiles},
    )


class TestProfileResolver:
    def test_builtin_profiles(self):
        resolver = ProfileResolver(make_manifest())
        assert resolver.available() == ["debug", "release"]
        assert resolver.resolve("debug").flags == ("-g", "-O0", "-Wall")
        assert resolver.resolve("release").flags == ("-O3", "-DNDEBUG")

    def test_default_profile_is_debug(self):
        effective = ProfileResolver(make_manifest()).resolve()
        assert effective.profile == DEFAULT_PROFILE == "debug"

    def test_flags_concatenate_base_first(self):
        """flags(P) = flags(base(P)) ++ P.flags, on top of [build]."""
        manifest = make_manifest(
            build=BuildConfig(flags=("-Wextra",), defines=("ROOT",), libs=("m",)),
            profiles=[
                ProfileOverride(name="asan", base="debug", flags=("-fsanitize=address",), libs=("asan",)),
                ProfileOverride(name="asan-ci", base="asan", flags=("-Werror",), defines=("CI",)),
            ],
        )
        effective = ProfileResolver(manifest).resolve("asan-ci")
        assert effective.flags == ("-Wextra", "-g", "-O0", "-Wall", "-fsanitize=address", "-Werror")
        assert effective.defines == ("ROOT", "CI")
        assert effective.libs == ("m", "asan")
        assert effective.chain == ("debug", "asan", "asan-ci")

    def test_duplicates_are_kept(self):
        manifest = make_manifest(profiles=[ProfileOverride(name="dup", base="debug", flags=("-g",))])
        assert ProfileResolver(manifest).resolve("dup").flags == ("-g", "-O0", "-Wall", "-g")

    def test_scalars_replace(self):
        manifest = make_manifest(
            build=BuildConfig(compiler="g++", bin="app-bin"),
            profiles=[
                ProfileOverride(name="cross", base="release", compiler="arm-none-eabi-g++", target="arm"),
                ProfileOverride(name="cross-named", base="cross", bin="firmware"),
            ],
        )
        effective = ProfileResolver(manifest).resolve("cross-named")
        assert effective.compiler == "arm-none-eabi-g++"
        assert effective.target == "arm"
        assert effective.bin_name == "firmware"

    def test_scalars_inherit_from_build(self):
        manifest = make_manifest(build=BuildConfig(compiler="clang++"))
        effective = ProfileResolver(manifest).resolve("release")
        assert effective.compiler == "clang++"
        assert effective.bin_name == "app"

    def test_manifest_profile_overrides_builtin(self):
        manifest = make_manifest(profiles=[ProfileOverride(name="release", flags=("-O2",))])
        assert ProfileResolver(manifest).resolve("release").flags == ("-O2",)

    def test_unknown_profile(self):
        with pytest.raises(ConfigError, match="Profile 'nope' not found"):
            ProfileResolver(make_manifest()).resolve("nope")

    def test_unknown_base(self):
        manifest = make_manifest(profiles=[ProfileOverride(name="x", base="ghost")])
        with pytest.raises(ConfigError, match="unknown base 'ghost'"):
            ProfileResolver(manifest).resolve("x")

    def test_cycle_detected(self):
        manifest = make_manifest(
            profiles=[
                ProfileOverride(name="a", base="b"),
                ProfileOverride(name="b", base="c"),
                ProfileOverride(name="c", base="a"),
            ]
        )
        with pytest.raises(ProfileCycleError) as exc_info:
            ProfileResolver(manifest).resolve("a")
        assert exc_info.value.chain == ["a", "b", "c", "a"]
        assert isinstance(exc_info.value, ConfigError)

    def test_self_cycle(self):
        manifest = make_manifest(profiles=[ProfileOverride(name="loop", base="loop")])
        with pytest.raises(ProfileCycleError):
            ProfileResolver(manifest).resolve("loop")

    def test_fingerprint_changes_with_flags(self):
        resolver = ProfileResolver(make_manifest())
        assert resolver.resolve("debug").fingerprint() != resolver.resolve("release").fingerprint()

    def test_effective_flags_helper(self):
        assert effective_flags(make_manifest(), "release") == ("-O3", "-DNDEBUG")
