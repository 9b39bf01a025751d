"""
Unit tests for the cxbuild.ini loader.
"""

import pytest

from cxbuild.config.manifest import ComplexBuild, ConfigError, GitHead, GitPinned, SystemPackage
from cxbuild.config.manifest_loader import ManifestLoader, load_manifest


class TestManifestLoader:
    """Test suite for ManifestLoader."""

    @pytest.fixture
    def tmp_ini_path(self, tmp_path):
        return tmp_path / "cxbuild.ini"

    @pytest.fixture
    def full_config(self, tmp_ini_path):
        """Create a manifest touching every section."""
        content = """
[package]
name = hello
version = 1.2.3
edition = C++17

[build]
compiler = clang++
bin = hello-bin
flags = -Wall -Wextra
defines = FOO BAR=2
libs = m pthread
ldflags = -rdynamic
include = include third_party/inc
sources = src/*.cpp
pch = src/pch.h

[dependencies]
fmt = https://github.com/fmtlib/fmt
zlib = pkg:zlib

[dependency:json]
git = nlohmann/json
tag = v3.11.3

[dependency:raylib]
git = raysan5/raylib
build = make -C src
output = src/libraylib.a

[profile:asan]
base = debug
flags = -fsanitize=address
libs = asan

[scripts]
pre_build = ./gen.sh
post_build = strip ${build:bin}
"""
        tmp_ini_path.write_text(content)
        return tmp_ini_path

    def test_missing_file(self, tmp_ini_path):
        with pytest.raises(ConfigError, match="Manifest not found"):
            ManifestLoader(tmp_ini_path)

    def test_package_section(self, full_config):
        manifest = ManifestLoader(full_config).load()
        assert manifest.package.name == "hello"
        assert manifest.package.version == "1.2.3"
        assert manifest.package.edition == "c++17"

    def test_build_section(self, full_config):
        build = ManifestLoader(full_config).load().build
        assert build.compiler == "clang++"
        assert build.bin == "hello-bin"
        assert build.flags == ("-Wall", "-Wextra")
        assert build.defines == ("FOO", "BAR=2")
        assert build.libs == ("m", "pthread")
        assert build.ldflags == ("-rdynamic",)
        assert build.include == ("include", "third_party/inc")
        assert build.sources == ("src/*.cpp",)
        assert build.pch == "src/pch.h"

    def test_dependencies(self, full_config):
        deps = ManifestLoader(full_config).load().dependencies
        assert set(deps) == {"fmt", "zlib", "json", "raylib"}
        assert isinstance(deps["fmt"], GitHead)
        assert isinstance(deps["zlib"], SystemPackage)
        assert isinstance(deps["json"], GitPinned)
        assert isinstance(deps["raylib"], ComplexBuild)

    def test_profiles_and_scripts(self, full_config):
        loader = ManifestLoader(full_config)
        assert loader.get_profiles() == ["asan"]
        manifest = loader.load()
        asan = manifest.profiles["asan"]
        assert asan.base == "debug"
        assert asan.flags == ("-fsanitize=address",)
        assert manifest.scripts.pre_build == "./gen.sh"
        # Extended interpolation works across sections
        assert manifest.scripts.post_build == "strip hello-bin"

    def test_requires_package_name(self, tmp_ini_path):
        tmp_ini_path.write_text("[package]\nversion = 1.0\n")
        with pytest.raises(ConfigError, match="requires a 'name'"):
            ManifestLoader(tmp_ini_path).load()

    def test_unknown_edition(self, tmp_ini_path):
        tmp_ini_path.write_text("[package]\nname = x\nedition = c++98\n")
        with pytest.raises(ConfigError, match="Unknown edition"):
            ManifestLoader(tmp_ini_path).load()

    def test_default_edition(self, tmp_ini_path):
        tmp_ini_path.write_text("[package]\nname = x\n")
        assert ManifestLoader(tmp_ini_path).load().package.edition == "c++20"

    def test_duplicate_dependency_declaration(self, tmp_ini_path):
        tmp_ini_path.write_text(
            "[package]\nname = x\n[dependencies]\nfmt = fmt\n[dependency:fmt]\ngit = fmtlib/fmt\n"
        )
        with pytest.raises(ConfigError, match="declared both"):
            ManifestLoader(tmp_ini_path).load()

    def test_cflags_legacy_spelling(self, tmp_ini_path):
        tmp_ini_path.write_text("[package]\nname = x\n[build]\ncflags = -O1\n")
        assert ManifestLoader(tmp_ini_path).load().build.flags == ("-O1",)

    def test_quoted_list_values(self, tmp_ini_path):
        tmp_ini_path.write_text('[package]\nname = x\n[build]\ndefines = GREETING="hello world"\n')
        assert ManifestLoader(tmp_ini_path).load().build.defines == ("GREETING=hello world",)

    def test_unbalanced_quotes(self, tmp_ini_path):
        tmp_ini_path.write_text('[package]\nname = x\n[build]\nflags = "-O2\n')
        with pytest.raises(ConfigError, match="Cannot parse list value"):
            ManifestLoader(tmp_ini_path).load()

    def test_dependency_names_are_case_sensitive(self, tmp_ini_path):
        tmp_ini_path.write_text("[package]\nname = x\n[dependencies]\nMyLib = https://x/MyLib\n")
        assert list(ManifestLoader(tmp_ini_path).load().dependencies) == ["MyLib"]

    def test_load_manifest_from_project(self, full_config, tmp_path):
        assert load_manifest(tmp_path).package.name == "hello"
