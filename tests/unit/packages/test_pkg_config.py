"""Unit tests for pkg-config lookups."""

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from cxbuild.packages.pkg_config import PkgConfig, SystemPackageNotFound
from cxbuild.packages.toolchain import ToolchainNotFound


def completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestPkgConfig:
    @patch("cxbuild.packages.pkg_config.subprocess.run")
    def test_query_splits_include_dirs(self, mock_run):
        outputs = {
            "--modversion": completed("1.3.1\n"),
            "--cflags": completed("-I/usr/include/zlib -DZLIB_CONST\n"),
            "--libs": completed("-L/usr/lib -lz\n"),
        }
        mock_run.side_effect = lambda cmd, **kwargs: outputs[cmd[1]]

        info = PkgConfig(executable="pkg-config").query("zlib")

        assert info.name == "zlib"
        assert info.version == "1.3.1"
        assert info.include_dirs == [Path("/usr/include/zlib")]
        assert info.cflags == ["-DZLIB_CONST"]
        assert info.libs == ["-L/usr/lib", "-lz"]

    @patch("cxbuild.packages.pkg_config.subprocess.run")
    def test_unknown_package(self, mock_run):
        mock_run.return_value = completed(returncode=1, stderr="Package foo was not found")
        with pytest.raises(SystemPackageNotFound, match="pkg-config:foo"):
            PkgConfig(executable="pkg-config").query("foo")

    @patch("cxbuild.packages.pkg_config.subprocess.run")
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="pkg-config", timeout=30)
        with pytest.raises(Exception, match="timed out"):
            PkgConfig(executable="pkg-config").query("slow")

    def test_pkg_config_missing(self, monkeypatch):
        monkeypatch.setattr("cxbuild.packages.pkg_config.shutil.which", lambda name: None)
        with pytest.raises(ToolchainNotFound, match="pkg-config not found"):
            PkgConfig().query("zlib")
