"""Shared fixtures for the cxbuild test suite."""

import os
import shutil
import stat
import subprocess
import sys
from pathlib import Path
from typing import Dict, Optional

import pytest

from cxbuild.packages.cache import ArtifactCache

FAKE_COMPILER = r"""#!/bin/sh
# Minimal stand-in for a GCC-style driver.
#   -c SRC -o OBJ       compile: copies SRC into OBJ, fails on COMPILE_FAIL
#   -x LANG HDR -o OUT  precompile: writes OUT
#   otherwise           link: writes an executable OUT, fails on --fail-link
echo "$@" >> "__LOG__"
mode=link
src=""
out=""
fail_link=""
while [ $# -gt 0 ]; do
  case "$1" in
    -c) mode=compile; src="$2"; shift ;;
    -x) mode=pch; shift ;;
    -o) out="$2"; shift ;;
    --fail-link) fail_link=1 ;;
  esac
  shift
done
if [ "$mode" = "compile" ]; then
  if grep -q COMPILE_FAIL "$src"; then
    echo "$src:1:1: error: COMPILE_FAIL marker" >&2
    exit 1
  fi
  mkdir -p "$(dirname "$out")"
  cat "$src" > "$out"
  exit 0
fi
if [ -n "$fail_link" ]; then
  echo "ld: error: forced link failure" >&2
  exit 1
fi
mkdir -p "$(dirname "$out")"
printf '#!/bin/sh\necho fake\n' > "$out"
chmod +x "$out"
exit 0
"""


class FakeCompiler:
    """Handle on the fake compiler script and its invocation log."""

    def __init__(self, path: Path, log: Path):
        self.path = path
        self.log = log

    def invocations(self):
        if not self.log.exists():
            return []
        return [line for line in self.log.read_text(encoding="utf-8").splitlines() if line]

    def compile_invocations(self):
        return [line for line in self.invocations() if " -c " in f" {line} "]

    def link_invocations(self):
        return [line for line in self.invocations() if " -c " not in f" {line} " and " -x " not in f" {line} "]

    def compiled_sources(self):
        sources = []
        for line in self.compile_invocations():
            parts = line.split()
            sources.append(Path(parts[parts.index("-c") + 1]).name)
        return sources

    def reset(self):
        if self.log.exists():
            self.log.unlink()


@pytest.fixture
def fake_compiler(tmp_path) -> FakeCompiler:
    """A POSIX shell script that behaves like a tiny C++ compiler driver."""
    if sys.platform == "win32":
        pytest.skip("fake compiler is a POSIX shell script")
    tools = tmp_path / "tools"
    tools.mkdir()
    log = tools / "invocations.log"
    script = tools / "fakecc"
    script.write_text(FAKE_COMPILER.replace("__LOG__", str(log)), encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return FakeCompiler(script, log)


@pytest.fixture
def cache(tmp_path) -> ArtifactCache:
    """An isolated shared cache."""
    return ArtifactCache(tmp_path / "cache")


@pytest.fixture
def make_project(tmp_path):
    """Factory for project directories.

    Usage:
        project = make_project("hello", ini="...", files={"src/main.cpp": "..."})
    """

    def _make(name: str = "project", ini: str = "", files: Optional[Dict[str, str]] = None) -> Path:
        project = tmp_path / name
        project.mkdir(parents=True, exist_ok=True)
        (project / "cxbuild.ini").write_text(ini, encoding="utf-8")
        for rel, content in (files or {}).items():
            path = project / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        return project

    return _make


def _git(args, cwd: Path) -> str:
    env = dict(os.environ)
    env.update({
        "GIT_AUTHOR_NAME": "Test",
        "GIT_AUTHOR_EMAIL": "test@example.com",
        "GIT_COMMITTER_NAME": "Test",
        "GIT_COMMITTER_EMAIL": "test@example.com",
    })
    result = subprocess.run(["git"] + args, cwd=str(cwd), capture_output=True, text=True, env=env)
    if result.returncode != 0:
        raise RuntimeError(f"git {' '.join(args)} failed: {result.stderr}")
    return result.stdout.strip()


class LocalRepo:
    """A local git repository usable as a dependency source."""

    def __init__(self, path: Path):
        self.path = path

    @property
    def url(self) -> str:
        return str(self.path)

    def commit(self, files: Dict[str, str], message: str = "update") -> str:
        for rel, content in files.items():
            target = self.path / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        _git(["add", "-A"], self.path)
        _git(["commit", "--quiet", "-m", message], self.path)
        return self.head()

    def head(self) -> str:
        return _git(["rev-parse", "HEAD"], self.path)

    def tag(self, name: str, annotated: bool = False) -> None:
        if annotated:
            _git(["tag", "-a", name, "-m", name], self.path)
        else:
            _git(["tag", name], self.path)

    def branch(self, name: str) -> None:
        _git(["branch", name], self.path)


@pytest.fixture
def git_repo(tmp_path):
    """Factory for local git repositories with an initial commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    def _make(name: str = "dep", files: Optional[Dict[str, str]] = None) -> LocalRepo:
        path = tmp_path / "repos" / name
        path.mkdir(parents=True)
        _git(["init", "--quiet", "-b", "main"], path)
        repo = LocalRepo(path)
        repo.commit(files or {"include/dep.h": "#pragma once\n"}, message="initial")
        return repo

    return _make
