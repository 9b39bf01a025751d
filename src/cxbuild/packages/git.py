"""Git operations for dependency fetching.

All repository access goes through the ``git`` command-line client. Remote
references are resolved with ``ls-remote`` so that pinning a tag or branch
never requires a clone. A full clone without checkout happens when an identity
is first cached; expanding an abbreviated commit takes a bare blobless clone.
"""

import logging
import os
import re
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional

from cxbuild.config.manifest import GitRef, RefKind
from cxbuild.errors import CxBuildError
from cxbuild.packages.toolchain import ToolchainNotFound

DEFAULT_TIMEOUT = 600
_FULL_SHA = re.compile(r"^[0-9a-f]{40}$")


class FetchFailure(CxBuildError):
    """Network, authentication, or not-found failure for one identity."""

    def __init__(self, identity: str, message: str):
        self.identity = identity
        super().__init__(f"{identity}: {message}")


class RefResolutionFailure(FetchFailure):
    """Missing or ambiguous tag, branch, or commit."""

    pass


class GitClient:
    """Thin wrapper over the git CLI."""

    def __init__(self, git_executable: Optional[str] = None, timeout: int = DEFAULT_TIMEOUT):
        self.git = git_executable or shutil.which("git")
        self.timeout = timeout

    def _run(self, args: List[str], identity: str, cwd: Optional[Path] = None) -> str:
        if not self.git:
            raise ToolchainNotFound("git executable not found on PATH. Install git to fetch dependencies.")

        cmd = [self.git] + args
        env = dict(os.environ)
        # Never block on an interactive credential prompt
        env["GIT_TERMINAL_PROMPT"] = "0"
        logging.debug(f"Running: {' '.join(cmd)} (cwd={cwd})")

        try:
            result = subprocess.run(
                cmd,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=env,
            )
        except subprocess.TimeoutExpired:
            raise FetchFailure(identity, f"git {args[0]} timed out after {self.timeout}s")
        except OSError as e:
            raise FetchFailure(identity, f"failed to run git {args[0]}: {e}")

        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            raise FetchFailure(identity, f"git {args[0]} failed: {detail}")
        return result.stdout

    def ls_remote_ref(self, url: str, ref: Optional[GitRef] = None) -> str:
        """Resolve a remote reference to a commit without cloning.

        Args:
            url: Repository URL
            ref: Tag or branch to resolve; None means the default branch tip

        Returns:
            Full 40-character commit hash

        Raises:
            RefResolutionFailure: If the reference is missing or ambiguous
            FetchFailure: If the remote can't be reached
        """
        if ref is not None and ref.kind == RefKind.COMMIT:
            return ref.value

        if ref is None:
            patterns = ["HEAD"]
            label = "HEAD"
        elif ref.kind == RefKind.TAG:
            patterns = [f"refs/tags/{ref.value}", f"refs/tags/{ref.value}^{{}}"]
            label = f"tag {ref.value}"
        else:
            patterns = [f"refs/heads/{ref.value}"]
            label = f"branch {ref.value}"

        output = self._run(["ls-remote", url] + patterns, identity=url)

        # Annotated tags: the peeled entry is the commit, the plain one the tag object
        entries = []
        for line in output.splitlines():
            parts = line.split()
            if len(parts) == 2:
                entries.append((parts[1], parts[0]))
        peeled = {name[:-3]: sha for name, sha in entries if name.endswith("^{}")}
        wanted = patterns[0]
        commits = sorted({
            peeled.get(name, sha)
            for name, sha in entries
            if not name.endswith("^{}") and (name == wanted or (ref is not None and name.endswith("/" + wanted)))
        })

        if not commits:
            raise RefResolutionFailure(url, f"{label} not found on remote")
        if len(commits) > 1:
            raise RefResolutionFailure(url, f"{label} is ambiguous: matches {', '.join(c[:12] for c in commits)}")
        return commits[0]

    def expand_commit(self, url: str, commit: str) -> str:
        """Expand an abbreviated commit hash to the full 40-character form.

        Abbreviations can't be resolved remotely, so this makes a bare,
        blobless clone in a scratch directory and asks it.

        Raises:
            RefResolutionFailure: If the prefix names no commit, or more than one
        """
        prefix = commit.lower()
        if _FULL_SHA.match(prefix):
            return prefix
        with tempfile.TemporaryDirectory(prefix="cxbuild-rev-") as scratch:
            self._run(["clone", "--quiet", "--bare", "--filter=blob:none", url, scratch], identity=url)
            return self.rev_parse(Path(scratch), prefix, url)

    def clone(self, url: str, dest: Path) -> None:
        """Clone a repository into ``dest`` without checking out a tree."""
        self._run(["clone", "--quiet", "--no-checkout", url, str(dest)], identity=url)

    def checkout(self, repo_dir: Path, commit: str, url: str) -> str:
        """Detach ``repo_dir`` at ``commit``, fetching it if the clone lacks it.

        Returns:
            The full commit hash now checked out

        Raises:
            RefResolutionFailure: If the commit doesn't exist upstream
        """
        if not self.has_commit(repo_dir, commit):
            try:
                self._run(["fetch", "--quiet", "origin", commit], identity=url, cwd=repo_dir)
            except FetchFailure as e:
                raise RefResolutionFailure(url, f"commit {commit} not found: {e}")
            if not self.has_commit(repo_dir, commit):
                raise RefResolutionFailure(url, f"commit {commit} not found")

        self._run(["-c", "advice.detachedHead=false", "checkout", "--quiet", "--detach", commit],
                  identity=url, cwd=repo_dir)
        full = self.head_commit(repo_dir, url)
        if _FULL_SHA.match(commit) and full != commit:
            raise RefResolutionFailure(url, f"checked out {full} but expected {commit}")
        return full

    def has_commit(self, repo_dir: Path, commit: str) -> bool:
        try:
            self._run(["cat-file", "-e", f"{commit}^{{commit}}"], identity=str(repo_dir), cwd=repo_dir)
            return True
        except FetchFailure:
            return False

    def rev_parse(self, repo_dir: Path, rev: str, url: str = "") -> str:
        try:
            return self._run(["rev-parse", "--verify", f"{rev}^{{commit}}"],
                             identity=url or str(repo_dir), cwd=repo_dir).strip()
        except FetchFailure as e:
            raise RefResolutionFailure(url or str(repo_dir), f"cannot resolve {rev}: {e}")

    def head_commit(self, repo_dir: Path, url: str = "") -> str:
        return self.rev_parse(repo_dir, "HEAD", url)

    def fetch_at(self, url: str, commit: str, dest: Path) -> str:
        """Clone ``url`` into ``dest`` and check out ``commit``."""
        self.clone(url, dest)
        return self.checkout(dest, commit, url)
