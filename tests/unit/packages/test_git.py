"""Tests for GitClient against local repositories."""

from unittest.mock import patch

import pytest

from cxbuild.config.manifest import GitRef, RefKind
from cxbuild.packages.git import FetchFailure, GitClient, RefResolutionFailure
from cxbuild.packages.toolchain import ToolchainNotFound


class TestLsRemote:
    def test_head(self, git_repo):
        repo = git_repo()
        assert GitClient().ls_remote_ref(repo.url) == repo.head()

    def test_lightweight_tag(self, git_repo):
        repo = git_repo()
        sha = repo.head()
        repo.tag("v1.0")
        repo.commit({"extra.h": ""})
        assert GitClient().ls_remote_ref(repo.url, GitRef(RefKind.TAG, "v1.0")) == sha

    def test_annotated_tag_resolves_to_commit(self, git_repo):
        repo = git_repo()
        sha = repo.head()
        repo.tag("v2.0", annotated=True)
        assert GitClient().ls_remote_ref(repo.url, GitRef(RefKind.TAG, "v2.0")) == sha

    def test_branch(self, git_repo):
        repo = git_repo()
        sha = repo.head()
        repo.branch("stable")
        repo.commit({"more.h": ""})
        assert GitClient().ls_remote_ref(repo.url, GitRef(RefKind.BRANCH, "stable")) == sha

    def test_missing_tag(self, git_repo):
        repo = git_repo()
        with pytest.raises(RefResolutionFailure, match="tag nope not found"):
            GitClient().ls_remote_ref(repo.url, GitRef(RefKind.TAG, "nope"))

    def test_commit_needs_no_remote(self):
        ref = GitRef(RefKind.COMMIT, "a" * 40)
        assert GitClient(git_executable="/nonexistent/git").ls_remote_ref("https://x/y", ref) == "a" * 40

    def test_unreachable_remote(self, tmp_path, git_repo):
        git_repo()  # skips when git is missing
        with pytest.raises(FetchFailure):
            GitClient().ls_remote_ref(str(tmp_path / "no-such-repo"))

    def test_ambiguous_tag(self):
        output = f"{'1' * 40}\trefs/tags/v1\n{'2' * 40}\trefs/remotes/mirror/refs/tags/v1\n"
        with patch.object(GitClient, "_run", return_value=output):
            with pytest.raises(RefResolutionFailure, match="tag v1 is ambiguous"):
                GitClient(git_executable="git").ls_remote_ref("https://x/y", GitRef(RefKind.TAG, "v1"))

    def test_duplicate_lines_for_same_commit_are_not_ambiguous(self):
        output = f"{'1' * 40}\trefs/heads/main\n{'1' * 40}\trefs/heads/main\n"
        with patch.object(GitClient, "_run", return_value=output):
            ref = GitRef(RefKind.BRANCH, "main")
            assert GitClient(git_executable="git").ls_remote_ref("https://x/y", ref) == "1" * 40

    def test_peeled_tag_is_not_ambiguous(self):
        output = f"{'a' * 40}\trefs/tags/v2\n{'b' * 40}\trefs/tags/v2^{{}}\n"
        with patch.object(GitClient, "_run", return_value=output):
            ref = GitRef(RefKind.TAG, "v2")
            assert GitClient(git_executable="git").ls_remote_ref("https://x/y", ref) == "b" * 40

    def test_head_ignores_remote_tracking_heads(self):
        output = f"{'1' * 40}\tHEAD\n{'2' * 40}\trefs/remotes/origin/HEAD\n"
        with patch.object(GitClient, "_run", return_value=output):
            assert GitClient(git_executable="git").ls_remote_ref("https://x/y") == "1" * 40


class TestFetchAt:
    def test_clone_and_checkout(self, git_repo, tmp_path):
        repo = git_repo(files={"include/a.h": "v1"})
        first = repo.head()
        repo.commit({"include/a.h": "v2"})

        dest = tmp_path / "checkout"
        assert GitClient().fetch_at(repo.url, first, dest) == first
        assert (dest / "include" / "a.h").read_text() == "v1"

    def test_short_commit_expands(self, git_repo, tmp_path):
        repo = git_repo()
        sha = repo.head()
        assert GitClient().fetch_at(repo.url, sha[:10], tmp_path / "co") == sha

    def test_missing_commit(self, git_repo, tmp_path):
        repo = git_repo()
        with pytest.raises(RefResolutionFailure, match="not found"):
            GitClient().fetch_at(repo.url, "0" * 40, tmp_path / "co")


class TestExpandCommit:
    def test_expands_abbreviation(self, git_repo):
        repo = git_repo()
        sha = repo.head()
        repo.commit({"include/later.h": ""})
        assert GitClient().expand_commit(repo.url, sha[:7].upper()) == sha

    def test_full_hash_needs_no_remote(self):
        assert GitClient(git_executable="/nonexistent/git").expand_commit("https://x/y", "A" * 40) == "a" * 40

    def test_unknown_prefix(self, git_repo):
        repo = git_repo()
        with pytest.raises(RefResolutionFailure, match="cannot resolve 0000000"):
            GitClient().expand_commit(repo.url, "0000000")


class TestGitMissing:
    def test_no_git_executable(self, monkeypatch):
        monkeypatch.setattr("cxbuild.packages.git.shutil.which", lambda name: None)
        with pytest.raises(ToolchainNotFound, match="git executable not found"):
            GitClient().ls_remote_ref("https://x/y")
