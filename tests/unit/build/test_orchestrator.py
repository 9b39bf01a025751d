"""End-to-end build orchestration against the fake compiler."""

import json
import shutil
from pathlib import Path
from unittest.mock import patch

import pytest

from cxbuild.build.build_state import STATE_FILE_NAME, BuildState
from cxbuild.build.linker import LinkError
from cxbuild.build.orchestrator import BuildOrchestrator, build_root
from cxbuild.build.parallel_compiler import ParallelCompiler
from cxbuild.build.trace import COMPILE_COMMANDS_NAME, TRACE_FILE_NAME
from cxbuild.config.manifest import ConfigError
from cxbuild.packages.cache import ArtifactCache
from cxbuild.packages.lockfile import LockMismatchError, LockStore

SOURCES = {
    "include/shared.h": "#pragma once\nint shared();\n",
    "src/a.cpp": '#include "shared.h"\nint a() { return shared(); }\n',
    "src/b.cpp": '#include "shared.h"\nint b() { return shared(); }\n',
    "src/main.cpp": "int main() { return 0; }\n",
}


def manifest(compiler, build_extra="", extra=""):
    return (
        "[package]\nname = hello\n\n"
        f"[build]\ncompiler = {compiler}\n{build_extra}\n"
        "[profile:fast]\nbase = release\nflags = -march=native\n"
        f"{extra}"
    )


@pytest.fixture
def orchestrator(cache):
    return BuildOrchestrator(cache=cache, show_progress=False)


@pytest.fixture
def hello(make_project, fake_compiler):
    return make_project("hello", manifest(fake_compiler.path), SOURCES)


class TestIncrementalBuild:
    def test_first_build(self, orchestrator, hello, fake_compiler):
        result = orchestrator.build(hello)

        assert result.success, result.message
        assert result.compiled_units == 3
        assert result.cached_units == 0
        assert result.linked
        assert result.artifact_path == (build_root(hello) / "debug" / "hello").resolve()
        assert result.artifact_path.exists()
        assert sorted(fake_compiler.compiled_sources()) == ["a.cpp", "b.cpp", "main.cpp"]
        assert len(fake_compiler.link_invocations()) == 1

    def test_second_build_does_nothing(self, orchestrator, hello, fake_compiler):
        orchestrator.build(hello)
        fake_compiler.reset()

        result = orchestrator.build(hello)

        assert result.success
        assert result.compiled_units == 0
        assert result.cached_units == 3
        assert not result.linked
        assert fake_compiler.invocations() == []

    def test_header_edit_recompiles_includers_only(self, orchestrator, hello, fake_compiler):
        orchestrator.build(hello)
        fake_compiler.reset()
        (hello / "include" / "shared.h").write_text("#pragma once\nint shared(int);\n")

        result = orchestrator.build(hello)

        assert result.compiled_units == 2
        assert sorted(fake_compiler.compiled_sources()) == ["a.cpp", "b.cpp"]
        assert result.linked

    def test_shadowing_header_recompiles_includers(self, orchestrator, hello, fake_compiler):
        orchestrator.build(hello)
        fake_compiler.reset()
        (hello / "src" / "shared.h").write_text("#pragma once\nint shared(long);\n")

        result = orchestrator.build(hello)
        assert sorted(fake_compiler.compiled_sources()) == ["a.cpp", "b.cpp"]
        state = BuildState.load(build_root(hello).resolve() / "debug")
        assert any(header.endswith("src/shared.h") for header in state.units["src/a.cpp"].headers)
        assert result.linked

        fake_compiler.reset()
        (hello / "src" / "shared.h").write_text("#pragma once\nint shared(short);\n")
        assert orchestrator.build(hello).compiled_units == 2

    def test_source_edit_recompiles_one(self, orchestrator, hello, fake_compiler):
        orchestrator.build(hello)
        fake_compiler.reset()
        (hello / "src" / "main.cpp").write_text("int main() { return 1; }\n")

        result = orchestrator.build(hello)
        assert fake_compiler.compiled_sources() == ["main.cpp"]
        assert result.cached_units == 2

    def test_manifest_flag_change_recompiles_all(self, orchestrator, hello, fake_compiler):
        orchestrator.build(hello)
        fake_compiler.reset()
        (hello / "cxbuild.ini").write_text(manifest(fake_compiler.path, build_extra="flags = -Wextra"))

        assert orchestrator.build(hello).compiled_units == 3

    def test_profiles_have_separate_outputs(self, orchestrator, hello, fake_compiler):
        orchestrator.build(hello)
        fake_compiler.reset()

        result = orchestrator.build(hello, profile="fast")

        assert result.compiled_units == 3
        assert result.artifact_path.parent.name == "fast"
        line = fake_compiler.compile_invocations()[0]
        assert "-O3" in line and "-march=native" in line
        # The debug build is still up to date
        fake_compiler.reset()
        assert orchestrator.build(hello).compiled_units == 0

    def test_missing_object_recompiles(self, orchestrator, hello, fake_compiler):
        orchestrator.build(hello)
        state = BuildState.load(build_root(hello).resolve() / "debug")
        Path(state.units["src/main.cpp"].object_path).unlink()
        fake_compiler.reset()

        assert orchestrator.build(hello).compiled_units == 1

    def test_missing_artifact_relinks(self, orchestrator, hello, fake_compiler):
        first = orchestrator.build(hello)
        first.artifact_path.unlink()
        fake_compiler.reset()

        result = orchestrator.build(hello)
        assert result.compiled_units == 0
        assert result.linked

    def test_clean_rebuilds_everything(self, orchestrator, hello, fake_compiler):
        orchestrator.build(hello)
        fake_compiler.reset()
        assert orchestrator.build(hello, clean=True).compiled_units == 3


class TestFailures:
    def test_compile_failure_records_only_successes(self, orchestrator, hello, fake_compiler):
        (hello / "src" / "main.cpp").write_text("COMPILE_FAIL\n")

        result = orchestrator.build(hello)

        assert not result.success
        assert result.artifact_path is None
        assert [d.source.name for d in result.diagnostics] == ["main.cpp"]
        assert "COMPILE_FAIL marker" in result.diagnostics[0].message
        state = BuildState.load(build_root(hello).resolve() / "debug")
        assert sorted(state.units) == ["src/a.cpp", "src/b.cpp"]
        assert state.artifact is None

        (hello / "src" / "main.cpp").write_text("int main() { return 0; }\n")
        fake_compiler.reset()
        fixed = orchestrator.build(hello)
        assert fixed.success
        assert fake_compiler.compiled_sources() == ["main.cpp"]

    def test_link_failure_keeps_unit_records(self, orchestrator, hello, fake_compiler):
        (hello / "cxbuild.ini").write_text(manifest(fake_compiler.path, build_extra="ldflags = --fail-link"))

        result = orchestrator.build(hello)

        assert not result.success
        assert isinstance(result.error, LinkError)
        state = BuildState.load(build_root(hello).resolve() / "debug")
        assert len(state.units) == 3
        assert state.artifact is None

        (hello / "cxbuild.ini").write_text(manifest(fake_compiler.path))
        fake_compiler.reset()
        retry = orchestrator.build(hello)
        assert retry.success
        assert retry.compiled_units == 0
        assert retry.linked

    def test_interrupt_keeps_finished_units(self, orchestrator, hello, fake_compiler):
        original = ParallelCompiler.compile_all

        def interrupted_after_first(self, units, on_success):
            def record_then_interrupt(unit, result):
                on_success(unit, result)
                raise KeyboardInterrupt

            return original(self, units, record_then_interrupt)

        def reraise(ke):
            raise ke

        with (
            patch.object(ParallelCompiler, "compile_all", interrupted_after_first),
            patch("cxbuild.interrupt_utils.handle_keyboard_interrupt_properly", side_effect=reraise),
        ):
            with pytest.raises(KeyboardInterrupt):
                orchestrator.build(hello, jobs=1)

        state = BuildState.load(build_root(hello).resolve() / "debug")
        assert len(state.units) == 1
        assert state.artifact is None
        finished = next(iter(state.units))

        fake_compiler.reset()
        resumed = orchestrator.build(hello)
        assert resumed.success
        assert resumed.compiled_units == 2
        assert Path(finished).name not in fake_compiler.compiled_sources()
        assert resumed.linked

    def test_post_build_failure_keeps_artifact(self, orchestrator, make_project, fake_compiler):
        project = make_project(
            "post", manifest(fake_compiler.path, extra="[scripts]\npost_build = exit 7\n"), SOURCES
        )

        result = orchestrator.build(project)

        assert not result.success
        assert result.script_error is not None
        assert result.script_error.returncode == 7
        assert result.artifact_path.exists()

    def test_pre_build_generates_sources(self, orchestrator, make_project, fake_compiler):
        project = make_project(
            "pre",
            manifest(fake_compiler.path, extra="[scripts]\npre_build = echo 'int gen;' > src/gen.cpp\n"),
            {"src/main.cpp": "int main() {}\n"},
        )
        result = orchestrator.build(project)
        assert result.success, result.message
        assert sorted(fake_compiler.compiled_sources()) == ["gen.cpp", "main.cpp"]

    def test_unknown_profile_touches_nothing(self, orchestrator, hello):
        result = orchestrator.build(hello, profile="nope")
        assert not result.success
        assert isinstance(result.error, ConfigError)
        assert not (hello / ".cxbuild").exists()

    def test_no_sources(self, orchestrator, make_project, fake_compiler):
        project = make_project("empty", manifest(fake_compiler.path), {})
        result = orchestrator.build(project)
        assert not result.success
        assert "No source files found" in result.message


class TestOutputs:
    def test_trace_and_compile_commands(self, orchestrator, hello):
        result = orchestrator.build(hello)
        profile_dir = build_root(hello).resolve() / "debug"

        trace = json.loads((profile_dir / TRACE_FILE_NAME).read_text())
        names = {event["name"] for event in trace["traceEvents"]}
        assert {"src/a.cpp", "src/b.cpp", "src/main.cpp", "link"} <= names
        assert result.trace_path == profile_dir / TRACE_FILE_NAME

        database = json.loads((profile_dir / COMPILE_COMMANDS_NAME).read_text())
        assert len(database) == 3
        assert all("-c" in entry["arguments"] for entry in database)

    def test_no_trace(self, orchestrator, hello):
        result = orchestrator.build(hello, trace=False)
        assert result.trace_path is None
        assert not (build_root(hello) / "debug" / TRACE_FILE_NAME).exists()

    def test_state_file_written(self, orchestrator, hello):
        orchestrator.build(hello)
        assert (build_root(hello) / "debug" / STATE_FILE_NAME).exists()

    def test_precompiled_header_reused(self, orchestrator, make_project, fake_compiler):
        files = dict(SOURCES)
        files["src/pch.h"] = "#pragma once\n#include <vector>\n"
        project = make_project("pch", manifest(fake_compiler.path, build_extra="pch = src/pch.h"), files)

        orchestrator.build(project)
        pch_runs = [line for line in fake_compiler.invocations() if "c++-header" in line]
        assert len(pch_runs) == 1
        assert (build_root(project) / "debug" / "pch" / "pch.h.gch").exists()
        staged = str((build_root(project) / "debug" / "pch" / "pch.h").resolve())
        assert all(f"-include {staged}" in line for line in fake_compiler.compile_invocations())

        fake_compiler.reset()
        result = orchestrator.build(project)
        assert result.compiled_units == 0
        assert fake_compiler.invocations() == []


class TestDryRunAndInstrumentation:
    @staticmethod
    def compiled_names(commands):
        return sorted(Path(cmd[cmd.index("-c") + 1]).name for cmd in commands if "-c" in cmd)

    def test_dry_run_compiles_nothing(self, orchestrator, hello, fake_compiler):
        result = orchestrator.build(hello, dry_run=True)

        assert result.success
        assert result.dry_run
        assert fake_compiler.invocations() == []
        assert not build_root(hello).exists()
        assert self.compiled_names(result.planned_commands) == ["a.cpp", "b.cpp", "main.cpp"]
        link = result.planned_commands[-1]
        assert "-c" not in link
        assert link[-2:] == ["-o", str(result.artifact_path)]

    def test_dry_run_reports_only_stale_units(self, orchestrator, hello, fake_compiler):
        orchestrator.build(hello)
        fake_compiler.reset()
        (hello / "src" / "main.cpp").write_text("int main() { return 2; }\n")

        result = orchestrator.build(hello, dry_run=True)

        assert fake_compiler.invocations() == []
        assert self.compiled_names(result.planned_commands) == ["main.cpp"]
        assert result.cached_units == 2
        assert orchestrator.build(hello).compiled_units == 1

    def test_dry_run_up_to_date(self, orchestrator, hello):
        orchestrator.build(hello)
        assert orchestrator.build(hello, dry_run=True).planned_commands == []

    def test_dry_run_with_clean_keeps_outputs(self, orchestrator, hello):
        first = orchestrator.build(hello)
        result = orchestrator.build(hello, dry_run=True, clean=True)
        assert len(result.planned_commands) == 4
        assert first.artifact_path.exists()

    def test_dry_run_skips_pre_build_script(self, orchestrator, make_project, fake_compiler):
        project = make_project(
            "dry", manifest(fake_compiler.path, extra="[scripts]\npre_build = touch ran.txt\n"), SOURCES
        )
        assert orchestrator.build(project, dry_run=True).success
        assert not (project / "ran.txt").exists()

    def test_lto_and_sanitizers_reach_compile_and_link(self, orchestrator, hello, fake_compiler):
        orchestrator.build(hello)
        fake_compiler.reset()

        result = orchestrator.build(hello, lto=True, sanitize="address,undefined")

        assert result.compiled_units == 3
        for line in fake_compiler.compile_invocations():
            assert "-flto" in line.split()
            assert "-fsanitize=address,undefined" in line.split()
        link = fake_compiler.link_invocations()[0].split()
        assert "-flto" in link and "-fsanitize=address,undefined" in link

        fake_compiler.reset()
        assert orchestrator.build(hello, lto=True, sanitize="address,undefined").compiled_units == 0
        assert orchestrator.build(hello).compiled_units == 3

    def test_invalid_sanitizer_touches_nothing(self, orchestrator, hello):
        result = orchestrator.build(hello, sanitize="address,thread")
        assert not result.success
        assert isinstance(result.error, ConfigError)
        assert not build_root(hello).exists()


class TestRun:
    def test_run_executes_artifact(self, orchestrator, hello, capfd):
        result, returncode = orchestrator.run(hello, ["--flag"])
        assert result.success
        assert returncode == 0
        assert "fake" in capfd.readouterr().out

    def test_failed_build_does_not_run(self, orchestrator, hello):
        (hello / "src" / "main.cpp").write_text("COMPILE_FAIL\n")
        result, returncode = orchestrator.run(hello)
        assert not result.success
        assert returncode is None

    def test_dry_run_does_not_run(self, orchestrator, hello):
        result, returncode = orchestrator.run(hello, dry_run=True)
        assert result.dry_run
        assert returncode is None
        assert not result.artifact_path.exists()


class TestCleanAndDependencies:
    def test_clean(self, orchestrator, hello):
        orchestrator.build(hello)
        removed = orchestrator.clean(hello, "debug")
        assert removed == [build_root(hello).resolve() / "debug"]
        assert orchestrator.clean(hello) == [build_root(hello).resolve()]
        assert orchestrator.clean(hello) == []

    def test_git_dependency_headers_and_lock(self, orchestrator, make_project, fake_compiler, git_repo):
        repo = git_repo("greeter", {"include/greeter.h": "#pragma once\n"})
        files = {"src/main.cpp": '#include <greeter.h>\nint main() {}\n'}
        project = make_project(
            "withdep",
            manifest(fake_compiler.path, extra=f"[dependencies]\ngreeter = {repo.url}\n"),
            files,
        )

        result = orchestrator.build(project)

        assert result.success, result.message
        assert LockStore(project).load()["greeter"].rev == repo.head()
        database = json.loads((build_root(project) / "debug" / COMPILE_COMMANDS_NAME).read_text())
        assert any(arg.startswith("-I") and arg.endswith("/include") for arg in database[0]["arguments"])

        # New upstream commits don't change a locked build
        repo.commit({"include/greeter.h": "#pragma once\nint changed;\n"})
        fake_compiler.reset()
        assert orchestrator.build(project).compiled_units == 0

    def test_vendored_build_matches_networked_build(
        self, orchestrator, make_project, fake_compiler, git_repo, tmp_path
    ):
        repo = git_repo("greeter", {"include/greeter.h": "#pragma once\nint greet();\n"})
        files = {"src/main.cpp": '#include <greeter.h>\nint main() { return greet(); }\n'}
        project = make_project(
            "vendored",
            manifest(fake_compiler.path, extra=f"[dependencies]\ngreeter = {repo.url}\n"),
            files,
        )
        networked = orchestrator.build(project)
        assert networked.success, networked.message
        networked_objects = {
            rel: Path(record.object_path).read_text()
            for rel, record in BuildState.load(build_root(project).resolve() / "debug").units.items()
        }
        assert orchestrator.vendor(project) == ["greeter"]

        # Offline copy: no upstream repository and an empty shared cache
        offline = tmp_path / "offline"
        shutil.copytree(project, offline, ignore=shutil.ignore_patterns(".cxbuild"))
        shutil.rmtree(repo.path)
        fake_compiler.reset()

        offline_orchestrator = BuildOrchestrator(cache=ArtifactCache(tmp_path / "empty-cache"), show_progress=False)
        vendored = offline_orchestrator.build(offline)

        assert vendored.success, vendored.message
        assert vendored.compiled_units == networked.compiled_units
        assert vendored.linked
        vendored_state = BuildState.load(build_root(offline).resolve() / "debug")
        assert {rel: Path(r.object_path).read_text() for rel, r in vendored_state.units.items()} == networked_objects
        assert LockStore(offline).load()["greeter"].rev == LockStore(project).load()["greeter"].rev
        assert "offline/vendor/greeter/include" in fake_compiler.compile_invocations()[0]

    def test_lock_check_and_update(self, orchestrator, make_project, fake_compiler, git_repo):
        repo = git_repo("dep")
        project = make_project(
            "locky", manifest(fake_compiler.path, extra=f"[dependencies]\ndep = {repo.url}\n"), {}
        )
        report = orchestrator.lock(project, check=True)
        assert report.missing == ["dep"]
        assert not (project / "cxbuild.lock").exists()

        assert orchestrator.lock(project).ok
        first = LockStore(project).load()["dep"].rev

        newer = repo.commit({"include/more.h": ""})
        assert orchestrator.lock(project).ok
        assert LockStore(project).load()["dep"].rev == first

        orchestrator.lock(project, update=True)
        assert LockStore(project).load()["dep"].rev == newer

    def test_sync_requires_matching_lock(self, orchestrator, make_project, fake_compiler, git_repo):
        repo = git_repo("dep")
        project = make_project(
            "synced", manifest(fake_compiler.path, extra=f"[dependencies]\ndep = {repo.url}\n"), {}
        )
        with pytest.raises(LockMismatchError):
            orchestrator.sync(project)

        orchestrator.lock(project)
        resolved = orchestrator.sync(project)
        assert [d.name for d in resolved] == ["dep"]

    def test_tree(self, orchestrator, make_project, fake_compiler, git_repo):
        repo = git_repo("dep")
        project = make_project(
            "treed", manifest(fake_compiler.path, extra=f"[dependencies]\ndep = {repo.url}\n"), {}
        )
        tree = orchestrator.tree(project)
        assert tree["name"] == "hello"
        assert [node.name for node in tree["nodes"]] == ["dep"]
