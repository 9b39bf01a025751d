"""
Command-line interface for cxbuild.

This module provides the `cxbuild` CLI tool for building C/C++ projects and
managing their dependencies.
"""

import argparse
import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from cxbuild import __version__
from cxbuild.build import BuildOrchestrator
from cxbuild.build.orchestrator import BuildResult
from cxbuild.cli_utils import (
    ErrorFormatter,
    PathValidator,
    ProfileDetector,
    setup_logging,
)
from cxbuild.errors import CxBuildError
from cxbuild.packages.cache import DEFAULT_RETENTION_DAYS, ArtifactCache
from cxbuild.packages.dependency_resolver import ResolveMode
from cxbuild.packages.dependency_tree import format_tree, tree_to_dict
from cxbuild.packages.lockfile import referenced_identities


@dataclass
class BuildArgs:
    """Arguments for the build command."""

    project_dir: Path
    profile: Optional[str] = None
    clean: bool = False
    jobs: Optional[int] = None
    locked: bool = False
    trace: bool = True
    dry_run: bool = False
    lto: bool = False
    sanitize: Optional[str] = None
    verbose: bool = False


@dataclass
class RunArgs(BuildArgs):
    """Arguments for the run command."""

    program_args: List[str] = field(default_factory=list)


@dataclass
class LockArgs:
    """Arguments for the lock command."""

    project_dir: Path
    check: bool = False
    update: bool = False
    verbose: bool = False


@dataclass
class ProjectArgs:
    """Arguments for commands that only need the project (sync, vendor)."""

    project_dir: Path
    verbose: bool = False


@dataclass
class UpdateArgs:
    project_dir: Path
    names: List[str] = field(default_factory=list)
    verbose: bool = False


@dataclass
class TreeArgs:
    project_dir: Path
    as_json: bool = False
    verbose: bool = False


@dataclass
class CleanArgs:
    project_dir: Path
    profile: Optional[str] = None
    verbose: bool = False


@dataclass
class CacheArgs:
    """Arguments for the cache command."""

    action: str
    days: float = DEFAULT_RETENTION_DAYS
    dry_run: bool = False
    verbose: bool = False


def _build_options(args: BuildArgs, profile: str) -> dict:
    return {
        "profile": profile,
        "clean": args.clean,
        "mode": ResolveMode.LOCKED if args.locked else ResolveMode.DEFAULT,
        "jobs": args.jobs,
        "trace": args.trace,
        "dry_run": args.dry_run,
        "lto": args.lto,
        "sanitize": args.sanitize,
    }


def _exit_on_build_failure(result: BuildResult) -> None:
    """Print why a build failed and exit 1; return if it succeeded."""
    if result.success:
        return
    if result.script_error is not None:
        ErrorFormatter.print_error("Post-build script failed!", str(result.script_error))
        print(f"Executable: {result.artifact_path}")
        sys.exit(1)

    title = "Build failed!"
    if result.error is not None:
        title = f"Build failed! ({type(result.error).__name__})"
    if result.diagnostics:
        message = "\n\n".join(f"{d.source}:\n{d.message}" for d in result.diagnostics)
    else:
        message = result.message
    ErrorFormatter.print_error(title, message)
    sys.exit(1)


def build_command(args: BuildArgs) -> None:
    """Build the project executable.

    Examples:
        cxbuild build                  # Build the debug profile
        cxbuild build examples/hello   # Build a specific project
        cxbuild build -p release       # Build the 'release' profile
        cxbuild build --clean          # Clean build
        cxbuild build --locked         # Fail if cxbuild.lock is out of date
        cxbuild build --dry-run        # Show what would be compiled and linked
        cxbuild build --sanitize address,undefined
    """
    print(f"cxbuild v{__version__}")
    print()

    try:
        orchestrator = BuildOrchestrator(verbose=args.verbose)
        profile = ProfileDetector.detect_profile(args.project_dir, args.profile)

        if args.verbose:
            print(f"Building project: {args.project_dir}")
            print(f"Profile: {profile}")
            print()
        else:
            print(f"Building profile: {profile}...")

        result = orchestrator.build(project_dir=args.project_dir, **_build_options(args, profile))
        _exit_on_build_failure(result)

        if result.dry_run:
            ErrorFormatter.print_success(result.message)
            print(f"Commands: {len(result.planned_commands)}, up to date: {result.cached_units}")
            sys.exit(0)

        ErrorFormatter.print_success("Build successful!")
        print()
        print(f"Executable: {result.artifact_path}")
        print(f"Compiled: {result.compiled_units}, up to date: {result.cached_units}")
        if result.trace_path:
            print(f"Trace: {result.trace_path}")
        print(f"Build time: {result.build_time:.2f}s")
        sys.exit(0)

    except FileNotFoundError as e:
        ErrorFormatter.handle_file_not_found(e)
    except PermissionError as e:
        ErrorFormatter.handle_permission_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def run_command(args: RunArgs) -> None:
    """Build the project, then run its executable.

    Examples:
        cxbuild run
        cxbuild run -p release -- --input data.txt
        cxbuild run --dry-run
    """
    try:
        orchestrator = BuildOrchestrator(verbose=args.verbose)
        profile = ProfileDetector.detect_profile(args.project_dir, args.profile)
        result, returncode = orchestrator.run(
            args.project_dir, args.program_args, **_build_options(args, profile)
        )
        _exit_on_build_failure(result)
        if returncode is None:
            ErrorFormatter.print_success(result.message)
            sys.exit(0)
        if args.verbose:
            print(f"Process exited with code {returncode}")
        sys.exit(returncode)

    except CxBuildError as e:
        ErrorFormatter.handle_cxbuild_error("Run failed!", e)
    except FileNotFoundError as e:
        ErrorFormatter.handle_file_not_found(e)
    except PermissionError as e:
        ErrorFormatter.handle_permission_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def lock_command(args: LockArgs) -> None:
    """Create, check, or refresh cxbuild.lock.

    Examples:
        cxbuild lock            # Add entries for new dependencies
        cxbuild lock --check    # Exit 1 if the lock disagrees with cxbuild.ini
        cxbuild lock --update   # Re-resolve everything and rewrite the lock
    """
    try:
        ProfileDetector.detect_profile(args.project_dir)
        orchestrator = BuildOrchestrator(verbose=args.verbose)
        report = orchestrator.lock(args.project_dir, check=args.check, update=args.update)

        if report.ok:
            ErrorFormatter.print_success("cxbuild.lock is up to date")
            sys.exit(0)
        ErrorFormatter.print_error("cxbuild.lock is out of date", "\n".join(report.format_lines()))
        print("Run 'cxbuild lock --update' to re-resolve.")
        sys.exit(1)

    except CxBuildError as e:
        ErrorFormatter.handle_cxbuild_error("Lock failed!", e)
    except FileNotFoundError as e:
        ErrorFormatter.handle_file_not_found(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def sync_command(args: ProjectArgs) -> None:
    """Fetch exactly the revisions pinned in cxbuild.lock."""
    try:
        ProfileDetector.detect_profile(args.project_dir)
        resolved = BuildOrchestrator(verbose=args.verbose).sync(args.project_dir)
        for dep in resolved:
            print(f"  {dep.name} @ {dep.rev[:12]}")
        ErrorFormatter.print_success(f"Synced {len(resolved)} dependencies")
        sys.exit(0)
    except CxBuildError as e:
        ErrorFormatter.handle_cxbuild_error("Sync failed!", e)
    except FileNotFoundError as e:
        ErrorFormatter.handle_file_not_found(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def update_command(args: UpdateArgs) -> None:
    """Re-resolve dependencies (all, or the named ones) and update the lock."""
    try:
        ProfileDetector.detect_profile(args.project_dir)
        resolved = BuildOrchestrator(verbose=args.verbose).update(args.project_dir, args.names or None)
        for dep in resolved:
            if not args.names or dep.name in args.names:
                print(f"  {dep.name} @ {dep.rev[:12]}")
        ErrorFormatter.print_success("Updated cxbuild.lock")
        sys.exit(0)
    except CxBuildError as e:
        ErrorFormatter.handle_cxbuild_error("Update failed!", e)
    except FileNotFoundError as e:
        ErrorFormatter.handle_file_not_found(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def vendor_command(args: ProjectArgs) -> None:
    """Copy dependencies into vendor/ for offline builds."""
    try:
        ProfileDetector.detect_profile(args.project_dir)
        names = BuildOrchestrator(verbose=args.verbose).vendor(args.project_dir)
        ErrorFormatter.print_success(f"Vendored {len(names)} dependencies into vendor/")
        sys.exit(0)
    except CxBuildError as e:
        ErrorFormatter.handle_cxbuild_error("Vendor failed!", e)
    except FileNotFoundError as e:
        ErrorFormatter.handle_file_not_found(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def tree_command(args: TreeArgs) -> None:
    """Print the dependency tree."""
    try:
        ProfileDetector.detect_profile(args.project_dir)
        orchestrator = BuildOrchestrator(verbose=args.verbose, show_progress=not args.as_json)
        tree = orchestrator.tree(args.project_dir)
        if args.as_json:
            print(json.dumps({"name": tree["name"], "dependencies": tree_to_dict(tree["nodes"])}, indent=2))
        else:
            print(format_tree(tree["name"], tree["nodes"]))
        sys.exit(0)
    except CxBuildError as e:
        ErrorFormatter.handle_cxbuild_error("Tree failed!", e)
    except FileNotFoundError as e:
        ErrorFormatter.handle_file_not_found(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def clean_command(args: CleanArgs) -> None:
    """Remove build output (all profiles, or one)."""
    try:
        removed = BuildOrchestrator(verbose=args.verbose).clean(args.project_dir, args.profile)
        if removed:
            for path in removed:
                print(f"Removed {path}")
        else:
            print("Nothing to clean")
        sys.exit(0)
    except PermissionError as e:
        ErrorFormatter.handle_permission_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def cache_command(args: CacheArgs) -> None:
    """Inspect or prune the shared dependency cache.

    Examples:
        cxbuild cache path
        cxbuild cache list
        cxbuild cache prune --days 7 --dry-run
    """
    try:
        cache = ArtifactCache()
        if args.action == "path":
            print(cache.cache_root)
        elif args.action == "list":
            entries = cache.entries()
            if not entries:
                print("Cache is empty")
            for entry in entries:
                variant = f" [{entry.variant}]" if entry.variant else ""
                print(f"{entry.key}  {entry.url}@{entry.pin[:12]}{variant}")
        elif args.action == "prune":
            pruned = cache.prune(referenced_identities, retention_days=args.days, dry_run=args.dry_run)
            verb = "Would remove" if args.dry_run else "Removed"
            for entry in pruned:
                print(f"{verb} {entry.url}@{entry.pin[:12]}")
            print(f"{verb} {len(pruned)} cache entries")
        sys.exit(0)
    except PermissionError as e:
        ErrorFormatter.handle_permission_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def _add_project_dir(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "project_dir",
        nargs="?",
        type=Path,
        default=Path.cwd(),
        help="Project directory (default: current directory)",
    )


def _add_verbose(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show verbose output",
    )


def _add_build_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-p",
        "--profile",
        default=None,
        help="Build profile (default: debug)",
    )
    parser.add_argument(
        "-c",
        "--clean",
        action="store_true",
        help="Clean build artifacts before building",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=None,
        help="Parallel compile jobs (default: CPU count)",
    )
    parser.add_argument(
        "--locked",
        action="store_true",
        help="Require cxbuild.lock to match cxbuild.ini exactly",
    )
    parser.add_argument(
        "--no-trace",
        action="store_true",
        help="Don't write build_trace.json and compile_commands.json",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the compile and link commands without running them",
    )
    parser.add_argument(
        "--lto",
        action="store_true",
        help="Enable link-time optimization",
    )
    parser.add_argument(
        "--sanitize",
        default=None,
        metavar="KINDS",
        help="Enable sanitizers, comma-separated (address, thread, undefined, leak, memory)",
    )


def main() -> None:
    """cxbuild - C/C++ project manager and build orchestrator."""
    parser = argparse.ArgumentParser(
        prog="cxbuild",
        description="cxbuild - C/C++ project manager and build orchestrator",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"cxbuild {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Build command
    build_parser = subparsers.add_parser("build", help="Build the project executable")
    _add_project_dir(build_parser)
    _add_build_options(build_parser)
    _add_verbose(build_parser)

    # Run command
    run_parser = subparsers.add_parser(
        "run",
        help="Build, then run the executable",
        description="Build, then run the executable. Arguments after -- are passed to the program.",
    )
    _add_project_dir(run_parser)
    _add_build_options(run_parser)
    _add_verbose(run_parser)

    # Lock command
    lock_parser = subparsers.add_parser("lock", help="Create, check, or refresh cxbuild.lock")
    _add_project_dir(lock_parser)
    lock_mode = lock_parser.add_mutually_exclusive_group()
    lock_mode.add_argument("--check", action="store_true", help="Only check; exit 1 on mismatch")
    lock_mode.add_argument("--update", action="store_true", help="Re-resolve all dependencies")
    _add_verbose(lock_parser)

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Fetch the revisions pinned in cxbuild.lock")
    _add_project_dir(sync_parser)
    _add_verbose(sync_parser)

    # Update command
    update_parser = subparsers.add_parser("update", help="Re-resolve dependencies and update the lock")
    _add_project_dir(update_parser)
    update_parser.add_argument("names", nargs="*", help="Dependencies to update (default: all)")
    _add_verbose(update_parser)

    # Vendor command
    vendor_parser = subparsers.add_parser("vendor", help="Copy dependencies into vendor/")
    _add_project_dir(vendor_parser)
    _add_verbose(vendor_parser)

    # Tree command
    tree_parser = subparsers.add_parser("tree", help="Show the dependency tree")
    _add_project_dir(tree_parser)
    tree_parser.add_argument("--json", dest="as_json", action="store_true", help="Print JSON")
    _add_verbose(tree_parser)

    # Clean command
    clean_parser = subparsers.add_parser("clean", help="Remove build output")
    _add_project_dir(clean_parser)
    clean_parser.add_argument("-p", "--profile", default=None, help="Only clean this profile")
    _add_verbose(clean_parser)

    # Cache command
    cache_parser = subparsers.add_parser("cache", help="Inspect or prune the shared cache")
    cache_parser.add_argument("action", choices=["path", "list", "prune"])
    cache_parser.add_argument(
        "--days",
        type=float,
        default=DEFAULT_RETENTION_DAYS,
        help=f"Keep unreferenced entries used within N days (default: {DEFAULT_RETENTION_DAYS})",
    )
    cache_parser.add_argument("--dry-run", action="store_true", help="Only report what would be removed")
    _add_verbose(cache_parser)

    # Parse arguments; for run, everything after -- belongs to the program
    argv = sys.argv[1:]
    program_args: List[str] = []
    if argv and argv[0] == "run" and "--" in argv:
        split = argv.index("--")
        argv, program_args = argv[:split], argv[split + 1:]
    parsed_args = parser.parse_args(argv)

    # If no command specified, show help
    if not parsed_args.command:
        parser.print_help()
        sys.exit(0)

    setup_logging(parsed_args.verbose)

    # Validate project directory exists
    if hasattr(parsed_args, "project_dir"):
        PathValidator.validate_project_dir(parsed_args.project_dir)

    # Execute command
    if parsed_args.command == "build":
        build_command(
            BuildArgs(
                project_dir=parsed_args.project_dir,
                profile=parsed_args.profile,
                clean=parsed_args.clean,
                jobs=parsed_args.jobs,
                locked=parsed_args.locked,
                trace=not parsed_args.no_trace,
                dry_run=parsed_args.dry_run,
                lto=parsed_args.lto,
                sanitize=parsed_args.sanitize,
                verbose=parsed_args.verbose,
            )
        )
    elif parsed_args.command == "run":
        run_command(
            RunArgs(
                project_dir=parsed_args.project_dir,
                profile=parsed_args.profile,
                clean=parsed_args.clean,
                jobs=parsed_args.jobs,
                locked=parsed_args.locked,
                trace=not parsed_args.no_trace,
                dry_run=parsed_args.dry_run,
                lto=parsed_args.lto,
                sanitize=parsed_args.sanitize,
                verbose=parsed_args.verbose,
                program_args=program_args,
            )
        )
    elif parsed_args.command == "lock":
        lock_command(
            LockArgs(
                project_dir=parsed_args.project_dir,
                check=parsed_args.check,
                update=parsed_args.update,
                verbose=parsed_args.verbose,
            )
        )
    elif parsed_args.command == "sync":
        sync_command(ProjectArgs(project_dir=parsed_args.project_dir, verbose=parsed_args.verbose))
    elif parsed_args.command == "update":
        update_command(
            UpdateArgs(
                project_dir=parsed_args.project_dir,
                names=parsed_args.names,
                verbose=parsed_args.verbose,
            )
        )
    elif parsed_args.command == "vendor":
        vendor_command(ProjectArgs(project_dir=parsed_args.project_dir, verbose=parsed_args.verbose))
    elif parsed_args.command == "tree":
        tree_command(
            TreeArgs(
                project_dir=parsed_args.project_dir,
                as_json=parsed_args.as_json,
                verbose=parsed_args.verbose,
            )
        )
    elif parsed_args.command == "clean":
        clean_command(
            CleanArgs(
                project_dir=parsed_args.project_dir,
                profile=parsed_args.profile,
                verbose=parsed_args.verbose,
            )
        )
    elif parsed_args.command == "cache":
        cache_command(
            CacheArgs(
                action=parsed_args.action,
                days=parsed_args.days,
                dry_run=parsed_args.dry_run,
                verbose=parsed_args.verbose,
            )
        )


if __name__ == "__main__":
    main()
