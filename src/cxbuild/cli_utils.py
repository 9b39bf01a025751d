"""CLI utility functions for cxbuild.

This module provides common utilities used across CLI commands including:
- Project and profile detection from cxbuild.ini
- Error handling and formatting
- Logging setup
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from cxbuild.config import MANIFEST_NAME
from cxbuild.config.profiles import DEFAULT_PROFILE
from cxbuild.errors import CxBuildError

LOG_DIR = Path(os.environ.get("CXBUILD_HOME", Path.home() / ".cxbuild")) / "logs"
LOG_FILE = LOG_DIR / "cxbuild.log"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """Setup logging for a CLI invocation.

    Everything at INFO and above goes to a rotating log file; verbose mode
    also echoes DEBUG and above to stderr.
    """
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Console handler (for verbose mode)
    if verbose:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console_handler)

    # Rotating file handler (always)
    log_file = log_file or LOG_FILE
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            str(log_file),
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=3,
        )
    except OSError as e:
        print(f"Warning: file logging disabled ({e})", file=sys.stderr)
        return
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)


class ProfileDetector:
    """Handles project and profile detection from cxbuild.ini."""

    @staticmethod
    def detect_profile(project_dir: Path, profile: Optional[str] = None) -> str:
        """Validate that the project has a manifest and pick the profile.

        Args:
            project_dir: Project directory containing cxbuild.ini
            profile: Optional explicit profile name

        Returns:
            Profile name to use

        Raises:
            FileNotFoundError: If cxbuild.ini doesn't exist
        """
        ini_path = project_dir / MANIFEST_NAME
        if not ini_path.exists():
            raise FileNotFoundError(f"{MANIFEST_NAME} not found in {project_dir}")
        return profile or DEFAULT_PROFILE


class ErrorFormatter:
    """Formats and displays error messages with ANSI color codes."""

    # ANSI color codes
    RED = "\033[1;31m"
    GREEN = "\033[1;32m"
    YELLOW = "\033[1;33m"
    RESET = "\033[0m"

    @staticmethod
    def print_error(title: str, message: str, verbose: bool = False) -> None:
        """Print formatted error message.

        Args:
            title: Error title (e.g., "File not found", "Build failed")
            message: Error message details
            verbose: Whether to print verbose output (e.g., traceback)
        """
        print()
        print(f"{ErrorFormatter.RED}✗ {title}{ErrorFormatter.RESET}")
        print()
        print(message)
        print()

    @staticmethod
    def print_success(message: str) -> None:
        print()
        print(f"{ErrorFormatter.GREEN}✓ {message}{ErrorFormatter.RESET}")

    @staticmethod
    def print_warning(message: str) -> None:
        print()
        print(f"{ErrorFormatter.YELLOW}✗ {message}{ErrorFormatter.RESET}")

    @staticmethod
    def handle_file_not_found(error: FileNotFoundError) -> None:
        """Handle FileNotFoundError with standard formatting."""
        ErrorFormatter.print_error("Error: File not found", str(error))
        print(f"Make sure you're in a cxbuild project directory with a {MANIFEST_NAME} file.")
        sys.exit(1)

    @staticmethod
    def handle_permission_error(error: PermissionError) -> None:
        ErrorFormatter.print_error("Error: Permission denied", str(error))
        sys.exit(1)

    @staticmethod
    def handle_cxbuild_error(title: str, error: CxBuildError) -> None:
        """Handle a known cxbuild error: message, no traceback, exit 1."""
        ErrorFormatter.print_error(f"{title} ({type(error).__name__})", str(error))
        sys.exit(1)

    @staticmethod
    def handle_keyboard_interrupt() -> None:
        """Handle KeyboardInterrupt with standard formatting."""
        ErrorFormatter.print_warning("Interrupted")
        sys.exit(130)  # Standard exit code for SIGINT

    @staticmethod
    def handle_unexpected_error(error: Exception, verbose: bool = False) -> None:
        """Handle unexpected errors with standard formatting.

        Args:
            error: The exception to handle
            verbose: Whether to print traceback
        """
        message = f"{type(error).__name__}: {error}"
        ErrorFormatter.print_error("Unexpected error", message)

        if verbose:
            import traceback

            print("Traceback:")
            print(traceback.format_exc())

        sys.exit(1)


class PathValidator:
    """Validates project paths and directories."""

    @staticmethod
    def validate_project_dir(project_dir: Path) -> None:
        """Validate that project directory exists and is a directory.

        Raises:
            SystemExit: If path doesn't exist or isn't a directory
        """
        if not project_dir.exists():
            print(
                f"{ErrorFormatter.RED}✗ Error: Path does not exist: {project_dir}{ErrorFormatter.RESET}"
            )
            sys.exit(2)
        if not project_dir.is_dir():
            print(
                f"{ErrorFormatter.RED}✗ Error: Path is not a directory: {project_dir}{ErrorFormatter.RESET}"
            )
            sys.exit(2)
