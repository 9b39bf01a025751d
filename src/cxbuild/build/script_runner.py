"""Pre- and post-build script execution."""

import logging
import subprocess
from pathlib import Path
from typing import Optional

from cxbuild.errors import CxBuildError

SCRIPT_TIMEOUT = 3600


class ScriptFailure(CxBuildError):
    """A build script exited non-zero."""

    def __init__(self, stage: str, returncode: Optional[int], output: str = ""):
        self.stage = stage
        self.returncode = returncode
        self.output = output
        detail = f"exit code {returncode}" if returncode is not None else "timed out"
        super().__init__(f"{stage} script failed ({detail})\n{output}".rstrip())


class ScriptRunner:
    """Runs [scripts] commands through the shell from the project directory."""

    def __init__(self, project_dir: Path, show_progress: bool = True, timeout: int = SCRIPT_TIMEOUT):
        self.project_dir = Path(project_dir)
        self.show_progress = show_progress
        self.timeout = timeout

    def run(self, stage: str, command: Optional[str]) -> Optional[str]:
        """Run ``command`` for ``stage`` ("pre_build" or "post_build").

        Returns:
            Combined output, or None when no command is configured

        Raises:
            ScriptFailure: On non-zero exit or timeout
        """
        if not command:
            return None
        if self.show_progress:
            print(f"Running {stage}: {command}")
        logging.info(f"Running {stage} script: {command}")

        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=str(self.project_dir),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ScriptFailure(stage, None, str(e.output or ""))

        output = f"{result.stdout}{result.stderr}".strip()
        if result.returncode != 0:
            raise ScriptFailure(stage, result.returncode, output)
        if self.show_progress and output:
            print(output)
        return output
