"""Git subprocess runner."""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from storyflow.lib.errors import GitOperationError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60


@dataclass
class GitResult:
    """Outcome of one git invocation."""
    args: list[str]
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def command(self) -> str:
        return "git " + " ".join(self.args)


def run_git(args: list[str], cwd: Path, timeout: int = DEFAULT_TIMEOUT) -> GitResult:
    """
    Run ``git -C <cwd> <args>``.

    A timeout is reported through ``timed_out`` rather than raised. A missing
    git executable raises GitOperationError.
    """
    cmd = ["git", "-C", str(cwd)] + args
    logger.debug(f"[GIT] {' '.join(cmd)}")
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        return GitResult(args, -1, "", f"timed out after {timeout}s", timed_out=True)
    except FileNotFoundError as e:
        raise GitOperationError("git executable not found", " ".join(cmd)) from e
    return GitResult(args, proc.returncode, proc.stdout, proc.stderr)


def run_git_checked(args: list[str], cwd: Path, timeout: int = DEFAULT_TIMEOUT) -> GitResult:
    """Like run_git, but any failure raises GitOperationError."""
    result = run_git(args, cwd, timeout)
    if not result.success:
        detail = result.stderr.strip() or f"exit code {result.returncode}"
        raise GitOperationError(f"{result.command} failed: {detail}", result.command)
    return result
