"""Branch and worktree binding used by the workspace orchestrator."""

import logging
from pathlib import Path

from storyflow.git.runner import DEFAULT_TIMEOUT, run_git, run_git_checked

logger = logging.getLogger(__name__)


class GitBinding:
    """Git operations against one repository checkout.

    Every mutating call raises GitOperationError on failure.
    """

    def __init__(self, repo_path: Path, timeout: int = DEFAULT_TIMEOUT):
        self.repo_path = Path(repo_path)
        self.timeout = timeout

    def branch_exists(self, name: str) -> bool:
        result = run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{name}"], self.repo_path, self.timeout)
        return result.success

    def create_branch(self, name: str, base_ref: str) -> None:
        run_git_checked(["branch", name, base_ref], self.repo_path, self.timeout)
        logger.info(f"[GIT] Created branch {name} from {base_ref}")

    def create_worktree(self, branch: str, path: Path) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        run_git_checked(["worktree", "add", str(path), branch], self.repo_path, self.timeout)
        logger.info(f"[GIT] Added worktree {path} on {branch}")

    def remove_worktree(self, path: Path) -> None:
        run_git_checked(["worktree", "remove", "--force", str(path)], self.repo_path, self.timeout)
        logger.info(f"[GIT] Removed worktree {path}")

    def worktree_exists(self, path: Path) -> bool:
        return (Path(path) / ".git").exists()
