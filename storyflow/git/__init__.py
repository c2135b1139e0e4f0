"""Git operations for storyflow.

All git access goes through ``run_git``; ``GitBinding`` is the branch and
worktree interface the workspace orchestrator depends on.
"""

from storyflow.git.runner import GitResult, run_git, run_git_checked
from storyflow.git.worktree import GitBinding

__all__ = [
    "GitResult",
    "run_git",
    "run_git_checked",
    "GitBinding",
]
