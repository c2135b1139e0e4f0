"""
Per-story workspace lifecycle.

Each developer story runs in its own git worktree on its own branch, named
``<prefix>-<work item id>-<story id>``. Names are derived from ids only, so
stories provisioned at the same time never contend and need no lock.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from storyflow.lib.errors import (
    BranchAlreadyExists,
    GitOperationError,
    WorkspaceProvisionFailed,
)
from storyflow.pm.models import DeveloperStory, EventType, WorkItem

logger = logging.getLogger(__name__)


class Outcome(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class WorkspaceHandle:
    story_id: int
    work_item_id: int
    branch_name: str
    path: Path
    preserved: bool = False
    released: bool = False


class WorkspaceOrchestrator:
    def __init__(self, vcs, execution_log, worktree_root: Path, base_ref: str = "main"):
        self.vcs = vcs
        self.log = execution_log
        self.worktree_root = Path(worktree_root)
        self.base_ref = base_ref

    @staticmethod
    def branch_name_for(story: DeveloperStory, work_item: WorkItem) -> str:
        return f"{work_item.branch_prefix}-{work_item.id}-{story.id}"

    def _created_by_story(self, story_id: int, branch: str) -> bool:
        return any(
            e.event_type == EventType.BRANCH_CREATED and e.metadata.get("branch") == branch
            for e in self.log.query_by_story(story_id)
        )

    def provision(
        self,
        story: DeveloperStory,
        work_item: WorkItem,
        branch_name: Optional[str] = None,
    ) -> WorkspaceHandle:
        """Create (or reclaim) the branch and worktree for a story.

        Sets ``story.branch_name`` and ``story.workspace_path``; the caller
        persists the story.

        Raises:
            BranchAlreadyExists: The branch exists but this story never created it
            WorkspaceProvisionFailed: Any git or filesystem failure
        """
        branch = branch_name or self.branch_name_for(story, work_item)
        path = self.worktree_root / branch
        base_ref = work_item.base_ref or self.base_ref

        try:
            if self.vcs.branch_exists(branch):
                if not self._created_by_story(story.id, branch):
                    raise BranchAlreadyExists(branch, story.id)
                logger.info(f"[WORKSPACE] Story {story.id}: reusing branch {branch}")
            else:
                self.vcs.create_branch(branch, base_ref)
                self.log.record(
                    story.id,
                    EventType.BRANCH_CREATED,
                    details=f"Created branch {branch} from {base_ref}",
                    metadata={"branch": branch, "base_ref": base_ref},
                )

            if self.vcs.worktree_exists(path):
                self.log.record(
                    story.id,
                    EventType.INFO,
                    details=f"Reusing preserved workspace at {path}",
                    metadata={"branch": branch, "path": str(path)},
                )
            else:
                self.vcs.create_worktree(branch, path)
                self.log.record(
                    story.id,
                    EventType.WORKTREE_CREATED,
                    details=f"Created worktree at {path}",
                    metadata={"branch": branch, "path": str(path)},
                )
        except (GitOperationError, OSError) as e:
            raise WorkspaceProvisionFailed(story.id, str(e)) from e

        story.branch_name = branch
        story.workspace_path = str(path)
        logger.info(f"[WORKSPACE] Story {story.id}: provisioned {path}")
        return WorkspaceHandle(
            story_id=story.id,
            work_item_id=work_item.id,
            branch_name=branch,
            path=path,
        )

    def release(self, handle: WorkspaceHandle, outcome: Outcome, cleanup: bool = False) -> bool:
        """Tear down or preserve a workspace. Returns True if the worktree was removed.

        Success removes the worktree and keeps the branch. Failure preserves
        the worktree for inspection unless ``cleanup`` is set; a preserved
        workspace can still be removed by a later release with ``cleanup``
        or SUCCESS. Repeating a release that already took effect does nothing.
        """
        if handle.released:
            return False

        if outcome == Outcome.FAILURE and not cleanup:
            if handle.preserved:
                return False
            self.log.record(
                handle.story_id,
                EventType.INFO,
                details=f"Workspace preserved at {handle.path}",
                metadata={"branch": handle.branch_name, "path": str(handle.path)},
            )
            handle.preserved = True
            logger.info(f"[WORKSPACE] Story {handle.story_id}: preserved {handle.path}")
            return False

        try:
            self.vcs.remove_worktree(handle.path)
        except (GitOperationError, OSError) as e:
            logger.warning(f"[WORKSPACE] Story {handle.story_id}: could not remove {handle.path}: {e}")
            self.log.record(
                handle.story_id,
                EventType.INFO,
                details=f"Worktree removal failed for {handle.path}",
                error_message=str(e),
                metadata={"path": str(handle.path)},
            )
            return False

        self.log.record(
            handle.story_id,
            EventType.WORKTREE_REMOVED,
            details=f"Removed worktree at {handle.path}",
            metadata={"branch": handle.branch_name, "path": str(handle.path), "outcome": outcome.value},
        )
        handle.released = True
        logger.info(f"[WORKSPACE] Story {handle.story_id}: removed {handle.path}")
        return True
