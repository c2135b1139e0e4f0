"""
Story reservation, dependency mutation and blocking for one work item.

Every operation here that reads the dependency graph and then writes runs
under the work item's file lock, so the ready set a worker sees cannot be
changed by a concurrent claim or dependency insertion before it acts on
it. The lock is never held across an AI provider call.
"""

import logging
from typing import Optional

from storyflow.lib.errors import (
    DependencyError,
    InvalidStateTransition,
    UnmetDependencies,
)
from storyflow.pm.models import (
    DeveloperStory,
    DeveloperStoryDependency,
    EventType,
    StoryStatus,
    WorkItem,
    WorkItemStatus,
)
from storyflow.runner.locking import work_item_lock
from storyflow.workflow.graph import DependencyGraph, compute_ready_set
from storyflow.workflow.selection import select_next
from storyflow.workflow.state_machine import transition

logger = logging.getLogger(__name__)

CLAIMABLE_WORK_ITEM_STATUSES = (WorkItemStatus.REFINED, WorkItemStatus.IN_PROGRESS)
ORPHAN_REASON = "Orphaned by an interrupted run"


class Scheduler:
    def __init__(self, store, execution_log):
        self.store = store
        self.log = execution_log

    def _lock(self, work_item_id: int):
        return work_item_lock(self.store.locks_dir, work_item_id, self.store.lock_timeout)

    def _graph(self, work_item_id: int) -> DependencyGraph:
        return DependencyGraph(
            self.store.stories_for(work_item_id),
            self.store.dependencies_for(work_item_id),
        )

    @staticmethod
    def _candidates(graph: DependencyGraph) -> list[DeveloperStory]:
        """Fresh ready set plus requeued (Ready) stories whose prerequisites are met."""
        stories = list(graph.stories.values())
        candidates = compute_ready_set(stories, graph.edges)
        cyclic = graph.cyclic_stories()
        candidates += [
            s for s in stories
            if s.status == StoryStatus.READY
            and s.id not in cyclic
            and graph.prerequisites_met(s.id)
        ]
        return candidates

    # --- queries -------------------------------------------------------------

    def ready_set(self, work_item_id: int) -> list[DeveloperStory]:
        with self._lock(work_item_id):
            graph = self._graph(work_item_id)
            return compute_ready_set(list(graph.stories.values()), graph.edges)

    def next_candidate(self, work_item_id: int) -> Optional[DeveloperStory]:
        """The story claim_next would pick, without reserving it."""
        with self._lock(work_item_id):
            return select_next(self._candidates(self._graph(work_item_id)))

    def has_active(self, work_item_id: int) -> bool:
        return any(s.status == StoryStatus.IN_PROGRESS for s in self.store.stories_for(work_item_id))

    # --- reservation ---------------------------------------------------------

    def _check_work_item(self, work_item: WorkItem) -> None:
        if work_item.status not in CLAIMABLE_WORK_ITEM_STATUSES:
            raise InvalidStateTransition(work_item.status, WorkItemStatus.IN_PROGRESS, work_item)

    def _reserve(self, work_item: WorkItem, story: DeveloperStory) -> DeveloperStory:
        if story.status == StoryStatus.PENDING:
            transition(story, StoryStatus.READY)
        transition(story, StoryStatus.IN_PROGRESS)
        attempt = story.attempts + 1
        story.metadata["attempts"] = attempt
        self.store.update_story(story)

        if work_item.status == WorkItemStatus.REFINED:
            transition(work_item, WorkItemStatus.IN_PROGRESS)
            self.store.update_work_item(work_item)

        self.log.record(
            story.id,
            EventType.STARTED,
            details=f"Attempt {attempt}: {story.title}",
            metadata={"attempt": attempt},
        )
        logger.info(f"[SCHED] Work item {work_item.id}: claimed story {story.id} (attempt {attempt})")
        return story

    def claim_next(self, work_item_id: int) -> Optional[DeveloperStory]:
        """Atomically pick the next eligible story and move it to InProgress.

        Returns None when nothing is eligible right now, including once the
        work item has completed.
        """
        with self._lock(work_item_id):
            work_item = self.store.get_work_item(work_item_id)
            if work_item.status == WorkItemStatus.COMPLETED:
                return None
            self._check_work_item(work_item)
            story = select_next(self._candidates(self._graph(work_item_id)))
            if story is None:
                return None
            return self._reserve(work_item, story)

    def claim(self, story_id: int) -> DeveloperStory:
        """Reserve a specific story.

        Raises:
            UnmetDependencies: Its prerequisites are not all Completed
            InvalidStateTransition: It is not in a claimable status
        """
        work_item_id = self.store.get_story(story_id).work_item_id
        with self._lock(work_item_id):
            work_item = self.store.get_work_item(work_item_id)
            self._check_work_item(work_item)
            graph = self._graph(work_item_id)
            story = graph.stories[story_id]
            if story.id not in {c.id for c in self._candidates(graph)}:
                if story.status in (StoryStatus.PENDING, StoryStatus.READY):
                    raise UnmetDependencies(story.id, graph.unmet_prerequisites(story.id))
                raise InvalidStateTransition(story.status, StoryStatus.IN_PROGRESS, story)
            return self._reserve(work_item, story)

    # --- graph mutation ------------------------------------------------------

    def add_dependency(
        self,
        dependent_id: int,
        required_id: int,
        description: Optional[str] = None,
    ) -> DeveloperStoryDependency:
        """Persist ``dependent -> required`` after the graph accepts it."""
        dependent = self.store.get_story(dependent_id)
        required = self.store.get_story(required_id)
        if dependent.work_item_id != required.work_item_id:
            raise DependencyError(
                f"Story {dependent_id} (work item {dependent.work_item_id}) cannot depend on "
                f"story {required_id} (work item {required.work_item_id})"
            )

        with self._lock(dependent.work_item_id):
            graph = self._graph(dependent.work_item_id)
            graph.check_dependency(dependent_id, required_id)
            edge = graph.add_edge(DeveloperStoryDependency(
                id=self.store.allocate_id("dependency"),
                dependent_story_id=dependent_id,
                required_story_id=required_id,
                description=description,
            ))
            self.store.add_dependency(edge)
            self.log.record(
                dependent_id,
                EventType.INFO,
                details=f"Now depends on story {required_id}",
                metadata={"required_story_id": required_id},
            )
        logger.info(f"[SCHED] Story {dependent_id} now depends on story {required_id}")
        return edge

    # --- blocking and retries ------------------------------------------------

    def _detach_workspace(self, story: DeveloperStory) -> None:
        """Forget a preserved workspace once the story will not run again."""
        if story.branch_name is None and story.workspace_path is None:
            return
        self.log.record(
            story.id,
            EventType.INFO,
            details=f"Workspace left in place at {story.workspace_path} on branch {story.branch_name}",
            metadata={"branch_name": story.branch_name, "workspace_path": story.workspace_path},
        )
        story.branch_name = None
        story.workspace_path = None

    def _block_downstream(self, graph: DependencyGraph, story_id: int, reason: str) -> list[int]:
        blocked = []
        for sid in graph.downstream_of(story_id):
            story = graph.stories[sid]
            if story.status not in (StoryStatus.PENDING, StoryStatus.READY):
                continue
            transition(story, StoryStatus.BLOCKED, reason=reason)
            self._detach_workspace(story)
            self.store.update_story(story)
            self.log.record(sid, EventType.INFO, details=f"Blocked: {reason}", metadata={"blocked_by": story_id})
            blocked.append(sid)
        if blocked:
            logger.warning(f"[SCHED] Blocked stories {blocked}: {reason}")
        return blocked

    def block_downstream(self, story_id: int, reason: str) -> list[int]:
        """Block every Pending/Ready story that transitively requires ``story_id``."""
        work_item_id = self.store.get_story(story_id).work_item_id
        with self._lock(work_item_id):
            return self._block_downstream(self._graph(work_item_id), story_id, reason)

    def _resolve_blocked(self, graph: DependencyGraph) -> list[int]:
        cyclic = graph.cyclic_stories()
        resolved = []
        for story in graph.stories.values():
            if (
                story.status == StoryStatus.BLOCKED
                and not story.exhausted
                and story.id not in cyclic
                and graph.prerequisites_met(story.id)
            ):
                transition(story, StoryStatus.READY)
                self.store.update_story(story)
                self.log.record(story.id, EventType.INFO, details="Unblocked: prerequisites completed")
                resolved.append(story.id)
        return resolved

    def resolve_blocked(self, work_item_id: int) -> list[int]:
        """Move Blocked stories whose prerequisites are now Completed back to Ready."""
        with self._lock(work_item_id):
            return self._resolve_blocked(self._graph(work_item_id))

    def retry(self, story_id: int, max_attempts: int, force: bool = False) -> DeveloperStory:
        """Requeue a failed story, or give up on it.

        An Error story with attempts left goes back to Ready. Once its
        attempts are used up it becomes Blocked, and so does everything
        downstream of it. ``force`` resets the attempt count, which also
        revives a story that was blocked that way.
        """
        work_item_id = self.store.get_story(story_id).work_item_id
        with self._lock(work_item_id):
            graph = self._graph(work_item_id)
            story = graph.stories[story_id]

            if story.status == StoryStatus.BLOCKED and force:
                unmet = graph.unmet_prerequisites(story.id)
                if unmet:
                    raise UnmetDependencies(story.id, unmet)
                return self._requeue(story, reset=True)

            if story.status != StoryStatus.ERROR:
                raise InvalidStateTransition(story.status, StoryStatus.READY, story)

            if force or story.attempts < max_attempts:
                return self._requeue(story, reset=force)

            reason = f"Gave up after {story.attempts} attempts: {story.error_message}"
            story.metadata["exhausted"] = True
            transition(story, StoryStatus.BLOCKED, reason=reason)
            self._detach_workspace(story)
            self.store.update_story(story)
            self.log.record(story.id, EventType.INFO, details=reason)
            self._block_downstream(graph, story.id, f"Required story {story.id} failed permanently")
            return story

    def _requeue(self, story: DeveloperStory, reset: bool) -> DeveloperStory:
        previous = story.error_message
        if reset:
            story.metadata["attempts"] = 0
            story.metadata.pop("exhausted", None)
        trigger_from = story.status
        transition(story, StoryStatus.READY)
        self.store.update_story(story)
        self.log.record(
            story.id,
            EventType.RETRIED,
            details=f"Requeued from {trigger_from.value}" + (" (attempts reset)" if reset else ""),
            error_message=previous,
            metadata={"attempts": story.attempts},
        )
        return story

    # --- completion and recovery ---------------------------------------------

    def settle(self, work_item_id: int) -> WorkItem:
        """Unblock what can run now; complete the work item once every story is done."""
        with self._lock(work_item_id):
            graph = self._graph(work_item_id)
            self._resolve_blocked(graph)
            work_item = self.store.get_work_item(work_item_id)
            stories = list(graph.stories.values())
            if (
                stories
                and work_item.status == WorkItemStatus.IN_PROGRESS
                and all(s.status == StoryStatus.COMPLETED for s in stories)
            ):
                transition(work_item, WorkItemStatus.COMPLETED)
                self.store.update_work_item(work_item)
                logger.info(f"[SCHED] Work item {work_item_id}: all {len(stories)} stories completed")
            return work_item

    def recover_orphans(self, work_item_id: int) -> list[DeveloperStory]:
        """Fail InProgress stories left behind by a crashed run. Workspaces are kept."""
        with self._lock(work_item_id):
            orphans = self.log.find_orphans(self.store.stories_for(work_item_id))
            for story in orphans:
                transition(story, StoryStatus.ERROR, reason=ORPHAN_REASON)
                self.store.update_story(story)
                self.log.record(story.id, EventType.FAILED, error_message=ORPHAN_REASON)
                logger.warning(f"[SCHED] Story {story.id}: {ORPHAN_REASON}")
            return orphans
