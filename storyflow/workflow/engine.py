"""
Implementation engine: runs one claimed developer story end to end.

    claim (scheduler) -> provision workspace -> AI provider -> finalize

Every exit path leaves the story in a well-defined status with an audit
event recorded before any error propagates. Successful workspaces are torn
down; failed ones are preserved for inspection and reused on retry.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from storyflow.agents.provider import ProviderRequest, ProviderResponse, RetryPolicy, retry_transient
from storyflow.lib.errors import Cancelled, InvalidStateTransition, WorkspaceProvisionFailed
from storyflow.lib.prompts import build_section
from storyflow.pm.models import DeveloperStory, EventType, StoryStatus, WorkItem
from storyflow.pm.work_items import describe_work_item
from storyflow.runner.workspace import Outcome
from storyflow.workflow.state_machine import transition

logger = logging.getLogger(__name__)

CANCELLED_REASON = "Cancelled"


@dataclass
class EngineSettings:
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    max_story_attempts: int = 3

    @classmethod
    def from_config(cls, config) -> "EngineSettings":
        return cls(retry=RetryPolicy.from_config(config), max_story_attempts=config.max_story_attempts)


@dataclass
class ImplementationResult:
    story_id: int
    work_item_id: int
    success: bool
    output: str = ""
    branch_name: Optional[str] = None
    workspace_removed: bool = False
    duration: float = 0.0


def story_context(work_item: WorkItem, story: DeveloperStory) -> str:
    story_section = build_section(
        story.description,
        f"## Developer story {story.id}: {story.title} ({story.story_type.value})",
        empty_msg="(no description)",
    )
    return describe_work_item(work_item) + "\n" + story_section


class ImplementationEngine:
    def __init__(self, store, scheduler, workspaces, provider, execution_log, settings: Optional[EngineSettings] = None):
        self.store = store
        self.scheduler = scheduler
        self.workspaces = workspaces
        self.provider = provider
        self.log = execution_log
        self.settings = settings or EngineSettings()

    def implement(
        self,
        story_id: Optional[int] = None,
        work_item_id: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[ImplementationResult]:
        """Claim a story (the given one, or the next eligible one) and run it.

        Returns None when ``work_item_id`` has nothing eligible.
        """
        if story_id is not None:
            story = self.scheduler.claim(story_id)
        elif work_item_id is not None:
            story = self.scheduler.claim_next(work_item_id)
            if story is None:
                return None
        else:
            raise ValueError("Either story_id or work_item_id is required")
        return self.run_story(story, cancel_event or threading.Event())

    def call_with_retries(
        self,
        call: Callable[[], ProviderResponse],
        story_id: int,
        cancel_event: threading.Event,
    ) -> ProviderResponse:
        """Provider call with transient-failure retries, each one audited as Retried."""
        policy = self.settings.retry

        def on_retry(attempt: int, delay: float, response: ProviderResponse) -> None:
            self.log.record(
                story_id,
                EventType.RETRIED,
                details=f"Transient provider failure, retry {attempt}/{policy.max_retries} in {delay:.1f}s",
                error_message=response.error,
                metadata={"retry": attempt, "delay": delay},
            )

        return retry_transient(call, policy, cancel_event, on_retry=on_retry, subject=f"Story {story_id}")

    def _fail(self, story: DeveloperStory, reason: str) -> None:
        transition(story, StoryStatus.ERROR, reason=reason)
        self.store.update_story(story)
        self.log.record(
            story.id,
            EventType.FAILED,
            details=f"Attempt {story.attempts} failed",
            error_message=reason,
        )

    def run_story(self, story: DeveloperStory, cancel_event: threading.Event) -> ImplementationResult:
        """Execute a story that has already been claimed (InProgress).

        Raises:
            WorkspaceProvisionFailed: Story left in Error
            Cancelled: Story left in Error, workspace preserved
            AiProviderFailure: Story left in Error, workspace preserved
        """
        if story.status != StoryStatus.IN_PROGRESS:
            raise InvalidStateTransition(story.status, StoryStatus.COMPLETED, story)
        work_item = self.store.get_work_item(story.work_item_id)
        started = time.monotonic()

        try:
            handle = self.workspaces.provision(story, work_item)
        except WorkspaceProvisionFailed as e:
            self._fail(story, str(e))
            raise
        self.store.update_story(story)

        request = ProviderRequest(
            context=story_context(work_item, story),
            instructions=story.instructions or story.description,
            workspace=handle.path,
        )
        try:
            response = self.call_with_retries(
                lambda: self.provider.implement(request, cancel_event), story.id, cancel_event
            )
        except Exception as e:
            self._fail(story, CANCELLED_REASON if isinstance(e, Cancelled) else str(e))
            self.workspaces.release(handle, Outcome.FAILURE)
            logger.warning(f"[ENGINE] Story {story.id} failed: {e}")
            raise

        duration = time.monotonic() - started
        transition(story, StoryStatus.COMPLETED)
        self.store.update_story(story)
        self.log.record(
            story.id,
            EventType.COMPLETED,
            details=f"Completed in {duration:.1f}s",
            metadata={"duration": round(duration, 3), "session_id": response.session_id},
        )

        removed = self.workspaces.release(handle, Outcome.SUCCESS)
        if removed:
            story.branch_name = None
            story.workspace_path = None
            self.store.update_story(story)

        self.scheduler.settle(story.work_item_id)
        logger.info(f"[ENGINE] Story {story.id} completed on {handle.branch_name}")
        return ImplementationResult(
            story_id=story.id,
            work_item_id=story.work_item_id,
            success=True,
            output=response.output,
            branch_name=handle.branch_name,
            workspace_removed=removed,
            duration=duration,
        )
