"""
Work item operations: create, query, status changes and manual stories.
"""

import logging
from typing import Optional

from storyflow.lib.prompts import build_section
from storyflow.pm.models import (
    DeveloperStory,
    EventType,
    StoryType,
    WorkItem,
    WorkItemStatus,
    WorkItemType,
)
from storyflow.runner.locking import work_item_lock
from storyflow.workflow.state_machine import transition

logger = logging.getLogger(__name__)

MIN_PRIORITY = 1
MAX_PRIORITY = 9


def _check_priority(priority: int) -> None:
    if not isinstance(priority, int) or not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ValueError(f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {priority}")


def create_work_item(
    store,
    type: WorkItemType,
    title: str,
    description: str = "",
    acceptance_criteria: Optional[str] = None,
    priority: int = 5,
    base_ref: Optional[str] = None,
) -> WorkItem:
    """Create a Pending work item.

    Raises:
        ValueError: Empty title or priority outside 1-9
    """
    title = (title or "").strip()
    if not title:
        raise ValueError("Title is required")
    _check_priority(priority)

    work_item = WorkItem(
        id=store.allocate_id("work_item"),
        type=WorkItemType(type),
        title=title,
        description=description or "",
        acceptance_criteria=acceptance_criteria or None,
        priority=priority,
        base_ref=base_ref or None,
    )
    store.add_work_item(work_item)
    logger.info(f"Created work item {work_item.id}: {title}")
    return work_item


def get_work_item(store, work_item_id: int) -> WorkItem:
    return store.get_work_item(work_item_id)


def list_work_items(store, status: Optional[WorkItemStatus] = None) -> list[WorkItem]:
    return store.list_work_items(status)


def update_work_item_status(
    store,
    work_item_id: int,
    status: WorkItemStatus,
    reason: Optional[str] = None,
) -> WorkItem:
    """Move a work item to ``status`` through its state machine."""
    with work_item_lock(store.locks_dir, work_item_id, store.lock_timeout):
        work_item = store.get_work_item(work_item_id)
        transition(work_item, status, reason=reason)
        return store.update_work_item(work_item)


def add_developer_story(
    store,
    execution_log,
    work_item_id: int,
    title: str,
    story_type: StoryType = StoryType.IMPLEMENTATION,
    description: str = "",
    instructions: str = "",
    priority: Optional[int] = None,
) -> DeveloperStory:
    """Add a hand-written Pending story to a work item.

    Priority defaults to the work item's own priority.
    """
    title = (title or "").strip()
    if not title:
        raise ValueError("Title is required")
    work_item = store.get_work_item(work_item_id)
    if work_item.status == WorkItemStatus.COMPLETED:
        raise ValueError(f"Work item {work_item_id} is already completed")
    if priority is None:
        priority = work_item.priority
    _check_priority(priority)

    story = DeveloperStory(
        id=store.allocate_id("story"),
        work_item_id=work_item_id,
        title=title,
        story_type=StoryType(story_type),
        description=description or "",
        instructions=instructions or "",
        priority=priority,
    )
    store.add_story(story)
    execution_log.record(story.id, EventType.INFO, details=f"Added to work item {work_item_id}")
    return story


def describe_work_item(work_item: WorkItem) -> str:
    """Markdown summary of a work item for AI prompts."""
    kind = "Bug" if work_item.type == WorkItemType.BUG else "User story"
    return (
        f"# {kind} {work_item.id}: {work_item.title}\n\n"
        + build_section(work_item.description, "## Description", empty_msg="(no description)")
        + "\n"
        + build_section(work_item.acceptance_criteria, "## Acceptance criteria")
    )
