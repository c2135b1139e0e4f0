"""
Work tracking for storyflow.

Work items, the developer stories they are refined into, the dependencies
between those stories, and the JSON store that persists them.
"""

from storyflow.pm.models import (
    DeveloperStory,
    DeveloperStoryDependency,
    ExecutionLogEntry,
    StoryStatus,
    StoryType,
    WorkItem,
    WorkItemStatus,
    WorkItemType,
)
from storyflow.pm.store import Store

__all__ = [
    "DeveloperStory",
    "DeveloperStoryDependency",
    "ExecutionLogEntry",
    "StoryStatus",
    "StoryType",
    "WorkItem",
    "WorkItemStatus",
    "WorkItemType",
    "Store",
]
