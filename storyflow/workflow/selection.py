"""Tie-breaking among eligible stories."""

from typing import Iterable, Optional

from storyflow.pm.models import DeveloperStory


def selection_key(story: DeveloperStory) -> tuple[int, int]:
    return (story.priority, story.id)


def select_next(ready_set: Iterable[DeveloperStory]) -> Optional[DeveloperStory]:
    """Lowest priority number wins, then lowest id. None for an empty set."""
    return min(ready_set, key=selection_key, default=None)
