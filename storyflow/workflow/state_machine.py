"""Status transitions for work items and developer stories.

Thin wrapper around the machines in fsm.py. Callers name the destination
status; this module finds the trigger, runs it, and applies the record
side effects (error message, timestamps).

Usage:
    from storyflow.workflow.state_machine import transition

    transition(story, StoryStatus.ERROR, reason="provider timed out")
"""

import logging
from typing import Optional, Union

from transitions import MachineError

from storyflow.lib.errors import InvalidStateTransition
from storyflow.pm.models import (
    DeveloperStory,
    StoryStatus,
    WorkItem,
    WorkItemStatus,
    utc_now,
)
from storyflow.workflow.fsm import (
    STORY_TRIGGER_FOR,
    WORK_ITEM_TRIGGER_FOR,
    StoryFSM,
    WorkItemFSM,
)

logger = logging.getLogger(__name__)

Status = Union[WorkItemStatus, StoryStatus]
Entity = Union[WorkItem, DeveloperStory]


def _trigger_table(status: Status) -> dict[tuple[str, str], str]:
    if isinstance(status, WorkItemStatus):
        return WORK_ITEM_TRIGGER_FOR
    if isinstance(status, StoryStatus):
        return STORY_TRIGGER_FOR
    raise TypeError(f"Not a status: {status!r}")


def can_transition(current: Status, target: Status) -> bool:
    """True if ``current -> target`` is a legal edge. Self-transitions never are."""
    if type(current) is not type(target):
        return False
    return (current.value, target.value) in _trigger_table(current)


def valid_targets(current: Status) -> list[Status]:
    """Statuses reachable from ``current`` in one step."""
    status_enum = type(current)
    return [
        status_enum(dest)
        for (source, dest) in _trigger_table(current)
        if source == current.value
    ]


def transition(entity: Entity, target: Status, reason: Optional[str] = None) -> Entity:
    """Move ``entity`` to ``target``.

    On Error (and on Blocked, when a reason is given) ``reason`` becomes the
    error message; any other target clears it. Stories entering InProgress
    or Completed get ``started_at`` / ``completed_at`` stamped.

    Raises:
        InvalidStateTransition: If the pair is not legal. The entity is
            left untouched.
    """
    current = entity.status
    if not can_transition(current, target):
        raise InvalidStateTransition(current, target, entity)

    fsm = StoryFSM(entity) if isinstance(entity, DeveloperStory) else WorkItemFSM(entity)
    trigger = _trigger_table(current)[(current.value, target.value)]
    try:
        getattr(fsm, trigger)()
    except MachineError as e:
        raise InvalidStateTransition(current, target, entity) from e

    now = utc_now()
    if target in (WorkItemStatus.ERROR, StoryStatus.ERROR):
        entity.error_message = reason
    elif target == StoryStatus.BLOCKED and reason:
        entity.error_message = reason
    else:
        entity.error_message = None

    if isinstance(entity, DeveloperStory):
        if target == StoryStatus.IN_PROGRESS:
            entity.started_at = now
            entity.completed_at = None
        elif target == StoryStatus.COMPLETED:
            entity.completed_at = now
    entity.updated_at = now

    reason_str = f" ({reason})" if reason else ""
    logger.info(
        f"[STATE] {type(entity).__name__} {entity.id}: "
        f"{current.value} -> {target.value}{reason_str}"
    )
    return entity
