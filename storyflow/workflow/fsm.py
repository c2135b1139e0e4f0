"""Work item and developer story state machines using the transitions library.

Each machine is an explicit transition table. Adding a state or an edge is
a table edit; nothing else in storyflow hard-codes legal pairs.

Usage:
    from storyflow.workflow.fsm import StoryFSM

    fsm = StoryFSM(story)
    fsm.mark_ready()  # pending -> ready, written back to story.status
    fsm.start()       # ready -> in_progress
"""

import logging

from transitions import Machine

from storyflow.pm.models import StoryStatus, WorkItemStatus

logger = logging.getLogger(__name__)


WORK_ITEM_STATES = [s.value for s in WorkItemStatus]

WORK_ITEM_TRANSITIONS = [
    # Refinement
    {"trigger": "start_refining", "source": "pending", "dest": "refining"},
    {"trigger": "start_refining", "source": "error", "dest": "refining"},
    {"trigger": "finish_refining", "source": "refining", "dest": "refined"},

    # Implementation
    {"trigger": "start", "source": "refined", "dest": "in_progress"},
    {"trigger": "complete", "source": "in_progress", "dest": "completed"},

    # Failure and reset
    {"trigger": "fail", "source": "pending", "dest": "error"},
    {"trigger": "fail", "source": "refining", "dest": "error"},
    {"trigger": "fail", "source": "refined", "dest": "error"},
    {"trigger": "fail", "source": "in_progress", "dest": "error"},
    {"trigger": "reset", "source": "error", "dest": "pending"},
]

STORY_STATES = [s.value for s in StoryStatus]

STORY_TRANSITIONS = [
    {"trigger": "mark_ready", "source": "pending", "dest": "ready"},
    {"trigger": "start", "source": "ready", "dest": "in_progress"},
    {"trigger": "complete", "source": "in_progress", "dest": "completed"},
    {"trigger": "fail", "source": "in_progress", "dest": "error"},

    # Retry after a failed attempt
    {"trigger": "retry", "source": "error", "dest": "ready"},

    # A prerequisite can no longer be satisfied
    {"trigger": "block", "source": "pending", "dest": "blocked"},
    {"trigger": "block", "source": "ready", "dest": "blocked"},
    {"trigger": "block", "source": "error", "dest": "blocked"},
    {"trigger": "unblock", "source": "blocked", "dest": "ready"},
]


def _build_trigger_lookup(transitions: list[dict]) -> dict[tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in transitions:
        key = (t["source"], t["dest"])
        if key not in lookup:
            lookup[key] = t["trigger"]
    return lookup


WORK_ITEM_TRIGGER_FOR = _build_trigger_lookup(WORK_ITEM_TRANSITIONS)
STORY_TRIGGER_FOR = _build_trigger_lookup(STORY_TRANSITIONS)


class _EntityFSM:
    """Binds a transitions Machine to a record's ``status`` field.

    The machine starts in the record's current status; every successful
    trigger writes the destination back to the record.
    """

    states: list[str] = []
    transitions: list[dict] = []
    status_enum = None

    def __init__(self, entity):
        self.entity = entity
        self.machine = Machine(
            model=self,
            states=self.states,
            transitions=self.transitions,
            initial=entity.status.value,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    @property
    def label(self) -> str:
        return f"{type(self.entity).__name__} {self.entity.id}"

    def on_state_change(self, event) -> None:
        from_state = event.transition.source
        to_state = event.transition.dest
        self.entity.status = self.status_enum(to_state)
        logger.debug(f"[FSM] {self.label}: {from_state} -> {to_state} ({event.event.name})")

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state."""
        return trigger in self.machine.get_triggers(self.state)

    def get_available_triggers(self) -> list[str]:
        return self.machine.get_triggers(self.state)


class WorkItemFSM(_EntityFSM):
    states = WORK_ITEM_STATES
    transitions = WORK_ITEM_TRANSITIONS
    status_enum = WorkItemStatus


class StoryFSM(_EntityFSM):
    states = STORY_STATES
    transitions = STORY_TRANSITIONS
    status_enum = StoryStatus
