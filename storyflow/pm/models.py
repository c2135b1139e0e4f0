"""
Data models for work items, developer stories, dependencies and the
execution log.

Records reference each other by integer id only; the store is the lookup
structure. Enum values are the strings written to disk.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class WorkItemType(str, Enum):
    USER_STORY = "user_story"
    BUG = "bug"


class WorkItemStatus(str, Enum):
    PENDING = "pending"
    REFINING = "refining"
    REFINED = "refined"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


class StoryType(str, Enum):
    IMPLEMENTATION = "implementation"
    UNIT_TESTS = "unit_tests"
    FEATURE_TESTS = "feature_tests"
    DOCUMENTATION = "documentation"


class StoryStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"
    BLOCKED = "blocked"


class EventType(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRIED = "retried"
    BRANCH_CREATED = "branch_created"
    WORKTREE_CREATED = "worktree_created"
    WORKTREE_REMOVED = "worktree_removed"
    INFO = "info"


def _enum_dict(obj) -> dict:
    data = asdict(obj)
    for key, value in data.items():
        if isinstance(value, Enum):
            data[key] = value.value
    return data


@dataclass
class WorkItem:
    """A user story or bug: the top-level unit of requested work."""
    id: int
    type: WorkItemType
    title: str
    description: str = ""
    acceptance_criteria: Optional[str] = None
    priority: int = 5                          # 1 (highest) .. 9
    status: WorkItemStatus = WorkItemStatus.PENDING
    error_message: Optional[str] = None
    base_ref: Optional[str] = None             # Branch stories are cut from
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def branch_prefix(self) -> str:
        return "bug" if self.type == WorkItemType.BUG else "us"

    @property
    def default_branch_name(self) -> str:
        return f"{self.branch_prefix}-{self.id}"

    def to_dict(self) -> dict:
        return _enum_dict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "WorkItem":
        return cls(
            id=data["id"],
            type=WorkItemType(data["type"]),
            title=data["title"],
            description=data.get("description", ""),
            acceptance_criteria=data.get("acceptance_criteria"),
            priority=data.get("priority", 5),
            status=WorkItemStatus(data.get("status", "pending")),
            error_message=data.get("error_message"),
            base_ref=data.get("base_ref"),
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at") or utc_now(),
        )


@dataclass
class DeveloperStory:
    """An independently executable piece of a work item.

    ``branch_name`` and ``workspace_path`` are only populated while the
    story holds a workspace (InProgress, or Error awaiting a retry).
    """
    id: int
    work_item_id: int
    title: str
    story_type: StoryType = StoryType.IMPLEMENTATION
    description: str = ""
    instructions: str = ""
    priority: int = 5
    status: StoryStatus = StoryStatus.PENDING
    branch_name: Optional[str] = None
    workspace_path: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error_message: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def attempts(self) -> int:
        return int(self.metadata.get("attempts", 0))

    @property
    def exhausted(self) -> bool:
        return bool(self.metadata.get("exhausted", False))

    def to_dict(self) -> dict:
        return _enum_dict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "DeveloperStory":
        return cls(
            id=data["id"],
            work_item_id=data["work_item_id"],
            title=data["title"],
            story_type=StoryType(data.get("story_type", "implementation")),
            description=data.get("description", ""),
            instructions=data.get("instructions", ""),
            priority=data.get("priority", 5),
            status=StoryStatus(data.get("status", "pending")),
            branch_name=data.get("branch_name"),
            workspace_path=data.get("workspace_path"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            error_message=data.get("error_message"),
            metadata=dict(data.get("metadata") or {}),
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at") or utc_now(),
        )


@dataclass
class DeveloperStoryDependency:
    """Edge: ``dependent_story_id`` cannot start until ``required_story_id`` completes."""
    id: int
    dependent_story_id: int
    required_story_id: int
    description: Optional[str] = None
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "DeveloperStoryDependency":
        return cls(
            id=data["id"],
            dependent_story_id=data["dependent_story_id"],
            required_story_id=data["required_story_id"],
            description=data.get("description"),
            created_at=data.get("created_at") or utc_now(),
        )


@dataclass
class ExecutionLogEntry:
    id: int
    story_id: int
    event_type: EventType
    timestamp: str
    details: Optional[str] = None
    error_message: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return _enum_dict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionLogEntry":
        return cls(
            id=data["id"],
            story_id=data["story_id"],
            event_type=EventType(data["event_type"]),
            timestamp=data["timestamp"],
            details=data.get("details"),
            error_message=data.get("error_message"),
            metadata=dict(data.get("metadata") or {}),
        )
