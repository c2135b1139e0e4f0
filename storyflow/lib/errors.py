"""
Fault taxonomy for storyflow.

Every fault carries a category (echoed by the CLI as ``ERROR [<category>]``)
and the process exit code the CLI uses for it.
"""

__all__ = [
    "StoryflowError",
    "InvalidStateTransition",
    "DependencyError",
    "CycleDetected",
    "SelfDependency",
    "DuplicateDependency",
    "UnmetDependencies",
    "WorkspaceProvisionFailed",
    "BranchAlreadyExists",
    "EntityNotFound",
    "AiProviderFailure",
    "Cancelled",
    "GitOperationError",
    "ConfigError",
]


class StoryflowError(Exception):
    """Base class for all storyflow faults."""

    category = "error"
    exit_code = 1


class InvalidStateTransition(StoryflowError):
    """Attempted an illegal status change. Never retried."""

    category = "invalid_state_transition"

    def __init__(self, current, target, entity=None):
        self.current = current
        self.target = target
        self.entity = entity
        label = _entity_label(entity)
        super().__init__(
            f"Invalid transition: {_value(current)} -> {_value(target)}"
            + (f" ({label})" if label else "")
        )


class DependencyError(StoryflowError):
    """A dependency-graph mutation was rejected."""

    category = "dependency_error"


class CycleDetected(DependencyError):
    category = "cycle_detected"

    def __init__(self, dependent_id: int, required_id: int, path: list[int] | None = None):
        self.dependent_id = dependent_id
        self.required_id = required_id
        self.path = path or []
        chain = " -> ".join(str(p) for p in self.path)
        super().__init__(
            f"Story {dependent_id} depending on story {required_id} would create a cycle"
            + (f" ({chain})" if chain else "")
        )


class SelfDependency(DependencyError):
    category = "self_dependency"

    def __init__(self, story_id: int):
        self.story_id = story_id
        super().__init__(f"Story {story_id} cannot depend on itself")


class DuplicateDependency(DependencyError):
    category = "duplicate_dependency"

    def __init__(self, dependent_id: int, required_id: int):
        self.dependent_id = dependent_id
        self.required_id = required_id
        super().__init__(f"Story {dependent_id} already depends on story {required_id}")


class UnmetDependencies(DependencyError):
    """A story was requested explicitly but its prerequisites are not done."""

    category = "unmet_dependencies"

    def __init__(self, story_id: int, unmet: list[int]):
        self.story_id = story_id
        self.unmet = unmet
        super().__init__(
            f"Story {story_id} is waiting on stories: {', '.join(str(u) for u in unmet)}"
        )


class WorkspaceProvisionFailed(StoryflowError):
    """VCS or filesystem fault while preparing a story workspace."""

    category = "workspace_provision_failed"

    def __init__(self, story_id: int, message: str):
        self.story_id = story_id
        super().__init__(f"Could not provision workspace for story {story_id}: {message}")


class BranchAlreadyExists(WorkspaceProvisionFailed):
    category = "branch_already_exists"

    def __init__(self, branch: str, story_id: int):
        self.branch = branch
        super().__init__(story_id, f"branch '{branch}' already exists and was not created by this story")


class EntityNotFound(StoryflowError):
    category = "entity_not_found"

    def __init__(self, entity_type: str, entity_id):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} with ID '{entity_id}' was not found")


class AiProviderFailure(StoryflowError):
    """The AI provider could not produce a result."""

    category = "ai_provider_failure"

    def __init__(self, message: str, transient: bool = False, subject: str = ""):
        self.transient = transient
        self.subject = subject
        super().__init__(f"{subject}: {message}" if subject else message)


class Cancelled(StoryflowError):
    """Operation aborted by the caller's cancellation signal."""

    category = "cancelled"
    exit_code = 130

    def __init__(self, message: str = "Cancelled"):
        super().__init__(message)


class GitOperationError(StoryflowError):
    category = "git_operation_failed"

    def __init__(self, message: str, command: str | None = None):
        self.command = command
        super().__init__(message)


class ConfigError(StoryflowError):
    category = "config_error"
    exit_code = 2


def _value(state) -> str:
    return getattr(state, "value", str(state))


def _entity_label(entity) -> str:
    if entity is None:
        return ""
    return f"{type(entity).__name__} {getattr(entity, 'id', '?')}"
