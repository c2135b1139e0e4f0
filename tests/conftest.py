"""Shared fixtures and fakes for storyflow tests."""

import threading
from pathlib import Path

import pytest

from storyflow.agents.provider import ProviderResponse, RetryPolicy
from storyflow.lib.errors import Cancelled, GitOperationError
from storyflow.pm.models import (
    DeveloperStory,
    StoryStatus,
    WorkItem,
    WorkItemStatus,
    WorkItemType,
)
from storyflow.pm.store import Store
from storyflow.runner.execution_log import ExecutionLog
from storyflow.runner.workspace import WorkspaceOrchestrator
from storyflow.workflow.engine import EngineSettings, ImplementationEngine
from storyflow.workflow.scheduler import Scheduler


class FakeVCS:
    """In-memory branches and worktrees."""

    def __init__(self):
        self.branches: set[str] = set()
        self.worktrees: set[str] = set()
        self.calls: list[tuple] = []
        self.fail_create_branch = False
        self.fail_create_worktree = False
        self.fail_remove_worktree = False

    def branch_exists(self, name):
        return name in self.branches

    def create_branch(self, name, base_ref):
        self.calls.append(("create_branch", name, base_ref))
        if self.fail_create_branch:
            raise GitOperationError("fatal: not a valid object name", f"git branch {name} {base_ref}")
        self.branches.add(name)

    def create_worktree(self, branch, path):
        self.calls.append(("create_worktree", branch, str(path)))
        if self.fail_create_worktree:
            raise GitOperationError("fatal: could not create work tree dir", "git worktree add")
        self.worktrees.add(str(path))

    def remove_worktree(self, path):
        self.calls.append(("remove_worktree", str(path)))
        if self.fail_remove_worktree:
            raise GitOperationError("fatal: worktree is locked", "git worktree remove")
        self.worktrees.discard(str(path))

    def worktree_exists(self, path):
        return str(path) in self.worktrees


class FakeProvider:
    """Scripted AI provider.

    ``implement_results`` and ``refine_results`` are consumed in order; once
    exhausted every call succeeds. An entry may be a ProviderResponse or an
    exception instance to raise.
    """

    def __init__(self, implement_results=None, refine_results=None, analysis_results=None):
        self.implement_results = list(implement_results or [])
        self.refine_results = list(refine_results or [])
        self.analysis_results = list(analysis_results or [])
        self.requests: list[tuple[str, object]] = []
        self.lock = threading.Lock()

    def _next(self, queue, default):
        with self.lock:
            result = queue.pop(0) if queue else default
        if isinstance(result, Exception):
            raise result
        return result

    def refine_analysis(self, request, cancel_event):
        self.requests.append(("refine_analysis", request))
        return self._next(self.analysis_results, ProviderResponse(success=True, output="analysis", session_id="s-1"))

    def refine(self, request, cancel_event):
        self.requests.append(("refine", request))
        return self._next(self.refine_results, ProviderResponse(success=False, error="no breakdown scripted"))

    def implement(self, request, cancel_event):
        self.requests.append(("implement", request))
        if cancel_event.is_set():
            raise Cancelled()
        return self._next(self.implement_results, ProviderResponse(success=True, output="done", session_id="s-2"))


@pytest.fixture
def store(tmp_path):
    return Store(tmp_path / "state", lock_timeout=5)


@pytest.fixture
def execution_log(store):
    return ExecutionLog(store)


@pytest.fixture
def scheduler(store, execution_log):
    return Scheduler(store, execution_log)


@pytest.fixture
def vcs():
    return FakeVCS()


@pytest.fixture
def workspaces(vcs, execution_log, tmp_path):
    return WorkspaceOrchestrator(vcs, execution_log, tmp_path / "worktrees", base_ref="main")


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def engine(store, scheduler, workspaces, provider, execution_log):
    settings = EngineSettings(retry=RetryPolicy(max_retries=2, base_delay=0, max_delay=0), max_story_attempts=3)
    return ImplementationEngine(store, scheduler, workspaces, provider, execution_log, settings)


def make_work_item(store, status=WorkItemStatus.REFINED, priority=5, type=WorkItemType.USER_STORY, **kwargs):
    work_item = WorkItem(
        id=store.allocate_id("work_item"),
        type=type,
        title=kwargs.pop("title", "Add login"),
        priority=priority,
        status=status,
        **kwargs,
    )
    return store.add_work_item(work_item)


def make_story(store, work_item, title="Story", priority=5, status=StoryStatus.PENDING, **kwargs):
    story = DeveloperStory(
        id=store.allocate_id("story"),
        work_item_id=work_item.id,
        title=title,
        priority=priority,
        status=status,
        **kwargs,
    )
    return store.add_story(story)


def add_edge(scheduler, dependent, required):
    return scheduler.add_dependency(dependent.id, required.id)


def worktree_path(tmp_path: Path, branch: str) -> str:
    return str(tmp_path / "worktrees" / branch)
