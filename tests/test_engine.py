"""Tests for storyflow.workflow.engine module."""

import threading

import pytest

from conftest import add_edge, make_story, make_work_item
from storyflow.agents.provider import ProviderResponse
from storyflow.lib.errors import (
    AiProviderFailure,
    Cancelled,
    InvalidStateTransition,
    WorkspaceProvisionFailed,
)
from storyflow.pm.models import EventType, StoryStatus, WorkItemStatus
from storyflow.workflow.engine import story_context


def _events(execution_log, story_id):
    return [e.event_type for e in execution_log.query_by_story(story_id)]


class TestImplementSuccess:
    def test_runs_story_to_completion(self, store, engine, execution_log, vcs):
        wi = make_work_item(store)
        story = make_story(store, wi, instructions="Add the endpoint")

        result = engine.implement(story_id=story.id)

        assert result.success
        assert result.output == "done"
        assert result.workspace_removed
        loaded = store.get_story(story.id)
        assert loaded.status == StoryStatus.COMPLETED
        assert loaded.branch_name is None
        assert loaded.workspace_path is None
        assert result.branch_name in vcs.branches
        assert _events(execution_log, story.id) == [
            EventType.STARTED,
            EventType.BRANCH_CREATED,
            EventType.WORKTREE_CREATED,
            EventType.COMPLETED,
            EventType.WORKTREE_REMOVED,
        ]

    def test_provider_runs_in_story_workspace(self, store, engine, provider):
        wi = make_work_item(store)
        story = make_story(store, wi, instructions="Add the endpoint")
        result = engine.implement(story_id=story.id)
        kind, request = provider.requests[-1]
        assert kind == "implement"
        assert request.workspace.name == result.branch_name
        assert request.instructions == "Add the endpoint"

    def test_single_story_completes_work_item(self, store, engine):
        wi = make_work_item(store)
        story = make_story(store, wi)
        engine.implement(story_id=story.id)
        assert store.get_work_item(wi.id).status == WorkItemStatus.COMPLETED

    def test_next_story_of_work_item(self, store, engine):
        wi = make_work_item(store)
        make_story(store, wi, priority=4)
        urgent = make_story(store, wi, priority=2)
        assert engine.implement(work_item_id=wi.id).story_id == urgent.id

    def test_nothing_eligible_returns_none(self, store, engine, scheduler):
        wi = make_work_item(store)
        a = make_story(store, wi)
        b = make_story(store, wi)
        add_edge(scheduler, b, a)
        scheduler.claim(a.id)
        assert engine.implement(work_item_id=wi.id) is None

    def test_requires_story_or_work_item(self, engine):
        with pytest.raises(ValueError):
            engine.implement()

    def test_run_story_requires_claim(self, store, engine):
        wi = make_work_item(store)
        story = make_story(store, wi)
        with pytest.raises(InvalidStateTransition):
            engine.run_story(story, threading.Event())

    def test_teardown_failure_keeps_branch_fields(self, store, engine, vcs):
        wi = make_work_item(store)
        story = make_story(store, wi)
        vcs.fail_remove_worktree = True
        result = engine.implement(story_id=story.id)
        assert result.workspace_removed is False
        loaded = store.get_story(story.id)
        assert loaded.status == StoryStatus.COMPLETED
        assert loaded.branch_name == result.branch_name


class TestImplementFailure:
    def test_terminal_provider_failure(self, store, engine, provider, execution_log, vcs):
        provider.implement_results = [ProviderResponse(success=False, error="model refused")]
        wi = make_work_item(store)
        story = make_story(store, wi)

        with pytest.raises(AiProviderFailure):
            engine.implement(story_id=story.id)

        loaded = store.get_story(story.id)
        assert loaded.status == StoryStatus.ERROR
        assert "model refused" in loaded.error_message
        assert loaded.workspace_path is not None
        assert vcs.worktree_exists(loaded.workspace_path)
        events = _events(execution_log, story.id)
        assert EventType.FAILED in events
        assert EventType.WORKTREE_REMOVED not in events

    def test_transient_failures_are_retried(self, store, engine, provider, execution_log):
        provider.implement_results = [
            ProviderResponse(success=False, error="rate limit", transient=True),
            ProviderResponse(success=False, error="overloaded", transient=True),
        ]
        wi = make_work_item(store)
        story = make_story(store, wi)

        result = engine.implement(story_id=story.id)

        assert result.success
        retries = [e for e in execution_log.query_by_story(story.id) if e.event_type == EventType.RETRIED]
        assert [e.metadata["retry"] for e in retries] == [1, 2]
        assert retries[0].error_message == "rate limit"

    def test_transient_failures_exhaust(self, store, engine, provider):
        provider.implement_results = [
            ProviderResponse(success=False, error="rate limit", transient=True) for _ in range(3)
        ]
        wi = make_work_item(store)
        story = make_story(store, wi)
        with pytest.raises(AiProviderFailure) as exc:
            engine.implement(story_id=story.id)
        assert exc.value.transient
        assert "gave up after 3 attempts" in str(exc.value)
        assert store.get_story(story.id).status == StoryStatus.ERROR

    def test_cancellation_preserves_workspace(self, store, engine, execution_log, vcs):
        wi = make_work_item(store)
        story = make_story(store, wi)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(Cancelled):
            engine.implement(story_id=story.id, cancel_event=cancel)

        loaded = store.get_story(story.id)
        assert loaded.status == StoryStatus.ERROR
        assert loaded.error_message == "Cancelled"
        assert vcs.worktree_exists(loaded.workspace_path)
        assert EventType.WORKTREE_REMOVED not in _events(execution_log, story.id)

    def test_provision_failure(self, store, engine, vcs, provider):
        vcs.fail_create_branch = True
        wi = make_work_item(store)
        story = make_story(store, wi)

        with pytest.raises(WorkspaceProvisionFailed):
            engine.implement(story_id=story.id)

        loaded = store.get_story(story.id)
        assert loaded.status == StoryStatus.ERROR
        assert "not a valid object name" in loaded.error_message
        assert provider.requests == []

    def test_retry_reuses_preserved_workspace(self, store, engine, provider, scheduler, vcs):
        provider.implement_results = [ProviderResponse(success=False, error="tests failed")]
        wi = make_work_item(store)
        story = make_story(store, wi)
        with pytest.raises(AiProviderFailure):
            engine.implement(story_id=story.id)

        scheduler.retry(story.id, max_attempts=3)
        result = engine.implement(story_id=story.id)

        assert result.success
        assert [c[0] for c in vcs.calls].count("create_worktree") == 1
        assert store.get_story(story.id).attempts == 2

    def test_exhausted_story_drops_workspace_fields(self, store, engine, provider, scheduler, execution_log):
        provider.implement_results = [ProviderResponse(success=False, error="tests failed")] * 2
        wi = make_work_item(store)
        story = make_story(store, wi)
        for _ in range(2):
            with pytest.raises(AiProviderFailure):
                engine.implement(story_id=story.id)
            scheduler.retry(story.id, max_attempts=2)

        loaded = store.get_story(story.id)
        assert loaded.status == StoryStatus.BLOCKED
        assert loaded.branch_name is None
        assert loaded.workspace_path is None
        left = [e for e in execution_log.query_by_story(story.id) if "left in place" in (e.details or "")]
        assert left and left[0].metadata["branch_name"].endswith(f"-{wi.id}-{story.id}")


class TestStoryContext:
    def test_includes_work_item_and_story(self, store):
        wi = make_work_item(store, title="Checkout flow", description="Let users pay")
        story = make_story(store, wi, title="Payment API", description="POST /pay")
        text = story_context(wi, story)
        assert "Checkout flow" in text
        assert "Let users pay" in text
        assert f"Developer story {story.id}: Payment API" in text
        assert "POST /pay" in text
