"""Tests for storyflow.workflow.workers module."""

import threading

from conftest import add_edge, make_story, make_work_item
from storyflow.agents.provider import ProviderResponse
from storyflow.pm.models import StoryStatus, WorkItemStatus
from storyflow.workflow.workers import run_workers


class TestRunWorkers:
    def test_drains_diamond_in_dependency_order(self, store, engine, scheduler, provider):
        wi = make_work_item(store)
        a = make_story(store, wi, title="A")
        b = make_story(store, wi, title="B")
        c = make_story(store, wi, title="C")
        d = make_story(store, wi, title="D")
        add_edge(scheduler, b, a)
        add_edge(scheduler, c, a)
        add_edge(scheduler, d, b)
        add_edge(scheduler, d, c)

        summary = run_workers(engine, scheduler, wi.id, workers=3, poll_interval=0.01)

        assert summary.ok
        assert sorted(summary.completed) == [a.id, b.id, c.id, d.id]
        done = {s.id: s for s in store.stories_for(wi.id)}
        assert done[b.id].started_at >= done[a.id].completed_at
        assert done[c.id].started_at >= done[a.id].completed_at
        assert done[d.id].started_at >= max(done[b.id].completed_at, done[c.id].completed_at)
        assert store.get_work_item(wi.id).status == WorkItemStatus.COMPLETED

    def test_failure_does_not_stop_independent_stories(self, store, engine, scheduler, provider):
        provider.implement_results = [ProviderResponse(success=False, error="compile error")]
        wi = make_work_item(store)
        first = make_story(store, wi, priority=1)
        other = make_story(store, wi, priority=2)

        summary = run_workers(engine, scheduler, wi.id, workers=1, poll_interval=0.01)

        assert summary.failed == [first.id]
        assert summary.completed == [other.id]
        assert not summary.ok
        assert store.get_story(first.id).status == StoryStatus.ERROR
        assert store.get_work_item(wi.id).status == WorkItemStatus.IN_PROGRESS

    def test_auto_retry_until_exhausted_blocks_dependents(self, store, engine, scheduler, provider):
        provider.implement_results = [
            ProviderResponse(success=False, error="tests failed") for _ in range(2)
        ]
        wi = make_work_item(store)
        a = make_story(store, wi)
        b = make_story(store, wi)
        add_edge(scheduler, b, a)

        summary = run_workers(
            engine, scheduler, wi.id, workers=2, poll_interval=0.01,
            auto_retry=True, max_story_attempts=2,
        )

        assert summary.failed == [a.id, a.id]
        assert store.get_story(a.id).status == StoryStatus.BLOCKED
        assert store.get_story(b.id).status == StoryStatus.BLOCKED

    def test_auto_retry_recovers(self, store, engine, scheduler, provider):
        provider.implement_results = [ProviderResponse(success=False, error="flaky")]
        wi = make_work_item(store)
        story = make_story(store, wi)

        summary = run_workers(engine, scheduler, wi.id, workers=1, poll_interval=0.01, auto_retry=True)

        assert summary.failed == [story.id]
        assert summary.completed == [story.id]
        assert store.get_work_item(wi.id).status == WorkItemStatus.COMPLETED

    def test_cancelled_before_start_runs_nothing(self, store, engine, scheduler):
        wi = make_work_item(store)
        story = make_story(store, wi)
        cancel = threading.Event()
        cancel.set()

        summary = run_workers(engine, scheduler, wi.id, workers=2, cancel_event=cancel)

        assert summary.completed == []
        assert store.get_story(story.id).status == StoryStatus.PENDING
