"""Tests for storyflow.pm.refinement and storyflow.pm.work_items modules."""

import json
import threading

import pytest

from conftest import FakeProvider, make_story, make_work_item
from storyflow.agents.provider import ProviderResponse, RetryPolicy
from storyflow.lib.errors import AiProviderFailure, Cancelled, EntityNotFound, InvalidStateTransition
from storyflow.lib.validate import ValidationError
from storyflow.pm.models import EventType, StoryStatus, StoryType, WorkItemStatus, WorkItemType
from storyflow.pm.refinement import parse_refinement_reply, refine_work_item
from storyflow.pm.work_items import (
    add_developer_story,
    create_work_item,
    describe_work_item,
    update_work_item_status,
)

NO_WAIT = RetryPolicy(max_retries=1, base_delay=0, max_delay=0)

BREAKDOWN = {
    "analysis": "API first, then tests and docs",
    "developer_stories": [
        {"title": "Build API", "story_type": "implementation", "instructions": "Add POST /pay"},
        {"title": "Unit tests", "story_type": 1},
        {"title": "Docs", "story_type": "documentation"},
    ],
    "dependencies": [
        {"dependent_story_index": 1, "required_story_index": 0, "description": "tests need the API"},
        {"dependent_story_index": 2, "required_story_index": 0},
    ],
}


def _reply(data) -> ProviderResponse:
    return ProviderResponse(success=True, output="Here you go:\n```json\n" + json.dumps(data) + "\n```")


class TestParseRefinementReply:
    def test_accepts_camel_case_keys(self):
        text = json.dumps({
            "developerStories": [{"title": "A"}, {"title": "B"}],
            "dependencies": [{"dependentStoryIndex": 1, "requiredStoryIndex": 0}],
        })
        data = parse_refinement_reply(text)
        assert [s["title"] for s in data["developer_stories"]] == ["A", "B"]
        assert data["dependencies"][0]["dependent_story_index"] == 1

    def test_prose_without_json_is_provider_failure(self):
        with pytest.raises(AiProviderFailure):
            parse_refinement_reply("I could not do it, sorry.")

    def test_schema_mismatch(self):
        with pytest.raises(ValidationError):
            parse_refinement_reply(json.dumps({"developer_stories": []}))


class TestRefineWorkItem:
    @pytest.fixture
    def work_item(self, store):
        return make_work_item(store, status=WorkItemStatus.PENDING, priority=3, title="Payments")

    def test_creates_stories_and_dependencies(self, store, execution_log, work_item):
        provider = FakeProvider(refine_results=[_reply(BREAKDOWN)])

        result = refine_work_item(store, execution_log, provider, work_item.id, retry_policy=NO_WAIT)

        assert store.get_work_item(work_item.id).status == WorkItemStatus.REFINED
        stories = store.stories_for(work_item.id)
        assert [s.title for s in stories] == ["Build API", "Unit tests", "Docs"]
        assert [s.story_type for s in stories] == [
            StoryType.IMPLEMENTATION, StoryType.UNIT_TESTS, StoryType.DOCUMENTATION,
        ]
        assert all(s.priority == 3 and s.status == StoryStatus.PENDING for s in stories)
        edges = store.dependencies_for(work_item.id)
        assert {(e.dependent_story_id, e.required_story_id) for e in edges} == {
            (stories[1].id, stories[0].id),
            (stories[2].id, stories[0].id),
        }
        assert result.analysis == "API first, then tests and docs"
        assert result.skipped == []
        assert execution_log.query_by_story(stories[0].id)[0].event_type == EventType.INFO

    def test_second_turn_receives_analysis(self, store, execution_log, work_item):
        provider = FakeProvider(refine_results=[_reply(BREAKDOWN)])
        refine_work_item(store, execution_log, provider, work_item.id, retry_policy=NO_WAIT)
        (first, analysis_request), (second, refine_request) = provider.requests
        assert (first, second) == ("refine_analysis", "refine")
        assert "Payments" in analysis_request.context
        assert refine_request.prior_analysis == "analysis"
        assert refine_request.session_id == "s-1"

    def test_invalid_edges_are_skipped(self, store, execution_log, work_item, caplog):
        data = dict(BREAKDOWN, dependencies=[
            {"dependent_story_index": 1, "required_story_index": 0},
            {"dependent_story_index": 0, "required_story_index": 1},
            {"dependent_story_index": 2, "required_story_index": 2},
            {"dependent_story_index": 5, "required_story_index": 0},
        ])
        provider = FakeProvider(refine_results=[_reply(data)])

        result = refine_work_item(store, execution_log, provider, work_item.id, retry_policy=NO_WAIT)

        assert len(result.dependencies) == 1
        assert len(result.skipped) == 3
        assert any("cycle" in s for s in result.skipped)
        assert any("out of range" in s for s in result.skipped)
        assert "skipped" in caplog.text

    def test_rerefine_replaces_stories(self, store, execution_log, work_item):
        make_story(store, work_item, title="Stale")
        update_work_item_status(store, work_item.id, WorkItemStatus.ERROR, reason="earlier failure")
        provider = FakeProvider(refine_results=[_reply(BREAKDOWN)])

        refine_work_item(store, execution_log, provider, work_item.id, retry_policy=NO_WAIT)

        assert "Stale" not in [s.title for s in store.stories_for(work_item.id)]
        assert store.get_work_item(work_item.id).error_message is None

    def test_bad_reply_moves_work_item_to_error(self, store, execution_log, work_item):
        provider = FakeProvider(refine_results=[ProviderResponse(success=True, output="no json here")])

        with pytest.raises(AiProviderFailure):
            refine_work_item(store, execution_log, provider, work_item.id, retry_policy=NO_WAIT)

        loaded = store.get_work_item(work_item.id)
        assert loaded.status == WorkItemStatus.ERROR
        assert "not JSON" in loaded.error_message
        assert store.stories_for(work_item.id) == []

    def test_transient_failure_is_retried(self, store, execution_log, work_item):
        provider = FakeProvider(
            analysis_results=[ProviderResponse(success=False, error="overloaded", transient=True)],
            refine_results=[_reply(BREAKDOWN)],
        )
        refine_work_item(store, execution_log, provider, work_item.id, retry_policy=NO_WAIT)
        assert [kind for kind, _ in provider.requests] == ["refine_analysis", "refine_analysis", "refine"]

    def test_cancelled(self, store, execution_log, work_item):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(Cancelled):
            refine_work_item(store, execution_log, FakeProvider(), work_item.id, cancel_event=cancel)
        loaded = store.get_work_item(work_item.id)
        assert loaded.status == WorkItemStatus.ERROR
        assert loaded.error_message == "Cancelled"

    def test_refined_work_item_cannot_be_refined_again(self, store, execution_log):
        wi = make_work_item(store, status=WorkItemStatus.REFINED)
        with pytest.raises(InvalidStateTransition):
            refine_work_item(store, execution_log, FakeProvider(), wi.id, retry_policy=NO_WAIT)
        assert store.get_work_item(wi.id).status == WorkItemStatus.REFINED


class TestWorkItems:
    def test_create_work_item(self, store):
        wi = create_work_item(store, WorkItemType.BUG, "  Crash on save ", description="Stack trace", priority=2)
        assert wi.id == 1
        assert wi.title == "Crash on save"
        assert wi.status == WorkItemStatus.PENDING
        assert store.get_work_item(wi.id).priority == 2

    @pytest.mark.parametrize("priority", [0, 10])
    def test_priority_out_of_range(self, store, priority):
        with pytest.raises(ValueError):
            create_work_item(store, WorkItemType.USER_STORY, "Title", priority=priority)

    def test_empty_title(self, store):
        with pytest.raises(ValueError):
            create_work_item(store, WorkItemType.USER_STORY, "   ")

    def test_update_status_goes_through_state_machine(self, store):
        wi = create_work_item(store, WorkItemType.USER_STORY, "Title")
        with pytest.raises(InvalidStateTransition):
            update_work_item_status(store, wi.id, WorkItemStatus.COMPLETED)
        updated = update_work_item_status(store, wi.id, WorkItemStatus.ERROR, reason="abandoned")
        assert updated.error_message == "abandoned"

    def test_add_story_defaults_to_work_item_priority(self, store, execution_log):
        wi = make_work_item(store, priority=2)
        story = add_developer_story(store, execution_log, wi.id, "Write docs", story_type=StoryType.DOCUMENTATION)
        assert story.priority == 2
        assert story.story_type == StoryType.DOCUMENTATION
        assert execution_log.query_by_story(story.id)[0].details == f"Added to work item {wi.id}"

    def test_add_story_to_missing_work_item(self, store, execution_log):
        with pytest.raises(EntityNotFound):
            add_developer_story(store, execution_log, 99, "Title")

    def test_add_story_to_completed_work_item(self, store, execution_log):
        wi = make_work_item(store, status=WorkItemStatus.COMPLETED)
        with pytest.raises(ValueError):
            add_developer_story(store, execution_log, wi.id, "Title")

    def test_describe_work_item(self, store):
        wi = make_work_item(store, type=WorkItemType.BUG, title="Crash", acceptance_criteria="No crash")
        text = describe_work_item(wi)
        assert text.startswith(f"# Bug {wi.id}: Crash")
        assert "(no description)" in text
        assert "## Acceptance criteria\n\nNo crash" in text
