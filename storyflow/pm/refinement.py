"""
Refinement: break a work item into developer stories and dependencies.

Two provider turns: a free-form analysis, then a structured breakdown
(validated against ``refinement.schema.json``). Dependencies in the reply
refer to stories by index; edges that are self-referencing, out of range,
duplicated or cycle-closing are dropped with a warning rather than failing
the whole refinement.
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from storyflow.agents.provider import ProviderRequest, RetryPolicy, retry_transient
from storyflow.agents.replies import extract_json_object
from storyflow.lib.errors import AiProviderFailure, Cancelled, DependencyError
from storyflow.lib.validate import validate
from storyflow.pm.models import (
    DeveloperStory,
    DeveloperStoryDependency,
    EventType,
    StoryType,
    WorkItem,
    WorkItemStatus,
)
from storyflow.pm.work_items import describe_work_item, update_work_item_status
from storyflow.runner.locking import work_item_lock
from storyflow.workflow.graph import DependencyGraph
from storyflow.workflow.state_machine import can_transition, transition

logger = logging.getLogger(__name__)

STORY_TYPE_BY_INDEX = [
    StoryType.IMPLEMENTATION,
    StoryType.UNIT_TESTS,
    StoryType.FEATURE_TESTS,
    StoryType.DOCUMENTATION,
]

REFINE_INSTRUCTIONS = (
    "Split the work into developer stories of these types where each applies: "
    "implementation, unit_tests, feature_tests, documentation."
)


@dataclass
class RefinementResult:
    work_item: WorkItem
    stories: list[DeveloperStory] = field(default_factory=list)
    dependencies: list[DeveloperStoryDependency] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    analysis: str = ""


def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _normalize_keys(value: Any) -> Any:
    """camelCase keys -> snake_case, recursively."""
    if isinstance(value, dict):
        return {_snake_case(k): _normalize_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalize_keys(v) for v in value]
    return value


def parse_refinement_reply(text: str) -> dict:
    """Decode and validate the breakdown turn's reply.

    Raises:
        AiProviderFailure: The reply holds no JSON object
        ValidationError: The object does not match the refinement schema
    """
    try:
        data = extract_json_object(text)
    except ValueError as e:
        raise AiProviderFailure(f"Refinement reply was not JSON: {e}") from e
    data = _normalize_keys(data)
    validate(data, "refinement")
    return data


def _story_type(raw) -> StoryType:
    if raw is None:
        return StoryType.IMPLEMENTATION
    if isinstance(raw, int):
        return STORY_TYPE_BY_INDEX[raw]
    return StoryType(raw)


def _apply_breakdown(store, execution_log, work_item: WorkItem, data: dict) -> RefinementResult:
    """Replace the work item's stories with the breakdown. Caller holds the work item lock."""
    for old in store.stories_for(work_item.id):
        logger.info(f"Removing story {old.id} left over from an earlier refinement")
        store.delete_story(old.id)

    result = RefinementResult(work_item=work_item, analysis=data.get("analysis", ""))
    for index, entry in enumerate(data["developer_stories"]):
        story = DeveloperStory(
            id=store.allocate_id("story"),
            work_item_id=work_item.id,
            title=entry["title"].strip(),
            story_type=_story_type(entry.get("story_type")),
            description=entry.get("description", ""),
            instructions=entry.get("instructions", ""),
            priority=work_item.priority,
            metadata={"refinement_index": index},
        )
        store.add_story(story)
        execution_log.record(
            story.id,
            EventType.INFO,
            details=f"Created by refinement of work item {work_item.id}",
        )
        result.stories.append(story)

    graph = DependencyGraph(result.stories)
    count = len(result.stories)
    for dep in data.get("dependencies", []):
        d_index = dep["dependent_story_index"]
        r_index = dep["required_story_index"]
        if not (0 <= d_index < count and 0 <= r_index < count):
            result.skipped.append(f"dependency {d_index} -> {r_index}: index out of range")
            continue
        dependent_id = result.stories[d_index].id
        required_id = result.stories[r_index].id
        try:
            graph.check_dependency(dependent_id, required_id)
        except DependencyError as e:
            result.skipped.append(f"dependency {d_index} -> {r_index}: {e}")
            continue
        edge = graph.add_edge(DeveloperStoryDependency(
            id=store.allocate_id("dependency"),
            dependent_story_id=dependent_id,
            required_story_id=required_id,
            description=dep.get("description"),
        ))
        store.add_dependency(edge)
        result.dependencies.append(edge)

    for message in result.skipped:
        logger.warning(f"Work item {work_item.id}: skipped {message}")
    return result


def refine_work_item(
    store,
    execution_log,
    provider,
    work_item_id: int,
    cancel_event: Optional[threading.Event] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> RefinementResult:
    """Refine a Pending or Error work item (or re-run one stuck in Refining).

    On any failure the work item is moved to Error with the message and the
    error is re-raised.
    """
    cancel_event = cancel_event or threading.Event()
    policy = retry_policy or RetryPolicy()

    with work_item_lock(store.locks_dir, work_item_id, store.lock_timeout):
        work_item = store.get_work_item(work_item_id)
        if work_item.status == WorkItemStatus.REFINING:
            logger.info(f"Work item {work_item_id} is already refining, running again")
        else:
            transition(work_item, WorkItemStatus.REFINING)
            store.update_work_item(work_item)

    try:
        context = describe_work_item(work_item)
        analysis = retry_transient(
            lambda: provider.refine_analysis(
                ProviderRequest(context=context, instructions=REFINE_INSTRUCTIONS), cancel_event
            ),
            policy,
            cancel_event,
            subject=f"Work item {work_item_id} analysis",
        )
        reply = retry_transient(
            lambda: provider.refine(
                ProviderRequest(
                    context=context,
                    instructions=REFINE_INSTRUCTIONS,
                    prior_analysis=analysis.output,
                    session_id=analysis.session_id,
                ),
                cancel_event,
            ),
            policy,
            cancel_event,
            subject=f"Work item {work_item_id} breakdown",
        )
        data = parse_refinement_reply(reply.output)

        with work_item_lock(store.locks_dir, work_item_id, store.lock_timeout):
            work_item = store.get_work_item(work_item_id)
            result = _apply_breakdown(store, execution_log, work_item, data)
            transition(work_item, WorkItemStatus.REFINED)
            store.update_work_item(work_item)
        if not result.analysis:
            result.analysis = analysis.output
    except Exception as e:
        reason = "Cancelled" if isinstance(e, Cancelled) else str(e)
        current = store.get_work_item(work_item_id)
        if can_transition(current.status, WorkItemStatus.ERROR):
            update_work_item_status(store, work_item_id, WorkItemStatus.ERROR, reason=reason)
        logger.warning(f"Refinement of work item {work_item_id} failed: {reason}")
        raise

    logger.info(
        f"Work item {work_item_id} refined into {len(result.stories)} stories "
        f"with {len(result.dependencies)} dependencies"
    )
    return result
