"""
storyflow list - List work items, or the stories of one work item.
"""

from storyflow.lib.errors import CycleDetected
from storyflow.workflow.graph import DependencyGraph


def _short(text: str, width: int) -> str:
    return text[:width - 3] + "..." if len(text) > width else text


def _list_work_items(ctx) -> int:
    items = ctx.store.list_work_items()
    if not items:
        print("Work items: none")
        print()
        print("Get started:")
        print("  storyflow create user_story \"Title\" --description \"...\"")
        return 0

    print("Work items")
    print("-" * 70)
    for wi in items:
        stories = ctx.store.stories_for(wi.id)
        done = sum(1 for s in stories if s.status.value == "completed")
        progress = f"{done}/{len(stories)}" if stories else "-"
        print(f"  {wi.id:<5} {wi.type.value:<11} P{wi.priority}  {wi.status.value:<12} {progress:<6} {_short(wi.title, 36)}")
    print()
    print(f"{len(items)} work item(s)")
    return 0


def _list_stories(ctx, work_item_id: int) -> int:
    work_item = ctx.store.get_work_item(work_item_id)
    graph = DependencyGraph(
        ctx.store.stories_for(work_item_id),
        ctx.store.dependencies_for(work_item_id),
    )
    try:
        stories = graph.topological_order()
    except CycleDetected as e:
        print(f"  [WARN] {e}")
        stories = list(graph.stories.values())

    print(f"Work item {work_item.id}: {work_item.title} ({work_item.status.value})")
    if work_item.error_message:
        print(f"  error: {work_item.error_message}")
    print("-" * 70)
    if not stories:
        print("  no stories yet")
        return 0

    for story in stories:
        requires = graph.prerequisites_of(story.id)
        deps = f"  <- {', '.join(map(str, requires))}" if requires else ""
        print(f"  {story.id:<5} P{story.priority}  {story.status.value:<11} {story.story_type.value:<14} "
              f"{_short(story.title, 30)}{deps}")
        if story.error_message:
            print(f"        {story.error_message}")
        if story.branch_name:
            print(f"        branch: {story.branch_name}")
    return 0


def cmd_list(args, ctx) -> int:
    if args.work_item is None:
        return _list_work_items(ctx)
    return _list_stories(ctx, args.work_item)
