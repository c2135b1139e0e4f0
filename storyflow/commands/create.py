"""
storyflow create / add-story - Create work items and hand-written stories.
"""

from storyflow.pm.models import StoryType, WorkItemType
from storyflow.pm.work_items import add_developer_story, create_work_item


def cmd_create(args, ctx) -> int:
    """Create a work item."""
    work_item = create_work_item(
        ctx.store,
        WorkItemType(args.type),
        args.title,
        description=args.description or "",
        acceptance_criteria=args.acceptance_criteria,
        priority=args.priority,
        base_ref=args.base_ref,
    )
    print(f"Created work item {work_item.id}: {work_item.title}")
    print(f"  type:     {work_item.type.value}")
    print(f"  priority: {work_item.priority}")
    print(f"  branch:   {work_item.default_branch_name}-<story>")
    print()
    print(f"Next: storyflow refine {work_item.id}")
    return 0


def cmd_add_story(args, ctx) -> int:
    """Add a story to a work item by hand."""
    story = add_developer_story(
        ctx.store,
        ctx.execution_log,
        args.work_item,
        args.title,
        story_type=StoryType(args.type),
        description=args.description or "",
        instructions=args.instructions or "",
        priority=args.priority,
    )
    print(f"Added story {story.id} to work item {story.work_item_id}: {story.title}")
    return 0
