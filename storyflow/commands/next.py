"""
storyflow next - Show which story would be claimed next.
"""


def cmd_next(args, ctx) -> int:
    story = ctx.scheduler.next_candidate(args.work_item)
    if story is None:
        print(f"No story of work item {args.work_item} is ready to run")
        return 0
    print(f"{story.id}\t{story.title}")
    print(f"  type: {story.story_type.value}  priority: {story.priority}  status: {story.status.value}")
    return 0
