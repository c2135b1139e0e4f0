"""
storyflow log - Show a story's execution log.
"""


def cmd_log(args, ctx) -> int:
    story = ctx.store.get_story(args.story)
    entries = ctx.execution_log.query_by_story(story.id)
    print(f"Story {story.id}: {story.title} ({story.status.value})")
    print("-" * 70)
    if not entries:
        print("  no events")
        return 0
    for entry in entries:
        line = f"  {entry.timestamp}  {entry.event_type.value:<17}"
        if entry.details:
            line += f" {entry.details}"
        print(line)
        if entry.error_message:
            print(f"      error: {entry.error_message}")
    return 0
