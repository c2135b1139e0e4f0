"""
storyflow retry / recover - Requeue failed stories and clean up after crashes.
"""

from storyflow.pm.models import StoryStatus


def cmd_retry(args, ctx) -> int:
    story = ctx.scheduler.retry(args.story, ctx.config.max_story_attempts, force=args.force)
    if story.status == StoryStatus.BLOCKED:
        print(f"Story {story.id} has used all {ctx.config.max_story_attempts} attempts and is now blocked")
        print(f"  {story.error_message}")
        print(f"Use 'storyflow retry {story.id} --force' to try again anyway")
        return 1
    print(f"Story {story.id} requeued (attempts so far: {story.attempts})")
    return 0


def cmd_recover(args, ctx) -> int:
    orphans = ctx.scheduler.recover_orphans(args.work_item)
    if not orphans:
        print(f"No interrupted stories in work item {args.work_item}")
        return 0
    for story in orphans:
        where = f" (workspace kept at {story.workspace_path})" if story.workspace_path else ""
        print(f"Story {story.id} marked as error{where}")
    print()
    print("Use 'storyflow retry <story>' to requeue them")
    return 0
