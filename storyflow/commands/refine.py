"""
storyflow refine - Break a work item into developer stories.
"""

from storyflow.agents.provider import RetryPolicy
from storyflow.pm.refinement import refine_work_item


def cmd_refine(args, ctx) -> int:
    print(f"Refining work item {args.work_item}...")
    result = refine_work_item(
        ctx.store,
        ctx.execution_log,
        ctx.provider,
        args.work_item,
        cancel_event=ctx.cancel_event,
        retry_policy=RetryPolicy.from_config(ctx.config),
    )

    titles = {s.id: s.title for s in result.stories}
    print(f"Created {len(result.stories)} stories:")
    for story in result.stories:
        print(f"  {story.id:<6} {story.story_type.value:<14} {story.title}")
    if result.dependencies:
        print()
        print("Dependencies:")
        for edge in result.dependencies:
            print(f"  {edge.dependent_story_id} ({titles[edge.dependent_story_id]}) "
                  f"requires {edge.required_story_id} ({titles[edge.required_story_id]})")
    for message in result.skipped:
        print(f"  [WARN] Skipped {message}")
    print()
    print(f"Next: storyflow run {args.work_item}")
    return 0
