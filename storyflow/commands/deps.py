"""
storyflow deps - Manage dependencies between stories.
"""


def cmd_deps_add(args, ctx) -> int:
    edge = ctx.scheduler.add_dependency(args.dependent, args.required, args.description)
    print(f"Story {edge.dependent_story_id} now requires story {edge.required_story_id}")
    return 0


def cmd_deps_list(args, ctx) -> int:
    edges = ctx.store.dependencies_for(args.work_item)
    if not edges:
        print(f"Work item {args.work_item} has no dependencies")
        return 0
    for edge in edges:
        note = f"  ({edge.description})" if edge.description else ""
        print(f"  {edge.dependent_story_id} -> {edge.required_story_id}{note}")
    return 0
