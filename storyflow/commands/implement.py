"""
storyflow implement / run - Execute developer stories.
"""

from storyflow.workflow.workers import run_workers


def cmd_implement(args, ctx) -> int:
    """Run one story: the given one, or the next eligible story of --work-item."""
    if args.story is None and args.work_item is None:
        raise ValueError("Give a story id or --work-item")

    result = ctx.engine.implement(
        story_id=args.story,
        work_item_id=args.work_item if args.story is None else None,
        cancel_event=ctx.cancel_event,
    )
    if result is None:
        print(f"No story of work item {args.work_item} is ready to run")
        return 0

    print(f"Story {result.story_id} completed in {result.duration:.1f}s on branch {result.branch_name}")
    if result.output:
        print()
        print(result.output.strip())
    return 0


def cmd_run(args, ctx) -> int:
    """Drain a work item with a pool of workers."""
    workers = args.workers or ctx.config.workers
    print(f"Running work item {args.work_item} with {workers} worker(s)...")
    summary = run_workers(
        ctx.engine,
        ctx.scheduler,
        args.work_item,
        workers=workers,
        cancel_event=ctx.cancel_event,
        poll_interval=ctx.config.poll_interval,
        auto_retry=args.retry,
        max_story_attempts=ctx.config.max_story_attempts,
    )

    print()
    print(f"Completed: {', '.join(map(str, summary.completed)) or 'none'}")
    if summary.failed:
        print(f"Failed:    {', '.join(map(str, summary.failed))}")
    if summary.cancelled:
        print(f"Cancelled: {', '.join(map(str, summary.cancelled))}")

    work_item = ctx.store.get_work_item(args.work_item)
    print(f"Work item {work_item.id} is {work_item.status.value}")
    if ctx.cancel_event.is_set():
        return 130
    return 0 if summary.ok else 1
