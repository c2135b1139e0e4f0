#!/usr/bin/env python3
"""storyflow CLI entrypoint."""

import argparse
import logging
import signal
import sys
from pathlib import Path

from storyflow import __version__
from storyflow.commands import create as cmd_create_module
from storyflow.commands import deps as cmd_deps_module
from storyflow.commands import implement as cmd_implement_module
from storyflow.commands import list as cmd_list_module
from storyflow.commands import log as cmd_log_module
from storyflow.commands import next as cmd_next_module
from storyflow.commands import refine as cmd_refine_module
from storyflow.commands import retry as cmd_retry_module
from storyflow.lib.errors import StoryflowError
from storyflow.pm.models import StoryType, WorkItemType
from storyflow.runner.context import AppContext

EXIT_INVALID_INPUT = 2
EXIT_INTERNAL = 1

logger = logging.getLogger(__name__)


def install_cancel_handler(ctx: AppContext):
    """First Ctrl-C cancels running work cleanly; a second one interrupts.

    Returns the previous handler.
    """
    def handler(signum, frame):
        print("\nCancelling... (Ctrl-C again to abort)", file=sys.stderr)
        ctx.cancel_event.set()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    return signal.signal(signal.SIGINT, handler)


def _with_context(func, cancellable: bool = False):
    def run(args):
        ctx = AppContext.create(args.project_dir)
        if not cancellable:
            return func(args, ctx)
        previous = install_cancel_handler(ctx)
        try:
            return func(args, ctx)
        finally:
            signal.signal(signal.SIGINT, previous)
    return run


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="storyflow", description="Dependency-aware story delivery")
    parser.add_argument("--project-dir", "-C", type=Path, default=Path("."),
                        help="Project directory holding project.env (default: current directory)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log to stderr")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # storyflow create
    p_create = subparsers.add_parser("create", help="Create a work item")
    p_create.add_argument("type", choices=[t.value for t in WorkItemType], help="Work item type")
    p_create.add_argument("title", help="Work item title")
    p_create.add_argument("--description", "-d", help="What needs to be done")
    p_create.add_argument("--acceptance-criteria", "-a", help="How to tell it is done")
    p_create.add_argument("--priority", "-p", type=int, default=5, help="1 (highest) to 9 (default: 5)")
    p_create.add_argument("--base-ref", help="Branch to cut story branches from (default: BASE_BRANCH)")
    p_create.set_defaults(func=_with_context(cmd_create_module.cmd_create))

    # storyflow add-story
    p_add = subparsers.add_parser("add-story", help="Add a developer story by hand")
    p_add.add_argument("work_item", type=int, help="Work item ID")
    p_add.add_argument("title", help="Story title")
    p_add.add_argument("--type", "-t", choices=[t.value for t in StoryType],
                       default=StoryType.IMPLEMENTATION.value, help="Story type")
    p_add.add_argument("--description", "-d", help="What the story delivers")
    p_add.add_argument("--instructions", "-i", help="Guidance for the implementer")
    p_add.add_argument("--priority", "-p", type=int, help="1-9 (default: the work item's priority)")
    p_add.set_defaults(func=_with_context(cmd_create_module.cmd_add_story))

    # storyflow refine
    p_refine = subparsers.add_parser("refine", help="Break a work item into developer stories")
    p_refine.add_argument("work_item", type=int, help="Work item ID")
    p_refine.set_defaults(func=_with_context(cmd_refine_module.cmd_refine, cancellable=True))

    # storyflow next
    p_next = subparsers.add_parser("next", help="Show the next story that would run")
    p_next.add_argument("work_item", type=int, help="Work item ID")
    p_next.set_defaults(func=_with_context(cmd_next_module.cmd_next))

    # storyflow implement
    p_impl = subparsers.add_parser("implement", help="Implement one story")
    p_impl.add_argument("story", type=int, nargs="?", help="Story ID (default: next eligible story)")
    p_impl.add_argument("--work-item", "-w", type=int, help="Pick the next eligible story of this work item")
    p_impl.set_defaults(func=_with_context(cmd_implement_module.cmd_implement, cancellable=True))

    # storyflow run
    p_run = subparsers.add_parser("run", help="Implement all stories of a work item")
    p_run.add_argument("work_item", type=int, help="Work item ID")
    p_run.add_argument("--workers", "-n", type=int, help="Concurrent workers (default: WORKERS)")
    p_run.add_argument("--retry", action="store_true", help="Requeue failed stories until MAX_STORY_ATTEMPTS")
    p_run.set_defaults(func=_with_context(cmd_implement_module.cmd_run, cancellable=True))

    # storyflow list
    p_list = subparsers.add_parser("list", help="List work items, or one work item's stories")
    p_list.add_argument("work_item", type=int, nargs="?", help="Work item ID")
    p_list.set_defaults(func=_with_context(cmd_list_module.cmd_list))

    # storyflow deps
    p_deps = subparsers.add_parser("deps", help="Manage story dependencies")
    deps_sub = p_deps.add_subparsers(dest="deps_cmd", required=True)

    # storyflow deps add
    p_deps_add = deps_sub.add_parser("add", help="Make one story wait for another")
    p_deps_add.add_argument("dependent", type=int, help="Story that waits")
    p_deps_add.add_argument("required", type=int, help="Story that must complete first")
    p_deps_add.add_argument("--description", "-d", help="Why")
    p_deps_add.set_defaults(func=_with_context(cmd_deps_module.cmd_deps_add))

    # storyflow deps list
    p_deps_list = deps_sub.add_parser("list", help="List a work item's dependencies")
    p_deps_list.add_argument("work_item", type=int, help="Work item ID")
    p_deps_list.set_defaults(func=_with_context(cmd_deps_module.cmd_deps_list))

    # storyflow log
    p_log = subparsers.add_parser("log", help="Show a story's execution log")
    p_log.add_argument("story", type=int, help="Story ID")
    p_log.set_defaults(func=_with_context(cmd_log_module.cmd_log))

    # storyflow retry
    p_retry = subparsers.add_parser("retry", help="Requeue a failed story")
    p_retry.add_argument("story", type=int, help="Story ID")
    p_retry.add_argument("--force", action="store_true", help="Reset the attempt count (also revives blocked stories)")
    p_retry.set_defaults(func=_with_context(cmd_retry_module.cmd_retry))

    # storyflow recover
    p_recover = subparsers.add_parser("recover", help="Fail stories orphaned by a crashed run")
    p_recover.add_argument("work_item", type=int, help="Work item ID")
    p_recover.set_defaults(func=_with_context(cmd_retry_module.cmd_recover))

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            stream=sys.stderr,
        )

    try:
        return args.func(args)
    except StoryflowError as e:
        print(f"ERROR [{e.category}]: {e}", file=sys.stderr)
        return e.exit_code
    except ValueError as e:
        print(f"ERROR [invalid_input]: {e}", file=sys.stderr)
        return EXIT_INVALID_INPUT
    except Exception as e:
        # Traceback only with --verbose
        logger.info(f"Unhandled error in {args.command}", exc_info=True)
        print(f"ERROR [internal]: {type(e).__name__}: {e}", file=sys.stderr)
        return EXIT_INTERNAL


if __name__ == "__main__":
    sys.exit(main())
