"""
Worker pool: drains a work item's stories with N concurrent workers.

Each worker loops claim_next -> run_story. When nothing is claimable it
exits if no story is still running, otherwise it waits and polls again
(a running story may unlock its dependents when it completes).
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional

from storyflow.lib.errors import Cancelled, StoryflowError

logger = logging.getLogger(__name__)


@dataclass
class PoolSummary:
    completed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    cancelled: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled


def run_workers(
    engine,
    scheduler,
    work_item_id: int,
    workers: int = 2,
    cancel_event: Optional[threading.Event] = None,
    poll_interval: float = 2.0,
    auto_retry: bool = False,
    max_story_attempts: int = 3,
) -> PoolSummary:
    """Run stories of a work item until none is left to claim.

    Per-story failures are already recorded by the engine and do not stop
    the pool. With ``auto_retry`` a failed story is requeued until its
    attempts run out, after which it and its dependents are blocked.
    """
    cancel_event = cancel_event or threading.Event()
    stop = threading.Event()
    summary = PoolSummary()
    summary_lock = threading.Lock()

    def worker(n: int) -> None:
        name = f"worker-{n}"
        while not (cancel_event.is_set() or stop.is_set()):
            story = scheduler.claim_next(work_item_id)
            if story is None:
                if not scheduler.has_active(work_item_id):
                    logger.debug(f"[POOL] {name}: nothing left to run")
                    return
                cancel_event.wait(poll_interval)
                continue

            logger.info(f"[POOL] {name}: running story {story.id}")
            try:
                engine.run_story(story, cancel_event)
                outcome = summary.completed
            except Cancelled:
                outcome = summary.cancelled
            except StoryflowError as e:
                logger.warning(f"[POOL] {name}: story {story.id} failed: {e}")
                outcome = summary.failed
            except Exception:
                stop.set()
                raise
            with summary_lock:
                outcome.append(story.id)

            if outcome is summary.failed and auto_retry:
                scheduler.retry(story.id, max_story_attempts)

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="storyflow") as pool:
        futures = [pool.submit(worker, n) for n in range(1, workers + 1)]
        for future in futures:
            future.result()

    logger.info(
        f"[POOL] Work item {work_item_id}: {len(summary.completed)} completed, "
        f"{len(summary.failed)} failed, {len(summary.cancelled)} cancelled"
    )
    return summary
