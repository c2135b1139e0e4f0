"""
Append-only execution audit log.

Every lifecycle event of a developer story is recorded here. Recording
never fails because of storage: entries go to an in-memory buffer first
and are flushed to the store in order; an entry whose write fails stays
buffered and is retried on the next record() or flush().
"""

import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from storyflow.lib.validate import validate
from storyflow.pm.models import (
    DeveloperStory,
    EventType,
    ExecutionLogEntry,
    StoryStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = (EventType.COMPLETED, EventType.FAILED)


class ExecutionLog:
    def __init__(self, store):
        self.store = store
        self._lock = threading.Lock()
        self._pending: list[ExecutionLogEntry] = []
        # story_id -> (last id, last timestamp)
        self._last: dict[int, tuple[int, str]] = {}

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _last_for(self, story_id: int) -> tuple[int, str]:
        if story_id not in self._last:
            entries = self.store.read_log(story_id)
            entries += [e for e in self._pending if e.story_id == story_id]
            self._last[story_id] = (
                max((e.id for e in entries), default=0),
                max((e.timestamp for e in entries), default=""),
            )
        return self._last[story_id]

    def record(
        self,
        story_id: int,
        event_type: EventType,
        details: Optional[str] = None,
        error_message: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> int:
        """Append an event for a story and return its id.

        Metadata values that are not JSON types are stored as strings.

        Raises:
            ValidationError: The entry can never be stored (nothing is buffered)
        """
        metadata = json.loads(json.dumps(metadata or {}, default=str))
        with self._lock:
            last_id, last_ts = self._last_for(story_id)
            timestamp = utc_now()
            if last_ts and timestamp <= last_ts:
                timestamp = (datetime.fromisoformat(last_ts) + timedelta(microseconds=1)).isoformat(
                    timespec="microseconds"
                )
            entry = ExecutionLogEntry(
                id=last_id + 1,
                story_id=story_id,
                event_type=event_type,
                timestamp=timestamp,
                details=details,
                error_message=error_message,
                metadata=metadata,
            )
            validate(entry.to_dict(), "log_entry")
            self._pending.append(entry)
            self._last[story_id] = (entry.id, timestamp)
            self._flush_locked()
        logger.debug(f"[LOG] story {story_id}: {event_type.value} {details or ''}".rstrip())
        return entry.id

    def _flush_locked(self) -> bool:
        while self._pending:
            entry = self._pending[0]
            try:
                self.store.append_log(entry)
            except OSError as e:
                logger.warning(
                    f"[LOG] Could not persist log entry {entry.id} for story {entry.story_id}, "
                    f"{len(self._pending)} buffered: {e}"
                )
                return False
            self._pending.pop(0)
        return True

    def flush(self) -> bool:
        """Write buffered entries. True when nothing is left buffered."""
        with self._lock:
            return self._flush_locked()

    def query_by_story(self, story_id: int) -> list[ExecutionLogEntry]:
        """All events for a story, oldest first, including unflushed ones."""
        with self._lock:
            entries = self.store.read_log(story_id)
            stored = {e.id for e in entries}
            entries += [e for e in self._pending if e.story_id == story_id and e.id not in stored]
        return sorted(entries, key=lambda e: (e.timestamp, e.id))

    def find_orphans(self, stories: Iterable[DeveloperStory]) -> list[DeveloperStory]:
        """InProgress stories whose latest Started event was never closed.

        Only meaningful when no other process is working on the stories.
        """
        orphans = []
        for story in stories:
            if story.status != StoryStatus.IN_PROGRESS:
                continue
            closed = False
            for entry in reversed(self.query_by_story(story.id)):
                if entry.event_type in TERMINAL_EVENTS:
                    closed = True
                    break
                if entry.event_type == EventType.STARTED:
                    break
            if not closed:
                orphans.append(story)
        return orphans
