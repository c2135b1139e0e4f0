"""
JSON file store for work items, stories, dependencies and execution logs.

Layout under the state directory:
  counters.json                  next id per entity kind
  work_items/<id>.json
  stories/<id>.json
  dependencies/<id>.json
  logs/<story_id>.jsonl          one ExecutionLogEntry per line
  locks/                         flock files (see runner.locking)

Every record is schema-validated before it is written, and whole-file
writes go through a temp file and ``os.replace`` so readers never see a
partial record.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Optional, TypeVar

from storyflow.lib.errors import EntityNotFound
from storyflow.lib.validate import validate_before_write
from storyflow.pm.models import (
    DeveloperStory,
    DeveloperStoryDependency,
    ExecutionLogEntry,
    WorkItem,
    WorkItemStatus,
)
from storyflow.runner.locking import store_lock

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Store:
    def __init__(self, state_dir: Path, lock_timeout: float = 60):
        self.state_dir = Path(state_dir)
        self.lock_timeout = lock_timeout
        self.work_items_dir = self.state_dir / "work_items"
        self.stories_dir = self.state_dir / "stories"
        self.dependencies_dir = self.state_dir / "dependencies"
        self.logs_dir = self.state_dir / "logs"
        self.locks_dir = self.state_dir / "locks"

    # --- low level -------------------------------------------------------

    def _write_json(self, path: Path, data: dict, schema: str) -> None:
        validate_before_write(data, schema, path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        tmp.write_text(json.dumps(data, indent=2))
        os.replace(tmp, path)

    def _read(self, path: Path, factory: Callable[[dict], T], entity_type: str, entity_id) -> T:
        if not path.exists():
            raise EntityNotFound(entity_type, entity_id)
        return factory(json.loads(path.read_text()))

    def _list(self, directory: Path, factory: Callable[[dict], T]) -> list[T]:
        if not directory.exists():
            return []
        records = []
        for f in directory.glob("*.json"):
            try:
                records.append(factory(json.loads(f.read_text())))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable record {f}: {e}")
        return sorted(records, key=lambda r: r.id)

    def allocate_id(self, kind: str) -> int:
        """Reserve the next integer id for an entity kind."""
        counters_path = self.state_dir / "counters.json"
        with store_lock(self.locks_dir, self.lock_timeout):
            counters = json.loads(counters_path.read_text()) if counters_path.exists() else {}
            next_id = counters.get(kind, 0) + 1
            counters[kind] = next_id
            self._write_json(counters_path, counters, "counters")
        return next_id

    # --- work items --------------------------------------------------------

    def _work_item_path(self, work_item_id: int) -> Path:
        return self.work_items_dir / f"{work_item_id}.json"

    def add_work_item(self, work_item: WorkItem) -> WorkItem:
        self._write_json(self._work_item_path(work_item.id), work_item.to_dict(), "work_item")
        return work_item

    def get_work_item(self, work_item_id: int) -> WorkItem:
        return self._read(self._work_item_path(work_item_id), WorkItem.from_dict, "WorkItem", work_item_id)

    def update_work_item(self, work_item: WorkItem) -> WorkItem:
        path = self._work_item_path(work_item.id)
        if not path.exists():
            raise EntityNotFound("WorkItem", work_item.id)
        self._write_json(path, work_item.to_dict(), "work_item")
        return work_item

    def delete_work_item(self, work_item_id: int) -> None:
        """Delete a work item and, by cascade, its stories."""
        path = self._work_item_path(work_item_id)
        if not path.exists():
            raise EntityNotFound("WorkItem", work_item_id)
        for story in self.stories_for(work_item_id):
            self.delete_story(story.id)
        path.unlink()

    def list_work_items(self, status: Optional[WorkItemStatus] = None) -> list[WorkItem]:
        items = self._list(self.work_items_dir, WorkItem.from_dict)
        if status is not None:
            items = [wi for wi in items if wi.status == status]
        return items

    # --- stories -------------------------------------------------------------

    def _story_path(self, story_id: int) -> Path:
        return self.stories_dir / f"{story_id}.json"

    def add_story(self, story: DeveloperStory) -> DeveloperStory:
        if not self._work_item_path(story.work_item_id).exists():
            raise EntityNotFound("WorkItem", story.work_item_id)
        self._write_json(self._story_path(story.id), story.to_dict(), "story")
        return story

    def get_story(self, story_id: int) -> DeveloperStory:
        return self._read(self._story_path(story_id), DeveloperStory.from_dict, "DeveloperStory", story_id)

    def update_story(self, story: DeveloperStory) -> DeveloperStory:
        path = self._story_path(story.id)
        if not path.exists():
            raise EntityNotFound("DeveloperStory", story.id)
        self._write_json(path, story.to_dict(), "story")
        return story

    def delete_story(self, story_id: int) -> None:
        """Delete a story together with its edges (both directions) and its log."""
        path = self._story_path(story_id)
        if not path.exists():
            raise EntityNotFound("DeveloperStory", story_id)
        for edge in self._all_dependencies():
            if story_id in (edge.dependent_story_id, edge.required_story_id):
                self.delete_dependency(edge.id)
        log_path = self._log_path(story_id)
        if log_path.exists():
            log_path.unlink()
        path.unlink()

    def stories_for(self, work_item_id: int) -> list[DeveloperStory]:
        """Stories owned by a work item, ordered by id."""
        return [s for s in self._list(self.stories_dir, DeveloperStory.from_dict)
                if s.work_item_id == work_item_id]

    # --- dependencies --------------------------------------------------------

    def _dependency_path(self, dependency_id: int) -> Path:
        return self.dependencies_dir / f"{dependency_id}.json"

    def _all_dependencies(self) -> list[DeveloperStoryDependency]:
        return self._list(self.dependencies_dir, DeveloperStoryDependency.from_dict)

    def add_dependency(self, edge: DeveloperStoryDependency) -> DeveloperStoryDependency:
        for story_id in (edge.dependent_story_id, edge.required_story_id):
            if not self._story_path(story_id).exists():
                raise EntityNotFound("DeveloperStory", story_id)
        self._write_json(self._dependency_path(edge.id), edge.to_dict(), "dependency")
        return edge

    def dependencies_for(self, work_item_id: int) -> list[DeveloperStoryDependency]:
        """Edges whose dependent story belongs to the work item."""
        story_ids = {s.id for s in self.stories_for(work_item_id)}
        return [e for e in self._all_dependencies() if e.dependent_story_id in story_ids]

    def delete_dependency(self, dependency_id: int) -> None:
        path = self._dependency_path(dependency_id)
        if not path.exists():
            raise EntityNotFound("DeveloperStoryDependency", dependency_id)
        path.unlink()

    # --- execution log -----------------------------------------------------

    def _log_path(self, story_id: int) -> Path:
        return self.logs_dir / f"{story_id}.jsonl"

    def append_log(self, entry: ExecutionLogEntry) -> None:
        path = self._log_path(entry.story_id)
        data = entry.to_dict()
        validate_before_write(data, "log_entry", path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as f:
            f.write(json.dumps(data) + "\n")
            f.flush()

    def read_log(self, story_id: int) -> list[ExecutionLogEntry]:
        path = self._log_path(story_id)
        if not path.exists():
            return []
        entries = []
        for lineno, line in enumerate(path.read_text().splitlines(), 1):
            if not line.strip():
                continue
            try:
                entries.append(ExecutionLogEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed log line {path}:{lineno}: {e}")
        return entries
