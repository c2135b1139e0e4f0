"""
Dependency graph over the developer stories of a work item.

An edge ``dependent -> required`` means the dependent story cannot start
until the required story is Completed. The graph rejects self-loops,
duplicate edges and any edge that would close a cycle, so a graph built
only through ``add_dependency`` is always a DAG. Graphs loaded from disk
are not trusted: ``cyclic_stories`` finds stories caught in (or behind) a
cycle and ``compute_ready_set`` never offers them.
"""

import logging
from collections import deque
from typing import Iterable, Optional

from storyflow.lib.errors import (
    CycleDetected,
    DuplicateDependency,
    EntityNotFound,
    SelfDependency,
)
from storyflow.pm.models import DeveloperStory, DeveloperStoryDependency, StoryStatus

logger = logging.getLogger(__name__)


class DependencyGraph:
    def __init__(
        self,
        stories: Iterable[DeveloperStory],
        edges: Iterable[DeveloperStoryDependency] = (),
    ):
        self.stories: dict[int, DeveloperStory] = {s.id: s for s in stories}
        self.edges: list[DeveloperStoryDependency] = []
        # dependent -> required ids, and the reverse
        self._requires: dict[int, set[int]] = {sid: set() for sid in self.stories}
        self._required_by: dict[int, set[int]] = {sid: set() for sid in self.stories}
        for edge in edges:
            if edge.dependent_story_id in self.stories:
                self._index(edge)

    def _index(self, edge: DeveloperStoryDependency) -> None:
        self.edges.append(edge)
        self._requires[edge.dependent_story_id].add(edge.required_story_id)
        if edge.required_story_id in self._required_by:
            self._required_by[edge.required_story_id].add(edge.dependent_story_id)

    # --- mutation ------------------------------------------------------------

    def _path_between(self, start: int, goal: int) -> Optional[list[int]]:
        """Follow required-edges from ``start``; return the path to ``goal`` if one exists."""
        parent: dict[int, Optional[int]] = {start: None}
        stack = [start]
        while stack:
            node = stack.pop()
            if node == goal:
                path = []
                while node is not None:
                    path.append(node)
                    node = parent[node]
                return list(reversed(path))
            for nxt in self._requires.get(node, ()):
                if nxt not in parent:
                    parent[nxt] = node
                    stack.append(nxt)
        return None

    def check_dependency(self, dependent_id: int, required_id: int) -> None:
        """Raise if ``dependent -> required`` may not be added. Never mutates."""
        if dependent_id == required_id:
            raise SelfDependency(dependent_id)
        for story_id in (dependent_id, required_id):
            if story_id not in self.stories:
                raise EntityNotFound("DeveloperStory", story_id)
        if required_id in self._requires[dependent_id]:
            raise DuplicateDependency(dependent_id, required_id)
        path = self._path_between(required_id, dependent_id)
        if path is not None:
            raise CycleDetected(dependent_id, required_id, [dependent_id] + path)

    def add_edge(self, edge: DeveloperStoryDependency) -> DeveloperStoryDependency:
        """Validate and insert an already-built edge record."""
        self.check_dependency(edge.dependent_story_id, edge.required_story_id)
        self._index(edge)
        return edge

    def add_dependency(
        self,
        dependent_id: int,
        required_id: int,
        description: Optional[str] = None,
        edge_id: Optional[int] = None,
    ) -> DeveloperStoryDependency:
        if edge_id is None:
            edge_id = max((e.id for e in self.edges), default=0) + 1
        edge = DeveloperStoryDependency(
            id=edge_id,
            dependent_story_id=dependent_id,
            required_story_id=required_id,
            description=description,
        )
        return self.add_edge(edge)

    # --- queries -------------------------------------------------------------

    def prerequisites_of(self, story_id: int) -> list[int]:
        return sorted(self._requires.get(story_id, ()))

    def dependents_of(self, story_id: int) -> list[int]:
        return sorted(self._required_by.get(story_id, ()))

    def downstream_of(self, story_id: int) -> list[int]:
        """All transitive dependents of a story, nearest first."""
        seen: set[int] = set()
        order: list[int] = []
        queue = deque(self.dependents_of(story_id))
        while queue:
            sid = queue.popleft()
            if sid in seen or sid == story_id:
                continue
            seen.add(sid)
            order.append(sid)
            queue.extend(self.dependents_of(sid))
        return order

    def unmet_prerequisites(self, story_id: int) -> list[int]:
        """Required stories that are not Completed. Unknown ids count as unmet."""
        return [
            rid for rid in self.prerequisites_of(story_id)
            if rid not in self.stories or self.stories[rid].status != StoryStatus.COMPLETED
        ]

    def prerequisites_met(self, story_id: int) -> bool:
        return not self.unmet_prerequisites(story_id)

    def _peel(self) -> tuple[list[int], set[int]]:
        """Reverse Kahn: repeatedly remove stories with no remaining prerequisites.

        Returns the removal order and the ids that could never be removed.
        """
        remaining = {
            sid: len([r for r in reqs if r in self.stories])
            for sid, reqs in self._requires.items()
        }
        queue = deque(sorted(sid for sid, n in remaining.items() if n == 0))
        order: list[int] = []
        while queue:
            sid = queue.popleft()
            order.append(sid)
            for dep in self.dependents_of(sid):
                remaining[dep] -= 1
                if remaining[dep] == 0:
                    queue.append(dep)
        return order, set(self.stories) - set(order)

    def cyclic_stories(self) -> set[int]:
        """Ids of stories that sit on a cycle or depend (transitively) on one."""
        return self._peel()[1]

    def topological_order(self) -> list[DeveloperStory]:
        """Stories with prerequisites first.

        Raises:
            CycleDetected: If the graph contains a cycle
        """
        order, stuck = self._peel()
        if stuck:
            cycle = self._find_cycle(stuck)
            raise CycleDetected(cycle[0], cycle[1], cycle)
        return [self.stories[sid] for sid in order]

    def _find_cycle(self, stuck: set[int]) -> list[int]:
        # Every stuck story requires at least one other stuck story, so the walk must repeat
        node = min(stuck)
        walk: list[int] = []
        index: dict[int, int] = {}
        while node not in index:
            index[node] = len(walk)
            walk.append(node)
            node = min(r for r in self._requires[node] if r in stuck)
        return walk[index[node]:] + [node]


def compute_ready_set(
    stories: list[DeveloperStory],
    edges: list[DeveloperStoryDependency],
) -> list[DeveloperStory]:
    """Pending stories whose prerequisites are all Completed, in input order.

    Stories on or behind a cycle are excluded. Pure: no status is changed.
    """
    graph = DependencyGraph(stories, edges)
    cyclic = graph.cyclic_stories()
    if cyclic:
        logger.warning(f"[GRAPH] Stories caught in a dependency cycle: {sorted(cyclic)}")
    return [
        s for s in stories
        if s.status == StoryStatus.PENDING
        and s.id not in cyclic
        and graph.prerequisites_met(s.id)
    ]
