"""Dependency closure and wave ordering.

Starting from the requested scope, the builder fetches every item, then its
parent chain and (for stories and defects) its linked test cases, until the
frontier is empty. The resulting graph is ordered into *waves*: wave 0 holds
items with no migrated parent, wave n holds items whose parent is in a wave
before n. Items in one wave do not depend on each other.

Example: a story S1 under feature F1 with test case T1 yields
``[["F1", "T1"], ["S1"]]``. The test case has no hierarchy parent, its link
to S1 is wired after all bodies exist.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Final

from .exceptions import AuthenticationError, GraphExpansionError, MigrationError
from .models import AllInProject, ExplicitIds

if TYPE_CHECKING:
    from .models import Scope, WorkItemRecord
    from .protocols import SourceSystem

logger: logging.Logger = logging.getLogger(__name__)

# Source types whose linked test cases are pulled into the closure
TESTED_TYPES: Final[frozenset[str]] = frozenset({"HierarchicalRequirement", "Defect"})


@dataclass
class DependencyGraph:
    """Records of the closure plus their creation order."""

    records: dict[str, WorkItemRecord] = field(default_factory=dict)
    waves: list[list[str]] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    # child → parent links dropped to break hierarchy cycles
    ignored_parent_links: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def total(self) -> int:
        """Items in scope, including those that could not be fetched."""
        return len(self.records) + len(self.failed)

    def wave_of(self, source_id: str) -> int | None:
        for index, wave in enumerate(self.waves):
            if source_id in wave:
                return index
        return None

    def parent_edges(self) -> list[tuple[str, str]]:
        """(child, parent) pairs where both ends are in the graph."""
        return [
            (source_id, record.parent_id)
            for source_id, record in sorted(self.records.items())
            if record.parent_id and record.parent_id in self.records
        ]

    def test_edges(self) -> list[tuple[str, str]]:
        """(tested item, test case) pairs where both ends are in the graph."""
        return [
            (source_id, test_case_id)
            for source_id, record in sorted(self.records.items())
            for test_case_id in sorted(record.test_case_ids)
            if test_case_id in self.records
        ]

    def counts_by_type(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in self.records.values():
            counts[record.item_type] = counts.get(record.item_type, 0) + 1
        return counts


class DependencyGraphBuilder:
    """Expands a scope into its dependency closure."""

    def __init__(
        self,
        source: SourceSystem,
        *,
        include_children: bool = False,
        checkpoint: Callable[[], bool] | None = None,
    ) -> None:
        self._source: SourceSystem = source
        self._include_children: bool = include_children
        self._checkpoint: Callable[[], bool] = checkpoint or (lambda: True)

    def build(self, scope: Scope) -> DependencyGraph:
        """Fetch the closure of ``scope`` and compute its waves.

        Raises:
            AuthenticationError: If the source rejects the credentials
        """
        graph = DependencyGraph()
        self._expand(self._seeds(scope), graph)
        graph.waves = self._assign_waves(graph)
        logger.info(
            f"Dependency graph: {len(graph.records)} items in {len(graph.waves)} waves, {len(graph.failed)} unreachable"
        )
        return graph

    def _seeds(self, scope: Scope) -> list[str]:
        if isinstance(scope, AllInProject):
            return self._source.list_project_item_ids()
        if isinstance(scope, ExplicitIds):
            return sorted(scope.ids)
        msg = f"Unsupported scope: {scope!r}"
        raise TypeError(msg)

    def _expand(self, seeds: list[str], graph: DependencyGraph) -> None:
        frontier: deque[str] = deque(seeds)
        seen: set[str] = set()

        while frontier:
            if not self._checkpoint():
                graph.cancelled = True
                logger.info("Graph expansion stopped by cancel request")
                return
            requested = frontier.popleft()
            if requested in seen:
                continue
            seen.add(requested)

            try:
                record = self._fetch(requested)
            except GraphExpansionError as e:
                graph.failed[e.source_id] = str(e)
                graph.warnings.append(str(e))
                logger.warning(str(e))
                continue

            # FormattedID seeds resolve to ObjectIDs
            seen.add(record.source_id)
            if record.source_id in graph.records:
                continue
            graph.records[record.source_id] = record

            if record.parent_id and record.parent_id not in seen:
                frontier.append(record.parent_id)
            if record.item_type in TESTED_TYPES:
                frontier.extend(sorted(record.test_case_ids - seen))
            if self._include_children:
                frontier.extend(child for child in self._children(record, graph) if child not in seen)

    def _fetch(self, source_id: str) -> WorkItemRecord:
        try:
            return self._source.get_item(source_id)
        except AuthenticationError:
            raise
        except MigrationError as e:
            msg = f"Could not fetch {source_id}: {e}"
            raise GraphExpansionError(msg, source_id=source_id) from e

    def _children(self, record: WorkItemRecord, graph: DependencyGraph) -> list[str]:
        try:
            return self._source.get_children(record.source_id)
        except AuthenticationError:
            raise
        except MigrationError as e:
            message = f"Could not list children of {record.label}: {e}"
            graph.warnings.append(message)
            logger.warning(message)
            return []

    @staticmethod
    def _assign_waves(graph: DependencyGraph) -> list[list[str]]:
        parents: dict[str, str | None] = {}
        for source_id, record in graph.records.items():
            parent_id = record.parent_id
            if parent_id and parent_id not in graph.records:
                message = f"Parent {parent_id} of {record.label} is not migrated; treating it as a root"
                graph.warnings.append(message)
                logger.warning(message)
                parent_id = None
            parents[source_id] = parent_id

        waves: list[list[str]] = []
        assigned: set[str] = set()
        remaining = set(parents)
        while remaining:
            wave = sorted(n for n in remaining if parents[n] is None or parents[n] in assigned)
            if not wave:
                # Every remaining node waits on another remaining node: a cycle
                root = min(remaining)
                ignored = parents[root] or ""
                message = f"Cycle in source hierarchy at {root}; ignoring its parent link {ignored}"
                graph.warnings.append(message)
                logger.warning(message)
                graph.ignored_parent_links[root] = ignored
                # The dropped link must not be wired in the relationship phase either
                graph.records[root] = replace(graph.records[root], parent_id=None)
                parents[root] = None
                wave = [root]
            waves.append(wave)
            assigned.update(wave)
            remaining.difference_update(wave)
        return waves
