"""Relationship wiring between migrated work items.

Runs after every item body exists on the target, so both ends of a link can
be resolved through the mapping table regardless of the order in which items
within a wave finished.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING

from .exceptions import AuthenticationError, MigrationError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from .mapping_table import MappingTable
    from .models import LinkOutcome, WorkItemRecord
    from .protocols import TargetSystem

logger: logging.Logger = logging.getLogger(__name__)


@dataclass
class LinkStats:
    """Counters for the relationship phase."""

    parent_links: int = 0
    test_case_links: int = 0
    already_linked: int = 0
    skipped_unmapped: int = 0
    conflicts: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class RelationshipLinker:
    """Sets parent and test-case links using the mapping table."""

    def __init__(
        self,
        target: TargetSystem,
        table: MappingTable,
        checkpoint: Callable[[], bool] | None = None,
    ) -> None:
        self._target: TargetSystem = target
        self._table: MappingTable = table
        self._checkpoint: Callable[[], bool] = checkpoint or (lambda: True)

    def link_all(
        self,
        records: Iterable[WorkItemRecord],
        on_item: Callable[[WorkItemRecord, LinkStats], None] | None = None,
    ) -> LinkStats:
        """Wire the links of every record. Stops early on a cancel request.

        ``on_item`` is called with the running totals after each record.
        """
        stats = LinkStats()
        for record in records:
            if not self._checkpoint():
                logger.info("Relationship phase stopped by cancel request")
                break
            self.link_record(record, stats)
            if on_item:
                on_item(record, stats)
        return stats

    def link_record(self, record: WorkItemRecord, stats: LinkStats) -> None:
        own_id = self._table.target_id(record.source_id)

        if record.parent_id:
            parent_id = self._table.target_id(record.parent_id)
            if own_id is None or parent_id is None:
                stats.skipped_unmapped += 1
                logger.debug(f"Skipping parent link {record.label} -> {record.parent_id}: endpoint not migrated")
            else:
                self._link(
                    lambda: self._target.set_parent_link(own_id, parent_id),
                    stats,
                    "parent_links",
                    f"parent link #{own_id} -> #{parent_id} ({record.label})",
                )

        for test_case in sorted(record.test_case_ids):
            test_case_target = self._table.target_id(test_case)
            if own_id is None or test_case_target is None:
                stats.skipped_unmapped += 1
                logger.debug(f"Skipping test case link {record.label} -> {test_case}: endpoint not migrated")
                continue
            self._link(
                lambda tc=test_case_target: self._target.set_test_case_link(own_id, tc),
                stats,
                "test_case_links",
                f"test case link #{own_id} tested by #{test_case_target} ({record.label})",
            )

    @staticmethod
    def _link(call: Callable[[], LinkOutcome], stats: LinkStats, counter: str, description: str) -> None:
        try:
            outcome = call()
        except AuthenticationError:
            raise
        except MigrationError as e:
            stats.failed += 1
            logger.warning(f"Failed to create {description}: {e}")
            return
        if outcome == "created":
            setattr(stats, counter, getattr(stats, counter) + 1)
            logger.debug(f"Created {description}")
        elif outcome == "existing":
            stats.already_linked += 1
        else:
            stats.conflicts += 1
            logger.warning(f"Not creating {description}: item already has a different parent")
