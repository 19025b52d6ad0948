"""Migration orchestrator that coordinates source and target systems.

The orchestrator is the central coordinator for a migration run. It:
1. Expands the requested scope into its dependency closure
2. Creates or updates item bodies wave by wave
3. Wires relationships once every body exists
4. Synchronizes new comments and attachments
5. Honors pause/resume/cancel requests and reports progress

Migration Flow
--------------
Phase 0: Discovery
    - Validate API access to both source and target
    - Build the dependency graph (requested items, parent chains, linked
      test cases) and order it into waves
    - Items that cannot be fetched count as failed and are excluded

Phase 1: Bodies
    For each wave, in order (items of one wave run on a worker pool):
        a. Map the source record onto target fields
        b. Look the item up on the target by its source marker tag
        c. Create it (then step the workflow to the mapped state), or
           update the fields that differ, or skip it when nothing changed
        d. Record the MappingEntry
    The mapping table is saved after every wave. Wave n+1 starts only
    when every item of wave n has an outcome.

Phase 2: Relationships
    - Parent links and test-case links, resolved through the now complete
      mapping table

Phase 3: Difference patch (optional)
    - For every item created or updated in this run, append the comments
      and attachments beyond the counts already synchronized

Control
-------
``pause()``, ``resume()`` and ``cancel()`` may be called from any thread.
They take effect at the next item boundary; an in-flight write always
finishes, so the target never holds a half-written item.

Error Handling
--------------
- TransientNetworkError: retried by the connectors; once exhausted the
  item is marked Failed and the run continues
- ValidationError, WorkflowTransitionError, NotFoundError: item Failed
- AuthenticationError: the run stops and ends Failed with the cause
- Anything else: the run ends Failed and the exception propagates
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING

from .attachments import AttachmentTransfer
from .control import RunControl
from .exceptions import AuthenticationError, MigrationError
from .field_mapping import field_differences
from .graph import DependencyGraph, DependencyGraphBuilder
from .inline_images import rewrite_fields
from .mapping_table import MappingTable
from .models import ControlState, MappingEntry, MigrationOptions, MigrationProgress
from .patching import DifferencePatchEngine
from .progress import ProgressReporter
from .relationships import RelationshipLinker
from .workflow import WorkflowStepper

if TYPE_CHECKING:
    from .field_mapping import FieldMapper, MappedRecord
    from .models import Outcome, Scope, WorkItemRecord
    from .progress import ProgressCallback, StatusCallback, Subscription
    from .relationships import LinkStats
    from .protocols import SourceSystem, TargetSystem

logger: logging.Logger = logging.getLogger(__name__)


class MigrationOrchestrator:
    """Drives a migration run from a source system to a target system.

    Usage:
        source = RallySource(settings)
        target = AdoTarget(settings)
        mapper = FieldMapper(load_mapping_configuration("mapping.json"))
        orchestrator = MigrationOrchestrator(source, target, mapper, table=MappingTable("mapping-table.json"))
        orchestrator.subscribe(on_status=print)
        progress = orchestrator.start(ExplicitIds({"US123"}), MigrationOptions())
    """

    _source: SourceSystem
    _target: TargetSystem
    _mapper: FieldMapper

    def __init__(
        self,
        source: SourceSystem,
        target: TargetSystem,
        mapper: FieldMapper,
        *,
        table: MappingTable | None = None,
        reporter: ProgressReporter | None = None,
        stepper: WorkflowStepper | None = None,
    ) -> None:
        self._source = source
        self._target = target
        self._mapper = mapper
        self.table: MappingTable = table if table is not None else MappingTable()
        self._reporter: ProgressReporter = reporter or ProgressReporter()
        self._stepper: WorkflowStepper = stepper or WorkflowStepper(target, self._configured_transitions(mapper))
        self._patcher: DifferencePatchEngine = DifferencePatchEngine(target, AttachmentTransfer(source, target))
        self._control: RunControl = RunControl()
        self._lock: threading.RLock = threading.RLock()
        self._progress: MigrationProgress = MigrationProgress()
        self._fatal: AuthenticationError | None = None
        self._touched: set[str] = set()

    @staticmethod
    def _configured_transitions(mapper: FieldMapper) -> dict[str, dict[str, list[str]]]:
        config = mapper.config
        return {item_type: config.transition_paths(item_type) for item_type, _ in config.state_transitions}

    @property
    def state(self) -> ControlState:
        return self._control.state

    @property
    def progress(self) -> MigrationProgress:
        with self._lock:
            return self._snapshot()

    def subscribe(
        self,
        on_progress: ProgressCallback | None = None,
        on_status: StatusCallback | None = None,
    ) -> Subscription:
        """Observe progress snapshots and status lines, delivered in emission order."""
        return self._reporter.subscribe(on_progress, on_status)

    def pause(self) -> bool:
        """Request a pause. Workers stop at their next item boundary."""
        if self._control.pause():
            self._status("Pause requested")
            return True
        return False

    def resume(self) -> bool:
        if self._control.resume():
            self._status("Resumed")
            return True
        return False

    def cancel(self) -> bool:
        """Request cancellation. In-flight items finish; no new item starts."""
        if self._control.cancel():
            self._status("Cancel requested; finishing in-flight items")
            return True
        return False

    def start(self, scope: Scope, options: MigrationOptions | None = None) -> MigrationProgress:
        """Run a migration to completion, cancellation or failure.

        Returns:
            Final MigrationProgress. A run aborted by rejected credentials
            ends in state Failed with ``failure_cause`` set.

        Raises:
            RuntimeError: If a run is already in progress
        """
        options = options or MigrationOptions()
        self._control.start()
        with self._lock:
            self._progress = MigrationProgress(state=ControlState.RUNNING, started_at=dt.datetime.now(dt.UTC))
            self._fatal = None
            self._touched = set()

        try:
            graph = self._discover(scope, options)
            if self._run_bodies(graph, options):
                self._run_relationships(graph)
                if options.enable_difference_patch:
                    self._run_patch(graph)
            if self._fatal is not None:
                raise self._fatal
        except AuthenticationError as e:
            self._finish(ControlState.FAILED, cause=str(e))
            logger.error(f"Migration aborted: {e}")
            return self.progress
        except Exception as e:
            self._finish(ControlState.FAILED, cause=f"{type(e).__name__}: {e}")
            logger.exception("Migration failed unexpectedly")
            raise
        self._finish(ControlState.COMPLETED)
        return self.progress

    def _should_continue(self) -> bool:
        return self._fatal is None and self._control.checkpoint()

    def _discover(self, scope: Scope, options: MigrationOptions) -> DependencyGraph:
        self._set_phase("discovery")
        self._source.validate_access()
        self._target.validate_access()

        builder = DependencyGraphBuilder(
            self._source, include_children=options.include_children, checkpoint=self._should_continue
        )
        graph = builder.build(scope)
        with self._lock:
            progress = self._progress
            progress.total_items = graph.total
            for source_id, error in sorted(graph.failed.items()):
                progress.processed_items += 1
                progress.failed_items += 1
                progress.errors.append(error)
                self._record_failure(source_id, None, error)
            self._emit()
        by_type = ", ".join(f"{count} {item_type}" for item_type, count in sorted(graph.counts_by_type().items()))
        self._status(f"Discovered {graph.total} items in {len(graph.waves)} waves ({by_type or 'none'})")
        return graph

    def _run_bodies(self, graph: DependencyGraph, options: MigrationOptions) -> bool:
        """Phase 1. Returns False when the run stopped early."""
        if graph.cancelled:
            return False
        self._set_phase("bodies")
        for index, wave in enumerate(graph.waves):
            if not self._should_continue():
                return False
            self._status(f"Wave {index + 1}/{len(graph.waves)}: {len(wave)} items")
            try:
                with ThreadPoolExecutor(
                    max_workers=max(1, options.max_workers), thread_name_prefix="migrate"
                ) as pool:
                    futures = [pool.submit(self._process_item, graph.records[sid], options) for sid in wave]
                    for future in as_completed(futures):
                        future.result()
            finally:
                self.table.save()
        return self._should_continue()

    def _process_item(self, record: WorkItemRecord, options: MigrationOptions) -> None:
        if not self._should_continue():
            return
        try:
            entry = self._migrate_item(record, options)
        except AuthenticationError as e:
            with self._lock:
                if self._fatal is None:
                    self._fatal = e
            return
        except MigrationError as e:
            message = f"{record.label}: {e}"
            logger.warning(f"Failed to migrate {message}")
            with self._lock:
                self._progress.processed_items += 1
                self._progress.failed_items += 1
                self._progress.errors.append(message)
                self._record_failure(record.source_id, record, str(e))
                self._emit()
            return

        with self._lock:
            progress = self._progress
            progress.processed_items += 1
            if entry.outcome == "Created":
                progress.created_items += 1
                progress.successful_items += 1
            elif entry.outcome == "Updated":
                progress.updated_items += 1
                progress.successful_items += 1
            else:
                progress.skipped_items += 1
            if entry.outcome in ("Created", "Updated"):
                self._touched.add(record.source_id)
            self._emit()
        self._status(f"{entry.outcome} {record.label} -> #{entry.target_id}")

    def _migrate_item(self, record: WorkItemRecord, options: MigrationOptions) -> MappingEntry:
        """Create or update one item body and record its mapping entry."""
        mapped = self._mapper.transform(record)
        self._note_unmapped(record.item_type, mapped)
        previous = self.table.get(record.source_id)

        target_id = self._target.find_by_source_tag(record.source_id)
        fields = mapped.fields
        if previous is not None and previous.target_id == target_id:
            # Inline images already rewritten on this target item stay rewritten
            fields = rewrite_fields(fields, dict(previous.image_urls))
        if target_id is None:
            created = self._target.create_item(mapped.target_type, fields)
            entry = MappingEntry(
                source_id=record.source_id,
                target_id=created.target_id,
                source_type=record.item_type,
                target_type=mapped.target_type,
                outcome="Created",
                last_synced_at=dt.datetime.now(dt.UTC),
                formatted_id=record.formatted_id,
            )
            # Recorded before the state change so a rejected transition keeps the mapping
            self.table.upsert(entry)
            if mapped.state:
                self._stepper.apply_state(created.target_id, mapped.target_type, created.state, mapped.state)
            return entry

        current = self._target.get_item(target_id)
        if previous is not None and previous.target_id == target_id:
            entry = previous
        else:
            entry = MappingEntry(
                source_id=record.source_id,
                target_id=target_id,
                source_type=record.item_type,
                target_type=mapped.target_type,
                outcome="Skipped",
                formatted_id=record.formatted_id,
            )

        changes = field_differences(fields, current.fields)
        state_change = bool(mapped.state) and (current.state or "").lower() != (mapped.state or "").lower()
        pending = options.enable_difference_patch and self._patcher.has_pending(record, entry)

        if changes:
            logger.debug(f"{record.label}: updating fields {', '.join(sorted(changes))}")
            self._target.update_item(target_id, changes)
        if state_change and mapped.state:
            self._stepper.apply_state(target_id, mapped.target_type, current.state, mapped.state)

        outcome: Outcome = "Updated" if changes or state_change or pending else "Skipped"
        entry = entry.with_outcome(outcome)
        self.table.upsert(entry)
        return entry

    def _note_unmapped(self, item_type: str, mapped: MappedRecord) -> None:
        if not mapped.unmapped:
            return
        with self._lock:
            known = self._progress.unmapped_fields_by_type.setdefault(item_type, [])
            known.extend(name for name in mapped.unmapped if name not in known)

    def _record_failure(self, source_id: str, record: WorkItemRecord | None, error: str) -> None:
        previous = self.table.get(source_id)
        if previous is not None:
            self.table.upsert(previous.with_outcome("Failed", error=error))
            return
        self.table.upsert(
            MappingEntry(
                source_id=source_id,
                target_id=None,
                source_type=record.item_type if record else "",
                target_type="",
                outcome="Failed",
                last_synced_at=dt.datetime.now(dt.UTC),
                formatted_id=record.formatted_id if record else "",
                error=error,
            )
        )

    def _run_relationships(self, graph: DependencyGraph) -> None:
        """Phase 2."""
        self._set_phase("relationships")
        linker = RelationshipLinker(self._target, self.table, checkpoint=self._should_continue)
        ordered = [graph.records[sid] for wave in graph.waves for sid in wave]
        stats = linker.link_all(ordered, on_item=self._on_linked)
        with self._lock:
            self._progress.link_stats = stats.as_dict()
            self._emit()
        self._status(
            f"Relationships: {stats.parent_links} parent links, {stats.test_case_links} test case links, "
            f"{stats.already_linked} already linked, {stats.failed} failed"
        )

    def _on_linked(self, record: WorkItemRecord, stats: LinkStats) -> None:
        with self._lock:
            self._progress.link_stats = stats.as_dict()
            self._emit()

    def _run_patch(self, graph: DependencyGraph) -> None:
        """Phase 3."""
        if not self._should_continue():
            return
        self._set_phase("patch")
        stats = {"items_patched": 0, "comments_added": 0, "attachments_added": 0, "images_linked": 0, "failed": 0}
        for source_id in sorted(self._touched):
            if not self._should_continue():
                break
            entry = self.table.get(source_id)
            if entry is None or entry.target_id is None:
                continue
            record = graph.records[source_id]
            try:
                result = self._patcher.apply(record, entry, on_entry=self.table.upsert)
            except AuthenticationError as e:
                with self._lock:
                    if self._fatal is None:
                        self._fatal = e
                break
            except MigrationError as e:
                stats["failed"] += 1
                logger.warning(f"Failed to patch comments/attachments of {record.label}: {e}")
                self._patched(stats)
                continue
            if result.changed:
                stats["items_patched"] += 1
                stats["comments_added"] += result.comments_added
                stats["attachments_added"] += result.attachments_added
                stats["images_linked"] += result.images_linked
            self._patched(stats)
            if result.changed:
                self._status(
                    f"Patched {record.label} -> #{entry.target_id}: {result.comments_added} comments, "
                    f"{result.attachments_added} attachments, {result.images_linked} inline images"
                )
        self.table.save()
        self._patched(stats)
        self._status(
            f"Difference patch: {stats['comments_added']} comments and {stats['attachments_added']} attachments "
            f"added to {stats['items_patched']} items"
        )

    def _patched(self, stats: dict[str, int]) -> None:
        with self._lock:
            self._progress.patch_stats = dict(stats)
            self._emit()

    def _finish(self, state: ControlState, cause: str | None = None) -> None:
        self.table.save()
        final = self._control.finish(state)
        with self._lock:
            self._progress.state = final
            self._progress.failure_cause = cause
            self._progress.finished_at = dt.datetime.now(dt.UTC)
            self._progress.phase = "done"
            self._emit()
        p = self._progress
        self._status(
            f"Migration {final.value}: {p.processed_items}/{p.total_items} processed, {p.created_items} created, "
            f"{p.updated_items} updated, {p.skipped_items} skipped, {p.failed_items} failed"
        )

    def _set_phase(self, phase: str) -> None:
        with self._lock:
            self._progress.phase = phase
            self._emit()

    def _snapshot(self) -> MigrationProgress:
        snapshot = self._progress.snapshot()
        if not snapshot.state.is_terminal:
            snapshot.state = self._control.state
        return snapshot

    def _emit(self) -> None:
        # Called with self._lock held so snapshots are delivered in order
        self._reporter.progress(self._snapshot())

    def _status(self, message: str) -> None:
        with self._lock:
            self._reporter.status(message)
