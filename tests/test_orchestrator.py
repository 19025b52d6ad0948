"""Tests for the migration orchestrator against in-memory systems."""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import TYPE_CHECKING

import pytest
from conftest import ATTACHMENT_URL_BASE, FakeSource, FakeTarget, make_record

from rally_to_ado_migrator.exceptions import AuthenticationError, TransientNetworkError
from rally_to_ado_migrator.field_mapping import FieldMapper, parse_mapping_configuration
from rally_to_ado_migrator.mapping_table import MappingTable
from rally_to_ado_migrator.models import Attachment, ControlState, ExplicitIds, MigrationOptions, MigrationProgress
from rally_to_ado_migrator.orchestrator import MigrationOrchestrator

if TYPE_CHECKING:
    from pathlib import Path


def _hierarchy_source() -> FakeSource:
    """Two features with three stories each, every story with one task."""
    records = []
    for f in range(2):
        records.append(make_record(f"F{f}", "PortfolioItem/Feature"))
        for s in range(3):
            records.append(make_record(f"S{f}{s}", parent_id=f"F{f}", state="In-Progress"))
            records.append(make_record(f"TA{f}{s}", "Task", parent_id=f"S{f}{s}", state="Completed"))
    return FakeSource(records)


def _all_ids(source: FakeSource) -> ExplicitIds:
    return ExplicitIds(list(source.records))


@pytest.mark.unit
class TestScenario:
    def test_story_with_feature_and_test_case(
        self, scenario_source: FakeSource, fake_target: FakeTarget, mapper: FieldMapper
    ) -> None:
        orchestrator = MigrationOrchestrator(scenario_source, fake_target, mapper)

        progress = orchestrator.start(ExplicitIds({"S1"}))

        assert progress.state is ControlState.COMPLETED
        assert progress.total_items == 3
        assert progress.created_items == 3
        assert progress.processed_items == 3
        assert progress.failed_items == 0
        assert len(orchestrator.table) == 3

        s1, f1, t1 = (fake_target.target_of(sid) for sid in ("S1", "F1", "T1"))
        assert fake_target.parents == {s1: f1}
        assert fake_target.tested_by == {s1: {t1}}
        assert progress.link_stats["parent_links"] == 1
        assert progress.link_stats["test_case_links"] == 1

        # Comments of S1 were synchronized in source order
        assert [c.split("</i></p>")[1] for c in fake_target.comments[s1]] == ["first", "second"]
        assert orchestrator.table.get("S1").synced_comment_count == 2

    def test_test_case_gets_ready_state(
        self, scenario_source: FakeSource, fake_target: FakeTarget, mapper: FieldMapper
    ) -> None:
        MigrationOrchestrator(scenario_source, fake_target, mapper).start(ExplicitIds({"S1"}))
        assert fake_target.items[fake_target.target_of("T1")]["System.State"] == "Ready"


@pytest.mark.unit
class TestIdempotency:
    def test_second_run_creates_nothing(self, fake_target: FakeTarget, mapper: FieldMapper) -> None:
        source = _hierarchy_source()
        table = MappingTable()

        first = MigrationOrchestrator(source, fake_target, mapper, table=table).start(_all_ids(source))
        items_after_first = dict(fake_target.items)
        second = MigrationOrchestrator(source, fake_target, mapper, table=table).start(_all_ids(source))

        assert first.created_items == 14
        assert second.created_items == 0
        assert second.updated_items + second.skipped_items == 14
        assert second.skipped_items == 14
        assert fake_target.items.keys() == items_after_first.keys()

    def test_rerun_without_table_finds_items_by_tag(self, fake_target: FakeTarget, mapper: FieldMapper) -> None:
        source = _hierarchy_source()
        MigrationOrchestrator(source, fake_target, mapper).start(_all_ids(source))

        second = MigrationOrchestrator(source, fake_target, mapper).start(_all_ids(source))

        assert second.created_items == 0
        assert len(fake_target.items) == 14

    def test_changed_source_field_updates(self, fake_target: FakeTarget, mapper: FieldMapper) -> None:
        source = FakeSource([make_record("S1")])
        table = MappingTable()
        MigrationOrchestrator(source, fake_target, mapper, table=table).start(ExplicitIds(["S1"]))

        source.add(make_record("S1", Priority="Resolve Immediately"))
        progress = MigrationOrchestrator(source, fake_target, mapper, table=table).start(ExplicitIds(["S1"]))

        assert progress.updated_items == 1
        assert fake_target.items[fake_target.target_of("S1")]["Microsoft.VSTS.Common.Priority"] == "1"
        assert table.get("S1").outcome == "Updated"

    def test_new_comment_marks_item_updated(self, fake_target: FakeTarget, mapper: FieldMapper) -> None:
        source = FakeSource([make_record("S1", comments=["one"])])
        table = MappingTable()
        MigrationOrchestrator(source, fake_target, mapper, table=table).start(ExplicitIds(["S1"]))

        source.add_comment("S1", "two")
        progress = MigrationOrchestrator(source, fake_target, mapper, table=table).start(ExplicitIds(["S1"]))

        assert progress.updated_items == 1
        assert progress.patch_stats["comments_added"] == 1
        assert len(fake_target.comments[fake_target.target_of("S1")]) == 2

    def test_new_comment_skipped_when_patch_disabled(self, fake_target: FakeTarget, mapper: FieldMapper) -> None:
        source = FakeSource([make_record("S1", comments=["one"])])
        table = MappingTable()
        options = MigrationOptions(enable_difference_patch=False)
        MigrationOrchestrator(source, fake_target, mapper, table=table).start(ExplicitIds(["S1"]), options)

        source.add_comment("S1", "two")
        progress = MigrationOrchestrator(source, fake_target, mapper, table=table).start(ExplicitIds(["S1"]), options)

        assert progress.skipped_items == 1
        assert progress.patch_stats == {}
        assert fake_target.comments == {}


@pytest.mark.unit
class TestWaveOrdering:
    def test_parent_created_before_child(self, fake_target: FakeTarget, mapper: FieldMapper) -> None:
        source = _hierarchy_source()

        MigrationOrchestrator(source, fake_target, mapper).start(_all_ids(source), MigrationOptions(max_workers=4))

        created = [title for kind, title in fake_target.calls if kind == "create"]
        position = {title.split("]")[0].lstrip("["): index for index, title in enumerate(created)}
        for record in source.records.values():
            if record.parent_id:
                assert position[record.parent_id] < position[record.source_id]

    def test_mapping_table_saved_per_wave(self, tmp_path: Path, fake_target: FakeTarget, mapper: FieldMapper) -> None:
        source = _hierarchy_source()
        table = MappingTable(tmp_path / "table.json")

        MigrationOrchestrator(source, fake_target, mapper, table=table).start(_all_ids(source))

        assert len(MappingTable(tmp_path / "table.json")) == 14

    def test_cycle_links_only_one_direction(self, fake_target: FakeTarget, mapper: FieldMapper) -> None:
        source = FakeSource([make_record("A", parent_id="B"), make_record("B", parent_id="A")])

        progress = MigrationOrchestrator(source, fake_target, mapper).start(ExplicitIds({"A"}))

        a, b = fake_target.target_of("A"), fake_target.target_of("B")
        assert fake_target.parents == {b: a}
        assert progress.link_stats["parent_links"] == 1
        assert progress.created_items == 2


@pytest.mark.unit
class TestControl:
    def test_pause_and_resume_yield_same_counts(self, mapper: FieldMapper) -> None:
        reference = MigrationOrchestrator(_hierarchy_source(), FakeTarget(), mapper).start(
            _all_ids(_hierarchy_source()), MigrationOptions(max_workers=2)
        )

        source = _hierarchy_source()
        orchestrator = MigrationOrchestrator(source, FakeTarget(), mapper)
        lines: list[str] = []

        def on_progress(progress: MigrationProgress) -> None:
            if progress.processed_items == 3 and orchestrator.pause():
                threading.Timer(0.05, orchestrator.resume).start()

        orchestrator.subscribe(on_progress=on_progress, on_status=lines.append)
        paused = orchestrator.start(_all_ids(source), MigrationOptions(max_workers=2))

        assert "Pause requested" in lines
        assert lines.index("Resumed") > lines.index("Pause requested")
        assert paused.state is ControlState.COMPLETED
        for counter in ("total_items", "processed_items", "created_items", "failed_items", "skipped_items"):
            assert getattr(paused, counter) == getattr(reference, counter)

    def test_cancel_leaves_only_complete_items(self, fake_target: FakeTarget, mapper: FieldMapper) -> None:
        source = _hierarchy_source()
        orchestrator = MigrationOrchestrator(source, fake_target, mapper)

        def on_status(message: str) -> None:
            if message.startswith("Created"):
                orchestrator.cancel()

        orchestrator.subscribe(on_status=on_status)
        progress = orchestrator.start(_all_ids(source), MigrationOptions(max_workers=1))

        assert progress.state is ControlState.CANCELLED
        assert progress.processed_items <= progress.total_items
        assert 0 < progress.created_items < 14
        for fields in fake_target.items.values():
            assert fields["System.Title"]
            assert "RallyObjectID-" in fields["System.Tags"]
        # Relationships are not wired after a cancel
        assert fake_target.parents == {}

    def test_pause_and_cancel_rejected_when_idle(self, scenario_source: FakeSource, mapper: FieldMapper) -> None:
        orchestrator = MigrationOrchestrator(scenario_source, FakeTarget(), mapper)

        assert orchestrator.state is ControlState.IDLE
        assert orchestrator.pause() is False
        assert orchestrator.cancel() is False

    def test_cancel_while_paused(self, mapper: FieldMapper) -> None:
        source = _hierarchy_source()
        orchestrator = MigrationOrchestrator(source, FakeTarget(), mapper)

        def on_progress(progress: MigrationProgress) -> None:
            if progress.processed_items == 1 and orchestrator.pause():
                threading.Timer(0.05, orchestrator.cancel).start()

        orchestrator.subscribe(on_progress=on_progress)
        progress = orchestrator.start(_all_ids(source), MigrationOptions(max_workers=1))

        assert progress.state is ControlState.CANCELLED
        assert progress.processed_items < progress.total_items

    def test_can_start_again_after_completion(self, scenario_source: FakeSource, mapper: FieldMapper) -> None:
        orchestrator = MigrationOrchestrator(scenario_source, FakeTarget(), mapper)
        orchestrator.start(ExplicitIds(["S1"]))

        second = orchestrator.start(ExplicitIds(["S1"]))

        assert second.state is ControlState.COMPLETED
        assert second.created_items == 0


@pytest.mark.unit
class TestFailures:
    def test_authentication_error_fails_run(self, scenario_source: FakeSource, mapper: FieldMapper) -> None:
        target = FakeTarget()
        target.failures["create_item"] = AuthenticationError("401 Unauthorized")

        progress = MigrationOrchestrator(scenario_source, target, mapper).start(ExplicitIds(["S1"]))

        assert progress.state is ControlState.FAILED
        assert "401 Unauthorized" in (progress.failure_cause or "")
        assert target.items == {}

    def test_authentication_error_during_patch_fails_run(
        self, scenario_source: FakeSource, mapper: FieldMapper
    ) -> None:
        target = FakeTarget()
        target.failures["add_comment"] = AuthenticationError("token revoked")

        progress = MigrationOrchestrator(scenario_source, target, mapper).start(ExplicitIds(["S1"]))

        assert progress.state is ControlState.FAILED
        assert progress.failure_cause == "token revoked"
        assert progress.created_items == 3
        assert target.comments == {}

    def test_authentication_error_during_validation(self, scenario_source: FakeSource, mapper: FieldMapper) -> None:
        target = FakeTarget()
        target.failures["validate_access"] = AuthenticationError("bad PAT")

        progress = MigrationOrchestrator(scenario_source, target, mapper).start(ExplicitIds(["S1"]))

        assert progress.state is ControlState.FAILED
        assert progress.failure_cause == "bad PAT"

    def test_validation_error_counts_item_and_continues(self, fake_target: FakeTarget) -> None:
        document = {
            "workItemTypeMappings": [
                {
                    "sourceType": "HierarchicalRequirement",
                    "targetType": "User Story",
                    "fieldMappings": [{"source": "Release", "target": "Custom.Release", "required": True}],
                }
            ]
        }
        mapper = FieldMapper(parse_mapping_configuration(document))
        source = FakeSource([make_record("S1", Release="R1"), make_record("S2")])

        progress = MigrationOrchestrator(source, fake_target, mapper).start(ExplicitIds(["S1", "S2"]))

        assert progress.state is ControlState.COMPLETED
        assert progress.created_items == 1
        assert progress.failed_items == 1
        assert progress.processed_items == 2
        assert any("Custom.Release" in e for e in progress.errors)

    def test_transient_error_marks_item_failed(
        self, scenario_source: FakeSource, fake_target: FakeTarget, mapper: FieldMapper
    ) -> None:
        scenario_source.failures["T1"] = TransientNetworkError("503")
        orchestrator = MigrationOrchestrator(scenario_source, fake_target, mapper)

        progress = orchestrator.start(ExplicitIds(["S1"]))

        assert progress.state is ControlState.COMPLETED
        assert progress.total_items == 3
        assert progress.failed_items == 1
        assert progress.created_items == 2
        assert orchestrator.table.get("T1").outcome == "Failed"
        assert progress.link_stats["skipped_unmapped"] == 1

    def test_unmapped_source_type_fails_item(self, fake_target: FakeTarget, mapper: FieldMapper) -> None:
        source = FakeSource([make_record("R1", "Risk")])

        progress = MigrationOrchestrator(source, fake_target, mapper).start(ExplicitIds(["R1"]))

        assert progress.failed_items == 1
        assert progress.state is ControlState.COMPLETED

    def test_unexpected_error_propagates(self, scenario_source: FakeSource, mapper: FieldMapper) -> None:
        target = FakeTarget()
        target.failures["create_item"] = RuntimeError("boom")
        orchestrator = MigrationOrchestrator(scenario_source, target, mapper)

        with pytest.raises(RuntimeError, match="boom"):
            orchestrator.start(ExplicitIds(["S1"]))
        assert orchestrator.state is ControlState.FAILED


@pytest.mark.unit
class TestWorkflowStepping:
    def test_terminal_state_reached_through_intermediate_states(self, mapper: FieldMapper) -> None:
        target = FakeTarget(allowed_transitions={"New": {"Active"}, "Active": {"Resolved"}, "Resolved": {"Closed"}})
        source = FakeSource([make_record("S1", state="Accepted")])

        progress = MigrationOrchestrator(source, target, mapper).start(ExplicitIds(["S1"]))

        assert progress.created_items == 1
        assert target.items[target.target_of("S1")]["System.State"] == "Closed"

    def test_configured_transition_path(self) -> None:
        document_config = parse_mapping_configuration(
            {
                "workItemTypeMappings": [
                    {"sourceType": "HierarchicalRequirement", "targetType": "User Story", "fieldMappings": []}
                ],
                "stateTransitions": {"User Story": {"Closed": ["Active"]}},
            }
        )
        target = FakeTarget(allowed_transitions={"New": {"Active"}, "Active": {"Closed"}})
        source = FakeSource([make_record("S1", state="Accepted")])

        MigrationOrchestrator(source, target, FieldMapper(document_config)).start(ExplicitIds(["S1"]))

        assert target.items[target.target_of("S1")]["System.State"] == "Closed"

    def test_unreachable_state_fails_item_but_keeps_mapping(self, mapper: FieldMapper) -> None:
        target = FakeTarget(allowed_transitions={"New": set()})
        source = FakeSource([make_record("S1", state="Accepted")])
        orchestrator = MigrationOrchestrator(source, target, mapper)

        progress = orchestrator.start(ExplicitIds(["S1"]))

        assert progress.failed_items == 1
        entry = orchestrator.table.get("S1")
        assert entry.outcome == "Failed"
        assert entry.target_id == target.target_of("S1")


@pytest.mark.unit
class TestReporting:
    def test_unmapped_fields_reported_by_type(self, fake_target: FakeTarget, mapper: FieldMapper) -> None:
        source = FakeSource([make_record("S1", PlanEstimate=3), make_record("S2", PlanEstimate=5, Blocked=False)])

        progress = MigrationOrchestrator(source, fake_target, mapper).start(ExplicitIds(["S1", "S2"]))

        assert sorted(progress.unmapped_fields_by_type["HierarchicalRequirement"]) == ["Blocked", "PlanEstimate"]

    def test_status_lines_in_order(
        self, scenario_source: FakeSource, fake_target: FakeTarget, mapper: FieldMapper
    ) -> None:
        orchestrator = MigrationOrchestrator(scenario_source, fake_target, mapper)
        lines: list[str] = []
        snapshots: list[MigrationProgress] = []
        orchestrator.subscribe(on_progress=snapshots.append, on_status=lines.append)

        orchestrator.start(ExplicitIds(["S1"]))

        assert lines[0].startswith("Discovered 3 items in 2 waves")
        assert lines[-1].startswith("Migration Completed")
        processed = [s.processed_items for s in snapshots]
        assert processed == sorted(processed)
        assert snapshots[-1].phase == "done"

    def test_relationship_progress_per_item(
        self, scenario_source: FakeSource, fake_target: FakeTarget, mapper: FieldMapper
    ) -> None:
        orchestrator = MigrationOrchestrator(scenario_source, fake_target, mapper)
        snapshots: list[MigrationProgress] = []
        orchestrator.subscribe(on_progress=snapshots.append)

        orchestrator.start(ExplicitIds(["S1"]))

        linking = [s for s in snapshots if s.phase == "relationships"]
        # Phase start, one per record, phase end
        assert len(linking) == 1 + 3 + 1
        links = [s.link_stats.get("parent_links", 0) + s.link_stats.get("test_case_links", 0) for s in linking]
        assert links == sorted(links)
        assert links[-1] == 2

    def test_patch_progress_per_item(
        self, scenario_source: FakeSource, fake_target: FakeTarget, mapper: FieldMapper
    ) -> None:
        orchestrator = MigrationOrchestrator(scenario_source, fake_target, mapper)
        lines: list[str] = []
        snapshots: list[MigrationProgress] = []
        orchestrator.subscribe(on_progress=snapshots.append, on_status=lines.append)

        orchestrator.start(ExplicitIds(["S1"]))

        patching = [s for s in snapshots if s.phase == "patch"]
        assert len(patching) == 1 + 3 + 1
        assert [s.patch_stats.get("comments_added", 0) for s in patching][-1] == 2
        assert any(line.startswith("Patched S1 -> #") for line in lines)
        assert patching[-1].patch_stats["images_linked"] == 0


@pytest.mark.unit
class TestInlineImages:
    def test_image_rewritten_once_and_kept(self, fake_target: FakeTarget, mapper: FieldMapper) -> None:
        html = '<p><img src="/slm/attachment/77/shot.png"></p>'
        image = Attachment(source_id="77", name="shot.png", content_type="image/png", size=3)
        source = FakeSource([replace(make_record("S1"), description=html, attachments=(image,))])
        table = MappingTable()

        first = MigrationOrchestrator(source, fake_target, mapper, table=table).start(ExplicitIds(["S1"]))
        s1 = fake_target.target_of("S1")
        description = fake_target.items[s1]["System.Description"]
        second = MigrationOrchestrator(source, fake_target, mapper, table=table).start(ExplicitIds(["S1"]))

        url = f"{ATTACHMENT_URL_BASE}/{s1}-shot.png"
        assert f'<img src="{url}">' in description
        assert "/slm/attachment/" not in description
        assert first.patch_stats["images_linked"] == 1
        assert table.get("S1").image_urls == (("/slm/attachment/77/shot.png", url),)
        assert second.skipped_items == 1
        assert fake_target.items[s1]["System.Description"] == description
