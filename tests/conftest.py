"""
Pytest fixtures.

Provides in-memory Rally and Azure DevOps stand-ins that implement the
SourceSystem and TargetSystem protocols, plus a shared mapping configuration.
Orphans, cycles and fallbacks are logged as warnings on purpose, so tests
assert on caplog where the warning matters.
"""

from __future__ import annotations

import datetime as dt
import itertools
import threading
from dataclasses import replace
from typing import TYPE_CHECKING, Any

import pytest

from rally_to_ado_migrator.exceptions import NotFoundError, WorkflowTransitionError
from rally_to_ado_migrator.field_mapping import (
    FieldMapper,
    MappingConfiguration,
    parse_mapping_configuration,
    source_marker,
    split_tags,
)
from rally_to_ado_migrator.models import Attachment, Comment, TargetWorkItem, WorkItemRecord

if TYPE_CHECKING:
    from collections.abc import Iterable

    from rally_to_ado_migrator.models import LinkOutcome


def make_record(
    source_id: str,
    item_type: str = "HierarchicalRequirement",
    *,
    parent_id: str | None = None,
    test_case_ids: Iterable[str] = (),
    comments: Iterable[str] = (),
    state: str | None = None,
    **fields: Any,  # noqa: ANN401
) -> WorkItemRecord:
    """Build a source record whose FormattedID equals its source ID."""
    base = dt.datetime(2024, 1, 1, tzinfo=dt.UTC)
    return WorkItemRecord(
        source_id=source_id,
        item_type=item_type,
        title=f"Item {source_id}",
        formatted_id=source_id,
        description=f"<p>Description of {source_id}</p>",
        state=state,
        owner="jane@example.com",
        created_at=base,
        parent_id=parent_id,
        test_case_ids=frozenset(test_case_ids),
        comments=tuple(
            Comment(source_id=f"{source_id}-c{i}", text=text, created_at=base + dt.timedelta(hours=i), author="joe")
            for i, text in enumerate(comments)
        ),
        fields=dict(fields),
    )


class FakeSource:
    """SourceSystem backed by a dict of records."""

    def __init__(self, records: Iterable[WorkItemRecord] = ()) -> None:
        self.records: dict[str, WorkItemRecord] = {r.source_id: r for r in records}
        self.children: dict[str, list[str]] = {}
        self.failures: dict[str, Exception] = {}
        self.downloads: dict[str, bytes] = {}
        self.fetches: list[str] = []

    def add(self, record: WorkItemRecord) -> None:
        self.records[record.source_id] = record

    def add_comment(self, source_id: str, text: str) -> None:
        record = self.records[source_id]
        created = dt.datetime(2025, 1, 1, tzinfo=dt.UTC) + dt.timedelta(minutes=len(record.comments))
        comment = Comment(source_id=f"{source_id}-c{len(record.comments)}", text=text, created_at=created)
        self.records[source_id] = replace(record, comments=(*record.comments, comment))

    def validate_access(self) -> None:
        pass

    def get_item(self, source_id: str) -> WorkItemRecord:
        self.fetches.append(source_id)
        if source_id in self.failures:
            raise self.failures[source_id]
        if source_id not in self.records:
            msg = f"{source_id} not found"
            raise NotFoundError(msg)
        return self.records[source_id]

    def get_parent_id(self, source_id: str) -> str | None:
        return self.get_item(source_id).parent_id

    def get_children(self, source_id: str) -> list[str]:
        return list(self.children.get(source_id, []))

    def get_test_case_ids(self, source_id: str) -> list[str]:
        return sorted(self.get_item(source_id).test_case_ids)

    def get_comments(self, source_id: str) -> list[Comment]:
        return list(self.get_item(source_id).comments)

    def get_attachments(self, source_id: str) -> list[Attachment]:
        return list(self.get_item(source_id).attachments)

    def download_attachment(self, attachment: Attachment) -> bytes:
        return self.downloads.get(attachment.source_id, b"file content")

    def list_project_item_ids(self) -> list[str]:
        return sorted(self.records)


ATTACHMENT_URL_BASE = "https://dev.azure.com/contoso/_apis/wit/attachments"

DEFAULT_STATES: list[tuple[str, str]] = [
    ("New", "Proposed"),
    ("Active", "InProgress"),
    ("Resolved", "Resolved"),
    ("Closed", "Completed"),
    ("Removed", "Removed"),
]


class FakeTarget:
    """TargetSystem keeping work items in memory and recording every write."""

    def __init__(self, *, allowed_transitions: dict[str, set[str]] | None = None) -> None:
        self.items: dict[int, dict[str, Any]] = {}
        self.types: dict[int, str] = {}
        self.parents: dict[int, int] = {}
        self.tested_by: dict[int, set[int]] = {}
        self.comments: dict[int, list[str]] = {}
        self.attachments: dict[int, list[str]] = {}
        self.calls: list[tuple[str, Any]] = []
        self.states: dict[str, list[tuple[str, str]]] = {}
        self.allowed_transitions: dict[str, set[str]] | None = allowed_transitions
        self.failures: dict[str, Exception] = {}
        self._ids = itertools.count(100)
        self._lock = threading.Lock()

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failures:
            raise self.failures[operation]

    def validate_access(self) -> None:
        self._maybe_fail("validate_access")

    def source_marker(self, source_id: str) -> str:
        return source_marker(source_id)

    def find_by_source_tag(self, source_id: str) -> int | None:
        marker = self.source_marker(source_id)
        with self._lock:
            for target_id, fields in sorted(self.items.items()):
                if marker in split_tags(fields.get("System.Tags")):
                    return target_id
        return None

    def get_item(self, target_id: int) -> TargetWorkItem:
        with self._lock:
            return TargetWorkItem(target_id, self.types[target_id], dict(self.items[target_id]))

    def create_item(self, item_type: str, fields: dict[str, Any]) -> TargetWorkItem:
        self._maybe_fail("create_item")
        with self._lock:
            target_id = next(self._ids)
            self.items[target_id] = {**fields, "System.State": "New", "System.WorkItemType": item_type}
            self.types[target_id] = item_type
            self.calls.append(("create", fields.get("System.Title")))
            return TargetWorkItem(target_id, item_type, dict(self.items[target_id]))

    def update_item(self, target_id: int, fields: dict[str, Any]) -> TargetWorkItem:
        self._maybe_fail("update_item")
        with self._lock:
            current = self.items[target_id].get("System.State")
            desired = fields.get("System.State")
            if desired and self.allowed_transitions is not None:
                if desired not in self.allowed_transitions.get(current, set()):
                    msg = f"{current} -> {desired} not allowed"
                    raise WorkflowTransitionError(msg, from_state=current, to_state=desired)
            self.items[target_id].update(fields)
            self.calls.append(("update", self.items[target_id].get("System.Title")))
            return TargetWorkItem(target_id, self.types[target_id], dict(self.items[target_id]))

    def get_workflow_states(self, item_type: str) -> list[tuple[str, str]]:
        return self.states.get(item_type, DEFAULT_STATES)

    def set_parent_link(self, child_id: int, parent_id: int) -> LinkOutcome:
        self._maybe_fail("set_parent_link")
        with self._lock:
            existing = self.parents.get(child_id)
            if existing is not None:
                return "existing" if existing == parent_id else "conflict"
            self.parents[child_id] = parent_id
            return "created"

    def set_test_case_link(self, tested_id: int, test_case_id: int) -> LinkOutcome:
        with self._lock:
            linked = self.tested_by.setdefault(tested_id, set())
            if test_case_id in linked:
                return "existing"
            linked.add(test_case_id)
            return "created"

    def add_comment(self, target_id: int, text: str) -> bool:
        self._maybe_fail("add_comment")
        with self._lock:
            existing = self.comments.setdefault(target_id, [])
            if text in existing:
                return False
            existing.append(text)
            return True

    def add_attachment(self, target_id: int, filename: str, content: bytes, comment: str = "") -> bool:
        with self._lock:
            existing = self.attachments.setdefault(target_id, [])
            if filename in existing:
                return False
            existing.append(filename)
            return True

    def attachment_url(self, target_id: int, filename: str) -> str | None:
        with self._lock:
            if filename not in self.attachments.get(target_id, []):
                return None
        return f"{ATTACHMENT_URL_BASE}/{target_id}-{filename}"

    def target_of(self, source_id: str) -> int:
        target_id = self.find_by_source_tag(source_id)
        assert target_id is not None, f"{source_id} was not migrated"
        return target_id


MAPPING_DOCUMENT: dict[str, Any] = {
    "defaultAssignee": "migration@example.com",
    "defaultAreaPath": "Contoso",
    "trustedUserDomains": ["example.com"],
    "enumMappings": {"Priority": {"Resolve Immediately": "1", "High*": "2", "Normal": "3"}},
    "workItemTypeMappings": [
        {
            "sourceType": source_type,
            "targetType": target_type,
            "fieldMappings": [
                {
                    "source": "Name",
                    "target": "System.Title",
                    "transform": "computed",
                    "derivation": "title_with_id",
                    "required": True,
                },
                {
                    "source": "Description",
                    "target": "System.Description",
                    "transform": "computed",
                    "derivation": "description_with_header",
                },
                {"source": "Owner", "target": "System.AssignedTo", "transform": "user"},
                {"source": "Priority", "target": "Microsoft.VSTS.Common.Priority", "transform": "enum"},
            ],
        }
        for source_type, target_type in [
            ("HierarchicalRequirement", "User Story"),
            ("Defect", "Bug"),
            ("Task", "Task"),
            ("TestCase", "Test Case"),
            ("PortfolioItem/Feature", "Feature"),
            ("PortfolioItem/Epic", "Epic"),
        ]
    ],
}


@pytest.fixture
def mapping_config() -> MappingConfiguration:
    return parse_mapping_configuration(MAPPING_DOCUMENT)


@pytest.fixture
def mapper(mapping_config: MappingConfiguration) -> FieldMapper:
    return FieldMapper(mapping_config)


@pytest.fixture
def fake_target() -> FakeTarget:
    return FakeTarget()


@pytest.fixture
def scenario_source() -> FakeSource:
    """Story S1 under feature F1, tested by test case T1."""
    return FakeSource(
        [
            make_record("F1", "PortfolioItem/Feature"),
            make_record("S1", parent_id="F1", test_case_ids=["T1"], comments=["first", "second"]),
            make_record("T1", "TestCase"),
        ]
    )
