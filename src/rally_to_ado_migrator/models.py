"""Data models for migration between source and target systems.

These models represent the normalized data exchanged between the Rally source,
the Azure DevOps target, and the migration orchestrator. Records fetched from
the source are immutable snapshots; a retry re-fetches them.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Literal

Outcome = Literal["Created", "Updated", "Skipped", "Failed"]
LinkOutcome = Literal["created", "existing", "conflict"]


@dataclass(frozen=True)
class Comment:
    """A discussion post on a source item."""

    source_id: str
    text: str
    created_at: dt.datetime | None = None
    author: str = ""


@dataclass(frozen=True)
class Attachment:
    """An attachment reference on a source item.

    The bytes are not part of the snapshot. The source downloads them on
    demand through ``SourceSystem.download_attachment()``.
    """

    source_id: str
    name: str
    content_type: str = "application/octet-stream"
    size: int = 0
    created_at: dt.datetime | None = None
    author: str = ""


@dataclass(frozen=True)
class CaseStep:
    """One step of a Rally test case. Texts are Rally rich text."""

    index: int
    input: str = ""
    expected_result: str = ""


@dataclass(frozen=True)
class WorkItemRecord:
    """One source work item, fetched once per migration attempt.

    ``fields`` holds the raw scalar source fields by their source names
    (e.g. "Priority", "PlanEstimate") for the field mapping engine.
    """

    source_id: str
    item_type: str
    title: str
    formatted_id: str = ""
    description: str = ""
    state: str | None = None
    owner: str | None = None
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None
    parent_id: str | None = None
    test_case_ids: frozenset[str] = frozenset()
    comments: tuple[Comment, ...] = ()
    attachments: tuple[Attachment, ...] = ()
    steps: tuple[CaseStep, ...] = ()
    fields: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    # Source field names that resolve to the typed attributes above
    _ALIASES = {
        "ObjectID": "source_id",
        "FormattedID": "formatted_id",
        "Name": "title",
        "Description": "description",
        "State": "state",
        "ScheduleState": "state",
        "Owner": "owner",
        "CreationDate": "created_at",
        "LastUpdateDate": "updated_at",
    }

    def get_field(self, name: str) -> Any:  # noqa: ANN401 - source values are untyped
        """Look up a source field by its source name."""
        if name in self.fields:
            return self.fields[name]
        attr = self._ALIASES.get(name)
        return getattr(self, attr) if attr else None

    @property
    def label(self) -> str:
        """Human-readable identity for logs and status lines."""
        return self.formatted_id or self.source_id


@dataclass(frozen=True)
class TargetWorkItem:
    """A work item as read back from the target system."""

    target_id: int
    item_type: str
    fields: dict[str, Any] = field(default_factory=dict)
    relations: list[dict[str, Any]] = field(default_factory=list)

    @property
    def state(self) -> str | None:
        return self.fields.get("System.State")


@dataclass(frozen=True)
class MappingEntry:
    """One row of the persistent source → target traceability table."""

    source_id: str
    target_id: int | None
    source_type: str
    target_type: str
    outcome: Outcome
    last_synced_at: dt.datetime | None = None
    synced_comment_count: int = 0
    synced_attachment_count: int = 0
    formatted_id: str = ""
    error: str | None = None
    # Rally inline image src → URL of the uploaded copy ("" when it could not be uploaded)
    image_urls: tuple[tuple[str, str], ...] = ()

    def with_outcome(self, outcome: Outcome, *, error: str | None = None) -> MappingEntry:
        return replace(self, outcome=outcome, error=error, last_synced_at=dt.datetime.now(dt.UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "target_id": self.target_id,
            "source_type": self.source_type,
            "target_type": self.target_type,
            "outcome": self.outcome,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "synced_comment_count": self.synced_comment_count,
            "synced_attachment_count": self.synced_attachment_count,
            "formatted_id": self.formatted_id,
            "error": self.error,
            "image_urls": dict(self.image_urls),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MappingEntry:
        synced_at = data.get("last_synced_at")
        return cls(
            source_id=str(data["source_id"]),
            target_id=data.get("target_id"),
            source_type=data.get("source_type", ""),
            target_type=data.get("target_type", ""),
            outcome=data.get("outcome", "Skipped"),
            last_synced_at=dt.datetime.fromisoformat(synced_at) if synced_at else None,
            synced_comment_count=int(data.get("synced_comment_count", 0)),
            synced_attachment_count=int(data.get("synced_attachment_count", 0)),
            formatted_id=data.get("formatted_id", ""),
            error=data.get("error"),
            image_urls=tuple(sorted((str(k), str(v)) for k, v in (data.get("image_urls") or {}).items())),
        )


class ControlState(Enum):
    """Run-level state owned by the orchestrator."""

    IDLE = "Idle"
    RUNNING = "Running"
    PAUSED = "Paused"
    CANCEL_REQUESTED = "CancelRequested"
    CANCELLED = "Cancelled"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ControlState.CANCELLED, ControlState.COMPLETED, ControlState.FAILED)


@dataclass(frozen=True)
class AllInProject:
    """Scope: every work item in the configured source project."""


@dataclass(frozen=True)
class ExplicitIds:
    """Scope: an explicit set of source IDs (ObjectIDs or FormattedIDs)."""

    ids: frozenset[str]

    def __init__(self, ids: frozenset[str] | set[str] | list[str] | tuple[str, ...]) -> None:
        object.__setattr__(self, "ids", frozenset(str(i).strip() for i in ids if str(i).strip()))


Scope = AllInProject | ExplicitIds


@dataclass(frozen=True)
class MigrationOptions:
    """Per-run options for ``MigrationOrchestrator.start()``."""

    enable_difference_patch: bool = True
    include_children: bool = False
    max_workers: int = 4


@dataclass
class MigrationProgress:
    """Counters for a run. Mutated only by the orchestrator."""

    total_items: int = 0
    processed_items: int = 0
    successful_items: int = 0
    failed_items: int = 0
    skipped_items: int = 0
    created_items: int = 0
    updated_items: int = 0
    phase: str = "idle"
    state: ControlState = ControlState.IDLE
    failure_cause: str | None = None
    started_at: dt.datetime | None = None
    finished_at: dt.datetime | None = None
    link_stats: dict[str, int] = field(default_factory=dict)
    patch_stats: dict[str, int] = field(default_factory=dict)
    unmapped_fields_by_type: dict[str, list[str]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def percentage(self) -> float:
        if self.total_items <= 0:
            return 0.0
        return self.processed_items / self.total_items * 100

    def snapshot(self) -> MigrationProgress:
        """Copy safe to hand to observers while the run keeps mutating self."""
        return replace(
            self,
            link_stats=dict(self.link_stats),
            patch_stats=dict(self.patch_stats),
            unmapped_fields_by_type={k: list(v) for k, v in self.unmapped_fields_by_type.items()},
            errors=list(self.errors),
        )
