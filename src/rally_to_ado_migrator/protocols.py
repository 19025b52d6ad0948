"""Protocols defining the contracts for source and target systems.

The migration architecture separates concerns into three components:

1. SourceSystem: Read-only access to the source tracker (Rally)
2. TargetSystem: Idempotent writes to the target tracker (Azure DevOps)
3. MigrationOrchestrator: Expands scope, orders work, maps IDs and drives phases

This separation allows:
- Testing the orchestrator against in-memory fakes
- Keeping source-specific quirks (reference URLs, pagination) out of the engine
- Keeping target-specific quirks (JSON-Patch, WIQL, link types) out of the engine

Every method may raise ``NotFoundError``, ``TransientNetworkError`` or
``AuthenticationError``. Target writes may additionally raise
``ValidationError`` and ``WorkflowTransitionError``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .models import Attachment, Comment, LinkOutcome, TargetWorkItem, WorkItemRecord


class SourceSystem(Protocol):
    """Protocol for reading work items from a source system."""

    def validate_access(self) -> None:
        """Check that the credentials work.

        Raises:
            AuthenticationError: If the source rejects the credentials
        """
        ...

    def get_item(self, source_id: str) -> WorkItemRecord:
        """Fetch one item, including its comments and attachment references.

        Args:
            source_id: ObjectID or FormattedID of the item
        """
        ...

    def get_parent_id(self, source_id: str) -> str | None:
        """Return the parent's source ID, or None for a root item."""
        ...

    def get_children(self, source_id: str) -> list[str]:
        """Return the source IDs of the item's direct children."""
        ...

    def get_test_case_ids(self, source_id: str) -> list[str]:
        """Return the source IDs of test cases linked to the item."""
        ...

    def get_comments(self, source_id: str) -> list[Comment]:
        """Return the item's comments in chronological order."""
        ...

    def get_attachments(self, source_id: str) -> list[Attachment]:
        """Return the item's attachment references in creation order."""
        ...

    def download_attachment(self, attachment: Attachment) -> bytes:
        """Download the bytes of an attachment."""
        ...

    def list_project_item_ids(self) -> list[str]:
        """Return the source IDs of every item in the configured project."""
        ...


class TargetSystem(Protocol):
    """Protocol for writing work items to a target system.

    All writes are idempotent when repeated with the same source marker or
    the same content: a repeated link, comment or attachment is not duplicated.
    """

    def validate_access(self) -> None:
        """Check that the credentials work.

        Raises:
            AuthenticationError: If the target rejects the credentials
        """
        ...

    def source_marker(self, source_id: str) -> str:
        """Return the traceability marker (tag) encoding ``source_id``."""
        ...

    def find_by_source_tag(self, source_id: str) -> int | None:
        """Return the target ID of the item carrying the source marker, if any."""
        ...

    def get_item(self, target_id: int) -> TargetWorkItem:
        """Read an item including its fields and relations."""
        ...

    def create_item(self, item_type: str, fields: dict[str, Any]) -> TargetWorkItem:
        """Create an item. ``fields`` must include the source marker tag."""
        ...

    def update_item(self, target_id: int, fields: dict[str, Any]) -> TargetWorkItem:
        """Update fields of an existing item (including ``System.State``).

        Raises:
            WorkflowTransitionError: If the workflow rejects a state change
        """
        ...

    def get_workflow_states(self, item_type: str) -> list[tuple[str, str]]:
        """Return ``(state, category)`` pairs in workflow order."""
        ...

    def set_parent_link(self, child_id: int, parent_id: int) -> LinkOutcome:
        """Link ``child_id`` under ``parent_id``.

        Returns:
            "created" for a new link, "existing" if it was already there,
            "conflict" if the child already has a different parent
        """
        ...

    def set_test_case_link(self, tested_id: int, test_case_id: int) -> LinkOutcome:
        """Record that ``test_case_id`` tests ``tested_id``."""
        ...

    def add_comment(self, target_id: int, text: str) -> bool:
        """Append a comment. Returns False if identical text already exists."""
        ...

    def add_attachment(self, target_id: int, filename: str, content: bytes, comment: str = "") -> bool:
        """Attach a file. Returns False if a same-named attachment already exists."""
        ...

    def attachment_url(self, target_id: int, filename: str) -> str | None:
        """URL of the attachment named ``filename`` on an item, or None if it has none."""
        ...
