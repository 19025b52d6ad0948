"""Build Azure DevOps HTML content from Rally item data."""

from __future__ import annotations

import html
from typing import TYPE_CHECKING

from .steps import build_steps_table
from .utils import format_timestamp

if TYPE_CHECKING:
    from .models import Comment, WorkItemRecord


def build_description(record: WorkItemRecord, *, rally_url: str | None = None, include_steps: bool = False) -> str:
    """Build the migrated description with a migration header.

    Args:
        record: Source work item
        rally_url: Link back to the Rally item (optional)
        include_steps: Append test case steps as a table

    Returns:
        HTML description for Azure DevOps
    """
    header = f"<p><b>Migrated from Rally {html.escape(record.label)}</b><br/>"
    if record.owner:
        header += f"<b>Original Owner:</b> {html.escape(record.owner)}<br/>"
    if record.created_at:
        header += f"<b>Created:</b> {format_timestamp(record.created_at)}<br/>"
    if rally_url:
        header += f'<b>Rally URL:</b> <a href="{html.escape(rally_url)}">{html.escape(rally_url)}</a>'
    header += "</p><hr/>"

    notes = record.get_field("Notes")
    body = header + (record.description or "")
    if notes:
        body += f"<h3>Notes</h3>{notes}"
    if include_steps:
        body += build_steps_table(record.steps)
    return body


def format_comment(comment: Comment) -> str:
    """Render a source comment with attribution for the target discussion."""
    attribution = f"<p><i>Rally comment by {html.escape(comment.author or 'unknown')}"
    if comment.created_at:
        attribution += f" on {format_timestamp(comment.created_at)}"
    attribution += "</i></p>"
    return attribution + comment.text


def title_with_id(record: WorkItemRecord) -> str:
    """Title prefixed with the Rally FormattedID, e.g. "[US123] Login page"."""
    if record.formatted_id:
        return f"[{record.formatted_id}] {record.title}"
    return record.title
