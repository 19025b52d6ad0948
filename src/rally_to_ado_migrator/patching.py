"""Incremental comment and attachment synchronization.

A ``MappingEntry`` remembers how many comments and attachments of the source
item have already been copied. The patch engine copies only the ones beyond
those counts, in source chronological order, and advances the counts after
every successful write. An interrupted patch therefore resumes where it
stopped, and a second run without new content writes nothing.

Inline images are handled last: once the attachment an image points at is on
the target, the image source in the target's rich-text fields is rewritten to
the uploaded copy and the pair is remembered in the entry.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from .content_builder import format_comment
from .inline_images import record_images, replace_image_sources

if TYPE_CHECKING:
    from collections.abc import Callable

    from .attachments import AttachmentTransfer
    from .inline_images import InlineImage
    from .models import Attachment, Comment, MappingEntry, WorkItemRecord
    from .protocols import TargetSystem

logger: logging.Logger = logging.getLogger(__name__)

_EPOCH = dt.datetime.min.replace(tzinfo=dt.UTC)


def _chronological(comments: tuple[Comment, ...]) -> list[Comment]:
    # Stable sort keeps source order for equal or missing timestamps
    return sorted(comments, key=lambda c: c.created_at or _EPOCH)


@dataclass
class PatchResult:
    entry: MappingEntry
    comments_added: int = 0
    attachments_added: int = 0
    images_linked: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.comments_added or self.attachments_added or self.images_linked)


class DifferencePatchEngine:
    """Applies comment/attachment deltas to already-migrated items."""

    def __init__(self, target: TargetSystem, attachments: AttachmentTransfer) -> None:
        self._target: TargetSystem = target
        self._attachments: AttachmentTransfer = attachments

    def pending(self, record: WorkItemRecord, entry: MappingEntry) -> tuple[list[Comment], list[Attachment]]:
        """Comments and attachments not yet copied to the target."""
        comments = _chronological(record.comments)[entry.synced_comment_count :]
        attachments = list(record.attachments)[entry.synced_attachment_count :]
        return comments, attachments

    def unlinked_images(self, record: WorkItemRecord, entry: MappingEntry) -> list[InlineImage]:
        """Inline images of attachments of this item whose source has not been rewritten yet."""
        known = dict(entry.image_urls)
        attached = {attachment.source_id for attachment in record.attachments}
        return [image for image in record_images(record) if image.src not in known and image.attachment_id in attached]

    def has_pending(self, record: WorkItemRecord, entry: MappingEntry) -> bool:
        comments, attachments = self.pending(record, entry)
        return bool(comments or attachments or self.unlinked_images(record, entry))

    def apply(
        self,
        record: WorkItemRecord,
        entry: MappingEntry,
        on_entry: Callable[[MappingEntry], None] | None = None,
    ) -> PatchResult:
        """Append pending comments and attachments to the mapped target item.

        Args:
            record: Fresh snapshot of the source item
            entry: Mapping entry carrying the last-synced counts
            on_entry: Called with the updated entry after every write

        Returns:
            PatchResult with the final entry and the number of writes
        """
        if entry.target_id is None:
            msg = f"{record.label} has no target item to patch"
            raise ValueError(msg)

        result = PatchResult(entry=entry)
        comments, attachments = self.pending(record, entry)

        for comment in comments:
            if self._target.add_comment(entry.target_id, format_comment(comment)):
                result.comments_added += 1
            result.entry = replace(result.entry, synced_comment_count=result.entry.synced_comment_count + 1)
            if on_entry:
                on_entry(result.entry)

        for attachment in attachments:
            if self._attachments.transfer(entry.target_id, attachment, context=record.label):
                result.attachments_added += 1
            result.entry = replace(result.entry, synced_attachment_count=result.entry.synced_attachment_count + 1)
            if on_entry:
                on_entry(result.entry)

        images = self.unlinked_images(record, result.entry)
        if images:
            urls = self._link_images(record, entry.target_id, images)
            result.images_linked = sum(1 for url in urls.values() if url)
            merged = {**dict(result.entry.image_urls), **urls}
            result.entry = replace(result.entry, image_urls=tuple(sorted(merged.items())))
            if on_entry:
                on_entry(result.entry)

        if result.changed:
            logger.info(
                f"Patched {record.label} (#{entry.target_id}): "
                f"{result.comments_added} comments, {result.attachments_added} attachments, "
                f"{result.images_linked} inline images"
            )
        return result

    def _link_images(self, record: WorkItemRecord, target_id: int, images: list[InlineImage]) -> dict[str, str]:
        """Rewrite image sources on the target item. Returns src → new URL ("" when unavailable)."""
        names = {attachment.source_id: attachment.name for attachment in record.attachments}
        urls: dict[str, str] = {}
        for image in images:
            url = self._target.attachment_url(target_id, names.get(image.attachment_id, image.file_name))
            if not url:
                logger.warning(f"{record.label}: inline image {image.file_name} has no uploaded copy; left as is")
            urls[image.src] = url or ""

        current = self._target.get_item(target_id).fields
        rewritten: dict[str, Any] = {}
        for name, value in current.items():
            if isinstance(value, str):
                updated = replace_image_sources(value, urls)
                if updated != value:
                    rewritten[name] = updated
        if rewritten:
            self._target.update_item(target_id, rewritten)
            logger.debug(f"Rewrote inline images in {sorted(rewritten)} of #{target_id}")
        return urls
