"""Attachment transfer from Rally to Azure DevOps."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from .models import Attachment
    from .protocols import SourceSystem, TargetSystem

logger: logging.Logger = logging.getLogger(__name__)

# Azure DevOps rejects single uploads above 130 MB
MAX_ATTACHMENT_SIZE: Final[int] = 130 * 1024 * 1024


class AttachmentTransfer:
    """Downloads attachments from the source and attaches them to target items."""

    _source: SourceSystem
    _target: TargetSystem
    _transferred: set[tuple[int, str]]

    def __init__(self, source: SourceSystem, target: TargetSystem) -> None:
        self._source = source
        self._target = target
        self._transferred = set()
        self._lock = threading.Lock()

    def transfer(self, target_id: int, attachment: Attachment, context: str = "") -> bool:
        """Copy one attachment onto a target item.

        Returns:
            True if the file was attached now, False if it was skipped
            (already attached, empty, or too large)
        """
        key = (target_id, attachment.source_id)
        with self._lock:
            if key in self._transferred:
                logger.debug(f"Attachment {attachment.name} already transferred to #{target_id}")
                return False

        ctx = f" in {context}" if context else ""
        if attachment.size > MAX_ATTACHMENT_SIZE:
            logger.warning(f"Skipping attachment {attachment.name}{ctx}: {attachment.size} bytes exceeds upload limit")
            return False

        content = self._source.download_attachment(attachment)
        if not content:
            logger.warning(f"Skipping empty attachment {attachment.name}{ctx}")
            return False

        note = f"Migrated from Rally{ctx}"
        if attachment.author:
            note += f" (uploaded by {attachment.author})"
        added = self._target.add_attachment(target_id, attachment.name, content, note)

        with self._lock:
            self._transferred.add(key)
        if added:
            logger.debug(f"Attached {attachment.name} ({len(content)} bytes) to #{target_id}")
        else:
            logger.debug(f"Attachment {attachment.name} already present on #{target_id}")
        return added
