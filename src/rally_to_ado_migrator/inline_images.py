"""Inline images in Rally rich text.

Rally stores an image pasted into a description as an attachment of the item
and references it by a server-relative URL such as
``/slm/attachment/81234567/screenshot.png``. Azure DevOps cannot resolve that
URL, so once the attachment has been uploaded the ``src`` is rewritten to the
URL of the uploaded copy. Images hosted elsewhere are left alone.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .models import WorkItemRecord

_IMG_SRC_RE = re.compile(r"""(<img\b[^>]*?\bsrc\s*=\s*)(["'])(.*?)\2""", re.IGNORECASE | re.DOTALL)
_RALLY_ATTACHMENT_RE = re.compile(r"/slm/attachment/(\d+)/([^/?#]+)")


@dataclass(frozen=True)
class InlineImage:
    src: str
    attachment_id: str
    file_name: str


def find_inline_images(text: str | None) -> list[InlineImage]:
    """Images in ``text`` whose source is a Rally attachment."""
    images: list[InlineImage] = []
    for match in _IMG_SRC_RE.finditer(text or ""):
        src = match.group(3)
        ref = _RALLY_ATTACHMENT_RE.search(src)
        if ref:
            images.append(InlineImage(src=src, attachment_id=ref.group(1), file_name=unquote(ref.group(2))))
    return images


def record_images(record: WorkItemRecord) -> list[InlineImage]:
    """Inline images across every rich-text value of a record, each source once."""
    texts = [record.description, *(value for value in record.fields.values() if isinstance(value, str))]
    found: dict[str, InlineImage] = {}
    for text in texts:
        for image in find_inline_images(text):
            found.setdefault(image.src, image)
    return list(found.values())


def replace_image_sources(text: str, urls: Mapping[str, str]) -> str:
    """Point every image whose source has a non-empty entry in ``urls`` at the new URL."""
    if not text or not urls:
        return text

    def swap(match: re.Match[str]) -> str:
        url = urls.get(match.group(3))
        if not url:
            return match.group(0)
        return f"{match.group(1)}{match.group(2)}{url}{match.group(2)}"

    return _IMG_SRC_RE.sub(swap, text)


def rewrite_fields(fields: dict[str, Any], urls: Mapping[str, str]) -> dict[str, Any]:
    """Copy of ``fields`` with image sources replaced in every string value."""
    if not urls:
        return fields
    return {
        name: replace_image_sources(value, urls) if isinstance(value, str) else value for name, value in fields.items()
    }
