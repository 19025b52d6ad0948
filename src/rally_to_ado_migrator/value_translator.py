"""
Enumerated value translation for the field mapping engine.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


class ValueTranslator:
    """Translates source values using exact or ``*`` glob patterns.

    Patterns are tried in order; the first match wins. A ``*`` in the source
    pattern captures text that replaces ``*`` in the target pattern, so
    ``"P*" -> "Priority *"`` turns ``"P1"`` into ``"Priority 1"``.
    Exact matches are case-insensitive.
    """

    def __init__(self, patterns: Mapping[str, str] | Iterable[str] | None = None) -> None:
        self.patterns: list[tuple[str, str]] = []

        if patterns is None:
            return
        if hasattr(patterns, "items"):
            items = patterns.items()  # pyright: ignore[reportAttributeAccessIssue]
            self.patterns.extend((str(k), str(v)) for k, v in items)
            return
        for pattern in patterns:
            if ":" not in pattern:
                msg = f"Invalid pattern format: {pattern}"
                raise ValueError(msg)
            source, target = pattern.split(":", 1)
            self.patterns.append((source, target))

    def lookup(self, value: str) -> str | None:
        """Return the translated value, or None when no pattern matches."""
        for source_pattern, target_pattern in self.patterns:
            if "*" in source_pattern:
                head, *rest = source_pattern.split("*")
                regex_pattern = re.escape(head) + "(.*)" + ".*".join(re.escape(part) for part in rest)
                match = re.fullmatch(regex_pattern, value, flags=re.IGNORECASE)
                if match:
                    return target_pattern.replace("*", match.group(1))
            elif source_pattern.lower() == value.lower():
                return target_pattern
        return None

    def translate(self, value: str) -> str:
        """Translate a value, returning it unchanged when no pattern matches."""
        translated = self.lookup(value)
        return value if translated is None else translated
