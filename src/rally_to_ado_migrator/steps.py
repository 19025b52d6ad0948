"""Rally test case steps rendered for Azure DevOps.

Test cases keep their steps in ``Microsoft.VSTS.TCM.Steps``, an XML document
in which every step holds two HTML fragments (action and expected result),
themselves XML-escaped::

    <steps id="0" last="1">
      <step id="1" type="ActionStep">
        <parameterizedString isformatted="true">&lt;DIV&gt;&lt;P&gt;Open&lt;/P&gt;&lt;/DIV&gt;</parameterizedString>
        <parameterizedString isformatted="true">&lt;DIV&gt;&lt;P&gt;Shown&lt;/P&gt;&lt;/DIV&gt;</parameterizedString>
        <description/>
      </step>
    </steps>

Work item types without a steps field get the same steps as an HTML table
appended to the description.
"""

from __future__ import annotations

import html
import re
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .models import CaseStep

STEPS_FIELD: Final[str] = "Microsoft.VSTS.TCM.Steps"
STEPS_TABLE_HEADING: Final[str] = "Test Steps (Migrated from Rally)"

_LINE_BREAK_RE = re.compile(r"<br\s*/?>|</(?:p|div|li)>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_LINES_RE = re.compile(r"\n{3,}")
_CONTROL_RE = re.compile(r"[\x00-\x09\x0b\x0c\x0e-\x1f\x7f]")


def step_text(value: str | None) -> str:
    """Plain text of a Rally step cell. Line breaks survive, markup does not."""
    text = _LINE_BREAK_RE.sub("\n", value or "")
    text = html.unescape(_TAG_RE.sub("", text))
    text = text.replace("\r\n", "\n").replace("\r", "\n").strip()
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return _CONTROL_RE.sub("", text)


def _html_lines(value: str | None) -> str:
    return html.escape(step_text(value)).replace("\n", "<BR/>")


def _ordered(steps: Iterable[CaseStep]) -> list[CaseStep]:
    return sorted(steps, key=lambda step: step.index)


def _parameterized(value: str | None) -> str:
    # An empty parameterizedString makes the step unreadable in the web UI
    fragment = f"<DIV><P>{_html_lines(value) or ' '}</P></DIV>"
    return f'<parameterizedString isformatted="true">{html.escape(fragment, quote=False)}</parameterizedString>'


def build_steps_xml(steps: Iterable[CaseStep]) -> str:
    """Build the ``Microsoft.VSTS.TCM.Steps`` value, or "" when there are no steps."""
    ordered = _ordered(steps)
    if not ordered:
        return ""
    parts = [f'<steps id="0" last="{len(ordered)}">']
    for number, step in enumerate(ordered, start=1):
        parts.append(f'<step id="{number}" type="ActionStep">')
        parts.append(_parameterized(step.input))
        parts.append(_parameterized(step.expected_result))
        parts.append("<description/></step>")
    parts.append("</steps>")
    return "".join(parts)


def build_steps_table(steps: Iterable[CaseStep]) -> str:
    """Render steps as an HTML table for a description field."""
    ordered = _ordered(steps)
    if not ordered:
        return ""
    rows = "".join(
        f"<tr><td>{number}</td><td>{_html_lines(step.input) or '<em>No content</em>'}</td>"
        f"<td>{_html_lines(step.expected_result) or '<em>No content</em>'}</td></tr>"
        for number, step in enumerate(ordered, start=1)
    )
    return (
        f"<hr/><h3>{STEPS_TABLE_HEADING}</h3>"
        '<table border="1"><thead><tr><th>Step</th><th>Action</th><th>Expected Result</th></tr></thead>'
        f"<tbody>{rows}</tbody></table>"
    )
