"""Applying a target state through the target's workflow.

Azure DevOps workflows (Agile, Scrum, CMMI and inherited variants) reject
some direct transitions, typically a terminal state set on a freshly created
item. ``WorkflowStepper`` first tries the direct update and, when that is
rejected, walks the item through intermediate states one update at a time.

The intermediate path comes from the ``stateTransitions`` section of the
mapping configuration when present, otherwise it is inferred from the
target's workflow metadata: one state for every state category between the
item's current category and the requested state's category.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Final

from .exceptions import WorkflowTransitionError

if TYPE_CHECKING:
    from .protocols import TargetSystem

logger: logging.Logger = logging.getLogger(__name__)

CATEGORY_ORDER: Final[tuple[str, ...]] = ("Proposed", "InProgress", "Resolved", "Completed")


class WorkflowStepper:
    """Sets ``System.State`` on target items, stepping through intermediate states."""

    def __init__(self, target: TargetSystem, transitions: dict[str, dict[str, list[str]]] | None = None) -> None:
        self._target: TargetSystem = target
        self._transitions: dict[str, dict[str, list[str]]] = {
            item_type.lower(): {state.lower(): path for state, path in paths.items()}
            for item_type, paths in (transitions or {}).items()
        }
        self._states_cache: dict[str, list[tuple[str, str]]] = {}
        self._lock: threading.Lock = threading.Lock()

    def apply_state(self, target_id: int, item_type: str, current: str | None, desired: str) -> str:
        """Move an item to ``desired`` and return the final state.

        Raises:
            WorkflowTransitionError: If neither the direct transition nor
                any step of the intermediate path is accepted
        """
        if current and current.lower() == desired.lower():
            return current
        try:
            self._target.update_item(target_id, {"System.State": desired})
        except WorkflowTransitionError as e:
            logger.info(f"Direct transition {current} -> {desired} rejected for #{target_id}; stepping")
            path = self.intermediate_path(item_type, current, desired)
            if not path:
                raise
            logger.debug(f"Stepping #{target_id} through {' -> '.join([*path, desired])}")
            for step in [*path, desired]:
                if current and step.lower() == current.lower():
                    continue
                try:
                    self._target.update_item(target_id, {"System.State": step})
                except WorkflowTransitionError as step_error:
                    msg = f"Work item #{target_id}: cannot reach state '{desired}' (stuck at '{current}')"
                    raise WorkflowTransitionError(msg, from_state=current, to_state=step) from step_error
                current = step
        return desired

    def intermediate_path(self, item_type: str, current: str | None, desired: str) -> list[str]:
        """States to pass through (excluding ``desired``) on the way from ``current``."""
        configured = self._transitions.get(item_type.lower(), {}).get(desired.lower())
        if configured is not None:
            return list(configured)

        states = self._workflow_states(item_type)
        categories = {name.lower(): category for name, category in states}
        desired_category = categories.get(desired.lower())
        if desired_category not in CATEGORY_ORDER:
            return []
        current_category = categories.get(current.lower()) if current else None
        start = CATEGORY_ORDER.index(current_category) + 1 if current_category in CATEGORY_ORDER else 0
        end = CATEGORY_ORDER.index(desired_category)

        path: list[str] = []
        for category in CATEGORY_ORDER[start:end]:
            first = next((name for name, cat in states if cat == category), None)
            if first:
                path.append(first)
        return path

    def _workflow_states(self, item_type: str) -> list[tuple[str, str]]:
        with self._lock:
            cached = self._states_cache.get(item_type)
        if cached is not None:
            return cached
        states = self._target.get_workflow_states(item_type)
        with self._lock:
            self._states_cache[item_type] = states
        return states
