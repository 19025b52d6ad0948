"""Run control state with compare-and-swap transitions.

External callers can only *request* transitions (``pause``, ``resume``,
``cancel``). The orchestrator drives the rest (start, finish, fail) and calls
``checkpoint()`` at every item boundary, which is where pause and cancel
requests take effect.
"""

from __future__ import annotations

import logging
import threading

from .models import ControlState

logger: logging.Logger = logging.getLogger(__name__)


class RunControl:
    """Thread-safe holder of a run's ``ControlState``."""

    def __init__(self) -> None:
        self._state: ControlState = ControlState.IDLE
        self._condition: threading.Condition = threading.Condition()

    @property
    def state(self) -> ControlState:
        with self._condition:
            return self._state

    def transition(self, expected: ControlState | tuple[ControlState, ...], new: ControlState) -> bool:
        """Move to ``new`` only if the current state is ``expected``."""
        allowed = expected if isinstance(expected, tuple) else (expected,)
        with self._condition:
            if self._state not in allowed:
                return False
            logger.debug(f"Run state {self._state.value} -> {new.value}")
            self._state = new
            self._condition.notify_all()
            return True

    def start(self) -> None:
        if not self.transition(
            (ControlState.IDLE, ControlState.COMPLETED, ControlState.CANCELLED, ControlState.FAILED),
            ControlState.RUNNING,
        ):
            msg = f"Cannot start a run while {self.state.value}"
            raise RuntimeError(msg)

    def pause(self) -> bool:
        return self.transition(ControlState.RUNNING, ControlState.PAUSED)

    def resume(self) -> bool:
        return self.transition(ControlState.PAUSED, ControlState.RUNNING)

    def cancel(self) -> bool:
        return self.transition((ControlState.RUNNING, ControlState.PAUSED), ControlState.CANCEL_REQUESTED)

    def checkpoint(self) -> bool:
        """Block while paused; return False once a cancel has been requested."""
        with self._condition:
            while self._state is ControlState.PAUSED:
                self._condition.wait()
            return self._state is ControlState.RUNNING

    def finish(self, new: ControlState) -> ControlState:
        """Move to a terminal state. A pending cancel wins over completion."""
        with self._condition:
            if self._state is ControlState.CANCEL_REQUESTED and new is ControlState.COMPLETED:
                new = ControlState.CANCELLED
            if not self._state.is_terminal:
                logger.debug(f"Run state {self._state.value} -> {new.value}")
                self._state = new
                self._condition.notify_all()
            return self._state
