"""Progress and status observers."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import MigrationProgress

logger: logging.Logger = logging.getLogger(__name__)

ProgressCallback = Callable[["MigrationProgress"], None]
StatusCallback = Callable[[str], None]


@dataclass
class Subscription:
    """Handle returned by ``ProgressReporter.subscribe()``."""

    reporter: ProgressReporter
    on_progress: ProgressCallback | None
    on_status: StatusCallback | None

    def close(self) -> None:
        self.reporter.unsubscribe(self)


class ProgressReporter:
    """Delivers progress snapshots and status lines to subscribers.

    Both channels share one lock, so every subscriber sees events in the
    order they were emitted even when workers emit concurrently. A failing
    observer is logged and does not interrupt the run.
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._lock: threading.RLock = threading.RLock()

    def subscribe(
        self,
        on_progress: ProgressCallback | None = None,
        on_status: StatusCallback | None = None,
    ) -> Subscription:
        subscription = Subscription(self, on_progress, on_status)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def progress(self, snapshot: MigrationProgress) -> None:
        with self._lock:
            for subscription in list(self._subscriptions):
                if subscription.on_progress is not None:
                    self._deliver(subscription.on_progress, snapshot)

    def status(self, message: str) -> None:
        logger.info(message)
        with self._lock:
            for subscription in list(self._subscriptions):
                if subscription.on_status is not None:
                    self._deliver(subscription.on_status, message)

    @staticmethod
    def _deliver(callback: Callable[..., None], payload: object) -> None:
        try:
            callback(payload)
        except Exception:
            logger.exception("Progress observer failed")
