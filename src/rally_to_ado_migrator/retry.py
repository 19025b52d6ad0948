"""Retry policy and request throttling shared by both connectors.

Only ``TransientNetworkError`` is retried. Every other ``MigrationError``
(authentication, validation, not found, workflow) propagates on the first
attempt so the caller can classify it.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TypeVar

from .exceptions import TransientNetworkError

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Exponential backoff for transient failures.

    The delay before attempt ``n`` (1-based, n >= 2) is
    ``min(max_delay, base_delay * multiplier ** (n - 2))`` plus up to
    ``jitter`` of that value, unless the server asked for a longer
    ``Retry-After``.
    """

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Return the delay to wait after failed attempt number ``attempt``."""
        delay = min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)  # noqa: S311 - not crypto
        if retry_after is not None:
            delay = max(delay, min(retry_after, self.max_delay))
        return delay

    def call(self, func: Callable[[], T], *, description: str = "request") -> T:
        """Run ``func`` until it succeeds or the attempts are exhausted.

        Raises:
            TransientNetworkError: The last transient failure, once all
                attempts are used.
        """
        attempt = 1
        while True:
            try:
                return func()
            except TransientNetworkError as e:
                if attempt >= self.max_attempts:
                    logger.warning(f"Giving up on {description} after {attempt} attempts: {e}")
                    raise
                delay = self.delay_for(attempt, e.retry_after)
                logger.debug(f"Transient failure on {description} (attempt {attempt}): {e}; retrying in {delay:.1f}s")
                self.sleep(delay)
                attempt += 1


class RequestThrottle:
    """Bounds concurrent requests and shares throttling backoff across workers.

    When any worker receives a throttling response, ``backoff()`` pushes a
    shared cool-down deadline that every subsequent request waits out.
    """

    def __init__(
        self,
        max_concurrent: int = 4,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_concurrent < 1:
            msg = "max_concurrent must be at least 1"
            raise ValueError(msg)
        self._semaphore: threading.BoundedSemaphore = threading.BoundedSemaphore(max_concurrent)
        self._lock: threading.Lock = threading.Lock()
        self._resume_at: float = 0.0
        self._clock: Callable[[], float] = clock
        self._sleep: Callable[[float], None] = sleep

    def backoff(self, seconds: float) -> None:
        """Delay all requests issued from now on by at least ``seconds``."""
        with self._lock:
            self._resume_at = max(self._resume_at, self._clock() + seconds)
        logger.info(f"Target is throttling requests; pausing requests for {seconds:.1f}s")

    def _wait_for_cooldown(self) -> None:
        while True:
            with self._lock:
                remaining = self._resume_at - self._clock()
            if remaining <= 0:
                return
            self._sleep(remaining)

    @contextmanager
    def slot(self) -> Iterator[None]:
        """Hold one of the concurrent request slots for the duration of a call."""
        self._wait_for_cooldown()
        with self._semaphore:
            yield
