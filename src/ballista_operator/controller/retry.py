"""Conflict retries and run deadlines."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from ballista_operator.utils.errors import DeadlineExceededError, VersionConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Deadline:
    """Point in time after which a reconciliation run gives up."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + seconds

    @property
    def remaining(self) -> float:
        return self._expires_at - self._clock()

    def expired(self) -> bool:
        return self.remaining <= 0

    def check(self, action: str) -> None:
        """Raise DeadlineExceededError instead of starting ``action`` late."""
        if self.expired():
            raise DeadlineExceededError(f"Deadline exceeded before {action}")


def retry_on_conflict(fn: Callable[[], T], attempts: int, description: str) -> T:
    """Call ``fn`` until it stops raising VersionConflictError.

    ``fn`` must re-read whatever it writes, so each attempt starts from a
    fresh resourceVersion. The last conflict is re-raised once ``attempts``
    calls have failed.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except VersionConflictError as e:
            if attempt >= attempts:
                raise
            logger.debug(f"Conflict on {description} (attempt {attempt}/{attempts}): {e}")
            attempt += 1
