from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Generic, TypeVar

from paysweep.domain.errors import TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollStatus(StrEnum):
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"


@dataclass(frozen=True)
class PollOutcome(Generic[T]):
    status: PollStatus
    attempts: int
    value: T | None = None

    @property
    def confirmed(self) -> bool:
        return self.status is PollStatus.CONFIRMED


def poll_until(  # noqa: UP047
    check: Callable[[], T],
    *,
    interval_seconds: float,
    max_attempts: int,
    sleep_fn: Callable[[float], None] | None = None,
    is_done: Callable[[T], bool] = bool,
    abort_when: Callable[[T], bool] | None = None,
    label: str = "poll",
) -> PollOutcome[T]:
    """Run ``check`` up to ``max_attempts`` times, sleeping ``interval_seconds`` before each.

    The poll is confirmed once ``is_done(result)`` holds (truthiness by default).
    ``abort_when`` ends it early on a definite negative such as a failed transfer.
    A ``TransientNetworkError`` from ``check`` counts as "not yet"; anything else
    propagates.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    sleep = sleep_fn or time.sleep
    last: T | None = None
    for attempt in range(1, max_attempts + 1):
        sleep(interval_seconds)
        try:
            last = check()
        except TransientNetworkError as exc:
            logger.info(
                "poll_check_transient_error",
                extra={"extra": {"label": label, "attempt": attempt, "error": str(exc)}},
            )
            continue
        if is_done(last):
            return PollOutcome(status=PollStatus.CONFIRMED, attempts=attempt, value=last)
        if abort_when is not None and abort_when(last):
            return PollOutcome(status=PollStatus.ABORTED, attempts=attempt, value=last)
    logger.info(
        "poll_timed_out",
        extra={"extra": {"label": label, "attempts": max_attempts, "interval_seconds": interval_seconds}},
    )
    return PollOutcome(status=PollStatus.TIMED_OUT, attempts=max_attempts, value=last)
