"""Bounded polling / retry helpers.

Every readiness check in the harness (device booted, recording file released,
emulator detached, ...) is a fixed-interval poll with a hard attempt cap. This
module is the single place those loops live so call sites only declare the
policy.
"""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    """Raised when a retried callable never succeeded within its policy."""

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class RetryCancelledError(RuntimeError):
    """Raised when the cancellation event was set while waiting between attempts."""


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    interval_s: float = 1.0
    jitter_s: float = 0.0

    @classmethod
    def every_second(cls, *, for_s: float) -> "RetryPolicy":
        return cls(max_attempts=max(1, int(for_s)), interval_s=1.0)

    def delay_s(self) -> float:
        if self.jitter_s > 0:
            return self.interval_s + random.uniform(0.0, self.jitter_s)
        return self.interval_s


def _sleep(delay_s: float, cancel: Optional[threading.Event]) -> None:
    if cancel is None:
        # Event().wait() with a fresh event is an interruptible sleep.
        threading.Event().wait(delay_s)
        return
    if cancel.wait(delay_s):
        raise RetryCancelledError("retry cancelled")


def retry_call(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    cancel: Optional[threading.Event] = None,
    describe: str = "",
) -> T:
    """Call `fn` until it returns without raising.

    Sleeps `policy.delay_s()` between attempts. Raises RetryExhaustedError
    (chained to the last failure) after `policy.max_attempts` failed calls.
    """

    attempts = max(1, int(policy.max_attempts))
    last_error: Optional[BaseException] = None
    for attempt in range(attempts):
        if cancel is not None and cancel.is_set():
            raise RetryCancelledError(f"retry cancelled: {describe or fn!r}")
        try:
            return fn()
        except Exception as e:
            last_error = e
            logger.debug(
                "%s: attempt %d/%d failed: %s", describe or "retry", attempt + 1, attempts, e
            )
        if attempt + 1 < attempts:
            _sleep(policy.delay_s(), cancel)

    raise RetryExhaustedError(
        f"{describe or 'operation'} did not succeed after {attempts} attempts: {last_error}",
        attempts=attempts,
    ) from last_error


def poll_until(
    predicate: Callable[[], bool],
    *,
    policy: RetryPolicy,
    cancel: Optional[threading.Event] = None,
) -> bool:
    """Poll `predicate` until it returns True; False when the policy runs out."""

    attempts = max(1, int(policy.max_attempts))
    for attempt in range(attempts):
        if cancel is not None and cancel.is_set():
            raise RetryCancelledError("poll cancelled")
        if predicate():
            return True
        if attempt + 1 < attempts:
            _sleep(policy.delay_s(), cancel)
    return False
