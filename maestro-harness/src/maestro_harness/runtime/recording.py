from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Generic, TypeVar

from maestro_harness.runtime.devices.base import DeviceHandle, DeviceManager, RecordingError
from maestro_harness.runtime.outcome import Outcome, capture

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RecordingResult(Generic[T]):
    fn_outcome: Outcome[T]
    # value None: recording disabled. error: recording start/stop failed.
    recording_outcome: Outcome[Path]


def _as_recording_error(e: Exception, message: str) -> RecordingError:
    if isinstance(e, RecordingError):
        return e
    err = RecordingError(f"{message}: {e}")
    err.__cause__ = e
    return err


def maybe_with_recording(
    *,
    should_record: bool,
    manager: DeviceManager,
    handle: DeviceHandle,
    fn: Callable[[], T],
) -> RecordingResult[T]:
    """Run `fn`, optionally wrapped in a screen recording.

    A test that passes while its recording fails still passes: the two
    outcomes are returned separately.
    """

    if not should_record:
        return RecordingResult(fn_outcome=capture(fn), recording_outcome=Outcome.success(None))

    logger.info("Starting screen recording on %s...", handle.ephemeral_identifier)
    try:
        recording = manager.start_screen_recording(handle)
    except Exception as e:
        logger.warning("Failed to start screen recording: %s", e, exc_info=e)
        error = _as_recording_error(e, "failed to start screen recording")
        return RecordingResult(fn_outcome=capture(fn), recording_outcome=Outcome.failure(error))

    fn_outcome: Outcome[T] = Outcome.failure(RuntimeError("test invocation did not complete"))
    recording_outcome: Outcome[Path]
    try:
        fn_outcome = capture(fn)
    finally:
        logger.info("Stopping screen recording on %s...", handle.ephemeral_identifier)
        try:
            recording_outcome = Outcome.success(manager.stop_screen_recording(handle, recording))
        except Exception as e:
            logger.warning("Failed to stop screen recording: %s", e, exc_info=e)
            recording_outcome = Outcome.failure(
                _as_recording_error(e, "failed to stop screen recording")
            )
    return RecordingResult(fn_outcome=fn_outcome, recording_outcome=recording_outcome)
