from __future__ import annotations

import logging
from pathlib import Path

import pytest
from fake_devices import FakeDeviceManager

from maestro_harness.runtime.devices.base import DeviceLifecycleError, RecordingError
from maestro_harness.runtime.lifecycle import with_clean_device
from maestro_harness.runtime.recording import maybe_with_recording


def _source(manager: FakeDeviceManager):
    return manager.find_source_device()


def test_with_clean_device_runs_fn_and_always_tears_down(tmp_path: Path) -> None:
    manager = FakeDeviceManager(tmp_path)

    result = with_clean_device(
        manager,
        source=_source(manager),
        device_name="dev-0-0",
        fn=lambda handle: handle.booted_id,
    )

    assert result.fn_outcome.ok()
    assert result.fn_outcome.value == "serial-dev-0-0"
    assert result.logs_outcome is not None and result.logs_outcome.ok()
    assert result.logs_outcome.value.read_text(encoding="utf-8").startswith("logs for dev-0-0")
    assert [op for op, _ in manager.calls[1:]] == [
        "clone",
        "start",
        "wait_for_ready",
        "collect_logs",
        "delete",
    ]


def test_fn_failure_is_captured_and_cleanup_still_happens(tmp_path: Path) -> None:
    manager = FakeDeviceManager(tmp_path)

    def fn(handle):
        raise RuntimeError("maestro failed")

    result = with_clean_device(manager, source=_source(manager), device_name="d", fn=fn)

    assert not result.fn_outcome.ok()
    assert str(result.fn_outcome.error) == "maestro failed"
    assert manager.ops("delete") == ["d"]


def test_clone_failure_skips_fn_and_teardown(tmp_path: Path) -> None:
    manager = FakeDeviceManager(tmp_path, fail_clone=frozenset({"d"}))
    called = []

    result = with_clean_device(
        manager, source=_source(manager), device_name="d", fn=lambda h: called.append(h)
    )

    assert called == []
    assert isinstance(result.fn_outcome.error, DeviceLifecycleError)
    assert result.logs_outcome is None
    assert manager.ops("delete") == []


def test_not_ready_device_is_still_deleted(tmp_path: Path) -> None:
    manager = FakeDeviceManager(tmp_path, fail_ready=frozenset({"d"}))
    called = []

    result = with_clean_device(
        manager, source=_source(manager), device_name="d", fn=lambda h: called.append(h)
    )

    assert called == []
    assert isinstance(result.fn_outcome.error, DeviceLifecycleError)
    assert "did not become ready" in str(result.fn_outcome.error)
    assert manager.ops("collect_logs") == ["d"]
    assert manager.ops("delete") == ["d"]


def test_start_failure_removes_the_clone(tmp_path: Path) -> None:
    manager = FakeDeviceManager(tmp_path, fail_start=frozenset({"d"}))
    called = []

    result = with_clean_device(
        manager, source=_source(manager), device_name="d", fn=lambda h: called.append(h)
    )

    assert called == []
    assert isinstance(result.fn_outcome.error, DeviceLifecycleError)
    assert result.logs_outcome is None
    assert manager.ops("clone") == ["d"]
    assert manager.ops("delete_clone") == ["d"]
    assert manager.ops("delete") == []


def test_clone_removal_failure_keeps_start_error(tmp_path: Path, caplog) -> None:
    manager = FakeDeviceManager(tmp_path, fail_start=frozenset({"d"}), fail_delete=True)

    with caplog.at_level(logging.ERROR):
        result = with_clean_device(
            manager, source=_source(manager), device_name="d", fn=lambda h: None
        )

    assert "emulator exited early: d" in str(result.fn_outcome.error)
    assert manager.ops("delete_clone") == ["d"]
    (record,) = [r for r in caplog.records if "Error cleaning up device d" in r.getMessage()]
    assert isinstance(record.exc_info[1], DeviceLifecycleError)


def test_cleanup_failures_never_replace_fn_outcome(tmp_path: Path) -> None:
    manager = FakeDeviceManager(tmp_path, fail_logs=True, fail_delete=True)

    result = with_clean_device(manager, source=_source(manager), device_name="d", fn=lambda h: 7)

    assert result.fn_outcome.ok() and result.fn_outcome.value == 7
    assert result.logs_outcome is not None
    assert isinstance(result.logs_outcome.error, DeviceLifecycleError)


def _handle(manager: FakeDeviceManager):
    return manager.start(_source(manager), "d")


def test_recording_disabled_runs_fn_only(tmp_path: Path) -> None:
    manager = FakeDeviceManager(tmp_path)

    result = maybe_with_recording(
        should_record=False, manager=manager, handle=_handle(manager), fn=lambda: "done"
    )

    assert result.fn_outcome.value == "done"
    assert result.recording_outcome.ok() and result.recording_outcome.value is None
    assert manager.ops("start_screen_recording") == []


def test_recording_wraps_fn(tmp_path: Path) -> None:
    manager = FakeDeviceManager(tmp_path)
    order = []

    def fn():
        order.append(list(manager.ops("start_screen_recording")))
        raise RuntimeError("flow failed")

    result = maybe_with_recording(
        should_record=True, manager=manager, handle=_handle(manager), fn=fn
    )

    assert order == [["d"]]
    assert not result.fn_outcome.ok()
    assert result.recording_outcome.ok()
    assert result.recording_outcome.value.name == "serial-d.mp4"


@pytest.mark.parametrize("where", ["start", "stop"])
def test_recording_failure_does_not_fail_the_test(tmp_path: Path, where: str) -> None:
    err = RuntimeError("screenrecord unavailable")
    manager = FakeDeviceManager(
        tmp_path,
        recording_start_error=err if where == "start" else None,
        recording_stop_error=err if where == "stop" else None,
    )

    result = maybe_with_recording(
        should_record=True, manager=manager, handle=_handle(manager), fn=lambda: "passed"
    )

    assert result.fn_outcome.ok() and result.fn_outcome.value == "passed"
    assert isinstance(result.recording_outcome.error, RecordingError)
    assert result.recording_outcome.error.__cause__ is err
