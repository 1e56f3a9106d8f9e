from __future__ import annotations

from pathlib import Path

import pytest
from fake_devices import FakeDeviceManager, RecordingUploader

from maestro_harness.runtime.devices.base import SourceDeviceError
from maestro_harness.runtime.runner import (
    FlowsFailedError,
    MaestroTestError,
    MaestroTestRunner,
    RunnerConfig,
    build_maestro_test_command,
    report_filename,
)


class ScriptedMaestro:
    """Fails the first `failures[flow_name]` invocations of each flow."""

    def __init__(self, failures: dict[str, int]) -> None:
        self.failures = dict(failures)
        self.commands: list[list[str]] = []

    def __call__(self, command) -> None:
        command = list(command)
        self.commands.append(command)
        flow = Path(command[-1]).stem
        if "--output" in command:
            out = Path(command[command.index("--output") + 1])
            out.write_text(f"<testsuites><!-- {flow} --></testsuites>", encoding="utf-8")
        if self.failures.get(flow, 0) > 0:
            self.failures[flow] -= 1
            raise MaestroTestError(command, 1)


def _runner(tmp_path: Path, manager, uploader, invoke, **cfg) -> MaestroTestRunner:
    temp_root = tmp_path / "tmp"
    temp_root.mkdir(exist_ok=True)
    config = RunnerConfig(platform="android", working_directory=tmp_path / "project", **cfg)
    return MaestroTestRunner(
        config=config, manager=manager, uploader=uploader, invoke=invoke, temp_root=temp_root
    )


def _flows(tmp_path: Path, *names: str) -> list[Path]:
    out = []
    for name in names:
        path = tmp_path / "project" / ".maestro" / f"{name}.yaml"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("appId: x\n---\n- launchApp\n", encoding="utf-8")
        out.append(path)
    return out


def test_build_maestro_test_command() -> None:
    assert build_maestro_test_command(
        maestro_bin="maestro",
        flow_path=Path("/p/home.yaml"),
        output_format=None,
        output_path=Path("/r/report-flow-1"),
    ) == ["maestro", "test", "/p/home.yaml"]
    assert build_maestro_test_command(
        maestro_bin="maestro",
        flow_path=Path("/p/home.yaml"),
        output_format="junit",
        output_path=Path("/r/junit-report-flow-1.xml"),
    ) == ["maestro", "test", "--format", "junit", "--output", "/r/junit-report-flow-1.xml",
          "/p/home.yaml"]


def test_report_filename() -> None:
    assert report_filename("junit", 0) == "junit-report-flow-1.xml"
    assert report_filename("html", 2) == "html-report-flow-3.html"
    assert report_filename(None, 0) == "report-flow-1"
    assert report_filename("json", 0) == "json-report-flow-1"


def test_all_flows_pass_on_first_attempt(tmp_path: Path) -> None:
    manager = FakeDeviceManager(tmp_path)
    uploader = RecordingUploader()
    maestro = ScriptedMaestro({})
    flows = _flows(tmp_path, "home", "login")

    summary = _runner(
        tmp_path, manager, uploader, maestro, retries=3, output_format="junit"
    ).run(flows)

    assert summary.passed_flows == flows
    assert summary.failed_flows == []
    assert manager.ops("clone") == ["maestro-device-0-0", "maestro-device-1-0"]
    assert manager.ops("prepare_source_device") == ["pixel"]
    assert uploader.names() == [
        "Android Maestro Test Reports (junit)",
        "Maestro Test Device Logs",
    ]
    assert uploader.uploads[0]["files"] == ["junit-report-flow-1.xml", "junit-report-flow-2.xml"]
    assert uploader.uploads[1]["files"] == ["flow-0.log", "flow-1.log"]
    assert summary.junit_report_directory == summary.reports_dir
    assert summary.reports_artifact_id == "artifact-1"


def test_failed_attempt_is_retried_on_a_fresh_device(tmp_path: Path) -> None:
    manager = FakeDeviceManager(tmp_path)
    uploader = RecordingUploader()
    maestro = ScriptedMaestro({"home": 2})
    flows = _flows(tmp_path, "home")

    summary = _runner(tmp_path, manager, uploader, maestro, retries=3).run(flows)

    assert summary.passed_flows == flows
    assert manager.ops("clone") == [
        "maestro-device-0-0",
        "maestro-device-0-1",
        "maestro-device-0-2",
    ]
    assert manager.ops("delete") == manager.ops("clone")
    assert [(a.attempt_count, a.passed) for a in summary.attempts] == [
        (0, False),
        (1, False),
        (2, True),
    ]
    # Every attempt writes the same destination, so only the last one survives.
    logs = summary.device_logs_dir / "flow-0.log"
    assert logs.read_text(encoding="utf-8") == "logs for maestro-device-0-2\n"
    assert summary.junit_report_directory is None


def test_exhausted_flow_does_not_stop_others_and_fails_after_uploads(tmp_path: Path) -> None:
    manager = FakeDeviceManager(tmp_path)
    uploader = RecordingUploader()
    maestro = ScriptedMaestro({"broken": 99})
    flows = _flows(tmp_path, "broken", "home")

    with pytest.raises(FlowsFailedError) as exc:
        _runner(tmp_path, manager, uploader, maestro, retries=2, output_format="junit").run(
            flows
        )

    assert str(exc.value) == "Some Maestro tests failed:\n- .maestro/broken.yaml"
    summary = exc.value.summary
    assert summary.failed_flows == [flows[0]]
    assert summary.passed_flows == [flows[1]]
    assert manager.ops("clone") == [
        "maestro-device-0-0",
        "maestro-device-0-1",
        "maestro-device-1-0",
    ]
    assert "Android Maestro Test Reports (junit)" in uploader.names()
    assert "Maestro Test Device Logs" in uploader.names()


def test_single_attempt_by_default(tmp_path: Path) -> None:
    manager = FakeDeviceManager(tmp_path)
    maestro = ScriptedMaestro({"home": 1})

    with pytest.raises(FlowsFailedError):
        _runner(tmp_path, manager, RecordingUploader(), maestro).run(_flows(tmp_path, "home"))
    assert len(maestro.commands) == 1


def test_device_setup_failure_counts_as_failed_attempt(tmp_path: Path) -> None:
    manager = FakeDeviceManager(tmp_path, fail_clone=frozenset({"maestro-device-0-0"}))
    maestro = ScriptedMaestro({})

    summary = _runner(tmp_path, manager, RecordingUploader(), maestro, retries=2).run(
        _flows(tmp_path, "home")
    )

    assert len(maestro.commands) == 1
    assert [a.passed for a in summary.attempts] == [False, True]
    assert summary.attempts[0].logs_path is None


def test_recording_uploaded_only_for_final_attempt(tmp_path: Path) -> None:
    manager = FakeDeviceManager(tmp_path)
    uploader = RecordingUploader()
    maestro = ScriptedMaestro({"home": 1})

    _runner(tmp_path, manager, uploader, maestro, retries=3, record_screen=True).run(
        _flows(tmp_path, "home")
    )

    recordings = [u for u in uploader.uploads if u["name"].startswith("Screen Recording")]
    assert [u["name"] for u in recordings] == ["Screen Recording (0-home)"]
    assert recordings[0]["paths"][0].name == "serial-maestro-device-0-1.mp4"


def test_recording_failure_does_not_fail_flow(tmp_path: Path) -> None:
    manager = FakeDeviceManager(tmp_path, recording_start_error=RuntimeError("no screenrecord"))
    uploader = RecordingUploader()

    summary = _runner(
        tmp_path, manager, uploader, ScriptedMaestro({}), record_screen=True
    ).run(_flows(tmp_path, "home"))

    assert summary.failed_flows == []
    assert not any(n.startswith("Screen Recording") for n in uploader.names())


def test_empty_report_and_log_dirs_are_not_uploaded(tmp_path: Path, caplog) -> None:
    manager = FakeDeviceManager(tmp_path, fail_logs=True)
    uploader = RecordingUploader()

    with caplog.at_level("WARNING"):
        _runner(tmp_path, manager, uploader, ScriptedMaestro({})).run([])

    assert uploader.uploads == []
    assert "No reports were generated." in caplog.text
    assert "No device logs were successfully collected." in caplog.text


def test_upload_failures_are_logged_not_raised(tmp_path: Path) -> None:
    manager = FakeDeviceManager(tmp_path)
    uploader = RecordingUploader(fail=True)

    summary = _runner(
        tmp_path, manager, uploader, ScriptedMaestro({}), output_format="junit"
    ).run(_flows(tmp_path, "home"))

    assert summary.passed_flows
    assert summary.reports_artifact_id is None
    assert len(uploader.uploads) == 2


@pytest.mark.parametrize("booted", [0, 2])
def test_source_device_precondition_aborts_before_any_flow(tmp_path: Path, booted: int) -> None:
    manager = FakeDeviceManager(tmp_path, booted=booted)
    maestro = ScriptedMaestro({})

    with pytest.raises(SourceDeviceError):
        _runner(tmp_path, manager, RecordingUploader(), maestro).run(_flows(tmp_path, "home"))
    assert maestro.commands == []
    assert manager.ops("clone") == []


def test_shards_only_warn(tmp_path: Path, caplog) -> None:
    manager = FakeDeviceManager(tmp_path)

    with caplog.at_level("WARNING"):
        summary = _runner(
            tmp_path, manager, RecordingUploader(), ScriptedMaestro({}), shards=4
        ).run(_flows(tmp_path, "home"))

    assert summary.passed_flows
    assert "Sharding support has been temporarily disabled" in caplog.text
