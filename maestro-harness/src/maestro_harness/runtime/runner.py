"""Maestro test runner: one fresh device per flow attempt, bounded retries.

Lifecycle per run:

  find source device -> stop it -> for each flow:
      for each attempt: clone -> boot -> [record] -> maestro test -> logs -> delete
  -> upload reports / device logs -> raise if any flow never passed
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

from maestro_harness.runtime.artifacts import ArtifactUploader
from maestro_harness.runtime.devices.base import (
    PLATFORM_PROPER_NOUNS,
    DeviceHandle,
    DeviceManager,
    Platform,
    SourceDevice,
)
from maestro_harness.runtime.lifecycle import with_clean_device
from maestro_harness.runtime.outcome import Outcome
from maestro_harness.runtime.recording import RecordingResult, maybe_with_recording

logger = logging.getLogger(__name__)

OUTPUT_FORMAT_EXTENSIONS: dict[str, str] = {
    "junit": "xml",
    "html": "html",
}


class MaestroTestError(RuntimeError):
    """The maestro CLI exited with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int) -> None:
        super().__init__(f"Command failed with exit code {returncode}: {' '.join(command)}")
        self.command = list(command)
        self.returncode = returncode


class FlowsFailedError(RuntimeError):
    """At least one flow never passed within its allowed attempts."""

    def __init__(self, message: str, summary: "RunSummary") -> None:
        super().__init__(message)
        self.summary = summary


@dataclass(frozen=True)
class RunnerConfig:
    platform: Platform
    working_directory: Path
    # Total attempts per flow (first run included).
    retries: int = 1
    output_format: Optional[str] = None
    record_screen: bool = False
    shards: int = 1
    device_name_prefix: str = "maestro-device"
    maestro_bin: str = "maestro"

    @property
    def attempts_per_flow(self) -> int:
        return max(1, int(self.retries))


@dataclass(frozen=True)
class AttemptResult:
    flow_index: int
    attempt_count: int
    passed: bool
    logs_path: Optional[Path] = None
    recording_path: Optional[Path] = None


@dataclass
class RunSummary:
    reports_dir: Path
    device_logs_dir: Path
    passed_flows: list[Path] = field(default_factory=list)
    failed_flows: list[Path] = field(default_factory=list)
    attempts: list[AttemptResult] = field(default_factory=list)
    reports_artifact_id: Optional[str] = None
    junit_report_directory: Optional[Path] = None


def build_maestro_test_command(
    *,
    maestro_bin: str,
    flow_path: Path,
    output_format: Optional[str],
    output_path: Path,
) -> list[str]:
    """`maestro test [--format F --output PATH] <flow>`; output flags only with a format."""

    cmd = [maestro_bin, "test"]
    if output_format:
        cmd += ["--format", output_format, "--output", str(output_path)]
    cmd.append(str(flow_path))
    return cmd


def report_filename(output_format: Optional[str], flow_index: int) -> str:
    stem = f"{output_format + '-' if output_format else ''}report-flow-{flow_index + 1}"
    ext = OUTPUT_FORMAT_EXTENSIONS.get(output_format) if output_format else None
    return f"{stem}.{ext}" if ext else stem


def run_streaming(
    command: Sequence[str], *, cwd: Path, env: Optional[Mapping[str, str]] = None
) -> None:
    """Run `command`, forwarding its combined output to the log line by line."""

    logger.info("Running: %s", " ".join(command))
    process = subprocess.Popen(
        list(command),
        cwd=str(cwd),
        env=dict(env) if env is not None else None,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        text=True,
        errors="replace",
    )
    assert process.stdout is not None
    with process.stdout:
        for line in iter(process.stdout.readline, ""):
            logger.info("%s", line.rstrip("\n"))
    returncode = process.wait()
    if returncode != 0:
        raise MaestroTestError(command, returncode)


class MaestroTestRunner:
    def __init__(
        self,
        *,
        config: RunnerConfig,
        manager: DeviceManager,
        uploader: ArtifactUploader,
        env: Optional[Mapping[str, str]] = None,
        invoke: Optional[Callable[[Sequence[str]], None]] = None,
        temp_root: Optional[Path] = None,
    ) -> None:
        self._config = config
        self._manager = manager
        self._uploader = uploader
        self._env = dict(env) if env is not None else None
        self._invoke = invoke or self._run_maestro
        self._temp_root = temp_root

    @property
    def config(self) -> RunnerConfig:
        return self._config

    def _run_maestro(self, command: Sequence[str]) -> None:
        run_streaming(command, cwd=self._config.working_directory, env=self._env)

    def _rel(self, path: Path) -> str:
        return os.path.relpath(path, self._config.working_directory)

    def _mkdtemp(self, prefix: str) -> Path:
        return Path(tempfile.mkdtemp(prefix=prefix, dir=self._temp_root))

    # ------------------------------------------------------------------ run

    def run(self, flow_paths: Sequence[Path]) -> RunSummary:
        """Run every flow; raise FlowsFailedError (after uploads) if any never passed."""

        cfg = self._config
        if cfg.shards > 1:
            logger.warning(
                "Sharding support has been temporarily disabled. Running tests on a single shard."
            )

        # Raises SourceDeviceError before any flow runs.
        source = self._manager.find_source_device()
        self._manager.prepare_source_device(source)

        # Retried flows overwrite their report and logs, so only the last attempt survives.
        summary = RunSummary(
            reports_dir=self._mkdtemp("maestro-reports-"),
            device_logs_dir=self._mkdtemp("device-logs-"),
        )

        for flow_index, flow_path in enumerate(flow_paths):
            logger.info("")
            passed = self._run_flow(
                source=source, flow_index=flow_index, flow_path=Path(flow_path), summary=summary
            )
            (summary.passed_flows if passed else summary.failed_flows).append(Path(flow_path))

        logger.info("")
        self._upload_reports(summary)
        self._upload_device_logs(summary)
        logger.info("")

        if summary.failed_flows:
            raise FlowsFailedError(
                "Some Maestro tests failed:\n- "
                + "\n- ".join(self._rel(p) for p in summary.failed_flows),
                summary,
            )
        logger.info("All Maestro tests passed.")
        return summary

    # ------------------------------------------------------------- per flow

    def _run_flow(
        self,
        *,
        source: SourceDevice,
        flow_index: int,
        flow_path: Path,
        summary: RunSummary,
    ) -> bool:
        cfg = self._config
        attempts = cfg.attempts_per_flow
        output_path = summary.reports_dir / report_filename(cfg.output_format, flow_index)
        command = build_maestro_test_command(
            maestro_bin=cfg.maestro_bin,
            flow_path=flow_path,
            output_format=cfg.output_format,
            output_path=output_path,
        )

        for attempt_count in range(attempts):
            device_name = f"{cfg.device_name_prefix}-{flow_index}-{attempt_count}"

            def _on_device(handle: DeviceHandle) -> RecordingResult[None]:
                return maybe_with_recording(
                    should_record=cfg.record_screen,
                    manager=self._manager,
                    handle=handle,
                    fn=lambda: self._invoke(command),
                )

            result = with_clean_device(
                self._manager, source=source, device_name=device_name, fn=_on_device
            )

            if result.fn_outcome.ok() and result.fn_outcome.value is not None:
                test_outcome: Outcome[None] = result.fn_outcome.value.fn_outcome
                recording_outcome: Outcome[Path] = result.fn_outcome.value.recording_outcome
            else:
                # The device never came up; the test did not run.
                test_outcome = Outcome.failure(
                    result.fn_outcome.error or RuntimeError("device setup failed")
                )
                recording_outcome = Outcome.success(None)

            logs_path = self._store_device_logs(
                result.logs_outcome, flow_index=flow_index, logs_dir=summary.device_logs_dir
            )

            passed = test_outcome.ok()
            is_last_attempt = passed or attempt_count == attempts - 1
            recording_path = recording_outcome.value if recording_outcome.ok() else None
            summary.attempts.append(
                AttemptResult(
                    flow_index=flow_index,
                    attempt_count=attempt_count,
                    passed=passed,
                    logs_path=logs_path,
                    recording_path=recording_path,
                )
            )

            if is_last_attempt and recording_path is not None:
                self._upload_recording(recording_path, flow_index=flow_index, flow_path=flow_path)

            if passed:
                logger.info("Test passed.")
                return True

            if attempt_count < attempts - 1:
                logger.info("Attempt %d failed: %s", attempt_count + 1, test_outcome.error)
                logger.info("Retrying test...")
                logger.info("")
                continue

            logger.error("Test errored: %s", test_outcome.error)
        return False

    def _store_device_logs(
        self, logs_outcome: Optional[Outcome[Path]], *, flow_index: int, logs_dir: Path
    ) -> Optional[Path]:
        if logs_outcome is None:
            return None
        if not logs_outcome.ok():
            logger.error(
                "Failed to collect device logs: %s", logs_outcome.error, exc_info=logs_outcome.error
            )
            return None

        source = logs_outcome.value
        if source is None:
            return None
        destination = logs_dir / f"flow-{flow_index}{source.suffix}"
        try:
            if destination.is_dir() and not destination.is_symlink():
                shutil.rmtree(destination)
            elif destination.exists() or destination.is_symlink():
                destination.unlink()
            shutil.move(str(source), str(destination))
        except OSError as e:
            logger.warning("Failed to prepare device logs for upload: %s", e, exc_info=e)
            return None
        return destination

    # -------------------------------------------------------------- uploads

    def _upload_recording(self, recording_path: Path, *, flow_index: int, flow_path: Path) -> None:
        try:
            self._uploader.upload(
                name=f"Screen Recording ({flow_index}-{flow_path.stem})",
                paths=[recording_path],
            )
        except Exception as e:
            logger.warning("Failed to upload screen recording: %s", e, exc_info=e)

    def _upload_reports(self, summary: RunSummary) -> None:
        cfg = self._config
        if not any(summary.reports_dir.iterdir()):
            logger.warning("No reports were generated.")
        else:
            logger.info("Uploading reports...")
            try:
                summary.reports_artifact_id = self._uploader.upload(
                    name=(
                        f"{PLATFORM_PROPER_NOUNS[cfg.platform]} Maestro Test Reports "
                        f"({cfg.output_format})"
                    ),
                    paths=[summary.reports_dir],
                )
            except Exception as e:
                logger.error("Failed to upload reports: %s", e, exc_info=e)

        if cfg.output_format == "junit":
            summary.junit_report_directory = summary.reports_dir

    def _upload_device_logs(self, summary: RunSummary) -> None:
        if not any(summary.device_logs_dir.iterdir()):
            logger.warning("No device logs were successfully collected.")
            return
        logger.info("Uploading device logs...")
        try:
            self._uploader.upload(name="Maestro Test Device Logs", paths=[summary.device_logs_dir])
        except Exception as e:
            logger.error("Failed to upload device logs: %s", e, exc_info=e)
