"""Unit tests for the supervised ffmpeg runner.

Process supervision is exercised with small Python child processes standing
in for ffmpeg, so no encoder is needed.
"""

import shlex
import subprocess
import sys
import threading
from unittest.mock import patch

import pytest

from transcode_queue import ffmpeg_runner
from transcode_queue.ffmpeg_runner import (
    FfmpegErrorType,
    FfmpegProgress,
    FfmpegResult,
    FfmpegRunner,
)


def py_cmd(code):
    return [sys.executable, "-c", code]


class TestProgressParsing:
    """Test FFmpeg progress parsing from stderr."""

    def test_parse_progress_block(self):
        runner = FfmpegRunner()
        runner._progress = FfmpegProgress()

        runner._monitor_progress(
            iter(["frame=  123\n", "fps=25.00\n", "out_time=00:00:05.50\n", "speed=2.5x\n"])
        )

        assert runner._progress.current_time_s == pytest.approx(5.5)
        assert runner._progress.frame == 123
        assert runner._progress.fps == pytest.approx(25.0)
        assert runner._progress.speed == pytest.approx(2.5)

    def test_parse_microsecond_out_time(self):
        """-progress output carries six fractional digits."""
        runner = FfmpegRunner()
        runner._progress = FfmpegProgress()
        runner._monitor_progress(iter(["out_time=01:23:45.670000\n"]))
        assert runner._progress.current_time_s == pytest.approx(3600 + 23 * 60 + 45.67)

    def test_duration_from_banner_sets_percent(self):
        runner = FfmpegRunner()
        runner._progress = FfmpegProgress()
        runner._monitor_progress(
            iter(["  Duration: 00:00:40.00, start: 0.000000\n", "out_time=00:00:10.000000\n"])
        )
        assert runner._progress.total_duration_s == pytest.approx(40.0)
        assert runner._progress.percent == pytest.approx(25.0)

    def test_percent_unknown_without_duration(self):
        assert FfmpegProgress(current_time_s=3).percent is None

    def test_stderr_tail_is_kept(self):
        runner = FfmpegRunner()
        runner._monitor_progress(iter(["line one\n", "line two\n"]))
        assert list(runner._stderr_tail) == ["line one\n", "line two\n"]

    def test_progress_callback_invoked(self):
        seen = []
        runner = FfmpegRunner(progress_callback=lambda p: seen.append(p.current_time_s))
        runner._progress = FfmpegProgress()

        with patch("time.time", return_value=10.0):
            runner._monitor_progress(iter(["out_time=00:00:02.00\n"]))

        assert seen == [pytest.approx(2.0)]

    def test_callback_errors_do_not_stop_monitoring(self):
        def boom(progress):
            raise RuntimeError("callback bug")

        runner = FfmpegRunner(progress_callback=boom)
        runner._progress = FfmpegProgress()
        with patch("time.time", return_value=10.0):
            runner._monitor_progress(iter(["out_time=00:00:02.00\n", "frame=7\n"]))
        assert runner._progress.frame == 7


class TestErrorClassification:
    """Test FFmpeg error classification."""

    @pytest.mark.parametrize(
        "stderr",
        [
            "input.mp4: No such file or directory",
            "Invalid data found when processing input",
            "Permission denied",
            "Unsupported codec for output stream",
            "moov atom not found",
        ],
    )
    def test_classify_permanent_errors(self, stderr):
        assert FfmpegRunner()._classify_error(stderr) == FfmpegErrorType.PERMANENT

    @pytest.mark.parametrize(
        "stderr",
        ["I/O error reading input", "Disk full", "Some unknown error message"],
    )
    def test_classify_transient_errors(self, stderr):
        assert FfmpegRunner()._classify_error(stderr) == FfmpegErrorType.TRANSIENT


class TestCommandGeneration:
    def test_build_command_layout(self):
        runner = FfmpegRunner(ffmpeg_loglevel="error")
        with patch.object(ffmpeg_runner, "get_ffmpeg_exe", return_value="ffmpeg"):
            cmd = runner.build_command("in.mp4", "out.mp4", ["-c:v", "libx264"])

        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-i") + 1] == "in.mp4"
        assert cmd.index("-i") < cmd.index("-c:v")
        assert cmd[cmd.index("-progress") + 1] == "pipe:2"
        assert cmd[cmd.index("-loglevel") + 1] == "error"
        assert cmd[-1] == "out.mp4"
        assert "-y" in cmd

    def test_transcode_passes_cancel_event(self):
        runner = FfmpegRunner()
        captured = {}

        def fake_run(cmd, cancel=None, expected_duration=None):
            captured["cmd"] = cmd
            captured["cancel"] = cancel
            return FfmpegResult(success=True, returncode=0, stderr="", duration_s=1.0)

        runner._run_ffmpeg = fake_run
        cancel = threading.Event()
        with patch.object(ffmpeg_runner, "get_ffmpeg_exe", return_value="ffmpeg"):
            result = runner.transcode("in.mp4", "out.mp4", ["-c", "copy"], cancel=cancel)

        assert result.success
        assert captured["cancel"] is cancel
        assert "copy" in captured["cmd"]


class TestProcessSupervision:
    def test_successful_run(self, tmp_path):
        runner = FfmpegRunner(temp_dir=str(tmp_path), poll_interval_s=0.05)
        result = runner._run_ffmpeg(
            py_cmd("import sys; sys.stderr.write('out_time=00:00:01.000000\\n')")
        )
        assert result.success
        assert result.returncode == 0
        assert result.error_type is None
        assert result.final_progress.current_time_s == pytest.approx(1.0)
        assert result.artifacts_saved == []

    def test_failure_classified_and_artifacts_saved(self, tmp_path):
        runner = FfmpegRunner(temp_dir=str(tmp_path), poll_interval_s=0.05)
        result = runner._run_ffmpeg(
            py_cmd(
                "import sys; sys.stderr.write('in.mp4: No such file or directory\\n'); "
                "sys.exit(1)"
            )
        )
        assert not result.success
        assert result.returncode == 1
        assert result.error_type == FfmpegErrorType.PERMANENT
        assert "No such file" in result.stderr
        assert len(result.artifacts_saved) == 2
        assert all(p.exists() for p in result.artifacts_saved)

    def test_command_script_quotes_awkward_paths(self, tmp_path):
        runner = FfmpegRunner(temp_dir=str(tmp_path))
        cmd = ["ffmpeg", "-i", "/videos/it's $HOME `x`.mp4", "-c", "copy", "out dir/o.mp4"]

        artifacts = runner._save_failure_artifacts(cmd, "boom")

        script = next(p for p in artifacts if p.suffix == ".sh")
        body = script.read_text().split("\n", 1)[1].replace(" \\\n  ", " ")
        assert shlex.split(body) == cmd

    def test_no_artifacts_when_disabled(self, tmp_path):
        runner = FfmpegRunner(
            temp_dir=str(tmp_path), save_artifacts_on_failure=False, poll_interval_s=0.05
        )
        result = runner._run_ffmpeg(py_cmd("import sys; sys.exit(3)"))
        assert result.returncode == 3
        assert result.artifacts_saved == []

    def test_cancel_event_kills_process(self, tmp_path):
        runner = FfmpegRunner(
            temp_dir=str(tmp_path), kill_grace_period_s=1, poll_interval_s=0.05
        )
        cancel = threading.Event()
        threading.Timer(0.2, cancel.set).start()

        result = runner._run_ffmpeg(
            py_cmd(
                "import sys, time\n"
                "while True:\n"
                "    sys.stderr.write('out_time=00:00:01.000000\\n'); sys.stderr.flush()\n"
                "    time.sleep(0.05)\n"
            ),
            cancel=cancel,
        )

        assert not result.success
        assert result.error_type == FfmpegErrorType.CANCELLED
        assert result.timeout_reason == "cancelled"
        assert result.duration_s < 10

    def test_global_timeout(self, tmp_path):
        runner = FfmpegRunner(
            global_timeout_s=0.3,
            temp_dir=str(tmp_path),
            kill_grace_period_s=1,
            poll_interval_s=0.05,
        )
        result = runner._run_ffmpeg(py_cmd("import time; time.sleep(30)"))
        assert result.error_type == FfmpegErrorType.TIMEOUT
        assert result.timeout_reason == "global"

    def test_no_progress_timeout(self, tmp_path):
        runner = FfmpegRunner(
            global_timeout_s=30,
            no_progress_timeout_s=0.3,
            temp_dir=str(tmp_path),
            kill_grace_period_s=1,
            poll_interval_s=0.05,
        )
        result = runner._run_ffmpeg(py_cmd("import time; time.sleep(30)"))
        assert result.error_type == FfmpegErrorType.TIMEOUT
        assert result.timeout_reason == "no_progress"


class TestCheckFfmpeg:
    def test_found(self):
        with patch.object(ffmpeg_runner, "get_ffmpeg_exe", return_value="ffmpeg"), patch(
            "subprocess.run"
        ) as mock_run:
            assert ffmpeg_runner.check_ffmpeg() is True
        mock_run.assert_called_once()

    def test_binary_missing(self):
        with patch.object(ffmpeg_runner, "get_ffmpeg_exe", return_value="ffmpeg"), patch(
            "subprocess.run", side_effect=FileNotFoundError
        ):
            assert ffmpeg_runner.check_ffmpeg() is False

    def test_binary_fails(self):
        with patch.object(ffmpeg_runner, "get_ffmpeg_exe", return_value="ffmpeg"), patch(
            "subprocess.run", side_effect=subprocess.CalledProcessError(1, "ffmpeg")
        ):
            assert ffmpeg_runner.check_ffmpeg() is False

    def test_imageio_cannot_provide_binary(self):
        with patch.object(ffmpeg_runner, "get_ffmpeg_exe", side_effect=RuntimeError):
            assert ffmpeg_runner.check_ffmpeg() is False
