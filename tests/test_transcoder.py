import threading
from pathlib import Path

import pytest

from transcode_queue.ffmpeg_runner import FfmpegErrorType, FfmpegResult
from transcode_queue.models import FfmpegConfig
from transcode_queue.queue import (
    Bitrate,
    EncodeFailure,
    Resolution,
    TranscodeRequest,
    TranscodeTimeout,
)
from transcode_queue.transcoder import FfmpegTranscoder, build_output_args, output_name


def request(path="clips/a.mp4", resolution=Resolution.P720, bitrate=Bitrate.H264):
    return TranscodeRequest(
        job_id=path,
        path=path,
        source_path=f"/videos/{path}",
        resolution=resolution,
        bitrate=bitrate,
    )


class TestOutputArgs:
    def test_original_original_is_stream_copy(self):
        args = build_output_args(Resolution.ORIGINAL, Bitrate.ORIGINAL)
        assert args == ["-map", "0", "-c", "copy"]

    def test_scaling_uses_even_width(self):
        args = build_output_args(Resolution.P1080, Bitrate.H264)
        assert args[args.index("-vf") + 1] == "scale=-2:1080"
        assert args[args.index("-c:v") + 1] == "libx264"

    def test_original_resolution_not_scaled(self):
        args = build_output_args(Resolution.ORIGINAL, Bitrate.H264)
        assert "-vf" not in args

    def test_fixed_bitrate(self):
        args = build_output_args(Resolution.P720, Bitrate.H264_1000K)
        assert args[args.index("-b:v") + 1] == "1000k"
        assert args[args.index("-maxrate") + 1] == "1000k"

    def test_scaled_original_bitrate_still_reencodes(self):
        args = build_output_args(Resolution.P720, Bitrate.ORIGINAL)
        assert "libx264" in args
        assert "-b:v" not in args

    def test_preset_and_audio(self):
        args = build_output_args(Resolution.P720, Bitrate.H264, preset="fast", audio_codec="aac")
        assert args[args.index("-preset") + 1] == "fast"
        assert args[args.index("-c:a") + 1] == "aac"


class TestOutputName:
    def test_keeps_folder_and_tags_parameters(self):
        assert (
            output_name("clips/a.mp4", Resolution.P720, Bitrate.H264_1000K)
            == "clips/a_720p_h264-1000k.mp4"
        )

    def test_distinct_parameters_distinct_files(self):
        names = {
            output_name("a.mp4", r, b) for r in Resolution for b in Bitrate
        }
        assert len(names) == len(Resolution) * len(Bitrate)


class FakeRunner:
    def __init__(self, result, write_output=True):
        self.result = result
        self.write_output = write_output
        self.calls = []

    def transcode(self, source_path, output_path, output_args, cancel=None):
        self.calls.append((source_path, output_path, output_args, cancel))
        if self.write_output:
            Path(output_path).write_bytes(b"x" * 64)
        return self.result


@pytest.fixture
def transcoder(tmp_path):
    return FfmpegTranscoder(str(tmp_path / "out"), config=FfmpegConfig(preset="veryfast"))


class TestFfmpegTranscoder:
    def test_success_reports_output(self, transcoder, tmp_path, monkeypatch):
        runner = FakeRunner(FfmpegResult(success=True, returncode=0, stderr="", duration_s=2.5))
        monkeypatch.setattr(transcoder, "_runner", lambda: runner)
        cancel = threading.Event()

        output = transcoder.transcode(request(), cancel)

        expected = tmp_path / "out" / "clips" / "a_720p_h264.mp4"
        assert output.output_path == str(expected)
        assert output.output_size == 64
        assert output.duration_s == 2.5
        assert output.metadata == {"resolution": "720p", "bitrate": "h264"}
        source, _, args, passed_cancel = runner.calls[0]
        assert source == "/videos/clips/a.mp4"
        assert passed_cancel is cancel
        assert "veryfast" in args

    def test_encoder_error_raises_encode_failure(self, transcoder, tmp_path, monkeypatch):
        runner = FakeRunner(
            FfmpegResult(
                success=False,
                returncode=1,
                stderr="Invalid data found when processing input",
                duration_s=0.1,
                error_type=FfmpegErrorType.PERMANENT,
            )
        )
        monkeypatch.setattr(transcoder, "_runner", lambda: runner)

        with pytest.raises(EncodeFailure) as exc_info:
            transcoder.transcode(request(), threading.Event())

        assert not isinstance(exc_info.value, TranscodeTimeout)
        assert "Invalid data" in str(exc_info.value)
        # Partial output removed
        assert not (tmp_path / "out" / "clips" / "a_720p_h264.mp4").exists()

    @pytest.mark.parametrize(
        "error_type,reason",
        [(FfmpegErrorType.TIMEOUT, "no_progress"), (FfmpegErrorType.CANCELLED, "cancelled")],
    )
    def test_stopped_run_raises_timeout(self, transcoder, monkeypatch, error_type, reason):
        runner = FakeRunner(
            FfmpegResult(
                success=False,
                returncode=-1,
                stderr="",
                duration_s=5,
                error_type=error_type,
                timeout_reason=reason,
            ),
            write_output=False,
        )
        monkeypatch.setattr(transcoder, "_runner", lambda: runner)

        with pytest.raises(TranscodeTimeout) as exc_info:
            transcoder.transcode(request(), threading.Event())
        assert reason in str(exc_info.value)

    def test_runner_configured_from_settings(self, tmp_path):
        config = FfmpegConfig(no_progress_timeout_s=42, kill_grace_period_s=3, loglevel="error")
        runner = FfmpegTranscoder(str(tmp_path), config=config, job_timeout_s=99)._runner()
        assert runner.global_timeout_s == 99
        assert runner.no_progress_timeout_s == 42
        assert runner.kill_grace_period_s == 3
        assert runner.ffmpeg_loglevel == "error"
