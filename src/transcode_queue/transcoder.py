"""FFmpeg-backed transcoder used by the worker pool."""

import logging
import re
import threading
from pathlib import Path
from typing import List, Optional

from .ffmpeg_runner import FfmpegErrorType, FfmpegRunner
from .models import FfmpegConfig
from .queue.backends import Transcoder
from .queue.errors import EncodeFailure, TranscodeTimeout
from .queue.models import Bitrate, Resolution, TranscodeOutput, TranscodeRequest

logger = logging.getLogger(__name__)

# stderr characters carried into the job's error field
ERROR_TAIL_CHARS = 300


def output_name(path: str, resolution: Resolution, bitrate: Bitrate) -> str:
    """Output file path (relative) for a job, e.g. ``clips/a_720p_h264-1000k.mp4``."""
    tag = re.sub(r"[^A-Za-z0-9_]+", "-", f"{resolution.value}_{bitrate.value}")
    src = Path(path)
    return (src.parent / f"{src.stem}_{tag}.mp4").as_posix()


def build_output_args(
    resolution: Resolution,
    bitrate: Bitrate,
    preset: str = "medium",
    audio_codec: str = "copy",
) -> List[str]:
    """ffmpeg output arguments for a (resolution, bitrate) pair.

    Original/Original is a stream copy; anything else re-encodes with libx264.
    """
    if resolution == Resolution.ORIGINAL and bitrate == Bitrate.ORIGINAL:
        return ["-map", "0", "-c", "copy"]

    args = ["-c:v", "libx264", "-preset", preset, "-pix_fmt", "yuv420p"]
    if resolution.height:
        # -2 keeps the width even, which libx264 requires
        args.extend(["-vf", f"scale=-2:{resolution.height}"])
    if bitrate == Bitrate.H264_1000K:
        args.extend(["-b:v", "1000k", "-maxrate", "1000k", "-bufsize", "2000k"])
    args.extend(["-c:a", audio_codec, "-movflags", "+faststart"])
    return args


class FfmpegTranscoder(Transcoder):
    """Converts one job with a supervised ffmpeg process.

    The worker pool enforces the job timeout by setting ``cancel``; the
    runner's own global timeout is a backstop at the same limit.
    """

    def __init__(
        self,
        output_dir: str,
        config: Optional[FfmpegConfig] = None,
        job_timeout_s: float = 3600.0,
    ):
        self.output_dir = Path(output_dir)
        self.config = config or FfmpegConfig()
        self.job_timeout_s = job_timeout_s

    def _runner(self) -> FfmpegRunner:
        return FfmpegRunner(
            global_timeout_s=self.job_timeout_s,
            no_progress_timeout_s=self.config.no_progress_timeout_s,
            kill_grace_period_s=self.config.kill_grace_period_s,
            save_artifacts_on_failure=self.config.save_artifacts_on_failure,
            ffmpeg_loglevel=self.config.loglevel,
            temp_dir=self.config.temp_dir,
        )

    def transcode(self, request: TranscodeRequest, cancel: threading.Event) -> TranscodeOutput:
        output_path = self.output_dir / output_name(
            request.path, request.resolution, request.bitrate
        )
        output_path.parent.mkdir(parents=True, exist_ok=True)
        args = build_output_args(
            request.resolution,
            request.bitrate,
            preset=self.config.preset,
            audio_codec=self.config.audio_codec,
        )

        logger.info(
            "Transcoding %s -> %s (%s, %s)",
            request.path,
            output_path,
            request.resolution.value,
            request.bitrate.value,
        )
        result = self._runner().transcode(
            request.source_path, str(output_path), args, cancel=cancel
        )

        if not result.success:
            # Never leave a truncated output behind
            output_path.unlink(missing_ok=True)
            if result.error_type in (FfmpegErrorType.TIMEOUT, FfmpegErrorType.CANCELLED):
                raise TranscodeTimeout(
                    f"ffmpeg stopped ({result.timeout_reason}) after {result.duration_s:.0f}s",
                    job_id=request.job_id,
                )
            tail = result.stderr.strip()[-ERROR_TAIL_CHARS:]
            raise EncodeFailure(
                f"ffmpeg exited with {result.returncode} "
                f"({result.error_type.value if result.error_type else 'unknown'}): {tail}",
                job_id=request.job_id,
            )

        return TranscodeOutput(
            output_path=str(output_path),
            output_size=output_path.stat().st_size,
            duration_s=result.duration_s,
            metadata={
                "resolution": request.resolution.value,
                "bitrate": request.bitrate.value,
            },
        )
