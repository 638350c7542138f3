"""FFmpeg process supervision for whole-file transcodes.

A run is one ``ffmpeg`` child process watched by a poll loop that enforces
three stop conditions: the caller's cancel event, a global wall-clock limit
and a no-progress limit fed by ``-progress pipe:2`` output. Stopping always
takes down the whole process tree (SIGTERM, grace period, SIGKILL) so no
orphaned encoder outlives its job.
"""

import logging
import os
import re
import shlex
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, List, Optional

import imageio_ffmpeg
import psutil

logger = logging.getLogger(__name__)

# stderr lines kept for error reporting and failure artifacts
STDERR_TAIL_LINES = 400

_OUT_TIME_RE = re.compile(r"out_time=(\d+):(\d+):(\d+)(?:\.(\d+))?")
_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
_BITRATE_RE = re.compile(r"bitrate=\s*([\d.]+)kbits/s")
_SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")
_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+)(?:\.(\d+))?")


class FfmpegErrorType(Enum):
    PERMANENT = "permanent"  # bad input, unsupported codec
    TRANSIENT = "transient"  # I/O stall, full disk
    TIMEOUT = "timeout"  # global or no-progress limit hit
    CANCELLED = "cancelled"  # caller set the cancel event


@dataclass
class FfmpegProgress:
    current_time_s: float = 0.0
    total_duration_s: float = 0.0
    fps: float = 0.0
    bitrate_kbps: float = 0.0
    speed: float = 0.0
    frame: int = 0
    last_update: float = 0.0

    @property
    def percent(self) -> Optional[float]:
        if self.total_duration_s <= 0:
            return None
        return min(100.0, 100.0 * self.current_time_s / self.total_duration_s)


@dataclass
class FfmpegResult:
    """Outcome of one ffmpeg run."""

    success: bool
    returncode: int
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    timeout_reason: Optional[str] = None
    final_progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)


def _hms_to_seconds(h: str, m: str, s: str, frac: Optional[str]) -> float:
    seconds = int(h) * 3600 + int(m) * 60 + int(s)
    if frac:
        seconds += float(f"0.{frac}")
    return float(seconds)


def get_ffmpeg_exe() -> str:
    return imageio_ffmpeg.get_ffmpeg_exe()


def check_ffmpeg() -> bool:
    """Verify an ffmpeg binary is available and runs."""
    try:
        subprocess.run(
            [get_ffmpeg_exe(), "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
        return True
    except (FileNotFoundError, RuntimeError, subprocess.CalledProcessError, OSError):
        return False


class FfmpegRunner:
    """Runs a single ffmpeg command under supervision.

    One runner tracks one process at a time; create a runner per job when
    several transcodes run concurrently.

    Example:
        >>> runner = FfmpegRunner(global_timeout_s=3600, no_progress_timeout_s=120)
        >>> result = runner.transcode(
        ...     "in.mp4", "out.mp4", ["-c:v", "libx264"], cancel=threading.Event()
        ... )
        >>> result.success
        True
    """

    def __init__(
        self,
        global_timeout_s: float = 3600,
        no_progress_timeout_s: float = 120,
        kill_grace_period_s: float = 5,
        save_artifacts_on_failure: bool = True,
        ffmpeg_loglevel: str = "info",
        temp_dir: Optional[str] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
        poll_interval_s: float = 0.5,
    ):
        """
        Args:
            global_timeout_s: Maximum wall time for one run
            no_progress_timeout_s: Kill the run if progress stalls this long
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Write the command and stderr on failure
            ffmpeg_loglevel: ffmpeg -loglevel value
            temp_dir: Artifact directory (None uses $TMPDIR or /tmp)
            progress_callback: Called with progress at most every 2 seconds
            poll_interval_s: How often the supervisor checks stop conditions
        """
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.temp_dir = temp_dir
        self.progress_callback = progress_callback
        self.poll_interval_s = poll_interval_s

        self._process: Optional[subprocess.Popen] = None
        self._progress = FfmpegProgress()
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._monitor_thread: Optional[threading.Thread] = None

    def build_command(
        self, source_path: str, output_path: str, output_args: List[str]
    ) -> List[str]:
        return [
            get_ffmpeg_exe(),
            "-y",
            "-nostdin",
            "-i",
            source_path,
            *output_args,
            "-progress",
            "pipe:2",
            "-loglevel",
            self.ffmpeg_loglevel,
            output_path,
        ]

    def transcode(
        self,
        source_path: str,
        output_path: str,
        output_args: List[str],
        cancel: Optional[threading.Event] = None,
        expected_duration: Optional[float] = None,
    ) -> FfmpegResult:
        """Transcode ``source_path`` into ``output_path``.

        Args:
            source_path: Input file
            output_path: Output file (overwritten)
            output_args: Codec/filter arguments placed between input and output
            cancel: Event that stops the run when set
            expected_duration: Source duration for progress percentages

        Returns:
            FfmpegResult; never raises for ffmpeg-side failures
        """
        cmd = self.build_command(source_path, output_path, output_args)
        return self._run_ffmpeg(cmd, cancel=cancel, expected_duration=expected_duration)

    def _run_ffmpeg(
        self,
        cmd: List[str],
        cancel: Optional[threading.Event] = None,
        expected_duration: Optional[float] = None,
    ) -> FfmpegResult:
        start_time = time.time()
        self._progress = FfmpegProgress(
            total_duration_s=expected_duration or 0.0, last_update=start_time
        )
        self._stderr_tail = deque(maxlen=STDERR_TAIL_LINES)

        logger.debug("Running: %s", " ".join(cmd))
        self._process = subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
            bufsize=1,
        )
        self._monitor_thread = threading.Thread(
            target=self._monitor_progress, args=(self._process.stderr,), daemon=True
        )
        self._monitor_thread.start()

        timeout_reason = None
        try:
            while True:
                try:
                    returncode = self._process.wait(timeout=self.poll_interval_s)
                    break
                except subprocess.TimeoutExpired:
                    pass

                now = time.time()
                if cancel is not None and cancel.is_set():
                    timeout_reason = "cancelled"
                elif now - start_time > self.global_timeout_s:
                    timeout_reason = "global"
                elif now - self._progress.last_update > self.no_progress_timeout_s:
                    timeout_reason = "no_progress"

                if timeout_reason:
                    logger.warning(
                        "Stopping ffmpeg pid %d (%s)", self._process.pid, timeout_reason
                    )
                    self._kill_process_tree()
                    returncode = -1
                    break
        except BaseException:
            self._kill_process_tree()
            raise
        finally:
            if self._monitor_thread:
                self._monitor_thread.join(timeout=2)
            self._process = None

        stderr = "".join(self._stderr_tail)
        error_type = None
        if timeout_reason == "cancelled":
            error_type = FfmpegErrorType.CANCELLED
        elif timeout_reason:
            error_type = FfmpegErrorType.TIMEOUT
        elif returncode != 0:
            error_type = self._classify_error(stderr)

        artifacts = []
        if returncode != 0 and self.save_artifacts_on_failure:
            artifacts = self._save_failure_artifacts(cmd, stderr)

        return FfmpegResult(
            success=(returncode == 0),
            returncode=returncode,
            stderr=stderr,
            duration_s=time.time() - start_time,
            error_type=error_type,
            timeout_reason=timeout_reason,
            final_progress=self._progress,
            artifacts_saved=artifacts,
        )

    def _parse_progress_line(self, line: str) -> None:
        """Update progress from one line of ffmpeg stderr.

        Progress blocks look like::

            frame=123
            fps=25.00
            bitrate=1234.5kbits/s
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue
        """
        if not self._progress.total_duration_s:
            match = _DURATION_RE.search(line)
            if match:
                self._progress.total_duration_s = _hms_to_seconds(*match.groups())

        match = _OUT_TIME_RE.search(line)
        if match:
            self._progress.current_time_s = _hms_to_seconds(*match.groups())
            self._progress.last_update = time.time()
            return

        for regex, attr, cast in (
            (_FRAME_RE, "frame", int),
            (_FPS_RE, "fps", float),
            (_BITRATE_RE, "bitrate_kbps", float),
            (_SPEED_RE, "speed", float),
        ):
            match = regex.search(line)
            if match:
                setattr(self._progress, attr, cast(match.group(1)))
                self._progress.last_update = time.time()

    def _monitor_progress(self, stderr_stream) -> None:
        last_callback = 0.0
        try:
            for line in stderr_stream:
                self._stderr_tail.append(line)
                self._parse_progress_line(line)

                now = time.time()
                if self.progress_callback and now - last_callback >= 2.0:
                    last_callback = now
                    try:
                        self.progress_callback(self._progress)
                    except Exception:
                        logger.exception("Progress callback failed")
        except (OSError, ValueError) as e:
            # Stream closed under us by a kill
            logger.debug("Progress monitor stopped: %s", e)

    def _kill_process_tree(self) -> None:
        """SIGTERM ffmpeg and its children, then SIGKILL survivors after the grace period."""
        if not self._process:
            return

        try:
            parent = psutil.Process(self._process.pid)
        except psutil.NoSuchProcess:
            return

        procs = [parent]
        try:
            procs.extend(parent.children(recursive=True))
        except psutil.NoSuchProcess:
            pass

        for p in procs:
            try:
                p.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for p in alive:
            try:
                p.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            self._process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.error("ffmpeg pid %d did not exit after SIGKILL", self._process.pid)

    def _classify_error(self, stderr: str) -> FfmpegErrorType:
        stderr_lower = stderr.lower()

        permanent_patterns = [
            "no such file or directory",
            "invalid data found",
            "invalid argument",
            "permission denied",
            "unsupported codec",
            "invalid codec",
            "moov atom not found",
            "end of file",
            "corrupt",
        ]
        if any(p in stderr_lower for p in permanent_patterns):
            return FfmpegErrorType.PERMANENT

        # Everything else (I/O errors, full disks, unknown) may succeed on retry
        return FfmpegErrorType.TRANSIENT

    def _save_failure_artifacts(self, cmd: List[str], stderr: str) -> List[Path]:
        """Write ``ffmpeg_error_<ts>.log`` and a re-runnable ``ffmpeg_cmd_<ts>.sh``."""
        artifacts = []
        temp_dir = self._get_temp_dir()
        stamp = f"{int(time.time())}_{os.getpid()}_{threading.get_ident()}"

        log_path = temp_dir / f"ffmpeg_error_{stamp}.log"
        try:
            with open(log_path, "w") as f:
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write(f"COMMAND:\n{' '.join(cmd)}\n\n")
                f.write(f"STDERR:\n{stderr or '(empty)'}\n")
            artifacts.append(log_path)
        except OSError as e:
            logger.warning("Failed to save ffmpeg error log: %s", e)

        script_path = temp_dir / f"ffmpeg_cmd_{stamp}.sh"
        try:
            quoted = [shlex.quote(arg) for arg in cmd]
            with open(script_path, "w") as f:
                f.write("#!/bin/bash\n")
                f.write(" \\\n  ".join(quoted) + "\n")
            script_path.chmod(0o755)
            artifacts.append(script_path)
        except OSError as e:
            logger.warning("Failed to save ffmpeg command script: %s", e)

        if artifacts:
            logger.info("Saved ffmpeg failure artifacts to %s", temp_dir)
        return artifacts

    def _get_temp_dir(self) -> Path:
        if self.temp_dir:
            temp_dir = Path(self.temp_dir)
        elif "TMPDIR" in os.environ:
            temp_dir = Path(os.environ["TMPDIR"])
        else:
            temp_dir = Path("/tmp")
        temp_dir.mkdir(parents=True, exist_ok=True)
        return temp_dir
