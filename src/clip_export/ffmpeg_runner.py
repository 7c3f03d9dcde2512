"""FFmpeg runner with process isolation, timeout enforcement, and progress monitoring.

This module turns a trim/scale request into one ffmpeg child process and
watches it until it exits.

Key Features:
- Process isolation with subprocess.Popen
- Dual timeout enforcement (global + no-progress)
- Progress parsed from ``-progress pipe:1`` key=value lines on stdout
- Bounded stderr tail kept as diagnostic output
- Cross-platform process tree cleanup (POSIX + Windows)
- Error classification (informational)
- Artifact preservation on failure
"""

import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

from .errors import EngineFailure, EngineNotFound
from .models import TranscodeConfig

logger = logging.getLogger(__name__)

# Lines of stderr kept for error messages.
STDERR_TAIL_LINES = 50

# How often the supervising thread checks timeouts.
SUPERVISE_INTERVAL_S = 0.25


class FfmpegErrorType(Enum):
    """FFmpeg error classification."""
    PERMANENT = "permanent"     # File not found, invalid format, codec error
    TRANSIENT = "transient"     # Network timeout, disk I/O stall
    TIMEOUT = "timeout"         # Process timeout (global or no-progress)


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0      # Output position in seconds
    total_duration_s: float = 0.0    # Expected output duration
    fps: float = 0.0
    bitrate_kbps: float = 0.0
    speed: float = 0.0               # Processing speed multiplier (e.g., 2.5x)
    frame: int = 0
    finished: bool = False           # progress=end seen
    last_update: float = 0.0         # Monotonic time of last update

    @property
    def fraction(self) -> float:
        if self.finished:
            return 1.0
        if self.total_duration_s <= 0:
            return 0.0
        return max(0.0, min(1.0, self.current_time_s / self.total_duration_s))


@dataclass
class FfmpegResult:
    """Result of a successful FFmpeg execution."""
    returncode: int
    stderr: str
    duration_s: float
    output_path: Path
    final_progress: FfmpegProgress = field(default_factory=FfmpegProgress)


def parse_progress_line(line: str, progress: FfmpegProgress) -> bool:
    """Apply one ``key=value`` line from ``-progress`` output.

    Returns:
        True if the line moved the output position or ended the run
    """
    key, sep, value = line.strip().partition("=")
    if not sep:
        return False
    value = value.strip()

    if key in ("out_time_us", "out_time_ms"):
        # Both keys carry microseconds.
        try:
            micros = int(value)
        except ValueError:
            return False
        if micros < 0:
            return False
        progress.current_time_s = micros / 1_000_000
        return True

    if key == "out_time":
        seconds = _parse_timestamp(value)
        if seconds is None:
            return False
        progress.current_time_s = seconds
        return True

    if key == "progress":
        if value == "end":
            progress.finished = True
            return True
        return False

    try:
        if key == "frame":
            progress.frame = int(value)
        elif key == "fps":
            progress.fps = float(value)
        elif key == "bitrate" and value.endswith("kbits/s"):
            progress.bitrate_kbps = float(value[: -len("kbits/s")])
        elif key == "speed" and value.endswith("x"):
            progress.speed = float(value[:-1])
    except ValueError:
        pass
    return False


def _parse_timestamp(value: str) -> Optional[float]:
    """Parse ``HH:MM:SS.micro`` into seconds; None for N/A or negatives."""
    if value.startswith("-"):
        return None
    parts = value.split(":")
    if len(parts) != 3:
        return None
    try:
        hours, minutes = int(parts[0]), int(parts[1])
        seconds = float(parts[2])
    except ValueError:
        return None
    return hours * 3600 + minutes * 60 + seconds


def build_scale_filter(width: int, height: int) -> str:
    """Fit inside WxH preserving aspect ratio, then pad to exactly WxH."""
    return (
        f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,"
        "setsar=1"
    )


class FfmpegRunner:
    """FFmpeg orchestration with timeout and zombie prevention.

    Example:
        >>> runner = FfmpegRunner.from_config(TranscodeConfig())
        >>> result = runner.transcode_clip(
        ...     source_path="input.mp4",
        ...     dest_path="output.mp4",
        ...     start_time=2.0,
        ...     duration=4.0,
        ...     width=850,
        ...     height=480,
        ...     remove_audio=True,
        ...     progress_callback=lambda f: print(f"{f:.0%}"),
        ... )
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        video_codec: str = "libx264",
        preset: str = "medium",
        crf: int = 23,
        pixel_format: str = "yuv420p",
        audio_codec: str = "aac",
        audio_bitrate: str = "128k",
        faststart: bool = True,
        global_timeout_s: int = 600,
        no_progress_timeout_s: int = 120,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = True,
        ffmpeg_loglevel: str = "error",
        temp_dir: Optional[str] = None,
    ):
        """Initialize FFmpeg runner.

        Args:
            ffmpeg_path: ffmpeg executable (None = imageio-ffmpeg binary)
            video_codec: Video codec (default: libx264)
            preset: Encoding preset (default: medium)
            crf: Constant Rate Factor (0-51, lower = better quality)
            pixel_format: Output pixel format
            audio_codec: Audio codec when audio is kept
            audio_bitrate: Audio bitrate when audio is kept
            faststart: Add ``-movflags +faststart``
            global_timeout_s: Maximum duration for one FFmpeg run
            no_progress_timeout_s: Timeout if no progress update in N seconds
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Save logs and commands on failure
            ffmpeg_loglevel: FFmpeg log level (error, warning, info, verbose)
            temp_dir: Directory for failure artifacts (None = system temp)
        """
        self.ffmpeg_path = ffmpeg_path
        self.video_codec = video_codec
        self.preset = preset
        self.crf = crf
        self.pixel_format = pixel_format
        self.audio_codec = audio_codec
        self.audio_bitrate = audio_bitrate
        self.faststart = faststart
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.temp_dir = temp_dir

    @classmethod
    def from_config(cls, config: TranscodeConfig) -> "FfmpegRunner":
        return cls(**config.model_dump())

    def build_transcode_cmd(
        self,
        source_path: str,
        dest_path: str,
        start_time: float,
        duration: float,
        width: int,
        height: int,
        remove_audio: bool,
    ) -> List[str]:
        """Build the ffmpeg argument list for one clip.

        Uses fast seek before input (-ss before -i) and -t after it.
        """
        cmd = [
            self.get_ffmpeg_exe(),
            "-y",
            "-hide_banner",
            "-ss", _format_seconds(start_time),
            "-i", str(source_path),
            "-t", _format_seconds(duration),
            "-vf", build_scale_filter(width, height),
            "-map", "0:v:0",
        ]

        if remove_audio:
            cmd.append("-an")
        else:
            # Trailing ? keeps silent sources working.
            cmd.extend([
                "-map", "0:a:0?",
                "-c:a", self.audio_codec,
                "-b:a", self.audio_bitrate,
            ])

        cmd.extend([
            "-c:v", self.video_codec,
            "-preset", self.preset,
            "-crf", str(self.crf),
            "-pix_fmt", self.pixel_format,
        ])
        if self.faststart:
            cmd.extend(["-movflags", "+faststart"])

        cmd.extend([
            "-progress", "pipe:1",
            "-nostats",
            "-loglevel", self.ffmpeg_loglevel,
            str(dest_path),
        ])
        return cmd

    def transcode_clip(
        self,
        source_path: str,
        dest_path: str,
        start_time: float,
        duration: float,
        width: int,
        height: int,
        remove_audio: bool,
        progress_callback: Optional[Callable[[float], None]] = None,
    ) -> FfmpegResult:
        """Trim, scale and encode one clip.

        Args:
            source_path: Local input video
            dest_path: Local output MP4
            start_time: Trim start in seconds
            duration: Trim length in seconds
            width: Output width
            height: Output height
            remove_audio: Drop audio entirely
            progress_callback: Called with fractions in [0.0, 1.0]

        Returns:
            FfmpegResult on success

        Raises:
            EngineNotFound: ffmpeg cannot be resolved or started
            EngineFailure: non-zero exit, missing output, or timeout
        """
        cmd = self.build_transcode_cmd(
            source_path, dest_path, start_time, duration, width, height, remove_audio
        )
        return self._run_ffmpeg(cmd, Path(dest_path), duration, progress_callback)

    def _run_ffmpeg(
        self,
        cmd: List[str],
        dest_path: Path,
        expected_duration: float,
        progress_callback: Optional[Callable[[float], None]] = None,
    ) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement and progress monitoring."""
        started = time.monotonic()
        progress = FfmpegProgress(total_duration_s=expected_duration, last_update=started)
        stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)

        logger.debug("Running: %s", " ".join(cmd))
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1,
                start_new_session=(os.name == "posix"),
            )
        except (FileNotFoundError, PermissionError) as e:
            raise EngineNotFound(f"Cannot execute ffmpeg ({cmd[0]}): {e}") from e

        monitor = threading.Thread(
            target=self._monitor_progress,
            args=(process.stdout, progress, progress_callback),
            daemon=True,
        )
        collector = threading.Thread(
            target=self._collect_stderr,
            args=(process.stderr, stderr_tail),
            daemon=True,
        )
        monitor.start()
        collector.start()

        timeout_reason = None
        try:
            while True:
                try:
                    process.wait(timeout=SUPERVISE_INTERVAL_S)
                    break
                except subprocess.TimeoutExpired:
                    pass

                now = time.monotonic()
                if now - started > self.global_timeout_s:
                    timeout_reason = f"exceeded {self.global_timeout_s}s global timeout"
                elif now - progress.last_update > self.no_progress_timeout_s:
                    timeout_reason = f"no progress for {self.no_progress_timeout_s}s"
                if timeout_reason:
                    logger.warning("Killing ffmpeg (pid %d): %s", process.pid, timeout_reason)
                    self._kill_process_tree(process)
                    break
        except BaseException:
            self._kill_process_tree(process)
            raise
        finally:
            # Progress callbacks must be finished before the caller writes
            # a terminal state.
            monitor.join(timeout=self.kill_grace_period_s)
            collector.join(timeout=self.kill_grace_period_s)
            for stream in (process.stdout, process.stderr):
                if stream:
                    stream.close()

        returncode = process.returncode if process.returncode is not None else -1
        stderr = "\n".join(stderr_tail)
        elapsed = time.monotonic() - started

        if timeout_reason:
            self._handle_failure(cmd, stderr)
            raise EngineFailure(
                f"ffmpeg timed out: {timeout_reason}",
                exit_code=returncode,
                diagnostic_output=stderr,
                error_type=FfmpegErrorType.TIMEOUT.value,
            )

        if returncode != 0:
            self._handle_failure(cmd, stderr)
            raise EngineFailure(
                f"ffmpeg exited with code {returncode}",
                exit_code=returncode,
                diagnostic_output=stderr,
                error_type=self._classify_error(stderr).value,
            )

        if not dest_path.exists():
            self._handle_failure(cmd, stderr)
            raise EngineFailure(
                f"ffmpeg produced no output file: {dest_path}",
                exit_code=returncode,
                diagnostic_output=stderr,
                error_type=FfmpegErrorType.PERMANENT.value,
            )

        logger.debug("ffmpeg finished in %.1fs", elapsed)
        return FfmpegResult(
            returncode=returncode,
            stderr=stderr,
            duration_s=elapsed,
            output_path=dest_path,
            final_progress=progress,
        )

    def _monitor_progress(
        self,
        stdout_stream,
        progress: FfmpegProgress,
        progress_callback: Optional[Callable[[float], None]],
    ) -> None:
        """Parse ``-progress`` blocks from stdout and report fractions.

        FFmpeg progress format (one block per update):
            frame=123
            fps=25.00
            out_time_us=5123456
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue
        """
        try:
            for line in stdout_stream:
                if not parse_progress_line(line, progress):
                    continue
                progress.last_update = time.monotonic()
                if progress_callback:
                    try:
                        progress_callback(progress.fraction)
                    except Exception:
                        logger.exception("Progress callback failed")
        except (OSError, ValueError) as e:
            # Stream closed under us after a kill.
            logger.debug("Progress stream closed: %s", e)

    @staticmethod
    def _collect_stderr(stderr_stream, tail: Deque[str]) -> None:
        try:
            for line in stderr_stream:
                line = line.rstrip()
                if line:
                    tail.append(line)
        except (OSError, ValueError) as e:
            logger.debug("stderr stream closed: %s", e)

    def _kill_process_tree(self, process: subprocess.Popen) -> None:
        """Kill FFmpeg process and all children (cross-platform).

        Kill sequence:
        1. Send SIGTERM to the process and its children
        2. Wait grace period
        3. Send SIGKILL if still alive
        """
        if process.poll() is not None:
            return

        try:
            # Try psutil for robust process tree cleanup (if available)
            try:
                import psutil

                try:
                    parent = psutil.Process(process.pid)
                    children = parent.children(recursive=True)
                except psutil.NoSuchProcess:
                    return

                for child in children:
                    try:
                        child.terminate()
                    except psutil.NoSuchProcess:
                        pass
                parent.terminate()

                gone, alive = psutil.wait_procs(
                    [parent] + children,
                    timeout=self.kill_grace_period_s,
                )

                for p in alive:
                    try:
                        p.kill()
                    except psutil.NoSuchProcess:
                        pass

            except ImportError:
                if os.name == "posix":
                    # The child leads its own session, so its group is safe to signal.
                    try:
                        os.killpg(process.pid, signal.SIGTERM)
                    except ProcessLookupError:
                        pass

                    try:
                        process.wait(timeout=self.kill_grace_period_s)
                    except subprocess.TimeoutExpired:
                        try:
                            os.killpg(process.pid, signal.SIGKILL)
                        except ProcessLookupError:
                            pass
                else:
                    process.terminate()
                    try:
                        process.wait(timeout=self.kill_grace_period_s)
                    except subprocess.TimeoutExpired:
                        process.kill()
        except OSError as e:
            logger.error("Error during process cleanup: %s", e)

        try:
            process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.error("ffmpeg (pid %d) survived kill", process.pid)

    def _handle_failure(self, cmd: List[str], stderr: str) -> List[Path]:
        if not self.save_artifacts_on_failure:
            return []
        artifacts = self._save_failure_artifacts(cmd, stderr)
        if artifacts:
            logger.info("Saved ffmpeg failure artifacts: %s", ", ".join(map(str, artifacts)))
        return artifacts

    def _classify_error(self, stderr: str) -> FfmpegErrorType:
        """Classify FFmpeg error from stderr patterns.

        Args:
            stderr: FFmpeg stderr output

        Returns:
            FfmpegErrorType (informational; nothing is retried)
        """
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

        for pattern in permanent_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.PERMANENT

        transient_patterns = [
            "i/o error",
            "connection refused",
            "connection timeout",
            "resource temporarily unavailable",
            "disk full",
            "no space left on device",
        ]

        for pattern in transient_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.TRANSIENT

        return FfmpegErrorType.TRANSIENT

    def _save_failure_artifacts(self, cmd: List[str], stderr: str) -> List[Path]:
        """Save debugging artifacts on FFmpeg failure.

        Creates:
        - ffmpeg_error_{timestamp}.log: Command + stderr tail
        - ffmpeg_cmd_{timestamp}.sh: Reproducible command script

        Returns:
            List of saved artifact paths
        """
        artifacts = []
        temp_dir = self._get_temp_dir()
        stamp = f"{int(time.time())}_{os.getpid()}"

        log_path = temp_dir / f"ffmpeg_error_{stamp}.log"
        try:
            with open(log_path, "w") as f:
                f.write("=" * 80 + "\n")
                f.write("FFmpeg Error Log\n")
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write(f"PID: {os.getpid()}\n")
                f.write("=" * 80 + "\n\n")

                f.write("COMMAND:\n")
                f.write(" ".join(cmd) + "\n\n")

                f.write("STDERR:\n")
                f.write((stderr or "(empty)") + "\n")

            artifacts.append(log_path)
        except OSError as e:
            logger.warning("Failed to save error log: %s", e)

        script_path = temp_dir / f"ffmpeg_cmd_{stamp}.sh"
        try:
            with open(script_path, "w") as f:
                f.write("#!/bin/bash\n")
                f.write("# Reproducible FFmpeg command\n")
                f.write("# Generated: " + time.ctime() + "\n\n")

                escaped_cmd = []
                for arg in cmd:
                    if any(c in arg for c in [" ", "$", "`", '"', "\\", "(", ")", "?"]):
                        escaped_cmd.append("'" + arg.replace("'", "'\\''") + "'")
                    else:
                        escaped_cmd.append(arg)

                f.write(" \\\n  ".join(escaped_cmd) + "\n")

            script_path.chmod(0o755)
            artifacts.append(script_path)
        except OSError as e:
            logger.warning("Failed to save command script: %s", e)

        return artifacts

    def _get_temp_dir(self) -> Path:
        """Get artifact directory (configured, $TMPDIR, or /tmp)."""
        if self.temp_dir:
            temp_dir = Path(self.temp_dir)
        elif "TMPDIR" in os.environ:
            temp_dir = Path(os.environ["TMPDIR"])
        else:
            temp_dir = Path("/tmp")

        temp_dir.mkdir(parents=True, exist_ok=True)
        return temp_dir

    def get_ffmpeg_exe(self) -> str:
        """Get FFmpeg executable path.

        Raises:
            EngineNotFound: if no binary is configured or bundled
        """
        if self.ffmpeg_path:
            return self.ffmpeg_path
        import imageio_ffmpeg

        try:
            return imageio_ffmpeg.get_ffmpeg_exe()
        except RuntimeError as e:
            raise EngineNotFound(f"No ffmpeg binary available: {e}") from e


def _format_seconds(value: float) -> str:
    """Render seconds without a trailing .0 for whole numbers."""
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.3f}".rstrip("0").rstrip(".")


def check_ffmpeg(runner: Optional[FfmpegRunner] = None) -> Dict[str, Any]:
    """Run ``ffmpeg -version`` and report the outcome.

    Returns:
        Dict with ``ok``, ``path`` and ``version`` (first line)
        or ``error``
    """
    runner = runner or FfmpegRunner()
    try:
        exe = runner.get_ffmpeg_exe()
        completed = subprocess.run(
            [exe, "-version"],
            capture_output=True,
            text=True,
            timeout=30,
        )
    except EngineNotFound as e:
        return {"ok": False, "path": None, "error": str(e)}
    except (OSError, subprocess.TimeoutExpired) as e:
        return {"ok": False, "path": runner.ffmpeg_path, "error": str(e)}

    if completed.returncode != 0:
        return {"ok": False, "path": exe, "error": completed.stderr.strip()}

    first_line = completed.stdout.splitlines()[0] if completed.stdout else ""
    return {"ok": True, "path": exe, "version": first_line}
