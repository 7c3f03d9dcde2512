"""Unit tests for the FFmpeg runner: command building, progress, failures, timeouts."""

import os
import stat
from pathlib import Path

import pytest

from clip_export.errors import EngineFailure, EngineNotFound
from clip_export.ffmpeg_runner import (
    FfmpegErrorType,
    FfmpegProgress,
    FfmpegRunner,
    build_scale_filter,
    check_ffmpeg,
    parse_progress_line,
)
from clip_export.models import TranscodeConfig

posix_only = pytest.mark.skipif(os.name != "posix", reason="fake ffmpeg is a shell script")


def write_script(path: Path, body: str) -> str:
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


FAKE_SUCCESS = """
for last; do :; done
printf 'frame=10\\nout_time_us=1000000\\nprogress=continue\\n'
printf 'frame=40\\nout_time_us=4000000\\nprogress=continue\\n'
printf 'progress=end\\n'
printf 'clip' > "$last"
exit 0
"""

FAKE_FAILURE = """
echo "source.mp4: Invalid data found when processing input" >&2
exit 1
"""

FAKE_NO_OUTPUT = """
printf 'progress=end\\n'
exit 0
"""

FAKE_STALL = """
exec sleep 30
"""

FAKE_VERSION = """
echo "ffmpeg version 6.1 Copyright (c) 2000-2023"
exit 0
"""


class TestCommandBuilding:
    """Test the ffmpeg argument list for a clip."""

    def test_remove_audio_command(self):
        """Trim, letterbox to 850x480 and drop audio."""
        runner = FfmpegRunner(ffmpeg_path="ffmpeg")
        cmd = runner.build_transcode_cmd("in.mp4", "out.mp4", 2, 4, 850, 480, remove_audio=True)

        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-ss") + 1] == "2"
        assert cmd.index("-ss") < cmd.index("-i")
        assert cmd[cmd.index("-t") + 1] == "4"
        assert cmd.index("-t") > cmd.index("-i")
        assert "-an" in cmd
        assert "0:a:0?" not in cmd
        assert "-c:a" not in cmd
        assert cmd[cmd.index("-vf") + 1] == build_scale_filter(850, 480)
        assert cmd[-1] == "out.mp4"

    def test_keep_audio_command(self):
        """Audio is mapped optionally so silent sources still encode."""
        runner = FfmpegRunner(ffmpeg_path="ffmpeg")
        cmd = runner.build_transcode_cmd("in.mp4", "out.mp4", 0, 5, 1920, 1080, remove_audio=False)

        assert "-an" not in cmd
        assert "0:a:0?" in cmd
        assert cmd[cmd.index("-c:a") + 1] == "aac"
        assert cmd[cmd.index("-b:a") + 1] == "128k"

    def test_encoding_policy(self):
        runner = FfmpegRunner.from_config(TranscodeConfig(ffmpeg_path="ffmpeg", crf=20))
        cmd = runner.build_transcode_cmd("in.mp4", "out.mp4", 1.5, 3, 630, 354, remove_audio=True)

        assert cmd[cmd.index("-c:v") + 1] == "libx264"
        assert cmd[cmd.index("-preset") + 1] == "medium"
        assert cmd[cmd.index("-crf") + 1] == "20"
        assert cmd[cmd.index("-pix_fmt") + 1] == "yuv420p"
        assert cmd[cmd.index("-movflags") + 1] == "+faststart"
        assert cmd[cmd.index("-progress") + 1] == "pipe:1"
        assert cmd[cmd.index("-ss") + 1] == "1.5"

    def test_scale_filter_letterboxes(self):
        vf = build_scale_filter(630, 354)
        assert vf.startswith("scale=630:354:force_original_aspect_ratio=decrease")
        assert "pad=630:354:(ow-iw)/2:(oh-ih)/2" in vf
        assert vf.endswith("setsar=1")


class TestProgressParsing:
    """Test parsing of -progress key=value output."""

    def test_parse_out_time_us(self):
        progress = FfmpegProgress(total_duration_s=4.0)
        assert parse_progress_line("out_time_us=2000000\n", progress)
        assert progress.current_time_s == pytest.approx(2.0)
        assert progress.fraction == pytest.approx(0.5)

    def test_parse_out_time_timestamp(self):
        """Fractional seconds are microseconds, not centiseconds."""
        progress = FfmpegProgress()
        assert parse_progress_line("out_time=01:23:45.670000\n", progress)
        assert progress.current_time_s == pytest.approx(1 * 3600 + 23 * 60 + 45.67)

    def test_not_available_ignored(self):
        progress = FfmpegProgress()
        assert not parse_progress_line("out_time=N/A\n", progress)
        assert not parse_progress_line("out_time_us=N/A\n", progress)
        assert not parse_progress_line("out_time_us=-5000\n", progress)
        assert progress.current_time_s == 0.0

    def test_progress_end_reports_complete(self):
        progress = FfmpegProgress(total_duration_s=4.0)
        assert parse_progress_line("progress=end\n", progress)
        assert progress.fraction == 1.0

    def test_fraction_clamped(self):
        progress = FfmpegProgress(total_duration_s=4.0, current_time_s=9.0)
        assert progress.fraction == 1.0

    def test_stats_fields(self):
        progress = FfmpegProgress()
        for line in ["frame=123", "fps=25.00", "bitrate=1234.5kbits/s", "speed=2.5x"]:
            assert not parse_progress_line(line, progress)
        assert progress.frame == 123
        assert progress.fps == pytest.approx(25.0)
        assert progress.bitrate_kbps == pytest.approx(1234.5)
        assert progress.speed == pytest.approx(2.5)

    def test_monitor_invokes_callback(self):
        runner = FfmpegRunner()
        progress = FfmpegProgress(total_duration_s=4.0)
        fractions = []

        lines = ["frame=1\n", "out_time_us=1000000\n", "progress=continue\n", "progress=end\n"]
        runner._monitor_progress(iter(lines), progress, fractions.append)

        assert fractions == [pytest.approx(0.25), 1.0]

    def test_monitor_survives_callback_errors(self):
        runner = FfmpegRunner()
        progress = FfmpegProgress(total_duration_s=4.0)

        def broken(fraction):
            raise RuntimeError("callback failed")

        runner._monitor_progress(iter(["out_time_us=1000000\n"]), progress, broken)
        assert progress.current_time_s == pytest.approx(1.0)


class TestErrorClassification:
    """Test FFmpeg error classification."""

    def test_classify_permanent_errors(self):
        runner = FfmpegRunner()
        permanent_cases = [
            "input.mp4: No such file or directory",
            "Invalid data found when processing input",
            "Permission denied",
            "Unsupported codec for output stream",
            "moov atom not found",
        ]
        for stderr in permanent_cases:
            assert runner._classify_error(stderr) == FfmpegErrorType.PERMANENT, stderr

    def test_classify_transient_errors(self):
        runner = FfmpegRunner()
        transient_cases = [
            "I/O error reading input",
            "Connection refused",
            "Resource temporarily unavailable",
            "No space left on device",
        ]
        for stderr in transient_cases:
            assert runner._classify_error(stderr) == FfmpegErrorType.TRANSIENT, stderr

    def test_classify_unknown_as_transient(self):
        assert FfmpegRunner()._classify_error("Some unknown error") == FfmpegErrorType.TRANSIENT


class TestArtifacts:
    """Test failure artifact preservation."""

    def test_save_failure_artifacts(self, tmp_dir):
        runner = FfmpegRunner(temp_dir=str(tmp_dir))
        cmd = ["ffmpeg", "-i", "my input.mp4", "-vf", "pad=1:1:(ow-iw)/2", "out.mp4"]

        artifacts = runner._save_failure_artifacts(cmd, "boom")

        assert len(artifacts) == 2
        log_path = next(p for p in artifacts if p.suffix == ".log")
        script_path = next(p for p in artifacts if p.suffix == ".sh")
        assert "boom" in log_path.read_text()
        script = script_path.read_text()
        assert "'my input.mp4'" in script
        assert "'pad=1:1:(ow-iw)/2'" in script
        assert os.access(script_path, os.X_OK)


@posix_only
class TestTranscodeExecution:
    """Run transcode_clip against fake ffmpeg executables."""

    def make_runner(self, tmp_dir, body, **kwargs):
        exe = write_script(tmp_dir / "ffmpeg", body)
        return FfmpegRunner(ffmpeg_path=exe, temp_dir=str(tmp_dir / "artifacts"), **kwargs)

    def test_success_reports_progress(self, tmp_dir):
        runner = self.make_runner(tmp_dir, FAKE_SUCCESS)
        dest = tmp_dir / "out.mp4"
        fractions = []

        result = runner.transcode_clip(
            str(tmp_dir / "in.mp4"), str(dest), 2, 4, 850, 480, True,
            progress_callback=fractions.append,
        )

        assert result.returncode == 0
        assert dest.read_text() == "clip"
        assert fractions == [pytest.approx(0.25), 1.0, 1.0]
        assert fractions == sorted(fractions)
        assert result.final_progress.frame == 40

    def test_nonzero_exit_raises_with_diagnostics(self, tmp_dir):
        runner = self.make_runner(tmp_dir, FAKE_FAILURE)

        with pytest.raises(EngineFailure) as exc_info:
            runner.transcode_clip(
                str(tmp_dir / "in.mp4"), str(tmp_dir / "out.mp4"), 0, 3, 630, 354, False
            )

        error = exc_info.value
        assert error.exit_code == 1
        assert "Invalid data found" in error.diagnostic_output
        assert "Invalid data found" in str(error)
        assert error.error_type == FfmpegErrorType.PERMANENT.value
        assert list((tmp_dir / "artifacts").glob("ffmpeg_error_*.log"))

    def test_missing_output_is_failure(self, tmp_dir):
        runner = self.make_runner(tmp_dir, FAKE_NO_OUTPUT, save_artifacts_on_failure=False)

        with pytest.raises(EngineFailure, match="no output file"):
            runner.transcode_clip(
                str(tmp_dir / "in.mp4"), str(tmp_dir / "out.mp4"), 0, 3, 630, 354, True
            )
        assert not (tmp_dir / "artifacts").exists()

    def test_stall_is_killed(self, tmp_dir):
        runner = self.make_runner(
            tmp_dir, FAKE_STALL, no_progress_timeout_s=1, kill_grace_period_s=1,
            save_artifacts_on_failure=False,
        )

        with pytest.raises(EngineFailure) as exc_info:
            runner.transcode_clip(
                str(tmp_dir / "in.mp4"), str(tmp_dir / "out.mp4"), 0, 3, 630, 354, True
            )
        assert exc_info.value.error_type == FfmpegErrorType.TIMEOUT.value
        assert "no progress" in str(exc_info.value)

    def test_missing_binary(self, tmp_dir):
        runner = FfmpegRunner(ffmpeg_path=str(tmp_dir / "does-not-exist"))
        with pytest.raises(EngineNotFound):
            runner.transcode_clip(
                str(tmp_dir / "in.mp4"), str(tmp_dir / "out.mp4"), 0, 3, 630, 354, True
            )

    def test_check_ffmpeg(self, tmp_dir):
        runner = self.make_runner(tmp_dir, FAKE_VERSION)
        report = check_ffmpeg(runner)
        assert report["ok"] is True
        assert report["version"].startswith("ffmpeg version 6.1")

    def test_check_ffmpeg_missing(self, tmp_dir):
        report = check_ffmpeg(FfmpegRunner(ffmpeg_path=str(tmp_dir / "nope")))
        assert report["ok"] is False
