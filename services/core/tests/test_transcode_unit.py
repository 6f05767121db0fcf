"""Unit tests for image and video transcoders."""

import io
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest
from PIL import Image

from pbxsync_core.domain.errors import TranscodeError
from pbxsync_core.domain.services.transcode import ImageTranscoder, VideoTranscoder


def png_bytes(size=(3000, 2000), mode="RGB"):
    out = io.BytesIO()
    Image.new(mode, size, color=(200, 30, 30) if mode == "RGB" else None).save(out, format="PNG")
    return out.getvalue()


class TestImageTranscoder:
    """Tests for Pillow-based image re-encoding."""

    def test_downscales_and_encodes_webp(self):
        result = ImageTranscoder(max_dimension=1920).transcode(png_bytes(), "photo.png")

        assert result.mime_type == "image/webp"
        assert result.extension == ".webp"
        with Image.open(io.BytesIO(result.data)) as image:
            assert image.format == "WEBP"
            assert max(image.size) == 1920

    def test_small_image_keeps_size(self):
        result = ImageTranscoder(max_dimension=1920).transcode(png_bytes((640, 480)), "small.png")

        with Image.open(io.BytesIO(result.data)) as image:
            assert image.size == (640, 480)

    def test_palette_image_is_converted(self):
        result = ImageTranscoder().transcode(png_bytes((100, 100), mode="P"), "icon.png")

        assert result.data

    def test_garbage_is_a_transcode_error(self):
        with pytest.raises(TranscodeError, match="notes.jpg"):
            ImageTranscoder().transcode(b"definitely not an image", "notes.jpg")


class TestVideoTranscoder:
    """Tests for the ffmpeg command and subprocess handling."""

    def test_command(self):
        command = VideoTranscoder(max_height=480, video_bitrate="900k").build_command(
            Path("/tmp/in.mov"), Path("/tmp/out.mp4")
        )

        assert command[0] == "ffmpeg"
        assert command[command.index("-i") + 1] == "/tmp/in.mov"
        assert "scale=-2:'min(480,ih)'" in command
        assert command[command.index("-b:v") + 1] == "900k"
        assert command[-1] == "/tmp/out.mp4"

    def test_successful_run_returns_output(self):
        def fake_run(command, **kwargs):
            Path(command[-1]).write_bytes(b"mp4-bytes")
            return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

        with patch("pbxsync_core.domain.services.transcode.subprocess.run", side_effect=fake_run):
            result = VideoTranscoder().transcode(b"mov-bytes", "clip.mov")

        assert result.data == b"mp4-bytes"
        assert result.mime_type == "video/mp4"
        assert result.extension == ".mp4"

    def test_input_keeps_original_suffix(self):
        seen = {}

        def fake_run(command, **kwargs):
            seen["input"] = command[command.index("-i") + 1]
            Path(command[-1]).write_bytes(b"x")
            return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

        with patch("pbxsync_core.domain.services.transcode.subprocess.run", side_effect=fake_run):
            VideoTranscoder().transcode(b"data", "clip.3gp")

        assert seen["input"].endswith("input.3gp")

    def test_nonzero_exit(self):
        failed = subprocess.CompletedProcess([], 1, stdout="", stderr="moov atom not found")

        with patch("pbxsync_core.domain.services.transcode.subprocess.run", return_value=failed):
            with pytest.raises(TranscodeError, match="moov atom not found"):
                VideoTranscoder().transcode(b"data", "broken.mp4")

    def test_missing_ffmpeg(self):
        with patch(
            "pbxsync_core.domain.services.transcode.subprocess.run",
            side_effect=FileNotFoundError("ffmpeg"),
        ):
            with pytest.raises(TranscodeError, match="ffmpeg not found"):
                VideoTranscoder().transcode(b"data", "clip.mov")

    def test_timeout(self):
        with patch(
            "pbxsync_core.domain.services.transcode.subprocess.run",
            side_effect=subprocess.TimeoutExpired("ffmpeg", 1),
        ):
            with pytest.raises(TranscodeError, match="timed out"):
                VideoTranscoder(timeout_seconds=1).transcode(b"data", "clip.mov")
