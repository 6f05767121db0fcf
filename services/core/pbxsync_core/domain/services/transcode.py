"""Image and video transcoders used by the compression pipeline.

Images are downscaled with Pillow and re-encoded as WebP. Videos are
re-encoded by an ``ffmpeg`` subprocess into H.264/AAC MP4, scaled down to
a maximum height. Both work on bytes in memory so the pipeline can run
them for dry-run estimates without touching storage.
"""

import io
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from PIL import Image, ImageOps, UnidentifiedImageError

from pbxsync_core.domain.errors import TranscodeError


@dataclass
class TranscodeResult:
    data: bytes
    mime_type: str
    extension: str


class Transcoder(Protocol):
    def transcode(self, data: bytes, file_name: str) -> TranscodeResult:
        ...


class ImageTranscoder:
    """Downscale to ``max_dimension`` on the long edge and encode WebP."""

    def __init__(self, max_dimension: int = 1920, quality: int = 80):
        self.max_dimension = max_dimension
        self.quality = quality

    def transcode(self, data: bytes, file_name: str) -> TranscodeResult:
        try:
            with Image.open(io.BytesIO(data)) as source:
                image = ImageOps.exif_transpose(source)
                if image.mode not in ("RGB", "RGBA"):
                    has_alpha = image.mode in ("LA", "PA") or "transparency" in image.info
                    image = image.convert("RGBA" if has_alpha else "RGB")
                image.thumbnail(
                    (self.max_dimension, self.max_dimension), Image.Resampling.LANCZOS
                )
                out = io.BytesIO()
                image.save(out, format="WEBP", quality=self.quality, method=4)
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise TranscodeError(f"Cannot transcode image {file_name}: {e}") from e
        return TranscodeResult(data=out.getvalue(), mime_type="image/webp", extension=".webp")


class VideoTranscoder:
    """Re-encode with ffmpeg to H.264/AAC MP4 at most ``max_height`` tall."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        max_height: int = 720,
        video_bitrate: str = "1500k",
        audio_bitrate: str = "128k",
        timeout_seconds: int = 1800,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.max_height = max_height
        self.video_bitrate = video_bitrate
        self.audio_bitrate = audio_bitrate
        self.timeout_seconds = timeout_seconds

    def build_command(self, source: Path, target: Path) -> list[str]:
        return [
            self.ffmpeg_path,
            "-y",
            "-loglevel", "error",
            "-i", str(source),
            "-vf", f"scale=-2:'min({self.max_height},ih)'",
            "-c:v", "libx264",
            "-preset", "medium",
            "-b:v", self.video_bitrate,
            "-c:a", "aac",
            "-b:a", self.audio_bitrate,
            "-movflags", "+faststart",
            str(target),
        ]

    def transcode(self, data: bytes, file_name: str) -> TranscodeResult:
        suffix = Path(file_name).suffix or ".bin"
        with tempfile.TemporaryDirectory(prefix="pbxsync-video-") as tmp:
            source = Path(tmp) / f"input{suffix}"
            target = Path(tmp) / "output.mp4"
            source.write_bytes(data)

            try:
                result = subprocess.run(
                    self.build_command(source, target),
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    timeout=self.timeout_seconds,
                )
            except FileNotFoundError as e:
                raise TranscodeError(f"ffmpeg not found at {self.ffmpeg_path}") from e
            except subprocess.TimeoutExpired as e:
                raise TranscodeError(f"ffmpeg timed out on {file_name}") from e

            if result.returncode != 0:
                raise TranscodeError(
                    f"ffmpeg failed on {file_name}: {result.stderr.strip()[-500:]}"
                )
            return TranscodeResult(
                data=target.read_bytes(), mime_type="video/mp4", extension=".mp4"
            )
