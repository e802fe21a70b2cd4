"""
Transcoder adapter: turn any input video into a fixed portrait canvas with ffmpeg.
The picture is fit inside the canvas preserving aspect ratio, centre-padded, and the sample aspect ratio forced to 1:1.
"""
import json
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from portrait.guardrails.errors import TranscodeError
from portrait.pipeline.storage import partial_path_for

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

STDERR_TAIL_CHARS = 2000
PROBE_TIMEOUT_SECONDS = 30


@dataclass(frozen=True)
class Profile:
    """Declarative target for the transcoder: canvas size plus video/audio codec settings.
    audio_codec="copy" passes the source audio through unchanged and ignores audio_bitrate."""

    name: str
    width: int
    height: int
    video_codec: str = "libx264"
    preset: str = "fast"
    crf: int = 23
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0 or self.width % 2 or self.height % 2:
            raise ValueError("canvas dimensions must be positive even numbers")

    @property
    def copies_audio(self) -> bool:
        return self.audio_codec == "copy"


PROFILES: Dict[str, Profile] = {
    "portrait_720": Profile(name="portrait_720", width=720, height=1280),
    "portrait_1080_copy_audio": Profile(
        name="portrait_1080_copy_audio",
        width=1080,
        height=1920,
        audio_codec="copy",
        audio_bitrate="",
    ),
}


def get_profile(name: str) -> Profile:
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(f"Unknown transcode profile: {name} (known: {', '.join(sorted(PROFILES))})") from None


@dataclass(frozen=True)
class Geometry:
    """Where the scaled picture lands inside the canvas."""

    scaled_width: int
    scaled_height: int
    pad_x: int
    pad_y: int
    width: int
    height: int


def _even_floor(v: float) -> int:
    return max(2, int(v) - int(v) % 2)


def plan_geometry(src_width: int, src_height: int, profile: Profile) -> Geometry:
    """Compute the fit-within-canvas scale and centred padding that build_filter_graph asks ffmpeg for.
    Mirrors force_original_aspect_ratio=decrease with force_divisible_by=2: the limiting axis fills the canvas, the other is rounded down to an even size."""
    if src_width <= 0 or src_height <= 0:
        raise ValueError("source dimensions must be positive")
    scale = min(profile.width / src_width, profile.height / src_height)
    scaled_w = min(profile.width, _even_floor(round(src_width * scale, 6)))
    scaled_h = min(profile.height, _even_floor(round(src_height * scale, 6)))
    return Geometry(
        scaled_width=scaled_w,
        scaled_height=scaled_h,
        pad_x=(profile.width - scaled_w) // 2,
        pad_y=(profile.height - scaled_h) // 2,
        width=profile.width,
        height=profile.height,
    )


def build_filter_graph(profile: Profile) -> str:
    w, h = profile.width, profile.height
    return ",".join([
        f"scale={w}:{h}:force_original_aspect_ratio=decrease:force_divisible_by=2",
        f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2",
        "setsar=1",
    ])


def build_ffmpeg_args(input_path: PathLike, output_path: PathLike, profile: Profile, binary: str = "ffmpeg") -> List[str]:
    """Full ffmpeg argument vector for one transcode (no shell involved)."""
    args = [
        binary,
        "-y",
        "-hide_banner",
        "-loglevel", "error",
        "-i", str(input_path),
        "-vf", build_filter_graph(profile),
        "-c:v", profile.video_codec,
        "-preset", profile.preset,
        "-crf", str(profile.crf),
        "-pix_fmt", "yuv420p",
    ]
    if profile.copies_audio:
        args += ["-c:a", "copy"]
    else:
        args += ["-c:a", profile.audio_codec, "-b:a", profile.audio_bitrate]
    args += ["-movflags", "+faststart", "-f", "mp4", str(output_path)]
    return args


class Transcoder(Protocol):
    def transcode(self, input_path: PathLike, output_path: PathLike, profile: Profile) -> Path:
        ...


def _tail(text) -> str:
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    return (text or "")[-STDERR_TAIL_CHARS:]


class FfmpegTranscoder:
    """Runs the ffmpeg binary as a subprocess.
    Writes to a sibling ".partial" file and renames it onto output_path only after ffmpeg succeeded and the result was verified, so output_path is either complete or absent."""

    def __init__(self, binary: str = "ffmpeg", timeout: float = 900, probe_binary: Optional[str] = "ffprobe"):
        self.binary = binary
        self.timeout = timeout
        self.probe_binary = probe_binary

    def transcode(self, input_path: PathLike, output_path: PathLike, profile: Profile) -> Path:
        output_path = Path(output_path)
        partial = partial_path_for(output_path)
        args = build_ffmpeg_args(input_path, partial, profile, binary=self.binary)
        logger.info("ffmpeg_start", extra={"command": " ".join(args)})

        try:
            try:
                result = subprocess.run(args, capture_output=True, timeout=self.timeout)
            except subprocess.TimeoutExpired as e:
                raise TranscodeError(f"ffmpeg timed out after {self.timeout}s", _tail(e.stderr)) from e
            except OSError as e:
                raise TranscodeError(f"Could not start ffmpeg: {e}") from e

            if result.returncode != 0:
                raise TranscodeError(f"ffmpeg exited with code {result.returncode}", _tail(result.stderr))
            if not partial.is_file() or partial.stat().st_size == 0:
                raise TranscodeError("ffmpeg produced no output file", _tail(result.stderr))

            self._verify(partial, profile)
            os.replace(partial, output_path)
        finally:
            if partial.exists():
                partial.unlink()

        logger.info("ffmpeg_done", extra={"output": str(output_path), "profile": profile.name})
        return output_path

    def _verify(self, path: Path, profile: Profile) -> None:
        """Check canvas size and square pixels with ffprobe. Skipped when ffprobe is not installed."""
        if not self.probe_binary or shutil.which(self.probe_binary) is None:
            return
        info = probe_video(path, self.probe_binary)
        if (info["width"], info["height"]) != (profile.width, profile.height):
            raise TranscodeError(
                f"Output is {info['width']}x{info['height']}, expected {profile.width}x{profile.height}"
            )
        if info["sample_aspect_ratio"] not in ("1:1", "0:1", "N/A", ""):
            raise TranscodeError(f"Output sample aspect ratio is {info['sample_aspect_ratio']}, expected 1:1")


def probe_video(path: PathLike, probe_binary: str = "ffprobe") -> dict:
    """Return width, height and sample_aspect_ratio of the first video stream."""
    cmd = [
        probe_binary,
        "-v", "error",
        "-select_streams", "v:0",
        "-show_entries", "stream=width,height,sample_aspect_ratio",
        "-of", "json",
        str(path),
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=PROBE_TIMEOUT_SECONDS)
    except (subprocess.TimeoutExpired, OSError) as e:
        raise TranscodeError(f"ffprobe failed: {e}") from e
    if result.returncode != 0:
        raise TranscodeError("ffprobe could not read output", _tail(result.stderr))
    streams = json.loads(result.stdout or "{}").get("streams") or []
    if not streams:
        raise TranscodeError("Output has no video stream")
    s = streams[0]
    return {
        "width": int(s.get("width", 0)),
        "height": int(s.get("height", 0)),
        "sample_aspect_ratio": s.get("sample_aspect_ratio", ""),
    }
