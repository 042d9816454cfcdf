"""Media service for probing video files with external tools.

Every expensive signal (silence pattern, duration, on-screen timestamp) comes
from a black-box command whose output is parsed here. The commands are run
through :class:`MediaTools` so callers can bound and count them.
"""

import json
import logging
import re
import subprocess
import tempfile
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from lecture_uploader.services.errors import UnparseableMediaError

logger = logging.getLogger(__name__)

# Frame indices sampled for the burned-in clock, tried in order
FRAME_CANDIDATES = (0, 3, 7, 10, 14)

# Filenames that mark an already time-compressed export
TIME_COMPRESSED_NAME = re.compile(r"timebolted|turbo|FINAL|BEST", re.IGNORECASE)

# Common tesseract misreads of the recorder's clock font, applied in order
OCR_CORRECTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"[;,()]"), "-"),
    (re.compile(r"[°*]"), ":"),
    (re.compile(r"[oOQ]"), "0"),
    (re.compile(r"[lI|]"), "1"),
    (re.compile(r"[Uu]"), "0"),
    (re.compile(r"[Zz]"), "2"),
    (re.compile(r"\s+"), " "),
    (re.compile(r"--+"), "-"),
    (re.compile(r"[Ff]"), "7"),
)

TIMESTAMP_PATTERN = re.compile(
    r"(\d{4})-(\d{1,2})-(\d{1,2})\s+(\d{1,2}):(\d{1,2}):(\d{1,2})"
)


class DetectionMethod(Enum):
    """How a classification was reached."""

    MANUAL = "manual"
    FILENAME = "filename"
    CONTENT_ANALYSIS = "content-analysis"
    CACHED = "cached"


class TimestampStatus(Enum):
    """Outcome of on-screen timestamp extraction."""

    FOUND = "found"
    NOT_FOUND = "not_found"  # every frame was read, none held a valid clock
    FAILED = "failed"  # tools failed, so absence is not confirmed
    SKIPPED = "skipped"


@dataclass
class AnalysisResult:
    """Cheap-to-reuse metadata derived from one media file."""

    classified: bool
    detection_method: DetectionMethod
    size_bytes: int
    recording_start: str | None = None
    recording_end: str | None = None
    duration: str | None = None
    duration_seconds: float | None = None
    timestamp_status: TimestampStatus = TimestampStatus.SKIPPED
    errors: list[str] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        """True when at least one analysis step failed."""
        return bool(self.errors)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["detection_method"] = self.detection_method.value
        data["timestamp_status"] = self.timestamp_status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnalysisResult":
        return cls(
            classified=bool(data["classified"]),
            detection_method=DetectionMethod(data["detection_method"]),
            size_bytes=int(data.get("size_bytes", 0)),
            recording_start=data.get("recording_start"),
            recording_end=data.get("recording_end"),
            duration=data.get("duration"),
            duration_seconds=data.get("duration_seconds"),
            timestamp_status=TimestampStatus(data.get("timestamp_status", "skipped")),
            errors=list(data.get("errors", [])),
        )


@dataclass
class VideoStream:
    """Geometry and frame rate of the first video stream."""

    width: int
    height: int
    fps: float

    @property
    def clock_crop(self) -> tuple[int, int, int, int]:
        """Bottom-right region holding the clock as (width, height, x, y).

        Right quarter of the frame, bottom eighth.
        """
        return (
            int(self.width * 0.25),
            int(self.height * 0.125),
            int(self.width * 0.75),
            int(self.height * 0.875),
        )


def clean_ocr_text(text: str) -> str:
    """Apply the misread corrections to raw OCR output."""
    cleaned = text.strip()
    for pattern, replacement in OCR_CORRECTIONS:
        cleaned = pattern.sub(replacement, cleaned)
    return cleaned


def parse_timestamp(text: str, year_range: tuple[int, int]) -> datetime | None:
    """Find a ``YYYY-MM-DD HH:MM:SS`` clock in cleaned OCR text.

    Returns None when nothing matches, the date does not exist on the
    calendar, or the year falls outside ``year_range`` (inclusive).
    """
    match = TIMESTAMP_PATTERN.search(text)
    if not match:
        return None
    year, month, day, hour, minute, second = (int(part) for part in match.groups())
    if not year_range[0] <= year <= year_range[1]:
        return None
    try:
        return datetime(year, month, day, hour, minute, second)
    except ValueError:
        return None


def format_timestamp(value: datetime) -> str:
    """Format a recording clock without seconds."""
    return value.strftime("%Y-%m-%d %H:%M")


def format_fuzzy_duration(seconds: float) -> str:
    """Format a duration as whole hours ("5h") or whole minutes ("13m")."""
    hours = int(seconds // 3600)
    if hours > 0:
        return f"{hours}h"
    minutes = round((seconds % 3600) / 60)
    return f"{minutes}m"


def _parse_frame_rate(value: str) -> float:
    # ffprobe reports rates as a fraction, e.g. "30000/1001"
    if "/" in value:
        num, den = value.split("/", 1)
        if float(den) == 0:
            return 0.0
        return float(num) / float(den)
    return float(value)


class MediaTools:
    """Thin wrapper around ffmpeg, ffprobe and tesseract subprocesses."""

    def __init__(
        self,
        ffmpeg: str = "ffmpeg",
        ffprobe: str = "ffprobe",
        tesseract: str = "tesseract",
        timeout: float = 120.0,
        temp_dir: Path | str | None = None,
    ) -> None:
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.tesseract = tesseract
        self.timeout = timeout
        self.temp_dir = Path(temp_dir) if temp_dir else None

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess[str]:
        """Run a tool, converting every failure mode into UnparseableMediaError."""
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise UnparseableMediaError(f"{cmd[0]} is not installed") from e
        except OSError as e:
            raise UnparseableMediaError(f"{cmd[0]} could not be run: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise UnparseableMediaError(f"{cmd[0]} timed out after {self.timeout}s") from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip().splitlines()
            detail = stderr[-1] if stderr else f"exit code {result.returncode}"
            raise UnparseableMediaError(f"{cmd[0]} failed: {detail}")
        return result

    def count_leading_silences(self, path: Path | str, seconds: float = 5.0) -> int:
        """Count silences longer than one second in the first ``seconds``."""
        result = self._run(
            [
                self.ffmpeg,
                "-hide_banner",
                "-i",
                str(path),
                "-t",
                str(seconds),
                "-af",
                "silencedetect=noise=-30dB:d=1",
                "-f",
                "null",
                "-",
            ]
        )
        # silencedetect reports on stderr
        return (result.stderr or "").count("silence_duration")

    def probe_duration(self, path: Path | str) -> float:
        result = self._run(
            [
                self.ffprobe,
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
                str(path),
            ]
        )
        try:
            duration = float(result.stdout.strip())
        except ValueError as e:
            raise UnparseableMediaError(f"Unreadable duration: {result.stdout.strip()!r}") from e
        if duration <= 0:
            raise UnparseableMediaError(f"Non-positive duration: {duration}")
        return duration

    def probe_video_stream(self, path: Path | str) -> VideoStream:
        result = self._run(
            [
                self.ffprobe,
                "-v",
                "error",
                "-select_streams",
                "v:0",
                "-show_entries",
                "stream=width,height,r_frame_rate",
                "-of",
                "json",
                str(path),
            ]
        )
        try:
            streams = json.loads(result.stdout).get("streams", [])
            stream = streams[0]
            video = VideoStream(
                width=int(stream["width"]),
                height=int(stream["height"]),
                fps=_parse_frame_rate(str(stream.get("r_frame_rate", "0"))),
            )
        except (ValueError, KeyError, IndexError, ZeroDivisionError) as e:
            raise UnparseableMediaError(f"No usable video stream in {Path(path).name}") from e

        if not video.width or not video.height:
            raise UnparseableMediaError(f"Could not detect video dimensions for {Path(path).name}")
        return video

    def read_frame_text(
        self,
        path: Path | str,
        stream: VideoStream,
        *,
        frame_index: int | None = None,
        seek_seconds: float | None = None,
    ) -> str:
        """OCR the clock region of one frame.

        The frame is addressed either by index from the start or by a direct
        seek, which avoids decoding the whole file to reach the end.
        """
        crop_w, crop_h, crop_x, crop_y = stream.clock_crop
        enhance = (
            f"crop={crop_w}:{crop_h}:{crop_x}:{crop_y},"
            "scale=iw*4:ih*4,unsharp=7:7:2.5,eq=contrast=2:brightness=0.1"
        )

        with tempfile.TemporaryDirectory(dir=self.temp_dir) as tmp:
            image_path = Path(tmp) / "clock.png"
            cmd = [self.ffmpeg, "-hide_banner", "-v", "error"]
            if seek_seconds is not None:
                cmd += ["-ss", f"{seek_seconds:.3f}", "-i", str(path), "-vf", enhance]
            else:
                cmd += [
                    "-i",
                    str(path),
                    "-vf",
                    f"select=eq(n\\,{frame_index or 0}),{enhance}",
                ]
            cmd += ["-frames:v", "1", "-y", str(image_path)]
            self._run(cmd)

            if not image_path.exists():
                raise UnparseableMediaError("No frame decoded at the requested position")

            result = self._run([self.tesseract, str(image_path), "stdout", "--psm", "7"])
            return result.stdout
