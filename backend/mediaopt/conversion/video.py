"""Video backend: the ffmpeg / ffprobe binaries driven through subprocess."""
import json
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Union

from mediaopt.conversion.errors import PermanentEncodeFailure, TransientEncodeFailure
from mediaopt.conversion.models import FormatSupport, MediaKind, ProcessorCapability

logger = logging.getLogger("mediaopt.video")

PathLike = Union[str, Path]

# Encoders in order of preference per target format
AV1_ENCODERS = ("libsvtav1", "libaom-av1", "librav1e")
WEBM_ENCODERS = ("libvpx-vp9",)
AUDIO_ENCODERS = ("libopus", "libvorbis")

# ffmpeg stderr fragments that mean retrying cannot help
PERMANENT_MARKERS = (
    "invalid data found",
    "does not contain any stream",
    "unsupported pixel format",
    "incompatible pixel format",
    "error opening input",
    "no such file or directory",
    "unknown encoder",
)
TRANSIENT_MARKERS = ("no space left on device", "resource temporarily unavailable", "cannot allocate memory")


class FFmpegProcessor:
    """Encodes AV1 (MP4 container) and VP9 (WebM) with the ffmpeg binary."""

    name = "ffmpeg"
    kind = MediaKind.VIDEO

    def __init__(self, ffmpeg_bin: str = "ffmpeg", ffprobe_bin: str = "ffprobe", probe_timeout: int = 15):
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.probe_timeout = probe_timeout
        self._encoders: Optional[set[str]] = None

    def _run(self, args: list[str], timeout: int) -> subprocess.CompletedProcess:
        return subprocess.run(args, capture_output=True, text=True, timeout=timeout)

    def _list_encoders(self) -> set[str]:
        result = self._run([self.ffmpeg_bin, "-hide_banner", "-encoders"], self.probe_timeout)
        if result.returncode != 0:
            raise RuntimeError(result.stderr or "ffmpeg -encoders failed")
        encoders = set()
        for line in result.stdout.splitlines():
            parts = line.split()
            # Rows look like " V....D libsvtav1   SVT-AV1(...)"
            if len(parts) >= 2 and len(parts[0]) == 6 and parts[0][0] in "VAS":
                encoders.add(parts[1])
        return encoders

    def probe(self) -> ProcessorCapability:
        if shutil.which(self.ffmpeg_bin) is None:
            raise FileNotFoundError(f"{self.ffmpeg_bin} not found on PATH")
        version = self._run([self.ffmpeg_bin, "-hide_banner", "-version"], self.probe_timeout)
        version_string = (version.stdout.splitlines() or ["ffmpeg (unknown version)"])[0].strip()
        self._encoders = self._list_encoders()
        has_audio = any(a in self._encoders for a in AUDIO_ENCODERS)
        formats = {
            "av1": FormatSupport(supported=has_audio and self._pick(AV1_ENCODERS) is not None),
            "webm": FormatSupport(supported=has_audio and self._pick(WEBM_ENCODERS) is not None),
        }
        return ProcessorCapability(
            backend_name=self.name,
            kind=self.kind,
            available=True,
            version_string=version_string,
            formats=formats,
        )

    def _pick(self, candidates: tuple[str, ...]) -> Optional[str]:
        if self._encoders is None:
            self._encoders = self._list_encoders()
        for name in candidates:
            if name in self._encoders:
                return name
        return None

    def build_command(self, source: PathLike, destination: PathLike, fmt: str, options: dict) -> list[str]:
        audio = self._pick(AUDIO_ENCODERS) or "libopus"
        if fmt == "av1":
            encoder = self._pick(AV1_ENCODERS)
            if encoder is None:
                raise PermanentEncodeFailure("No AV1 encoder in this ffmpeg build", "unsupported_format")
            speed_flag = "-preset" if encoder == "libsvtav1" else "-cpu-used"
            return [
                self.ffmpeg_bin, "-y", "-i", str(source),
                "-c:v", encoder,
                "-crf", str(options.get("crf", 28)),
                speed_flag, str(options.get("cpu_used", 4)),
                "-c:a", audio, "-b:a", "128k",
                "-movflags", "+faststart",
                "-f", "mp4",
                str(destination),
            ]
        if fmt == "webm":
            if self._pick(WEBM_ENCODERS) is None:
                raise PermanentEncodeFailure("No VP9 encoder in this ffmpeg build", "unsupported_format")
            return [
                self.ffmpeg_bin, "-y", "-i", str(source),
                "-c:v", "libvpx-vp9",
                "-crf", str(options.get("crf", 30)),
                "-b:v", "0",
                "-speed", str(options.get("speed", 4)),
                "-c:a", audio, "-b:a", "128k",
                "-f", "webm",
                str(destination),
            ]
        raise PermanentEncodeFailure(f"ffmpeg backend cannot encode {fmt}", "unsupported_format")

    def convert(self, source: PathLike, destination: PathLike, fmt: str, options: dict, animated: bool = False) -> None:
        cmd = self.build_command(source, destination, fmt, options)
        logger.debug("Running %s", " ".join(cmd))
        try:
            result = self._run(cmd, int(options.get("timeout", 3600)))
        except FileNotFoundError as e:
            raise PermanentEncodeFailure("ffmpeg not installed", "backend_missing") from e
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "ffmpeg failed").strip()
            lowered = message.lower()
            if any(marker in lowered for marker in TRANSIENT_MARKERS):
                raise TransientEncodeFailure(message[-2000:], "disk_full" if "space" in lowered else "encoder_failed")
            if any(marker in lowered for marker in PERMANENT_MARKERS):
                raise PermanentEncodeFailure(message[-2000:], "corrupt_source")
            raise TransientEncodeFailure(message[-2000:], "encoder_failed")

    def get_metadata(self, path: PathLike) -> Optional[dict]:
        """Duration, bitrate, size, dimensions and codec of the first video stream."""
        try:
            result = self._run(
                [
                    self.ffprobe_bin, "-v", "error",
                    "-show_format", "-show_streams",
                    "-of", "json", str(path),
                ],
                self.probe_timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error("Failed to get video metadata for %s: %s", path, e)
            return None
        if result.returncode != 0:
            logger.error("ffprobe failed for %s: %s", path, result.stderr.strip())
            return None
        data = json.loads(result.stdout or "{}")
        fmt = data.get("format", {})
        video = next((s for s in data.get("streams", []) if s.get("codec_type") == "video"), {})
        return {
            "duration": float(fmt.get("duration", 0) or 0),
            "bitrate": int(fmt.get("bit_rate", 0) or 0),
            "size": int(fmt.get("size", 0) or 0),
            "width": int(video.get("width", 0) or 0),
            "height": int(video.get("height", 0) or 0),
            "codec": video.get("codec_name"),
        }
