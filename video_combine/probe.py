import json
import logging
import subprocess
from dataclasses import dataclass

from . import config
from .engine import find_ffprobe
from .errors import ProbeError
from .models import MediaAsset, MediaKind

logger = logging.getLogger("video-combine.probe")


@dataclass(frozen=True)
class ProbeResult:
    duration_seconds: float
    width: int | None
    height: int | None
    has_video_stream: bool
    has_audio_stream: bool


def parse_probe_output(payload: str) -> ProbeResult:
    """Parse ``ffprobe -show_format -show_streams -of json`` output."""
    try:
        data = json.loads(payload or "{}")
    except json.JSONDecodeError as exc:
        raise ProbeError(f"Unparsable probe output: {exc}") from exc
    if not isinstance(data, dict):
        raise ProbeError("Unexpected probe output")

    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    has_audio = any(s.get("codec_type") == "audio" for s in streams)

    duration = _as_float((data.get("format") or {}).get("duration"))
    if duration is None:
        stream_durations = [_as_float(s.get("duration")) for s in streams]
        duration = max((d for d in stream_durations if d is not None), default=None)
    if duration is None and not streams:
        raise ProbeError("Probe output contains no streams")

    width = height = None
    if video is not None:
        width = _as_int(video.get("width"))
        height = _as_int(video.get("height"))

    return ProbeResult(
        duration_seconds=duration or 0.0,
        width=width,
        height=height,
        has_video_stream=video is not None,
        has_audio_stream=has_audio,
    )


def _as_float(value) -> float | None:
    try:
        return float(value) if value not in (None, "", "N/A") else None
    except (TypeError, ValueError):
        return None


def _as_int(value) -> int | None:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def probe(path, ffprobe_path: str | None = None) -> ProbeResult:
    ffprobe_path = ffprobe_path or find_ffprobe()
    if not ffprobe_path:
        raise ProbeError("ffprobe not available")
    cmd = [
        ffprobe_path,
        "-v",
        "error",
        "-show_format",
        "-show_streams",
        "-of",
        "json",
        str(path),
    ]
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=False,
            timeout=config.PROBE_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        raise ProbeError(f"ffprobe could not be run on {path}: {exc}") from exc
    if result.returncode != 0:
        raise ProbeError(f"ffprobe failed on {path}: {(result.stderr or '').strip()[:500]}")
    return parse_probe_output(result.stdout)


def has_audio_stream(path, ffprobe_path: str | None = None) -> bool:
    """Best-effort audio presence check; probe failure counts as no audio."""
    try:
        return probe(path, ffprobe_path).has_audio_stream
    except ProbeError as exc:
        logger.warning("Audio presence probe failed for %s: %s", path, exc)
        return False


def probe_asset(asset: MediaAsset, optional: bool = False, ffprobe_path: str | None = None) -> MediaAsset:
    """Populate ``asset`` metadata once; an optional asset swallows probe failure."""
    if asset.probed:
        return asset
    try:
        result = probe(asset.path, ffprobe_path)
    except ProbeError:
        if not optional:
            raise
        logger.warning("Optional probe failed for %s", asset.path)
        asset.has_audio_stream = False
        asset.probed = True
        return asset

    asset.duration_seconds = result.duration_seconds
    asset.width = result.width
    asset.height = result.height
    asset.has_audio_stream = result.has_audio_stream
    asset.has_video_stream = result.has_video_stream
    asset.probed = True
    if asset.kind == MediaKind.VIDEO and not result.has_video_stream and not optional:
        raise ProbeError(f"{asset.path.name} has no video stream")
    return asset
