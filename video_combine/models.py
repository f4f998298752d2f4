from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class MediaKind(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    IMAGE = "image"


class CaptionRole(str, Enum):
    TOP = "top"
    BOTTOM = "bottom"
    BRANDING = "branding"


class MixDurationPolicy(str, Enum):
    SHORTEST = "shortest"
    LONGEST = "longest"
    FIRST = "first"


class OverlayPosition(str, Enum):
    TOP_LEFT = "top-left"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"
    BOTTOM_BAR = "bottom-bar"
    FULL_FRAME = "full-frame"


class JobState(str, Enum):
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    PROBING = "probing"
    BUILDING = "building"
    RENDERING = "rendering"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    FAILED = "failed"


JOB_PROGRESS = {
    JobState.QUEUED: 0,
    JobState.DOWNLOADING: 10,
    JobState.PROBING: 35,
    JobState.BUILDING: 45,
    JobState.RENDERING: 50,
    JobState.VERIFYING: 90,
    JobState.COMPLETE: 100,
    JobState.FAILED: 100,
}


@dataclass
class MediaAsset:
    path: Path
    kind: MediaKind
    duration_seconds: float | None = None
    width: int | None = None
    height: int | None = None
    has_audio_stream: bool | None = None
    has_video_stream: bool | None = None
    probed: bool = False


@dataclass(frozen=True)
class CaptionSpec:
    text: str
    role: CaptionRole
    language: str | None = None


@dataclass(frozen=True)
class LayoutResult:
    lines: tuple[str, ...]
    font_size_px: int
    line_height_px: int
    stroke_width_px: int

    @property
    def is_empty(self) -> bool:
        return not self.lines


@dataclass(frozen=True)
class AudioTrack:
    source_label: str
    volume_db: float = 0.0
    fade_in_sec: float | None = None
    fade_out_sec: float | None = None
    duration_seconds: float | None = None
    max_duration_seconds: float | None = None


@dataclass(frozen=True)
class AudioMixPlan:
    tracks: tuple[AudioTrack, ...] = ()
    mix_duration_policy: MixDurationPolicy = MixDurationPolicy.FIRST
    max_duration_seconds: float | None = None


@dataclass(frozen=True)
class OverlayOptions:
    position: OverlayPosition = OverlayPosition.BOTTOM_RIGHT
    size: int = 150
    margin: int = 20


@dataclass(frozen=True)
class SceneClip:
    url: str
    scene_number: int


@dataclass
class RenderRequest:
    video: str | None
    dialogue: str | None = None
    music: str | None = None
    overlay_image: str | None = None
    overlay_options: OverlayOptions = field(default_factory=OverlayOptions)
    captions: list[CaptionSpec] = field(default_factory=list)
    mix_policy: MixDurationPolicy = MixDurationPolicy.FIRST
    videos: list[SceneClip] = field(default_factory=list)
    job_id: str | None = None

    @property
    def wants_overlay_variant(self) -> bool:
        return bool(self.overlay_image) or any(c.text.strip() for c in self.captions)

    def remote_assets(self) -> dict[str, str]:
        assets: dict[str, str] = {}
        if self.videos:
            for clip in self.videos:
                assets[f"scene_{clip.scene_number:03d}"] = clip.url
        elif self.video:
            assets["video"] = self.video
        for name in ("dialogue", "music", "overlay_image"):
            url = getattr(self, name)
            if url:
                assets[name] = url
        return assets


@dataclass
class ImageOverlayRequest:
    """Composite a logo onto a still image; the result is a single PNG."""

    image: str
    overlay_image: str
    overlay_options: OverlayOptions = field(default_factory=OverlayOptions)
    job_id: str | None = None

    def remote_assets(self) -> dict[str, str]:
        return {"image": self.image, "overlay_image": self.overlay_image}


# variant -> (file suffix, media type)
VARIANT_FORMATS = {
    "with_overlay": (".mp4", "video/mp4"),
    "without_overlay": (".mp4", "video/mp4"),
    "image_with_overlay": (".png", "image/png"),
}

PRIMARY_ORDER = ("with_overlay", "image_with_overlay", "without_overlay")
OVERLAY_VARIANTS = ("with_overlay", "image_with_overlay")


def variant_filename(variant: str) -> str:
    return variant + VARIANT_FORMATS[variant][0]


@dataclass
class RenderOutput:
    variant: str
    asset: MediaAsset
    file_size_bytes: int = 0
    url: str | None = None


@dataclass
class RenderJob:
    job_id: str
    request: RenderRequest | ImageOverlayRequest
    work_dir: Path
    state: JobState = JobState.QUEUED
    assets: dict[str, MediaAsset] = field(default_factory=dict)
    outputs: dict[str, RenderOutput] = field(default_factory=dict)
    error: str | None = None
    failed_stage: str | None = None

    def to_result(self) -> dict[str, Any]:
        if self.state == JobState.FAILED:
            return {
                "success": False,
                "job_id": self.job_id,
                "error": self.error,
                "stage": self.failed_stage,
            }
        downloads = {name: out.url or str(out.asset.path) for name, out in self.outputs.items()}
        primary = next((self.outputs[name] for name in PRIMARY_ORDER if name in self.outputs), None)
        stats: dict[str, Any] = {}
        if primary is not None:
            size = primary.file_size_bytes
            stats = {
                "duration_seconds": primary.asset.duration_seconds,
                "file_size_bytes": size,
                "file_size_mb": round(size / (1024 * 1024), 2),
            }
        return {
            "success": True,
            "job_id": self.job_id,
            "downloads": downloads,
            "stats": stats,
            "overlay_applied": any(name in self.outputs for name in OVERLAY_VARIANTS),
        }
